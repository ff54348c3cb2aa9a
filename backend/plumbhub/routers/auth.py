from fastapi import APIRouter, Depends, HTTPException

from plumbhub.auth import create_access_token, hash_password, verify_password
from plumbhub.dependencies import get_store, raise_http_error, require_actor
from plumbhub.models import Account, Actor, AuthLoginRequest, AuthRegisterRequest, AuthTokenResponse, Role
from plumbhub.services.entity_store import EntityStore, EntityStoreError

router = APIRouter(prefix="/auth", tags=["auth"])


@router.post("/register", response_model=AuthTokenResponse)
def register(payload: AuthRegisterRequest, store: EntityStore = Depends(get_store)):
    if payload.role == Role.ADMINISTRATOR:
        raise HTTPException(status_code=403, detail="Administrator accounts cannot self-register")
    try:
        account = store.create_account(
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            role=payload.role,
            password_hash=hash_password(payload.password),
            address=payload.address,
        )
        if account.role == Role.PROVIDER:
            # Self-registered plumbers wait for admin verification.
            store.create_provider(account_id=account.id, is_available=False, is_verified=False)
    except EntityStoreError as exc:
        raise_http_error(exc)
    token, expires_at = create_access_token(account_id=account.id)
    return AuthTokenResponse(access_token=token, account=account, expires_at=expires_at)


@router.post("/login", response_model=AuthTokenResponse)
def login(payload: AuthLoginRequest, store: EntityStore = Depends(get_store)):
    email = payload.email.strip().lower()
    if not email or not payload.password:
        raise HTTPException(status_code=400, detail="Email and password are required")
    try:
        credentials = store.get_credentials(email)
    except EntityStoreError as exc:
        raise_http_error(exc)
    if credentials is None or not verify_password(payload.password, credentials[1]):
        raise HTTPException(status_code=401, detail="Invalid credentials")
    account = credentials[0]
    token, expires_at = create_access_token(account_id=account.id)
    return AuthTokenResponse(access_token=token, account=account, expires_at=expires_at)


@router.get("/me", response_model=Account)
def me(actor: Actor = Depends(require_actor), store: EntityStore = Depends(get_store)):
    account = store.get_account(actor.account_id)
    if account is None:
        raise HTTPException(status_code=404, detail="Account not found")
    return account
