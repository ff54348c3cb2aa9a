from typing import List

from fastapi import APIRouter, Depends, HTTPException

from plumbhub.auth import hash_password
from plumbhub.dependencies import get_store, raise_http_error, require_actor, require_admin
from plumbhub.models import (
    Actor,
    Provider,
    ProviderOnboardRequest,
    ProviderOnboardResult,
    ProviderSelfUpdateRequest,
    ProviderVerifyRequest,
    ProviderView,
    Role,
    rating_to_display,
)
from plumbhub.services.entity_store import (
    EntityStore,
    EntityStoreError,
    EntityStoreValidationError,
)

router = APIRouter(prefix="/providers", tags=["providers"])


def _assert_known_categories(store: EntityStore, specializations: List[str]) -> None:
    known = {category.name for category in store.list_categories(include_inactive=True)}
    unknown = sorted({tag for tag in specializations if tag not in known})
    if unknown:
        raise EntityStoreValidationError(f"Unknown categories: {', '.join(unknown)}")


def _own_provider(store: EntityStore, actor: Actor) -> Provider:
    if actor.role != Role.PROVIDER:
        raise HTTPException(status_code=403, detail="Provider access required")
    provider = store.get_provider_by_account_id(actor.account_id)
    if provider is None:
        raise HTTPException(status_code=404, detail="Provider profile not found")
    return provider


@router.get("", response_model=list[ProviderView])
def list_providers(
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        return [
            ProviderView(
                provider=provider,
                account=store.get_account(provider.account_id),
                rating_display=rating_to_display(provider.rating),
            )
            for provider in store.list_providers()
        ]
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.patch("/{provider_id}/verify", response_model=Provider)
def verify_provider(
    provider_id: str,
    payload: ProviderVerifyRequest,
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        # Verification also opens (or closes) the provider for assignment.
        updated = store.update_provider(
            provider_id,
            is_verified=payload.is_verified,
            is_available=payload.is_verified,
        )
    except EntityStoreError as exc:
        raise_http_error(exc)
    if updated is None:
        raise HTTPException(status_code=404, detail="Provider not found")
    return updated


@router.post("/onboard", response_model=ProviderOnboardResult)
def onboard_provider(
    payload: ProviderOnboardRequest,
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        _assert_known_categories(store, payload.specializations)
        account = store.create_account(
            name=payload.name,
            email=payload.email,
            phone=payload.phone,
            role=Role.PROVIDER,
            password_hash=hash_password(payload.password),
            address="",
        )
        provider = store.create_provider(
            account_id=account.id,
            specializations=payload.specializations,
            is_available=True,
            is_verified=True,
            experience_years=payload.experience_years,
            license_number=payload.license_number,
        )
    except EntityStoreError as exc:
        raise_http_error(exc)
    return ProviderOnboardResult(account=account, provider=provider)


@router.get("/me", response_model=ProviderView)
def my_provider_profile(
    actor: Actor = Depends(require_actor),
    store: EntityStore = Depends(get_store),
):
    provider = _own_provider(store, actor)
    return ProviderView(
        provider=provider,
        account=store.get_account(actor.account_id),
        rating_display=rating_to_display(provider.rating),
    )


@router.patch("/me", response_model=Provider)
def update_my_provider_profile(
    payload: ProviderSelfUpdateRequest,
    actor: Actor = Depends(require_actor),
    store: EntityStore = Depends(get_store),
):
    provider = _own_provider(store, actor)
    changes = {key: value for key, value in payload.model_dump(exclude_unset=True).items() if value is not None}
    try:
        if "specializations" in changes:
            _assert_known_categories(store, changes["specializations"])
        updated = store.update_provider(provider.id, **changes)
    except EntityStoreError as exc:
        raise_http_error(exc)
    if updated is None:
        raise HTTPException(status_code=404, detail="Provider not found")
    return updated
