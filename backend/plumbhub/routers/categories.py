from fastapi import APIRouter, Depends, Query

from plumbhub.dependencies import get_store, raise_http_error, require_admin
from plumbhub.models import Actor, Category, CategoryCreateRequest
from plumbhub.services.entity_store import EntityStore, EntityStoreError

router = APIRouter(prefix="/categories", tags=["categories"])


@router.get("", response_model=list[Category])
def list_categories(
    include_inactive: bool = Query(default=False),
    store: EntityStore = Depends(get_store),
):
    try:
        return store.list_categories(include_inactive=include_inactive)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.post("", response_model=Category)
def create_category(
    payload: CategoryCreateRequest,
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        return store.create_category(name=payload.name, description=payload.description, icon=payload.icon)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.post("/{category_id}/deactivate", response_model=Category)
def deactivate_category(
    category_id: str,
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        return store.set_category_active(category_id, False)
    except EntityStoreError as exc:
        raise_http_error(exc)


@router.post("/{category_id}/activate", response_model=Category)
def activate_category(
    category_id: str,
    _admin: Actor = Depends(require_admin),
    store: EntityStore = Depends(get_store),
):
    try:
        return store.set_category_active(category_id, True)
    except EntityStoreError as exc:
        raise_http_error(exc)
