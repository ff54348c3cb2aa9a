import logging
import os
from typing import Optional

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from starlette.middleware.trustedhost import TrustedHostMiddleware

from plumbhub.auth import hash_password
from plumbhub.models import Role
from plumbhub.routers import auth, bookings, categories, dashboard, notifications, providers
from plumbhub.services.entity_store import DEFAULT_DB_PATH, EntityStore
from plumbhub.services.lifecycle import BookingLifecycle
from plumbhub.services.notification_store import NotificationStore

logger = logging.getLogger(__name__)


def _parse_csv_env(name: str, default: str) -> list[str]:
    raw = os.getenv(name, default)
    return [item.strip() for item in raw.split(",") if item.strip()]


def _bootstrap_admin(store: EntityStore) -> None:
    email = os.getenv("ADMIN_EMAIL", "").strip().lower()
    password = os.getenv("ADMIN_PASSWORD", "")
    if not email or not password:
        return
    if store.get_credentials(email) is not None:
        return
    store.create_account(
        name=os.getenv("ADMIN_NAME", "Administrator"),
        email=email,
        phone=os.getenv("ADMIN_PHONE", "n/a"),
        role=Role.ADMINISTRATOR,
        password_hash=hash_password(password),
    )
    logger.info("Bootstrapped administrator account %s", email)


def create_app(
    db_path: Optional[str] = None,
    store: Optional[EntityStore] = None,
    notification_store: Optional[NotificationStore] = None,
) -> FastAPI:
    app = FastAPI(title="PlumbHub API", version="0.1.0")

    store = store or EntityStore(db_path=db_path or os.getenv("PLUMBHUB_DB_PATH", DEFAULT_DB_PATH))
    notification_store = notification_store or NotificationStore()
    _bootstrap_admin(store)

    app.state.store = store
    app.state.notifications = notification_store
    app.state.lifecycle = BookingLifecycle.build(store, notification_store)

    cors_origins = _parse_csv_env("CORS_ORIGINS", "*")
    allow_any_origin = len(cors_origins) == 1 and cors_origins[0] == "*"
    app.add_middleware(
        CORSMiddleware,
        allow_origins=cors_origins,
        # Browsers reject wildcard CORS with credentials enabled.
        allow_credentials=not allow_any_origin,
        allow_methods=["*"],
        allow_headers=["*"],
    )

    trusted_hosts = _parse_csv_env("TRUSTED_HOSTS", "*")
    if not (len(trusted_hosts) == 1 and trusted_hosts[0] == "*"):
        app.add_middleware(TrustedHostMiddleware, allowed_hosts=trusted_hosts)

    app.include_router(auth.router)
    app.include_router(categories.router)
    app.include_router(bookings.router)
    app.include_router(providers.router)
    app.include_router(dashboard.router)
    app.include_router(notifications.router)

    @app.get("/health")
    def health():
        return {"status": "ok"}

    return app


app = create_app()
