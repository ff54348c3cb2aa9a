import logging
import os
from threading import Lock
from typing import Any, Dict, List, Optional

from plumbhub.models import NotificationRecord

logger = logging.getLogger(__name__)

_INVALID_TOKEN_MARKERS = ("registration token", "invalid argument", "not registered")


def _is_invalid_token_error(exc: Optional[BaseException]) -> bool:
    if exc is None:
        return False
    text = str(exc).lower()
    return any(marker in text for marker in _INVALID_TOKEN_MARKERS)


def build_push_data(record: NotificationRecord) -> Dict[str, str]:
    """FCM data payloads only carry strings."""
    return {
        "notification_id": record.id,
        "account_id": record.account_id,
        "category": record.category,
        "deep_link": record.deep_link or "",
    }


class PushSender:
    """Delivers notification records to device tokens through Firebase Cloud Messaging.

    Stays disabled until a service-account file is configured, either through
    ``credentials_path`` or ``FIREBASE_CREDENTIALS_PATH``. firebase-admin is
    only imported once a path is present.
    """

    def __init__(self, credentials_path: Optional[str] = None):
        self._lock = Lock()
        self._credentials_path = credentials_path
        self._messaging: Any = None
        self._ready: Optional[bool] = None

    @property
    def enabled(self) -> bool:
        return self._load()

    def _resolve_credentials_path(self) -> str:
        if self._credentials_path is not None:
            return self._credentials_path.strip()
        return os.getenv("FIREBASE_CREDENTIALS_PATH", "").strip()

    def _load(self) -> bool:
        if self._ready is not None:
            return self._ready
        with self._lock:
            if self._ready is None:
                self._ready = self._connect()
            return self._ready

    def _connect(self) -> bool:
        credentials_path = self._resolve_credentials_path()
        if not credentials_path:
            logger.info("Push delivery off: no Firebase credentials configured")
            return False
        try:
            import firebase_admin
            from firebase_admin import credentials, messaging
        except ImportError:
            logger.exception("Push delivery off: install the 'push' extra for firebase-admin")
            return False
        try:
            if not firebase_admin._apps:  # pylint: disable=protected-access
                firebase_admin.initialize_app(credentials.Certificate(credentials_path))
        except Exception:
            logger.exception("Push delivery off: Firebase app could not start from %s", credentials_path)
            return False
        self._messaging = messaging
        logger.info("Push delivery on via Firebase")
        return True

    def send(self, tokens: List[str], record: NotificationRecord) -> List[str]:
        """Push ``record`` to ``tokens``; returns tokens Firebase no longer accepts."""
        if not tokens or not self._load():
            return []
        message = self._messaging.MulticastMessage(
            notification=self._messaging.Notification(title=record.title, body=record.body),
            data=build_push_data(record),
            tokens=tokens,
        )
        try:
            batch = self._messaging.send_each_for_multicast(message)
        except Exception:
            logger.exception("Push delivery failed for notification %s", record.id)
            return []
        rejected = [
            token
            for token, response in zip(tokens, batch.responses)
            if not response.success and _is_invalid_token_error(response.exception)
        ]
        if rejected:
            logger.info("Dropping %d stale device token(s) for %s", len(rejected), record.account_id)
        return rejected
