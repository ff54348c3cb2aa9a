from datetime import datetime, timezone
from threading import Lock
from typing import Dict, List, Optional, Set
from uuid import uuid4

from plumbhub.models import NotificationRecord
from plumbhub.services.push_sender import PushSender

FEED_LIMIT = 100


class NotificationStore:
    """Per-account in-app feeds, mirrored to registered devices by push."""

    def __init__(self, push_sender: Optional[PushSender] = None):
        self._lock = Lock()
        self._push_sender = push_sender or PushSender()
        self._feeds: Dict[str, List[NotificationRecord]] = {}
        self._device_tokens: Dict[str, Set[str]] = {}

    def register_device_token(self, account_id: str, device_token: str) -> None:
        token = device_token.strip()
        if not token:
            return
        with self._lock:
            self._device_tokens.setdefault(account_id, set()).add(token)

    def create(
        self,
        account_id: str,
        title: str,
        body: str,
        category: str = "booking",
        deep_link: Optional[str] = None,
    ) -> NotificationRecord:
        record = NotificationRecord(
            id=f"ntf_{uuid4().hex[:10]}",
            account_id=account_id,
            title=title,
            body=body,
            category=category,
            read=False,
            created_at=datetime.now(timezone.utc).isoformat(),
            deep_link=deep_link,
        )
        with self._lock:
            feed = self._feeds.setdefault(account_id, [])
            feed.insert(0, record)
            del feed[FEED_LIMIT:]
            tokens = sorted(self._device_tokens.get(account_id, ()))
        self._forget_tokens(account_id, self._push_sender.send(tokens, record))
        return record

    def _forget_tokens(self, account_id: str, tokens: List[str]) -> None:
        if not tokens:
            return
        with self._lock:
            registered = self._device_tokens.get(account_id)
            if registered is not None:
                registered.difference_update(tokens)

    def list_for_account(self, account_id: str, unread_only: bool = False) -> List[NotificationRecord]:
        with self._lock:
            feed = list(self._feeds.get(account_id, ()))
        if unread_only:
            return [record for record in feed if not record.read]
        return feed

    def mark_read(self, account_id: str, notification_id: str) -> Optional[NotificationRecord]:
        with self._lock:
            feed = self._feeds.get(account_id, [])
            for idx, record in enumerate(feed):
                if record.id == notification_id:
                    feed[idx] = record.model_copy(update={"read": True})
                    return feed[idx]
        return None
