from __future__ import annotations

import hashlib
from datetime import datetime, timedelta, timezone
from typing import Optional, Protocol

from framesense.config import Settings
from framesense.logging import get_logger
from framesense.storage.models import Session

logger = get_logger(__name__)


class SessionStore(Protocol):
    def create_session(self, session: Session) -> Session: ...

    def find_live_session(
        self, account_id: str, token_fingerprint: str, now: datetime
    ) -> Optional[Session]: ...

    def delete_account_sessions(self, account_id: str) -> int: ...

    def delete_expired_sessions(self, now: datetime) -> int: ...


def fingerprint(token: str) -> str:
    """sha256 hex digest of a raw token; the only form a token is ever stored in."""
    return hashlib.sha256(token.encode("utf-8")).hexdigest()


class SessionRegistry:
    """Server-side record of issued tokens so they can be revoked early."""

    def __init__(self, store: SessionStore, settings: Settings) -> None:
        self.store = store
        self.ttl = timedelta(days=settings.session_ttl_days)
        self.logger = logger

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def create(self, account_id: str, token: str) -> Session:
        session = Session.new(account_id, fingerprint(token), self.ttl, now=self._now())
        return self.store.create_session(session)

    def is_live(self, account_id: str, token: str) -> bool:
        return (
            self.store.find_live_session(account_id, fingerprint(token), self._now())
            is not None
        )

    def revoke_all(self, account_id: str) -> int:
        revoked = self.store.delete_account_sessions(account_id)
        self.logger.info("sessions_revoked", account_id=account_id, count=revoked)
        return revoked

    def sweep_expired(self) -> int:
        return self.store.delete_expired_sessions(self._now())
