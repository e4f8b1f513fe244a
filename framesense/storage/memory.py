from __future__ import annotations

import threading
from dataclasses import replace
from datetime import date, datetime
from typing import Any, Dict, Optional

from framesense.config import SubscriptionStatus, Tier
from framesense.logging import get_logger
from framesense.storage.errors import ConstraintViolation
from framesense.storage.models import Account, Session, utcnow

_UPDATABLE_ACCOUNT_FIELDS = frozenset(
    {
        "name",
        "password_hash",
        "tier",
        "subscription_status",
        "external_billing_id",
        "billing_synced_at",
    }
)


class MemoryStore:
    """In-process backing store for tests and local development.

    Holds accounts and sessions in dicts guarded by one re-entrant lock, so
    each method is atomic with respect to every other. Callers always get
    copies; mutating a returned object never changes stored state.
    """

    def __init__(self) -> None:
        self.logger = get_logger(__name__)
        self.accounts: Dict[str, Account] = {}
        self._email_index: Dict[str, str] = {}
        self.sessions: Dict[str, Session] = {}
        self._data_lock = threading.RLock()

    # accounts
    def create_account(self, account: Account) -> Account:
        with self._data_lock:
            if account.email in self._email_index:
                raise ConstraintViolation("email already exists", field="email")
            stored = replace(account)
            self.accounts[stored.id] = stored
            self._email_index[stored.email] = stored.id
            return replace(stored)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            return replace(account) if account else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._data_lock:
            account_id = self._email_index.get(email)
            if account_id is None:
                return None
            return replace(self.accounts[account_id])

    def get_account_by_billing_id(self, billing_id: str) -> Optional[Account]:
        with self._data_lock:
            return next(
                (
                    replace(a)
                    for a in self.accounts.values()
                    if a.external_billing_id == billing_id
                ),
                None,
            )

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - _UPDATABLE_ACCOUNT_FIELDS
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        if "tier" in fields:
            fields["tier"] = Tier(fields["tier"])
        if "subscription_status" in fields:
            fields["subscription_status"] = SubscriptionStatus(
                fields["subscription_status"]
            )
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            billing_id = fields.get("external_billing_id")
            if billing_id is not None and any(
                other.external_billing_id == billing_id and other_id != account_id
                for other_id, other in self.accounts.items()
            ):
                raise ConstraintViolation(
                    "external_billing_id already exists", field="external_billing_id"
                )
            updated = replace(account, **fields, updated_at=utcnow())
            self.accounts[account_id] = updated
            return replace(updated)

    def increment_usage(
        self, account_id: str, amount: int, today: date
    ) -> Optional[Account]:
        with self._data_lock:
            account = self.accounts.get(account_id)
            if not account:
                return None
            daily = account.usage_daily if account.usage_reset_date >= today else 0
            updated = replace(
                account,
                usage_daily=daily + amount,
                usage_total=account.usage_total + amount,
                usage_reset_date=max(account.usage_reset_date, today),
                updated_at=utcnow(),
            )
            self.accounts[account_id] = updated
            return replace(updated)

    def reset_daily_usage(self, today: date) -> int:
        with self._data_lock:
            reset = 0
            now = utcnow()
            for account_id, account in list(self.accounts.items()):
                if account.usage_reset_date < today:
                    self.accounts[account_id] = replace(
                        account, usage_daily=0, usage_reset_date=today, updated_at=now
                    )
                    reset += 1
            return reset

    # sessions
    def create_session(self, session: Session) -> Session:
        with self._data_lock:
            if session.account_id not in self.accounts:
                raise ConstraintViolation("account does not exist", field="account_id")
            self.sessions[session.id] = replace(session)
            return replace(session)

    def find_live_session(
        self, account_id: str, token_fingerprint: str, now: datetime
    ) -> Optional[Session]:
        with self._data_lock:
            for sess in self.sessions.values():
                if (
                    sess.account_id == account_id
                    and sess.token_fingerprint == token_fingerprint
                    and sess.is_live(now)
                ):
                    return replace(sess)
            return None

    def delete_account_sessions(self, account_id: str) -> int:
        with self._data_lock:
            stale = [sid for sid, sess in self.sessions.items() if sess.account_id == account_id]
            for sid in stale:
                self.sessions.pop(sid, None)
            return len(stale)

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._data_lock:
            expired = [sid for sid, sess in self.sessions.items() if not sess.is_live(now)]
            for sid in expired:
                self.sessions.pop(sid, None)
            if expired:
                self.logger.debug("expired_sessions_deleted", count=len(expired))
            return len(expired)

    def close(self) -> None:
        return None
