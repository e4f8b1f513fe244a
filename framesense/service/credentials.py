from __future__ import annotations

import re
import secrets
import unicodedata
from datetime import date, datetime
from typing import Any, Optional, Protocol

from argon2 import PasswordHasher, Type
from argon2.exceptions import InvalidHash, VerificationError

from framesense.config import Settings, SubscriptionStatus, Tier
from framesense.logging import email_fingerprint, get_logger
from framesense.service.errors import (
    DuplicateEmailError,
    ServerError,
    ValidationError,
    WeakPasswordError,
)
from framesense.storage.errors import ConstraintViolation
from framesense.storage.models import Account, utcnow

logger = get_logger(__name__)


class AccountStore(Protocol):
    def create_account(self, account: Account) -> Account: ...

    def get_account(self, account_id: str) -> Optional[Account]: ...

    def get_account_by_email(self, email: str) -> Optional[Account]: ...

    def get_account_by_billing_id(self, billing_id: str) -> Optional[Account]: ...

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]: ...

    def increment_usage(
        self, account_id: str, amount: int, today: date
    ) -> Optional[Account]: ...

    def reset_daily_usage(self, today: date) -> int: ...


_EMAIL_LOCAL_PART = re.compile(r"^[a-zA-Z0-9.!#$%&'*+/=?^_`{|}~-]+$")
_EMAIL_DOMAIN_LABEL = re.compile(r"^[a-zA-Z0-9](?:[a-zA-Z0-9-]{0,61}[a-zA-Z0-9])?$")


def normalize_email(email: str) -> str:
    return unicodedata.normalize("NFKC", (email or "").strip().lower())


def validate_email(value: str) -> str:
    """Return the normalized address or raise ``ValueError`` if it is not one."""
    if not isinstance(value, str):
        raise ValueError("email must be a string")
    normalized = normalize_email(value)
    if len(normalized) > 254:
        raise ValueError("email address too long")
    if len(normalized) < 3:
        raise ValueError("email address too short")
    local, sep, domain = normalized.partition("@")
    if not sep or not local or not domain or len(local) > 64:
        raise ValueError("invalid email address")
    if not _EMAIL_LOCAL_PART.match(local):
        raise ValueError("invalid email address format")
    labels = domain.split(".")
    if len(labels) < 2 or not all(
        len(label) <= 63 and _EMAIL_DOMAIN_LABEL.match(label) for label in labels
    ):
        raise ValueError("invalid email address format")
    return normalized


class CredentialStore:
    """Account persistence and password hashing.

    Emails are normalized before they touch storage, so every lookup is
    case-insensitive. Passwords are hashed with argon2id; the raw hash is
    never compared by hand.
    """

    def __init__(self, store: AccountStore, settings: Settings) -> None:
        self.store = store
        self.settings = settings
        self._pwd_hasher = PasswordHasher(
            time_cost=settings.password_hash_time_cost,
            memory_cost=settings.password_hash_memory_cost,
            type=Type.ID,
        )
        self._dummy_hash: Optional[str] = None
        self.logger = logger

    def _today(self) -> date:
        return utcnow().date()

    def hash_password(self, password: str) -> str:
        return self._pwd_hasher.hash(password)

    def _check_password_policy(self, password: str) -> None:
        if len(password or "") < self.settings.password_min_length:
            raise WeakPasswordError(
                f"password must be at least {self.settings.password_min_length} characters",
                detail={"min_length": self.settings.password_min_length},
            )

    def create_account(self, email: str, password: str, name: str) -> Account:
        try:
            normalized = validate_email(email)
        except ValueError as exc:
            raise ValidationError(str(exc), detail={"field": "email"}) from exc
        display_name = (name or "").strip()
        if not display_name:
            raise ValidationError("name is required", detail={"field": "name"})
        self._check_password_policy(password)
        account = Account.new(
            normalized,
            display_name,
            self.hash_password(password),
            tier=self.settings.default_tier,
            subscription_status=self.settings.default_subscription_status,
        )
        try:
            created = self.store.create_account(account)
        except ConstraintViolation as exc:
            if exc.field == "email":
                raise DuplicateEmailError("an account with this email already exists") from exc
            self.logger.error("account_create_constraint_failed", field=exc.field)
            raise ServerError("could not create account") from exc
        self.logger.info(
            "account_created",
            account_id=created.id,
            addr_hash=email_fingerprint(normalized),
            tier=created.tier.value,
        )
        return created

    def find_by_email(self, email: str) -> Optional[Account]:
        normalized = normalize_email(email)
        if not normalized:
            return None
        return self.store.get_account_by_email(normalized)

    def find_by_id(self, account_id: str) -> Optional[Account]:
        if not account_id:
            return None
        return self.store.get_account(account_id)

    def find_by_external_billing_id(self, billing_id: str) -> Optional[Account]:
        if not billing_id:
            return None
        return self.store.get_account_by_billing_id(billing_id)

    def verify_password(self, account: Account, candidate: str) -> bool:
        try:
            return self._pwd_hasher.verify(account.password_hash, candidate or "")
        except (InvalidHash, VerificationError):
            return False

    def burn_verify(self, candidate: str) -> None:
        """Spend one argon2 verify so an unknown email costs what a wrong password costs."""
        if self._dummy_hash is None:
            self._dummy_hash = self.hash_password(secrets.token_urlsafe(16))
        try:
            self._pwd_hasher.verify(self._dummy_hash, candidate or "")
        except (InvalidHash, VerificationError):
            return

    def rehash_if_needed(self, account: Account, password: str) -> Account:
        """Re-hash a verified password whose stored hash uses outdated parameters."""
        try:
            stale = self._pwd_hasher.check_needs_rehash(account.password_hash)
        except InvalidHash:
            return account
        if not stale:
            return account
        updated = self.store.update_account(
            account.id, password_hash=self.hash_password(password)
        )
        self.logger.info("password_rehashed", account_id=account.id)
        return updated or account

    def change_password(self, account_id: str, new_password: str) -> Account:
        self._check_password_policy(new_password)
        updated = self.store.update_account(
            account_id, password_hash=self.hash_password(new_password)
        )
        if updated is None:
            raise ValidationError("account not found", detail={"account_id": account_id})
        self.logger.info("password_changed", account_id=account_id)
        return updated

    def update_tier(
        self,
        tier: Tier | str,
        status: SubscriptionStatus | str | None = None,
        *,
        account_id: Optional[str] = None,
        email: Optional[str] = None,
        billing_synced_at: Optional[datetime] = None,
    ) -> Optional[Account]:
        """Overwrite the tier and, when given, the status of one account.

        The account is addressed by ``account_id`` or ``email``; exactly one
        must be supplied. Returns ``None`` when no account matches.
        """
        if (account_id is None) == (email is None):
            raise ValueError("update_tier needs exactly one of account_id or email")
        if account_id is None:
            account = self.find_by_email(email or "")
            if account is None:
                return None
            account_id = account.id
        fields: dict[str, Any] = {"tier": Tier(tier)}
        if status is not None:
            fields["subscription_status"] = SubscriptionStatus(status)
        if billing_synced_at is not None:
            fields["billing_synced_at"] = billing_synced_at
        return self.store.update_account(account_id, **fields)

    def update_external_billing_id(self, email: str, billing_id: str) -> Optional[Account]:
        account = self.find_by_email(email)
        if account is None:
            return None
        return self.set_external_billing_id(account.id, billing_id)

    def set_external_billing_id(self, account_id: str, billing_id: str) -> Optional[Account]:
        """Link a billing customer id to one account.

        A customer id belongs to at most one account; linking one that is
        already held elsewhere raises ``ValidationError``.
        """
        try:
            return self.store.update_account(account_id, external_billing_id=billing_id)
        except ConstraintViolation as exc:
            if exc.field != "external_billing_id":
                raise
            self.logger.warning("billing_id_already_linked", account_id=account_id)
            raise ValidationError(
                "billing customer is already linked to another account",
                detail={"field": "external_billing_id"},
            ) from exc

    def increment_usage(self, account_id: str, amount: int = 1) -> Optional[Account]:
        if amount < 0:
            raise ValidationError("usage amount must not be negative", detail={"amount": amount})
        return self.store.increment_usage(account_id, amount, self._today())

    def reset_daily_usage(self) -> int:
        count = self.store.reset_daily_usage(self._today())
        if count:
            self.logger.info("daily_usage_reset", accounts=count)
        return count
