from __future__ import annotations

import uuid
from dataclasses import dataclass, field
from datetime import date, datetime, timedelta, timezone
from typing import Any, Dict, Optional

from framesense.config import SubscriptionStatus, Tier


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


@dataclass
class Account:
    id: str
    email: str
    name: str
    password_hash: str = field(repr=False)
    tier: Tier = Tier.FREE
    subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE
    external_billing_id: Optional[str] = None
    usage_daily: int = 0
    usage_total: int = 0
    usage_reset_date: date = field(default_factory=lambda: utcnow().date())
    billing_synced_at: Optional[datetime] = None
    created_at: datetime = field(default_factory=utcnow)
    updated_at: datetime = field(default_factory=utcnow)

    @classmethod
    def new(
        cls,
        email: str,
        name: str,
        password_hash: str,
        *,
        tier: Tier = Tier.FREE,
        subscription_status: SubscriptionStatus = SubscriptionStatus.INACTIVE,
    ) -> "Account":
        now = utcnow()
        return cls(
            id=str(uuid.uuid4()),
            email=email,
            name=name,
            password_hash=password_hash,
            tier=Tier(tier),
            subscription_status=SubscriptionStatus(subscription_status),
            usage_reset_date=now.date(),
            created_at=now,
            updated_at=now,
        )

    def effective_usage_daily(self, today: Optional[date] = None) -> int:
        """Daily usage as of ``today``; a counter from an earlier day counts as zero."""
        today = today or utcnow().date()
        if self.usage_reset_date < today:
            return 0
        return self.usage_daily

    def to_public(self) -> Dict[str, Any]:
        """Client-facing view; never includes the password hash."""
        return {
            "id": self.id,
            "email": self.email,
            "name": self.name,
            "tier": self.tier.value,
            "subscription_status": self.subscription_status.value,
            "external_billing_id": self.external_billing_id,
            "usage_daily": self.effective_usage_daily(),
            "usage_total": self.usage_total,
            "created_at": self.created_at.isoformat(),
            "updated_at": self.updated_at.isoformat(),
        }


@dataclass
class Session:
    id: str
    account_id: str
    token_fingerprint: str
    expires_at: datetime
    created_at: datetime

    @classmethod
    def new(
        cls,
        account_id: str,
        token_fingerprint: str,
        ttl: timedelta,
        *,
        now: Optional[datetime] = None,
    ) -> "Session":
        created = now or utcnow()
        return cls(
            id=str(uuid.uuid4()),
            account_id=account_id,
            token_fingerprint=token_fingerprint,
            expires_at=created + ttl,
            created_at=created,
        )

    def is_live(self, now: Optional[datetime] = None) -> bool:
        return (now or utcnow()) < self.expires_at
