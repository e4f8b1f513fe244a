from __future__ import annotations

from dataclasses import dataclass
from datetime import date, datetime, time, timedelta, timezone
from typing import Any, Dict, FrozenSet, Optional

from framesense.config import TIER_ORDER, Tier
from framesense.logging import get_logger
from framesense.service.credentials import CredentialStore
from framesense.service.errors import ModelNotPermittedError, QuotaExceededError, ServerError
from framesense.storage.models import Account, utcnow

logger = get_logger(__name__)

# models each tier unlocks on top of the tier below it
_TIER_MODEL_ADDITIONS: Dict[Tier, tuple[str, ...]] = {
    Tier.FREE: ("GPT-3.5-turbo", "Gemini Flash"),
    Tier.PREMIUM: ("GPT-4o-mini", "Claude 3 Haiku", "Gemini Pro"),
    Tier.PRO: ("GPT-4o", "Claude 3.5 Sonnet", "Gemini Ultra", "Llama 3.1 70B"),
    Tier.ENTERPRISE: ("GPT-4o 32k", "Claude 3 Opus", "Gemini Ultra Pro", "Llama 3.1 405B"),
}

# None means unbounded
DAILY_QUOTAS: Dict[Tier, Optional[int]] = {
    Tier.FREE: 50,
    Tier.PREMIUM: 1000,
    Tier.PRO: 5000,
    Tier.ENTERPRISE: None,
}


@dataclass(frozen=True)
class Capabilities:
    tier: Tier
    allowed_models: FrozenSet[str]
    daily_quota: Optional[int]

    def to_dict(self) -> Dict[str, Any]:
        return {
            "tier": self.tier.value,
            "allowed_models": sorted(self.allowed_models),
            "daily_quota": self.daily_quota,
        }


def _build_capabilities() -> Dict[Tier, Capabilities]:
    table: Dict[Tier, Capabilities] = {}
    models: FrozenSet[str] = frozenset()
    for tier in TIER_ORDER:
        models = models | frozenset(_TIER_MODEL_ADDITIONS[tier])
        table[tier] = Capabilities(tier, models, DAILY_QUOTAS[tier])
    return table


CAPABILITIES: Dict[Tier, Capabilities] = _build_capabilities()


def capabilities_for(tier: Tier | str) -> Capabilities:
    return CAPABILITIES[Tier(tier)]


def can_use(tier: Tier | str, model: str) -> bool:
    return model in capabilities_for(tier).allowed_models


def required_tier(model: str) -> Optional[Tier]:
    """Lowest tier that unlocks ``model``, or ``None`` if no tier offers it."""
    for tier in TIER_ORDER:
        if model in CAPABILITIES[tier].allowed_models:
            return tier
    return None


def next_reset(today: Optional[date] = None) -> datetime:
    """UTC midnight at which the current daily counter rolls over."""
    today = today or utcnow().date()
    return datetime.combine(today + timedelta(days=1), time.min, tzinfo=timezone.utc)


def remaining_quota(account: Account, today: Optional[date] = None) -> Optional[int]:
    quota = capabilities_for(account.tier).daily_quota
    if quota is None:
        return None
    return max(0, quota - account.effective_usage_daily(today))


def check_quota(account: Account, amount: int = 1, *, today: Optional[date] = None) -> None:
    """Raise ``QuotaExceededError`` unless ``amount`` more operations fit in today's quota."""
    today = today or utcnow().date()
    quota = capabilities_for(account.tier).daily_quota
    if quota is None:
        return
    used = account.effective_usage_daily(today)
    if used + amount > quota:
        raise QuotaExceededError(
            f"daily limit of {quota} reached for the {account.tier.value} tier",
            detail={
                "tier": account.tier.value,
                "daily_quota": quota,
                "usage_daily": used,
                "resets_at": next_reset(today).isoformat(),
            },
        )


def check_model(account: Account, model: str) -> None:
    if can_use(account.tier, model):
        return
    needed = required_tier(model)
    raise ModelNotPermittedError(
        f"model '{model}' is not available on the {account.tier.value} tier",
        detail={
            "model": model,
            "tier": account.tier.value,
            "required_tier": needed.value if needed else None,
        },
    )


class TierResolver:
    """Gate for quota-limited operations.

    The model and quota checks are pure; only a granted request touches
    storage, through ``CredentialStore.increment_usage``.
    """

    def __init__(self, credentials: CredentialStore) -> None:
        self.credentials = credentials
        self.logger = logger

    def capabilities(self, account: Account) -> Dict[str, Any]:
        caps = capabilities_for(account.tier)
        today = utcnow().date()
        return {
            **caps.to_dict(),
            "subscription_status": account.subscription_status.value,
            "usage_daily": account.effective_usage_daily(today),
            "usage_total": account.usage_total,
            "remaining": remaining_quota(account, today),
            "resets_at": next_reset(today).isoformat(),
        }

    def authorize_usage(self, account: Account, model: str, amount: int = 1) -> Account:
        """Check model access and quota, then charge ``amount`` to today's usage."""
        try:
            check_model(account, model)
            check_quota(account, amount)
        except (ModelNotPermittedError, QuotaExceededError) as exc:
            self.logger.info(
                "usage_denied",
                account_id=account.id,
                model=model,
                reason=exc.error_code,
            )
            raise
        updated = self.credentials.increment_usage(account.id, amount)
        if updated is None:
            raise ServerError("account disappeared while recording usage")
        self.logger.info(
            "usage_authorized",
            account_id=account.id,
            model=model,
            usage_daily=updated.usage_daily,
        )
        return updated
