from __future__ import annotations

import hashlib
import hmac
import time
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import Any, Dict, Mapping, Optional

from framesense.config import Settings, SubscriptionStatus, Tier
from framesense.logging import get_logger
from framesense.service.credentials import CredentialStore
from framesense.service.errors import AuthenticationError, ValidationError
from framesense.service.sessions import SessionRegistry
from framesense.storage.models import Account

logger = get_logger(__name__)

SUBSCRIPTION_CHANGED = frozenset(
    {"customer.subscription.created", "customer.subscription.updated"}
)
SUBSCRIPTION_DELETED = "customer.subscription.deleted"
INVOICE_PAID = frozenset({"invoice.payment_succeeded", "invoice.paid"})
INVOICE_FAILED = "invoice.payment_failed"
CHECKOUT_COMPLETED = "checkout.session.completed"

_LIVE_STATUSES = frozenset({"active", "trialing"})
_ENDED_STATUSES = frozenset({"canceled", "cancelled", "incomplete_expired"})


@dataclass(frozen=True)
class BillingEvent:
    id: str
    type: str
    created: Optional[datetime]
    data: Dict[str, Any]

    @classmethod
    def from_payload(cls, payload: Mapping[str, Any]) -> "BillingEvent":
        if not isinstance(payload, Mapping):
            raise ValidationError("billing event must be a JSON object")
        event_type = payload.get("type")
        if not isinstance(event_type, str) or not event_type:
            raise ValidationError("billing event has no type", detail={"field": "type"})
        data = payload.get("data") or {}
        obj = data.get("object") if isinstance(data, Mapping) else None
        if not isinstance(obj, Mapping):
            raise ValidationError(
                "billing event has no data object", detail={"field": "data.object"}
            )
        created = payload.get("created")
        created_at: Optional[datetime] = None
        if created is not None:
            try:
                created_at = datetime.fromtimestamp(int(created), tz=timezone.utc)
            except (TypeError, ValueError, OverflowError) as exc:
                raise ValidationError(
                    "billing event timestamp is malformed", detail={"field": "created"}
                ) from exc
        return cls(
            id=str(payload.get("id") or ""),
            type=event_type,
            created=created_at,
            data=dict(obj),
        )


@dataclass
class BillingOutcome:
    """What applying one event did.

    ``status`` is one of applied, ignored, stale, unmatched or conflict; conflict
    means a checkout named a customer id already linked to another account.
    """

    event_id: str
    event_type: str
    status: str
    account_id: Optional[str] = None
    tier: Optional[Tier] = None
    subscription_status: Optional[SubscriptionStatus] = None
    sessions_revoked: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "event_id": self.event_id,
            "event_type": self.event_type,
            "status": self.status,
            "account_id": self.account_id,
            "tier": self.tier.value if self.tier else None,
            "subscription_status": (
                self.subscription_status.value if self.subscription_status else None
            ),
            "sessions_revoked": self.sessions_revoked,
        }


def _first_price_id(container: Any) -> Optional[str]:
    """Price id of the first line in a Stripe-style ``{"data": [...]}`` list."""
    if not isinstance(container, Mapping):
        return None
    lines = container.get("data")
    if not isinstance(lines, list) or not lines:
        return None
    first = lines[0]
    if not isinstance(first, Mapping):
        return None
    price = first.get("price") or first.get("plan")
    if isinstance(price, Mapping):
        price_id = price.get("id")
        return price_id if isinstance(price_id, str) else None
    return None


def verify_webhook_signature(
    payload: bytes,
    header: Optional[str],
    secret: str,
    *,
    tolerance_seconds: int = 300,
    now: Optional[float] = None,
) -> None:
    """Check a ``t=<unix>,v1=<hex>`` signature header over ``payload``.

    The signed message is ``"<t>.<payload>"`` under HMAC-SHA256. Raises
    ``AuthenticationError`` when no ``v1`` value matches or the timestamp is
    outside ``tolerance_seconds``.
    """
    if not header:
        raise AuthenticationError("missing webhook signature", error_code="invalid_signature")
    timestamp: Optional[str] = None
    candidates: list[str] = []
    for part in header.split(","):
        key, _, value = part.strip().partition("=")
        if key == "t":
            timestamp = value
        elif key == "v1" and value:
            candidates.append(value)
    if timestamp is None or not candidates:
        raise AuthenticationError("malformed webhook signature", error_code="invalid_signature")
    try:
        signed_at = int(timestamp)
    except ValueError as exc:
        raise AuthenticationError(
            "malformed webhook signature", error_code="invalid_signature"
        ) from exc
    current = time.time() if now is None else now
    if tolerance_seconds > 0 and abs(current - signed_at) > tolerance_seconds:
        raise AuthenticationError(
            "webhook signature timestamp outside tolerance", error_code="invalid_signature"
        )
    signed_payload = f"{timestamp}.".encode() + payload
    expected = hmac.new(secret.encode("utf-8"), signed_payload, hashlib.sha256).hexdigest()
    if not any(hmac.compare_digest(expected.encode(), c.encode("utf-8")) for c in candidates):
        raise AuthenticationError("webhook signature mismatch", error_code="invalid_signature")


class BillingReconciler:
    """Folds payment-processor events into account tier and status.

    Every change is a plain overwrite, so redelivered events are harmless.
    Events older than the last one applied to an account are skipped.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionRegistry,
        settings: Settings,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.price_tiers: Dict[str, Tier] = {
            price: Tier(tier) for price, tier in settings.billing_price_tiers.items()
        }
        self.logger = logger

    def tier_for_price(self, price_id: Optional[str]) -> Optional[Tier]:
        if not price_id:
            return None
        return self.price_tiers.get(price_id)

    def apply_billing_event(self, event: BillingEvent | Mapping[str, Any]) -> BillingOutcome:
        if not isinstance(event, BillingEvent):
            event = BillingEvent.from_payload(event)
        if event.type == CHECKOUT_COMPLETED:
            return self._link_checkout(event)
        if event.type in SUBSCRIPTION_CHANGED:
            tier, status = self._subscription_state(event.data)
            return self._overwrite(event, tier, status)
        if event.type == SUBSCRIPTION_DELETED:
            return self._overwrite(event, Tier.FREE, SubscriptionStatus.CANCELLED)
        if event.type in INVOICE_PAID:
            tier = self.tier_for_price(_first_price_id(event.data.get("lines")))
            return self._overwrite(event, tier, SubscriptionStatus.ACTIVE)
        if event.type == INVOICE_FAILED:
            return self._overwrite(event, None, SubscriptionStatus.INACTIVE)
        self.logger.debug("billing_event_ignored", event_id=event.id, event_type=event.type)
        return BillingOutcome(event.id, event.type, "ignored")

    def _subscription_state(
        self, subscription: Mapping[str, Any]
    ) -> tuple[Tier, SubscriptionStatus]:
        price_id = _first_price_id(subscription.get("items"))
        if price_id is None:
            plan = subscription.get("plan")
            if isinstance(plan, Mapping) and isinstance(plan.get("id"), str):
                price_id = plan["id"]
        tier = self.tier_for_price(price_id) or Tier.FREE
        raw_status = str(subscription.get("status") or "").lower()
        if raw_status in _LIVE_STATUSES:
            return tier, SubscriptionStatus.ACTIVE
        if raw_status in _ENDED_STATUSES:
            return Tier.FREE, SubscriptionStatus.CANCELLED
        return tier, SubscriptionStatus.INACTIVE

    def _account_for_customer(self, data: Mapping[str, Any]) -> Optional[Account]:
        customer = data.get("customer")
        if not isinstance(customer, str) or not customer:
            return None
        return self.credentials.find_by_external_billing_id(customer)

    def _overwrite(
        self,
        event: BillingEvent,
        tier: Optional[Tier],
        status: SubscriptionStatus,
    ) -> BillingOutcome:
        account = self._account_for_customer(event.data)
        if account is None:
            self.logger.warning(
                "billing_event_unmatched",
                event_id=event.id,
                event_type=event.type,
                customer=event.data.get("customer"),
            )
            return BillingOutcome(event.id, event.type, "unmatched")
        if (
            event.created is not None
            and account.billing_synced_at is not None
            and event.created < account.billing_synced_at
        ):
            self.logger.info(
                "billing_event_stale",
                event_id=event.id,
                event_type=event.type,
                account_id=account.id,
            )
            return BillingOutcome(event.id, event.type, "stale", account_id=account.id)

        new_tier = tier or account.tier
        updated = self.credentials.update_tier(
            new_tier,
            status,
            account_id=account.id,
            billing_synced_at=event.created,
        )
        if updated is None:
            return BillingOutcome(event.id, event.type, "unmatched", account_id=account.id)
        revoked = 0
        if new_tier.rank < account.tier.rank:
            revoked = self.sessions.revoke_all(account.id)
        self.logger.info(
            "billing_event_applied",
            event_id=event.id,
            event_type=event.type,
            account_id=account.id,
            tier=new_tier.value,
            subscription_status=status.value,
            sessions_revoked=revoked,
        )
        return BillingOutcome(
            event.id,
            event.type,
            "applied",
            account_id=account.id,
            tier=updated.tier,
            subscription_status=updated.subscription_status,
            sessions_revoked=revoked,
        )

    def _link_checkout(self, event: BillingEvent) -> BillingOutcome:
        customer = event.data.get("customer")
        if not isinstance(customer, str) or not customer:
            return BillingOutcome(event.id, event.type, "ignored")
        reference = event.data.get("client_reference_id")
        account: Optional[Account] = None
        if isinstance(reference, str) and reference:
            account = self.credentials.find_by_id(reference)
        if account is None:
            details = event.data.get("customer_details")
            email = event.data.get("customer_email")
            if not email and isinstance(details, Mapping):
                email = details.get("email")
            if isinstance(email, str) and email:
                account = self.credentials.find_by_email(email)
        if account is None:
            self.logger.warning("billing_checkout_unmatched", event_id=event.id)
            return BillingOutcome(event.id, event.type, "unmatched")
        try:
            self.credentials.set_external_billing_id(account.id, customer)
        except ValidationError:
            # customer id already belongs to a different account
            self.logger.warning(
                "billing_checkout_conflict", event_id=event.id, account_id=account.id
            )
            return BillingOutcome(event.id, event.type, "conflict", account_id=account.id)
        self.logger.info(
            "billing_customer_linked", event_id=event.id, account_id=account.id
        )
        return BillingOutcome(
            event.id,
            event.type,
            "applied",
            account_id=account.id,
            tier=account.tier,
            subscription_status=account.subscription_status,
        )
