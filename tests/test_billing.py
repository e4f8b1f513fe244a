"""Tests for billing-event reconciliation and webhook signatures."""

import asyncio
import hashlib
import hmac
import time

import pytest

from framesense.config import SubscriptionStatus, Tier
from framesense.service.auth import AuthService
from framesense.service.billing import BillingEvent, BillingReconciler, verify_webhook_signature
from framesense.service.credentials import CredentialStore
from framesense.service.errors import AuthenticationError, SessionExpiredError, ValidationError
from framesense.service.sessions import SessionRegistry
from framesense.service.tokens import TokenCodec
from framesense.storage.memory import MemoryStore


@pytest.fixture
def memory_store():
    return MemoryStore()


@pytest.fixture
def credentials(memory_store, settings):
    return CredentialStore(memory_store, settings)


@pytest.fixture
def sessions(memory_store, settings):
    return SessionRegistry(memory_store, settings)


@pytest.fixture
def reconciler(credentials, sessions, settings):
    return BillingReconciler(credentials, sessions, settings)


@pytest.fixture
def customer(credentials):
    """A premium account linked to billing customer cus_1."""
    account = credentials.create_account("a@x.com", "secret1", "A")
    return credentials.set_external_billing_id(account.id, "cus_1")


def _subscription_event(event_type, price="price_pro_monthly", status="active", created=1000, event_id="evt_1"):
    return {
        "id": event_id,
        "type": event_type,
        "created": created,
        "data": {
            "object": {
                "customer": "cus_1",
                "status": status,
                "items": {"data": [{"price": {"id": price}}]},
            }
        },
    }


def _cancel_event(created=2000, event_id="evt_cancel"):
    return {
        "id": event_id,
        "type": "customer.subscription.deleted",
        "created": created,
        "data": {"object": {"customer": "cus_1", "status": "canceled"}},
    }


class TestSubscriptionEvents:
    """Tests for subscription lifecycle events."""

    def test_upgrade_from_price(self, reconciler, credentials, customer):
        """A subscription on a pro price makes the account pro and active."""
        outcome = reconciler.apply_billing_event(_subscription_event("customer.subscription.updated"))
        assert outcome.status == "applied"
        account = credentials.find_by_id(customer.id)
        assert account.tier == Tier.PRO
        assert account.subscription_status == SubscriptionStatus.ACTIVE

    def test_unknown_price_maps_to_free(self, reconciler, credentials, customer):
        """Prices outside the table resolve to the free tier."""
        reconciler.apply_billing_event(
            _subscription_event("customer.subscription.created", price="price_mystery")
        )
        assert credentials.find_by_id(customer.id).tier == Tier.FREE

    def test_past_due_keeps_tier_but_deactivates(self, reconciler, credentials, customer):
        """A past-due subscription keeps the price tier with inactive status."""
        reconciler.apply_billing_event(
            _subscription_event("customer.subscription.updated", status="past_due")
        )
        account = credentials.find_by_id(customer.id)
        assert account.tier == Tier.PRO
        assert account.subscription_status == SubscriptionStatus.INACTIVE

    def test_cancellation_is_idempotent(self, reconciler, credentials, customer):
        """Replaying the same cancellation leaves free/cancelled, not toggled."""
        event = _cancel_event()
        first = reconciler.apply_billing_event(event)
        second = reconciler.apply_billing_event(event)
        account = credentials.find_by_id(customer.id)
        assert first.status == second.status == "applied"
        assert account.tier == Tier.FREE
        assert account.subscription_status == SubscriptionStatus.CANCELLED

    def test_stale_event_skipped(self, reconciler, credentials, customer):
        """An update older than the last applied event does not undo it."""
        reconciler.apply_billing_event(_cancel_event(created=2000))
        outcome = reconciler.apply_billing_event(
            _subscription_event("customer.subscription.updated", created=1000)
        )
        assert outcome.status == "stale"
        assert credentials.find_by_id(customer.id).tier == Tier.FREE

    def test_newer_event_overwrites(self, reconciler, credentials, customer):
        """A later resubscription wins over an earlier cancellation."""
        reconciler.apply_billing_event(_cancel_event(created=2000))
        reconciler.apply_billing_event(
            _subscription_event("customer.subscription.created", created=3000, event_id="evt_2")
        )
        assert credentials.find_by_id(customer.id).tier == Tier.PRO

    def test_unmatched_customer(self, reconciler):
        """Events for unknown customers change nothing."""
        outcome = reconciler.apply_billing_event(_cancel_event())
        assert outcome.status == "unmatched"

    def test_unknown_event_type_ignored(self, reconciler, customer):
        """Event types outside the handled set are ignored."""
        outcome = reconciler.apply_billing_event(
            {"id": "evt", "type": "charge.refunded", "data": {"object": {"customer": "cus_1"}}}
        )
        assert outcome.status == "ignored"

    def test_malformed_event_rejected(self, reconciler):
        """Payloads without a type or data object are validation errors."""
        with pytest.raises(ValidationError):
            reconciler.apply_billing_event({"data": {"object": {}}})
        with pytest.raises(ValidationError):
            reconciler.apply_billing_event({"type": "invoice.paid"})


class TestInvoiceEvents:
    """Tests for invoice events."""

    def test_payment_failed_keeps_tier(self, reconciler, credentials, customer):
        """A failed payment marks the subscription inactive without a tier change."""
        reconciler.apply_billing_event(
            {"id": "evt", "type": "invoice.payment_failed", "created": 10,
             "data": {"object": {"customer": "cus_1"}}}
        )
        account = credentials.find_by_id(customer.id)
        assert account.tier == Tier.PREMIUM
        assert account.subscription_status == SubscriptionStatus.INACTIVE

    def test_payment_succeeded_uses_line_price(self, reconciler, credentials, customer):
        """A paid invoice reactivates and takes the tier from its line price."""
        reconciler.apply_billing_event(
            {
                "id": "evt",
                "type": "invoice.payment_succeeded",
                "created": 10,
                "data": {
                    "object": {
                        "customer": "cus_1",
                        "lines": {"data": [{"price": {"id": "price_pro_yearly"}}]},
                    }
                },
            }
        )
        account = credentials.find_by_id(customer.id)
        assert account.tier == Tier.PRO
        assert account.subscription_status == SubscriptionStatus.ACTIVE


class TestCheckout:
    """Tests for linking a checkout to an account."""

    def test_links_by_client_reference(self, reconciler, credentials):
        """client_reference_id names the account that gets the customer id."""
        account = credentials.create_account("b@x.com", "secret1", "B")
        outcome = reconciler.apply_billing_event(
            {
                "id": "evt",
                "type": "checkout.session.completed",
                "data": {"object": {"customer": "cus_9", "client_reference_id": account.id}},
            }
        )
        assert outcome.status == "applied"
        assert credentials.find_by_external_billing_id("cus_9").id == account.id

    def test_links_by_email(self, reconciler, credentials):
        """Without a reference the customer email is used."""
        account = credentials.create_account("b@x.com", "secret1", "B")
        reconciler.apply_billing_event(
            {
                "id": "evt",
                "type": "checkout.session.completed",
                "data": {
                    "object": {"customer": "cus_9", "customer_details": {"email": "B@x.com"}}
                },
            }
        )
        assert credentials.find_by_external_billing_id("cus_9").id == account.id

    def test_customer_linked_elsewhere_is_conflict(self, reconciler, credentials, customer):
        """A customer id already held by another account is not moved."""
        account = credentials.create_account("b@x.com", "secret1", "B")
        outcome = reconciler.apply_billing_event(
            {
                "id": "evt",
                "type": "checkout.session.completed",
                "data": {"object": {"customer": "cus_1", "client_reference_id": account.id}},
            }
        )
        assert outcome.status == "conflict"
        assert credentials.find_by_external_billing_id("cus_1").id == customer.id
        assert credentials.find_by_id(account.id).external_billing_id is None


class TestBillingIdByEmail:
    """Tests for CredentialStore.update_external_billing_id."""

    def test_links_by_normalized_email(self, credentials):
        account = credentials.create_account("d@x.com", "secret1", "D")
        updated = credentials.update_external_billing_id(" D@X.com", "cus_7")
        assert updated.id == account.id
        assert credentials.find_by_external_billing_id("cus_7").id == account.id

    def test_unknown_email(self, credentials):
        assert credentials.update_external_billing_id("ghost@x.com", "cus_7") is None

    def test_taken_billing_id_rejected(self, credentials, customer):
        credentials.create_account("e@x.com", "secret1", "E")
        with pytest.raises(ValidationError):
            credentials.update_external_billing_id("e@x.com", "cus_1")
        assert credentials.find_by_external_billing_id("cus_1").id == customer.id


class TestDowngradeRevocation:
    """Tests for ending sessions when the tier drops."""

    def test_downgrade_revokes_sessions(self, memory_store, credentials, sessions, reconciler, settings):
        """After a cancellation the account must sign in again."""
        auth = AuthService(credentials, sessions, TokenCodec(settings))
        result = asyncio.run(auth.register("c@x.com", "secret1", "C"))
        credentials.set_external_billing_id(result.account.id, "cus_1")

        outcome = reconciler.apply_billing_event(_cancel_event())
        assert outcome.sessions_revoked == 1
        with pytest.raises(SessionExpiredError):
            asyncio.run(auth.verify(result.token))

    def test_upgrade_keeps_sessions(self, credentials, sessions, reconciler, settings):
        """Moving up a tier does not sign anyone out."""
        auth = AuthService(credentials, sessions, TokenCodec(settings))
        result = asyncio.run(auth.register("c@x.com", "secret1", "C"))
        credentials.set_external_billing_id(result.account.id, "cus_1")

        outcome = reconciler.apply_billing_event(_subscription_event("customer.subscription.updated"))
        assert outcome.sessions_revoked == 0
        assert asyncio.run(auth.verify(result.token)).tier == Tier.PRO


class TestPriceTable:
    """Tests for the configurable price table."""

    def test_custom_price_table(self, credentials, sessions, settings_factory, customer):
        """Price ids come from settings."""
        settings = settings_factory(billing_price_tiers='{"price_ent": "enterprise"}')
        reconciler = BillingReconciler(credentials, sessions, settings)
        reconciler.apply_billing_event(
            _subscription_event("customer.subscription.updated", price="price_ent")
        )
        assert credentials.find_by_id(customer.id).tier == Tier.ENTERPRISE


class TestEventParsing:
    """Tests for BillingEvent.from_payload."""

    def test_created_timestamp_parsed(self):
        """created becomes a UTC datetime."""
        event = BillingEvent.from_payload(_cancel_event(created=0))
        assert event.created.year == 1970
        assert event.data["customer"] == "cus_1"


def _sign(payload: bytes, secret: str, timestamp: int) -> str:
    digest = hmac.new(secret.encode(), f"{timestamp}.".encode() + payload, hashlib.sha256)
    return f"t={timestamp},v1={digest.hexdigest()}"


class TestWebhookSignature:
    """Tests for verify_webhook_signature."""

    SECRET = "whsec_test"

    def test_valid_signature(self):
        """A correctly signed payload passes."""
        now = int(time.time())
        verify_webhook_signature(b"{}", _sign(b"{}", self.SECRET, now), self.SECRET, now=now)

    def test_tampered_payload(self):
        """A body that differs from the signed one fails."""
        now = int(time.time())
        with pytest.raises(AuthenticationError):
            verify_webhook_signature(b'{"a":1}', _sign(b"{}", self.SECRET, now), self.SECRET, now=now)

    def test_old_timestamp(self):
        """Signatures outside the tolerance window fail."""
        now = int(time.time())
        header = _sign(b"{}", self.SECRET, now - 600)
        with pytest.raises(AuthenticationError):
            verify_webhook_signature(b"{}", header, self.SECRET, tolerance_seconds=300, now=now)

    @pytest.mark.parametrize("header", [None, "", "garbage", "t=abc,v1=00", "t=1"])
    def test_malformed_header(self, header):
        """Missing or malformed headers fail."""
        with pytest.raises(AuthenticationError):
            verify_webhook_signature(b"{}", header, self.SECRET, now=1)

    def test_any_v1_may_match(self):
        """During secret rotation one of several v1 values is enough."""
        now = int(time.time())
        good = _sign(b"{}", self.SECRET, now).split(",")[1]
        header = f"t={now},v1=deadbeef,{good}"
        verify_webhook_signature(b"{}", header, self.SECRET, now=now)
