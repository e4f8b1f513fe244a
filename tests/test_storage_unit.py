"""Unit tests for the in-memory store."""

import threading
from datetime import date, datetime, timedelta, timezone

import pytest

from framesense.config import SubscriptionStatus, Tier
from framesense.storage.errors import ConstraintViolation
from framesense.storage.memory import MemoryStore
from framesense.storage.models import Account, Session


@pytest.fixture
def memory_store():
    return MemoryStore()


def _account(email="a@x.com", **kwargs) -> Account:
    return Account.new(email, "A", "hash", **kwargs)


class TestAccounts:
    """Tests for account rows."""

    def test_create_and_lookup(self, memory_store):
        """A created account is reachable by id and by email."""
        created = memory_store.create_account(_account())
        assert memory_store.get_account(created.id).email == "a@x.com"
        assert memory_store.get_account_by_email("a@x.com").id == created.id

    def test_duplicate_email_rejected(self, memory_store):
        """A second account with the same email violates the unique constraint."""
        memory_store.create_account(_account())
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.create_account(_account())
        assert exc_info.value.field == "email"

    def test_returned_objects_are_copies(self, memory_store):
        """Mutating a returned account does not change stored state."""
        created = memory_store.create_account(_account())
        created.tier = Tier.ENTERPRISE
        assert memory_store.get_account(created.id).tier == Tier.FREE

    def test_update_is_partial(self, memory_store):
        """Only supplied fields change, and updated_at moves forward."""
        created = memory_store.create_account(
            _account(tier=Tier.PREMIUM, subscription_status=SubscriptionStatus.ACTIVE)
        )
        updated = memory_store.update_account(created.id, tier="pro")
        assert updated.tier == Tier.PRO
        assert updated.subscription_status == SubscriptionStatus.ACTIVE
        assert updated.name == "A"
        assert updated.updated_at >= created.updated_at

    def test_update_unknown_account(self, memory_store):
        """Updating a missing account returns None."""
        assert memory_store.update_account("missing", tier="pro") is None

    def test_update_rejects_unknown_fields(self, memory_store):
        """Counters and identity are not writable through update_account."""
        created = memory_store.create_account(_account())
        with pytest.raises(ValueError):
            memory_store.update_account(created.id, usage_daily=0)

    def test_lookup_by_billing_id(self, memory_store):
        """Accounts are found by their external billing id."""
        created = memory_store.create_account(_account())
        memory_store.update_account(created.id, external_billing_id="cus_123")
        assert memory_store.get_account_by_billing_id("cus_123").id == created.id
        assert memory_store.get_account_by_billing_id("cus_999") is None

    def test_billing_id_is_unique(self, memory_store):
        """A billing id held by one account cannot be written to another."""
        first = memory_store.create_account(_account())
        second = memory_store.create_account(_account("b@x.com"))
        memory_store.update_account(first.id, external_billing_id="cus_123")
        with pytest.raises(ConstraintViolation) as exc_info:
            memory_store.update_account(second.id, external_billing_id="cus_123")
        assert exc_info.value.field == "external_billing_id"
        assert memory_store.get_account(second.id).external_billing_id is None
        # rewriting the holder's own id is fine
        assert memory_store.update_account(first.id, external_billing_id="cus_123")


class TestUsage:
    """Tests for usage counters."""

    def test_increment_same_day(self, memory_store):
        """Increments on the counter's day accumulate."""
        created = memory_store.create_account(_account())
        today = created.usage_reset_date
        memory_store.increment_usage(created.id, 2, today)
        updated = memory_store.increment_usage(created.id, 3, today)
        assert updated.usage_daily == 5
        assert updated.usage_total == 5

    def test_increment_rolls_over_new_day(self, memory_store):
        """The first increment of a new day starts the daily counter from zero."""
        created = memory_store.create_account(_account())
        today = created.usage_reset_date
        memory_store.increment_usage(created.id, 40, today)
        updated = memory_store.increment_usage(created.id, 1, today + timedelta(days=1))
        assert updated.usage_daily == 1
        assert updated.usage_total == 41
        assert updated.usage_reset_date == today + timedelta(days=1)

    def test_reset_daily_usage_counts_stale_rows(self, memory_store):
        """Only accounts whose counter belongs to an earlier day are reset."""
        first = memory_store.create_account(_account("a@x.com"))
        second = memory_store.create_account(_account("b@x.com"))
        today = first.usage_reset_date
        memory_store.increment_usage(first.id, 7, today)
        memory_store.increment_usage(second.id, 3, today + timedelta(days=1))

        assert memory_store.reset_daily_usage(today + timedelta(days=1)) == 1
        assert memory_store.get_account(first.id).usage_daily == 0
        assert memory_store.get_account(first.id).usage_total == 7
        assert memory_store.get_account(second.id).usage_daily == 3

    def test_concurrent_increments_are_not_lost(self, memory_store):
        """Parallel increments all land."""
        created = memory_store.create_account(_account())
        today = created.usage_reset_date

        def worker():
            for _ in range(50):
                memory_store.increment_usage(created.id, 1, today)

        threads = [threading.Thread(target=worker) for _ in range(8)]
        for t in threads:
            t.start()
        for t in threads:
            t.join()
        assert memory_store.get_account(created.id).usage_daily == 400


class TestSessions:
    """Tests for session rows."""

    def test_live_session_found(self, memory_store):
        """A session is found by account and fingerprint until it expires."""
        account = memory_store.create_account(_account())
        now = datetime.now(timezone.utc)
        memory_store.create_session(Session.new(account.id, "fp", timedelta(days=1), now=now))
        assert memory_store.find_live_session(account.id, "fp", now) is not None
        assert memory_store.find_live_session(account.id, "other", now) is None
        assert memory_store.find_live_session(account.id, "fp", now + timedelta(days=2)) is None

    def test_session_requires_account(self, memory_store):
        """Sessions for unknown accounts are rejected."""
        with pytest.raises(ConstraintViolation):
            memory_store.create_session(Session.new("missing", "fp", timedelta(days=1)))

    def test_delete_account_sessions(self, memory_store):
        """All of one account's sessions go; other accounts keep theirs."""
        first = memory_store.create_account(_account("a@x.com"))
        second = memory_store.create_account(_account("b@x.com"))
        for fp in ("one", "two"):
            memory_store.create_session(Session.new(first.id, fp, timedelta(days=1)))
        memory_store.create_session(Session.new(second.id, "three", timedelta(days=1)))

        assert memory_store.delete_account_sessions(first.id) == 2
        assert memory_store.delete_account_sessions(first.id) == 0
        assert len(memory_store.sessions) == 1

    def test_delete_expired_sessions(self, memory_store):
        """The sweep removes only expired rows and is safe to repeat."""
        account = memory_store.create_account(_account())
        now = datetime.now(timezone.utc)
        yesterday = now - timedelta(days=1)
        memory_store.create_session(
            Session.new(account.id, "old", timedelta(hours=1), now=yesterday)
        )
        memory_store.create_session(
            Session.new(account.id, "new", timedelta(days=1), now=now)
        )

        assert memory_store.delete_expired_sessions(now) == 1
        assert memory_store.delete_expired_sessions(now) == 0
        assert memory_store.find_live_session(account.id, "new", now) is not None


class TestModels:
    """Tests for model helpers."""

    def test_effective_usage_ignores_stale_counter(self):
        """A counter from yesterday reads as zero today."""
        account = _account()
        account.usage_daily = 49
        account.usage_reset_date = date.today() - timedelta(days=1)
        assert account.effective_usage_daily(date.today()) == 0

    def test_public_view_hides_hash(self):
        """The client-facing view never includes the password hash."""
        public = _account().to_public()
        assert "password_hash" not in public
        assert public["tier"] == "free"
