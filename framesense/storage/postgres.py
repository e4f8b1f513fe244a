from __future__ import annotations

from datetime import date, datetime
from typing import Any, Dict, Optional

from psycopg import errors
from psycopg.rows import dict_row
from psycopg_pool import ConnectionPool

from framesense.config import SubscriptionStatus, Tier
from framesense.logging import get_logger
from framesense.storage.errors import ConstraintViolation
from framesense.storage.models import Account, Session

_ACCOUNT_COLUMNS = (
    "id, email, name, password_hash, tier, subscription_status, external_billing_id, "
    "usage_daily, usage_total, usage_reset_date, billing_synced_at, created_at, updated_at"
)

_UPDATABLE_ACCOUNT_COLUMNS = (
    "name",
    "password_hash",
    "tier",
    "subscription_status",
    "external_billing_id",
    "billing_synced_at",
)

SCHEMA_STATEMENTS = (
    """
    CREATE TABLE IF NOT EXISTS accounts (
        id UUID PRIMARY KEY,
        email TEXT NOT NULL UNIQUE,
        name TEXT NOT NULL,
        password_hash TEXT NOT NULL,
        tier TEXT NOT NULL DEFAULT 'free'
            CHECK (tier IN ('free', 'premium', 'pro', 'enterprise')),
        subscription_status TEXT NOT NULL DEFAULT 'inactive'
            CHECK (subscription_status IN ('inactive', 'active', 'cancelled')),
        external_billing_id TEXT,
        usage_daily INTEGER NOT NULL DEFAULT 0,
        usage_total INTEGER NOT NULL DEFAULT 0,
        usage_reset_date DATE NOT NULL DEFAULT CURRENT_DATE,
        billing_synced_at TIMESTAMPTZ,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now(),
        updated_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "DROP INDEX IF EXISTS idx_accounts_external_billing_id",
    # one account per billing customer
    "CREATE UNIQUE INDEX IF NOT EXISTS uq_accounts_external_billing_id "
    "ON accounts (external_billing_id) WHERE external_billing_id IS NOT NULL",
    """
    CREATE TABLE IF NOT EXISTS sessions (
        id UUID PRIMARY KEY,
        account_id UUID NOT NULL REFERENCES accounts(id) ON DELETE CASCADE,
        token_fingerprint TEXT NOT NULL,
        expires_at TIMESTAMPTZ NOT NULL,
        created_at TIMESTAMPTZ NOT NULL DEFAULT now()
    )
    """,
    "CREATE INDEX IF NOT EXISTS idx_sessions_account_fingerprint ON sessions (account_id, token_fingerprint)",
    "CREATE INDEX IF NOT EXISTS idx_sessions_expires_at ON sessions (expires_at)",
)


def _account_from_row(row: Dict[str, Any]) -> Account:
    return Account(
        id=str(row["id"]),
        email=row["email"],
        name=row["name"],
        password_hash=row["password_hash"],
        tier=Tier(row["tier"]),
        subscription_status=SubscriptionStatus(row["subscription_status"]),
        external_billing_id=row.get("external_billing_id"),
        usage_daily=row.get("usage_daily") or 0,
        usage_total=row.get("usage_total") or 0,
        usage_reset_date=row["usage_reset_date"],
        billing_synced_at=row.get("billing_synced_at"),
        created_at=row["created_at"],
        updated_at=row["updated_at"],
    )


def _violated_field(exc: errors.UniqueViolation) -> str:
    constraint = getattr(exc.diag, "constraint_name", None) or ""
    if "external_billing_id" in constraint:
        return "external_billing_id"
    return "email"


def _session_from_row(row: Dict[str, Any]) -> Session:
    return Session(
        id=str(row["id"]),
        account_id=str(row["account_id"]),
        token_fingerprint=row["token_fingerprint"],
        expires_at=row["expires_at"],
        created_at=row["created_at"],
    )


class PostgresStore:
    """Postgres-backed account and session store."""

    def __init__(self, dsn: str, *, min_size: int = 1, max_size: int = 10) -> None:
        self.dsn = dsn
        self.logger = get_logger(__name__)
        self.pool = ConnectionPool(
            self.dsn,
            min_size=min_size,
            max_size=max_size,
            kwargs={"row_factory": dict_row, "autocommit": False},
        )
        self.ensure_schema()

    def _connect(self):
        return self.pool.connection()

    def ensure_schema(self) -> None:
        """Create the ``accounts`` and ``sessions`` tables if they are missing."""

        with self._connect() as conn:
            for statement in SCHEMA_STATEMENTS:
                conn.execute(statement)

    def verify_connection(self) -> None:
        with self._connect() as conn:
            conn.execute("SELECT 1").fetchone()

    def close(self) -> None:
        self.pool.close()

    # accounts
    def create_account(self, account: Account) -> Account:
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    INSERT INTO accounts ({_ACCOUNT_COLUMNS})
                    VALUES (%s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s, %s)
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (
                        account.id,
                        account.email,
                        account.name,
                        account.password_hash,
                        account.tier.value,
                        account.subscription_status.value,
                        account.external_billing_id,
                        account.usage_daily,
                        account.usage_total,
                        account.usage_reset_date,
                        account.billing_synced_at,
                        account.created_at,
                        account.updated_at,
                    ),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", field=field) from exc
        return _account_from_row(row)

    def get_account(self, account_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE id = %s", (account_id,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_email(self, email: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE email = %s", (email,)
            ).fetchone()
        return _account_from_row(row) if row else None

    def get_account_by_billing_id(self, billing_id: str) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"SELECT {_ACCOUNT_COLUMNS} FROM accounts WHERE external_billing_id = %s",
                (billing_id,),
            ).fetchone()
        return _account_from_row(row) if row else None

    def update_account(self, account_id: str, **fields: Any) -> Optional[Account]:
        unknown = set(fields) - set(_UPDATABLE_ACCOUNT_COLUMNS)
        if unknown:
            raise ValueError(f"cannot update account fields: {sorted(unknown)}")
        if not fields:
            return self.get_account(account_id)
        if "tier" in fields:
            fields["tier"] = Tier(fields["tier"]).value
        if "subscription_status" in fields:
            fields["subscription_status"] = SubscriptionStatus(
                fields["subscription_status"]
            ).value
        # column names come from the allow-list above, values are bound
        columns = [col for col in _UPDATABLE_ACCOUNT_COLUMNS if col in fields]
        assignments = ", ".join(f"{col} = %s" for col in columns)
        params = [fields[col] for col in columns]
        try:
            with self._connect() as conn:
                row = conn.execute(
                    f"""
                    UPDATE accounts SET {assignments}, updated_at = now()
                    WHERE id = %s
                    RETURNING {_ACCOUNT_COLUMNS}
                    """,
                    (*params, account_id),
                ).fetchone()
        except errors.UniqueViolation as exc:
            field = _violated_field(exc)
            raise ConstraintViolation(f"{field} already exists", field=field) from exc
        return _account_from_row(row) if row else None

    def increment_usage(
        self, account_id: str, amount: int, today: date
    ) -> Optional[Account]:
        with self._connect() as conn:
            row = conn.execute(
                f"""
                UPDATE accounts
                SET usage_daily = CASE WHEN usage_reset_date < %s THEN 0 ELSE usage_daily END + %s,
                    usage_total = usage_total + %s,
                    usage_reset_date = GREATEST(usage_reset_date, %s),
                    updated_at = now()
                WHERE id = %s
                RETURNING {_ACCOUNT_COLUMNS}
                """,
                (today, amount, amount, today, account_id),
            ).fetchone()
        return _account_from_row(row) if row else None

    def reset_daily_usage(self, today: date) -> int:
        with self._connect() as conn:
            cur = conn.execute(
                """
                UPDATE accounts
                SET usage_daily = 0, usage_reset_date = %s, updated_at = now()
                WHERE usage_reset_date < %s
                """,
                (today, today),
            )
            return cur.rowcount or 0

    # sessions
    def create_session(self, session: Session) -> Session:
        try:
            with self._connect() as conn:
                conn.execute(
                    """
                    INSERT INTO sessions (id, account_id, token_fingerprint, expires_at, created_at)
                    VALUES (%s, %s, %s, %s, %s)
                    """,
                    (
                        session.id,
                        session.account_id,
                        session.token_fingerprint,
                        session.expires_at,
                        session.created_at,
                    ),
                )
        except errors.ForeignKeyViolation as exc:
            raise ConstraintViolation("account does not exist", field="account_id") from exc
        return session

    def find_live_session(
        self, account_id: str, token_fingerprint: str, now: datetime
    ) -> Optional[Session]:
        with self._connect() as conn:
            row = conn.execute(
                """
                SELECT id, account_id, token_fingerprint, expires_at, created_at
                FROM sessions
                WHERE account_id = %s AND token_fingerprint = %s AND expires_at > %s
                LIMIT 1
                """,
                (account_id, token_fingerprint, now),
            ).fetchone()
        return _session_from_row(row) if row else None

    def delete_account_sessions(self, account_id: str) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE account_id = %s", (account_id,))
            return cur.rowcount or 0

    def delete_expired_sessions(self, now: datetime) -> int:
        with self._connect() as conn:
            cur = conn.execute("DELETE FROM sessions WHERE expires_at <= %s", (now,))
            deleted = cur.rowcount or 0
        if deleted:
            self.logger.debug("expired_sessions_deleted", count=deleted)
        return deleted
