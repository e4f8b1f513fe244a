from __future__ import annotations

from dataclasses import dataclass
from typing import Optional

from framesense.logging import email_fingerprint, get_logger
from framesense.service.credentials import CredentialStore
from framesense.service.errors import (
    AuthenticationError,
    InvalidCredentialsError,
    InvalidTokenError,
    SessionExpiredError,
    UserNotFoundError,
)
from framesense.service.sessions import SessionRegistry
from framesense.service.tokens import TokenCodec
from framesense.storage.models import Account

logger = get_logger(__name__)


def extract_bearer(header: Optional[str]) -> Optional[str]:
    if not header:
        return None
    scheme, _, value = header.strip().partition(" ")
    if scheme.lower() != "bearer":
        return None
    return value.strip() or None


@dataclass
class AuthResult:
    account: Account
    token: str


class AuthService:
    """Registration, login, token verification and logout.

    A token is accepted only when its signature and expiry check out *and*
    a live session row exists for it, so logout takes effect immediately.
    """

    def __init__(
        self,
        credentials: CredentialStore,
        sessions: SessionRegistry,
        tokens: TokenCodec,
    ) -> None:
        self.credentials = credentials
        self.sessions = sessions
        self.tokens = tokens
        self.logger = logger

    def _open_session(self, account: Account) -> str:
        token = self.tokens.issue(account.id, account.email)
        self.sessions.create(account.id, token)
        return token

    async def register(self, email: str, password: str, name: str) -> AuthResult:
        account = self.credentials.create_account(email, password, name)
        token = self._open_session(account)
        self.logger.info("account_registered", account_id=account.id, tier=account.tier.value)
        return AuthResult(account=account, token=token)

    async def login(self, email: str, password: str) -> AuthResult:
        account = self.credentials.find_by_email(email)
        if account is None:
            self.credentials.burn_verify(password)
            self.logger.info("login_failed", addr_hash=email_fingerprint(email or ""))
            raise InvalidCredentialsError("invalid email or password")
        if not self.credentials.verify_password(account, password):
            self.logger.info("login_failed", addr_hash=email_fingerprint(account.email))
            raise InvalidCredentialsError("invalid email or password")
        account = self.credentials.rehash_if_needed(account, password)
        token = self._open_session(account)
        self.logger.info("login_succeeded", account_id=account.id)
        return AuthResult(account=account, token=token)

    async def verify(self, token: str) -> Account:
        claims = self.tokens.verify(token)
        if not self.sessions.is_live(claims.account_id, token):
            raise SessionExpiredError("session has expired or was revoked")
        account = self.credentials.find_by_id(claims.account_id)
        if account is None:
            raise UserNotFoundError("account no longer exists")
        return account

    async def logout(self, token: Optional[str]) -> None:
        if not token:
            return
        try:
            claims = self.tokens.verify(token)
        except InvalidTokenError as exc:
            self.logger.info("logout_token_rejected", reason=exc.message)
            return
        self.sessions.revoke_all(claims.account_id)
        self.logger.info("logout", account_id=claims.account_id)

    async def change_password(
        self, token: str, current_password: str, new_password: str
    ) -> AuthResult:
        """Replace the password, end every session and hand back a fresh token."""
        account = await self.verify(token)
        if not self.credentials.verify_password(account, current_password):
            self.logger.info("password_change_rejected", account_id=account.id)
            raise InvalidCredentialsError("current password is incorrect")
        account = self.credentials.change_password(account.id, new_password)
        self.sessions.revoke_all(account.id)
        new_token = self._open_session(account)
        return AuthResult(account=account, token=new_token)

    async def authenticate(self, authorization: Optional[str]) -> Account:
        token = extract_bearer(authorization)
        if not token:
            raise AuthenticationError("bearer token required")
        return await self.verify(token)
