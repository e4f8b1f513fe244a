from __future__ import annotations

import base64
import hashlib
import hmac
import json
import uuid
from dataclasses import dataclass
from datetime import datetime, timedelta, timezone
from typing import Any

from framesense.config import MIN_JWT_SECRET_LENGTH, Settings
from framesense.logging import get_logger
from framesense.service.errors import InvalidTokenError

logger = get_logger(__name__)


@dataclass(frozen=True)
class TokenClaims:
    account_id: str
    email: str
    issued_at: datetime
    expires_at: datetime
    token_id: str


class TokenCodec:
    """Signs and checks HS256 bearer tokens.

    Tokens carry identity only (``sub`` and ``email``); tier and status are
    always read from the account row.
    """

    def __init__(self, settings: Settings) -> None:
        secret = settings.jwt_secret or ""
        if len(secret) < MIN_JWT_SECRET_LENGTH:
            raise ValueError(
                f"token signing secret must be at least {MIN_JWT_SECRET_LENGTH} characters"
            )
        self._secret = secret.encode("utf-8")
        self.issuer = settings.jwt_issuer
        self.audience = settings.jwt_audience
        self.ttl = timedelta(days=settings.session_ttl_days)

    def _now(self) -> datetime:
        return datetime.now(timezone.utc)

    def issue(self, account_id: str, email: str) -> str:
        now = self._now()
        payload = {
            "sub": account_id,
            "email": email,
            "iat": int(now.timestamp()),
            "exp": int((now + self.ttl).timestamp()),
            "jti": str(uuid.uuid4()),
            "iss": self.issuer,
            "aud": self.audience,
        }
        return self._encode_jwt(payload)

    def verify(self, token: str) -> TokenClaims:
        payload = self._decode_jwt(token)
        account_id = payload.get("sub")
        email = payload.get("email")
        if not isinstance(account_id, str) or not account_id or not isinstance(email, str):
            raise InvalidTokenError("token is missing identity claims")
        try:
            issued_at = datetime.fromtimestamp(float(payload.get("iat", 0)), tz=timezone.utc)
            expires_at = datetime.fromtimestamp(float(payload["exp"]), tz=timezone.utc)
        except (TypeError, ValueError, OverflowError) as exc:
            raise InvalidTokenError("token timestamps are malformed") from exc
        return TokenClaims(
            account_id=account_id,
            email=email,
            issued_at=issued_at,
            expires_at=expires_at,
            token_id=str(payload.get("jti") or ""),
        )

    def _encode_segment(self, data: bytes) -> str:
        return base64.urlsafe_b64encode(data).decode("utf-8").rstrip("=")

    def _decode_segment(self, segment: str) -> bytes:
        padding = "=" * ((4 - len(segment) % 4) % 4)
        return base64.urlsafe_b64decode(segment + padding)

    def _sign(self, signing_input: str) -> str:
        return self._encode_segment(
            hmac.new(self._secret, signing_input.encode(), hashlib.sha256).digest()
        )

    def _encode_jwt(self, payload: dict[str, Any]) -> str:
        header = {"alg": "HS256", "typ": "JWT"}
        header_enc = self._encode_segment(
            json.dumps(header, separators=(",", ":")).encode()
        )
        payload_enc = self._encode_segment(
            json.dumps(payload, separators=(",", ":")).encode()
        )
        signing_input = f"{header_enc}.{payload_enc}"
        return f"{signing_input}.{self._sign(signing_input)}"

    def _decode_jwt(self, token: str) -> dict[str, Any]:
        if not isinstance(token, str):
            raise InvalidTokenError("token is malformed")
        try:
            header_b64, payload_b64, sig_b64 = token.split(".")
        except ValueError as exc:
            raise InvalidTokenError("token is malformed") from exc

        # only HS256 is accepted; "none" and asymmetric algs are rejected outright
        try:
            header = json.loads(self._decode_segment(header_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_header_decode_failed")
            raise InvalidTokenError("token header is malformed") from exc
        if not isinstance(header, dict) or header.get("alg") != "HS256":
            logger.warning(
                "jwt_invalid_algorithm",
                alg=header.get("alg") if isinstance(header, dict) else None,
            )
            raise InvalidTokenError("token algorithm is not accepted")

        expected_sig = self._sign(f"{header_b64}.{payload_b64}")
        if not hmac.compare_digest(expected_sig.encode(), sig_b64.encode("utf-8")):
            raise InvalidTokenError("token signature is invalid")
        try:
            payload = json.loads(self._decode_segment(payload_b64))
        except (ValueError, UnicodeDecodeError) as exc:
            logger.warning("jwt_payload_decode_failed", error=str(exc))
            raise InvalidTokenError("token payload is malformed") from exc
        if not isinstance(payload, dict):
            raise InvalidTokenError("token payload is malformed")
        if payload.get("iss") != self.issuer:
            raise InvalidTokenError("token issuer is not accepted")
        aud = payload.get("aud")
        if isinstance(aud, str):
            valid_aud = aud == self.audience
        elif isinstance(aud, list):
            valid_aud = self.audience in aud
        else:
            valid_aud = False
        if not valid_aud:
            raise InvalidTokenError("token audience is not accepted")
        exp = payload.get("exp")
        if exp is None:
            raise InvalidTokenError("token has no expiry")
        try:
            exp_ts = float(exp)
        except (TypeError, ValueError) as exc:
            raise InvalidTokenError("token expiry is malformed") from exc
        # exp is strict, no clock-skew allowance
        if exp_ts <= self._now().timestamp():
            raise InvalidTokenError("token has expired")
        return payload
