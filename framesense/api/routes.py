from __future__ import annotations

import json
from typing import Optional

from fastapi import APIRouter, Depends, Header, Request

from framesense.api.schemas import (
    ChangePasswordRequest,
    Envelope,
    LoginRequest,
    RegisterRequest,
    UsageRequest,
)
from framesense.logging import get_logger
from framesense.service.auth import extract_bearer
from framesense.service.billing import verify_webhook_signature
from framesense.service.errors import AuthenticationError, ValidationError
from framesense.service.runtime import get_runtime
from framesense.storage.models import Account

logger = get_logger(__name__)

router = APIRouter(prefix="/api")
webhook_router = APIRouter()

SIGNATURE_HEADER = "Stripe-Signature"


async def get_account(authorization: Optional[str] = Header(None)) -> Account:
    runtime = get_runtime()
    return await runtime.auth.authenticate(authorization)


@router.post(
    "/auth/register",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def register(body: RegisterRequest):
    """Create an account and sign it in.

    Raises:
        400: duplicate email, weak password or malformed fields
    """
    runtime = get_runtime()
    result = await runtime.auth.register(body.email, body.password, body.name)
    return Envelope(
        success=True,
        user=result.account.to_public(),
        token=result.token,
        message="account created",
    )


@router.post(
    "/auth/login",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def login(body: LoginRequest):
    """Exchange email and password for a bearer token.

    Raises:
        401: unknown email or wrong password (same error for both)
    """
    runtime = get_runtime()
    result = await runtime.auth.login(body.email, body.password)
    return Envelope(
        success=True,
        user=result.account.to_public(),
        token=result.token,
        message="login successful",
    )


@router.get(
    "/auth/verify",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def verify(account: Account = Depends(get_account)):
    return Envelope(success=True, user=account.to_public())


@router.post(
    "/auth/logout",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def logout(authorization: Optional[str] = Header(None)):
    """End every session of the token's account. Always succeeds."""
    runtime = get_runtime()
    await runtime.auth.logout(extract_bearer(authorization))
    return Envelope(success=True, message="logged out")


@router.post(
    "/auth/password",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["auth"],
)
async def change_password(
    body: ChangePasswordRequest,
    authorization: Optional[str] = Header(None),
):
    """Replace the password; all existing sessions end and a new token is returned."""
    token = extract_bearer(authorization)
    if not token:
        raise AuthenticationError("bearer token required")
    runtime = get_runtime()
    result = await runtime.auth.change_password(
        token,
        body.current_password,
        body.new_password,
    )
    return Envelope(
        success=True,
        user=result.account.to_public(),
        token=result.token,
        message="password changed",
    )


@router.get(
    "/account/capabilities",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["account"],
)
async def capabilities(account: Account = Depends(get_account)):
    runtime = get_runtime()
    return Envelope(success=True, data=runtime.tiers.capabilities(account))


@router.post(
    "/usage/authorize",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["usage"],
)
async def authorize_usage(body: UsageRequest, account: Account = Depends(get_account)):
    """Charge quota for one model call before the caller makes it.

    Raises:
        403: model above the account's tier, or daily quota used up
    """
    runtime = get_runtime()
    updated = runtime.tiers.authorize_usage(account, body.model, body.amount)
    return Envelope(success=True, data=runtime.tiers.capabilities(updated))


@webhook_router.post(
    "/webhooks/billing",
    response_model=Envelope,
    response_model_exclude_none=True,
    tags=["billing"],
)
async def billing_webhook(request: Request):
    """Apply a payment-processor event.

    The raw body must carry a valid signature header. Without a configured
    webhook secret every event is refused, unless INSECURE_DEV_MODE is on.

    Raises:
        401: missing, malformed or mismatched signature, or no secret configured
    """
    runtime = get_runtime()
    raw = await request.body()
    settings = runtime.settings
    secret = settings.billing_webhook_secret
    if secret:
        verify_webhook_signature(
            raw,
            request.headers.get(SIGNATURE_HEADER),
            secret,
            tolerance_seconds=settings.billing_webhook_tolerance_seconds,
        )
    elif not settings.insecure_dev_mode:
        logger.warning("billing_webhook_refused", reason="no_webhook_secret")
        raise AuthenticationError(
            "billing webhook secret is not configured", error_code="invalid_signature"
        )
    try:
        payload = json.loads(raw or b"null")
    except ValueError as exc:
        raise ValidationError("webhook body is not valid JSON") from exc
    outcome = runtime.billing.apply_billing_event(payload)
    return Envelope(success=True, data=outcome.to_dict())
