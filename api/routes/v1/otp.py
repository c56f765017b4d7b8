"""
api/routes/v1/otp.py -- One-time code delivery and pre-checks.

Routes (mounted under /api, signature required, all public):
  POST /sms           -- send a code to a phone number
  POST /sms/verify    -- check a code without consuming it
  POST /email         -- send a code to an email address
  POST /email/verify  -- check a code without consuming it

The verify endpoints let a form tell the user early that a code is wrong. The
operation that relies on the code (signup, OTP login, reset, bind) consumes it.
"""

from __future__ import annotations

import logging

from fastapi import APIRouter, Request
from fastapi.responses import JSONResponse

from accounts.otp import OtpDeliveryError, OtpThrottled, send_code, verify_code
from accounts.store import UserStore
from api.limiter import limiter
from api.models import EmailRequest, EmailVerifyRequest, SmsRequest, SmsVerifyRequest
from api.responses import api_error, ok
from core.config import get_settings
from core.models import OtpChannel, ResponseCode

logger = logging.getLogger("idecs.api.otp")

_settings = get_settings()

router = APIRouter()


def _send(request: Request, channel: OtpChannel, identity: str) -> JSONResponse:
    user_store: UserStore = request.app.state.user_store
    try:
        send_code(user_store, channel, identity)
    except OtpThrottled as exc:
        raise api_error(
            429,
            ResponseCode.OTP_THROTTLED,
            str(exc),
            headers={"Retry-After": str(exc.retry_after)},
        ) from exc
    except OtpDeliveryError as exc:
        logger.warning("OTP delivery via %s failed", channel.value)
        raise api_error(502, ResponseCode.OTP_DELIVERY_FAILED, "Could not deliver the verification code.") from exc
    return ok({"expiresIn": _settings.otp_expire_seconds}, message="Code sent.")


def _verify(request: Request, channel: OtpChannel, identity: str, code: str) -> JSONResponse:
    user_store: UserStore = request.app.state.user_store
    if not verify_code(user_store, channel, identity, code, consume=False):
        raise api_error(400, ResponseCode.OTP_INVALID, "Invalid or expired verification code.")
    return ok({"valid": True})


@limiter.limit(_settings.otp_rate_limit)
@router.post("/sms")
def send_sms_code(request: Request, body: SmsRequest) -> JSONResponse:
    return _send(request, OtpChannel.sms, body.phone)


@router.post("/sms/verify")
def verify_sms_code(request: Request, body: SmsVerifyRequest) -> JSONResponse:
    return _verify(request, OtpChannel.sms, body.phone, body.code)


@limiter.limit(_settings.otp_rate_limit)
@router.post("/email")
def send_email_code(request: Request, body: EmailRequest) -> JSONResponse:
    return _send(request, OtpChannel.email, body.email)


@router.post("/email/verify")
def verify_email_code(request: Request, body: EmailVerifyRequest) -> JSONResponse:
    return _verify(request, OtpChannel.email, body.email, body.code)
