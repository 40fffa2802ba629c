"""
Customer registration API routes.

The registration link emailed to a detected customer carries a token; the
customer trades it for a one-time code and verifies the code to finish
registering. Registered customers sign in with a code sent to their email.
"""

from datetime import datetime

from fastapi import APIRouter, HTTPException, status
from pydantic import Field

from parkingmate.api.deps import RateLimited, Registration
from parkingmate.api.schemas import CamelModel
from parkingmate.application.registration_flow import (
    OtpVerificationStatus,
    RegistrationOtpStatus,
)

router = APIRouter(prefix="/registration", tags=["registration"])


class OtpRequest(CamelModel):
    token: str = Field(min_length=1, description="Token from the registration link")


class OtpRequestResponse(CamelModel):
    success: bool = True
    email: str
    expires_at: datetime
    email_sent: bool
    message: str


class SigninRequest(CamelModel):
    email: str = Field(min_length=3, examples=["driver@example.com"])
    organization_id: str | None = None


class OtpVerifyRequest(CamelModel):
    email: str = Field(min_length=3, examples=["driver@example.com"])
    code: str = Field(min_length=1, examples=["123456"])
    organization_id: str | None = None


class OtpVerifyResponse(CamelModel):
    success: bool = True
    status: OtpVerificationStatus
    customer_id: str | None = None
    message: str


_OTP_REJECTIONS = {
    RegistrationOtpStatus.INVALID_TOKEN: (status.HTTP_404_NOT_FOUND, "Invalid registration token"),
    RegistrationOtpStatus.CUSTOMER_NOT_FOUND: (status.HTTP_404_NOT_FOUND, "Customer not found"),
    RegistrationOtpStatus.TOKEN_USED: (status.HTTP_409_CONFLICT, "Registration token already used"),
    RegistrationOtpStatus.ALREADY_REGISTERED: (status.HTTP_409_CONFLICT, "Customer already registered"),
    RegistrationOtpStatus.TOKEN_EXPIRED: (status.HTTP_400_BAD_REQUEST, "Registration token expired"),
    RegistrationOtpStatus.NOT_REGISTERED: (
        status.HTTP_403_FORBIDDEN,
        "Customer account not activated, complete registration first",
    ),
}


@router.post(
    "/otp",
    response_model=OtpRequestResponse,
    summary="Request a registration code",
    responses={
        400: {"description": "Token expired"},
        404: {"description": "Unknown token"},
        409: {"description": "Token used or customer already registered"},
    },
)
async def request_otp(
    payload: OtpRequest,
    service: Registration,
    _: RateLimited,
) -> OtpRequestResponse:
    """Email a one-time code to the owner of a registration token."""
    result = await service.request_registration_otp(payload.token)

    if result.status != RegistrationOtpStatus.OTP_SENT:
        code, detail = _OTP_REJECTIONS[result.status]
        raise HTTPException(status_code=code, detail=detail)

    return OtpRequestResponse(
        email=result.email,
        expires_at=result.expires_at,
        email_sent=result.email_sent,
        message="Verification code sent" if result.email_sent else "Verification code queued",
    )


@router.post(
    "/signin",
    response_model=OtpRequestResponse,
    summary="Request a sign-in code",
    responses={
        403: {"description": "Customer not registered yet"},
        404: {"description": "Unknown customer"},
    },
)
async def request_signin_otp(
    payload: SigninRequest,
    service: Registration,
    _: RateLimited,
) -> OtpRequestResponse:
    """Email a sign-in code to a registered customer."""
    result = await service.request_signin_otp(payload.email, payload.organization_id)

    if result.status != RegistrationOtpStatus.OTP_SENT:
        code, detail = _OTP_REJECTIONS[result.status]
        raise HTTPException(status_code=code, detail=detail)

    return OtpRequestResponse(
        email=result.email,
        expires_at=result.expires_at,
        email_sent=result.email_sent,
        message="Sign-in code sent" if result.email_sent else "Sign-in code queued",
    )


@router.post(
    "/verify",
    response_model=OtpVerifyResponse,
    summary="Verify a registration code",
    responses={400: {"description": "Invalid or expired code"}},
)
async def verify_otp(
    payload: OtpVerifyRequest,
    service: Registration,
    _: RateLimited,
) -> OtpVerifyResponse:
    """Verify a one-time code; a registration code completes registration."""
    result = await service.verify_otp(payload.email, payload.code, payload.organization_id)

    if result.status == OtpVerificationStatus.INVALID_CODE:
        raise HTTPException(
            status_code=status.HTTP_400_BAD_REQUEST,
            detail="Invalid or expired verification code",
        )

    message = (
        "Registration completed"
        if result.status == OtpVerificationStatus.REGISTRATION_COMPLETED
        else "Code verified"
    )
    return OtpVerifyResponse(status=result.status, customer_id=result.customer_id, message=message)
