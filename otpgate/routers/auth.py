from fastapi import APIRouter, Depends, HTTPException, status

from otpgate.schemas.otp import (
    OtpErrorDetail,
    OtpRequest,
    OtpResponse,
    OtpVerifyRequest,
    OtpVerifyResponse,
)
from otpgate.services.otp import (
    OtpError,
    OtpService,
    RateLimited,
    StorageFailure,
    TransportFailure,
    otp_service,
)

router = APIRouter(prefix="/auth", tags=["auth"])

_REQUEST_STATUS = {
    RateLimited: status.HTTP_429_TOO_MANY_REQUESTS,
    TransportFailure: status.HTTP_502_BAD_GATEWAY,
    StorageFailure: status.HTTP_503_SERVICE_UNAVAILABLE,
}


def get_otp_service() -> OtpService:
    return otp_service


def _http_error(exc: OtpError, status_code: int) -> HTTPException:
    headers = None
    if isinstance(exc, RateLimited):
        headers = {"Retry-After": str(exc.retry_after_seconds)}
    detail = OtpErrorDetail(error=exc.error, message=str(exc))
    return HTTPException(
        status_code=status_code, detail=detail.model_dump(), headers=headers
    )


@router.post("/otp/request", response_model=OtpResponse)
def request_otp(
    payload: OtpRequest, service: OtpService = Depends(get_otp_service)
) -> OtpResponse:
    try:
        issued = service.request_code(payload.identity)
    except OtpError as exc:
        status_code = _REQUEST_STATUS.get(
            type(exc), status.HTTP_500_INTERNAL_SERVER_ERROR
        )
        raise _http_error(exc, status_code) from exc
    return OtpResponse(
        message="OTP sent",
        expires_in_seconds=issued.expires_in_seconds,
    )


@router.post("/otp/verify", response_model=OtpVerifyResponse)
def verify_otp(
    payload: OtpVerifyRequest, service: OtpService = Depends(get_otp_service)
) -> OtpVerifyResponse:
    try:
        service.confirm_code(payload.identity, payload.code)
    except StorageFailure as exc:
        raise _http_error(exc, status.HTTP_503_SERVICE_UNAVAILABLE) from exc
    except OtpError as exc:
        raise _http_error(exc, status.HTTP_400_BAD_REQUEST) from exc
    return OtpVerifyResponse(message="OTP verified", verified=True)
