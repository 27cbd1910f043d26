from fastapi import APIRouter, Depends

from otpgate.routers.auth import get_otp_service
from otpgate.schemas.otp import HealthResponse
from otpgate.services.otp import OtpService

router = APIRouter(tags=["health"])


@router.get("/health", response_model=HealthResponse)
def health(service: OtpService = Depends(get_otp_service)) -> HealthResponse:
    return HealthResponse(status="ok", otp_backend=service.active_backend_name)
