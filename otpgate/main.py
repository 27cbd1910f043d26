import logging

from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware
from sqlalchemy.exc import SQLAlchemyError

from otpgate.config import settings
from otpgate.database import init_db
from otpgate.routers import auth, health

LOGGER = logging.getLogger(__name__)

app = FastAPI(title="otpgate")

app.add_middleware(
    CORSMiddleware,
    allow_origins=list(settings.cors_origins),
    allow_credentials=True,
    allow_methods=["*"],
    allow_headers=["*"],
)

for router in (health.router, auth.router):
    app.include_router(router, prefix="/api")
    # Compatibility for clients calling without /api.
    app.include_router(router)


@app.on_event("startup")
def startup() -> None:
    logging.basicConfig(
        level=settings.log_level,
        format="%(asctime)s %(levelname)s %(name)s: %(message)s",
    )
    if settings.otp_email_backend == "console":
        LOGGER.warning(
            "OTP_EMAIL_BACKEND=console: verification codes are logged, not emailed"
        )
    if not settings.db_auto_create:
        return
    try:
        init_db()
    except SQLAlchemyError as exc:
        # The backend selector decides at first use whether to fall back.
        LOGGER.warning("Could not create OTP tables at startup: %s", exc)


@app.get("/")
def root():
    return {"status": "otpgate running"}
