import logging
from contextlib import asynccontextmanager
from datetime import timedelta
from typing import Optional

from apscheduler.schedulers.asyncio import AsyncIOScheduler
from fastapi import APIRouter, Depends, FastAPI, Request
from fastapi.exceptions import RequestValidationError
from fastapi.middleware.cors import CORSMiddleware
from fastapi.responses import JSONResponse

from activation_service import ActivationService
from config import Settings, settings
from credentials import CredentialIssuer
from database import init_db, make_engine, make_session_factory
from exceptions import ActivationNotFound, CredentialInvalid, LicenseError, VerificationFailed
from license_store import LicenseStore
from license_verifier import PurchaseMetadata, RemoteLicenseVerifier
from models import (
    DeactivationResponse,
    DeviceInfo,
    DeviceListResponse,
    DeviceRequest,
    ErrorResponse,
    HealthCheckResponse,
    HeartbeatResponse,
    LegacyVerifyResponse,
    LicenseActivationRequest,
    LicenseActivationResponse,
    LegacyVerifyRequest,
    LicenseKeyRequest,
    PurchaseInfo,
    TokenValidationRequest,
    TokenValidationResponse,
)

SERVICE_VERSION = "1.0.0"

logger = logging.getLogger("license_api")


def configure_logging(level: str = "INFO") -> None:
    logging.basicConfig(
        level=getattr(logging, level.upper(), logging.INFO),
        format="%(asctime)s | %(levelname)s | %(name)s | %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    )


def get_service(request: Request) -> ActivationService:
    return request.app.state.service


def _purchase_info(purchase: PurchaseMetadata) -> PurchaseInfo:
    return PurchaseInfo(
        email=purchase.email,
        createdAt=purchase.created_at,
        productName=purchase.product_name,
    )


router = APIRouter(prefix="/api/license", responses={
    401: {"model": ErrorResponse},
    409: {"model": ErrorResponse},
})


@router.post("/activate", response_model=LicenseActivationResponse)
async def activate_license(
    request: LicenseActivationRequest,
    service: ActivationService = Depends(get_service),
):
    """
    Activate a license on one device.

    1. Verifies the key with the purchase platform
    2. Reserves the license's single device slot
    3. Issues a signed device token
    """
    label = request.deviceLabel or "Unknown Device"
    logger.info("Activating license for device: %s", label)
    if request.systemInfo:
        logger.info(
            "Device platform: %s %s",
            request.systemInfo.get("os_platform", "unknown"),
            request.systemInfo.get("architecture", ""),
        )
    result = await service.activate(request.licenseKey, request.deviceId, label)
    return LicenseActivationResponse(
        success=True,
        token=result.token,
        deviceLabel=result.activation.device_label,
        purchase=_purchase_info(result.purchase),
        message="License activated successfully",
    )


@router.post("/heartbeat", response_model=HeartbeatResponse)
async def heartbeat(
    request: DeviceRequest,
    service: ActivationService = Depends(get_service),
):
    """Refresh the device token and its last-seen timestamp."""
    result = await service.heartbeat(request.licenseKey, request.deviceId)
    return HeartbeatResponse(
        success=True,
        token=result.token,
        lastSeen=result.activation.last_seen_at.isoformat(),
        message="License heartbeat successful",
    )


@router.post("/deactivate", response_model=DeactivationResponse)
async def deactivate_device(
    request: DeviceRequest,
    service: ActivationService = Depends(get_service),
):
    success, message = await service.deactivate(request.licenseKey, request.deviceId)
    return DeactivationResponse(success=success, message=message)


@router.post("/devices", response_model=DeviceListResponse)
async def list_devices(
    request: LicenseKeyRequest,
    service: ActivationService = Depends(get_service),
):
    devices = await service.list_devices(request.licenseKey)
    return DeviceListResponse(devices=[
        DeviceInfo(
            deviceLabel=d.device_label,
            activatedAt=d.activated_at.isoformat(),
            lastSeenAt=d.last_seen_at.isoformat(),
        )
        for d in devices
    ])


@router.post("/validate", response_model=TokenValidationResponse)
async def validate_token(
    request: TokenValidationRequest,
    service: ActivationService = Depends(get_service),
):
    """
    Check a device token for a protected application.

    An expired token answers with ``refresh: true``; the caller should run a
    heartbeat rather than lock the user out.
    """
    try:
        activation = await service.validate_token(request.token, request.deviceId)
    except CredentialInvalid as e:
        return JSONResponse(
            status_code=e.status_code,
            content=TokenValidationResponse(valid=False, refresh=e.expired, message=e.message).model_dump(),
        )
    except ActivationNotFound as e:
        return JSONResponse(
            status_code=e.status_code,
            content=TokenValidationResponse(valid=False, message=e.message).model_dump(),
        )
    return TokenValidationResponse(valid=True, activationId=activation.id)


@router.post("/verify", response_model=LegacyVerifyResponse)
async def verify_purchase(
    request: LegacyVerifyRequest,
    service: ActivationService = Depends(get_service),
):
    """
    Older clients: purchase check only, no device binding.

    productPermalink is optional here; the configured one is used when absent.
    """
    try:
        purchase = await service.verify_purchase(request.licenseKey, request.productPermalink)
    except VerificationFailed as e:
        return LegacyVerifyResponse(success=False, message=e.message)
    return LegacyVerifyResponse(
        success=True,
        purchase=_purchase_info(purchase),
        message="License verified. Please upgrade to device activation for enhanced security.",
    )


async def license_error_handler(request: Request, exc: LicenseError):
    return JSONResponse(
        status_code=exc.status_code,
        content=ErrorResponse(message=exc.message).model_dump(),
    )


async def validation_error_handler(request: Request, exc: RequestValidationError):
    fields = []
    for error in exc.errors():
        loc = error.get("loc") or ()
        if len(loc) > 1 and loc[-1] not in fields:
            fields.append(str(loc[-1]))
    message = f"Missing or invalid fields: {', '.join(fields)}" if fields else "Invalid request body"
    return JSONResponse(status_code=400, content=ErrorResponse(message=message).model_dump())


def create_app(
    app_settings: Optional[Settings] = None,
    verifier: Optional[RemoteLicenseVerifier] = None,
    store: Optional[LicenseStore] = None,
) -> FastAPI:
    """
    Build the license API.

    Fails with ConfigurationError before anything is created if the signing
    secret or a hash salt is missing.
    """
    app_settings = app_settings or settings
    app_settings.validate_security()

    if store is None:
        engine = make_engine(app_settings.DATABASE_URL)
        init_db(engine)
        store = LicenseStore(
            make_session_factory(engine),
            license_salt=app_settings.LICENSE_HASH_SALT,
            device_salt=app_settings.DEVICE_HASH_SALT,
            max_devices=app_settings.MAX_DEVICES_PER_LICENSE,
            stale_after=timedelta(days=app_settings.STALE_ACTIVATION_DAYS),
        )
    if verifier is None:
        verifier = RemoteLicenseVerifier(
            app_settings.LICENSE_VERIFY_URL,
            product_id=app_settings.LICENSE_PRODUCT_ID,
            product_permalink=app_settings.LICENSE_PRODUCT_PERMALINK,
            timeout=app_settings.LICENSE_API_TIMEOUT,
        )
    issuer = CredentialIssuer(app_settings.JWT_SECRET, expiry_days=app_settings.TOKEN_EXPIRY_DAYS)
    service = ActivationService(store, verifier, issuer)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        logger.info("Starting license API v%s", SERVICE_VERSION)
        scheduler = AsyncIOScheduler()
        scheduler.add_job(
            service.cleanup,
            "interval",
            hours=app_settings.CLEANUP_INTERVAL_HOURS,
            id="stale_activation_cleanup",
        )
        scheduler.start()
        service.cleanup()
        yield
        scheduler.shutdown(wait=False)
        logger.info("Shutting down license API")

    app = FastAPI(
        title="Device License Service",
        description="Device-bound license activation and heartbeat API",
        version=SERVICE_VERSION,
        lifespan=lifespan,
    )
    app.state.settings = app_settings
    app.state.store = store
    app.state.service = service

    # CORS
    app.add_middleware(
        CORSMiddleware,
        allow_origins=["*"],
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    app.add_exception_handler(LicenseError, license_error_handler)
    app.add_exception_handler(RequestValidationError, validation_error_handler)
    app.include_router(router)

    @app.get("/health", response_model=HealthCheckResponse)
    async def health_check():
        return {
            "status": "healthy",
            "service": "license-server",
            "version": SERVICE_VERSION,
            "environment": app_settings.ENVIRONMENT,
        }

    return app


if __name__ == "__main__":
    import uvicorn

    configure_logging(settings.LOG_LEVEL)
    uvicorn.run(create_app(), host="0.0.0.0", port=5000)
