import asyncio
import logging
from datetime import datetime, timedelta
from typing import Any, Callable, Dict, Optional, Tuple

import httpx
from apscheduler.schedulers.asyncio import AsyncIOScheduler
from sqlalchemy.orm import Session

from config import Settings, settings
from credentials import token_expiry
from database import (
    LocalLicenseCache,
    LocalLicenseValidationAttempt,
    init_client_db,
    make_engine,
    make_session_factory,
)
from exceptions import LicenseError, SlotLimitReached, VerificationFailed
from hardware_fingerprint import DeviceIdentity, compute_device_id, get_device_name, get_system_info
from models import LicenseState, LicenseStatusResponse
from security import utcnow

logger = logging.getLogger(__name__)

HEARTBEAT_JOB_ID = "license_heartbeat"
DEFAULT_GRACE_PERIOD = timedelta(hours=72)


def is_within_grace_period(
    last_heartbeat: Optional[datetime],
    now: Optional[datetime] = None,
    grace: timedelta = DEFAULT_GRACE_PERIOD,
) -> bool:
    if last_heartbeat is None:
        return False
    now = now or utcnow()
    return now - last_heartbeat <= grace


class LicenseClient:
    """
    Device side of the activation protocol.

    Talks to the license API, keeps the last good activation in a local
    cache and falls back to it while the server is unreachable, for at most
    the offline grace period.
    """

    def __init__(
        self,
        db: Session,
        app_settings: Optional[Settings] = None,
        identity: Optional[DeviceIdentity] = None,
        device_name: Optional[str] = None,
        transport: Optional[httpx.AsyncBaseTransport] = None,
        clock: Callable[[], datetime] = utcnow,
    ):
        app_settings = app_settings or settings
        self.db = db
        self.api_url = app_settings.LICENSE_API_URL.rstrip("/")
        self.timeout = app_settings.LICENSE_API_TIMEOUT
        self.grace_period = timedelta(hours=app_settings.OFFLINE_GRACE_PERIOD_HOURS)
        self.heartbeat_interval_hours = app_settings.HEARTBEAT_INTERVAL_HOURS
        self.transport = transport
        self.clock = clock

        identity = identity or compute_device_id(app_settings.DEVICE_FINGERPRINT_SALT)
        if not identity.stable:
            logger.warning("Device id is not stable; this device may need re-activation after restart")
        self.device_id = identity.device_id
        self.device_name = device_name or get_device_name()

        self.scheduler = AsyncIOScheduler()
        self.state = LicenseState.UNVERIFIED
        self.last_error: Optional[str] = None
        self._in_flight: Dict[str, asyncio.Task] = {}

    async def _post(self, path: str, payload: Dict[str, Any]) -> httpx.Response:
        async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
            return await client.post(
                f"{self.api_url}{path}",
                json=payload,
                headers={"Content-Type": "application/json"},
            )

    @staticmethod
    def _message(response: httpx.Response, default: str) -> str:
        try:
            return response.json().get("message") or default
        except ValueError:
            return default

    def is_within_grace_period(self, last_heartbeat: Optional[datetime]) -> bool:
        return is_within_grace_period(last_heartbeat, self.clock(), self.grace_period)

    async def activate_license(self, license_key: str) -> LicenseStatusResponse:
        """
        Activate this device. Concurrent calls for the same key share the
        in-flight attempt.
        """
        license_key = license_key.strip()
        task = self._in_flight.get(license_key)
        if task is None:
            task = asyncio.create_task(self._activate(license_key))
            self._in_flight[license_key] = task

            def _forget(done, license_key=license_key):
                if self._in_flight.get(license_key) is done:
                    del self._in_flight[license_key]

            task.add_done_callback(_forget)
        return await asyncio.shield(task)

    async def _activate(self, license_key: str) -> LicenseStatusResponse:
        try:
            response = await self._post("/activate", {
                "licenseKey": license_key,
                "deviceId": self.device_id,
                "deviceLabel": self.device_name,
                "systemInfo": get_system_info(),
            })
        except httpx.HTTPError as e:
            self._log_validation_attempt("activate", "offline", str(e))
            return self._activation_offline(license_key, "License server unreachable")

        if response.status_code >= 500:
            self._log_validation_attempt("activate", "offline", f"HTTP {response.status_code}")
            return self._activation_offline(license_key, "License server unavailable")

        if response.status_code == 409:
            message = self._message(response, "License already activated on another device")
            self._log_validation_attempt("activate", "failed", message)
            self.state = LicenseState.REJECTED
            self.last_error = message
            raise SlotLimitReached(message)

        if not response.is_success:
            message = self._message(response, f"License activation failed: {response.status_code}")
            self._log_validation_attempt("activate", "failed", message)
            self.last_error = message
            raise VerificationFailed(message)

        data = response.json()
        purchase = data.get("purchase") or {}
        self._store_license_cache(
            license_key,
            token=data["token"],
            licensee=purchase.get("email") or "Licensed User",
            purchase_date=purchase.get("createdAt"),
        )
        self.state = LicenseState.ACTIVE
        self.last_error = None
        self._log_validation_attempt("activate", "success", None)
        self._start_heartbeat()
        logger.info("License activated on this device")
        return self.get_license_status()

    def _activation_offline(self, license_key: str, message: str) -> LicenseStatusResponse:
        cached = self._get_cached_license(license_key)
        if self._cache_usable(cached):
            logger.info("Using offline license within grace period")
            self.state = LicenseState.ACTIVE_OFFLINE
            self._start_heartbeat()
            return self.get_license_status()
        self.last_error = message
        raise VerificationFailed(message)

    def _cache_usable(self, cached: Optional[LocalLicenseCache]) -> bool:
        return bool(
            cached
            and cached.is_valid
            and cached.device_id == self.device_id
            and self.is_within_grace_period(cached.last_heartbeat)
        )

    async def send_heartbeat(self) -> LicenseState:
        """
        Refresh the token and last-heartbeat time with the server.

        A 401 means the server no longer has this device bound. Any other
        failure falls back to the grace window.
        """
        cached = self._get_cached_license()
        if not cached or not cached.is_valid:
            return self.state

        try:
            response = await self._post("/heartbeat", {
                "licenseKey": cached.license_key,
                "deviceId": self.device_id,
            })
        except httpx.HTTPError as e:
            self._log_validation_attempt("heartbeat", "offline", str(e))
            return self._heartbeat_offline(cached)

        if response.status_code == 401:
            message = self._message(response, "Device not activated for this license")
            self._log_validation_attempt("heartbeat", "failed", message)
            logger.warning("Heartbeat rejected: %s", message)
            self.clear_license()
            self.state = LicenseState.REVOKED
            self.last_error = message
            return self.state

        if not response.is_success:
            self._log_validation_attempt("heartbeat", "offline", f"HTTP {response.status_code}")
            return self._heartbeat_offline(cached)

        data = response.json()
        cached.token = data["token"]
        cached.last_heartbeat = self.clock()
        self.db.commit()

        self.state = LicenseState.ACTIVE
        self.last_error = None
        self._log_validation_attempt("heartbeat", "success", None)
        logger.info("License heartbeat successful, token refreshed")
        return self.state

    def _heartbeat_offline(self, cached: LocalLicenseCache) -> LicenseState:
        if self.is_within_grace_period(cached.last_heartbeat):
            self.state = LicenseState.ACTIVE_OFFLINE
            logger.warning("Heartbeat failed, running offline within grace period")
            return self.state

        cached.is_valid = False
        self.db.commit()
        self.stop_heartbeat()
        self.state = LicenseState.EXPIRED
        self.last_error = "Offline grace period exceeded, re-activation required"
        logger.warning(self.last_error)
        return self.state

    async def verify_license(self, license_key: str) -> LicenseStatusResponse:
        """
        Startup check: trust the cache if it is fresh enough, otherwise
        activate again. Never raises for protocol errors.
        """
        license_key = license_key.strip()
        cached = self._get_cached_license(license_key)
        try:
            if self._cache_usable(cached):
                if self.state == LicenseState.UNVERIFIED:
                    self.state = LicenseState.ACTIVE
                await self.send_heartbeat()
                if self.state in (LicenseState.ACTIVE, LicenseState.ACTIVE_OFFLINE):
                    self._start_heartbeat()
                return self.get_license_status()

            if cached and cached.is_valid:
                logger.info("License outside offline grace period, re-activation required")
            return await self.activate_license(license_key)
        except LicenseError as e:
            logger.error("License verification error: %s", e.message)
            return self.get_license_status()

    def is_license_active(self) -> bool:
        cached = self._get_cached_license()
        if not cached or not cached.is_valid:
            return False

        if cached.device_id != self.device_id:
            logger.warning("Device ID mismatch - license bound to different device")
            self.clear_license()
            return False

        if not self.is_within_grace_period(cached.last_heartbeat):
            logger.info("License outside grace period - re-activation required")
            return False
        return True

    async def ensure_fresh_token(self) -> Optional[str]:
        """
        Return a token that has not expired, running a heartbeat first if
        needed. Returns None when no usable activation remains.
        """
        cached = self._get_cached_license()
        if not cached or not cached.is_valid:
            return None

        # exp is stamped with the server's wall clock, not self.clock
        expires = token_expiry(cached.token) if cached.token else None
        if expires is not None and expires > utcnow():
            return cached.token

        if not self.is_within_grace_period(cached.last_heartbeat):
            self._heartbeat_offline(cached)
            return None

        state = await self.send_heartbeat()
        if state != LicenseState.ACTIVE:
            return None
        return self._get_cached_license().token

    async def deactivate_device(self) -> Tuple[bool, str]:
        cached = self._get_cached_license()
        if not cached:
            return False, "No license activated on this device"

        try:
            response = await self._post("/deactivate", {
                "licenseKey": cached.license_key,
                "deviceId": self.device_id,
            })
            data = response.json()
        except (httpx.HTTPError, ValueError) as e:
            self._log_validation_attempt("deactivate", "offline", str(e))
            logger.error("Deactivation error: %s", e)
            return False, "Deactivation failed"

        success = bool(data.get("success"))
        message = data.get("message") or ("Device deactivated" if success else "Deactivation failed")
        self._log_validation_attempt("deactivate", "success" if success else "failed", None if success else message)
        if success:
            self.clear_license()
            self.state = LicenseState.REVOKED
        return success, message

    def clear_license(self) -> None:
        self.stop_heartbeat()
        self.db.query(LocalLicenseCache).delete()
        self.db.commit()
        logger.info("Device-bound license cleared")

    def _start_heartbeat(self) -> None:
        """
        Start (or restart) the periodic heartbeat job.
        """
        self.scheduler.add_job(
            self.send_heartbeat,
            "interval",
            hours=self.heartbeat_interval_hours,
            id=HEARTBEAT_JOB_ID,
            replace_existing=True,
        )
        if not self.scheduler.running:
            self.scheduler.start()

    def stop_heartbeat(self) -> None:
        if self.scheduler.get_job(HEARTBEAT_JOB_ID):
            self.scheduler.remove_job(HEARTBEAT_JOB_ID)
            logger.info("Heartbeat stopped")

    @property
    def heartbeat_scheduled(self) -> bool:
        return self.scheduler.get_job(HEARTBEAT_JOB_ID) is not None

    def close(self) -> None:
        if self.scheduler.running:
            self.scheduler.shutdown(wait=False)

    def _store_license_cache(self, license_key: str, **fields) -> LocalLicenseCache:
        now = self.clock()
        # one activation per installation
        self.db.query(LocalLicenseCache).filter(LocalLicenseCache.license_key != license_key).delete()
        cached = self._get_cached_license(license_key)
        if cached is None:
            cached = LocalLicenseCache(license_key=license_key)
            self.db.add(cached)

        cached.device_id = self.device_id
        cached.device_name = self.device_name
        cached.is_valid = True
        cached.last_heartbeat = now
        cached.cached_at = now
        for name, value in fields.items():
            setattr(cached, name, value)
        self.db.commit()
        return cached

    def _get_cached_license(self, license_key: Optional[str] = None) -> Optional[LocalLicenseCache]:
        query = self.db.query(LocalLicenseCache)
        if license_key is not None:
            query = query.filter(LocalLicenseCache.license_key == license_key)
        return query.first()

    def _log_validation_attempt(self, action: str, result: str, error_message: Optional[str]):
        self.db.add(LocalLicenseValidationAttempt(
            action=action,
            result=result,
            error_message=error_message,
            device_id=self.device_id,
            attempted_at=self.clock(),
        ))
        self.db.commit()

    def get_license_status(self) -> LicenseStatusResponse:
        cached = self._get_cached_license()
        if not cached:
            return LicenseStatusResponse(
                state=self.state,
                isValid=False,
                deviceId=self.device_id,
                deviceName=self.device_name,
                message=self.last_error or "No license activated",
            )

        valid = self.state in (LicenseState.ACTIVE, LicenseState.ACTIVE_OFFLINE) and self._cache_usable(cached)
        return LicenseStatusResponse(
            state=self.state,
            isValid=valid,
            deviceId=cached.device_id,
            deviceName=cached.device_name,
            licensee=cached.licensee,
            lastHeartbeat=cached.last_heartbeat.isoformat() if cached.last_heartbeat else None,
            inGracePeriod=self.state == LicenseState.ACTIVE_OFFLINE,
            message=self.last_error,
        )


def create_license_client(app_settings: Optional[Settings] = None, **kwargs) -> LicenseClient:
    app_settings = app_settings or settings
    engine = make_engine(app_settings.CLIENT_DATABASE_URL)
    init_client_db(engine)
    session = make_session_factory(engine)()
    return LicenseClient(session, app_settings=app_settings, **kwargs)
