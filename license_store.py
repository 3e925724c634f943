import logging
import threading
import uuid
import weakref
from datetime import datetime, timedelta
from typing import Callable, List, Optional

from sqlalchemy import func, select, update

from database import DeviceActivation, LicenseRecord
from exceptions import ActivationNotFound, SlotLimitReached
from license_verifier import PurchaseMetadata
from security import salted_digest, short_ref, utcnow

logger = logging.getLogger(__name__)


class LicenseStore:
    """
    Durable mapping from license key to its bound devices.

    Keys and device ids are only ever stored as salted SHA-256 digests.
    Every public method takes the raw values and hashes them on entry.
    """

    def __init__(
        self,
        session_factory,
        license_salt: str,
        device_salt: str,
        max_devices: int = 1,
        stale_after: timedelta = timedelta(days=30),
        clock: Callable[[], datetime] = utcnow,
    ):
        self.session_factory = session_factory
        self.license_salt = license_salt
        self.device_salt = device_salt
        self.max_devices = max_devices
        self.stale_after = stale_after
        self.clock = clock

        # Guards the count-then-insert in reserve_slot.
        self._reserve_lock = threading.Lock()
        # Entries vanish once no heartbeat holds the lock.
        self._touch_locks = weakref.WeakValueDictionary()
        self._touch_locks_guard = threading.Lock()

    def hash_license_key(self, license_key: str) -> str:
        return salted_digest(license_key, self.license_salt)

    def hash_device_id(self, device_id: str) -> str:
        return salted_digest(device_id, self.device_salt)

    def _record_by_hash(self, db, key_hash: str) -> Optional[LicenseRecord]:
        return db.execute(
            select(LicenseRecord).where(LicenseRecord.license_key_hash == key_hash)
        ).scalar_one_or_none()

    def get_or_create_record(self, license_key: str, purchase: PurchaseMetadata) -> LicenseRecord:
        key_hash = self.hash_license_key(license_key)
        with self._reserve_lock, self.session_factory() as db:
            record = self._record_by_hash(db, key_hash)
            if record:
                return record

            record = LicenseRecord(
                id=str(uuid.uuid4()),
                license_key_hash=key_hash,
                purchase_reference=purchase.purchase_id,
                owner_email=purchase.email,
                max_devices=self.max_devices,
                created_at=self.clock(),
            )
            db.add(record)
            db.commit()
            logger.info("Created license record %s", short_ref(key_hash))
            return record

    def get_record(self, license_key: str) -> Optional[LicenseRecord]:
        with self.session_factory() as db:
            return self._record_by_hash(db, self.hash_license_key(license_key))

    def find_activation(self, license_key: str, device_id: str) -> Optional[DeviceActivation]:
        """Live (non-revoked) activation for the pair, if any."""
        with self.session_factory() as db:
            return db.execute(
                select(DeviceActivation)
                .join(LicenseRecord, DeviceActivation.license_id == LicenseRecord.id)
                .where(
                    LicenseRecord.license_key_hash == self.hash_license_key(license_key),
                    DeviceActivation.device_id_hash == self.hash_device_id(device_id),
                    DeviceActivation.revoked_at.is_(None),
                )
            ).scalar_one_or_none()

    def _next_seen(self, previous: Optional[datetime]) -> datetime:
        now = self.clock()
        if previous is not None and now <= previous:
            # last_seen_at must strictly increase
            now = previous + timedelta(microseconds=1)
        return now

    def reserve_slot(self, license_key: str, device_id: str, device_label: str) -> DeviceActivation:
        """
        Bind a device to a license, or refresh an existing binding.

        The live-activation count and the write happen under one lock and in
        one transaction, so two concurrent requests can never both see a
        free slot.
        """
        key_hash = self.hash_license_key(license_key)
        device_hash = self.hash_device_id(device_id)

        with self._reserve_lock, self.session_factory() as db:
            record = self._record_by_hash(db, key_hash)
            if not record:
                raise ActivationNotFound("Invalid license key")

            activation = db.execute(
                select(DeviceActivation).where(
                    DeviceActivation.license_id == record.id,
                    DeviceActivation.device_id_hash == device_hash,
                )
            ).scalar_one_or_none()

            if activation and not activation.is_revoked:
                activation.last_seen_at = self._next_seen(activation.last_seen_at)
                db.commit()
                logger.info("Device already activated on license %s", short_ref(key_hash))
                return activation

            active_count = db.execute(
                select(func.count())
                .select_from(DeviceActivation)
                .where(
                    DeviceActivation.license_id == record.id,
                    DeviceActivation.revoked_at.is_(None),
                )
            ).scalar_one()

            if active_count >= record.max_devices:
                logger.info(
                    "Slot limit reached on license %s (%d/%d)",
                    short_ref(key_hash), active_count, record.max_devices,
                )
                raise SlotLimitReached(
                    f"License already activated on {record.max_devices} device(s). "
                    "Please deactivate another device first."
                )

            now = self.clock()
            if activation:
                # previously revoked row for this device, reuse it
                activation.revoked_at = None
                activation.device_label = device_label
                activation.activated_at = now
                activation.last_seen_at = self._next_seen(activation.last_seen_at)
            else:
                activation = DeviceActivation(
                    id=str(uuid.uuid4()),
                    license_id=record.id,
                    device_id_hash=device_hash,
                    device_label=device_label,
                    activated_at=now,
                    last_seen_at=now,
                    revoked_at=None,
                )
                db.add(activation)
            db.commit()
            logger.info("Activated device %s on license %s", short_ref(device_hash), short_ref(key_hash))
            return activation

    def _touch_lock(self, activation_id: str) -> threading.Lock:
        with self._touch_locks_guard:
            lock = self._touch_locks.get(activation_id)
            if lock is None:
                lock = threading.Lock()
                self._touch_locks[activation_id] = lock
            return lock

    def touch_heartbeat(self, activation_id: str) -> Optional[DeviceActivation]:
        with self._touch_lock(activation_id), self.session_factory() as db:
            activation = db.get(DeviceActivation, activation_id)
            if not activation or activation.is_revoked:
                logger.warning("Heartbeat for missing activation %s", short_ref(activation_id))
                return None
            activation.last_seen_at = self._next_seen(activation.last_seen_at)
            db.commit()
            return activation

    def revoke(self, license_key: str, device_id: str) -> bool:
        key_hash = self.hash_license_key(license_key)
        with self._reserve_lock, self.session_factory() as db:
            record = self._record_by_hash(db, key_hash)
            if not record:
                return False
            result = db.execute(
                update(DeviceActivation)
                .where(
                    DeviceActivation.license_id == record.id,
                    DeviceActivation.device_id_hash == self.hash_device_id(device_id),
                    DeviceActivation.revoked_at.is_(None),
                )
                .values(revoked_at=self.clock())
            )
            db.commit()
            if result.rowcount:
                logger.info("Revoked device on license %s", short_ref(key_hash))
            return result.rowcount > 0

    def list_active(self, license_key: str) -> List[DeviceActivation]:
        with self.session_factory() as db:
            record = self._record_by_hash(db, self.hash_license_key(license_key))
            if not record:
                return []
            return list(db.execute(
                select(DeviceActivation)
                .where(
                    DeviceActivation.license_id == record.id,
                    DeviceActivation.revoked_at.is_(None),
                )
                .order_by(DeviceActivation.activated_at.desc())
            ).scalars())

    def cleanup_stale_activations(self, max_age: Optional[timedelta] = None) -> int:
        """Revoke activations with no heartbeat for ``max_age`` (default 30 days)."""
        now = self.clock()
        cutoff = now - (max_age or self.stale_after)
        with self._reserve_lock, self.session_factory() as db:
            result = db.execute(
                update(DeviceActivation)
                .where(
                    DeviceActivation.last_seen_at < cutoff,
                    DeviceActivation.revoked_at.is_(None),
                )
                .values(revoked_at=now)
            )
            db.commit()
        if result.rowcount:
            logger.info("Revoked %d stale activation(s)", result.rowcount)
        return result.rowcount
