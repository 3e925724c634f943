import asyncio
import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

from credentials import CredentialIssuer
from database import DeviceActivation
from exceptions import ActivationNotFound, CredentialInvalid
from license_store import LicenseStore
from license_verifier import PurchaseMetadata, RemoteLicenseVerifier
from security import safe_eq, short_ref

logger = logging.getLogger(__name__)


@dataclass
class ActivationResult:
    token: str
    activation: DeviceActivation
    purchase: PurchaseMetadata


@dataclass
class HeartbeatResult:
    token: str
    activation: DeviceActivation


class ActivationService:
    """
    Orchestrates verify -> bind -> issue for activations and the
    touch -> reissue cycle for heartbeats.
    """

    def __init__(
        self,
        store: LicenseStore,
        verifier: RemoteLicenseVerifier,
        issuer: CredentialIssuer,
    ):
        self.store = store
        self.verifier = verifier
        self.issuer = issuer
        self._in_flight: Dict[Tuple[str, str], asyncio.Task] = {}

    async def activate(self, license_key: str, device_id: str, device_label: str) -> ActivationResult:
        """
        Activate ``device_id`` on ``license_key``.

        Concurrent calls for the same pair share one in-flight attempt, so a
        double-submitted request cannot verify or reserve twice.
        """
        pair = (self.store.hash_license_key(license_key), self.store.hash_device_id(device_id))
        task = self._in_flight.get(pair)
        if task is None:
            task = asyncio.create_task(self._activate(license_key, device_id, device_label))
            self._in_flight[pair] = task

            def _forget(done, pair=pair):
                if self._in_flight.get(pair) is done:
                    del self._in_flight[pair]

            task.add_done_callback(_forget)
        else:
            logger.info("Joining in-flight activation for device %s", short_ref(pair[1]))
        return await asyncio.shield(task)

    async def _activate(self, license_key: str, device_id: str, device_label: str) -> ActivationResult:
        purchase = await self.verifier.verify(license_key)
        # VERIFIED: purchase confirmed, slot not yet reserved
        self.store.get_or_create_record(license_key, purchase)
        activation = self.store.reserve_slot(license_key, device_id, device_label)
        token = self.issuer.issue(license_key, device_id, activation.id)
        return ActivationResult(token=token, activation=activation, purchase=purchase)

    async def heartbeat(self, license_key: str, device_id: str) -> HeartbeatResult:
        activation = self.store.find_activation(license_key, device_id)
        if activation:
            activation = self.store.touch_heartbeat(activation.id)
        if not activation:
            raise ActivationNotFound("Device not activated for this license")
        token = self.issuer.refresh(license_key, device_id, activation.id)
        return HeartbeatResult(token=token, activation=activation)

    async def deactivate(self, license_key: str, device_id: str) -> Tuple[bool, str]:
        if self.store.get_record(license_key) is None:
            return False, "Invalid license key"
        if self.store.revoke(license_key, device_id):
            return True, "Device deactivated successfully"
        return False, "Device not found or already deactivated"

    async def list_devices(self, license_key: str) -> List[DeviceActivation]:
        return self.store.list_active(license_key)

    async def verify_purchase(self, license_key: str, product_permalink: Optional[str] = None) -> PurchaseMetadata:
        """Check the purchase only, without binding or counting a use."""
        return await self.verifier.verify(
            license_key, increment_uses=False, product_permalink=product_permalink,
        )

    async def validate_token(self, token: str, device_id: str) -> DeviceActivation:
        claims = self.issuer.decode(token)
        if not safe_eq(claims["device_id"], device_id):
            raise CredentialInvalid("Device mismatch")
        activation = self.store.find_activation(claims["license_key"], device_id)
        if not activation or activation.id != claims["activation_id"]:
            raise ActivationNotFound("Device not activated for this license")
        return activation

    def cleanup(self) -> int:
        return self.store.cleanup_stale_activations()
