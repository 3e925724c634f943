import logging
from dataclasses import dataclass, field
from typing import Any, Dict, Optional

import httpx

from exceptions import VerificationFailed
from security import utcnow

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class PurchaseMetadata:
    purchase_id: str = "unknown"
    email: str = "unknown"
    created_at: str = field(default_factory=lambda: utcnow().isoformat())
    product_name: str = "Shop Analytics Dashboard"

    @classmethod
    def from_purchase(cls, purchase: Optional[Dict[str, Any]]) -> "PurchaseMetadata":
        purchase = purchase or {}
        defaults = cls()
        return cls(
            purchase_id=str(purchase.get("id") or defaults.purchase_id),
            email=purchase.get("email") or defaults.email,
            created_at=purchase.get("created_at") or defaults.created_at,
            product_name=purchase.get("product_name") or defaults.product_name,
        )


class RemoteLicenseVerifier:
    """
    Confirms a license key with the purchase platform.

    One request per call and no retries. Anything other than a clean
    success raises VerificationFailed.
    """

    def __init__(
        self,
        verify_url: str,
        product_id: str = "",
        product_permalink: str = "",
        timeout: float = 15.0,
        transport: Optional[httpx.AsyncBaseTransport] = None,
    ):
        self.verify_url = verify_url
        self.product_id = product_id
        self.product_permalink = product_permalink
        self.timeout = timeout
        self.transport = transport

    async def verify(
        self,
        license_key: str,
        increment_uses: bool = True,
        product_permalink: Optional[str] = None,
    ) -> PurchaseMetadata:
        form = {
            "product_id": self.product_id,
            "product_permalink": product_permalink or self.product_permalink,
            "license_key": license_key.strip(),
            "increment_uses_count": "true" if increment_uses else "false",
        }

        try:
            async with httpx.AsyncClient(timeout=self.timeout, transport=self.transport) as client:
                response = await client.post(self.verify_url, data=form)
        except httpx.TimeoutException:
            logger.error("License verification timed out")
            raise VerificationFailed("License verification service unavailable")
        except httpx.HTTPError as e:
            logger.error("License verification request failed: %s", e)
            raise VerificationFailed("License verification service unavailable")

        if not response.is_success:
            logger.info("License verification rejected with status %s", response.status_code)
            raise VerificationFailed("Invalid license key")

        try:
            data = response.json()
        except ValueError:
            logger.error("License verification returned a non-JSON body")
            raise VerificationFailed("Invalid license key")

        if not data.get("success") or (data.get("uses") or 0) < 0:
            raise VerificationFailed("Invalid license key")

        purchase = data.get("purchase") or {}
        if purchase.get("refunded") or purchase.get("chargebacked"):
            raise VerificationFailed("License purchase was refunded")

        logger.info("License verification succeeded")
        return PurchaseMetadata.from_purchase(purchase)
