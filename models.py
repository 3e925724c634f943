import enum
from typing import Any, Dict, List, Optional

from pydantic import AliasChoices, BaseModel, Field


class LicenseState(str, enum.Enum):
    UNVERIFIED = "unverified"
    VERIFIED = "verified"
    ACTIVE = "active"
    ACTIVE_OFFLINE = "active_offline"
    REJECTED = "rejected"
    EXPIRED = "expired"
    REVOKED = "revoked"


# Request bodies accept the camelCase names and the older snake_case ones.
def _key_field():
    return Field(min_length=1, validation_alias=AliasChoices("licenseKey", "license_key"))


def _device_field():
    return Field(min_length=1, validation_alias=AliasChoices("deviceId", "device_id"))


class LicenseActivationRequest(BaseModel):
    licenseKey: str = _key_field()
    deviceId: str = _device_field()
    deviceLabel: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("deviceLabel", "device_name")
    )
    systemInfo: Optional[Dict[str, Any]] = Field(
        default=None, validation_alias=AliasChoices("systemInfo", "system_info")
    )

class DeviceRequest(BaseModel):
    licenseKey: str = _key_field()
    deviceId: str = _device_field()

class LicenseKeyRequest(BaseModel):
    licenseKey: str = _key_field()

class LegacyVerifyRequest(BaseModel):
    licenseKey: str = _key_field()
    productPermalink: Optional[str] = Field(
        default=None, validation_alias=AliasChoices("productPermalink", "product_permalink")
    )

class TokenValidationRequest(BaseModel):
    token: str = Field(min_length=1)
    deviceId: str = _device_field()

class PurchaseInfo(BaseModel):
    email: str
    createdAt: str
    productName: str

class LicenseActivationResponse(BaseModel):
    success: bool
    token: str
    deviceLabel: str
    purchase: PurchaseInfo
    message: str

class HeartbeatResponse(BaseModel):
    success: bool
    token: str
    lastSeen: str
    message: str

class DeactivationResponse(BaseModel):
    success: bool
    message: str

class DeviceInfo(BaseModel):
    deviceLabel: str
    activatedAt: str
    lastSeenAt: str

class DeviceListResponse(BaseModel):
    success: bool = True
    devices: List[DeviceInfo]

class TokenValidationResponse(BaseModel):
    valid: bool
    activationId: Optional[str] = None
    refresh: bool = False
    message: Optional[str] = None

class LegacyVerifyResponse(BaseModel):
    success: bool
    purchase: Optional[PurchaseInfo] = None
    message: str
    upgradeRequired: bool = True

class ErrorResponse(BaseModel):
    success: bool = False
    message: str

class LicenseStatusResponse(BaseModel):
    state: LicenseState
    isValid: bool
    deviceId: Optional[str] = None
    deviceName: Optional[str] = None
    licensee: Optional[str] = None
    lastHeartbeat: Optional[str] = None
    inGracePeriod: bool = False
    message: Optional[str] = None

class HealthCheckResponse(BaseModel):
    status: str
    service: str
    version: str
    environment: str
