from pydantic_settings import BaseSettings

from exceptions import ConfigurationError

REQUIRED_SECRETS = ("JWT_SECRET", "LICENSE_HASH_SALT", "DEVICE_HASH_SALT")

class Settings(BaseSettings):
    # Runtime
    ENVIRONMENT: str = "production"
    LOG_LEVEL: str = "INFO"

    # Database
    DATABASE_URL: str = "sqlite:///./data/licenses.db"

    # Secrets (no defaults, see validate_security)
    JWT_SECRET: str = ""
    LICENSE_HASH_SALT: str = ""
    DEVICE_HASH_SALT: str = ""

    # Device fingerprint salt (client side, not a secret)
    DEVICE_FINGERPRINT_SALT: str = "shop-analytics-device-salt"

    # Purchase verification provider
    LICENSE_VERIFY_URL: str = "https://api.gumroad.com/v2/licenses/verify"
    LICENSE_PRODUCT_ID: str = ""
    LICENSE_PRODUCT_PERMALINK: str = ""
    LICENSE_API_TIMEOUT: float = 15.0

    # Credentials
    TOKEN_EXPIRY_DAYS: int = 7

    # Device binding
    MAX_DEVICES_PER_LICENSE: int = 1
    STALE_ACTIVATION_DAYS: int = 30
    CLEANUP_INTERVAL_HOURS: int = 24

    # Heartbeat Configuration
    HEARTBEAT_INTERVAL_HOURS: float = 1

    # Grace Period
    OFFLINE_GRACE_PERIOD_HOURS: float = 72

    # Client
    LICENSE_API_URL: str = "http://localhost:5000/api/license"
    CLIENT_DATABASE_URL: str = "sqlite:///./data/license_cache.db"

    class Config:
        env_file = ".env"

    def validate_security(self) -> None:
        """Refuse to run without the signing secret and hash salts."""
        missing = [name for name in REQUIRED_SECRETS if not getattr(self, name)]
        if missing:
            raise ConfigurationError(
                f"Missing required configuration: {', '.join(missing)}"
            )

settings = Settings()
