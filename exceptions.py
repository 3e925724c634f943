class LicenseError(Exception):
    """Base error for the licensing protocol.

    ``status_code`` is the HTTP status the API answers with when the error
    escapes a route handler.
    """

    status_code = 400

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message


class VerificationFailed(LicenseError):
    status_code = 401


class SlotLimitReached(LicenseError):
    status_code = 409


class ActivationNotFound(LicenseError):
    status_code = 401


class CredentialInvalid(LicenseError):
    status_code = 401

    def __init__(self, message: str, expired: bool = False):
        super().__init__(message)
        self.expired = expired


class ConfigurationError(RuntimeError):
    """Missing secret or salt. Fatal at startup."""
