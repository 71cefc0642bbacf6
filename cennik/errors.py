"""Exception types mapped to HTTP status codes by the API blueprint."""

__all__ = [
    "CennikError",
    "ValidationError",
    "NotFoundError",
    "InvalidTransitionError",
    "ConfigurationError",
]


class CennikError(Exception):
    """Base error; anything not more specific is a 500."""

    status_code = 500
    error_type = "processing_error"

    def __init__(self, message: str, details=None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        payload = {"success": False, "error": self.message}
        if self.details is not None:
            payload["details"] = self.details
        return payload


class ValidationError(CennikError):
    """Missing or malformed request fields."""

    status_code = 400
    error_type = "validation_error"


class NotFoundError(CennikError):
    """Unknown producer, catalog file, category, product, override or change."""

    status_code = 404
    error_type = "not_found_error"


class InvalidTransitionError(CennikError):
    """A scheduled change that is no longer pending was asked to move."""

    status_code = 409
    error_type = "invalid_transition"


class ConfigurationError(CennikError):
    """Missing configuration such as a mail recipient or credentials file."""

    status_code = 500
    error_type = "configuration_error"
