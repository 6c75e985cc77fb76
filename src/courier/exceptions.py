"""Courier exception hierarchy.

Provides structured exceptions for management-time errors.
All exceptions inherit from CourierError for easy catching.

Delivery failures are never raised: the executor converts them into
classified attempt outcomes instead.
"""

from __future__ import annotations


class CourierError(Exception):
    """Base exception for all Courier errors.

    Attributes:
        message: Human-readable error description.
        code: Machine-readable error code for API responses.
    """

    code: str = "courier_error"

    def __init__(self, message: str) -> None:
        self.message = message
        super().__init__(message)

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "message": self.message,
            }
        }


class ValidationError(CourierError):
    """Invalid webhook configuration or malformed event.

    Raised synchronously at create/update/trigger time. Invalid input
    never enters the delivery pipeline.

    Attributes:
        field: The field that failed validation.
        message: Description of the validation failure.
    """

    code: str = "validation_error"

    def __init__(self, field: str, message: str) -> None:
        self.field = field
        super().__init__(f"{field}: {message}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "field": self.field,
                "message": self.message,
            }
        }


class NotFoundError(CourierError):
    """Resource not found.

    Raised when a webhook or delivery referenced by an operator doesn't exist.

    Attributes:
        resource_type: Type of resource ("webhook" or "delivery").
        resource_id: ID of the missing resource.
    """

    code: str = "not_found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        self.resource_type = resource_type
        self.resource_id = resource_id
        super().__init__(f"{resource_type} not found: {resource_id}")

    def to_dict(self) -> dict[str, object]:
        """Convert exception to API-friendly dictionary."""
        return {
            "error": {
                "code": self.code,
                "resource_type": self.resource_type,
                "resource_id": self.resource_id,
                "message": self.message,
            }
        }


class StorageError(CourierError):
    """Storage operation failed.

    Raised when the storage collaborator cannot complete an operation.
    """

    code: str = "storage_error"


class ConfigurationError(CourierError):
    """Configuration error.

    Raised when required configuration is missing or invalid.
    """

    code: str = "configuration_error"


class SignatureError(CourierError):
    """Signing failed.

    Raised by Signer.sign for an unregistered scheme. Verification never
    raises; it fails closed instead.
    """

    code: str = "signature_error"
