"""
Shared error handling for the Access Layer permissions engine.
"""

from typing import Dict, Any, Optional
from pydantic import BaseModel, Field

from shared.logging import request_id_var


class ErrorResponse(BaseModel):
    """Standard error response format."""

    request_id: Optional[str] = None
    code: str
    message: str
    details: Dict[str, Any] = Field(default_factory=dict)


class AccessLayerException(Exception):
    """Base exception for Access Layer services."""

    def __init__(self, code: str, message: str, details: Optional[Dict[str, Any]] = None):
        self.code = code
        self.message = message
        self.details = details or {}
        super().__init__(message)

    def to_response(self) -> ErrorResponse:
        """Convert to error response."""
        return ErrorResponse(
            request_id=request_id_var.get(),
            code=self.code,
            message=self.message,
            details=self.details
        )


class AuthorizationError(AccessLayerException):
    """Authorization-related errors."""

    def __init__(self, message: str = "Authorization failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("AUTHORIZATION_ERROR", message, details)


class PermissionDeniedError(AuthorizationError):
    """An account is not permitted to perform an action.

    Only the account, action and entity type are exposed; the rulesets that
    were consulted never leave the engine.
    """

    def __init__(self, account_id: str, action: str, entity_type: str):
        self.account_id = account_id
        self.action = action
        self.entity_type = entity_type
        super().__init__(
            f"Account {account_id} is not permitted to {action} {entity_type}",
            {"account_id": account_id, "action": action, "entity_type": entity_type}
        )


class ValidationError(AccessLayerException):
    """Validation-related errors."""

    def __init__(self, message: str = "Validation failed", details: Optional[Dict[str, Any]] = None):
        super().__init__("VALIDATION_ERROR", message, details)


class MalformedPermissionError(ValidationError):
    """A permission string does not follow `entityType:action[:property]` or `*`."""

    def __init__(self, raw: str, reason: str):
        self.raw = raw
        super().__init__(f"Malformed permission '{raw}': {reason}", {"permission": raw})


class InvalidEntitlementNameError(ValidationError):
    """Entitlement names are lowercase letters, digits and hyphens."""

    def __init__(self, name: str):
        super().__init__(
            f"Entitlement name must be lowercase and contain only letters, numbers, and hyphens. ({name})",
            {"name": name}
        )


class UnknownEntityTypeError(ValidationError):
    """An entity type was used before it was registered."""

    def __init__(self, entity_type: str):
        super().__init__(f"Entity type {entity_type} is not registered", {"entity_type": entity_type})


class ServiceError(AccessLayerException):
    """Service-related errors."""

    def __init__(self, message: str = "Service error", details: Optional[Dict[str, Any]] = None):
        super().__init__("SERVICE_ERROR", message, details)


class StorageError(ServiceError):
    """Opaque wrapper around a failed storage read or write."""

    def __init__(self, operation: str):
        self.operation = operation
        super().__init__("Internal storage error", {"operation": operation})
        self.code = "STORAGE_ERROR"


class CatalogError(ServiceError):
    """The entitlement catalog was used outside its registration lifecycle."""

    def __init__(self, message: str):
        super().__init__(message)
        self.code = "CATALOG_ERROR"


class NotFoundError(AccessLayerException):
    """A role, membership or ruleset does not exist."""

    def __init__(self, message: str = "Not found", details: Optional[Dict[str, Any]] = None):
        super().__init__("NOT_FOUND", message, details)


class ConflictError(AccessLayerException):
    """A grant already exists."""

    def __init__(self, message: str = "Conflict", details: Optional[Dict[str, Any]] = None):
        super().__init__("CONFLICT", message, details)
