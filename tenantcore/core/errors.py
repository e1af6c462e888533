from __future__ import annotations


class TenancyError(Exception):
    """Base error for tenantcore.

    Every subclass carries a stable public ``code``, the HTTP status it maps
    to and whether a caller may retry. ``public_message`` is what clients see;
    the exception text may carry more detail for logs.
    """

    code = "INTERNAL_ERROR"
    http_status = 500
    retryable = False
    public_message = "Internal error"

    def __init__(self, message: str | None = None) -> None:
        super().__init__(message or self.public_message)


class UnauthenticatedError(TenancyError):
    """No actor or tenant could be resolved for the request."""

    code = "AUTH_UNAUTHENTICATED"
    http_status = 401
    public_message = "Authentication required"


class TenantInactiveError(TenancyError):
    """Tenant lifecycle status does not allow requests."""

    code = "TENANT_INACTIVE"
    http_status = 403
    public_message = "Tenant is not active"


class AuthorizationDeniedError(TenancyError):
    """RBAC evaluation returned DENY; never names the deciding rule."""

    code = "AUTH_FORBIDDEN"
    http_status = 403
    public_message = "Insufficient permissions"

    def __init__(self, permission: str | None = None, message: str | None = None) -> None:
        super().__init__(message)
        self.permission = permission


class OperationNotAllowedError(TenancyError):
    """Operation is never permitted for this resource type."""

    code = "OPERATION_NOT_ALLOWED"
    http_status = 403
    public_message = "Operation not allowed"


class EntityNotFoundError(TenancyError):
    """Entity does not exist or is not visible to the current tenant."""

    code = "NOT_FOUND"
    http_status = 404
    public_message = "Resource not found"

    def __init__(self, resource_type: str, resource_id: str) -> None:
        super().__init__(f"{resource_type} {resource_id} not found")
        self.resource_type = resource_type
        self.resource_id = resource_id


class OptimisticLockError(TenancyError):
    """Stored version differs from the version the caller read."""

    code = "VERSION_CONFLICT"
    http_status = 409
    retryable = True
    public_message = "Resource was modified by another request; refetch and retry"

    def __init__(self, resource_type: str, resource_id: str, expected_version: int) -> None:
        super().__init__(
            f"{resource_type} {resource_id} was modified concurrently; expected version {expected_version}"
        )
        self.resource_type = resource_type
        self.resource_id = resource_id
        self.expected_version = expected_version


class DuplicateEntityError(TenancyError):
    """Unique business key already exists within the tenant."""

    code = "CONFLICT"
    http_status = 409
    public_message = "Resource already exists"


class SequenceExhaustedError(TenancyError):
    """Number sequence reached its configured maximum."""

    code = "SEQUENCE_EXHAUSTED"
    http_status = 409
    public_message = "Number sequence exhausted"


class InvalidRequestError(TenancyError):
    """Caller-supplied parameters failed validation."""

    code = "INVALID_REQUEST"
    http_status = 422
    public_message = "Invalid request"

    def __init__(self, message: str) -> None:
        super().__init__(message)
        # Validation messages describe caller input only, so they are safe to expose.
        self.public_message = message


class RoleHierarchyCycleError(InvalidRequestError):
    """Linking roles would create a cycle in the role hierarchy."""

    code = "ROLE_HIERARCHY_CYCLE"


class UnknownPermissionError(InvalidRequestError):
    """Permission code is not part of the permission catalog."""

    code = "UNKNOWN_PERMISSION"


class IsolationPublishError(TenancyError):
    """Publishing session claims failed; the transaction cannot proceed."""

    code = "ISOLATION_UNAVAILABLE"
    http_status = 503
    public_message = "Service temporarily unavailable"


class TransactionTimeoutError(TenancyError, TimeoutError):
    """Isolated transaction exceeded its deadline and was rolled back."""

    code = "TRANSACTION_TIMEOUT"
    http_status = 503
    retryable = True
    public_message = "Request timed out"


class DatabaseError(TenancyError):
    """Database layer failure."""

    code = "DATABASE_ERROR"
    http_status = 500
