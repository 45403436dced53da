"""
Error types for the inventory core.

This module defines every exception the core raises across its boundary:
- InventoryCoreError: Base exception
- NotFoundError: Record not present
- ValidationError: Record rejected by the schema layer
- ConflictError: Unique-constraint violation or lost optimistic update
- TransactionRequiredError / TransactionTooLargeError / PartialRollbackError
- InsufficientSourceError: Derivation would oversubscribe its source
- BackendUnavailableError: Backend unreachable after retries
- ConfigurationError: Missing or invalid startup configuration
- InternalError: Anything unexpected, wrapped at the boundary

Invariants:
    - All errors inherit from InventoryCoreError
    - Every error carries a stable code and an HTTP status
    - Backend-native exceptions never escape the backend modules

How to change safely:
    - Codes are part of the wire format, never rename one
    - New kinds get a new subclass with its own code
"""

from __future__ import annotations

from typing import Any, Dict, List, Optional


class InventoryCoreError(Exception):
    """Base exception for all inventory core errors.

    Attributes:
        message: Error message
        code: Error code for programmatic handling
        details: Additional error context
        status: HTTP status used at the boundary
    """

    status = 500

    def __init__(
        self,
        message: str,
        code: Optional[str] = None,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message)
        self.message = message
        self.code = code or "INVENTORY_CORE_ERROR"
        self.details = details or {}

    def to_dict(self) -> Dict[str, Any]:
        """Error payload in the `{status, message, code}` wire shape."""
        return {
            "status": "fail" if self.status < 500 else "error",
            "message": self.message,
            "code": self.code,
        }


class NotFoundError(InventoryCoreError):
    """Record not found.

    Raised when:
    - A lookup by id misses
    - A derivation source does not exist
    - An update or delete targets a missing record
    """

    status = 404

    def __init__(self, entity: str, entity_id: str) -> None:
        super().__init__(
            f"{entity} with id {entity_id} not found",
            code="NOT_FOUND",
            details={"entity": entity, "id": entity_id},
        )
        self.entity = entity
        self.entity_id = entity_id


class ValidationError(InventoryCoreError):
    """Record rejected by schema validation.

    Raised when:
    - A required field is missing
    - A field value has the wrong type or enum value
    - An entity-level rule (e.g. purchase totals) does not hold
    """

    status = 400

    def __init__(
        self,
        message: str,
        errors: Optional[List[str]] = None,
        code: str = "VALIDATION_ERROR",
    ) -> None:
        super().__init__(message, code=code, details={"errors": errors or []})
        self.errors = errors or []


class InvalidRelationshipCombinationError(ValidationError):
    """Relationship type does not permit the given entity type pair."""

    def __init__(self, relationship_type: str, primary_type: str, secondary_type: str) -> None:
        super().__init__(
            f"Invalid entity combination for {relationship_type}: "
            f"{primary_type} -> {secondary_type}",
            errors=[f"{primary_type} -> {secondary_type} not permitted for {relationship_type}"],
            code="INVALID_RELATIONSHIP_COMBINATION",
        )
        self.relationship_type = relationship_type
        self.primary_type = primary_type
        self.secondary_type = secondary_type


class ConflictError(InventoryCoreError):
    """Write conflicted with existing data.

    Attributes:
        retryable: True for a lost optimistic update, False for a
            unique-constraint violation
    """

    status = 409

    def __init__(
        self,
        message: str,
        retryable: bool = False,
        details: Optional[Dict[str, Any]] = None,
    ) -> None:
        super().__init__(message, code="CONFLICT", details=details)
        self.retryable = retryable


class TransactionRequiredError(InventoryCoreError):
    """A mutation needs a transaction handle and none was supplied."""

    def __init__(self, operation: str) -> None:
        super().__init__(
            f"{operation} requires an active transaction",
            code="TRANSACTION_REQUIRED",
            details={"operation": operation},
        )


class TransactionTooLargeError(InventoryCoreError):
    """Pending batch exceeds the backend's transactional write limit."""

    status = 413

    def __init__(self, size: int, limit: int) -> None:
        super().__init__(
            f"Transaction has {size} operations, backend limit is {limit}",
            code="TRANSACTION_TOO_LARGE",
            details={"size": size, "limit": limit},
        )
        self.size = size
        self.limit = limit


class PartialRollbackError(InventoryCoreError):
    """One or more compensating writes failed; the store may be inconsistent."""

    def __init__(self, failures: List[Dict[str, Any]]) -> None:
        super().__init__(
            f"Rollback incomplete: {len(failures)} compensating write(s) failed",
            code="PARTIAL_ROLLBACK",
            details={"failures": failures},
        )
        self.failures = failures


class InsufficientSourceError(InventoryCoreError):
    """Derivation requests more of an axis than the source holds."""

    status = 422

    def __init__(self, source_id: str, axis: str, requested: float, available: float) -> None:
        super().__init__(
            f"Insufficient {axis} on source {source_id}: requested {requested}, "
            f"available {available}",
            code="INSUFFICIENT_SOURCE",
            details={
                "source": source_id,
                "axis": axis,
                "requested": requested,
                "available": available,
            },
        )
        self.axis = axis
        self.requested = requested
        self.available = available


class BackendUnavailableError(InventoryCoreError):
    """Backend could not be reached after the retry schedule."""

    status = 503

    def __init__(self, message: str, provider: Optional[str] = None) -> None:
        super().__init__(message, code="BACKEND_UNAVAILABLE", details={"provider": provider})
        self.provider = provider


class ConfigurationError(InventoryCoreError):
    """Startup configuration is missing or invalid."""

    def __init__(self, message: str, missing: Optional[List[str]] = None) -> None:
        super().__init__(message, code="CONFIGURATION_ERROR", details={"missing": missing or []})
        self.missing = missing or []


class InternalError(InventoryCoreError):
    """Unexpected failure; the cause is logged, never returned."""

    def __init__(self, message: str = "Internal server error") -> None:
        super().__init__(message, code="INTERNAL")
