"""
Budgetflow Error Handling

Specific error types with user-friendly messages and debugging context.
"""
from typing import Optional, Dict, Any
from fastapi import HTTPException
from enum import Enum


class ErrorCode(str, Enum):
    """Standardized error codes for client handling."""
    # Input errors (400s)
    INVALID_REQUEST = "INVALID_REQUEST"
    INVALID_POLICY = "INVALID_POLICY"
    NOT_FOUND = "NOT_FOUND"

    # Auth errors (401/403)
    INVALID_API_KEY = "INVALID_API_KEY"
    REAUTH_REQUIRED = "REAUTH_REQUIRED"
    NOT_AUTHORIZED = "NOT_AUTHORIZED"

    # Workflow errors (409)
    INVALID_STATE = "INVALID_STATE"
    CONCURRENCY_CONFLICT = "CONCURRENCY_CONFLICT"

    # Processing errors (500s)
    DATABASE_ERROR = "DATABASE_ERROR"


class BudgetflowError(Exception):
    """Base exception with structured error info."""

    retryable = False

    def __init__(
        self,
        code: ErrorCode,
        message: str,
        detail: Optional[str] = None,
        context: Optional[Dict[str, Any]] = None
    ):
        self.code = code
        self.message = message
        self.detail = detail
        self.context = context or {}
        super().__init__(message)

    def to_dict(self) -> Dict[str, Any]:
        """Convert to API response format."""
        result = {
            "error": self.code.value,
            "message": self.message
        }
        if self.detail:
            result["detail"] = self.detail
        if self.context:
            result["context"] = self.context
        if self.retryable:
            result["retryable"] = True
        return result


class PolicyError(BudgetflowError):
    """Malformed approval step definition, rejected at save time."""

    def __init__(self, detail: str, errors: Optional[list] = None):
        super().__init__(
            code=ErrorCode.INVALID_POLICY,
            message="Invalid approval policy",
            detail=detail,
            context={"errors": errors} if errors else None
        )
        self.errors = errors or []


class AuthorizationError(BudgetflowError):
    """Actor is not an eligible approver for the current step."""

    def __init__(self, actor_id: str, detail: str, document_id: Optional[str] = None):
        context = {"actor_id": actor_id}
        if document_id:
            context["document_id"] = document_id
        super().__init__(
            code=ErrorCode.NOT_AUTHORIZED,
            message=f"Member {actor_id} cannot act on this document",
            detail=detail,
            context=context
        )


class StateError(BudgetflowError):
    """Action on a document that is not in an actionable state."""

    def __init__(self, document_id: str, status: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_STATE,
            message=f"Document {document_id} is {status}",
            detail=detail,
            context={"document_id": document_id, "status": status}
        )


class ValidationError(BudgetflowError):
    """Request is missing data or carries invalid values."""

    def __init__(self, field: str, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_REQUEST,
            message=f"Invalid value for '{field}'",
            detail=detail,
            context={"field": field}
        )


class NotFoundError(BudgetflowError):
    """Referenced entity does not exist."""

    def __init__(self, entity: str, entity_id: str):
        super().__init__(
            code=ErrorCode.NOT_FOUND,
            message=f"{entity} {entity_id} not found",
            context={"entity": entity, "id": entity_id}
        )


class InvalidAPIKeyError(BudgetflowError):
    """X-API-Key header missing or not matching the configured key."""

    def __init__(self, detail: str):
        super().__init__(
            code=ErrorCode.INVALID_API_KEY,
            message="Invalid or missing API key",
            detail=detail
        )


class ReauthenticationError(BudgetflowError):
    """Reauthentication gate refused a destructive action."""

    def __init__(self, actor_id: str, action: str):
        super().__init__(
            code=ErrorCode.REAUTH_REQUIRED,
            message=f"Reauthentication required to {action}",
            context={"actor_id": actor_id, "action": action}
        )


class ConcurrencyConflict(BudgetflowError):
    """A versioned write lost a race with another writer."""

    retryable = True

    def __init__(self, entity: str, entity_id: str, detail: str = "Row changed since it was read"):
        super().__init__(
            code=ErrorCode.CONCURRENCY_CONFLICT,
            message=f"Concurrent update on {entity} {entity_id}",
            detail=detail,
            context={"entity": entity, "id": entity_id}
        )


class StorageError(BudgetflowError):
    """Document store failed or stayed contended past the retry budget."""

    def __init__(self, operation: str, detail: str, retryable: bool = False):
        super().__init__(
            code=ErrorCode.DATABASE_ERROR,
            message=f"Storage failure during {operation}",
            detail=detail,
            context={"operation": operation}
        )
        self.retryable = retryable


STATUS_MAP = {
    ErrorCode.INVALID_REQUEST: 400,
    ErrorCode.INVALID_POLICY: 422,
    ErrorCode.NOT_FOUND: 404,
    ErrorCode.INVALID_API_KEY: 401,
    ErrorCode.REAUTH_REQUIRED: 401,
    ErrorCode.NOT_AUTHORIZED: 403,
    ErrorCode.INVALID_STATE: 409,
    ErrorCode.CONCURRENCY_CONFLICT: 409,
    ErrorCode.DATABASE_ERROR: 500,
}


def status_code_for(error: BudgetflowError) -> int:
    return STATUS_MAP.get(error.code, 500)


def to_http_exception(
    error: BudgetflowError,
    headers: Optional[Dict[str, str]] = None,
) -> HTTPException:
    """Convert BudgetflowError to HTTPException."""
    return HTTPException(
        status_code=status_code_for(error),
        detail=error.to_dict(),
        headers=headers
    )
