"""
Domain Errors

Every failure the ordering core can report is a named subclass of
OrderingError. Each carries a machine-readable code and the HTTP status the
API layer answers with, so handlers never have to guess how to present it.
"""

from typing import Any, Optional


class OrderingError(Exception):
    """Base class for all business and persistence errors of the core."""

    code: str = "ordering_error"
    status_code: int = 400
    retryable: bool = False

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> dict[str, Any]:
        """Convert to the API error payload."""
        return {
            "success": False,
            "error": self.code,
            "detail": self.message,
        }


class ValidationError(OrderingError):
    """Malformed input: empty order, bad quantity, fee on the wrong order kind."""

    code = "validation_error"
    status_code = 422


class NotFoundError(OrderingError):
    """Unknown product, order, table, account or QR token."""

    code = "not_found"
    status_code = 404

    def __init__(self, entity: str, identifier: Any):
        super().__init__(f"{entity} '{identifier}' not found")
        self.entity = entity
        self.identifier = identifier


class InvalidTransitionError(OrderingError):
    """Order status change that the transition table does not allow."""

    code = "invalid_transition"
    status_code = 409

    def __init__(self, current: Any, requested: Any):
        current = getattr(current, "value", current)
        requested = getattr(requested, "value", requested)
        super().__init__(f"Cannot change order status from '{current}' to '{requested}'")
        self.current = current
        self.requested = requested


class InvalidStateError(OrderingError):
    """Operation attempted in the wrong lifecycle phase."""

    code = "invalid_state"
    status_code = 409


class EmptyAccountError(OrderingError):
    """Closing a table account that has no qualifying orders."""

    code = "empty_account"
    status_code = 409

    def __init__(self, table_id: str):
        super().__init__(f"Table '{table_id}' has no open orders to close")
        self.table_id = table_id


class AccountAlreadyClosedError(OrderingError):
    """A closed, unpaid account already exists for the table."""

    code = "account_already_closed"
    status_code = 409

    def __init__(self, table_id: str, account_id: Optional[str] = None):
        message = f"Table '{table_id}' already has a closed account"
        if account_id:
            message += f" ({account_id})"
        super().__init__(message)
        self.table_id = table_id
        self.account_id = account_id


class InactiveTableError(OrderingError):
    """The table exists but has been taken out of service."""

    code = "inactive_table"
    status_code = 409

    def __init__(self, table_number: int):
        super().__init__(f"Table #{table_number} is inactive")
        self.table_number = table_number


class PersistenceTimeoutError(OrderingError):
    """
    A persistence call exceeded its timeout.

    The operation was rolled back in full. Callers may retry the whole
    operation but must not treat the timeout as success.
    """

    code = "timeout"
    status_code = 504
    retryable = True

    def __init__(self, operation: str, timeout: float):
        super().__init__(f"{operation} did not complete within {timeout}s")
        self.operation = operation
        self.timeout = timeout
