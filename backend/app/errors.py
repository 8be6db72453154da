"""
Failure taxonomy for document issuance and settlement.

Every error aborts the enclosing transaction and reaches the caller unchanged;
`main.py` turns them into HTTP responses using `status_code`.
"""


class LedgerError(Exception):
    status_code = 500

    def __init__(self, detail: str):
        super().__init__(detail)
        self.detail = detail


class ValidationError(LedgerError):
    """Bad input shape (empty lines, negative prices, ...). Not retried."""

    status_code = 400


class NotFoundError(LedgerError):
    status_code = 404


class StateConflictError(LedgerError):
    """The target exists but its current state forbids the operation."""

    status_code = 409


class AlreadyBilledError(StateConflictError):
    pass


class InvalidStateError(StateConflictError):
    pass


class AllocationExhaustedError(LedgerError):
    # Only reachable under abnormal contention on one (company, series).
    status_code = 503


class StorageError(LedgerError):
    # Transaction rolled back; the whole request is safe to retry.
    status_code = 503
