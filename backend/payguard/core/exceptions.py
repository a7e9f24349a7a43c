class PayGuardError(Exception):
    """Base exception for the payment reliability core."""

    status_code = 500


class NotFoundError(PayGuardError):
    """Raised when a billing record, subscription or event does not exist."""

    status_code = 404

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} not found")


class ValidationError(PayGuardError):
    """Raised when input (amount, owner) is invalid."""

    status_code = 422


class PreconditionFailedError(PayGuardError):
    """Raised when an operation is not allowed in the record's current state."""

    status_code = 409


class InvalidTransitionError(PreconditionFailedError):
    """Raised when a billing status transition is not in the state machine."""

    def __init__(self, current: str, target: str):
        self.current = current
        self.target = target
        super().__init__(f"Cannot transition billing record from {current} to {target}")


class ConcurrentModificationError(PayGuardError):
    """Raised when another writer updated the row first (optimistic version check)."""

    status_code = 409

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} was modified concurrently")


class InvariantViolationError(PayGuardError):
    """Raised when a write would break a billing ledger invariant."""

    pass


class RetryLimitExceededError(PayGuardError):
    """Raised when a retry chain is asked to run past its bound."""

    def __init__(self, record_id: object, attempts: int):
        self.record_id = record_id
        self.attempts = attempts
        super().__init__(f"Retry limit exceeded for billing record '{record_id}' after {attempts} attempts")


class RecordBusyError(PayGuardError):
    """Raised when another worker holds the lock on a billing record."""

    status_code = 409

    def __init__(self, entity: str, entity_id: object):
        self.entity = entity
        self.entity_id = entity_id
        super().__init__(f"{entity} {entity_id} is locked by another operation")
