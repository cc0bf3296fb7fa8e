from __future__ import annotations

from .types import RfqmJobStatus


class NotFoundError(RuntimeError):
    def __init__(self, entity: str, key: str) -> None:
        super().__init__(f"{entity} not found: {key}")
        self.entity = entity
        self.key = key


class ValidationError(ValueError):
    def __init__(self, field: str, code: str, reason: str) -> None:
        super().__init__(f"{field}: {reason}")
        self.field = field
        self.code = code
        self.reason = reason


class TooManyRequestsError(RuntimeError):
    pass


class InternalServerError(RuntimeError):
    pass


class JobAlreadyExistsError(RuntimeError):
    def __init__(self, order_hash: str) -> None:
        super().__init__(f"Job already exists for order hash {order_hash}")
        self.order_hash = order_hash


class JobProcessingError(RuntimeError):
    def __init__(self, order_hash: str, status: RfqmJobStatus, message: str | None = None) -> None:
        super().__init__(message or f"Job {order_hash} failed with status {status.value}")
        self.order_hash = order_hash
        self.status = status


class InvariantViolationError(RuntimeError):
    pass
