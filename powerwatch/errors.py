"""
Exceptions raised by the liveness engine.
ValidationError: bad heartbeat, nothing mutated.
StorageError: backend read/write failure; retryable when it was a timeout.
SerializationError: persisted snapshot could not be decoded.
"""
from typing import Any, Optional


class PowerwatchError(Exception):
    """Base for all powerwatch errors."""

    def __init__(self, message: str, client_id: Optional[str] = None) -> None:
        self.message = message
        self.client_id = client_id
        super().__init__(f"[{client_id}] {message}" if client_id else message)

    def to_dict(self) -> dict[str, Any]:
        out: dict[str, Any] = {"error": self.message, "type": self.__class__.__name__}
        if self.client_id:
            out["clientId"] = self.client_id
        return out


class ValidationError(PowerwatchError):
    pass


class StorageError(PowerwatchError):
    def __init__(self, message: str, client_id: Optional[str] = None, retryable: bool = False) -> None:
        super().__init__(message, client_id)
        self.retryable = retryable

    def to_dict(self) -> dict[str, Any]:
        out = super().to_dict()
        out["retryable"] = self.retryable
        return out


class SerializationError(PowerwatchError):
    pass
