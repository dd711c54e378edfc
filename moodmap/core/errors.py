"""
errors.py — Exception taxonomy for the analytics and broadcast engine.

    EngineError
      ├── InvalidInput          malformed event / parameter reaching the engine
      ├── UnsupportedAlgorithm  unknown clustering variant
      ├── ComputationTimeout    a deadline elapsed mid-computation
      ├── StoreUnavailable      no event store connection (degraded mode)
      └── TransportFailure      delivery to one subscriber failed

main.py maps the first four onto HTTP responses. TransportFailure never
leaves BroadcastRegistry.publish; it is logged there and the fan-out
continues.
"""

from __future__ import annotations

import time
from typing import Iterable


class EngineError(Exception):
    """Base class for everything the engine raises on purpose."""


class InvalidInput(EngineError):
    """Event or parameter outside the documented domain."""


class UnsupportedAlgorithm(EngineError):
    def __init__(self, algorithm: str, supported: Iterable[str]):
        self.algorithm = algorithm
        self.supported = sorted(supported)
        super().__init__(
            f"Unsupported clustering algorithm '{algorithm}'. "
            f"Use one of: {', '.join(self.supported)}"
        )


class ComputationTimeout(EngineError):
    def __init__(self, operation: str, seconds: float):
        self.operation = operation
        self.seconds = seconds
        super().__init__(f"{operation} exceeded its {seconds:.1f}s deadline")


class StoreUnavailable(EngineError):
    """Raised when the event store has no live connection."""


class TransportFailure(EngineError):
    def __init__(self, subscriber_id: str, cause: BaseException | None = None):
        self.subscriber_id = subscriber_id
        self.cause = cause
        super().__init__(f"Delivery to subscriber {subscriber_id} failed: {cause!r}")


class Deadline:
    """
    Monotonic wall-clock budget checked from inside CPU-bound loops.

    `Deadline(None)` never expires, so callers can pass one unconditionally.
    """

    def __init__(self, seconds: float | None, operation: str = "computation"):
        self.seconds = seconds
        self.operation = operation
        self._expires_at = None if seconds is None else time.monotonic() + seconds

    def expired(self) -> bool:
        return self._expires_at is not None and time.monotonic() >= self._expires_at

    def remaining(self) -> float | None:
        if self._expires_at is None:
            return None
        return max(0.0, self._expires_at - time.monotonic())

    def check(self) -> None:
        if self.expired():
            raise ComputationTimeout(self.operation, self.seconds or 0.0)
