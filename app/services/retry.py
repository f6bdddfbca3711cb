import errno
import socket
from dataclasses import dataclass

from app.core.errors import BookingEngineError, TransientStoreError

RETRYABLE_CODES = frozenset({"ECONNRESET", "ETIMEDOUT", "ENOTFOUND", "ECONNREFUSED", "EAI_AGAIN"})
TRANSIENT_MARKERS = ("timeout", "connection", "network", "temporary", "rate limit")


@dataclass(frozen=True)
class RetryPolicy:
    max_retries: int = 2
    base_delay: float = 1.0

    def delay_for(self, attempt: int) -> float:
        """Linear backoff: attempt 1 waits base_delay, attempt 2 waits 2 * base_delay."""
        return attempt * self.base_delay


def error_code(exc: BaseException) -> str | None:
    """Best-effort transport code for an exception (ECONNRESET, ETIMEDOUT, ...)."""
    # SQLAlchemy DBAPIError wraps the driver exception in .orig; its own .code is a docs link id
    orig = getattr(exc, "orig", None)
    if orig is not None and orig is not exc:
        return error_code(orig)
    if isinstance(exc, socket.gaierror):
        return "ENOTFOUND"
    if isinstance(exc, OSError) and exc.errno in errno.errorcode:
        return errno.errorcode[exc.errno]
    if isinstance(exc, TimeoutError):
        return "ETIMEDOUT"
    code = getattr(exc, "code", None)
    return code if isinstance(code, str) and code else None


def is_retryable(exc: BaseException) -> bool:
    if isinstance(exc, TransientStoreError):
        return True
    if isinstance(exc, BookingEngineError):
        return False
    if getattr(exc, "connection_invalidated", False):
        return True
    if error_code(exc) in RETRYABLE_CODES:
        return True
    message = str(exc).lower()
    return any(marker in message for marker in TRANSIENT_MARKERS)
