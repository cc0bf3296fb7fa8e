from .async_utils import guarded_call, retry_with_backoff
from .logging import log_event

__all__ = [
    "guarded_call",
    "log_event",
    "retry_with_backoff",
]
