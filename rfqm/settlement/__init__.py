from .blockchain import RfqBlockchainClient, load_worker_account
from .errors import (
    InternalServerError,
    InvariantViolationError,
    JobAlreadyExistsError,
    JobProcessingError,
    NotFoundError,
    TooManyRequestsError,
    ValidationError,
)
from .last_look import LastLookCoordinator
from .maker_client import QuoteServerClient
from .makers import RfqMakerManager, RuntimeConfig
from .service import RfqmService
from .submitter import TransactionSubmitter
from .types import RfqmJob, RfqmJobStatus, SubmissionStatus, TransactionSubmission
from .watcher import TransactionWatcher
from .worker import RfqmWorker

__all__ = [
    "InternalServerError",
    "InvariantViolationError",
    "JobAlreadyExistsError",
    "JobProcessingError",
    "LastLookCoordinator",
    "NotFoundError",
    "QuoteServerClient",
    "RfqBlockchainClient",
    "RfqMakerManager",
    "RfqmJob",
    "RfqmJobStatus",
    "RfqmService",
    "RfqmWorker",
    "RuntimeConfig",
    "SubmissionStatus",
    "TooManyRequestsError",
    "TransactionSubmission",
    "TransactionSubmitter",
    "TransactionWatcher",
    "ValidationError",
    "load_worker_account",
]
