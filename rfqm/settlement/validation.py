from __future__ import annotations

from .types import RfqmJob, RfqmJobStatus


def validate_job(job: RfqmJob, now_seconds: float) -> RfqmJobStatus | None:
    """Return the failure status for the first unmet precondition, or ``None``."""
    if not job.maker_uri:
        return RfqmJobStatus.FAILED_VALIDATION_NO_MAKER_URI
    if job.order is None:
        return RfqmJobStatus.FAILED_VALIDATION_NO_ORDER
    if job.fee is None:
        return RfqmJobStatus.FAILED_VALIDATION_NO_FEE
    if job.order.expiry <= now_seconds:
        return RfqmJobStatus.FAILED_EXPIRED
    if job.taker_signature is None:
        return RfqmJobStatus.FAILED_VALIDATION_NO_TAKER_SIGNATURE
    return None
