"""Settlement hooks for the image worker.

The worker drives a queued job through processing to completion or failure
and reports back here; this module turns that report into job status plus
the ledger side of the reservation (keep what was consumed, refund the rest).
"""

import logging

from photoforge import db
from photoforge.errors import NotFoundError, ValidationError
from photoforge.ledger import CreditLedger
from photoforge.pricing import PricingCalculator

logger = logging.getLogger(__name__)

FINAL_STATUSES = {"completed", "failed"}


class JobSettlement:
    def __init__(self, database: db.Database, ledger: CreditLedger, pricing: PricingCalculator) -> None:
        self.database = database
        self.ledger = ledger
        self.pricing = pricing

    def _load(self, job_id: str) -> dict:
        with self.database.read() as conn:
            job = db.get_job(conn, job_id)
        if not job:
            raise NotFoundError(f"Job not found: {job_id}")
        return job

    def mark_processing(self, job_id: str, progress: int = 0) -> dict:
        with self.database.transaction() as conn:
            job = _locked_job(conn, job_id)
            if job["status"] not in {"queued", "processing"}:
                raise ValidationError(f"Job {job_id} is {job['status']}, not queued")
            db.update_job_status(conn, job_id, "processing", progress=max(0, min(progress, 99)))
        return self._load(job_id)

    def complete_job(self, job_id: str, images_processed: int) -> dict:
        with self.database.transaction() as conn:
            job = _locked_job(conn, job_id)
            if job["status"] in FINAL_STATUSES:
                return job
            if images_processed < 0 or images_processed > int(job["image_count"]):
                raise ValidationError("images_processed must be between 0 and the job's image count")

            reserved = int(job["credits_reserved"])
            consumed = min(self.pricing.compute_cost(images_processed), reserved) if images_processed else 0
            unused = reserved - consumed
            if unused > 0:
                self.ledger.apply_refund(
                    conn,
                    job["account_id"],
                    unused,
                    job_id,
                    f"{int(job['image_count']) - images_processed} of {job['image_count']} images not processed",
                )
            db.update_job_status(conn, job_id, "completed", progress=100, credits_consumed=consumed)

        logger.info("Job %s completed: %s credits consumed, %s refunded", job_id, consumed, unused)
        return self._load(job_id)

    def fail_job(self, job_id: str, error: str) -> dict:
        with self.database.transaction() as conn:
            job = _locked_job(conn, job_id)
            if job["status"] == "completed":
                raise ValidationError(f"Job {job_id} is already completed")

            reserved = int(job["credits_reserved"])
            if reserved > 0:
                self.ledger.apply_refund(conn, job["account_id"], reserved, job_id, error)
            db.update_job_status(conn, job_id, "failed", error=error, credits_consumed=0)

        logger.warning("Job %s failed: %s", job_id, error)
        return self._load(job_id)


def _locked_job(conn, job_id: str) -> dict:
    # read under the write transaction so status checks and settlement cannot interleave
    job = db.get_job(conn, job_id)
    if not job:
        raise NotFoundError(f"Job not found: {job_id}")
    return job
