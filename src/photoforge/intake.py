"""Job submission: validate, price, upload, reserve, record, dispatch.

Credits are reserved only after every upload has succeeded. If recording or
dispatching the job fails, the reservation is refunded and the job marked
failed before the caller sees the error, so no credits stay held against a job
that never reached the queue.
"""

import logging
from pathlib import Path
from uuid import uuid4

from pydantic import BaseModel

from photoforge import db
from photoforge.collaborators import Queue, Storage
from photoforge.errors import (
    DispatchError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    UploadError,
    ValidationError,
)
from photoforge.ledger import CreditLedger
from photoforge.pricing import PricingCalculator

logger = logging.getLogger(__name__)

DISPATCH_FAILED_MESSAGE = "Failed to queue job for processing"
JOB_RECORD_FAILED_MESSAGE = "Failed to record job"


class ImageUpload(BaseModel):
    filename: str
    content_type: str = "application/octet-stream"
    data: bytes


class JobSummary(BaseModel):
    id: str
    status: str
    image_count: int
    credits_reserved: int


def _extension(filename: str) -> str:
    suffix = Path(filename or "").suffix.lower().lstrip(".")
    return suffix or "jpg"


class JobIntake:
    def __init__(
        self,
        database: db.Database,
        ledger: CreditLedger,
        pricing: PricingCalculator,
        storage: Storage,
        queue: Queue,
        max_images_per_job: int = 100,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.pricing = pricing
        self.storage = storage
        self.queue = queue
        self.max_images_per_job = max_images_per_job

    def _validate(self, images: list[ImageUpload], background_prompt: str) -> None:
        if not images:
            raise ValidationError("No images provided")
        if not background_prompt or not background_prompt.strip():
            raise ValidationError("Background prompt is required")
        if len(images) > self.max_images_per_job:
            raise ValidationError(f"Maximum {self.max_images_per_job} images per job")

    def _upload_all(self, job_id: str, images: list[ImageUpload]) -> list[str]:
        refs: list[str] = []
        for i, image in enumerate(images):
            name = f"{job_id}_input_{i}.{_extension(image.filename)}"
            try:
                refs.append(self.storage.upload(image.data, name, image.content_type))
            except Exception as exc:
                logger.exception("Upload %s of %s failed for job %s", i + 1, len(images), job_id)
                raise UploadError(f"Failed to upload image {i + 1} of {len(images)}") from exc
        return refs

    def submit(self, account_id: str, images: list[ImageUpload], background_prompt: str) -> JobSummary:
        self._validate(images, background_prompt)
        background_prompt = background_prompt.strip()

        with self.database.read() as conn:
            account = db.get_account(conn, account_id)
        if not account:
            raise NotFoundError("Account not found")

        total = self.pricing.compute_cost(len(images))
        if not self.pricing.has_enough_credits(int(account["credits_balance"]), total):
            raise InsufficientCreditsError(required=total, available=int(account["credits_balance"]))

        job_id = str(uuid4())
        image_refs = self._upload_all(job_id, images)

        discount = self.pricing.get_discount_info(len(images))
        description = f"Reserved {total} credits for {len(images)} images"
        if discount:
            description += f" ({round(discount.discount_fraction * 100)}% discount)"

        reserved = self.ledger.reserve(account_id, total, job_id, description)
        if not reserved.success:
            raise InsufficientCreditsError(required=total, available=reserved.new_balance)

        try:
            with self.database.transaction() as conn:
                db.create_job(
                    conn,
                    job_id=job_id,
                    account_id=account_id,
                    credits_reserved=total,
                    image_refs=image_refs,
                    background_prompt=background_prompt,
                )
        except Exception as exc:
            logger.error("Failed to record job %s: %s", job_id, exc)
            self._abort(job_id, account_id, total, JOB_RECORD_FAILED_MESSAGE)
            raise InternalError(JOB_RECORD_FAILED_MESSAGE) from exc

        try:
            self.queue.enqueue(job_id, account_id, background_prompt, image_refs)
        except Exception as exc:
            logger.error("Failed to add job %s to queue: %s", job_id, exc)
            self._abort(job_id, account_id, total, DISPATCH_FAILED_MESSAGE)
            raise DispatchError(DISPATCH_FAILED_MESSAGE) from exc

        with self.database.transaction() as conn:
            db.update_job_status(conn, job_id, "queued")
        logger.info("Job %s added to processing queue (%s images, %s credits)", job_id, len(images), total)

        return JobSummary(id=job_id, status="queued", image_count=len(images), credits_reserved=total)

    def compensate(self, job_id: str, account_id: str, amount: int, reason: str) -> None:
        """Undo the reservation for a job that never reached the queue.

        The refund and the failed status commit together. Safe to re-run: the
        refund is keyed by job id, and a job that was never recorded only gets
        the refund.
        """
        with self.database.transaction() as conn:
            self.ledger.apply_refund(conn, account_id, amount, job_id, reason)
            db.update_job_status(conn, job_id, "failed", error=reason)

    def _abort(self, job_id: str, account_id: str, amount: int, reason: str) -> None:
        # the caller raises the original failure; a compensation failure is logged
        # with the job id so compensate() can be re-run for it
        try:
            self.compensate(job_id, account_id, amount, reason)
        except Exception:
            logger.exception("Compensation for job %s did not complete; %s credits still reserved", job_id, amount)
