import logging
from pathlib import Path
from typing import Annotated

from fastapi import Depends, FastAPI, File, Form, Header, HTTPException, Query, Request, UploadFile
from fastapi.concurrency import run_in_threadpool
from fastapi.responses import JSONResponse

from photoforge.auth import SessionAuth, create_session_token, cron_authorized
from photoforge.collaborators import LocalStorage, Queue, Storage, build_queue
from photoforge.config import configure_logging, settings
from photoforge.db import Database, get_job, init_db
from photoforge.errors import AuthError, NotFoundError, PhotoforgeError, ValidationError
from photoforge.intake import ImageUpload, JobIntake
from photoforge.ledger import CreditLedger
from photoforge.pricing import ALA_CARTE_OPTIONS, PRICING_TIERS, PricingCalculator
from photoforge.scheduler import ResetScheduler
from photoforge.schemas import (
    AccountCreateRequest,
    JobCompleteRequest,
    JobFailRequest,
    JobProgressRequest,
    JobResponse,
    PurchaseRequest,
    SessionRequest,
    TierUpdateRequest,
)
from photoforge.worker import JobSettlement

configure_logging()
logger = logging.getLogger(__name__)

app = FastAPI(title="PhotoForge Credits", version=settings.app_version)
init_db(Database(settings.database_path, settings.db_busy_timeout_sec))
Path(settings.upload_dir).mkdir(parents=True, exist_ok=True)


def envelope(data: dict, status: str = "ok", error: dict | None = None) -> dict:
    return {
        "status": status,
        "data": data,
        "meta": {"model_version": settings.app_version},
        "error": error,
    }


@app.exception_handler(PhotoforgeError)
async def photoforge_error_handler(request: Request, exc: PhotoforgeError) -> JSONResponse:
    if exc.status_code >= 500:
        logger.error("%s %s failed: %s", request.method, request.url.path, exc, exc_info=exc.__cause__)
    return JSONResponse(status_code=exc.status_code, content=envelope({}, status="error", error=exc.to_dict()))


@app.exception_handler(Exception)
async def unexpected_error_handler(request: Request, exc: Exception) -> JSONResponse:
    logger.exception("Unhandled error on %s %s", request.method, request.url.path)
    error = {"code": "internal_error", "message": "An error occurred while processing the request"}
    return JSONResponse(status_code=500, content=envelope({}, status="error", error=error))


# dependencies


def get_database() -> Database:
    return Database(settings.database_path, settings.db_busy_timeout_sec)


def get_ledger(database: Database = Depends(get_database)) -> CreditLedger:
    return CreditLedger(database)


def get_pricing() -> PricingCalculator:
    return PricingCalculator()


def get_storage() -> Storage:
    return LocalStorage(settings.upload_dir)


def get_queue(database: Database = Depends(get_database)) -> Queue:
    return build_queue(settings, database)


def get_auth() -> SessionAuth:
    return SessionAuth()


def get_intake(
    database: Database = Depends(get_database),
    ledger: CreditLedger = Depends(get_ledger),
    pricing: PricingCalculator = Depends(get_pricing),
    storage: Storage = Depends(get_storage),
    queue: Queue = Depends(get_queue),
) -> JobIntake:
    return JobIntake(
        database,
        ledger,
        pricing,
        storage,
        queue,
        max_images_per_job=settings.max_images_per_job,
    )


def get_scheduler(
    database: Database = Depends(get_database),
    ledger: CreditLedger = Depends(get_ledger),
) -> ResetScheduler:
    return ResetScheduler(database, ledger, max_workers=settings.reset_concurrency)


def get_settlement(
    database: Database = Depends(get_database),
    ledger: CreditLedger = Depends(get_ledger),
    pricing: PricingCalculator = Depends(get_pricing),
) -> JobSettlement:
    return JobSettlement(database, ledger, pricing)


def current_account(
    authorization: Annotated[str | None, Header()] = None,
    auth: SessionAuth = Depends(get_auth),
) -> str:
    account_id = auth.current_session(authorization)
    if not account_id:
        raise AuthError("Unauthorized")
    return account_id


def _require_admin(x_admin_token: Annotated[str | None, Header()] = None) -> None:
    if not settings.admin_api_token:
        raise HTTPException(status_code=500, detail="ADMIN_API_TOKEN is not configured")
    if x_admin_token != settings.admin_api_token:
        raise HTTPException(status_code=401, detail="Invalid admin token")


# public


@app.get("/health")
def health() -> dict:
    return envelope({"service": "photoforge-credits"})


@app.get("/version")
def version() -> dict:
    return envelope({"service": "photoforge-credits", "version": settings.app_version})


@app.get("/v1/pricing")
def pricing_table(
    quantity: int | None = Query(None),
    pricing: PricingCalculator = Depends(get_pricing),
) -> dict:
    data: dict = {
        "tiers": [t.model_dump() for t in PRICING_TIERS.values()],
        "ala_carte": [o.model_dump() for o in ALA_CARTE_OPTIONS],
    }
    if quantity is not None:
        if quantity <= 0 or quantity > settings.max_images_per_job:
            raise ValidationError(f"quantity must be between 1 and {settings.max_images_per_job}")
        discount = pricing.get_discount_info(quantity)
        data["quote"] = {
            "quantity": quantity,
            "total_credits": pricing.compute_cost(quantity),
            "discount": discount.model_dump() if discount else None,
        }
    return envelope(data)


# account scoped


@app.post("/v1/jobs", status_code=201)
async def create_job(
    images: list[UploadFile] | None = File(None),
    background_prompt: str = Form(""),
    account_id: str = Depends(current_account),
    intake: JobIntake = Depends(get_intake),
) -> dict:
    uploads: list[ImageUpload] = []
    for f in images or []:
        data = await f.read()
        if len(data) > settings.max_image_mb * 1024 * 1024:
            raise ValidationError(f"Image {f.filename} is larger than {settings.max_image_mb} MB")
        uploads.append(
            ImageUpload(
                filename=f.filename or "",
                content_type=f.content_type or "application/octet-stream",
                data=data,
            )
        )

    summary = await run_in_threadpool(intake.submit, account_id, uploads, background_prompt)
    return envelope({"job": summary.model_dump()})


@app.get("/v1/jobs/{job_id}")
def get_photo_job(
    job_id: str,
    account_id: str = Depends(current_account),
    database: Database = Depends(get_database),
) -> dict:
    with database.read() as conn:
        job = get_job(conn, job_id)
    if not job or job["account_id"] != account_id:
        raise NotFoundError("Job not found")
    return envelope(JobResponse(**job).model_dump())


@app.get("/v1/credits")
def get_credits(
    account_id: str = Depends(current_account),
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    summary = ledger.get_credit_summary(account_id)
    return envelope(
        {
            "summary": summary.model_dump(mode="json"),
            "recent_transactions": ledger.list_transactions(account_id, limit=20),
        }
    )


# cron


@app.api_route("/v1/cron/reset-credits", methods=["GET", "POST"])
def reset_credits(
    authorization: Annotated[str | None, Header()] = None,
    scheduler: ResetScheduler = Depends(get_scheduler),
) -> dict:
    if not cron_authorized(authorization, settings):
        raise AuthError("Unauthorized")

    report = scheduler.run_reset()
    logger.info(
        "Monthly credit reset finished: total=%s successful=%s failed=%s skipped=%s",
        report.total,
        report.successful,
        report.failed,
        report.skipped,
    )
    return envelope(
        {
            "success": True,
            "message": "Monthly credit reset completed",
            "results": report.model_dump(),
        }
    )


# admin


@app.post("/v1/admin/accounts", status_code=201)
def admin_open_account(
    payload: AccountCreateRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    summary = ledger.open_account(payload.account_id, payload.tier)
    return envelope(summary.model_dump(mode="json"))


@app.post("/v1/admin/accounts/{account_id}/tier")
def admin_update_tier(
    account_id: str,
    payload: TierUpdateRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    summary = ledger.update_tier(account_id, payload.tier)
    return envelope(summary.model_dump(mode="json"))


@app.post("/v1/admin/accounts/{account_id}/reset")
def admin_reset_account(
    account_id: str,
    x_admin_token: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    result = ledger.reset_monthly(account_id, force=True)
    return envelope(result.model_dump())


@app.post("/v1/admin/credits/purchase")
def admin_add_purchase(
    payload: PurchaseRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    result = ledger.add_purchase(payload.account_id, payload.credits, payload.external_ref)
    return envelope({"account_id": payload.account_id, **result.model_dump()})


@app.post("/v1/admin/sessions")
def admin_issue_session(
    payload: SessionRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    ledger: CreditLedger = Depends(get_ledger),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    ledger.get_credit_summary(payload.account_id)
    return envelope(create_session_token(payload.account_id))


# worker callbacks


@app.post("/v1/internal/jobs/{job_id}/processing")
def worker_job_processing(
    job_id: str,
    payload: JobProgressRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    settlement: JobSettlement = Depends(get_settlement),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(JobResponse(**settlement.mark_processing(job_id, payload.progress)).model_dump())


@app.post("/v1/internal/jobs/{job_id}/complete")
def worker_job_complete(
    job_id: str,
    payload: JobCompleteRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    settlement: JobSettlement = Depends(get_settlement),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(JobResponse(**settlement.complete_job(job_id, payload.images_processed)).model_dump())


@app.post("/v1/internal/jobs/{job_id}/fail")
def worker_job_fail(
    job_id: str,
    payload: JobFailRequest,
    x_admin_token: Annotated[str | None, Header()] = None,
    settlement: JobSettlement = Depends(get_settlement),
) -> dict:
    _require_admin(x_admin_token=x_admin_token)
    return envelope(JobResponse(**settlement.fail_job(job_id, payload.error)).model_dump())
