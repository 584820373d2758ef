import sqlite3

import pytest

from photoforge import db
from photoforge.collaborators import LocalStorage, SqliteQueue
from photoforge.errors import (
    DispatchError,
    InsufficientCreditsError,
    InternalError,
    NotFoundError,
    UploadError,
    ValidationError,
)
from photoforge.intake import ImageUpload, JobIntake
from photoforge.ledger import CreditLedger
from photoforge.pricing import PriceBand, PricingCalculator

# 30 images cost 25 credits under this schedule
FLAT_25 = PricingCalculator(bands=[PriceBand(up_to=25, credits_per_image=1), PriceBand(up_to=None, credits_per_image=0)])


class RecordingQueue:
    def __init__(self, fail: bool = False) -> None:
        self.fail = fail
        self.calls: list[tuple] = []

    def enqueue(self, job_id, account_id, prompt, image_refs) -> None:
        self.calls.append((job_id, account_id, prompt, list(image_refs)))
        if self.fail:
            raise ConnectionError("queue down")


class FlakyStorage:
    def __init__(self, fail_at: int) -> None:
        self.fail_at = fail_at
        self.uploaded: list[str] = []

    def upload(self, data, name, mime_type) -> str:
        if len(self.uploaded) == self.fail_at:
            raise OSError("bucket unavailable")
        self.uploaded.append(name)
        return f"mem://{name}"


def _images(n: int) -> list[ImageUpload]:
    return [ImageUpload(filename=f"photo{i}.png", content_type="image/png", data=b"png") for i in range(n)]


def _intake(database, ledger, tmp_path, queue=None, storage=None, pricing=FLAT_25) -> JobIntake:
    return JobIntake(
        database,
        ledger,
        pricing,
        storage or LocalStorage(str(tmp_path / "store")),
        queue or RecordingQueue(),
        max_images_per_job=100,
    )


def _job(database, job_id):
    with database.read() as conn:
        return db.get_job(conn, job_id)


def test_submit_reserves_and_queues(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue()
    intake = _intake(database, ledger, tmp_path, queue=queue)

    summary = intake.submit("acct-1", _images(30), "  sunset beach  ")
    assert summary.status == "queued"
    assert summary.image_count == 30
    assert summary.credits_reserved == 25
    assert ledger.get_credit_summary("acct-1").current_balance == 75

    job = _job(database, summary.id)
    assert job["status"] == "queued"
    assert job["credits_consumed"] == 0
    assert job["background_prompt"] == "sunset beach"
    assert [r.rsplit("/", 1)[-1] for r in job["input_image_refs"]] == [
        f"{summary.id}_input_{i}.png" for i in range(30)
    ]
    assert queue.calls[0][0] == summary.id
    assert queue.calls[0][3] == job["input_image_refs"]


def test_dispatch_failure_refunds_and_fails_job(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue(fail=True)
    intake = _intake(database, ledger, tmp_path, queue=queue)

    with pytest.raises(DispatchError):
        intake.submit("acct-1", _images(30), "studio white")

    job_id = queue.calls[0][0]
    job = _job(database, job_id)
    assert job["status"] == "failed"
    assert job["error"] == "Failed to queue job for processing"
    assert ledger.get_credit_summary("acct-1").current_balance == 100

    txns = ledger.list_transactions("acct-1", job_id=job_id)
    refunds = [t for t in txns if t["kind"] == "refund"]
    assert len(refunds) == 1
    assert refunds[0]["amount"] == job["credits_reserved"] == 25


def test_compensation_can_be_retried(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue(fail=True)
    intake = _intake(database, ledger, tmp_path, queue=queue)
    with pytest.raises(DispatchError):
        intake.submit("acct-1", _images(30), "studio white")

    job_id = queue.calls[0][0]
    intake.compensate(job_id, "acct-1", 25, "retry after crash")
    assert ledger.get_credit_summary("acct-1").current_balance == 100



def test_job_record_failure_refunds_reservation(database, ledger, tmp_path, monkeypatch) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue()

    def locked(*args, **kwargs):
        raise sqlite3.OperationalError("database is locked")

    monkeypatch.setattr(db, "create_job", locked)
    intake = _intake(database, ledger, tmp_path, queue=queue, pricing=PricingCalculator())

    with pytest.raises(InternalError):
        intake.submit("acct-1", _images(1), "city skyline")

    assert queue.calls == []
    assert ledger.get_credit_summary("acct-1").current_balance == 100
    assert ledger.get_credit_summary("acct-1").used_this_month == 0
    with database.read() as conn:
        assert conn.execute("SELECT COUNT(*) c FROM jobs").fetchone()["c"] == 0
    txns = ledger.list_transactions("acct-1")
    assert [t["kind"] for t in txns[:2]] == ["refund", "usage"]
    assert txns[0]["amount"] == 4
    assert txns[0]["job_id"] == txns[1]["job_id"]


def test_compensation_commits_refund_and_status_together(database, ledger, tmp_path, monkeypatch) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue(fail=True)
    intake = _intake(database, ledger, tmp_path, queue=queue)

    real_update = db.update_job_status
    broken = {"on": True}

    def update_job_status(conn, job_id, status, **kwargs):
        if broken["on"] and status == "failed":
            raise sqlite3.OperationalError("disk I/O error")
        return real_update(conn, job_id, status, **kwargs)

    monkeypatch.setattr(db, "update_job_status", update_job_status)

    with pytest.raises(DispatchError):
        intake.submit("acct-1", _images(30), "studio white")

    # the refund rolled back with the status write; nothing half-applied
    job_id = queue.calls[0][0]
    assert _job(database, job_id)["status"] == "pending"
    assert ledger.get_credit_summary("acct-1").current_balance == 75
    assert [t for t in ledger.list_transactions("acct-1", job_id=job_id) if t["kind"] == "refund"] == []

    broken["on"] = False
    intake.compensate(job_id, "acct-1", 25, "Failed to queue job for processing")
    assert _job(database, job_id)["status"] == "failed"
    assert ledger.get_credit_summary("acct-1").current_balance == 100


def test_refund_failure_during_compensation_still_raises_dispatch_error(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")

    class BrokenLedger(CreditLedger):
        def apply_refund(self, conn, account_id, amount, job_id, reason):
            raise sqlite3.OperationalError("database is locked")

    queue = RecordingQueue(fail=True)
    broken = BrokenLedger(database, clock=ledger.clock)
    intake = _intake(database, broken, tmp_path, queue=queue)

    with pytest.raises(DispatchError):
        intake.submit("acct-1", _images(30), "studio white")
    job_id = queue.calls[0][0]
    assert _job(database, job_id)["status"] == "pending"
    assert ledger.get_credit_summary("acct-1").current_balance == 75

    _intake(database, ledger, tmp_path).compensate(job_id, "acct-1", 25, "Failed to queue job for processing")
    assert ledger.get_credit_summary("acct-1").current_balance == 100

def test_insufficient_credits_before_any_work(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "free")
    storage = FlakyStorage(fail_at=999)
    intake = _intake(database, ledger, tmp_path, storage=storage)

    with pytest.raises(InsufficientCreditsError) as err:
        intake.submit("acct-1", _images(30), "forest")
    assert err.value.required == 25
    assert err.value.available == 5
    assert storage.uploaded == []
    assert ledger.get_credit_summary("acct-1").current_balance == 5


def test_reserve_race_reports_ledger_balance(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")

    class SpendingStorage(FlakyStorage):
        # another request drains the account while uploads are in flight
        def upload(self, data, name, mime_type) -> str:
            if not self.uploaded:
                ledger.reserve("acct-1", 90, "other-job", "concurrent spend")
            return super().upload(data, name, mime_type)

    intake = _intake(database, ledger, tmp_path, storage=SpendingStorage(fail_at=999))
    with pytest.raises(InsufficientCreditsError) as err:
        intake.submit("acct-1", _images(30), "forest")
    assert err.value.required == 25
    assert err.value.available == 10
    with database.read() as conn:
        assert conn.execute("SELECT COUNT(*) c FROM jobs").fetchone()["c"] == 0


def test_upload_failure_aborts_before_billing(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "starter")
    queue = RecordingQueue()
    intake = _intake(database, ledger, tmp_path, queue=queue, storage=FlakyStorage(fail_at=2))

    with pytest.raises(UploadError):
        intake.submit("acct-1", _images(5), "mountains")
    assert ledger.get_credit_summary("acct-1").current_balance == 100
    assert queue.calls == []
    with database.read() as conn:
        assert conn.execute("SELECT COUNT(*) c FROM jobs").fetchone()["c"] == 0


@pytest.mark.parametrize(
    "count, prompt",
    [(0, "beach"), (101, "beach"), (3, ""), (3, "   ")],
)
def test_validation_has_no_side_effects(database, ledger, tmp_path, count, prompt) -> None:
    ledger.open_account("acct-1", "starter")
    storage = FlakyStorage(fail_at=999)
    intake = _intake(database, ledger, tmp_path, storage=storage)
    with pytest.raises(ValidationError):
        intake.submit("acct-1", _images(count), prompt)
    assert storage.uploaded == []


def test_unknown_account(database, ledger, tmp_path) -> None:
    with pytest.raises(NotFoundError):
        _intake(database, ledger, tmp_path).submit("ghost", _images(1), "beach")


def test_default_queue_writes_outbox(database, ledger, tmp_path) -> None:
    ledger.open_account("acct-1", "professional")
    intake = _intake(database, ledger, tmp_path, queue=SqliteQueue(database), pricing=PricingCalculator())

    summary = intake.submit("acct-1", _images(12), "marble countertop")
    assert summary.credits_reserved == 46
    with database.read() as conn:
        queued = db.list_queued_jobs(conn)
    assert [q["job_id"] for q in queued] == [summary.id]
    assert queued[0]["payload"]["background_prompt"] == "marble countertop"
