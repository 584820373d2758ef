import sqlite3

import pytest

from photoforge import db
from photoforge.errors import NotFoundError, ValidationError
from photoforge.intake import ImageUpload, JobIntake
from photoforge.ledger import CreditLedger
from photoforge.collaborators import LocalStorage, SqliteQueue
from photoforge.pricing import PricingCalculator
from photoforge.worker import JobSettlement


@pytest.fixture
def queued_job(database, ledger, tmp_path):
    ledger.open_account("acct-1", "professional")
    intake = JobIntake(
        database,
        ledger,
        PricingCalculator(),
        LocalStorage(str(tmp_path / "store")),
        SqliteQueue(database),
    )
    images = [ImageUpload(filename=f"p{i}.jpg", data=b"jpg") for i in range(12)]
    return intake.submit("acct-1", images, "loft interior")


@pytest.fixture
def settlement(database, ledger) -> JobSettlement:
    return JobSettlement(database, ledger, PricingCalculator())


def test_full_completion_keeps_reservation(settlement, ledger, queued_job) -> None:
    settlement.mark_processing(queued_job.id, progress=40)
    job = settlement.complete_job(queued_job.id, images_processed=12)
    assert job["status"] == "completed"
    assert job["progress"] == 100
    assert job["credits_consumed"] == job["credits_reserved"] == 46
    assert ledger.get_credit_summary("acct-1").current_balance == 400 - 46


def test_partial_completion_refunds_unused(settlement, ledger, queued_job) -> None:
    job = settlement.complete_job(queued_job.id, images_processed=5)
    assert job["credits_consumed"] == 20
    summary = ledger.get_credit_summary("acct-1")
    assert summary.current_balance == 400 - 20
    assert summary.used_this_month == 20

    # completion reports are final
    again = settlement.complete_job(queued_job.id, images_processed=12)
    assert again["credits_consumed"] == 20


def test_failure_refunds_everything_once(settlement, ledger, queued_job) -> None:
    job = settlement.fail_job(queued_job.id, "model timeout")
    assert job["status"] == "failed"
    assert job["error"] == "model timeout"
    settlement.fail_job(queued_job.id, "model timeout")
    assert ledger.get_credit_summary("acct-1").current_balance == 400


def test_guards(settlement, queued_job) -> None:
    with pytest.raises(ValidationError):
        settlement.complete_job(queued_job.id, images_processed=13)
    settlement.complete_job(queued_job.id, images_processed=12)
    with pytest.raises(ValidationError):
        settlement.fail_job(queued_job.id, "too late")
    with pytest.raises(ValidationError):
        settlement.mark_processing(queued_job.id)
    with pytest.raises(NotFoundError):
        settlement.complete_job("missing", 1)


def test_refund_and_status_settle_together(database, ledger, queued_job) -> None:
    class BrokenLedger(CreditLedger):
        def apply_refund(self, conn, account_id, amount, job_id, reason):
            raise sqlite3.OperationalError("database is locked")

    broken = JobSettlement(database, BrokenLedger(database, clock=ledger.clock), PricingCalculator())
    with pytest.raises(sqlite3.OperationalError):
        broken.fail_job(queued_job.id, "model timeout")
    with pytest.raises(sqlite3.OperationalError):
        broken.complete_job(queued_job.id, images_processed=3)

    with database.read() as conn:
        job = db.get_job(conn, queued_job.id)
    assert job["status"] == "queued"
    assert job["credits_consumed"] == 0
    assert ledger.get_credit_summary("acct-1").current_balance == 400 - 46


def test_late_failure_after_partial_completion_is_rejected(settlement, ledger, queued_job) -> None:
    settlement.complete_job(queued_job.id, images_processed=5)
    with pytest.raises(ValidationError):
        settlement.fail_job(queued_job.id, "worker crashed")

    refunds = [t for t in ledger.list_transactions("acct-1", job_id=queued_job.id) if t["kind"] == "refund"]
    assert [t["amount"] for t in refunds] == [26]
    assert ledger.get_credit_summary("acct-1").current_balance == 400 - 20
