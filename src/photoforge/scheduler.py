import logging
from collections.abc import Callable
from concurrent.futures import ThreadPoolExecutor, as_completed
from datetime import datetime, timedelta

from pydantic import BaseModel

from photoforge import db
from photoforge.dates import from_iso, next_reset_at, to_iso, utcnow
from photoforge.ledger import CreditLedger
from photoforge.pricing import FREE_TIER

logger = logging.getLogger(__name__)


class ResetReport(BaseModel):
    total: int = 0
    successful: int = 0
    failed: int = 0
    skipped: int = 0
    errors: list[str] = []


class ResetScheduler:
    def __init__(
        self,
        database: db.Database,
        ledger: CreditLedger,
        max_workers: int = 4,
        clock: Callable[[], datetime] = utcnow,
    ) -> None:
        self.database = database
        self.ledger = ledger
        self.max_workers = max(1, max_workers)
        self.clock = clock

    def find_accounts_needing_reset(self) -> list[str]:
        # free accounts get their credits at signup and are not part of the batch
        now = self.clock()
        # a calendar month is never shorter than 28 days
        reset_before = to_iso(now - timedelta(days=28))
        with self.database.read() as conn:
            candidates = db.list_reset_candidates(conn, reset_before, excluded_tier=FREE_TIER)
        return [c["account_id"] for c in candidates if next_reset_at(from_iso(c["last_credit_reset"])) <= now]

    def run_reset(self) -> ResetReport:
        account_ids = self.find_accounts_needing_reset()
        report = ResetReport(total=len(account_ids))
        if not account_ids:
            return report

        with ThreadPoolExecutor(max_workers=self.max_workers) as executor:
            futures = {executor.submit(self.ledger.reset_monthly, account_id): account_id for account_id in account_ids}
            for future in as_completed(futures):
                account_id = futures[future]
                try:
                    result = future.result()
                except Exception as exc:
                    report.failed += 1
                    report.errors.append(f"Account {account_id}: {exc}")
                    logger.exception("Failed to reset credits for account %s", account_id)
                    continue

                if not result.applied:
                    report.skipped += 1
                    logger.info("Account %s was already reset this period", account_id)
                    continue

                report.successful += 1
                logger.info(
                    "Reset credits for account %s: previous=%s new=%s rolled_over=%s monthly=%s",
                    account_id,
                    result.previous_balance,
                    result.new_balance,
                    result.rolled_over_amount,
                    result.monthly_credits,
                )

        report.errors.sort()
        return report
