"""Credit ledger: every change to an account's balance goes through here.

Each operation is one write transaction: it reads the account, checks it and
updates it, and it appends the matching credit_transactions rows before
committing. Rows that must not be applied twice (a job's usage and refund, a
payment, a monthly grant) carry an idempotency key, and a replayed call finds
the existing row and changes nothing.

The balance always equals the sum of the account's transaction amounts.
"""

import logging
from collections.abc import Callable
from datetime import datetime

from pydantic import BaseModel

from photoforge import db
from photoforge.dates import from_iso, next_reset_at, to_iso, utcnow
from photoforge.errors import NotFoundError, ValidationError
from photoforge.pricing import get_tier_config

logger = logging.getLogger(__name__)

KIND_PURCHASE = "purchase"
KIND_USAGE = "usage"
KIND_REFUND = "refund"
KIND_MONTHLY_RESET = "monthly_reset"
KIND_TIER_CHANGE = "tier_change"


class ReserveResult(BaseModel):
    success: bool
    new_balance: int


class RefundResult(BaseModel):
    applied: bool
    new_balance: int


class PurchaseResult(BaseModel):
    applied: bool
    new_balance: int


class ResetResult(BaseModel):
    applied: bool
    previous_balance: int
    new_balance: int
    rolled_over_amount: int
    monthly_credits: int
    forfeited_amount: int = 0


class CreditSummary(BaseModel):
    account_id: str
    current_balance: int
    monthly_allocation: int
    used_this_month: int
    rollover_cap: int
    tier: str
    last_reset: datetime
    next_reset: datetime


def _require_positive(amount: int, name: str = "amount") -> None:
    if amount <= 0:
        raise ValidationError(f"{name} must be > 0")


def _load(conn, account_id: str) -> dict:
    account = db.get_account(conn, account_id)
    if not account:
        raise NotFoundError(f"Account not found: {account_id}")
    return account


class CreditLedger:
    def __init__(self, database: db.Database, clock: Callable[[], datetime] = utcnow) -> None:
        self.database = database
        self.clock = clock

    def open_account(self, account_id: str, tier: str = "free") -> CreditSummary:
        """Create an account and grant its first month of credits.

        Accounts start at zero; the signup grant is recorded as a monthly_reset
        transaction so the balance stays equal to the transaction sum.
        """
        try:
            config = get_tier_config(tier)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        now = to_iso(self.clock())
        with self.database.transaction() as conn:
            if db.get_account(conn, account_id):
                raise ValidationError(f"Account already exists: {account_id}")
            db.insert_account(
                conn,
                account_id=account_id,
                tier=config.name,
                monthly_credits=config.monthly_credits,
                rollover_cap=config.rollover_cap,
                last_credit_reset=now,
            )
            if config.monthly_credits > 0:
                db.update_account(conn, account_id, credits_balance=config.monthly_credits)
                db.add_transaction(
                    conn,
                    account_id=account_id,
                    amount=config.monthly_credits,
                    kind=KIND_MONTHLY_RESET,
                    description=f"Signup grant: {config.monthly_credits} credits ({config.display_name})",
                    idempotency_key=f"monthly_reset:{account_id}:signup",
                )

        logger.info("Opened account %s on tier %s", account_id, config.name)
        return self.get_credit_summary(account_id)

    def reserve(self, account_id: str, amount: int, job_id: str, description: str) -> ReserveResult:
        _require_positive(amount)
        key = f"usage:{job_id}"
        with self.database.transaction() as conn:
            account = _load(conn, account_id)
            if db.get_transaction_by_key(conn, key):
                return ReserveResult(success=True, new_balance=int(account["credits_balance"]))

            if not db.debit_if_covered(conn, account_id, amount):
                logger.info(
                    "Reserve of %s credits for job %s rejected; balance is %s",
                    amount,
                    job_id,
                    account["credits_balance"],
                )
                return ReserveResult(success=False, new_balance=int(account["credits_balance"]))

            db.add_transaction(
                conn,
                account_id=account_id,
                amount=-amount,
                kind=KIND_USAGE,
                description=description,
                job_id=job_id,
                idempotency_key=key,
            )
            new_balance = int(account["credits_balance"]) - amount

        logger.info("Reserved %s credits for job %s (balance %s)", amount, job_id, new_balance)
        return ReserveResult(success=True, new_balance=new_balance)

    def refund(self, account_id: str, amount: int, job_id: str, reason: str) -> RefundResult:
        with self.database.transaction() as conn:
            return self.apply_refund(conn, account_id, amount, job_id, reason)

    def apply_refund(self, conn, account_id: str, amount: int, job_id: str, reason: str) -> RefundResult:
        """Refund inside the caller's transaction, so it commits or rolls back with the job update."""
        _require_positive(amount)
        key = f"refund:{job_id}"
        account = _load(conn, account_id)
        balance = int(account["credits_balance"])
        if db.get_transaction_by_key(conn, key):
            logger.warning("Refund for job %s already applied; skipping", job_id)
            return RefundResult(applied=False, new_balance=balance)

        used = int(account["credits_used_this_month"])
        new_balance = balance + amount
        db.update_account(
            conn,
            account_id,
            credits_balance=new_balance,
            credits_used_this_month=max(0, used - amount),
        )
        db.add_transaction(
            conn,
            account_id=account_id,
            amount=amount,
            kind=KIND_REFUND,
            description=f"Credit refund: {reason}",
            job_id=job_id,
            idempotency_key=key,
        )
        logger.info("Refunded %s credits for job %s: %s", amount, job_id, reason)
        return RefundResult(applied=True, new_balance=new_balance)

    def add_purchase(self, account_id: str, credits: int, external_ref: str) -> PurchaseResult:
        _require_positive(credits, "credits")
        if not external_ref:
            raise ValidationError("external_ref is required")
        key = f"purchase:{external_ref}"
        with self.database.transaction() as conn:
            account = _load(conn, account_id)
            balance = int(account["credits_balance"])
            if db.get_transaction_by_key(conn, key):
                logger.warning("Payment %s already credited; ignoring duplicate", external_ref)
                return PurchaseResult(applied=False, new_balance=balance)

            new_balance = balance + credits
            db.update_account(conn, account_id, credits_balance=new_balance)
            db.add_transaction(
                conn,
                account_id=account_id,
                amount=credits,
                kind=KIND_PURCHASE,
                description=f"À la carte purchase: {credits} credits (Payment: {external_ref})",
                external_ref=external_ref,
                idempotency_key=key,
            )

        logger.info("Added %s purchased credits to %s", credits, account_id)
        return PurchaseResult(applied=True, new_balance=new_balance)

    def update_tier(self, account_id: str, new_tier: str) -> CreditSummary:
        try:
            config = get_tier_config(new_tier)
        except ValueError as exc:
            raise ValidationError(str(exc)) from exc

        with self.database.transaction() as conn:
            _load(conn, account_id)
            db.update_account(
                conn,
                account_id,
                tier=config.name,
                monthly_credits=config.monthly_credits,
                rollover_cap=config.rollover_cap,
            )
            db.add_transaction(
                conn,
                account_id=account_id,
                amount=0,
                kind=KIND_TIER_CHANGE,
                description=(
                    f"Tier updated to {config.display_name} ({config.monthly_credits} credits/month, "
                    f"{config.rollover_cap} rollover cap)"
                ),
            )

        logger.info("Account %s moved to tier %s", account_id, config.name)
        return self.get_credit_summary(account_id)

    def reset_monthly(self, account_id: str, force: bool = False) -> ResetResult:
        """Start a new credit period for one account.

        The new balance is the tier's monthly allocation plus unused credits up
        to the rollover cap. Credits above the cap expire and are recorded as a
        negative monthly_reset row. Unless forced, an account whose last reset
        is less than a calendar month old is left untouched, so a duplicate
        trigger cannot grant the same period twice.
        """
        now = self.clock()
        with self.database.transaction() as conn:
            account = _load(conn, account_id)
            previous_balance = int(account["credits_balance"])
            last_reset = account["last_credit_reset"]

            if not force and next_reset_at(from_iso(last_reset)) > now:
                return ResetResult(
                    applied=False,
                    previous_balance=previous_balance,
                    new_balance=previous_balance,
                    rolled_over_amount=0,
                    monthly_credits=int(account["monthly_credits"]),
                )

            config = get_tier_config(account["tier"])
            rolled_over = min(max(previous_balance, 0), config.rollover_cap)
            forfeited = max(previous_balance, 0) - rolled_over
            new_balance = config.monthly_credits + rolled_over

            period_key = f"monthly_reset:{account_id}:{last_reset}"
            db.update_account(
                conn,
                account_id,
                credits_balance=new_balance,
                credits_used_this_month=0,
                last_credit_reset=to_iso(now),
                monthly_credits=config.monthly_credits,
                rollover_cap=config.rollover_cap,
            )
            db.add_transaction(
                conn,
                account_id=account_id,
                amount=config.monthly_credits,
                kind=KIND_MONTHLY_RESET,
                description=(
                    f"Monthly credit reset: {config.monthly_credits} new credits + {rolled_over} rolled over "
                    f"(cap: {config.rollover_cap})"
                ),
                idempotency_key=period_key,
            )
            if forfeited:
                db.add_transaction(
                    conn,
                    account_id=account_id,
                    amount=-forfeited,
                    kind=KIND_MONTHLY_RESET,
                    description=f"Expired {forfeited} unused credits above rollover cap {config.rollover_cap}",
                    idempotency_key=f"{period_key}:expired",
                )

        return ResetResult(
            applied=True,
            previous_balance=previous_balance,
            new_balance=new_balance,
            rolled_over_amount=rolled_over,
            monthly_credits=config.monthly_credits,
            forfeited_amount=forfeited,
        )

    def get_credit_summary(self, account_id: str) -> CreditSummary:
        with self.database.read() as conn:
            account = _load(conn, account_id)
        last_reset = from_iso(account["last_credit_reset"])
        return CreditSummary(
            account_id=account_id,
            current_balance=int(account["credits_balance"]),
            monthly_allocation=int(account["monthly_credits"]),
            used_this_month=int(account["credits_used_this_month"]),
            rollover_cap=int(account["rollover_cap"]),
            tier=account["tier"],
            last_reset=last_reset,
            next_reset=next_reset_at(last_reset),
        )

    def list_transactions(self, account_id: str, limit: int = 20, job_id: str | None = None) -> list[dict]:
        with self.database.read() as conn:
            return db.list_transactions(conn, account_id, limit=limit, job_id=job_id)
