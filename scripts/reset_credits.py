import json

from photoforge.config import configure_logging, settings
from photoforge.db import Database, init_db
from photoforge.ledger import CreditLedger
from photoforge.scheduler import ResetScheduler


def main() -> int:
    configure_logging()
    database = Database(settings.database_path, settings.db_busy_timeout_sec)
    init_db(database)
    scheduler = ResetScheduler(database, CreditLedger(database), max_workers=settings.reset_concurrency)
    report = scheduler.run_reset()
    print(json.dumps(report.model_dump(), indent=2))
    return 1 if report.failed else 0


if __name__ == "__main__":
    raise SystemExit(main())
