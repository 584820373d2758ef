import importlib.util
import json
from datetime import datetime, timezone
from pathlib import Path

from photoforge.ledger import CreditLedger

SCRIPT = Path(__file__).resolve().parents[1] / "scripts" / "reset_credits.py"


def _load_script():
    spec = importlib.util.spec_from_file_location("reset_credits", SCRIPT)
    module = importlib.util.module_from_spec(spec)
    spec.loader.exec_module(module)
    return module


def test_reset_script_prints_report_and_exits_cleanly(ledger, clock, capsys) -> None:
    # opened long enough ago to be due whenever the suite runs
    clock.now = datetime(2020, 1, 10, tzinfo=timezone.utc)
    ledger.open_account("paid-a", "starter")
    ledger.open_account("free-a", "free")

    assert _load_script().main() == 0

    report = json.loads(capsys.readouterr().out)
    assert report == {"total": 1, "successful": 1, "failed": 0, "skipped": 0, "errors": []}
    assert ledger.get_credit_summary("paid-a").current_balance == 150


def test_reset_script_exits_nonzero_when_an_account_fails(ledger, clock, capsys, monkeypatch) -> None:
    clock.now = datetime(2020, 1, 10, tzinfo=timezone.utc)
    ledger.open_account("paid-a", "starter")

    class BrokenLedger(CreditLedger):
        def reset_monthly(self, account_id, force=False):
            raise RuntimeError("disk I/O error")

    script = _load_script()
    monkeypatch.setattr(script, "CreditLedger", BrokenLedger)

    assert script.main() == 1
    report = json.loads(capsys.readouterr().out)
    assert report["failed"] == 1
    assert report["errors"] == ["Account paid-a: disk I/O error"]
