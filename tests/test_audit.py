from __future__ import annotations

import json
import threading

from intent_healer.core.models import HealEvent
from intent_healer.logging.audit import LEDGER_FILE_NAME, HealLedger


def test_ledger_mirrors_events_to_jsonl(tmp_path):
    ledger = HealLedger(tmp_path)
    ledger.record(HealEvent("id=login-btn", "id=signin-button", 0.92, True, "success", "When I sign in", 10.0))
    ledger.record(HealEvent("id=login-btn", None, 0.0, False, "refused", "When I sign in", 11.0))

    lines = (tmp_path / LEDGER_FILE_NAME).read_text(encoding="utf-8").splitlines()
    assert [json.loads(line)["outcome"] for line in lines] == ["success", "refused"]

    reloaded = HealLedger.load(tmp_path)
    assert reloaded.events() == ledger.events()


def test_events_for_and_stability_report_skip_refusals_without_a_heal():
    ledger = HealLedger()
    ledger.record(HealEvent("id=login-btn", "id=signin-button", 0.95, True))
    ledger.record(HealEvent("id=login-btn", None, 0.0, False, "refused"))
    ledger.record(HealEvent("css=.cart", "css=button.cart", 0.9, True))

    assert len(ledger.events_for("id=login-btn")) == 2
    report = ledger.stability_report()
    assert report.summary.total_locators == 2
    login = next(record for record in report.records if record.locator == "id=login-btn")
    assert login.heal_count == 1


def test_concurrent_appends_are_all_kept():
    ledger = HealLedger()

    def append():
        for _ in range(200):
            ledger.record(HealEvent("id=x", "id=y", 0.9, True))

    threads = [threading.Thread(target=append) for _ in range(5)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert len(ledger) == 1000
