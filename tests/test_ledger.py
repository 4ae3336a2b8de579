import json
import threading
from datetime import date
from decimal import Decimal

import pytest

from aggregation import ExpensesFilter
from categories import CategoryDirectory
from models import CategoryNode, RecurrenceRule, SortKey, Transaction
from services import Ledger
from storage import MemoryFileStore

TODAY = date(2024, 3, 15)


def _directory() -> CategoryDirectory:
    return CategoryDirectory(
        [
            CategoryNode("home", label="Home", child_ids=("rent",)),
            CategoryNode("rent", label="Rent", parent_id="home"),
            CategoryNode("food", label="Food"),
        ]
    )


def _ledger(store: MemoryFileStore) -> Ledger:
    return Ledger(
        store,
        directory=_directory(),
        max_months_per_shard=2,
        max_iterations=10,
        aggregation_workers=2,
        clock=lambda: TODAY,
    )


def _txn(day: date, amount: str, category: str = "food", note: str = "", payment: str = "") -> Transaction:
    return Transaction(
        date=day,
        amount=Decimal(amount),
        category_id=category,
        note=note,
        payment_method_id=payment,
    )


def test_add_writes_months_into_shards():
    store = MemoryFileStore()
    ledger = _ledger(store)

    months = ledger.add(
        [
            _txn(date(2024, 1, 5), "12.5", note="Lunch", payment="cash"),
            _txn(date(2024, 2, 1), "3"),
            _txn(date(2024, 3, 2), "4"),
        ]
    )

    assert months == ["2024-01", "2024-02", "2024-03"]
    assert store.files["data-1.csv"] == (
        "2024-01-05\t12.50\tfood\tLunch\tcash\t\n" "2024-02-01\t3.00\tfood\t\t\t\n"
    )
    assert store.files["data-2.csv"] == "2024-03-02\t4.00\tfood\t\t\t\n"


def test_notes_are_flattened_to_one_line():
    store = MemoryFileStore()
    _ledger(store).add(_txn(date(2024, 1, 5), "1", note="two\tpart\nnote"))
    assert store.files["data-1.csv"] == "2024-01-05\t1.00\tfood\ttwo part note\t\t\n"


def test_load_restores_months_and_shards():
    store = MemoryFileStore()
    _ledger(store).add(
        [
            _txn(date(2024, 1, 9), "2"),
            _txn(date(2024, 1, 3), "1"),
            _txn(date(2024, 2, 1), "3"),
            _txn(date(2024, 4, 1), "4"),
        ]
    )

    reloaded = _ledger(store)
    reloaded.load()

    assert reloaded.all_months() == ["2024-01", "2024-02", "2024-04"]
    assert reloaded.index.months_in(2) == ["2024-04"]
    assert [txn.date.day for txn in reloaded.data["2024-01"]] == [3, 9]
    assert reloaded.has_actual_data("2024-02")
    assert not reloaded.has_actual_data("2024-03")


def test_load_keeps_overfull_legacy_shard():
    lines = "".join(f"2023-{m:02d}-01\t1.00\tfood\t\t\t\n" for m in range(1, 8))
    store = MemoryFileStore({"data-1.csv": lines})
    ledger = _ledger(store)
    ledger.load()

    assert len(ledger.index.months_in(1)) == 7
    ledger.add(_txn(date(2023, 8, 1), "1"))
    assert store.files["data-2.csv"] == "2023-08-01\t1.00\tfood\t\t\t\n"


def test_load_reports_bad_shard_line():
    store = MemoryFileStore({"data-1.csv": "2024-01-01\t1.00\tfood\n2024-01-02\tabc\tfood\n"})
    with pytest.raises(ValueError, match="data-1.csv line 2"):
        _ledger(store).load()


def test_remove_and_replace():
    store = MemoryFileStore()
    ledger = _ledger(store)
    ledger.add([_txn(date(2024, 1, 1), "1"), _txn(date(2024, 1, 2), "2")])

    removed = ledger.remove("2024-01", [0])
    assert [txn.amount for txn in removed] == [Decimal("1.00")]
    with pytest.raises(IndexError):
        ledger.remove("2024-01", 5)

    previous = ledger.replace("2024-01", 0, _txn(date(2024, 2, 2), "9"))
    assert previous.amount == Decimal("2.00")
    assert ledger.data["2024-01"] == []
    assert store.files["data-1.csv"] == "2024-02-02\t9.00\tfood\t\t\t\n"


def test_make_recurring_catches_up_when_month_is_listed():
    store = MemoryFileStore()
    ledger = _ledger(store)
    ledger.add(_txn(date(2024, 1, 31), "500", category="rent", note="Flat"))

    series_id = ledger.make_recurring("2024-01", 0, RecurrenceRule.monthly(1, 31))
    items = ledger.transactions_for("2024-03")

    assert [(txn.date, txn.is_preview) for txn in items] == [(date(2024, 3, 31), True)]
    assert [txn.date for txn in ledger.data["2024-02"]] == [date(2024, 2, 29)]
    assert ledger.data["2024-02"][0].series_id == series_id
    assert ledger.data["2024-01"][0].series_id == series_id
    assert "2024-03" not in ledger.data

    registry = json.loads(store.files["rep.json"])
    assert registry["items"][series_id]["expense"]["last"] == "2024-02-29"

    # Listing the month again does not post the same occurrence twice.
    ledger.transactions_for("2024-03")
    assert len(ledger.data["2024-02"]) == 1


def test_transactions_for_can_hide_previews():
    ledger = _ledger(MemoryFileStore())
    ledger.set_recurring(None, _txn(date(2024, 3, 20), "9"), RecurrenceRule.weekly(1))
    assert ledger.transactions_for("2024-03", include_previews=False) == []
    assert len(ledger.transactions_for("2024-03")) == 2


def test_statistics_optionally_count_previews():
    ledger = _ledger(MemoryFileStore())
    ledger.add(_txn(date(2024, 3, 1), "20", category="food"))
    ledger.set_recurring(
        None, _txn(date(2024, 3, 31), "500", category="rent"), RecurrenceRule.monthly(1, 31)
    )

    actual = ledger.statistics(None, ["2024-03"], SortKey.sum)
    planned = ledger.statistics(None, ["2024-03"], SortKey.sum, include_previews=True)

    assert actual.grand_total.sum == Decimal("20")
    assert [agg.category_id for agg in actual.totals] == ["food", "home"]
    assert planned.grand_total.sum == Decimal("520")
    assert [agg.category_id for agg in planned.totals] == ["home", "food"]


def test_categories_persist_with_ledger():
    store = MemoryFileStore()
    _ledger(store).set_categories(_directory())

    reloaded = Ledger(store, clock=lambda: TODAY)
    reloaded.load()

    assert [node.id for node in reloaded.directory.masters_in_order()] == ["home", "food"]
    assert reloaded.directory.full_label("rent") == "Home/Rent"


def test_timerange_year_uses_known_months():
    ledger = _ledger(MemoryFileStore())
    ledger.add([_txn(date(2023, 12, 1), "1"), _txn(date(2024, 2, 1), "1")])
    assert ledger.timerange("year").months == ("2024-02",)
    assert ledger.timerange("all").months == ("2023-12", "2024-02")
    assert ledger.timerange(None).months == ("2024-03",)


def test_find_applies_filter_across_months():
    ledger = _ledger(MemoryFileStore())
    ledger.add(
        [
            _txn(date(2024, 1, 1), "1", payment="card"),
            _txn(date(2024, 2, 1), "2", payment="cash"),
            _txn(date(2024, 2, 2), "3", category="rent", payment="cash"),
        ]
    )
    expenses_filter = ExpensesFilter(
        categories=frozenset({"food"}), payment_methods=frozenset({"card"})
    )
    assert [txn.amount for txn in ledger.find(expenses_filter)] == [Decimal("2")]
    assert ledger.find(ExpensesFilter(), ["2024-01"])[0].payment_method_id == "card"


def test_process_recurring_defaults_to_current_month():
    store = MemoryFileStore()
    ledger = _ledger(store)
    series_id = ledger.set_recurring(
        None, _txn(date(2024, 3, 1), "7", note="Gym"), RecurrenceRule.weekly(1)
    )

    previews = ledger.process_recurring()

    assert [txn.date for txn in ledger.data["2024-03"]] == [
        date(2024, 3, 1),
        date(2024, 3, 8),
    ]
    assert [txn.date for txn in previews] == [
        date(2024, 3, 15),
        date(2024, 3, 22),
        date(2024, 3, 29),
    ]
    assert ledger.remove_recurring(series_id)
    assert not ledger.remove_recurring(series_id)
    assert json.loads(store.files["rep.json"]) == {"order": [], "items": {}}


def _posted_dates(ledger: Ledger) -> list[date]:
    return sorted(txn.date for items in ledger.data.values() for txn in items)


def test_editing_series_does_not_repost_occurrences():
    ledger = _ledger(MemoryFileStore())
    rule = RecurrenceRule.monthly(1, 10)
    series_id = ledger.set_recurring(None, _txn(date(2024, 1, 10), "5"), rule)
    ledger.process_recurring("2024-03")
    before = _posted_dates(ledger)

    ledger.set_recurring(series_id, _txn(date(2024, 1, 10), "6"), rule)
    ledger.process_recurring("2024-03")

    assert before == [date(2024, 1, 10), date(2024, 2, 10), date(2024, 3, 10)]
    assert _posted_dates(ledger) == before
    assert ledger.registry.get(series_id).template.amount == Decimal("6")


def test_make_recurring_twice_keeps_cursor():
    ledger = _ledger(MemoryFileStore())
    ledger.add(_txn(date(2024, 1, 10), "5"))
    rule = RecurrenceRule.monthly(1, 10)
    series_id = ledger.make_recurring("2024-01", 0, rule)
    ledger.process_recurring("2024-03")

    assert ledger.make_recurring("2024-01", 0, rule) == series_id
    ledger.process_recurring("2024-03")

    assert _posted_dates(ledger) == [date(2024, 1, 10), date(2024, 2, 10), date(2024, 3, 10)]
    assert ledger.registry.last_execution_of(series_id) == date(2024, 3, 10)


def test_concurrent_catch_up_posts_once():
    store = MemoryFileStore()
    ledger = _ledger(store)
    ledger.set_recurring(None, _txn(date(2024, 1, 10), "5"), RecurrenceRule.monthly(1, 10))
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        ledger.transactions_for("2024-03")

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    assert _posted_dates(ledger) == [date(2024, 1, 10), date(2024, 2, 10), date(2024, 3, 10)]
    assert store.files["data-1.csv"].count("\n") == 2
    assert store.files["data-2.csv"] == "2024-03-10\t5.00\tfood\t\t\t" + ledger.data["2024-03"][0].series_id + "\n"
