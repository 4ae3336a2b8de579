import json
import logging
import threading
from datetime import date, datetime
from decimal import Decimal

import pytest

from models import RecurrenceRule, RecurringSeries, Transaction
from recurrence import RecurrenceProjector, RecurringRegistry, next_occurrence


def _template(day: date, amount: str = "10.00") -> Transaction:
    return Transaction(date=day, amount=Decimal(amount), category_id="rent", note="Rent")


def _projector(registry: RecurringRegistry, posted: list, max_iterations: int = 10):
    saves: list[int] = []
    projector = RecurrenceProjector(
        registry,
        on_materialize=posted.extend,
        on_registry_change=lambda: saves.append(1),
        max_iterations=max_iterations,
    )
    return projector, saves


def test_monthly_anchor_survives_short_months():
    rule = RecurrenceRule.monthly(1, 31)
    feb = next_occurrence(date(2024, 1, 31), rule)
    assert feb == date(2024, 2, 29)
    assert next_occurrence(feb, rule) == date(2024, 3, 31)
    assert next_occurrence(date(2023, 1, 31), rule) == date(2023, 2, 28)


def test_weekly_rule_adds_whole_weeks():
    assert next_occurrence(date(2024, 12, 25), RecurrenceRule.weekly(2)) == date(2025, 1, 8)


def test_next_occurrence_rejects_invalid_rule():
    with pytest.raises(ValueError):
        next_occurrence(date(2024, 1, 1), RecurrenceRule(months=1, anchor_day=0))


def test_overdue_occurrences_materialize_and_future_ones_preview():
    registry = RecurringRegistry()
    series_id = registry.set(None, _template(date(2024, 1, 31)), RecurrenceRule.monthly(1, 31))
    posted: list[Transaction] = []
    projector, saves = _projector(registry, posted)

    previews = projector.project(
        registry.get(series_id), date(2024, 3, 31), date(2024, 3, 15)
    )

    assert [txn.date for txn in posted] == [date(2024, 1, 31), date(2024, 2, 29)]
    assert all(not txn.is_preview and txn.series_id == series_id for txn in posted)
    assert [txn.date for txn in previews] == [date(2024, 3, 31)]
    assert previews[0].is_preview
    assert registry.last_execution_of(series_id) == date(2024, 2, 29)
    assert saves == [1]


def test_occurrence_on_now_stays_a_preview():
    registry = RecurringRegistry()
    series_id = registry.set(
        None,
        _template(date(2024, 1, 15)),
        RecurrenceRule.monthly(1, 15),
        last_materialized_date=date(2024, 1, 15),
    )
    posted: list[Transaction] = []
    projector, saves = _projector(registry, posted)

    previews = projector.process("2024-02", datetime(2024, 2, 15, 8, 30))

    assert posted == []
    assert saves == []
    assert [txn.date for txn in previews] == [date(2024, 2, 15)]
    assert registry.last_execution_of(series_id) == date(2024, 1, 15)


def test_process_catches_up_weekly_series():
    registry = RecurringRegistry()
    registry.set(
        None,
        _template(date(2024, 1, 1)),
        RecurrenceRule.weekly(2),
        last_materialized_date=date(2024, 1, 1),
    )
    posted: list[Transaction] = []
    projector, _ = _projector(registry, posted)

    previews = projector.process("2024-02", date(2024, 2, 1))

    assert [txn.date for txn in posted] == [date(2024, 1, 15), date(2024, 1, 29)]
    assert [txn.date for txn in previews] == [date(2024, 2, 12), date(2024, 2, 26)]
    assert all(txn.date < date(2024, 2, 1) for txn in posted)


def test_previews_outside_requested_month_are_dropped():
    registry = RecurringRegistry()
    registry.set(None, _template(date(2024, 5, 1)), RecurrenceRule.weekly(1))
    posted: list[Transaction] = []
    projector, _ = _projector(registry, posted)

    # Looking at March while the series starts in May projects nothing.
    assert projector.process("2024-03", date(2024, 3, 1)) == []
    assert posted == []


def test_non_advancing_rule_stops_at_iteration_cap(monkeypatch, caplog):
    monkeypatch.setattr("recurrence.next_occurrence", lambda day, rule: day)
    registry = RecurringRegistry()
    series_id = registry.set(None, _template(date(2024, 1, 10)), RecurrenceRule.weekly(1))
    posted: list[Transaction] = []
    projector, _ = _projector(registry, posted, max_iterations=10)

    with caplog.at_level(logging.ERROR, logger="recurrence"):
        previews = projector.process("2024-01", date(2024, 1, 1))

    assert len(previews) == 10
    assert posted == []
    assert any(
        "recurring_iteration_cap" in record.message and series_id in record.message
        for record in caplog.records
    )


def test_invalid_rule_is_skipped_with_warning(caplog):
    registry = RecurringRegistry.load_json(
        json.dumps(
            {
                "order": ["broken"],
                "items": {
                    "broken": {
                        "expense": {"dat": "2024-01-05", "amt": 5, "cat": "misc"},
                        "interval": {},
                    }
                },
            }
        )
    )
    posted: list[Transaction] = []
    projector, _ = _projector(registry, posted)

    with caplog.at_level(logging.WARNING, logger="recurrence"):
        assert projector.process("2024-01", date(2024, 2, 1)) == []

    assert posted == []
    assert any("recurring_invalid_rule" in record.message for record in caplog.records)


def test_set_with_invalid_rule_removes_series():
    registry = RecurringRegistry()
    series_id = registry.set(None, _template(date(2024, 1, 1)), RecurrenceRule.weekly(1))
    assert registry.set(series_id, _template(date(2024, 1, 1)), RecurrenceRule()) == ""
    assert series_id not in registry
    assert registry.interval_of(series_id) == RecurrenceRule()


def test_registry_reads_legacy_interval_keys():
    content = json.dumps(
        {
            "order": ["abc12345"],
            "items": {
                "abc12345": {
                    "expense": {
                        "dat": "2024-01-31T10:00:00.000Z",
                        "amt": 12.5,
                        "cat": "rent",
                        "txt": "Flat",
                        "rep": "abc12345",
                    },
                    "interval": {"months": 1, "dayOfMonth": 31},
                }
            },
        }
    )
    registry = RecurringRegistry.load_json(content)

    series = registry.get("abc12345")
    assert series is not None
    assert series.template.date == date(2024, 1, 31)
    assert series.template.amount == Decimal("12.5")
    assert series.rule == RecurrenceRule.monthly(1, 31)
    assert series.last_materialized_date is None

    document = json.loads(registry.dump_json())
    assert document["order"] == ["abc12345"]
    assert document["items"]["abc12345"]["interval"] == {"months": 1, "anchorDay": 31}
    assert document["items"]["abc12345"]["expense"]["dat"] == "2024-01-31"
    assert "last" not in document["items"]["abc12345"]["expense"]


def test_registry_capture_and_restore():
    registry = RecurringRegistry()
    kept = registry.set(None, _template(date(2024, 1, 1)), RecurrenceRule.weekly(1))
    snapshot = registry.capture()

    registry.set(None, _template(date(2024, 2, 1)), RecurrenceRule.monthly(1, 1))
    registry.get(kept).last_materialized_date = date(2024, 3, 1)
    registry.restore(snapshot)

    assert [series.id for series in registry] == [kept]
    assert registry.get(kept).last_materialized_date is None


def test_last_execution_defaults_to_template_date():
    series = RecurringSeries(
        id="s1", template=_template(date(2024, 4, 2)), rule=RecurrenceRule.weekly(1)
    )
    assert series.last_execution_date == date(2024, 4, 2)


def test_replacing_series_keeps_materialization_cursor():
    registry = RecurringRegistry()
    series_id = registry.set(
        None,
        _template(date(2024, 1, 10)),
        RecurrenceRule.monthly(1, 10),
        last_materialized_date=date(2024, 3, 10),
    )

    registry.set(series_id, _template(date(2024, 1, 10), "6.00"), RecurrenceRule.monthly(1, 10))
    assert registry.last_execution_of(series_id) == date(2024, 3, 10)
    assert registry.get(series_id).template.amount == Decimal("6.00")

    registry.set(
        series_id,
        _template(date(2024, 1, 10)),
        RecurrenceRule.monthly(1, 10),
        last_materialized_date=date(2024, 1, 10),
    )
    assert registry.last_execution_of(series_id) == date(2024, 3, 10)


def test_concurrent_processing_posts_each_occurrence_once():
    registry = RecurringRegistry()
    registry.set(None, _template(date(2024, 1, 1)), RecurrenceRule.weekly(1))
    posted: list[Transaction] = []
    projector, _ = _projector(registry, posted)
    barrier = threading.Barrier(4)

    def worker():
        barrier.wait()
        projector.process("2024-02", date(2024, 3, 1))

    threads = [threading.Thread(target=worker) for _ in range(4)]
    for thread in threads:
        thread.start()
    for thread in threads:
        thread.join()

    dates = sorted(txn.date for txn in posted)
    assert len(dates) == 9
    assert len(set(dates)) == 9
    assert dates[0] == date(2024, 1, 1)
    assert dates[-1] == date(2024, 2, 26)
