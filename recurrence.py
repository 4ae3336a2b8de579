import logging
import threading
import uuid
from dataclasses import dataclass, replace
from datetime import date, datetime, timedelta
from typing import Callable, Iterator, Optional
from zoneinfo import ZoneInfo

from config import get_settings
from models import RecurrenceRule, RecurringSeries, Transaction
from periods import add_months, month_end, month_key
from schemas import ExpenseRecord, IntervalRecord, RegistryDocument, SeriesRecord

logger = logging.getLogger(__name__)

REGISTRY_FILE_NAME = "rep.json"


def local_today() -> date:
    settings = get_settings()
    tz = ZoneInfo(settings.timezone)
    return datetime.now(tz).date()


def new_series_id() -> str:
    return uuid.uuid4().hex[:8]


def next_occurrence(from_date: date, rule: RecurrenceRule) -> date:
    if not rule.is_valid():
        raise ValueError(f"Invalid recurrence rule: {rule}")
    if rule.is_weekly:
        return from_date + timedelta(weeks=rule.weeks)
    # The anchor comes from the rule, never from a previously clamped date.
    return add_months(from_date, rule.months, desired_day=rule.anchor_day)


def rule_from_record(record: IntervalRecord) -> RecurrenceRule:
    if record.months and record.months > 0:
        return RecurrenceRule(months=record.months, anchor_day=record.anchor_day or 1)
    if record.weeks and record.weeks > 0:
        return RecurrenceRule(weeks=record.weeks)
    return RecurrenceRule()


def rule_to_record(rule: RecurrenceRule) -> IntervalRecord:
    if rule.is_weekly:
        return IntervalRecord(weeks=rule.weeks)
    return IntervalRecord(months=rule.months, anchor_day=rule.anchor_day)


@dataclass(frozen=True)
class RegistrySnapshot:
    order: tuple[str, ...]
    items: tuple[RecurringSeries, ...]


class RecurringRegistry:
    """Ordered collection of recurring series, persisted as ``rep.json``."""

    def __init__(self) -> None:
        self._items: dict[str, RecurringSeries] = {}
        self._order: list[str] = []
        self._locks: dict[str, threading.Lock] = {}
        self._locks_guard = threading.Lock()

    def lock_for(self, series_id: str) -> threading.Lock:
        """Lock serializing cursor reads and writes of one series."""
        with self._locks_guard:
            lock = self._locks.get(series_id)
            if lock is None:
                lock = self._locks[series_id] = threading.Lock()
            return lock

    def __iter__(self) -> Iterator[RecurringSeries]:
        for series_id in list(self._order):
            series = self._items.get(series_id)
            if series is not None:
                yield series

    def __len__(self) -> int:
        return len(self._items)

    def __contains__(self, series_id: str) -> bool:
        return series_id in self._items

    def get(self, series_id: str) -> Optional[RecurringSeries]:
        return self._items.get(series_id)

    def set(
        self,
        series_id: Optional[str],
        template: Transaction,
        rule: RecurrenceRule,
        *,
        last_materialized_date: Optional[date] = None,
    ) -> str:
        """Add or replace a series.

        Replacing a series never moves its materialization cursor backwards.
        An invalid ``rule`` removes the series instead and returns ``""``.
        """
        if not rule.is_valid():
            if series_id:
                self.remove(series_id)
            return ""
        series_id = series_id or new_series_id()
        with self.lock_for(series_id):
            existing = self._items.get(series_id)
            if existing is not None and existing.last_materialized_date is not None:
                if last_materialized_date is None:
                    last_materialized_date = existing.last_materialized_date
                else:
                    last_materialized_date = max(
                        last_materialized_date, existing.last_materialized_date
                    )
            if series_id not in self._order:
                self._order.append(series_id)
            self._items[series_id] = RecurringSeries(
                id=series_id,
                template=replace(template, series_id=series_id, is_preview=False),
                rule=rule,
                last_materialized_date=last_materialized_date,
            )
        return series_id

    def remove(self, series_id: str) -> bool:
        if self._items.pop(series_id, None) is None:
            return False
        self._order.remove(series_id)
        return True

    def interval_of(self, series_id: str) -> RecurrenceRule:
        series = self._items.get(series_id)
        return series.rule if series else RecurrenceRule()

    def last_execution_of(self, series_id: str) -> Optional[date]:
        series = self._items.get(series_id)
        return series.last_execution_date if series else None

    def capture(self) -> RegistrySnapshot:
        return RegistrySnapshot(
            order=tuple(self._order),
            items=tuple(replace(series) for series in self._items.values()),
        )

    def restore(self, snapshot: RegistrySnapshot) -> None:
        self._order = list(snapshot.order)
        self._items = {series.id: replace(series) for series in snapshot.items}

    def to_document(self) -> RegistryDocument:
        items: dict[str, SeriesRecord] = {}
        for series in self:
            template = series.template
            items[series.id] = SeriesRecord(
                expense=ExpenseRecord(
                    dat=template.date,
                    amt=template.amount,
                    cat=template.category_id,
                    pmt=template.payment_method_id,
                    txt=template.note,
                    rep=series.id,
                    last=series.last_materialized_date,
                ),
                interval=rule_to_record(series.rule),
            )
        return RegistryDocument(order=list(items), items=items)

    def dump_json(self) -> str:
        return self.to_document().model_dump_json(by_alias=True, exclude_none=True)

    @classmethod
    def from_document(cls, document: RegistryDocument) -> "RecurringRegistry":
        registry = cls()
        order = [sid for sid in document.order if sid in document.items]
        order += [sid for sid in document.items if sid not in order]
        for series_id in order:
            record = document.items[series_id]
            expense = record.expense
            registry._order.append(series_id)
            registry._items[series_id] = RecurringSeries(
                id=series_id,
                template=Transaction(
                    date=expense.dat,
                    amount=expense.amt,
                    category_id=expense.cat,
                    payment_method_id=expense.pmt,
                    note=expense.txt,
                    series_id=series_id,
                ),
                rule=rule_from_record(record.interval),
                last_materialized_date=expense.last,
            )
        return registry

    @classmethod
    def load_json(cls, content: Optional[str]) -> "RecurringRegistry":
        if not content or not content.strip():
            return cls()
        return cls.from_document(RegistryDocument.model_validate_json(content))


class RecurrenceProjector:
    def __init__(
        self,
        registry: RecurringRegistry,
        *,
        on_materialize: Optional[Callable[[list[Transaction]], None]] = None,
        on_registry_change: Optional[Callable[[], None]] = None,
        max_iterations: Optional[int] = None,
    ) -> None:
        self.registry = registry
        self.on_materialize = on_materialize
        self.on_registry_change = on_registry_change
        if max_iterations is None:
            max_iterations = get_settings().projection_max_iterations
        self.max_iterations = max_iterations

    def _project(
        self,
        series: RecurringSeries,
        through_date: date,
        now: date,
        month: str,
    ) -> tuple[list[Transaction], list[Transaction]]:
        previews: list[Transaction] = []
        materialized: list[Transaction] = []
        if not series.rule.is_valid():
            logger.warning(f"recurring_invalid_rule: series={series.id} rule={series.rule}")
            return previews, materialized

        with self.registry.lock_for(series.id):
            # Another thread may have replaced the series while we waited.
            series = self.registry.get(series.id) or series
            if series.last_materialized_date is None:
                cursor = series.template.date
            else:
                cursor = next_occurrence(series.last_materialized_date, series.rule)
            iterations = 0
            while cursor <= through_date:
                iterations += 1
                if iterations > self.max_iterations:
                    logger.error(
                        f"recurring_iteration_cap: series={series.id} "
                        f"cap={self.max_iterations} cursor={cursor.isoformat()}"
                    )
                    break
                if cursor < now:
                    materialized.append(
                        replace(
                            series.template,
                            date=cursor,
                            series_id=series.id,
                            is_preview=False,
                        )
                    )
                    series.last_materialized_date = cursor
                    logger.info(
                        f"recurring_materialized: series={series.id} date={cursor.isoformat()}"
                    )
                elif month_key(cursor) == month:
                    previews.append(
                        replace(
                            series.template,
                            date=cursor,
                            series_id=series.id,
                            is_preview=True,
                        )
                    )
                cursor = next_occurrence(cursor, series.rule)

        previews.sort(key=lambda txn: txn.date)
        return previews, materialized

    def _publish(self, materialized: list[Transaction]) -> None:
        if not materialized:
            return
        if self.on_materialize is not None:
            self.on_materialize(materialized)
        if self.on_registry_change is not None:
            self.on_registry_change()

    def project(
        self,
        series: RecurringSeries,
        through_date: date,
        now: date,
        month: Optional[str] = None,
    ) -> list[Transaction]:
        """Materialize overdue occurrences of ``series`` and preview the rest.

        Occurrences before ``now`` become actual transactions handed to
        ``on_materialize``. Occurrences on or after ``now`` that fall in
        ``month`` (default: the month of ``through_date``) are returned as
        previews, sorted by date.
        """
        now = _as_date(now)
        previews, materialized = self._project(
            series, through_date, now, month or month_key(through_date)
        )
        self._publish(materialized)
        return previews

    def process(self, month: str, now: Optional[date] = None) -> list[Transaction]:
        now = _as_date(now or local_today())
        through_date = month_end(month)
        previews: list[Transaction] = []
        materialized: list[Transaction] = []
        for series in self.registry:
            series_previews, series_materialized = self._project(
                series, through_date, now, month
            )
            previews.extend(series_previews)
            materialized.extend(series_materialized)
        if materialized:
            logger.info(
                f"recurring_catch_up: month={month} materialized={len(materialized)}"
            )
        self._publish(materialized)
        previews.sort(key=lambda txn: txn.date)
        return previews


def _as_date(value: date) -> date:
    if isinstance(value, datetime):
        return value.date()
    return value
