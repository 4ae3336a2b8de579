from __future__ import annotations

import logging
import threading
from dataclasses import replace
from datetime import date
from typing import Callable, Iterable, Optional, Sequence, Union

from aggregation import AggregationEngine, AggregationResult, ExpensesFilter
from categories import CATEGORIES_FILE_NAME, CategoryDirectory
from csv_utils import dump_shard, parse_shard
from dataindex import MonthShardIndex, shard_file_name, shard_id_from_file_name
from models import RecurrenceRule, SortKey, Transaction
from paymentmethods import PAYMENT_METHODS_FILE_NAME, PaymentMethodDirectory
from periods import Timerange, month_key, resolve_timerange, validate_month_key
from recurrence import (
    REGISTRY_FILE_NAME,
    RecurrenceProjector,
    RecurringRegistry,
    local_today,
)
from storage import FileStore

logger = logging.getLogger(__name__)


class Ledger:
    """Transaction store partitioned by month and persisted in shard files.

    The ledger wires the shard index, the recurring projector and the
    aggregation engine together. Recurring series are processed before any
    month is listed or aggregated, so overdue occurrences are always
    materialized first.
    """

    def __init__(
        self,
        store: FileStore,
        *,
        directory: Optional[CategoryDirectory] = None,
        payment_methods: Optional[PaymentMethodDirectory] = None,
        max_months_per_shard: Optional[int] = None,
        max_iterations: Optional[int] = None,
        aggregation_workers: Optional[int] = None,
        clock: Callable[[], date] = local_today,
    ) -> None:
        self.store = store
        self.index = MonthShardIndex(max_months_per_shard)
        self.data: dict[str, list[Transaction]] = {}
        self.directory = directory or CategoryDirectory()
        if payment_methods is None:
            payment_methods = PaymentMethodDirectory.with_defaults()
        self.payment_methods = payment_methods
        self.registry = RecurringRegistry()
        self.projector = RecurrenceProjector(
            self.registry,
            on_materialize=self.add,
            on_registry_change=self.save_registry,
            max_iterations=max_iterations,
        )
        self.aggregation_workers = aggregation_workers
        self.clock = clock
        self._write_lock = threading.RLock()

    # persistence

    def load(self) -> None:
        with self._write_lock:
            self.registry = RecurringRegistry.load_json(
                self.store.load(REGISTRY_FILE_NAME)
            )
            self.projector.registry = self.registry
            categories_content = self.store.load(CATEGORIES_FILE_NAME)
            if categories_content:
                self.directory = CategoryDirectory.load_json(categories_content)
            payment_methods_content = self.store.load(PAYMENT_METHODS_FILE_NAME)
            if payment_methods_content:
                self.payment_methods = PaymentMethodDirectory.load_json(
                    payment_methods_content
                )
            shard_files: list[tuple[int, str]] = []
            for name in self.store.names():
                shard_id = shard_id_from_file_name(name)
                if shard_id is not None:
                    shard_files.append((shard_id, name))
            for shard_id, name in sorted(shard_files):
                self.import_shard(shard_id, self.store.load(name) or "", source=name)
        logger.info(
            f"ledger_loaded: shards={len(shard_files)} months={len(self.data)} "
            f"series={len(self.registry)}"
        )

    def import_shard(self, shard_id: int, content: str, *, source: str = "") -> list[str]:
        """Replace the data of every month found in a shard file."""
        loaded: list[str] = []
        for txn in parse_shard(content, source=source or shard_file_name(shard_id)):
            month = txn.month
            if month not in loaded:
                self.data[month] = []
                self.index.register(month, shard_id)
                loaded.append(month)
            self.data[month].append(txn)
        for month in loaded:
            self._sort(month)
        return loaded

    def save_months(self, months: Iterable[str]) -> list[int]:
        shard_ids = sorted({self.index.resolve_shard(m) for m in months})
        for shard_id in shard_ids:
            content = dump_shard(
                txn
                for month in sorted(self.index.months_in(shard_id))
                for txn in self.data.get(month, [])
            )
            self.store.save(shard_file_name(shard_id), content)
            logger.info(f"shard_saved: shard={shard_id}")
        return shard_ids

    def save_registry(self) -> None:
        self.store.save(REGISTRY_FILE_NAME, self.registry.dump_json())

    def set_categories(self, directory: CategoryDirectory) -> None:
        self.directory = directory
        self.store.save(CATEGORIES_FILE_NAME, directory.dump_json())

    def set_payment_methods(self, payment_methods: PaymentMethodDirectory) -> None:
        self.payment_methods = payment_methods
        self.save_payment_methods()

    def save_payment_methods(self) -> None:
        self.store.save(PAYMENT_METHODS_FILE_NAME, self.payment_methods.dump_json())

    # transactions

    def _sort(self, month: str) -> None:
        self.data[month].sort(key=lambda txn: txn.date)

    def add(self, transactions: Union[Transaction, Sequence[Transaction]]) -> list[str]:
        items = [transactions] if isinstance(transactions, Transaction) else list(transactions)
        affected: list[str] = []
        with self._write_lock:
            for txn in items:
                txn = replace(txn, is_preview=False)
                self.data.setdefault(txn.month, []).append(txn)
                if txn.month not in affected:
                    affected.append(txn.month)
            for month in affected:
                self._sort(month)
            if affected:
                self.save_months(affected)
        return affected

    def remove(self, month: str, indexes: Union[int, Iterable[int]]) -> list[Transaction]:
        validate_month_key(month)
        positions = [indexes] if isinstance(indexes, int) else list(indexes)
        with self._write_lock:
            items = self.data.get(month, [])
            for position in positions:
                if position < 0 or position >= len(items):
                    raise IndexError(f"No transaction #{position} in {month}")
            removed = [items[p] for p in sorted(set(positions))]
            for position in sorted(set(positions), reverse=True):
                del items[position]
            self.save_months([month])
        return removed

    def replace(self, month: str, index: int, transaction: Transaction) -> Transaction:
        with self._write_lock:
            (previous,) = self.remove(month, index)
            self.add(transaction)
        return previous

    def has_actual_data(self, month: str) -> bool:
        return bool(self.data.get(month))

    def all_months(self) -> list[str]:
        return self.index.all_months()

    def transactions_for(
        self,
        month: str,
        now: Optional[date] = None,
        *,
        include_previews: bool = True,
    ) -> list[Transaction]:
        validate_month_key(month)
        previews = self.projector.process(month, now or self.clock())
        items = list(self.data.get(month, []))
        if include_previews:
            items.extend(previews)
        return sorted(items, key=lambda txn: txn.date)

    def find(
        self, expenses_filter: ExpensesFilter, months: Optional[Iterable[str]] = None
    ) -> list[Transaction]:
        selected = sorted(months) if months is not None else self.all_months()
        return [
            txn
            for month in selected
            for txn in self.data.get(month, [])
            if expenses_filter.includes(txn)
        ]

    # recurring series

    def set_recurring(
        self, series_id: Optional[str], template: Transaction, rule: RecurrenceRule
    ) -> str:
        with self._write_lock:
            series_id = self.registry.set(series_id, template, rule)
            self.save_registry()
        return series_id

    def make_recurring(self, month: str, index: int, rule: RecurrenceRule) -> str:
        """Turn an existing transaction into the first occurrence of a series."""
        with self._write_lock:
            items = self.data.get(validate_month_key(month), [])
            if index < 0 or index >= len(items):
                raise IndexError(f"No transaction #{index} in {month}")
            txn = items[index]
            series_id = self.registry.set(
                txn.series_id or None, txn, rule, last_materialized_date=txn.date
            )
            if series_id != txn.series_id:
                items[index] = replace(txn, series_id=series_id)
                self.save_months([month])
            self.save_registry()
        return series_id

    def remove_recurring(self, series_id: str) -> bool:
        with self._write_lock:
            removed = self.registry.remove(series_id)
            if removed:
                self.save_registry()
        return removed

    def process_recurring(
        self, month: Optional[str] = None, now: Optional[date] = None
    ) -> list[Transaction]:
        now = now or self.clock()
        return self.projector.process(month or month_key(now), now)

    # statistics

    def timerange(self, mode: Optional[str], anchor: Optional[date] = None) -> Timerange:
        return resolve_timerange(mode, self.all_months(), anchor=anchor or self.clock())

    def statistics(
        self,
        expenses_filter: Optional[ExpensesFilter],
        months: Sequence[str],
        sort_key: SortKey = SortKey.sum,
        now: Optional[date] = None,
        *,
        include_previews: bool = False,
    ) -> AggregationResult:
        now = now or self.clock()
        snapshot: dict[str, tuple[Transaction, ...]] = {}
        for month in months:
            previews = self.projector.process(validate_month_key(month), now)
            items = tuple(self.data.get(month, ()))
            snapshot[month] = items + tuple(previews) if include_previews else items
        engine = AggregationEngine(
            self.directory,
            lambda m: snapshot.get(m, ()),
            workers=self.aggregation_workers,
        )
        return engine.compute_window(expenses_filter, months, sort_key)


def open_ledger(store: Optional[FileStore] = None) -> Ledger:
    if store is None:
        from database import init_db
        from storage import SqlFileStore

        init_db()
        store = SqlFileStore()
    ledger = Ledger(store)
    ledger.load()
    return ledger
