from __future__ import annotations

import logging
from concurrent.futures import ThreadPoolExecutor, wait
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Callable, Iterable, Optional, Sequence

from categories import CategoryDirectory
from config import get_settings
from models import SortKey, Transaction
from periods import validate_month_key

logger = logging.getLogger(__name__)

ZERO = Decimal("0")
DEFAULT_FILTER_NAME = "New expenses filter"
CENT = Decimal("0.01")


def _money(value: Decimal) -> str:
    return str(value.quantize(CENT))


@dataclass
class AggregateAtom:
    """Running ``sum`` and ``count`` of transaction amounts."""

    sum: Decimal = ZERO
    count: int = 0

    @property
    def avg(self) -> Decimal:
        return self.sum / self.count if self.count > 0 else ZERO

    def add(self, other: AggregateAtom) -> AggregateAtom:
        self.sum += other.sum
        self.count += other.count
        return self


@dataclass
class CategoryAggregate(AggregateAtom):
    category_id: Optional[str] = None
    months_in_window: int = 0
    children: list[CategoryAggregate] = field(default_factory=list)

    @property
    def mavg(self) -> Decimal:
        if self.months_in_window <= 0:
            return ZERO
        return self.sum / self.months_in_window

    def sort_value(self, key: SortKey) -> Decimal:
        return Decimal(getattr(self, SortKey(key).value))

    def as_dict(self) -> dict[str, object]:
        return {
            "category_id": self.category_id,
            "sum": _money(self.sum),
            "count": self.count,
            "avg": _money(self.avg),
            "mavg": _money(self.mavg),
            "months_in_window": self.months_in_window,
            "children": [child.as_dict() for child in self.children],
        }


@dataclass
class ExpensesFilter:
    name: str = DEFAULT_FILTER_NAME
    categories: frozenset[str] = frozenset()
    payment_methods: frozenset[str] = frozenset()

    def includes(self, txn: Transaction) -> bool:
        if txn.payment_method_id in self.payment_methods:
            return False
        if self.categories and txn.category_id not in self.categories:
            return False
        return True

    def to_dict(self) -> dict[str, object]:
        return {
            "name": self.name,
            "categories": sorted(self.categories),
            "payment_methods": sorted(self.payment_methods),
        }

    @classmethod
    def from_dict(cls, data: Optional[dict]) -> ExpensesFilter:
        data = data or {}
        return cls(
            name=data.get("name") or DEFAULT_FILTER_NAME,
            categories=frozenset(data.get("categories") or ()),
            payment_methods=frozenset(data.get("payment_methods") or ()),
        )


@dataclass(frozen=True)
class DataIntegrityWarning:
    reason: str
    category_id: Optional[str] = None
    month: Optional[str] = None


@dataclass
class AggregationResult:
    per_month: dict[str, list[CategoryAggregate]]
    totals: list[CategoryAggregate]
    grand_total: CategoryAggregate
    warnings: list[DataIntegrityWarning] = field(default_factory=list)


@dataclass
class _MonthOutcome:
    atoms: dict[str, AggregateAtom]
    aggregates: list[CategoryAggregate]
    warnings: list[DataIntegrityWarning]


def reduce_transactions(
    transactions: Iterable[Transaction], expenses_filter: ExpensesFilter
) -> dict[str, AggregateAtom]:
    atoms: dict[str, AggregateAtom] = {}
    for txn in transactions:
        if not expenses_filter.includes(txn):
            continue
        atoms.setdefault(txn.category_id, AggregateAtom()).add(
            AggregateAtom(txn.amount, 1)
        )
    return atoms


class AggregationEngine:
    def __init__(
        self,
        directory: CategoryDirectory,
        source: Callable[[str], Sequence[Transaction]],
        *,
        workers: Optional[int] = None,
    ) -> None:
        self.directory = directory
        self.source = source
        self.workers = workers or get_settings().aggregation_workers

    def rollup(
        self,
        atoms: dict[str, AggregateAtom],
        months_in_window: int,
        sort_key: SortKey,
        *,
        month: Optional[str] = None,
    ) -> tuple[list[CategoryAggregate], list[DataIntegrityWarning]]:
        """Fold leaf atoms into one aggregate per master category.

        Each master's own atom is added to its total, not listed as a child.
        Children and masters are sorted descending by ``sort_key``, keeping
        encounter order for ties.
        """
        warnings: list[DataIntegrityWarning] = []
        reachable: set[str] = set()
        result: list[CategoryAggregate] = []
        for master in self.directory.masters_in_order():
            reachable.add(master.id)
            master_agg = CategoryAggregate(
                category_id=master.id, months_in_window=months_in_window
            )
            master_agg.add(atoms.get(master.id, AggregateAtom()))
            for child_id in master.child_ids:
                if child_id not in self.directory:
                    warnings.append(
                        DataIntegrityWarning("stale_child_reference", child_id, month)
                    )
                reachable.add(child_id)
                child_agg = CategoryAggregate(
                    category_id=child_id, months_in_window=months_in_window
                )
                child_agg.add(atoms.get(child_id, AggregateAtom()))
                master_agg.add(child_agg)
                master_agg.children.append(child_agg)
            master_agg.children.sort(key=lambda agg: agg.sort_value(sort_key), reverse=True)
            result.append(master_agg)
        result.sort(key=lambda agg: agg.sort_value(sort_key), reverse=True)

        for category_id in atoms:
            if category_id not in reachable:
                warnings.append(
                    DataIntegrityWarning("unknown_category", category_id, month)
                )
        return result, warnings

    def _calc_month(
        self,
        month: str,
        expenses_filter: ExpensesFilter,
        months_in_window: int,
        sort_key: SortKey,
    ) -> _MonthOutcome:
        atoms = reduce_transactions(self.source(month), expenses_filter)
        aggregates, warnings = self.rollup(
            atoms, months_in_window, sort_key, month=month
        )
        return _MonthOutcome(atoms, aggregates, warnings)

    def compute_window(
        self,
        expenses_filter: Optional[ExpensesFilter],
        months: Sequence[str],
        sort_key: SortKey = SortKey.sum,
    ) -> AggregationResult:
        expenses_filter = expenses_filter or ExpensesFilter()
        sort_key = SortKey(sort_key)
        window = list(dict.fromkeys(validate_month_key(m) for m in months))
        months_in_window = len(window)
        if not window:
            return AggregationResult(
                per_month={},
                totals=[],
                grand_total=CategoryAggregate(months_in_window=0),
            )

        with ThreadPoolExecutor(max_workers=min(self.workers, len(window))) as pool:
            futures = {
                month: pool.submit(
                    self._calc_month,
                    month,
                    expenses_filter,
                    months_in_window,
                    sort_key,
                )
                for month in window
            }
            wait(futures.values())

        per_month: dict[str, list[CategoryAggregate]] = {}
        total_atoms: dict[str, AggregateAtom] = {}
        warnings: list[DataIntegrityWarning] = []
        for month in window:
            try:
                outcome = futures[month].result()
            except Exception:
                logger.exception(f"aggregation_month_failed: month={month}")
                warnings.append(DataIntegrityWarning("month_failed", None, month))
                per_month[month], _ = self.rollup({}, months_in_window, sort_key)
                continue
            per_month[month] = outcome.aggregates
            warnings.extend(outcome.warnings)
            for category_id, atom in outcome.atoms.items():
                total_atoms.setdefault(category_id, AggregateAtom()).add(atom)

        totals, _ = self.rollup(total_atoms, months_in_window, sort_key)
        grand_total = CategoryAggregate(months_in_window=months_in_window)
        for master_total in totals:
            grand_total.add(master_total)

        for warning in warnings:
            logger.warning(
                f"aggregation_data_warning: reason={warning.reason} "
                f"category={warning.category_id} month={warning.month}"
            )
        return AggregationResult(
            per_month=per_month,
            totals=totals,
            grand_total=grand_total,
            warnings=warnings,
        )
