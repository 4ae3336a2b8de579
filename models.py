from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from enum import Enum
from typing import Optional

from sqlalchemy import DateTime, Integer, String, Text
from sqlalchemy.orm import Mapped, mapped_column

from database import Base
from periods import month_key


class SortKey(str, Enum):
    sum = "sum"
    count = "count"
    avg = "avg"
    mavg = "mavg"


@dataclass(frozen=True)
class Transaction:
    date: date
    amount: Decimal
    category_id: str
    payment_method_id: str = ""
    note: str = ""
    series_id: str = ""
    is_preview: bool = False

    @property
    def month(self) -> str:
        return month_key(self.date)


@dataclass(frozen=True)
class RecurrenceRule:
    weeks: Optional[int] = None
    months: Optional[int] = None
    anchor_day: Optional[int] = None

    @classmethod
    def weekly(cls, weeks: int) -> "RecurrenceRule":
        return cls(weeks=weeks)

    @classmethod
    def monthly(cls, months: int, anchor_day: int) -> "RecurrenceRule":
        return cls(months=months, anchor_day=anchor_day)

    @property
    def is_weekly(self) -> bool:
        return self.weeks is not None and self.weeks > 0

    def is_valid(self) -> bool:
        if self.is_weekly:
            return True
        return (
            self.months is not None
            and self.months > 0
            and self.anchor_day is not None
            and 1 <= self.anchor_day <= 31
        )

    def short_label(self) -> str:
        if self.is_weekly:
            return f"{self.weeks}w"
        if self.is_valid():
            return f"{self.months}m"
        return ""


@dataclass
class RecurringSeries:
    id: str
    template: Transaction
    rule: RecurrenceRule
    last_materialized_date: Optional[date] = None

    @property
    def last_execution_date(self) -> date:
        return self.last_materialized_date or self.template.date


@dataclass(frozen=True)
class CategoryNode:
    id: str
    label: str = ""
    parent_id: Optional[str] = None
    child_ids: tuple[str, ...] = field(default_factory=tuple)
    color: Optional[str] = None

    @property
    def is_master(self) -> bool:
        return self.parent_id is None


@dataclass(frozen=True)
class PaymentMethod:
    id: str
    label: str = "New payment method"
    icon: Optional[str] = None
    color: Optional[str] = None


class TimestampMixin:
    created_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, nullable=False
    )
    updated_at: Mapped[datetime] = mapped_column(
        DateTime, default=datetime.utcnow, onupdate=datetime.utcnow, nullable=False
    )


class StoredFile(Base, TimestampMixin):
    __tablename__ = "stored_files"

    id: Mapped[int] = mapped_column(Integer, primary_key=True)
    name: Mapped[str] = mapped_column(String(200), nullable=False, unique=True)
    content: Mapped[str] = mapped_column(Text, nullable=False, default="")
