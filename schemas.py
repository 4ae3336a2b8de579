import datetime as dt
from decimal import Decimal
from typing import Optional

from pydantic import (
    AliasChoices,
    BaseModel,
    ConfigDict,
    Field,
    field_serializer,
    field_validator,
)

from models import SortKey


def _iso_date_prefix(value: object) -> object:
    # Older registry files carry full ISO timestamps; only the date part counts.
    if isinstance(value, str) and len(value) > 10:
        return value[:10]
    return value


class ExpenseRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    dat: dt.date
    amt: Decimal = Decimal("0")
    cat: str = ""
    pmt: str = ""
    txt: str = ""
    rep: str = ""
    last: Optional[dt.date] = None

    @field_validator("dat", "last", mode="before")
    @classmethod
    def _date_only(cls, value: object) -> object:
        return _iso_date_prefix(value)

    @field_serializer("amt")
    def _serialize_amount(self, value: Decimal) -> float:
        return float(value)


class IntervalRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    months: Optional[int] = None
    weeks: Optional[int] = None
    anchor_day: Optional[int] = Field(
        default=None,
        validation_alias=AliasChoices(
            "anchorDay", "anchor_day", "dayOfMonth", "originalDate", "originalDay"
        ),
        serialization_alias="anchorDay",
    )


class SeriesRecord(BaseModel):
    expense: ExpenseRecord
    interval: IntervalRecord


class RegistryDocument(BaseModel):
    order: list[str] = Field(default_factory=list)
    items: dict[str, SeriesRecord] = Field(default_factory=dict)


class CategoryRecord(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    label: str = ""
    icon: Optional[str] = None
    color: Optional[str] = None
    sub_categories: list[str] = Field(
        default_factory=list,
        validation_alias=AliasChoices("subCategories", "sub_categories"),
        serialization_alias="subCategories",
    )
    master_category: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("masterCategory", "master_category"),
        serialization_alias="masterCategory",
    )


class CategoriesDocument(BaseModel):
    order: list[str] = Field(default_factory=list)
    items: dict[str, CategoryRecord] = Field(default_factory=dict)


class TransactionIn(BaseModel):
    date: dt.date
    amount: Decimal = Field(..., max_digits=12, decimal_places=2)
    category_id: str = Field(..., min_length=1, max_length=64)
    payment_method_id: str = Field(default="", max_length=64)
    note: str = Field(default="", max_length=200)


class RecurringSeriesIn(BaseModel):
    template: TransactionIn
    weeks: Optional[int] = Field(default=None, gt=0)
    months: Optional[int] = Field(default=None, gt=0)
    anchor_day: Optional[int] = Field(default=None, ge=1, le=31)


class ExpensesFilterIn(BaseModel):
    name: Optional[str] = None
    categories: list[str] = Field(default_factory=list)
    payment_methods: list[str] = Field(default_factory=list)
    # When set, every other known payment method is excluded.
    selected_payment_methods: Optional[list[str]] = None


class StatisticsQuery(BaseModel):
    months: list[str] = Field(default_factory=list)
    sort_key: SortKey = SortKey.sum
    include_previews: bool = False
    filter: ExpensesFilterIn = Field(default_factory=ExpensesFilterIn)


class PaymentMethodRecord(BaseModel):
    model_config = ConfigDict(extra="ignore")

    label: str = ""
    icon: Optional[str] = None
    color: Optional[str] = None


class PaymentMethodsDocument(BaseModel):
    model_config = ConfigDict(extra="ignore", populate_by_name=True)

    order: list[str] = Field(default_factory=list)
    disabled: list[str] = Field(default_factory=list)
    default_id: Optional[str] = Field(
        default=None,
        validation_alias=AliasChoices("default", "default_id"),
        serialization_alias="default",
    )
    items: dict[str, PaymentMethodRecord] = Field(default_factory=dict)
