import re
from datetime import datetime
from decimal import Decimal, InvalidOperation
from typing import Iterable, Optional

from models import Transaction

FIELD_ORDER = ("date", "amount", "category_id", "note", "payment_method_id", "series_id")
_UNSAFE_WHITESPACE = re.compile(r"[\t\r\n]+")


def sanitize_field(value: Optional[str]) -> str:
    """Make a value safe for a tab-separated line."""
    if not value:
        return ""
    return _UNSAFE_WHITESPACE.sub(" ", value).strip()


def parse_date(value: str):
    value = value.strip()
    # Full ISO timestamps are accepted; only the date part is kept.
    return datetime.strptime(value[:10], "%Y-%m-%d").date()


def parse_amount(value: str) -> Decimal:
    clean = value.strip().replace("€", "").replace("$", "").replace(" ", "")
    clean = clean.replace(",", ".")
    if clean.count(".") > 1:
        parts = clean.split(".")
        clean = "".join(parts[:-1]) + "." + parts[-1]
    try:
        amount = Decimal(clean or "0")
    except InvalidOperation as exc:
        raise ValueError("Invalid amount") from exc
    if not amount.is_finite():
        raise ValueError("Invalid amount")
    return amount.quantize(Decimal("0.01"))


def format_amount(amount: Decimal) -> str:
    return f"{Decimal(amount).quantize(Decimal('0.01'))}"


def parse_line(line: str) -> Transaction:
    values = line.rstrip("\r").split("\t")
    values += [""] * (len(FIELD_ORDER) - len(values))
    date_raw, amount_raw, category_id, note, payment_method_id, series_id = values[
        : len(FIELD_ORDER)
    ]
    return Transaction(
        date=parse_date(date_raw),
        amount=parse_amount(amount_raw),
        category_id=category_id,
        note=note,
        payment_method_id=payment_method_id,
        series_id=series_id,
    )


def format_line(txn: Transaction) -> str:
    return "\t".join(
        [
            txn.date.isoformat(),
            format_amount(txn.amount),
            sanitize_field(txn.category_id),
            sanitize_field(txn.note),
            sanitize_field(txn.payment_method_id),
            sanitize_field(txn.series_id),
        ]
    )


def parse_shard(content: str, *, source: str = "<shard>") -> list[Transaction]:
    transactions: list[Transaction] = []
    for idx, line in enumerate(content.split("\n"), start=1):
        if not line.strip():
            continue
        try:
            transactions.append(parse_line(line))
        except ValueError as exc:
            raise ValueError(f"{source} line {idx}: {exc}") from exc
    return transactions


def dump_shard(transactions: Iterable[Transaction]) -> str:
    return "".join(format_line(txn) + "\n" for txn in transactions)
