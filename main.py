import logging
from datetime import date
from typing import Optional

from fastapi import Depends, FastAPI, HTTPException, Request

from aggregation import AggregationResult, ExpensesFilter
from categories import CategoryDirectory
from csv_utils import format_amount
from models import RecurrenceRule, Transaction
from paymentmethods import PaymentMethodDirectory
from periods import adjacent_anchor, months_for_average
from scheduler import SchedulerManager
from schemas import (
    CategoriesDocument,
    ExpensesFilterIn,
    PaymentMethodsDocument,
    RecurringSeriesIn,
    StatisticsQuery,
    TransactionIn,
)
from services import Ledger, open_ledger

logger = logging.getLogger(__name__)

app = FastAPI(title="Month Ledger")

_ledger: Optional[Ledger] = None
scheduler_manager: Optional[SchedulerManager] = None


def get_ledger() -> Ledger:
    global _ledger
    if _ledger is None:
        _ledger = open_ledger()
    return _ledger


@app.on_event("startup")
def startup_event():
    global scheduler_manager
    scheduler_manager = SchedulerManager(get_ledger())
    scheduler_manager.start()


@app.on_event("shutdown")
def shutdown_event():
    if scheduler_manager is not None:
        scheduler_manager.stop()


def transaction_from_payload(payload: TransactionIn, ledger: Ledger) -> Transaction:
    return Transaction(
        date=payload.date,
        amount=payload.amount,
        category_id=payload.category_id,
        payment_method_id=payload.payment_method_id
        or ledger.payment_methods.default_id
        or "",
        note=payload.note,
    )


def filter_from_payload(
    payload: Optional[ExpensesFilterIn], ledger: Ledger
) -> ExpensesFilter:
    if payload is None:
        return ExpensesFilter()
    expenses_filter = ExpensesFilter.from_dict(payload.model_dump())
    if payload.selected_payment_methods is not None:
        expenses_filter.payment_methods = expenses_filter.payment_methods | (
            ledger.payment_methods.excluded_except(payload.selected_payment_methods)
        )
    return expenses_filter


def rule_from_payload(payload: RecurringSeriesIn) -> RecurrenceRule:
    if payload.weeks:
        rule = RecurrenceRule.weekly(payload.weeks)
    else:
        anchor_day = payload.anchor_day or payload.template.date.day
        rule = RecurrenceRule.monthly(payload.months or 1, anchor_day)
    if not rule.is_valid():
        raise HTTPException(status_code=400, detail="Invalid recurrence interval")
    return rule


def serialize_transaction(txn: Transaction, index: Optional[int] = None) -> dict:
    return {
        "index": index,
        "date": txn.date.isoformat(),
        "amount": format_amount(txn.amount),
        "category_id": txn.category_id,
        "payment_method_id": txn.payment_method_id,
        "note": txn.note,
        "series_id": txn.series_id or None,
        "preview": txn.is_preview,
    }


def serialize_result(result: AggregationResult) -> dict:
    return {
        "per_month": {
            month: [agg.as_dict() for agg in aggregates]
            for month, aggregates in result.per_month.items()
        },
        "totals": [agg.as_dict() for agg in result.totals],
        "grand_total": result.grand_total.as_dict(),
        "warnings": [
            {
                "reason": warning.reason,
                "category_id": warning.category_id,
                "month": warning.month,
            }
            for warning in result.warnings
        ],
    }


def anchor_from_request(request: Request) -> Optional[date]:
    raw = request.query_params.get("anchor")
    if not raw:
        return None
    try:
        return date.fromisoformat(raw)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc


@app.get("/api/months")
def api_months(ledger: Ledger = Depends(get_ledger)):
    return {
        "months": ledger.all_months(),
        "shards": {
            str(shard_id): ledger.index.months_in(shard_id)
            for shard_id in ledger.index.shard_ids()
        },
    }


@app.get("/api/months/{month}/transactions")
def api_month_transactions(
    month: str, request: Request, ledger: Ledger = Depends(get_ledger)
):
    include_previews = request.query_params.get("previews", "1") != "0"
    try:
        items = ledger.transactions_for(month, include_previews=include_previews)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    # Previews have no stored position.
    stored = iter(range(len(ledger.data.get(month, []))))
    return {
        "month": month,
        "has_actual_data": ledger.has_actual_data(month),
        "items": [
            serialize_transaction(txn, None if txn.is_preview else next(stored))
            for txn in items
        ],
    }


@app.post("/api/transactions")
def api_create_transaction(payload: TransactionIn, ledger: Ledger = Depends(get_ledger)):
    months = ledger.add(transaction_from_payload(payload, ledger))
    return {"months": months}


@app.post("/api/transactions/{month}/{index}")
def api_replace_transaction(
    month: str, index: int, payload: TransactionIn, ledger: Ledger = Depends(get_ledger)
):
    try:
        previous = ledger.replace(
            month, index, transaction_from_payload(payload, ledger)
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IndexError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"replaced": serialize_transaction(previous)}


@app.post("/api/transactions/{month}/{index}/delete")
def api_delete_transaction(month: str, index: int, ledger: Ledger = Depends(get_ledger)):
    try:
        removed = ledger.remove(month, index)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IndexError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"removed": [serialize_transaction(txn) for txn in removed]}


@app.post("/api/transactions/{month}/{index}/recurring")
def api_make_recurring(
    month: str, index: int, payload: RecurringSeriesIn, ledger: Ledger = Depends(get_ledger)
):
    rule = rule_from_payload(payload)
    try:
        series_id = ledger.make_recurring(month, index, rule)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    except IndexError as exc:
        raise HTTPException(status_code=404, detail=str(exc)) from exc
    return {"series_id": series_id}


@app.get("/api/recurring")
def api_recurring(ledger: Ledger = Depends(get_ledger)):
    return {
        "items": [
            {
                "id": series.id,
                "interval": series.rule.short_label(),
                "last_execution": series.last_execution_date.isoformat(),
                "template": serialize_transaction(series.template),
            }
            for series in ledger.registry
        ]
    }


@app.post("/api/recurring")
def api_create_recurring(payload: RecurringSeriesIn, ledger: Ledger = Depends(get_ledger)):
    rule = rule_from_payload(payload)
    template = transaction_from_payload(payload.template, ledger)
    series_id = ledger.set_recurring(None, template, rule)
    return {"series_id": series_id}


@app.post("/api/recurring/process")
def api_process_recurring(ledger: Ledger = Depends(get_ledger)):
    previews = ledger.process_recurring()
    return {"previews": [serialize_transaction(txn) for txn in previews]}


@app.post("/api/recurring/{series_id}")
def api_update_recurring(
    series_id: str, payload: RecurringSeriesIn, ledger: Ledger = Depends(get_ledger)
):
    if series_id not in ledger.registry:
        raise HTTPException(status_code=404, detail="Recurring series not found")
    rule = rule_from_payload(payload)
    template = transaction_from_payload(payload.template, ledger)
    ledger.set_recurring(series_id, template, rule)
    return {"series_id": series_id}


@app.post("/api/recurring/{series_id}/delete")
def api_delete_recurring(series_id: str, ledger: Ledger = Depends(get_ledger)):
    if not ledger.remove_recurring(series_id):
        raise HTTPException(status_code=404, detail="Recurring series not found")
    return {"removed": series_id}


@app.get("/api/categories")
def api_categories(ledger: Ledger = Depends(get_ledger)):
    document = ledger.directory.to_document()
    return document.model_dump(by_alias=True, exclude_none=True)


@app.put("/api/categories")
def api_replace_categories(
    payload: CategoriesDocument, ledger: Ledger = Depends(get_ledger)
):
    try:
        directory = CategoryDirectory.from_document(payload)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ledger.set_categories(directory)
    return {"masters": [node.id for node in directory.masters_in_order()]}


@app.get("/api/timerange")
def api_timerange(request: Request, ledger: Ledger = Depends(get_ledger)):
    mode = request.query_params.get("mode")
    try:
        timerange = ledger.timerange(mode, anchor_from_request(request))
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return {
        "mode": timerange.mode,
        "anchor": timerange.anchor.isoformat(),
        "months": list(timerange.months),
        "previous": adjacent_anchor(timerange, -1).isoformat(),
        "next": adjacent_anchor(timerange, 1).isoformat(),
        "average_months": months_for_average(timerange.months, ledger.clock()),
    }


@app.post("/api/statistics")
def api_statistics(query: StatisticsQuery, ledger: Ledger = Depends(get_ledger)):
    try:
        result = ledger.statistics(
            filter_from_payload(query.filter, ledger),
            query.months,
            query.sort_key,
            include_previews=query.include_previews,
        )
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    return serialize_result(result)


def serialize_payment_methods(payment_methods: PaymentMethodDirectory) -> dict:
    return {
        "default": payment_methods.default_id,
        "items": [
            {
                "id": method.id,
                "label": method.label,
                "icon": method.icon,
                "color": method.color,
                "active": payment_methods.is_active(method.id),
            }
            for method in payment_methods.ordered(include_disabled=True)
        ],
    }


@app.get("/api/payment-methods")
def api_payment_methods(ledger: Ledger = Depends(get_ledger)):
    return serialize_payment_methods(ledger.payment_methods)


@app.put("/api/payment-methods")
def api_replace_payment_methods(
    payload: PaymentMethodsDocument, ledger: Ledger = Depends(get_ledger)
):
    ledger.set_payment_methods(PaymentMethodDirectory.from_document(payload))
    return serialize_payment_methods(ledger.payment_methods)


@app.post("/api/payment-methods/{method_id}/disable")
def api_disable_payment_method(method_id: str, ledger: Ledger = Depends(get_ledger)):
    if method_id not in ledger.payment_methods:
        raise HTTPException(status_code=404, detail="Payment method not found")
    if not ledger.payment_methods.disable(method_id):
        raise HTTPException(status_code=400, detail="Payment method cannot be disabled")
    ledger.save_payment_methods()
    return serialize_payment_methods(ledger.payment_methods)


@app.post("/api/payment-methods/{method_id}/enable")
def api_enable_payment_method(method_id: str, ledger: Ledger = Depends(get_ledger)):
    if method_id not in ledger.payment_methods:
        raise HTTPException(status_code=404, detail="Payment method not found")
    ledger.payment_methods.enable(method_id)
    ledger.save_payment_methods()
    return serialize_payment_methods(ledger.payment_methods)


@app.post("/api/payment-methods/{method_id}/default")
def api_default_payment_method(method_id: str, ledger: Ledger = Depends(get_ledger)):
    if method_id not in ledger.payment_methods:
        raise HTTPException(status_code=404, detail="Payment method not found")
    try:
        ledger.payment_methods.set_default(method_id)
    except ValueError as exc:
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    ledger.save_payment_methods()
    return serialize_payment_methods(ledger.payment_methods)
