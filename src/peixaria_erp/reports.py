"""Read-only reports derived from the ledger collections.

Nothing here writes to the workbook. Balances are recomputed from the cash
journal on every call; debts come from each client's stored balance.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass
from datetime import UTC, date, datetime
from decimal import Decimal
from typing import Dict, List, Optional, Union

from . import core_logic, data_manager, log
from .constants import DEBT_TOLERANCE, MovementType, PaymentMethod, SaleStatus


DateLike = Union[date, datetime, str]


@dataclass(frozen=True)
class CashFlowDay:
    """Entries and exits booked on one calendar day."""

    day: date
    entrada: Decimal
    saida: Decimal

    @property
    def net(self) -> Decimal:
        return self.entrada - self.saida


@dataclass(frozen=True)
class IncomeStatementLine:
    """Accrual-basis result for one month (``YYYY-MM``)."""

    month: str
    revenue: Decimal
    cogs: Decimal
    expenses: Decimal

    @property
    def profit(self) -> Decimal:
        return self.revenue - self.cogs - self.expenses


@dataclass(frozen=True)
class OpenDebtItem:
    """Share of a client's debt attributed to one rotativo sale.

    ``sale_id`` is ``None`` for the prior balance no recorded sale explains.
    """

    sale_id: Optional[int]
    timestamp_iso: Optional[str]
    total: Decimal
    open_amount: Decimal


@dataclass(frozen=True)
class DebtorSummary:
    client: data_manager.ClientRow
    items: tuple[OpenDebtItem, ...]


@dataclass(frozen=True)
class SupplierPurchases:
    supplier_id: Optional[int]
    supplier_name: str
    entries: tuple[data_manager.StockEntryRow, ...]
    total: Decimal


def parse_moment(value: Optional[str]) -> Optional[datetime]:
    """Parse an ISO-8601 string, returning ``None`` for blank or invalid text."""

    if not value:
        return None
    try:
        return datetime.fromisoformat(value)
    except ValueError:
        log.warning("Ignoring unparsable timestamp '%s'", value)
        return None


def calendar_day(value: Union[DateLike, None]) -> Optional[date]:
    """Reduce a timestamp to its calendar day.

    Timezone-aware values are converted to UTC first so rows written with
    and without an offset land on comparable days.
    """

    if value is None:
        return None
    if isinstance(value, str):
        value = parse_moment(value)
        if value is None:
            return None
    if hasattr(value, "hour"):
        if value.tzinfo is not None:
            value = value.astimezone(UTC)
        return value.date()
    return value


def _within(day: Optional[date], start: Optional[date], end: Optional[date]) -> bool:
    if day is None:
        return False
    if start is not None and day < start:
        return False
    if end is not None and day > end:
        return False
    return True


def calculate_cash_balance(context: core_logic.RuntimeContext, *, until: Optional[DateLike] = None) -> Decimal:
    """Return ENTRADA minus SAIDA over the journal.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        until (date | datetime | str | None): Inclusive last day to count.
            Every movement is counted when omitted.

    Returns:
        Decimal: Cash on hand according to the journal.
    """
    last_day = calendar_day(until)
    balance = Decimal("0")
    for movement in core_logic.list_movements(context):
        if last_day is not None and not _within(calendar_day(movement.timestamp_iso), None, last_day):
            continue
        if movement.movement_type == MovementType.ENTRADA.value:
            balance += movement.amount
        elif movement.movement_type == MovementType.SAIDA.value:
            balance -= movement.amount
        else:
            log.warning("Movement '%s' has unknown type '%s'", movement.movement_id, movement.movement_type)
    log.debug("Calculated cash balance %s (until=%s)", balance, last_day)
    return balance


def summarize_cash_flow(
    context: core_logic.RuntimeContext,
    *,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
) -> List[CashFlowDay]:
    """Group journal movements by day within an inclusive range.

    Returns:
        list[CashFlowDay]: One entry per day holding movements, oldest first.
    """
    first_day, last_day = calendar_day(start), calendar_day(end)
    totals: Dict[date, Dict[str, Decimal]] = {}
    for movement in core_logic.list_movements(context):
        day = calendar_day(movement.timestamp_iso)
        if not _within(day, first_day, last_day):
            continue
        bucket = totals.setdefault(day, {"entrada": Decimal("0"), "saida": Decimal("0")})
        if movement.movement_type == MovementType.ENTRADA.value:
            bucket["entrada"] += movement.amount
        elif movement.movement_type == MovementType.SAIDA.value:
            bucket["saida"] += movement.amount
    return [
        CashFlowDay(day=day, entrada=values["entrada"], saida=values["saida"])
        for day, values in sorted(totals.items())
    ]


def _month_key(value: Optional[str]) -> Optional[str]:
    day = calendar_day(value)
    return day.strftime("%Y-%m") if day is not None else None


def calculate_income_statement(context: core_logic.RuntimeContext) -> List[IncomeStatementLine]:
    """Build the monthly income statement (DRE).

    Revenue is the total of completed sales in the month they were made.
    Cost of goods sold uses the ``applied_cost`` captured on each line, so
    later stock entries do not rewrite past margins. Expenses count in their
    competence month whether or not they were paid. Cancelled sales and
    sales that only reinstate a bounced check are left out.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.

    Returns:
        list[IncomeStatementLine]: One line per month with activity, oldest
            first.
    """
    months: Dict[str, Dict[str, Decimal]] = {}

    def bucket(month: str) -> Dict[str, Decimal]:
        return months.setdefault(
            month,
            {"revenue": Decimal("0"), "cogs": Decimal("0"), "expenses": Decimal("0")},
        )

    for sale in core_logic.list_sales(context):
        if sale.status != SaleStatus.CONCLUIDA.value:
            continue
        month = _month_key(sale.timestamp_iso)
        if month is None:
            continue
        values = bucket(month)
        values["revenue"] += sale.total
        values["cogs"] += sum((item.applied_cost * item.quantity for item in sale.items), Decimal("0"))

    for expense in core_logic.list_expenses(context):
        month = _month_key(expense.competence_date)
        if month is None:
            continue
        bucket(month)["expenses"] += expense.amount

    statement = [
        IncomeStatementLine(
            month=month,
            revenue=values["revenue"],
            cogs=values["cogs"],
            expenses=values["expenses"],
        )
        for month, values in sorted(months.items())
    ]
    log.debug("Calculated income statement covering %d months", len(statement))
    return statement


def calculate_outstanding_debts(
    context: core_logic.RuntimeContext, *, name_filter: Optional[str] = None
) -> List[DebtorSummary]:
    """Explain each open client balance by the rotativo sales behind it.

    Only clients owing more than ``DEBT_TOLERANCE`` are listed. The stored
    balance is spread over the client's non-cancelled rotativo sales from the
    newest backwards, each sale absorbing at most its own total. Whatever is
    left after the oldest sale is reported as a prior balance item.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        name_filter (str | None): Case-insensitive substring the client name
            must contain.

    Returns:
        list[DebtorSummary]: Debtors in client order. Each summary lists its
            items oldest first, the prior balance (if any) leading.
    """
    sales_by_client: Dict[Optional[int], List[data_manager.SaleRow]] = {}
    for sale in core_logic.list_sales(context):
        if sale.payment_method != PaymentMethod.ROTATIVO.value:
            continue
        if sale.status == SaleStatus.CANCELADA.value:
            continue
        sales_by_client.setdefault(sale.client_id, []).append(sale)

    needle = name_filter.lower() if name_filter else None
    debtors = []
    for client in core_logic.list_clients(context):
        if client.current_debt <= DEBT_TOLERANCE:
            continue
        if needle and needle not in client.name.lower():
            continue

        remaining = client.current_debt
        items: List[OpenDebtItem] = []
        history = sorted(
            sales_by_client.get(client.client_id, []),
            key=lambda sale: sale.timestamp_iso,
            reverse=True,
        )
        for sale in history:
            if remaining <= DEBT_TOLERANCE:
                break
            open_amount = min(remaining, sale.total)
            items.append(
                OpenDebtItem(
                    sale_id=sale.sale_id,
                    timestamp_iso=sale.timestamp_iso,
                    total=sale.total,
                    open_amount=open_amount,
                )
            )
            remaining -= open_amount
        if remaining > DEBT_TOLERANCE:
            items.append(OpenDebtItem(sale_id=None, timestamp_iso=None, total=remaining, open_amount=remaining))
        items.reverse()
        debtors.append(DebtorSummary(client=client, items=tuple(items)))

    log.debug("Found %d clients with open balances", len(debtors))
    return debtors


def calculate_purchases(
    context: core_logic.RuntimeContext,
    *,
    start: Optional[DateLike] = None,
    end: Optional[DateLike] = None,
    supplier_id: Optional[int] = None,
) -> List[SupplierPurchases]:
    """Group stock entries received within an inclusive date range by supplier.

    An entry's cost is ``quantity * final_unit_cost``, so freight, tolls and
    food are included. Entries with no supplier form their own group.

    Returns:
        list[SupplierPurchases]: Groups in order of first appearance, entries
            oldest first inside each group.
    """
    first_day, last_day = calendar_day(start), calendar_day(end)
    suppliers = {supplier.supplier_id: supplier.name for supplier in core_logic.list_suppliers(context)}

    grouped: "OrderedDict[Optional[int], List[data_manager.StockEntryRow]]" = OrderedDict()
    for entry in core_logic.list_stock_entries(context):
        if supplier_id is not None and entry.supplier_id != supplier_id:
            continue
        if not _within(calendar_day(entry.timestamp_iso), first_day, last_day):
            continue
        grouped.setdefault(entry.supplier_id, []).append(entry)

    report = []
    for group_id, entries in grouped.items():
        entries.sort(key=lambda entry: entry.timestamp_iso)
        report.append(
            SupplierPurchases(
                supplier_id=group_id,
                supplier_name=suppliers.get(group_id, "Sem fornecedor" if group_id is None else f"#{group_id}"),
                entries=tuple(entries),
                total=sum((entry.quantity * entry.final_unit_cost for entry in entries), Decimal("0")),
            )
        )
    return report
