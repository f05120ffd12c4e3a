"""Business logic layer for Peixaria ERP.

This module is the ledger and settlement engine. Every domain event (sale,
cancellation, check status change, rotativo payment, stock entry, expense
payment) passes through here and updates the affected collections together:
product stock and average cost, client debt, check lifecycle state and the
append-only cash journal. All I/O goes through the data access layer.

Each mutator performs its lookups and validations before the first write,
so a rejected operation leaves the workbook untouched. Changes live in the
in-memory workbook until :func:`persist_context` saves them.
"""

from __future__ import annotations

from collections import OrderedDict
from dataclasses import dataclass, field, replace
from datetime import UTC, datetime
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Dict, Iterable, List, Optional, Sequence, Union

from openpyxl.workbook import Workbook

from . import data_manager, log
from .constants import (
    COST_QUANTUM,
    EXPECTED_SCHEMA_VERSION,
    EXPENSE_PAYMENT_METHOD,
    MONEY_QUANTUM,
    CheckStatus,
    ExpenseStatus,
    MovementCategory,
    MovementType,
    PaymentMethod,
    SaleStatus,
    SheetName,
)
from .setup_excel import create_master_workbook


class BusinessRuleViolation(Exception):
    """Raised when a requested operation violates a domain constraint."""


class MissingReferenceError(BusinessRuleViolation):
    """Raised when a referenced client, product, sale or check is unknown."""


@dataclass(frozen=True)
class RuntimeContext:
    """Container for configuration and workbook references used by the BLL."""

    settings: data_manager.ConfigSettings
    workbook: Workbook
    _cache: Dict[str, Dict[str, Any]] = field(default_factory=dict, repr=False, compare=False)


@dataclass(frozen=True)
class StockEntryCommand:
    """User intent for receiving goods into stock."""

    product_id: int
    quantity: Decimal
    cost_product: Decimal
    supplier_id: Optional[int] = None
    cost_freight: Decimal = Decimal("0")
    cost_tolls: Decimal = Decimal("0")
    cost_food: Decimal = Decimal("0")
    due_date: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class SaleItemCommand:
    """One requested sale line.

    ``product_id`` is ``None`` only for synthetic lines that do not move
    stock. ``applied_cost`` defaults to the product's average cost.
    """

    product_id: Optional[int]
    quantity: Decimal
    unit_price: Decimal
    product_name: Optional[str] = None
    applied_cost: Optional[Decimal] = None


@dataclass(frozen=True)
class SaleCommand:
    """User intent for creating a sale."""

    client_id: int
    payment_method: PaymentMethod
    items: Sequence[SaleItemCommand]
    total: Optional[Decimal] = None
    due_date: Optional[str] = None
    status: Optional[SaleStatus] = None
    client_name: Optional[str] = None
    timestamp: Optional[datetime] = None


@dataclass(frozen=True)
class RotativoPaymentCommand:
    """User intent for settling part of a client's open account."""

    client_id: int
    amount: Decimal
    payment_method: PaymentMethod
    check_bank: Optional[str] = None
    check_number: Optional[str] = None
    check_due_date: Optional[str] = None
    timestamp: Optional[datetime] = None


ID_FIELDS: Dict[str, str] = {
    SheetName.CLIENTS.value: "client_id",
    SheetName.PRODUCTS.value: "product_id",
    SheetName.SUPPLIERS.value: "supplier_id",
    SheetName.STOCK_ENTRIES.value: "entry_id",
    SheetName.SALES.value: "sale_id",
    SheetName.CHECKS.value: "check_id",
    SheetName.MOVEMENTS.value: "movement_id",
    SheetName.EXPENSES.value: "expense_id",
    SheetName.EXPENSE_CATEGORIES.value: "category_id",
}

WALK_IN_CASH_METHODS = (PaymentMethod.DINHEIRO, PaymentMethod.PIX)


def _resolve_timestamp(candidate: Optional[datetime]) -> datetime:
    """Return ``candidate`` or the current UTC time when it is ``None``."""

    return candidate if candidate is not None else datetime.now(UTC)


def _get_cache_bucket(context: RuntimeContext, name: str) -> Dict[str, Any]:
    """Return (creating if needed) the cache bucket for collection ``name``."""

    bucket = context._cache.get(name)
    if bucket is None:
        log.debug("Initializing cache bucket '%s'", name)
        bucket = {}
        context._cache[name] = bucket
    return bucket


def _invalidate_cache(context: RuntimeContext, *names: str) -> None:
    """Evict cache buckets after a write so later reads see the new rows."""

    if not names:
        return

    log.debug("Invalidating cache buckets: %s", ", ".join(names))

    for name in names:
        context._cache.pop(name, None)


def _ensure_cache(context: RuntimeContext, sheet_name: str) -> Dict[str, Any]:
    """Populate the bucket for ``sheet_name`` with ``all`` and ``by_id`` views.

    Args:
        context (RuntimeContext): Runtime state used to access the workbook and
            shared caches.
        sheet_name (str): Collection to load.

    Returns:
        dict[str, Any]: Bucket holding the records in sheet order and a
            lookup dictionary keyed by record id.
    """

    bucket = _get_cache_bucket(context, sheet_name)
    if "all" not in bucket:
        records = list(data_manager.iter_records(context.workbook, sheet_name))
        id_field = ID_FIELDS[sheet_name]
        bucket["all"] = records
        bucket["by_id"] = {getattr(record, id_field): record for record in records}
        log.debug("Populated '%s' cache with %d entries", sheet_name, len(records))
    return bucket


def load_runtime_context(config_path: Optional[Path] = None, *, create_missing: bool = False) -> RuntimeContext:
    """Load configuration settings and a live workbook for the BLL.

    Args:
        config_path (Path | None): Optional override path for the configuration
            file. When omitted the data layer searches upward from the current
            working directory.
        create_missing (bool): Create and seed the workbook when the configured
            data file does not exist yet.

    Returns:
        RuntimeContext: Context bundling settings, workbook and an empty cache.

    Raises:
        FileNotFoundError: If the configuration file or workbook cannot be
            located.
        KeyError: When mandatory configuration options are missing.
    """
    located_config = data_manager.find_config_file(config_path)
    resolved_config = Path(located_config).expanduser().resolve()
    parser = data_manager.read_config(resolved_config)
    settings = data_manager.parse_settings(parser, base_path=resolved_config.parent)
    if create_missing and not settings.data_file.exists():
        create_master_workbook(settings.data_file)
    workbook = data_manager.open_workbook(settings.data_file)
    log.info("Loaded runtime context for workbook '%s'", settings.data_file)
    return RuntimeContext(settings=settings, workbook=workbook)


def ensure_schema_version(context: RuntimeContext) -> None:
    """Validate workbook compatibility before mutating state.

    Raises:
        RuntimeError: If the schema version declared in the configuration does
            not match ``EXPECTED_SCHEMA_VERSION``.
    """
    if context.settings.schema_version != EXPECTED_SCHEMA_VERSION:
        log.error(
            "Workbook schema mismatch: expected %s, found %s",
            EXPECTED_SCHEMA_VERSION,
            context.settings.schema_version,
        )
        raise RuntimeError(
            "Workbook schema mismatch: expected %s, found %s"
            % (EXPECTED_SCHEMA_VERSION, context.settings.schema_version)
        )

    log.debug("Schema version '%s' validated", context.settings.schema_version)


def _list(context: RuntimeContext, sheet_name: str) -> List[Any]:
    return list(_ensure_cache(context, sheet_name)["all"])


def list_clients(context: RuntimeContext, *, include_inactive: bool = True) -> List[data_manager.ClientRow]:
    """Return clients in sheet order, optionally hiding inactive ones."""
    clients = _list(context, SheetName.CLIENTS.value)
    if include_inactive:
        return clients
    return [client for client in clients if client.is_active]


def list_products(context: RuntimeContext) -> List[data_manager.ProductRow]:
    """Return products in sheet order."""
    return _list(context, SheetName.PRODUCTS.value)


def list_suppliers(context: RuntimeContext) -> List[data_manager.SupplierRow]:
    """Return suppliers in sheet order."""
    return _list(context, SheetName.SUPPLIERS.value)


def list_stock_entries(context: RuntimeContext) -> List[data_manager.StockEntryRow]:
    """Return stock entries in append order."""
    return _list(context, SheetName.STOCK_ENTRIES.value)


def list_sales(context: RuntimeContext) -> List[data_manager.SaleRow]:
    """Return sales, synthetic bounced-check sales included, in append order."""
    return _list(context, SheetName.SALES.value)


def list_checks(context: RuntimeContext) -> List[data_manager.CheckRow]:
    """Return checks in sheet order; see :func:`sort_checks_for_display` for the UI order."""
    return _list(context, SheetName.CHECKS.value)


def list_movements(context: RuntimeContext) -> List[data_manager.MovementRow]:
    """Return the cash journal in append order."""
    return _list(context, SheetName.MOVEMENTS.value)


def list_expenses(context: RuntimeContext) -> List[data_manager.ExpenseRow]:
    """Return expenses in sheet order."""
    return _list(context, SheetName.EXPENSES.value)


def list_expense_categories(context: RuntimeContext) -> List[data_manager.ExpenseCategoryRow]:
    """Return the expense category names in sheet order."""
    return _list(context, SheetName.EXPENSE_CATEGORIES.value)


def _get(context: RuntimeContext, sheet_name: str, record_id: Optional[int], label: str) -> Any:
    cache = _ensure_cache(context, sheet_name)
    try:
        return cache["by_id"][record_id]
    except KeyError as exc:
        log.warning("%s lookup failed for id '%s'", label.capitalize(), record_id)
        raise MissingReferenceError(f"Unknown {label} id: {record_id}") from exc


def get_client(context: RuntimeContext, client_id: int) -> data_manager.ClientRow:
    """Resolve a client by id.

    Raises:
        MissingReferenceError: If ``client_id`` is absent from the workbook.
    """
    return _get(context, SheetName.CLIENTS.value, client_id, "client")


def get_product(context: RuntimeContext, product_id: int) -> data_manager.ProductRow:
    """Resolve a product by id.

    Raises:
        MissingReferenceError: If ``product_id`` is absent from the workbook.
    """
    return _get(context, SheetName.PRODUCTS.value, product_id, "product")


def get_supplier(context: RuntimeContext, supplier_id: int) -> data_manager.SupplierRow:
    """Resolve a supplier by id, raising ``MissingReferenceError`` when absent."""
    return _get(context, SheetName.SUPPLIERS.value, supplier_id, "supplier")


def get_sale(context: RuntimeContext, sale_id: int) -> data_manager.SaleRow:
    """Resolve a sale by id, raising ``MissingReferenceError`` when absent."""
    return _get(context, SheetName.SALES.value, sale_id, "sale")


def get_check(context: RuntimeContext, check_id: int) -> data_manager.CheckRow:
    """Resolve a check by id, raising ``MissingReferenceError`` when absent."""
    return _get(context, SheetName.CHECKS.value, check_id, "check")


def get_expense(context: RuntimeContext, expense_id: int) -> data_manager.ExpenseRow:
    """Resolve an expense by id, raising ``MissingReferenceError`` when absent."""
    return _get(context, SheetName.EXPENSES.value, expense_id, "expense")


def _find(context: RuntimeContext, sheet_name: str, record_id: Optional[int]) -> Optional[Any]:
    if record_id is None:
        return None
    return _ensure_cache(context, sheet_name)["by_id"].get(record_id)


def require_decimal(value: object, field_name: str) -> Decimal:
    """Convert caller input into a finite :class:`~decimal.Decimal`.

    Args:
        value (object): Number, numeric string or Decimal supplied by a caller.
        field_name (str): Name used in the error message.

    Returns:
        Decimal: The parsed value.

    Raises:
        ValueError: If ``value`` is missing, boolean, non-numeric, NaN or
            infinite. Malformed numbers are rejected here instead of being
            silently replaced by zero.
    """
    if value is None or isinstance(value, bool):
        log.error("Numeric validation failed for %s: %r", field_name, value)
        raise ValueError(f"{field_name} is required and must be numeric")
    try:
        parsed = value if isinstance(value, Decimal) else Decimal(str(value).strip())
    except (InvalidOperation, ValueError) as exc:
        log.error("Numeric validation failed for %s: %r", field_name, value)
        raise ValueError(f"{field_name} must be numeric, got {value!r}") from exc
    if not parsed.is_finite():
        log.error("Numeric validation failed for %s: %r", field_name, value)
        raise ValueError(f"{field_name} must be a finite number")
    return parsed


def require_positive_quantity(quantity: Decimal) -> None:
    """Validate that a quantity is strictly positive.

    Raises:
        ValueError: If ``quantity`` is zero or negative.
    """
    if quantity <= Decimal("0"):
        log.error("Quantity validation failed: %s", quantity)
        raise ValueError("Quantity must be greater than zero")


def require_nonnegative_money(amount: Decimal) -> None:
    """Validate that a monetary value is nonnegative.

    Raises:
        ValueError: If ``amount`` is less than zero.
    """
    if amount < Decimal("0"):
        log.error("Monetary value validation failed: %s", amount)
        raise ValueError("Amount must be zero or positive")


def to_money(amount: Decimal) -> Decimal:
    """Round ``amount`` to cents, half up."""
    return amount.quantize(MONEY_QUANTUM, rounding=ROUND_HALF_UP)


def to_unit_cost(amount: Decimal) -> Decimal:
    """Round a unit cost to ``COST_QUANTUM``, half up."""
    return amount.quantize(COST_QUANTUM, rounding=ROUND_HALF_UP)


def normalize_date(value: object, field_name: str) -> Optional[str]:
    """Return ``value`` as an ISO-8601 string, or ``None`` when blank.

    Accepts ``date``/``datetime`` objects and ISO strings (date-only or full
    timestamps).

    Raises:
        ValueError: If a string is not a valid ISO-8601 date.
    """
    if value is None or value == "":
        return None
    if hasattr(value, "isoformat"):
        return value.isoformat()
    text = str(value).strip()
    try:
        datetime.fromisoformat(text)
    except ValueError as exc:
        log.error("Date validation failed for %s: %r", field_name, value)
        raise ValueError(f"{field_name} must be an ISO-8601 date, got {value!r}") from exc
    return text


def require_text(value: Optional[str], field_name: str) -> str:
    """Validate that a text field is present and not blank.

    Raises:
        ValueError: If ``value`` is ``None`` or only whitespace.
    """
    if value is None or not str(value).strip():
        log.error("Text validation failed: %s is blank", field_name)
        raise ValueError(f"{field_name} must not be blank")
    return str(value).strip()


def generate_record_id(context: RuntimeContext, sheet_name: str, *, when: Optional[datetime] = None) -> int:
    """Allocate a new identifier for ``sheet_name``.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        sheet_name (str): Collection that will receive the record.
        when (datetime | None): Timestamp the identifier is derived from.
            Defaults to the current UTC time.

    Returns:
        int: Epoch milliseconds of ``when``, bumped above the largest id
            already stored on the sheet so identifiers stay unique and
            increasing even when two records share the same millisecond.
    """
    when = when or _resolve_timestamp(None)
    candidate = int(when.timestamp() * 1000)
    floor = data_manager.max_record_id(context.workbook, sheet_name) + 1
    return max(candidate, floor)


def _insert_or_replace(context: RuntimeContext, sheet_name: str, record: Any, *, exists: bool) -> None:
    record_id = getattr(record, ID_FIELDS[sheet_name])
    if exists:
        data_manager.replace_record(context.workbook, sheet_name, record_id, record)
    else:
        data_manager.append_record(context.workbook, sheet_name, record)
    _invalidate_cache(context, sheet_name)


def save_client(context: RuntimeContext, client: data_manager.ClientRow) -> data_manager.ClientRow:
    """Insert a new client or replace an existing one.

    A client whose id is ``None`` or unknown is inserted with a freshly
    generated id; its ``current_debt`` becomes the opening balance. Updating
    an existing client never changes ``current_debt``: debt only moves
    through :func:`update_client_debt`.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        client (data_manager.ClientRow): Record to store.

    Returns:
        data_manager.ClientRow: The record as written to the workbook.

    Raises:
        ValueError: If the name is blank or a numeric field is malformed.
    """
    name = require_text(client.name, "Client name")
    credit_limit = to_money(require_decimal(client.credit_limit, "Credit limit"))
    require_nonnegative_money(credit_limit)
    opening_debt = to_money(require_decimal(client.current_debt, "Current debt"))

    existing = _find(context, SheetName.CLIENTS.value, client.client_id)
    if existing is not None:
        if opening_debt != existing.current_debt:
            log.warning(
                "Ignoring debt change on client '%s'; debt moves only through the ledger",
                existing.client_id,
            )
        record = replace(
            client,
            name=name,
            credit_limit=credit_limit,
            current_debt=existing.current_debt,
        )
    else:
        record = replace(
            client,
            client_id=generate_record_id(context, SheetName.CLIENTS.value),
            name=name,
            credit_limit=credit_limit,
            current_debt=opening_debt,
        )

    _insert_or_replace(context, SheetName.CLIENTS.value, record, exists=existing is not None)
    log.info("Saved client '%s' (%s)", record.client_id, record.name)
    return record


def save_product(context: RuntimeContext, product: data_manager.ProductRow) -> data_manager.ProductRow:
    """Insert a new product or replace an existing one.

    New products may carry an opening stock and cost. On update only the
    description, unit and sell price change: stock moves through stock
    entries and sales, and the average cost only through stock entries.

    Raises:
        ValueError: If the description is blank or a numeric field is
            malformed.
    """
    description = require_text(product.description, "Product description")
    sell_price = to_money(require_decimal(product.sell_price, "Sell price"))
    require_nonnegative_money(sell_price)
    opening_stock = require_decimal(product.current_stock, "Current stock")
    opening_cost = to_unit_cost(require_decimal(product.average_cost, "Average cost"))
    require_nonnegative_money(opening_cost)

    existing = _find(context, SheetName.PRODUCTS.value, product.product_id)
    if existing is not None:
        record = replace(
            product,
            description=description,
            sell_price=sell_price,
            current_stock=existing.current_stock,
            average_cost=existing.average_cost,
        )
    else:
        record = replace(
            product,
            product_id=generate_record_id(context, SheetName.PRODUCTS.value),
            description=description,
            sell_price=sell_price,
            current_stock=opening_stock,
            average_cost=opening_cost,
        )

    _insert_or_replace(context, SheetName.PRODUCTS.value, record, exists=existing is not None)
    log.info("Saved product '%s' (%s)", record.product_id, record.description)
    return record


def save_supplier(context: RuntimeContext, supplier: data_manager.SupplierRow) -> data_manager.SupplierRow:
    """Insert or replace a supplier."""
    name = require_text(supplier.name, "Supplier name")
    existing = _find(context, SheetName.SUPPLIERS.value, supplier.supplier_id)
    record = replace(supplier, name=name)
    if existing is None:
        record = replace(record, supplier_id=generate_record_id(context, SheetName.SUPPLIERS.value))
    _insert_or_replace(context, SheetName.SUPPLIERS.value, record, exists=existing is not None)
    log.info("Saved supplier '%s' (%s)", record.supplier_id, record.name)
    return record


def save_expense_category(
    context: RuntimeContext, category: data_manager.ExpenseCategoryRow
) -> data_manager.ExpenseCategoryRow:
    """Insert or rename an expense category.

    Expenses keep the category name they were saved with, so a rename does
    not touch existing expenses.
    """
    name = require_text(category.name, "Category name")
    existing = _find(context, SheetName.EXPENSE_CATEGORIES.value, category.category_id)
    record = replace(category, name=name)
    if existing is None:
        record = replace(record, category_id=generate_record_id(context, SheetName.EXPENSE_CATEGORIES.value))
    _insert_or_replace(context, SheetName.EXPENSE_CATEGORIES.value, record, exists=existing is not None)
    log.info("Saved expense category '%s' (%s)", record.category_id, record.name)
    return record


def add_movement(
    context: RuntimeContext,
    *,
    movement_type: MovementType,
    amount: Decimal,
    category: str,
    description: str,
    payment_method: str,
    timestamp: Optional[Union[datetime, str]] = None,
) -> data_manager.MovementRow:
    """Append one movement to the cash journal.

    The journal is append-only: no function in this package edits or
    removes a movement once written.

    Args:
        context (RuntimeContext): Runtime context providing workbook access.
        movement_type (MovementType): ``ENTRADA`` or ``SAIDA``.
        amount (Decimal): Nonnegative amount, rounded to cents.
        category (str): Free-text label such as ``"Venda à Vista"``.
        description (str): Human-readable trace to the originating event.
        payment_method (str): Method label recorded with the movement.
        timestamp (datetime | str | None): When the money moved. Strings are
            kept as given so a check can be back-dated to its clearing date.

    Returns:
        data_manager.MovementRow: The appended movement.
    """
    movement_type = MovementType(movement_type)
    value = to_money(require_decimal(amount, "Movement amount"))
    require_nonnegative_money(value)
    if isinstance(timestamp, str):
        when = _resolve_timestamp(None)
        timestamp_iso = normalize_date(timestamp, "Movement date") or when.isoformat()
    else:
        when = _resolve_timestamp(timestamp)
        timestamp_iso = when.isoformat()

    movement = data_manager.MovementRow(
        movement_id=generate_record_id(context, SheetName.MOVEMENTS.value, when=when),
        timestamp_iso=timestamp_iso,
        movement_type=movement_type.value,
        amount=value,
        category=category,
        description=description,
        payment_method=str(payment_method.value if isinstance(payment_method, PaymentMethod) else payment_method),
    )
    data_manager.append_record(context.workbook, SheetName.MOVEMENTS.value, movement)
    _invalidate_cache(context, SheetName.MOVEMENTS.value)
    log.info(
        "Journal %s of %s (%s): %s",
        movement.movement_type,
        movement.amount,
        movement.category,
        movement.description,
    )
    return movement


def compute_final_unit_cost(
    quantity: Decimal,
    cost_product: Decimal,
    cost_freight: Decimal = Decimal("0"),
    cost_tolls: Decimal = Decimal("0"),
    cost_food: Decimal = Decimal("0"),
) -> Decimal:
    """Spread the extra purchase costs over the received quantity.

    Returns ``(quantity * cost_product + freight + tolls + food) / quantity``.
    """
    require_positive_quantity(quantity)
    return (quantity * cost_product + cost_freight + cost_tolls + cost_food) / quantity


def compute_weighted_average(
    current_stock: Decimal,
    current_average: Decimal,
    entry_quantity: Decimal,
    entry_unit_cost: Decimal,
) -> Decimal:
    """Return the new average cost after receiving ``entry_quantity`` units.

    When the resulting stock is positive the result is the quantity-weighted
    mean of the current stock value and the entry value. When stock was at or
    below zero and the entry does not lift it above zero, the entry cost is
    used instead. A non-finite result also falls back to the entry cost.
    """
    new_quantity = current_stock + entry_quantity
    if new_quantity > 0:
        average = (current_stock * current_average + entry_quantity * entry_unit_cost) / new_quantity
    else:
        average = entry_unit_cost
    if not average.is_finite():
        return entry_unit_cost
    return average


def add_stock_entry(context: RuntimeContext, command: StockEntryCommand) -> data_manager.StockEntryRow:
    """Append an immutable stock entry and revalue the product.

    The product (and supplier, when given) must exist before anything is
    written, so an unknown product never leaves a dangling entry behind. The
    product's stock grows by the received quantity and its average cost is
    recomputed by :func:`compute_weighted_average` and rounded
    with :func:`to_unit_cost`.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (StockEntryCommand): Structured receiving intent.

    Returns:
        data_manager.StockEntryRow: Newly appended entry.

    Raises:
        MissingReferenceError: If the product or supplier is unknown.
        ValueError: If quantity or cost validations fail.
    """
    product = get_product(context, command.product_id)
    if command.supplier_id is not None:
        get_supplier(context, command.supplier_id)

    quantity = require_decimal(command.quantity, "Quantity")
    require_positive_quantity(quantity)
    costs = []
    for name, raw in (
        ("Product cost", command.cost_product),
        ("Freight cost", command.cost_freight),
        ("Toll cost", command.cost_tolls),
        ("Food cost", command.cost_food),
    ):
        value = require_decimal(raw, name)
        require_nonnegative_money(value)
        costs.append(value)
    cost_product, cost_freight, cost_tolls, cost_food = costs
    due_date = normalize_date(command.due_date, "Due date")

    final_unit_cost = to_unit_cost(
        compute_final_unit_cost(quantity, cost_product, cost_freight, cost_tolls, cost_food)
    )
    timestamp = _resolve_timestamp(command.timestamp)
    entry = data_manager.StockEntryRow(
        entry_id=generate_record_id(context, SheetName.STOCK_ENTRIES.value, when=timestamp),
        product_id=product.product_id,
        supplier_id=command.supplier_id,
        timestamp_iso=timestamp.isoformat(),
        quantity=quantity,
        cost_product=cost_product,
        cost_freight=cost_freight,
        cost_tolls=cost_tolls,
        cost_food=cost_food,
        final_unit_cost=final_unit_cost,
        due_date=due_date,
    )
    data_manager.append_record(context.workbook, SheetName.STOCK_ENTRIES.value, entry)

    new_average = to_unit_cost(
        compute_weighted_average(product.current_stock, product.average_cost, quantity, final_unit_cost)
    )
    updated = replace(
        product,
        current_stock=product.current_stock + quantity,
        average_cost=new_average,
    )
    data_manager.replace_record(context.workbook, SheetName.PRODUCTS.value, product.product_id, updated)
    _invalidate_cache(context, SheetName.STOCK_ENTRIES.value, SheetName.PRODUCTS.value)
    log.info(
        "Recorded stock entry '%s' for product '%s' (quantity=%s, unit cost=%s, new average=%s)",
        entry.entry_id,
        product.product_id,
        quantity,
        final_unit_cost,
        new_average,
    )
    return entry


def find_stock_shortfalls(
    context: RuntimeContext, items: Iterable[SaleItemCommand]
) -> List[tuple[data_manager.ProductRow, Decimal]]:
    """List products whose stock would go negative if ``items`` were sold.

    Negative stock is allowed by the ledger; callers use this to warn the
    operator. Returns ``(product, resulting_stock)`` pairs.
    """
    requested: "OrderedDict[int, Decimal]" = OrderedDict()
    for item in items:
        if item.product_id is None:
            continue
        quantity = require_decimal(item.quantity, "Quantity")
        requested[item.product_id] = requested.get(item.product_id, Decimal("0")) + quantity

    shortfalls = []
    for product_id, quantity in requested.items():
        product = get_product(context, product_id)
        remaining = product.current_stock - quantity
        if remaining < 0:
            shortfalls.append((product, remaining))
    return shortfalls


def _apply_stock_deltas(context: RuntimeContext, deltas: "OrderedDict[int, Decimal]") -> None:
    for product_id, delta in deltas.items():
        product = _find(context, SheetName.PRODUCTS.value, product_id)
        if product is None:
            log.warning("Skipping stock change for unknown product '%s'", product_id)
            continue
        updated = replace(product, current_stock=product.current_stock + delta)
        data_manager.replace_record(context.workbook, SheetName.PRODUCTS.value, product_id, updated)
        log.debug("Stock of product '%s' moved by %s to %s", product_id, delta, updated.current_stock)
    _invalidate_cache(context, SheetName.PRODUCTS.value)


def update_client_debt(context: RuntimeContext, client_id: int, delta: Decimal) -> bool:
    """Add ``delta`` to a client's ``current_debt``.

    This is the only path that moves a client's debt after creation. The
    balance is maintained incrementally and never recomputed from sales.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        client_id (int): Client whose balance moves.
        delta (Decimal): Positive to increase the debt, negative to settle it.

    Returns:
        bool: ``True`` when the client exists and was updated, ``False`` for
            an unknown client (no-op).
    """
    change = to_money(require_decimal(delta, "Debt change"))
    client = _find(context, SheetName.CLIENTS.value, client_id)
    if client is None:
        log.warning("Debt change of %s ignored for unknown client '%s'", change, client_id)
        return False

    updated = replace(client, current_debt=client.current_debt + change)
    data_manager.replace_record(context.workbook, SheetName.CLIENTS.value, client_id, updated)
    _invalidate_cache(context, SheetName.CLIENTS.value)
    log.info(
        "Client '%s' debt moved by %s to %s",
        client_id,
        change,
        updated.current_debt,
    )
    return True


def exceeds_credit_limit(context: RuntimeContext, client_id: int, amount: Decimal) -> bool:
    """Return ``True`` when adding ``amount`` would exceed the credit limit.

    The check is advisory; :func:`create_sale` never enforces it.
    """
    client = get_client(context, client_id)
    projected = client.current_debt + require_decimal(amount, "Amount")
    return projected > client.credit_limit


def _build_sale_items(
    context: RuntimeContext, items: Sequence[SaleItemCommand]
) -> List[data_manager.SaleItemRow]:
    if not items:
        log.error("Sale rejected: no line items")
        raise ValueError("A sale needs at least one item")

    rows = []
    for item in items:
        quantity = require_decimal(item.quantity, "Quantity")
        require_positive_quantity(quantity)
        unit_price = require_decimal(item.unit_price, "Unit price")
        require_nonnegative_money(unit_price)

        product = get_product(context, item.product_id) if item.product_id is not None else None
        if item.applied_cost is not None:
            applied_cost = require_decimal(item.applied_cost, "Applied cost")
        else:
            applied_cost = product.average_cost if product is not None else Decimal("0")
        product_name = item.product_name or (product.description if product is not None else "")

        rows.append(
            data_manager.SaleItemRow(
                product_id=item.product_id,
                product_name=require_text(product_name, "Product name"),
                quantity=quantity,
                unit_price=unit_price,
                applied_cost=applied_cost,
                total=to_money(quantity * unit_price),
            )
        )
    return rows


def create_sale(context: RuntimeContext, command: SaleCommand) -> int:
    """Record a sale and apply its stock and payment effects.

    The workflow resolves the client and every product, builds the line
    items (capturing each product's average cost as ``applied_cost``),
    appends the sale, lowers stock by each line's quantity and then settles
    by payment method:

    * ``ROTATIVO`` adds the total to the client's debt.
    * ``DINHEIRO`` and ``PIX`` append an ``ENTRADA`` "Venda à Vista".
    * ``CHEQUE`` has no cash or debt effect; the caller records the check
      with ``origin_sale_id`` set to the returned id.

    Stock is allowed to go negative. The credit limit is not enforced.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (SaleCommand): Structured sale intent.

    Returns:
        int: Identifier of the new sale.

    Raises:
        MissingReferenceError: If the client or a product is unknown.
        ValueError: If quantities, prices or the total are malformed.
    """
    method = PaymentMethod(command.payment_method)
    status = SaleStatus(command.status) if command.status is not None else SaleStatus.CONCLUIDA
    client = get_client(context, command.client_id)
    items = _build_sale_items(context, command.items)
    if command.total is not None:
        total = to_money(require_decimal(command.total, "Sale total"))
    else:
        total = to_money(sum((item.total for item in items), Decimal("0")))
    require_nonnegative_money(total)
    due_date = normalize_date(command.due_date, "Due date")

    timestamp = _resolve_timestamp(command.timestamp)
    sale = data_manager.SaleRow(
        sale_id=generate_record_id(context, SheetName.SALES.value, when=timestamp),
        client_id=client.client_id,
        client_name=command.client_name or client.name,
        timestamp_iso=timestamp.isoformat(),
        due_date=due_date,
        total=total,
        payment_method=method.value,
        status=status.value,
        items=tuple(items),
    )
    data_manager.append_record(context.workbook, SheetName.SALES.value, sale)
    _invalidate_cache(context, SheetName.SALES.value)

    deltas: "OrderedDict[int, Decimal]" = OrderedDict()
    for item in items:
        if item.product_id is not None:
            deltas[item.product_id] = deltas.get(item.product_id, Decimal("0")) - item.quantity
    _apply_stock_deltas(context, deltas)

    if method is PaymentMethod.ROTATIVO:
        update_client_debt(context, client.client_id, total)
    elif method in WALK_IN_CASH_METHODS:
        add_movement(
            context,
            movement_type=MovementType.ENTRADA,
            amount=total,
            category=MovementCategory.CASH_SALE.value,
            description=f"Venda #{sale.sale_id} - {sale.client_name}",
            payment_method=method.value,
        )

    log.info(
        "Recorded %s sale '%s' for client '%s' (total=%s, items=%d, status=%s)",
        method.value,
        sale.sale_id,
        client.client_id,
        total,
        len(items),
        status.value,
    )
    return sale.sale_id


def cancel_sale(context: RuntimeContext, sale_id: int) -> bool:
    """Cancel a sale by applying the exact inverse of its creation.

    Stock returns to the products and the payment effect is reversed:

    * ``ROTATIVO`` removes the total from the client's debt.
    * ``DINHEIRO``/``PIX`` append a ``SAIDA`` "Estorno/Cancelamento".
    * ``CHEQUE`` cancels the check whose ``origin_sale_id`` matches. A check
      still in custody simply becomes ``CANCELADO``; a cleared check also
      gets a ``SAIDA`` "Estorno Cheque" so its cash entry is reversed. A
      bounced check becomes ``CANCELADO`` with no cash or debt effect: its
      debt already lives on the synthetic sale created at bounce time.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        sale_id (int): Sale to cancel.

    Returns:
        bool: ``True`` on success. ``False`` when the sale is unknown, is
            already cancelled, or is a synthetic bounced-check sale; nothing
            is written in those cases.
    """
    sale = _find(context, SheetName.SALES.value, sale_id)
    if sale is None:
        log.warning("Cannot cancel sale '%s': not found", sale_id)
        return False
    if sale.status == SaleStatus.CANCELADA.value:
        log.warning("Cannot cancel sale '%s': already cancelled", sale_id)
        return False
    if sale.status == SaleStatus.CHEQUE_DEVOLVIDO.value:
        log.warning("Cannot cancel sale '%s': it records a bounced check", sale_id)
        return False

    origin_check = None
    if sale.payment_method == PaymentMethod.CHEQUE.value:
        origin_check = next(
            (check for check in list_checks(context) if check.origin_sale_id == sale.sale_id),
            None,
        )

    deltas: "OrderedDict[int, Decimal]" = OrderedDict()
    for item in sale.items:
        if item.product_id is not None:
            deltas[item.product_id] = deltas.get(item.product_id, Decimal("0")) + item.quantity
    _apply_stock_deltas(context, deltas)

    if sale.payment_method == PaymentMethod.ROTATIVO.value:
        update_client_debt(context, sale.client_id, -sale.total)
    elif sale.payment_method in (PaymentMethod.DINHEIRO.value, PaymentMethod.PIX.value):
        add_movement(
            context,
            movement_type=MovementType.SAIDA,
            amount=sale.total,
            category=MovementCategory.SALE_REVERSAL.value,
            description=f"Estorno Venda #{sale.sale_id}",
            payment_method=sale.payment_method,
        )
    elif origin_check is not None:
        _cancel_origin_check(context, origin_check)
    else:
        log.warning("Sale '%s' was paid by check but no check references it", sale.sale_id)

    cancelled = replace(sale, status=SaleStatus.CANCELADA.value)
    data_manager.replace_record(context.workbook, SheetName.SALES.value, sale.sale_id, cancelled)
    _invalidate_cache(context, SheetName.SALES.value)
    log.info("Cancelled sale '%s' (%s, total=%s)", sale.sale_id, sale.payment_method, sale.total)
    return True


def _cancel_origin_check(context: RuntimeContext, check: data_manager.CheckRow) -> None:
    if check.status == CheckStatus.CANCELADO.value:
        log.warning("Check '%s' already cancelled while cancelling its sale", check.check_id)
        return

    if check.status == CheckStatus.COMPENSADO.value:
        add_movement(
            context,
            movement_type=MovementType.SAIDA,
            amount=check.amount,
            category=MovementCategory.CHECK_REVERSAL.value,
            description=f"Estorno Cheque #{check.number} - Venda #{check.origin_sale_id}",
            payment_method=PaymentMethod.CHEQUE.value,
        )

    cancelled = replace(
        check,
        status=CheckStatus.CANCELADO.value,
        updated_at=_resolve_timestamp(None).isoformat(),
    )
    data_manager.replace_record(context.workbook, SheetName.CHECKS.value, check.check_id, cancelled)
    _invalidate_cache(context, SheetName.CHECKS.value)
    log.info("Check '%s' cancelled with its sale '%s'", check.check_id, check.origin_sale_id)


def pay_rotativo(
    context: RuntimeContext, command: RotativoPaymentCommand
) -> Union[data_manager.CheckRow, data_manager.MovementRow]:
    """Settle part of a client's open account.

    The client's debt drops by the full amount immediately, whatever the
    method. A check payment is stored as a ``CUSTODIA`` check without a cash
    movement; if it later bounces the debt comes back through
    :func:`save_check`. Cash and PIX payments append an ``ENTRADA``
    "Recebimento Rotativo".

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        command (RotativoPaymentCommand): Structured payment intent.

    Returns:
        data_manager.CheckRow | data_manager.MovementRow: The check created for
            a ``CHEQUE`` payment, otherwise the journal movement.

    Raises:
        MissingReferenceError: If the client is unknown.
        ValueError: If the amount is malformed or not positive, or the method
            is ``ROTATIVO``.
    """
    method = PaymentMethod(command.payment_method)
    if method is PaymentMethod.ROTATIVO:
        log.error("Rotativo payment rejected: method cannot be ROTATIVO")
        raise ValueError("An open account cannot be paid with ROTATIVO")
    amount = to_money(require_decimal(command.amount, "Payment amount"))
    require_positive_quantity(amount)
    client = get_client(context, command.client_id)
    timestamp = _resolve_timestamp(command.timestamp)

    check = None
    if method is PaymentMethod.CHEQUE:
        check = data_manager.CheckRow(
            check_id=None,
            client_id=client.client_id,
            client_name=client.name,
            origin_sale_id=None,
            bank=command.check_bank or "N/A",
            number=command.check_number or "N/A",
            amount=amount,
            due_date=normalize_date(command.check_due_date, "Check due date") or timestamp.isoformat(),
            status=CheckStatus.CUSTODIA.value,
            updated_at=timestamp.isoformat(),
        )

    update_client_debt(context, client.client_id, -amount)

    if check is not None:
        result: Union[data_manager.CheckRow, data_manager.MovementRow] = save_check(context, check)
    else:
        result = add_movement(
            context,
            movement_type=MovementType.ENTRADA,
            amount=amount,
            category=MovementCategory.ROTATIVO_PAYMENT.value,
            description=f"Pagamento Fatura Cliente #{client.client_id} - {client.name}",
            payment_method=method.value,
            timestamp=timestamp,
        )
    log.info("Client '%s' paid %s of open account via %s", client.client_id, amount, method.value)
    return result


def save_check(context: RuntimeContext, check: data_manager.CheckRow) -> data_manager.CheckRow:
    """Insert a check or apply a status transition with its side effects.

    A check whose id is ``None`` or unknown is inserted as-is: creating a
    check never touches cash or debt. For an existing check the transition
    from the stored status decides the side effects:

    * into ``COMPENSADO`` (from any other status): an ``ENTRADA``
      "Compensação Cheque" dated at ``updated_at``, so clearing can be
      back-dated to the bank date.
    * into ``DEVOLVIDO`` (from any other status): a ``SAIDA`` "Estorno
      Cheque" when the check had cleared, and always a synthetic
      ``ROTATIVO`` sale with status ``CHEQUE_DEVOLVIDO`` that puts the
      amount back on the client's debt.
    * anything else only updates the stored record.

    ``CANCELADO`` belongs to sale cancellation and cannot be set here, and
    a cancelled check cannot change again.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        check (data_manager.CheckRow): Desired state of the check.

    Returns:
        data_manager.CheckRow: The record as written.

    Raises:
        BusinessRuleViolation: If the status is ``CANCELADO`` (only sale
            cancellation may cancel a check) or the stored check is already
            cancelled.
        MissingReferenceError: If a bouncing check names an unknown client.
        ValueError: If the amount, status or dates are malformed.
    """
    status = CheckStatus(check.status)
    amount = to_money(require_decimal(check.amount, "Check amount"))
    require_nonnegative_money(amount)
    record = replace(
        check,
        amount=amount,
        status=status.value,
        due_date=normalize_date(check.due_date, "Check due date"),
        updated_at=normalize_date(check.updated_at, "Check update date")
        or _resolve_timestamp(None).isoformat(),
    )

    existing = _find(context, SheetName.CHECKS.value, check.check_id)
    if existing is None:
        if status is CheckStatus.CANCELADO:
            raise BusinessRuleViolation("A new check cannot start as CANCELADO")
        if record.check_id is None:
            record = replace(record, check_id=generate_record_id(context, SheetName.CHECKS.value))
        data_manager.append_record(context.workbook, SheetName.CHECKS.value, record)
        _invalidate_cache(context, SheetName.CHECKS.value)
        log.info(
            "Registered check '%s' #%s from client '%s' (amount=%s, status=%s)",
            record.check_id,
            record.number,
            record.client_id,
            amount,
            record.status,
        )
        return record

    old_status = CheckStatus(existing.status)
    if old_status is CheckStatus.CANCELADO:
        log.error("Check '%s' is cancelled and cannot change", existing.check_id)
        raise BusinessRuleViolation(f"Check {existing.check_id} is cancelled")
    if status is CheckStatus.CANCELADO:
        log.error("Check '%s' cannot be cancelled directly", existing.check_id)
        raise BusinessRuleViolation("Checks are cancelled only by cancelling their sale")

    bounced = status is CheckStatus.DEVOLVIDO and old_status is not CheckStatus.DEVOLVIDO
    if bounced:
        client = get_client(context, record.client_id)

    if status is CheckStatus.COMPENSADO and old_status is not CheckStatus.COMPENSADO:
        add_movement(
            context,
            movement_type=MovementType.ENTRADA,
            amount=amount,
            category=MovementCategory.CHECK_CLEARED.value,
            description=f"Cheque #{record.number} - {record.client_name}",
            payment_method=PaymentMethod.CHEQUE.value,
            timestamp=record.updated_at,
        )

    if bounced:
        if old_status is CheckStatus.COMPENSADO:
            add_movement(
                context,
                movement_type=MovementType.SAIDA,
                amount=amount,
                category=MovementCategory.CHECK_REVERSAL.value,
                description=f"Devolução Cheque #{record.number}",
                payment_method=PaymentMethod.CHEQUE.value,
            )
        now = _resolve_timestamp(None)
        create_sale(
            context,
            SaleCommand(
                client_id=client.client_id,
                client_name=record.client_name or client.name,
                payment_method=PaymentMethod.ROTATIVO,
                status=SaleStatus.CHEQUE_DEVOLVIDO,
                total=amount,
                due_date=now.isoformat(),
                timestamp=now,
                items=[
                    SaleItemCommand(
                        product_id=None,
                        product_name=f"CHEQUE DEVOLVIDO #{record.number} (Banco: {record.bank})",
                        quantity=Decimal("1"),
                        unit_price=amount,
                        applied_cost=Decimal("0"),
                    )
                ],
            ),
        )

    data_manager.replace_record(context.workbook, SheetName.CHECKS.value, existing.check_id, record)
    _invalidate_cache(context, SheetName.CHECKS.value)
    log.info(
        "Check '%s' moved from %s to %s",
        existing.check_id,
        old_status.value,
        status.value,
    )
    return record


def update_check_status(
    context: RuntimeContext,
    check_id: int,
    status: CheckStatus,
    *,
    when: Optional[Union[datetime, str]] = None,
) -> data_manager.CheckRow:
    """Move a stored check to ``status`` through :func:`save_check`.

    ``when`` stamps ``updated_at``; for ``COMPENSADO`` it is the date the
    clearing movement is booked on. Defaults to now.
    """
    existing = get_check(context, check_id)
    stamp = when if when is not None else _resolve_timestamp(None)
    return save_check(
        context,
        replace(existing, status=CheckStatus(status).value, updated_at=normalize_date(stamp, "Check update date")),
    )


def sort_checks_for_display(checks: Iterable[data_manager.CheckRow]) -> List[data_manager.CheckRow]:
    """Order checks with ``CUSTODIA`` first, the rest by ascending due date."""
    return sorted(
        checks,
        key=lambda check: (
            check.status != CheckStatus.CUSTODIA.value,
            check.due_date or "",
        ),
    )


def save_expense(context: RuntimeContext, expense: data_manager.ExpenseRow) -> data_manager.ExpenseRow:
    """Insert or replace an expense and book its payment.

    When the saved record is ``PAGO`` with a payment date and the stored
    version was not already ``PAGO``, a ``SAIDA`` dated at the payment date
    is appended under the expense's category. Re-saving a paid expense does
    not book it twice.

    Raises:
        ValueError: If amount, status or dates are malformed.
    """
    status = ExpenseStatus(expense.status)
    amount = to_money(require_decimal(expense.amount, "Expense amount"))
    require_nonnegative_money(amount)
    record = replace(
        expense,
        description=require_text(expense.description, "Expense description"),
        amount=amount,
        status=status.value,
        competence_date=normalize_date(expense.competence_date, "Competence date") or "",
        payment_date=normalize_date(expense.payment_date, "Payment date"),
    )
    if not record.competence_date:
        raise ValueError("Competence date is required")

    existing = _find(context, SheetName.EXPENSES.value, expense.expense_id)
    if existing is None:
        record = replace(record, expense_id=generate_record_id(context, SheetName.EXPENSES.value))
    _insert_or_replace(context, SheetName.EXPENSES.value, record, exists=existing is not None)
    log.info("Saved expense '%s' (%s, %s, %s)", record.expense_id, record.description, amount, record.status)

    already_paid = existing is not None and existing.status == ExpenseStatus.PAGO.value
    if status is ExpenseStatus.PAGO and record.payment_date and not already_paid:
        add_movement(
            context,
            movement_type=MovementType.SAIDA,
            amount=amount,
            category=record.category,
            description=f"Pgto: {record.description}",
            payment_method=EXPENSE_PAYMENT_METHOD,
            timestamp=record.payment_date,
        )
    return record


def persist_context(context: RuntimeContext) -> None:
    """Save the in-memory workbook to the configured data file."""
    data_manager.save_workbook(
        context.workbook,
        destination=context.settings.data_file,
    )
    log.info("Persisted workbook '%s'", context.settings.data_file)


def refresh_context(context: RuntimeContext) -> RuntimeContext:
    """Reload the workbook, discarding unsaved modifications.

    Returns:
        RuntimeContext: Fresh context with a newly opened workbook and an
            empty cache.

    Raises:
        FileNotFoundError: If the backing workbook cannot be reloaded.
    """
    workbook = data_manager.refresh_workbook(context.settings.data_file)
    log.info("Reloaded workbook '%s'", context.settings.data_file)
    return RuntimeContext(settings=context.settings, workbook=workbook)


def invalidate_all(context: RuntimeContext) -> None:
    """Drop every cache bucket, e.g. after a wholesale import."""
    _invalidate_cache(context, *list(context._cache))
