"""Data access layer for Peixaria ERP.

This module reads from and writes to the master workbook. Every collection
of the store (clients, products, sales, checks, ...) lives on its own
worksheet whose first row carries the column headers. Business rules belong
in :mod:`peixaria_erp.core_logic`.

The public API covers three responsibilities:

1. Configuration handling: finding and parsing ``config.ini``.
2. Workbook lifecycle: opening, persisting and reloading the Excel file.
3. Sheet operations: loading typed records and appending or replacing
   individual rows.
"""


from __future__ import annotations

import configparser
from dataclasses import dataclass
from datetime import date, datetime
from decimal import Decimal, InvalidOperation
from pathlib import Path
from typing import Any, Callable, Dict, Iterable, List, Mapping, Optional, Sequence

from openpyxl.workbook import Workbook
import openpyxl

from . import log
from .constants import SheetName


CONFIG_FILE_NAME = "config.ini"

ZERO = Decimal("0")

SHEET_COLUMNS: Mapping[str, Sequence[str]] = {
    SheetName.CLIENTS.value: [
        "ClientID",
        "Name",
        "TaxID",
        "CreditLimit",
        "CurrentDebt",
        "IsActive",
    ],
    SheetName.PRODUCTS.value: [
        "ProductID",
        "Description",
        "Unit",
        "CurrentStock",
        "AverageCost",
        "SellPrice",
    ],
    SheetName.SUPPLIERS.value: ["SupplierID", "Name", "Contact"],
    SheetName.STOCK_ENTRIES.value: [
        "EntryID",
        "ProductID",
        "SupplierID",
        "Timestamp",
        "Quantity",
        "CostProduct",
        "CostFreight",
        "CostTolls",
        "CostFood",
        "FinalUnitCost",
        "DueDate",
    ],
    SheetName.SALES.value: [
        "SaleID",
        "ClientID",
        "ClientName",
        "Timestamp",
        "DueDate",
        "Total",
        "PaymentMethod",
        "Status",
    ],
    SheetName.SALE_ITEMS.value: [
        "SaleID",
        "ProductID",
        "ProductName",
        "Quantity",
        "UnitPrice",
        "AppliedCost",
        "Total",
    ],
    SheetName.CHECKS.value: [
        "CheckID",
        "ClientID",
        "ClientName",
        "OriginSaleID",
        "Bank",
        "Number",
        "Amount",
        "DueDate",
        "Status",
        "UpdatedAt",
    ],
    SheetName.MOVEMENTS.value: [
        "MovementID",
        "Timestamp",
        "Type",
        "Amount",
        "Category",
        "Description",
        "PaymentMethod",
    ],
    SheetName.EXPENSES.value: [
        "ExpenseID",
        "Description",
        "Amount",
        "CompetenceDate",
        "PaymentDate",
        "Status",
        "Category",
        "SupplierID",
    ],
    SheetName.EXPENSE_CATEGORIES.value: ["CategoryID", "Name"],
}


@dataclass(frozen=True)
class ConfigSettings:
    """Typed representation of the ``config.ini`` settings we care about."""

    data_file: Path
    shop_name: str
    schema_version: str


@dataclass(frozen=True)
class ClientRow:
    """In-memory view of a row from the ``Clients`` sheet."""

    client_id: Optional[int]
    name: str
    tax_id: Optional[str] = None
    credit_limit: Decimal = ZERO
    current_debt: Decimal = ZERO
    is_active: bool = True


@dataclass(frozen=True)
class ProductRow:
    """In-memory view of a row from the ``Products`` sheet."""

    product_id: Optional[int]
    description: str
    unit: str = "KG"
    current_stock: Decimal = ZERO
    average_cost: Decimal = ZERO
    sell_price: Decimal = ZERO


@dataclass(frozen=True)
class SupplierRow:
    """In-memory view of a row from the ``Suppliers`` sheet."""

    supplier_id: Optional[int]
    name: str
    contact: Optional[str] = None


@dataclass(frozen=True)
class StockEntryRow:
    """In-memory view of a row from the ``StockEntries`` sheet."""

    entry_id: int
    product_id: int
    supplier_id: Optional[int]
    timestamp_iso: str
    quantity: Decimal
    cost_product: Decimal
    cost_freight: Decimal
    cost_tolls: Decimal
    cost_food: Decimal
    final_unit_cost: Decimal
    due_date: Optional[str] = None


@dataclass(frozen=True)
class SaleItemRow:
    """One line of a sale, stored on the ``SaleItems`` sheet."""

    product_id: Optional[int]
    product_name: str
    quantity: Decimal
    unit_price: Decimal
    applied_cost: Decimal
    total: Decimal


@dataclass(frozen=True)
class SaleRow:
    """In-memory view of a ``Sales`` row joined with its line items."""

    sale_id: int
    client_id: Optional[int]
    client_name: str
    timestamp_iso: str
    due_date: Optional[str]
    total: Decimal
    payment_method: str
    status: str
    items: tuple[SaleItemRow, ...] = ()


@dataclass(frozen=True)
class CheckRow:
    """In-memory view of a row from the ``Checks`` sheet."""

    check_id: Optional[int]
    client_id: Optional[int]
    client_name: str
    origin_sale_id: Optional[int]
    bank: str
    number: str
    amount: Decimal
    due_date: Optional[str]
    status: str
    updated_at: Optional[str] = None


@dataclass(frozen=True)
class MovementRow:
    """In-memory view of a row from the ``Movements`` sheet."""

    movement_id: int
    timestamp_iso: str
    movement_type: str
    amount: Decimal
    category: str
    description: str
    payment_method: str


@dataclass(frozen=True)
class ExpenseRow:
    """In-memory view of a row from the ``Expenses`` sheet."""

    expense_id: Optional[int]
    description: str
    amount: Decimal
    competence_date: str
    payment_date: Optional[str]
    status: str
    category: str
    supplier_id: Optional[int] = None


@dataclass(frozen=True)
class ExpenseCategoryRow:
    """In-memory view of a row from the ``ExpenseCategories`` sheet."""

    category_id: Optional[int]
    name: str


def find_config_file(explicit_path: Optional[Path] = None) -> Path:
    """Locate the configuration file that controls how the data layer behaves.

    An explicit path wins without verification. Otherwise the search walks up
    from the current working directory toward the filesystem root and returns
    the first ``config.ini`` found.

    Args:
        explicit_path (Path | None): Optional path to use instead of performing
            the upward search.

    Returns:
        Path: The path provided by the caller or the discovered file.

    Raises:
        FileNotFoundError: If no parent directory holds ``CONFIG_FILE_NAME``.
    """

    if explicit_path:
        return explicit_path

    current = Path.cwd()
    for p in (current, *current.parents):
        candidate = p / CONFIG_FILE_NAME
        if candidate.exists():
            return candidate

    raise FileNotFoundError(
        f"Configuration file not found: {CONFIG_FILE_NAME}")


def read_config(config_path: Path) -> configparser.ConfigParser:
    """Load ``config.ini`` and return a populated ``ConfigParser`` instance.

    Args:
        config_path (Path): Path to the configuration file, relative or
            absolute.

    Returns:
        configparser.ConfigParser: Parser holding the raw configuration. Missing
            sections are reported later by :func:`parse_settings`.

    Raises:
        FileNotFoundError: If ``config_path`` does not exist.
    """

    config_path = config_path.expanduser().resolve()
    if not config_path.exists():
        raise FileNotFoundError(f"Configuration file not found: {config_path}")

    parser = configparser.ConfigParser()
    parser.read(config_path, encoding="utf-8")
    return parser


def parse_settings(parser: configparser.ConfigParser, *, base_path: Optional[Path] = None) -> ConfigSettings:
    """Convert a ``ConfigParser`` into strongly typed :class:`ConfigSettings`.

    Relative ``DataFile`` entries are anchored to ``base_path`` (normally the
    directory holding ``config.ini``) or to the working directory.

    Args:
        parser (configparser.ConfigParser): Parsed configuration data.
        base_path (Path | None): Anchor for relative ``DataFile`` entries.

    Returns:
        ConfigSettings: Settings with an absolute data file path.

    Raises:
        KeyError: If a required section or option is missing.
    """

    try:
        data_file_raw = parser.get("System", "DataFile")
        shop_name = parser.get("System", "ShopName")
        schema_version = parser.get("System", "SchemaVersion")
    except (configparser.NoSectionError, configparser.NoOptionError) as exc:
        raise KeyError(f"Missing required configuration entry: {exc}") from exc

    data_file_path = Path(data_file_raw)
    if not data_file_path.is_absolute():
        if base_path is None:
            base_path = Path.cwd()
        data_file_path = (base_path / data_file_path).resolve()

    return ConfigSettings(
        data_file=data_file_path,
        shop_name=shop_name,
        schema_version=schema_version,
    )


def open_workbook(data_file: Path) -> Workbook:
    """Open the master workbook and return a live ``openpyxl`` workbook.

    Raises:
        FileNotFoundError: If ``data_file`` does not exist.
    """

    data_file = Path(data_file).expanduser().resolve()
    if not data_file.exists():
        raise FileNotFoundError(f"Workbook not found: {data_file}")

    return openpyxl.load_workbook(data_file)


def save_workbook(workbook: Workbook, destination: Path) -> None:
    """Persist the workbook at ``destination``, creating parent folders."""

    dest = Path(destination).expanduser().resolve()
    dest.parent.mkdir(parents=True, exist_ok=True)
    workbook.save(dest)


def refresh_workbook(data_file: Path) -> Workbook:
    """Reload the workbook from disk, discarding unsaved in-memory changes."""

    return open_workbook(data_file)


def to_decimal(raw: object, default: Decimal = ZERO) -> Decimal:
    """Coerce a cell value into a finite :class:`~decimal.Decimal`.

    Blank, non-numeric and non-finite cells fall back to ``default`` so that
    arithmetic on legacy rows never propagates ``NaN``.
    """

    if raw is None or isinstance(raw, bool):
        return default
    try:
        value = Decimal(str(raw).strip())
    except (InvalidOperation, ValueError):
        return default
    if not value.is_finite():
        return default
    return value


def to_int(raw: object) -> Optional[int]:
    """Coerce an identifier cell into ``int`` or ``None`` when blank."""

    if raw is None or isinstance(raw, bool):
        return None
    if isinstance(raw, int):
        return raw
    try:
        return int(Decimal(str(raw).strip()))
    except (InvalidOperation, ValueError):
        return None


def to_text(raw: object) -> Optional[str]:
    """Coerce a text cell into ``str`` or ``None`` when blank."""

    if raw is None:
        return None
    if isinstance(raw, (datetime, date)):
        return raw.isoformat()
    text = str(raw)
    return text if text != "" else None


def to_bool(raw: object) -> bool:
    """Interpret workbook booleans, including ``"FALSE"`` typed by hand."""

    if isinstance(raw, str):
        return raw.strip().lower() not in {"", "0", "false", "no", "n"}
    return bool(raw)


def _padded(raw_row: Sequence[object], width: int) -> list[object]:
    values = list(raw_row[:width])
    values.extend([None] * (width - len(values)))
    return values


def serialize_client(record: ClientRow) -> list[object]:
    """Convert a client dataclass into the ``Clients`` column ordering."""

    return [
        record.client_id,
        record.name,
        record.tax_id,
        record.credit_limit,
        record.current_debt,
        record.is_active,
    ]


def serialize_product(record: ProductRow) -> list[object]:
    """Convert a product dataclass into the ``Products`` column ordering."""

    return [
        record.product_id,
        record.description,
        record.unit,
        record.current_stock,
        record.average_cost,
        record.sell_price,
    ]


def serialize_supplier(record: SupplierRow) -> list[object]:
    return [record.supplier_id, record.name, record.contact]


def serialize_stock_entry(record: StockEntryRow) -> list[object]:
    """Convert a stock entry into the ``StockEntries`` column ordering."""

    return [
        record.entry_id,
        record.product_id,
        record.supplier_id,
        record.timestamp_iso,
        record.quantity,
        record.cost_product,
        record.cost_freight,
        record.cost_tolls,
        record.cost_food,
        record.final_unit_cost,
        record.due_date,
    ]


def serialize_sale(record: SaleRow) -> list[object]:
    """Convert a sale header into the ``Sales`` column ordering.

    Line items are written separately by :func:`serialize_sale_item`.
    """

    return [
        record.sale_id,
        record.client_id,
        record.client_name,
        record.timestamp_iso,
        record.due_date,
        record.total,
        record.payment_method,
        record.status,
    ]


def serialize_sale_item(sale_id: int, record: SaleItemRow) -> list[object]:
    return [
        sale_id,
        record.product_id,
        record.product_name,
        record.quantity,
        record.unit_price,
        record.applied_cost,
        record.total,
    ]


def serialize_check(record: CheckRow) -> list[object]:
    """Convert a check dataclass into the ``Checks`` column ordering."""

    return [
        record.check_id,
        record.client_id,
        record.client_name,
        record.origin_sale_id,
        record.bank,
        record.number,
        record.amount,
        record.due_date,
        record.status,
        record.updated_at,
    ]


def serialize_movement(record: MovementRow) -> list[object]:
    """Convert a cash movement into the ``Movements`` column ordering."""

    return [
        record.movement_id,
        record.timestamp_iso,
        record.movement_type,
        record.amount,
        record.category,
        record.description,
        record.payment_method,
    ]


def serialize_expense(record: ExpenseRow) -> list[object]:
    return [
        record.expense_id,
        record.description,
        record.amount,
        record.competence_date,
        record.payment_date,
        record.status,
        record.category,
        record.supplier_id,
    ]


def serialize_expense_category(record: ExpenseCategoryRow) -> list[object]:
    return [record.category_id, record.name]


def deserialize_client(raw_row: Sequence[object]) -> ClientRow:
    """Convert a raw ``Clients`` row into a typed record.

    Credit limit and debt are sanitized through :func:`to_decimal`, so a
    hand-edited cell holding text reads back as zero.
    """

    client_id, name, tax_id, limit_raw, debt_raw, is_active = _padded(raw_row, 6)
    return ClientRow(
        client_id=to_int(client_id),
        name=to_text(name) or "",
        tax_id=to_text(tax_id),
        credit_limit=to_decimal(limit_raw),
        current_debt=to_decimal(debt_raw),
        is_active=True if is_active is None else to_bool(is_active),
    )


def deserialize_product(raw_row: Sequence[object]) -> ProductRow:
    """Convert a raw ``Products`` row into a typed record.

    Stock, average cost and sell price are sanitized to finite decimals.
    """

    product_id, description, unit, stock_raw, cost_raw, price_raw = _padded(raw_row, 6)
    return ProductRow(
        product_id=to_int(product_id),
        description=to_text(description) or "",
        unit=to_text(unit) or "",
        current_stock=to_decimal(stock_raw),
        average_cost=to_decimal(cost_raw),
        sell_price=to_decimal(price_raw),
    )


def deserialize_supplier(raw_row: Sequence[object]) -> SupplierRow:
    supplier_id, name, contact = _padded(raw_row, 3)
    return SupplierRow(
        supplier_id=to_int(supplier_id),
        name=to_text(name) or "",
        contact=to_text(contact),
    )


def deserialize_stock_entry(raw_row: Sequence[object]) -> StockEntryRow:
    (
        entry_id,
        product_id,
        supplier_id,
        timestamp_iso,
        quantity_raw,
        cost_product_raw,
        cost_freight_raw,
        cost_tolls_raw,
        cost_food_raw,
        final_unit_cost_raw,
        due_date,
    ) = _padded(raw_row, 11)
    return StockEntryRow(
        entry_id=to_int(entry_id) or 0,
        product_id=to_int(product_id) or 0,
        supplier_id=to_int(supplier_id),
        timestamp_iso=to_text(timestamp_iso) or "",
        quantity=to_decimal(quantity_raw),
        cost_product=to_decimal(cost_product_raw),
        cost_freight=to_decimal(cost_freight_raw),
        cost_tolls=to_decimal(cost_tolls_raw),
        cost_food=to_decimal(cost_food_raw),
        final_unit_cost=to_decimal(final_unit_cost_raw),
        due_date=to_text(due_date),
    )


def deserialize_sale(raw_row: Sequence[object], items: Iterable[SaleItemRow] = ()) -> SaleRow:
    """Convert a raw ``Sales`` row into a typed record carrying ``items``."""

    (
        sale_id,
        client_id,
        client_name,
        timestamp_iso,
        due_date,
        total_raw,
        payment_method,
        status,
    ) = _padded(raw_row, 8)
    return SaleRow(
        sale_id=to_int(sale_id) or 0,
        client_id=to_int(client_id),
        client_name=to_text(client_name) or "",
        timestamp_iso=to_text(timestamp_iso) or "",
        due_date=to_text(due_date),
        total=to_decimal(total_raw),
        payment_method=to_text(payment_method) or "",
        status=to_text(status) or "CONCLUIDA",
        items=tuple(items),
    )


def deserialize_sale_item(raw_row: Sequence[object]) -> tuple[Optional[int], SaleItemRow]:
    """Return ``(sale_id, item)`` for a raw ``SaleItems`` row."""

    (
        sale_id,
        product_id,
        product_name,
        quantity_raw,
        unit_price_raw,
        applied_cost_raw,
        total_raw,
    ) = _padded(raw_row, 7)
    item = SaleItemRow(
        product_id=to_int(product_id),
        product_name=to_text(product_name) or "",
        quantity=to_decimal(quantity_raw),
        unit_price=to_decimal(unit_price_raw),
        applied_cost=to_decimal(applied_cost_raw),
        total=to_decimal(total_raw),
    )
    return to_int(sale_id), item


def deserialize_check(raw_row: Sequence[object]) -> CheckRow:
    (
        check_id,
        client_id,
        client_name,
        origin_sale_id,
        bank,
        number,
        amount_raw,
        due_date,
        status,
        updated_at,
    ) = _padded(raw_row, 10)
    return CheckRow(
        check_id=to_int(check_id),
        client_id=to_int(client_id),
        client_name=to_text(client_name) or "",
        origin_sale_id=to_int(origin_sale_id),
        bank=to_text(bank) or "",
        number=to_text(number) or "",
        amount=to_decimal(amount_raw),
        due_date=to_text(due_date),
        status=to_text(status) or "CUSTODIA",
        updated_at=to_text(updated_at),
    )


def deserialize_movement(raw_row: Sequence[object]) -> MovementRow:
    (
        movement_id,
        timestamp_iso,
        movement_type,
        amount_raw,
        category,
        description,
        payment_method,
    ) = _padded(raw_row, 7)
    return MovementRow(
        movement_id=to_int(movement_id) or 0,
        timestamp_iso=to_text(timestamp_iso) or "",
        movement_type=to_text(movement_type) or "",
        amount=to_decimal(amount_raw),
        category=to_text(category) or "",
        description=to_text(description) or "",
        payment_method=to_text(payment_method) or "",
    )


def deserialize_expense(raw_row: Sequence[object]) -> ExpenseRow:
    (
        expense_id,
        description,
        amount_raw,
        competence_date,
        payment_date,
        status,
        category,
        supplier_id,
    ) = _padded(raw_row, 8)
    return ExpenseRow(
        expense_id=to_int(expense_id),
        description=to_text(description) or "",
        amount=to_decimal(amount_raw),
        competence_date=to_text(competence_date) or "",
        payment_date=to_text(payment_date),
        status=to_text(status) or "ABERTO",
        category=to_text(category) or "",
        supplier_id=to_int(supplier_id),
    )


def deserialize_expense_category(raw_row: Sequence[object]) -> ExpenseCategoryRow:
    category_id, name = _padded(raw_row, 2)
    return ExpenseCategoryRow(category_id=to_int(category_id), name=to_text(name) or "")


SERIALIZERS: Dict[str, Callable[[Any], list[object]]] = {
    SheetName.CLIENTS.value: serialize_client,
    SheetName.PRODUCTS.value: serialize_product,
    SheetName.SUPPLIERS.value: serialize_supplier,
    SheetName.STOCK_ENTRIES.value: serialize_stock_entry,
    SheetName.SALES.value: serialize_sale,
    SheetName.CHECKS.value: serialize_check,
    SheetName.MOVEMENTS.value: serialize_movement,
    SheetName.EXPENSES.value: serialize_expense,
    SheetName.EXPENSE_CATEGORIES.value: serialize_expense_category,
}

DESERIALIZERS: Dict[str, Callable[[Sequence[object]], Any]] = {
    SheetName.CLIENTS.value: deserialize_client,
    SheetName.PRODUCTS.value: deserialize_product,
    SheetName.SUPPLIERS.value: deserialize_supplier,
    SheetName.STOCK_ENTRIES.value: deserialize_stock_entry,
    SheetName.SALES.value: deserialize_sale,
    SheetName.CHECKS.value: deserialize_check,
    SheetName.MOVEMENTS.value: deserialize_movement,
    SheetName.EXPENSES.value: deserialize_expense,
    SheetName.EXPENSE_CATEGORIES.value: deserialize_expense_category,
}


def iter_raw_rows(workbook: Workbook, sheet_name: str) -> Iterable[tuple[object, ...]]:
    """Yield the non-empty data rows of ``sheet_name`` as raw tuples."""

    sheet = workbook[sheet_name]
    for raw in sheet.iter_rows(min_row=2, values_only=True):
        # skip fully empty rows
        if any(cell is not None for cell in raw):
            yield raw


def iter_records(workbook: Workbook, sheet_name: str) -> Iterable[Any]:
    """Stream typed records from any single-sheet collection.

    Sales are the exception because their line items live on a second
    sheet; use :func:`iter_sales` for them.
    """

    if sheet_name == SheetName.SALES.value:
        yield from iter_sales(workbook)
        return
    deserialize = DESERIALIZERS[sheet_name]
    for raw in iter_raw_rows(workbook, sheet_name):
        yield deserialize(raw)


def iter_clients(workbook: Workbook) -> Iterable[ClientRow]:
    return iter_records(workbook, SheetName.CLIENTS.value)


def iter_products(workbook: Workbook) -> Iterable[ProductRow]:
    return iter_records(workbook, SheetName.PRODUCTS.value)


def iter_suppliers(workbook: Workbook) -> Iterable[SupplierRow]:
    return iter_records(workbook, SheetName.SUPPLIERS.value)


def iter_stock_entries(workbook: Workbook) -> Iterable[StockEntryRow]:
    return iter_records(workbook, SheetName.STOCK_ENTRIES.value)


def iter_checks(workbook: Workbook) -> Iterable[CheckRow]:
    return iter_records(workbook, SheetName.CHECKS.value)


def iter_movements(workbook: Workbook) -> Iterable[MovementRow]:
    return iter_records(workbook, SheetName.MOVEMENTS.value)


def iter_expenses(workbook: Workbook) -> Iterable[ExpenseRow]:
    return iter_records(workbook, SheetName.EXPENSES.value)


def iter_expense_categories(workbook: Workbook) -> Iterable[ExpenseCategoryRow]:
    return iter_records(workbook, SheetName.EXPENSE_CATEGORIES.value)


def iter_sales(workbook: Workbook) -> Iterable[SaleRow]:
    """Stream sales joined with their line items.

    Items are grouped by ``SaleID`` in sheet order, so each sale keeps the
    ordering it was recorded with. Items pointing at an unknown sale are
    ignored.
    """

    items_by_sale: Dict[Optional[int], List[SaleItemRow]] = {}
    for raw in iter_raw_rows(workbook, SheetName.SALE_ITEMS.value):
        sale_id, item = deserialize_sale_item(raw)
        items_by_sale.setdefault(sale_id, []).append(item)

    for raw in iter_raw_rows(workbook, SheetName.SALES.value):
        sale_id = to_int(raw[0]) if raw else None
        yield deserialize_sale(raw, items_by_sale.get(sale_id, ()))


def append_record(workbook: Workbook, sheet_name: str, record: Any) -> None:
    """Append a typed record to ``sheet_name`` in its column ordering.

    Sales also append one ``SaleItems`` row per line item.
    """

    sheet = workbook[sheet_name]
    sheet.append(SERIALIZERS[sheet_name](record))
    if sheet_name == SheetName.SALES.value:
        items_sheet = workbook[SheetName.SALE_ITEMS.value]
        for item in record.items:
            items_sheet.append(serialize_sale_item(record.sale_id, item))


def replace_record(workbook: Workbook, sheet_name: str, record_id: int, record: Any) -> None:
    """Overwrite the whole row whose id column equals ``record_id``.

    For sales only the header row is replaced; line items are immutable.

    Raises:
        KeyError: If no row carries ``record_id``.
    """

    key_column = SHEET_COLUMNS[sheet_name][0]
    row_index = locate_row(workbook, sheet_name, key_column, record_id)
    if row_index is None:
        raise KeyError(f"{sheet_name} record not found: {record_id}")

    sheet = workbook[sheet_name]
    for column_index, value in enumerate(SERIALIZERS[sheet_name](record), start=1):
        sheet.cell(row=row_index, column=column_index, value=value)


def locate_row(workbook: Workbook, sheet_name: str, key_column: str, key_value: int) -> Optional[int]:
    """Find the 1-based row index whose ``key_column`` equals ``key_value``.

    Identifier cells are compared as integers so a value Excel stored as
    ``12.0`` still matches ``12``.

    Raises:
        KeyError: If ``key_column`` is not present in the header row.
    """

    sheet = workbook[sheet_name]
    header_map = {cell.value: idx + 1 for idx, cell in enumerate(sheet[1])}
    if key_column not in header_map:
        raise KeyError(f"Unknown column: {key_column}")

    key_col_index = header_map[key_column]
    for row_idx, row in enumerate(sheet.iter_rows(min_row=2, values_only=True), start=2):
        if len(row) >= key_col_index and to_int(row[key_col_index - 1]) == key_value:
            return row_idx

    return None


def max_record_id(workbook: Workbook, sheet_name: str) -> int:
    """Return the largest identifier stored on ``sheet_name`` (``0`` if empty)."""

    highest = 0
    for raw in iter_raw_rows(workbook, sheet_name):
        value = to_int(raw[0]) if raw else None
        if value is not None and value > highest:
            highest = value
    return highest


def clear_sheet(workbook: Workbook, sheet_name: str) -> None:
    """Delete every data row of ``sheet_name`` while keeping the header."""

    sheet = workbook[sheet_name]
    if sheet.max_row > 1:
        sheet.delete_rows(2, sheet.max_row - 1)


def write_raw_rows(workbook: Workbook, sheet_name: str, rows: Iterable[Sequence[object]]) -> int:
    """Append raw rows to ``sheet_name`` and return how many were written."""

    sheet = workbook[sheet_name]
    count = 0
    for row in rows:
        sheet.append(list(row))
        count += 1
    log.debug("Wrote %d raw rows to sheet '%s'", count, sheet_name)
    return count
