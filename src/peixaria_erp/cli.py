"""Command-line entry points for the Peixaria ERP ledger.

This module only wires argparse to the business layer: each sub-command
translates its arguments into the command objects and records consumed by
:mod:`peixaria_erp.core_logic`, runs one operation and prints the outcome.
The workbook is saved only after a mutating command succeeds, so a failed
command never leaves a half-applied change on disk.
"""

from __future__ import annotations

import argparse
from dataclasses import dataclass
from decimal import Decimal
from pathlib import Path
from typing import Callable, Dict, Iterable, List, Mapping, MutableMapping, Optional, Sequence

from . import backup, core_logic, data_manager, log, reports
from .constants import CheckStatus, ExpenseStatus, PaymentMethod


@dataclass(frozen=True)
class CommandSpec:
    """Describe how a CLI sub-command is configured and executed."""

    name: str
    help_text: str
    register: Callable[[argparse._SubParsersAction[argparse.ArgumentParser]], argparse.ArgumentParser]
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int]
    mutates: bool = True


def build_parser() -> argparse.ArgumentParser:
    """Construct the top-level CLI argument parser."""
    parser = argparse.ArgumentParser(
        prog="peixaria-cli",
        description="Command-line tools for the Peixaria ERP workbook.",
    )
    parser.add_argument(
        "--config",
        type=Path,
        default=None,
        help="Optional path to config.ini (searched upward from the current directory by default).",
    )
    parser.add_argument(
        "--create-missing",
        action="store_true",
        help="Create the workbook named in config.ini when it does not exist yet.",
    )
    return parser


def configure_subcommands(
    parser: argparse.ArgumentParser,
) -> Mapping[str, CommandSpec]:
    """Wire all CLI sub-commands onto the supplied parser."""
    subparsers = parser.add_subparsers(dest="command", required=True, title="commands")
    write_specs = register_write_commands(subparsers)
    read_specs = register_read_commands(subparsers)
    return build_command_table([*write_specs.values(), *read_specs.values()])


def _spec(
    name: str,
    help_text: str,
    arguments: Callable[[argparse.ArgumentParser], None],
    execute: Callable[[core_logic.RuntimeContext, argparse.Namespace], int],
    *,
    mutates: bool = True,
) -> CommandSpec:
    def registrar(action: argparse._SubParsersAction[argparse.ArgumentParser]) -> argparse.ArgumentParser:
        parser = action.add_parser(name, help=help_text)
        arguments(parser)
        parser.set_defaults(command=name)
        return parser

    return CommandSpec(name=name, help_text=help_text, register=registrar, execute=execute, mutates=mutates)


def register_write_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare mutating CLI commands such as sales and stock entries."""
    specs = {
        "add-client": register_add_client_command(subparsers),
        "add-product": register_add_product_command(subparsers),
        "add-supplier": register_add_supplier_command(subparsers),
        "add-category": register_add_category_command(subparsers),
        "stock-entry": register_stock_entry_command(subparsers),
        "sale": register_sale_command(subparsers),
        "cancel-sale": register_cancel_sale_command(subparsers),
        "check-status": register_check_status_command(subparsers),
        "pay-rotativo": register_pay_rotativo_command(subparsers),
        "expense": register_expense_command(subparsers),
        "pay-expense": register_pay_expense_command(subparsers),
        "import": register_import_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_read_commands(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> Dict[str, CommandSpec]:
    """Declare read-only CLI commands such as reports."""
    specs = {
        "clients": register_clients_command(subparsers),
        "stock": register_stock_command(subparsers),
        "checks": register_checks_command(subparsers),
        "movements": register_movements_command(subparsers),
        "cash": register_cash_command(subparsers),
        "dre": register_dre_command(subparsers),
        "debts": register_debts_command(subparsers),
        "purchases": register_purchases_command(subparsers),
        "export": register_export_command(subparsers),
    }
    for spec in specs.values():
        spec.register(subparsers)
    return specs


def register_add_client_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-client``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--tax-id", default=None)
        parser.add_argument("--credit-limit", default="0")
        parser.add_argument("--opening-debt", default="0", help="Balance the client already owes.")
        parser.add_argument("--inactive", action="store_true", help="Mark the client as inactive on creation.")

    return _spec("add-client", "Register a new client in the Clients sheet.", arguments, run_add_client)


def register_add_product_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``add-product``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--description", required=True)
        parser.add_argument("--unit", default="KG")
        parser.add_argument("--sell-price", required=True)
        parser.add_argument("--stock", default="0", help="Opening stock quantity.")
        parser.add_argument("--average-cost", default="0", help="Opening unit cost.")

    return _spec("add-product", "Register a new product in the Products sheet.", arguments, run_add_product)


def register_add_supplier_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)
        parser.add_argument("--contact", default=None)

    return _spec("add-supplier", "Register a new supplier.", arguments, run_add_supplier)


def register_add_category_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", required=True)

    return _spec("add-category", "Register a new expense category.", arguments, run_add_category)


def register_stock_entry_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock-entry``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--product-id", type=int, required=True)
        parser.add_argument("--quantity", required=True)
        parser.add_argument("--cost-product", required=True, help="Unit cost paid to the supplier.")
        parser.add_argument("--supplier-id", type=int, default=None)
        parser.add_argument("--freight", default="0")
        parser.add_argument("--tolls", default="0")
        parser.add_argument("--food", default="0")
        parser.add_argument("--due-date", default=None, help="Invoice due date (YYYY-MM-DD).")

    return _spec("stock-entry", "Receive goods into stock.", arguments, run_stock_entry)


def register_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``sale``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--client-id", type=int, required=True)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod],
            required=True,
        )
        parser.add_argument(
            "--item",
            dest="items",
            action="append",
            required=True,
            metavar="PRODUCT_ID:QUANTITY:UNIT_PRICE",
            help="Sale line; repeat for several products.",
        )
        parser.add_argument("--total", default=None, help="Override the sum of the line totals.")
        parser.add_argument("--due-date", default=None)
        parser.add_argument("--check-bank", default=None)
        parser.add_argument("--check-number", default=None)
        parser.add_argument("--check-due-date", default=None)
        parser.add_argument(
            "--allow-over-limit",
            action="store_true",
            help="Accept a ROTATIVO sale that pushes the client past the credit limit.",
        )

    return _spec("sale", "Record a sale.", arguments, run_sale)


def register_cancel_sale_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--sale-id", type=int, required=True)

    return _spec("cancel-sale", "Cancel a sale and reverse its effects.", arguments, run_cancel_sale)


def register_check_status_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``check-status``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--check-id", type=int, required=True)
        parser.add_argument(
            "--status",
            choices=[member.value for member in CheckStatus if member is not CheckStatus.CANCELADO],
            required=True,
        )
        parser.add_argument("--date", default=None, help="Bank date of the change (defaults to now).")

    return _spec("check-status", "Move a check to a new status.", arguments, run_check_status)


def register_pay_rotativo_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``pay-rotativo``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--client-id", type=int, required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument(
            "--payment-method",
            choices=[member.value for member in PaymentMethod if member is not PaymentMethod.ROTATIVO],
            required=True,
        )
        parser.add_argument("--check-bank", default=None)
        parser.add_argument("--check-number", default=None)
        parser.add_argument("--check-due-date", default=None)

    return _spec("pay-rotativo", "Record a payment against a client's open account.", arguments, run_pay_rotativo)


def register_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``expense``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--description", required=True)
        parser.add_argument("--amount", required=True)
        parser.add_argument("--category", required=True)
        parser.add_argument("--competence-date", required=True)
        parser.add_argument("--payment-date", default=None, help="Marks the expense as paid on this date.")
        parser.add_argument("--supplier-id", type=int, default=None)

    return _spec("expense", "Register an operational expense.", arguments, run_expense)


def register_pay_expense_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--expense-id", type=int, required=True)
        parser.add_argument("--payment-date", required=True)

    return _spec("pay-expense", "Mark an open expense as paid.", arguments, run_pay_expense)


def register_import_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--input", type=Path, required=True, help="JSON backup to restore.")

    return _spec("import", "Replace the store with a JSON backup.", arguments, run_import)


def _date_range(parser: argparse.ArgumentParser) -> None:
    parser.add_argument("--start", default=None, help="First day to include (YYYY-MM-DD).")
    parser.add_argument("--end", default=None, help="Last day to include (YYYY-MM-DD).")


def register_clients_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--active-only", action="store_true")

    return _spec("clients", "List clients with their balances.", arguments, run_clients_report, mutates=False)


def register_stock_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``stock``."""
    return _spec("stock", "Display current stock levels and costs.", lambda parser: None, run_stock_report, mutates=False)


def register_checks_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _spec("checks", "List checks, those in custody first.", lambda parser: None, run_checks_report, mutates=False)


def register_movements_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _spec("movements", "Display the cash journal.", _date_range, run_movements_report, mutates=False)


def register_cash_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``cash``."""
    return _spec("cash", "Display daily cash flow and the cash balance.", _date_range, run_cash_report, mutates=False)


def register_dre_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    return _spec("dre", "Display the monthly income statement.", lambda parser: None, run_dre_report, mutates=False)


def register_debts_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    """Register the parser and executor for ``debts``."""

    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--name", default=None, help="Only clients whose name contains this text.")

    return _spec("debts", "Display outstanding client balances.", arguments, run_debts_report, mutates=False)


def register_purchases_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        _date_range(parser)
        parser.add_argument("--supplier-id", type=int, default=None)

    return _spec("purchases", "Display stock purchases grouped by supplier.", arguments, run_purchases_report, mutates=False)


def register_export_command(
    subparsers: argparse._SubParsersAction[argparse.ArgumentParser],
) -> CommandSpec:
    def arguments(parser: argparse.ArgumentParser) -> None:
        parser.add_argument("--output", type=Path, required=True, help="Destination JSON file.")

    return _spec("export", "Write a JSON backup of the whole store.", arguments, run_export, mutates=False)


def load_runtime_context(
    config_path: Optional[Path] = None, *, create_missing: bool = False
) -> core_logic.RuntimeContext:
    """Resolve the runtime context for CLI operations."""
    context = core_logic.load_runtime_context(config_path, create_missing=create_missing)
    core_logic.ensure_schema_version(context)
    return context


def dispatch_command(
    context: core_logic.RuntimeContext,
    args: argparse.Namespace,
    command_table: Mapping[str, CommandSpec],
) -> int:
    """Dispatch the parsed arguments to the configured executor."""
    if not hasattr(args, "command") or args.command is None:
        raise KeyError("No command specified")
    spec = command_table.get(args.command)
    if spec is None:
        raise KeyError(f"Unknown command: {args.command}")
    return spec.execute(context, args)


def build_command_table(
    specs: Iterable[CommandSpec],
) -> MutableMapping[str, CommandSpec]:
    """Build an index of command specifications keyed by command name."""
    table: Dict[str, CommandSpec] = {}
    for spec in specs:
        if spec.name in table:
            raise ValueError(f"Duplicate command name: {spec.name}")
        table[spec.name] = spec
    return table


def _decimal(raw: Optional[str], field_name: str) -> Decimal:
    return core_logic.require_decimal(raw, field_name)


def translate_add_client(args: argparse.Namespace) -> data_manager.ClientRow:
    """Translate CLI args into a new client record."""
    return data_manager.ClientRow(
        client_id=None,
        name=args.name,
        tax_id=args.tax_id,
        credit_limit=_decimal(args.credit_limit, "Credit limit"),
        current_debt=_decimal(args.opening_debt, "Opening debt"),
        is_active=not getattr(args, "inactive", False),
    )


def translate_add_product(args: argparse.Namespace) -> data_manager.ProductRow:
    """Translate CLI args into a new product record."""
    return data_manager.ProductRow(
        product_id=None,
        description=args.description,
        unit=args.unit,
        current_stock=_decimal(args.stock, "Stock"),
        average_cost=_decimal(args.average_cost, "Average cost"),
        sell_price=_decimal(args.sell_price, "Sell price"),
    )


def translate_stock_entry(args: argparse.Namespace) -> core_logic.StockEntryCommand:
    """Translate CLI args into a stock entry command object."""
    return core_logic.StockEntryCommand(
        product_id=args.product_id,
        supplier_id=args.supplier_id,
        quantity=_decimal(args.quantity, "Quantity"),
        cost_product=_decimal(args.cost_product, "Product cost"),
        cost_freight=_decimal(args.freight, "Freight cost"),
        cost_tolls=_decimal(args.tolls, "Toll cost"),
        cost_food=_decimal(args.food, "Food cost"),
        due_date=args.due_date,
    )


def parse_sale_item(raw: str) -> core_logic.SaleItemCommand:
    """Parse ``PRODUCT_ID:QUANTITY:UNIT_PRICE`` into a sale line.

    Raises:
        ValueError: If the text does not have three fields or a field is not
            numeric.
    """
    parts = raw.split(":")
    if len(parts) != 3:
        raise ValueError(f"Sale item must look like PRODUCT_ID:QUANTITY:UNIT_PRICE, got {raw!r}")
    product_id, quantity, unit_price = parts
    try:
        parsed_id = int(product_id)
    except ValueError as exc:
        raise ValueError(f"Product id must be an integer, got {product_id!r}") from exc
    return core_logic.SaleItemCommand(
        product_id=parsed_id,
        quantity=_decimal(quantity, "Quantity"),
        unit_price=_decimal(unit_price, "Unit price"),
    )


def translate_sale(args: argparse.Namespace) -> core_logic.SaleCommand:
    """Translate CLI args into a sale command object."""
    return core_logic.SaleCommand(
        client_id=args.client_id,
        payment_method=PaymentMethod(args.payment_method),
        items=[parse_sale_item(raw) for raw in args.items],
        total=_decimal(args.total, "Sale total") if args.total is not None else None,
        due_date=args.due_date,
    )


def translate_pay_rotativo(args: argparse.Namespace) -> core_logic.RotativoPaymentCommand:
    """Translate CLI args into a rotativo payment command object."""
    return core_logic.RotativoPaymentCommand(
        client_id=args.client_id,
        amount=_decimal(args.amount, "Payment amount"),
        payment_method=PaymentMethod(args.payment_method),
        check_bank=args.check_bank,
        check_number=args.check_number,
        check_due_date=args.check_due_date,
    )


def translate_expense(args: argparse.Namespace) -> data_manager.ExpenseRow:
    """Translate CLI args into a new expense record."""
    paid = args.payment_date is not None
    return data_manager.ExpenseRow(
        expense_id=None,
        description=args.description,
        amount=_decimal(args.amount, "Expense amount"),
        competence_date=args.competence_date,
        payment_date=args.payment_date,
        status=(ExpenseStatus.PAGO if paid else ExpenseStatus.ABERTO).value,
        category=args.category,
        supplier_id=args.supplier_id,
    )


def run_add_client(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    client = core_logic.save_client(context, translate_add_client(args))
    print(f"Client {client.client_id} saved: {client.name}")
    return 0


def run_add_product(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    product = core_logic.save_product(context, translate_add_product(args))
    print(f"Product {product.product_id} saved: {product.description}")
    return 0


def run_add_supplier(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    supplier = core_logic.save_supplier(
        context,
        data_manager.SupplierRow(supplier_id=None, name=args.name, contact=args.contact),
    )
    print(f"Supplier {supplier.supplier_id} saved: {supplier.name}")
    return 0


def run_add_category(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    category = core_logic.save_expense_category(
        context,
        data_manager.ExpenseCategoryRow(category_id=None, name=args.name),
    )
    print(f"Category {category.category_id} saved: {category.name}")
    return 0


def run_stock_entry(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the stock receiving workflow via the BLL."""
    entry = core_logic.add_stock_entry(context, translate_stock_entry(args))
    product = core_logic.get_product(context, entry.product_id)
    print(
        f"Entry {entry.entry_id}: {product.description} stock {product.current_stock} "
        f"at average cost {core_logic.to_money(product.average_cost)}"
    )
    return 0


def run_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Execute the sale workflow via the BLL.

    Stock shortfalls are logged as warnings. A ROTATIVO sale over the credit
    limit is refused unless ``--allow-over-limit`` is given. A CHEQUE sale
    also registers the check in custody, linked to the new sale.
    """
    command = translate_sale(args)
    method = command.payment_method

    if method is PaymentMethod.CHEQUE and not (args.check_number and args.check_due_date):
        raise ValueError("CHEQUE sales need --check-number and --check-due-date")

    for product, remaining in core_logic.find_stock_shortfalls(context, command.items):
        log.warning("Stock of '%s' will drop to %s", product.description, remaining)

    if method is PaymentMethod.ROTATIVO:
        total = command.total
        if total is None:
            total = sum((item.quantity * item.unit_price for item in command.items), Decimal("0"))
        if core_logic.exceeds_credit_limit(context, command.client_id, total) and not args.allow_over_limit:
            raise core_logic.BusinessRuleViolation(
                "Sale exceeds the client's credit limit; rerun with --allow-over-limit to accept it"
            )

    sale_id = core_logic.create_sale(context, command)
    sale = core_logic.get_sale(context, sale_id)

    if method is PaymentMethod.CHEQUE:
        check = core_logic.save_check(
            context,
            data_manager.CheckRow(
                check_id=None,
                client_id=sale.client_id,
                client_name=sale.client_name,
                origin_sale_id=sale.sale_id,
                bank=args.check_bank or "",
                number=args.check_number,
                amount=sale.total,
                due_date=args.check_due_date,
                status=CheckStatus.CUSTODIA.value,
            ),
        )
        print(f"Check {check.check_id} #{check.number} held in custody until {check.due_date}")

    print(f"Sale {sale.sale_id} recorded: {sale.total} via {sale.payment_method}")
    return 0


def run_cancel_sale(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    if not core_logic.cancel_sale(context, args.sale_id):
        raise core_logic.BusinessRuleViolation(f"Sale {args.sale_id} cannot be cancelled")
    print(f"Sale {args.sale_id} cancelled")
    return 0


def run_check_status(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    check = core_logic.update_check_status(
        context,
        args.check_id,
        CheckStatus(args.status),
        when=args.date,
    )
    print(f"Check {check.check_id} #{check.number} is now {check.status}")
    return 0


def run_pay_rotativo(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    command = translate_pay_rotativo(args)
    core_logic.pay_rotativo(context, command)
    client = core_logic.get_client(context, command.client_id)
    print(f"Client {client.client_id} ({client.name}) now owes {client.current_debt}")
    return 0


def run_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.save_expense(context, translate_expense(args))
    print(f"Expense {expense.expense_id} saved as {expense.status}")
    return 0


def run_pay_expense(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    expense = core_logic.get_expense(context, args.expense_id)
    saved = core_logic.save_expense(
        context,
        data_manager.ExpenseRow(
            expense_id=expense.expense_id,
            description=expense.description,
            amount=expense.amount,
            competence_date=expense.competence_date,
            payment_date=args.payment_date,
            status=ExpenseStatus.PAGO.value,
            category=expense.category,
            supplier_id=expense.supplier_id,
        ),
    )
    print(f"Expense {saved.expense_id} paid on {saved.payment_date}")
    return 0


def run_import(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    payload = Path(args.input).expanduser().read_text(encoding="utf-8")
    if not backup.import_store(context, payload):
        raise ValueError(f"Backup rejected: {args.input}")
    print(f"Store restored from {args.input}")
    return 0


def _table(rows: List[Sequence[object]]) -> None:
    for row in rows:
        print(" | ".join(str(value) for value in row))


def run_clients_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    clients = core_logic.list_clients(context, include_inactive=not args.active_only)
    _table(
        [("ID", "Name", "Debt", "Limit")]
        + [(c.client_id, c.name, c.current_debt, c.credit_limit) for c in clients]
    )
    return 0


def run_stock_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print stock, average cost and price per product."""
    rows: List[Sequence[object]] = [("ID", "Product", "Stock", "Unit", "Avg cost", "Price")]
    for product in core_logic.list_products(context):
        rows.append(
            (
                product.product_id,
                product.description,
                product.current_stock,
                product.unit,
                core_logic.to_money(product.average_cost),
                product.sell_price,
            )
        )
        if product.current_stock < 0:
            log.warning("Product '%s' has negative stock %s", product.description, product.current_stock)
    _table(rows)
    return 0


def run_checks_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    checks = core_logic.sort_checks_for_display(core_logic.list_checks(context))
    _table(
        [("ID", "Status", "Due", "Client", "Bank", "Number", "Amount")]
        + [(c.check_id, c.status, c.due_date, c.client_name, c.bank, c.number, c.amount) for c in checks]
    )
    return 0


def run_movements_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    start, end = reports.calendar_day(args.start), reports.calendar_day(args.end)
    rows: List[Sequence[object]] = [("Date", "Type", "Amount", "Category", "Description", "Method")]
    for movement in core_logic.list_movements(context):
        day = reports.calendar_day(movement.timestamp_iso)
        if day is None or (start and day < start) or (end and day > end):
            continue
        rows.append(
            (
                movement.timestamp_iso,
                movement.movement_type,
                movement.amount,
                movement.category,
                movement.description,
                movement.payment_method,
            )
        )
    _table(rows)
    return 0


def run_cash_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print daily totals and the cash balance at the end of the range."""
    days = reports.summarize_cash_flow(context, start=args.start, end=args.end)
    _table(
        [("Day", "Entrada", "Saida", "Net")]
        + [(day.day.isoformat(), day.entrada, day.saida, day.net) for day in days]
    )
    print(f"Balance: {reports.calculate_cash_balance(context, until=args.end)}")
    return 0


def run_dre_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    statement = reports.calculate_income_statement(context)
    _table(
        [("Month", "Revenue", "COGS", "Expenses", "Profit")]
        + [
            (line.month, line.revenue, core_logic.to_money(line.cogs), line.expenses, core_logic.to_money(line.profit))
            for line in statement
        ]
    )
    return 0


def run_debts_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    """Print each debtor with the sales that explain the balance."""
    for debtor in reports.calculate_outstanding_debts(context, name_filter=args.name):
        print(f"{debtor.client.name} - {debtor.client.current_debt}")
        for item in debtor.items:
            reference = f"Venda #{item.sale_id}" if item.sale_id is not None else "Saldo anterior"
            print(f"  {item.timestamp_iso or '-'} | {reference} | {item.total} | {item.open_amount}")
    return 0


def run_purchases_report(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    groups = reports.calculate_purchases(
        context,
        start=args.start,
        end=args.end,
        supplier_id=args.supplier_id,
    )
    grand_total = Decimal("0")
    for group in groups:
        print(f"{group.supplier_name} - {core_logic.to_money(group.total)}")
        for entry in group.entries:
            print(f"  {entry.timestamp_iso} | product {entry.product_id} | {entry.quantity} x {core_logic.to_money(entry.final_unit_cost)}")
        grand_total += group.total
    print(f"Total: {core_logic.to_money(grand_total)}")
    return 0


def run_export(context: core_logic.RuntimeContext, args: argparse.Namespace) -> int:
    destination = Path(args.output).expanduser()
    destination.parent.mkdir(parents=True, exist_ok=True)
    destination.write_text(backup.export_store(context), encoding="utf-8")
    print(f"Backup written to {destination}")
    return 0


def handle_cli_error(error: Exception) -> int:
    """Convert raised exceptions into user-friendly exit codes."""
    if isinstance(error, core_logic.BusinessRuleViolation):
        log.error("%s", error)
        return 2
    if isinstance(error, FileNotFoundError):
        log.error("%s", error)
        return 3
    if isinstance(error, ValueError):
        log.error("%s", error)
        return 4
    log.error("%s", error)
    return 1


def persist_workbook(context: core_logic.RuntimeContext) -> None:
    """Persist workbook changes after successful execution."""
    try:
        core_logic.persist_context(context)
    except PermissionError as error:
        raise RuntimeError(str(error)) from error


def main(argv: Sequence[str] | None = None) -> int:
    """CLI entry point that orchestrates parsing and execution."""
    parser = build_parser()
    command_table = configure_subcommands(parser)
    args = parser.parse_args(argv)
    try:
        context = load_runtime_context(
            getattr(args, "config", None),
            create_missing=getattr(args, "create_missing", False),
        )
        exit_code = dispatch_command(context, args, command_table)
        if exit_code == 0 and command_table[args.command].mutates:
            persist_workbook(context)
        return exit_code
    except Exception as error:
        return handle_cli_error(error)
