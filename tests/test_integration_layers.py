"""Integration tests describing the end-to-end Peixaria ERP workflows.

These scenarios drive the business logic layer against a real workbook on
disk, persisting and reloading between steps the way consecutive CLI runs
would.
"""

from __future__ import annotations

import argparse
from datetime import UTC, datetime
from decimal import Decimal

import pytest

from peixaria_erp import backup, cli, core_logic, data_manager, reports
from peixaria_erp.constants import (
    EXPENSE_PAYMENT_METHOD,
    CheckStatus,
    ExpenseStatus,
    MovementCategory,
    MovementType,
    PaymentMethod,
    SaleStatus,
)


def _reload(context: core_logic.RuntimeContext) -> core_logic.RuntimeContext:
    """Persist and reopen the workbook so later steps read what is on disk."""

    core_logic.persist_context(context)
    return core_logic.refresh_context(context)


def _register_client(context, *, name="Maria", credit_limit="100") -> data_manager.ClientRow:
    return core_logic.save_client(
        context,
        data_manager.ClientRow(client_id=None, name=name, credit_limit=Decimal(credit_limit)),
    )


def _register_product(context, *, description="Tilápia", stock="0") -> data_manager.ProductRow:
    return core_logic.save_product(
        context,
        data_manager.ProductRow(
            product_id=None,
            description=description,
            current_stock=Decimal(stock),
            sell_price=Decimal("5.00"),
        ),
    )


def _sell(context, client, product, *, method, quantity, unit_price="5.00") -> int:
    return core_logic.create_sale(
        context,
        core_logic.SaleCommand(
            client_id=client.client_id,
            payment_method=method,
            items=[
                core_logic.SaleItemCommand(
                    product_id=product.product_id,
                    quantity=Decimal(quantity),
                    unit_price=Decimal(unit_price),
                )
            ],
        ),
    )


def _movements(context, movement_type: MovementType) -> list[data_manager.MovementRow]:
    return [m for m in core_logic.list_movements(context) if m.movement_type == movement_type.value]


def test_cash_sale_and_cancellation_flow(runtime_context):
    """Receive stock, sell for cash, then cancel and return to the start."""

    context = runtime_context
    client = _register_client(context)
    product = _register_product(context)
    context = _reload(context)

    core_logic.add_stock_entry(
        context,
        core_logic.StockEntryCommand(product_id=product.product_id, quantity=Decimal("10"), cost_product=Decimal("2.00")),
    )
    context = _reload(context)
    stocked = core_logic.get_product(context, product.product_id)
    assert stocked.current_stock == Decimal("10")
    assert stocked.average_cost == Decimal("2.00")

    sale_id = _sell(context, client, product, method=PaymentMethod.DINHEIRO, quantity="3")
    context = _reload(context)

    assert core_logic.get_product(context, product.product_id).current_stock == Decimal("7")
    (entrada,) = _movements(context, MovementType.ENTRADA)
    assert entrada.amount == Decimal("15.00")
    assert entrada.category == MovementCategory.CASH_SALE.value
    assert reports.calculate_cash_balance(context) == Decimal("15.00")
    (line,) = core_logic.get_sale(context, sale_id).items
    assert line.applied_cost == Decimal("2.00")

    assert core_logic.cancel_sale(context, sale_id) is True
    context = _reload(context)

    assert core_logic.get_product(context, product.product_id).current_stock == Decimal("10")
    assert core_logic.get_sale(context, sale_id).status == SaleStatus.CANCELADA.value
    (saida,) = _movements(context, MovementType.SAIDA)
    assert saida.category == MovementCategory.SALE_REVERSAL.value
    assert reports.calculate_cash_balance(context) == Decimal("0")
    assert reports.calculate_income_statement(context) == []

    # A second cancellation is refused and changes nothing.
    assert core_logic.cancel_sale(context, sale_id) is False
    assert len(core_logic.list_movements(context)) == 2


def test_rotativo_paid_by_bounced_check_flow(runtime_context):
    """A check that pays an open account puts the debt back when it bounces."""

    context = runtime_context
    client = _register_client(context, credit_limit="100")
    product = _register_product(context, stock="20")
    context = _reload(context)

    _sell(context, client, product, method=PaymentMethod.ROTATIVO, quantity="10")
    context = _reload(context)
    assert core_logic.get_client(context, client.client_id).current_debt == Decimal("50.00")
    assert core_logic.list_movements(context) == []

    check = core_logic.pay_rotativo(
        context,
        core_logic.RotativoPaymentCommand(
            client_id=client.client_id,
            amount=Decimal("50"),
            payment_method=PaymentMethod.CHEQUE,
            check_bank="Bradesco",
            check_number="000123",
            check_due_date="2024-07-15",
        ),
    )
    context = _reload(context)
    assert core_logic.get_client(context, client.client_id).current_debt == Decimal("0")
    assert core_logic.get_check(context, check.check_id).status == CheckStatus.CUSTODIA.value

    core_logic.update_check_status(context, check.check_id, CheckStatus.DEVOLVIDO)
    context = _reload(context)

    assert core_logic.get_client(context, client.client_id).current_debt == Decimal("50.00")
    assert core_logic.list_movements(context) == []
    bounced = [s for s in core_logic.list_sales(context) if s.status == SaleStatus.CHEQUE_DEVOLVIDO.value]
    assert len(bounced) == 1
    assert bounced[0].payment_method == PaymentMethod.ROTATIVO.value
    assert bounced[0].items[0].product_name == "CHEQUE DEVOLVIDO #000123 (Banco: Bradesco)"

    # The bounced check alone explains the open balance, and it is not revenue.
    (debtor,) = reports.calculate_outstanding_debts(context)
    assert [item.sale_id for item in debtor.items] == [bounced[0].sale_id]
    assert sum(line.revenue for line in reports.calculate_income_statement(context)) == Decimal("50.00")

    # Bounced-check sales cannot be cancelled.
    assert core_logic.cancel_sale(context, bounced[0].sale_id) is False


def test_cheque_sale_cleared_then_bounced_flow(runtime_context):
    """Clearing books one ENTRADA, bouncing books one SAIDA and a new debt."""

    context = runtime_context
    client = _register_client(context, credit_limit="0")
    product = _register_product(context, stock="20")
    context = _reload(context)

    sale_id = _sell(context, client, product, method=PaymentMethod.CHEQUE, quantity="20")
    check = core_logic.save_check(
        context,
        data_manager.CheckRow(
            check_id=None,
            client_id=client.client_id,
            client_name=client.name,
            origin_sale_id=sale_id,
            bank="Itaú",
            number="0042",
            amount=Decimal("100.00"),
            due_date="2024-06-01",
            status=CheckStatus.CUSTODIA.value,
        ),
    )
    context = _reload(context)
    assert core_logic.list_movements(context) == []

    core_logic.update_check_status(context, check.check_id, CheckStatus.COMPENSADO, when="2024-06-03")
    context = _reload(context)
    (entrada,) = core_logic.list_movements(context)
    assert entrada.movement_type == MovementType.ENTRADA.value
    assert entrada.amount == Decimal("100.00")
    assert reports.calendar_day(entrada.timestamp_iso).isoformat() == "2024-06-03"

    core_logic.update_check_status(context, check.check_id, CheckStatus.DEVOLVIDO)
    context = _reload(context)

    assert len(_movements(context, MovementType.ENTRADA)) == 1
    (saida,) = _movements(context, MovementType.SAIDA)
    assert saida.amount == Decimal("100.00")
    assert saida.category == MovementCategory.CHECK_REVERSAL.value
    assert len(core_logic.list_sales(context)) == 2
    assert core_logic.get_client(context, client.client_id).current_debt == Decimal("100.00")
    assert reports.calculate_cash_balance(context) == Decimal("0")

    # Bouncing again is not a transition and books nothing new.
    core_logic.update_check_status(context, check.check_id, CheckStatus.DEVOLVIDO)
    assert len(core_logic.list_movements(context)) == 2
    assert len(core_logic.list_sales(context)) == 2


def test_cancelling_cheque_sale_reverses_cleared_check_flow(runtime_context):
    context = runtime_context
    client = _register_client(context)
    product = _register_product(context, stock="4")
    sale_id = _sell(context, client, product, method=PaymentMethod.CHEQUE, quantity="4")
    check = core_logic.save_check(
        context,
        data_manager.CheckRow(
            check_id=None,
            client_id=client.client_id,
            client_name=client.name,
            origin_sale_id=sale_id,
            bank="Caixa",
            number="77",
            amount=Decimal("20.00"),
            due_date="2024-06-10",
            status=CheckStatus.CUSTODIA.value,
        ),
    )
    core_logic.update_check_status(context, check.check_id, CheckStatus.COMPENSADO)
    context = _reload(context)

    assert core_logic.cancel_sale(context, sale_id) is True
    context = _reload(context)

    assert core_logic.get_check(context, check.check_id).status == CheckStatus.CANCELADO.value
    assert core_logic.get_product(context, product.product_id).current_stock == Decimal("4")
    assert reports.calculate_cash_balance(context) == Decimal("0")
    with pytest.raises(core_logic.BusinessRuleViolation):
        core_logic.update_check_status(context, check.check_id, CheckStatus.DEVOLVIDO)


def test_weighted_average_cost_with_extra_costs_flow(runtime_context):
    context = runtime_context
    product = _register_product(context)
    supplier = core_logic.save_supplier(context, data_manager.SupplierRow(supplier_id=None, name="Pescados Norte"))
    context = _reload(context)

    core_logic.add_stock_entry(
        context,
        core_logic.StockEntryCommand(
            product_id=product.product_id,
            supplier_id=supplier.supplier_id,
            quantity=Decimal("10"),
            cost_product=Decimal("2.00"),
            cost_freight=Decimal("10.00"),
            timestamp=datetime(2024, 5, 2, 8, tzinfo=UTC),
        ),
    )
    context = _reload(context)
    core_logic.add_stock_entry(
        context,
        core_logic.StockEntryCommand(
            product_id=product.product_id,
            supplier_id=supplier.supplier_id,
            quantity=Decimal("10"),
            cost_product=Decimal("5.00"),
            timestamp=datetime(2024, 5, 9, 8, tzinfo=UTC),
        ),
    )
    context = _reload(context)

    stocked = core_logic.get_product(context, product.product_id)
    assert stocked.current_stock == Decimal("20")
    assert core_logic.to_money(stocked.average_cost) == Decimal("4.00")
    (group,) = reports.calculate_purchases(context)
    assert group.supplier_name == "Pescados Norte"
    assert group.total == Decimal("80.00")


def test_repeating_average_cost_survives_reload(runtime_context):
    context = runtime_context
    product = _register_product(context)

    for quantity, cost in (("1", "1.00"), ("2", "2.00")):
        core_logic.add_stock_entry(
            context,
            core_logic.StockEntryCommand(
                product_id=product.product_id,
                quantity=Decimal(quantity),
                cost_product=Decimal(cost),
            ),
        )
    in_memory = core_logic.get_product(context, product.product_id).average_cost
    context = _reload(context)

    reloaded = core_logic.get_product(context, product.product_id).average_cost
    assert in_memory == Decimal("1.666667")
    assert reloaded == in_memory


def test_expense_lifecycle_flow(runtime_context):
    context = runtime_context
    expense = core_logic.save_expense(
        context,
        data_manager.ExpenseRow(
            expense_id=None,
            description="Aluguel maio",
            amount=Decimal("900.00"),
            competence_date="2024-05-01",
            payment_date=None,
            status=ExpenseStatus.ABERTO.value,
            category="Aluguel",
        ),
    )
    context = _reload(context)
    assert core_logic.list_movements(context) == []

    cli.run_pay_expense(context, argparse.Namespace(expense_id=expense.expense_id, payment_date="2024-06-05"))
    context = _reload(context)

    (saida,) = core_logic.list_movements(context)
    assert saida.movement_type == MovementType.SAIDA.value
    assert saida.description == "Pgto: Aluguel maio"
    assert saida.payment_method == EXPENSE_PAYMENT_METHOD
    assert reports.calendar_day(saida.timestamp_iso).isoformat() == "2024-06-05"
    (may,) = reports.calculate_income_statement(context)
    assert (may.month, may.expenses) == ("2024-05", Decimal("900.00"))


def test_backup_round_trip_between_workbooks_flow(config_factory):
    source = core_logic.load_runtime_context(config_factory().config_path)
    client = _register_client(source)
    product = _register_product(source, stock="5")
    _sell(source, client, product, method=PaymentMethod.ROTATIVO, quantity="2")
    source = _reload(source)

    target = core_logic.load_runtime_context(config_factory().config_path)
    assert backup.import_store(target, backup.export_store(source)) is True
    target = _reload(target)

    assert core_logic.list_clients(target) == core_logic.list_clients(source)
    assert core_logic.list_sales(target) == core_logic.list_sales(source)
    assert core_logic.get_client(target, client.client_id).current_debt == Decimal("10.00")


def test_cli_sale_cancel_flow(config_file, capsys):
    """Drive a full cycle through the CLI entry point."""

    base = ["--config", str(config_file)]
    assert cli.main([*base, "add-client", "--name", "Maria", "--credit-limit", "50"]) == 0
    assert cli.main([*base, "add-product", "--description", "Tilápia", "--sell-price", "5", "--stock", "10"]) == 0
    context = core_logic.load_runtime_context(config_file)
    (client,) = core_logic.list_clients(context)
    (product,) = core_logic.list_products(context)

    sale = [*base, "sale", "--client-id", str(client.client_id), "--payment-method", "PIX"]
    assert cli.main([*sale, "--item", f"{product.product_id}:2:5"]) == 0
    context = core_logic.load_runtime_context(config_file)
    (recorded,) = core_logic.list_sales(context)

    assert cli.main([*base, "cancel-sale", "--sale-id", str(recorded.sale_id)]) == 0
    assert cli.main([*base, "cancel-sale", "--sale-id", str(recorded.sale_id)]) == 2
    capsys.readouterr()

    assert cli.main([*base, "cash"]) == 0
    assert "Balance: 0" in capsys.readouterr().out
    context = core_logic.load_runtime_context(config_file)
    assert core_logic.get_product(context, product.product_id).current_stock == Decimal("10")
