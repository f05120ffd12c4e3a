"""Tests for the whole-store JSON backup."""

from __future__ import annotations

import json
from decimal import Decimal

import pytest

from peixaria_erp import backup, core_logic, data_manager
from peixaria_erp.constants import CheckStatus, PaymentMethod, SheetName
from peixaria_erp.setup_excel import build_master_workbook


def _populate(context) -> int:
    client = core_logic.save_client(
        context,
        data_manager.ClientRow(client_id=None, name="Maria", tax_id="123", credit_limit=Decimal("200")),
    )
    product = core_logic.save_product(
        context,
        data_manager.ProductRow(
            product_id=None,
            description="Camarão",
            current_stock=Decimal("8"),
            average_cost=Decimal("31.25"),
            sell_price=Decimal("45.00"),
        ),
    )
    sale_id = core_logic.create_sale(
        context,
        core_logic.SaleCommand(
            client_id=client.client_id,
            payment_method=PaymentMethod.CHEQUE,
            items=[
                core_logic.SaleItemCommand(
                    product_id=product.product_id,
                    quantity=Decimal("1.5"),
                    unit_price=Decimal("45.00"),
                )
            ],
        ),
    )
    core_logic.save_check(
        context,
        data_manager.CheckRow(
            check_id=None,
            client_id=client.client_id,
            client_name=client.name,
            origin_sale_id=sale_id,
            bank="Itaú",
            number="0042",
            amount=Decimal("67.50"),
            due_date="2024-07-01",
            status=CheckStatus.CUSTODIA.value,
        ),
    )
    return sale_id


def test_export_store_writes_every_sheet_with_text_amounts(ledger):
    _populate(ledger)

    document = json.loads(backup.export_store(ledger))

    for sheet_name in data_manager.SHEET_COLUMNS:
        assert sheet_name in document
    (product,) = document[SheetName.PRODUCTS.value]
    assert product["AverageCost"] == "31.25"
    assert product["Description"] == "Camarão"
    assert len(document[SheetName.SALE_ITEMS.value]) == 1


def test_import_store_restores_an_exported_snapshot(ledger, settings):
    sale_id = _populate(ledger)
    snapshot = backup.export_store(ledger)
    target = core_logic.RuntimeContext(settings=settings, workbook=build_master_workbook())

    assert backup.import_store(target, snapshot) is True

    assert core_logic.list_clients(target) == core_logic.list_clients(ledger)
    assert core_logic.list_products(target) == core_logic.list_products(ledger)
    assert core_logic.list_checks(target) == core_logic.list_checks(ledger)
    assert core_logic.get_sale(target, sale_id) == core_logic.get_sale(ledger, sale_id)


def test_import_store_replaces_only_the_collections_present(ledger):
    _populate(ledger)
    products_before = core_logic.list_products(ledger)
    core_logic.list_clients(ledger)

    payload = json.dumps({"Clients": [{"ClientID": 5, "Name": "João", "CreditLimit": "50", "CurrentDebt": "12.30"}]})

    assert backup.import_store(ledger, payload) is True

    (client,) = core_logic.list_clients(ledger)
    assert (client.client_id, client.name, client.current_debt, client.is_active) == (5, "João", Decimal("12.30"), True)
    assert core_logic.list_products(ledger) == products_before


@pytest.mark.parametrize(
    "payload",
    [
        "{not json",
        "[]",
        json.dumps({"Unknown": []}),
        json.dumps({"Clients": "Maria"}),
        json.dumps({"Clients": [], "Products": [1, 2]}),
    ],
)
def test_import_store_rejects_bad_payloads_without_writing(ledger, payload):
    _populate(ledger)
    clients_before = core_logic.list_clients(ledger)

    assert backup.import_store(ledger, payload) is False

    assert core_logic.list_clients(ledger) == clients_before
