"""Enumerations shared across the Peixaria ERP layers.

The data access layer (DAL), the ledger engine (BLL) and the CLI all import
their status codes, payment methods and sheet names from here so the
workbook vocabulary stays in one place.
"""

from __future__ import annotations

from decimal import Decimal
from enum import Enum


# Workbook layout version expected by every layer.
EXPECTED_SCHEMA_VERSION = "2.0.0"

# Amounts are kept in a single currency and rounded to cents.
MONEY_QUANTUM = Decimal("0.01")

# Unit costs keep six places so they survive the float cells of a saved workbook.
COST_QUANTUM = Decimal("0.000001")

# Debts at or below this value are treated as settled in reports.
DEBT_TOLERANCE = Decimal("0.01")


class PaymentMethod(str, Enum):
    """Enumerate the payment methods accepted at the point of sale."""

    DINHEIRO = "DINHEIRO"
    PIX = "PIX"
    CHEQUE = "CHEQUE"
    ROTATIVO = "ROTATIVO"


class SaleStatus(str, Enum):
    """Enumerate the lifecycle states of a sale."""

    CONCLUIDA = "CONCLUIDA"
    CANCELADA = "CANCELADA"
    CHEQUE_DEVOLVIDO = "CHEQUE_DEVOLVIDO"


class CheckStatus(str, Enum):
    """Enumerate the lifecycle states of a postdated check."""

    CUSTODIA = "CUSTODIA"
    COMPENSADO = "COMPENSADO"
    DEVOLVIDO = "DEVOLVIDO"
    CANCELADO = "CANCELADO"


class MovementType(str, Enum):
    """Direction of a cash journal movement."""

    ENTRADA = "ENTRADA"
    SAIDA = "SAIDA"


class ExpenseStatus(str, Enum):
    """Enumerate the payment states of an operational expense."""

    ABERTO = "ABERTO"
    PAGO = "PAGO"


class MovementCategory(str, Enum):
    """Category labels written to the cash journal by the ledger engine."""

    CASH_SALE = "Venda à Vista"
    SALE_REVERSAL = "Estorno/Cancelamento"
    CHECK_CLEARED = "Compensação Cheque"
    CHECK_REVERSAL = "Estorno Cheque"
    ROTATIVO_PAYMENT = "Recebimento Rotativo"


# Payment method label used for expense payouts in the cash journal.
EXPENSE_PAYMENT_METHOD = "DINHEIRO/PIX"


class SheetName(str, Enum):
    """Enumerate the workbook sheet names managed by the DAL."""

    CLIENTS = "Clients"
    PRODUCTS = "Products"
    SUPPLIERS = "Suppliers"
    STOCK_ENTRIES = "StockEntries"
    SALES = "Sales"
    SALE_ITEMS = "SaleItems"
    CHECKS = "Checks"
    MOVEMENTS = "Movements"
    EXPENSES = "Expenses"
    EXPENSE_CATEGORIES = "ExpenseCategories"


DEFAULT_EXPENSE_CATEGORIES = (
    "Água/Luz",
    "Aluguel",
    "Salários",
    "Manutenção",
    "Impostos",
    "Outros",
)


__all__ = [
    "EXPECTED_SCHEMA_VERSION",
    "MONEY_QUANTUM",
    "COST_QUANTUM",
    "DEBT_TOLERANCE",
    "PaymentMethod",
    "SaleStatus",
    "CheckStatus",
    "MovementType",
    "ExpenseStatus",
    "MovementCategory",
    "EXPENSE_PAYMENT_METHOD",
    "SheetName",
    "DEFAULT_EXPENSE_CATEGORIES",
]
