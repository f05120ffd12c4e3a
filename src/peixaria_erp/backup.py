"""Whole-store JSON export and import.

The snapshot is a JSON object keyed by sheet name. Each collection is a list
of objects mapping column headers to cell values, with money and quantities
written as strings so no precision is lost on the way through JSON.
"""

from __future__ import annotations

import json
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, List, Sequence, Union

from . import core_logic, data_manager, log
from .constants import EXPECTED_SCHEMA_VERSION, SheetName


SCHEMA_KEY = "SchemaVersion"


def _encode(value: Any) -> Any:
    if isinstance(value, Decimal):
        return str(value)
    if isinstance(value, (datetime, date)):
        return value.isoformat()
    raise TypeError(f"Object of type {type(value).__name__} is not JSON serializable")


def snapshot_store(context: core_logic.RuntimeContext) -> Dict[str, Any]:
    """Return every sheet as a list of header-to-value mappings."""

    snapshot: Dict[str, Any] = {SCHEMA_KEY: EXPECTED_SCHEMA_VERSION}
    for sheet_name, columns in data_manager.SHEET_COLUMNS.items():
        snapshot[sheet_name] = [
            {column: raw[index] if index < len(raw) else None for index, column in enumerate(columns)}
            for raw in data_manager.iter_raw_rows(context.workbook, sheet_name)
        ]
    return snapshot


def export_store(context: core_logic.RuntimeContext) -> str:
    """Serialize the whole store to a JSON document."""

    document = json.dumps(snapshot_store(context), default=_encode, ensure_ascii=False, indent=2)
    log.info("Exported store snapshot (%d bytes)", len(document))
    return document


def _normalize_row(sheet_name: str, columns: Sequence[str], record: Dict[str, Any]) -> List[object]:
    raw = [record.get(column) for column in columns]
    if sheet_name == SheetName.SALE_ITEMS.value:
        sale_id, item = data_manager.deserialize_sale_item(raw)
        return data_manager.serialize_sale_item(sale_id, item)
    typed = data_manager.DESERIALIZERS[sheet_name](raw)
    return data_manager.SERIALIZERS[sheet_name](typed)


def import_store(context: core_logic.RuntimeContext, payload: Union[str, bytes]) -> bool:
    """Replace every collection present in ``payload`` wholesale.

    Every recognized collection is parsed and normalized before any sheet is
    touched. Collections absent from the payload keep their current rows.

    Args:
        context (RuntimeContext): Runtime context providing workbook access and
            caches.
        payload (str | bytes): JSON document produced by :func:`export_store`.

    Returns:
        bool: ``True`` when at least one collection was replaced. ``False``
            when the document does not parse, is not an object, names no known
            collection or holds a malformed collection; nothing is written in
            those cases.
    """
    try:
        document = json.loads(payload)
    except (json.JSONDecodeError, UnicodeDecodeError) as exc:
        log.error("Backup import rejected: invalid JSON (%s)", exc)
        return False

    if not isinstance(document, dict):
        log.error("Backup import rejected: top-level value is not an object")
        return False

    recognized = [name for name in data_manager.SHEET_COLUMNS if name in document]
    if not recognized:
        log.error("Backup import rejected: no known collection in payload")
        return False

    if document.get(SCHEMA_KEY) not in (None, EXPECTED_SCHEMA_VERSION):
        log.warning(
            "Importing backup written for schema %s into schema %s",
            document.get(SCHEMA_KEY),
            EXPECTED_SCHEMA_VERSION,
        )

    staged: Dict[str, List[List[object]]] = {}
    for sheet_name in recognized:
        records = document[sheet_name]
        if not isinstance(records, list) or not all(isinstance(record, dict) for record in records):
            log.error("Backup import rejected: collection '%s' is not a list of objects", sheet_name)
            return False
        columns = data_manager.SHEET_COLUMNS[sheet_name]
        staged[sheet_name] = [_normalize_row(sheet_name, columns, record) for record in records]

    for sheet_name, rows in staged.items():
        data_manager.clear_sheet(context.workbook, sheet_name)
        data_manager.write_raw_rows(context.workbook, sheet_name, rows)
        log.info("Imported %d rows into '%s'", len(rows), sheet_name)

    core_logic.invalidate_all(context)
    return True
