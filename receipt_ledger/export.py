"""Export reviewed line items to CSV and JSON"""
import csv
import io
import json
from datetime import datetime, timezone
from typing import Any, Optional, Sequence

from .models import (
    ExportBundle,
    ExportedLineItem,
    FileProcessingResult,
    FileStatus,
    LineItem,
    category_label,
)


UTF8_BOM = "\ufeff"
EXPORT_COLUMNS = tuple(ExportedLineItem.model_fields)


def _export_item(line_item: LineItem, file_name: str) -> ExportedLineItem:
    return ExportedLineItem(
        id=line_item.id,
        category=line_item.category,
        category_label=category_label(line_item.category),
        vendor=line_item.vendor,
        tax_id=line_item.tax_id,
        date=line_item.date,
        invoice_number=line_item.invoice_number,
        description=line_item.description,
        amount_without_tax=line_item.amount_without_tax,
        input_tax=line_item.input_tax,
        amount_with_tax=line_item.amount_with_tax,
        confirmed=line_item.confirmed,
        source_file_name=line_item.source_file_name or file_name,
    )


def to_export_bundle(
    results: Sequence[FileProcessingResult],
    now: Optional[datetime] = None
) -> ExportBundle:
    """Flatten the line items of successful files; other files are left out"""
    items = [
        _export_item(line_item, result.file_name)
        for result in results
        if result.status == FileStatus.SUCCESS
        for line_item in result.line_items
    ]
    exported_at = (now or datetime.now(timezone.utc)).isoformat(timespec="milliseconds")
    return ExportBundle(
        exported_at=exported_at.replace("+00:00", "Z"),
        total_items=len(items),
        items=items,
    )


def _format_cell(value: Any) -> str:
    if value is None:
        return ""
    if isinstance(value, bool):
        return "true" if value else "false"
    if isinstance(value, float) and value.is_integer():
        return str(int(value))
    return str(value)


def serialize_csv(bundle: ExportBundle) -> str:
    """CSV with a UTF-8 BOM and every cell quoted, for spreadsheet tools"""
    buffer = io.StringIO()
    writer = csv.writer(buffer, quoting=csv.QUOTE_ALL, lineterminator="\n")
    writer.writerow(EXPORT_COLUMNS)
    for item in bundle.items:
        row = item.model_dump()
        writer.writerow([_format_cell(row[column]) for column in EXPORT_COLUMNS])
    return UTF8_BOM + buffer.getvalue()


def serialize_json(bundle: ExportBundle) -> str:
    """``{exportedAt, totalItems, items}``, keeping CJK text readable"""
    return json.dumps(bundle.model_dump(mode="json", by_alias=True), ensure_ascii=False, indent=2)
