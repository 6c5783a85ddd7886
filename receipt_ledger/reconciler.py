"""Expand normalized invoices into reviewable line items"""
import logging
import uuid
from typing import Any, Callable, Dict, List, Optional, Sequence

from .config import MissingTaxPolicy
from .models import (
    LineItem,
    NormalizedInvoice,
    OCRBlock,
    ReconciledInvoice,
    ValidationWarning,
)
from .normalizer import (
    BLOCK_ID_KEYS,
    first_present,
    normalize_block_ids,
    normalize_invoice,
    parse_amount,
)


logger = logging.getLogger(__name__)

PLACEHOLDER_DESCRIPTION = "合計"
ITEM_AMOUNT_KEYS = ("amount", "amount_with_tax", "total", "price")
ITEM_TAX_KEYS = ("tax", "tax_amount", "input_tax")
DESCRIPTION_KEYS = ("description", "item_description", "name")

# Items may each be rounded to whole dollars
TOLERANCE_PER_ITEM = 1.0

# Blocks of these types are the fallback source for an item without references
AMOUNT_BLOCK_TYPES = {"amount", "total", "invoice_number"}
MAX_FALLBACK_BLOCKS = 2


def new_line_id() -> str:
    return f"line_{uuid.uuid4().hex[:12]}"


def _format_amount(amount: float) -> str:
    return str(int(amount)) if float(amount).is_integer() else str(amount)


def _fallback_blocks(
    amount: float,
    invoice_number: Optional[str],
    ocr_blocks: Sequence[OCRBlock]
) -> List[str]:
    """Blocks whose text mentions the amount or invoice number, or that hold amounts"""
    needles = {_format_amount(amount), f"{amount:,.0f}"}
    if invoice_number:
        needles.add(invoice_number)

    related = [
        block.id for block in ocr_blocks
        if any(needle in block.text for needle in needles) or block.type in AMOUNT_BLOCK_TYPES
    ]
    return related[:MAX_FALLBACK_BLOCKS]


def _resolve_block_ids(
    block_ids: List[str],
    amount: float,
    header: NormalizedInvoice,
    ocr_blocks: Sequence[OCRBlock]
) -> List[str]:
    if not ocr_blocks:
        return block_ids

    known = {block.id for block in ocr_blocks}
    valid = [block_id for block_id in block_ids if block_id in known]
    if valid:
        return valid
    return _fallback_blocks(amount, header.invoice_number, ocr_blocks)


def _description(record: Dict[str, Any]) -> str:
    value = first_present(record, DESCRIPTION_KEYS)
    return str(value).strip() if value is not None else ""


def reconcile_invoice(
    record: Dict[str, Any],
    header: NormalizedInvoice,
    *,
    source_file_name: str = "",
    ocr_blocks: Sequence[OCRBlock] = (),
    id_factory: Callable[[], str] = new_line_id
) -> ReconciledInvoice:
    """Turn one invoice into line items.

    Each item inherits the invoice header and carries its own amount.
    Without sub-items a single item for the invoice total is produced.
    Unless the items state their own tax, the invoice tax is booked on the
    first item only. A mismatch between the item sum and the invoice total
    is reported as a warning, never as an error.
    """
    record = record if isinstance(record, dict) else {}
    raw_items = record.get("items")
    items = [item for item in raw_items if isinstance(item, dict)] if isinstance(raw_items, list) else []
    warnings: List[ValidationWarning] = []

    def build(description: str, amount: float, tax: float, block_ids: List[str],
              item_warnings: List[ValidationWarning]) -> LineItem:
        if tax > amount:
            item_warnings.append(ValidationWarning(
                field="input_tax",
                message="Tax exceeds the item amount; capped at the amount",
                value=_format_amount(tax)
            ))
            tax = amount
        return LineItem(
            id=id_factory(),
            category=header.category,
            vendor=header.vendor,
            tax_id=header.tax_id,
            date=header.date,
            invoice_number=header.invoice_number,
            description=description,
            amount_with_tax=amount,
            input_tax=tax,
            source_file_name=source_file_name,
            source_block_ids=_resolve_block_ids(block_ids, amount, header, ocr_blocks),
            warnings=list(header.warnings) + item_warnings,
        )

    if not items:
        if header.total_with_tax is None:
            warnings.append(ValidationWarning(
                field="amount_with_tax",
                message="Invoice has neither items nor a total amount"
            ))
            return ReconciledInvoice(warnings=warnings)

        line_item = build(
            _description(record) or PLACEHOLDER_DESCRIPTION,
            header.total_with_tax,
            header.tax_amount,
            header.source_block_ids,
            []
        )
        return ReconciledInvoice(line_items=[line_item], warnings=warnings)

    per_item_tax = any(first_present(item, ITEM_TAX_KEYS) is not None for item in items)

    line_items = []
    for index, item in enumerate(items):
        item_warnings: List[ValidationWarning] = []

        raw_amount = first_present(item, ITEM_AMOUNT_KEYS)
        amount = parse_amount(raw_amount)
        if amount is None or amount < 0:
            item_warnings.append(ValidationWarning(
                field="amount_with_tax",
                message="Item amount missing or invalid; set to 0",
                value=None if raw_amount is None else str(raw_amount)
            ))
            amount = 0.0

        if per_item_tax:
            raw_tax = first_present(item, ITEM_TAX_KEYS)
            tax = parse_amount(raw_tax)
            if tax is None or tax < 0:
                if raw_tax is not None:
                    item_warnings.append(ValidationWarning(
                        field="input_tax",
                        message="Item tax is not a number; set to 0",
                        value=str(raw_tax)
                    ))
                tax = 0.0
        else:
            tax = header.tax_amount if index == 0 else 0.0

        block_ids = normalize_block_ids(first_present(item, BLOCK_ID_KEYS)) or header.source_block_ids
        line_items.append(build(_description(item), amount, tax, block_ids, item_warnings))

    if header.total_with_tax is not None:
        item_sum = sum(line_item.amount_with_tax for line_item in line_items)
        if abs(item_sum - header.total_with_tax) > TOLERANCE_PER_ITEM * len(line_items):
            warnings.append(ValidationWarning(
                field="amount_with_tax",
                message=(
                    f"Items sum to {_format_amount(item_sum)} but the invoice total "
                    f"is {_format_amount(header.total_with_tax)}"
                ),
                value=_format_amount(item_sum)
            ))

    return ReconciledInvoice(line_items=line_items, warnings=warnings)


def reconcile_records(
    records: Sequence[Dict[str, Any]],
    *,
    tax_policy: MissingTaxPolicy = MissingTaxPolicy.ZERO,
    source_file_name: str = "",
    ocr_blocks: Sequence[OCRBlock] = (),
    id_factory: Callable[[], str] = new_line_id
) -> ReconciledInvoice:
    """Normalize and reconcile every invoice found on one image, in order"""
    combined = ReconciledInvoice()
    for number, record in enumerate(records, start=1):
        header = normalize_invoice(record, tax_policy=tax_policy)
        reconciled = reconcile_invoice(
            record,
            header,
            source_file_name=source_file_name,
            ocr_blocks=ocr_blocks,
            id_factory=id_factory
        )
        combined.line_items.extend(reconciled.line_items)
        for warning in reconciled.warnings:
            if len(records) > 1:
                warning = warning.model_copy(update={"message": f"Invoice {number}: {warning.message}"})
            combined.warnings.append(warning)

    logger.debug(
        "Reconciled %d invoice(s) from %s into %d line item(s)",
        len(records), source_file_name or "<unnamed>", len(combined.line_items)
    )
    return combined
