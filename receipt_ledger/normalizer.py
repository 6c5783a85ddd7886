"""Decode untrusted model records into validated invoice fields.

Everything the vision model returns is treated as untyped input. The
functions here consume plain dicts and return either a validated value or
``None``; nothing in this module raises on bad data. A field that fails a
check is recorded as a ``ValidationWarning`` so the reviewer can see what
was dropped.

Taiwanese specifics handled here:

* ROC calendar years (民國, e.g. ``113年``) are converted with ``+ 1911``.
* Seller tax IDs (統一編號) are exactly 8 digits.
* Invoice numbers (發票號碼) are 2 letters followed by 8 digits.
* Business tax is 5% and is included in the printed total.
"""
import datetime
import logging
import math
import re
import string
from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Dict, Iterable, List, Optional

from .config import MissingTaxPolicy
from .models import (
    CATEGORY_LABELS,
    INVOICE_NUMBER_PATTERN,
    ZERO_RATED_CATEGORIES,
    BoundingBox,
    InvoiceCategory,
    NormalizedInvoice,
    OCRBlock,
    ValidationWarning,
)


logger = logging.getLogger(__name__)

VENDOR_KEYS = ("supplier_name", "vendor", "vendor_name", "seller_name")
TAX_ID_KEYS = ("supplier_tax_id", "tax_id", "seller_tax_id")
INVOICE_NUMBER_KEYS = ("invoice_number", "invoice_no")
DATE_KEYS = ("invoice_date", "date")
TOTAL_KEYS = ("total_amount", "amount_inclusive_tax", "amount_with_tax", "total", "amount")
TAX_KEYS = ("tax_amount", "input_tax", "tax")
CATEGORY_KEYS = ("category", "invoice_type")
BLOCK_ID_KEYS = ("sourceBlockIds", "source_block_ids")

TAX_RATE = Decimal("0.05")
ROC_YEAR_OFFSET = 1911
MAX_ROC_YEAR = 200
EXEMPT_TAX_TYPES = {"exempt", "zero_rated", "zero-rated", "tax_free", "免稅", "零稅率"}
TRUTHY_STRINGS = {"true", "yes", "y", "1"}

# 113年3月5日, 113年03-04月 (bimonthly e-invoice period), 2024年3月
MARKED_DATE_PATTERN = re.compile(
    r"(?<!\d)(\d{1,4})\s*年\s*(\d{1,2})(?:\s*[-~～至到]\s*\d{1,2})?\s*月(?:\s*(\d{1,2})\s*日)?"
)
GREGORIAN_DATE_PATTERN = re.compile(r"(?<!\d)(\d{4})[-/.](\d{1,2})(?:[-/.](\d{1,2}))?(?!\d)")
ROC_DATE_PATTERN = re.compile(r"(?<!\d)(\d{3})[-/.](\d{1,2})(?:[-/.](\d{1,2}))?(?!\d)")
COMPACT_DATE_PATTERN = re.compile(r"^(\d{4})(\d{2})(\d{2})$")

NON_ALNUM_PATTERN = re.compile(r"[^A-Z0-9]")
AMOUNT_PATTERN = re.compile(r"-?\d+(?:\.\d+)?")
CATEGORY_CODE_PATTERN = re.compile(r"^\s*([0-9])(?:\s*[.．、:](?![0-9])|\s*$)")
WHITESPACE_PATTERN = re.compile(r"\s+")

PREVIEW_CHARS = 100


def _preview(value: Any) -> str:
    return str(value)[:PREVIEW_CHARS]


def first_present(record: Dict[str, Any], keys: Iterable[str]) -> Any:
    """Return the first value under ``keys`` that is neither None nor blank"""
    for key in keys:
        value = record.get(key)
        if value is None:
            continue
        if isinstance(value, str) and not value.strip():
            continue
        return value
    return None


def round_half_up(value: float) -> int:
    return int(Decimal(str(value)).quantize(Decimal("1"), rounding=ROUND_HALF_UP))


def normalize_tax_id(value: Any) -> Optional[str]:
    """Keep ASCII digits; exactly 8 of them is a tax ID, anything else is None"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None

    digits = "".join(ch for ch in value if ch in string.digits)
    return digits if len(digits) == 8 else None


def normalize_invoice_number(value: Any) -> Optional[str]:
    """Uppercase, drop separators, and require 2 letters + 8 digits"""
    if not isinstance(value, str):
        return None
    cleaned = NON_ALNUM_PATTERN.sub("", value.upper())
    return cleaned if INVOICE_NUMBER_PATTERN.fullmatch(cleaned) else None


def _build_date(year: int, month: int, day: Optional[int]) -> Optional[str]:
    try:
        return datetime.date(year, month, day or 1).isoformat()
    except ValueError:
        return None


def _roc_to_gregorian(year: int) -> Optional[int]:
    if 1 <= year <= MAX_ROC_YEAR:
        return year + ROC_YEAR_OFFSET
    return None


def normalize_date(value: Any) -> Optional[str]:
    """Convert a printed invoice date to ``YYYY-MM-DD``.

    A 1-3 digit year is read as an ROC year only when followed by ``年``
    or when it is the 3-digit year of a ``YYY-MM[-DD]`` token. Two-digit
    years without ``年`` are ambiguous and yield None. A missing day
    defaults to the first of the month.
    """
    if isinstance(value, bool):
        return None
    if isinstance(value, int):
        value = str(value)
    if not isinstance(value, str):
        return None

    text = value.strip()
    if not text:
        return None

    match = MARKED_DATE_PATTERN.search(text)
    if match:
        year = int(match.group(1))
        if len(match.group(1)) < 4:
            year = _roc_to_gregorian(year)
            if year is None:
                return None
        day = int(match.group(3)) if match.group(3) else None
        return _build_date(year, int(match.group(2)), day)

    match = GREGORIAN_DATE_PATTERN.search(text)
    if match:
        day = int(match.group(3)) if match.group(3) else None
        return _build_date(int(match.group(1)), int(match.group(2)), day)

    match = ROC_DATE_PATTERN.search(text)
    if match:
        year = _roc_to_gregorian(int(match.group(1)))
        if year is None:
            return None
        day = int(match.group(3)) if match.group(3) else None
        return _build_date(year, int(match.group(2)), day)

    match = COMPACT_DATE_PATTERN.match(text)
    if match:
        return _build_date(int(match.group(1)), int(match.group(2)), int(match.group(3)))

    return None


def parse_amount(value: Any) -> Optional[float]:
    """Read a number from an int, float or a string such as ``NT$1,050``"""
    if value is None or isinstance(value, bool):
        return None
    if isinstance(value, (int, float)):
        number = float(value)
    elif isinstance(value, str):
        match = AMOUNT_PATTERN.search(value.replace(",", "").replace("，", ""))
        if not match:
            return None
        number = float(match.group(0))
    else:
        return None

    if math.isnan(number) or math.isinf(number):
        return None
    return number


def derive_tax(total: float) -> float:
    """Tax embedded in a 5% tax-inclusive total: round(total / 1.05 * 0.05)"""
    try:
        tax = Decimal(str(total)) / (1 + TAX_RATE) * TAX_RATE
    except InvalidOperation:
        return 0.0
    return float(round_half_up(float(tax)))


def normalize_category(value: Any) -> str:
    """Map a category code or label onto ``"0"``-``"9"``; unknown values pass through"""
    if value is None or isinstance(value, bool):
        return InvoiceCategory.ELECTRONIC.value
    if isinstance(value, float) and value.is_integer():
        value = int(value)
    if isinstance(value, int):
        return str(value)

    text = str(value).strip()
    if not text:
        return InvoiceCategory.ELECTRONIC.value

    match = CATEGORY_CODE_PATTERN.match(text)
    if match:
        return match.group(1)

    for code, label in CATEGORY_LABELS.items():
        if text == label.split(".", 1)[1]:
            return code
    return text


def normalize_vendor(value: Any) -> str:
    if isinstance(value, bool) or value is None:
        return ""
    if isinstance(value, (int, float)):
        value = str(value)
    if not isinstance(value, str):
        return ""
    return WHITESPACE_PATTERN.sub(" ", value).strip()


def normalize_block_ids(value: Any) -> List[str]:
    if not isinstance(value, list):
        return []
    return [str(item) for item in value if isinstance(item, (str, int)) and not isinstance(item, bool)]


def is_tax_exempt(record: Dict[str, Any], category: str) -> bool:
    """Exempt or zero-rated documents (explicit flag or category 6/7)"""
    flag = first_present(record, ("tax_exempt", "is_tax_exempt"))
    if flag is True:
        return True
    if isinstance(flag, str) and flag.strip().lower() in TRUTHY_STRINGS:
        return True

    tax_type = record.get("tax_type")
    if isinstance(tax_type, str) and tax_type.strip().lower() in EXEMPT_TAX_TYPES:
        return True

    return category in ZERO_RATED_CATEGORIES


def _normalize_amount(
    field: str,
    raw: Any,
    warnings: List[ValidationWarning]
) -> Optional[float]:
    if raw is None:
        return None
    amount = parse_amount(raw)
    if amount is None:
        warnings.append(ValidationWarning(field=field, message="Amount is not a number", value=_preview(raw)))
        return None
    if amount < 0:
        warnings.append(ValidationWarning(field=field, message="Amount is negative", value=_preview(raw)))
        return None
    return amount


def normalize_invoice(
    record: Any,
    *,
    tax_policy: MissingTaxPolicy = MissingTaxPolicy.ZERO
) -> NormalizedInvoice:
    """Validate the header fields of one invoice record.

    Never raises: missing or malformed fields fall back to their documented
    default and leave a warning behind.

    Args:
        record: one untrusted invoice dict as decoded from model output
        tax_policy: what to do when no tax figure is stated

    Returns:
        NormalizedInvoice with validated fields and warnings
    """
    if not isinstance(record, dict):
        return NormalizedInvoice(warnings=[
            ValidationWarning(field="record", message="Invoice record is not an object", value=_preview(record))
        ])

    warnings: List[ValidationWarning] = []

    raw_tax_id = first_present(record, TAX_ID_KEYS)
    tax_id = normalize_tax_id(raw_tax_id)
    if raw_tax_id is not None and tax_id is None:
        warnings.append(ValidationWarning(field="tax_id", message="Tax ID is not 8 digits", value=_preview(raw_tax_id)))

    raw_date = first_present(record, DATE_KEYS)
    date = normalize_date(raw_date)
    if raw_date is not None and date is None:
        warnings.append(ValidationWarning(field="date", message="Unrecognized date", value=_preview(raw_date)))

    raw_number = first_present(record, INVOICE_NUMBER_KEYS)
    invoice_number = normalize_invoice_number(raw_number)
    if raw_number is not None and invoice_number is None:
        warnings.append(ValidationWarning(
            field="invoice_number",
            message="Invoice number is not 2 letters + 8 digits",
            value=_preview(raw_number)
        ))

    category = normalize_category(first_present(record, CATEGORY_KEYS))
    exempt = is_tax_exempt(record, category)

    total = _normalize_amount("amount_with_tax", first_present(record, TOTAL_KEYS), warnings)
    tax = _normalize_amount("input_tax", first_present(record, TAX_KEYS), warnings)
    tax_explicit = tax is not None

    if tax is None:
        tax = 0.0
        if tax_policy == MissingTaxPolicy.DERIVE and not exempt and total:
            tax = derive_tax(total)
            logger.debug("Derived tax %.0f from total %.2f", tax, total)

    if total is not None and tax > total:
        warnings.append(ValidationWarning(
            field="input_tax",
            message="Tax exceeds the tax-inclusive total; capped at the total",
            value=_preview(tax)
        ))
        tax = total

    return NormalizedInvoice(
        vendor=normalize_vendor(first_present(record, VENDOR_KEYS)),
        tax_id=tax_id,
        date=date,
        invoice_number=invoice_number,
        total_with_tax=total,
        tax_amount=tax,
        tax_explicit=tax_explicit,
        tax_exempt=exempt,
        category=category,
        source_block_ids=normalize_block_ids(first_present(record, BLOCK_ID_KEYS)),
        warnings=warnings,
    )


def _only_dicts(values: List[Any], source: str) -> List[Dict[str, Any]]:
    records = [value for value in values if isinstance(value, dict)]
    skipped = len(values) - len(records)
    if skipped:
        logger.warning("Skipped %d non-object entries in %s", skipped, source)
    return records


def decode_records(payload: Dict[str, Any]) -> List[Dict[str, Any]]:
    """Split a parsed model payload into per-invoice records.

    Accepted shapes:
      * ``{"invoices": [...]}`` - several invoices on one image
      * ``{"lineItems": [...], "metadata": {...}}`` - one record per line,
        each line layered over the shared metadata
      * a single flat invoice record
    """
    invoices = payload.get("invoices")
    if isinstance(invoices, list):
        return _only_dicts(invoices, "invoices")

    line_items = payload.get("lineItems")
    metadata = payload.get("metadata")
    if isinstance(line_items, list) or isinstance(metadata, dict):
        metadata = metadata if isinstance(metadata, dict) else {}
        lines = _only_dicts(line_items if isinstance(line_items, list) else [], "lineItems")
        if lines:
            # Invoice-level amounts must not shadow per-line amounts
            shared = {k: v for k, v in metadata.items() if k not in TOTAL_KEYS + TAX_KEYS}
            return [{**shared, **line} for line in lines]
        if first_present(metadata, TOTAL_KEYS) is not None:
            return [dict(metadata)]
        return []

    return [payload]


def _clamp(value: Any, low: float, high: float, default: float) -> float:
    if isinstance(value, bool) or not isinstance(value, (int, float)):
        return default
    return max(low, min(high, float(value)))


def decode_ocr_blocks(payload: Dict[str, Any]) -> List[OCRBlock]:
    """Read OCR bounding-box metadata, clamping coordinates to [0, 1]"""
    raw_blocks = payload.get("ocrBlocks")
    if not isinstance(raw_blocks, list):
        return []

    blocks = []
    for index, raw in enumerate(raw_blocks):
        if not isinstance(raw, dict):
            continue
        bbox = raw.get("bbox") if isinstance(raw.get("bbox"), dict) else {}
        page = raw.get("page")
        blocks.append(OCRBlock(
            id=str(raw.get("id") or f"b_{index + 1:03d}"),
            page=page if isinstance(page, int) and not isinstance(page, bool) and page >= 1 else 1,
            text=str(raw.get("text") or ""),
            type=str(raw.get("type") or "other"),
            confidence=_clamp(raw.get("confidence"), 0.0, 1.0, 0.8),
            bbox=BoundingBox(
                x=_clamp(bbox.get("x"), 0.0, 1.0, 0.1),
                y=_clamp(bbox.get("y"), 0.0, 1.0, min(1.0, 0.1 + index * 0.08)),
                w=_clamp(bbox.get("w"), 0.01, 1.0, 0.8),
                h=_clamp(bbox.get("h"), 0.01, 1.0, 0.04),
            ),
        ))
    return blocks
