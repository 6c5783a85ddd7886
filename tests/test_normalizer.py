"""Tests for normalizer module"""
import pytest

from receipt_ledger.config import MissingTaxPolicy
from receipt_ledger.normalizer import (
    decode_ocr_blocks,
    decode_records,
    derive_tax,
    normalize_category,
    normalize_date,
    normalize_invoice,
    normalize_invoice_number,
    normalize_tax_id,
    parse_amount,
    round_half_up,
)


@pytest.mark.parametrize("raw, expected", [
    ("23060248", "23060248"),
    ("2306-0248", "23060248"),
    ("(統編) 12,345,678", "12345678"),
    (23060248, "23060248"),
    (23060248.0, "23060248"),
    ("1234567", None),
    ("123456789", None),
    ("１２３４５６７８", None),
    ("", None),
    (None, None),
    (True, None),
])
def test_normalize_tax_id(raw, expected):
    assert normalize_tax_id(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("AB12345678", "AB12345678"),
    ("ab-12345678", "AB12345678"),
    ("AB 1234 5678", "AB12345678"),
    ("A123456789", None),
    ("ABC12345678", None),
    ("AB1234567", None),
    (12345678, None),
    (None, None),
])
def test_normalize_invoice_number(raw, expected):
    assert normalize_invoice_number(raw) == expected


@pytest.mark.parametrize("raw, expected", [
    ("113年3月5日", "2024-03-05"),
    ("113年03月15日", "2024-03-15"),
    ("中華民國 113 年 3 月 5 日", "2024-03-05"),
    ("61年5月3日", "1972-05-03"),
    ("113年03-04月", "2024-03-01"),
    ("2024年3月", "2024-03-01"),
    ("113-03-15", "2024-03-15"),
    ("113/3/15", "2024-03-15"),
    ("113/03", "2024-03-01"),
    ("113-03", "2024-03-01"),
    ("2024-03-15", "2024-03-15"),
    ("2024/3/5", "2024-03-05"),
    ("2024.03.05 14:22", "2024-03-05"),
    ("20240315", "2024-03-15"),
])
def test_normalize_date(raw, expected):
    assert normalize_date(raw) == expected


@pytest.mark.parametrize("raw", [
    "61-05-03",
    "113年02月30日",
    "201年1月1日",
    "2024-13-01",
    "not a date",
    "",
    None,
    True,
])
def test_normalize_date_rejects(raw):
    """Ambiguous or impossible dates become None"""
    assert normalize_date(raw) is None


@pytest.mark.parametrize("raw", ["113年3月5日", "2024/3/5", "113-03-15", "20240315"])
def test_normalize_date_is_idempotent(raw):
    once = normalize_date(raw)

    assert normalize_date(once) == once


@pytest.mark.parametrize("raw, expected", [
    (1050, 1050.0),
    (1050.5, 1050.5),
    ("1,050", 1050.0),
    ("NT$1,050元", 1050.0),
    ("-50", -50.0),
    ("abc", None),
    (float("nan"), None),
    (float("inf"), None),
    (True, None),
    (None, None),
    ([100], None),
])
def test_parse_amount(raw, expected):
    assert parse_amount(raw) == expected


def test_round_half_up():
    assert round_half_up(2.5) == 3
    assert round_half_up(3.5) == 4
    assert round_half_up(4.49) == 4


@pytest.mark.parametrize("total, expected", [
    (1050, 50.0),
    (105, 5.0),
    (100, 5.0),
    (21, 1.0),
    (0, 0.0),
])
def test_derive_tax(total, expected):
    assert derive_tax(total) == expected


@pytest.mark.parametrize("raw, expected", [
    (None, "0"),
    ("", "0"),
    (3, "3"),
    (3.0, "3"),
    ("2", "2"),
    ("3.二聯式收銀機發票", "3"),
    ("6．三聯式零稅率發票", "6"),
    ("三聯式手開發票", "1"),
    ("電子發票", "0"),
    ("receipt", "receipt"),
    ("3.5", "3.5"),
    (3.5, "3.5"),
    ("35", "35"),
])
def test_normalize_category(raw, expected):
    assert normalize_category(raw) == expected


def test_normalize_invoice(sample_invoice_record):
    """Test a well-formed record passes through cleanly"""
    header = normalize_invoice(sample_invoice_record)

    assert header.vendor == "全家便利商店股份有限公司"
    assert header.tax_id == "23060248"
    assert header.invoice_number == "AB12345678"
    assert header.date == "2024-03-15"
    assert header.total_with_tax == 1050.0
    assert header.tax_amount == 50.0
    assert header.tax_explicit is True
    assert header.category == "0"
    assert header.warnings == []


def test_normalize_invoice_alternate_keys():
    header = normalize_invoice({
        "vendor": "  Cafe   Lulu ",
        "tax_id": "12345678",
        "date": "2024-01-02",
        "amount_with_tax": "NT$210",
        "input_tax": 10,
    })

    assert header.vendor == "Cafe Lulu"
    assert header.total_with_tax == 210.0
    assert header.tax_amount == 10.0


def test_normalize_invoice_invalid_fields_become_warnings():
    header = normalize_invoice({
        "supplier_tax_id": "1234",
        "invoice_number": "X1",
        "invoice_date": "someday",
        "total_amount": "free",
    })

    assert header.tax_id is None
    assert header.invoice_number is None
    assert header.date is None
    assert header.total_with_tax is None
    fields = {warning.field for warning in header.warnings}
    assert fields == {"tax_id", "invoice_number", "date", "amount_with_tax"}


def test_normalize_invoice_negative_total():
    header = normalize_invoice({"total_amount": -100})

    assert header.total_with_tax is None
    assert header.warnings[0].message == "Amount is negative"


def test_normalize_invoice_missing_tax_defaults_to_zero():
    header = normalize_invoice({"total_amount": 1050})

    assert header.tax_amount == 0.0
    assert header.tax_explicit is False


def test_normalize_invoice_missing_tax_derived():
    header = normalize_invoice({"total_amount": 1050}, tax_policy=MissingTaxPolicy.DERIVE)

    assert header.tax_amount == 50.0
    assert header.tax_explicit is False


@pytest.mark.parametrize("record", [
    {"total_amount": 1050, "tax_exempt": True},
    {"total_amount": 1050, "tax_exempt": "yes"},
    {"total_amount": 1050, "tax_type": "免稅"},
    {"total_amount": 1050, "category": "6"},
])
def test_normalize_invoice_exempt_is_never_derived(record):
    header = normalize_invoice(record, tax_policy=MissingTaxPolicy.DERIVE)

    assert header.tax_exempt is True
    assert header.tax_amount == 0.0


def test_normalize_invoice_tax_capped_at_total():
    header = normalize_invoice({"total_amount": 100, "tax_amount": 200})

    assert header.tax_amount == 100.0
    assert header.warnings[0].field == "input_tax"


@pytest.mark.parametrize("record", [None, "invoice", 42, ["a"]])
def test_normalize_invoice_never_raises(record):
    header = normalize_invoice(record)

    assert header.total_with_tax is None
    assert header.warnings[0].field == "record"


def test_normalize_invoice_block_ids():
    header = normalize_invoice({"sourceBlockIds": ["b_001", 2, None, True]})

    assert header.source_block_ids == ["b_001", "2"]


def test_decode_records_invoices():
    payload = {"invoices": [{"total_amount": 100}, "noise", {"total_amount": 200}]}

    assert decode_records(payload) == [{"total_amount": 100}, {"total_amount": 200}]


def test_decode_records_line_items_with_metadata():
    """Each line is layered over the shared metadata"""
    payload = {
        "metadata": {"supplier_name": "A", "total_amount": 300, "tax_amount": 14},
        "lineItems": [
            {"description": "coffee", "amount_with_tax": 100},
            {"description": "cake", "amount_with_tax": 200},
        ],
    }

    records = decode_records(payload)

    assert records == [
        {"supplier_name": "A", "description": "coffee", "amount_with_tax": 100},
        {"supplier_name": "A", "description": "cake", "amount_with_tax": 200},
    ]


def test_decode_records_metadata_only():
    payload = {"metadata": {"supplier_name": "A", "total_amount": 300}, "lineItems": []}

    assert decode_records(payload) == [{"supplier_name": "A", "total_amount": 300}]


def test_decode_records_metadata_without_total():
    assert decode_records({"metadata": {"supplier_name": "A"}}) == []


def test_decode_records_flat_record(sample_invoice_record):
    assert decode_records(sample_invoice_record) == [sample_invoice_record]


def test_decode_ocr_blocks_clamps_coordinates():
    payload = {"ocrBlocks": [
        {"id": "b1", "text": "1050", "type": "total", "confidence": 3,
         "bbox": {"x": -0.5, "y": 1.7, "w": 0, "h": 0.5}},
        "junk",
        {"page": 0},
    ]}

    blocks = decode_ocr_blocks(payload)

    assert len(blocks) == 2
    first, second = blocks
    assert first.id == "b1"
    assert first.confidence == 1.0
    assert (first.bbox.x, first.bbox.y, first.bbox.w, first.bbox.h) == (0.0, 1.0, 0.01, 0.5)
    assert second.id == "b_003"
    assert second.page == 1
    assert second.confidence == 0.8


def test_decode_ocr_blocks_missing():
    assert decode_ocr_blocks({"invoices": []}) == []
    assert decode_ocr_blocks({"ocrBlocks": "none"}) == []
