"""Pytest configuration and fixtures"""
import io
import json
from unittest.mock import AsyncMock

import pytest
from PIL import Image

from receipt_ledger.config import Settings
from receipt_ledger.models import UploadedFile


@pytest.fixture
def settings():
    """Settings with fast, deterministic rate-limit timings"""
    return Settings(
        gemini_api_key="test-key",
        request_delay_seconds=0.5,
        max_attempts=3,
        backoff_base_seconds=1.0,
        backoff_factor=2.0,
    )


@pytest.fixture
def fake_sleep():
    """Stand-in for asyncio.sleep that records requested delays"""
    return AsyncMock(return_value=None)


@pytest.fixture
def sample_image_bytes():
    """A small valid PNG image"""
    buffer = io.BytesIO()
    Image.new("RGB", (4, 4), "white").save(buffer, format="PNG")
    return buffer.getvalue()


@pytest.fixture
def make_upload(sample_image_bytes):
    """Factory for UploadedFile instances"""
    def _make(name="receipt.png", page_number=None):
        return UploadedFile(
            file_name=name,
            image_bytes=sample_image_bytes,
            page_number=page_number,
            content_type="image/png",
        )
    return _make


@pytest.fixture
def sample_invoice_record():
    """One electronic invoice as the vision model describes it"""
    return {
        "thought_process": "Seller stamp at the top, ROC date printed.",
        "category": "0",
        "supplier_name": "全家便利商店股份有限公司",
        "supplier_tax_id": "23060248",
        "invoice_number": "AB-12345678",
        "invoice_date": "113年03月15日",
        "total_amount": 1050,
        "tax_amount": 50,
        "items": [],
    }


@pytest.fixture
def sample_model_output(sample_invoice_record):
    """Raw model text wrapped in a markdown fence"""
    return "```json\n" + json.dumps({"invoices": [sample_invoice_record]}, ensure_ascii=False) + "\n```"
