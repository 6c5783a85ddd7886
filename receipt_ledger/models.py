"""Pydantic models for invoices, line items and batch results"""
import re
import uuid
from enum import Enum
from typing import Dict, List, Optional

from pydantic import BaseModel, ConfigDict, Field, field_validator, model_validator

from .errors import InvalidTransitionError


TAX_ID_PATTERN = re.compile(r"[0-9]{8}")
INVOICE_NUMBER_PATTERN = re.compile(r"[A-Z]{2}[0-9]{8}")


class InvoiceCategory(str, Enum):
    ELECTRONIC = "0"
    TRIPLICATE_MANUAL = "1"
    TRIPLICATE_REGISTER = "2"
    DUPLICATE_REGISTER = "3"
    PURCHASE_ALLOWANCE = "4"
    CUSTOMS_PAYMENT = "5"
    TRIPLICATE_ZERO_RATED = "6"
    ZERO_RATED_ALLOWANCE = "7"
    CUSTOMS_VAT_REFUND = "8"
    NON_CREDITABLE = "9"


CATEGORY_LABELS: Dict[str, str] = {
    InvoiceCategory.ELECTRONIC.value: "0.電子發票",
    InvoiceCategory.TRIPLICATE_MANUAL.value: "1.三聯式手開發票",
    InvoiceCategory.TRIPLICATE_REGISTER.value: "2.三聯式收銀機發票",
    InvoiceCategory.DUPLICATE_REGISTER.value: "3.二聯式收銀機發票(含機票,車票,水電費收據...等)",
    InvoiceCategory.PURCHASE_ALLOWANCE.value: "4.進貨折讓證明單",
    InvoiceCategory.CUSTOMS_PAYMENT.value: "5.海關進出口貨物稅費繳納證",
    InvoiceCategory.TRIPLICATE_ZERO_RATED.value: "6.三聯式零稅率發票",
    InvoiceCategory.ZERO_RATED_ALLOWANCE.value: "7.進貨零稅率折讓證明單",
    InvoiceCategory.CUSTOMS_VAT_REFUND.value: "8.海關進口代徵退還溢繳營業稅",
    InvoiceCategory.NON_CREDITABLE.value: "9.境外電商及不得扣抵之電子發票(僅勾稽使用)",
}

# Zero-rated documents never carry input tax
ZERO_RATED_CATEGORIES = {
    InvoiceCategory.TRIPLICATE_ZERO_RATED.value,
    InvoiceCategory.ZERO_RATED_ALLOWANCE.value,
}


def category_label(code: str) -> str:
    """Display label for a category code; unknown codes are returned as-is"""
    return CATEGORY_LABELS.get(code, code)


class ValidationWarning(BaseModel):
    """A value that failed a check and was nulled or defaulted"""
    field: str
    message: str
    value: Optional[str] = None


class BoundingBox(BaseModel):
    x: float = 0.1
    y: float = 0.1
    w: float = 0.8
    h: float = 0.04


class OCRBlock(BaseModel):
    id: str
    page: int = 1
    text: str = ""
    type: str = "other"
    confidence: float = 0.8
    bbox: BoundingBox = Field(default_factory=BoundingBox)


class NormalizedInvoice(BaseModel):
    """Invoice header fields after validation"""
    vendor: str = ""
    tax_id: Optional[str] = None
    date: Optional[str] = None
    invoice_number: Optional[str] = None
    total_with_tax: Optional[float] = None
    tax_amount: float = 0.0
    tax_explicit: bool = False
    tax_exempt: bool = False
    category: str = InvoiceCategory.ELECTRONIC.value
    source_block_ids: List[str] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)


class LineItem(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str
    category: str = InvoiceCategory.ELECTRONIC.value
    vendor: str = ""
    tax_id: Optional[str] = None
    date: Optional[str] = None  # YYYY-MM-DD
    invoice_number: Optional[str] = None
    description: str = ""
    amount_with_tax: float = Field(default=0.0, ge=0)
    input_tax: float = Field(default=0.0, ge=0)
    confirmed: bool = False
    source_file_name: str = Field(default="", alias="sourceFileName")
    source_block_ids: List[str] = Field(default_factory=list, alias="sourceBlockIds")
    warnings: List[ValidationWarning] = Field(default_factory=list)

    @field_validator("tax_id")
    @classmethod
    def check_tax_id(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not TAX_ID_PATTERN.fullmatch(value):
            raise ValueError("tax_id must be exactly 8 digits")
        return value

    @field_validator("invoice_number")
    @classmethod
    def check_invoice_number(cls, value: Optional[str]) -> Optional[str]:
        if value is not None and not INVOICE_NUMBER_PATTERN.fullmatch(value):
            raise ValueError("invoice_number must be 2 uppercase letters followed by 8 digits")
        return value

    @field_validator("source_block_ids")
    @classmethod
    def dedupe_block_ids(cls, value: List[str]) -> List[str]:
        return list(dict.fromkeys(value))

    @model_validator(mode="after")
    def check_tax_within_amount(self) -> "LineItem":
        if self.input_tax > self.amount_with_tax:
            raise ValueError("input_tax cannot exceed amount_with_tax")
        return self

    @property
    def amount_without_tax(self) -> float:
        return self.amount_with_tax - self.input_tax


class ReconciledInvoice(BaseModel):
    line_items: List[LineItem] = Field(default_factory=list)
    warnings: List[ValidationWarning] = Field(default_factory=list)


class UploadedFile(BaseModel):
    """One image handed to the pipeline by the ingestion layer"""
    model_config = ConfigDict(populate_by_name=True)

    file_name: str = Field(alias="fileName")
    image_bytes: bytes = Field(alias="imageBytes", repr=False)
    page_number: Optional[int] = Field(default=None, alias="pageNumber")
    content_type: Optional[str] = Field(default=None, alias="contentType")

    @property
    def display_name(self) -> str:
        if self.page_number is not None:
            return f"{self.file_name} (第 {self.page_number} 頁)"
        return self.file_name


class FileStatus(str, Enum):
    PENDING = "pending"
    PROCESSING = "processing"
    SUCCESS = "success"
    ERROR = "error"


_ALLOWED_TRANSITIONS = {
    FileStatus.PENDING: {FileStatus.PROCESSING},
    FileStatus.PROCESSING: {FileStatus.SUCCESS, FileStatus.ERROR},
    FileStatus.SUCCESS: set(),
    FileStatus.ERROR: set(),
}


class FileProcessingResult(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    id: str = Field(default_factory=lambda: uuid.uuid4().hex)
    file_name: str = Field(alias="fileName")
    status: FileStatus = FileStatus.PENDING
    line_items: List[LineItem] = Field(default_factory=list, alias="lineItems")
    ocr_blocks: List[OCRBlock] = Field(default_factory=list, alias="ocrBlocks")
    warnings: List[ValidationWarning] = Field(default_factory=list)
    error: Optional[str] = None
    attempts: int = 0

    @property
    def is_terminal(self) -> bool:
        return self.status in (FileStatus.SUCCESS, FileStatus.ERROR)

    def transition(self, status: FileStatus) -> None:
        """Move to ``status``; the lifecycle only ever moves forward"""
        if status not in _ALLOWED_TRANSITIONS[self.status]:
            raise InvalidTransitionError(
                f"{self.file_name}: cannot move from {self.status.value} to {status.value}"
            )
        self.status = status

    def mark_processing(self) -> None:
        self.transition(FileStatus.PROCESSING)

    def mark_success(
        self,
        line_items: List[LineItem],
        ocr_blocks: Optional[List[OCRBlock]] = None,
        warnings: Optional[List[ValidationWarning]] = None,
    ) -> None:
        self.transition(FileStatus.SUCCESS)
        self.line_items = line_items
        self.ocr_blocks = ocr_blocks or []
        self.warnings = warnings or []
        self.error = None

    def mark_error(self, message: str) -> None:
        self.transition(FileStatus.ERROR)
        self.line_items = []
        self.error = message or "Unknown error"


class BatchSummary(BaseModel):
    total_files: int = 0
    pending: int = 0
    processing: int = 0
    succeeded: int = 0
    failed: int = 0
    total_items: int = 0


class ExportedLineItem(BaseModel):
    """Flattened, UI-agnostic line item for downstream accounting tools"""
    id: str
    category: str
    category_label: str
    vendor: str
    tax_id: Optional[str] = None
    date: Optional[str] = None
    invoice_number: Optional[str] = None
    description: str = ""
    amount_without_tax: float
    input_tax: float
    amount_with_tax: float
    confirmed: bool = False
    source_file_name: str = ""


class ExportBundle(BaseModel):
    model_config = ConfigDict(populate_by_name=True)

    exported_at: str = Field(alias="exportedAt")
    total_items: int = Field(alias="totalItems")
    items: List[ExportedLineItem] = Field(default_factory=list)
