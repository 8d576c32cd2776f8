from __future__ import annotations

from datetime import date, datetime

from pydantic import BaseModel, ConfigDict, Field
from pydantic.alias_generators import to_camel

from dispatch_hub.models import MismatchSeverity, MismatchStep, ScanContext


class ApiModel(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True, from_attributes=True)


class ErrorDetail(ApiModel):
    code: str
    message: str
    invoice_blocked: bool = False


class InvoiceLineItemIn(ApiModel):
    customer_item: str
    item_number: str
    description: str | None = None
    quantity: int = Field(default=0, ge=0)
    expected_bins: int | None = Field(default=None, ge=0)


class InvoiceCreate(ApiModel):
    id: str = Field(min_length=1)
    customer: str = ''
    bill_to: str | None = None
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None
    items: list[InvoiceLineItemIn] = Field(default_factory=list)


class InvoiceLineItemOut(ApiModel):
    id: int
    customer_item: str
    item_number: str
    description: str | None = None
    quantity: int = 0
    expected_bins: int = 0
    scanned_quantity: int = 0
    audited_bins_count: int = 0
    loaded_bins_count: int = 0


class InvoiceOut(ApiModel):
    id: str
    customer: str = ''
    bill_to: str | None = None
    total_qty: int = 0
    audit_complete: bool = False
    blocked: bool = False
    correction_submitted: bool = False
    dispatched: bool = False
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None
    vehicle_number: str | None = None
    gatepass_number: str | None = None
    dispatched_at: datetime | None = None
    items: list[InvoiceLineItemOut] = Field(default_factory=list)


class InvoiceList(ApiModel):
    invoices: list[InvoiceOut]


class ScanWrite(ApiModel):
    customer_barcode: str
    internal_barcode: str | None = None
    customer_item: str
    item_number: str | None = None
    part_description: str | None = None
    quantity: int = 0
    bin_quantity: int | None = None
    bin_number: str | None = None
    status: str = 'matched'
    scan_context: ScanContext = ScanContext.DOC_AUDIT


class ScanRecorded(ApiModel):
    scan_id: str
    expected_bins_for_item: int | None = None
    loaded_bins_for_item: int | None = None


class PersistedScan(ApiModel):
    id: str
    invoice_id: str
    customer_barcode: str | None = None
    internal_barcode: str | None = None
    customer_item: str | None = None
    item_number: str | None = None
    part_description: str | None = None
    quantity: int = 0
    bin_quantity: int | None = None
    bin_number: str | None = None
    status: str = 'matched'
    scan_context: ScanContext = ScanContext.DOC_AUDIT
    scanned_by: str | None = None
    scanned_at: datetime | None = None


class ScanList(ApiModel):
    scans: list[PersistedScan]


class MismatchScan(ApiModel):
    part_code: str | None = None
    quantity: str | None = None
    bin_number: str | None = None
    raw_value: str | None = None


class MismatchReport(ApiModel):
    invoice_ids: list[str] = Field(min_length=1)
    customer: str | None = None
    step: ScanContext = ScanContext.DOC_AUDIT
    validation_step: MismatchStep = MismatchStep.CROSS_SOURCE
    severity: MismatchSeverity = MismatchSeverity.CRITICAL
    customer_scan: MismatchScan | None = None
    internal_scan: MismatchScan | None = None


class MismatchReported(ApiModel):
    alert_ids: list[int]
    blocked_invoice_ids: list[str]


class MismatchResolution(ApiModel):
    approve: bool


class CompleteAuditRequest(ApiModel):
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None


class LoadedBarcode(ApiModel):
    invoice_id: str | None = None
    customer_barcode: str | None = None
    customer_item: str | None = None
    item_number: str | None = None
    bin_number: str | None = None
    quantity: str | None = None
    scanned_at: datetime | None = None


class DispatchRequest(ApiModel):
    invoice_ids: list[str] = Field(min_length=1)
    vehicle_number: str = Field(min_length=1)
    loaded_barcodes: list[LoadedBarcode] = Field(default_factory=list)


class DispatchInvoice(ApiModel):
    id: str
    customer: str | None = None
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None
    status: str = 'unknown'


class LoadedScanDetail(ApiModel):
    invoice_id: str
    customer_item: str | None = None
    item_number: str | None = None
    bin_number: str | None = None
    bin_quantity: int | None = None
    customer_barcode: str | None = None
    scanned_at: datetime | None = None


class DispatchResponse(ApiModel):
    success: bool = True
    gatepass_number: str
    vehicle_number: str
    customer_code: str | None = None
    dispatch_date: datetime
    authorized_by: str | None = None
    total_number_of_bins: int = 0
    supply_dates: list[date] = Field(default_factory=list)
    invoices: list[DispatchInvoice] = Field(default_factory=list)
    loaded_scans_detailed: list[LoadedScanDetail] = Field(default_factory=list)
    loaded_bins_count: int | None = None
    loaded_qty: int | None = None


class GatepassOut(ApiModel):
    gatepass_number: str
    vehicle_number: str
    customer: str | None = None
    customer_code: str | None = None
    invoice_ids: list[str] = Field(default_factory=list)
    total_items: int = 0
    total_quantity: int = 0
    authorized_by: str | None = None
    dispatch_date: datetime | None = None


class VerifyQrRequest(ApiModel):
    value: str


class VerifyQrResponse(ApiModel):
    kind: str
    gatepass: GatepassOut | None = None
    error: str | None = None
    stage: str | None = None
