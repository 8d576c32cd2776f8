from __future__ import annotations

import logging
from collections.abc import Iterable, Mapping, Sequence
from dataclasses import dataclass
from datetime import date, datetime, timezone

from dispatch_hub.config import settings
from dispatch_hub.services.bin_ledger_service import ScanRecord
from dispatch_hub.services.item_index_service import Invoice
from dispatch_hub.services.text_utils import as_utc, code_or_placeholder, normalize_code, safe_int

logger = logging.getLogger(__name__)


class CustomerCodeMismatchError(ValueError):
    def __init__(self, codes: Sequence[str]) -> None:
        super().__init__(
            'Selected invoices belong to different customer codes: ' + ', '.join(sorted(codes))
        )
        self.codes = sorted(codes)


@dataclass(frozen=True)
class LoadedScan:
    invoice_id: str
    customer_item: str
    item_number: str
    quantity: int


@dataclass(frozen=True)
class InvoiceDeliveryDetails:
    invoice_id: str
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None
    status: str | None = None


@dataclass(frozen=True)
class ItemTotals:
    customer_item: str
    item_number: str
    bins_loaded: int
    qty_loaded: int


@dataclass(frozen=True)
class InvoiceSummary:
    invoice_id: str
    delivery_date: date | None
    delivery_time: str | None
    unloading_loc: str | None
    status: str
    bins_loaded: int
    qty_loaded: int
    items: tuple[ItemTotals, ...]


@dataclass(frozen=True)
class GrandTotals:
    invoice_count: int
    item_lines_count: int
    bins_loaded: int
    qty_loaded: int


@dataclass(frozen=True)
class GatepassSummary:
    gatepass_number: str
    vehicle_number: str
    authorized_by: str
    customer_code: str | None
    dispatch_date: datetime | None
    dispatch_date_text: str
    invoice_ids: tuple[str, ...]
    invoices: tuple[InvoiceSummary, ...]
    grand_totals: GrandTotals


def normalize_loaded_scan(
    *,
    invoice_id: object,
    customer_item: object,
    item_number: object,
    quantity: object,
) -> LoadedScan:
    return LoadedScan(
        invoice_id=normalize_code(invoice_id),
        customer_item=code_or_placeholder(customer_item),
        item_number=code_or_placeholder(item_number),
        quantity=safe_int(quantity),
    )


def loaded_scans_from_records(records: Iterable[ScanRecord]) -> list[LoadedScan]:
    return [
        normalize_loaded_scan(
            invoice_id=record.invoice_id,
            customer_item=record.key.customer_item,
            item_number=record.key.item_number,
            quantity=record.bin_quantity,
        )
        for record in records
    ]


def loaded_scans_from_server(rows: Iterable[Mapping[str, object]]) -> list[LoadedScan]:
    scans: list[LoadedScan] = []
    for row in rows:
        scans.append(
            normalize_loaded_scan(
                invoice_id=row.get('invoiceId', row.get('invoice_id')),
                customer_item=row.get('customerItem', row.get('customer_item')),
                item_number=row.get('itemNumber', row.get('item_number')),
                quantity=row.get('binQuantity', row.get('quantity')),
            )
        )
    return scans


def placeholder_gatepass_number(now: datetime | None = None, prefix: str | None = None) -> str:
    # Not unique; replaced by the server-issued number after dispatch.
    moment = as_utc(now) or datetime.now(timezone.utc)
    suffix = int(moment.timestamp() * 1000) % 100_000_000
    return f'{prefix if prefix is not None else settings.gatepass_prefix}{suffix:08d}'


def resolve_customer_code(invoices: Iterable[Invoice]) -> str | None:
    codes = list(dict.fromkeys(code for code in (normalize_code(inv.bill_to) for inv in invoices) if code))
    if len(codes) > 1:
        raise CustomerCodeMismatchError(codes)
    return codes[0] if codes else None


def _format_dispatch_date(value: datetime | None) -> str:
    if value is None:
        return 'N/A'
    return as_utc(value).strftime('%Y-%m-%d %H:%M')


def build_gatepass_summary(
    *,
    gatepass_number: str | None,
    vehicle_number: str | None,
    authorized_by: str | None,
    invoice_ids: Sequence[str],
    loaded_scans: Iterable[LoadedScan],
    invoice_details: Iterable[InvoiceDeliveryDetails] = (),
    customer_code: str | None = None,
    dispatch_date: datetime | None = None,
    now: datetime | None = None,
) -> GatepassSummary:
    """Fold loaded scans into per-invoice and per-item totals.

    The result only depends on the multiset of scans: items are sorted by
    (customer item, item number) and invoices follow ``invoice_ids``. Only
    the dispatch text and the placeholder number read the clock.
    """
    requested_ids = tuple(code for code in (normalize_code(i) for i in invoice_ids) if code)
    details_by_id = {normalize_code(d.invoice_id): d for d in invoice_details if normalize_code(d.invoice_id)}

    totals: dict[str, dict[tuple[str, str], list[int]]] = {}
    grand_bins = 0
    grand_qty = 0
    # Grand totals cover every loaded bin on the vehicle, including scans with
    # no invoice id or an invoice outside invoice_ids.
    for scan in loaded_scans:
        grand_bins += 1
        grand_qty += scan.quantity
        if not scan.invoice_id:
            continue
        bucket = totals.setdefault(scan.invoice_id, {}).setdefault((scan.customer_item, scan.item_number), [0, 0])
        bucket[0] += 1
        bucket[1] += scan.quantity

    invoices: list[InvoiceSummary] = []
    for invoice_id in requested_ids:
        by_item = totals.get(invoice_id, {})
        items = tuple(
            ItemTotals(customer_item=key[0], item_number=key[1], bins_loaded=value[0], qty_loaded=value[1])
            for key, value in sorted(by_item.items())
        )
        details = details_by_id.get(invoice_id)
        invoices.append(
            InvoiceSummary(
                invoice_id=invoice_id,
                delivery_date=details.delivery_date if details else None,
                delivery_time=normalize_code(details.delivery_time) or None if details else None,
                unloading_loc=normalize_code(details.unloading_loc) or None if details else None,
                status=normalize_code(details.status if details else None) or 'unknown',
                bins_loaded=sum(item.bins_loaded for item in items),
                qty_loaded=sum(item.qty_loaded for item in items),
                items=items,
            )
        )

    number = normalize_code(gatepass_number) or placeholder_gatepass_number(now)
    return GatepassSummary(
        gatepass_number=number,
        vehicle_number=code_or_placeholder(vehicle_number),
        authorized_by=code_or_placeholder(authorized_by),
        customer_code=normalize_code(customer_code) or None,
        dispatch_date=dispatch_date,
        dispatch_date_text=_format_dispatch_date(dispatch_date or now or datetime.now(timezone.utc)),
        invoice_ids=requested_ids,
        invoices=tuple(invoices),
        grand_totals=GrandTotals(
            invoice_count=len(requested_ids),
            item_lines_count=sum(len(inv.items) for inv in invoices),
            bins_loaded=grand_bins,
            qty_loaded=grand_qty,
        ),
    )


def cross_check_totals(
    summary: GatepassSummary,
    *,
    server_bins: int | None,
    server_qty: int | None,
) -> list[str]:
    warnings: list[str] = []
    if server_bins is not None and server_bins != summary.grand_totals.bins_loaded:
        warnings.append(
            f'Loaded bins differ: local {summary.grand_totals.bins_loaded}, server {server_bins}.'
        )
    if server_qty is not None and server_qty != summary.grand_totals.qty_loaded:
        warnings.append(
            f'Loaded quantity differs: local {summary.grand_totals.qty_loaded}, server {server_qty}.'
        )
    for warning in warnings:
        logger.warning('Gatepass %s: %s', summary.gatepass_number, warning)
    return warnings


def gatepass_qr_payload(
    summary: GatepassSummary,
    invoices: Iterable[Invoice] = (),
    *,
    error: str | None = None,
) -> dict:
    """Readable QR body: keeps long key names so generic scanners show sense."""
    expected: dict[tuple[str, str, str], tuple[int, int]] = {}
    for invoice in invoices:
        if invoice.id not in summary.invoice_ids:
            continue
        for item in invoice.items:
            customer_item = normalize_code(item.customer_item)
            item_number = normalize_code(item.item_number)
            if not customer_item or not item_number:
                continue
            expected[(invoice.id, customer_item, item_number)] = (item.quantity, item.expected_bins)

    items = []
    for inv in summary.invoices:
        for item in inv.items:
            exp = expected.get((inv.invoice_id, item.customer_item, item.item_number))
            items.append(
                {
                    'invoiceId': inv.invoice_id,
                    'customerItem': item.customer_item,
                    'itemNumber': item.item_number,
                    'expectedQty': exp[0] if exp else None,
                    'expectedBins': exp[1] if exp else None,
                    'loadedQty': item.qty_loaded,
                    'loadedBins': item.bins_loaded,
                }
            )

    supply_date = next((inv.delivery_date for inv in summary.invoices if inv.delivery_date), None)
    return {
        'gatepassNumber': summary.gatepass_number,
        'vehicleNumber': summary.vehicle_number,
        'customerCode': summary.customer_code,
        'dispatchTime': summary.dispatch_date_text,
        'supplyDate': supply_date.isoformat() if supply_date else None,
        'authorizedBy': summary.authorized_by,
        'invoiceIds': list(summary.invoice_ids),
        'invoices': [
            {
                'id': inv.invoice_id,
                'unloadingLoc': inv.unloading_loc,
                'deliveryDate': inv.delivery_date.isoformat() if inv.delivery_date else None,
                'deliveryTime': inv.delivery_time,
                'status': inv.status,
            }
            for inv in summary.invoices
        ],
        'items': items,
        'totals': {
            'invoiceCount': summary.grand_totals.invoice_count,
            'itemLinesCount': summary.grand_totals.item_lines_count,
            'loadedBins': summary.grand_totals.bins_loaded,
            'loadedQty': summary.grand_totals.qty_loaded,
        },
        'error': error,
    }
