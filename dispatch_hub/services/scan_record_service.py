from __future__ import annotations

import logging
import math
from collections.abc import Iterable
from datetime import datetime, timedelta, timezone

from sqlalchemy import and_, func, or_, select
from sqlalchemy.orm import Session

from dispatch_hub.models import (
    Gatepass,
    Invoice,
    InvoiceItem,
    MismatchAlert,
    MismatchStatus,
    ScanContext,
    ValidatedBarcode,
)
from dispatch_hub.schemas import (
    CompleteAuditRequest,
    DispatchInvoice,
    DispatchRequest,
    DispatchResponse,
    GatepassOut,
    InvoiceCreate,
    InvoiceLineItemOut,
    InvoiceOut,
    LoadedScanDetail,
    MismatchReport,
    MismatchReported,
    PersistedScan,
    ScanRecorded,
    ScanWrite,
    VerifyQrResponse,
)
from dispatch_hub.services.audit_service import log_audit
from dispatch_hub.services.barcode_service import canonicalize_barcode
from dispatch_hub.services.gatepass_summary_service import placeholder_gatepass_number
from dispatch_hub.services.qr_payload_service import DecodeKind, decode_gatepass_qr_value, gatepass_number_from
from dispatch_hub.services.scan_persistence import ErrorCode
from dispatch_hub.services.text_utils import as_utc, normalize_code, safe_int

logger = logging.getLogger(__name__)


class ScanRuleError(ValueError):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        invoice_id: str | None = None,
        invoice_blocked: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.invoice_id = invoice_id
        self.invoice_blocked = invoice_blocked or code == ErrorCode.INVOICE_BLOCKED


def _now() -> datetime:
    return datetime.now(tz=timezone.utc)


def _get_invoice(db: Session, invoice_id: str) -> Invoice:
    invoice = db.get(Invoice, invoice_id)
    if not invoice:
        raise ScanRuleError(ErrorCode.NOT_FOUND, f'Invoice {invoice_id} not found', invoice_id=invoice_id)
    return invoice


def _invoice_items(db: Session, invoice_id: str) -> list[InvoiceItem]:
    return db.execute(
        select(InvoiceItem)
        .where(InvoiceItem.invoice_id == invoice_id)
        .order_by(InvoiceItem.position.asc(), InvoiceItem.id.asc())
    ).scalars().all()


def _assert_scannable(invoice: Invoice) -> None:
    if invoice.dispatched_at is not None:
        raise ScanRuleError(
            ErrorCode.ALREADY_DISPATCHED,
            f'Invoice {invoice.id} has already been dispatched',
            invoice_id=invoice.id,
        )
    if invoice.blocked:
        raise ScanRuleError(
            ErrorCode.INVOICE_BLOCKED,
            f'Invoice {invoice.id} is blocked pending admin review',
            invoice_id=invoice.id,
        )


def _block(invoice: Invoice) -> None:
    invoice.blocked = True
    invoice.blocked_at = _now()
    invoice.correction_submitted = False
    invoice.updated_at = _now()


def invoice_to_schema(db: Session, invoice: Invoice) -> InvoiceOut:
    items = [
        InvoiceLineItemOut(
            id=item.id,
            customer_item=item.customer_item,
            item_number=item.part,
            description=item.part_description,
            quantity=item.qty,
            expected_bins=item.number_of_bins or 0,
            scanned_quantity=item.scanned_quantity,
            audited_bins_count=item.audited_bins_count,
            loaded_bins_count=item.loaded_bins_count,
        )
        for item in _invoice_items(db, invoice.id)
    ]
    return InvoiceOut(
        id=invoice.id,
        customer=invoice.customer,
        bill_to=invoice.bill_to,
        total_qty=invoice.total_qty,
        audit_complete=invoice.audit_complete,
        blocked=invoice.blocked,
        correction_submitted=invoice.correction_submitted,
        dispatched=invoice.dispatched_at is not None,
        delivery_date=invoice.delivery_date,
        delivery_time=invoice.delivery_time,
        unloading_loc=invoice.unloading_loc,
        vehicle_number=invoice.vehicle_number,
        gatepass_number=invoice.gatepass_number,
        dispatched_at=invoice.dispatched_at,
        items=items,
    )


def create_invoice(db: Session, *, payload: InvoiceCreate, actor: str | None, ip: str | None = None) -> Invoice:
    invoice_id = normalize_code(payload.id)
    if db.get(Invoice, invoice_id):
        raise ScanRuleError(ErrorCode.DUPLICATE, f'Invoice {invoice_id} already exists', invoice_id=invoice_id)

    invoice = Invoice(
        id=invoice_id,
        customer=normalize_code(payload.customer),
        bill_to=normalize_code(payload.bill_to) or None,
        total_qty=sum(item.quantity for item in payload.items),
        delivery_date=payload.delivery_date,
        delivery_time=payload.delivery_time,
        unloading_loc=payload.unloading_loc,
    )
    db.add(invoice)
    db.flush()
    for position, item in enumerate(payload.items):
        db.add(
            InvoiceItem(
                invoice_id=invoice_id,
                position=position,
                customer_item=normalize_code(item.customer_item),
                part=normalize_code(item.item_number),
                part_description=item.description,
                qty=item.quantity,
                number_of_bins=item.expected_bins,
            )
        )
    log_audit(db, actor=actor, action='invoice_created', invoice_id=invoice_id, ip=ip, metadata={'items': len(payload.items)})
    db.flush()
    return invoice


def get_invoices(db: Session, *, invoice_ids: Iterable[str] | None = None) -> list[InvoiceOut]:
    stmt = select(Invoice)
    if invoice_ids is not None:
        wanted = [normalize_code(i) for i in invoice_ids if normalize_code(i)]
        stmt = stmt.where(Invoice.id.in_(wanted))
        invoices = {invoice.id: invoice for invoice in db.execute(stmt).scalars().all()}
        return [invoice_to_schema(db, invoices[i]) for i in dict.fromkeys(wanted) if i in invoices]
    invoices = db.execute(stmt.order_by(Invoice.created_at.desc(), Invoice.id.asc())).scalars().all()
    return [invoice_to_schema(db, invoice) for invoice in invoices]


def _match_item(items: list[InvoiceItem], scan: ScanWrite) -> InvoiceItem | None:
    customer_item = normalize_code(scan.customer_item)
    item_number = normalize_code(scan.item_number)
    if scan.scan_context == ScanContext.DOC_AUDIT and item_number:
        for item in items:
            if item.customer_item == customer_item and item.part == item_number:
                return item
    for item in items:
        if item.customer_item == customer_item:
            return item
    return None


def _find_duplicate(
    db: Session,
    *,
    invoice_id: str,
    scan_context: ScanContext,
    bin_number: str | None,
    canonical_barcode: str,
) -> ValidatedBarcode | None:
    conditions = [ValidatedBarcode.customer_barcode == canonical_barcode]
    if bin_number:
        conditions.append(ValidatedBarcode.bin_number == bin_number)
    return db.execute(
        select(ValidatedBarcode).where(
            ValidatedBarcode.invoice_id == invoice_id,
            ValidatedBarcode.scan_context == scan_context,
            or_(*conditions),
        )
    ).scalars().first()


def _expected_bins(item: InvoiceItem, scan_context: ScanContext) -> int:
    if scan_context == ScanContext.LOADING_DISPATCH:
        return item.audited_bins_count or item.number_of_bins or 0
    return item.number_of_bins or 0


def record_scan(
    db: Session,
    *,
    invoice_id: str,
    scan: ScanWrite,
    actor: str | None,
    ip: str | None = None,
) -> ScanRecorded:
    """Store one accepted bin scan and update the item counters.

    Over-scans block the invoice; the caller must commit before surfacing the
    error so the block persists.
    """
    invoice = _get_invoice(db, invoice_id)
    _assert_scannable(invoice)

    items = _invoice_items(db, invoice_id)
    item = _match_item(items, scan)
    if not item:
        raise ScanRuleError(
            ErrorCode.NOT_FOUND,
            f'Customer item {normalize_code(scan.customer_item)} is not on invoice {invoice_id}',
            invoice_id=invoice_id,
        )

    canonical = canonicalize_barcode(scan.customer_barcode).strip()
    bin_number = normalize_code(scan.bin_number) or None
    duplicate = _find_duplicate(
        db,
        invoice_id=invoice_id,
        scan_context=scan.scan_context,
        bin_number=bin_number,
        canonical_barcode=canonical,
    )
    if duplicate:
        detail = f'bin {bin_number}' if bin_number and duplicate.bin_number == bin_number else 'this label'
        raise ScanRuleError(
            ErrorCode.DUPLICATE,
            f'Duplicate scan: {detail} was already recorded for invoice {invoice_id}',
            invoice_id=invoice_id,
        )

    is_audit = scan.scan_context == ScanContext.DOC_AUDIT
    if is_audit and item.number_of_bins is None and scan.bin_quantity and scan.bin_quantity > 0:
        item.number_of_bins = math.ceil(item.qty / scan.bin_quantity)

    expected = _expected_bins(item, scan.scan_context)
    current = item.audited_bins_count if is_audit else item.loaded_bins_count
    if expected > 0 and current >= expected:
        _block(invoice)
        log_audit(
            db,
            actor=actor,
            action='over_scan_blocked',
            invoice_id=invoice_id,
            ip=ip,
            metadata={'customer_item': item.customer_item, 'expected_bins': expected, 'scan_context': scan.scan_context.value},
        )
        db.flush()
        logger.warning('Over-scan on invoice %s item %s (%d/%d), invoice blocked', invoice_id, item.customer_item, current, expected)
        raise ScanRuleError(
            ErrorCode.OVER_SCAN,
            f'All {expected} bins of {item.customer_item} are already scanned on invoice {invoice_id}',
            invoice_id=invoice_id,
            invoice_blocked=True,
        )

    row = ValidatedBarcode(
        invoice_id=invoice_id,
        invoice_item_id=item.id,
        scan_context=scan.scan_context,
        customer_barcode=canonical,
        internal_barcode=canonicalize_barcode(scan.internal_barcode).strip() if scan.internal_barcode else None,
        customer_item=normalize_code(scan.customer_item),
        item_number=normalize_code(scan.item_number) or item.part,
        part_description=scan.part_description or item.part_description,
        quantity=scan.quantity,
        bin_quantity=scan.bin_quantity,
        bin_number=bin_number,
        status=scan.status,
        scanned_by=actor,
        scanned_at=_now(),
        customer_name=invoice.customer,
        customer_code=invoice.bill_to,
    )
    db.add(row)

    if is_audit:
        item.audited_bins_count += 1
        if scan.bin_quantity:
            item.scanned_quantity = min(item.scanned_quantity + scan.bin_quantity, item.qty)
    else:
        item.loaded_bins_count += 1
    invoice.updated_at = _now()

    log_audit(
        db,
        actor=actor,
        action='scan_recorded',
        invoice_id=invoice_id,
        ip=ip,
        metadata={'customer_item': item.customer_item, 'bin_number': bin_number, 'scan_context': scan.scan_context.value},
    )
    db.flush()
    logger.info('Recorded %s scan on invoice %s for %s', scan.scan_context.value, invoice_id, item.customer_item)

    return ScanRecorded(
        scan_id=str(row.id),
        expected_bins_for_item=expected or None,
        loaded_bins_for_item=item.audited_bins_count if is_audit else item.loaded_bins_count,
    )


def _scan_to_schema(row: ValidatedBarcode) -> PersistedScan:
    return PersistedScan(
        id=str(row.id),
        invoice_id=row.invoice_id,
        customer_barcode=row.customer_barcode,
        internal_barcode=row.internal_barcode,
        customer_item=row.customer_item,
        item_number=row.item_number,
        part_description=row.part_description,
        quantity=row.quantity,
        bin_quantity=row.bin_quantity,
        bin_number=row.bin_number,
        status=row.status,
        scan_context=row.scan_context,
        scanned_by=row.scanned_by,
        scanned_at=as_utc(row.scanned_at),
    )


def list_scans(db: Session, *, invoice_id: str, scan_context: ScanContext | None = None) -> list[PersistedScan]:
    _get_invoice(db, invoice_id)
    stmt = select(ValidatedBarcode).where(ValidatedBarcode.invoice_id == invoice_id)
    if scan_context is not None:
        stmt = stmt.where(ValidatedBarcode.scan_context == scan_context)
    rows = db.execute(stmt.order_by(ValidatedBarcode.scanned_at.desc(), ValidatedBarcode.id.desc())).scalars().all()
    return [_scan_to_schema(row) for row in rows]


def delete_scan(db: Session, *, invoice_id: str, scan_id: str, actor: str | None, ip: str | None = None) -> None:
    invoice = _get_invoice(db, invoice_id)
    if invoice.dispatched_at is not None:
        raise ScanRuleError(
            ErrorCode.ALREADY_DISPATCHED,
            f'Invoice {invoice_id} has already been dispatched',
            invoice_id=invoice_id,
        )
    row_id = safe_int(scan_id)
    row = db.execute(
        select(ValidatedBarcode).where(ValidatedBarcode.id == row_id, ValidatedBarcode.invoice_id == invoice_id)
    ).scalar_one_or_none()
    if not row:
        raise ScanRuleError(ErrorCode.NOT_FOUND, f'Scan {scan_id} not found on invoice {invoice_id}', invoice_id=invoice_id)

    if row.invoice_item_id is not None:
        item = db.get(InvoiceItem, row.invoice_item_id)
        if item:
            if row.scan_context == ScanContext.DOC_AUDIT:
                item.audited_bins_count = max(item.audited_bins_count - 1, 0)
                if row.bin_quantity:
                    item.scanned_quantity = max(item.scanned_quantity - row.bin_quantity, 0)
            else:
                item.loaded_bins_count = max(item.loaded_bins_count - 1, 0)
    if row.scan_context == ScanContext.DOC_AUDIT and invoice.audit_complete:
        # The audit has to be completed again once the bin is re-scanned.
        invoice.audit_complete = False
        invoice.audit_date = None
        invoice.updated_at = _now()

    db.delete(row)
    log_audit(
        db,
        actor=actor,
        action='scan_deleted',
        invoice_id=invoice_id,
        ip=ip,
        metadata={'scan_id': scan_id, 'bin_number': row.bin_number},
    )
    db.flush()


def report_mismatch(db: Session, *, report: MismatchReport, actor: str | None, ip: str | None = None) -> MismatchReported:
    alert_ids: list[int] = []
    blocked: list[str] = []
    for invoice_id in dict.fromkeys(normalize_code(i) for i in report.invoice_ids):
        if not invoice_id:
            continue
        invoice = _get_invoice(db, invoice_id)
        alert = MismatchAlert(
            invoice_id=invoice_id,
            customer=report.customer or invoice.customer,
            step=report.step,
            validation_step=report.validation_step,
            severity=report.severity,
            customer_scan=report.customer_scan.model_dump(by_alias=True) if report.customer_scan else {},
            internal_scan=report.internal_scan.model_dump(by_alias=True) if report.internal_scan else {},
            status=MismatchStatus.PENDING,
            reported_by=actor,
        )
        db.add(alert)
        if invoice.dispatched_at is None:
            _block(invoice)
            blocked.append(invoice_id)
        log_audit(
            db,
            actor=actor,
            action='mismatch_reported',
            invoice_id=invoice_id,
            ip=ip,
            metadata={'validation_step': report.validation_step.value, 'severity': report.severity.value},
        )
        db.flush()
        alert_ids.append(alert.id)
    logger.warning('Mismatch (%s) reported by %s on %s', report.validation_step.value, actor, ', '.join(blocked))
    return MismatchReported(alert_ids=alert_ids, blocked_invoice_ids=blocked)


def submit_correction(db: Session, *, invoice_id: str, actor: str | None, ip: str | None = None) -> InvoiceOut:
    invoice = _get_invoice(db, invoice_id)
    if not invoice.blocked:
        raise ScanRuleError(ErrorCode.INVALID_REQUEST, f'Invoice {invoice_id} is not blocked', invoice_id=invoice_id)
    invoice.correction_submitted = True
    invoice.updated_at = _now()
    log_audit(db, actor=actor, action='correction_submitted', invoice_id=invoice_id, ip=ip)
    db.flush()
    return invoice_to_schema(db, invoice)


def resolve_mismatch(
    db: Session,
    *,
    alert_id: int,
    approve: bool,
    actor: str | None,
    ip: str | None = None,
) -> InvoiceOut:
    alert = db.get(MismatchAlert, alert_id)
    if not alert:
        raise ScanRuleError(ErrorCode.NOT_FOUND, f'Mismatch alert {alert_id} not found')
    if alert.status != MismatchStatus.PENDING:
        raise ScanRuleError(
            ErrorCode.INVALID_REQUEST,
            f'Mismatch alert {alert_id} is already {alert.status.value}',
            invoice_id=alert.invoice_id,
        )

    invoice = _get_invoice(db, alert.invoice_id)
    alert.status = MismatchStatus.APPROVED if approve else MismatchStatus.REJECTED
    alert.resolved_by = actor
    alert.resolved_at = _now()
    db.flush()

    if approve:
        pending = db.execute(
            select(func.count())
            .select_from(MismatchAlert)
            .where(MismatchAlert.invoice_id == invoice.id, MismatchAlert.status == MismatchStatus.PENDING)
        ).scalar_one()
        if not pending:
            invoice.blocked = False
            invoice.blocked_at = None
            invoice.correction_submitted = False
    else:
        invoice.correction_submitted = False
    invoice.updated_at = _now()

    log_audit(
        db,
        actor=actor,
        action='mismatch_approved' if approve else 'mismatch_rejected',
        invoice_id=invoice.id,
        ip=ip,
        metadata={'alert_id': alert_id},
    )
    db.flush()
    return invoice_to_schema(db, invoice)


def _incomplete_audit_items(items: list[InvoiceItem]) -> list[str]:
    totals: dict[tuple[str, str], list[int]] = {}
    for item in items:
        row = totals.setdefault((item.customer_item, item.part), [0, 0, 0, 0])
        row[0] += item.number_of_bins or 0
        row[1] += item.audited_bins_count
        row[2] += item.qty
        row[3] += item.scanned_quantity
    if not totals:
        return ['no line items']
    incomplete = []
    for (customer_item, _part), (bins, audited, qty, scanned) in totals.items():
        if bins > 0:
            done = audited >= bins
        else:
            done = qty > 0 and scanned >= qty
        if not done:
            incomplete.append(customer_item)
    return incomplete


def complete_audit(
    db: Session,
    *,
    invoice_id: str,
    request: CompleteAuditRequest,
    actor: str | None,
    ip: str | None = None,
) -> InvoiceOut:
    invoice = _get_invoice(db, invoice_id)
    _assert_scannable(invoice)
    incomplete = _incomplete_audit_items(_invoice_items(db, invoice_id))
    if incomplete:
        raise ScanRuleError(
            ErrorCode.INVALID_REQUEST,
            f'Invoice {invoice_id} still has unaudited bins for: {", ".join(incomplete)}',
            invoice_id=invoice_id,
        )

    invoice.audit_complete = True
    invoice.audited_by = actor
    invoice.audit_date = _now()
    if request.delivery_date is not None:
        invoice.delivery_date = request.delivery_date
    if request.delivery_time is not None:
        invoice.delivery_time = request.delivery_time
    if request.unloading_loc is not None:
        invoice.unloading_loc = request.unloading_loc
    invoice.updated_at = _now()

    log_audit(db, actor=actor, action='audit_completed', invoice_id=invoice_id, ip=ip)
    db.flush()
    return invoice_to_schema(db, invoice)


def delivery_status(dispatched_at: datetime, delivery_date) -> str:
    if delivery_date is None:
        return 'unknown'
    return 'on-time' if as_utc(dispatched_at).date() <= delivery_date else 'late'


def _unique_gatepass_number(db: Session, now: datetime) -> str:
    moment = now
    while True:
        number = placeholder_gatepass_number(moment)
        exists = db.execute(select(Gatepass.id).where(Gatepass.gatepass_number == number)).first()
        if not exists:
            return number
        moment = moment + timedelta(milliseconds=1)


def _dispatch_target(
    barcode_invoice_id: str | None,
    customer_item: str,
    item_number: str,
    invoice_ids: list[str],
    items_by_invoice: dict[str, list[InvoiceItem]],
) -> tuple[str, InvoiceItem | None]:
    if barcode_invoice_id in items_by_invoice:
        candidates = [barcode_invoice_id]
    else:
        candidates = invoice_ids
    for invoice_id in candidates:
        for item in items_by_invoice[invoice_id]:
            if (customer_item and item.customer_item == customer_item) or (item_number and item.part == item_number):
                return invoice_id, item
    return candidates[0], None


def dispatch_invoices(
    db: Session,
    *,
    request: DispatchRequest,
    actor: str | None,
    ip: str | None = None,
    now: datetime | None = None,
) -> DispatchResponse:
    """Dispatch audited invoices onto one vehicle and issue the gatepass."""
    dispatched_at = as_utc(now) or _now()
    invoice_ids = list(dict.fromkeys(normalize_code(i) for i in request.invoice_ids if normalize_code(i)))
    vehicle_number = normalize_code(request.vehicle_number)
    if not invoice_ids:
        raise ScanRuleError(ErrorCode.INVALID_REQUEST, 'No invoices provided')
    if not vehicle_number:
        raise ScanRuleError(ErrorCode.INVALID_REQUEST, 'Vehicle number required')

    invoices: dict[str, Invoice] = {}
    for invoice_id in invoice_ids:
        invoice = _get_invoice(db, invoice_id)
        if invoice.dispatched_at is not None:
            raise ScanRuleError(
                ErrorCode.ALREADY_DISPATCHED,
                f'Invoice {invoice_id} has already been dispatched',
                invoice_id=invoice_id,
            )
        if invoice.blocked:
            raise ScanRuleError(
                ErrorCode.INVOICE_BLOCKED,
                f'Invoice {invoice_id} is blocked pending admin review',
                invoice_id=invoice_id,
            )
        if not invoice.audit_complete:
            raise ScanRuleError(
                ErrorCode.INVALID_REQUEST,
                f'Invoice {invoice_id} has not completed document audit',
                invoice_id=invoice_id,
            )
        invoices[invoice_id] = invoice

    codes = list(dict.fromkeys(normalize_code(inv.bill_to) for inv in invoices.values() if normalize_code(inv.bill_to)))
    if len(codes) > 1:
        logger.warning(
            'Customer code mismatch on dispatch by %s: vehicle %s, codes %s, invoices %s',
            actor,
            vehicle_number,
            ', '.join(codes),
            ', '.join(invoice_ids),
        )
        raise ScanRuleError(
            ErrorCode.CUSTOMER_CODE_MISMATCH,
            f'Invoices have different customer codes: {", ".join(codes)}. '
            'All invoices in a vehicle must have the same customer code.',
        )
    customer_code = codes[0] if codes else None

    gatepass_number = _unique_gatepass_number(db, dispatched_at)
    items_by_invoice = {invoice_id: _invoice_items(db, invoice_id) for invoice_id in invoice_ids}

    for barcode in request.loaded_barcodes:
        customer_item = normalize_code(barcode.customer_item)
        item_number = normalize_code(barcode.item_number)
        target_id, item = _dispatch_target(
            normalize_code(barcode.invoice_id) or None, customer_item, item_number, invoice_ids, items_by_invoice
        )
        canonical = canonicalize_barcode(barcode.customer_barcode).strip() if barcode.customer_barcode else ''
        bin_number = normalize_code(barcode.bin_number) or None
        if not canonical and not bin_number:
            continue
        if _find_duplicate(
            db,
            invoice_id=target_id,
            scan_context=ScanContext.LOADING_DISPATCH,
            bin_number=bin_number,
            canonical_barcode=canonical,
        ):
            continue
        quantity = safe_int(barcode.quantity)
        db.add(
            ValidatedBarcode(
                invoice_id=target_id,
                invoice_item_id=item.id if item else None,
                scan_context=ScanContext.LOADING_DISPATCH,
                customer_barcode=canonical or None,
                customer_item=customer_item or None,
                item_number=item_number or (item.part if item else None),
                quantity=quantity,
                bin_quantity=quantity or None,
                bin_number=bin_number,
                status='matched',
                scanned_by=actor,
                scanned_at=as_utc(barcode.scanned_at) or dispatched_at,
                customer_name=invoices[target_id].customer,
                customer_code=invoices[target_id].bill_to,
            )
        )
        if item:
            item.loaded_bins_count += 1
        db.flush()

    loaded_rows = db.execute(
        select(ValidatedBarcode)
        .where(
            and_(
                ValidatedBarcode.invoice_id.in_(invoice_ids),
                ValidatedBarcode.scan_context == ScanContext.LOADING_DISPATCH,
            )
        )
        .order_by(ValidatedBarcode.scanned_at.asc(), ValidatedBarcode.id.asc())
    ).scalars().all()
    loaded_qty = sum(row.bin_quantity if row.bin_quantity is not None else row.quantity for row in loaded_rows)

    for invoice in invoices.values():
        invoice.dispatched_by = actor
        invoice.dispatched_at = dispatched_at
        invoice.vehicle_number = vehicle_number
        invoice.gatepass_number = gatepass_number
        invoice.updated_at = dispatched_at
        log_audit(
            db,
            actor=actor,
            action='dispatched',
            invoice_id=invoice.id,
            ip=ip,
            metadata={'gatepass_number': gatepass_number, 'vehicle_number': vehicle_number},
        )

    customers = list(dict.fromkeys(inv.customer for inv in invoices.values() if inv.customer))
    db.add(
        Gatepass(
            gatepass_number=gatepass_number,
            vehicle_number=vehicle_number,
            customer=', '.join(customers) or None,
            customer_code=customer_code,
            invoice_ids=invoice_ids,
            total_items=len(loaded_rows),
            total_quantity=loaded_qty,
            authorized_by=actor,
            dispatch_date=dispatched_at,
        )
    )
    db.flush()
    logger.info('Dispatched %s on vehicle %s as %s', ', '.join(invoice_ids), vehicle_number, gatepass_number)

    total_number_of_bins = sum(
        item.audited_bins_count or item.number_of_bins or 0 for items in items_by_invoice.values() for item in items
    )
    supply_dates = sorted({inv.delivery_date for inv in invoices.values() if inv.delivery_date})

    return DispatchResponse(
        success=True,
        gatepass_number=gatepass_number,
        vehicle_number=vehicle_number,
        customer_code=customer_code,
        dispatch_date=dispatched_at,
        authorized_by=actor,
        total_number_of_bins=total_number_of_bins,
        supply_dates=supply_dates,
        invoices=[
            DispatchInvoice(
                id=invoice.id,
                customer=invoice.customer,
                delivery_date=invoice.delivery_date,
                delivery_time=invoice.delivery_time,
                unloading_loc=invoice.unloading_loc,
                status=delivery_status(dispatched_at, invoice.delivery_date),
            )
            for invoice in invoices.values()
        ],
        loaded_scans_detailed=[
            LoadedScanDetail(
                invoice_id=row.invoice_id,
                customer_item=row.customer_item,
                item_number=row.item_number,
                bin_number=row.bin_number,
                bin_quantity=row.bin_quantity if row.bin_quantity is not None else row.quantity,
                customer_barcode=row.customer_barcode,
                scanned_at=as_utc(row.scanned_at),
            )
            for row in loaded_rows
        ],
        loaded_bins_count=len(loaded_rows),
        loaded_qty=loaded_qty,
    )


def _gatepass_to_schema(gatepass: Gatepass) -> GatepassOut:
    return GatepassOut(
        gatepass_number=gatepass.gatepass_number,
        vehicle_number=gatepass.vehicle_number,
        customer=gatepass.customer,
        customer_code=gatepass.customer_code,
        invoice_ids=list(gatepass.invoice_ids or []),
        total_items=gatepass.total_items,
        total_quantity=gatepass.total_quantity,
        authorized_by=gatepass.authorized_by,
        dispatch_date=as_utc(gatepass.dispatch_date),
    )


def get_gatepass(db: Session, *, gatepass_number: str) -> GatepassOut:
    number = normalize_code(gatepass_number)
    gatepass = db.execute(select(Gatepass).where(Gatepass.gatepass_number == number)).scalar_one_or_none()
    if not gatepass:
        raise ScanRuleError(ErrorCode.NOT_FOUND, f'Gatepass {number} not found')
    return _gatepass_to_schema(gatepass)


def verify_gatepass_qr(db: Session, *, value: str) -> VerifyQrResponse:
    result = decode_gatepass_qr_value(value)
    if result.kind == DecodeKind.INVALID:
        return VerifyQrResponse(
            kind=result.kind.value,
            error=result.error,
            stage=result.stage.value if result.stage else None,
        )
    number = gatepass_number_from(result)
    if not number:
        return VerifyQrResponse(kind=result.kind.value, error='QR payload carries no gatepass number')
    return VerifyQrResponse(kind=result.kind.value, gatepass=get_gatepass(db, gatepass_number=number))
