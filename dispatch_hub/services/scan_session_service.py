from __future__ import annotations

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass, field, replace
from datetime import date, datetime, timezone
from enum import Enum

from dispatch_hub.models import AuditState, MismatchStep, QrType, ScanContext
from dispatch_hub.schemas import (
    CompleteAuditRequest,
    DispatchRequest,
    DispatchResponse,
    InvoiceOut,
    LoadedBarcode,
    MismatchReport,
    MismatchScan,
    PersistedScan,
    ScanWrite,
)
from dispatch_hub.services.audit_state_service import AuditStateMachine, InvalidTransitionError
from dispatch_hub.services.barcode_service import BarcodeData, BarcodeParseError, parse_barcode
from dispatch_hub.services.bin_ledger_service import BinLedger, ItemProgress, ScanRecord
from dispatch_hub.services.gatepass_summary_service import (
    GatepassSummary,
    InvoiceDeliveryDetails,
    build_gatepass_summary,
    cross_check_totals,
    gatepass_qr_payload,
    loaded_scans_from_records,
    normalize_loaded_scan,
    resolve_customer_code,
)
from dispatch_hub.services.item_index_service import IndexMatch, Invoice, InvoiceLineItem, ItemIndex, ItemKey
from dispatch_hub.services.qr_payload_service import encode_gatepass_qr_payload
from dispatch_hub.services.scan_matcher_service import (
    MatchFlag,
    PairingState,
    RejectReason,
    ScanAcceptance,
    ScanPairing,
    ScanRejection,
    match_audit_pair,
    match_loading_scan,
)
from dispatch_hub.services.scan_persistence import ErrorCode, ScanPersistence, ScanPersistenceError
from dispatch_hub.services.text_utils import normalize_code

logger = logging.getLogger(__name__)

_ERROR_REASONS = {
    ErrorCode.DUPLICATE: RejectReason.DUPLICATE_BIN,
    ErrorCode.OVER_SCAN: RejectReason.OVER_SCAN,
    ErrorCode.INVOICE_BLOCKED: RejectReason.INVOICE_BLOCKED,
}


class OutcomeKind(str, Enum):
    ACCEPTED = 'accepted'
    REJECTED = 'rejected'
    AWAITING_PAIR = 'awaiting_pair'


@dataclass(frozen=True)
class ScanOutcome:
    kind: OutcomeKind
    record: ScanRecord | None = None
    match: IndexMatch | None = None
    rejection: ScanRejection | None = None
    flags: frozenset[MatchFlag] = field(default_factory=frozenset)
    pairing_state: PairingState | None = None
    item_complete: bool = False
    invoice_complete: bool = False

    @property
    def accepted(self) -> bool:
        return self.kind == OutcomeKind.ACCEPTED


@dataclass(frozen=True)
class ItemRow:
    invoice_id: str
    key: ItemKey
    description: str
    progress: ItemProgress
    is_focused: bool

    @property
    def is_complete(self) -> bool:
        return self.progress.is_complete

    @property
    def is_in_progress(self) -> bool:
        return self.progress.is_in_progress


@dataclass(frozen=True)
class DispatchResult:
    response: DispatchResponse
    summary: GatepassSummary
    qr_value: str
    warnings: list[str]


def invoice_from_schema(out: InvoiceOut, stage: ScanContext) -> Invoice:
    items = []
    for item in out.items:
        expected = item.expected_bins
        if stage == ScanContext.LOADING_DISPATCH:
            expected = item.audited_bins_count or item.expected_bins
        items.append(
            InvoiceLineItem(
                customer_item=normalize_code(item.customer_item) or normalize_code(item.item_number),
                item_number=normalize_code(item.item_number),
                description=item.description or '',
                quantity=item.quantity,
                expected_bins=expected,
            )
        )
    return Invoice(
        id=out.id,
        customer=out.customer,
        bill_to=out.bill_to,
        items=items,
        audit_complete=out.audit_complete,
        dispatched=out.dispatched,
        blocked=out.blocked,
        delivery_date=out.delivery_date,
        delivery_time=out.delivery_time,
        unloading_loc=out.unloading_loc,
        vehicle_number=out.vehicle_number,
        gatepass_number=out.gatepass_number,
    )


def record_from_persisted(scan: PersistedScan) -> ScanRecord:
    if scan.bin_quantity is not None:
        bin_quantity = str(scan.bin_quantity)
    else:
        bin_quantity = str(scan.quantity) if scan.quantity else None
    return ScanRecord(
        invoice_id=scan.invoice_id,
        key=ItemKey.of(scan.customer_item, scan.item_number),
        raw_value=scan.customer_barcode or '',
        scanned_at=scan.scanned_at,
        bin_number=normalize_code(scan.bin_number) or None,
        bin_quantity=bin_quantity,
        internal_raw_value=scan.internal_barcode,
        scan_id=scan.id,
    )


def _mismatch_scan(scan: BarcodeData | None) -> MismatchScan | None:
    if scan is None:
        return None
    return MismatchScan(
        part_code=scan.part_code or 'N/A',
        quantity=scan.quantity or 'N/A',
        bin_number=scan.bin_number or 'N/A',
        raw_value=scan.raw_value or 'N/A',
    )


class ScanSession:
    """One operator's scan session for a stage over a set of selected invoices.

    Events are handled one at a time. The session only touches its ledger
    after persistence confirmed a write, and it re-reads the server state on
    selection, so two devices converge on the next refresh.
    """

    def __init__(
        self,
        *,
        persistence: ScanPersistence,
        stage: ScanContext,
        operator: str | None = None,
        clock: Callable[[], datetime] | None = None,
    ) -> None:
        self.persistence = persistence
        self.stage = stage
        self.operator = operator
        self.invoices: dict[str, Invoice] = {}
        self.selected_ids: list[str] = []
        self.index = ItemIndex([])
        self.ledger = BinLedger()
        self.state_machine = AuditStateMachine()
        self.pairing = ScanPairing()
        self.warnings: list[str] = []
        self._clock = clock or (lambda: datetime.now(timezone.utc))

    def _track(self, out: InvoiceOut) -> Invoice:
        invoice = invoice_from_schema(out, self.stage)
        self.invoices[invoice.id] = invoice
        self.index.add_invoice(invoice)
        self.state_machine.track(invoice)
        self.state_machine.sync_from_server(
            invoice.id,
            blocked=out.blocked,
            correction_submitted=out.correction_submitted,
            audit_complete=out.audit_complete,
            dispatched=out.dispatched,
            has_scans=any(item.audited_bins_count for item in out.items),
        )
        return invoice

    def select_invoices(self, invoice_ids: Iterable[str]) -> list[Invoice]:
        wanted = list(dict.fromkeys(normalize_code(i) for i in invoice_ids if normalize_code(i)))
        fetched = {out.id: out for out in self.persistence.get_invoices(invoice_ids=wanted)}
        missing = [invoice_id for invoice_id in wanted if invoice_id not in fetched]
        if missing:
            raise ScanPersistenceError(ErrorCode.NOT_FOUND, f'Invoices not found: {", ".join(missing)}')
        if self.stage == ScanContext.LOADING_DISPATCH:
            for out in fetched.values():
                if out.dispatched:
                    raise ValueError(f'Invoice {out.id} has already been dispatched')
                if not out.audit_complete:
                    raise ValueError(f'Invoice {out.id} has not completed document audit')

        scans = {
            invoice_id: self.persistence.get_scans(invoice_id=invoice_id, scan_context=self.stage)
            for invoice_id in wanted
        }

        self.pairing.abandon()
        self.selected_ids = wanted
        self.ledger.retain_invoices(wanted)
        selected = []
        for invoice_id in wanted:
            selected.append(self._track(fetched[invoice_id]))
            # Last full read wins over whatever this device holds.
            self.ledger.replace_invoice(invoice_id, [record_from_persisted(scan) for scan in scans[invoice_id]])
        logger.info('Selected %d invoice(s) for %s, %d scan(s) loaded', len(wanted), self.stage.value, len(self.ledger))
        return selected

    def refresh(self) -> list[Invoice]:
        return self.select_invoices(self.selected_ids)

    def selected_invoices(self) -> list[Invoice]:
        return [self.invoices[invoice_id] for invoice_id in self.selected_ids]

    def clear_scan(self) -> None:
        self.pairing.abandon()

    def _reject(self, rejection: ScanRejection) -> ScanOutcome:
        logger.info('Scan rejected (%s): %s', rejection.reason.value, rejection.message)
        return ScanOutcome(kind=OutcomeKind.REJECTED, rejection=rejection)

    def handle_barcode(self, value: str) -> ScanOutcome:
        try:
            scan = parse_barcode(value)
        except BarcodeParseError as exc:
            if self.stage == ScanContext.DOC_AUDIT:
                self.pairing.abandon()
            return self._reject(ScanRejection(reason=RejectReason.UNREADABLE_LABEL, message=str(exc)))

        if not self.selected_ids:
            return self._reject(
                ScanRejection(reason=RejectReason.ITEM_NOT_FOUND, message='Select at least one invoice before scanning.')
            )

        blocked = self.state_machine.blocked_invoice_ids()
        if self.stage == ScanContext.LOADING_DISPATCH:
            outcome = match_loading_scan(
                scan,
                index=self.index,
                candidate_invoice_ids=self.selected_ids,
                ledger=self.ledger,
                blocked_invoice_ids=blocked,
                scanned_at=self._clock(),
            )
        else:
            if scan.qr_type not in (QrType.CUSTOMER, QrType.INTERNAL):
                self.pairing.abandon()
                return self._reject(
                    ScanRejection(
                        reason=RejectReason.WRONG_LABEL_TYPE,
                        message='Document audit needs one customer label and one internal label.',
                        customer_scan=scan,
                    )
                )
            pair = self.pairing.offer(scan)
            if pair is None:
                return ScanOutcome(kind=OutcomeKind.AWAITING_PAIR, pairing_state=self.pairing.state)
            outcome = match_audit_pair(
                pair.customer_scan,
                pair.internal_scan,
                index=self.index,
                candidate_invoice_ids=self.selected_ids,
                ledger=self.ledger,
                blocked_invoice_ids=blocked,
                scanned_at=self._clock(),
            )
            self.pairing.abandon()

        if isinstance(outcome, ScanRejection):
            if outcome.escalates:
                self._escalate(outcome)
            return self._reject(outcome)
        return self._commit(outcome)

    def _escalate(self, rejection: ScanRejection) -> None:
        invoice_ids = [
            invoice_id
            for invoice_id in rejection.blocked_invoice_ids
            if invoice_id in self.invoices and not self.invoices[invoice_id].dispatched
        ]
        if not invoice_ids:
            return
        step = (
            MismatchStep.BIN_QUANTITY
            if rejection.reason == RejectReason.BIN_QUANTITY_MISMATCH
            else MismatchStep.CROSS_SOURCE
        )
        customers = list(dict.fromkeys(self.invoices[i].customer for i in invoice_ids if self.invoices[i].customer))
        report = MismatchReport(
            invoice_ids=invoice_ids,
            customer=', '.join(customers) or None,
            step=self.stage,
            validation_step=step,
            customer_scan=_mismatch_scan(rejection.customer_scan),
            internal_scan=_mismatch_scan(rejection.internal_scan),
        )
        try:
            self.persistence.report_mismatch(report=report, actor=self.operator)
        except ScanPersistenceError as exc:
            logger.warning('Mismatch report failed (%s): %s', exc.code.value, exc.message)
            self.warnings.append(f'Mismatch could not be reported: {exc.message}')
        # Scanning stops on these invoices even if the report did not reach the server.
        for invoice_id in invoice_ids:
            self.state_machine.block(invoice_id)

    def _persistence_rejection(self, exc: ScanPersistenceError, acceptance: ScanAcceptance) -> ScanRejection:
        return ScanRejection(
            reason=_ERROR_REASONS.get(exc.code, RejectReason.PERSISTENCE_FAILED),
            message=exc.message,
            bin_number=acceptance.record.bin_number,
            invoice_id=acceptance.invoice_id,
            customer_item=acceptance.match.line_item.customer_item,
            customer_scan=acceptance.customer_scan,
            internal_scan=acceptance.internal_scan,
        )

    def _commit(self, acceptance: ScanAcceptance) -> ScanOutcome:
        line = acceptance.match.line_item
        record = acceptance.record
        write = ScanWrite(
            customer_barcode=acceptance.customer_scan.raw_value,
            internal_barcode=acceptance.internal_scan.raw_value if acceptance.internal_scan else None,
            customer_item=line.customer_item,
            item_number=line.item_number or None,
            part_description=line.description or None,
            quantity=record.quantity_value,
            bin_quantity=record.quantity_value or None,
            bin_number=record.bin_number,
            scan_context=self.stage,
        )
        try:
            recorded = self.persistence.record_scan(invoice_id=acceptance.invoice_id, scan=write, actor=self.operator)
        except ScanPersistenceError as exc:
            if exc.invoice_blocked:
                self.state_machine.block(exc.invoice_id or acceptance.invoice_id)
            return self._reject(self._persistence_rejection(exc, acceptance))

        record = replace(record, scan_id=recorded.scan_id)
        self.ledger.append(record)

        invoice = self.invoices[acceptance.invoice_id]
        if recorded.expected_bins_for_item and line.expected_bins == 0 and self.stage == ScanContext.DOC_AUDIT:
            # Expected bins are derived on the first scan of an item.
            invoice.items[acceptance.match.position] = replace(line, expected_bins=recorded.expected_bins_for_item)
            self.index.add_invoice(invoice)

        invoice_complete = False
        if self.stage == ScanContext.DOC_AUDIT:
            self.state_machine.record_scan(invoice.id)
            invoice_complete = self.state_machine.evaluate_with_ledger(invoice, self.ledger)

        progress = self.ledger.progress_for(invoice.id, record.key, invoice.items)
        return ScanOutcome(
            kind=OutcomeKind.ACCEPTED,
            record=record,
            match=acceptance.match,
            flags=acceptance.flags,
            item_complete=progress.is_complete,
            invoice_complete=invoice_complete,
        )

    def remove_scan(self, invoice_id: str, *, scan_id: str | None = None, index: int | None = None) -> ScanRecord | None:
        """Delete a scan on the server first, then locally.

        A record without a known server id is looked up by bin number or raw
        label; when the server has no copy the removal is local only.
        """
        records = self.ledger.records
        record = None
        if scan_id is not None:
            record = next((r for r in records if r.invoice_id == invoice_id and r.scan_id == scan_id), None)
        elif index is not None and 0 <= index < len(records) and records[index].invoice_id == invoice_id:
            record = records[index]
        if record is None and scan_id is None:
            return None

        server_id = scan_id or record.scan_id or self._lookup_server_scan_id(record)
        if server_id is not None:
            try:
                self.persistence.delete_scan(invoice_id=invoice_id, scan_id=server_id, actor=self.operator)
            except ScanPersistenceError as exc:
                if exc.code != ErrorCode.NOT_FOUND:
                    raise
                logger.info('Scan %s missing on server, removing locally', server_id)

        if record is None:
            return None
        if record.scan_id is not None:
            removed = self.ledger.remove(invoice_id, scan_id=record.scan_id)
        else:
            removed = self.ledger.remove(invoice_id, index=records.index(record))
        if removed is not None and self.stage == ScanContext.DOC_AUDIT and invoice_id in self.invoices:
            self.state_machine.evaluate_with_ledger(self.invoices[invoice_id], self.ledger)
        return removed

    def _lookup_server_scan_id(self, record: ScanRecord) -> str | None:
        for scan in self.persistence.get_scans(invoice_id=record.invoice_id, scan_context=self.stage):
            if record.bin_number and normalize_code(scan.bin_number) == record.bin_number:
                return scan.id
            if normalize_code(scan.customer_barcode) == normalize_code(record.raw_value):
                return scan.id
        return None

    def item_rows(self) -> list[ItemRow]:
        focused = self.ledger.focused_item(self.selected_ids)
        rows: list[ItemRow] = []
        for invoice in self.selected_invoices():
            descriptions: dict[ItemKey, str] = {}
            for item in invoice.items:
                if not descriptions.get(item.key):
                    descriptions[item.key] = item.description
            for key, description in descriptions.items():
                rows.append(
                    ItemRow(
                        invoice_id=invoice.id,
                        key=key,
                        description=description,
                        progress=self.ledger.progress_for(invoice.id, key, invoice.items),
                        is_focused=focused == (invoice.id, key),
                    )
                )
        return rows

    def expected_bins_total(self) -> int:
        invoices = self.selected_invoices()
        if self.stage == ScanContext.LOADING_DISPATCH:
            invoices = [invoice for invoice in invoices if invoice.audit_complete]
        return sum(item.expected_bins for invoice in invoices for item in invoice.items)

    def submit_correction(self, invoice_id: str) -> Invoice:
        out = self.persistence.submit_correction(invoice_id=invoice_id, actor=self.operator)
        return self._sync(out)

    def _sync(self, out: InvoiceOut) -> Invoice:
        invoice = self.invoices[out.id]
        invoice.delivery_date = out.delivery_date
        invoice.delivery_time = out.delivery_time
        invoice.unloading_loc = out.unloading_loc
        self.state_machine.sync_from_server(
            out.id,
            blocked=out.blocked,
            correction_submitted=out.correction_submitted,
            audit_complete=out.audit_complete,
            dispatched=out.dispatched,
            has_scans=bool(self.ledger.records_for(out.id)),
        )
        return invoice

    def complete_audit(
        self,
        invoice_id: str,
        *,
        delivery_date: date | None = None,
        delivery_time: str | None = None,
        unloading_loc: str | None = None,
    ) -> Invoice:
        invoice = self.invoices[invoice_id]
        if not self.state_machine.evaluate_with_ledger(invoice, self.ledger):
            raise InvalidTransitionError(invoice_id, self.state_machine.state_of(invoice_id), AuditState.AUDIT_COMPLETE)
        out = self.persistence.complete_audit(
            invoice_id=invoice_id,
            request=CompleteAuditRequest(
                delivery_date=delivery_date,
                delivery_time=delivery_time,
                unloading_loc=unloading_loc,
            ),
            actor=self.operator,
        )
        return self._sync(out)

    def _incomplete_items(self) -> list[ItemRow]:
        return [row for row in self.item_rows() if not row.is_complete]

    def preview_summary(self, vehicle_number: str | None = None) -> GatepassSummary:
        invoices = self.selected_invoices()
        return build_gatepass_summary(
            gatepass_number=None,
            vehicle_number=vehicle_number,
            authorized_by=self.operator,
            customer_code=resolve_customer_code(invoices),
            invoice_ids=self.selected_ids,
            loaded_scans=loaded_scans_from_records(self.ledger.records),
            invoice_details=[
                InvoiceDeliveryDetails(
                    invoice_id=invoice.id,
                    delivery_date=invoice.delivery_date,
                    delivery_time=invoice.delivery_time,
                    unloading_loc=invoice.unloading_loc,
                )
                for invoice in invoices
            ],
            now=self._clock(),
        )

    def dispatch(self, vehicle_number: str) -> DispatchResult:
        if self.stage != ScanContext.LOADING_DISPATCH:
            raise ValueError('Dispatch is only possible from a loading session')
        vehicle = normalize_code(vehicle_number)
        if not vehicle:
            raise ValueError('Vehicle number required')
        if not self.selected_ids:
            raise ValueError('No invoices selected')

        local_summary = self.preview_summary(vehicle)
        incomplete = self._incomplete_items()
        if incomplete:
            missing = ', '.join(f'{row.invoice_id}:{row.key.customer_item}' for row in incomplete)
            raise ValueError(f'Not all bins are loaded: {missing}')

        request = DispatchRequest(
            invoice_ids=self.selected_ids,
            vehicle_number=vehicle,
            loaded_barcodes=[
                LoadedBarcode(
                    invoice_id=record.invoice_id,
                    customer_barcode=record.raw_value,
                    customer_item=record.key.customer_item,
                    item_number=record.key.item_number,
                    bin_number=record.bin_number,
                    quantity=record.bin_quantity,
                    scanned_at=record.scanned_at,
                )
                for record in self.ledger.records
            ],
        )
        response = self.persistence.dispatch(request=request, actor=self.operator)

        for dispatched in response.invoices:
            if dispatched.id in self.invoices:
                self.state_machine.confirm_dispatch(
                    dispatched.id,
                    dispatched=True,
                    vehicle_number=response.vehicle_number,
                    gatepass_number=response.gatepass_number,
                )

        summary = build_gatepass_summary(
            gatepass_number=response.gatepass_number,
            vehicle_number=response.vehicle_number,
            authorized_by=response.authorized_by or self.operator,
            customer_code=response.customer_code or local_summary.customer_code,
            dispatch_date=response.dispatch_date,
            invoice_ids=self.selected_ids,
            loaded_scans=[
                normalize_loaded_scan(
                    invoice_id=scan.invoice_id,
                    customer_item=scan.customer_item,
                    item_number=scan.item_number,
                    quantity=scan.bin_quantity,
                )
                for scan in response.loaded_scans_detailed
            ],
            invoice_details=[
                InvoiceDeliveryDetails(
                    invoice_id=inv.id,
                    delivery_date=inv.delivery_date,
                    delivery_time=inv.delivery_time,
                    unloading_loc=inv.unloading_loc,
                    status=inv.status,
                )
                for inv in response.invoices
            ],
        )
        warnings = cross_check_totals(
            local_summary,
            server_bins=response.loaded_bins_count,
            server_qty=response.loaded_qty,
        )
        self.warnings.extend(warnings)
        qr_value = encode_gatepass_qr_payload(gatepass_qr_payload(summary, self.selected_invoices()))
        return DispatchResult(response=response, summary=summary, qr_value=qr_value, warnings=warnings)
