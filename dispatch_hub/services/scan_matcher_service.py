from __future__ import annotations

import logging
from collections.abc import Iterable, Sequence
from dataclasses import dataclass, field, replace
from datetime import datetime, timezone
from enum import Enum

from dispatch_hub.models import QrType
from dispatch_hub.services.barcode_service import BarcodeData
from dispatch_hub.services.bin_ledger_service import BinLedger, ScanRecord
from dispatch_hub.services.item_index_service import IndexMatch, ItemIndex, ItemKey
from dispatch_hub.services.text_utils import normalize_code

logger = logging.getLogger(__name__)


class IssueCategory(str, Enum):
    INPUT = 'input'
    CONFLICT = 'conflict'
    INTEGRITY = 'integrity'
    TRANSPORT = 'transport'
    DECODE = 'decode'


class RejectReason(str, Enum):
    UNREADABLE_LABEL = 'unreadable_label'
    WRONG_LABEL_TYPE = 'wrong_label_type'
    MISSING_PART_CODE = 'missing_part_code'
    ITEM_NOT_FOUND = 'item_not_found'
    MISSING_BIN_QUANTITY = 'missing_bin_quantity'
    DUPLICATE_BIN = 'duplicate_bin'
    ALREADY_LOADED = 'already_loaded'
    OVER_SCAN = 'over_scan'
    INVOICE_BLOCKED = 'invoice_blocked'
    CROSS_SOURCE_MISMATCH = 'cross_source_mismatch'
    BIN_QUANTITY_MISMATCH = 'bin_quantity_mismatch'
    PERSISTENCE_FAILED = 'persistence_failed'


REASON_CATEGORIES: dict[RejectReason, IssueCategory] = {
    RejectReason.UNREADABLE_LABEL: IssueCategory.INPUT,
    RejectReason.WRONG_LABEL_TYPE: IssueCategory.INPUT,
    RejectReason.MISSING_PART_CODE: IssueCategory.INPUT,
    RejectReason.ITEM_NOT_FOUND: IssueCategory.INPUT,
    RejectReason.MISSING_BIN_QUANTITY: IssueCategory.INPUT,
    RejectReason.DUPLICATE_BIN: IssueCategory.CONFLICT,
    RejectReason.ALREADY_LOADED: IssueCategory.CONFLICT,
    RejectReason.OVER_SCAN: IssueCategory.CONFLICT,
    RejectReason.INVOICE_BLOCKED: IssueCategory.CONFLICT,
    RejectReason.CROSS_SOURCE_MISMATCH: IssueCategory.INTEGRITY,
    RejectReason.BIN_QUANTITY_MISMATCH: IssueCategory.INTEGRITY,
    RejectReason.PERSISTENCE_FAILED: IssueCategory.TRANSPORT,
}


class MatchFlag(str, Enum):
    AMBIGUOUS_MATCH = 'ambiguous_match'


@dataclass(frozen=True)
class ScanRejection:
    reason: RejectReason
    message: str
    bin_number: str | None = None
    invoice_id: str | None = None
    customer_item: str | None = None
    # Invoices an integrity escalation blocks.
    blocked_invoice_ids: tuple[str, ...] = ()
    customer_scan: BarcodeData | None = None
    internal_scan: BarcodeData | None = None

    @property
    def category(self) -> IssueCategory:
        return REASON_CATEGORIES[self.reason]

    @property
    def escalates(self) -> bool:
        return self.category == IssueCategory.INTEGRITY


@dataclass(frozen=True)
class ScanAcceptance:
    record: ScanRecord
    match: IndexMatch
    customer_scan: BarcodeData
    internal_scan: BarcodeData | None = None
    flags: frozenset[MatchFlag] = field(default_factory=frozenset)

    @property
    def invoice_id(self) -> str:
        return self.match.invoice_id

    @property
    def is_ambiguous(self) -> bool:
        return MatchFlag.AMBIGUOUS_MATCH in self.flags


MatchOutcome = ScanAcceptance | ScanRejection


def _duplicate_gate(scan: BarcodeData, ledger: BinLedger) -> ScanRejection | None:
    bin_number = normalize_code(scan.bin_number)
    if bin_number and ledger.has_bin_number(bin_number):
        existing = next(r for r in ledger.records if normalize_code(r.bin_number) == bin_number)
        return ScanRejection(
            reason=RejectReason.DUPLICATE_BIN,
            message=f'Bin {bin_number} has already been scanned for invoice {existing.invoice_id}.',
            bin_number=bin_number,
            invoice_id=existing.invoice_id,
            customer_item=existing.key.customer_item,
            customer_scan=scan,
        )
    existing = ledger.find_by_raw_value(scan.raw_value)
    if existing is not None:
        return ScanRejection(
            reason=RejectReason.ALREADY_LOADED,
            message=f'This label was already scanned for invoice {existing.invoice_id}.',
            bin_number=bin_number or None,
            invoice_id=existing.invoice_id,
            customer_item=existing.key.customer_item,
            customer_scan=scan,
        )
    return None


def _missing_part_code(scan: BarcodeData) -> ScanRejection | None:
    if normalize_code(scan.part_code):
        return None
    return ScanRejection(
        reason=RejectReason.MISSING_PART_CODE,
        message='The scanned label does not carry a part code.',
        bin_number=normalize_code(scan.bin_number) or None,
        customer_scan=scan if scan.qr_type != QrType.INTERNAL else None,
        internal_scan=scan if scan.qr_type == QrType.INTERNAL else None,
    )


def _blocked_gate(match: IndexMatch, blocked_invoice_ids: set[str], scan: BarcodeData) -> ScanRejection | None:
    if match.invoice_id not in blocked_invoice_ids:
        return None
    return ScanRejection(
        reason=RejectReason.INVOICE_BLOCKED,
        message=f'Invoice {match.invoice_id} is blocked pending admin review.',
        bin_number=normalize_code(scan.bin_number) or None,
        invoice_id=match.invoice_id,
        customer_item=match.line_item.customer_item,
        customer_scan=scan,
    )


def _build_record(
    match: IndexMatch,
    customer_scan: BarcodeData,
    internal_scan: BarcodeData | None,
    scanned_at: datetime | None,
) -> ScanRecord:
    return ScanRecord(
        invoice_id=match.invoice_id,
        key=ItemKey.of(match.line_item.customer_item, match.line_item.item_number),
        raw_value=customer_scan.raw_value,
        scanned_at=scanned_at or datetime.now(timezone.utc),
        bin_number=normalize_code(customer_scan.bin_number) or None,
        bin_quantity=normalize_code(customer_scan.bin_quantity or customer_scan.quantity) or None,
        internal_raw_value=internal_scan.raw_value if internal_scan is not None else None,
    )


def match_loading_scan(
    scan: BarcodeData,
    *,
    index: ItemIndex,
    candidate_invoice_ids: Sequence[str],
    ledger: BinLedger,
    blocked_invoice_ids: Iterable[str] = (),
    scanned_at: datetime | None = None,
) -> MatchOutcome:
    if scan.qr_type != QrType.CUSTOMER:
        return ScanRejection(
            reason=RejectReason.WRONG_LABEL_TYPE,
            message='Only customer labels can be scanned during loading.',
            bin_number=normalize_code(scan.bin_number) or None,
            internal_scan=scan,
        )

    rejection = _missing_part_code(scan) or _duplicate_gate(scan, ledger)
    if rejection is not None:
        return rejection

    matches = index.resolve(scan.part_code, candidate_invoice_ids)
    if not matches:
        return ScanRejection(
            reason=RejectReason.ITEM_NOT_FOUND,
            message=f'Customer item {normalize_code(scan.part_code)} is not on any selected invoice.',
            bin_number=normalize_code(scan.bin_number) or None,
            customer_item=normalize_code(scan.part_code),
            customer_scan=scan,
        )

    chosen = matches[0]
    rejection = _blocked_gate(chosen, set(blocked_invoice_ids), scan)
    if rejection is not None:
        return rejection

    flags = frozenset({MatchFlag.AMBIGUOUS_MATCH}) if len(matches) > 1 else frozenset()
    if flags:
        logger.info(
            'Customer item %s matched %d line items, using invoice %s',
            chosen.line_item.customer_item,
            len(matches),
            chosen.invoice_id,
        )
    return ScanAcceptance(
        record=_build_record(chosen, scan, None, scanned_at),
        match=chosen,
        customer_scan=scan,
        flags=flags,
    )


def match_audit_pair(
    customer_scan: BarcodeData,
    internal_scan: BarcodeData,
    *,
    index: ItemIndex,
    candidate_invoice_ids: Sequence[str],
    ledger: BinLedger,
    blocked_invoice_ids: Iterable[str] = (),
    scanned_at: datetime | None = None,
) -> MatchOutcome:
    """Match a customer label and an internal label to one line item.

    Both labels must point at the same (invoice, line item). When they do not,
    the rejection escalates and blocks every selected invoice, because the
    scan cannot be attributed to a single one.
    """
    if customer_scan.qr_type != QrType.CUSTOMER or internal_scan.qr_type != QrType.INTERNAL:
        return ScanRejection(
            reason=RejectReason.WRONG_LABEL_TYPE,
            message='Document audit needs one customer label and one internal label.',
            customer_scan=customer_scan,
            internal_scan=internal_scan,
        )

    rejection = (
        _missing_part_code(customer_scan)
        or _missing_part_code(internal_scan)
        or _duplicate_gate(customer_scan, ledger)
    )
    if rejection is not None:
        return replace(rejection, customer_scan=customer_scan, internal_scan=internal_scan)

    customer_item = normalize_code(customer_scan.part_code)
    item_number = normalize_code(internal_scan.part_code)
    customer_matches = index.resolve(customer_item, candidate_invoice_ids)
    if not customer_matches:
        return ScanRejection(
            reason=RejectReason.ITEM_NOT_FOUND,
            message=f'Customer item {customer_item} is not on any selected invoice.',
            bin_number=normalize_code(customer_scan.bin_number) or None,
            customer_item=customer_item,
            customer_scan=customer_scan,
            internal_scan=internal_scan,
        )

    internal_positions = {
        (match.invoice_id, match.position)
        for match in index.resolve_item_number(item_number, candidate_invoice_ids)
    }
    paired = [match for match in customer_matches if (match.invoice_id, match.position) in internal_positions]
    if not paired:
        logger.warning(
            'Cross-source mismatch: customer item %s vs internal item %s', customer_item, item_number
        )
        return ScanRejection(
            reason=RejectReason.CROSS_SOURCE_MISMATCH,
            message=(
                f'Customer item {customer_item} and internal item {item_number} '
                'do not belong to the same invoice line.'
            ),
            bin_number=normalize_code(customer_scan.bin_number) or None,
            customer_item=customer_item,
            blocked_invoice_ids=tuple(dict.fromkeys(candidate_invoice_ids)),
            customer_scan=customer_scan,
            internal_scan=internal_scan,
        )

    chosen = paired[0]
    rejection = _blocked_gate(chosen, set(blocked_invoice_ids), customer_scan)
    if rejection is not None:
        return replace(rejection, customer_scan=customer_scan, internal_scan=internal_scan)

    customer_qty = normalize_code(customer_scan.bin_quantity)
    internal_qty = normalize_code(internal_scan.bin_quantity)
    if not customer_qty or not internal_qty:
        return ScanRejection(
            reason=RejectReason.MISSING_BIN_QUANTITY,
            message='Both labels must carry a bin quantity.',
            bin_number=normalize_code(customer_scan.bin_number) or None,
            invoice_id=chosen.invoice_id,
            customer_item=customer_item,
            customer_scan=customer_scan,
            internal_scan=internal_scan,
        )
    if customer_qty != internal_qty:
        logger.warning(
            'Bin quantity mismatch on invoice %s: customer %s vs internal %s',
            chosen.invoice_id,
            customer_qty,
            internal_qty,
        )
        return ScanRejection(
            reason=RejectReason.BIN_QUANTITY_MISMATCH,
            message=(
                f'Bin quantity mismatch for {customer_item}: customer label says {customer_qty}, '
                f'internal label says {internal_qty}.'
            ),
            bin_number=normalize_code(customer_scan.bin_number) or None,
            invoice_id=chosen.invoice_id,
            customer_item=customer_item,
            blocked_invoice_ids=(chosen.invoice_id,),
            customer_scan=customer_scan,
            internal_scan=internal_scan,
        )

    flags = frozenset({MatchFlag.AMBIGUOUS_MATCH}) if len(customer_matches) > 1 else frozenset()
    return ScanAcceptance(
        record=_build_record(chosen, customer_scan, internal_scan, scanned_at),
        match=chosen,
        customer_scan=customer_scan,
        internal_scan=internal_scan,
        flags=flags,
    )


class PairingState(str, Enum):
    AWAITING_FIRST = 'awaiting_first'
    AWAITING_SECOND = 'awaiting_second'
    RESOLVED = 'resolved'


@dataclass(frozen=True)
class ScanPair:
    customer_scan: BarcodeData
    internal_scan: BarcodeData


class ScanPairing:
    """Holds the first label of a document-audit pair until its partner arrives.

    There is no expiry: a half pair stays until it is resolved, reset after a
    match outcome, or abandoned by the operator.
    """

    def __init__(self) -> None:
        self._customer: BarcodeData | None = None
        self._internal: BarcodeData | None = None
        self._state = PairingState.AWAITING_FIRST

    @property
    def state(self) -> PairingState:
        return self._state

    @property
    def held_customer(self) -> BarcodeData | None:
        return self._customer

    @property
    def held_internal(self) -> BarcodeData | None:
        return self._internal

    def offer(self, scan: BarcodeData) -> ScanPair | None:
        if self._state == PairingState.RESOLVED:
            self.abandon()
        if scan.qr_type == QrType.CUSTOMER:
            self._customer = scan
        elif scan.qr_type == QrType.INTERNAL:
            self._internal = scan
        else:
            raise ValueError('Only customer or internal labels can be paired')

        if self._customer is not None and self._internal is not None:
            self._state = PairingState.RESOLVED
            return ScanPair(customer_scan=self._customer, internal_scan=self._internal)
        self._state = PairingState.AWAITING_SECOND
        return None

    def abandon(self) -> None:
        self._customer = None
        self._internal = None
        self._state = PairingState.AWAITING_FIRST
