from __future__ import annotations

import logging
from collections.abc import Callable, Iterable

from dispatch_hub.models import AuditState
from dispatch_hub.services.bin_ledger_service import BinLedger, ItemProgress
from dispatch_hub.services.item_index_service import Invoice

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[AuditState, set[AuditState]] = {
    AuditState.PENDING: {AuditState.AUDITING, AuditState.BLOCKED, AuditState.AUDIT_COMPLETE},
    AuditState.AUDITING: {AuditState.BLOCKED, AuditState.AUDIT_COMPLETE},
    AuditState.BLOCKED: {AuditState.CORRECTED_PENDING_ADMIN},
    AuditState.CORRECTED_PENDING_ADMIN: {AuditState.BLOCKED},
    AuditState.AUDIT_COMPLETE: {AuditState.AUDITING, AuditState.BLOCKED, AuditState.DISPATCHED},
    AuditState.DISPATCHED: set(),
}


class InvalidTransitionError(ValueError):
    def __init__(self, invoice_id: str, current: AuditState, target: AuditState) -> None:
        super().__init__(f'Invoice {invoice_id} cannot move from {current.value} to {target.value}')
        self.invoice_id = invoice_id
        self.current = current
        self.target = target


def derive_state(
    *,
    blocked: bool,
    correction_submitted: bool = False,
    audit_complete: bool = False,
    dispatched: bool = False,
    has_scans: bool = False,
) -> AuditState:
    if dispatched:
        return AuditState.DISPATCHED
    if blocked:
        return AuditState.CORRECTED_PENDING_ADMIN if correction_submitted else AuditState.BLOCKED
    if audit_complete:
        return AuditState.AUDIT_COMPLETE
    if has_scans:
        return AuditState.AUDITING
    return AuditState.PENDING


class AuditStateMachine:
    """Owns the audit lifecycle of the invoices in a session.

    It is the only writer of the ``blocked``/``audit_complete``/``dispatched``
    flags on :class:`Invoice`. A block can only be lifted by a server sync
    after an admin decision.
    """

    def __init__(self, invoices: Iterable[Invoice] = ()) -> None:
        self._invoices: dict[str, Invoice] = {}
        self._states: dict[str, AuditState] = {}
        for invoice in invoices:
            self.track(invoice)

    def track(self, invoice: Invoice, *, has_scans: bool = False) -> None:
        self._invoices[invoice.id] = invoice
        self._states[invoice.id] = derive_state(
            blocked=invoice.blocked,
            audit_complete=invoice.audit_complete,
            dispatched=invoice.dispatched,
            has_scans=has_scans,
        )

    def state_of(self, invoice_id: str) -> AuditState:
        try:
            return self._states[invoice_id]
        except KeyError as exc:
            raise KeyError(f'Invoice {invoice_id} is not tracked') from exc

    def is_blocked(self, invoice_id: str) -> bool:
        return self._states.get(invoice_id) in (AuditState.BLOCKED, AuditState.CORRECTED_PENDING_ADMIN)

    def blocked_invoice_ids(self) -> list[str]:
        return [invoice_id for invoice_id in self._states if self.is_blocked(invoice_id)]

    def _move(self, invoice_id: str, target: AuditState) -> None:
        current = self.state_of(invoice_id)
        if current == target:
            return
        if target not in _TRANSITIONS[current]:
            raise InvalidTransitionError(invoice_id, current, target)
        self._states[invoice_id] = target
        invoice = self._invoices[invoice_id]
        invoice.blocked = target in (AuditState.BLOCKED, AuditState.CORRECTED_PENDING_ADMIN)
        if target == AuditState.AUDIT_COMPLETE:
            invoice.audit_complete = True
        if target == AuditState.AUDITING:
            invoice.audit_complete = False
        if target == AuditState.DISPATCHED:
            invoice.dispatched = True
        logger.info('Invoice %s: %s -> %s', invoice_id, current.value, target.value)

    def record_scan(self, invoice_id: str) -> None:
        if self.state_of(invoice_id) == AuditState.PENDING:
            self._move(invoice_id, AuditState.AUDITING)

    def block(self, invoice_id: str) -> None:
        if self.is_blocked(invoice_id):
            return
        self._move(invoice_id, AuditState.BLOCKED)

    def mark_correction_submitted(self, invoice_id: str) -> None:
        self._move(invoice_id, AuditState.CORRECTED_PENDING_ADMIN)

    def evaluate_completion(
        self,
        invoice_id: str,
        progress_of: Callable[[], Iterable[ItemProgress]],
    ) -> bool:
        """Re-derive audit completeness from the current item progress.

        Returns whether the invoice is complete afterwards. An audit-complete
        invoice whose progress dropped (a scan was removed) goes back to
        auditing. Blocked invoices never complete.
        """
        state = self.state_of(invoice_id)
        if state == AuditState.DISPATCHED:
            return True
        if self.is_blocked(invoice_id):
            return False
        progress = list(progress_of())
        complete = bool(progress) and all(item.is_complete for item in progress)
        if complete:
            self._move(invoice_id, AuditState.AUDIT_COMPLETE)
        elif state == AuditState.AUDIT_COMPLETE:
            self._move(invoice_id, AuditState.AUDITING)
        return complete

    def evaluate_with_ledger(self, invoice: Invoice, ledger: BinLedger) -> bool:
        keys = list(dict.fromkeys(item.key for item in invoice.items))
        return self.evaluate_completion(
            invoice.id,
            lambda: [ledger.progress_for(invoice.id, key, invoice.items) for key in keys],
        )

    def sync_from_server(
        self,
        invoice_id: str,
        *,
        blocked: bool,
        correction_submitted: bool = False,
        audit_complete: bool = False,
        dispatched: bool = False,
        has_scans: bool = False,
    ) -> AuditState:
        # The server is authoritative, so no transition check applies here.
        invoice = self._invoices.get(invoice_id)
        if invoice is None:
            raise KeyError(f'Invoice {invoice_id} is not tracked')
        state = derive_state(
            blocked=blocked,
            correction_submitted=correction_submitted,
            audit_complete=audit_complete,
            dispatched=dispatched,
            has_scans=has_scans,
        )
        invoice.blocked = blocked and not dispatched
        invoice.audit_complete = audit_complete or dispatched
        invoice.dispatched = dispatched
        previous = self._states.get(invoice_id)
        self._states[invoice_id] = state
        if previous != state:
            logger.info('Invoice %s synced: %s -> %s', invoice_id, previous.value if previous else None, state.value)
        return state

    def confirm_dispatch(
        self,
        invoice_id: str,
        *,
        dispatched: bool,
        blocked: bool = False,
        vehicle_number: str | None = None,
        gatepass_number: str | None = None,
    ) -> AuditState:
        """Apply the server's answer to a dispatch request.

        A confirmed dispatch replaces whatever this session believed about the
        invoice, including a stale local block.
        """
        current = self.state_of(invoice_id)
        if dispatched:
            if current != AuditState.AUDIT_COMPLETE:
                logger.warning('Invoice %s dispatched by server while local state was %s', invoice_id, current.value)
            invoice = self._invoices[invoice_id]
            invoice.vehicle_number = vehicle_number or invoice.vehicle_number
            invoice.gatepass_number = gatepass_number or invoice.gatepass_number
        return self.sync_from_server(
            invoice_id,
            blocked=blocked,
            audit_complete=dispatched or current == AuditState.AUDIT_COMPLETE,
            dispatched=dispatched,
            has_scans=current != AuditState.PENDING,
        )
