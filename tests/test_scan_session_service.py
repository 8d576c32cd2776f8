from __future__ import annotations

import itertools
import json
import unittest
from datetime import date, datetime, timedelta, timezone

from sqlalchemy import create_engine, select
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch_hub.models import AuditState, Base, MismatchAlert, ScanContext
from dispatch_hub.schemas import InvoiceCreate, InvoiceLineItemIn
from dispatch_hub.services import scan_record_service as svc
from dispatch_hub.services.audit_state_service import InvalidTransitionError
from dispatch_hub.services.local_scan_persistence import LocalScanPersistence
from dispatch_hub.services.qr_payload_service import decode_gatepass_qr_value
from dispatch_hub.services.scan_matcher_service import PairingState, RejectReason
from dispatch_hub.services.scan_persistence import ErrorCode, ScanPersistenceError
from dispatch_hub.services.scan_session_service import OutcomeKind, ScanSession


def customer_label(bin_number: str, part: str = 'CI-100', qty: str = '5') -> str:
    return f'{bin_number:<35}{part:<15}{qty}'


def internal_label(bin_number: str, part: str = 'IN-100', qty: str = '5') -> str:
    return f'S{bin_number}P{part}Q{qty}'


class ScanSessionTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        self.session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)
        self.persistence = LocalScanPersistence(self.session_factory)
        ticks = itertools.count()
        start = datetime(2024, 1, 9, 8, 0, tzinfo=timezone.utc)
        self.clock = lambda: start + timedelta(seconds=next(ticks))
        self._create('INV-1', bins=2)

    def _create(self, invoice_id: str, *, bins: int, bill_to: str = 'CUST-01') -> None:
        with self.session_factory() as db:
            svc.create_invoice(
                db,
                payload=InvoiceCreate(
                    id=invoice_id,
                    customer='Acme',
                    bill_to=bill_to,
                    delivery_date=date(2024, 1, 10),
                    items=[InvoiceLineItemIn(customer_item='CI-100', item_number='IN-100', quantity=bins * 5, expected_bins=bins)],
                ),
                actor='admin',
            )
            db.commit()

    def _session(self, stage: ScanContext = ScanContext.DOC_AUDIT, operator: str = 'op1') -> ScanSession:
        return ScanSession(persistence=self.persistence, stage=stage, operator=operator, clock=self.clock)

    def _audit_pair(self, session: ScanSession, bin_number: str, internal_part: str = 'IN-100', internal_qty: str = '5'):
        first = session.handle_barcode(customer_label(bin_number))
        self.assertEqual(first.kind, OutcomeKind.AWAITING_PAIR)
        return session.handle_barcode(internal_label(bin_number[-1], internal_part, internal_qty))

    def _server_invoice(self, invoice_id: str = 'INV-1'):
        return self.persistence.get_invoices(invoice_ids=[invoice_id])[0]

    def test_document_audit_completes_invoice(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.PENDING)

        outcome = self._audit_pair(session, 'BIN-1')
        self.assertTrue(outcome.accepted)
        self.assertIsNotNone(outcome.record.scan_id)
        self.assertFalse(outcome.item_complete)
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.AUDITING)

        outcome = self._audit_pair(session, 'BIN-2')
        self.assertTrue(outcome.item_complete)
        self.assertTrue(outcome.invoice_complete)
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.AUDIT_COMPLETE)

        rows = session.item_rows()
        self.assertEqual(len(rows), 1)
        self.assertTrue(rows[0].is_complete)
        self.assertTrue(rows[0].is_focused)

        session.complete_audit('INV-1', delivery_time='10:00', unloading_loc='Dock A')
        server = self._server_invoice()
        self.assertTrue(server.audit_complete)
        self.assertEqual(server.items[0].audited_bins_count, 2)
        self.assertEqual(server.unloading_loc, 'Dock A')

    def test_complete_audit_requires_every_bin(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        self._audit_pair(session, 'BIN-1')
        with self.assertRaises(InvalidTransitionError):
            session.complete_audit('INV-1')
        self.assertFalse(self._server_invoice().audit_complete)

    def test_local_duplicate_never_reaches_server(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        self._audit_pair(session, 'BIN-1')
        outcome = self._audit_pair(session, 'BIN-1')
        self.assertEqual(outcome.rejection.reason, RejectReason.DUPLICATE_BIN)
        self.assertEqual(len(session.ledger), 1)
        self.assertEqual(self._server_invoice().items[0].audited_bins_count, 1)

    def test_second_device_duplicate_is_caught_by_server(self) -> None:
        device_a = self._session(operator='op-a')
        device_b = self._session(operator='op-b')
        device_a.select_invoices(['INV-1'])
        device_b.select_invoices(['INV-1'])

        self.assertTrue(self._audit_pair(device_a, 'BIN-1').accepted)
        outcome = self._audit_pair(device_b, 'BIN-1')
        self.assertEqual(outcome.rejection.reason, RejectReason.DUPLICATE_BIN)
        self.assertEqual(len(device_b.ledger), 0)

        device_b.refresh()
        self.assertEqual([r.bin_number for r in device_b.ledger.records], ['BIN-1'])

    def test_server_over_scan_blocks_stale_device(self) -> None:
        self._create('INV-2', bins=1)
        device_a = self._session(operator='op-a')
        device_b = self._session(operator='op-b')
        device_a.select_invoices(['INV-2'])
        device_b.select_invoices(['INV-2'])

        self.assertTrue(self._audit_pair(device_a, 'BIN-1').accepted)
        outcome = self._audit_pair(device_b, 'BIN-2')
        self.assertEqual(outcome.rejection.reason, RejectReason.OVER_SCAN)
        self.assertEqual(device_b.state_machine.state_of('INV-2'), AuditState.BLOCKED)
        self.assertTrue(self._server_invoice('INV-2').blocked)

        outcome = self._audit_pair(device_b, 'BIN-3')
        self.assertEqual(outcome.rejection.reason, RejectReason.INVOICE_BLOCKED)

    def test_cross_source_mismatch_is_reported_and_blocks(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        outcome = self._audit_pair(session, 'BIN-1', internal_part='IN-999')
        self.assertEqual(outcome.rejection.reason, RejectReason.CROSS_SOURCE_MISMATCH)
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.BLOCKED)
        self.assertTrue(self._server_invoice().blocked)

        outcome = self._audit_pair(session, 'BIN-2')
        self.assertEqual(outcome.rejection.reason, RejectReason.INVOICE_BLOCKED)

        session.submit_correction('INV-1')
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.CORRECTED_PENDING_ADMIN)

        with self.session_factory() as db:
            alert = db.execute(select(MismatchAlert)).scalar_one()
            self.assertEqual(alert.customer_scan['partCode'], 'CI-100')
            svc.resolve_mismatch(db, alert_id=alert.id, approve=True, actor='admin')
            db.commit()

        session.refresh()
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.PENDING)
        self.assertTrue(self._audit_pair(session, 'BIN-2').accepted)

    def test_bin_quantity_mismatch_blocks_only_chosen_invoice(self) -> None:
        self._create('INV-2', bins=1)
        session = self._session()
        session.select_invoices(['INV-1', 'INV-2'])
        outcome = self._audit_pair(session, 'BIN-1', internal_qty='4')
        self.assertEqual(outcome.rejection.reason, RejectReason.BIN_QUANTITY_MISMATCH)
        self.assertEqual(session.state_machine.blocked_invoice_ids(), ['INV-1'])
        self.assertFalse(self._server_invoice('INV-2').blocked)

    def test_remove_scan_deletes_on_server_first(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        outcome = self._audit_pair(session, 'BIN-1')
        removed = session.remove_scan('INV-1', scan_id=outcome.record.scan_id)
        self.assertEqual(removed.bin_number, 'BIN-1')
        self.assertEqual(len(session.ledger), 0)
        self.assertEqual(self._server_invoice().items[0].audited_bins_count, 0)
        self.assertIsNone(session.remove_scan('INV-1', scan_id=outcome.record.scan_id))

    def test_removing_a_scan_reopens_the_audit(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        first = self._audit_pair(session, 'BIN-1')
        self._audit_pair(session, 'BIN-2')
        session.complete_audit('INV-1')
        self.assertTrue(self._server_invoice().audit_complete)

        session.remove_scan('INV-1', scan_id=first.record.scan_id)
        self.assertEqual(session.state_machine.state_of('INV-1'), AuditState.AUDITING)
        self.assertFalse(session.invoices['INV-1'].audit_complete)
        self.assertFalse(self._server_invoice().audit_complete)
        with self.assertRaises(InvalidTransitionError):
            session.complete_audit('INV-1')
        self.assertFalse(self._server_invoice().audit_complete)

        self.assertTrue(self._audit_pair(session, 'BIN-1').invoice_complete)
        session.complete_audit('INV-1')
        self.assertTrue(self._server_invoice().audit_complete)

    def test_rejected_scan_drops_held_half_pair(self) -> None:
        session = self._session()
        session.select_invoices(['INV-1'])
        self.assertEqual(session.handle_barcode(customer_label('BIN-1')).kind, OutcomeKind.AWAITING_PAIR)
        self.assertEqual(session.pairing.state, PairingState.AWAITING_SECOND)

        outcome = session.handle_barcode('???')
        self.assertEqual(outcome.rejection.reason, RejectReason.UNREADABLE_LABEL)
        self.assertEqual(session.pairing.state, PairingState.AWAITING_FIRST)
        self.assertIsNone(session.pairing.held_customer)

    def test_unreadable_and_unselected_scans(self) -> None:
        session = self._session()
        self.assertEqual(session.handle_barcode('???').rejection.reason, RejectReason.UNREADABLE_LABEL)
        self.assertEqual(session.handle_barcode(customer_label('BIN-1')).rejection.reason, RejectReason.ITEM_NOT_FOUND)

    def test_select_unknown_invoice(self) -> None:
        with self.assertRaises(ScanPersistenceError) as ctx:
            self._session().select_invoices(['INV-1', 'NOPE'])
        self.assertEqual(ctx.exception.code, ErrorCode.NOT_FOUND)

    def test_loading_requires_completed_audit(self) -> None:
        with self.assertRaises(ValueError):
            self._session(ScanContext.LOADING_DISPATCH).select_invoices(['INV-1'])

    def test_loading_and_dispatch(self) -> None:
        audit = self._session()
        audit.select_invoices(['INV-1'])
        self._audit_pair(audit, 'BIN-1')
        self._audit_pair(audit, 'BIN-2')
        audit.complete_audit('INV-1')

        loading = self._session(ScanContext.LOADING_DISPATCH, operator='loader')
        loading.select_invoices(['INV-1'])
        self.assertEqual(loading.state_machine.state_of('INV-1'), AuditState.AUDIT_COMPLETE)
        self.assertEqual(loading.expected_bins_total(), 2)

        rejected = loading.handle_barcode(internal_label('1'))
        self.assertEqual(rejected.rejection.reason, RejectReason.WRONG_LABEL_TYPE)

        self.assertTrue(loading.handle_barcode(customer_label('BIN-1')).accepted)
        with self.assertRaisesRegex(ValueError, 'Not all bins'):
            loading.dispatch('KA01AB1234')
        self.assertTrue(loading.handle_barcode(customer_label('BIN-2')).accepted)
        self.assertEqual(loading.handle_barcode(customer_label('BIN-2')).rejection.reason, RejectReason.DUPLICATE_BIN)

        preview = loading.preview_summary('KA01AB1234')
        self.assertEqual(preview.grand_totals.bins_loaded, 2)
        self.assertEqual(preview.customer_code, 'CUST-01')

        result = loading.dispatch('KA01AB1234')
        self.assertEqual(result.warnings, [])
        self.assertEqual(result.summary.gatepass_number, result.response.gatepass_number)
        self.assertEqual(result.summary.grand_totals.qty_loaded, 10)
        self.assertEqual(result.summary.invoices[0].status, result.response.invoices[0].status)
        self.assertEqual(loading.state_machine.state_of('INV-1'), AuditState.DISPATCHED)
        self.assertEqual(loading.invoices['INV-1'].vehicle_number, 'KA01AB1234')

        decoded = decode_gatepass_qr_value(result.qr_value)
        self.assertEqual(decoded.payload['gatepassNumber'], result.response.gatepass_number)
        self.assertEqual(json.loads(result.qr_value)['totals']['loadedBins'], 2)
        self.assertTrue(self._server_invoice().dispatched)

    def test_dispatch_confirmation_replaces_stale_local_block(self) -> None:
        audit = self._session()
        audit.select_invoices(['INV-1'])
        self._audit_pair(audit, 'BIN-1')
        self._audit_pair(audit, 'BIN-2')
        audit.complete_audit('INV-1')

        loading = self._session(ScanContext.LOADING_DISPATCH, operator='loader')
        loading.select_invoices(['INV-1'])
        for bin_number in ('BIN-1', 'BIN-2'):
            self.assertTrue(loading.handle_barcode(customer_label(bin_number)).accepted)
        # This device still holds a block the server no longer has.
        loading.state_machine.block('INV-1')

        result = loading.dispatch('KA01AB1234')
        self.assertEqual(result.summary.gatepass_number, result.response.gatepass_number)
        self.assertIsNotNone(result.qr_value)
        self.assertEqual(loading.state_machine.state_of('INV-1'), AuditState.DISPATCHED)
        self.assertFalse(loading.invoices['INV-1'].blocked)

    def test_dispatch_needs_loading_stage_and_vehicle(self) -> None:
        with self.assertRaises(ValueError):
            self._session().dispatch('KA01AB1234')
        with self.assertRaises(ValueError):
            self._session(ScanContext.LOADING_DISPATCH).dispatch('  ')


if __name__ == '__main__':
    unittest.main()
