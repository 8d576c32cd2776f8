from __future__ import annotations

import unittest
from datetime import datetime, timezone

from dispatch_hub.services.barcode_service import parse_barcode
from dispatch_hub.services.bin_ledger_service import BinLedger, ScanRecord
from dispatch_hub.services.item_index_service import Invoice, InvoiceLineItem, ItemIndex, ItemKey
from dispatch_hub.services.scan_matcher_service import (
    IssueCategory,
    PairingState,
    RejectReason,
    ScanAcceptance,
    ScanPairing,
    ScanRejection,
    match_audit_pair,
    match_loading_scan,
)

NOW = datetime(2024, 5, 1, 9, 30, tzinfo=timezone.utc)


def customer_label(bin_number: str, part: str, qty: str = '5') -> str:
    return f'{bin_number:<35}{part:<15}{qty}'


def internal_label(bin_number: str, part: str, qty: str = '5') -> str:
    return f'S{bin_number}P{part}Q{qty}'


def _index() -> ItemIndex:
    return ItemIndex(
        [
            Invoice(
                id='INV-1',
                items=[
                    InvoiceLineItem('CI-100', 'IN-100', quantity=10, expected_bins=2),
                    InvoiceLineItem('CI-200', 'IN-200', quantity=6, expected_bins=2),
                ],
            ),
            Invoice(id='INV-2', items=[InvoiceLineItem('CI-100', 'IN-100', quantity=5, expected_bins=1)]),
        ]
    )


class LoadingMatchTests(unittest.TestCase):
    def _match(self, raw: str, candidates=('INV-1', 'INV-2'), ledger=None, blocked=()):
        return match_loading_scan(
            parse_barcode(raw),
            index=_index(),
            candidate_invoice_ids=list(candidates),
            ledger=ledger or BinLedger(),
            blocked_invoice_ids=blocked,
            scanned_at=NOW,
        )

    def test_accepts_first_candidate_and_flags_ambiguity(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100'))
        self.assertIsInstance(outcome, ScanAcceptance)
        self.assertEqual(outcome.invoice_id, 'INV-1')
        self.assertTrue(outcome.is_ambiguous)
        self.assertEqual(outcome.record.key, ItemKey('CI-100', 'IN-100'))
        self.assertEqual(outcome.record.bin_number, 'BIN-0001')
        self.assertEqual(outcome.record.scanned_at, NOW)

    def test_single_candidate_is_not_ambiguous(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), candidates=('INV-2',))
        self.assertIsInstance(outcome, ScanAcceptance)
        self.assertEqual(outcome.invoice_id, 'INV-2')
        self.assertFalse(outcome.is_ambiguous)

    def test_internal_label_is_rejected_during_loading(self) -> None:
        outcome = self._match(internal_label('B-1', 'IN-100'))
        self.assertIsInstance(outcome, ScanRejection)
        self.assertEqual(outcome.reason, RejectReason.WRONG_LABEL_TYPE)
        self.assertEqual(outcome.category, IssueCategory.INPUT)

    def test_duplicate_bin_is_rejected_against_any_invoice(self) -> None:
        ledger = BinLedger(
            [ScanRecord(invoice_id='INV-2', key=ItemKey('CI-100', 'IN-100'), raw_value='x', bin_number='BIN-0001')]
        )
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), ledger=ledger)
        self.assertEqual(outcome.reason, RejectReason.DUPLICATE_BIN)
        self.assertEqual(outcome.invoice_id, 'INV-2')
        self.assertEqual(outcome.category, IssueCategory.CONFLICT)
        self.assertFalse(outcome.escalates)

    def test_same_label_is_rejected_even_when_stored_without_bin(self) -> None:
        raw = customer_label('BIN-0001', 'CI-100')
        ledger = BinLedger([ScanRecord(invoice_id='INV-1', key=ItemKey('CI-100', 'IN-100'), raw_value=raw)])
        outcome = self._match(raw, ledger=ledger)
        self.assertIsInstance(outcome, ScanRejection)
        self.assertEqual(outcome.reason, RejectReason.ALREADY_LOADED)
        self.assertEqual(outcome.bin_number, 'BIN-0001')
        self.assertEqual(outcome.invoice_id, 'INV-1')

    def test_unknown_customer_item(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-999'))
        self.assertEqual(outcome.reason, RejectReason.ITEM_NOT_FOUND)
        self.assertEqual(outcome.customer_item, 'CI-999')

    def test_blocked_first_match_rejects_scan(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), blocked=('INV-1',))
        self.assertEqual(outcome.reason, RejectReason.INVOICE_BLOCKED)
        self.assertEqual(outcome.invoice_id, 'INV-1')


class AuditPairMatchTests(unittest.TestCase):
    def _match(self, customer_raw: str, internal_raw: str, ledger=None, blocked=()):
        return match_audit_pair(
            parse_barcode(customer_raw),
            parse_barcode(internal_raw),
            index=_index(),
            candidate_invoice_ids=['INV-1', 'INV-2'],
            ledger=ledger or BinLedger(),
            blocked_invoice_ids=blocked,
            scanned_at=NOW,
        )

    def test_matching_pair_is_accepted(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-200'), internal_label('B-1', 'IN-200'))
        self.assertIsInstance(outcome, ScanAcceptance)
        self.assertEqual(outcome.invoice_id, 'INV-1')
        self.assertEqual(outcome.match.position, 1)
        self.assertEqual(outcome.record.internal_raw_value, internal_label('B-1', 'IN-200'))
        self.assertFalse(outcome.is_ambiguous)

    def test_cross_source_mismatch_blocks_every_candidate(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), internal_label('B-1', 'IN-200'))
        self.assertEqual(outcome.reason, RejectReason.CROSS_SOURCE_MISMATCH)
        self.assertTrue(outcome.escalates)
        self.assertEqual(outcome.blocked_invoice_ids, ('INV-1', 'INV-2'))
        self.assertIsNotNone(outcome.customer_scan)
        self.assertIsNotNone(outcome.internal_scan)

    def test_bin_quantity_mismatch_blocks_chosen_invoice(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100', '5'), internal_label('B-1', 'IN-100', '4'))
        self.assertEqual(outcome.reason, RejectReason.BIN_QUANTITY_MISMATCH)
        self.assertEqual(outcome.category, IssueCategory.INTEGRITY)
        self.assertEqual(outcome.blocked_invoice_ids, ('INV-1',))

    def test_duplicate_customer_bin_is_rejected_before_matching(self) -> None:
        ledger = BinLedger(
            [ScanRecord(invoice_id='INV-1', key=ItemKey('CI-100', 'IN-100'), raw_value='x', bin_number='BIN-0001')]
        )
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), internal_label('B-1', 'IN-200'), ledger=ledger)
        self.assertEqual(outcome.reason, RejectReason.DUPLICATE_BIN)
        self.assertFalse(outcome.escalates)
        self.assertIsNotNone(outcome.internal_scan)

    def test_wrong_label_types(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-100'), customer_label('BIN-0002', 'CI-100'))
        self.assertEqual(outcome.reason, RejectReason.WRONG_LABEL_TYPE)

    def test_blocked_invoice_rejects_pair(self) -> None:
        outcome = self._match(customer_label('BIN-0001', 'CI-200'), internal_label('B-1', 'IN-200'), blocked=('INV-1',))
        self.assertEqual(outcome.reason, RejectReason.INVOICE_BLOCKED)


class ScanPairingTests(unittest.TestCase):
    def test_pair_resolves_in_either_order(self) -> None:
        pairing = ScanPairing()
        self.assertIsNone(pairing.offer(parse_barcode(internal_label('B-1', 'IN-100'))))
        self.assertEqual(pairing.state, PairingState.AWAITING_SECOND)
        pair = pairing.offer(parse_barcode(customer_label('BIN-0001', 'CI-100')))
        self.assertIsNotNone(pair)
        self.assertEqual(pair.customer_scan.part_code, 'CI-100')
        self.assertEqual(pair.internal_scan.part_code, 'IN-100')
        self.assertEqual(pairing.state, PairingState.RESOLVED)

    def test_same_label_type_replaces_held_scan(self) -> None:
        pairing = ScanPairing()
        pairing.offer(parse_barcode(customer_label('BIN-0001', 'CI-100')))
        pairing.offer(parse_barcode(customer_label('BIN-0002', 'CI-200')))
        self.assertEqual(pairing.held_customer.bin_number, 'BIN-0002')
        self.assertIsNone(pairing.held_internal)

    def test_abandon_and_untyped_labels(self) -> None:
        pairing = ScanPairing()
        pairing.offer(parse_barcode(customer_label('BIN-0001', 'CI-100')))
        pairing.abandon()
        self.assertEqual(pairing.state, PairingState.AWAITING_FIRST)
        self.assertIsNone(pairing.held_customer)
        with self.assertRaises(ValueError):
            pairing.offer(parse_barcode('Part_code-ABC,Quantity-4,Bin_number-B9'))


if __name__ == '__main__':
    unittest.main()
