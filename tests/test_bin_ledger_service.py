from __future__ import annotations

import unittest
from datetime import datetime, timedelta, timezone

from dispatch_hub.services.bin_ledger_service import BinLedger, ItemProgress, ScanRecord, is_item_complete
from dispatch_hub.services.item_index_service import InvoiceLineItem, ItemKey

T0 = datetime(2024, 5, 1, 8, 0, tzinfo=timezone.utc)
KEY_A = ItemKey('CI-1', 'IN-1')
KEY_B = ItemKey('CI-2', 'IN-2')


def _record(invoice_id: str, key: ItemKey, bin_number: str | None, minutes: int | None, qty: str = '5') -> ScanRecord:
    return ScanRecord(
        invoice_id=invoice_id,
        key=key,
        raw_value=f'raw-{invoice_id}-{bin_number}',
        scanned_at=T0 + timedelta(minutes=minutes) if minutes is not None else None,
        bin_number=bin_number,
        bin_quantity=qty,
        scan_id=f'{invoice_id}-{bin_number}',
    )


class BinLedgerServiceTests(unittest.TestCase):
    def test_progress_aggregates_lines_sharing_a_key(self) -> None:
        lines = [
            InvoiceLineItem('CI-1', 'IN-1', quantity=10, expected_bins=2),
            InvoiceLineItem('CI-1', 'IN-1', quantity=5, expected_bins=1),
            InvoiceLineItem('CI-2', 'IN-2', quantity=7, expected_bins=1),
        ]
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', 1), _record('INV-1', KEY_A, 'B2', 2)])
        progress = ledger.progress_for('INV-1', KEY_A, lines)
        self.assertEqual(progress, ItemProgress(expected_bins=3, expected_qty=15, scanned_bins=2, scanned_qty=10))
        self.assertFalse(progress.is_complete)
        self.assertTrue(progress.is_in_progress)

    def test_completion_falls_back_to_quantity_without_expected_bins(self) -> None:
        self.assertTrue(is_item_complete(ItemProgress(expected_bins=0, expected_qty=10, scanned_bins=2, scanned_qty=10)))
        self.assertFalse(is_item_complete(ItemProgress(expected_bins=0, expected_qty=0, scanned_bins=3, scanned_qty=9)))
        self.assertTrue(is_item_complete(ItemProgress(expected_bins=2, expected_qty=100, scanned_bins=2, scanned_qty=1)))

    def test_bin_lookup_can_be_scoped_to_an_invoice(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', 1)])
        self.assertTrue(ledger.has_bin_number(' B1 '))
        self.assertTrue(ledger.has_bin_number('B1', invoice_id='INV-1'))
        self.assertFalse(ledger.has_bin_number('B1', invoice_id='INV-2'))
        self.assertFalse(ledger.has_bin_number(''))

    def test_remove_is_idempotent(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', 1), _record('INV-1', KEY_A, 'B2', 2)])
        removed = ledger.remove('INV-1', scan_id='INV-1-B1')
        self.assertEqual(removed.bin_number, 'B1')
        self.assertIsNone(ledger.remove('INV-1', scan_id='INV-1-B1'))
        self.assertIsNone(ledger.remove('INV-2', index=0))
        self.assertEqual(len(ledger), 1)

    def test_replace_invoice_keeps_other_invoices(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', 1), _record('INV-2', KEY_A, 'B9', 1)])
        ledger.replace_invoice('INV-1', [_record('INV-1', KEY_B, 'B5', 3), _record('INV-3', KEY_B, 'B6', 3)])
        self.assertEqual(sorted(r.bin_number for r in ledger.records), ['B5', 'B9'])
        ledger.retain_invoices(['INV-2'])
        self.assertEqual([r.bin_number for r in ledger.records], ['B9'])

    def test_groups_are_sorted_newest_first(self) -> None:
        ledger = BinLedger(
            [
                _record('INV-1', KEY_A, 'B1', 1),
                _record('INV-2', KEY_A, 'B2', 5),
                _record('INV-1', KEY_B, 'B3', 3),
                _record('INV-1', KEY_A, 'B4', 2),
            ]
        )
        groups = ledger.group_by_invoice_then_item()
        self.assertEqual([g.invoice_id for g in groups], ['INV-2', 'INV-1'])
        self.assertEqual([item.key for item in groups[1].items], [KEY_B, KEY_A])
        self.assertEqual([scan.bin_number for scan in groups[1].items[1].scans], ['B4', 'B1'])

    def test_focused_item_is_most_recent_scan(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', 1), _record('INV-1', KEY_B, 'B2', 4)])
        self.assertEqual(ledger.focused_item(), ('INV-1', KEY_B))

    def test_focused_item_breaks_ties_by_greatest_identity(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_B, 'B1', 2), _record('INV-2', KEY_A, 'B2', 2)])
        self.assertEqual(ledger.focused_item(), ('INV-2', KEY_A))

    def test_focused_item_ignores_records_without_time_and_other_invoices(self) -> None:
        ledger = BinLedger([_record('INV-1', KEY_A, 'B1', None), _record('INV-2', KEY_B, 'B2', 9)])
        self.assertIsNone(ledger.focused_item(['INV-1']))
        self.assertEqual(ledger.focused_item(['INV-1', 'INV-2']), ('INV-2', KEY_B))

    def test_scanned_counts_only_grow_with_appends(self) -> None:
        lines = [InvoiceLineItem('CI-1', 'IN-1', quantity=20, expected_bins=4)]
        ledger = BinLedger()
        seen = []
        for minute in range(4):
            ledger.append(_record('INV-1', KEY_A, f'B{minute}', minute))
            seen.append(ledger.progress_for('INV-1', KEY_A, lines).scanned_bins)
        self.assertEqual(seen, [1, 2, 3, 4])
        self.assertTrue(ledger.progress_for('INV-1', KEY_A, lines).is_complete)


if __name__ == '__main__':
    unittest.main()
