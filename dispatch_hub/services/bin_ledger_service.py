from __future__ import annotations

from collections.abc import Iterable
from dataclasses import dataclass
from datetime import datetime

from dispatch_hub.services.item_index_service import InvoiceLineItem, ItemKey
from dispatch_hub.services.text_utils import normalize_code, safe_int, timestamp_ms


@dataclass(frozen=True)
class ScanRecord:
    invoice_id: str
    key: ItemKey
    raw_value: str
    scanned_at: datetime | None = None
    bin_number: str | None = None
    bin_quantity: str | None = None
    internal_raw_value: str | None = None
    scan_id: str | None = None

    @property
    def quantity_value(self) -> int:
        return safe_int(self.bin_quantity)


@dataclass(frozen=True)
class ItemProgress:
    expected_bins: int
    expected_qty: int
    scanned_bins: int
    scanned_qty: int

    @property
    def is_complete(self) -> bool:
        return is_item_complete(self)

    @property
    def is_in_progress(self) -> bool:
        return (self.scanned_bins > 0 or self.scanned_qty > 0) and not self.is_complete


def is_item_complete(progress: ItemProgress) -> bool:
    if progress.expected_bins > 0:
        return progress.scanned_bins >= progress.expected_bins
    return progress.expected_qty > 0 and progress.scanned_qty >= progress.expected_qty


@dataclass(frozen=True)
class ItemGroup:
    key: ItemKey
    scans: list[ScanRecord]
    latest_ms: int


@dataclass(frozen=True)
class InvoiceGroup:
    invoice_id: str
    items: list[ItemGroup]
    latest_ms: int


class BinLedger:
    """Accepted scan records for the invoices of one session.

    Records are only appended after persistence succeeded; the ledger never
    deduplicates on its own.
    """

    def __init__(self, records: Iterable[ScanRecord] = ()) -> None:
        self._records: list[ScanRecord] = list(records)

    def __len__(self) -> int:
        return len(self._records)

    @property
    def records(self) -> list[ScanRecord]:
        return list(self._records)

    def append(self, record: ScanRecord) -> None:
        self._records.append(record)

    def remove(self, invoice_id: str, *, scan_id: str | None = None, index: int | None = None) -> ScanRecord | None:
        if scan_id is not None:
            for position, record in enumerate(self._records):
                if record.invoice_id == invoice_id and record.scan_id == scan_id:
                    return self._records.pop(position)
            return None
        if index is not None and 0 <= index < len(self._records):
            if self._records[index].invoice_id == invoice_id:
                return self._records.pop(index)
        return None

    def replace_invoice(self, invoice_id: str, records: Iterable[ScanRecord]) -> None:
        kept = [record for record in self._records if record.invoice_id != invoice_id]
        kept.extend(record for record in records if record.invoice_id == invoice_id)
        self._records = kept

    def retain_invoices(self, invoice_ids: Iterable[str]) -> None:
        wanted = set(invoice_ids)
        self._records = [record for record in self._records if record.invoice_id in wanted]

    def records_for(self, invoice_id: str, key: ItemKey | None = None) -> list[ScanRecord]:
        return [
            record
            for record in self._records
            if record.invoice_id == invoice_id and (key is None or record.key == key)
        ]

    def has_bin_number(self, bin_number: str | None, *, invoice_id: str | None = None) -> bool:
        wanted = normalize_code(bin_number)
        if not wanted:
            return False
        return any(
            normalize_code(record.bin_number) == wanted
            for record in self._records
            if invoice_id is None or record.invoice_id == invoice_id
        )

    def find_by_raw_value(self, raw_value: str) -> ScanRecord | None:
        wanted = normalize_code(raw_value)
        if not wanted:
            return None
        for record in self._records:
            if normalize_code(record.raw_value) == wanted:
                return record
        return None

    def progress_for(self, invoice_id: str, key: ItemKey, line_items: Iterable[InvoiceLineItem]) -> ItemProgress:
        expected_bins = 0
        expected_qty = 0
        for item in line_items:
            if item.key != key:
                continue
            expected_bins += max(item.expected_bins, 0)
            expected_qty += max(item.quantity, 0)

        scans = self.records_for(invoice_id, key)
        return ItemProgress(
            expected_bins=expected_bins,
            expected_qty=expected_qty,
            scanned_bins=len(scans),
            scanned_qty=sum(record.quantity_value for record in scans),
        )

    def group_by_invoice_then_item(self) -> list[InvoiceGroup]:
        by_invoice: dict[str, dict[ItemKey, list[ScanRecord]]] = {}
        for record in self._records:
            by_invoice.setdefault(record.invoice_id, {}).setdefault(record.key, []).append(record)

        groups: list[InvoiceGroup] = []
        for invoice_id, items in by_invoice.items():
            item_groups: list[ItemGroup] = []
            for key, scans in items.items():
                ordered = sorted(scans, key=lambda record: timestamp_ms(record.scanned_at), reverse=True)
                item_groups.append(
                    ItemGroup(key=key, scans=ordered, latest_ms=timestamp_ms(ordered[0].scanned_at))
                )
            item_groups.sort(key=lambda group: group.latest_ms, reverse=True)
            groups.append(
                InvoiceGroup(invoice_id=invoice_id, items=item_groups, latest_ms=item_groups[0].latest_ms)
            )
        groups.sort(key=lambda group: group.latest_ms, reverse=True)
        return groups

    def focused_item(self, invoice_ids: Iterable[str] | None = None) -> tuple[str, ItemKey] | None:
        allowed = set(invoice_ids) if invoice_ids is not None else None
        best: tuple[str, str, str] | None = None
        best_ms = 0
        for record in self._records:
            if not record.invoice_id or (allowed is not None and record.invoice_id not in allowed):
                continue
            candidate = (record.invoice_id, record.key.customer_item, record.key.item_number)
            scanned_ms = timestamp_ms(record.scanned_at)
            if scanned_ms > best_ms or (scanned_ms == best_ms and scanned_ms > 0 and best is not None and candidate > best):
                best_ms = scanned_ms
                best = candidate
            elif best is None and scanned_ms > 0:
                best_ms = scanned_ms
                best = candidate
        if best is None:
            return None
        return best[0], ItemKey(best[1], best[2])
