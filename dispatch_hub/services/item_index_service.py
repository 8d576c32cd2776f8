from __future__ import annotations

from collections import defaultdict
from collections.abc import Iterable
from dataclasses import dataclass, field
from datetime import date

from dispatch_hub.services.text_utils import code_or_placeholder, normalize_code


@dataclass(frozen=True, order=True)
class ItemKey:
    customer_item: str
    item_number: str

    @classmethod
    def of(cls, customer_item: object, item_number: object) -> ItemKey:
        return cls(code_or_placeholder(customer_item), code_or_placeholder(item_number))

    def __str__(self) -> str:
        return f'{self.customer_item}||{self.item_number}'


@dataclass(frozen=True)
class InvoiceLineItem:
    customer_item: str
    item_number: str
    description: str = ''
    quantity: int = 0
    expected_bins: int = 0

    @property
    def key(self) -> ItemKey:
        return ItemKey.of(self.customer_item, self.item_number)


@dataclass
class Invoice:
    id: str
    customer: str = ''
    bill_to: str | None = None
    items: list[InvoiceLineItem] = field(default_factory=list)
    audit_complete: bool = False
    dispatched: bool = False
    blocked: bool = False
    delivery_date: date | None = None
    delivery_time: str | None = None
    unloading_loc: str | None = None
    vehicle_number: str | None = None
    gatepass_number: str | None = None


@dataclass(frozen=True)
class IndexMatch:
    invoice_id: str
    line_item: InvoiceLineItem
    position: int


class ItemIndex:
    """Lookup from scanned part codes to invoice line items.

    Codes are trimmed but compared case-sensitively; distinct SKUs that only
    differ by case must never merge.
    """

    def __init__(self, invoices: Iterable[Invoice]) -> None:
        self._by_customer_item: dict[str, list[IndexMatch]] = defaultdict(list)
        self._by_item_number: dict[str, list[IndexMatch]] = defaultdict(list)
        self._line_items: dict[str, list[InvoiceLineItem]] = {}
        for invoice in invoices:
            self.add_invoice(invoice)

    def add_invoice(self, invoice: Invoice) -> None:
        if invoice.id in self._line_items:
            self._drop_invoice(invoice.id)
        self._line_items[invoice.id] = list(invoice.items)
        for position, item in enumerate(invoice.items):
            match = IndexMatch(invoice_id=invoice.id, line_item=item, position=position)
            customer_code = normalize_code(item.customer_item)
            if customer_code:
                self._by_customer_item[customer_code].append(match)
            item_number = normalize_code(item.item_number)
            if item_number:
                self._by_item_number[item_number].append(match)

    def _drop_invoice(self, invoice_id: str) -> None:
        for table in (self._by_customer_item, self._by_item_number):
            for code in list(table):
                table[code] = [match for match in table[code] if match.invoice_id != invoice_id]
                if not table[code]:
                    del table[code]
        self._line_items.pop(invoice_id, None)

    def line_items(self, invoice_id: str) -> list[InvoiceLineItem]:
        return list(self._line_items.get(invoice_id, []))

    def line_items_for_key(self, invoice_id: str, key: ItemKey) -> list[InvoiceLineItem]:
        return [item for item in self._line_items.get(invoice_id, []) if item.key == key]

    def _resolve(
        self,
        table: dict[str, list[IndexMatch]],
        code: object,
        candidate_invoice_ids: Iterable[str],
    ) -> list[IndexMatch]:
        normalized = normalize_code(code)
        if not normalized:
            return []
        matches = table.get(normalized, [])
        results: list[IndexMatch] = []
        seen: set[str] = set()
        for invoice_id in candidate_invoice_ids:
            if invoice_id in seen:
                continue
            seen.add(invoice_id)
            results.extend(
                sorted((m for m in matches if m.invoice_id == invoice_id), key=lambda m: m.position)
            )
        return results

    def resolve(self, customer_item_code: object, candidate_invoice_ids: Iterable[str]) -> list[IndexMatch]:
        return self._resolve(self._by_customer_item, customer_item_code, candidate_invoice_ids)

    def resolve_item_number(self, item_number: object, candidate_invoice_ids: Iterable[str]) -> list[IndexMatch]:
        return self._resolve(self._by_item_number, item_number, candidate_invoice_ids)
