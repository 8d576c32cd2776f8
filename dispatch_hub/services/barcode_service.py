from __future__ import annotations

import logging
import re
from dataclasses import dataclass, replace

from dispatch_hub.models import QrType

logger = logging.getLogger(__name__)

_UNSAFE_CONTROL_CHARS = re.compile(r'[\x00-\x08\x0B\x0C\x0E-\x1F\x7F]')
_PRINTABLE = re.compile(r'[\x09\x0A\x0D\x20-\x7E]')
_WHITESPACE_RUN = re.compile(r'\s+')
_FIELD_SPLIT = re.compile(r'\s{2,}')
_LEGACY_BIN = re.compile(r'^(\d+)\s{2,}')
_LEGACY_INVOICE = re.compile(r'(\d{2}/\d{2}/\d{2})\s*(\d{10})')
_LEGACY_TOTAL_QTY = re.compile(r'^(\d+)A', re.IGNORECASE)
_LEGACY_TOTAL_BINS = re.compile(r'/(\d+)AUTOLIV', re.IGNORECASE)
_KV_PART = re.compile(r'Part_code-([^,]+)')
_KV_QTY = re.compile(r'Quantity-([^,]+)')
_KV_BIN = re.compile(r'Bin_number-([^,]+)')

CUSTOMER_LABEL_MIN_LENGTH = 51


class BarcodeParseError(ValueError):
    pass


@dataclass(frozen=True)
class BarcodeData:
    raw_value: str
    part_code: str
    quantity: str
    bin_number: str
    bin_quantity: str | None = None
    qr_type: QrType | None = None
    original_raw_value: str | None = None
    invoice_number: str | None = None
    total_qty: str | None = None
    total_bin_no: str | None = None


def _normalize_field(value: str) -> str:
    return _WHITESPACE_RUN.sub(' ', value or '').strip()


def strip_unsafe_control_chars(value: str) -> str:
    return _UNSAFE_CONTROL_CHARS.sub('', value)


def _is_likely_ascii_triplets(value: str) -> bool:
    trimmed = value.strip()
    return len(trimmed) >= 6 and len(trimmed) % 3 == 0 and trimmed.isdigit() and trimmed.isascii()


def decode_ascii_triplets(value: str) -> str | None:
    """Decode wired-scanner output such as ``050048`` into ``20``.

    Returns None when the input does not look like triplets or decodes into
    mostly unprintable bytes, so plain numeric payloads are left alone.
    """
    trimmed = value.strip()
    if not _is_likely_ascii_triplets(trimmed):
        return None

    codes: list[int] = []
    for i in range(0, len(trimmed), 3):
        code = int(trimmed[i : i + 3])
        if code > 255:
            return None
        codes.append(code)

    decoded = ''.join(chr(code) for code in codes)
    printable = len(_PRINTABLE.findall(decoded))
    if not decoded or printable / len(decoded) < 0.85:
        return None
    return decoded


def encode_ascii_triplets(value: str) -> str:
    return ''.join(f'{ord(char) & 0xFF:03d}' for char in value or '')


def canonicalize_barcode(value: object) -> str:
    cleaned = strip_unsafe_control_chars(str(value if value is not None else '')).replace('\r\n', '\n')
    decoded = decode_ascii_triplets(cleaned)
    if decoded is not None:
        return strip_unsafe_control_chars(decoded).replace('\r\n', '\n')
    return cleaned


def _q_candidates(raw: str) -> list[int]:
    return [i for i in range(len(raw) - 1) if raw[i] == 'Q' and raw[i + 1].isdigit() and raw[i + 1].isascii()]


def _find_s_index(raw: str, p_index: int) -> int:
    v_index = raw.rfind('V', 0, p_index)
    if v_index == -1:
        return raw.rfind('S', 0, p_index)
    return raw.rfind('S', v_index + 1, p_index)


def is_internal_label(raw: str) -> bool:
    for q_index in _q_candidates(raw):
        p_index = raw.rfind('P', 0, q_index)
        if p_index == -1:
            continue
        if _find_s_index(raw, p_index) != -1:
            return True
    return False


def parse_internal_label(raw: str) -> BarcodeData:
    # Marker layout: ...S<bin>P<part>Q<digit>...
    for q_index in _q_candidates(raw):
        p_index = raw.rfind('P', 0, q_index)
        if p_index == -1:
            continue
        part_code = _normalize_field(raw[p_index + 1 : q_index])
        if not part_code:
            continue
        quantity = raw[q_index + 1]
        s_index = _find_s_index(raw, p_index)
        if s_index == -1:
            continue
        bin_number = _normalize_field(raw[s_index + 1 : p_index])
        if not bin_number:
            continue
        return BarcodeData(
            raw_value=raw,
            part_code=part_code,
            quantity=quantity,
            bin_number=bin_number,
            bin_quantity=quantity,
            qr_type=QrType.INTERNAL,
        )

    raise BarcodeParseError(
        'Internal label format error: could not extract fields using S..P..Q markers. '
        f"Found markers - P:{'yes' if 'P' in raw else 'no'}, Q:{'yes' if 'Q' in raw else 'no'}, "
        f"S:{'yes' if 'S' in raw else 'no'}."
    )


def parse_customer_label(raw: str) -> BarcodeData:
    # Fixed positions (1-indexed): bin 1..35, part 36..50, quantity digit at 51.
    if len(raw) < CUSTOMER_LABEL_MIN_LENGTH:
        raise BarcodeParseError(
            f'Customer label format error: data too short ({len(raw)} chars). '
            f'Expected at least {CUSTOMER_LABEL_MIN_LENGTH} chars to extract quantity at position 51.'
        )
    bin_number = _normalize_field(raw[0:35])
    part_code = _normalize_field(raw[35:50])
    quantity = _normalize_field(raw[50:51])
    if not bin_number:
        raise BarcodeParseError('Customer label format error: bin number empty in characters 1..35.')
    if not part_code:
        raise BarcodeParseError('Customer label format error: part number empty in characters 36..50.')
    if len(quantity) != 1 or not quantity.isdigit():
        raise BarcodeParseError(
            'Customer label format error: invalid quantity at position 51. '
            f'Expected a single digit, found: "{quantity or "(empty)"}".'
        )
    return BarcodeData(
        raw_value=raw,
        part_code=part_code,
        quantity=quantity,
        bin_number=bin_number,
        bin_quantity=quantity,
        qr_type=QrType.CUSTOMER,
    )


def parse_legacy_customer_label(raw: str) -> BarcodeData:
    bin_match = _LEGACY_BIN.match(raw)
    if not bin_match:
        raise BarcodeParseError('Customer label format error: could not extract bin number from start of label.')

    fields = [field.strip() for field in _FIELD_SPLIT.split(raw) if field.strip()]
    if len(fields) < 2:
        raise BarcodeParseError(
            'Customer label format error: expected at least 2 fields separated by multiple spaces. '
            f'Found {len(fields)} field(s).'
        )

    part_field = fields[1]
    part_code = part_field
    bin_quantity = '1'
    if part_field[-1].isdigit():
        part_code = part_field[:-1]
        bin_quantity = part_field[-1]
    if not part_code:
        raise BarcodeParseError('Customer label format error: part code not found in expected position (field 2).')

    invoice_number = None
    total_qty = None
    invoice_match = _LEGACY_INVOICE.search(raw)
    if invoice_match:
        invoice_number = invoice_match.group(2)
        after_invoice = raw[raw.index(invoice_number) + len(invoice_number) :]
        total_match = _LEGACY_TOTAL_QTY.match(after_invoice)
        if total_match:
            total_qty = total_match.group(1)
    total_bins_match = _LEGACY_TOTAL_BINS.search(raw)

    return BarcodeData(
        raw_value=raw,
        part_code=part_code,
        quantity=bin_quantity,
        bin_number=bin_match.group(1),
        bin_quantity=bin_quantity,
        qr_type=QrType.CUSTOMER,
        invoice_number=invoice_number,
        total_qty=total_qty,
        total_bin_no=total_bins_match.group(1) if total_bins_match else None,
    )


def _parse_key_value_label(raw: str) -> BarcodeData | None:
    part_match = _KV_PART.search(raw)
    if not part_match or not part_match.group(1).strip():
        return None
    qty_match = _KV_QTY.search(raw)
    bin_match = _KV_BIN.search(raw)
    quantity = qty_match.group(1).strip() if qty_match else ''
    return BarcodeData(
        raw_value=raw,
        part_code=part_match.group(1).strip(),
        quantity=quantity or '0',
        bin_number=bin_match.group(1).strip() if bin_match else '',
        bin_quantity=quantity or None,
    )


def parse_barcode(value: str) -> BarcodeData:
    """Parse one decoded label into its fields.

    Internal marker labels are tried first (strict detection), then the
    fixed-position customer label, the space-delimited legacy customer label
    and finally the ``Part_code-..`` key/value form. Raises BarcodeParseError
    with an operator-facing message when nothing matches.
    """
    original = str(value if value is not None else '')
    raw = canonicalize_barcode(original)
    original_raw = original if raw != original else None

    internal_error: str | None = None
    data: BarcodeData | None = None
    if is_internal_label(raw):
        try:
            data = parse_internal_label(raw)
        except BarcodeParseError as exc:
            internal_error = str(exc)

    if data is None and len(raw) >= CUSTOMER_LABEL_MIN_LENGTH:
        data = parse_customer_label(raw)

    if data is None:
        lines = [line for line in raw.splitlines() if line.strip()]
        fields = [field for field in _FIELD_SPLIT.split(raw) if field.strip()]
        if len(lines) >= 3 or len(fields) >= 2:
            data = parse_legacy_customer_label(raw)

    if data is None:
        data = _parse_key_value_label(raw)

    if data is None:
        logger.info('Unrecognized label format (%d chars)', len(raw))
        if internal_error:
            raise BarcodeParseError(internal_error)
        preview = raw[:50] + ('...' if len(raw) > 50 else '')
        if len(raw) < 10:
            raise BarcodeParseError(
                f'Unrecognized label format: scanned data seems too short ({len(raw)} chars).'
            )
        raise BarcodeParseError(f'Unrecognized label format: {preview}')

    if original_raw is None:
        return data
    return replace(data, original_raw_value=original_raw)
