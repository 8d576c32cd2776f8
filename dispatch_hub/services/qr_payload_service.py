from __future__ import annotations

import base64
import binascii
import json
import logging
import zlib
from dataclasses import dataclass
from enum import Enum
from typing import Any

from dispatch_hub.config import settings

logger = logging.getLogger(__name__)

QR_PREFIX_COMPRESSED_V1 = 'DH1.'


class DecodeKind(str, Enum):
    PAYLOAD = 'payload'
    REFERENCE_ID = 'reference_id'
    INVALID = 'invalid'


class DecodeStage(str, Enum):
    EMPTY = 'empty'
    BASE64 = 'base64'
    DECOMPRESS = 'decompress'
    JSON = 'json'


@dataclass(frozen=True)
class QrDecodeResult:
    kind: DecodeKind
    payload: Any = None
    reference_id: str | None = None
    stage: DecodeStage | None = None
    error: str | None = None

    @property
    def is_payload(self) -> bool:
        return self.kind == DecodeKind.PAYLOAD


def _compact_json(payload: Any) -> str:
    return json.dumps(payload, separators=(',', ':'), ensure_ascii=False)


def _to_base64url(data: bytes) -> str:
    return base64.urlsafe_b64encode(data).decode('ascii').rstrip('=')


def _from_base64url(token: str) -> bytes:
    padded = token + '=' * (-len(token) % 4)
    return base64.b64decode(padded, altchars=b'-_', validate=True)


def _first_str(payload: Any, *keys: str) -> str:
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, str):
                return value
    return 'N/A'


def _first_list(payload: Any, *keys: str) -> list:
    if isinstance(payload, dict):
        for key in keys:
            value = payload.get(key)
            if isinstance(value, list):
                return value
    return []


def minimal_payload(payload: Any) -> dict:
    return {
        'gp': _first_str(payload, 'gp', 'gatepassNumber'),
        'v': _first_str(payload, 'v', 'vehicleNumber'),
        'inv': _first_list(payload, 'invIds', 'inv', 'invoiceIds'),
    }


def encode_gatepass_qr_payload(
    payload: Any,
    *,
    plain_max_chars: int | None = None,
    compressed_max_chars: int | None = None,
) -> str:
    """Serialize ``payload`` for a QR code.

    Plain JSON when short enough, otherwise ``DH1.`` + base64url of the
    deflated JSON, otherwise a minimal ``{"gp", "v", "inv"}`` reference
    which callers treat as always fitting.
    """
    plain_limit = plain_max_chars if plain_max_chars is not None else settings.qr_plain_max_chars
    compressed_limit = compressed_max_chars if compressed_max_chars is not None else settings.qr_compressed_max_chars

    text = _compact_json(payload)
    if len(text) <= plain_limit:
        return text

    token = QR_PREFIX_COMPRESSED_V1 + _to_base64url(zlib.compress(text.encode('utf-8'), 9))
    if len(token) <= compressed_limit:
        return token

    logger.info('QR payload too large (%d chars compressed), using minimal reference', len(token))
    return _compact_json(minimal_payload(payload))


def _invalid(stage: DecodeStage, error: str) -> QrDecodeResult:
    return QrDecodeResult(kind=DecodeKind.INVALID, stage=stage, error=error)


def decode_gatepass_qr_value(value: object) -> QrDecodeResult:
    raw = str(value if value is not None else '').strip()
    if not raw:
        return _invalid(DecodeStage.EMPTY, 'Empty QR value')

    if raw.startswith(QR_PREFIX_COMPRESSED_V1):
        token = raw[len(QR_PREFIX_COMPRESSED_V1) :]
        try:
            compressed = _from_base64url(token)
        except (binascii.Error, ValueError) as exc:
            return _invalid(DecodeStage.BASE64, f'Failed to decode compressed payload: {exc}')
        try:
            text = zlib.decompress(compressed).decode('utf-8')
        except (zlib.error, UnicodeDecodeError) as exc:
            return _invalid(DecodeStage.DECOMPRESS, f'Failed to decode compressed payload: {exc}')
        try:
            payload = json.loads(text)
        except json.JSONDecodeError as exc:
            return _invalid(DecodeStage.JSON, f'Failed to decode compressed payload: {exc}')
        return QrDecodeResult(kind=DecodeKind.PAYLOAD, payload=payload)

    try:
        payload = json.loads(raw)
    except json.JSONDecodeError:
        return QrDecodeResult(kind=DecodeKind.REFERENCE_ID, reference_id=raw)
    return QrDecodeResult(kind=DecodeKind.PAYLOAD, payload=payload)


def gatepass_number_from(result: QrDecodeResult) -> str | None:
    if result.kind == DecodeKind.REFERENCE_ID:
        return result.reference_id
    if result.kind == DecodeKind.PAYLOAD:
        # A typed-in number like 12345678 parses as JSON.
        if isinstance(result.payload, (str, int)) and not isinstance(result.payload, bool):
            return str(result.payload)
        number = _first_str(result.payload, 'gp', 'gatepassNumber')
        return None if number == 'N/A' else number
    return None
