from __future__ import annotations

import json
import unittest

from dispatch_hub.services.qr_payload_service import (
    QR_PREFIX_COMPRESSED_V1,
    DecodeKind,
    DecodeStage,
    _to_base64url,
    decode_gatepass_qr_value,
    encode_gatepass_qr_payload,
    gatepass_number_from,
    minimal_payload,
)


def _big_payload() -> dict:
    return {
        'gatepassNumber': 'GP-12345678',
        'vehicleNumber': 'KA01AB1234',
        'invoiceIds': ['INV-1', 'INV-2'],
        'items': [{'customerItem': f'CI-{n}', 'loadedBins': n} for n in range(200)],
    }


class QrPayloadServiceTests(unittest.TestCase):
    def test_small_payload_stays_plain_json(self) -> None:
        value = encode_gatepass_qr_payload({'gp': 'GP-1', 'v': 'KA01AB1234', 'inv': ['INV-1']})
        self.assertEqual(value, '{"gp":"GP-1","v":"KA01AB1234","inv":["INV-1"]}')

    def test_large_payload_is_compressed_and_decodes(self) -> None:
        payload = _big_payload()
        value = encode_gatepass_qr_payload(payload, plain_max_chars=100, compressed_max_chars=5000)
        self.assertTrue(value.startswith(QR_PREFIX_COMPRESSED_V1))
        result = decode_gatepass_qr_value(value)
        self.assertEqual(result.kind, DecodeKind.PAYLOAD)
        self.assertEqual(result.payload, payload)
        self.assertEqual(gatepass_number_from(result), 'GP-12345678')

    def test_falls_back_to_minimal_reference(self) -> None:
        value = encode_gatepass_qr_payload(_big_payload(), plain_max_chars=10, compressed_max_chars=10)
        self.assertEqual(json.loads(value), {'gp': 'GP-12345678', 'v': 'KA01AB1234', 'inv': ['INV-1', 'INV-2']})

    def test_minimal_payload_defaults(self) -> None:
        self.assertEqual(minimal_payload(['not', 'a', 'dict']), {'gp': 'N/A', 'v': 'N/A', 'inv': []})

    def test_plain_text_is_a_reference_id(self) -> None:
        result = decode_gatepass_qr_value('  GP-00001234 ')
        self.assertEqual(result.kind, DecodeKind.REFERENCE_ID)
        self.assertEqual(gatepass_number_from(result), 'GP-00001234')

    def test_scalar_json_counts_as_gatepass_number(self) -> None:
        result = decode_gatepass_qr_value('12345678')
        self.assertEqual(result.kind, DecodeKind.PAYLOAD)
        self.assertEqual(gatepass_number_from(result), '12345678')

    def test_decode_failures_report_stage(self) -> None:
        self.assertEqual(decode_gatepass_qr_value('').stage, DecodeStage.EMPTY)
        self.assertEqual(decode_gatepass_qr_value(QR_PREFIX_COMPRESSED_V1 + '!!!').stage, DecodeStage.BASE64)
        not_zlib = QR_PREFIX_COMPRESSED_V1 + _to_base64url(b'not zlib data')
        result = decode_gatepass_qr_value(not_zlib)
        self.assertEqual(result.kind, DecodeKind.INVALID)
        self.assertEqual(result.stage, DecodeStage.DECOMPRESS)
        self.assertIsNone(gatepass_number_from(result))


if __name__ == '__main__':
    unittest.main()
