from __future__ import annotations

import unittest

from fastapi.testclient import TestClient
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from dispatch_hub.db import get_db
from dispatch_hub.main import app
from dispatch_hub.models import Base

OPERATOR = {'x-dispatch-operator': 'op1'}


def _scan_body(bin_number: str, context: str = 'doc-audit') -> dict:
    return {
        'customerBarcode': f'{bin_number:<35}{"CI-100":<15}5',
        'customerItem': 'CI-100',
        'itemNumber': 'IN-100',
        'quantity': 5,
        'binQuantity': 5,
        'binNumber': bin_number,
        'scanContext': context,
    }


class RouterTests(unittest.TestCase):
    def setUp(self) -> None:
        engine = create_engine('sqlite://', connect_args={'check_same_thread': False}, poolclass=StaticPool)
        Base.metadata.create_all(engine)
        session_factory = sessionmaker(bind=engine, autoflush=False, expire_on_commit=False)

        def override_get_db():
            db = session_factory()
            try:
                yield db
            finally:
                db.close()

        app.dependency_overrides[get_db] = override_get_db
        self.addCleanup(app.dependency_overrides.clear)
        self.client = TestClient(app)

        response = self.client.post(
            '/invoices',
            json={
                'id': 'INV-1',
                'customer': 'Acme',
                'billTo': 'CUST-01',
                'items': [{'customerItem': 'CI-100', 'itemNumber': 'IN-100', 'quantity': 10, 'expectedBins': 2}],
            },
            headers=OPERATOR,
        )
        self.assertEqual(response.status_code, 201)

    def test_invoice_listing_uses_camel_case(self) -> None:
        response = self.client.get('/invoices', params={'ids': ['INV-1', 'NOPE']})
        self.assertEqual(response.status_code, 200)
        invoices = response.json()['invoices']
        self.assertEqual([inv['id'] for inv in invoices], ['INV-1'])
        self.assertEqual(invoices[0]['billTo'], 'CUST-01')
        self.assertEqual(invoices[0]['items'][0]['expectedBins'], 2)
        self.assertEqual(self.client.get('/invoices/NOPE').status_code, 404)

    def test_duplicate_invoice_conflicts(self) -> None:
        response = self.client.post('/invoices', json={'id': 'INV-1'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['detail']['code'], 'duplicate')

    def test_scan_lifecycle(self) -> None:
        response = self.client.post('/audit/INV-1/scans', json=_scan_body('BIN-1'), headers=OPERATOR)
        self.assertEqual(response.status_code, 200)
        scan_id = response.json()['scanId']

        response = self.client.post('/audit/INV-1/scans', json=_scan_body('BIN-1'), headers=OPERATOR)
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['detail'], {
            'code': 'duplicate',
            'message': response.json()['detail']['message'],
            'invoiceBlocked': False,
        })

        scans = self.client.get('/audit/INV-1/scans', params={'scanContext': 'doc-audit'}).json()['scans']
        self.assertEqual([(s['binNumber'], s['scannedBy']) for s in scans], [('BIN-1', 'op1')])
        self.assertEqual(self.client.get('/audit/INV-1/scans', params={'scanContext': 'loading-dispatch'}).json()['scans'], [])

        response = self.client.delete(f'/audit/INV-1/scans/{scan_id}', headers=OPERATOR)
        self.assertEqual(response.status_code, 204)
        self.assertEqual(self.client.delete(f'/audit/INV-1/scans/{scan_id}').status_code, 404)

    def test_over_scan_block_is_committed(self) -> None:
        for bin_number in ('BIN-1', 'BIN-2'):
            self.assertEqual(self.client.post('/audit/INV-1/scans', json=_scan_body(bin_number)).status_code, 200)
        response = self.client.post('/audit/INV-1/scans', json=_scan_body('BIN-3'))
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['detail']['code'], 'over_scan')
        self.assertTrue(response.json()['detail']['invoiceBlocked'])

        self.assertTrue(self.client.get('/invoices/INV-1').json()['blocked'])
        response = self.client.post('/audit/INV-1/scans', json=_scan_body('BIN-4'))
        self.assertEqual(response.status_code, 423)
        self.assertEqual(response.json()['detail']['code'], 'invoice_blocked')

    def test_mismatch_correction_and_resolution(self) -> None:
        response = self.client.post(
            '/audit/mismatches',
            json={'invoiceIds': ['INV-1'], 'validationStep': 'bin_quantity_mismatch', 'step': 'doc-audit'},
            headers=OPERATOR,
        )
        self.assertEqual(response.status_code, 200)
        alert_id = response.json()['alertIds'][0]
        self.assertEqual(response.json()['blockedInvoiceIds'], ['INV-1'])

        response = self.client.post('/audit/INV-1/correction', headers=OPERATOR)
        self.assertTrue(response.json()['correctionSubmitted'])

        response = self.client.post(f'/audit/mismatches/{alert_id}/resolve', json={'approve': True})
        self.assertEqual(response.status_code, 200)
        self.assertFalse(response.json()['blocked'])

    def test_dispatch_flow(self) -> None:
        response = self.client.post('/dispatch', json={'invoiceIds': ['INV-1'], 'vehicleNumber': 'KA01AB1234'})
        self.assertEqual(response.status_code, 400)
        self.assertEqual(response.json()['detail']['code'], 'invalid_request')

        for bin_number in ('BIN-1', 'BIN-2'):
            self.client.post('/audit/INV-1/scans', json=_scan_body(bin_number))
        response = self.client.post('/audit/INV-1/complete', json={'deliveryDate': '2099-01-01'})
        self.assertTrue(response.json()['auditComplete'])
        for bin_number in ('BIN-1', 'BIN-2'):
            response = self.client.post('/audit/INV-1/scans', json=_scan_body(bin_number, 'loading-dispatch'))
            self.assertEqual(response.status_code, 200)

        response = self.client.post(
            '/dispatch', json={'invoiceIds': ['INV-1'], 'vehicleNumber': 'KA01AB1234'}, headers=OPERATOR
        )
        self.assertEqual(response.status_code, 200)
        body = response.json()
        self.assertTrue(body['success'])
        self.assertEqual(body['loadedBinsCount'], 2)
        self.assertEqual(body['authorizedBy'], 'op1')
        self.assertEqual(body['invoices'][0]['status'], 'on-time')
        number = body['gatepassNumber']

        gatepass = self.client.get(f'/dispatch/gatepasses/{number}').json()
        self.assertEqual(gatepass['invoiceIds'], ['INV-1'])
        verified = self.client.post('/dispatch/gatepasses/verify', json={'value': number}).json()
        self.assertEqual(verified['kind'], 'reference_id')
        self.assertEqual(verified['gatepass']['vehicleNumber'], 'KA01AB1234')

        response = self.client.post('/dispatch', json={'invoiceIds': ['INV-1'], 'vehicleNumber': 'KA01AB1234'})
        self.assertEqual(response.status_code, 409)
        self.assertEqual(response.json()['detail']['code'], 'already_dispatched')

    def test_unknown_gatepass(self) -> None:
        self.assertEqual(self.client.get('/dispatch/gatepasses/GP-NOPE').status_code, 404)
        self.assertEqual(self.client.post('/dispatch/gatepasses/verify', json={'value': 'GP-NOPE'}).status_code, 404)
        invalid = self.client.post('/dispatch/gatepasses/verify', json={'value': 'DH1.!!!'}).json()
        self.assertEqual(invalid['kind'], 'invalid')


if __name__ == '__main__':
    unittest.main()
