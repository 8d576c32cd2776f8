from __future__ import annotations

import json
import logging
from urllib.error import HTTPError, URLError
from urllib.parse import quote, urlencode
from urllib.request import Request, urlopen

from dispatch_hub.config import settings
from dispatch_hub.models import ScanContext
from dispatch_hub.schemas import (
    CompleteAuditRequest,
    DispatchRequest,
    DispatchResponse,
    ErrorDetail,
    InvoiceList,
    InvoiceOut,
    MismatchReport,
    MismatchReported,
    PersistedScan,
    ScanRecorded,
    ScanWrite,
)
from dispatch_hub.services.scan_persistence import (
    ErrorCode,
    Ok,
    ScanPersistenceError,
    parse_model,
    parse_models,
    require,
)

logger = logging.getLogger(__name__)


class HttpScanPersistence:
    def __init__(self, base_url: str | None = None, timeout_seconds: int | None = None) -> None:
        self.base_url = (base_url or settings.api_base_url).rstrip('/')
        self.timeout_seconds = timeout_seconds or settings.api_timeout_seconds
        self.headers = {'Content-Type': 'application/json', 'Accept': 'application/json'}

    def _error_from_body(self, status: int, body: str, path: str, invoice_id: str | None) -> ScanPersistenceError:
        try:
            parsed = json.loads(body) if body else {}
        except json.JSONDecodeError:
            parsed = {}
        detail = parsed.get('detail') if isinstance(parsed, dict) else None
        result = parse_model(ErrorDetail, detail)
        if isinstance(result, Ok):
            return ScanPersistenceError(
                ErrorCode.parse(result.value.code),
                result.value.message,
                invoice_id=invoice_id,
                invoice_blocked=result.value.invoice_blocked,
            )
        code = ErrorCode.INVALID_REQUEST if status == 422 else ErrorCode.FAILED
        return ScanPersistenceError(code, f'API error {status} on {path}: {body}', invoice_id=invoice_id)

    def _request(
        self,
        method: str,
        path: str,
        payload: dict | None = None,
        *,
        invoice_id: str | None = None,
        actor: str | None = None,
    ) -> object:
        headers = dict(self.headers)
        if actor:
            headers[settings.operator_header] = actor
        req = Request(
            url=f'{self.base_url}{path}',
            data=json.dumps(payload).encode('utf-8') if payload is not None else None,
            headers=headers,
            method=method,
        )
        try:
            with urlopen(req, timeout=self.timeout_seconds) as response:
                raw = response.read().decode('utf-8')
        except HTTPError as exc:
            body = exc.read().decode('utf-8', errors='ignore') if exc.fp else ''
            raise self._error_from_body(exc.code, body, path, invoice_id) from exc
        except URLError as exc:
            logger.warning('Network error on %s %s: %s', method, path, exc.reason)
            raise ScanPersistenceError(
                ErrorCode.TRANSPORT, f'API network error on {path}: {exc.reason}', invoice_id=invoice_id
            ) from exc

        if not raw:
            return None
        try:
            return json.loads(raw)
        except json.JSONDecodeError as exc:
            raise ScanPersistenceError(
                ErrorCode.INVALID_RESPONSE, f'API returned non-JSON body on {path}', invoice_id=invoice_id
            ) from exc

    @staticmethod
    def _invoice_path(invoice_id: str) -> str:
        return f'/audit/{quote(invoice_id, safe="")}'

    def record_scan(self, *, invoice_id: str, scan: ScanWrite, actor: str | None) -> ScanRecorded:
        body = self._request(
            'POST',
            f'{self._invoice_path(invoice_id)}/scans',
            scan.model_dump(by_alias=True, mode='json'),
            invoice_id=invoice_id,
            actor=actor,
        )
        return require(parse_model(ScanRecorded, body), invoice_id=invoice_id)

    def get_scans(self, *, invoice_id: str, scan_context: ScanContext | None) -> list[PersistedScan]:
        path = f'{self._invoice_path(invoice_id)}/scans'
        if scan_context is not None:
            path += '?' + urlencode({'scanContext': scan_context.value})
        body = self._request('GET', path, invoice_id=invoice_id)
        rows = body.get('scans') if isinstance(body, dict) else None
        if not isinstance(rows, list):
            raise ScanPersistenceError(
                ErrorCode.INVALID_RESPONSE, f'Scan list missing for invoice {invoice_id}', invoice_id=invoice_id
            )
        scans, invalid = parse_models(PersistedScan, rows)
        for item in invalid:
            logger.warning('Skipping scan row for invoice %s: %s', invoice_id, item.reason)
        return scans

    def delete_scan(self, *, invoice_id: str, scan_id: str, actor: str | None) -> None:
        self._request(
            'DELETE',
            f'{self._invoice_path(invoice_id)}/scans/{quote(str(scan_id), safe="")}',
            invoice_id=invoice_id,
            actor=actor,
        )

    def get_invoices(self, *, invoice_ids: list[str]) -> list[InvoiceOut]:
        path = '/invoices?' + urlencode([('ids', invoice_id) for invoice_id in invoice_ids])
        body = self._request('GET', path)
        return require(parse_model(InvoiceList, body)).invoices

    def report_mismatch(self, *, report: MismatchReport, actor: str | None) -> MismatchReported:
        body = self._request('POST', '/audit/mismatches', report.model_dump(by_alias=True, mode='json'), actor=actor)
        return require(parse_model(MismatchReported, body))

    def complete_audit(self, *, invoice_id: str, request: CompleteAuditRequest, actor: str | None) -> InvoiceOut:
        body = self._request(
            'POST',
            f'{self._invoice_path(invoice_id)}/complete',
            request.model_dump(by_alias=True, mode='json'),
            invoice_id=invoice_id,
            actor=actor,
        )
        return require(parse_model(InvoiceOut, body), invoice_id=invoice_id)

    def submit_correction(self, *, invoice_id: str, actor: str | None) -> InvoiceOut:
        body = self._request(
            'POST',
            f'{self._invoice_path(invoice_id)}/correction',
            {},
            invoice_id=invoice_id,
            actor=actor,
        )
        return require(parse_model(InvoiceOut, body), invoice_id=invoice_id)

    def dispatch(self, *, request: DispatchRequest, actor: str | None) -> DispatchResponse:
        body = self._request('POST', '/dispatch', request.model_dump(by_alias=True, mode='json'), actor=actor)
        return require(parse_model(DispatchResponse, body))
