from __future__ import annotations

from dataclasses import dataclass
from enum import Enum
from typing import Generic, Protocol, TypeVar

from pydantic import BaseModel, ValidationError

from dispatch_hub.models import ScanContext
from dispatch_hub.schemas import (
    CompleteAuditRequest,
    DispatchRequest,
    DispatchResponse,
    InvoiceOut,
    MismatchReport,
    MismatchReported,
    PersistedScan,
    ScanRecorded,
    ScanWrite,
)

ModelT = TypeVar('ModelT', bound=BaseModel)


class ErrorCode(str, Enum):
    DUPLICATE = 'duplicate'
    OVER_SCAN = 'over_scan'
    INVOICE_BLOCKED = 'invoice_blocked'
    ALREADY_DISPATCHED = 'already_dispatched'
    NOT_FOUND = 'not_found'
    CUSTOMER_CODE_MISMATCH = 'customer_code_mismatch'
    INVALID_REQUEST = 'invalid_request'
    INVALID_RESPONSE = 'invalid_response'
    TRANSPORT = 'transport'
    FAILED = 'failed'

    @classmethod
    def parse(cls, value: object) -> ErrorCode:
        try:
            return cls(str(value))
        except ValueError:
            return cls.FAILED


class ScanPersistenceError(RuntimeError):
    def __init__(
        self,
        code: ErrorCode,
        message: str,
        *,
        invoice_id: str | None = None,
        invoice_blocked: bool = False,
    ) -> None:
        super().__init__(message)
        self.code = code
        self.message = message
        self.invoice_id = invoice_id
        self.invoice_blocked = invoice_blocked or code == ErrorCode.INVOICE_BLOCKED


@dataclass(frozen=True)
class Ok(Generic[ModelT]):
    value: ModelT


@dataclass(frozen=True)
class Invalid:
    reason: str


def parse_model(model_cls: type[ModelT], data: object) -> Ok[ModelT] | Invalid:
    try:
        return Ok(model_cls.model_validate(data))
    except ValidationError as exc:
        fields = ', '.join('.'.join(str(p) for p in err['loc']) or '(root)' for err in exc.errors())
        return Invalid(f'{model_cls.__name__} failed validation at: {fields}')


def parse_models(model_cls: type[ModelT], rows: object) -> tuple[list[ModelT], list[Invalid]]:
    if not isinstance(rows, list):
        return [], [Invalid(f'Expected a list of {model_cls.__name__}')]
    parsed: list[ModelT] = []
    invalid: list[Invalid] = []
    for row in rows:
        result = parse_model(model_cls, row)
        if isinstance(result, Ok):
            parsed.append(result.value)
        else:
            invalid.append(result)
    return parsed, invalid


def require(result: Ok[ModelT] | Invalid, *, invoice_id: str | None = None) -> ModelT:
    if isinstance(result, Invalid):
        raise ScanPersistenceError(ErrorCode.INVALID_RESPONSE, result.reason, invoice_id=invoice_id)
    return result.value


class ScanPersistence(Protocol):
    def record_scan(self, *, invoice_id: str, scan: ScanWrite, actor: str | None) -> ScanRecorded: ...

    def get_scans(self, *, invoice_id: str, scan_context: ScanContext | None) -> list[PersistedScan]: ...

    def delete_scan(self, *, invoice_id: str, scan_id: str, actor: str | None) -> None: ...

    def get_invoices(self, *, invoice_ids: list[str]) -> list[InvoiceOut]: ...

    def report_mismatch(self, *, report: MismatchReport, actor: str | None) -> MismatchReported: ...

    def complete_audit(self, *, invoice_id: str, request: CompleteAuditRequest, actor: str | None) -> InvoiceOut: ...

    def submit_correction(self, *, invoice_id: str, actor: str | None) -> InvoiceOut: ...

    def dispatch(self, *, request: DispatchRequest, actor: str | None) -> DispatchResponse: ...
