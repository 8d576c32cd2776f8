from fastapi import HTTPException, Request
from sqlalchemy.orm import Session

from dispatch_hub.config import settings
from dispatch_hub.services.scan_persistence import ErrorCode
from dispatch_hub.services.scan_record_service import ScanRuleError

_STATUS_BY_CODE = {
    ErrorCode.DUPLICATE: 409,
    ErrorCode.OVER_SCAN: 409,
    ErrorCode.ALREADY_DISPATCHED: 409,
    ErrorCode.CUSTOMER_CODE_MISMATCH: 409,
    ErrorCode.INVOICE_BLOCKED: 423,
    ErrorCode.NOT_FOUND: 404,
}


def get_client_ip(request: Request) -> str | None:
    forwarded_for = request.headers.get('x-forwarded-for')
    if forwarded_for:
        return forwarded_for.split(',')[0].strip()
    if request.client:
        return request.client.host
    return None


def get_operator(request: Request) -> str | None:
    operator = request.headers.get(settings.operator_header, '').strip()
    return operator or None


def rule_error_to_http(exc: ScanRuleError) -> HTTPException:
    return HTTPException(
        status_code=_STATUS_BY_CODE.get(exc.code, 400),
        detail={'code': exc.code.value, 'message': exc.message, 'invoiceBlocked': exc.invoice_blocked},
    )


def rule_error_after_rollback(db: Session, exc: ScanRuleError) -> HTTPException:
    # A rule error that blocked the invoice must keep the block.
    if exc.invoice_blocked:
        db.commit()
    else:
        db.rollback()
    return rule_error_to_http(exc)
