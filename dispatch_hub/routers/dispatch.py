from __future__ import annotations

from fastapi import APIRouter, Depends, Request
from sqlalchemy.orm import Session

from dispatch_hub.db import get_db
from dispatch_hub.dependencies import get_client_ip, get_operator, rule_error_after_rollback
from dispatch_hub.schemas import DispatchRequest, DispatchResponse, GatepassOut, VerifyQrRequest, VerifyQrResponse
from dispatch_hub.services.scan_record_service import (
    ScanRuleError,
    dispatch_invoices,
    get_gatepass,
    verify_gatepass_qr,
)

router = APIRouter(prefix='/dispatch', tags=['dispatch'])


@router.post('', response_model=DispatchResponse)
def post_dispatch(
    payload: DispatchRequest,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        response = dispatch_invoices(db, request=payload, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return response


@router.get('/gatepasses/{gatepass_number}', response_model=GatepassOut)
def read_gatepass(gatepass_number: str, db: Session = Depends(get_db)):
    try:
        return get_gatepass(db, gatepass_number=gatepass_number)
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc


@router.post('/gatepasses/verify', response_model=VerifyQrResponse)
def verify_gatepass(payload: VerifyQrRequest, db: Session = Depends(get_db)):
    try:
        return verify_gatepass_qr(db, value=payload.value)
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
