from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request, Response
from sqlalchemy.orm import Session

from dispatch_hub.db import get_db
from dispatch_hub.dependencies import get_client_ip, get_operator, rule_error_after_rollback
from dispatch_hub.models import ScanContext
from dispatch_hub.schemas import (
    CompleteAuditRequest,
    InvoiceOut,
    MismatchReport,
    MismatchReported,
    MismatchResolution,
    ScanList,
    ScanRecorded,
    ScanWrite,
)
from dispatch_hub.services.scan_record_service import (
    ScanRuleError,
    complete_audit,
    delete_scan,
    list_scans,
    record_scan,
    report_mismatch,
    resolve_mismatch,
    submit_correction,
)

router = APIRouter(prefix='/audit', tags=['audit'])


@router.post('/mismatches', response_model=MismatchReported)
def post_mismatch(
    payload: MismatchReport,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        result = report_mismatch(db, report=payload, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return result


@router.post('/mismatches/{alert_id}/resolve', response_model=InvoiceOut)
def post_mismatch_resolution(
    alert_id: int,
    payload: MismatchResolution,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        invoice = resolve_mismatch(
            db,
            alert_id=alert_id,
            approve=payload.approve,
            actor=operator,
            ip=get_client_ip(request),
        )
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return invoice


@router.post('/{invoice_id}/scans', response_model=ScanRecorded)
def post_scan(
    invoice_id: str,
    payload: ScanWrite,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        recorded = record_scan(db, invoice_id=invoice_id, scan=payload, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return recorded


@router.get('/{invoice_id}/scans', response_model=ScanList)
def get_scans(
    invoice_id: str,
    scan_context: ScanContext | None = Query(default=None, alias='scanContext'),
    db: Session = Depends(get_db),
):
    try:
        scans = list_scans(db, invoice_id=invoice_id, scan_context=scan_context)
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    return ScanList(scans=scans)


@router.delete('/{invoice_id}/scans/{scan_id}', status_code=204)
def remove_scan(
    invoice_id: str,
    scan_id: str,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        delete_scan(db, invoice_id=invoice_id, scan_id=scan_id, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return Response(status_code=204)


@router.post('/{invoice_id}/complete', response_model=InvoiceOut)
def post_complete(
    invoice_id: str,
    payload: CompleteAuditRequest,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        invoice = complete_audit(
            db,
            invoice_id=invoice_id,
            request=payload,
            actor=operator,
            ip=get_client_ip(request),
        )
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return invoice


@router.post('/{invoice_id}/correction', response_model=InvoiceOut)
def post_correction(
    invoice_id: str,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        invoice = submit_correction(db, invoice_id=invoice_id, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return invoice
