from __future__ import annotations

from fastapi import APIRouter, Depends, Query, Request
from sqlalchemy.orm import Session

from dispatch_hub.db import get_db
from dispatch_hub.dependencies import get_client_ip, get_operator, rule_error_after_rollback, rule_error_to_http
from dispatch_hub.schemas import InvoiceCreate, InvoiceList, InvoiceOut
from dispatch_hub.services.scan_persistence import ErrorCode
from dispatch_hub.services.scan_record_service import (
    ScanRuleError,
    create_invoice,
    get_invoices,
    invoice_to_schema,
)

router = APIRouter(prefix='/invoices', tags=['invoices'])


@router.get('', response_model=InvoiceList)
def list_invoices(ids: list[str] | None = Query(default=None), db: Session = Depends(get_db)):
    return InvoiceList(invoices=get_invoices(db, invoice_ids=ids))


@router.post('', response_model=InvoiceOut, status_code=201)
def post_invoice(
    payload: InvoiceCreate,
    request: Request,
    db: Session = Depends(get_db),
    operator: str | None = Depends(get_operator),
):
    try:
        invoice = create_invoice(db, payload=payload, actor=operator, ip=get_client_ip(request))
    except ScanRuleError as exc:
        raise rule_error_after_rollback(db, exc) from exc
    db.commit()
    return invoice_to_schema(db, invoice)


@router.get('/{invoice_id}', response_model=InvoiceOut)
def get_invoice(invoice_id: str, db: Session = Depends(get_db)):
    invoices = get_invoices(db, invoice_ids=[invoice_id])
    if not invoices:
        raise rule_error_to_http(
            ScanRuleError(ErrorCode.NOT_FOUND, f'Invoice {invoice_id} not found', invoice_id=invoice_id)
        )
    return invoices[0]
