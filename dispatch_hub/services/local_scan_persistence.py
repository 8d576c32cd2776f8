from __future__ import annotations

import logging
from collections.abc import Callable, Iterator
from contextlib import contextmanager

from sqlalchemy.orm import Session

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
from dispatch_hub.services import scan_record_service
from dispatch_hub.services.scan_persistence import ScanPersistenceError
from dispatch_hub.services.scan_record_service import ScanRuleError

logger = logging.getLogger(__name__)


class LocalScanPersistence:
    """Runs the scan rules in-process against a SQLAlchemy session factory."""

    def __init__(self, session_factory: Callable[[], Session] | None = None) -> None:
        if session_factory is None:
            from dispatch_hub.db import SessionLocal

            session_factory = SessionLocal
        self.session_factory = session_factory

    @contextmanager
    def _unit_of_work(self) -> Iterator[Session]:
        db = self.session_factory()
        try:
            yield db
            db.commit()
        except ScanRuleError as exc:
            # Blocks raised together with the error must survive.
            if exc.invoice_blocked:
                db.commit()
            else:
                db.rollback()
            raise ScanPersistenceError(
                exc.code,
                exc.message,
                invoice_id=exc.invoice_id,
                invoice_blocked=exc.invoice_blocked,
            ) from exc
        except Exception:
            db.rollback()
            raise
        finally:
            db.close()

    def record_scan(self, *, invoice_id: str, scan: ScanWrite, actor: str | None) -> ScanRecorded:
        with self._unit_of_work() as db:
            return scan_record_service.record_scan(db, invoice_id=invoice_id, scan=scan, actor=actor)

    def get_scans(self, *, invoice_id: str, scan_context: ScanContext | None) -> list[PersistedScan]:
        with self._unit_of_work() as db:
            return scan_record_service.list_scans(db, invoice_id=invoice_id, scan_context=scan_context)

    def delete_scan(self, *, invoice_id: str, scan_id: str, actor: str | None) -> None:
        with self._unit_of_work() as db:
            scan_record_service.delete_scan(db, invoice_id=invoice_id, scan_id=scan_id, actor=actor)

    def get_invoices(self, *, invoice_ids: list[str]) -> list[InvoiceOut]:
        with self._unit_of_work() as db:
            return scan_record_service.get_invoices(db, invoice_ids=invoice_ids)

    def report_mismatch(self, *, report: MismatchReport, actor: str | None) -> MismatchReported:
        with self._unit_of_work() as db:
            return scan_record_service.report_mismatch(db, report=report, actor=actor)

    def complete_audit(self, *, invoice_id: str, request: CompleteAuditRequest, actor: str | None) -> InvoiceOut:
        with self._unit_of_work() as db:
            return scan_record_service.complete_audit(db, invoice_id=invoice_id, request=request, actor=actor)

    def submit_correction(self, *, invoice_id: str, actor: str | None) -> InvoiceOut:
        with self._unit_of_work() as db:
            return scan_record_service.submit_correction(db, invoice_id=invoice_id, actor=actor)

    def dispatch(self, *, request: DispatchRequest, actor: str | None) -> DispatchResponse:
        with self._unit_of_work() as db:
            return scan_record_service.dispatch_invoices(db, request=request, actor=actor)
