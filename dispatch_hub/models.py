from __future__ import annotations

from datetime import date, datetime
from enum import Enum

from sqlalchemy import (
    JSON,
    BigInteger,
    Boolean,
    Date,
    DateTime,
    Enum as SQLEnum,
    ForeignKey,
    Integer,
    Text,
    func,
)
from sqlalchemy.orm import DeclarativeBase, Mapped, mapped_column

# SQLite only autoincrements INTEGER primary keys.
IdType = BigInteger().with_variant(Integer, 'sqlite')


class Base(DeclarativeBase):
    pass


class ScanContext(str, Enum):
    DOC_AUDIT = 'doc-audit'
    LOADING_DISPATCH = 'loading-dispatch'


class QrType(str, Enum):
    CUSTOMER = 'customer'
    INTERNAL = 'internal'


class AuditState(str, Enum):
    PENDING = 'pending'
    AUDITING = 'auditing'
    BLOCKED = 'blocked'
    CORRECTED_PENDING_ADMIN = 'corrected-pending-admin'
    AUDIT_COMPLETE = 'audit-complete'
    DISPATCHED = 'dispatched'


class MismatchSeverity(str, Enum):
    WARNING = 'warning'
    CRITICAL = 'critical'


class MismatchStep(str, Enum):
    CROSS_SOURCE = 'cross_source_mismatch'
    BIN_QUANTITY = 'bin_quantity_mismatch'


class MismatchStatus(str, Enum):
    PENDING = 'pending'
    APPROVED = 'approved'
    REJECTED = 'rejected'


class Invoice(Base):
    __tablename__ = 'invoices'

    id: Mapped[str] = mapped_column(Text, primary_key=True)
    customer: Mapped[str] = mapped_column(Text, nullable=False, default='', server_default='')
    bill_to: Mapped[str | None] = mapped_column(Text)
    total_qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    audit_complete: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    audited_by: Mapped[str | None] = mapped_column(Text)
    audit_date: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    blocked: Mapped[bool] = mapped_column(Boolean, nullable=False, default=False, server_default='false')
    blocked_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    correction_submitted: Mapped[bool] = mapped_column(
        Boolean, nullable=False, default=False, server_default='false'
    )
    delivery_date: Mapped[date | None] = mapped_column(Date)
    delivery_time: Mapped[str | None] = mapped_column(Text)
    unloading_loc: Mapped[str | None] = mapped_column(Text)
    dispatched_by: Mapped[str | None] = mapped_column(Text)
    dispatched_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    vehicle_number: Mapped[str | None] = mapped_column(Text)
    gatepass_number: Mapped[str | None] = mapped_column(Text)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    updated_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class InvoiceItem(Base):
    __tablename__ = 'invoice_items'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    invoice_id: Mapped[str] = mapped_column(Text, ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    position: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    customer_item: Mapped[str] = mapped_column(Text, nullable=False)
    part: Mapped[str] = mapped_column(Text, nullable=False)
    part_description: Mapped[str | None] = mapped_column(Text)
    qty: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    number_of_bins: Mapped[int | None] = mapped_column(Integer)
    scanned_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    audited_bins_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    loaded_bins_count: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')


class ValidatedBarcode(Base):
    __tablename__ = 'validated_barcodes'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    invoice_id: Mapped[str] = mapped_column(Text, ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    invoice_item_id: Mapped[int | None] = mapped_column(IdType, ForeignKey('invoice_items.id', ondelete='SET NULL'))
    scan_context: Mapped[ScanContext] = mapped_column(SQLEnum(ScanContext, name='scan_context'), nullable=False)
    customer_barcode: Mapped[str | None] = mapped_column(Text)
    internal_barcode: Mapped[str | None] = mapped_column(Text)
    customer_item: Mapped[str | None] = mapped_column(Text)
    item_number: Mapped[str | None] = mapped_column(Text)
    part_description: Mapped[str | None] = mapped_column(Text)
    quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    bin_quantity: Mapped[int | None] = mapped_column(Integer)
    bin_number: Mapped[str | None] = mapped_column(Text)
    status: Mapped[str] = mapped_column(Text, nullable=False, default='matched', server_default='matched')
    scanned_by: Mapped[str | None] = mapped_column(Text)
    scanned_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
    customer_name: Mapped[str | None] = mapped_column(Text)
    customer_code: Mapped[str | None] = mapped_column(Text)


class MismatchAlert(Base):
    __tablename__ = 'mismatch_alerts'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    invoice_id: Mapped[str] = mapped_column(Text, ForeignKey('invoices.id', ondelete='CASCADE'), nullable=False)
    customer: Mapped[str | None] = mapped_column(Text)
    step: Mapped[ScanContext] = mapped_column(SQLEnum(ScanContext, name='scan_context'), nullable=False)
    validation_step: Mapped[MismatchStep] = mapped_column(SQLEnum(MismatchStep, name='mismatch_step'), nullable=False)
    severity: Mapped[MismatchSeverity] = mapped_column(
        SQLEnum(MismatchSeverity, name='mismatch_severity'), nullable=False, default=MismatchSeverity.CRITICAL
    )
    customer_scan: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    internal_scan: Mapped[dict] = mapped_column(JSON, nullable=False, default=dict)
    status: Mapped[MismatchStatus] = mapped_column(
        SQLEnum(MismatchStatus, name='mismatch_status'), nullable=False, default=MismatchStatus.PENDING
    )
    reported_by: Mapped[str | None] = mapped_column(Text)
    resolved_by: Mapped[str | None] = mapped_column(Text)
    resolved_at: Mapped[datetime | None] = mapped_column(DateTime(timezone=True))
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class Gatepass(Base):
    __tablename__ = 'gatepasses'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    gatepass_number: Mapped[str] = mapped_column(Text, nullable=False, unique=True)
    vehicle_number: Mapped[str] = mapped_column(Text, nullable=False)
    customer: Mapped[str | None] = mapped_column(Text)
    customer_code: Mapped[str | None] = mapped_column(Text)
    invoice_ids: Mapped[list] = mapped_column(JSON, nullable=False, default=list)
    total_items: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    total_quantity: Mapped[int] = mapped_column(Integer, nullable=False, default=0, server_default='0')
    authorized_by: Mapped[str | None] = mapped_column(Text)
    dispatch_date: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())


class AuditLog(Base):
    __tablename__ = 'audit_logs'

    id: Mapped[int] = mapped_column(IdType, primary_key=True)
    actor: Mapped[str | None] = mapped_column(Text)
    action: Mapped[str] = mapped_column(Text, nullable=False)
    invoice_id: Mapped[str | None] = mapped_column(Text)
    ip: Mapped[str | None] = mapped_column(Text)
    meta: Mapped[dict] = mapped_column('metadata', JSON, nullable=False, default=dict)
    created_at: Mapped[datetime] = mapped_column(DateTime(timezone=True), nullable=False, server_default=func.now())
