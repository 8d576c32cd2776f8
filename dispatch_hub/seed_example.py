from datetime import date, timedelta

from dispatch_hub.db import SessionLocal, engine
from dispatch_hub.models import Base, Invoice
from dispatch_hub.schemas import InvoiceCreate, InvoiceLineItemIn
from dispatch_hub.services.scan_record_service import create_invoice

DEMO_INVOICES = [
    InvoiceCreate(
        id='INV-1001',
        customer='Acme Motors',
        bill_to='CUST-01',
        delivery_date=date.today() + timedelta(days=1),
        delivery_time='10:00',
        unloading_loc='Dock A',
        items=[
            InvoiceLineItemIn(customer_item='CI-100', item_number='IN-100', description='Bracket', quantity=40, expected_bins=2),
            InvoiceLineItemIn(customer_item='CI-200', item_number='IN-200', description='Hinge', quantity=30, expected_bins=3),
        ],
    ),
    InvoiceCreate(
        id='INV-1002',
        customer='Acme Motors',
        bill_to='CUST-01',
        delivery_date=date.today() + timedelta(days=2),
        items=[
            InvoiceLineItemIn(customer_item='CI-100', item_number='IN-100', description='Bracket', quantity=20, expected_bins=1),
        ],
    ),
]


def seed() -> None:
    Base.metadata.create_all(bind=engine)
    with SessionLocal() as db:
        for payload in DEMO_INVOICES:
            if db.get(Invoice, payload.id):
                continue
            create_invoice(db, payload=payload, actor='seed')
        db.commit()


if __name__ == '__main__':
    seed()
    print('Seed data inserted/verified.')
