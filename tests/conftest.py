import datetime
from decimal import Decimal

import pytest

import db_manager
from app import create_app
from models import db, Invoice


@pytest.fixture
def app():
    app = create_app('testing')
    with app.app_context():
        yield app
        db.session.remove()
        db.drop_all()


@pytest.fixture
def client(app):
    return app.test_client()


@pytest.fixture
def acme(app):
    return db_manager.add_client({
        'company_name': 'Acme Traders',
        'contact_person': 'R. Sharma',
        'email': 'accounts@acme.example',
        'phone': '9800000000',
        'address': '12 Market Road\nHowrah',
    })


@pytest.fixture
def make_invoice(acme):
    """Create an invoice through db_manager with sensible defaults."""
    def _make(items=None, **data):
        data.setdefault('client_id', acme['id'])
        if items is None:
            items = [{'description': 'Consulting', 'quantity': 2, 'rate': 100, 'tax_rate': 18}]
        return db_manager.create_invoice(data, items)
    return _make


@pytest.fixture
def insert_invoice(acme):
    """Insert a raw invoice row with a chosen number, bypassing allocation."""
    def _insert(invoice_number, **fields):
        today = datetime.date.today()
        invoice = Invoice(
            invoice_number=invoice_number,
            client_id=fields.pop('client_id', acme['id']),
            date=fields.pop('date', today),
            due_date=fields.pop('due_date', today),
            subtotal=Decimal('0.00'),
            discount_amount=Decimal('0.00'),
            tax_amount=Decimal('0.00'),
            total=Decimal('0.00'),
            **fields
        )
        db.session.add(invoice)
        db.session.commit()
        return invoice
    return _insert
