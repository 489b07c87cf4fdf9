import datetime
import logging
import threading
from decimal import Decimal

from sqlalchemy.exc import IntegrityError, SQLAlchemyError

from calculations import QUANTITY_PLACES, compute_totals, next_invoice_number, to_decimal
from config import BusinessSettings, CURRENCIES, DEFAULT_SETTINGS
from errors import InvoiceNumberError, NotFoundError, ValidationError
from models import db, Client, Invoice, InvoiceItem, Settings, INVOICE_STATUSES

logger = logging.getLogger(__name__)

CLIENT_FIELDS = ('company_name', 'contact_person', 'email', 'phone', 'address')

# Serializes read-last-number -> insert so two creates cannot take the same number
_allocation_lock = threading.Lock()


def init_db():
    """Seed any missing default settings."""
    existing = {s.key for s in Settings.query.all()}
    missing = {k: v for k, v in DEFAULT_SETTINGS.items() if k not in existing}
    for k, v in missing.items():
        db.session.add(Settings(key=k, value=v))
    if missing:
        db.session.commit()
        logger.info("Seeded %d default settings", len(missing))


# ---------------------------------------------------------------------------
# Serialization
# ---------------------------------------------------------------------------

def _money(value):
    return str(value) if value is not None else None


def _client_dict(c):
    return {
        'id': c.id,
        'company_name': c.company_name,
        'contact_person': c.contact_person,
        'email': c.email,
        'phone': c.phone,
        'address': c.address,
        'created_at': c.created_at.isoformat() if c.created_at else None,
    }


def _item_dict(i):
    return {
        'id': i.id,
        'invoice_id': i.invoice_id,
        'description': i.description,
        'quantity': _money(i.quantity),
        'rate': _money(i.rate),
        'tax_rate': _money(i.tax_rate),
        'discount_rate': _money(i.discount_rate),
        'amount': _money(i.amount),
    }


def _invoice_dict(inv):
    return {
        'id': inv.id,
        'invoice_number': inv.invoice_number,
        'client_id': inv.client_id,
        'client': _client_dict(inv.client) if inv.client else None,
        'date': inv.date.isoformat() if inv.date else None,
        'due_date': inv.due_date.isoformat() if inv.due_date else None,
        'status': inv.status,
        'currency': inv.currency,
        'subtotal': _money(inv.subtotal),
        'discount_amount': _money(inv.discount_amount),
        'tax_amount': _money(inv.tax_amount),
        'total': _money(inv.total),
        'notes': inv.notes,
        'created_at': inv.created_at.isoformat() if inv.created_at else None,
        'items': [_item_dict(i) for i in inv.items],
    }


# ---------------------------------------------------------------------------
# Settings
# ---------------------------------------------------------------------------

def get_setting(key):
    setting = db.session.get(Settings, key)
    return setting.value if setting else None


def set_setting(key, value):
    setting = db.session.get(Settings, key)
    if setting:
        setting.value = value
    else:
        db.session.add(Settings(key=key, value=value))
    db.session.commit()


def get_settings():
    settings = Settings.query.all()
    return {s.key: s.value for s in settings}


def update_settings(settings_dict):
    for key, value in settings_dict.items():
        if value is None:
            continue
        setting = db.session.get(Settings, key)
        if setting:
            setting.value = str(value)
        else:
            db.session.add(Settings(key=key, value=str(value)))
    db.session.commit()


def load_business_settings():
    return BusinessSettings.from_pairs(get_settings())


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

def _client_values(data, partial=False):
    values = {}
    for field in CLIENT_FIELDS:
        if field in data:
            value = data[field]
            values[field] = value.strip() if isinstance(value, str) else value

    if not partial or 'company_name' in values:
        if not values.get('company_name'):
            raise ValidationError("Company name is required")
    email = values.get('email')
    if email and '@' not in email:
        raise ValidationError("Email address is invalid")
    return values


def add_client(data):
    client = Client(**_client_values(data))
    db.session.add(client)
    db.session.commit()
    logger.info("Created client %s (%s)", client.id, client.company_name)
    return _client_dict(client)


def get_clients():
    clients = Client.query.order_by(Client.created_at.desc(), Client.id.desc()).all()
    return [_client_dict(c) for c in clients]


def search_clients(query):
    clients = (
        Client.query
        .filter(Client.company_name.icontains(query, autoescape=True))
        .order_by(Client.created_at.desc(), Client.id.desc())
        .all()
    )
    return [_client_dict(c) for c in clients]


def get_client(client_id):
    c = db.session.get(Client, client_id)
    return _client_dict(c) if c else None


def update_client(client_id, data):
    client = db.session.get(Client, client_id)
    if not client:
        raise NotFoundError("Client not found")
    for field, value in _client_values(data, partial=True).items():
        setattr(client, field, value)
    db.session.commit()
    return _client_dict(client)


def delete_client(client_id):
    """Delete a client together with its invoices and their line items."""
    client = db.session.get(Client, client_id)
    if not client:
        return False
    invoice_count = len(client.invoices)
    db.session.delete(client)
    db.session.commit()
    logger.info("Deleted client %s and %d invoice(s)", client_id, invoice_count)
    return True


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

def _require_client(client_id):
    if client_id in (None, ''):
        raise ValidationError("Please select a client")
    try:
        client_id = int(client_id)
    except (TypeError, ValueError):
        raise ValidationError("Client id must be an integer")
    if not db.session.get(Client, client_id):
        raise ValidationError("Client not found")
    return client_id


def _as_date(value, field):
    if value in (None, ''):
        return None
    if isinstance(value, datetime.date):
        return value
    try:
        return datetime.datetime.strptime(value, '%Y-%m-%d').date()
    except (TypeError, ValueError):
        raise ValidationError(f"{field} must be a date in YYYY-MM-DD format")


def _invoice_values(data, settings, current=None):
    """Header fields for a new invoice (current=None) or an update."""
    values = {}

    if current is None or 'client_id' in data:
        values['client_id'] = _require_client(data.get('client_id'))

    date = _as_date(data.get('date'), 'date')
    if current is None:
        date = date or datetime.date.today()
    if date:
        values['date'] = date

    due_date = _as_date(data.get('due_date'), 'due_date')
    if current is None and not due_date:
        due_date = date + datetime.timedelta(days=settings.default_due_days)
    if due_date:
        values['due_date'] = due_date

    issued = values.get('date') or current.date
    due = values.get('due_date') or current.due_date
    if due < issued:
        raise ValidationError("Due date cannot be before the invoice date")

    if 'status' in data or current is None:
        status = str(data.get('status') or 'draft').lower()
        if status not in INVOICE_STATUSES:
            raise ValidationError(f"Status must be one of: {', '.join(INVOICE_STATUSES)}")
        values['status'] = status

    if 'currency' in data or current is None:
        currency = str(data.get('currency') or settings.default_currency).upper()
        if currency not in CURRENCIES:
            raise ValidationError(f"Currency must be one of: {', '.join(CURRENCIES)}")
        values['currency'] = currency

    if 'notes' in data:
        values['notes'] = data.get('notes')

    return values


def _apply_totals(invoice, totals):
    invoice.subtotal = totals['subtotal']
    invoice.discount_amount = totals['discount_amount']
    invoice.tax_amount = totals['tax_amount']
    invoice.total = totals['total']
    invoice.items = [
        InvoiceItem(
            description=line['description'],
            quantity=line['quantity'],
            rate=line['rate'],
            tax_rate=line['tax_rate'],
            discount_rate=line['discount_rate'],
            amount=line['amount'],
        )
        for line in totals['items']
    ]


def get_last_invoice(prefix=None):
    """Most recently created invoice, optionally restricted to a number prefix."""
    query = Invoice.query
    if prefix:
        query = query.filter(Invoice.invoice_number.startswith(prefix, autoescape=True))
    invoice = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).first()
    return _invoice_dict(invoice) if invoice else None


def allocate_invoice_number(prefix):
    """Number that continues the latest ``<prefix><digits>`` invoice.

    Numbers that only start with the prefix belong to another sequence and are
    skipped, so INV-0005 does not block allocation under "INV".
    """
    numbers = (
        db.session.query(Invoice.invoice_number)
        .filter(Invoice.invoice_number.startswith(prefix, autoescape=True))
        .order_by(Invoice.created_at.desc(), Invoice.id.desc())
    )
    for (number,) in numbers:
        suffix = number[len(prefix):]
        # LIKE ignores case on SQLite, so compare the prefix again here
        if number.startswith(prefix) and suffix.isascii() and suffix.isdigit():
            return next_invoice_number(prefix, number)
    return next_invoice_number(prefix)


def create_invoice(data, items):
    settings = load_business_settings()
    values = _invoice_values(data, settings)
    totals = compute_totals(items)

    with _allocation_lock:
        invoice_number = allocate_invoice_number(settings.invoice_prefix)
        invoice = Invoice(invoice_number=invoice_number, **values)
        _apply_totals(invoice, totals)
        db.session.add(invoice)
        try:
            db.session.commit()
        except IntegrityError:
            db.session.rollback()
            logger.warning("Invoice number %s collided on insert", invoice_number)
            raise InvoiceNumberError(f"Invoice number {invoice_number} is already taken")
        except SQLAlchemyError:
            db.session.rollback()
            logger.exception("Could not save invoice %s", invoice_number)
            raise

    logger.info("Created invoice %s for client %s, total %s", invoice_number, invoice.client_id, invoice.total)
    return _invoice_dict(invoice)


def update_invoice(invoice_id, data, items=None):
    """Update header fields and, when given, replace the line items.

    Totals are recomputed either way. The invoice number cannot change.
    """
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")

    number = data.get('invoice_number')
    if number is not None and number != invoice.invoice_number:
        raise ValidationError("Invoice number cannot be changed")

    values = _invoice_values(data, load_business_settings(), current=invoice)
    if items is None:
        items = [_item_dict(i) for i in invoice.items]
    totals = compute_totals(items)

    for field, value in values.items():
        setattr(invoice, field, value)
    _apply_totals(invoice, totals)
    try:
        db.session.commit()
    except SQLAlchemyError:
        db.session.rollback()
        logger.exception("Could not update invoice %s", invoice.invoice_number)
        raise
    return _invoice_dict(invoice)


def get_invoices(status=None):
    query = Invoice.query
    if status and status.lower() != 'all':
        query = query.filter(Invoice.status == status.lower())
    invoices = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
    return [_invoice_dict(inv) for inv in invoices]


def get_client_invoices(client_id, status=None):
    query = Invoice.query.filter_by(client_id=client_id)
    if status and status.lower() != 'all':
        query = query.filter(Invoice.status == status.lower())
    invoices = query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).all()
    return [_invoice_dict(inv) for inv in invoices]


def get_invoice(invoice_id):
    invoice = db.session.get(Invoice, invoice_id)
    return _invoice_dict(invoice) if invoice else None


def get_invoice_by_number(invoice_number):
    invoice = Invoice.query.filter_by(invoice_number=invoice_number).first()
    return _invoice_dict(invoice) if invoice else None


def update_invoice_status(invoice_id, new_status):
    new_status = str(new_status or '').lower()
    if new_status not in INVOICE_STATUSES:
        raise ValidationError(f"Status must be one of: {', '.join(INVOICE_STATUSES)}")
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        raise NotFoundError("Invoice not found")
    invoice.status = new_status
    db.session.commit()
    return _invoice_dict(invoice)


def delete_invoice(invoice_id):
    invoice = db.session.get(Invoice, invoice_id)
    if not invoice:
        return False
    db.session.delete(invoice)
    db.session.commit()
    return True


def mark_overdue_invoices(today=None):
    """Move sent invoices past their due date to overdue; returns them."""
    today = today or datetime.date.today()
    newly_overdue = Invoice.query.filter(
        Invoice.due_date < today,
        Invoice.status == 'sent',
    ).all()

    for invoice in newly_overdue:
        invoice.status = 'overdue'
    if newly_overdue:
        db.session.commit()
        logger.info("%d invoice(s) marked as overdue", len(newly_overdue))
    return [_invoice_dict(inv) for inv in newly_overdue]


def get_invoices_due_on(day):
    invoices = Invoice.query.filter(
        Invoice.due_date == day,
        Invoice.status == 'sent',
    ).all()
    return [_invoice_dict(inv) for inv in invoices]


# ---------------------------------------------------------------------------
# Dashboard
# ---------------------------------------------------------------------------

def _sum_totals(*statuses):
    rows = db.session.query(Invoice.total).filter(Invoice.status.in_(statuses)).all()
    return sum((to_decimal(total) for (total,) in rows), Decimal("0.00"))


def get_dashboard_stats():
    def count(status):
        return Invoice.query.filter_by(status=status).count()

    recent = Invoice.query.order_by(Invoice.created_at.desc(), Invoice.id.desc()).limit(5).all()
    return {
        'total_invoices': Invoice.query.count(),
        'paid_invoices': count('paid'),
        'pending_invoices': count('sent'),
        'overdue_invoices': count('overdue'),
        'draft_invoices': count('draft'),
        'total_clients': Client.query.count(),
        'total_revenue': str(_sum_totals('paid')),
        'outstanding_amount': str(_sum_totals('sent', 'overdue')),
        'recent_invoices': [_invoice_dict(inv) for inv in recent],
    }


# ---------------------------------------------------------------------------
# Backup
# ---------------------------------------------------------------------------

def export_data():
    """Export all data to a dictionary."""
    data = {
        "clients": [],
        "invoices": [],
        "invoice_items": [],
        "settings": []
    }

    for c in Client.query.all():
        data["clients"].append(_client_dict(c))

    for i in Invoice.query.all():
        invoice = _invoice_dict(i)
        del invoice["client"], invoice["items"]
        data["invoices"].append(invoice)

    for item in InvoiceItem.query.all():
        data["invoice_items"].append(_item_dict(item))

    for s in Settings.query.all():
        data["settings"].append({
            "key": s.key,
            "value": s.value
        })

    return data


def _parse_timestamp(value):
    return datetime.datetime.fromisoformat(value) if value else None


def _restored_invoice(i_data):
    """Invoice row from a backup record, held to the same rules as a saved one."""
    number = i_data["invoice_number"]
    status = i_data["status"]
    if status not in INVOICE_STATUSES:
        raise ValidationError(f"Invoice {number}: unknown status {status!r}")

    subtotal = to_decimal(i_data["subtotal"], "subtotal")
    discount_amount = to_decimal(i_data["discount_amount"], "discount_amount")
    tax_amount = to_decimal(i_data["tax_amount"], "tax_amount")
    total = to_decimal(i_data["total"], "total")
    if total != subtotal - discount_amount + tax_amount:
        raise ValidationError(f"Invoice {number}: total does not match subtotal, discount and tax")

    return Invoice(
        id=i_data["id"],
        invoice_number=number,
        client_id=i_data["client_id"],
        date=_as_date(i_data["date"], "date"),
        due_date=_as_date(i_data["due_date"], "due_date"),
        status=status,
        currency=i_data["currency"],
        subtotal=subtotal,
        discount_amount=discount_amount,
        tax_amount=tax_amount,
        total=total,
        notes=i_data.get("notes"),
        created_at=_parse_timestamp(i_data.get("created_at")) or datetime.datetime.utcnow(),
    )


def import_data(data):
    """Import data from dictionary, replacing existing data."""
    try:
        # Children first so nothing is left pointing at a deleted row
        InvoiceItem.query.delete()
        Invoice.query.delete()
        Client.query.delete()
        Settings.query.delete()

        for s_data in data.get("settings", []):
            db.session.add(Settings(key=s_data["key"], value=s_data["value"]))

        for c_data in data.get("clients", []):
            db.session.add(Client(
                id=c_data["id"],
                company_name=c_data["company_name"],
                contact_person=c_data.get("contact_person"),
                email=c_data.get("email"),
                phone=c_data.get("phone"),
                address=c_data.get("address"),
                created_at=_parse_timestamp(c_data.get("created_at")) or datetime.datetime.utcnow(),
            ))

        for i_data in data.get("invoices", []):
            db.session.add(_restored_invoice(i_data))

        for item_data in data.get("invoice_items", []):
            db.session.add(InvoiceItem(
                id=item_data["id"],
                invoice_id=item_data["invoice_id"],
                description=item_data["description"],
                quantity=to_decimal(item_data["quantity"], "quantity", QUANTITY_PLACES),
                rate=to_decimal(item_data["rate"], "rate", QUANTITY_PLACES),
                tax_rate=to_decimal(item_data["tax_rate"], "tax_rate"),
                discount_rate=to_decimal(item_data["discount_rate"], "discount_rate"),
                amount=to_decimal(item_data["amount"], "amount"),
            ))

        db.session.commit()
        logger.info("Imported backup data")
        return True, "Data imported successfully."

    except (KeyError, TypeError, ValueError, ValidationError, SQLAlchemyError) as e:
        db.session.rollback()
        logger.exception("Import failed")
        return False, str(e)
