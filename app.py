"""
Invoicing service Flask application.

JSON API for clients, invoices, settings and dashboard statistics, built
with the application factory so tests can run against their own database.
"""

import datetime
import io
import json
import logging
import os
import re

import click
from flask import Blueprint, Flask, current_app, jsonify, request, send_file
from flask_apscheduler import APScheduler
from flask_cors import CORS
from flask_migrate import Migrate, upgrade

import db_manager
from calculations import compute_totals
from config import config_by_name
from errors import InvoiceError, ValidationError
from models import db
from pdf_builder import InvoicePDF
from reminders import check_overdue_invoices

logger = logging.getLogger(__name__)

api_bp = Blueprint('api', __name__, url_prefix='/api')
migrate = Migrate()
scheduler = APScheduler()


def create_app(config_name=None):
    """Build and return a fully configured Flask application."""
    if config_name is None:
        config_name = os.environ.get('FLASK_ENV', 'development')

    app = Flask(__name__)
    app.config.from_object(config_by_name[config_name])

    logging.basicConfig(
        level=app.config['LOG_LEVEL'],
        format='%(asctime)s %(levelname)s [%(name)s] %(message)s',
    )

    db.init_app(app)
    migrate.init_app(app, db)
    CORS(app)

    app.register_blueprint(api_bp)
    app.register_error_handler(InvoiceError, _handle_invoice_error)
    register_commands(app)

    with app.app_context():
        _bootstrap_database(app)
        db_manager.init_db()

    if app.config['SCHEDULER_ENABLED'] and not scheduler.running:
        scheduler.init_app(app)
        scheduler.add_job(
            id='invoice_check', func=_scheduled_overdue_check,
            trigger='cron', hour=app.config['OVERDUE_CHECK_HOUR'],
        )
        scheduler.start()
        logger.info("Overdue check scheduled daily at %02d:00", app.config['OVERDUE_CHECK_HOUR'])

    return app


def _bootstrap_database(app):
    """Apply migrations when a migrations directory exists, else create tables."""
    uri = app.config['SQLALCHEMY_DATABASE_URI']
    if uri.startswith('sqlite:///'):
        os.makedirs(os.path.dirname(os.path.abspath(uri[len('sqlite:///'):])), exist_ok=True)

    migration_dir = app.config['MIGRATIONS_DIR']
    if os.path.exists(migration_dir):
        upgrade(directory=migration_dir)
        logger.info("Database migrated successfully.")
    else:
        db.create_all()
        logger.debug("Database tables created using db.create_all().")


def _scheduled_overdue_check():
    with scheduler.app.app_context():
        check_overdue_invoices()


def _handle_invoice_error(e):
    if e.status_code >= 500:
        logger.error("Request failed: %s", e.message)
    return jsonify({'error': e.message}), e.status_code


def _json_body():
    data = request.get_json(silent=True)
    if data is None:
        data = {}
    if not isinstance(data, dict):
        raise ValidationError("Request body must be a JSON object")
    return data


# ---------------------------------------------------------------------------
# Clients
# ---------------------------------------------------------------------------

@api_bp.route('/clients', methods=['GET', 'POST'])
def clients():
    if request.method == 'POST':
        client = db_manager.add_client(_json_body())
        return jsonify(client), 201

    search = request.args.get('search', '').strip()
    if search:
        return jsonify(db_manager.search_clients(search))
    return jsonify(db_manager.get_clients())


@api_bp.route('/clients/<int:client_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_client(client_id):
    if request.method == 'DELETE':
        if not db_manager.delete_client(client_id):
            return jsonify({'error': 'Client not found'}), 404
        return jsonify({'message': 'Client deleted successfully'})

    if request.method == 'PUT':
        return jsonify(db_manager.update_client(client_id, _json_body()))

    client = db_manager.get_client(client_id)
    if not client:
        return jsonify({'error': 'Client not found'}), 404
    return jsonify(client)


@api_bp.route('/clients/<int:client_id>/invoices')
def client_invoices(client_id):
    client = db_manager.get_client(client_id)
    if not client:
        return jsonify({'error': 'Client not found'}), 404

    invoices = db_manager.get_client_invoices(client_id, status=request.args.get('status'))
    return jsonify({'client': client, 'invoices': invoices})


# ---------------------------------------------------------------------------
# Invoices
# ---------------------------------------------------------------------------

@api_bp.route('/invoices', methods=['GET', 'POST'])
def invoices():
    if request.method == 'POST':
        data = _json_body()
        invoice = db_manager.create_invoice(data, data.get('items'))
        return jsonify(invoice), 201

    return jsonify(db_manager.get_invoices(status=request.args.get('status')))


@api_bp.route('/invoices/preview', methods=['POST'])
def preview_invoice():
    """Totals for unsaved line items, computed exactly as on save."""
    totals = compute_totals(_json_body().get('items'))
    return jsonify({
        'items': [{k: str(v) if k != 'description' else v for k, v in line.items()} for line in totals['items']],
        'subtotal': str(totals['subtotal']),
        'discount_amount': str(totals['discount_amount']),
        'tax_amount': str(totals['tax_amount']),
        'total': str(totals['total']),
    })


@api_bp.route('/invoices/<int:invoice_id>', methods=['GET', 'PUT', 'DELETE'])
def manage_invoice(invoice_id):
    if request.method == 'DELETE':
        if not db_manager.delete_invoice(invoice_id):
            return jsonify({'error': 'Invoice not found'}), 404
        return jsonify({'message': 'Invoice deleted successfully'})

    if request.method == 'PUT':
        data = _json_body()
        return jsonify(db_manager.update_invoice(invoice_id, data, data.get('items')))

    invoice = db_manager.get_invoice(invoice_id)
    if not invoice:
        return jsonify({'error': 'Invoice not found'}), 404
    return jsonify(invoice)


@api_bp.route('/invoices/<int:invoice_id>/status', methods=['POST'])
def update_status(invoice_id):
    new_status = _json_body().get('status')
    if not new_status:
        return jsonify({'error': 'Status not provided'}), 400
    return jsonify(db_manager.update_invoice_status(invoice_id, new_status))


@api_bp.route('/invoices/<int:invoice_id>/pay', methods=['POST'])
def mark_paid(invoice_id):
    return jsonify(db_manager.update_invoice_status(invoice_id, 'paid'))


@api_bp.route('/invoices/<int:invoice_id>/pdf')
def download_pdf(invoice_id):
    invoice = db_manager.get_invoice(invoice_id)
    if not invoice:
        return jsonify({'error': 'Invoice not found'}), 404

    mem = io.BytesIO()
    InvoicePDF(invoice, db_manager.load_business_settings()).generate(mem)
    mem.seek(0)
    return send_file(
        mem,
        as_attachment=True,
        download_name=f"{invoice['invoice_number']}.pdf",
        mimetype='application/pdf'
    )


@api_bp.route('/next-invoice-number')
def next_invoice_number():
    # Preview only: the number is allocated for real when the invoice is saved
    prefix = db_manager.load_business_settings().invoice_prefix
    return jsonify({'invoice_number': db_manager.allocate_invoice_number(prefix)})


# ---------------------------------------------------------------------------
# Settings and dashboard
# ---------------------------------------------------------------------------

@api_bp.route('/settings', methods=['GET', 'POST'])
def settings():
    if request.method == 'POST':
        data = _json_body()
        if set(data) == {'key', 'value'}:
            if not isinstance(data['key'], str) or not data['key'].strip():
                raise ValidationError("Setting key is required")
            db_manager.set_setting(data['key'].strip(), str(data['value']))
        else:
            db_manager.update_settings(data)
        return jsonify({'message': 'Settings updated successfully', 'settings': db_manager.get_settings()})

    return jsonify(db_manager.get_settings())


@api_bp.route('/settings/export')
def export_data():
    data = db_manager.export_data()
    mem = io.BytesIO(json.dumps(data, indent=4).encode('utf-8'))

    filename = f"invoice_data_{datetime.date.today()}.json"
    return send_file(
        mem,
        as_attachment=True,
        download_name=filename,
        mimetype='application/json'
    )


@api_bp.route('/settings/import', methods=['POST'])
def import_data():
    if 'file' not in request.files:
        return jsonify({"error": "No file uploaded"}), 400

    file = request.files['file']
    if file.filename == '':
        return jsonify({"error": "No file selected"}), 400

    try:
        data = json.load(file)
    except (json.JSONDecodeError, UnicodeDecodeError):
        return jsonify({"error": "Invalid JSON file"}), 400
    if not isinstance(data, dict):
        return jsonify({"error": "Invalid backup format"}), 400

    success, message = db_manager.import_data(data)
    if success:
        return jsonify({"message": message})
    return jsonify({"error": f"Error importing data: {message}"}), 400


@api_bp.route('/dashboard/stats')
def dashboard_stats():
    return jsonify(db_manager.get_dashboard_stats())


# ---------------------------------------------------------------------------
# CLI
# ---------------------------------------------------------------------------

def register_commands(app):
    @app.cli.command('init-db')
    def init_db_command():
        """Create tables and seed default settings."""
        db.create_all()
        db_manager.init_db()
        click.echo("Database initialised.")

    @app.cli.command('mark-overdue')
    def mark_overdue_command():
        """Run the overdue check now."""
        overdue, due_today = check_overdue_invoices()
        click.echo(f"{len(overdue)} marked as overdue, {len(due_today)} due today.")

    @app.cli.command('export-pdf')
    @click.argument('invoice_number')
    def export_pdf_command(invoice_number):
        """Write an invoice PDF to INVOICE_PDF_DIR/<client>/<number>.pdf."""
        invoice = db_manager.get_invoice_by_number(invoice_number)
        if not invoice:
            raise click.ClickException(f"Invoice {invoice_number} not found")

        client_name = invoice['client']['company_name']
        safe_client_name = re.sub(r'[^\w ]', '', client_name).strip() or 'client'
        folder_path = os.path.join(current_app.config['INVOICE_PDF_DIR'], safe_client_name)
        os.makedirs(folder_path, exist_ok=True)

        full_path = os.path.join(folder_path, f"{invoice_number}.pdf")
        InvoicePDF(invoice, db_manager.load_business_settings()).generate(full_path)
        click.echo(f"PDF generated: {full_path}")


if __name__ == '__main__':
    create_app().run(port=int(os.environ.get('PORT', 5000)))
