"""
Daily overdue sweep and Discord payment reminders.
"""

import datetime
import logging

import requests

import db_manager
from pdf_builder import format_date, format_money

logger = logging.getLogger(__name__)

NOTIFY_TIMEOUT = 10


def send_discord_notification(webhook_url, invoice, kind='reminder'):
    """Post one invoice alert to a Discord webhook. Returns True on success."""
    client_name = (invoice.get('client') or {}).get('company_name') or "Unknown Client"
    if kind == 'overdue':
        title = "**OVERDUE INVOICE ALERT**"
        time_info = f"was due on **{format_date(invoice['due_date'])}**"
    else:
        title = "**Invoice Reminder**"
        time_info = f"is due **today** ({format_date(invoice['due_date'])})"

    data = {
        "content": (
            f"{title}\nInvoice **#{invoice['invoice_number']}** for **{client_name}** "
            f"{time_info} and is unpaid.\n"
            f"Total Amount: {format_money(invoice['total'], invoice['currency'])}"
        )
    }
    try:
        resp = requests.post(webhook_url, json=data, timeout=NOTIFY_TIMEOUT)
        resp.raise_for_status()
    except requests.RequestException as e:
        logger.warning("Failed to send Discord notification for %s: %s", invoice['invoice_number'], e)
        return False
    return True


def check_overdue_invoices(today=None):
    """Mark overdue invoices and notify about them and about invoices due today.

    Must run inside an application context.
    """
    today = today or datetime.date.today()
    webhook_url = db_manager.load_business_settings().discord_webhook_url

    newly_overdue = db_manager.mark_overdue_invoices(today)
    due_today = db_manager.get_invoices_due_on(today)

    if webhook_url:
        for invoice in newly_overdue:
            send_discord_notification(webhook_url, invoice, kind='overdue')
        for invoice in due_today:
            send_discord_notification(webhook_url, invoice, kind='reminder')

    logger.info("Overdue check: %d marked overdue, %d due today", len(newly_overdue), len(due_today))
    return newly_overdue, due_today
