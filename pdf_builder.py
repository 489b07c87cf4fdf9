from reportlab.lib.pagesizes import A4
from reportlab.lib import colors
from reportlab.lib.styles import getSampleStyleSheet, ParagraphStyle
from reportlab.lib.units import inch
from reportlab.platypus import SimpleDocTemplate, Table, TableStyle, Paragraph, Spacer
from reportlab.pdfbase import pdfmetrics
from reportlab.pdfbase.ttfonts import TTFont, TTFError
from decimal import Decimal
from xml.sax.saxutils import escape
import datetime
import logging
import os

logger = logging.getLogger(__name__)

BRAND_COLOR = colors.HexColor('#1e40af')

# Regular / bold TTF pairs tried in order; Helvetica when none is installed
FONT_CANDIDATES = [
    ('Arial', os.path.join(os.environ.get('WINDIR', 'C:\\Windows'), 'Fonts', 'arial.ttf'),
     os.path.join(os.environ.get('WINDIR', 'C:\\Windows'), 'Fonts', 'arialbd.ttf')),
    ('DejaVuSans', '/usr/share/fonts/truetype/dejavu/DejaVuSans.ttf',
     '/usr/share/fonts/truetype/dejavu/DejaVuSans-Bold.ttf'),
]

STATUS_LABELS = {
    'draft': 'Draft',
    'sent': 'Sent',
    'paid': 'Paid',
    'overdue': 'Overdue',
}


def format_money(amount, currency):
    return f"{currency} {Decimal(str(amount or 0)):,.2f}"


def format_rate(amount, currency):
    """Unit rate: cents as usual, sub-cent digits kept when present."""
    number = Decimal(str(amount or 0))
    if number == number.quantize(Decimal('0.01')):
        return format_money(number, currency)
    return f"{currency} {number.normalize():,f}"


def format_quantity(value):
    text = f"{Decimal(str(value or 0)):f}"
    return text.rstrip('0').rstrip('.') if '.' in text else text


def format_date(value):
    if not value:
        return ""
    if isinstance(value, str):
        value = datetime.date.fromisoformat(value)
    return value.strftime('%d %b %Y')


class InvoicePDF:
    """Branded A4 invoice.

    ``invoice_data`` is an invoice dict from db_manager with totals already
    computed; ``settings`` is a BusinessSettings. Nothing is recalculated here.
    """

    def __init__(self, invoice_data, settings):
        self.invoice_data = invoice_data
        self.settings = settings
        self.currency = invoice_data.get('currency') or settings.default_currency

        self.font_name = 'Helvetica'
        self.bold_font_name = 'Helvetica-Bold'
        for name, regular, bold in FONT_CANDIDATES:
            if not os.path.exists(regular):
                continue
            try:
                pdfmetrics.registerFont(TTFont(name, regular))
                self.font_name = self.bold_font_name = name
                if os.path.exists(bold):
                    pdfmetrics.registerFont(TTFont(name + '-Bold', bold))
                    self.bold_font_name = name + '-Bold'
            except TTFError as e:
                logger.warning("Could not load font %s: %s", regular, e)
                continue
            break

    def _money(self, amount):
        return format_money(amount, self.currency)

    def generate(self, target):
        """Write the PDF to a filename or a binary file object."""
        doc = SimpleDocTemplate(
            target, pagesize=A4, rightMargin=40, leftMargin=40, topMargin=40, bottomMargin=40,
            title=f"Invoice {self.invoice_data['invoice_number']}",
            author=self.settings.company_name,
        )
        story = []
        styles = getSampleStyleSheet()

        normal_style = ParagraphStyle('Normal_Custom', parent=styles['Normal'], fontName=self.font_name, fontSize=10, leading=14)
        small_style = ParagraphStyle('Small_Custom', parent=normal_style, fontSize=8, leading=11, textColor=colors.gray)
        white_bold_style = ParagraphStyle('WhiteBold_Custom', parent=normal_style, fontName=self.bold_font_name, textColor=colors.white)
        bold_style = ParagraphStyle('Bold_Custom', parent=normal_style, fontName=self.bold_font_name)
        brand_style = ParagraphStyle('Brand_Custom', parent=bold_style, fontSize=16, leading=20, textColor=BRAND_COLOR)
        title_style = ParagraphStyle('Title_Custom', parent=styles['Heading1'], fontName=self.bold_font_name, fontSize=24, spaceAfter=20, alignment=2, textColor=BRAND_COLOR)
        right_style = ParagraphStyle('Right_Custom', parent=normal_style, alignment=2)
        right_bold_style = ParagraphStyle('RightBold_Custom', parent=bold_style, alignment=2)

        def para(text, style=normal_style):
            return Paragraph(escape(str(text or "")).replace('\n', '<br/>'), style)

        # Header: company (left) | INVOICE title (right)
        company = self.settings
        sender_info = [para(company.company_name, brand_style)]
        if company.company_address:
            sender_info.append(para(company.company_address))
        if company.company_email:
            sender_info.append(para(f"Email: {company.company_email}"))
        if company.company_phone:
            sender_info.append(para(f"Phone: {company.company_phone}"))
        if company.company_whatsapp:
            sender_info.append(para(f"WhatsApp: {company.company_whatsapp}"))

        status = STATUS_LABELS.get(self.invoice_data.get('status'), self.invoice_data.get('status'))
        invoice_title = [
            Paragraph("INVOICE", title_style),
            para(f"#{self.invoice_data['invoice_number']}", ParagraphStyle('InvNum', parent=right_style, fontSize=12, textColor=colors.gray)),
            para(status, ParagraphStyle('Status', parent=right_bold_style, textColor=BRAND_COLOR)),
        ]

        header_table = Table([[sender_info, invoice_title]], colWidths=[3.5*inch, 2.5*inch])
        header_table.setStyle(TableStyle([
            ('VALIGN', (0,0), (-1,-1), 'TOP'),
            ('LEFTPADDING', (0,0), (-1,-1), 0),
            ('RIGHTPADDING', (0,0), (-1,-1), 0),
        ]))
        story.append(header_table)
        story.append(Spacer(1, 0.4*inch))

        # Bill to (left) | dates and balance (right)
        client = self.invoice_data.get('client') or {}
        bill_to_content = [
            para("Bill To:", ParagraphStyle('BillToLabel', parent=normal_style, textColor=colors.gray)),
            para(client.get('company_name'), bold_style),
        ]
        if client.get('contact_person'):
            bill_to_content.append(para(f"Attn: {client['contact_person']}"))
        for line in (client.get('address') or "").split('\n'):
            if line.strip():
                bill_to_content.append(para(line))
        if client.get('email'):
            bill_to_content.append(para(client['email']))
        if client.get('phone'):
            bill_to_content.append(para(client['phone']))

        def detail_label(text):
            return para(text, ParagraphStyle('DetailLabel', parent=right_style, textColor=colors.gray))

        details_data = [
            [detail_label("Invoice Date:"), para(format_date(self.invoice_data['date']), right_style)],
            [detail_label("Due Date:"), para(format_date(self.invoice_data['due_date']), right_style)],
            [para("Balance Due:", right_bold_style), para(self._money(self.invoice_data['total']), right_bold_style)],
        ]
        details_table = Table(details_data, colWidths=[1.6*inch, 1.6*inch])
        details_table.setStyle(TableStyle([
            ('VALIGN', (0,0), (-1,-1), 'MIDDLE'),
            ('BACKGROUND', (0,2), (-1,2), colors.whitesmoke),
            ('PADDING', (0,2), (-1,2), 6),
            ('BOTTOMPADDING', (0,0), (-1,-2), 2),
            ('TOPPADDING', (0,0), (-1,-2), 2),
        ]))

        mid_table = Table([[bill_to_content, details_table]], colWidths=[3.0*inch, 3.2*inch])
        mid_table.setStyle(TableStyle([
            ('VALIGN', (0,0), (-1,-1), 'TOP'),
            ('LEFTPADDING', (0,0), (-1,-1), 0),
        ]))
        story.append(mid_table)
        story.append(Spacer(1, 0.4*inch))

        # Line items
        items_data = [[
            para("Item", white_bold_style),
            para("Qty", white_bold_style),
            para("Rate", white_bold_style),
            para("Disc %", white_bold_style),
            para("Tax %", white_bold_style),
            para("Amount", white_bold_style),
        ]]
        for item in self.invoice_data['items']:
            items_data.append([
                para(item['description']),
                para(format_quantity(item['quantity'])),
                para(format_rate(item['rate'], self.currency)),
                para(item['discount_rate']),
                para(item['tax_rate']),
                para(self._money(item['amount']), right_style),
            ])

        items_table = Table(items_data, colWidths=[2.2*inch, 0.6*inch, 1.1*inch, 0.6*inch, 0.6*inch, 1.2*inch], repeatRows=1)
        items_table.setStyle(TableStyle([
            ('BACKGROUND', (0,0), (-1,0), BRAND_COLOR),
            ('VALIGN', (0,0), (-1,-1), 'MIDDLE'),
            ('PADDING', (0,0), (-1,-1), 6),
            ('LINEBELOW', (0,1), (-1,-1), 0.25, colors.lightgrey),
        ]))
        story.append(items_table)
        story.append(Spacer(1, 0.2*inch))

        # Totals, pushed to the right
        totals_data = [
            [para("Subtotal:", bold_style), para(self._money(self.invoice_data['subtotal']), right_style)],
            [para("Discount:", bold_style), para("- " + self._money(self.invoice_data['discount_amount']), right_style)],
            [para("Tax:", bold_style), para(self._money(self.invoice_data['tax_amount']), right_style)],
            [para("Total:", bold_style), para(self._money(self.invoice_data['total']), right_bold_style)],
        ]
        totals_table = Table(totals_data, colWidths=[1.4*inch, 1.6*inch])
        totals_table.setStyle(TableStyle([
            ('VALIGN', (0,0), (-1,-1), 'TOP'),
            ('LINEABOVE', (0,3), (-1,3), 1, BRAND_COLOR),
        ]))
        story.append(Table([[None, totals_table]], colWidths=[3.3*inch, 3.1*inch]))
        story.append(Spacer(1, 0.3*inch))

        if self.invoice_data.get('notes'):
            story.append(para("Notes:", bold_style))
            story.append(para(self.invoice_data['notes']))
            story.append(Spacer(1, 0.2*inch))

        # Payment instructions
        payment_info = [
            ("Bank Name", company.bank_name),
            ("Account Holder Name", company.account_holder_name or company.company_name),
            ("Account Number", company.account_number),
            ("IFSC Code", company.ifsc_code),
            ("UPI ID", company.upi_id),
        ]
        payment_info = [(label, value) for label, value in payment_info if value]
        if payment_info:
            story.append(para("Payment Instructions:", bold_style))
            story.append(Spacer(1, 5))
            for label, value in payment_info:
                story.append(para(f"{label}: {value}"))
            story.append(Spacer(1, 10))

        story.append(para(f"Please pay by {format_date(self.invoice_data['due_date'])}. Thank you for your business!", small_style))

        doc.build(story)
