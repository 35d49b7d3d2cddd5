"""
Document generator port: renders lease documents and rent reports to PDF
with reportlab, stores them through the object-storage port and registers a
``Media`` row. ``generate(document_type, data, options)`` returns that row.
"""

import logging
import uuid
from abc import ABC, abstractmethod
from datetime import date
from io import BytesIO

from reportlab.lib import colors
from reportlab.lib.pagesizes import LETTER
from reportlab.lib.styles import getSampleStyleSheet
from reportlab.platypus import Paragraph, SimpleDocTemplate, Spacer, Table, TableStyle
from sqlalchemy.ext.asyncio import AsyncSession

from leaseledger.models.enums import DocumentType
from leaseledger.models.media import Media
from leaseledger.services.storage import IncomingFile, ObjectStorage, store_media

logger = logging.getLogger(__name__)

_TITLES = {
    DocumentType.LEASE_AGREEMENT: "Residential Lease Agreement",
    DocumentType.RENEWAL_NOTICE: "Lease Renewal Notice",
    DocumentType.TERMINATION_NOTICE: "Lease Termination Notice",
    DocumentType.RENT_REPORT: "Rent Report",
    DocumentType.OTHER: "Lease Document",
}

_TABLE_STYLE = TableStyle([
    ("BACKGROUND", (0, 0), (-1, 0), colors.HexColor("#2b2f36")),
    ("TEXTCOLOR", (0, 0), (-1, 0), colors.white),
    ("FONTNAME", (0, 0), (-1, 0), "Helvetica-Bold"),
    ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
    ("ALIGN", (1, 1), (-1, -1), "RIGHT"),
    ("FONTSIZE", (0, 0), (-1, -1), 9),
])


class DocumentGenerator(ABC):
    @abstractmethod
    async def generate(self, document_type: DocumentType, data: dict, options: dict) -> Media:
        ...


def _lease_story(title: str, data: dict, styles) -> list:
    lease = data["lease"]
    story = [Paragraph(f"<b>{title}</b>", styles["Title"]), Spacer(1, 12)]
    rows = [
        ["Lease", str(lease["id"])],
        ["Property", data.get("property_name") or str(lease["property_id"])],
        ["Unit", data.get("unit_label") or str(lease["unit_id"])],
        ["Tenant", data.get("tenant_name") or str(lease["tenant_id"])],
        ["Term", f"{lease['start_date']} to {lease['end_date']}"],
        ["Monthly rent", f"{lease['monthly_rent']} {lease['currency']}"],
        ["Due day", str(lease["payment_due_day"])],
        ["Security deposit", f"{lease['security_deposit']} {lease['currency']}"],
        ["Status", lease["status"]],
    ]
    table = Table(rows, colWidths=[140, 320])
    table.setStyle(TableStyle([
        ("GRID", (0, 0), (-1, -1), 0.5, colors.grey),
        ("FONTNAME", (0, 0), (0, -1), "Helvetica-Bold"),
    ]))
    story.append(table)
    if lease.get("terms"):
        story += [Spacer(1, 16), Paragraph("<b>Terms</b>", styles["Heading3"]),
                  Paragraph(lease["terms"], styles["Normal"])]
    if lease.get("termination_reason"):
        story += [Spacer(1, 12), Paragraph(f"Termination reason: {lease['termination_reason']}", styles["Normal"])]
    if data.get("notes"):
        story += [Spacer(1, 12), Paragraph(data["notes"], styles["Normal"])]
    return story


def _report_story(title: str, data: dict, styles) -> list:
    report = data["report"]
    currency = report["currency"]
    story = [
        Paragraph(f"<b>{title}</b>", styles["Title"]),
        Paragraph(f"Lease {report['lease_id']}", styles["Normal"]),
        Paragraph(f"Period: {report.get('start') or 'start'} to {report.get('end') or 'today'}", styles["Normal"]),
        Spacer(1, 12),
    ]
    totals = Table([
        ["Total due", "Collected", "Outstanding"],
        [f"{report['total_due']} {currency}", f"{report['total_collected']} {currency}",
         f"{report['outstanding']} {currency}"],
    ])
    totals.setStyle(_TABLE_STYLE)
    story += [totals, Spacer(1, 16)]

    rows = [["Period", "Due date", "Amount due", "Paid", "Status"]]
    for record in report["records"]:
        rows.append([
            record["billing_period"],
            str(record["due_date"]),
            str(record["amount_due"]),
            str(record["amount_paid"]),
            record["status"],
        ])
    records = Table(rows, repeatRows=1)
    records.setStyle(_TABLE_STYLE)
    story.append(records)
    return story


def render_pdf(document_type: DocumentType, data: dict) -> bytes:
    styles = getSampleStyleSheet()
    title = _TITLES[DocumentType(document_type)]
    if document_type == DocumentType.RENT_REPORT:
        story = _report_story(title, data, styles)
    else:
        story = _lease_story(title, data, styles)
    story += [Spacer(1, 24), Paragraph(f"Generated {date.today().isoformat()}", styles["Italic"])]

    buffer = BytesIO()
    doc = SimpleDocTemplate(buffer, pagesize=LETTER, rightMargin=40, leftMargin=40,
                            topMargin=40, bottomMargin=40, title=title)
    doc.build(story)
    return buffer.getvalue()


class PdfDocumentGenerator(DocumentGenerator):
    def __init__(self, db: AsyncSession, storage: ObjectStorage):
        self.db = db
        self.storage = storage

    async def generate(self, document_type: DocumentType, data: dict, options: dict) -> Media:
        """``options``: folder, filename, uploaded_by."""
        pdf = render_pdf(document_type, data)
        filename = options.get("filename") or f"{DocumentType(document_type).value}_{uuid.uuid4().hex[:8]}.pdf"
        media = store_media(
            self.db,
            self.storage,
            IncomingFile(filename=filename, content_type="application/pdf", data=pdf),
            folder=options.get("folder", "documents"),
            uploaded_by=options.get("uploaded_by"),
            document_type=DocumentType(document_type).value,
            tags=["generated", DocumentType(document_type).value],
        )
        logger.info("Generated %s document %s", DocumentType(document_type).value, media.public_id)
        return media
