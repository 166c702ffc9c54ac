# ============================================================
# feeledger/utils/pdf_receipt.py
#
# PDF payment receipt for one Payment.
# Called by: GET /api/v1/payments/{payment_id}/receipt.pdf
#
# Library: ReportLab
# Output:  BytesIO buffer, streamed to the client and never
#          written to disk.
#
#   - A5 page; accountants print two per A4 sheet.
#   - Amounts print as "Rs. 123,456.00". The built-in Helvetica
#     has no rupee glyph, so the currency is spelled out.
#   - Allocation rows come straight from payment.allocations;
#     any unallocated credit gets its own row.
# ============================================================

from io import BytesIO
from datetime import datetime
from decimal import Decimal
from typing import Optional

from reportlab.lib.pagesizes import A5
from reportlab.lib.units import mm
from reportlab.lib import colors
from reportlab.lib.styles import ParagraphStyle
from reportlab.platypus import (
    SimpleDocTemplate, Paragraph, Spacer, Table, TableStyle, HRFlowable
)
from reportlab.lib.enums import TA_CENTER, TA_RIGHT

from feeledger.schemas.payments import ReceiptView
from feeledger.utils.receipt import format_receipt_number


BRAND_BLUE   = colors.HexColor("#1E3A8A")
DARK_TEXT    = colors.HexColor("#1A1A1A")
MUTED_TEXT   = colors.HexColor("#6B7280")
LIGHT_BG     = colors.HexColor("#F3F4F6")
BORDER_COLOR = colors.HexColor("#D1D5DB")
PAID_BG      = colors.HexColor("#DBEAFE")
DUE_RED      = colors.HexColor("#DC2626")
WHITE        = colors.white


def _format_amount(amount) -> str:
    return f"Rs. {Decimal(str(amount)):,.2f}"


def _format_date(dt) -> str:
    if isinstance(dt, datetime):
        return dt.strftime("%d %B %Y, %I:%M %p")
    return str(dt)


def generate_receipt_pdf(
    receipt: ReceiptView,
    *,
    institution_name: str,
    student_name: Optional[str] = None,
    prefix: Optional[str] = None,
) -> BytesIO:
    """
    Example:
        buf = generate_receipt_pdf(view, institution_name="City College")
        return Response(buf.getvalue(), media_type="application/pdf")
    """
    buffer = BytesIO()
    number = format_receipt_number(receipt.receipt_number, prefix)

    doc = SimpleDocTemplate(
        buffer,
        pagesize=A5,
        rightMargin=12 * mm,
        leftMargin=12 * mm,
        topMargin=10 * mm,
        bottomMargin=10 * mm,
        title=f"Receipt {number}",
        author=institution_name,
    )

    def style(name, **kwargs):
        defaults = dict(fontName="Helvetica", fontSize=9, leading=12, textColor=DARK_TEXT)
        defaults.update(kwargs)
        return ParagraphStyle(name, **defaults)

    S = {
        "title":       style("t", fontName="Helvetica-Bold", fontSize=15, leading=19,
                             textColor=WHITE, alignment=TA_CENTER),
        "banner":      style("b", fontName="Helvetica-Bold", fontSize=10,
                             textColor=WHITE, alignment=TA_CENTER),
        "number":      style("n", fontSize=9, textColor=WHITE, alignment=TA_CENTER),
        "section":     style("s", fontName="Helvetica-Bold", fontSize=8,
                             textColor=MUTED_TEXT, spaceAfter=2),
        "label":       style("l", fontSize=8, textColor=MUTED_TEXT),
        "value":       style("v", fontName="Helvetica-Bold", fontSize=9),
        "head":        style("h", fontName="Helvetica-Bold", fontSize=8, textColor=WHITE),
        "cell":        style("c", fontSize=8),
        "cell_right":  style("cr", fontSize=8, alignment=TA_RIGHT),
        "total":       style("tl", fontName="Helvetica-Bold", fontSize=10),
        "total_right": style("tv", fontName="Helvetica-Bold", fontSize=10,
                             alignment=TA_RIGHT, textColor=BRAND_BLUE),
        "paid":        style("p", fontName="Helvetica-Bold", fontSize=12,
                             textColor=BRAND_BLUE, alignment=TA_CENTER),
        "due":         style("d", fontSize=9, textColor=DUE_RED, alignment=TA_CENTER),
        "footer":      style("f", fontSize=7, textColor=MUTED_TEXT, alignment=TA_CENTER),
    }

    story = []
    page_w = A5[0] - 24 * mm

    # ── Header ────────────────────────────────────────────────
    header = Table([
        [Paragraph(institution_name.upper(), S["title"])],
        [Paragraph("FEE PAYMENT RECEIPT", S["banner"])],
        [Paragraph(number, S["number"])],
    ], colWidths=[page_w])
    header.setStyle(TableStyle([
        ("BACKGROUND",    (0, 0), (-1, -1), BRAND_BLUE),
        ("TOPPADDING",    (0, 0), (-1, -1), 5),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 5),
    ]))
    story.append(header)
    story.append(Spacer(1, 5 * mm))

    # ── Details ───────────────────────────────────────────────
    def field_row(label, value):
        return [Paragraph(label, S["label"]), Paragraph(str(value) if value else "-", S["value"])]

    term = f"Semester {receipt.semester}, {receipt.academic_year}" if receipt.semester \
        else receipt.academic_year
    rows = [
        field_row("Student", student_name or receipt.student_id),
        field_row("Term", term),
        field_row("Payment Date", _format_date(receipt.date)),
        field_row("Mode / Method", f"{receipt.mode.value} / {receipt.method.value}".title()),
        field_row("Status", receipt.status.value.title()),
    ]
    if receipt.transaction_id:
        rows.append(field_row("Transaction ID", receipt.transaction_id))
    rows.append(field_row("Received By", receipt.added_by))
    if receipt.verified_by:
        rows.append(field_row("Verified By", receipt.verified_by))

    col_w = page_w / 2 - 2 * mm
    details = Table(rows, colWidths=[col_w * 0.5, col_w * 1.5])
    details.setStyle(TableStyle([
        ("TOPPADDING",    (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        ("LEFTPADDING",   (0, 0), (-1, -1), 0),
        ("LINEBELOW",     (0, -1), (-1, -1), 0.5, BORDER_COLOR),
    ]))
    story.append(details)
    story.append(Spacer(1, 4 * mm))

    # ── Allocation table ─────────────────────────────────────
    story.append(Paragraph("PAID TOWARDS", S["section"]))
    fee_rows = [[Paragraph("Fee Item", S["head"]), Paragraph("Amount", S["head"])]]
    for alloc in receipt.allocations:
        fee_rows.append([
            Paragraph(alloc.name, S["cell"]),
            Paragraph(_format_amount(alloc.amount), S["cell_right"]),
        ])
    if receipt.unallocated_amount > 0:
        fee_rows.append([
            Paragraph("Unallocated credit", S["cell"]),
            Paragraph(_format_amount(receipt.unallocated_amount), S["cell_right"]),
        ])
    n_items = len(fee_rows) - 1
    fee_rows.append([
        Paragraph("THIS PAYMENT", S["total"]),
        Paragraph(_format_amount(receipt.amount), S["total_right"]),
    ])

    fee_table = Table(fee_rows, colWidths=[page_w * 0.65, page_w * 0.35])
    fee_table.setStyle(TableStyle([
        ("BACKGROUND",    (0, 0), (-1, 0), BRAND_BLUE),
        ("TOPPADDING",    (0, 0), (-1, -1), 3),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 3),
        *[
            ("BACKGROUND", (0, i + 1), (-1, i + 1), LIGHT_BG)
            for i in range(n_items) if i % 2 == 0
        ],
        ("LINEBELOW",     (0, 0), (-1, n_items), 0.3, BORDER_COLOR),
        ("BACKGROUND",    (0, -1), (-1, -1), PAID_BG),
        ("LINEABOVE",     (0, -1), (-1, -1), 1, BRAND_BLUE),
    ]))
    story.append(fee_table)
    story.append(Spacer(1, 4 * mm))

    # ── Ledger position after this payment ───────────────────
    if receipt.remaining_balance <= 0:
        badge = Paragraph("TERM FEES FULLY PAID", S["paid"])
        border = BRAND_BLUE
    else:
        badge = Paragraph(
            f"Paid {_format_amount(receipt.total_paid)} of {_format_amount(receipt.net_amount)}"
            f"  |  Balance {_format_amount(receipt.remaining_balance)}",
            S["due"],
        )
        border = DUE_RED
    badge_table = Table([[badge]], colWidths=[page_w])
    badge_table.setStyle(TableStyle([
        ("BOX",           (0, 0), (-1, -1), 1, border),
        ("TOPPADDING",    (0, 0), (-1, -1), 6),
        ("BOTTOMPADDING", (0, 0), (-1, -1), 6),
    ]))
    story.append(badge_table)
    story.append(Spacer(1, 3 * mm))

    if receipt.notes:
        story.append(Paragraph(f"Note: {receipt.notes}", S["footer"]))
        story.append(Spacer(1, 2 * mm))

    story.append(HRFlowable(width=page_w, color=BORDER_COLOR, thickness=0.5))
    story.append(Spacer(1, 2 * mm))
    story.append(Paragraph(
        "This is a computer-generated receipt and requires no signature.",
        S["footer"],
    ))

    doc.build(story)
    buffer.seek(0)
    return buffer
