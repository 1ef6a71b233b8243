"""Email service - transactional order emails via Resend"""
import base64
import html
import io
import logging
import re
from typing import Any, Dict, List, Optional

import resend
import segno

from app.core.config import settings
from app.core.logging import email_logger

logger = logging.getLogger(__name__)


def validate_email_config() -> tuple[bool, str]:
    """
    Validate email service configuration.

    Returns:
        tuple: (is_valid, error_message)
    """
    if not settings.RESEND_API_KEY:
        return False, "RESEND_API_KEY is not set in environment variables"

    if not settings.RESEND_FROM_EMAIL:
        return False, "RESEND_FROM_EMAIL is not set in environment variables"

    return True, ""


def _send_email(to: str, subject: str, html_body: str, text: Optional[str] = None,
                attachments: Optional[List[Dict[str, Any]]] = None) -> bool:
    """
    Internal helper function to send email via Resend API.

    Returns:
        bool: True on success, False on failure
    """
    is_valid, error = validate_email_config()
    if not is_valid:
        logger.warning(f"{error}; skipping email")
        return False

    params: Dict[str, Any] = {
        "from": settings.RESEND_FROM_EMAIL,
        "to": to,
        "subject": subject,
        "html": html_body,
    }
    if text:
        params["text"] = text
    if attachments:
        params["attachments"] = attachments

    try:
        resend.api_key = settings.RESEND_API_KEY
        response = resend.Emails.send(params)

        # Resend returns a dict with 'id' on success; older clients return an object
        email_id = None
        if isinstance(response, dict):
            email_id = response.get('id')
        elif hasattr(response, 'id'):
            email_id = response.id

        if email_id:
            email_logger.info(f"Email sent successfully to {to} (id: {email_id})")
            return True
        logger.error(f"Email send returned invalid response: {response} (type: {type(response)})")
        return False

    except Exception as exc:
        logger.error(f"Failed to send email to {to}: {exc}", exc_info=True)
        return False


def _wrap_html(title: str, body_html: str) -> str:
    return f"""
    <div style="font-family: Arial, sans-serif; max-width: 600px; margin: 0 auto; padding: 24px;">
      <h2 style="margin-bottom:16px;">{html.escape(title)}</h2>
      <div style="font-size:15px; line-height:1.5;">{body_html}</div>
      <hr style="margin:24px 0; border:none; border-top:1px solid #eee;"/>
      <div style="font-size:12px; color:#666;">This email was sent by Stage Pass.</div>
    </div>
    """


def format_amount(minor_units: Optional[int]) -> str:
    """Format an integer cent amount as dollars, '-' when unknown"""
    if minor_units is None:
        return "-"
    return f"${int(minor_units) / 100:.2f}"


def _show_details(order: Any) -> Dict[str, str]:
    """Display strings for the performance, built from the order's denormalized fields"""
    show_name = getattr(order, "production_name", None) or "Performance"

    date = getattr(order, "performance_date", None)
    time = getattr(order, "performance_time", None)
    when = " ".join(part for part in (date, time) if part)

    venue_parts = [getattr(order, "venue_name", None), getattr(order, "venue_address", None)]
    venue = ", ".join(part for part in venue_parts if part)

    return {"show_name": show_name, "when": when, "venue": venue}


def build_qr_png_base64(data: str) -> str:
    """Render data as a QR code PNG and return it base64-encoded"""
    qr = segno.make_qr(str(data or ""), error="m")
    buffer = io.BytesIO()
    qr.save(buffer, kind="png", scale=10, border=2)
    return base64.b64encode(buffer.getvalue()).decode("ascii")


def _safe_filename(name: str) -> str:
    return re.sub(r"[^a-zA-Z0-9._-]", "_", str(name))


def send_receipt_email(to: str, order: Any, subject: Optional[str] = None) -> bool:
    """
    Send a payment receipt for an order.

    Args:
        to: Recipient email address
        order: Order model (or any object with id/total_amount attributes)
        subject: Optional subject override

    Returns:
        bool: True on success, False on failure
    """
    order_id = getattr(order, "id", None) or "Unknown"
    amount = format_amount(getattr(order, "total_amount", None))
    show_name = _show_details(order)["show_name"]

    body = f"""
    <p>Thanks for your purchase.</p>
    <p><strong>Order ID:</strong> {html.escape(order_id)}</p>
    <p><strong>Event:</strong> {html.escape(show_name)}</p>
    <p><strong>Total:</strong> {amount}</p>
    """

    return _send_email(
        to,
        subject or f"Your receipt for order {order_id}",
        _wrap_html("Receipt", body),
        text=f"Order {order_id} total {amount}",
    )


def send_tickets_email(to: str, order: Any, tickets: List[Any], subject: str = "Your Stage Pass Tickets") -> bool:
    """
    Send one consolidated email holding a QR code for every ticket.

    QR images go out as inline attachments referenced by content id, since
    most mail clients block data URIs.

    Returns:
        bool: True on success, False on failure
    """
    details = _show_details(order)
    attachments = []
    items = []

    for idx, ticket in enumerate(tickets or []):
        content_id = f"qr-{idx}"
        ticket_id = getattr(ticket, "id", None) or f"ticket-{idx + 1}"
        qr_data = getattr(ticket, "qr_code", None) or ticket_id
        attachments.append({
            "filename": f"{_safe_filename(ticket_id)}.png",
            "content": build_qr_png_base64(qr_data),
            "content_id": content_id,
        })

        seat = " • ".join(
            str(part) for part in (
                getattr(ticket, "section", None),
                getattr(ticket, "row", None),
                getattr(ticket, "seat_number", None),
            ) if part
        )
        label = seat or f"Ticket {idx + 1}"
        items.append(f"""
        <li style="margin-bottom: 20px; padding: 15px; border: 2px solid #e0e0e0; border-radius: 8px;">
          <div style="margin-bottom: 10px;"><strong>{html.escape(label)}</strong></div>
          <div style="text-align: center; padding: 10px;">
            <img src="cid:{content_id}" alt="Ticket QR code" style="width: 250px; height: 250px; display: block; margin: 0 auto;" />
          </div>
        </li>
        """)

    list_html = f'<ol style="list-style: none; padding: 0;">{"".join(items)}</ol>' if items else "<p>No tickets found.</p>"
    when_html = f"<p><strong>When:</strong> {html.escape(details['when'])}</p>" if details["when"] else ""
    venue_html = f"<p><strong>Venue:</strong> {html.escape(details['venue'])}</p>" if details["venue"] else ""
    show_name = html.escape(details["show_name"])
    body = f"""
    <p>Here are your tickets:</p>
    <p><strong>Event:</strong> {show_name}</p>
    {when_html}
    {venue_html}
    {list_html}
    <p style="font-size: 12px; color: #666; margin-top: 20px;">Present the QR codes above at the venue for entry.</p>
    """

    email_logger.info(f"Sending consolidated tickets email to {to} ({len(attachments)} tickets)")
    return _send_email(
        to,
        subject,
        _wrap_html("Your Tickets", body),
        text=f"Tickets for {details['show_name']}" + (f" on {details['when']}" if details["when"] else ""),
        attachments=attachments,
    )
