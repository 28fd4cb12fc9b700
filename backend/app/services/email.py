"""
Transactional email transport (Resend).

Sends the purchase confirmation with the delivered files attached. The
Resend SDK is synchronous, so sends run in a worker thread and are bounded
by EMAIL_SEND_TIMEOUT_SECONDS.

Environment variables
---------------------
RESEND_API_KEY        API key (required; sends fail without it).
RESEND_FROM_EMAIL     Sender address (default: noreply@thepatternsplace.com).
RESEND_FROM_NAME      Sender display name (default: PLATFORM_NAME).
"""

import asyncio
import html
import logging
from dataclasses import dataclass
from typing import Optional, Sequence

import resend

from app.config import (
    get_email_send_timeout,
    get_platform_name,
    get_resend_api_key,
    get_sender_address,
)
from app.models.delivery import DeliveryAttachment

logger = logging.getLogger(__name__)

_DESCRIPTION_PREVIEW_CHARS = 200


class EmailDeliveryError(Exception):
    """The email transport could not send the message."""


@dataclass
class SentEmail:
    message_id: str


@dataclass
class RenderedEmail:
    subject: str
    html: str
    text: str


# ---------------------------------------------------------------------------
# Rendering
# ---------------------------------------------------------------------------

def _single_line(value: str) -> str:
    return " ".join(value.split())


def _attachment_notice(attached: int, missing: int) -> tuple[str, str]:
    """Return (html, text) describing what is attached to this email."""
    if attached and not missing:
        text = (
            "Your files are attached to this email. Note: Your email address is embedded "
            "in the files to protect the seller's intellectual property."
        )
    elif attached:
        text = (
            f"{attached} of your files are attached to this email. "
            f"{missing} file(s) could not be attached; our team has been notified "
            "and will send them to you separately."
        )
    else:
        text = (
            "We could not attach your files to this email. Your order is confirmed "
            "and our team has been notified; your files will be sent to you separately. "
            "You can also access them anytime from your account."
        )
    return html.escape(text), text


def render_delivery_email(
    *,
    product_title: str,
    order_id: str,
    attached_count: int,
    missing_count: int = 0,
    customer_name: Optional[str] = None,
    product_description: Optional[str] = None,
    seller_name: Optional[str] = None,
) -> RenderedEmail:
    """
    Build the purchase confirmation email.

    Every interpolated value comes from user-editable rows (product titles,
    profile names, descriptions) and is HTML-escaped.
    """
    platform = get_platform_name()
    title = _single_line(product_title) or "your pattern"
    subject = f"Your Purchase: {title}"

    greeting = f"Hello {_single_line(customer_name)}," if customer_name else "Hello,"

    description = None
    if product_description:
        description = product_description[:_DESCRIPTION_PREVIEW_CHARS]
        if len(product_description) > _DESCRIPTION_PREVIEW_CHARS:
            description += "..."

    notice_html, notice_text = _attachment_notice(attached_count, missing_count)

    e = html.escape
    description_html = f'<p style="color: #666;">{e(description)}</p>' if description else ""
    seller_html = (
        f'<p style="color: #888; font-size: 0.9em;">Sold by: {e(seller_name)}</p>'
        if seller_name
        else ""
    )

    html_body = f"""\
<!DOCTYPE html>
<html>
<head>
  <meta charset="utf-8">
  <meta name="viewport" content="width=device-width, initial-scale=1.0">
</head>
<body style="font-family: Arial, sans-serif; line-height: 1.6; color: #333; max-width: 600px; margin: 0 auto; padding: 20px;">
  <div style="background: #667eea; padding: 30px; text-align: center; border-radius: 10px 10px 0 0;">
    <h1 style="color: white; margin: 0;">Thank You for Your Purchase!</h1>
  </div>
  <div style="background: #f9f9f9; padding: 30px; border-radius: 0 0 10px 10px; border: 1px solid #e0e0e0; border-top: none;">
    <p>{e(greeting)}</p>
    <p>Your purchase has been completed successfully!</p>
    <div style="background: white; padding: 20px; border-radius: 8px; margin: 20px 0; border-left: 4px solid #667eea;">
      <h2 style="margin-top: 0; color: #667eea;">{e(title)}</h2>
      {description_html}
      {seller_html}
    </div>
    <div style="background: #fff3cd; border: 1px solid #ffc107; padding: 15px; border-radius: 5px; margin: 20px 0;">
      <p style="margin: 0; color: #856404;">{notice_html}</p>
    </div>
    <p style="font-size: 0.9em; color: #666;">Order ID: <code>{e(order_id)}</code></p>
    <p>If you have any questions or issues, please contact us or the seller directly.</p>
    <p>Best regards,<br>The {e(platform)} Team</p>
  </div>
  <div style="text-align: center; margin-top: 20px; color: #888; font-size: 0.8em;">
    <p>This is an automated message. Please do not reply to this email.</p>
  </div>
</body>
</html>
"""

    text_lines = [
        "Thank You for Your Purchase!",
        "",
        greeting,
        "",
        "Your purchase has been completed successfully!",
        "",
        f"Product: {title}",
    ]
    if seller_name:
        text_lines.append(f"Sold by: {_single_line(seller_name)}")
    text_lines += [
        f"Order ID: {order_id}",
        "",
        notice_text,
        "",
        "If you have any questions or issues, please contact us or the seller directly.",
        "",
        "Best regards,",
        f"The {platform} Team",
    ]

    return RenderedEmail(subject=subject, html=html_body, text="\n".join(text_lines))


# ---------------------------------------------------------------------------
# Transport
# ---------------------------------------------------------------------------

def _send_via_resend(api_key: str, params: dict) -> dict:
    resend.api_key = api_key
    return resend.Emails.send(params)


async def send_email(
    to: str,
    subject: str,
    html_body: str,
    text_body: str,
    attachments: Sequence[DeliveryAttachment] = (),
    *,
    timeout: Optional[float] = None,
) -> SentEmail:
    """
    Send one transactional email.

    Returns:
        SentEmail with the provider's message id.

    Raises:
        EmailDeliveryError: not configured, provider error, timeout, or a
            response without a message id.
    """
    api_key = get_resend_api_key()
    if not api_key:
        raise EmailDeliveryError("Email service not configured - RESEND_API_KEY is missing")

    if timeout is None:
        timeout = get_email_send_timeout()

    params = {
        "from": get_sender_address(),
        "to": [to],
        "subject": subject,
        "html": html_body,
        "text": text_body,
    }
    if attachments:
        params["attachments"] = [
            {
                "filename": att.filename,
                "content": list(att.content),
                "content_type": att.content_type,
            }
            for att in attachments
        ]

    try:
        response = await asyncio.wait_for(
            asyncio.to_thread(_send_via_resend, api_key, params),
            timeout=timeout,
        )
    except asyncio.TimeoutError:
        raise EmailDeliveryError(f"Email send timed out after {timeout:g}s")
    except Exception as exc:
        raise EmailDeliveryError(f"Resend API error: {exc}") from exc

    message_id = response.get("id") if isinstance(response, dict) else None
    if not message_id:
        raise EmailDeliveryError(f"Resend returned no message id: {response!r}")

    return SentEmail(message_id=message_id)


async def send_product_delivery_email(
    *,
    customer_email: str,
    product_title: str,
    order_id: str,
    attachments: Sequence[DeliveryAttachment],
    missing_count: int = 0,
    customer_name: Optional[str] = None,
    product_description: Optional[str] = None,
    seller_name: Optional[str] = None,
) -> SentEmail:
    """Render and send the purchase confirmation with the delivered files."""
    rendered = render_delivery_email(
        product_title=product_title,
        order_id=order_id,
        attached_count=len(attachments),
        missing_count=missing_count,
        customer_name=customer_name,
        product_description=product_description,
        seller_name=seller_name,
    )
    logger.info(
        f"Sending delivery email for order {order_id} to {customer_email} "
        f"with {len(attachments)} attachment(s)"
    )
    return await send_email(
        customer_email,
        rendered.subject,
        rendered.html,
        rendered.text,
        attachments,
    )
