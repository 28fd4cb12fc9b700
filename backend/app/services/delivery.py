"""
Product delivery for completed orders.

For each file attached to a purchased product:

  1. derive the attachment filename from the stored URL/path
  2. fetch the bytes through the SSRF-safe fetcher, limited to the
     storage host allow-list (bare storage paths are signed first)
  3. watermark PDFs with the buyer's email; other files pass through as-is
  4. collect the attachment

Then exactly one confirmation email is sent with whatever attachments were
prepared, possibly none. A file that cannot be fetched is logged and left
out; it never blocks the other files or the confirmation itself.

Delivery runs detached from the request that completed the order, so
nothing in this module raises to its caller: every outcome is logged and
reported in a DeliverySummary.
"""

import logging
import re
from typing import Iterable, Optional, Sequence
from urllib.parse import unquote, urlparse

import httpx

from app.config import get_allowed_storage_hosts, get_fetch_timeout, get_max_download_bytes
from app.db import get_supabase_admin
from app.models.delivery import (
    DeliveryAttachment,
    DeliveryOrder,
    DeliveryProduct,
    DeliverySummary,
    FileOutcome,
    FileStatus,
    SourceFile,
)
from app.services.email import EmailDeliveryError, send_product_delivery_email
from app.services.storage import get_signed_url, is_storage_path
from app.services.url_validation import FetchError, UrlValidationError, fetch_bytes, redact_url
from app.services.watermark import guess_content_type, is_pdf, watermark_pdf

logger = logging.getLogger(__name__)

DEFAULT_FILENAME = "file"

COMPLETED_ORDER_STATUS = "completed"


# ---------------------------------------------------------------------------
# Filenames
# ---------------------------------------------------------------------------

def sanitize_filename(filename: str, default: str = DEFAULT_FILENAME) -> str:
    """Replace anything but word characters, dashes and dots with underscores."""
    sanitized = re.sub(r"[^\w\-.]", "_", filename.strip()).lstrip(".")
    return sanitized or default


def filename_from_url(url: str, default: str = DEFAULT_FILENAME) -> str:
    """
    Return the last path segment of a URL or storage path.

    Query string and fragment are ignored and percent-escapes decoded, e.g.
    ``https://x.supabase.co/.../My%20Pattern.pdf?token=abc`` -> ``My_Pattern.pdf``.
    Falls back to ``default`` when there is no usable segment.
    """
    try:
        path = urlparse(url).path
    except (ValueError, AttributeError):
        return default
    segment = unquote(path.rsplit("/", 1)[-1]) if path else ""
    if not segment:
        return default
    return sanitize_filename(segment, default)


# ---------------------------------------------------------------------------
# Per-file processing
# ---------------------------------------------------------------------------

def _resolve_fetch_url(reference: str) -> str:
    """Turn a bare storage path into a signed URL; pass URLs through."""
    if is_storage_path(reference):
        return get_signed_url(reference)
    return reference.strip()


async def _prepare_attachment(
    source: SourceFile,
    license_identity: str,
    allowed_hosts: list[str],
    client: httpx.AsyncClient,
    order_id: str,
) -> tuple[Optional[DeliveryAttachment], FileOutcome]:
    filename = (
        sanitize_filename(source.filename) if source.filename else filename_from_url(source.url)
    )
    content_type = source.content_type or guess_content_type(filename)
    shown_url = redact_url(source.url)

    def _failed(reason: str) -> tuple[None, FileOutcome]:
        return None, FileOutcome(
            filename=filename, url=shown_url, status=FileStatus.FAILED, reason=reason
        )

    try:
        url = _resolve_fetch_url(source.url)
        content = await fetch_bytes(
            url, allowed_hosts, client=client, max_bytes=get_max_download_bytes()
        )
    except UrlValidationError as exc:
        logger.warning(
            f"Order {order_id}: rejected file URL {redact_url(exc.url)} "
            f"[{exc.reason.value}]; skipping {filename}"
        )
        return _failed(exc.reason.value)
    except FetchError as exc:
        logger.warning(
            f"Order {order_id}: failed to fetch {redact_url(exc.url)}: {exc}; skipping {filename}"
        )
        return _failed(f"FetchError: {exc}")
    except Exception as exc:
        logger.error(f"Order {order_id}: could not retrieve {shown_url}: {exc}; skipping {filename}")
        return _failed(f"RetrievalError: {exc}")

    watermarked = False
    if is_pdf(filename, content_type):
        stamped = watermark_pdf(content, license_identity)
        watermarked = stamped != content
        content = stamped
        if not watermarked:
            logger.warning(f"Order {order_id}: delivering {filename} without watermark")

    logger.info(
        f"Order {order_id}: prepared {filename} ({len(content)} bytes, {content_type}, "
        f"watermarked={watermarked})"
    )
    attachment = DeliveryAttachment(filename=filename, content=content, content_type=content_type)
    outcome = FileOutcome(
        filename=filename, url=shown_url, status=FileStatus.DELIVERED, watermarked=watermarked
    )
    return attachment, outcome


# ---------------------------------------------------------------------------
# Single order
# ---------------------------------------------------------------------------

async def _deliver(
    summary: DeliverySummary,
    order: DeliveryOrder,
    product: DeliveryProduct,
    buyer_email: str,
    buyer_name: Optional[str],
    seller_name: Optional[str],
    allowed_hosts: list[str],
    http_client: Optional[httpx.AsyncClient],
) -> None:
    files = product.files
    if not files:
        logger.warning(
            f"Product {product.id} ({product.title}) has no files; "
            f"order {order.id} gets a confirmation without attachments"
        )

    attachments: list[DeliveryAttachment] = []
    client = http_client or httpx.AsyncClient(timeout=get_fetch_timeout(), follow_redirects=False)
    try:
        for index, source in enumerate(files, start=1):
            logger.info(f"[{index}/{len(files)}] Order {order.id}: processing {redact_url(source.url)}")
            attachment, outcome = await _prepare_attachment(
                source, buyer_email, allowed_hosts, client, order.id
            )
            summary.files.append(outcome)
            if attachment is not None:
                attachments.append(attachment)
    finally:
        if http_client is None:
            await client.aclose()

    summary.attempted = len(files)
    summary.succeeded = len(attachments)
    summary.failed = summary.attempted - summary.succeeded
    summary.watermarked = sum(1 for f in summary.files if f.watermarked)

    if files and not attachments:
        logger.error(
            f"No files could be processed for order {order.id} (product {product.id}); "
            "sending confirmation without attachments"
        )

    try:
        sent = await send_product_delivery_email(
            customer_email=buyer_email,
            product_title=product.title,
            order_id=order.id,
            attachments=attachments,
            missing_count=summary.failed,
            customer_name=buyer_name,
            product_description=product.description,
            seller_name=seller_name,
        )
    except EmailDeliveryError as exc:
        logger.error(f"Failed to send delivery email for order {order.id} to {buyer_email}: {exc}")
        summary.error = str(exc)
        return

    summary.email_sent = True
    summary.message_id = sent.message_id


async def deliver_product_to_customer(
    order: DeliveryOrder,
    product: DeliveryProduct,
    buyer_email: str,
    *,
    buyer_name: Optional[str] = None,
    seller_name: Optional[str] = None,
    allowed_hosts: Optional[Iterable[str]] = None,
    http_client: Optional[httpx.AsyncClient] = None,
) -> DeliverySummary:
    """
    Deliver one order's files to the buyer by email.

    Args:
        order: The completed order.
        product: The purchased product and its source files.
        buyer_email: Recipient and watermark identity.
        buyer_name / seller_name: Optional display names for the email.
        allowed_hosts: Host patterns files may come from; defaults to
            ALLOWED_STORAGE_HOSTS.
        http_client: Reused for all fetches when given (tests, batch runs).

    Returns:
        DeliverySummary. Never raises.
    """
    recipient = buyer_email.strip()
    summary = DeliverySummary(order_id=order.id, recipient=recipient)
    hosts = list(allowed_hosts) if allowed_hosts is not None else get_allowed_storage_hosts()

    try:
        await _deliver(
            summary, order, product, recipient, buyer_name, seller_name, hosts, http_client
        )
    except Exception as exc:
        logger.error(
            f"Unexpected error delivering order {order.id} (product {product.id}) "
            f"to {recipient}: {exc}",
            exc_info=True,
        )
        summary.error = str(exc)

    logger.info(
        f"Delivery summary for order {order.id}: attempted={summary.attempted} "
        f"succeeded={summary.succeeded} failed={summary.failed} "
        f"watermarked={summary.watermarked} email_sent={summary.email_sent}"
    )
    return summary


# ---------------------------------------------------------------------------
# Supabase lookups (read-only, best-effort)
# ---------------------------------------------------------------------------

def _fetch_products(product_ids: list[str]) -> dict[str, DeliveryProduct]:
    supabase_admin = get_supabase_admin()
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required to load products")
    result = (
        supabase_admin.table("products")
        .select("id, title, description, files, user_id")
        .in_("id", product_ids)
        .execute()
    )
    products = {}
    for row in result.data or []:
        product = DeliveryProduct(**row)
        products[product.id] = product
    return products


def _fetch_profiles(user_ids: list[str]) -> dict[str, dict]:
    """Return profile rows by id. Returns {} on error (names are cosmetic)."""
    ids = [uid for uid in dict.fromkeys(user_ids) if uid]
    if not ids:
        return {}
    try:
        supabase_admin = get_supabase_admin()
        if not supabase_admin:
            return {}
        result = (
            supabase_admin.table("profiles")
            .select("id, full_name, username")
            .in_("id", ids)
            .execute()
        )
        return {row["id"]: row for row in result.data or []}
    except Exception as e:
        logger.warning(f"Failed to fetch profiles for delivery email: {e}")
        return {}


def _fetch_orders(order_ids: list[str]) -> list[DeliveryOrder]:
    supabase_admin = get_supabase_admin()
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required to load orders")
    result = (
        supabase_admin.table("orders")
        .select("id, product_id, buyer_id, buyer_email, seller_id, status")
        .in_("id", order_ids)
        .execute()
    )
    by_id = {row["id"]: DeliveryOrder(**row) for row in result.data or []}
    missing = [oid for oid in order_ids if oid not in by_id]
    if missing:
        logger.warning(f"Orders not found, skipping delivery: {missing}")
    return [by_id[oid] for oid in order_ids if oid in by_id]


# ---------------------------------------------------------------------------
# Batches
# ---------------------------------------------------------------------------

async def deliver_products_for_orders(
    orders: Sequence[DeliveryOrder],
    *,
    http_client: Optional[httpx.AsyncClient] = None,
) -> list[DeliverySummary]:
    """
    Deliver a batch of orders (a cart checkout creates one order per item).

    Orders are grouped by buyer email so each buyer's products are loaded in
    one query. A failure on one order never stops the others.
    """
    orders_by_email: dict[str, list[DeliveryOrder]] = {}
    for order in orders:
        email = (order.buyer_email or "").strip()
        if not email:
            logger.error(f"Order {order.id} has no buyer_email; skipping delivery")
            continue
        orders_by_email.setdefault(email, []).append(order)

    summaries: list[DeliverySummary] = []
    for buyer_email, buyer_orders in orders_by_email.items():
        product_ids = list(dict.fromkeys(o.product_id for o in buyer_orders))
        try:
            products = _fetch_products(product_ids)
        except Exception as e:
            logger.error(f"Failed to load products {product_ids} for delivery to {buyer_email}: {e}")
            continue

        profiles = _fetch_profiles(
            [o.buyer_id for o in buyer_orders] + [p.user_id for p in products.values()]
        )

        for order in buyer_orders:
            product = products.get(order.product_id)
            if product is None:
                logger.error(f"Product {order.product_id} not found for order {order.id}")
                continue

            buyer_profile = profiles.get(order.buyer_id or "") or {}
            seller_profile = profiles.get(product.user_id or "") or {}
            summary = await deliver_product_to_customer(
                order,
                product,
                buyer_email,
                buyer_name=buyer_profile.get("full_name") or None,
                seller_name=seller_profile.get("full_name") or seller_profile.get("username") or None,
                http_client=http_client,
            )
            summaries.append(summary)

    return summaries


async def deliver_orders_by_id(order_ids: Sequence[str]) -> list[DeliverySummary]:
    """Load orders by id and deliver the ones that are completed."""
    orders = _fetch_orders(list(dict.fromkeys(order_ids)))
    deliverable = []
    for order in orders:
        if order.status and order.status != COMPLETED_ORDER_STATUS:
            logger.warning(f"Order {order.id} has status {order.status!r}; skipping delivery")
            continue
        deliverable.append(order)
    return await deliver_products_for_orders(deliverable)


async def run_delivery_in_background(order_ids: Sequence[str]) -> None:
    """
    Detached entry point used by the API.

    The order is already complete when this runs; any failure here is only
    logged and never reaches the HTTP response.
    """
    try:
        summaries = await deliver_orders_by_id(order_ids)
    except Exception:
        logger.exception(f"Error delivering products for orders {list(order_ids)}")
        return

    sent = sum(1 for s in summaries if s.email_sent)
    logger.info(f"Delivery finished for {len(summaries)} order(s); {sent} email(s) sent")
