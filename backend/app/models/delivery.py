"""
Pydantic models for the digital-file delivery pipeline.

Models:
  SourceFile          - a stored product file to fetch (URL or storage path)
  DeliveryAttachment  - one prepared email attachment
  DeliveryOrder       - DB row from the orders table (read-only)
  DeliveryProduct     - DB row from the products table (read-only)
  FileOutcome         - per-file result inside a delivery attempt
  DeliverySummary     - result of one delivery attempt
  OrderCompletedRequest / DeliveryAcceptedResponse - webhook API bodies
"""

from enum import Enum
from typing import Any, Optional

from pydantic import BaseModel, Field, field_validator


# ---------------------------------------------------------------------------
# Files and attachments
# ---------------------------------------------------------------------------

class SourceFile(BaseModel):
    """
    A seller-owned file referenced by a product.

    ``url`` is either an absolute http(s) URL or a bare storage path inside
    the product-files bucket (e.g. ``seller-1/pattern.pdf``). Bare paths are
    exchanged for a signed URL before fetching.
    """

    url: str
    filename: Optional[str] = None
    content_type: Optional[str] = None


class DeliveryAttachment(BaseModel):
    """A file ready to be handed to the email transport."""

    filename: str
    content: bytes
    content_type: str


# ---------------------------------------------------------------------------
# Orders and products (rows read from Supabase)
# ---------------------------------------------------------------------------

class DeliveryOrder(BaseModel):
    """Subset of an orders row that delivery needs."""
    model_config = {"extra": "ignore"}

    id: str
    product_id: str
    buyer_id: Optional[str] = None
    buyer_email: Optional[str] = None
    seller_id: Optional[str] = None
    status: Optional[str] = None


class DeliveryProduct(BaseModel):
    """
    Subset of a products row that delivery needs.

    The ``files`` column stores a list of storage paths (or URLs); plain
    strings are coerced into SourceFile objects.
    """
    model_config = {"extra": "ignore"}

    id: str
    title: str
    description: Optional[str] = None
    user_id: Optional[str] = None
    files: list[SourceFile] = []

    @field_validator("files", mode="before")
    @classmethod
    def _coerce_files(cls, value: Any) -> Any:
        if value is None:
            return []
        coerced = []
        for item in value:
            if isinstance(item, str):
                coerced.append({"url": item})
            else:
                coerced.append(item)
        return coerced


# ---------------------------------------------------------------------------
# Delivery results
# ---------------------------------------------------------------------------

class FileStatus(str, Enum):
    DELIVERED = "delivered"
    FAILED = "failed"


class FileOutcome(BaseModel):
    """What happened to one SourceFile during a delivery attempt."""

    filename: str
    url: str
    status: FileStatus
    reason: Optional[str] = None
    watermarked: bool = False


class DeliverySummary(BaseModel):
    """
    Result of delivering one order.

    Never shown to the buyer; it is logged and returned to internal callers.
    """

    order_id: str
    recipient: str
    attempted: int = 0
    succeeded: int = 0
    failed: int = 0
    watermarked: int = 0
    email_sent: bool = False
    message_id: Optional[str] = None
    error: Optional[str] = None
    files: list[FileOutcome] = []


# ---------------------------------------------------------------------------
# API bodies
# ---------------------------------------------------------------------------

class OrderCompletedRequest(BaseModel):
    """Body of POST /api/delivery/order-completed."""

    order_ids: list[str] = Field(..., min_length=1, max_length=50)

    @field_validator("order_ids")
    @classmethod
    def _strip_ids(cls, value: list[str]) -> list[str]:
        cleaned = [v.strip() for v in value if v and v.strip()]
        if not cleaned:
            raise ValueError("order_ids must contain at least one non-empty id")
        # Deduplicate while preserving order
        return list(dict.fromkeys(cleaned))


class DeliveryAcceptedResponse(BaseModel):
    accepted: bool = True
    order_count: int
