"""
Supabase Storage access for product files.
Turns stored file references into fetchable signed URLs.
"""

import os
from urllib.parse import urlparse, urlunparse

from app.db import get_supabase_admin

PRODUCT_FILES_BUCKET = "product-files"

DEFAULT_SIGNED_URL_EXPIRY_SECONDS = 3600


def is_storage_path(reference: str) -> bool:
    """Return True if the reference is a bare bucket path rather than a URL."""
    lower = reference.strip().lower()
    return not (lower.startswith("http://") or lower.startswith("https://"))


def _rewrite_signed_url_host(signed_url: str) -> str:
    """
    Replace the host in a signed URL with the public Supabase URL.

    When the backend runs inside Docker it reaches Supabase through an
    internal URL like ``http://host.docker.internal:54321`` and Supabase
    embeds that host in every signed URL it generates, which is unreachable
    from outside the container network.

    If ``SUPABASE_PUBLIC_URL`` is set it is used as the replacement origin.
    If it is not set the URL is returned unchanged, which is the correct
    behaviour for production where both URLs are the same.

    Rewritten URLs still go through the SSRF checks, so a loopback public URL
    such as ``http://localhost:54321`` is rejected. Local development needs a
    non-loopback SUPABASE_PUBLIC_URL whose host is listed in
    ALLOWED_STORAGE_HOSTS.
    """
    public_url = os.getenv("SUPABASE_PUBLIC_URL", "").strip()
    if not public_url:
        return signed_url

    parsed_signed = urlparse(signed_url)
    parsed_public = urlparse(public_url)

    # Swap scheme + netloc; keep path/query/fragment from the signed URL.
    return urlunparse((
        parsed_public.scheme,
        parsed_public.netloc,
        parsed_signed.path,
        parsed_signed.params,
        parsed_signed.query,
        parsed_signed.fragment,
    ))


def get_signed_url(
    storage_path: str,
    expiry_seconds: int = DEFAULT_SIGNED_URL_EXPIRY_SECONDS,
) -> str:
    """
    Generate a signed URL for a file in the product-files bucket.

    Args:
        storage_path: Path inside the bucket (e.g., "seller-123/pattern.pdf")
        expiry_seconds: URL expiry time in seconds (default: 1 hour)

    Returns:
        Signed URL, with its host rewritten via ``_rewrite_signed_url_host``.

    Raises:
        Exception: If the admin client is missing or URL generation fails
    """
    supabase_admin = get_supabase_admin()
    if not supabase_admin:
        raise ValueError("SUPABASE_SERVICE_KEY is required for storage operations")

    path = storage_path.strip().lstrip("/")
    if path.startswith(f"{PRODUCT_FILES_BUCKET}/"):
        path = path[len(PRODUCT_FILES_BUCKET) + 1:]

    try:
        result = supabase_admin.storage.from_(PRODUCT_FILES_BUCKET).create_signed_url(
            path,
            expiry_seconds
        )
    except Exception as e:
        raise Exception(f"Failed to generate signed URL: {str(e)}")

    signed = None
    if result:
        signed = result.get("signedURL") or result.get("signedUrl")
    if not signed:
        raise Exception(f"No signed URL returned from storage for {path!r}")

    return _rewrite_signed_url_host(signed)

