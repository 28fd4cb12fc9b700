"""
Patterns Place Delivery API
FastAPI application that delivers purchased pattern files by email.
"""

import logging

from fastapi import FastAPI, HTTPException

from app.config import get_platform_name
from app.db import get_supabase_admin
from app.routers import delivery
from app.services.storage import PRODUCT_FILES_BUCKET

# Configure logging to output to console
logging.basicConfig(
    level=logging.INFO,
    format="%(asctime)s [%(levelname)s] %(name)s: %(message)s",
)

logger = logging.getLogger(__name__)

API_VERSION = "0.1.0"

app = FastAPI(
    title="Patterns Place Delivery API",
    description="Watermarked digital-file delivery for completed pattern orders",
    version=API_VERSION,
)

app.include_router(delivery.router, prefix="/api/delivery", tags=["delivery"])


@app.get("/")
async def root():
    return {"message": f"{get_platform_name()} Delivery API", "version": API_VERSION}


@app.get("/health")
async def health():
    return {"status": "ok"}


@app.get("/health/storage")
async def health_storage():
    """
    Test Supabase Storage access.

    Lists storage buckets and verifies the product-files bucket exists.
    Returns 503 if storage is unreachable or the bucket is missing.
    """
    supabase_admin = get_supabase_admin()
    if supabase_admin is None:
        raise HTTPException(
            status_code=503,
            detail="Storage client unavailable: SUPABASE_SERVICE_KEY is not configured",
        )

    try:
        buckets = supabase_admin.storage.list_buckets()
        bucket_names = [b.name for b in buckets]

        if PRODUCT_FILES_BUCKET not in bucket_names:
            raise HTTPException(
                status_code=503,
                detail=f"Storage bucket '{PRODUCT_FILES_BUCKET}' not found",
            )

        return {"status": "ok", "storage": "reachable", "bucket": PRODUCT_FILES_BUCKET}
    except HTTPException:
        raise
    except Exception as exc:
        logger.error(f"Storage health check failed: {exc}")
        raise HTTPException(
            status_code=503,
            detail=f"Storage check failed: {str(exc)}",
        )
