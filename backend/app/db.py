"""
Database client configuration.
Uses Supabase for PostgreSQL + Storage.

Clients are created on first use so that modules which only need the
watermark or URL-validation code can be imported without Supabase
credentials.
"""

import os
from functools import lru_cache
from typing import Optional

from dotenv import load_dotenv
from supabase import create_client, Client

load_dotenv()


@lru_cache(maxsize=1)
def get_supabase_admin() -> Optional[Client]:
    """
    Return the admin client for service-level operations (bypasses RLS).

    Product files live in a private bucket and orders/products/profiles are
    read across users, so the delivery pipeline always uses this client.
    Returns None when SUPABASE_URL or SUPABASE_SERVICE_KEY is not configured.
    """
    url = os.getenv("SUPABASE_URL")
    service_key = os.getenv("SUPABASE_SERVICE_KEY")
    if not url or not service_key:
        return None
    return create_client(url, service_key)
