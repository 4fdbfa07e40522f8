"""
Supabase client for server-side execution log writes.
Uses the service role key; the engine itself never touches the database.
"""
import os
from functools import lru_cache

from supabase import Client, create_client


@lru_cache(maxsize=1)
def get_supabase_client() -> Client:
    """Process-wide client; raises ValueError when credentials are missing."""
    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_SERVICE_ROLE_KEY")
    if not supabase_url or not supabase_key:
        raise ValueError("SUPABASE_URL and SUPABASE_SERVICE_ROLE_KEY are required to save executions")
    return create_client(supabase_url, supabase_key)
