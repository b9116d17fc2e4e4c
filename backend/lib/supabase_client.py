"""
Supabase client for session archiving
"""
import os
from typing import Optional

from supabase import create_client, Client
from dotenv import load_dotenv

from adaptive_tutor_core.errors import ConfigurationError

load_dotenv()

_supabase_client: Optional[Client] = None


def get_supabase_client() -> Client:
    """Get or create the Supabase client singleton (service role key)."""
    global _supabase_client

    if _supabase_client is None:
        url = os.getenv("SUPABASE_URL")
        key = os.getenv("SUPABASE_SERVICE_KEY")

        if not url or not key:
            raise ConfigurationError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set in environment")

        _supabase_client = create_client(url, key)

    return _supabase_client
