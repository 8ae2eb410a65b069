"""
Supabase client initialization.

This module contains *only* the database connection setup. The client is built
on first use so the in-memory store (tests, local runs) never needs credentials.

Environment variables required for the Supabase store:
- SUPABASE_URL: Your Supabase project URL
- SUPABASE_KEY: Your Supabase API key (use a server-side key only on the backend)
"""

from __future__ import annotations

import os
from pathlib import Path
from typing import Optional

from dotenv import load_dotenv
from supabase import Client, ClientOptions, create_client

# Load environment variables from the .env file at the project root
env_path = Path(__file__).parent.parent / ".env"
load_dotenv(dotenv_path=env_path)

_client: Optional[Client] = None


def get_supabase(timeout_seconds: float = 10) -> Client:
    """Return the shared Supabase client, creating it on first call."""

    global _client
    if _client is not None:
        return _client

    supabase_url = os.getenv("SUPABASE_URL")
    supabase_key = os.getenv("SUPABASE_KEY")

    if not supabase_url:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_URL. "
            "Set SUPABASE_URL to your Supabase project URL."
        )

    if not supabase_key:
        raise RuntimeError(
            "Missing environment variable: SUPABASE_KEY. "
            "Set SUPABASE_KEY to your Supabase API key."
        )

    # Provider calls (edge functions) and PostgREST share the same timeout budget
    options = ClientOptions(
        postgrest_client_timeout=timeout_seconds,
        function_client_timeout=int(timeout_seconds),
    )
    _client = create_client(supabase_url, supabase_key, options=options)
    return _client


__all__ = ["get_supabase"]
