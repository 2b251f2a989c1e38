"""
Supabase access.

IMPORTANT: The supabase-py client is SYNCHRONOUS (httpx.Client, not AsyncClient).
Every .execute() call blocks the thread. All Supabase calls from async code
MUST go through `run_db(fn)` which runs them in a thread pool via
asyncio.to_thread().
"""

import asyncio
import logging
import os
from pathlib import Path
from dotenv import load_dotenv

ROOT_DIR = Path(__file__).parent
load_dotenv(ROOT_DIR / '.env')

logger = logging.getLogger(__name__)

SUPABASE_URL = os.environ.get('SUPABASE_URL')
SUPABASE_KEY = os.environ.get('SUPABASE_SERVICE_KEY')

_supabase_client = None


async def run_db(fn):
    """Run a synchronous Supabase call in a thread pool to avoid blocking the event loop."""
    return await asyncio.to_thread(fn)


def get_supabase():
    """Lazy-initialize the service-role Supabase client."""
    global _supabase_client
    if _supabase_client is None:
        if not (SUPABASE_URL and SUPABASE_KEY):
            raise RuntimeError("SUPABASE_URL and SUPABASE_SERVICE_KEY must be set")
        from supabase import create_client
        _supabase_client = create_client(SUPABASE_URL.strip(), SUPABASE_KEY.strip())
        logger.info("Supabase client initialized")
    return _supabase_client
