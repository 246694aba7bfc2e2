from supabase import create_client, Client
from config import settings
from liveroom.store import MemoryStore, Store, SupabaseStore
import logging

logger = logging.getLogger(__name__)

_supabase: Client | None = None

def get_supabase_client() -> Client | None:
    """
    Get or initialize the Supabase client.
    Returns None if credentials are missing.
    """
    global _supabase
    if _supabase is None:
        if not settings.supabase_url or not settings.supabase_service_key:
            logger.warning("Supabase credentials not found. Persistence disabled.")
            return None
        try:
            _supabase = create_client(settings.supabase_url, settings.supabase_service_key)
        except Exception as e:
            logger.error(f"Failed to initialize Supabase client: {e}")
            return None
    return _supabase


def build_store() -> Store:
    """
    Store backing chat and attendance.
    Falls back to process memory when Supabase is not configured, so chat
    history and attendance do not survive a restart in that mode.
    """
    client = get_supabase_client()
    if client is None:
        logger.warning("Using in-memory store for chat and attendance.")
        return MemoryStore()
    return SupabaseStore(
        client,
        sessions_table=settings.sessions_table,
        rooms_table=settings.rooms_table,
        chat_rooms_table=settings.chat_rooms_table,
        chat_messages_table=settings.chat_messages_table,
    )
