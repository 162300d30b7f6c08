# team_identity/storage/supabase_backend.py
from typing import Any, Dict, List, Optional

from loguru import logger
from postgrest import APIResponse
from postgrest.exceptions import APIError
from supabase import AsyncClient, create_async_client

from team_identity.storage.backends import MappingBackend

UPSERT_CHUNK_SIZE = 500
# Must stay at or below the project's PostgREST max-rows, or a capped page reads as the last one
LOAD_PAGE_SIZE = 500


async def initialize_supabase(url: Optional[str], key: Optional[str]) -> AsyncClient:
    """Creates the async Supabase client used by the backend."""
    if not url or not key:
        logger.critical("Supabase URL or Key not configured in settings.")
        raise SystemExit("Supabase configuration missing.")

    key_snippet = f"{key[:5]}...{key[-5:]}"
    logger.debug(f"Initializing Async Supabase client for {url} (key {key_snippet})")
    client: AsyncClient = await create_async_client(url, key)
    logger.success("Async Supabase client initialized successfully.")
    return client


def _to_row(mapping: Dict[str, Any]) -> Dict[str, Any]:
    """Flat columns for querying plus the full document as jsonb."""
    return {
        "mapping_id": mapping["mapping_id"],
        "primary_name": mapping.get("primary_name"),
        "country": mapping.get("country"),
        "confidence": mapping.get("confidence"),
        "verified": mapping.get("verified", False),
        "retired": mapping.get("retired", False),
        "document": mapping,
    }


class SupabaseBackend(MappingBackend):
    """Stores each mapping as one row of a Supabase table keyed by mapping_id.

    Rows are only ever upserted: mappings are soft-deleted, so the table
    never needs deletes.
    """

    def __init__(self, client: AsyncClient, table_name: str = "team_mappings"):
        self.client = client
        self.table_name = table_name

    async def load(self) -> List[Dict[str, Any]]:
        rows: List[Dict[str, Any]] = []
        start = 0
        while True:
            end = start + LOAD_PAGE_SIZE - 1
            try:
                response: APIResponse = await (
                    self.client.table(self.table_name)
                    .select("document")
                    .order("mapping_id")
                    .range(start, end)
                    .execute()
                )
            except APIError as e:
                logger.error(f"Supabase API error loading {self.table_name} rows {start}-{end}: {e.message}")
                raise

            page = response.data or []
            rows.extend(page)
            if len(page) < LOAD_PAGE_SIZE:
                break
            start += LOAD_PAGE_SIZE

        logger.info(f"Loaded {len(rows)} mappings from Supabase table {self.table_name}")
        return [row["document"] for row in rows if row.get("document")]

    async def save(self, mappings: List[Dict[str, Any]]) -> None:
        if not mappings:
            logger.debug(f"No mappings to upsert to {self.table_name}. Skipping.")
            return

        rows = [_to_row(m) for m in mappings]
        for start in range(0, len(rows), UPSERT_CHUNK_SIZE):
            chunk = rows[start : start + UPSERT_CHUNK_SIZE]
            try:
                await (
                    self.client.table(self.table_name)
                    .upsert(chunk, on_conflict="mapping_id")
                    .execute()
                )
            except APIError as e:
                logger.error(f"Error during async upsert to {self.table_name}: {e.message}")
                logger.debug(f"Full APIError details: {e}")
                raise

        logger.success(f"Successfully upserted {len(rows)} mappings to {self.table_name}.")
