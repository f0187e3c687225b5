"""
In-memory lead source directory (SOURCE_ID -> display name).

The only state shared between requests. It is rebuilt wholesale from
crm.status.list on sync and swapped by reference, so readers always see a
complete snapshot.
"""

import asyncio
import logging
from datetime import datetime, timezone
from types import MappingProxyType
from typing import Dict, List, Mapping, Optional

from bitrix_crm import BitrixAPIError
from funnel.entities import NO_SOURCE
from funnel.sales_linker import UNKNOWN_SOURCE

logger = logging.getLogger(__name__)


class SourceCache:

    def __init__(self):
        self._names: Mapping[str, str] = MappingProxyType({})
        self.last_sync: Optional[datetime] = None
        self._sync_lock = asyncio.Lock()

    @property
    def is_loaded(self) -> bool:
        return self.last_sync is not None

    def name_for(self, code: Optional[str]) -> str:
        if not code or code == NO_SOURCE:
            return self._names.get(NO_SOURCE, "No source")
        if code == UNKNOWN_SOURCE:
            return "Unknown source"
        return self._names.get(code) or f"Source {code}"

    def snapshot(self) -> List[Dict[str, str]]:
        """Sources sorted by name, as [{code, name}]."""
        return sorted(
            ({"code": code, "name": name} for code, name in self._names.items()),
            key=lambda s: s["name"],
        )

    def replace(self, sources: List[Dict[str, str]]) -> Dict[str, int]:
        """Swap in a new mapping; report how it differs from the previous one."""
        previous = self._names
        names = {str(s["code"]): s.get("name") or f"Source {s['code']}" for s in sources if s.get("code")}

        synced = sum(1 for code in names if code not in previous)
        updated = len(names) - synced

        self._names = MappingProxyType(names)
        self.last_sync = datetime.now(timezone.utc)
        return {"synced": synced, "updated": updated, "total": len(names)}

    async def sync(self, client) -> Dict[str, int]:
        """Reload every source from the portal."""
        async with self._sync_lock:
            sources = await client.fetch_sources()
            result = self.replace(sources)
        logger.info(f"Source sync complete: {result['synced']} new, {result['updated']} updated")
        return result

    async def ensure_loaded(self, client) -> None:
        """
        Sync once on first use; later requests read the cached snapshot.
        Non-fatal: on failure names fall back to "Source <code>".
        """
        if self.is_loaded:
            return
        try:
            await self.sync(client)
        except BitrixAPIError as e:
            logger.warning(f"Source sync failed, using fallback source names: {e}")
