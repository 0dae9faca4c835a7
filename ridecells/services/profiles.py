"""Display-name lookup for riders and drivers (profiles live outside the core)."""

from __future__ import annotations

import logging
from abc import ABC, abstractmethod
from typing import Optional

from ridecells.infrastructure.documents import DocumentStore

logger = logging.getLogger(__name__)


class ProfileLookup(ABC):
    @abstractmethod
    async def display_name(self, uid: str) -> Optional[str]:
        """Name to show for *uid*, or None if unknown."""

    async def resolve(self, uid: str, default: str) -> str:
        """Best effort: any failure or blank name falls back to *default*."""
        try:
            name = await self.display_name(uid)
        except Exception as exc:
            logger.warning("Could not fetch display name for %s: %s", uid, exc)
            return default
        if not name or not name.strip():
            return default
        return name


class StoreProfileLookup(ProfileLookup):
    """Reads ``users/{uid}.name`` from the document store."""

    def __init__(self, store: DocumentStore):
        self.store = store

    async def display_name(self, uid: str) -> Optional[str]:
        document = await self.store.get(f"users/{uid}")
        if document is None:
            return None
        name = document.data.get("name")
        return name if isinstance(name, str) else None
