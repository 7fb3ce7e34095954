"""
Interfaces daybook consumes but does not own.

DataGateway is the owner-scoped store behind the three item kinds.
EnrichmentService is the opaque transcription/extraction pipeline; its only
observable effect is that a recording eventually flips to is_processed=True
(or never does).
"""
from __future__ import annotations

from datetime import datetime
from enum import Enum
from typing import Any, Optional, Protocol

from .models import Item, ItemKind


class DateAnchor(str, Enum):
    """Which timestamp a time-windowed list is filtered and sorted on."""
    CREATED = "created"
    DUE = "due"          # tasks only: due_date, falling back to created_at


class DataGateway(Protocol):
    async def list_items(
        self,
        kind: ItemKind,
        owner_id: str,
        *,
        since: Optional[datetime] = None,
        until: Optional[datetime] = None,
        anchor: DateAnchor = DateAnchor.CREATED,
        include_archived: bool = False,
        newest_first: bool = True,
        limit: Optional[int] = None,
    ) -> list[Item]:
        """Owner-scoped, time-windowed [since, until) list. Raises TransientFetchError."""
        ...

    async def get_item(self, kind: ItemKind, item_id: str) -> Optional[Item]:
        """Single row by id, or None. Raises TransientFetchError."""
        ...

    async def list_children(self, kind: ItemKind, recording_id: str) -> list[Item]:
        """Rows derived from a recording, oldest first, archived notes excluded."""
        ...

    async def insert_item(self, item: Item) -> Item:
        """Raises GatewayWriteError."""
        ...

    async def update_item(self, kind: ItemKind, item_id: str, changes: dict[str, Any]) -> Item:
        """Partial update. Raises StaleReference or GatewayWriteError."""
        ...

    async def delete_item(self, kind: ItemKind, item_id: str) -> None:
        """Hard delete. Raises StaleReference or GatewayWriteError."""
        ...


class EnrichmentService(Protocol):
    async def request_reprocess(self, recording_id: str, audio_url: str) -> None:
        """Ask the pipeline to redo transcription/extraction. Raises EnrichmentError."""
        ...
