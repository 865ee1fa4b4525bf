"""Client-side cache of the conversation list."""

import logging
from typing import List, Optional

from chat_core.domain.conversation import ConversationStore
from chat_core.domain.models import ConversationSummary
from chat_core.infrastructure.logging.logger import logger


class ConversationListCache:
    """Ordered conversation summaries mirrored from the store.

    ``refresh`` is stamped with its own generation so that a slow refresh
    resolving after a newer one cannot overwrite fresher data.
    """

    def __init__(self, store: ConversationStore):
        self._store = store
        self._items: List[ConversationSummary] = []
        self._generation = 0
        self.refresh_count = 0

    @property
    def items(self) -> List[ConversationSummary]:
        return list(self._items)

    def get(self, conversation_id: Optional[str]) -> Optional[ConversationSummary]:
        for item in self._items:
            if item.id == conversation_id:
                return item
        return None

    async def refresh(self) -> List[ConversationSummary]:
        self._generation += 1
        generation = self._generation
        self.refresh_count += 1
        items = await self._store.list()
        if generation != self._generation:
            logger.log(logging.DEBUG, "Dropped stale conversation list", extra={"extra": {"generation": generation}})
            return self.items
        self._items = list(items)
        return self.items

    def remove(self, conversation_id: str) -> None:
        self._items = [c for c in self._items if c.id != conversation_id]

    def rename(self, conversation_id: str, title: str) -> None:
        item = self.get(conversation_id)
        if item is not None:
            item.title = title
