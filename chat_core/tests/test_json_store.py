import asyncio
import tempfile
from pathlib import Path
from datetime import datetime, timedelta, timezone

import pytest

from chat_core.infrastructure.storage.json_store import JsonConversationStore
from chat_core.domain.exceptions import NotFound
from chat_core.domain.models import Message


def test_json_store_create_and_messages():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("First chat")
        now = datetime.now(timezone.utc)
        store.add_message(Message(id="m2", conversation_id=conv.id, role="assistant", content="hello", created_at=now + timedelta(seconds=1)))
        store.add_message(Message(id="m1", conversation_id=conv.id, role="user", content="hi", created_at=now))
        msgs = asyncio.run(store.get_history(conv.id))
        assert [m.id for m in msgs] == ["m1", "m2"]
        listed = asyncio.run(store.list())
        assert listed[0].id == conv.id
        assert listed[0].message_count == 2
        assert listed[0].title == "First chat"


def test_json_store_rename():
    with tempfile.TemporaryDirectory() as d:
        store = JsonConversationStore(root=Path(d) / ".storage")
        conv = store.create_conversation("temp")
        asyncio.run(store.rename(conv.id, "Renamed"))
        assert asyncio.run(store.list())[0].title == "Renamed"


def test_json_store_delete_conversation():
    with tempfile.TemporaryDirectory() as d:
        root = Path(d) / ".storage"
        store = JsonConversationStore(root=root)
        conv = store.create_conversation("temp")
        conv_dir = root / "conversations" / conv.id
        assert conv_dir.exists()
        asyncio.run(store.delete(conv.id))
        assert not conv_dir.exists()
        assert conv.id not in {c.id for c in asyncio.run(store.list())}
        with pytest.raises(NotFound):
            asyncio.run(store.delete(conv.id))
        with pytest.raises(NotFound):
            asyncio.run(store.get_history(conv.id))
