import asyncio

from chat_core.engine.conversation_list import ConversationListCache

from fakes import FakeStore, summary, tick


class GatedListStore(FakeStore):
    """list() 依次等待各自的闸门，返回调用时刻的快照。"""

    def __init__(self):
        super().__init__()
        self.gates = []

    async def list(self):
        self.list_calls += 1
        snapshot = list(self.conversations)
        gate = asyncio.Event()
        self.gates.append(gate)
        await gate.wait()
        return snapshot


def test_older_refresh_resolving_last_is_dropped():
    async def scenario():
        store = GatedListStore()
        cache = ConversationListCache(store)
        store.conversations = [summary("c-old", title="Old")]
        first = asyncio.create_task(cache.refresh())
        await tick()
        store.conversations = [summary("c-new", title="New"), summary("c-old", title="Old")]
        second = asyncio.create_task(cache.refresh())
        await tick()
        store.gates[1].set()
        newer = await second
        store.gates[0].set()
        older = await first
        return cache, newer, older

    cache, newer, older = asyncio.run(scenario())
    assert [c.id for c in newer] == ["c-new", "c-old"]
    assert [c.id for c in older] == ["c-new", "c-old"]
    assert [c.id for c in cache.items] == ["c-new", "c-old"]
    assert cache.refresh_count == 2


def test_remove_and_rename_update_cached_items():
    async def scenario():
        cache = ConversationListCache(FakeStore(conversations=[summary("c-1", title="One"), summary("c-2")]))
        await cache.refresh()
        return cache

    cache = asyncio.run(scenario())
    cache.rename("c-2", "Two")
    cache.remove("c-1")
    assert [(c.id, c.title) for c in cache.items] == [("c-2", "Two")]
    assert cache.get("c-1") is None
