import asyncio

import pytest

from chat_core.domain.events import BoundIdentity, Done, Increment
from chat_core.domain.exceptions import Cancelled, ProtocolError, TransportError
from chat_core.domain.models import Message, StreamRequest, UNBOUND
from chat_core.engine.cancellation import CancellationRegistry
from chat_core.engine.message_log import MessageLog
from chat_core.engine.stream_session import StreamSession

from fakes import ScriptedOpener


def build(script, conversation_id=UNBOUND, on_bound=None):
    registry = CancellationRegistry()
    handle = registry.new_handle()
    log = MessageLog()
    log.append_pair(Message.user(conversation_id, "hello"), Message.placeholder(conversation_id))
    session = StreamSession(
        request=StreamRequest(conversation_id=conversation_id, content="hello"),
        handle=handle,
        log=log,
        opener=ScriptedOpener(script),
        is_current=registry.is_current,
        on_bound=on_bound,
        error_prefix="Error: ",
    )
    return session, log, registry


@pytest.mark.parametrize(
    "pieces",
    [
        ["Hel", "lo"],
        ["a", "", "b", "c"],
        ["你好", "，", "世界"],
        [],
    ],
)
def test_increments_concatenate_in_order(pieces):
    session, log, _ = build([Increment(p) for p in pieces] + [Done()])
    outcome = asyncio.run(session.run())
    assert outcome == "completed"
    assert log.last.content == "".join(pieces)
    assert session.text == "".join(pieces)
    assert log.last.finalized is True


def test_raw_payloads_are_parsed_at_boundary():
    session, log, _ = build([{"content": "a"}, {"type": "increment", "text": "b"}, {"done": True}])
    assert asyncio.run(session.run()) == "completed"
    assert log.last.content == "ab"


def test_exhausted_stream_counts_as_completed():
    session, log, _ = build([Increment("x")])
    assert asyncio.run(session.run()) == "completed"
    assert log.last.finalized is True


def test_bound_identity_signalled_once():
    bound = []
    session, log, _ = build(
        [{"chat_id": "c-42", "content": "Hi"}, BoundIdentity("c-42"), BoundIdentity("c-99"), Increment("!"), Done()],
        on_bound=bound.append,
    )
    asyncio.run(session.run())
    assert bound == ["c-42"]
    assert session.bound_id == "c-42"
    assert log.last.content == "Hi!"


def test_bound_identity_ignored_for_bound_target():
    bound = []
    session, _, _ = build([BoundIdentity("c-99"), Increment("x"), Done()], conversation_id="c-1", on_bound=bound.append)
    asyncio.run(session.run())
    assert bound == []
    assert session.bound_id is None


def test_cancelled_before_first_increment_writes_nothing():
    session, log, registry = build([Increment("x"), Done()])
    registry.current.cancel()
    assert asyncio.run(session.run()) == "cancelled"
    assert log.last.content == ""
    assert log.last.finalized is False


def test_stale_generation_drops_remaining_writes():
    registry_box = {}

    def supersede_elsewhere():
        registry_box["registry"].bump()

    session, log, registry = build([Increment("a"), supersede_elsewhere, Increment("b"), Done()])
    registry_box["registry"] = registry
    assert asyncio.run(session.run()) == "cancelled"
    assert log.last.content == "a"
    assert log.last.finalized is False


def test_transport_error_appends_error_message():
    session, log, _ = build([
        Increment("a"),
        Increment("b"),
        Increment("c"),
        TransportError(code="NETWORK_ERROR", message="connection reset"),
    ])
    assert asyncio.run(session.run()) == "failed"
    partial, notice = log.snapshot()[-2:]
    assert partial.content == "abc"
    assert partial.finalized is True
    assert notice.role == "assistant"
    assert notice.content == "Error: connection reset"
    assert notice.finalized is True
    assert notice.meta["error"] is True
    assert session.error == "connection reset"


def test_malformed_event_is_protocol_failure():
    session, log, _ = build([Increment("a"), {"unexpected": 1}])
    assert asyncio.run(session.run()) == "failed"
    assert log.last.meta["code"] == "BAD_EVENT"


def test_opener_protocol_error_is_failure():
    session, log, _ = build([ProtocolError(code="BAD_JSON", message="malformed event")])
    assert asyncio.run(session.run()) == "failed"
    assert log.last.content == "Error: malformed event"


def test_server_error_event_is_failure():
    session, log, _ = build([{"error": "model overloaded"}])
    assert asyncio.run(session.run()) == "failed"
    assert [m.content for m in log][-2:] == ["", "Error: model overloaded"]


def test_error_after_cancel_stays_silent():
    registry_box = {}

    def cancel():
        registry_box["registry"].current.cancel()

    session, log, registry = build([Increment("a"), cancel, TransportError(code="NETWORK_ERROR", message="reset")])
    registry_box["registry"] = registry
    assert asyncio.run(session.run()) == "cancelled"
    assert len(log) == 2
    assert log.last.content == "a"


def test_opener_cancelled_signal_ends_silently():
    session, log, _ = build([Increment("a"), Cancelled(code="CANCELLED", message="stream cancelled")])
    assert asyncio.run(session.run()) == "cancelled"
    assert len(log) == 2
    assert log.last.content == "a"
    assert log.last.finalized is False
    assert session.error is None

def test_run_is_single_shot():
    session, log, _ = build([Increment("a"), Done()])
    assert asyncio.run(session.run()) == "completed"
    assert asyncio.run(session.run()) == "completed"
    assert log.last.content == "a"
