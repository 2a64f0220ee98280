import asyncio

from roomsync.broadcaster import EVENT_HANDLERS, ORIGIN, SyncContext
from roomsync.models import CodeChangePayload, RoomEvent, VerifiedIdentity
from roomsync.presence import PresenceTracker
from roomsync.sandbox import StubSandbox
from roomsync.state import RoomStateStore
from roomsync.transport import Connection, MemoryTransport


class BrokenHistory:
    async def load_history(self, room_id):
        return []

    async def append_durable(self, room_id, message):
        raise RuntimeError("history backend is down")


class ExplodingSandbox:
    async def execute(self, source_code, language_id, stdin):
        raise RuntimeError("sandbox crashed")


async def room_of(connect, *identities, room_id="r1"):
    peers = []
    for identity in identities:
        peer = await connect(identity)
        await peer.join(room_id)
        peers.append(peer)
    for peer in peers:
        await peer.settle()
    return peers


async def test_code_then_chat_reaches_late_joiner(manager, connect):
    a = await connect("a")
    await a.join("r1")
    await a.send("code_change", roomId="r1", text="print(1)")

    b = await connect("b")
    await b.join("r1")
    assert b.last("room_joined")["code"]["text"] == "print(1)"

    await b.send("chat_send", roomId="r1", text="hi")
    await a.settle()

    received = a.events("chat_message")
    assert len(received) == 1
    assert received[0]["text"] == "hi"
    assert received[0]["authorIdentity"] == "b"
    assert b.events("chat_message") == []
    assert len(manager.store.snapshot("r1").chat_log) == 1


async def test_sender_never_gets_its_own_change(connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("code_change", roomId="r1", text="x = 1")
    await alice.send("whiteboard_join", roomId="r1")
    await bob.settle()

    assert alice.events("code_change") == []
    change = bob.last("code_change")
    assert change["text"] == "x = 1"
    assert change["from"] == {"identity": "alice", "connectionId": alice.connection_id}


async def test_two_tabs_of_one_identity_still_see_each_other(connect):
    tab1, tab2 = await room_of(connect, "alice", "alice")

    await tab1.send("code_change", roomId="r1", text="from tab 1")
    await tab2.settle()

    assert tab2.last("code_change")["text"] == "from tab 1"


async def test_changes_arrive_in_server_order(connect):
    alice, bob, carol = await room_of(connect, "alice", "bob", "carol")

    for n in range(20):
        sender = alice if n % 2 == 0 else bob
        await sender.send("code_change", roomId="r1", text=str(n))
    await carol.settle()
    await alice.settle()

    assert [e["text"] for e in carol.events("code_change")] == [str(n) for n in range(20)]
    assert [e["text"] for e in alice.events("code_change")] == [str(n) for n in range(1, 20, 2)]


async def test_language_and_stdin_merge_into_code_state(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("code_change", roomId="r1", text="print(input())")
    await alice.send("language_change", roomId="r1", languageId=62)
    await alice.send("stdin_change", roomId="r1", stdin="42")
    await bob.settle()

    language = bob.last("language_change")
    assert language["languageId"] == 62
    assert "text" not in language
    assert bob.last("stdin_change")["stdin"] == "42"

    code = manager.store.code("r1")
    assert (code.text, code.language_id, code.stdin) == ("print(input())", 62, "42")


async def test_events_for_another_room_are_rejected(connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("code_change", roomId="r2", text="sneaky")

    error = alice.last("error")
    assert error["code"] == "not_in_room"
    assert error["event"] == "code_change"


async def test_invalid_payloads_are_reported_to_sender_only(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("chat_send", roomId="r1", text="   ")
    assert alice.last("error")["code"] == "invalid_event"
    assert alice.last("error")["event"] == "chat_send"

    await alice.send("code_change", text="no room")
    assert alice.last("error")["code"] == "invalid_event"

    await alice.send("dance", roomId="r1")
    assert "dance" in alice.last("error")["message"]

    await bob.settle()
    assert bob.events("error") == []
    assert manager.store.snapshot("r1").chat_log == []


async def test_typing_updates_presence_and_peers(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("typing", roomId="r1", isTyping=True)
    await bob.settle()

    typing = bob.last("typing")
    assert typing["connectionId"] == alice.connection_id
    assert typing["isTyping"] is True
    assert alice.events("typing") == []
    assert manager.presence.get("r1", alice.connection_id).is_typing


async def test_chat_author_comes_from_the_connection(connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("chat_send", roomId="r1", text="it was me", authorIdentity="mallory")
    await bob.settle()

    assert bob.last("chat_message")["authorIdentity"] == "alice"


async def test_chat_is_written_to_durable_history(manager, history, connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("chat_send", roomId="r1", text="keep me")
    await manager.broadcaster.wait_idle()

    stored = await history.load_history("r1")
    assert [m.text for m in stored] == ["keep me"]
    assert stored[0].id == "1"


async def test_failed_durable_write_does_not_block_fan_out(make_manager, connect, caplog):
    manager = make_manager(history=BrokenHistory())
    alice = await connect("alice", via=manager)
    bob = await connect("bob", via=manager)
    await alice.join("r1")
    await bob.join("r1")

    await alice.send("chat_send", roomId="r1", text="hello")
    await bob.settle()
    await manager.broadcaster.wait_idle()

    assert bob.last("chat_message")["text"] == "hello"
    assert "Background task failed" in caplog.text


async def test_whiteboard_burst_converges_on_last_payload(manager, connect, settings):
    alice, bob = await room_of(connect, "alice", "bob")

    for n in range(30):
        await alice.send("whiteboard_change", roomId="r1", elements=[{"id": n}], appState={"n": n})
    await asyncio.sleep(settings.whiteboard_window * 4)
    await bob.settle()

    updates = bob.events("whiteboard_update")
    assert 1 <= len(updates) < 30
    assert updates[-1]["elements"] == [{"id": 29}]
    assert updates[-1]["appState"] == {"n": 29}
    assert alice.events("whiteboard_update") == []
    assert manager.store.whiteboard("r1").elements == [{"id": 29}]


async def test_whiteboard_join_replies_to_requester_only(connect, settings):
    alice, bob = await room_of(connect, "alice", "bob")
    await alice.send("whiteboard_change", roomId="r1", elements=[{"id": "rect"}])
    await asyncio.sleep(settings.whiteboard_window * 3)

    await bob.send("whiteboard_join", roomId="r1")
    await alice.settle()

    assert bob.last("whiteboard_history")["elements"] == [{"id": "rect"}]
    assert alice.events("whiteboard_history") == []


async def test_pending_whiteboard_is_flushed_before_leaving(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")

    await alice.send("whiteboard_change", roomId="r1", elements=[{"id": "last"}])
    await alice.send("leave_room", roomId="r1")
    await bob.settle()

    types = bob.types()
    assert types.index("whiteboard_update") < len(types) - 1
    assert types[-1] == "presence_update"
    assert bob.last("whiteboard_update")["elements"] == [{"id": "last"}]
    assert manager.store.whiteboard("r1").elements == [{"id": "last"}]


async def test_execution_result_is_shared_with_the_room(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")
    await alice.send("code_change", roomId="r1", text="print(1)")
    await alice.send("stdin_change", roomId="r1", stdin="7")

    await alice.send("execute_code", roomId="r1")
    await manager.broadcaster.wait_idle()
    await alice.settle()
    await bob.settle()

    for peer in (alice, bob):
        result = peer.last("executionResult")
        assert "Code length: 8" in result["stdout"]
        assert "Input: 7" in result["stdout"]
        assert result["requestedBy"]["identity"] == "alice"


async def test_explicit_source_overrides_room_code(manager, connect):
    (alice,) = await room_of(connect, "alice")

    await alice.send("execute_code", roomId="r1", sourceCode="abc", languageId=50)
    await manager.broadcaster.wait_idle()
    await alice.settle()

    stdout = alice.last("executionResult")["stdout"]
    assert "Language: 50" in stdout
    assert "Code length: 3" in stdout


async def test_sandbox_failure_is_reported_as_stderr(make_manager, connect):
    manager = make_manager(sandbox=ExplodingSandbox())
    alice = await connect("alice", via=manager)
    await alice.join("r1")

    await alice.send("execute_code", roomId="r1")
    await manager.broadcaster.wait_idle()
    await alice.settle()

    assert alice.last("executionResult")["stderr"] == "Execution failed: sandbox crashed"


async def test_execute_requires_membership(connect):
    alice = await connect("alice")
    await alice.send("execute_code", roomId="r1")

    assert alice.last("error")["code"] == "not_in_room"


async def test_broken_peer_is_detached(manager, connect):
    alice, bob = await room_of(connect, "alice", "bob")
    bob.transport.fail = True

    await alice.send("chat_send", roomId="r1", text="anyone?")
    await bob.settle()
    await asyncio.sleep(0.01)
    await alice.settle()

    assert manager.presence.count("r1") == 1
    assert alice.last("presence_update")["count"] == 1
    assert manager.get_connection_count() == 1


async def test_handlers_are_plain_functions():
    ctx = SyncContext(store=RoomStateStore(), presence=PresenceTracker())
    connection = Connection(MemoryTransport(), VerifiedIdentity(identity="alice", display_name="Alice"))

    model, handler = EVENT_HANDLERS["code_change"]
    assert model is CodeChangePayload
    delta = handler(ctx, connection, CodeChangePayload(room_id="r1", text="y = 2"))

    assert delta.event == "code_change"
    assert delta.data["text"] == "y = 2"
    assert ctx.store.code("r1").text == "y = 2"

    _, whiteboard_join = EVENT_HANDLERS["whiteboard_join"]
    assert whiteboard_join(ctx, connection, RoomEvent(room_id="r1")).target == ORIGIN


async def test_stub_sandbox_is_the_default(manager):
    assert isinstance(manager.broadcaster.sandbox, StubSandbox)
