"""Message routing, queueing, channels, and collaborations."""

from __future__ import annotations

import asyncio
from datetime import datetime, timedelta, timezone

import pytest

from conftest import make_agent
from workforce.engine.errors import (
    ChannelNotFoundError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from workforce.engine.message_router import MessageRouter
from workforce.engine.models import (
    AgentStatus,
    ChannelKind,
    CollaborationStatus,
    DeliveryState,
    Message,
    MessageType,
    Priority,
)


@pytest.fixture
def router(directory, supervisor, bus) -> MessageRouter:
    directory.register(make_agent("alice", ["python"], department="Engineering"))
    directory.register(make_agent("bob", ["python", "api"], department="Engineering"))
    directory.register(make_agent("carol", ["design"], department="Design", workload=60))
    return MessageRouter(directory, supervisor, event_bus=bus)


def _received(backend, index=-1):
    return [w["message"] for w in backend.handles[index].written]


# ── Delivery ──


@pytest.mark.asyncio
async def test_live_recipient_gets_message_immediately(router, supervisor, backend):
    await supervisor.ensure_running("bob")

    message = Message(sender_id="alice", to="bob", content={"text": "hi"})
    await router.send(message)

    assert message.deliveries == {"bob": DeliveryState.DELIVERED}
    assert message.delivery_state == DeliveryState.DELIVERED
    written = backend.last.written
    assert written[0]["type"] == "agent-message"
    assert written[0]["message"]["from"] == "alice"
    assert written[0]["message"]["content"] == {"text": "hi"}
    assert router.counters.delivered == 1


@pytest.mark.asyncio
async def test_queue_flushes_in_send_order(router, supervisor, backend, bus):
    sent = []
    for text in ("A", "B", "C"):
        sent.append(await router.send(Message(sender_id="alice", to="bob", content=text)))

    assert [m.content for m in router.pending_for("bob")] == ["A", "B", "C"]
    queued = [e for e in bus.recent() if e["event"] == "message-queued"]
    assert [e["queue_length"] for e in queued] == [1, 2, 3]

    await supervisor.ensure_running("bob")
    delivered = await router.on_agent_became_active("bob")

    assert delivered == 3
    assert [m["content"] for m in _received(backend)] == ["A", "B", "C"]
    assert [m["id"] for m in _received(backend)] == sent
    assert router.pending_for("bob") == []
    assert router.counters.flushed == 3


@pytest.mark.asyncio
async def test_offline_agent_with_live_process_is_queued(router, directory, supervisor):
    await supervisor.ensure_running("bob")
    directory.update_status("bob", AgentStatus.OFFLINE)

    message = Message(sender_id="alice", to="bob", content="later")
    await router.send(message)

    assert message.deliveries["bob"] == DeliveryState.QUEUED
    assert not router.is_live("bob")


@pytest.mark.asyncio
async def test_broadcast_reaches_every_agent_and_queues_offline(router, supervisor, backend):
    await supervisor.ensure_running("alice")
    await supervisor.ensure_running("bob")

    message = Message(sender_id="alice", to="broadcast", content="standup")
    await router.send(message)

    assert message.deliveries == {
        "alice": DeliveryState.DELIVERED,
        "bob": DeliveryState.DELIVERED,
        "carol": DeliveryState.QUEUED,
    }
    assert message.delivery_state == DeliveryState.QUEUED
    assert len(backend.handles[0].written) == 1
    metrics = router.get_metrics()
    assert metrics["queued_messages"] == 1
    assert metrics["broadcast_messages"] == 1
    assert metrics["direct_messages"] == 0


@pytest.mark.asyncio
async def test_slow_recipient_does_not_let_later_send_overtake(router, supervisor, backend):
    await supervisor.ensure_running("alice")
    await supervisor.ensure_running("bob")
    backend.handles[0].write_delay = 0.02

    first = Message(sender_id="carol", to=["alice", "bob"], content="A")
    second = Message(sender_id="carol", to="bob", content="B")
    await asyncio.gather(router.send(first), router.send(second))

    assert [m["content"] for m in _received(backend, 1)] == ["A", "B"]
    assert [m["content"] for m in _received(backend, 0)] == ["A"]
    assert first.delivery_state == DeliveryState.DELIVERED
    assert router.counters.queued == 0


@pytest.mark.asyncio
async def test_list_recipients_are_deduplicated(router):
    message = Message(sender_id="alice", to=["bob", "carol", "bob"])
    await router.send(message)
    assert [m.message_id for m in router.pending_for("bob")] == [message.message_id]


@pytest.mark.asyncio
async def test_unknown_recipient_rejects_whole_message(router):
    message = Message(sender_id="alice", to=["bob", "ghost"])

    with pytest.raises(NotFoundError):
        await router.send(message)

    assert router.pending_for("bob") == []
    assert router.get_metrics()["total_messages"] == 0


@pytest.mark.asyncio
@pytest.mark.parametrize("to,error", [
    ("ghost", NotFoundError),
    ("channel:nowhere", ChannelNotFoundError),
    ([], ValidationError),
    ("", ValidationError),
    (42, ValidationError),
])
async def test_bad_addresses(router, to, error):
    with pytest.raises(error):
        await router.send(Message(sender_id="alice", to=to))


@pytest.mark.asyncio
async def test_failed_write_queues_message(router, supervisor, backend):
    await supervisor.ensure_running("bob")
    backend.last.fail_writes = True

    message = Message(sender_id="alice", to="bob", content="x")
    await router.send(message)

    assert message.deliveries["bob"] == DeliveryState.QUEUED
    assert router.counters.write_failures == 1


@pytest.mark.asyncio
async def test_flush_stops_at_first_failed_write(router, supervisor, backend):
    for text in ("A", "B"):
        await router.send(Message(sender_id="alice", to="bob", content=text))
    await supervisor.ensure_running("bob")
    backend.last.fail_writes = True

    assert await router.on_agent_became_active("bob") == 0
    assert len(router.pending_for("bob")) == 2

    backend.last.fail_writes = False
    assert await router.on_agent_became_active("bob") == 2
    assert [m["content"] for m in _received(backend)] == ["A", "B"]


@pytest.mark.asyncio
async def test_acknowledge_removes_queued_messages(router):
    first = Message(sender_id="alice", to="carol", content="1")
    second = Message(sender_id="alice", to="carol", content="2")
    await router.send(first)
    await router.send(second)

    removed = await router.acknowledge("carol", [first.message_id, "unknown"])

    assert removed == 1
    assert first.deliveries["carol"] == DeliveryState.DELIVERED
    assert router.pending_for("carol") == [second]
    assert await router.acknowledge("nobody", [first.message_id]) == 0


# ── Channels ──


def test_department_and_broadcast_channels_are_derived(router):
    engineering = router.get_channel("dept-engineering")
    assert engineering.kind == ChannelKind.DEPARTMENT
    assert engineering.members == ["alice", "bob"]
    assert router.get_channel("broadcast").members == ["alice", "bob", "carol"]
    assert [c.channel_id for c in router.list_channels("carol")] == [
        "dept-design", "broadcast",
    ]


@pytest.mark.asyncio
async def test_channel_message_reaches_members_only(router):
    message_id = await router.send_to_channel(
        "dept-engineering", "alice", "deploy at 5", topic="release",
    )

    message = router.get_message(message_id)
    assert set(message.deliveries) == {"alice", "bob"}
    assert router.get_metrics()["direct_messages"] == 0


def test_direct_channel_is_idempotent(router):
    first = router.create_channel("direct", ["bob", "alice"])
    second = router.create_channel(ChannelKind.DIRECT, ["alice", "bob"])

    assert first is second
    assert first.channel_id == "direct-alice-bob"
    assert first.members == ["alice", "bob"]


def test_create_channel_validation(router):
    with pytest.raises(ValidationError):
        router.create_channel("direct", ["alice"])
    with pytest.raises(ValidationError):
        router.create_channel("department", ["alice"])
    with pytest.raises(ValidationError):
        router.create_channel("guild", ["alice"])
    with pytest.raises(NotFoundError):
        router.create_channel("team", ["alice", "ghost"])


def test_team_channel_gets_generated_id(router):
    team = router.create_channel("team", ["alice", "carol"], name="Launch")
    assert team.channel_id.startswith("team-")
    assert team.name == "Launch"
    assert router.get_channel(team.channel_id) is team


def test_unknown_channel_raises(router):
    with pytest.raises(ChannelNotFoundError) as exc_info:
        router.get_channel("nope")
    assert exc_info.value.http_status == 404


# ── Experts and collaborations ──


def test_find_experts_ranks_by_skill_and_load(router):
    experts = router.find_experts("API review", ["python", "api"])
    # carol has no matching skill but still earns the availability bonus.
    assert [a.agent_id for a in experts] == ["bob", "alice", "carol"]
    assert router.find_experts("anything", ["design"], limit=1)[0].agent_id == "carol"


@pytest.mark.asyncio
async def test_collaboration_sends_request_to_participants(router, supervisor, backend, bus):
    await supervisor.ensure_running("bob")

    collab_id = await router.create_collaboration(
        "alice", ["bob", "alice", "carol"], "Schema design", "Agree on tables",
    )

    collab = router.get_collaboration(collab_id)
    assert collab.participants == ["alice", "bob", "carol"]
    assert collab.status == CollaborationStatus.PENDING
    request = _received(backend)[0]
    assert request["type"] == MessageType.REQUEST.value
    assert request["priority"] == Priority.HIGH.value
    assert request["topic"] == "Collaboration: Schema design"
    assert request["content"]["collaboration_id"] == collab_id
    assert len(router.pending_for("carol")) == 1
    created = [e for e in bus.recent() if e["event"] == "collaboration-created"]
    assert created[-1]["participants"] == ["alice", "bob", "carol"]


@pytest.mark.asyncio
async def test_collaboration_validation(router):
    with pytest.raises(ValidationError):
        await router.create_collaboration("alice", ["bob"], "  ")
    with pytest.raises(NotFoundError):
        await router.create_collaboration("alice", ["ghost"], "topic")
    with pytest.raises(NotFoundError):
        router.get_collaboration("missing")


@pytest.mark.asyncio
async def test_collaboration_status_transitions(router):
    collab_id = await router.create_collaboration("alice", ["bob"], "Pairing")

    router.update_collaboration_status(collab_id, "active")
    assert router.get_metrics()["active_collaborations"] == 1
    assert router.get_collaborations("bob", active_only=True)[0].collaboration_id == collab_id

    router.update_collaboration_status(collab_id, CollaborationStatus.COMPLETED)
    assert router.get_metrics()["active_collaborations"] == 0

    with pytest.raises(InvalidStateError):
        router.update_collaboration_status(collab_id, "active")
    with pytest.raises(ValidationError):
        router.update_collaboration_status(collab_id, "paused")


# ── History ──


@pytest.mark.asyncio
async def test_history_and_metrics(router, supervisor):
    await supervisor.ensure_running("bob")
    await router.send(Message(sender_id="alice", to="bob", priority=Priority.URGENT))
    await router.send(Message(sender_id="bob", to="alice"))

    assert len(router.messages_for("alice")) == 2
    assert len(router.messages_for("bob", limit=1)) == 1
    metrics = router.get_metrics()
    assert metrics["total_messages"] == 2
    assert metrics["direct_messages"] == 2
    assert metrics["messages_by_priority"] == {
        "urgent": 1, "high": 0, "medium": 1, "low": 0,
    }
    assert metrics["messages_by_sender"] == {"alice": 1, "bob": 1}


@pytest.mark.asyncio
async def test_cleanup_keeps_queued_messages(router, supervisor):
    await supervisor.ensure_running("bob")
    delivered = Message(sender_id="alice", to="bob")
    queued = Message(sender_id="alice", to="carol")
    await router.send(delivered)
    await router.send(queued)

    removed = router.cleanup(datetime.now(timezone.utc) + timedelta(seconds=1))

    assert removed == 1
    assert router.get_message(queued.message_id) is queued
    with pytest.raises(NotFoundError):
        router.get_message(delivered.message_id)
    assert router.messages_for("bob") == []
