"""Message router for inter-agent communication.

Delivers messages to live agents by writing them to the agent's
process input, and queues them for everyone else. A queue is flushed,
in order, when its agent becomes active again or gets a running
process.

Addressing:
  - "<agent_id>"          one agent
  - ["a", "b", ...]       several agents
  - "broadcast"           every agent in the directory
  - "channel:<id>"        members of a registered channel

send() appends the message to every recipient's queue before it
yields, and queues are only written head first under a per-recipient
lock. The order of send() calls is therefore the order of delivery,
even when a write to another recipient is slow.
"""
from __future__ import annotations

import asyncio
import logging
import uuid
from collections import deque
from dataclasses import dataclass
from datetime import datetime, timezone
from typing import TYPE_CHECKING, Any

from .errors import (
    ChannelNotFoundError,
    InvalidStateError,
    NotFoundError,
    ValidationError,
)
from .matching import rank_experts
from .models import (
    BROADCAST,
    CHANNEL_PREFIX,
    Agent,
    AgentStatus,
    Channel,
    ChannelKind,
    Collaboration,
    CollaborationStatus,
    DeliveryState,
    Message,
    MessageType,
    Priority,
)

if TYPE_CHECKING:
    from .directory import AgentDirectory
    from .events import EventBus
    from .supervisor import ProcessSupervisor

logger = logging.getLogger(__name__)


def _utc_now() -> datetime:
    return datetime.now(timezone.utc)


_COLLABORATION_TRANSITIONS: dict[CollaborationStatus, set[CollaborationStatus]] = {
    CollaborationStatus.PENDING: {
        CollaborationStatus.ACTIVE,
        CollaborationStatus.CANCELLED,
    },
    CollaborationStatus.ACTIVE: {
        CollaborationStatus.COMPLETED,
        CollaborationStatus.CANCELLED,
    },
    CollaborationStatus.COMPLETED: set(),
    CollaborationStatus.CANCELLED: set(),
}


@dataclass
class RouterMetrics:
    """Delivery counters that cannot be derived from stored messages."""

    delivered: int = 0
    queued: int = 0
    flushed: int = 0
    write_failures: int = 0

    def snapshot(self) -> dict[str, int]:
        return {
            "delivered": self.delivered,
            "queued": self.queued,
            "flushed": self.flushed,
            "write_failures": self.write_failures,
        }


class MessageRouter:
    """Routes messages, channels, and collaboration requests between agents."""

    def __init__(
        self,
        directory: AgentDirectory,
        supervisor: ProcessSupervisor,
        event_bus: EventBus | None = None,
    ) -> None:
        self._directory = directory
        self._supervisor = supervisor
        self._event_bus = event_bus
        self._messages: dict[str, Message] = {}
        self._queues: dict[str, deque[Message]] = {}
        self._locks: dict[str, asyncio.Lock] = {}
        self._channels: dict[str, Channel] = {}
        self._collaborations: dict[str, Collaboration] = {}
        # agent_id -> ids of messages sent or received, oldest first
        self._history: dict[str, list[str]] = {}
        self.counters = RouterMetrics()
        self.refresh_channels()

    # ── Sending ──

    async def send(self, message: Message) -> str:
        """Deliver or queue ``message`` for each recipient.

        Raises NotFoundError for unknown agents, ChannelNotFoundError
        for unknown channels, and ValidationError for malformed
        addresses. Nothing is delivered if validation fails.
        """
        recipients = self._resolve_recipients(message)
        self._messages[message.message_id] = message
        self._history.setdefault(message.sender_id, []).append(message.message_id)
        logger.debug(
            "Routing message %s from %s to %d recipient(s) (type=%s, priority=%s)",
            message.message_id[:8], message.sender_id, len(recipients),
            message.message_type.value, message.priority.value,
        )
        # Enqueue for every recipient before the first await so that a
        # later send() can never overtake this one at a shared recipient.
        for agent_id in recipients:
            if message.sender_id != agent_id:
                self._history.setdefault(agent_id, []).append(message.message_id)
            self._queues.setdefault(agent_id, deque()).append(message)
        for agent_id in recipients:
            async with self._lock_for(agent_id):
                await self._drain_locked(agent_id)
        return message.message_id

    async def send_to_channel(
        self,
        channel_id: str,
        sender_id: str,
        content: Any,
        message_type: MessageType = MessageType.NOTIFICATION,
        topic: str = "",
        priority: Priority = Priority.MEDIUM,
    ) -> str:
        return await self.send(Message(
            sender_id=sender_id,
            to=f"{CHANNEL_PREFIX}{channel_id}",
            content=content,
            message_type=message_type,
            topic=topic,
            priority=priority,
        ))

    def is_live(self, agent_id: str) -> bool:
        """True if the agent is not offline and its process is running."""
        agent = self._directory.get(agent_id)
        if agent is None or agent.status == AgentStatus.OFFLINE:
            return False
        return self._supervisor.is_live(agent_id)

    def pending_for(self, agent_id: str) -> list[Message]:
        """Queued messages for ``agent_id``, oldest first."""
        return list(self._queues.get(agent_id, ()))

    async def acknowledge(self, agent_id: str, message_ids: list[str]) -> int:
        """Drop queued messages the agent received out of band.

        Returns how many were removed.
        """
        wanted = set(message_ids)
        async with self._lock_for(agent_id):
            queue = self._queues.get(agent_id)
            if not queue:
                return 0
            kept: deque[Message] = deque()
            removed = 0
            for message in queue:
                if message.message_id in wanted:
                    message.deliveries[agent_id] = DeliveryState.DELIVERED
                    removed += 1
                else:
                    kept.append(message)
            self._queues[agent_id] = kept
        if removed:
            logger.debug("Agent %s acknowledged %d message(s)", agent_id, removed)
        return removed

    async def on_agent_became_active(self, agent_id: str) -> int:
        """Flush the agent's queue in order. Returns messages delivered."""
        async with self._lock_for(agent_id):
            return await self._drain_locked(agent_id)

    # ── Channels ──

    def refresh_channels(self) -> None:
        """Derive department and broadcast channels from the directory."""
        agents = self._directory.list()
        for department in self._directory.departments():
            channel_id = f"dept-{department.lower()}"
            members = [
                a.agent_id for a in agents
                if a.department.lower() == department.lower()
            ]
            channel = self._channels.get(channel_id)
            if channel is None:
                self._channels[channel_id] = Channel(
                    channel_id=channel_id,
                    name=f"{department} Department",
                    kind=ChannelKind.DEPARTMENT,
                    members=members,
                )
            else:
                channel.members = members
        everyone = [a.agent_id for a in agents]
        channel = self._channels.get(BROADCAST)
        if channel is None:
            self._channels[BROADCAST] = Channel(
                channel_id=BROADCAST,
                name="All Agents",
                kind=ChannelKind.BROADCAST,
                members=everyone,
            )
        else:
            channel.members = everyone

    def create_channel(
        self,
        kind: ChannelKind | str,
        members: list[str],
        name: str | None = None,
    ) -> Channel:
        """Register a channel. Direct channels are idempotent per pair."""
        try:
            kind = ChannelKind(kind)
        except ValueError:
            raise ValidationError("kind", f"unknown channel kind {kind!r}") from None
        members = list(dict.fromkeys(members))
        for agent_id in members:
            self._directory.require(agent_id)

        if kind == ChannelKind.DIRECT:
            if len(members) != 2:
                raise ValidationError(
                    "members", "a direct channel needs exactly two agents",
                )
            first, second = sorted(members)
            channel_id = f"direct-{first}-{second}"
            existing = self._channels.get(channel_id)
            if existing is not None:
                return existing
            channel = Channel(
                channel_id=channel_id,
                name=name or f"{first} <-> {second}",
                kind=kind,
                members=[first, second],
            )
        elif kind == ChannelKind.TEAM:
            channel_id = f"team-{uuid.uuid4().hex[:8]}"
            channel = Channel(
                channel_id=channel_id,
                name=name or channel_id,
                kind=kind,
                members=members,
            )
        elif kind == ChannelKind.DEPARTMENT:
            if not name:
                raise ValidationError("name", "department channels need a name")
            channel_id = f"dept-{name.lower()}"
            channel = Channel(
                channel_id=channel_id,
                name=f"{name} Department",
                kind=kind,
                members=members,
            )
        else:
            channel_id = BROADCAST
            channel = Channel(
                channel_id=channel_id,
                name=name or "All Agents",
                kind=kind,
                members=members or [a.agent_id for a in self._directory.list()],
            )

        self._channels[channel.channel_id] = channel
        logger.info(
            "Channel created: %s (%s, %d members)",
            channel.channel_id, kind.value, len(channel.members),
        )
        return channel

    def get_channel(self, channel_id: str) -> Channel:
        channel = self._channels.get(channel_id)
        if channel is None:
            raise ChannelNotFoundError(channel_id)
        return channel

    def list_channels(self, agent_id: str | None = None) -> list[Channel]:
        return [
            c for c in self._channels.values()
            if agent_id is None or agent_id in c.members
        ]

    # ── Experts and collaborations ──

    def find_experts(
        self, topic: str, skills: list[str], limit: int = 3,
    ) -> list[Agent]:
        """Most relevant agents for the given skills, best first."""
        ranked = rank_experts(self._directory.list(), skills, limit)
        logger.debug(
            "Experts for %r (skills=%s): %s",
            topic, skills, [c.agent.agent_id for c in ranked],
        )
        return [c.agent for c in ranked]

    async def create_collaboration(
        self,
        initiator: str,
        participants: list[str],
        topic: str,
        description: str = "",
        deadline: datetime | None = None,
    ) -> str:
        """Open a collaboration and send a request to the other participants."""
        if not topic or not topic.strip():
            raise ValidationError("topic", "must be a non-empty string")
        self._directory.require(initiator)
        for agent_id in participants:
            self._directory.require(agent_id)

        members = list(dict.fromkeys([initiator, *participants]))
        collaboration = Collaboration(
            initiator=initiator,
            participants=members,
            topic=topic,
            description=description,
            deadline=deadline,
        )
        self._collaborations[collaboration.collaboration_id] = collaboration

        others = members[1:]
        if others:
            await self.send(Message(
                sender_id=initiator,
                to=others,
                content={
                    "collaboration_id": collaboration.collaboration_id,
                    "topic": topic,
                    "description": description,
                    "deadline": deadline.isoformat() if deadline else None,
                },
                message_type=MessageType.REQUEST,
                topic=f"Collaboration: {topic}",
                priority=Priority.HIGH,
            ))

        logger.info(
            "Collaboration %s created by %s with %d participant(s)",
            collaboration.collaboration_id[:8], initiator, len(members),
        )
        self._publish({
            "event": "collaboration-created",
            "collaboration_id": collaboration.collaboration_id,
            "initiator": initiator,
            "participants": list(members),
            "topic": topic,
        })
        return collaboration.collaboration_id

    def get_collaboration(self, collaboration_id: str) -> Collaboration:
        collaboration = self._collaborations.get(collaboration_id)
        if collaboration is None:
            raise NotFoundError("Collaboration", collaboration_id)
        return collaboration

    def update_collaboration_status(
        self,
        collaboration_id: str,
        status: CollaborationStatus | str,
    ) -> Collaboration:
        collaboration = self.get_collaboration(collaboration_id)
        try:
            target = CollaborationStatus(status)
        except ValueError:
            raise ValidationError(
                "status", f"unknown collaboration status {status!r}"
            ) from None
        if target not in _COLLABORATION_TRANSITIONS[collaboration.status]:
            raise InvalidStateError(
                "Collaboration", collaboration_id,
                collaboration.status.value, f"move to {target.value}",
            )
        previous = collaboration.status
        collaboration.status = target
        logger.info(
            "Collaboration %s: %s -> %s",
            collaboration_id[:8], previous.value, target.value,
        )
        self._publish({
            "event": "collaboration-updated",
            "collaboration_id": collaboration_id,
            "previous_status": previous.value,
            "status": target.value,
        })
        return collaboration

    def get_collaborations(
        self, agent_id: str | None = None, active_only: bool = False,
    ) -> list[Collaboration]:
        return [
            c for c in self._collaborations.values()
            if (agent_id is None or agent_id in c.participants)
            and (not active_only or c.status == CollaborationStatus.ACTIVE)
        ]

    # ── History and metrics ──

    def get_message(self, message_id: str) -> Message:
        message = self._messages.get(message_id)
        if message is None:
            raise NotFoundError("Message", message_id)
        return message

    def messages_for(self, agent_id: str, limit: int | None = None) -> list[Message]:
        """Messages the agent sent or received, oldest first."""
        ids = self._history.get(agent_id, [])
        messages = [self._messages[i] for i in ids if i in self._messages]
        return messages[-limit:] if limit else messages

    def cleanup(self, older_than: datetime) -> int:
        """Forget delivered messages older than ``older_than``.

        Messages still waiting in a queue are kept.
        """
        queued = {m.message_id for q in self._queues.values() for m in q}
        stale = [
            mid for mid, m in self._messages.items()
            if m.timestamp < older_than and mid not in queued
        ]
        for mid in stale:
            del self._messages[mid]
        if stale:
            gone = set(stale)
            for agent_id, ids in self._history.items():
                self._history[agent_id] = [i for i in ids if i not in gone]
            logger.info("Cleaned up %d old message(s)", len(stale))
        return len(stale)

    def get_metrics(self) -> dict[str, Any]:
        by_priority = {p.value: 0 for p in reversed(Priority)}
        by_sender: dict[str, int] = {}
        direct = 0
        broadcast = 0
        for message in self._messages.values():
            by_priority[message.priority.value] += 1
            by_sender[message.sender_id] = by_sender.get(message.sender_id, 0) + 1
            if message.to == BROADCAST:
                broadcast += 1
            elif isinstance(message.to, str) and not message.to.startswith(CHANNEL_PREFIX):
                direct += 1
        return {
            "total_messages": len(self._messages),
            "direct_messages": direct,
            "broadcast_messages": broadcast,
            "queued_messages": sum(len(q) for q in self._queues.values()),
            "active_channels": len(self._channels),
            "active_collaborations": sum(
                1 for c in self._collaborations.values()
                if c.status == CollaborationStatus.ACTIVE
            ),
            "messages_by_priority": by_priority,
            "messages_by_sender": by_sender,
        }

    # ── Internals ──

    def _resolve_recipients(self, message: Message) -> list[str]:
        to = message.to
        if isinstance(to, list):
            if not to:
                raise ValidationError("to", "recipient list is empty")
            for agent_id in to:
                self._directory.require(agent_id)
            return list(dict.fromkeys(to))
        if not isinstance(to, str) or not to:
            raise ValidationError("to", "must be an agent id, a list, or an address")
        if to == BROADCAST:
            return [a.agent_id for a in self._directory.list()]
        if to.startswith(CHANNEL_PREFIX):
            channel = self.get_channel(to[len(CHANNEL_PREFIX):])
            channel.last_activity = _utc_now()
            return list(channel.members)
        self._directory.require(to)
        return [to]

    def _lock_for(self, agent_id: str) -> asyncio.Lock:
        lock = self._locks.get(agent_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[agent_id] = lock
        return lock

    async def _drain_locked(self, agent_id: str) -> int:
        """Write the agent's queue head first while it stays live.

        Whatever is left is marked queued. Returns how many were written.
        """
        queue = self._queues.get(agent_id)
        if not queue:
            return 0
        written = 0
        flushed = 0
        while queue and self.is_live(agent_id):
            message = queue[0]
            if not await self._write(agent_id, message):
                break
            queue.popleft()
            if message.deliveries.get(agent_id) == DeliveryState.QUEUED:
                flushed += 1
            self._mark_delivered(agent_id, message)
            written += 1

        for position, message in enumerate(queue, start=1):
            if message.deliveries.get(agent_id) == DeliveryState.QUEUED:
                continue
            message.deliveries[agent_id] = DeliveryState.QUEUED
            self.counters.queued += 1
            logger.debug(
                "Queued message %s for %s (queue=%d)",
                message.message_id[:8], agent_id, position,
            )
            self._publish({
                "event": "message-queued",
                "message_id": message.message_id,
                "agent_id": agent_id,
                "queue_length": position,
            })

        if flushed:
            self.counters.flushed += flushed
            logger.info(
                "Delivered %d queued message(s) to %s (%d left)",
                flushed, agent_id, len(queue),
            )
        return written

    async def _write(self, agent_id: str, message: Message) -> bool:
        ok = await self._supervisor.send_input(agent_id, message.envelope())
        if not ok:
            self.counters.write_failures += 1
        return ok

    def _mark_delivered(self, agent_id: str, message: Message) -> None:
        message.deliveries[agent_id] = DeliveryState.DELIVERED
        self.counters.delivered += 1
        self._publish({
            "event": "message-delivered",
            "message_id": message.message_id,
            "agent_id": agent_id,
            "sender_id": message.sender_id,
        })

    def _publish(self, event: dict[str, Any]) -> None:
        if self._event_bus is not None:
            self._event_bus.publish(event)
