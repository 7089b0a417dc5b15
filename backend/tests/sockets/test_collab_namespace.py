from datetime import datetime, timezone
from decimal import Decimal

import pytest

from isle.domain.collab import models
from isle.domain.collab.feed import ChangeFeed, decision_topic, expenses_topic
from isle.domain.collab.service import CollabService
from isle.domain.collab.sockets import CollabNamespace, serialize_event


class _RecordingNamespace(CollabNamespace):
	def __init__(self, feed):
		super().__init__(feed)
		self.emitted = []
		self.rooms = {}

	async def emit(self, event, data=None, room=None, **kwargs):
		self.emitted.append((event, data, room))

	async def enter_room(self, sid, room, namespace=None):
		self.rooms.setdefault(sid, set()).add(room)

	async def leave_room(self, sid, room, namespace=None):
		self.rooms.get(sid, set()).discard(room)


def _environ(user_id=None):
	headers = [(b"x-user-id", user_id.encode())] if user_id else []
	return {"asgi.scope": {"headers": headers}}


def _vote_event():
	return models.ChangeEvent(
		type=models.VOTE_CHANGE,
		payload=models.ChangePayload(event_type=models.INSERT, new={"user_id": "alice", "option_id": "yes"}),
	)


@pytest.mark.asyncio
async def test_connect_requires_user_id():
	namespace = _RecordingNamespace(ChangeFeed())

	with pytest.raises(ConnectionRefusedError):
		await namespace.on_connect("sid-1", _environ())

	await namespace.on_connect("sid-2", _environ(), {"userId": "alice"})
	assert namespace.emitted[-1] == ("collab:ack", {"ok": True}, "sid-2")


async def _decision_topic(feed):
	service = CollabService(feed=feed)
	group = await service.create_group("alice", "Dolomites")
	await service.add_member(group.id, "bob", actor_id="alice")
	view = await service.create_decision(group.id, models.DecisionProposal(title="Via ferrata"), actor_id="alice")
	return group, decision_topic(view.decision.id)


@pytest.mark.asyncio
async def test_one_feed_subscription_per_topic_with_listeners():
	feed = ChangeFeed()
	namespace = _RecordingNamespace(feed)
	_, topic = await _decision_topic(feed)
	await namespace.on_connect("sid-1", _environ("alice"))
	await namespace.on_connect("sid-2", _environ("bob"))

	assert (await namespace.on_subscribe("sid-1", {"topic": topic}))["ok"]
	await namespace.on_subscribe("sid-1", {"topic": topic})
	await namespace.on_subscribe("sid-2", {"topic": topic})

	assert feed.subscriber_count(topic) == 1
	assert namespace.listener_count(topic) == 2

	await feed.publish(topic, _vote_event())
	event, data, room = namespace.emitted[-1]
	assert (event, room) == ("collab:change", topic)
	assert data["payload"]["eventType"] == models.INSERT

	await namespace.on_unsubscribe("sid-1", {"topic": topic})
	assert feed.subscriber_count(topic) == 1

	await namespace.on_disconnect("sid-2")
	assert feed.subscriber_count(topic) == 0
	assert namespace.listener_count(topic) == 0


@pytest.mark.asyncio
async def test_subscribe_rejects_unknown_topics():
	namespace = _RecordingNamespace(ChangeFeed())
	await namespace.on_connect("sid-1", _environ("alice"))

	result = await namespace.on_subscribe("sid-1", {"topic": "rooms:r1"})

	assert result == {"ok": False, "error": "invalid_topic"}


@pytest.mark.asyncio
async def test_subscribe_requires_group_membership():
	feed = ChangeFeed()
	namespace = _RecordingNamespace(feed)
	group, topic = await _decision_topic(feed)
	await namespace.on_connect("sid-1", _environ("mallory"))

	decision = await namespace.on_subscribe("sid-1", {"topic": topic})
	expenses = await namespace.on_subscribe("sid-1", {"topic": expenses_topic(group.id)})
	missing = await namespace.on_subscribe("sid-1", {"topic": "decision:unknown"})

	assert decision == {"ok": False, "error": "not_group_member"}
	assert expenses == {"ok": False, "error": "not_group_member"}
	assert missing == {"ok": False, "error": "topic_not_found"}
	assert feed.subscriber_count(topic) == 0
	assert namespace.rooms == {}


def test_serialize_event_is_json_ready():
	event = _vote_event()
	event.topic = "decision:d1"
	event.payload.new["amount"] = Decimal("1.5")
	event.payload.new["updated_at"] = datetime(2026, 5, 1, 12, 0, tzinfo=timezone.utc)

	data = serialize_event(event)

	assert data["topic"] == "decision:d1"
	assert data["type"] == models.VOTE_CHANGE
	assert data["payload"]["new"]["user_id"] == "alice"
	assert data["payload"]["new"]["amount"] == 1.5
	assert data["payload"]["new"]["updated_at"] == "2026-05-01T12:00:00+00:00"
