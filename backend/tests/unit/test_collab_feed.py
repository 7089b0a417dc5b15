import pytest

from isle.domain.collab import models
from isle.domain.collab.feed import ChangeFeed, decision_topic, expenses_topic, is_valid_topic, overview_topic


def _event(kind=models.VOTE_CHANGE):
	return models.ChangeEvent(
		type=kind,
		payload=models.ChangePayload(event_type=models.INSERT, new={"user_id": "alice", "option_id": "yes"}),
	)


def test_topic_helpers():
	assert decision_topic("d1") == "decision:d1"
	assert expenses_topic("g1") == "group-expenses:g1"
	assert overview_topic("g1") == "collab-overview:g1"
	assert is_valid_topic("decision:d1")
	assert not is_valid_topic("decision:")
	assert not is_valid_topic("rooms:r1")


@pytest.mark.asyncio
async def test_publish_reaches_every_subscriber():
	feed = ChangeFeed()
	seen_sync = []
	seen_async = []

	async def _async_handler(event):
		seen_async.append(event)

	feed.subscribe("decision:d1", seen_sync.append)
	feed.subscribe("decision:d1", _async_handler)
	feed.subscribe("decision:other", seen_sync.append)

	delivered = await feed.publish("decision:d1", _event())

	assert delivered == 2
	assert len(seen_sync) == 1
	assert len(seen_async) == 1
	assert seen_sync[0].topic == "decision:d1"
	assert seen_sync[0].origin == feed.origin


@pytest.mark.asyncio
async def test_unsubscribe_is_idempotent_and_stops_delivery():
	feed = ChangeFeed()
	seen = []
	unsubscribe = feed.subscribe("decision:d1", seen.append)

	unsubscribe()
	unsubscribe()

	assert feed.subscriber_count("decision:d1") == 0
	assert await feed.publish("decision:d1", _event()) == 0
	assert seen == []


@pytest.mark.asyncio
async def test_unsubscribe_during_dispatch_skips_later_handler():
	feed = ChangeFeed()
	seen = []
	unsubscribers = {}

	def _first(event):
		unsubscribers["second"]()

	feed.subscribe("decision:d1", _first)
	unsubscribers["second"] = feed.subscribe("decision:d1", seen.append)

	await feed.publish("decision:d1", _event())

	assert seen == []


@pytest.mark.asyncio
async def test_failing_handler_does_not_break_other_subscribers():
	feed = ChangeFeed()
	seen = []

	def _boom(event):
		raise RuntimeError("handler failed")

	feed.subscribe("decision:d1", _boom)
	feed.subscribe("decision:d1", seen.append)

	await feed.publish("decision:d1", _event())

	assert len(seen) == 1


@pytest.mark.asyncio
async def test_notify_resumed_calls_live_resume_handlers():
	feed = ChangeFeed()
	resumed = []

	async def _resume():
		resumed.append("async")

	feed.subscribe("decision:d1", lambda event: None, on_resume=_resume)
	feed.subscribe("group-expenses:g1", lambda event: None, on_resume=lambda: resumed.append("sync"))
	stale = feed.subscribe("collab-overview:g1", lambda event: None, on_resume=lambda: resumed.append("stale"))
	stale()

	await feed.notify_resumed()

	assert sorted(resumed) == ["async", "sync"]


def test_subscribe_requires_topic():
	feed = ChangeFeed()
	with pytest.raises(ValueError):
		feed.subscribe("", lambda event: None)
