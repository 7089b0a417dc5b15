from decimal import Decimal

import pytest

from isle.domain.collab import models, outbox
from isle.domain.collab.feed import ChangeFeed, expenses_topic
from isle.domain.collab.reducers import coerce_amount
from isle.domain.collab.relay import ChangeFeedRelay
from isle.domain.collab.service import CollabService
from isle.settings import settings


@pytest.fixture
def relay_enabled():
	settings.collab_feed_relay_enabled = True
	yield


def test_change_encoding_round_trip_keeps_rows():
	event = models.ChangeEvent(
		type=models.EXPENSE_CHANGE,
		topic="group-expenses:g1",
		origin="proc-a",
		payload=models.ChangePayload(
			event_type=models.DELETE,
			old={"id": "e1", "amount": Decimal("9.99")},
			table="group_expenses",
		),
	)

	decoded = outbox.decode_change(outbox.encode_change(event))

	assert decoded.topic == "group-expenses:g1"
	assert decoded.origin == "proc-a"
	assert decoded.payload.event_type == models.DELETE
	assert decoded.payload.new is None
	assert decoded.payload.old == {"id": "e1", "amount": "9.99"}


def test_decode_rejects_incomplete_entries():
	assert outbox.decode_change({"type": models.VOTE_CHANGE}) is None
	assert outbox.decode_change({"type": "X", "topic": "decision:d1", "event_type": "NOPE"}) is None
	assert outbox.decode_change({"type": "X", "topic": "decision:d1", "event_type": "INSERT", "new": "{bad"}) is None


@pytest.mark.asyncio
async def test_relay_forwards_other_process_writes(relay_enabled):
	writer = CollabService(feed=ChangeFeed())
	reader_feed = ChangeFeed()
	relay = ChangeFeedRelay(reader_feed, block_ms=None)
	assert await relay.process_once() == 0

	group = await writer.create_group("owner", "Madeira")
	seen = []
	reader_feed.subscribe(expenses_topic(group.id), seen.append)

	await writer.add_expense(group.id, user_id="owner", item="Levada guide", amount="30.5")
	dispatched = await relay.process_once()

	assert dispatched >= 2
	assert len(seen) == 1
	assert seen[0].type == models.EXPENSE_CHANGE
	assert seen[0].origin == writer.feed.origin
	assert coerce_amount(seen[0].payload.new["amount"]) == Decimal("30.5")


@pytest.mark.asyncio
async def test_relay_skips_its_own_origin(relay_enabled):
	feed = ChangeFeed()
	writer = CollabService(feed=feed)
	relay = ChangeFeedRelay(feed, block_ms=None)
	await relay.process_once()

	group = await writer.create_group("owner", "Madeira")
	seen = []
	feed.subscribe(expenses_topic(group.id), seen.append)
	await writer.add_expense(group.id, user_id="owner", item="Taxi", amount=12)

	assert len(seen) == 1
	assert await relay.process_once() == 0
	assert len(seen) == 1


def test_backoff_doubles_up_to_cap():
	relay = ChangeFeedRelay(ChangeFeed(), backoff_initial=0.5, backoff_max=3.0)

	delays = []
	delay = 0.0
	for _ in range(5):
		delay = relay.next_backoff(delay)
		delays.append(delay)

	assert delays == [0.5, 1.0, 2.0, 3.0, 3.0]


@pytest.mark.asyncio
async def test_run_forever_backs_off_then_signals_resume(monkeypatch):
	feed = ChangeFeed()
	resumed = []
	feed.subscribe("decision:d1", lambda event: None, on_resume=lambda: resumed.append(True))
	relay = ChangeFeedRelay(feed, block_ms=None, poll_interval=0, backoff_initial=0, backoff_max=0)
	calls = []

	async def _flaky():
		calls.append(len(calls))
		if len(calls) == 1:
			raise ConnectionError("redis down")
		relay.stop()
		return 0

	monkeypatch.setattr(relay, "process_once", _flaky)

	await relay.run_forever()

	assert calls == [0, 1]
	assert resumed == [True]
