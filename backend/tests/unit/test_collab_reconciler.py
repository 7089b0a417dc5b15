import asyncio
from datetime import datetime, timezone
from decimal import Decimal

import pytest

from isle.domain.collab import models
from isle.domain.collab.reconciler import SnapshotReconciler, fetch_expense_snapshot, fetch_vote_snapshot
from isle.domain.collab.repo import CollabRepository


@pytest.mark.asyncio
async def test_out_of_order_response_is_discarded():
	gates = [asyncio.Event(), asyncio.Event()]
	results = ["older", "newer"]
	order = iter(range(2))
	applied = []

	async def _fetch():
		index = next(order)
		await gates[index].wait()
		return results[index]

	reconciler = SnapshotReconciler(_fetch, applied.append, kind="votes")

	first = asyncio.create_task(reconciler.refresh())
	second = asyncio.create_task(reconciler.refresh())
	await asyncio.sleep(0)

	gates[1].set()
	assert await second == "newer"
	gates[0].set()
	assert await first is None

	assert applied == ["newer"]
	assert reconciler.last_applied == 2


@pytest.mark.asyncio
async def test_fetch_failure_leaves_state_untouched():
	applied = []

	async def _fetch():
		raise ConnectionError("store unavailable")

	reconciler = SnapshotReconciler(_fetch, applied.append, kind="expenses")

	assert await reconciler.refresh() is None
	assert applied == []
	assert reconciler.last_applied == 0


@pytest.mark.asyncio
async def test_vote_snapshot_seeds_every_option():
	repo = CollabRepository()
	now = datetime.now(timezone.utc)
	decision = models.Decision(
		id="d1",
		group_id="g1",
		proposal=models.DecisionProposal(title="Picnic"),
		status=models.DECISION_OPEN,
		created_by="alice",
		created_at=now,
	)
	options = [
		models.DecisionOption(id="yes", decision_id="d1", label="Yes", created_at=now),
		models.DecisionOption(id="no", decision_id="d1", label="No", created_at=now),
	]
	await repo.create_decision(decision, options)
	await repo.upsert_vote(models.Vote(decision_id="d1", user_id="bob", option_id="yes", updated_at=now))

	snapshot = await fetch_vote_snapshot(repo, "d1", "bob")
	tally = snapshot.to_tally("bob")

	assert snapshot.counts == {"yes": 1, "no": 0}
	assert snapshot.my_vote == "yes"
	assert tally.ballots == {"bob": "yes"}


@pytest.mark.asyncio
async def test_expense_snapshot_totals_store_rows():
	repo = CollabRepository()
	now = datetime.now(timezone.utc)
	for index, amount in enumerate(("12.50", "7.25")):
		await repo.insert_expense(
			models.Expense(id=f"e{index}", group_id="g1", item="Taxi", amount=Decimal(amount), created_at=now)
		)

	snapshot = await fetch_expense_snapshot(repo, "g1", 200)

	assert snapshot.total_spent == Decimal("19.75")
	assert {row["id"] for row in snapshot.expenses} == {"e0", "e1"}
	assert snapshot.to_ledger().total_spent == Decimal("19.75")
