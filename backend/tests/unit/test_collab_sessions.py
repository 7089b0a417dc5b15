from datetime import datetime, timezone
from decimal import Decimal

import pytest

from isle.domain.collab import models
from isle.domain.collab.feed import ChangeFeed
from isle.domain.collab.policy import CollabPolicyError
from isle.domain.collab.service import CollabService
from isle.domain.collab.sessions import ChallengeBoardSession, DecisionVoteSession, ExpenseLedgerSession


@pytest.fixture
def service():
	return CollabService(feed=ChangeFeed())


async def _group_with_decision(service, member_count):
	group = await service.create_group("owner", "Azores")
	members = ["owner"]
	for index in range(1, member_count):
		members.append((await service.add_member(group.id, f"hiker-{index}", actor_id="owner")).user_id)
	view = await service.create_decision(group.id, models.DecisionProposal(title="Crater lake"), actor_id="owner")
	options = {option.label: option.id for option in view.options}
	return group, members, view.decision, options["Yes"], options["No"]


@pytest.mark.asyncio
async def test_vote_sessions_converge_and_resolve_once(service):
	group, members, decision, yes_id, _ = await _group_with_decision(service, 3)
	first = DecisionVoteSession(service, decision.id, members[0])
	second = DecisionVoteSession(service, decision.id, members[1])
	await first.open()
	await second.open()

	await first.cast_vote(yes_id)

	assert second.tally.count_for(yes_id) == 1
	assert first.tally.my_vote == yes_id
	assert second.tally.my_vote is None

	await second.cast_vote(yes_id)

	assert first.decision.status == models.DECISION_APPROVED
	assert second.decision.status == models.DECISION_APPROVED
	assert len(await service.list_activities(group.id, user_id="owner")) == 1
	first.close()
	second.close()


@pytest.mark.asyncio
async def test_failed_vote_reverts_optimistic_tally(service, monkeypatch):
	_, members, decision, yes_id, _ = await _group_with_decision(service, 3)
	session = DecisionVoteSession(service, decision.id, members[0])
	await session.open()
	before = session.tally

	async def _fail(*args, **kwargs):
		raise ConnectionError("write failed")

	monkeypatch.setattr(service, "cast_vote", _fail)

	with pytest.raises(ConnectionError):
		await session.cast_vote(yes_id)

	assert session.tally == before
	assert session.tally.count_for(yes_id) == 0
	session.close()


@pytest.mark.asyncio
async def test_resume_heals_missed_events(service):
	_, members, decision, yes_id, no_id = await _group_with_decision(service, 5)
	session = DecisionVoteSession(service, decision.id, members[0])
	await session.open()
	now = datetime.now(timezone.utc)

	# Written behind the feed's back, as if the event had been dropped.
	await service.repository.upsert_vote(
		models.Vote(decision_id=decision.id, user_id=members[2], option_id=no_id, updated_at=now)
	)
	assert session.tally.count_for(no_id) == 0

	await service.feed.notify_resumed()

	assert session.tally.count_for(no_id) == 1
	assert session.tally.count_for(yes_id) == 0
	session.close()


@pytest.mark.asyncio
async def test_closed_session_stops_receiving(service):
	_, members, decision, yes_id, _ = await _group_with_decision(service, 5)
	session = DecisionVoteSession(service, decision.id, members[0])
	await session.open()
	session.close()
	session.close()

	await service.cast_vote(decision.id, yes_id, members[1])

	assert session.tally.count_for(yes_id) == 0


@pytest.mark.asyncio
async def test_expense_session_tracks_other_writers(service):
	group, members, *_ = await _group_with_decision(service, 2)
	session = ExpenseLedgerSession(service, group.id, members[0])
	await session.open()

	await service.add_expense(group.id, user_id=members[1], item="Whale watching", amount="45.00")
	expense = await session.add_expense("Snacks", "5.5")

	assert session.ledger.total_spent == Decimal("50.5")
	assert expense.id in session.ledger.ids()

	await service.delete_expense(expense.id, user_id=members[0])
	assert session.ledger.total_spent == Decimal("45")
	session.close()


@pytest.mark.asyncio
async def test_expense_session_validates_before_writing(service):
	group, members, *_ = await _group_with_decision(service, 1)
	session = ExpenseLedgerSession(service, group.id, members[0])
	await session.open()

	with pytest.raises(CollabPolicyError):
		await session.add_expense("Dinner", "-3")

	assert session.ledger.expenses == ()
	assert await service.repository.list_expenses(group.id, 200) == []
	session.close()


@pytest.mark.asyncio
async def test_challenge_board_decline_hides_and_join_marks(service):
	group, members, *_ = await _group_with_decision(service, 2)
	keep = await service.create_challenge(group.id, user_id="owner", title="Hot springs")
	skip = await service.create_challenge(group.id, user_id="owner", title="Cliff jump")
	board = ChallengeBoardSession(service, group.id, members[0])
	await board.open()

	await board.decline(skip.id)
	await board.join(keep.id)

	assert set(board.challenges) == {keep.id}
	assert board.challenges[keep.id].my_status == models.MEMBERSHIP_JOINED
	assert board.challenges[keep.id].membership.expires_at is not None


@pytest.mark.asyncio
async def test_challenge_board_reverts_on_failure(service, monkeypatch):
	group, members, *_ = await _group_with_decision(service, 2)
	challenge = await service.create_challenge(group.id, user_id="owner", title="Night swim")
	board = ChallengeBoardSession(service, group.id, members[0])
	await board.open()

	async def _fail(*args, **kwargs):
		raise ConnectionError("write failed")

	monkeypatch.setattr(service, "decline_challenge", _fail)

	with pytest.raises(ConnectionError):
		await board.decline(challenge.id)

	assert set(board.challenges) == {challenge.id}
	assert board.challenges[challenge.id].my_status is None
