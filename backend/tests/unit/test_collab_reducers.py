from decimal import Decimal

from isle.domain.collab import models
from isle.domain.collab.reducers import (
	ExpenseLedger,
	VoteTally,
	apply_expense_event,
	apply_vote_event,
	coerce_amount,
)


def _vote_event(event_type, new=None, old=None):
	return models.ChangeEvent(
		type=models.VOTE_CHANGE,
		payload=models.ChangePayload(event_type=event_type, new=new, old=old),
	)


def _expense_event(event_type, new=None, old=None):
	return models.ChangeEvent(
		type=models.EXPENSE_CHANGE,
		payload=models.ChangePayload(event_type=event_type, new=new, old=old),
	)


def test_vote_insert_counts_once_and_tracks_my_vote():
	state = VoteTally(me="alice", counts={"yes": 0, "no": 0})
	event = _vote_event(models.INSERT, new={"user_id": "alice", "option_id": "yes"})

	once = apply_vote_event(event, state)
	twice = apply_vote_event(event, once)

	assert once.counts == {"yes": 1, "no": 0}
	assert once.my_vote == "yes"
	assert twice.counts == once.counts
	assert twice.my_vote == "yes"


def test_vote_switch_moves_a_single_ballot():
	state = VoteTally(me="alice", counts={"yes": 1, "no": 0}, my_vote="yes", ballots={"alice": "yes"})
	event = _vote_event(
		models.UPDATE,
		new={"user_id": "alice", "option_id": "no"},
		old={"user_id": "alice", "option_id": "yes"},
	)

	switched = apply_vote_event(event, state)
	replayed = apply_vote_event(event, switched)

	assert switched.counts == {"yes": 0, "no": 1}
	assert switched.my_vote == "no"
	assert replayed.counts == {"yes": 0, "no": 1}


def test_vote_delete_is_idempotent_and_clears_my_vote():
	state = VoteTally(me="alice", counts={"yes": 2}, my_vote="yes", ballots={"alice": "yes", "bob": "yes"})
	event = _vote_event(models.DELETE, old={"user_id": "alice", "option_id": "yes"})

	once = apply_vote_event(event, state)
	twice = apply_vote_event(event, once)

	assert once.counts == {"yes": 1}
	assert once.my_vote is None
	assert twice.counts == {"yes": 1}


def test_vote_other_voter_does_not_touch_my_vote():
	state = VoteTally(me="alice", counts={"yes": 0}, my_vote=None)
	updated = apply_vote_event(_vote_event(models.INSERT, new={"user_id": "bob", "option_id": "yes"}), state)

	assert updated.counts["yes"] == 1
	assert updated.my_vote is None


def test_vote_counts_never_go_negative_without_ballots():
	state = VoteTally(me="alice", counts={"yes": 0}, ballots=None)
	updated = apply_vote_event(_vote_event(models.DELETE, old={"user_id": "bob", "option_id": "yes"}), state)

	assert updated.counts["yes"] == 0


def test_vote_malformed_events_return_state_unchanged():
	state = VoteTally(me="alice", counts={"yes": 1}, ballots={"bob": "yes"})

	assert apply_vote_event({"unexpected": True}, state) is state
	assert apply_vote_event(_vote_event("TRUNCATE", new={"user_id": "x", "option_id": "yes"}), state) is state
	assert apply_vote_event(_vote_event(models.INSERT, new={"user_id": "alice"}), state) is state
	assert apply_vote_event(None, state) is state


def test_vote_accepts_wire_shaped_dicts():
	state = VoteTally(me="alice", counts={})
	wire = {
		"type": models.VOTE_CHANGE,
		"payload": {"eventType": "INSERT", "new": {"user_id": "alice", "option_id": "yes"}, "old": None},
	}

	updated = apply_vote_event(wire, state)

	assert updated.counts == {"yes": 1}
	assert updated.my_vote == "yes"


def test_expense_insert_twice_keeps_one_row():
	row = {"id": "e1", "item": "Ferry", "amount": "10.50"}
	event = _expense_event(models.INSERT, new=row)

	once = apply_expense_event(event, ExpenseLedger())
	twice = apply_expense_event(event, once)

	assert once.ids() == ["e1"]
	assert once.total_spent == Decimal("10.50")
	assert twice.ids() == ["e1"]
	assert twice.total_spent == Decimal("10.50")


def test_expense_update_and_delete_keep_total_consistent():
	ledger = apply_expense_event(_expense_event(models.INSERT, new={"id": "e1", "item": "Ferry", "amount": 10}), ExpenseLedger())
	ledger = apply_expense_event(_expense_event(models.INSERT, new={"id": "e2", "item": "Lunch", "amount": "4.25"}), ledger)

	assert ledger.ids() == ["e2", "e1"]
	assert ledger.total_spent == Decimal("14.25")

	ledger = apply_expense_event(
		_expense_event(models.UPDATE, new={"id": "e1", "item": "Ferry", "amount": 12}, old={"id": "e1", "amount": 10}),
		ledger,
	)
	assert ledger.total_spent == Decimal("16.25")

	deleted = apply_expense_event(_expense_event(models.DELETE, old={"id": "e2"}), ledger)
	again = apply_expense_event(_expense_event(models.DELETE, old={"id": "e2"}), deleted)

	assert deleted.ids() == ["e1"]
	assert deleted.total_spent == Decimal("12")
	assert again.total_spent == Decimal("12")
	assert again.total_spent == sum(row["amount"] for row in again.expenses)


def test_expense_update_for_unknown_row_is_ignored():
	ledger = ExpenseLedger()
	event = _expense_event(models.UPDATE, new={"id": "missing", "amount": 3})

	assert apply_expense_event(event, ledger) is ledger


def test_expense_total_never_negative():
	ledger = ExpenseLedger(expenses=({"id": "e1", "amount": Decimal("5")},), total_spent=Decimal("1"))
	updated = apply_expense_event(_expense_event(models.DELETE, old={"id": "e1"}), ledger)

	assert updated.total_spent == Decimal("0")


def test_coerce_amount_handles_garbage():
	assert coerce_amount("abc") == Decimal("0")
	assert coerce_amount(None) == Decimal("0")
	assert coerce_amount("NaN") == Decimal("0")
	assert coerce_amount(True) == Decimal("0")
	assert coerce_amount("7.5") == Decimal("7.5")
