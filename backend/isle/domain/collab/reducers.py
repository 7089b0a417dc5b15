"""Optimistic folds of change-feed events into local aggregates.

These run the moment an event arrives, before the authoritative snapshot comes
back. The feed may duplicate, reorder or drop events, so results here are only
a preview. Both reducers are total: malformed events return the state
unchanged, and deltas are keyed by row identity (voter, expense id) so the
same event applied twice has no further effect.
"""

from __future__ import annotations

from dataclasses import dataclass, field, replace
from decimal import Decimal, InvalidOperation
from typing import Any, Dict, Mapping, Optional, Tuple

from isle.domain.collab import models

_ZERO = Decimal("0")


@dataclass(frozen=True, slots=True)
class VoteTally:
	"""Per-client view of one decision's votes.

	`ballots` maps voter -> option for every vote this view has counted. When it
	is None the view was seeded from bare counts and falls back to trusting the
	`old` row of UPDATE/DELETE events.
	"""

	me: Optional[str] = None
	counts: Mapping[str, int] = field(default_factory=dict)
	my_vote: Optional[str] = None
	ballots: Optional[Mapping[str, str]] = field(default_factory=dict)

	def count_for(self, option_id: str) -> int:
		return int(self.counts.get(option_id, 0))


@dataclass(frozen=True, slots=True)
class ExpenseLedger:
	expenses: Tuple[Dict[str, Any], ...] = ()
	total_spent: Decimal = _ZERO

	def ids(self) -> list[str]:
		return [str(row.get("id")) for row in self.expenses]


def _key(value: Any) -> Optional[str]:
	if value is None or isinstance(value, bool):
		return None
	text = str(value).strip()
	return text or None


def coerce_amount(value: Any) -> Decimal:
	"""Best-effort amount parsing; anything unusable counts as zero."""
	if value is None or isinstance(value, bool):
		return _ZERO
	try:
		amount = Decimal(str(value).strip())
	except (InvalidOperation, ValueError):
		return _ZERO
	if not amount.is_finite():
		return _ZERO
	return amount


def normalise_expense_row(row: Mapping[str, Any]) -> Dict[str, Any]:
	data = dict(row)
	data["id"] = _key(data.get("id"))
	data["amount"] = coerce_amount(data.get("amount"))
	return data


def _split(event: Any) -> Optional[tuple[str, Mapping[str, Any], Mapping[str, Any]]]:
	"""Pull (event_type, new, old) out of a ChangeEvent, ChangePayload or dict."""
	payload = getattr(event, "payload", event)
	if isinstance(payload, Mapping) and isinstance(payload.get("payload"), Mapping):
		payload = payload["payload"]
	if isinstance(payload, Mapping):
		event_type = payload.get("event_type") or payload.get("eventType")
		new_row = payload.get("new")
		old_row = payload.get("old")
	elif isinstance(payload, models.ChangePayload):
		event_type, new_row, old_row = payload.event_type, payload.new, payload.old
	else:
		return None
	if event_type not in models.CHANGE_EVENT_TYPES:
		return None
	new_row = new_row if isinstance(new_row, Mapping) else {}
	old_row = old_row if isinstance(old_row, Mapping) else {}
	return event_type, new_row, old_row


def _bump(counts: Dict[str, int], option_id: str, delta: int) -> None:
	counts[option_id] = max(0, int(counts.get(option_id, 0)) + delta)


def apply_vote_event(event: Any, state: VoteTally) -> VoteTally:
	try:
		parts = _split(event)
	except Exception:
		return state
	if parts is None:
		return state
	event_type, new_row, old_row = parts

	counts = dict(state.counts)
	ballots = dict(state.ballots) if state.ballots is not None else None
	my_vote = state.my_vote

	if event_type in (models.INSERT, models.UPDATE):
		user_id = _key(new_row.get("user_id")) or _key(old_row.get("user_id"))
		option_id = _key(new_row.get("option_id"))
		if not user_id or not option_id:
			return state
		if ballots is not None:
			previous = ballots.get(user_id)
			ballots[user_id] = option_id
		elif event_type == models.UPDATE:
			previous = _key(old_row.get("option_id"))
		else:
			previous = None
		if previous != option_id:
			if previous:
				_bump(counts, previous, -1)
			_bump(counts, option_id, 1)
		if state.me and user_id == state.me:
			my_vote = option_id
	else:
		user_id = _key(old_row.get("user_id"))
		if ballots is not None:
			if not user_id:
				return state
			previous = ballots.pop(user_id, None)
		else:
			previous = _key(old_row.get("option_id"))
		if previous:
			_bump(counts, previous, -1)
		if state.me and user_id and user_id == state.me:
			my_vote = None

	return replace(state, counts=counts, my_vote=my_vote, ballots=ballots)


def apply_expense_event(event: Any, state: ExpenseLedger) -> ExpenseLedger:
	try:
		parts = _split(event)
	except Exception:
		return state
	if parts is None:
		return state
	event_type, new_row, old_row = parts

	rows = list(state.expenses)
	total = state.total_spent if isinstance(state.total_spent, Decimal) else coerce_amount(state.total_spent)
	index = {str(row.get("id")): pos for pos, row in enumerate(rows)}

	if event_type in (models.INSERT, models.UPDATE):
		row = normalise_expense_row(new_row)
		row_id = row["id"]
		if not row_id:
			return state
		pos = index.get(row_id)
		if pos is not None:
			total += row["amount"] - coerce_amount(rows[pos].get("amount"))
			rows[pos] = row
		elif event_type == models.INSERT:
			rows.insert(0, row)
			total += row["amount"]
		else:
			# Row never seen locally; the next snapshot will bring it in.
			return state
	else:
		row_id = _key(old_row.get("id"))
		pos = index.get(row_id) if row_id else None
		if pos is None:
			return state
		removed = rows.pop(pos)
		total -= coerce_amount(removed.get("amount"))

	if total < 0:
		total = _ZERO
	return ExpenseLedger(expenses=tuple(rows), total_spent=total)


def tally_from_ballots(ballots: Mapping[str, str], option_ids: Any = ()) -> Dict[str, int]:
	counts: Dict[str, int] = {str(option_id): 0 for option_id in option_ids}
	for option_id in ballots.values():
		counts[option_id] = counts.get(option_id, 0) + 1
	return counts


def ledger_total(expenses: Any) -> Decimal:
	return sum((coerce_amount(row.get("amount")) for row in expenses), _ZERO)
