"""Authoritative snapshots that replace the optimistic local fold."""

from __future__ import annotations

import logging
from dataclasses import dataclass, field
from decimal import Decimal
from typing import Any, Awaitable, Callable, Dict, Generic, Optional, Tuple, TypeVar

from isle.domain.collab import reducers
from isle.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

T = TypeVar("T")


@dataclass(slots=True)
class VoteSnapshot:
	counts: Dict[str, int] = field(default_factory=dict)
	my_vote: Optional[str] = None
	ballots: Dict[str, str] = field(default_factory=dict)

	def to_tally(self, me: Optional[str]) -> reducers.VoteTally:
		return reducers.VoteTally(me=me, counts=dict(self.counts), my_vote=self.my_vote, ballots=dict(self.ballots))


@dataclass(slots=True)
class ExpenseSnapshot:
	expenses: Tuple[Dict[str, Any], ...] = ()
	total_spent: Decimal = Decimal("0")

	def to_ledger(self) -> reducers.ExpenseLedger:
		return reducers.ExpenseLedger(expenses=tuple(self.expenses), total_spent=self.total_spent)


async def fetch_vote_snapshot(repo, decision_id: str, user_id: Optional[str]) -> VoteSnapshot:
	options = await repo.list_options([decision_id])
	votes = await repo.list_votes([decision_id])
	ballots = {vote.user_id: vote.option_id for vote in votes}
	counts = reducers.tally_from_ballots(ballots, [option.id for option in options])
	return VoteSnapshot(counts=counts, my_vote=ballots.get(user_id) if user_id else None, ballots=ballots)


async def fetch_expense_snapshot(repo, group_id: str, limit: int) -> ExpenseSnapshot:
	rows = await repo.list_expenses(group_id, limit)
	expenses = tuple(reducers.normalise_expense_row(expense.to_row()) for expense in rows)
	return ExpenseSnapshot(expenses=expenses, total_spent=reducers.ledger_total(expenses))


class SnapshotReconciler(Generic[T]):
	"""Runs snapshot fetches and applies only the latest-issued result.

	Each refresh takes the next local sequence number. A response that completes
	after a newer one has already been applied is dropped, so a slow early fetch
	cannot overwrite fresher state.
	"""

	def __init__(
		self,
		fetch: Callable[[], Awaitable[T]],
		apply: Callable[[T], None],
		*,
		kind: str,
	) -> None:
		self._fetch = fetch
		self._apply = apply
		self.kind = kind
		self._issued = 0
		self._applied = 0

	@property
	def last_applied(self) -> int:
		return self._applied

	async def refresh(self) -> Optional[T]:
		self._issued += 1
		seq = self._issued
		try:
			snapshot = await self._fetch()
		except Exception:
			logger.warning("collab.snapshot.fetch_failed", extra={"kind": self.kind, "seq": seq}, exc_info=True)
			return None
		if seq < self._applied:
			obs_metrics.inc_snapshot_discard(self.kind)
			logger.debug("collab.snapshot.stale", extra={"kind": self.kind, "seq": seq, "applied": self._applied})
			return None
		self._applied = seq
		self._apply(snapshot)
		return snapshot

