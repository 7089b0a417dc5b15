"""Client-side collaboration sessions.

A session is what one connected surface holds for a decision, an expense ledger
or a challenge board: it folds feed events optimistically, then replaces the
fold with an authoritative snapshot. Sessions talk to the service directly and
subscribe to the service's change feed.
"""

from __future__ import annotations

from datetime import datetime, timezone
from typing import Any, Dict, List, Optional

from isle.domain.collab import decisions, models, policy, reducers
from isle.domain.collab.feed import Unsubscribe, decision_topic, expenses_topic
from isle.domain.collab.reconciler import (
	ExpenseSnapshot,
	SnapshotReconciler,
	VoteSnapshot,
	fetch_expense_snapshot,
	fetch_vote_snapshot,
)
from isle.domain.collab.service import ChallengeView, CollabService
from isle.settings import settings


class _DecisionState:
	__slots__ = ("snapshot", "decision", "options", "member_count")

	def __init__(
		self,
		snapshot: VoteSnapshot,
		decision: Optional[models.Decision],
		options: List[models.DecisionOption],
		member_count: int,
	) -> None:
		self.snapshot = snapshot
		self.decision = decision
		self.options = options
		self.member_count = member_count


class DecisionVoteSession:
	"""Live vote view for one decision, resolving it when a majority shows up."""

	def __init__(self, service: CollabService, decision_id: str, user_id: Optional[str]) -> None:
		self._service = service
		self.decision_id = decision_id
		self.user_id = user_id
		self.decision: Optional[models.Decision] = None
		self.options: List[models.DecisionOption] = []
		self.member_count = 0
		self.tally = reducers.VoteTally(me=user_id)
		self.resolver = decisions.DecisionResolver(service.resolve_decision)
		self._reconciler: SnapshotReconciler[_DecisionState] = SnapshotReconciler(
			self._fetch, self._apply, kind="votes"
		)
		self._unsubscribe: Optional[Unsubscribe] = None

	async def _fetch(self) -> _DecisionState:
		repo = self._service.repository
		snapshot = await fetch_vote_snapshot(repo, self.decision_id, self.user_id)
		decision = await repo.get_decision(self.decision_id)
		options = await repo.list_options([self.decision_id])
		member_count = await self._service.membership.member_count(decision.group_id) if decision else 0
		return _DecisionState(snapshot, decision, options, member_count)

	def _apply(self, state: _DecisionState) -> None:
		self.tally = state.snapshot.to_tally(self.user_id)
		self.decision = state.decision
		self.options = state.options
		self.member_count = state.member_count

	@property
	def majority(self) -> int:
		return decisions.majority_threshold(self.member_count)

	async def open(self) -> None:
		await self.refresh()
		await self._maybe_resolve()
		self._unsubscribe = self._service.feed.subscribe(
			decision_topic(self.decision_id),
			self._on_event,
			on_resume=self.refresh,
		)

	def close(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None

	async def refresh(self) -> None:
		await self._reconciler.refresh()

	async def _on_event(self, event: models.ChangeEvent) -> None:
		if event.type == models.VOTE_CHANGE:
			self.tally = reducers.apply_vote_event(event, self.tally)
		await self.refresh()
		await self._maybe_resolve()

	async def _maybe_resolve(self) -> Optional[models.Resolution]:
		if self.decision is None:
			return None
		resolution = await self.resolver.maybe_resolve(
			self.decision,
			self.options,
			self.tally.counts,
			self.member_count,
			self.user_id,
		)
		if resolution is not None:
			self.decision = resolution.decision
		return resolution

	async def cast_vote(self, option_id: str) -> None:
		voter = policy.require_identity(self.user_id)
		before = self.tally
		event = models.ChangeEvent(
			type=models.VOTE_CHANGE,
			payload=models.ChangePayload(
				event_type=models.UPDATE if before.my_vote else models.INSERT,
				new={"decision_id": self.decision_id, "user_id": voter, "option_id": option_id},
				old={"decision_id": self.decision_id, "user_id": voter, "option_id": before.my_vote}
				if before.my_vote
				else None,
			),
		)
		self.tally = reducers.apply_vote_event(event, before)
		try:
			await self._service.cast_vote(self.decision_id, option_id, voter)
		except Exception:
			self.tally = before
			raise
		await self.refresh()


class ExpenseLedgerSession:
	"""Live expense list and running total for one group."""

	def __init__(self, service: CollabService, group_id: str, user_id: Optional[str]) -> None:
		self._service = service
		self.group_id = group_id
		self.user_id = user_id
		self.ledger = reducers.ExpenseLedger()
		self._reconciler: SnapshotReconciler[ExpenseSnapshot] = SnapshotReconciler(
			self._fetch, self._apply, kind="expenses"
		)
		self._unsubscribe: Optional[Unsubscribe] = None

	async def _fetch(self) -> ExpenseSnapshot:
		return await fetch_expense_snapshot(self._service.repository, self.group_id, settings.collab_expenses_limit)

	def _apply(self, snapshot: ExpenseSnapshot) -> None:
		self.ledger = snapshot.to_ledger()

	async def open(self) -> None:
		await self.refresh()
		self._unsubscribe = self._service.feed.subscribe(
			expenses_topic(self.group_id),
			self._on_event,
			on_resume=self.refresh,
		)

	def close(self) -> None:
		if self._unsubscribe is not None:
			self._unsubscribe()
			self._unsubscribe = None

	async def refresh(self) -> None:
		await self._reconciler.refresh()

	async def _on_event(self, event: models.ChangeEvent) -> None:
		if event.type == models.EXPENSE_CHANGE:
			self.ledger = reducers.apply_expense_event(event, self.ledger)
		await self.refresh()

	async def add_expense(self, item: Any, amount: Any, **fields: Any) -> models.Expense:
		policy.require_text(item, "item", limit=policy.MAX_ITEM_LENGTH)
		policy.validate_amount(amount)
		return await self._service.add_expense(
			self.group_id,
			user_id=self.user_id,
			item=item,
			amount=amount,
			**fields,
		)


class ChallengeBoardSession:
	"""Challenge list for one group with optimistic join/decline."""

	def __init__(self, service: CollabService, group_id: str, user_id: Optional[str]) -> None:
		self._service = service
		self.group_id = group_id
		self.user_id = user_id
		self.challenges: Dict[str, ChallengeView] = {}

	async def open(self) -> None:
		await self.reload()

	async def reload(self) -> None:
		views = await self._service.list_challenges(self.group_id, user_id=self.user_id)
		self.challenges = {view.challenge.id: view for view in views}

	async def join(self, challenge_id: str) -> models.ChallengeMembership:
		before = dict(self.challenges)
		view = self.challenges.get(challenge_id)
		if view is not None:
			self.challenges[challenge_id] = ChallengeView(
				challenge=view.challenge,
				membership=models.ChallengeMembership(
					challenge_id=challenge_id,
					user_id=str(self.user_id or ""),
					status=models.MEMBERSHIP_JOINED,
					updated_at=datetime.now(timezone.utc),
				),
			)
		try:
			membership = await self._service.join_challenge(challenge_id, user_id=self.user_id)
		except Exception:
			self.challenges = before
			raise
		await self.reload()
		return membership

	async def decline(self, challenge_id: str) -> models.ChallengeMembership:
		before = dict(self.challenges)
		self.challenges.pop(challenge_id, None)
		try:
			membership = await self._service.decline_challenge(challenge_id, user_id=self.user_id)
		except Exception:
			self.challenges = before
			raise
		await self.reload()
		return membership
