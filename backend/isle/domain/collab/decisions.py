"""Decision lifecycle: majority threshold and the open -> approved/declined transition.

A decision starts `open` and leaves it exactly once. Two disjoint majorities of
the same group cannot exist (`floor(n/2) + 1` votes each would need more than
`n` voters), so "Yes" and "No" can never both reach the threshold.
"""

from __future__ import annotations

import logging
from typing import Awaitable, Callable, Hashable, Iterable, Mapping, Optional

from isle.domain.collab import models
from isle.domain.collab.policy import CollabPolicyError
from isle.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

_TRANSITIONS: dict[str, frozenset[str]] = {
	models.DECISION_OPEN: frozenset({models.DECISION_APPROVED, models.DECISION_DECLINED}),
	models.DECISION_APPROVED: frozenset(),
	models.DECISION_DECLINED: frozenset(),
}


def majority_threshold(member_count: int) -> int:
	"""Votes needed to carry a decision; 0 means nobody can carry it."""
	n = int(member_count or 0)
	if n <= 0:
		return 0
	return n // 2 + 1


def is_terminal(status: str) -> bool:
	return status in (models.DECISION_APPROVED, models.DECISION_DECLINED)


def can_transition(current: str, target: str) -> bool:
	return target in _TRANSITIONS.get(current, frozenset())


def ensure_transition(current: str, target: str) -> None:
	if not can_transition(current, target):
		raise CollabPolicyError("invalid_transition", status_code=409, message=f"{current}->{target}")


def find_yes_no(options: Iterable[models.DecisionOption]) -> tuple[Optional[str], Optional[str]]:
	"""Locate the Yes/No options by label, case-insensitively."""
	yes_id: Optional[str] = None
	no_id: Optional[str] = None
	for option in options:
		label = str(option.label or "").strip().lower()
		if label == models.YES_LABEL.lower() and yes_id is None:
			yes_id = option.id
		elif label == models.NO_LABEL.lower() and no_id is None:
			no_id = option.id
	return yes_id, no_id


def evaluate(
	counts: Mapping[Hashable, int],
	yes_option_id: Optional[Hashable],
	no_option_id: Optional[Hashable],
	member_count: int,
) -> Optional[str]:
	"""Return the status an open decision should move to, or None to stay open."""
	majority = majority_threshold(member_count)
	if majority == 0 or yes_option_id is None or no_option_id is None:
		return None
	yes_votes = int(counts.get(yes_option_id, 0) or 0)
	no_votes = int(counts.get(no_option_id, 0) or 0)
	if yes_votes >= majority:
		return models.DECISION_APPROVED
	if no_votes >= majority:
		return models.DECISION_DECLINED
	return None


def activity_from_proposal(
	decision: models.Decision,
	*,
	activity_id: str,
	actor_id: str,
	created_at,
) -> models.GroupActivity:
	proposal = decision.proposal
	return models.GroupActivity(
		id=activity_id,
		group_id=decision.group_id,
		decision_id=decision.id,
		title=proposal.title or "Activity",
		starts_at=proposal.starts_at,
		location=proposal.location,
		notes=proposal.notes,
		created_by=actor_id,
		created_at=created_at,
	)


ResolveFn = Callable[[str, str], Awaitable[Optional[models.Resolution]]]


class DecisionResolver:
	"""Client-side trigger for decision transitions.

	Whichever client first sees a threshold crossing asks the store to resolve.
	The store re-checks under its own guard, so a losing client just gets None
	back. The in-flight set keeps one client from firing twice for the same
	decision while a request is outstanding.
	"""

	def __init__(self, resolve: ResolveFn) -> None:
		self._resolve = resolve
		self._in_flight: set[str] = set()

	def in_flight(self, decision_id: str) -> bool:
		return decision_id in self._in_flight

	async def maybe_resolve(
		self,
		decision: models.Decision,
		options: Iterable[models.DecisionOption],
		counts: Mapping[Hashable, int],
		member_count: int,
		actor_id: Optional[str],
	) -> Optional[models.Resolution]:
		if not actor_id or not decision.is_open():
			return None
		yes_id, no_id = find_yes_no(options)
		if evaluate(counts, yes_id, no_id, member_count) is None:
			return None
		if decision.id in self._in_flight:
			return None
		self._in_flight.add(decision.id)
		try:
			resolution = await self._resolve(decision.id, actor_id)
		except Exception:
			logger.warning("collab.decision.resolve_failed", extra={"decision_id": decision.id}, exc_info=True)
			return None
		finally:
			self._in_flight.discard(decision.id)
		if resolution is None:
			obs_metrics.inc_resolve_race_lost()
			logger.debug("collab.decision.race_lost", extra={"decision_id": decision.id})
		return resolution
