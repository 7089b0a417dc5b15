"""Persistence for group collaboration: asyncpg when a pool is reachable, memory otherwise."""

from __future__ import annotations

import asyncio
import json
import logging
from datetime import datetime, timezone
from decimal import Decimal
from typing import Dict, Iterable, List, Optional

import asyncpg

from isle.domain.collab import decisions, models, policy
from isle.infra.postgres import get_pool

logger = logging.getLogger(__name__)


def _now() -> datetime:
	return datetime.now(timezone.utc)


class _MemoryStore:
	def __init__(self) -> None:
		self._lock = asyncio.Lock()
		self.groups: Dict[str, models.Group] = {}
		self.members: Dict[tuple[str, str], models.Member] = {}
		self.decisions: Dict[str, models.Decision] = {}
		self.options: Dict[str, models.DecisionOption] = {}
		self.votes: Dict[tuple[str, str], models.Vote] = {}
		self.activities: Dict[str, models.GroupActivity] = {}
		self.expenses: Dict[str, models.Expense] = {}
		self.budgets: Dict[str, models.Budget] = {}
		self.challenges: Dict[str, models.GroupChallenge] = {}
		self.challenge_memberships: Dict[tuple[str, str], models.ChallengeMembership] = {}

	async def reset(self) -> None:
		async with self._lock:
			self.groups.clear()
			self.members.clear()
			self.decisions.clear()
			self.options.clear()
			self.votes.clear()
			self.activities.clear()
			self.expenses.clear()
			self.budgets.clear()
			self.challenges.clear()
			self.challenge_memberships.clear()

	async def create_group(self, group: models.Group, owner: models.Member) -> models.Group:
		async with self._lock:
			self.groups[group.id] = group
			self.members[(owner.group_id, owner.user_id)] = owner
			return group

	async def get_group(self, group_id: str) -> Optional[models.Group]:
		async with self._lock:
			return self.groups.get(group_id)

	async def list_groups_for_user(self, user_id: str) -> List[models.Group]:
		async with self._lock:
			ids = {gid for (gid, uid) in self.members if uid == user_id}
			groups = [self.groups[gid] for gid in ids if gid in self.groups]
		return sorted(groups, key=lambda g: g.created_at, reverse=True)

	async def add_member(self, member: models.Member) -> Optional[models.Member]:
		async with self._lock:
			key = (member.group_id, member.user_id)
			if key in self.members:
				return None
			self.members[key] = member
			return member

	async def get_member(self, group_id: str, user_id: str) -> Optional[models.Member]:
		async with self._lock:
			return self.members.get((group_id, user_id))

	async def list_members(self, group_id: str) -> List[models.Member]:
		async with self._lock:
			rows = [m for (gid, _), m in self.members.items() if gid == group_id]
		return sorted(rows, key=lambda m: m.joined_at)

	async def count_members(self, group_id: str) -> int:
		async with self._lock:
			return sum(1 for (gid, _) in self.members if gid == group_id)

	async def create_decision(self, decision: models.Decision, options: List[models.DecisionOption]) -> models.Decision:
		async with self._lock:
			self.decisions[decision.id] = decision
			for option in options:
				self.options[option.id] = option
			return decision

	async def get_decision(self, decision_id: str) -> Optional[models.Decision]:
		async with self._lock:
			return self.decisions.get(decision_id)

	async def list_decisions(self, group_id: str, limit: int) -> List[models.Decision]:
		async with self._lock:
			rows = [d for d in self.decisions.values() if d.group_id == group_id]
		rows.sort(key=lambda d: d.created_at, reverse=True)
		return rows[:limit]

	async def get_option(self, option_id: str) -> Optional[models.DecisionOption]:
		async with self._lock:
			return self.options.get(option_id)

	async def list_options(self, decision_ids: Iterable[str]) -> List[models.DecisionOption]:
		wanted = set(decision_ids)
		async with self._lock:
			rows = [o for o in self.options.values() if o.decision_id in wanted]
		return sorted(rows, key=lambda o: o.created_at)

	async def upsert_vote(self, vote: models.Vote) -> Optional[models.Vote]:
		async with self._lock:
			key = (vote.decision_id, vote.user_id)
			previous = self.votes.get(key)
			self.votes[key] = vote
			return previous

	async def delete_vote(self, decision_id: str, user_id: str) -> Optional[models.Vote]:
		async with self._lock:
			return self.votes.pop((decision_id, user_id), None)

	async def list_votes(self, decision_ids: Iterable[str]) -> List[models.Vote]:
		wanted = set(decision_ids)
		async with self._lock:
			return [v for (did, _), v in self.votes.items() if did in wanted]

	async def resolve_decision(
		self,
		decision_id: str,
		actor_id: str,
		*,
		now: datetime,
		activity_id: str,
	) -> Optional[models.Resolution]:
		async with self._lock:
			decision = self.decisions.get(decision_id)
			if decision is None or not decision.is_open():
				return None
			options = [o for o in self.options.values() if o.decision_id == decision_id]
			counts: Dict[str, int] = {}
			for (did, _), vote in self.votes.items():
				if did == decision_id:
					counts[vote.option_id] = counts.get(vote.option_id, 0) + 1
			member_count = sum(1 for (gid, _) in self.members if gid == decision.group_id)
			yes_id, no_id = decisions.find_yes_no(options)
			target = decisions.evaluate(counts, yes_id, no_id, member_count)
			if target is None:
				return None
			decisions.ensure_transition(decision.status, target)
			previous = decision.status
			decision.status = target
			activity = None
			if target == models.DECISION_APPROVED:
				decision.approved_option_id = yes_id
				decision.approved_by = actor_id
				decision.approved_at = now
				activity = decisions.activity_from_proposal(decision, activity_id=activity_id, actor_id=actor_id, created_at=now)
				self.activities[activity.id] = activity
			return models.Resolution(decision=decision, previous_status=previous, activity=activity)

	async def list_activities(self, group_id: str, limit: int) -> List[models.GroupActivity]:
		async with self._lock:
			rows = [a for a in self.activities.values() if a.group_id == group_id]
		rows.sort(key=lambda a: a.created_at, reverse=True)
		return rows[:limit]

	async def insert_expense(self, expense: models.Expense) -> models.Expense:
		async with self._lock:
			self.expenses[expense.id] = expense
			return expense

	async def get_expense(self, expense_id: str) -> Optional[models.Expense]:
		async with self._lock:
			return self.expenses.get(expense_id)

	async def update_expense(self, expense: models.Expense) -> Optional[models.Expense]:
		async with self._lock:
			previous = self.expenses.get(expense.id)
			if previous is None:
				return None
			self.expenses[expense.id] = expense
			return previous

	async def delete_expense(self, expense_id: str) -> Optional[models.Expense]:
		async with self._lock:
			return self.expenses.pop(expense_id, None)

	async def list_expenses(self, group_id: str, limit: int) -> List[models.Expense]:
		async with self._lock:
			rows = [e for e in self.expenses.values() if e.group_id == group_id]
		rows.sort(key=lambda e: e.created_at, reverse=True)
		return rows[:limit]

	async def upsert_budget(self, budget: models.Budget) -> Optional[models.Budget]:
		async with self._lock:
			previous = self.budgets.get(budget.group_id)
			self.budgets[budget.group_id] = budget
			return previous

	async def get_budget(self, group_id: str) -> Optional[models.Budget]:
		async with self._lock:
			return self.budgets.get(group_id)

	async def create_challenge(self, challenge: models.GroupChallenge) -> models.GroupChallenge:
		async with self._lock:
			self.challenges[challenge.id] = challenge
			return challenge

	async def get_challenge(self, challenge_id: str) -> Optional[models.GroupChallenge]:
		async with self._lock:
			return self.challenges.get(challenge_id)

	async def list_active_challenges(self, group_id: str) -> List[models.GroupChallenge]:
		async with self._lock:
			rows = [
				c
				for c in self.challenges.values()
				if c.group_id == group_id and c.status == models.CHALLENGE_ACTIVE
			]
		return sorted(rows, key=lambda c: c.created_at, reverse=True)

	async def upsert_challenge_membership(
		self, membership: models.ChallengeMembership
	) -> Optional[models.ChallengeMembership]:
		async with self._lock:
			key = (membership.challenge_id, membership.user_id)
			previous = self.challenge_memberships.get(key)
			policy.ensure_membership_writable(previous, membership.status)
			self.challenge_memberships[key] = membership
			return previous

	async def list_challenge_memberships(
		self, challenge_ids: Iterable[str], user_id: str
	) -> List[models.ChallengeMembership]:
		wanted = set(challenge_ids)
		async with self._lock:
			return [
				m
				for (cid, uid), m in self.challenge_memberships.items()
				if cid in wanted and uid == user_id
			]


_MEMORY = _MemoryStore()


class CollabRepository:
	def __init__(self) -> None:
		self._pool_checked = False
		self._pool: Optional[asyncpg.Pool] = None

	async def _pool_or_none(self) -> Optional[asyncpg.Pool]:
		if self._pool_checked:
			return self._pool
		self._pool_checked = True
		try:
			pool = await get_pool()
		except AssertionError:
			pool = None
		except Exception:
			logger.warning("collab.repo.pool_unavailable", exc_info=True)
			pool = None
		self._pool = pool
		return pool

	# Groups and members

	async def create_group(self, group: models.Group, owner: models.Member) -> models.Group:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.create_group(group, owner)
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO groups (id, name, destination, trip_start, trip_end, created_by, created_at)
					VALUES ($1,$2,$3,$4,$5,$6,$7)
					""",
					group.id,
					group.name,
					group.destination,
					group.trip_start,
					group.trip_end,
					group.created_by,
					group.created_at,
				)
				await conn.execute(
					"""
					INSERT INTO group_members (group_id, user_id, role, joined_at)
					VALUES ($1,$2,$3,$4)
					""",
					owner.group_id,
					owner.user_id,
					owner.role,
					owner.joined_at,
				)
		return group

	async def get_group(self, group_id: str) -> Optional[models.Group]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_group(group_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM groups WHERE id=$1", group_id)
		return _row_to_group(row) if row else None

	async def list_groups_for_user(self, user_id: str) -> List[models.Group]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_groups_for_user(user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT g.* FROM groups g
				JOIN group_members m ON m.group_id = g.id
				WHERE m.user_id = $1
				ORDER BY g.created_at DESC
				""",
				user_id,
			)
		return [_row_to_group(row) for row in rows]

	async def add_member(self, member: models.Member) -> Optional[models.Member]:
		"""Insert a membership; None when the user already belongs to the group."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.add_member(member)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				INSERT INTO group_members (group_id, user_id, role, joined_at)
				VALUES ($1,$2,$3,$4)
				ON CONFLICT (group_id, user_id) DO NOTHING
				RETURNING *
				""",
				member.group_id,
				member.user_id,
				member.role,
				member.joined_at,
			)
		return _row_to_member(row) if row else None

	async def get_member(self, group_id: str, user_id: str) -> Optional[models.Member]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_member(group_id, user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"SELECT * FROM group_members WHERE group_id=$1 AND user_id=$2",
				group_id,
				user_id,
			)
		return _row_to_member(row) if row else None

	async def list_members(self, group_id: str) -> List[models.Member]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_members(group_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM group_members WHERE group_id=$1 ORDER BY joined_at",
				group_id,
			)
		return [_row_to_member(row) for row in rows]

	async def count_members(self, group_id: str) -> int:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.count_members(group_id)
		async with pool.acquire() as conn:
			value = await conn.fetchval("SELECT COUNT(*) FROM group_members WHERE group_id=$1", group_id)
		return int(value or 0)

	# Decisions, options and votes

	async def create_decision(self, decision: models.Decision, options: List[models.DecisionOption]) -> models.Decision:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.create_decision(decision, options)
		async with pool.acquire() as conn:
			async with conn.transaction():
				await conn.execute(
					"""
					INSERT INTO group_decisions (id, group_id, proposal, status, created_by, created_at)
					VALUES ($1,$2,$3,$4,$5,$6)
					""",
					decision.id,
					decision.group_id,
					json.dumps(decision.proposal.to_dict()),
					decision.status,
					decision.created_by,
					decision.created_at,
				)
				await conn.executemany(
					"""
					INSERT INTO group_decision_options (id, decision_id, label, created_at)
					VALUES ($1,$2,$3,$4)
					""",
					[(o.id, o.decision_id, o.label, o.created_at) for o in options],
				)
		return decision

	async def get_decision(self, decision_id: str) -> Optional[models.Decision]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_decision(decision_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM group_decisions WHERE id=$1", decision_id)
		return _row_to_decision(row) if row else None

	async def list_decisions(self, group_id: str, limit: int) -> List[models.Decision]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_decisions(group_id, limit)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_decisions
				WHERE group_id=$1
				ORDER BY created_at DESC
				LIMIT $2
				""",
				group_id,
				limit,
			)
		return [_row_to_decision(row) for row in rows]

	async def get_option(self, option_id: str) -> Optional[models.DecisionOption]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_option(option_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM group_decision_options WHERE id=$1", option_id)
		return _row_to_option(row) if row else None

	async def list_options(self, decision_ids: Iterable[str]) -> List[models.DecisionOption]:
		ids = list(decision_ids)
		if not ids:
			return []
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_options(ids)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_decision_options
				WHERE decision_id = ANY($1::text[])
				ORDER BY created_at
				""",
				ids,
			)
		return [_row_to_option(row) for row in rows]

	async def upsert_vote(self, vote: models.Vote) -> Optional[models.Vote]:
		"""Write the (decision, user) vote; returns the vote it replaced, if any."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.upsert_vote(vote)
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await conn.fetchrow(
					"""
					SELECT * FROM group_decision_votes
					WHERE decision_id=$1 AND user_id=$2
					FOR UPDATE
					""",
					vote.decision_id,
					vote.user_id,
				)
				await conn.execute(
					"""
					INSERT INTO group_decision_votes (decision_id, user_id, option_id, updated_at)
					VALUES ($1,$2,$3,$4)
					ON CONFLICT (decision_id, user_id)
					DO UPDATE SET option_id=EXCLUDED.option_id, updated_at=EXCLUDED.updated_at
					""",
					vote.decision_id,
					vote.user_id,
					vote.option_id,
					vote.updated_at,
				)
		return _row_to_vote(previous) if previous else None

	async def delete_vote(self, decision_id: str, user_id: str) -> Optional[models.Vote]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.delete_vote(decision_id, user_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow(
				"""
				DELETE FROM group_decision_votes
				WHERE decision_id=$1 AND user_id=$2
				RETURNING *
				""",
				decision_id,
				user_id,
			)
		return _row_to_vote(row) if row else None

	async def list_votes(self, decision_ids: Iterable[str]) -> List[models.Vote]:
		ids = list(decision_ids)
		if not ids:
			return []
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_votes(ids)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"SELECT * FROM group_decision_votes WHERE decision_id = ANY($1::text[])",
				ids,
			)
		return [_row_to_vote(row) for row in rows]

	async def resolve_decision(
		self,
		decision_id: str,
		actor_id: str,
		*,
		now: datetime,
		activity_id: str,
	) -> Optional[models.Resolution]:
		"""Recount and transition an open decision in one guarded step.

		The decision row is locked, votes and members are counted under that lock,
		and the status update only applies while the row is still `open`. Returns
		None when the decision stays open or someone else already resolved it.
		"""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.resolve_decision(decision_id, actor_id, now=now, activity_id=activity_id)
		async with pool.acquire() as conn:
			async with conn.transaction():
				row = await conn.fetchrow(
					"SELECT * FROM group_decisions WHERE id=$1 FOR UPDATE",
					decision_id,
				)
				if not row:
					return None
				decision = _row_to_decision(row)
				if not decision.is_open():
					return None
				option_rows = await conn.fetch(
					"SELECT * FROM group_decision_options WHERE decision_id=$1",
					decision_id,
				)
				count_rows = await conn.fetch(
					"""
					SELECT option_id, COUNT(*) AS votes
					FROM group_decision_votes
					WHERE decision_id=$1
					GROUP BY option_id
					""",
					decision_id,
				)
				member_count = await conn.fetchval(
					"SELECT COUNT(*) FROM group_members WHERE group_id=$1",
					decision.group_id,
				)
				options = [_row_to_option(r) for r in option_rows]
				counts = {str(r["option_id"]): int(r["votes"]) for r in count_rows}
				yes_id, no_id = decisions.find_yes_no(options)
				target = decisions.evaluate(counts, yes_id, no_id, int(member_count or 0))
				if target is None:
					return None
				decisions.ensure_transition(decision.status, target)
				approved = target == models.DECISION_APPROVED
				updated = await conn.fetchrow(
					"""
					UPDATE group_decisions
					SET status=$2, approved_option_id=$3, approved_by=$4, approved_at=$5
					WHERE id=$1 AND status='open'
					RETURNING *
					""",
					decision_id,
					target,
					yes_id if approved else None,
					actor_id if approved else None,
					now if approved else None,
				)
				if not updated:
					return None
				resolved = _row_to_decision(updated)
				activity = None
				if approved:
					activity = decisions.activity_from_proposal(
						resolved, activity_id=activity_id, actor_id=actor_id, created_at=now
					)
					await conn.execute(
						"""
						INSERT INTO group_activities
							(id, group_id, decision_id, title, starts_at, location, notes, status, created_by, created_at)
						VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10)
						""",
						activity.id,
						activity.group_id,
						activity.decision_id,
						activity.title,
						activity.starts_at,
						activity.location,
						activity.notes,
						activity.status,
						activity.created_by,
						activity.created_at,
					)
		return models.Resolution(decision=resolved, previous_status=decision.status, activity=activity)

	async def list_activities(self, group_id: str, limit: int) -> List[models.GroupActivity]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_activities(group_id, limit)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_activities
				WHERE group_id=$1
				ORDER BY created_at DESC
				LIMIT $2
				""",
				group_id,
				limit,
			)
		return [_row_to_activity(row) for row in rows]

	# Expenses and budget

	async def insert_expense(self, expense: models.Expense) -> models.Expense:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.insert_expense(expense)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO group_expenses (id, group_id, item, amount, occurred_on, paid_by, created_at)
				VALUES ($1,$2,$3,$4,$5,$6,$7)
				""",
				expense.id,
				expense.group_id,
				expense.item,
				expense.amount,
				expense.occurred_on,
				expense.paid_by,
				expense.created_at,
			)
		return expense

	async def get_expense(self, expense_id: str) -> Optional[models.Expense]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_expense(expense_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM group_expenses WHERE id=$1", expense_id)
		return _row_to_expense(row) if row else None

	async def update_expense(self, expense: models.Expense) -> Optional[models.Expense]:
		"""Overwrite an expense; returns the previous row or None if it vanished."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.update_expense(expense)
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await conn.fetchrow(
					"SELECT * FROM group_expenses WHERE id=$1 FOR UPDATE",
					expense.id,
				)
				if not previous:
					return None
				await conn.execute(
					"""
					UPDATE group_expenses
					SET item=$2, amount=$3, occurred_on=$4, paid_by=$5
					WHERE id=$1
					""",
					expense.id,
					expense.item,
					expense.amount,
					expense.occurred_on,
					expense.paid_by,
				)
		return _row_to_expense(previous)

	async def delete_expense(self, expense_id: str) -> Optional[models.Expense]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.delete_expense(expense_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("DELETE FROM group_expenses WHERE id=$1 RETURNING *", expense_id)
		return _row_to_expense(row) if row else None

	async def list_expenses(self, group_id: str, limit: int) -> List[models.Expense]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_expenses(group_id, limit)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_expenses
				WHERE group_id=$1
				ORDER BY created_at DESC
				LIMIT $2
				""",
				group_id,
				limit,
			)
		return [_row_to_expense(row) for row in rows]

	async def upsert_budget(self, budget: models.Budget) -> Optional[models.Budget]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.upsert_budget(budget)
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await conn.fetchrow(
					"SELECT * FROM group_budgets WHERE group_id=$1 FOR UPDATE",
					budget.group_id,
				)
				await conn.execute(
					"""
					INSERT INTO group_budgets (group_id, amount, updated_at)
					VALUES ($1,$2,$3)
					ON CONFLICT (group_id)
					DO UPDATE SET amount=EXCLUDED.amount, updated_at=EXCLUDED.updated_at
					""",
					budget.group_id,
					budget.amount,
					budget.updated_at,
				)
		return _row_to_budget(previous) if previous else None

	async def get_budget(self, group_id: str) -> Optional[models.Budget]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_budget(group_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM group_budgets WHERE group_id=$1", group_id)
		return _row_to_budget(row) if row else None

	# Challenges

	async def create_challenge(self, challenge: models.GroupChallenge) -> models.GroupChallenge:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.create_challenge(challenge)
		async with pool.acquire() as conn:
			await conn.execute(
				"""
				INSERT INTO group_challenges
					(id, group_id, title, description, reward, duration_hours, audience, status, created_by, created_at)
				VALUES ($1,$2,$3,$4,$5,$6,$7,$8,$9,$10)
				""",
				challenge.id,
				challenge.group_id,
				challenge.title,
				challenge.description,
				challenge.reward,
				challenge.duration_hours,
				challenge.audience,
				challenge.status,
				challenge.created_by,
				challenge.created_at,
			)
		return challenge

	async def get_challenge(self, challenge_id: str) -> Optional[models.GroupChallenge]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.get_challenge(challenge_id)
		async with pool.acquire() as conn:
			row = await conn.fetchrow("SELECT * FROM group_challenges WHERE id=$1", challenge_id)
		return _row_to_challenge(row) if row else None

	async def list_active_challenges(self, group_id: str) -> List[models.GroupChallenge]:
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_active_challenges(group_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_challenges
				WHERE group_id=$1 AND status='active'
				ORDER BY created_at DESC
				""",
				group_id,
			)
		return [_row_to_challenge(row) for row in rows]

	async def upsert_challenge_membership(
		self, membership: models.ChallengeMembership
	) -> Optional[models.ChallengeMembership]:
		"""Write the (challenge, user) membership; returns the row it replaced."""
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.upsert_challenge_membership(membership)
		async with pool.acquire() as conn:
			async with conn.transaction():
				previous = await conn.fetchrow(
					"""
					SELECT * FROM group_challenge_memberships
					WHERE challenge_id=$1 AND user_id=$2
					FOR UPDATE
					""",
					membership.challenge_id,
					membership.user_id,
				)
				if previous is not None:
					policy.ensure_membership_writable(_row_to_challenge_membership(previous), membership.status)
				await conn.execute(
					"""
					INSERT INTO group_challenge_memberships (challenge_id, user_id, status, expires_at, progress, updated_at)
					VALUES ($1,$2,$3,$4,$5,$6)
					ON CONFLICT (challenge_id, user_id)
					DO UPDATE SET status=EXCLUDED.status, expires_at=EXCLUDED.expires_at,
						progress=EXCLUDED.progress, updated_at=EXCLUDED.updated_at
					WHERE group_challenge_memberships.status <> 'declined' OR EXCLUDED.status = 'declined'
					""",
					membership.challenge_id,
					membership.user_id,
					membership.status,
					membership.expires_at,
					membership.progress,
					membership.updated_at,
				)
		return _row_to_challenge_membership(previous) if previous else None

	async def list_challenge_memberships(
		self, challenge_ids: Iterable[str], user_id: str
	) -> List[models.ChallengeMembership]:
		ids = list(challenge_ids)
		if not ids:
			return []
		pool = await self._pool_or_none()
		if pool is None:
			return await _MEMORY.list_challenge_memberships(ids, user_id)
		async with pool.acquire() as conn:
			rows = await conn.fetch(
				"""
				SELECT * FROM group_challenge_memberships
				WHERE challenge_id = ANY($1::text[]) AND user_id=$2
				""",
				ids,
				user_id,
			)
		return [_row_to_challenge_membership(row) for row in rows]


def _row_to_group(row: asyncpg.Record) -> models.Group:
	return models.Group(
		id=str(row["id"]),
		name=row["name"],
		destination=row.get("destination"),
		trip_start=row.get("trip_start"),
		trip_end=row.get("trip_end"),
		created_by=str(row["created_by"]),
		created_at=row["created_at"],
	)


def _row_to_member(row: asyncpg.Record) -> models.Member:
	return models.Member(
		group_id=str(row["group_id"]),
		user_id=str(row["user_id"]),
		role=row["role"],
		joined_at=row["joined_at"],
	)


def _row_to_decision(row: asyncpg.Record) -> models.Decision:
	proposal_value = row["proposal"]
	if isinstance(proposal_value, str):
		proposal = models.DecisionProposal.from_dict(json.loads(proposal_value))
	elif proposal_value:
		proposal = models.DecisionProposal.from_dict(dict(proposal_value))
	else:
		proposal = models.DecisionProposal.from_legacy(row.get("question"))
	approved_option_id = row.get("approved_option_id")
	return models.Decision(
		id=str(row["id"]),
		group_id=str(row["group_id"]),
		proposal=proposal,
		status=row["status"],
		created_by=str(row["created_by"]),
		created_at=row["created_at"],
		approved_option_id=str(approved_option_id) if approved_option_id else None,
		approved_by=row.get("approved_by"),
		approved_at=row.get("approved_at"),
	)


def _row_to_option(row: asyncpg.Record) -> models.DecisionOption:
	return models.DecisionOption(
		id=str(row["id"]),
		decision_id=str(row["decision_id"]),
		label=row["label"],
		created_at=row["created_at"],
	)


def _row_to_vote(row: asyncpg.Record) -> models.Vote:
	return models.Vote(
		decision_id=str(row["decision_id"]),
		user_id=str(row["user_id"]),
		option_id=str(row["option_id"]),
		updated_at=row["updated_at"],
	)


def _row_to_activity(row: asyncpg.Record) -> models.GroupActivity:
	decision_id = row.get("decision_id")
	return models.GroupActivity(
		id=str(row["id"]),
		group_id=str(row["group_id"]),
		decision_id=str(decision_id) if decision_id else None,
		title=row["title"],
		starts_at=row.get("starts_at"),
		location=row.get("location"),
		notes=row.get("notes"),
		status=row.get("status") or "planned",
		created_by=str(row["created_by"]),
		created_at=row["created_at"],
	)


def _row_to_expense(row: asyncpg.Record) -> models.Expense:
	return models.Expense(
		id=str(row["id"]),
		group_id=str(row["group_id"]),
		item=row["item"],
		amount=Decimal(row["amount"]),
		occurred_on=row.get("occurred_on"),
		paid_by=row.get("paid_by"),
		created_at=row["created_at"],
	)


def _row_to_budget(row: asyncpg.Record) -> models.Budget:
	return models.Budget(
		group_id=str(row["group_id"]),
		amount=Decimal(row["amount"]),
		updated_at=row["updated_at"],
	)


def _row_to_challenge(row: asyncpg.Record) -> models.GroupChallenge:
	return models.GroupChallenge(
		id=str(row["id"]),
		group_id=str(row["group_id"]),
		title=row["title"],
		description=row.get("description") or "",
		reward=row.get("reward"),
		duration_hours=int(row.get("duration_hours") or 24),
		audience=row.get("audience") or "Group",
		status=row["status"],
		created_by=str(row["created_by"]),
		created_at=row["created_at"],
	)


def _row_to_challenge_membership(row: asyncpg.Record) -> models.ChallengeMembership:
	return models.ChallengeMembership(
		challenge_id=str(row["challenge_id"]),
		user_id=str(row["user_id"]),
		status=row["status"],
		expires_at=row.get("expires_at"),
		progress=row.get("progress") or "0%",
		updated_at=row["updated_at"],
	)


async def reset_memory_state() -> None:
	await _MEMORY.reset()
