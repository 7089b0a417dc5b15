"""Group collaboration service: writes, reads and change notifications."""

from __future__ import annotations

import logging
import uuid
from dataclasses import dataclass
from datetime import date, datetime, timedelta, timezone
from decimal import Decimal
from typing import Any, Dict, Iterable, List, Optional

from isle.domain.collab import decisions, models, outbox, policy, reducers, schemas
from isle.domain.collab.feed import ChangeFeed, change_feed, decision_topic, expenses_topic, overview_topic
from isle.domain.collab.membership import MembershipProvider
from isle.domain.collab.repo import CollabRepository
from isle.obs import metrics as obs_metrics
from isle.settings import settings

logger = logging.getLogger(__name__)


def _now() -> datetime:
	return datetime.now(timezone.utc)


def _new_id() -> str:
	return str(uuid.uuid4())


@dataclass(slots=True)
class DecisionView:
	decision: models.Decision
	options: List[models.DecisionOption]
	counts: Dict[str, int]
	my_vote: Optional[str] = None
	member_count: int = 0

	@property
	def majority(self) -> int:
		return decisions.majority_threshold(self.member_count)


@dataclass(slots=True)
class VoteOutcome:
	vote: models.Vote
	previous: Optional[models.Vote]
	resolution: Optional[models.Resolution] = None


@dataclass(slots=True)
class ExpensesView:
	expenses: List[models.Expense]
	total_spent: Decimal
	budget: Optional[models.Budget] = None


@dataclass(slots=True)
class ChallengeView:
	challenge: models.GroupChallenge
	membership: Optional[models.ChallengeMembership] = None

	@property
	def my_status(self) -> Optional[str]:
		return self.membership.status if self.membership else None


@dataclass(slots=True)
class _Notice:
	type: str
	event_type: str
	topics: List[str]
	new: Optional[Dict[str, Any]] = None
	old: Optional[Dict[str, Any]] = None
	table: Optional[str] = None


class CollabService:
	def __init__(
		self,
		repository: CollabRepository | None = None,
		feed: ChangeFeed | None = None,
		membership: MembershipProvider | None = None,
	) -> None:
		self._repo = repository or CollabRepository()
		self._feed = feed or change_feed
		self._membership = membership or MembershipProvider(self._repo)

	@property
	def repository(self) -> CollabRepository:
		return self._repo

	@property
	def membership(self) -> MembershipProvider:
		return self._membership

	@property
	def feed(self) -> ChangeFeed:
		return self._feed

	async def _notify(self, notice: _Notice) -> None:
		payload = models.ChangePayload(
			event_type=notice.event_type,
			new=notice.new,
			old=notice.old,
			table=notice.table,
		)
		for topic in notice.topics:
			event = models.ChangeEvent(
				type=notice.type,
				payload=payload,
				topic=topic,
				origin=self._feed.origin,
			)
			await self._feed.publish(topic, event)
			if settings.collab_feed_relay_enabled:
				try:
					await outbox.append_change(event)
				except Exception:
					obs_metrics.inc_relay_error("append")
					logger.exception("collab.outbox.append_failed", extra={"topic": topic, "event_type": notice.type})

	async def _require_group_member(self, group_id: str, user_id: str) -> models.Group:
		group = policy.ensure_found(await self._repo.get_group(group_id), "group_not_found")
		policy.ensure_member(await self._membership.is_member(group_id, user_id))
		return group

	# Groups

	async def create_group(
		self,
		user_id: Optional[str],
		name: str,
		*,
		destination: Optional[str] = None,
		trip_start: Optional[date] = None,
		trip_end: Optional[date] = None,
	) -> models.Group:
		actor = policy.require_identity(user_id)
		title = policy.require_text(name, "name")
		if trip_start and trip_end and trip_end < trip_start:
			raise policy.CollabPolicyError("invalid_trip_dates", status_code=422)
		now = _now()
		group = models.Group(
			id=_new_id(),
			name=title,
			destination=models.clean_text(destination),
			trip_start=trip_start,
			trip_end=trip_end,
			created_by=actor,
			created_at=now,
		)
		owner = models.Member(group_id=group.id, user_id=actor, role=models.ROLE_OWNER, joined_at=now)
		await self._repo.create_group(group, owner)
		await self._notify(
			_Notice(
				type=models.MEMBER_CHANGE,
				event_type=models.INSERT,
				topics=[overview_topic(group.id)],
				new=owner.to_row(),
				table="group_members",
			)
		)
		logger.info("collab.group.created", extra={"group_id": group.id, "user_id": actor})
		return group

	async def list_my_groups(self, user_id: Optional[str]) -> List[models.Group]:
		actor = policy.require_identity(user_id)
		return await self._repo.list_groups_for_user(actor)

	async def add_member(self, group_id: str, member_id: str, *, actor_id: Optional[str]) -> models.Member:
		actor = policy.require_identity(actor_id)
		await self._require_group_member(group_id, actor)
		new_member_id = policy.require_text(member_id, "user_id")
		member = models.Member(group_id=group_id, user_id=new_member_id, role=models.ROLE_MEMBER, joined_at=_now())
		created = await self._repo.add_member(member)
		if created is None:
			raise policy.CollabPolicyError("already_member", status_code=409)
		await self._notify(
			_Notice(
				type=models.MEMBER_CHANGE,
				event_type=models.INSERT,
				topics=[overview_topic(group_id)],
				new=created.to_row(),
				table="group_members",
			)
		)
		return created

	async def list_members(self, group_id: str, *, actor_id: Optional[str]) -> List[models.Member]:
		actor = policy.require_identity(actor_id)
		await self._require_group_member(group_id, actor)
		return await self._repo.list_members(group_id)

	# Decisions

	async def create_decision(
		self,
		group_id: str,
		proposal: models.DecisionProposal,
		*,
		actor_id: Optional[str],
	) -> DecisionView:
		actor = policy.require_identity(actor_id)
		proposal.title = policy.require_text(proposal.title, "title")
		await self._require_group_member(group_id, actor)
		now = _now()
		decision = models.Decision(
			id=_new_id(),
			group_id=group_id,
			proposal=proposal,
			status=models.DECISION_OPEN,
			created_by=actor,
			created_at=now,
		)
		options = [
			models.DecisionOption(id=_new_id(), decision_id=decision.id, label=label, created_at=now)
			for label in (models.YES_LABEL, models.NO_LABEL)
		]
		await self._repo.create_decision(decision, options)
		topics = [overview_topic(group_id), decision_topic(decision.id)]
		await self._notify(
			_Notice(
				type=models.DECISION_CHANGE,
				event_type=models.INSERT,
				topics=topics,
				new=decision.to_row(),
				table="group_decisions",
			)
		)
		for option in options:
			await self._notify(
				_Notice(
					type=models.OPTION_CHANGE,
					event_type=models.INSERT,
					topics=topics,
					new=option.to_row(),
					table="group_decision_options",
				)
			)
		member_count = await self._membership.member_count(group_id)
		counts = {option.id: 0 for option in options}
		return DecisionView(decision=decision, options=options, counts=counts, member_count=member_count)

	async def _decision_views(
		self,
		items: Iterable[models.Decision],
		user_id: Optional[str],
		member_count: int,
	) -> List[DecisionView]:
		items = list(items)
		ids = [decision.id for decision in items]
		options = await self._repo.list_options(ids)
		votes = await self._repo.list_votes(ids)
		views: List[DecisionView] = []
		for decision in items:
			own_options = [option for option in options if option.decision_id == decision.id]
			ballots = {vote.user_id: vote.option_id for vote in votes if vote.decision_id == decision.id}
			views.append(
				DecisionView(
					decision=decision,
					options=own_options,
					counts=reducers.tally_from_ballots(ballots, [option.id for option in own_options]),
					my_vote=ballots.get(user_id) if user_id else None,
					member_count=member_count,
				)
			)
		return views

	async def list_decisions(self, group_id: str, *, user_id: Optional[str]) -> List[DecisionView]:
		actor = policy.require_identity(user_id)
		await self._require_group_member(group_id, actor)
		items = await self._repo.list_decisions(group_id, settings.collab_decisions_limit)
		member_count = await self._membership.member_count(group_id)
		return await self._decision_views(items, actor, member_count)

	async def decision_init(self, decision_id: str, *, user_id: Optional[str]) -> DecisionView:
		actor = policy.require_identity(user_id)
		decision = policy.ensure_found(await self._repo.get_decision(decision_id), "decision_not_found")
		await self._require_group_member(decision.group_id, actor)
		member_count = await self._membership.member_count(decision.group_id)
		views = await self._decision_views([decision], actor, member_count)
		return views[0]

	async def get_decision(self, decision_id: str) -> Optional[models.Decision]:
		return await self._repo.get_decision(decision_id)

	async def cast_vote(self, decision_id: str, option_id: str, user_id: Optional[str]) -> VoteOutcome:
		"""Record the caller's vote (one per decision) and settle the decision if it crossed a majority."""
		voter = policy.require_identity(user_id)
		decision = policy.ensure_found(await self._repo.get_decision(decision_id), "decision_not_found")
		policy.ensure_decision_open(decision)
		policy.ensure_option_belongs(await self._repo.get_option(option_id), decision)
		policy.ensure_member(await self._membership.is_member(decision.group_id, voter))

		vote = models.Vote(decision_id=decision_id, user_id=voter, option_id=option_id, updated_at=_now())
		previous = await self._repo.upsert_vote(vote)
		obs_metrics.inc_collab_vote("update" if previous else "insert")
		if previous is None or previous.option_id != vote.option_id:
			await self._notify(
				_Notice(
					type=models.VOTE_CHANGE,
					event_type=models.UPDATE if previous else models.INSERT,
					topics=[decision_topic(decision_id), overview_topic(decision.group_id)],
					new=vote.to_row(),
					old=previous.to_row() if previous else None,
					table="group_decision_votes",
				)
			)
		resolution = await self.resolve_decision(decision_id, voter)
		return VoteOutcome(vote=vote, previous=previous, resolution=resolution)

	async def retract_vote(self, decision_id: str, user_id: Optional[str]) -> Optional[models.Vote]:
		voter = policy.require_identity(user_id)
		decision = policy.ensure_found(await self._repo.get_decision(decision_id), "decision_not_found")
		policy.ensure_decision_open(decision)
		removed = await self._repo.delete_vote(decision_id, voter)
		if removed is None:
			return None
		obs_metrics.inc_collab_vote("delete")
		await self._notify(
			_Notice(
				type=models.VOTE_CHANGE,
				event_type=models.DELETE,
				topics=[decision_topic(decision_id), overview_topic(decision.group_id)],
				old=removed.to_row(),
				table="group_decision_votes",
			)
		)
		return removed

	async def resolve_decision(self, decision_id: str, actor_id: Optional[str]) -> Optional[models.Resolution]:
		"""Recount under the store's guard and move an open decision to its terminal state.

		Returns None when the decision stays open or was already resolved.
		"""
		actor = policy.require_identity(actor_id)
		resolution = await self._repo.resolve_decision(decision_id, actor, now=_now(), activity_id=_new_id())
		if resolution is None:
			return None
		decision = resolution.decision
		obs_metrics.inc_decision_resolved(decision.status)
		logger.info(
			"collab.decision.resolved",
			extra={"decision_id": decision.id, "status": decision.status, "user_id": actor},
		)
		old_row = decision.to_row()
		old_row.update(status=resolution.previous_status, approved_option_id=None, approved_by=None, approved_at=None)
		await self._notify(
			_Notice(
				type=models.DECISION_CHANGE,
				event_type=models.UPDATE,
				topics=[decision_topic(decision.id), overview_topic(decision.group_id)],
				new=decision.to_row(),
				old=old_row,
				table="group_decisions",
			)
		)
		if resolution.activity is not None:
			await self._notify(
				_Notice(
					type=models.ACTIVITY_CHANGE,
					event_type=models.INSERT,
					topics=[overview_topic(decision.group_id)],
					new=resolution.activity.to_row(),
					table="group_activities",
				)
			)
		try:
			await outbox.append_decision_event(
				f"decision.{decision.status}",
				decision_id=decision.id,
				group_id=decision.group_id,
				actor_id=actor,
				meta={"activity_id": resolution.activity.id} if resolution.activity else None,
			)
		except Exception:
			obs_metrics.inc_relay_error("decision_event")
			logger.exception("collab.outbox.decision_event_failed", extra={"decision_id": decision.id})
		return resolution

	async def list_activities(self, group_id: str, *, user_id: Optional[str]) -> List[models.GroupActivity]:
		actor = policy.require_identity(user_id)
		await self._require_group_member(group_id, actor)
		return await self._repo.list_activities(group_id, settings.collab_activities_limit)

	# Expenses and budget

	async def add_expense(
		self,
		group_id: str,
		*,
		user_id: Optional[str],
		item: Any,
		amount: Any,
		occurred_on: Optional[date] = None,
		paid_by: Optional[str] = None,
	) -> models.Expense:
		actor = policy.require_identity(user_id)
		label = policy.require_text(item, "item", limit=policy.MAX_ITEM_LENGTH)
		value = policy.validate_amount(amount)
		await self._require_group_member(group_id, actor)
		expense = models.Expense(
			id=_new_id(),
			group_id=group_id,
			item=label,
			amount=value,
			occurred_on=occurred_on,
			paid_by=models.clean_text(paid_by) or actor,
			created_at=_now(),
		)
		await self._repo.insert_expense(expense)
		obs_metrics.inc_collab_expense("insert")
		await self._notify(
			_Notice(
				type=models.EXPENSE_CHANGE,
				event_type=models.INSERT,
				topics=[expenses_topic(group_id), overview_topic(group_id)],
				new=expense.to_row(),
				table="group_expenses",
			)
		)
		return expense

	async def update_expense(
		self,
		expense_id: str,
		*,
		user_id: Optional[str],
		item: Any = None,
		amount: Any = None,
		occurred_on: Optional[date] = None,
		paid_by: Optional[str] = None,
	) -> models.Expense:
		actor = policy.require_identity(user_id)
		current = policy.ensure_found(await self._repo.get_expense(expense_id), "expense_not_found")
		updated = models.Expense(
			id=current.id,
			group_id=current.group_id,
			item=policy.require_text(item, "item", limit=policy.MAX_ITEM_LENGTH) if item is not None else current.item,
			amount=policy.validate_amount(amount) if amount is not None else current.amount,
			occurred_on=occurred_on if occurred_on is not None else current.occurred_on,
			paid_by=models.clean_text(paid_by) if paid_by is not None else current.paid_by,
			created_at=current.created_at,
		)
		await self._require_group_member(current.group_id, actor)
		previous = policy.ensure_found(await self._repo.update_expense(updated), "expense_not_found")
		obs_metrics.inc_collab_expense("update")
		await self._notify(
			_Notice(
				type=models.EXPENSE_CHANGE,
				event_type=models.UPDATE,
				topics=[expenses_topic(updated.group_id), overview_topic(updated.group_id)],
				new=updated.to_row(),
				old=previous.to_row(),
				table="group_expenses",
			)
		)
		return updated

	async def delete_expense(self, expense_id: str, *, user_id: Optional[str]) -> models.Expense:
		actor = policy.require_identity(user_id)
		current = policy.ensure_found(await self._repo.get_expense(expense_id), "expense_not_found")
		await self._require_group_member(current.group_id, actor)
		removed = policy.ensure_found(await self._repo.delete_expense(expense_id), "expense_not_found")
		obs_metrics.inc_collab_expense("delete")
		await self._notify(
			_Notice(
				type=models.EXPENSE_CHANGE,
				event_type=models.DELETE,
				topics=[expenses_topic(removed.group_id), overview_topic(removed.group_id)],
				old=removed.to_row(),
				table="group_expenses",
			)
		)
		return removed

	async def expenses_init(self, group_id: str, *, user_id: Optional[str]) -> ExpensesView:
		actor = policy.require_identity(user_id)
		await self._require_group_member(group_id, actor)
		rows = await self._repo.list_expenses(group_id, settings.collab_expenses_limit)
		total = sum((expense.amount for expense in rows), Decimal("0"))
		budget = await self._repo.get_budget(group_id)
		return ExpensesView(expenses=rows, total_spent=total, budget=budget)

	async def save_budget(self, group_id: str, amount: Any, *, user_id: Optional[str]) -> models.Budget:
		actor = policy.require_identity(user_id)
		value = policy.validate_budget(amount)
		await self._require_group_member(group_id, actor)
		budget = models.Budget(group_id=group_id, amount=value, updated_at=_now())
		previous = await self._repo.upsert_budget(budget)
		await self._notify(
			_Notice(
				type=models.BUDGET_CHANGE,
				event_type=models.UPDATE if previous else models.INSERT,
				topics=[expenses_topic(group_id), overview_topic(group_id)],
				new=budget.to_row(),
				old=previous.to_row() if previous else None,
				table="group_budgets",
			)
		)
		return budget

	async def get_budget(self, group_id: str, *, user_id: Optional[str]) -> Optional[models.Budget]:
		actor = policy.require_identity(user_id)
		await self._require_group_member(group_id, actor)
		return await self._repo.get_budget(group_id)

	# Challenges

	async def create_challenge(
		self,
		group_id: str,
		*,
		user_id: Optional[str],
		title: Any,
		description: Optional[str] = None,
		reward: Optional[str] = None,
		duration_hours: Any = None,
	) -> models.GroupChallenge:
		actor = policy.require_identity(user_id)
		label = policy.require_text(title, "title")
		hours = policy.validate_duration_hours(duration_hours, default=settings.collab_default_challenge_hours)
		await self._require_group_member(group_id, actor)
		challenge = models.GroupChallenge(
			id=_new_id(),
			group_id=group_id,
			title=label,
			description=(description or "").strip(),
			reward=models.clean_text(reward),
			duration_hours=hours,
			created_by=actor,
			created_at=_now(),
		)
		await self._repo.create_challenge(challenge)
		await self._notify(
			_Notice(
				type=models.CHALLENGE_CHANGE,
				event_type=models.INSERT,
				topics=[overview_topic(group_id)],
				new=challenge.to_row(),
				table="group_challenges",
			)
		)
		return challenge

	async def list_challenges(self, group_id: str, *, user_id: Optional[str] = None) -> List[ChallengeView]:
		"""Active challenges for the board; ones the caller declined are left out."""
		challenges = await self._repo.list_active_challenges(group_id)
		if not user_id:
			return [ChallengeView(challenge=challenge) for challenge in challenges]
		await self._require_group_member(group_id, user_id)
		memberships = await self._repo.list_challenge_memberships([c.id for c in challenges], user_id)
		by_challenge = {membership.challenge_id: membership for membership in memberships}
		views: List[ChallengeView] = []
		for challenge in challenges:
			membership = by_challenge.get(challenge.id)
			if membership is not None and membership.status == models.MEMBERSHIP_DECLINED:
				continue
			views.append(ChallengeView(challenge=challenge, membership=membership))
		return views

	async def _write_challenge_membership(
		self,
		challenge_id: str,
		user_id: Optional[str],
		status: str,
	) -> models.ChallengeMembership:
		actor = policy.require_identity(user_id)
		challenge = policy.ensure_found(await self._repo.get_challenge(challenge_id), "challenge_not_found")
		policy.ensure_challenge_active(challenge)
		await self._require_group_member(challenge.group_id, actor)
		now = _now()
		membership = models.ChallengeMembership(
			challenge_id=challenge_id,
			user_id=actor,
			status=status,
			expires_at=now + timedelta(hours=challenge.duration_hours) if status == models.MEMBERSHIP_JOINED else None,
			updated_at=now,
		)
		previous = await self._repo.upsert_challenge_membership(membership)
		obs_metrics.inc_challenge_membership(status)
		await self._notify(
			_Notice(
				type=models.CHALLENGE_MEMBERSHIP_CHANGE,
				event_type=models.UPDATE if previous else models.INSERT,
				topics=[overview_topic(challenge.group_id)],
				new=membership.to_row(),
				old=previous.to_row() if previous else None,
				table="group_challenge_memberships",
			)
		)
		return membership

	async def join_challenge(self, challenge_id: str, *, user_id: Optional[str]) -> models.ChallengeMembership:
		return await self._write_challenge_membership(challenge_id, user_id, models.MEMBERSHIP_JOINED)

	async def decline_challenge(self, challenge_id: str, *, user_id: Optional[str]) -> models.ChallengeMembership:
		return await self._write_challenge_membership(challenge_id, user_id, models.MEMBERSHIP_DECLINED)


def group_schema(group: models.Group) -> schemas.GroupOut:
	return schemas.GroupOut(**group.to_row())


def member_schema(member: models.Member) -> schemas.MemberOut:
	return schemas.MemberOut(**member.to_row())


def decision_schema(view: DecisionView) -> schemas.DecisionOut:
	decision = view.decision
	return schemas.DecisionOut(
		id=decision.id,
		group_id=decision.group_id,
		proposal=schemas.ProposalOut(
			title=decision.proposal.title,
			starts_at=decision.proposal.starts_at,
			location=decision.proposal.location,
			notes=decision.proposal.notes,
		),
		status=decision.status,
		created_by=decision.created_by,
		created_at=decision.created_at,
		approved_option_id=decision.approved_option_id,
		approved_by=decision.approved_by,
		approved_at=decision.approved_at,
		options=[
			schemas.OptionTally(id=option.id, label=option.label, votes=view.counts.get(option.id, 0))
			for option in view.options
		],
		my_vote=view.my_vote,
		member_count=view.member_count,
		majority=view.majority,
	)


def activity_schema(activity: models.GroupActivity) -> schemas.ActivityOut:
	return schemas.ActivityOut(**activity.to_row())


def expense_schema(expense: models.Expense) -> schemas.ExpenseOut:
	return schemas.ExpenseOut(**expense.to_row())


def budget_schema(budget: models.Budget) -> schemas.BudgetOut:
	return schemas.BudgetOut(**budget.to_row())


def challenge_schema(view: ChallengeView) -> schemas.ChallengeOut:
	membership = view.membership
	return schemas.ChallengeOut(
		**view.challenge.to_row(),
		my_status=membership.status if membership else None,
		expires_at=membership.expires_at if membership else None,
		progress=membership.progress if membership else None,
	)


def challenge_membership_schema(membership: models.ChallengeMembership) -> schemas.ChallengeMembershipOut:
	return schemas.ChallengeMembershipOut(**membership.to_row())
