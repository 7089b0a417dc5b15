"""FastAPI routes for group trip collaboration."""

from __future__ import annotations

from typing import List, Optional

from fastapi import APIRouter, Depends, HTTPException, status

from isle.domain.collab import models, policy, schemas
from isle.domain.collab import service as collab_service
from isle.domain.collab.service import CollabService
from isle.infra.auth import AuthenticatedUser, get_current_user

router = APIRouter(prefix="/collab", tags=["collab"])

_service = CollabService()


def _as_http_error(exc: policy.CollabPolicyError) -> HTTPException:
	return HTTPException(status_code=exc.status_code, detail=exc.detail)


# Groups


@router.post("/groups", response_model=schemas.GroupOut, status_code=status.HTTP_201_CREATED)
async def create_group_endpoint(
	payload: schemas.GroupCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.GroupOut:
	try:
		group = await _service.create_group(
			auth_user.id,
			payload.name,
			destination=payload.destination,
			trip_start=payload.trip_start,
			trip_end=payload.trip_end,
		)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.group_schema(group)


@router.get("/groups", response_model=List[schemas.GroupOut])
async def list_groups_endpoint(
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.GroupOut]:
	try:
		groups = await _service.list_my_groups(auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return [collab_service.group_schema(group) for group in groups]


@router.get("/groups/{group_id}/members", response_model=List[schemas.MemberOut])
async def list_members_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.MemberOut]:
	try:
		members = await _service.list_members(group_id, actor_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return [collab_service.member_schema(member) for member in members]


@router.post("/groups/{group_id}/members", response_model=schemas.MemberOut, status_code=status.HTTP_201_CREATED)
async def add_member_endpoint(
	group_id: str,
	payload: schemas.MemberAddRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.MemberOut:
	try:
		member = await _service.add_member(group_id, payload.user_id, actor_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.member_schema(member)


# Decisions


@router.post("/groups/{group_id}/decisions", response_model=schemas.DecisionOut, status_code=status.HTTP_201_CREATED)
async def create_decision_endpoint(
	group_id: str,
	payload: schemas.DecisionCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.DecisionOut:
	proposal = models.DecisionProposal(
		title=payload.proposal.title,
		starts_at=payload.proposal.starts_at,
		location=models.clean_text(payload.proposal.location),
		notes=models.clean_text(payload.proposal.notes),
	)
	try:
		view = await _service.create_decision(group_id, proposal, actor_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.decision_schema(view)


@router.get("/groups/{group_id}/decisions", response_model=List[schemas.DecisionOut])
async def list_decisions_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.DecisionOut]:
	try:
		views = await _service.list_decisions(group_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return [collab_service.decision_schema(view) for view in views]


@router.get("/decisions/{decision_id}/init", response_model=schemas.DecisionOut)
async def decision_init_endpoint(
	decision_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.DecisionOut:
	try:
		view = await _service.decision_init(decision_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.decision_schema(view)


@router.put("/decisions/{decision_id}/vote", response_model=schemas.VoteResponse)
async def cast_vote_endpoint(
	decision_id: str,
	payload: schemas.VoteRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.VoteResponse:
	try:
		outcome = await _service.cast_vote(decision_id, payload.option_id, auth_user.id)
		view = await _service.decision_init(decision_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	activity = outcome.resolution.activity if outcome.resolution else None
	return schemas.VoteResponse(
		decision=collab_service.decision_schema(view),
		activity=collab_service.activity_schema(activity) if activity else None,
	)


@router.delete("/decisions/{decision_id}/vote", status_code=status.HTTP_204_NO_CONTENT)
async def retract_vote_endpoint(
	decision_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> None:
	try:
		await _service.retract_vote(decision_id, auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc


@router.get("/groups/{group_id}/activities", response_model=List[schemas.ActivityOut])
async def list_activities_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.ActivityOut]:
	try:
		activities = await _service.list_activities(group_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return [collab_service.activity_schema(activity) for activity in activities]


# Expenses and budget


@router.get("/groups/{group_id}/expenses/init", response_model=schemas.ExpensesInitResponse)
async def expenses_init_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ExpensesInitResponse:
	try:
		view = await _service.expenses_init(group_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return schemas.ExpensesInitResponse(
		expenses=[collab_service.expense_schema(expense) for expense in view.expenses],
		total_spent=view.total_spent,
		budget=collab_service.budget_schema(view.budget) if view.budget else None,
	)


@router.post("/groups/{group_id}/expenses", response_model=schemas.ExpenseOut, status_code=status.HTTP_201_CREATED)
async def add_expense_endpoint(
	group_id: str,
	payload: schemas.ExpenseCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ExpenseOut:
	try:
		expense = await _service.add_expense(
			group_id,
			user_id=auth_user.id,
			item=payload.item,
			amount=payload.amount,
			occurred_on=payload.occurred_on,
			paid_by=payload.paid_by,
		)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.expense_schema(expense)


@router.patch("/expenses/{expense_id}", response_model=schemas.ExpenseOut)
async def update_expense_endpoint(
	expense_id: str,
	payload: schemas.ExpenseUpdateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ExpenseOut:
	try:
		expense = await _service.update_expense(
			expense_id,
			user_id=auth_user.id,
			item=payload.item,
			amount=payload.amount,
			occurred_on=payload.occurred_on,
			paid_by=payload.paid_by,
		)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.expense_schema(expense)


@router.delete("/expenses/{expense_id}", status_code=status.HTTP_204_NO_CONTENT)
async def delete_expense_endpoint(
	expense_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> None:
	try:
		await _service.delete_expense(expense_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc


@router.get("/groups/{group_id}/budget", response_model=Optional[schemas.BudgetOut])
async def get_budget_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> Optional[schemas.BudgetOut]:
	try:
		budget = await _service.get_budget(group_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.budget_schema(budget) if budget else None


@router.put("/groups/{group_id}/budget", response_model=schemas.BudgetOut)
async def save_budget_endpoint(
	group_id: str,
	payload: schemas.BudgetRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.BudgetOut:
	try:
		budget = await _service.save_budget(group_id, payload.amount, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.budget_schema(budget)


# Challenges


@router.post("/groups/{group_id}/challenges", response_model=schemas.ChallengeOut, status_code=status.HTTP_201_CREATED)
async def create_challenge_endpoint(
	group_id: str,
	payload: schemas.ChallengeCreateRequest,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ChallengeOut:
	try:
		challenge = await _service.create_challenge(
			group_id,
			user_id=auth_user.id,
			title=payload.title,
			description=payload.description,
			reward=payload.reward,
			duration_hours=payload.duration_hours,
		)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.challenge_schema(collab_service.ChallengeView(challenge=challenge))


@router.get("/groups/{group_id}/challenges", response_model=List[schemas.ChallengeOut])
async def list_challenges_endpoint(
	group_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> List[schemas.ChallengeOut]:
	try:
		views = await _service.list_challenges(group_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return [collab_service.challenge_schema(view) for view in views]


@router.post("/challenges/{challenge_id}/join", response_model=schemas.ChallengeMembershipOut)
async def join_challenge_endpoint(
	challenge_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ChallengeMembershipOut:
	try:
		membership = await _service.join_challenge(challenge_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.challenge_membership_schema(membership)


@router.post("/challenges/{challenge_id}/decline", response_model=schemas.ChallengeMembershipOut)
async def decline_challenge_endpoint(
	challenge_id: str,
	auth_user: AuthenticatedUser = Depends(get_current_user),
) -> schemas.ChallengeMembershipOut:
	try:
		membership = await _service.decline_challenge(challenge_id, user_id=auth_user.id)
	except policy.CollabPolicyError as exc:
		raise _as_http_error(exc) from exc
	return collab_service.challenge_membership_schema(membership)
