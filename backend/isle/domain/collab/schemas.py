"""Pydantic schemas for group collaboration endpoints."""

from __future__ import annotations

from datetime import date, datetime
from decimal import Decimal
from typing import Any, List, Literal, Optional

from pydantic import BaseModel, Field

DecisionStatus = Literal["open", "approved", "declined"]
MembershipStatus = Literal["joined", "declined"]


class GroupCreateRequest(BaseModel):
	name: str = Field(..., min_length=1, max_length=200)
	destination: Optional[str] = Field(default=None, max_length=200)
	trip_start: Optional[date] = None
	trip_end: Optional[date] = None


class MemberAddRequest(BaseModel):
	user_id: str = Field(..., min_length=1)


class GroupOut(BaseModel):
	id: str
	name: str
	destination: Optional[str] = None
	trip_start: Optional[date] = None
	trip_end: Optional[date] = None
	created_by: str
	created_at: datetime


class MemberOut(BaseModel):
	group_id: str
	user_id: str
	role: str
	joined_at: datetime


class ProposalIn(BaseModel):
	title: str = Field(..., min_length=1, max_length=200)
	starts_at: Optional[datetime] = None
	location: Optional[str] = Field(default=None, max_length=200)
	notes: Optional[str] = Field(default=None, max_length=2000)


class DecisionCreateRequest(BaseModel):
	proposal: ProposalIn


class ProposalOut(BaseModel):
	title: str
	starts_at: Optional[datetime] = None
	location: Optional[str] = None
	notes: Optional[str] = None


class OptionTally(BaseModel):
	id: str
	label: str
	votes: int = 0


class DecisionOut(BaseModel):
	id: str
	group_id: str
	proposal: ProposalOut
	status: DecisionStatus
	created_by: str
	created_at: datetime
	approved_option_id: Optional[str] = None
	approved_by: Optional[str] = None
	approved_at: Optional[datetime] = None
	options: List[OptionTally] = Field(default_factory=list)
	my_vote: Optional[str] = None
	member_count: int = 0
	majority: int = 0


class VoteRequest(BaseModel):
	option_id: str = Field(..., min_length=1)


class ActivityOut(BaseModel):
	id: str
	group_id: str
	decision_id: Optional[str] = None
	title: str
	starts_at: Optional[datetime] = None
	location: Optional[str] = None
	notes: Optional[str] = None
	status: str
	created_by: str
	created_at: datetime


class VoteResponse(BaseModel):
	decision: DecisionOut
	activity: Optional[ActivityOut] = None


class ExpenseCreateRequest(BaseModel):
	item: str = ""
	# Validated by the service so bad amounts surface as `invalid_amount`.
	amount: Any = None
	occurred_on: Optional[date] = None
	paid_by: Optional[str] = Field(default=None, max_length=200)


class ExpenseUpdateRequest(BaseModel):
	item: Optional[str] = None
	amount: Any = None
	occurred_on: Optional[date] = None
	paid_by: Optional[str] = Field(default=None, max_length=200)


class ExpenseOut(BaseModel):
	id: str
	group_id: str
	item: str
	amount: Decimal
	occurred_on: Optional[date] = None
	paid_by: Optional[str] = None
	created_at: datetime


class BudgetRequest(BaseModel):
	amount: Any = None


class BudgetOut(BaseModel):
	group_id: str
	amount: Decimal
	updated_at: datetime


class ExpensesInitResponse(BaseModel):
	expenses: List[ExpenseOut] = Field(default_factory=list)
	total_spent: Decimal = Decimal("0")
	budget: Optional[BudgetOut] = None


class ChallengeCreateRequest(BaseModel):
	title: str = Field(..., min_length=1, max_length=200)
	description: str = Field(default="", max_length=2000)
	reward: Optional[str] = Field(default=None, max_length=200)
	duration_hours: Optional[int] = None


class ChallengeOut(BaseModel):
	id: str
	group_id: str
	title: str
	description: str = ""
	reward: Optional[str] = None
	duration_hours: int
	audience: str
	status: str
	created_by: str
	created_at: datetime
	my_status: Optional[MembershipStatus] = None
	expires_at: Optional[datetime] = None
	progress: Optional[str] = None


class ChallengeMembershipOut(BaseModel):
	challenge_id: str
	user_id: str
	status: MembershipStatus
	expires_at: Optional[datetime] = None
	progress: str
	updated_at: datetime

