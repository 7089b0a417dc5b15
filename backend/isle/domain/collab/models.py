"""Domain models for group trip collaboration."""

from __future__ import annotations

from dataclasses import dataclass, field
from datetime import date, datetime
from decimal import Decimal
from typing import Any, Dict, Optional


DecisionStatus = str
MemberRole = str
ChallengeMembershipStatus = str
ChangeEventType = str

DECISION_OPEN: DecisionStatus = "open"
DECISION_APPROVED: DecisionStatus = "approved"
DECISION_DECLINED: DecisionStatus = "declined"
DECISION_STATES: tuple[DecisionStatus, ...] = (DECISION_OPEN, DECISION_APPROVED, DECISION_DECLINED)

ROLE_OWNER: MemberRole = "owner"
ROLE_MEMBER: MemberRole = "member"

CHALLENGE_ACTIVE = "active"
MEMBERSHIP_JOINED: ChallengeMembershipStatus = "joined"
MEMBERSHIP_DECLINED: ChallengeMembershipStatus = "declined"

YES_LABEL = "Yes"
NO_LABEL = "No"

INSERT: ChangeEventType = "INSERT"
UPDATE: ChangeEventType = "UPDATE"
DELETE: ChangeEventType = "DELETE"
CHANGE_EVENT_TYPES: tuple[ChangeEventType, ...] = (INSERT, UPDATE, DELETE)

VOTE_CHANGE = "VOTE_CHANGE"
OPTION_CHANGE = "OPTION_CHANGE"
DECISION_CHANGE = "DECISION_CHANGE"
EXPENSE_CHANGE = "EXPENSE_CHANGE"
MEMBER_CHANGE = "MEMBER_CHANGE"
ACTIVITY_CHANGE = "ACTIVITY_CHANGE"
CHALLENGE_CHANGE = "CHALLENGE_CHANGE"
CHALLENGE_MEMBERSHIP_CHANGE = "CHALLENGE_MEMBERSHIP_CHANGE"
BUDGET_CHANGE = "BUDGET_CHANGE"

_LEGACY_SEPARATOR = "||"


@dataclass(slots=True)
class Group:
	id: str
	name: str
	created_by: str
	created_at: datetime
	destination: Optional[str] = None
	trip_start: Optional[date] = None
	trip_end: Optional[date] = None

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"name": self.name,
			"destination": self.destination,
			"trip_start": self.trip_start,
			"trip_end": self.trip_end,
			"created_by": self.created_by,
			"created_at": self.created_at,
		}


@dataclass(slots=True)
class Member:
	group_id: str
	user_id: str
	role: MemberRole
	joined_at: datetime

	def to_row(self) -> dict[str, Any]:
		return {
			"group_id": self.group_id,
			"user_id": self.user_id,
			"role": self.role,
			"joined_at": self.joined_at,
		}


@dataclass(slots=True)
class DecisionProposal:
	"""What a decision proposes to do: becomes an activity once approved."""

	title: str
	starts_at: Optional[datetime] = None
	location: Optional[str] = None
	notes: Optional[str] = None

	def to_dict(self) -> dict[str, Any]:
		return {
			"title": self.title,
			"starts_at": self.starts_at.isoformat() if self.starts_at else None,
			"location": self.location,
			"notes": self.notes,
		}

	@classmethod
	def from_dict(cls, data: Dict[str, Any] | None) -> "DecisionProposal":
		data = data or {}
		starts_at = data.get("starts_at")
		if isinstance(starts_at, str):
			starts_at = _parse_datetime(starts_at)
		return cls(
			title=str(data.get("title") or "").strip() or "Decision",
			starts_at=starts_at if isinstance(starts_at, datetime) else None,
			location=clean_text(data.get("location")),
			notes=clean_text(data.get("notes")),
		)

	@classmethod
	def from_legacy(cls, question: str | None) -> "DecisionProposal":
		"""Decode the old `title||starts_at||location||notes` question string."""
		raw = str(question or "")
		parts = raw.split(_LEGACY_SEPARATOR)
		title = parts[0].strip() if parts else ""
		return cls(
			title=title or raw.strip() or "Decision",
			starts_at=_parse_datetime(parts[1]) if len(parts) > 1 else None,
			location=clean_text(parts[2]) if len(parts) > 2 else None,
			notes=clean_text(parts[3]) if len(parts) > 3 else None,
		)


@dataclass(slots=True)
class Decision:
	id: str
	group_id: str
	proposal: DecisionProposal
	status: DecisionStatus
	created_by: str
	created_at: datetime
	approved_option_id: Optional[str] = None
	approved_by: Optional[str] = None
	approved_at: Optional[datetime] = None

	def is_open(self) -> bool:
		return self.status == DECISION_OPEN

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"group_id": self.group_id,
			"proposal": self.proposal.to_dict(),
			"status": self.status,
			"created_by": self.created_by,
			"created_at": self.created_at,
			"approved_option_id": self.approved_option_id,
			"approved_by": self.approved_by,
			"approved_at": self.approved_at,
		}


@dataclass(slots=True)
class DecisionOption:
	id: str
	decision_id: str
	label: str
	created_at: datetime

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"decision_id": self.decision_id,
			"label": self.label,
			"created_at": self.created_at,
		}


@dataclass(slots=True)
class Vote:
	decision_id: str
	user_id: str
	option_id: str
	updated_at: datetime

	def to_row(self) -> dict[str, Any]:
		return {
			"decision_id": self.decision_id,
			"user_id": self.user_id,
			"option_id": self.option_id,
			"updated_at": self.updated_at,
		}


@dataclass(slots=True)
class GroupActivity:
	"""An approved decision, materialised once."""

	id: str
	group_id: str
	title: str
	created_by: str
	created_at: datetime
	decision_id: Optional[str] = None
	starts_at: Optional[datetime] = None
	location: Optional[str] = None
	notes: Optional[str] = None
	status: str = "planned"

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"group_id": self.group_id,
			"decision_id": self.decision_id,
			"title": self.title,
			"starts_at": self.starts_at,
			"location": self.location,
			"notes": self.notes,
			"status": self.status,
			"created_by": self.created_by,
			"created_at": self.created_at,
		}


@dataclass(slots=True)
class Expense:
	id: str
	group_id: str
	item: str
	amount: Decimal
	created_at: datetime
	occurred_on: Optional[date] = None
	paid_by: Optional[str] = None

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"group_id": self.group_id,
			"item": self.item,
			"amount": self.amount,
			"occurred_on": self.occurred_on,
			"paid_by": self.paid_by,
			"created_at": self.created_at,
		}


@dataclass(slots=True)
class Budget:
	group_id: str
	amount: Decimal
	updated_at: datetime

	def to_row(self) -> dict[str, Any]:
		return {"group_id": self.group_id, "amount": self.amount, "updated_at": self.updated_at}


@dataclass(slots=True)
class GroupChallenge:
	id: str
	group_id: str
	title: str
	created_by: str
	created_at: datetime
	description: str = ""
	reward: Optional[str] = None
	duration_hours: int = 24
	audience: str = "Group"
	status: str = CHALLENGE_ACTIVE

	def to_row(self) -> dict[str, Any]:
		return {
			"id": self.id,
			"group_id": self.group_id,
			"title": self.title,
			"description": self.description,
			"reward": self.reward,
			"duration_hours": self.duration_hours,
			"audience": self.audience,
			"status": self.status,
			"created_by": self.created_by,
			"created_at": self.created_at,
		}


@dataclass(slots=True)
class ChallengeMembership:
	challenge_id: str
	user_id: str
	status: ChallengeMembershipStatus
	updated_at: datetime
	expires_at: Optional[datetime] = None
	progress: str = "0%"

	def to_row(self) -> dict[str, Any]:
		return {
			"challenge_id": self.challenge_id,
			"user_id": self.user_id,
			"status": self.status,
			"expires_at": self.expires_at,
			"progress": self.progress,
			"updated_at": self.updated_at,
		}


@dataclass(slots=True)
class ChangePayload:
	"""Row-level change as delivered by the feed: before/after snapshots."""

	event_type: ChangeEventType
	new: Optional[Dict[str, Any]] = None
	old: Optional[Dict[str, Any]] = None
	table: Optional[str] = None


@dataclass(slots=True)
class ChangeEvent:
	type: str
	payload: ChangePayload
	topic: str = ""
	origin: Optional[str] = None
	meta: Dict[str, Any] = field(default_factory=dict)


@dataclass(slots=True)
class Resolution:
	"""Outcome of a decision leaving the open state."""

	decision: Decision
	previous_status: DecisionStatus
	activity: Optional[GroupActivity] = None


def clean_text(value: Any) -> Optional[str]:
	if value is None:
		return None
	text = str(value).strip()
	return text or None


def _parse_datetime(value: str | None) -> Optional[datetime]:
	text = (value or "").strip()
	if not text:
		return None
	try:
		return datetime.fromisoformat(text.replace("Z", "+00:00"))
	except ValueError:
		return None
