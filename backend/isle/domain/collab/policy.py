"""Policy and guard helpers for group collaboration."""

from __future__ import annotations

from decimal import ROUND_HALF_UP, Decimal, InvalidOperation
from typing import Any, Optional

from isle.domain.collab import models


MAX_ITEM_LENGTH = 200
MAX_TITLE_LENGTH = 200
MAX_CHALLENGE_HOURS = 24 * 30
# Money columns are NUMERIC(12, 2).
CENT = Decimal("0.01")
MAX_AMOUNT = Decimal("9999999999.99")


class CollabPolicyError(RuntimeError):
	def __init__(self, code: str, *, status_code: int = 400, message: str | None = None) -> None:
		super().__init__(message or code)
		self.code = code
		self.status_code = status_code
		self.detail = message or code


def require_identity(user_id: Optional[str]) -> str:
	"""Writes need a resolved user id; anonymous callers never reach storage."""
	value = str(user_id or "").strip()
	if not value:
		raise CollabPolicyError("identity_required", status_code=401)
	return value


def require_text(value: Any, field: str, *, limit: int = MAX_TITLE_LENGTH) -> str:
	text = str(value or "").strip()
	if not text:
		raise CollabPolicyError(f"{field}_required", status_code=422)
	if len(text) > limit:
		raise CollabPolicyError(f"{field}_too_long", status_code=422)
	return text


def _to_cents(amount: Decimal) -> Decimal:
	return amount.quantize(CENT, rounding=ROUND_HALF_UP)


def validate_amount(value: Any) -> Decimal:
	"""Accept finite positive numbers (or numeric strings) only, rounded to cents."""
	if value is None or isinstance(value, bool):
		raise CollabPolicyError("invalid_amount", status_code=422)
	try:
		amount = Decimal(str(value).strip())
	except (InvalidOperation, ValueError):
		raise CollabPolicyError("invalid_amount", status_code=422)
	if not amount.is_finite() or amount <= 0 or amount > MAX_AMOUNT:
		raise CollabPolicyError("invalid_amount", status_code=422)
	amount = _to_cents(amount)
	if amount <= 0:
		raise CollabPolicyError("invalid_amount", status_code=422)
	return amount


def validate_budget(value: Any) -> Decimal:
	if value is None or isinstance(value, bool):
		raise CollabPolicyError("invalid_budget", status_code=422)
	try:
		amount = Decimal(str(value).strip())
	except (InvalidOperation, ValueError):
		raise CollabPolicyError("invalid_budget", status_code=422)
	if not amount.is_finite() or amount < 0 or amount > MAX_AMOUNT:
		raise CollabPolicyError("invalid_budget", status_code=422)
	return _to_cents(amount)


def validate_duration_hours(value: Any, *, default: int) -> int:
	if value in (None, ""):
		return default
	try:
		hours = int(value)
	except (TypeError, ValueError):
		raise CollabPolicyError("invalid_duration", status_code=422)
	if hours < 1 or hours > MAX_CHALLENGE_HOURS:
		raise CollabPolicyError("invalid_duration", status_code=422)
	return hours


def ensure_found(obj, code: str):
	if obj is None:
		raise CollabPolicyError(code, status_code=404)
	return obj


def ensure_member(is_member: bool) -> None:
	if not is_member:
		raise CollabPolicyError("not_group_member", status_code=403)


def ensure_decision_open(decision: models.Decision) -> None:
	if not decision.is_open():
		raise CollabPolicyError("decision_closed", status_code=409)


def ensure_option_belongs(option: Optional[models.DecisionOption], decision: models.Decision) -> models.DecisionOption:
	if option is None or option.decision_id != decision.id:
		raise CollabPolicyError("option_not_found", status_code=404)
	return option


def ensure_challenge_active(challenge: models.GroupChallenge) -> None:
	if challenge.status != models.CHALLENGE_ACTIVE:
		raise CollabPolicyError("challenge_inactive", status_code=409)


def ensure_membership_writable(previous: Optional[models.ChallengeMembership], status: str) -> None:
	"""A declined membership is terminal; only another decline may overwrite it."""
	if previous is None or previous.status != models.MEMBERSHIP_DECLINED:
		return
	if status != models.MEMBERSHIP_DECLINED:
		raise CollabPolicyError("challenge_declined", status_code=409)
