"""Redis Stream outbox writers for group collaboration."""

from __future__ import annotations

import json
from datetime import datetime, timezone
from typing import Any, Mapping, Optional

from isle.domain.collab import models
from isle.infra.redis import redis_client
from isle.settings import settings


COLLAB_CHANGE_STREAM = "x:collab.changes"
COLLAB_DECISION_STREAM = "x:collab.decisions"


def _stringify_fields(fields: Mapping[str, Any]) -> dict[str, str]:
	return {key: str(value) for key, value in fields.items() if value is not None}


def _json(value: Any) -> str:
	return json.dumps(value, default=str, separators=(",", ":"))


def encode_change(event: models.ChangeEvent) -> dict[str, str]:
	fields: dict[str, Any] = {
		"type": event.type,
		"topic": event.topic,
		"origin": event.origin,
		"event_type": event.payload.event_type,
		"table": event.payload.table,
		"new": _json(event.payload.new) if event.payload.new is not None else None,
		"old": _json(event.payload.old) if event.payload.old is not None else None,
		"ts": datetime.now(timezone.utc).isoformat(),
	}
	return _stringify_fields(fields)


def decode_change(fields: Mapping[str, str]) -> Optional[models.ChangeEvent]:
	event_type = fields.get("event_type")
	kind = fields.get("type")
	topic = fields.get("topic")
	if not kind or not topic or event_type not in models.CHANGE_EVENT_TYPES:
		return None
	try:
		new_row = json.loads(fields["new"]) if fields.get("new") else None
		old_row = json.loads(fields["old"]) if fields.get("old") else None
	except ValueError:
		return None
	return models.ChangeEvent(
		type=kind,
		topic=topic,
		origin=fields.get("origin"),
		payload=models.ChangePayload(event_type=event_type, new=new_row, old=old_row, table=fields.get("table")),
	)


async def append_change(event: models.ChangeEvent) -> None:
	await redis_client.xadd_capped(
		COLLAB_CHANGE_STREAM,
		encode_change(event),
		maxlen=settings.collab_relay_stream_maxlen,
	)


async def append_decision_event(
	event: str,
	*,
	decision_id: str,
	group_id: str,
	actor_id: Optional[str] = None,
	meta: Mapping[str, Any] | None = None,
) -> None:
	fields: dict[str, Any] = {
		"event": event,
		"decision_id": decision_id,
		"group_id": group_id,
	}
	if actor_id:
		fields["actor_id"] = actor_id
	if meta:
		for key, value in meta.items():
			fields[f"meta_{key}"] = value
	await redis_client.xadd(COLLAB_DECISION_STREAM, _stringify_fields(fields))
