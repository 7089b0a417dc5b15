"""Socket.IO namespace streaming collaboration changes to connected clients."""

from __future__ import annotations

from typing import Dict, Optional, Set

import socketio
from fastapi.encoders import jsonable_encoder

from isle.domain.collab import models
from isle.domain.collab.feed import ChangeFeed, Unsubscribe, change_feed, is_valid_topic
from isle.domain.collab.membership import MembershipProvider
from isle.domain.collab.repo import CollabRepository
from isle.infra.auth import AuthenticatedUser
from isle.obs import metrics as obs_metrics


def _header(scope: dict, name: str) -> Optional[str]:
	target = name.encode().lower()
	for key, value in scope.get("headers", []):
		if key.lower() == target:
			return value.decode()
	return None


def serialize_event(event: models.ChangeEvent) -> dict:
	return jsonable_encoder(
		{
			"topic": event.topic,
			"type": event.type,
			"payload": {
				"eventType": event.payload.event_type,
				"new": event.payload.new,
				"old": event.payload.old,
				"table": event.payload.table,
			},
		}
	)


class CollabNamespace(socketio.AsyncNamespace):
	"""Rooms per feed topic; one feed subscription per topic with listeners."""

	def __init__(
		self,
		feed: ChangeFeed | None = None,
		repository: CollabRepository | None = None,
	) -> None:
		super().__init__("/collab")
		self._feed = feed or change_feed
		self._repo = repository or CollabRepository()
		self._membership = MembershipProvider(self._repo)
		self._sessions: Dict[str, AuthenticatedUser] = {}
		self._topics: Dict[str, Set[str]] = {}
		self._listeners: Dict[str, Set[str]] = {}
		self._feed_subs: Dict[str, Unsubscribe] = {}

	async def on_connect(self, sid: str, environ: dict, auth: Optional[dict] = None) -> None:
		obs_metrics.socket_connected(self.namespace)
		scope = environ.get("asgi.scope", environ)
		auth_payload = auth or environ.get("auth") or scope.get("auth") or {}
		user_id = auth_payload.get("userId") or _header(scope, "x-user-id")
		if not user_id:
			obs_metrics.socket_disconnected(self.namespace)
			raise ConnectionRefusedError("missing user id")
		self._sessions[sid] = AuthenticatedUser(id=str(user_id))
		self._topics[sid] = set()
		await self.emit("collab:ack", {"ok": True}, room=sid)

	async def on_disconnect(self, sid: str) -> None:
		obs_metrics.socket_disconnected(self.namespace)
		self._sessions.pop(sid, None)
		for topic in list(self._topics.pop(sid, set())):
			self._release(sid, topic)

	async def on_subscribe(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "subscribe")
		if sid not in self._sessions:
			raise ConnectionRefusedError("unauthenticated")
		topic = str((payload or {}).get("topic") or "")
		if not is_valid_topic(topic):
			return {"ok": False, "error": "invalid_topic"}
		group_id = await self._topic_group(topic)
		if group_id is None:
			return {"ok": False, "error": "topic_not_found"}
		if not await self._membership.is_member(group_id, self._sessions[sid].id):
			return {"ok": False, "error": "not_group_member"}
		topics = self._topics.setdefault(sid, set())
		if topic not in topics:
			topics.add(topic)
			await self.enter_room(sid, topic)
			self._acquire(sid, topic)
		return {"ok": True, "topic": topic}

	async def on_unsubscribe(self, sid: str, payload: dict) -> dict:
		obs_metrics.socket_event(self.namespace, "unsubscribe")
		topic = str((payload or {}).get("topic") or "")
		topics = self._topics.get(sid)
		if topics is not None and topic in topics:
			topics.discard(topic)
			await self.leave_room(sid, topic)
			self._release(sid, topic)
		return {"ok": True, "topic": topic}

	async def _topic_group(self, topic: str) -> Optional[str]:
		prefix, _, target = topic.partition(":")
		if prefix != "decision":
			return target
		decision = await self._repo.get_decision(target)
		return decision.group_id if decision else None

	def _acquire(self, sid: str, topic: str) -> None:
		listeners = self._listeners.setdefault(topic, set())
		listeners.add(sid)
		if topic not in self._feed_subs:
			self._feed_subs[topic] = self._feed.subscribe(topic, self._forward)

	def _release(self, sid: str, topic: str) -> None:
		listeners = self._listeners.get(topic)
		if listeners is None:
			return
		listeners.discard(sid)
		if listeners:
			return
		self._listeners.pop(topic, None)
		unsubscribe = self._feed_subs.pop(topic, None)
		if unsubscribe is not None:
			unsubscribe()

	async def _forward(self, event: models.ChangeEvent) -> None:
		obs_metrics.socket_event(self.namespace, "collab:change")
		await self.emit("collab:change", serialize_event(event), room=event.topic)

	def listener_count(self, topic: str) -> int:
		return len(self._listeners.get(topic, ()))

