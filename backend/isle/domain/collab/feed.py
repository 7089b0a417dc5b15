"""In-process change feed: row-level change notifications keyed by entity topic.

Topics follow the channel names the UI subscribes to: `decision:<id>`,
`group-expenses:<id>` and `collab-overview:<id>`. Delivery is best effort and
unordered across writers; subscribers must treat every event as a possible
duplicate and re-fetch ground truth.
"""

from __future__ import annotations

import inspect
import logging
import uuid
from typing import Awaitable, Callable, Dict, List, Optional, Union

from isle.domain.collab import models
from isle.obs import metrics as obs_metrics

logger = logging.getLogger(__name__)

EventHandler = Callable[[models.ChangeEvent], Union[None, Awaitable[None]]]
ResumeHandler = Callable[[], Union[None, Awaitable[None]]]
Unsubscribe = Callable[[], None]


def decision_topic(decision_id: str) -> str:
	return f"decision:{decision_id}"


def expenses_topic(group_id: str) -> str:
	return f"group-expenses:{group_id}"


def overview_topic(group_id: str) -> str:
	return f"collab-overview:{group_id}"


TOPIC_PREFIXES: tuple[str, ...] = ("decision:", "group-expenses:", "collab-overview:")


def is_valid_topic(topic: str) -> bool:
	return any(topic.startswith(prefix) and len(topic) > len(prefix) for prefix in TOPIC_PREFIXES)


class Subscription:
	__slots__ = ("id", "topic", "on_event", "on_resume", "active")

	def __init__(self, topic: str, on_event: EventHandler, on_resume: Optional[ResumeHandler]) -> None:
		self.id = uuid.uuid4().hex
		self.topic = topic
		self.on_event = on_event
		self.on_resume = on_resume
		self.active = True


async def _call(handler: Callable[..., object], *args: object) -> None:
	result = handler(*args)
	if inspect.isawaitable(result):
		await result


class ChangeFeed:
	"""Fan-out of change events to topic subscribers within one process."""

	def __init__(self) -> None:
		self.origin = uuid.uuid4().hex
		self._subs: Dict[str, List[Subscription]] = {}

	def subscribe(
		self,
		topic: str,
		on_event: EventHandler,
		*,
		on_resume: Optional[ResumeHandler] = None,
	) -> Unsubscribe:
		if not topic:
			raise ValueError("topic is required")
		sub = Subscription(topic, on_event, on_resume)
		self._subs.setdefault(topic, []).append(sub)
		logger.debug("collab.feed.subscribed", extra={"topic": topic, "subscription": sub.id})

		def _unsubscribe() -> None:
			if not sub.active:
				return
			sub.active = False
			subs = self._subs.get(topic)
			if subs is not None:
				try:
					subs.remove(sub)
				except ValueError:
					pass
				if not subs:
					self._subs.pop(topic, None)

		return _unsubscribe

	def subscriber_count(self, topic: str) -> int:
		return len(self._subs.get(topic, ()))

	def topics(self) -> list[str]:
		return list(self._subs)

	async def publish(self, topic: str, event: models.ChangeEvent) -> int:
		"""Deliver to the topic's current subscribers; returns how many were called."""
		if not event.topic:
			event.topic = topic
		if event.origin is None:
			event.origin = self.origin
		delivered = 0
		for sub in list(self._subs.get(topic, ())):
			# Unsubscribed while an earlier handler ran.
			if not sub.active:
				continue
			delivered += 1
			try:
				await _call(sub.on_event, event)
			except Exception:
				obs_metrics.inc_feed_handler_failure()
				logger.exception(
					"collab.feed.handler_failed",
					extra={"topic": topic, "event_type": event.type, "subscription": sub.id},
				)
		obs_metrics.inc_feed_event(event.type)
		return delivered

	async def notify_resumed(self) -> None:
		"""Tell every live subscription its transport came back, so it can re-fetch."""
		for subs in list(self._subs.values()):
			for sub in list(subs):
				if not sub.active or sub.on_resume is None:
					continue
				try:
					await _call(sub.on_resume)
				except Exception:
					obs_metrics.inc_feed_handler_failure()
					logger.exception("collab.feed.resume_failed", extra={"topic": sub.topic, "subscription": sub.id})

	def clear(self) -> None:
		for subs in self._subs.values():
			for sub in subs:
				sub.active = False
		self._subs.clear()


change_feed = ChangeFeed()


def reset_change_feed() -> None:
	change_feed.clear()
