"""Relay bridging the Redis change stream into the local change feed.

Each API process publishes its writes locally and appends them to
`x:collab.changes`. The relay reads that stream and re-publishes events that
came from other processes, so subscribers see every writer's changes.
"""

from __future__ import annotations

import asyncio
import logging
from typing import Optional

from isle.domain.collab import outbox
from isle.domain.collab.feed import ChangeFeed, change_feed
from isle.infra.redis import redis_client
from isle.obs import metrics as obs_metrics
from isle.settings import settings

_LOG = logging.getLogger(__name__)


class ChangeFeedRelay:
	"""Consumes the collab change stream and dispatches into a ChangeFeed."""

	def __init__(
		self,
		feed: ChangeFeed | None = None,
		*,
		poll_interval: float | None = None,
		batch_size: int = 200,
		block_ms: Optional[int] = 1000,
		backoff_initial: float | None = None,
		backoff_max: float | None = None,
	) -> None:
		self.feed = feed or change_feed
		self.poll_interval = poll_interval if poll_interval is not None else settings.collab_relay_poll_interval_s
		self.batch_size = batch_size
		self.block_ms = block_ms
		self.backoff_initial = backoff_initial if backoff_initial is not None else settings.collab_relay_backoff_initial_s
		self.backoff_max = backoff_max if backoff_max is not None else settings.collab_relay_backoff_max_s
		self.last_id: Optional[str] = None
		self._running = False
		self._degraded = False

	async def _start_id(self) -> str:
		latest = await redis_client.xrevrange(outbox.COLLAB_CHANGE_STREAM, count=1)
		if latest:
			return latest[0][0]
		return "0-0"

	async def process_once(self) -> int:
		if self.last_id is None:
			self.last_id = await self._start_id()
		messages = await redis_client.xread(
			{outbox.COLLAB_CHANGE_STREAM: self.last_id},
			count=self.batch_size,
			block=self.block_ms,
		)
		if not messages:
			return 0
		dispatched = 0
		for _stream, entries in messages:
			for entry_id, fields in entries:
				self.last_id = entry_id
				event = outbox.decode_change(dict(fields))
				if event is None:
					_LOG.warning("collab.relay.bad_entry", extra={"entry_id": entry_id})
					continue
				if event.origin == self.feed.origin:
					continue
				await self.feed.publish(event.topic, event)
				dispatched += 1
		return dispatched

	def next_backoff(self, current: float) -> float:
		if current <= 0:
			return self.backoff_initial
		return min(current * 2, self.backoff_max)

	async def run_forever(self) -> None:
		self._running = True
		delay = 0.0
		while self._running:
			try:
				processed = await self.process_once()
			except asyncio.CancelledError:
				raise
			except Exception:
				obs_metrics.inc_relay_error("read")
				delay = self.next_backoff(delay)
				self._degraded = True
				_LOG.warning("collab.relay.read_failed", extra={"retry_in_s": delay}, exc_info=True)
				await asyncio.sleep(delay)
				continue
			if self._degraded:
				# Events may have been trimmed or missed while down.
				self._degraded = False
				delay = 0.0
				_LOG.info("collab.relay.resumed")
				await self.feed.notify_resumed()
			if processed == 0 and not self.block_ms:
				await asyncio.sleep(self.poll_interval)

	def stop(self) -> None:
		self._running = False
