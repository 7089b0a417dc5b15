"""Group membership reads used by decision thresholds."""

from __future__ import annotations

from isle.domain.collab import decisions
from isle.domain.collab.repo import CollabRepository


class MembershipProvider:
	"""Member counts straight from the store, read at every evaluation."""

	def __init__(self, repo: CollabRepository | None = None) -> None:
		self._repo = repo or CollabRepository()

	async def member_count(self, group_id: str) -> int:
		return await self._repo.count_members(group_id)

	async def is_member(self, group_id: str, user_id: str | None) -> bool:
		if not user_id:
			return False
		return await self._repo.get_member(group_id, user_id) is not None

	async def required_majority(self, group_id: str) -> int:
		return decisions.majority_threshold(await self.member_count(group_id))
