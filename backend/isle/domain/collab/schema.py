"""Table bootstrap for group collaboration."""

from __future__ import annotations

import logging

import asyncpg

logger = logging.getLogger(__name__)

_DDL = (
	"""
	CREATE TABLE IF NOT EXISTS groups (
		id TEXT PRIMARY KEY,
		name TEXT NOT NULL,
		destination TEXT,
		trip_start DATE,
		trip_end DATE,
		created_by TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_members (
		group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
		user_id TEXT NOT NULL,
		role VARCHAR(16) NOT NULL DEFAULT 'member',
		joined_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		PRIMARY KEY (group_id, user_id)
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_decisions (
		id TEXT PRIMARY KEY,
		group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
		proposal JSONB NOT NULL,
		question TEXT,
		status VARCHAR(16) NOT NULL DEFAULT 'open',
		created_by TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		approved_option_id TEXT,
		approved_by TEXT,
		approved_at TIMESTAMPTZ
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_decision_options (
		id TEXT PRIMARY KEY,
		decision_id TEXT NOT NULL REFERENCES group_decisions(id) ON DELETE CASCADE,
		label TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_decision_votes (
		decision_id TEXT NOT NULL REFERENCES group_decisions(id) ON DELETE CASCADE,
		user_id TEXT NOT NULL,
		option_id TEXT NOT NULL REFERENCES group_decision_options(id) ON DELETE CASCADE,
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		PRIMARY KEY (decision_id, user_id)
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_activities (
		id TEXT PRIMARY KEY,
		group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
		decision_id TEXT UNIQUE REFERENCES group_decisions(id) ON DELETE SET NULL,
		title TEXT NOT NULL,
		starts_at TIMESTAMPTZ,
		location TEXT,
		notes TEXT,
		status VARCHAR(16) NOT NULL DEFAULT 'planned',
		created_by TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_expenses (
		id TEXT PRIMARY KEY,
		group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
		item TEXT NOT NULL,
		amount NUMERIC(12, 2) NOT NULL CHECK (amount > 0),
		occurred_on DATE,
		paid_by TEXT,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_budgets (
		group_id TEXT PRIMARY KEY REFERENCES groups(id) ON DELETE CASCADE,
		amount NUMERIC(12, 2) NOT NULL CHECK (amount >= 0),
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_challenges (
		id TEXT PRIMARY KEY,
		group_id TEXT NOT NULL REFERENCES groups(id) ON DELETE CASCADE,
		title TEXT NOT NULL,
		description TEXT NOT NULL DEFAULT '',
		reward TEXT,
		duration_hours INTEGER NOT NULL DEFAULT 24,
		audience TEXT NOT NULL DEFAULT 'Group',
		status VARCHAR(16) NOT NULL DEFAULT 'active',
		created_by TEXT NOT NULL,
		created_at TIMESTAMPTZ NOT NULL DEFAULT NOW()
	)
	""",
	"""
	CREATE TABLE IF NOT EXISTS group_challenge_memberships (
		challenge_id TEXT NOT NULL REFERENCES group_challenges(id) ON DELETE CASCADE,
		user_id TEXT NOT NULL,
		status VARCHAR(16) NOT NULL,
		expires_at TIMESTAMPTZ,
		progress TEXT NOT NULL DEFAULT '0%',
		updated_at TIMESTAMPTZ NOT NULL DEFAULT NOW(),
		PRIMARY KEY (challenge_id, user_id)
	)
	""",
	"CREATE INDEX IF NOT EXISTS idx_group_decisions_group ON group_decisions (group_id, created_at DESC)",
	"CREATE INDEX IF NOT EXISTS idx_group_expenses_group ON group_expenses (group_id, created_at DESC)",
	"CREATE INDEX IF NOT EXISTS idx_group_activities_group ON group_activities (group_id, created_at DESC)",
)


async def ensure_schema(conn: asyncpg.Connection) -> None:
	"""Create the collaboration tables if they do not exist yet."""
	async with conn.transaction():
		for statement in _DDL:
			await conn.execute(statement)
	logger.info("collab.schema.ready", extra={"tables": 10})
