"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"isle_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"isle_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"isle_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"isle_socketio_events_total",
	"Socket.IO events emitted per namespace",
	["namespace", "event"],
)

COLLAB_VOTES = Counter(
	"isle_collab_votes_total",
	"Decision votes written (upserts and retractions)",
	["action"],
)

COLLAB_DECISIONS_RESOLVED = Counter(
	"isle_collab_decisions_resolved_total",
	"Decisions moved out of the open state",
	["outcome"],
)

COLLAB_RESOLVE_RACES_LOST = Counter(
	"isle_collab_resolve_races_lost_total",
	"Decision transitions skipped because the decision was no longer open",
)

COLLAB_EXPENSES = Counter(
	"isle_collab_expenses_total",
	"Group expense writes",
	["action"],
)

COLLAB_CHALLENGE_MEMBERSHIPS = Counter(
	"isle_collab_challenge_memberships_total",
	"Challenge membership upserts",
	["status"],
)

COLLAB_FEED_EVENTS = Counter(
	"isle_collab_feed_events_total",
	"Change feed events dispatched to local subscribers",
	["type"],
)

COLLAB_FEED_HANDLER_FAILURES = Counter(
	"isle_collab_feed_handler_failures_total",
	"Change feed subscriber callbacks that raised",
)

COLLAB_RELAY_ERRORS = Counter(
	"isle_collab_relay_errors_total",
	"Redis relay read/write failures",
	["op"],
)

COLLAB_SNAPSHOT_DISCARDS = Counter(
	"isle_collab_snapshot_discards_total",
	"Authoritative snapshots dropped because a newer one was already applied",
	["kind"],
)


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_collab_vote(action: str) -> None:
	COLLAB_VOTES.labels(action=action).inc()


def inc_decision_resolved(outcome: str) -> None:
	COLLAB_DECISIONS_RESOLVED.labels(outcome=outcome).inc()


def inc_resolve_race_lost() -> None:
	COLLAB_RESOLVE_RACES_LOST.inc()


def inc_collab_expense(action: str) -> None:
	COLLAB_EXPENSES.labels(action=action).inc()


def inc_challenge_membership(status: str) -> None:
	COLLAB_CHALLENGE_MEMBERSHIPS.labels(status=status).inc()


def inc_feed_event(event_type: str) -> None:
	COLLAB_FEED_EVENTS.labels(type=event_type).inc()


def inc_feed_handler_failure() -> None:
	COLLAB_FEED_HANDLER_FAILURES.inc()


def inc_relay_error(op: str) -> None:
	COLLAB_RELAY_ERRORS.labels(op=op).inc()


def inc_snapshot_discard(kind: str) -> None:
	COLLAB_SNAPSHOT_DISCARDS.labels(kind=kind).inc()
