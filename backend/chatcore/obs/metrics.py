"""Central registry for Prometheus metrics used across the messaging core."""

from __future__ import annotations

from prometheus_client import Counter, Gauge, Histogram


REQUEST_COUNTER = Counter(
	"chatcore_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"chatcore_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

SOCKET_CLIENTS = Gauge(
	"chatcore_socketio_clients",
	"Active Socket.IO clients per namespace",
	["namespace"],
)

SOCKET_EVENTS = Counter(
	"chatcore_socketio_events_total",
	"Socket.IO events handled or emitted per namespace",
	["namespace", "event"],
)

SOCKET_CLIENT_ERRORS = Counter(
	"chatcore_socketio_client_errors_total",
	"Structured errors surfaced to socket clients",
	["code"],
)

HANDLER_TIMEOUTS = Counter(
	"chatcore_handler_timeouts_total",
	"Socket handler operations that exceeded their deadline",
	["event"],
)

RATE_LIMITED_EVENTS = Counter(
	"chatcore_rate_limited_total",
	"Events dropped due to rate limiting",
	["kind"],
)

CHAT_CREATED = Counter(
	"chatcore_chats_created_total",
	"Chats created",
	["kind"],
)

CHAT_SEND = Counter(
	"chatcore_chat_send_total",
	"Chat messages sent",
)

CHAT_FORWARDED = Counter(
	"chatcore_chat_forwarded_total",
	"Chat messages forwarded",
)

CHAT_READ_UPDATES = Counter(
	"chatcore_chat_read_updates_total",
	"Messages transitioned to read",
)

CHAT_READ_RECEIPTS = Counter(
	"chatcore_chat_read_receipts_total",
	"Read receipts emitted to senders",
)

CHAT_EDITED = Counter(
	"chatcore_chat_edited_total",
	"Chat messages edited",
)

CHAT_DELETED = Counter(
	"chatcore_chat_deleted_total",
	"Chat messages soft-deleted",
	["reason"],
)

PRESENCE_ONLINE = Gauge(
	"chatcore_presence_online_users",
	"Users with at least one live connection",
)

PRESENCE_TRANSITIONS = Counter(
	"chatcore_presence_transitions_total",
	"Online/offline transitions",
	["state"],
)

RETENTION_TIMERS_PENDING = Gauge(
	"chatcore_retention_timers_pending",
	"Pending deletion timers held in memory",
	["kind"],
)

RETENTION_TIMER_FIRES = Counter(
	"chatcore_retention_timer_fires_total",
	"Deletion timers fired",
	["kind", "result"],
)

RETENTION_REAPED = Counter(
	"chatcore_retention_reaped_total",
	"Rows processed by the retention reaper",
	["pass"],
)

BACKGROUND_RUNS = Counter(
	"chatcore_jobs_runs_total",
	"Background job executions",
	["name", "result"],
)

BACKGROUND_DURATION = Histogram(
	"chatcore_jobs_duration_seconds",
	"Background job duration",
	["name"],
	buckets=(0.1, 0.5, 1.0, 2.0, 5.0, 15.0, 30.0, 60.0),
)

REDIS_UP = Gauge("chatcore_redis_up", "Redis availability (1=up,0=down)")
POSTGRES_UP = Gauge("chatcore_postgres_up", "Postgres availability (1=up,0=down)")


def observe_request(route: str, method: str, status: int, elapsed_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(elapsed_seconds)


def socket_connected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).inc()


def socket_disconnected(namespace: str) -> None:
	SOCKET_CLIENTS.labels(namespace=namespace).dec()


def socket_event(namespace: str, event: str) -> None:
	SOCKET_EVENTS.labels(namespace=namespace, event=event).inc()


def inc_client_error(code: str) -> None:
	SOCKET_CLIENT_ERRORS.labels(code=code).inc()


def inc_handler_timeout(event: str) -> None:
	HANDLER_TIMEOUTS.labels(event=event).inc()


def inc_rate_limited(kind: str) -> None:
	RATE_LIMITED_EVENTS.labels(kind=kind).inc()


def inc_chat_created(is_group: bool) -> None:
	CHAT_CREATED.labels(kind="group" if is_group else "direct").inc()


def inc_chat_send() -> None:
	CHAT_SEND.inc()


def inc_chat_forwarded() -> None:
	CHAT_FORWARDED.inc()


def inc_chat_read(count: int = 1) -> None:
	CHAT_READ_UPDATES.inc(count)


def inc_read_receipt() -> None:
	CHAT_READ_RECEIPTS.inc()


def inc_chat_edited() -> None:
	CHAT_EDITED.inc()


def inc_chat_deleted(reason: str, count: int = 1) -> None:
	CHAT_DELETED.labels(reason=reason).inc(count)


def set_presence_online(count: int) -> None:
	PRESENCE_ONLINE.set(float(count))


def inc_presence_transition(state: str) -> None:
	PRESENCE_TRANSITIONS.labels(state=state).inc()


def set_pending_timers(kind: str, count: int) -> None:
	RETENTION_TIMERS_PENDING.labels(kind=kind).set(float(count))


def inc_timer_fire(kind: str, result: str) -> None:
	RETENTION_TIMER_FIRES.labels(kind=kind, result=result).inc()


def inc_reaped(pass_name: str, count: int) -> None:
	RETENTION_REAPED.labels(**{"pass": pass_name}).inc(count)


def mark_redis(ok: bool) -> None:
	REDIS_UP.set(1 if ok else 0)


def mark_postgres(ok: bool) -> None:
	POSTGRES_UP.set(1 if ok else 0)


def record_job_run(name: str, *, result: str, duration_seconds: float | None = None) -> None:
	BACKGROUND_RUNS.labels(name=name, result=result).inc()
	if duration_seconds is not None:
		BACKGROUND_DURATION.labels(name=name).observe(duration_seconds)
