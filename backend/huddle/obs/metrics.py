"""Central registry for Prometheus metrics used across the call registry."""

from __future__ import annotations

from prometheus_client import Counter, Histogram


REQUEST_COUNTER = Counter(
	"huddle_http_requests_total",
	"Total HTTP requests processed",
	["route", "method", "status"],
)

REQUEST_LATENCY = Histogram(
	"huddle_http_request_duration_seconds",
	"HTTP request latency in seconds",
	["route", "method"],
	buckets=(0.01, 0.025, 0.05, 0.1, 0.25, 0.5, 1.0, 2.0, 5.0),
)

CALLS_CREATED = Counter(
	"huddle_calls_created_total",
	"Call rooms created",
	["scope", "media_kind"],
)

CALLS_JOINED = Counter(
	"huddle_calls_joined_total",
	"Joins into an already active call room",
	["scope"],
)

CALLS_REACTIVATED = Counter(
	"huddle_calls_reactivated_total",
	"Inactive call rooms reactivated by create-or-join",
	["scope"],
)

CALLS_ENDED = Counter(
	"huddle_calls_ended_total",
	"Call rooms explicitly ended",
)

CALLS_DENIED = Counter(
	"huddle_calls_denied_total",
	"Access denials by the scope evaluator",
	["scope"],
)

CALLS_SWEPT = Counter(
	"huddle_calls_swept_total",
	"Call rooms deactivated by the stale sweeper",
	["scope"],
)

STORE_CONFLICTS = Counter(
	"huddle_call_store_conflicts_total",
	"Compare-and-update version conflicts retried by the store",
)

CREDENTIALS_ISSUED = Counter(
	"huddle_credentials_issued_total",
	"Media transport credentials issued",
	["media_kind", "moderator"],
)

CREDENTIAL_FAILURES = Counter(
	"huddle_credential_failures_total",
	"Credential issuance failures",
	["reason"],
)

CREDENTIAL_SIGN_LATENCY = Histogram(
	"huddle_credential_sign_seconds",
	"Credential signing latency in seconds",
	buckets=(0.001, 0.005, 0.01, 0.05, 0.1, 0.5, 1.0, 4.0, 8.0),
)


def observe_request(route: str, method: str, status: int, latency_seconds: float) -> None:
	REQUEST_COUNTER.labels(route=route, method=method, status=str(status)).inc()
	REQUEST_LATENCY.labels(route=route, method=method).observe(latency_seconds)


def inc_call_created(scope: str, media_kind: str) -> None:
	CALLS_CREATED.labels(scope=scope, media_kind=media_kind).inc()


def inc_call_joined(scope: str) -> None:
	CALLS_JOINED.labels(scope=scope).inc()


def inc_call_reactivated(scope: str) -> None:
	CALLS_REACTIVATED.labels(scope=scope).inc()


def inc_call_ended() -> None:
	CALLS_ENDED.inc()


def inc_call_denied(scope: str) -> None:
	CALLS_DENIED.labels(scope=scope).inc()


def inc_calls_swept(scope: str, count: int) -> None:
	if count:
		CALLS_SWEPT.labels(scope=scope).inc(count)


def inc_store_conflict() -> None:
	STORE_CONFLICTS.inc()


def inc_credential_issued(media_kind: str, moderator: bool) -> None:
	CREDENTIALS_ISSUED.labels(media_kind=media_kind, moderator=str(moderator).lower()).inc()


def inc_credential_failure(reason: str) -> None:
	CREDENTIAL_FAILURES.labels(reason=reason).inc()


def observe_credential_sign(latency_seconds: float) -> None:
	CREDENTIAL_SIGN_LATENCY.observe(latency_seconds)
