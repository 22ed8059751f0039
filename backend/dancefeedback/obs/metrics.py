"""Central registry for Prometheus metrics used across the backend."""

from __future__ import annotations

from prometheus_client import Counter, Histogram

MOD_MESSAGES_TOTAL = Counter(
	"dancefeedback_moderation_messages_total",
	"Moderation queue messages handled by outcome",
	["outcome"],
)

MOD_VERDICTS_TOTAL = Counter(
	"dancefeedback_moderation_verdicts_total",
	"Moderation verdicts applied by level and source",
	["level", "source"],
)

MOD_CLASSIFIER_FALLBACKS_TOTAL = Counter(
	"dancefeedback_moderation_classifier_fallbacks_total",
	"Classifier responses without a usable verdict",
)

MOD_CLASSIFIER_LATENCY_SECONDS = Histogram(
	"dancefeedback_moderation_classifier_latency_seconds",
	"Classifier round-trip latency in seconds",
	buckets=(0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0, 60.0),
)

MOD_QUEUE_RECONNECTS_TOTAL = Counter(
	"dancefeedback_moderation_queue_reconnects_total",
	"Queue transport (re)connections performed",
)

MOD_JOBS_ENQUEUED_TOTAL = Counter(
	"dancefeedback_moderation_jobs_enqueued_total",
	"Moderation jobs enqueued by origin",
	["origin"],
)


def observe_message(outcome: str) -> None:
	MOD_MESSAGES_TOTAL.labels(outcome).inc()


def observe_verdict(level: str, source: str) -> None:
	MOD_VERDICTS_TOTAL.labels(level, source).inc()


def observe_enqueue(origin: str) -> None:
	MOD_JOBS_ENQUEUED_TOTAL.labels(origin).inc()
