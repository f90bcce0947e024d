"""Prometheus metrics for the orbs worker."""

from fastapi import Response
from prometheus_client import CONTENT_TYPE_LATEST, Counter, Histogram, generate_latest

topic_runs_total = Counter(
    "orbs_topic_runs_total",
    "Per-topic pipeline runs by outcome",
    ["status"],
)

label_attempts_total = Counter(
    "orbs_label_attempts_total",
    "Label generation attempts by outcome",
    ["outcome"],
)

promotions_total = Counter(
    "orbs_label_promotions_total",
    "Promotion decisions by path",
    ["path"],
)

topic_run_duration = Histogram(
    "orbs_topic_run_duration_seconds",
    "Wall time of one topic's pipeline run",
    buckets=[0.05, 0.1, 0.25, 0.5, 1.0, 2.5, 5.0, 10.0, 30.0],
)


async def metrics_endpoint() -> Response:
    return Response(content=generate_latest(), media_type=CONTENT_TYPE_LATEST)
