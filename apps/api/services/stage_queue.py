"""Durable pipeline stage queue helpers (Redis/RQ)."""

from __future__ import annotations

from redis import Redis
from rq import Queue, Retry
from rq.job import Job

from config import settings


STAGE_QUEUE_NAME = "pipeline_stages"


def get_redis_connection() -> Redis:
    """Build Redis connection used by RQ."""
    return Redis.from_url(settings.REDIS_URL, socket_connect_timeout=2)


def get_stage_queue() -> Queue:
    """Return the configured pipeline stage queue."""
    return Queue(
        name=STAGE_QUEUE_NAME,
        connection=get_redis_connection(),
        default_timeout=600,
    )


def enqueue_transcription_job(asset_id: str) -> Job:
    """Enqueue a transcription dispatch with retries for transient collaborator failures."""
    queue = get_stage_queue()
    return queue.enqueue(
        "services.stage_orchestrator.run_transcription_job",
        asset_id,
        job_id=f"transcribe:{asset_id}",
        retry=Retry(max=3, interval=[15, 60, 180]),
        job_timeout=300,
        result_ttl=86400,
        failure_ttl=86400,
    )


def enqueue_merge_job(asset_id: str) -> Job:
    """Enqueue a transcript/scratch-item merge for a source video."""
    queue = get_stage_queue()
    return queue.enqueue(
        "services.stage_orchestrator.run_merge_job",
        asset_id,
        job_id=f"merge:{asset_id}",
        retry=Retry(max=2, interval=[30, 120]),
        job_timeout=600,
        result_ttl=86400,
        failure_ttl=86400,
    )
