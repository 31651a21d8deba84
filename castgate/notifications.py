# castgate/notifications.py
"""
In-process background jobs and completion notifications.

InProcessJobQueue runs registered async handlers as asyncio tasks and retries a
failing job up to its max_attempts with exponential backoff. Jobs:

- execute-cast-request          {"llm_request_id": ...}  runs the orchestrator
- send-completion-notification  {"llm_request_id": ...}  publishes the terminal result

The completion event is SSE-formatted and published on the redis channel
"llm_request:<id>" when REDIS_URL is set; otherwise it is only logged.
"""

import asyncio
import json
import logging
import os
import uuid
from typing import Any, Awaitable, Callable, Dict, Optional, Set

from redis.asyncio import Redis

from castgate import db as dbmod
from castgate.models import TERMINAL_STATUSES

logger = logging.getLogger("castgate")

REDIS_URL = os.getenv("REDIS_URL")

JOB_EXECUTE_CAST_REQUEST = "execute-cast-request"
JOB_SEND_COMPLETION_NOTIFICATION = "send-completion-notification"
EXECUTE_MAX_ATTEMPTS = 6
NOTIFY_MAX_ATTEMPTS = 3

JobHandler = Callable[[Dict[str, Any]], Awaitable[Any]]

_sleep = asyncio.sleep


class InProcessJobQueue:
    def __init__(self, backoff_base: float = 1.0):
        self.backoff_base = backoff_base
        self._handlers: Dict[str, JobHandler] = {}
        self._tasks: Set[asyncio.Task] = set()

    def register(self, job_name: str, handler: JobHandler):
        self._handlers[job_name] = handler

    async def schedule(self, job_name: str, payload: Dict[str, Any], max_attempts: int = 1):
        if job_name not in self._handlers:
            raise KeyError(f"No handler registered for job '{job_name}'")
        task = asyncio.get_running_loop().create_task(
            self._run(job_name, payload, max_attempts)
        )
        self._tasks.add(task)
        task.add_done_callback(self._tasks.discard)

    async def _run(self, job_name: str, payload: Dict[str, Any], max_attempts: int):
        handler = self._handlers[job_name]
        for attempt in range(1, max_attempts + 1):
            try:
                await handler(payload)
                return
            except Exception:
                logger.exception(
                    "job attempt failed",
                    extra={"job": job_name, "attempt": attempt, "max_attempts": max_attempts},
                )
                if attempt < max_attempts:
                    await _sleep(self.backoff_base * 2 ** (attempt - 1))
        logger.error(
            "unexpected-situation. job failed after all attempts",
            extra={"job": job_name, "job_payload": payload},
        )

    async def drain(self):
        """Wait until every scheduled job (including jobs they schedule) has finished."""
        while self._tasks:
            await asyncio.gather(*list(self._tasks))


def build_completion_event(record) -> Optional[str]:
    """SSE message for a terminal record, or None if there is nothing to send."""
    if not record.result:
        return None
    payload = json.loads(record.result)
    payload["sseEventType"] = f"castgate.llm_request.{record.status}"
    return "\n".join([
        "event: message",
        f"id: {uuid.uuid4()}",
        f"data: {json.dumps(payload)}",
        "",
    ]) + "\n"


def completion_channel(request_id: str) -> str:
    return f"llm_request:{request_id}"


async def _publish(channel: str, message: str):
    if not REDIS_URL:
        logger.info("completion event (no REDIS_URL, not published)", extra={"channel": channel})
        return
    client = Redis.from_url(REDIS_URL, decode_responses=True)
    try:
        await client.publish(channel, message)
    finally:
        await client.aclose()


async def send_completion_notification(payload: Dict[str, Any]):
    request_id = payload.get("llm_request_id") if isinstance(payload, dict) else None
    if not request_id:
        logger.error("unexpected-situation. invalid completion job payload", extra={"job_payload": payload})
        return

    record = dbmod.find_request(request_id)
    if record is None:
        logger.error(
            "unexpected-situation. completion job for unknown request",
            extra={"llm_request_id": request_id},
        )
        return
    if record.status not in TERMINAL_STATUSES:
        return

    message = build_completion_event(record)
    if message is None:
        logger.error(
            "unexpected-situation. terminal request has empty result",
            extra={"llm_request_id": request_id},
        )
        return
    await _publish(completion_channel(request_id), message)


def register_jobs(queue: InProcessJobQueue, orchestrator):
    async def execute_cast_request(payload: Dict[str, Any]):
        await orchestrator.execute_request(payload["llm_request_id"])

    queue.register(JOB_EXECUTE_CAST_REQUEST, execute_cast_request)
    queue.register(JOB_SEND_COMPLETION_NOTIFICATION, send_completion_notification)
