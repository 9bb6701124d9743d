import asyncio
import logging

from celery import Celery

logger = logging.getLogger(__name__)


class CeleryJobScheduler:
    """Fire-and-forget job submission with an optional start delay."""

    def __init__(self, app: Celery):
        self.app = app

    async def schedule(self, job_name: str, payload: dict, queue: str, delay_ms: int = 0) -> None:
        countdown = delay_ms / 1000 if delay_ms > 0 else None
        await asyncio.to_thread(
            self.app.send_task,
            job_name,
            kwargs={"payload": payload},
            queue=queue,
            countdown=countdown,
        )
        logger.debug("Scheduled %s on %s (delay %d ms)", job_name, queue, delay_ms)
