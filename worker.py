#!/usr/bin/env python3
"""
Queue worker: consumes processing jobs from RabbitMQ and runs them
"""
import asyncio
import logging

from app.config.dependencies import build_orchestrator, get_session_store
from app.config.settings import settings
from app.infrastructure.external.mq_adapter import RabbitMQJobQueue
from app.jobs.runner import Job, JobRunner, JobStatus
from app.main import _configure_logging

logger = logging.getLogger("app.worker")


def main() -> None:
    _configure_logging()
    loop = asyncio.new_event_loop()
    asyncio.set_event_loop(loop)

    store = get_session_store()
    runner = JobRunner(build_orchestrator(store).run, store)
    queue = RabbitMQJobQueue(settings.queue)

    def handle(message: dict) -> bool:
        try:
            job = Job.from_message(message)
        except (KeyError, ValueError) as exc:
            logger.error("Rejecting job message %s: %s", message, exc)
            return False
        result = loop.run_until_complete(runner.execute(job))
        logger.info("Job %s finished status=%s attempts=%s", job.job_id, result.status, result.attempts)
        return result.status != JobStatus.FAILED

    try:
        queue.consume(handle)
    finally:
        loop.close()


if __name__ == "__main__":
    main()
