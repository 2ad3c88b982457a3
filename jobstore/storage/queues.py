"""Job queue providers.

A queue name maps to a provider; the provider hands out the ``JobQueue`` that
knows how to push a job id onto that queue.  Queues without an explicit
mapping go to the default provider, which stores entries in ``jobqueue``.
"""

from __future__ import annotations

import logging
from typing import Iterable, Iterator, Protocol

from sqlalchemy import insert
from sqlalchemy.ext.asyncio import AsyncConnection

from jobstore.db.models import JobQueueEntry

logger = logging.getLogger("jobstore.queues")


class JobQueue(Protocol):
    async def enqueue(self, conn: AsyncConnection, queue: str, job_id: int) -> None:
        """Push *job_id* onto *queue* using the caller's connection."""
        ...


class JobQueueProvider(Protocol):
    def get_job_queue(self) -> JobQueue:
        ...


class DatabaseJobQueue:
    async def enqueue(self, conn: AsyncConnection, queue: str, job_id: int) -> None:
        await conn.execute(insert(JobQueueEntry).values(jobid=job_id, queue=queue))


class DatabaseJobQueueProvider:
    def __init__(self) -> None:
        self._queue = DatabaseJobQueue()

    def get_job_queue(self) -> JobQueue:
        return self._queue


class QueueProviderRegistry:
    """Resolves the provider responsible for a queue name."""

    def __init__(self, default_provider: JobQueueProvider) -> None:
        self._default = default_provider
        self._providers: list[JobQueueProvider] = [default_provider]
        self._by_queue: dict[str, JobQueueProvider] = {}

    @property
    def default_provider(self) -> JobQueueProvider:
        return self._default

    def add(self, provider: JobQueueProvider, queues: Iterable[str]) -> None:
        queues = list(queues)
        if not queues:
            raise ValueError("queues must name at least one queue")
        if provider not in self._providers:
            self._providers.append(provider)
        for queue in queues:
            self._by_queue[queue] = provider
        logger.debug("Registered %s for queues %s", type(provider).__name__, queues)

    def get_provider(self, queue: str) -> JobQueueProvider:
        return self._by_queue.get(queue, self._default)

    def __iter__(self) -> Iterator[JobQueueProvider]:
        return iter(self._providers)

    def __len__(self) -> int:
        return len(self._providers)
