"""Storage entry point: wires settings, engine, gateway and queue providers."""

from __future__ import annotations

import logging
from datetime import timedelta

from sqlalchemy.engine import make_url
from sqlalchemy.ext.asyncio import AsyncEngine

from jobstore.config import Settings, settings as default_settings
from jobstore.db.engine import build_engine
from jobstore.db.schema import provision_schema
from jobstore.storage.gateway import StoreGateway
from jobstore.storage.lock import DistributedLock, policy_for
from jobstore.storage.queues import DatabaseJobQueueProvider, QueueProviderRegistry
from jobstore.storage.transaction import WriteOnlyTransaction

logger = logging.getLogger("jobstore.storage")


class JobStorage:
    """Shared job storage used by every worker process.

    Usage::

        storage = JobStorage()
        await storage.initialize()

        async with storage.distributed_lock("queue:default", timeout=5):
            tx = storage.create_write_transaction()
            tx.add_to_queue("default", job_id)
            tx.increment_counter("stats:enqueued")
            await tx.commit()
    """

    def __init__(self, cfg: Settings | None = None, engine: AsyncEngine | None = None) -> None:
        self._settings = cfg or default_settings
        self._engine = engine or build_engine(self._settings)
        self._gateway = StoreGateway(self._engine, self._settings.schema_name)
        self._queue_providers = QueueProviderRegistry(DatabaseJobQueueProvider())

    @property
    def settings(self) -> Settings:
        return self._settings

    @property
    def gateway(self) -> StoreGateway:
        return self._gateway

    @property
    def queue_providers(self) -> QueueProviderRegistry:
        return self._queue_providers

    async def initialize(self) -> None:
        """Provision the schema when ``PREPARE_SCHEMA_IF_NECESSARY`` is set."""
        if self._settings.PREPARE_SCHEMA_IF_NECESSARY:
            await provision_schema(self._engine, self._settings.schema_name)
        logger.info("Job storage initialized: %s", self)

    def distributed_lock(
        self,
        resource: str,
        timeout: float | timedelta | None = None,
    ) -> DistributedLock:
        """Return an unacquired lock handle configured from the settings."""
        if timeout is None:
            timeout = self._settings.DISTRIBUTED_LOCK_TIMEOUT_SECONDS
        policy = policy_for(self._settings.USE_NATIVE_DATABASE_TRANSACTIONS)
        return DistributedLock(self._gateway, resource, timeout, policy)

    async def acquire_lock(
        self,
        resource: str,
        timeout: float | timedelta | None = None,
    ) -> DistributedLock:
        return await self.distributed_lock(resource, timeout).acquire()

    def create_write_transaction(self) -> WriteOnlyTransaction:
        return WriteOnlyTransaction(self._gateway, self._queue_providers)

    def write_options_to_log(self, log: logging.Logger | None = None) -> None:
        log = log or logger
        log.info("Using the following options for job storage:")
        log.info("    Queue poll interval: %ss.", self._settings.QUEUE_POLL_INTERVAL_SECONDS)
        log.info("    Invisibility timeout: %ss.", self._settings.INVISIBILITY_TIMEOUT_SECONDS)
        log.info("    Distributed lock timeout: %ss.", self._settings.DISTRIBUTED_LOCK_TIMEOUT_SECONDS)
        log.info(
            "    Lock policy: %s.",
            policy_for(self._settings.USE_NATIVE_DATABASE_TRANSACTIONS).name,
        )

    async def close(self) -> None:
        await self._gateway.dispose()

    def __str__(self) -> str:
        url = make_url(self._settings.STORE_DB_URL)
        if self._settings.is_postgres:
            return (
                f"PostgreSQL Server: Host: {url.host}, DB: {url.database}, "
                f"Schema: {self._settings.schema_name}"
            )
        return f"SQLite: DB: {url.database}"
