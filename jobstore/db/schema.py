"""Schema provisioning for the storage tables."""

from __future__ import annotations

import logging

from sqlalchemy.ext.asyncio import AsyncEngine
from sqlalchemy.schema import CreateSchema

from jobstore.db.models import Base

logger = logging.getLogger("jobstore.db.schema")


async def provision_schema(engine: AsyncEngine, schema_name: str | None = None) -> None:
    """Create the schema (PostgreSQL only) and any missing tables.

    Existing tables are left untouched; there is no migration step.
    """
    async with engine.begin() as conn:
        if schema_name and conn.dialect.name == "postgresql":
            await conn.execute(CreateSchema(schema_name, if_not_exists=True))
        await conn.run_sync(Base.metadata.create_all)
    logger.info("Storage schema ready (schema=%s)", schema_name or "default")
