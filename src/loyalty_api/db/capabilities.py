"""Schema capability descriptor resolved once at startup."""

from __future__ import annotations

from dataclasses import dataclass

from loguru import logger
from sqlalchemy import inspect
from sqlalchemy.ext.asyncio import AsyncEngine


RELATIONSHIP_TABLE = "customer_business_relationships"
PROGRAM_TABLE = "loyalty_programs"


@dataclass(frozen=True)
class SchemaCapabilities:
    """Optional schema features the engine may rely on.

    Defaults describe a fully migrated schema so callers that never ran
    detection (tests, scripts) get the complete behaviour.
    """

    dialect: str = "sqlite"
    supports_row_locks: bool = False
    has_relationship_table: bool = True
    has_program_table: bool = True

    def as_dict(self) -> dict[str, object]:
        return {
            "dialect": self.dialect,
            "supports_row_locks": self.supports_row_locks,
            "has_relationship_table": self.has_relationship_table,
            "has_program_table": self.has_program_table,
        }

    @classmethod
    async def detect(cls, engine: AsyncEngine) -> "SchemaCapabilities":
        async with engine.connect() as conn:
            tables = set(await conn.run_sync(lambda sync_conn: inspect(sync_conn).get_table_names()))

        dialect = engine.dialect.name
        capabilities = cls(
            dialect=dialect,
            supports_row_locks=dialect != "sqlite",
            has_relationship_table=RELATIONSHIP_TABLE in tables,
            has_program_table=PROGRAM_TABLE in tables,
        )
        logger.info("Resolved schema capabilities", **capabilities.as_dict())
        return capabilities


__all__ = ["SchemaCapabilities"]
