import logging
from contextlib import asynccontextmanager
from pathlib import Path
from typing import Type, List, Optional
import asyncpg
from asyncpg.exceptions import PostgresError
from pydantic import BaseModel

logger = logging.getLogger(__name__)

SCHEMA_PATH = Path(__file__).resolve().parent.parent / "schema.sql"


class Database:
    def __init__(self, conn_string: Optional[str] = None):
        self.conn_string = conn_string
        self.pool = None

    async def connect(self):
        try:
            self.pool = await asyncpg.create_pool(self.conn_string)
        except Exception as e:
            raise ConnectionError(f"Error connecting to database: {e}")

    async def disconnect(self):
        if self.pool:
            await self.pool.close()
            self.pool = None

    def _require_pool(self):
        if not self.pool:
            raise RuntimeError("Database connection pool is not initialized")
        return self.pool

    async def execute_query(self, sql, *parameters):
        pool = self._require_pool()
        try:
            response = await pool.fetch(sql, *parameters)
            return [dict(row) for row in response]
        except PostgresError as e:
            logger.error(f"Postgres error: {e}")
            raise

    async def fetch_one(self, sql, *parameters) -> Optional[dict]:
        result = await self.execute_query(sql, *parameters)
        return result[0] if result else None

    async def execute_to_model(self, model: Type[BaseModel], sql: str, *parameters) -> List[BaseModel]:
        result = await self.execute_query(sql, *parameters)
        return [model(**item) for item in result]

    @asynccontextmanager
    async def transaction(self):
        """Yield a connection inside a transaction; commit on exit, roll back on error."""
        pool = self._require_pool()
        async with pool.acquire() as conn:
            async with conn.transaction():
                yield conn

    async def ensure_schema(self, path: Path = SCHEMA_PATH):
        pool = self._require_pool()
        await pool.execute(path.read_text())
        logger.info(f"Applied schema from {path.name}")
