from typing import List, Optional
import aiosqlite
import asyncio
import json
from contextlib import asynccontextmanager

from ..utils.logging import get_logger
from ..utils.exceptions import ConnectionPoolError, DatabaseError
from .base import Document, DocumentStore, Mutator, Predicate, UpsertMutator

logger = get_logger(__name__)


async def _open_connection(db_path: str) -> aiosqlite.Connection:
    # Autocommit mode; transactions are opened explicitly with BEGIN IMMEDIATE
    conn = await aiosqlite.connect(db_path, isolation_level=None)
    await conn.execute('PRAGMA journal_mode=WAL')
    await conn.execute('PRAGMA busy_timeout=5000')
    return conn


class ConnectionPool:
    """Manages a pool of database connections"""
    def __init__(self, db_path: str, max_connections: int = 5):
        self.db_path = db_path
        # Every ":memory:" connection is its own database
        self.max_connections = 1 if db_path == ":memory:" else max_connections
        self._pool: asyncio.Queue = asyncio.Queue(maxsize=self.max_connections)
        self._active_connections = 0
        self._lock = asyncio.Lock()

    async def initialize(self):
        """Initialize the connection pool"""
        logger.info(f"Initializing connection pool with {self.max_connections} connections")
        try:
            for _ in range(self.max_connections):
                conn = await _open_connection(self.db_path)
                await self._pool.put(conn)
                self._active_connections += 1
        except Exception as e:
            logger.error(f"Failed to initialize connection pool: {e}")
            raise ConnectionPoolError(f"Connection pool initialization failed: {e}")

    @asynccontextmanager
    async def acquire(self):
        """Acquire a connection from the pool"""
        connection = None
        try:
            async with self._lock:
                if self._pool.empty() and self._active_connections < self.max_connections:
                    connection = await _open_connection(self.db_path)
                    self._active_connections += 1
            if connection is None:
                try:
                    connection = await asyncio.wait_for(self._pool.get(), timeout=5.0)
                except asyncio.TimeoutError:
                    raise ConnectionPoolError("Timeout waiting for database connection")

            yield connection

        finally:
            if connection:
                try:
                    self._pool.put_nowait(connection)
                except asyncio.QueueFull:
                    logger.error("Connection pool overflow, closing connection")
                    await connection.close()
                    async with self._lock:
                        self._active_connections -= 1

    async def close(self):
        """Close all connections in the pool"""
        while not self._pool.empty():
            conn = await self._pool.get()
            await conn.close()
        self._active_connections = 0


class SQLiteStore(DocumentStore):
    """
    Durable DocumentStore on SQLite. Documents are JSON bodies in a single
    table keyed by (collection, key); every read-modify-write holds the
    database write lock for its whole duration.
    """
    def __init__(self, db_path: str, max_connections: int = 5):
        self.pool = ConnectionPool(db_path, max_connections)

    async def initialize(self) -> None:
        await self.pool.initialize()
        async with self.pool.acquire() as conn:
            await conn.execute('''
                CREATE TABLE IF NOT EXISTS documents (
                    collection TEXT NOT NULL,
                    key TEXT NOT NULL,
                    body TEXT NOT NULL,
                    updated_at TIMESTAMP DEFAULT CURRENT_TIMESTAMP,
                    PRIMARY KEY (collection, key)
                )
            ''')
        logger.info(f"Document store ready at {self.pool.db_path}")

    async def close(self) -> None:
        await self.pool.close()
        logger.info("Database connections closed")

    @asynccontextmanager
    async def _transaction(self):
        async with self.pool.acquire() as conn:
            await conn.execute('BEGIN IMMEDIATE')
            try:
                yield conn
            except BaseException:
                await conn.execute('ROLLBACK')
                raise
            else:
                await conn.execute('COMMIT')

    @staticmethod
    async def _read(conn: aiosqlite.Connection, collection: str, key: str) -> Optional[Document]:
        async with conn.execute(
            'SELECT body FROM documents WHERE collection = ? AND key = ?',
            (collection, key)
        ) as cursor:
            row = await cursor.fetchone()
            return json.loads(row[0]) if row else None

    @staticmethod
    async def _write(conn: aiosqlite.Connection, collection: str, key: str, document: Document) -> None:
        await conn.execute('''
            INSERT OR REPLACE INTO documents (collection, key, body, updated_at)
            VALUES (?, ?, ?, CURRENT_TIMESTAMP)
        ''', (collection, key, json.dumps(document)))

    async def get(self, collection: str, key: str) -> Optional[Document]:
        try:
            async with self.pool.acquire() as conn:
                return await self._read(conn, collection, key)
        except Exception as e:
            logger.error(f"Failed to read {collection}/{key}: {e}")
            raise DatabaseError(f"Failed to read {collection}/{key}: {e}")

    async def insert(self, collection: str, key: str, document: Document) -> bool:
        try:
            async with self.pool.acquire() as conn:
                cursor = await conn.execute('''
                    INSERT OR IGNORE INTO documents (collection, key, body)
                    VALUES (?, ?, ?)
                ''', (collection, key, json.dumps(document)))
                return cursor.rowcount == 1
        except Exception as e:
            logger.error(f"Failed to insert {collection}/{key}: {e}")
            raise DatabaseError(f"Failed to insert {collection}/{key}: {e}")

    async def update(self, collection: str, key: str, mutator: Mutator) -> Optional[Document]:
        try:
            async with self._transaction() as conn:
                current = await self._read(conn, collection, key)
                if current is None:
                    return None
                replacement = mutator(current)
                if replacement is not None:
                    await self._write(conn, collection, key, replacement)
                return replacement
        except Exception as e:
            logger.error(f"Failed to update {collection}/{key}: {e}")
            raise DatabaseError(f"Failed to update {collection}/{key}: {e}")

    async def upsert(self, collection: str, key: str, mutator: UpsertMutator) -> Optional[Document]:
        try:
            async with self._transaction() as conn:
                current = await self._read(conn, collection, key)
                replacement = mutator(current)
                if replacement is not None:
                    await self._write(conn, collection, key, replacement)
                return replacement
        except Exception as e:
            logger.error(f"Failed to upsert {collection}/{key}: {e}")
            raise DatabaseError(f"Failed to upsert {collection}/{key}: {e}")

    async def update_many(self, collection: str, mutator: Mutator) -> List[Document]:
        changed = []
        try:
            async with self._transaction() as conn:
                async with conn.execute(
                    'SELECT key, body FROM documents WHERE collection = ?', (collection,)
                ) as cursor:
                    rows = await cursor.fetchall()
                for key, body in rows:
                    replacement = mutator(json.loads(body))
                    if replacement is not None:
                        await self._write(conn, collection, key, replacement)
                        changed.append(replacement)
            return changed
        except Exception as e:
            logger.error(f"Failed bulk update on {collection}: {e}")
            raise DatabaseError(f"Failed bulk update on {collection}: {e}")

    async def find(self, collection: str, predicate: Optional[Predicate] = None) -> List[Document]:
        try:
            async with self.pool.acquire() as conn:
                async with conn.execute(
                    'SELECT body FROM documents WHERE collection = ? ORDER BY updated_at',
                    (collection,)
                ) as cursor:
                    rows = await cursor.fetchall()
            documents = [json.loads(row[0]) for row in rows]
            return [d for d in documents if predicate is None or predicate(d)]
        except Exception as e:
            logger.error(f"Failed to query {collection}: {e}")
            raise DatabaseError(f"Failed to query {collection}: {e}")
