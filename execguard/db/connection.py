"""
Database Connection Manager
===========================

Opens the async SQLite database that backs the knowledge base and the
approval queue.

There is no module-level session maker: init_db() returns a Database
handle which the caller owns and passes to whatever needs it.
"""

from dataclasses import dataclass
from pathlib import Path
from typing import Union

from sqlalchemy import event
from sqlalchemy.ext.asyncio import AsyncEngine, AsyncSession, async_sessionmaker, create_async_engine

from execguard.db.models import Base


# Full-text index over the narrative columns of `lessons`, kept in sync by
# triggers. SQLite executes one statement at a time, hence the list.
FTS_STATEMENTS = [
    """
    CREATE VIRTUAL TABLE IF NOT EXISTS lessons_fts USING fts5(
        task_description,
        error_message,
        solution,
        lesson_summary,
        content='lessons',
        content_rowid='id'
    )
    """,
    """
    CREATE TRIGGER IF NOT EXISTS lessons_ai AFTER INSERT ON lessons BEGIN
        INSERT INTO lessons_fts(rowid, task_description, error_message, solution, lesson_summary)
        VALUES (new.id, new.task_description, new.error_message, new.solution, new.lesson_summary);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS lessons_ad AFTER DELETE ON lessons BEGIN
        INSERT INTO lessons_fts(lessons_fts, rowid, task_description, error_message, solution, lesson_summary)
        VALUES ('delete', old.id, old.task_description, old.error_message, old.solution, old.lesson_summary);
    END
    """,
    """
    CREATE TRIGGER IF NOT EXISTS lessons_au AFTER UPDATE ON lessons BEGIN
        INSERT INTO lessons_fts(lessons_fts, rowid, task_description, error_message, solution, lesson_summary)
        VALUES ('delete', old.id, old.task_description, old.error_message, old.solution, old.lesson_summary);
        INSERT INTO lessons_fts(rowid, task_description, error_message, solution, lesson_summary)
        VALUES (new.id, new.task_description, new.error_message, new.solution, new.lesson_summary);
    END
    """,
]


@dataclass
class Database:
    """Engine plus session factory for one SQLite file."""
    engine: AsyncEngine
    session_maker: async_sessionmaker[AsyncSession]
    path: Path

    async def dispose(self) -> None:
        """Close all pooled connections."""
        await self.engine.dispose()


def _enable_wal(dbapi_connection, connection_record) -> None:
    cursor = dbapi_connection.cursor()
    cursor.execute("PRAGMA journal_mode=WAL")
    cursor.execute("PRAGMA foreign_keys=ON")
    cursor.close()


async def init_db(db_path: Union[str, Path]) -> Database:
    """
    Initialize the database and create tables if they don't exist.

    Args:
        db_path: Path of the SQLite file; parent directories are created

    Returns:
        Database handle
    """
    db_path = Path(db_path)
    db_path.parent.mkdir(parents=True, exist_ok=True)

    engine = create_async_engine(f"sqlite+aiosqlite:///{db_path}", echo=False)
    event.listen(engine.sync_engine, "connect", _enable_wal)

    async with engine.begin() as conn:
        await conn.run_sync(Base.metadata.create_all)
        for statement in FTS_STATEMENTS:
            await conn.exec_driver_sql(statement)

    session_maker = async_sessionmaker(engine, expire_on_commit=False)
    return Database(engine=engine, session_maker=session_maker, path=db_path)
