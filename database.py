# database.py
"""
SQLAlchemy database connection and session management.

This module provides:
- Engine configuration (SQL Server via pymssql in production, SQLite locally)
- Session factory for dependency injection
- Connection utilities

Usage:
     from database import get_session, engine

     # In FastAPI routes:
     @router.get("/balance")
     def balance(db: Session = Depends(get_session)):
          return get_balance(db, student_id)
"""
import logging
from contextlib import contextmanager
from typing import Generator

from sqlalchemy import create_engine, event, text
from sqlalchemy.engine import Engine
from sqlalchemy.orm import Query, Session, sessionmaker

from config import DATABASE_URL, SQL_ECHO

logger = logging.getLogger(__name__)


def build_engine(url: str, **kwargs) -> Engine:
     """
     Create an engine with the locking behaviour the ledger relies on.

     Server databases honour SELECT ... FOR UPDATE. SQLite ignores it, so
     every SQLite transaction is opened with BEGIN IMMEDIATE instead: the
     write lock is taken up front and concurrent writers are serialized.
     """
     if url.startswith("sqlite"):
          connect_args = kwargs.pop("connect_args", {})
          connect_args.setdefault("check_same_thread", False)
          engine = create_engine(url, connect_args=connect_args, echo=SQL_ECHO, **kwargs)

          @event.listens_for(engine, "connect")
          def _disable_pysqlite_begin(dbapi_connection, connection_record):
               # Let SQLAlchemy emit BEGIN itself
               dbapi_connection.isolation_level = None

          @event.listens_for(engine, "begin")
          def _begin_immediate(conn):
               conn.exec_driver_sql("BEGIN IMMEDIATE")

          return engine

     kwargs.setdefault("pool_size", 5)
     kwargs.setdefault("max_overflow", 10)
     kwargs.setdefault("pool_timeout", 30)
     kwargs.setdefault("pool_recycle", 1800)  # Recycle connections after 30 minutes
     kwargs.setdefault("pool_pre_ping", True)
     return create_engine(url, echo=SQL_ECHO, **kwargs)


# SQL Server ignores FOR UPDATE; its row lock is a table hint
MSSQL_ROW_LOCK_HINT = "WITH (UPDLOCK, ROWLOCK)"


def for_update(query: Query, entity) -> Query:
     """
     Add a row write lock held until the unit of work ends.

     Renders FOR UPDATE where the dialect supports it and an UPDLOCK, ROWLOCK
     table hint on SQL Server. SQLite relies on BEGIN IMMEDIATE instead.
     """
     return query.with_for_update().with_hint(entity, MSSQL_ROW_LOCK_HINT, "mssql")


def build_session_factory(bind: Engine) -> sessionmaker:
     return sessionmaker(
          bind=bind,
          autocommit=False,
          autoflush=False,
          expire_on_commit=False,
     )


# Create SQLAlchemy engine
engine = build_engine(DATABASE_URL)

# Session factory
SessionLocal = build_session_factory(engine)


def get_session() -> Generator[Session, None, None]:
     """
     FastAPI dependency that provides a database session.

     The request is one unit of work: committed when the handler returns,
     rolled back when it raises.

     Yields:
          Session: SQLAlchemy database session
     """
     session = SessionLocal()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


@contextmanager
def get_session_context() -> Generator[Session, None, None]:
     """
     Context manager for database sessions (for use outside FastAPI routes).

     Usage:
          with get_session_context() as db:
               apply_debit(db, account_id, 1, lesson_id=42)

     Yields:
          Session: SQLAlchemy database session
     """
     session = SessionLocal()
     try:
          yield session
          session.commit()
     except Exception:
          session.rollback()
          raise
     finally:
          session.close()


def init_db(bind: Engine = None) -> None:
     """
     Initialize database tables.

     Creates all tables defined in the models if they don't exist.
     For production, use Alembic migrations instead.
     """
     from models import Base
     Base.metadata.create_all(bind=bind or engine)


def check_connection() -> bool:
     """
     Test database connectivity.

     Returns:
          bool: True if connection successful, False otherwise
     """
     try:
          with engine.connect() as conn:
               conn.execute(text("SELECT 1"))
          return True
     except Exception:
          logger.exception("Database connection failed")
          return False
