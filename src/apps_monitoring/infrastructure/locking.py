"""Cross-process single-flight on top of the store.

On PostgreSQL this is a session-level ``pg_try_advisory_lock`` held on a
dedicated autocommit connection for the duration of the block. SQLite has a
single writer and no competing worker processes, so the lock is always
granted there.
"""
from __future__ import annotations

import hashlib
import logging
from contextlib import contextmanager
from typing import Iterator

from sqlalchemy import text
from sqlalchemy.orm import sessionmaker

logger = logging.getLogger(__name__)


def lock_key(name: str) -> int:
    """Stable signed 64-bit key for ``pg_try_advisory_lock``."""
    return int.from_bytes(hashlib.sha256(name.encode("utf-8")).digest()[:8], "big", signed=True)


@contextmanager
def try_advisory_lock(session_factory: sessionmaker, name: str) -> Iterator[bool]:
    """Yield True when this process holds ``name``; False when another process does."""
    with session_factory() as session:
        bind = session.get_bind()
    if bind.dialect.name != "postgresql":
        yield True
        return
    key = lock_key(name)
    with bind.connect() as conn:
        conn = conn.execution_options(isolation_level="AUTOCOMMIT")
        acquired = bool(conn.execute(text("SELECT pg_try_advisory_lock(:key)"), {"key": key}).scalar())
        if not acquired:
            logger.info("Lock %s is held by another worker", name)
        try:
            yield acquired
        finally:
            if acquired:
                conn.execute(text("SELECT pg_advisory_unlock(:key)"), {"key": key})
