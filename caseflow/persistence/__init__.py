"""Storage backends for workflow definitions and execution records.

:func:`get_repository` picks a backend from a database URL:

* no URL: :class:`InMemoryProcessRepository`
* ``sqlite://<path>``: :class:`SQLiteProcessRepository`
* ``postgres://...`` or ``postgresql://...``: :class:`PostgresProcessRepository`

The chosen repository is cached and shared by every store and engine that is
built without an explicit repository.
"""

from __future__ import annotations

import os
from typing import Optional

from ..config import CaseflowConfig, load_config
from .inmemory import InMemoryProcessRepository
from .postgres import PostgresProcessRepository
from .repository import ProcessRepository, category_of
from .sqlite import SQLiteProcessRepository

_repository_instance: ProcessRepository | None = None


def _database_url(
    database_url: Optional[str], config: Optional[CaseflowConfig]
) -> Optional[str]:
    if database_url:
        return database_url
    return (
        os.getenv("CASEFLOW_DATABASE_URL")
        or os.getenv("DATABASE_URL")
        or (config or load_config()).database_url
    )


def _open_repository(database_url: str) -> ProcessRepository:
    scheme, _, location = database_url.partition("://")
    if scheme == "sqlite" and location:
        return SQLiteProcessRepository(location)
    if scheme in ("postgres", "postgresql"):
        return PostgresProcessRepository(database_url)
    raise ValueError(f"Unsupported database backend: {database_url}")


def get_repository(
    database_url: Optional[str] = None, config: Optional[CaseflowConfig] = None
) -> ProcessRepository:
    """Return the shared repository, opening it on first use.

    Passing ``database_url`` or ``config`` always opens a fresh repository
    and makes it the shared one. Otherwise the URL comes from
    ``CASEFLOW_DATABASE_URL``, ``DATABASE_URL`` or the loaded configuration,
    in that order.
    """
    global _repository_instance
    if _repository_instance is not None and database_url is None and config is None:
        return _repository_instance

    url = _database_url(database_url, config)
    _repository_instance = _open_repository(url) if url else InMemoryProcessRepository()
    return _repository_instance


__all__ = [
    "InMemoryProcessRepository",
    "PostgresProcessRepository",
    "ProcessRepository",
    "SQLiteProcessRepository",
    "category_of",
    "get_repository",
]
