from functools import lru_cache
from typing import Any

from sqlalchemy import create_engine
from sqlalchemy.engine import Engine, make_url
from sqlalchemy.orm import DeclarativeBase

from pdfchat.config import get_settings


class Base(DeclarativeBase):
    pass


def engine_options(database_url: str) -> dict[str, Any]:
    """Keyword arguments for ``create_engine`` for this backend.

    Worker threads and the API thread pool share one engine, so SQLite
    connections must be usable from threads other than the one that opened them.
    """
    options: dict[str, Any] = {"pool_pre_ping": True}
    if make_url(database_url).get_backend_name() == "sqlite":
        options["connect_args"] = {"check_same_thread": False}
    return options


@lru_cache
def get_engine() -> Engine:
    settings = get_settings()
    return create_engine(
        settings.database_url,
        echo=settings.db_echo,
        **engine_options(settings.database_url),
    )
