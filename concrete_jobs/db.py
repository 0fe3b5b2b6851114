from functools import lru_cache
from typing import Iterator

from fastapi import Depends
from sqlalchemy.engine import Engine
from sqlmodel import SQLModel, Session, create_engine

from concrete_jobs import models  # noqa: F401  (registers tables)
from concrete_jobs.settings import settings


def make_engine(url: str, **kwargs) -> Engine:
    if url.startswith("sqlite"):
        # SSE streams and background tasks touch the db from worker threads
        kwargs.setdefault("connect_args", {"check_same_thread": False})
    engine = create_engine(url, **kwargs)
    SQLModel.metadata.create_all(engine)
    return engine


@lru_cache(maxsize=1)
def get_engine() -> Engine:
    return make_engine(settings.DATABASE_URL)


def get_session(engine: Engine = Depends(get_engine)) -> Iterator[Session]:
    with Session(engine) as s:
        yield s
