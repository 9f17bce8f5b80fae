from sqlalchemy import create_engine
from sqlalchemy.engine import Engine
from sqlalchemy.orm import sessionmaker, DeclarativeBase
from sqlalchemy.pool import StaticPool

from .settings import settings

class Base(DeclarativeBase):
    pass

def make_engine(url: str = settings.RACESYNC_LOCAL_DB_URL) -> Engine:
    kwargs = {}
    if url.startswith("sqlite"):
        # The deferred flush runs on a timer thread
        kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in url or url == "sqlite://":
            kwargs["poolclass"] = StaticPool
    return create_engine(url, future=True, echo=False, **kwargs)

def init_db(engine: Engine) -> sessionmaker:
    from . import models  # noqa
    Base.metadata.create_all(bind=engine)
    return sessionmaker(bind=engine, autoflush=False, autocommit=False, future=True)
