from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker, declarative_base
from sqlalchemy.pool import StaticPool
from flask import g, current_app

from groupbuy.config import Config


def build_engine(database_url: str, echo: bool = False):
    engine_kwargs = {
        "echo": echo,
        "future": True,
        "pool_pre_ping": True,
    }
    if database_url.startswith("sqlite"):
        engine_kwargs["connect_args"] = {"check_same_thread": False}
        if ":memory:" in database_url:
            # One shared connection so every session sees the same in-memory DB
            engine_kwargs["poolclass"] = StaticPool
    else:
        engine_kwargs["pool_size"] = Config.DB_POOL_SIZE
        engine_kwargs["max_overflow"] = Config.DB_MAX_OVERFLOW
    return create_engine(database_url, **engine_kwargs)


engine = build_engine(Config.DATABASE_URL, echo=Config.SQL_ECHO)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine, future=True)

Base = declarative_base()


def get_db():
    if 'db' not in g:
        session_factory = current_app.extensions.get("groupbuy.session_factory", SessionLocal)
        g.db = session_factory()
    return g.db


def close_db(e=None):
    try:
        db = g.pop('db', None)
        if db is not None:
            db.close()
    except RuntimeError:
        # Outside of an application context (test teardown)
        pass
