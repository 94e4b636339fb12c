import logging
import os
from contextlib import contextmanager

from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

logger = logging.getLogger(__name__)

session_options = {"autoflush": True}

Base = declarative_base()


class Database:
    """
    Owns the SQLAlchemy engine and session factory for the process.

    Opened once at startup and handed to every component that reads or
    writes validators, closed at shutdown.
    """

    def __init__(self, url, **engine_options):
        self.url = url
        self.engine = create_engine(url, **engine_options)
        self.SessionLocal = sessionmaker(
            bind=self.engine,
            expire_on_commit=False,
            **session_options
        )

    @classmethod
    def sqlite(cls, db_path=":memory:"):
        if db_path == ":memory:":
            return cls(
                "sqlite://",
                connect_args={"check_same_thread": False},
                poolclass=StaticPool,
            )

        data_dir = os.path.dirname(os.path.abspath(db_path))
        os.makedirs(data_dir, exist_ok=True)
        return cls(
            f"sqlite:///{db_path}",
            connect_args={"check_same_thread": False},
        )

    @classmethod
    def mysql(cls, connection_string, pool_size=5):
        return cls(
            "mysql+pymysql://" + connection_string,
            pool_size=int(pool_size),
            pool_recycle=3600,
        )

    @classmethod
    def from_config(cls, config):
        connection_string = config.db("connection_string")
        if connection_string:
            logger.info("Using MySQL database at %s", config.db("host"))
            return cls.mysql(connection_string, config.db("connection_pool_size"))

        db_path = config.db("path")
        logger.info("Using sqlite database at %s", db_path)
        return cls.sqlite(db_path)

    def create_all(self):
        # models register their tables on Base when imported
        import validator_models  # noqa: F401

        Base.metadata.create_all(self.engine)

    @contextmanager
    def session(self):
        with self.SessionLocal() as session:
            yield session

    def close(self):
        self.engine.dispose()
