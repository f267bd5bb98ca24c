from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker

Base = declarative_base()


def make_engine(database_url: str):
    if database_url.startswith("sqlite"):
        # request threads and the background scheduler share the file
        return create_engine(
            database_url,
            connect_args={"check_same_thread": False, "timeout": 30},
        )
    return create_engine(
        database_url,
        # server databases: request threads plus the sweep jobs
        pool_size=10,
        max_overflow=20,
        pool_pre_ping=True,
        pool_recycle=3600,      # seconds
    )


def make_session_factory(engine):
    # expire_on_commit=False: rows are handed to other threads after the session closes
    return sessionmaker(autocommit=False, autoflush=False, expire_on_commit=False, bind=engine)


def init_db(engine) -> None:
    import models  # noqa: F401  (registers tables on Base.metadata)
    Base.metadata.create_all(bind=engine)
