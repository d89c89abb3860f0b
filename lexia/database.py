from sqlalchemy import create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from lexia.config import get_settings

settings = get_settings()


def build_engine(database_url: str, **engine_kwargs):
    # SQLite needs check_same_thread=False: store work runs in executor threads
    connect_args = {}
    if database_url.startswith("sqlite"):
        connect_args = {"check_same_thread": False}
    return create_engine(database_url, connect_args=connect_args, echo=False, **engine_kwargs)


engine = build_engine(settings.database_url)
SessionLocal = sessionmaker(autocommit=False, autoflush=False, bind=engine)
Base = declarative_base()

