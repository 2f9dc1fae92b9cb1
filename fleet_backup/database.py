import os

from sqlalchemy.pool import StaticPool
from sqlmodel import create_engine, SQLModel

DATA_DIR = "data"
DATABASE_FILE = "fleet_backup.db"
DATABASE_URL = f"sqlite:///{os.path.join(DATA_DIR, DATABASE_FILE)}"


def make_engine(url: str = DATABASE_URL):
    if url.startswith("sqlite"):
        if url in ("sqlite://", "sqlite:///:memory:"):
            return create_engine(
                url, connect_args={"check_same_thread": False}, poolclass=StaticPool
            )
        path = url.replace("sqlite:///", "", 1)
        os.makedirs(os.path.dirname(path) or ".", exist_ok=True)
        return create_engine(url, connect_args={"check_same_thread": False})
    return create_engine(url)


def create_db_and_tables(engine):
    SQLModel.metadata.create_all(engine)


