# backend/timecapsule/db/init_db.py
from sqlalchemy.engine import Engine

from timecapsule.db.base import Base
from timecapsule.db.session import engine

# Model import registers the tables on Base.metadata
from timecapsule import models  # noqa: F401


def init_db(bind: Engine = engine) -> None:
    Base.metadata.create_all(bind=bind)
