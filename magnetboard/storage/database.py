from datetime import datetime
from functools import lru_cache

from sqlalchemy import Boolean, Column, Date, DateTime, Integer, JSON, String, create_engine
from sqlalchemy.orm import declarative_base, sessionmaker
from sqlalchemy.pool import StaticPool

from magnetboard.config.settings import get_settings

Base = declarative_base()


class ResourceModel(Base):
    __tablename__ = "resources"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    class_type = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    allowed_equipment = Column(JSON, nullable=True)  # List[str]; null/empty = unrestricted
    on_site = Column(Boolean, default=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class JobModel(Base):
    __tablename__ = "jobs"

    id = Column(String, primary_key=True)
    type = Column(String, nullable=False)
    name = Column(String, nullable=False, default="")
    shift = Column(String, nullable=False, default="day")
    schedule_date = Column(Date, nullable=True)
    start_time = Column(String, nullable=True)
    finalized = Column(Boolean, default=False)
    rows = Column(JSON, nullable=True)  # List[{row, allowed_types, max_count}]
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AssignmentModel(Base):
    __tablename__ = "assignments"

    id = Column(String, primary_key=True)
    resource_id = Column(String, nullable=False, index=True)
    job_id = Column(String, nullable=False, index=True)
    row_type = Column(String, nullable=False)
    position = Column(Integer, default=0)
    attached_to = Column(String, nullable=True)
    time_slot = Column(JSON, nullable=True)  # {start_minute, end_minute, is_full_day}
    multi_shift = Column(Boolean, default=False)
    note = Column(String, nullable=True)
    version = Column(Integer, nullable=False, default=1)
    created_at = Column(DateTime, default=datetime.utcnow)
    updated_at = Column(DateTime, default=datetime.utcnow, onupdate=datetime.utcnow)


class AuditLogModel(Base):
    __tablename__ = "audit_logs"

    id = Column(Integer, primary_key=True, autoincrement=True)
    action = Column(String, nullable=False)
    entity_type = Column(String, nullable=False)
    entity_id = Column(String, nullable=False)
    change_details = Column(JSON, nullable=True)
    created_at = Column(DateTime, default=datetime.utcnow)


def make_engine(url: str):
    if url.startswith("sqlite") and ":memory:" in url:
        # One shared connection so every session sees the same in-memory database
        return create_engine(url, connect_args={"check_same_thread": False}, poolclass=StaticPool)
    return create_engine(url, pool_pre_ping=True, echo=False)


def make_session_factory(engine):
    return sessionmaker(autocommit=False, autoflush=False, bind=engine)


@lru_cache(maxsize=1)
def get_engine():
    return make_engine(get_settings().database_url)


def init_db(engine=None):
    Base.metadata.create_all(bind=engine or get_engine())
