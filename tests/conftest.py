import asyncio

import pytest

from magnetboard.engine.rule_store import RuleStore
from magnetboard.engine.session import BoardSession
from magnetboard.models.entities import PERSONNEL_TYPES, ClassType, Job, JobType, Resource, ResourceType, Shift
from magnetboard.storage.database import init_db, make_engine, make_session_factory
from magnetboard.storage.store import SqlBackingStore


def make_resource(resource_id, resource_type, allowed_equipment=None):
    rtype = ResourceType(resource_type)
    return Resource(
        id=resource_id,
        type=rtype,
        class_type=ClassType.EMPLOYEE if rtype in PERSONNEL_TYPES else ClassType.EQUIPMENT,
        name=resource_id.title(),
        allowed_equipment=tuple(allowed_equipment) if allowed_equipment is not None else None,
    )


@pytest.fixture
def sql_store():
    """SQL backing store over a fresh in-memory database."""
    engine = make_engine("sqlite:///:memory:")
    init_db(engine)
    yield SqlBackingStore(make_session_factory(engine))
    engine.dispose()


@pytest.fixture
def crew_resources():
    """A small yard: operators, equipment, a truck and drivers."""
    return [
        make_resource("op-1", "operator"),
        make_resource("op-2", "operator"),
        make_resource("op-roller", "operator", allowed_equipment=["roller"]),
        make_resource("op-open", "operator", allowed_equipment=[]),
        make_resource("exc-1", "excavator"),
        make_resource("paver-1", "paver"),
        make_resource("skid-1", "skidsteer"),
        make_resource("skid-2", "skidsteer"),
        make_resource("truck-1", "truck"),
        make_resource("driver-1", "driver"),
        make_resource("driver-2", "driver"),
        make_resource("lab-1", "laborer"),
        make_resource("foreman-1", "foreman"),
        make_resource("foreman-2", "foreman"),
    ]


@pytest.fixture
def jobs():
    """Two undated jobs on different shifts plus a second day job."""
    return [
        Job(id="job-a", type=JobType.OTHER, name="Route 9 Drainage", shift=Shift.DAY),
        Job(id="job-b", type=JobType.OTHER, name="Main St Overlay", shift=Shift.NIGHT, start_time="19:00"),
        Job(id="job-c", type=JobType.OTHER, name="Depot Patching", shift=Shift.DAY),
    ]


@pytest.fixture
def board(sql_store, crew_resources, jobs):
    """Hydrated, connected board session with the built-in rules."""
    session = BoardSession(sql_store, RuleStore())
    session.connect()
    asyncio.run(session.save_resources(crew_resources))
    asyncio.run(session.save_jobs(jobs))
    return session


@pytest.fixture
def service(board):
    return board.service


@pytest.fixture
def resource_factory():
    return make_resource
