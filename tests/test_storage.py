import asyncio
import json
from datetime import date
from unittest.mock import MagicMock

import pytest
import redis

from magnetboard.exceptions import PersistenceError
from magnetboard.models.entities import Assignment, Job, JobRow, JobType, ResourceType, RowType, Shift, TimeSlot
from magnetboard.storage.change_feed import ChangeEvent, ChangeType, LocalChangeFeed, RedisChangeFeed
from magnetboard.storage.serialization import assignment_to_dict


def _payload(assignment_id="a1", resource_id="exc-1", job_id="job-a", row=RowType.EQUIPMENT, **fields):
    return assignment_to_dict(Assignment(assignment_id, resource_id, job_id, row, version=1, **fields))


class TestSqlBackingStore:
    """Reference store over SQLAlchemy."""

    def test_create_emits_insert_event(self, sql_store):
        events = []
        sql_store.subscribe_to_changes(events.append)
        slot = TimeSlot.parse("07:00", "15:30")

        created = asyncio.run(sql_store.create_assignment(_payload(time_slot=slot)))

        assert created.version == 1
        assert created.time_slot == slot
        assert [(e.table, e.type, e.version) for e in events] == [("assignments", ChangeType.INSERT, 1)]

    def test_update_bumps_version(self, sql_store):
        asyncio.run(sql_store.create_assignment(_payload()))
        updated = asyncio.run(sql_store.update_assignment("a1", {"row": "Crew", "position": 3}))
        assert updated.version == 2
        assert updated.row is RowType.CREW
        assert updated.position == 3

    def test_delete_returns_deletion_version(self, sql_store):
        events = []
        sql_store.subscribe_to_changes(events.append)
        asyncio.run(sql_store.create_assignment(_payload()))
        version = asyncio.run(sql_store.delete_assignment("a1"))
        assert version == 2
        assert events[-1].type is ChangeType.DELETE
        assert events[-1].record["id"] == "a1"
        assert sql_store.load_snapshot()[2] == []

    def test_missing_records_raise_persistence_error(self, sql_store):
        with pytest.raises(PersistenceError):
            asyncio.run(sql_store.update_assignment("nope", {"position": 1}))
        with pytest.raises(PersistenceError):
            asyncio.run(sql_store.delete_assignment("nope"))
        with pytest.raises(PersistenceError):
            asyncio.run(sql_store.update_job("nope", {"finalized": True}))

    def test_duplicate_create_rejected(self, sql_store):
        asyncio.run(sql_store.create_assignment(_payload()))
        with pytest.raises(PersistenceError):
            asyncio.run(sql_store.create_assignment(_payload()))

    def test_group_move_is_one_transaction(self, sql_store):
        asyncio.run(sql_store.create_assignment(_payload("t1", "truck-1", row=RowType.TRUCKS)))
        asyncio.run(sql_store.create_assignment(_payload("d1", "driver-1", row=RowType.TRUCKS, attached_to="t1")))

        with pytest.raises(PersistenceError):
            asyncio.run(sql_store.move_assignment_group(["t1", "d1", "ghost"], "job-b", RowType.TRUCKS, 0))

        _, _, stored = sql_store.load_snapshot()
        assert {a.job_id for a in stored} == {"job-a"}

    def test_group_move_keeps_links_and_audits(self, sql_store):
        asyncio.run(sql_store.create_assignment(_payload("t1", "truck-1", row=RowType.TRUCKS)))
        asyncio.run(sql_store.create_assignment(_payload("d1", "driver-1", row=RowType.TRUCKS, attached_to="t1")))

        moved = asyncio.run(sql_store.move_assignment_group(["t1", "d1"], "job-b", RowType.TRUCKS, 2))

        assert [(a.id, a.job_id, a.position) for a in moved] == [("t1", "job-b", 2), ("d1", "job-b", 2)]
        assert moved[1].attached_to == "t1"
        entry = sql_store.audit_log()[0]
        assert entry["action"] == "MOVE_ASSIGNMENT_GROUP"
        assert entry["change_details"]["moved_assignments"] == ["t1", "d1"]

    def test_job_round_trip(self, sql_store):
        job = Job(
            id="job-x",
            type=JobType.PAVING,
            name="Airport Apron",
            shift=Shift.NIGHT,
            schedule_date=date(2026, 5, 4),
            start_time="20:00",
            rows=(JobRow(RowType.CREW, allowed_types=frozenset({ResourceType.LABORER}), max_count=4),),
        )
        saved = asyncio.run(sql_store.upsert_job(job))
        assert saved.version == 1
        again = asyncio.run(sql_store.upsert_job(job))
        assert again.version == 2

        _, jobs, _ = sql_store.load_snapshot()
        assert jobs[0].rows == job.rows
        assert jobs[0].schedule_date == date(2026, 5, 4)

    def test_resource_allowed_equipment_round_trip(self, sql_store, resource_factory):
        asyncio.run(sql_store.upsert_resource(resource_factory("op-r", "operator", allowed_equipment=["roller"])))
        asyncio.run(sql_store.upsert_resource(resource_factory("op-x", "operator")))
        resources = {r.id: r for r in sql_store.load_snapshot()[0]}
        assert resources["op-r"].allowed_equipment == ("roller",)
        assert resources["op-x"].allowed_equipment is None


class TestChangeFeeds:
    """In-process and redis pub/sub fan-out."""

    def _event(self):
        return ChangeEvent("assignments", ChangeType.UPDATE, _payload(), 1)

    def test_local_unsubscribe(self):
        feed = LocalChangeFeed()
        received = []
        unsubscribe = feed.subscribe(received.append)
        feed.publish(self._event())
        unsubscribe()
        feed.publish(self._event())
        assert len(received) == 1

    def test_event_json_round_trip(self):
        event = self._event()
        assert ChangeEvent.from_json(event.to_json()) == event

    def test_redis_publish_sends_json(self):
        client = MagicMock()
        feed = RedisChangeFeed(channel="test:changes", client=client)
        feed.publish(self._event())
        channel, payload = client.publish.call_args[0]
        assert channel == "test:changes"
        assert json.loads(payload)["record"]["id"] == "a1"

    def test_redis_poll_dispatches_messages(self):
        client = MagicMock()
        pubsub = client.pubsub.return_value
        pubsub.get_message.side_effect = [
            {"type": "message", "data": self._event().to_json()},
            {"type": "message", "data": "not json"},
            None,
        ]
        feed = RedisChangeFeed(channel="test:changes", client=client)
        received = []
        feed.subscribe(received.append)

        assert feed.poll() == 1

        pubsub.subscribe.assert_called_once_with("test:changes")
        assert received[0].record["id"] == "a1"

    def test_redis_subscribes_before_first_publish(self):
        """Messages sent before the first poll must still reach this process."""
        client = MagicMock()
        feed = RedisChangeFeed(channel="test:changes", client=client)

        client.pubsub.return_value.subscribe.assert_called_once_with("test:changes")
        feed.publish(self._event())
        names = [name for name, _, _ in client.mock_calls]
        assert names.index("pubsub().subscribe") < names.index("publish")

    def test_redis_health_check(self):
        client = MagicMock()
        client.ping.side_effect = redis.ConnectionError("down")
        assert RedisChangeFeed(client=client).health_check() is False
