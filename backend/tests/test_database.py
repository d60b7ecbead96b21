import asyncio
import json
from datetime import datetime, timezone

from pymongo.errors import ServerSelectionTimeoutError

from conftest import FakeCollection, at, make_request, make_user
from database import SnapshotRepository, dump_snapshot, parse_snapshot
from schemas import AdminMessage, AppState, Feedback


def sample_state() -> AppState:
    alice = make_user("Alice", skills_offered=["Guitar"], availability=["Weekends"], location="Berlin")
    bob = make_user("Bob", is_admin=True, profile_photo="https://img.example/bob.png")
    return AppState(
        current_user=alice,
        users=[alice, bob],
        swap_requests=[
            make_request("r1", "alice", "bob", status="completed", message="Let's trade"),
            make_request("r2", "bob", "alice").model_copy(update={"updated_at": datetime(2026, 1, 2, 8, 30, 15, 123456, tzinfo=timezone.utc)}),
        ],
        feedback=[Feedback(id="f1", swap_request_id="r1", from_user_id="bob", to_user_id="alice", rating=4, created_at=at(3))],
        admin_messages=[AdminMessage(id="m1", title="Welcome", content="Be nice", admin_id="bob", created_at=at(4))],
    )


def test_dump_uses_camel_case_and_iso_timestamps():
    data = dump_snapshot(sample_state())
    assert set(data) == {"currentUser", "users", "swapRequests", "feedback", "adminMessages"}
    user = data["users"][0]
    assert user["skillsOffered"] == ["Guitar"]
    assert user["isBanned"] is False
    assert isinstance(user["createdAt"], str)
    assert data["swapRequests"][1]["updatedAt"].startswith("2026-01-02T08:30:15.123456")
    json.dumps(data)


def test_round_trip_preserves_snapshot():
    state = sample_state()
    assert parse_snapshot(dump_snapshot(state)) == state
    assert parse_snapshot(json.dumps(dump_snapshot(state))) == state


def test_malformed_snapshots_become_defaults():
    assert parse_snapshot(None) == AppState()
    assert parse_snapshot("{not json") == AppState()
    assert parse_snapshot([1, 2, 3]) == AppState()
    assert parse_snapshot({"users": "nope"}) == AppState()


def test_invalid_entries_are_dropped():
    data = dump_snapshot(sample_state())
    data["users"].append({"id": "x", "name": "", "email": "broken"})
    data["feedback"].append({"id": "f2", "swapRequestId": "r1", "fromUserId": "a", "toUserId": "b", "rating": 9})
    data["currentUser"] = {"id": "alice"}
    state = parse_snapshot(data)
    assert [u.id for u in state.users] == ["alice", "bob"]
    assert [f.id for f in state.feedback] == ["f1"]
    assert state.current_user is None


def test_naive_timestamps_are_read_as_utc():
    data = dump_snapshot(AppState(users=[make_user("Alice")]))
    data["users"][0]["createdAt"] = "2026-01-01T12:00:00"
    assert parse_snapshot(data).users[0].created_at == at(0)


def test_repository_save_then_load():
    collection = FakeCollection()
    repo = SnapshotRepository(collection=collection, key="skillSwapData")
    state = sample_state()

    async def run():
        await repo.save(state)
        return await repo.load()

    assert asyncio.run(run()) == state
    assert collection.docs["skillSwapData"]["data"]["users"][0]["id"] == "alice"


def test_repository_load_defaults_when_absent_or_malformed():
    empty = SnapshotRepository(collection=FakeCollection(), key="k")
    garbage = SnapshotRepository(collection=FakeCollection({"k": {"_id": "k", "data": "%%%"}}), key="k")
    assert asyncio.run(empty.load()) == AppState()
    assert asyncio.run(garbage.load()) == AppState()


def test_repository_swallows_storage_failures():
    repo = SnapshotRepository(collection=FakeCollection(error=ServerSelectionTimeoutError("down")), key="k")
    asyncio.run(repo.save(sample_state()))
    assert asyncio.run(repo.load()) == AppState()
