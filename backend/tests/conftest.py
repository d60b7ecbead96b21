from datetime import datetime, timedelta, timezone

import pytest

from engine import AddUser, SetSession, apply
from schemas import AppState, SwapRequest, User

T0 = datetime(2026, 1, 1, 12, 0, 0, tzinfo=timezone.utc)


def at(minutes: int) -> datetime:
    return T0 + timedelta(minutes=minutes)


class FakeRepository:
    """In-memory stand-in for SnapshotRepository."""

    def __init__(self, initial: AppState | None = None):
        self.saved: list[AppState] = []
        self.initial = initial or AppState()

    async def save(self, state: AppState) -> None:
        self.saved.append(state)

    async def load(self) -> AppState:
        return self.initial

    async def ping(self) -> None:
        return None


class FakeCollection:
    """Just enough of a Motor collection for the snapshot repository."""

    def __init__(self, docs=None, error: Exception | None = None):
        self.docs = dict(docs or {})
        self.error = error

    async def find_one(self, query):
        if self.error:
            raise self.error
        return self.docs.get(query["_id"])

    async def replace_one(self, query, doc, upsert=False):
        if self.error:
            raise self.error
        self.docs[query["_id"]] = doc


def make_user(name: str, **kwargs) -> User:
    kwargs.setdefault("email", f"{name.lower()}@x.com")
    kwargs.setdefault("created_at", T0)
    return User(id=name.lower(), name=name, **kwargs)


def make_request(request_id: str, from_user_id: str, to_user_id: str, status: str = "pending", **kwargs) -> SwapRequest:
    kwargs.setdefault("offered_skill", "Guitar")
    kwargs.setdefault("requested_skill", "Pottery")
    return SwapRequest(
        id=request_id,
        from_user_id=from_user_id,
        to_user_id=to_user_id,
        status=status,
        created_at=T0,
        updated_at=T0,
        **kwargs,
    )


def with_users(*users: User, session: User | None = None) -> AppState:
    state = AppState()
    for user in users:
        state = apply(state, AddUser(user=user))
    if session is not None:
        state = apply(state, SetSession(user=session))
    return state


@pytest.fixture
def alice():
    return make_user("Alice", skills_offered=["Guitar"], skills_wanted=["Pottery"], location="Berlin")


@pytest.fixture
def bob():
    return make_user("Bob", skills_offered=["Pottery"], skills_wanted=["Guitar"], location="Lisbon")


@pytest.fixture
def admin():
    return make_user("Root", is_admin=True)
