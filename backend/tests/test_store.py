import asyncio

from conftest import FakeRepository, make_request, with_users
from engine import AddSwapRequest, AddUser, BanUser, SetSession
from queries import find_request
from store import AppStore, BanWatchdog


def test_dispatch_without_loop_still_updates_state(alice):
    repo = FakeRepository()
    store = AppStore(repository=repo)
    store.dispatch(AddUser(user=alice))
    assert store.state.users == [alice]
    assert repo.saved == []


def test_accepted_changes_are_persisted(alice, bob):
    repo = FakeRepository()

    async def run():
        store = AppStore(repository=repo)
        store.dispatch(AddUser(user=alice))
        store.dispatch(AddUser(user=bob))
        store.dispatch(AddSwapRequest(request=make_request("r1", "alice", "bob")))  # rejected: no session
        await store.flush()
        return store

    store = asyncio.run(run())
    assert repo.saved[-1] is store.state
    assert [u.id for u in repo.saved[-1].users] == ["alice", "bob"]


class SlowFirstSaveRepository(FakeRepository):
    """Holds a single slot; the first write takes longer than the ones after it."""

    def __init__(self):
        super().__init__()
        self.slot = None

    async def save(self, state):
        first = not self.saved
        self.saved.append(state)
        if first:
            await asyncio.sleep(0.05)
        self.slot = state


def test_slow_save_is_not_overwritten_by_older_state(alice, bob):
    repo = SlowFirstSaveRepository()

    async def run():
        store = AppStore(repository=repo)
        store.dispatch(AddUser(user=alice))
        await asyncio.sleep(0)
        store.dispatch(AddUser(user=bob))
        await store.flush()
        return store

    store = asyncio.run(run())
    assert len(repo.saved) == 2
    assert repo.slot is store.state
    assert [u.id for u in repo.slot.users] == ["alice", "bob"]


def test_dispatch_runs_ban_check_eagerly(alice, bob):
    stale = with_users(alice, bob, session=alice).model_copy(
        update={"users": [alice.model_copy(update={"is_banned": True}), bob]}
    )
    store = AppStore(state=stale)
    store.dispatch(AddSwapRequest(request=make_request("r1", "alice", "bob")))
    assert store.state.current_user is None


def test_ban_cascade_through_store(alice, bob, admin):
    store = AppStore(state=with_users(alice, bob, admin, session=alice))
    store.dispatch(AddSwapRequest(request=make_request("r1", "alice", "bob")))
    store.dispatch(SetSession(user=admin))
    store.dispatch(BanUser(user_id="alice"))
    assert find_request(store.state, "r1").status == "cancelled"


def test_restore_loads_snapshot(alice, bob):
    snapshot = with_users(alice, bob, session=bob)
    repo = FakeRepository(initial=snapshot)

    async def run():
        store = AppStore(repository=repo)
        await store.restore()
        await store.flush()
        return store

    store = asyncio.run(run())
    assert store.state == snapshot


def test_watchdog_ends_stale_banned_session(alice, bob):
    state = with_users(alice, bob, session=alice)
    state = state.model_copy(update={"users": [alice.model_copy(update={"is_banned": True}), bob]})
    store = AppStore(state=state)

    async def run():
        watchdog = BanWatchdog(store, interval=0.01)
        watchdog.start()
        watchdog.start()
        assert watchdog.running
        await asyncio.sleep(0.1)
        await watchdog.stop()
        assert not watchdog.running

    asyncio.run(run())
    assert store.state.current_user is None


def test_watchdog_tick_is_idempotent(alice):
    store = AppStore(state=with_users(alice, session=alice))
    watchdog = BanWatchdog(store)
    first = watchdog.tick()
    assert watchdog.tick() is first
    assert first.current_user == alice


def test_watchdog_stop_without_start():
    asyncio.run(BanWatchdog(AppStore()).stop())

