"""
The state engine: ``apply(state, intent) -> state``.

``apply`` is pure and total. A rejected or unknown intent hands back the very
same ``AppState`` object, so callers can tell a rejection by identity. The ban
is the only intent that cascades into another collection (pending swap requests
of the banned user are cancelled).
"""

from datetime import datetime, timedelta
from typing import Callable, Dict, List, Optional, Type

from loguru import logger
from pydantic import BaseModel, ConfigDict

from queries import find_request, find_user, rating_for
from schemas import AdminMessage, AppState, Feedback, SwapRequest, User, as_utc, can_transition, utcnow


class Intent(BaseModel):
    model_config = ConfigDict(frozen=True)


class SetSession(Intent):
    user: Optional[User] = None


class AddUser(Intent):
    user: User


class UpdateUser(Intent):
    user: User


class BanUser(Intent):
    user_id: str


class UnbanUser(Intent):
    user_id: str


class MakeAdmin(Intent):
    user_id: str


class RemoveAdmin(Intent):
    user_id: str


class AddSwapRequest(Intent):
    request: SwapRequest


class UpdateSwapRequest(Intent):
    request: SwapRequest


class DeleteSwapRequest(Intent):
    request_id: str


class AddFeedback(Intent):
    feedback: Feedback


class AddAdminMessage(Intent):
    message: AdminMessage


class ForceLogout(Intent):
    user_id: str


class CheckBannedStatus(Intent):
    pass


class LoadSnapshot(Intent):
    """Shallow merge; only the fields passed explicitly are applied."""
    current_user: Optional[User] = None
    users: Optional[List[User]] = None
    swap_requests: Optional[List[SwapRequest]] = None
    feedback: Optional[List[Feedback]] = None
    admin_messages: Optional[List[AdminMessage]] = None

    @classmethod
    def from_state(cls, state: AppState) -> "LoadSnapshot":
        return cls(
            current_user=state.current_user,
            users=state.users,
            swap_requests=state.swap_requests,
            feedback=state.feedback,
            admin_messages=state.admin_messages,
        )


# Helpers

def _later(now: datetime, previous: datetime) -> datetime:
    # updated_at must move forward even when the clock did not
    if now > previous:
        return now
    return previous + timedelta(milliseconds=1)


def _write_blocked(state: AppState) -> bool:
    return state.current_user is not None and state.current_user.is_banned


def _with_rating(state: AppState, user: User) -> User:
    rating, total = rating_for(state, user.id)
    if user.rating == rating and user.total_ratings == total:
        return user
    return user.model_copy(update={"rating": rating, "total_ratings": total})


def _replace_user(state: AppState, user: User) -> AppState:
    """Swap in ``user`` and refresh the session when it is the same person."""
    users = [user if u.id == user.id else u for u in state.users]
    current = state.current_user
    if current is not None and current.id == user.id:
        current = user
    return state.model_copy(update={"users": users, "current_user": current})


def _patch_user(state: AppState, user_id: str, **changes) -> AppState:
    user = find_user(state, user_id)
    if user is None:
        logger.debug(f"Ignoring change for unknown user {user_id}")
        return state
    return _replace_user(state, user.model_copy(update=changes))


# Handlers

def _set_session(state: AppState, intent: SetSession, now: datetime) -> AppState:
    return state.model_copy(update={"current_user": intent.user})


def _add_user(state: AppState, intent: AddUser, now: datetime) -> AppState:
    if find_user(state, intent.user.id) is not None:
        logger.debug(f"User {intent.user.id} already exists")
        return state
    user = _with_rating(state, intent.user)
    return state.model_copy(update={"users": state.users + [user]})


def _update_user(state: AppState, intent: UpdateUser, now: datetime) -> AppState:
    if find_user(state, intent.user.id) is None:
        logger.debug(f"Ignoring update for unknown user {intent.user.id}")
        return state
    return _replace_user(state, _with_rating(state, intent.user))


def _ban_user(state: AppState, intent: BanUser, now: datetime) -> AppState:
    user = find_user(state, intent.user_id)
    if user is None:
        logger.debug(f"Ignoring ban for unknown user {intent.user_id}")
        return state
    banned = user.model_copy(update={"is_banned": True, "is_admin": False})
    users = [banned if u.id == banned.id else u for u in state.users]
    requests = [
        r.model_copy(update={"status": "cancelled", "updated_at": _later(now, r.updated_at)})
        if r.status == "pending" and r.involves(banned.id)
        else r
        for r in state.swap_requests
    ]
    current = state.current_user
    if current is not None and current.id == banned.id:
        current = None
    logger.info(f"User {banned.id} banned")
    return state.model_copy(update={"users": users, "swap_requests": requests, "current_user": current})


def _unban_user(state: AppState, intent: UnbanUser, now: datetime) -> AppState:
    return _patch_user(state, intent.user_id, is_banned=False)


def _make_admin(state: AppState, intent: MakeAdmin, now: datetime) -> AppState:
    user = find_user(state, intent.user_id)
    if user is not None and user.is_banned:
        logger.debug(f"Refusing admin rights for banned user {user.id}")
        return state
    return _patch_user(state, intent.user_id, is_admin=True)


def _remove_admin(state: AppState, intent: RemoveAdmin, now: datetime) -> AppState:
    return _patch_user(state, intent.user_id, is_admin=False)


def _add_swap_request(state: AppState, intent: AddSwapRequest, now: datetime) -> AppState:
    if state.current_user is None or state.current_user.is_banned:
        return state
    if find_request(state, intent.request.id) is not None:
        return state
    request = intent.request
    if request.status != "pending":
        request = request.model_copy(update={"status": "pending"})
    return state.model_copy(update={"swap_requests": state.swap_requests + [request]})


def _update_swap_request(state: AppState, intent: UpdateSwapRequest, now: datetime) -> AppState:
    if _write_blocked(state):
        return state
    stored = find_request(state, intent.request.id)
    if stored is None:
        return state
    incoming = intent.request
    if incoming.status != stored.status and not can_transition(stored.status, incoming.status):
        logger.debug(f"Request {stored.id}: {stored.status} -> {incoming.status} is not allowed")
        return state
    updated = incoming.model_copy(
        update={
            "from_user_id": stored.from_user_id,
            "to_user_id": stored.to_user_id,
            "created_at": stored.created_at,
            "updated_at": _later(now, stored.updated_at),
        }
    )
    requests = [updated if r.id == updated.id else r for r in state.swap_requests]
    return state.model_copy(update={"swap_requests": requests})


def _delete_swap_request(state: AppState, intent: DeleteSwapRequest, now: datetime) -> AppState:
    if _write_blocked(state) or find_request(state, intent.request_id) is None:
        return state
    requests = [r for r in state.swap_requests if r.id != intent.request_id]
    return state.model_copy(update={"swap_requests": requests})


def _add_feedback(state: AppState, intent: AddFeedback, now: datetime) -> AppState:
    if _write_blocked(state):
        return state
    feedback = intent.feedback
    request = find_request(state, feedback.swap_request_id)
    if request is None or request.status != "completed":
        return state
    if {feedback.from_user_id, feedback.to_user_id} != {request.from_user_id, request.to_user_id}:
        return state
    if any(
        f.swap_request_id == feedback.swap_request_id and f.from_user_id == feedback.from_user_id
        for f in state.feedback
    ):
        return state

    state = state.model_copy(update={"feedback": state.feedback + [feedback]})
    target = find_user(state, feedback.to_user_id)
    if target is None:
        return state
    return _replace_user(state, _with_rating(state, target))


def _add_admin_message(state: AppState, intent: AddAdminMessage, now: datetime) -> AppState:
    session = state.current_user
    if session is None or not session.is_admin or session.is_banned:
        return state
    author = find_user(state, intent.message.admin_id)
    if author is None or not author.is_admin or author.is_banned:
        return state
    return state.model_copy(update={"admin_messages": state.admin_messages + [intent.message]})


def _force_logout(state: AppState, intent: ForceLogout, now: datetime) -> AppState:
    if state.current_user is not None and state.current_user.id == intent.user_id:
        return state.model_copy(update={"current_user": None})
    return state


def _check_banned_status(state: AppState, intent: CheckBannedStatus, now: datetime) -> AppState:
    session = state.current_user
    if session is None:
        return state
    record = find_user(state, session.id)
    if record is None or record.is_banned == session.is_banned:
        return state
    if record.is_banned:
        logger.info(f"Session of banned user {session.id} terminated")
        return state.model_copy(update={"current_user": None})
    return state.model_copy(update={"current_user": record})


def _load_snapshot(state: AppState, intent: LoadSnapshot, now: datetime) -> AppState:
    changes = {name: getattr(intent, name) for name in intent.model_fields_set}
    if not changes:
        return state
    return state.model_copy(update=changes)


_HANDLERS: Dict[Type[Intent], Callable[[AppState, Intent, datetime], AppState]] = {
    SetSession: _set_session,
    AddUser: _add_user,
    UpdateUser: _update_user,
    BanUser: _ban_user,
    UnbanUser: _unban_user,
    MakeAdmin: _make_admin,
    RemoveAdmin: _remove_admin,
    AddSwapRequest: _add_swap_request,
    UpdateSwapRequest: _update_swap_request,
    DeleteSwapRequest: _delete_swap_request,
    AddFeedback: _add_feedback,
    AddAdminMessage: _add_admin_message,
    ForceLogout: _force_logout,
    CheckBannedStatus: _check_banned_status,
    LoadSnapshot: _load_snapshot,
}


def apply(state: AppState, intent: Intent, now: Optional[datetime] = None) -> AppState:
    handler = _HANDLERS.get(type(intent))
    if handler is None:
        logger.debug(f"Unrecognised intent {intent!r}")
        return state
    try:
        return handler(state, intent, as_utc(now) if now is not None else utcnow())
    except ValueError:
        logger.exception(f"Intent {type(intent).__name__} failed; state left unchanged")
        return state
