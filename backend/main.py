from contextlib import asynccontextmanager
from typing import List, Optional

from fastapi import Depends, FastAPI, HTTPException, Request, status
from fastapi.middleware.cors import CORSMiddleware
from loguru import logger
from pydantic import BaseModel, ConfigDict, EmailStr, Field, ValidationError
from pydantic.alias_generators import to_camel

import queries
from config import Settings, get_settings, setup_logging
from database import SnapshotRepository
from engine import (
    AddAdminMessage,
    AddFeedback,
    AddSwapRequest,
    AddUser,
    BanUser,
    DeleteSwapRequest,
    MakeAdmin,
    RemoveAdmin,
    SetSession,
    UnbanUser,
    UpdateSwapRequest,
    UpdateUser,
)
from schemas import AdminMessage, Feedback, SwapRequest, User, can_transition
from store import AppStore, BanWatchdog


def seed_default_admin(store: AppStore, settings: Settings) -> None:
    if store.state.users or not settings.DEFAULT_ADMIN_EMAIL:
        return
    admin = User(
        name=settings.DEFAULT_ADMIN_NAME,
        email=settings.DEFAULT_ADMIN_EMAIL,
        is_admin=True,
        location="N/A",
    )
    store.dispatch(AddUser(user=admin))
    logger.info(f"Seeded default admin {admin.email}")


# Canned accounts behind /auth/demo
DEMO_USERS = {
    True: dict(
        id="admin-demo",
        name="Admin Demo",
        email="admin@demo.com",
        is_admin=True,
        skills_offered=["Platform Management", "System Administration"],
    ),
    False: dict(
        id="user-demo",
        name="User Demo",
        email="user@demo.com",
        skills_offered=["JavaScript", "React", "Node.js"],
        skills_wanted=["Python", "UI/UX Design", "DevOps"],
    ),
}


def create_app(repository=None, settings: Optional[Settings] = None) -> FastAPI:
    settings = settings or get_settings()

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        setup_logging(settings)
        store = AppStore(repository=repository if repository is not None else SnapshotRepository())
        await store.restore()
        seed_default_admin(store, settings)
        watchdog = BanWatchdog(store, settings.BAN_CHECK_INTERVAL)
        watchdog.start()
        app.state.store = store
        try:
            yield
        finally:
            await watchdog.stop()
            await store.flush()

    app = FastAPI(title="SkillSwap API", lifespan=lifespan)

    # CORS
    origins = [settings.FRONTEND_URL, "*"]
    app.add_middleware(
        CORSMiddleware,
        allow_origins=origins,
        allow_credentials=True,
        allow_methods=["*"],
        allow_headers=["*"],
    )
    _register_routes(app)
    return app


# Utils

def get_store(request: Request) -> AppStore:
    return request.app.state.store


def get_current_user(store: AppStore = Depends(get_store)) -> User:
    if store.state.current_user is None:
        raise HTTPException(status_code=status.HTTP_401_UNAUTHORIZED, detail="Not logged in")
    return store.state.current_user


def get_active_user(current_user: User = Depends(get_current_user)) -> User:
    if current_user.is_banned:
        raise HTTPException(403, "Your account has been suspended")
    return current_user


def get_admin(current_user: User = Depends(get_active_user)) -> User:
    if not current_user.is_admin:
        raise HTTPException(403, "Admin rights required")
    return current_user


def dump(model: BaseModel) -> dict:
    return model.model_dump(mode="json", by_alias=True)


def require_request(store: AppStore, request_id: str) -> SwapRequest:
    req = queries.find_request(store.state, request_id)
    if req is None:
        raise HTTPException(404, "Request not found")
    return req


def require_user(store: AppStore, user_id: str) -> User:
    user = queries.find_user(store.state, user_id)
    if user is None:
        raise HTTPException(404, "User not found")
    return user


def dispatch_or_conflict(store: AppStore, intent):
    before = store.state
    after = store.dispatch(intent)
    if after is before:
        raise HTTPException(409, "Action was rejected")
    return after


# Bodies

class Body(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)


class RegisterBody(Body):
    name: str = Field(..., min_length=1)
    email: EmailStr
    location: Optional[str] = None


class LoginBody(Body):
    email: str


class ProfileBody(Body):
    name: Optional[str] = Field(None, min_length=1)
    location: Optional[str] = None
    profile_photo: Optional[str] = None
    is_public: Optional[bool] = None
    skills_offered: Optional[List[str]] = None
    skills_wanted: Optional[List[str]] = None
    availability: Optional[List[str]] = None


class SwapBody(Body):
    to_user_id: str
    offered_skill: str = Field(..., min_length=1)
    requested_skill: str = Field(..., min_length=1)
    message: str = ""


class FeedbackBody(Body):
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""


class MessageBody(Body):
    title: str = Field(..., min_length=1, max_length=140)
    content: str = Field(..., min_length=1, max_length=5000)


def _register_routes(app: FastAPI) -> None:

    # Auth endpoints

    @app.post("/auth/register")
    async def register(body: RegisterBody, store: AppStore = Depends(get_store)):
        if queries.find_user_by_email(store.state, body.email):
            raise HTTPException(status_code=400, detail="Email already registered")
        user = User(
            name=body.name,
            email=body.email.lower(),
            location=body.location,
            is_admin=not store.state.users,
        )
        store.dispatch(AddUser(user=user))
        store.dispatch(SetSession(user=user))
        return dump(user)

    @app.post("/auth/login")
    async def login(body: LoginBody, store: AppStore = Depends(get_store)):
        user = queries.find_user_by_email(store.state, body.email)
        if not user:
            raise HTTPException(status_code=400, detail="Unknown email")
        if user.is_banned:
            raise HTTPException(status_code=403, detail="Your account has been suspended")
        store.dispatch(SetSession(user=user))
        return dump(user)

    @app.post("/auth/demo")
    async def demo_login(admin: bool = False, store: AppStore = Depends(get_store)):
        user = queries.find_user(store.state, DEMO_USERS[admin]["id"])
        if user is None:
            user = User(location="Demo City", availability=["weekends", "evenings"], **DEMO_USERS[admin])
            store.dispatch(AddUser(user=user))
        if user.is_banned:
            raise HTTPException(status_code=403, detail="Your account has been suspended")
        store.dispatch(SetSession(user=user))
        return dump(user)

    @app.post("/auth/logout")
    async def logout(store: AppStore = Depends(get_store)):
        store.dispatch(SetSession(user=None))
        return {"ok": True}

    @app.get("/users/me")
    async def me(current_user: User = Depends(get_current_user)):
        return dump(current_user)

    @app.put("/users/me")
    async def update_me(body: ProfileBody, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        updates = body.model_dump(exclude_unset=True)
        try:
            user = User.model_validate({**current_user.model_dump(), **updates})
        except ValidationError as e:
            raise HTTPException(422, str(e))
        store.dispatch(UpdateUser(user=user))
        return dump(store.state.current_user or user)

    # Directory

    @app.get("/users")
    async def list_users(q: str = "", location: Optional[str] = None, store: AppStore = Depends(get_store)):
        users = queries.public_directory(store.state, search=q, location=location)
        return [dump(u) for u in users]

    @app.get("/users/{user_id}")
    async def get_user(user_id: str, store: AppStore = Depends(get_store)):
        user = require_user(store, user_id)
        if user.is_banned or not user.is_public:
            raise HTTPException(404, "User not found")
        return dump(user)

    @app.get("/locations")
    async def list_locations(store: AppStore = Depends(get_store)):
        return queries.known_locations(store.state)

    # Swap requests

    @app.post("/requests")
    async def create_request(body: SwapBody, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        if body.to_user_id == current_user.id:
            raise HTTPException(400, "Cannot request a swap with yourself")
        target = require_user(store, body.to_user_id)
        if target.is_banned:
            raise HTTPException(404, "User not found")
        if queries.has_open_request(store.state, current_user.id, target.id, body.requested_skill):
            raise HTTPException(400, f"Request already sent for {body.requested_skill}")
        req = SwapRequest(
            from_user_id=current_user.id,
            to_user_id=target.id,
            offered_skill=body.offered_skill,
            requested_skill=body.requested_skill,
            message=body.message,
        )
        dispatch_or_conflict(store, AddSwapRequest(request=req))
        return {
            **dump(req),
            "reciprocalMatch": queries.is_reciprocal_match(store.state, current_user.id, target.id),
        }

    @app.get("/requests")
    async def list_requests(view: str = "all", current_user: User = Depends(get_current_user), store: AppStore = Depends(get_store)):
        sent, received = queries.split_requests(store.state, current_user.id)
        if view == "sent":
            docs = sent
        elif view == "received":
            docs = received
        else:
            docs = [r for r in store.state.swap_requests if r.involves(current_user.id)]
        return [dump(r) for r in docs]

    def _transition(request_id: str, new_status: str, current_user: User, store: AppStore, role: str):
        req = require_request(store, request_id)
        if role == "recipient" and req.to_user_id != current_user.id:
            raise HTTPException(403, "Not the recipient")
        if role == "sender" and req.from_user_id != current_user.id:
            raise HTTPException(403, "Not the sender")
        if role == "participant" and not req.involves(current_user.id):
            raise HTTPException(403, "Not participant")
        if not can_transition(req.status, new_status):
            raise HTTPException(400, f"Request is {req.status}")
        state = dispatch_or_conflict(store, UpdateSwapRequest(request=req.model_copy(update={"status": new_status})))
        return dump(queries.find_request(state, request_id))

    @app.post("/requests/{request_id}/accept")
    async def accept_request(request_id: str, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        return _transition(request_id, "accepted", current_user, store, "recipient")

    @app.post("/requests/{request_id}/reject")
    async def reject_request(request_id: str, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        return _transition(request_id, "rejected", current_user, store, "recipient")

    @app.post("/requests/{request_id}/cancel")
    async def cancel_request(request_id: str, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        return _transition(request_id, "cancelled", current_user, store, "sender")

    @app.post("/requests/{request_id}/complete")
    async def complete_request(request_id: str, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        return _transition(request_id, "completed", current_user, store, "participant")

    @app.delete("/requests/{request_id}")
    async def delete_request(request_id: str, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        req = require_request(store, request_id)
        if req.from_user_id != current_user.id:
            raise HTTPException(403, "Not the sender")
        dispatch_or_conflict(store, DeleteSwapRequest(request_id=request_id))
        return {"ok": True}

    @app.post("/requests/{request_id}/feedback")
    async def leave_feedback(request_id: str, body: FeedbackBody, current_user: User = Depends(get_active_user), store: AppStore = Depends(get_store)):
        req = require_request(store, request_id)
        if not req.involves(current_user.id):
            raise HTTPException(403, "Not participant")
        if req.status != "completed":
            raise HTTPException(400, "Only completed swaps can be rated")
        fb = Feedback(
            swap_request_id=req.id,
            from_user_id=current_user.id,
            to_user_id=req.other_party(current_user.id),
            rating=body.rating,
            comment=body.comment,
        )
        state = dispatch_or_conflict(store, AddFeedback(feedback=fb))
        rated = queries.find_user(state, fb.to_user_id)
        return {
            **dump(fb),
            "userRating": rated.rating if rated else None,
            "userTotalRatings": rated.total_ratings if rated else None,
        }

    # Dashboard and announcements

    @app.get("/dashboard")
    async def dashboard(current_user: User = Depends(get_current_user), store: AppStore = Depends(get_store)):
        return queries.dashboard_summary(store.state, current_user.id)

    @app.get("/messages")
    async def list_messages(store: AppStore = Depends(get_store)):
        return [dump(m) for m in store.state.admin_messages]

    # Admin

    def _moderate(user_id: str, action: str, intent, admin: User, store: AppStore):
        require_user(store, user_id)
        if not queries.can_moderate(store.state, admin.id, user_id, action):
            raise HTTPException(400, f"Cannot {action.replace('_', ' ')} this user")
        state = store.dispatch(intent)
        logger.info(f"Admin {admin.id} performed {action} on {user_id}")
        return dump(queries.find_user(state, user_id))

    @app.post("/admin/users/{user_id}/ban")
    async def ban_user(user_id: str, admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        return _moderate(user_id, "ban", BanUser(user_id=user_id), admin, store)

    @app.post("/admin/users/{user_id}/unban")
    async def unban_user(user_id: str, admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        return _moderate(user_id, "unban", UnbanUser(user_id=user_id), admin, store)

    @app.post("/admin/users/{user_id}/make-admin")
    async def make_admin(user_id: str, admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        if require_user(store, user_id).is_banned:
            raise HTTPException(400, "Banned users cannot be admins")
        return _moderate(user_id, "make_admin", MakeAdmin(user_id=user_id), admin, store)

    @app.post("/admin/users/{user_id}/remove-admin")
    async def remove_admin(user_id: str, admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        return _moderate(user_id, "remove_admin", RemoveAdmin(user_id=user_id), admin, store)

    @app.post("/admin/messages")
    async def send_message(body: MessageBody, admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        msg = AdminMessage(title=body.title, content=body.content, admin_id=admin.id)
        dispatch_or_conflict(store, AddAdminMessage(message=msg))
        return dump(msg)

    @app.get("/admin/stats")
    async def stats(admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        return queries.admin_stats(store.state).model_dump(by_alias=True)

    @app.get("/admin/report")
    async def report(admin: User = Depends(get_admin), store: AppStore = Depends(get_store)):
        return queries.build_report(store.state, generated_by=admin.name)

    @app.get("/test")
    async def test_connection(store: AppStore = Depends(get_store)):
        # A simple ping to ensure we can talk to the database
        await store.repository.ping()
        return {"ok": True, "message": "Database connected"}


app = create_app()


if __name__ == "__main__":
    import uvicorn

    uvicorn.run(app, host="0.0.0.0", port=get_settings().PORT)
