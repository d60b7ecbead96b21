"""
Read-only projections over an ``AppState``.

Nothing here is cached; every call walks the live snapshot. List results keep
insertion order.
"""

from datetime import datetime
from typing import Any, Dict, List, Literal, Optional, Tuple

from pydantic import BaseModel, ConfigDict
from pydantic.alias_generators import to_camel

from schemas import AdminMessage, AppState, SwapRequest, User, utcnow

ModerationAction = Literal["ban", "unban", "make_admin", "remove_admin"]


def find_user(state: AppState, user_id: str) -> Optional[User]:
    return next((u for u in state.users if u.id == user_id), None)


def find_user_by_email(state: AppState, email: str) -> Optional[User]:
    wanted = email.strip().lower()
    return next((u for u in state.users if u.email.lower() == wanted), None)


def find_request(state: AppState, request_id: str) -> Optional[SwapRequest]:
    return next((r for r in state.swap_requests if r.id == request_id), None)


def _session_id(state: AppState) -> Optional[str]:
    return state.current_user.id if state.current_user else None


# Directory

def public_directory(
    state: AppState,
    search: str = "",
    location: Optional[str] = None,
    exclude_user_id: Optional[str] = None,
) -> List[User]:
    """Visible members matching a name/offered-skill search and a location filter.

    The session user is left out unless another ``exclude_user_id`` is given.
    """
    exclude = exclude_user_id if exclude_user_id is not None else _session_id(state)
    term = search.strip().lower()
    place = (location or "").strip().lower()
    if place == "all":
        place = ""

    result = []
    for user in state.users:
        if user.id == exclude or not user.is_public or user.is_banned:
            continue
        if term and term not in user.name.lower() and not any(term in s.lower() for s in user.skills_offered):
            continue
        if place and (not user.location or place not in user.location.lower()):
            continue
        result.append(user)
    return result


def known_locations(state: AppState) -> List[str]:
    seen: List[str] = []
    for user in state.users:
        if user.location and not user.is_banned and user.location not in seen:
            seen.append(user.location)
    return seen


# Swap requests

def has_open_request(state: AppState, from_user_id: str, to_user_id: str, requested_skill: str) -> bool:
    return any(
        r.from_user_id == from_user_id
        and r.to_user_id == to_user_id
        and r.requested_skill == requested_skill
        and r.status in ("pending", "accepted")
        for r in state.swap_requests
    )


def is_reciprocal_match(state: AppState, requester_id: str, target_id: str) -> bool:
    requester = find_user(state, requester_id)
    target = find_user(state, target_id)
    if requester is None or target is None:
        return False
    return bool(set(requester.skills_offered) & set(target.skills_wanted))


def sent_requests(state: AppState, user_id: Optional[str] = None) -> List[SwapRequest]:
    user_id = user_id or _session_id(state)
    return [r for r in state.swap_requests if user_id is not None and r.from_user_id == user_id]


def received_requests(state: AppState, user_id: Optional[str] = None) -> List[SwapRequest]:
    user_id = user_id or _session_id(state)
    return [r for r in state.swap_requests if user_id is not None and r.to_user_id == user_id]


def split_requests(state: AppState, user_id: Optional[str] = None) -> Tuple[List[SwapRequest], List[SwapRequest]]:
    return sent_requests(state, user_id), received_requests(state, user_id)


# Ratings

def rating_for(state: AppState, user_id: str) -> Tuple[float, int]:
    """Mean and count of every feedback addressed to ``user_id``, from the full history."""
    ratings = [f.rating for f in state.feedback if f.to_user_id == user_id]
    if not ratings:
        return 0.0, 0
    return sum(ratings) / len(ratings), len(ratings)


# Moderation

def active_admins(state: AppState) -> List[User]:
    return [u for u in state.users if u.is_admin and not u.is_banned]


def can_moderate(state: AppState, actor_id: str, target_id: str, action: ModerationAction) -> bool:
    """Admin-dashboard rule: never act on yourself, and keep at least one admin around."""
    if actor_id == target_id:
        return False
    if action == "remove_admin":
        return len(active_admins(state)) > 1
    return True


# Statistics

class AdminStats(BaseModel):
    model_config = ConfigDict(alias_generator=to_camel, populate_by_name=True)

    total_users: int = 0
    active_users: int = 0
    banned_users: int = 0
    admin_users: int = 0
    total_swaps: int = 0
    pending_swaps: int = 0
    accepted_swaps: int = 0
    rejected_swaps: int = 0
    completed_swaps: int = 0
    cancelled_swaps: int = 0
    total_feedback: int = 0
    average_rating: float = 0.0


def admin_stats(state: AppState) -> AdminStats:
    by_status = {status: 0 for status in ("pending", "accepted", "rejected", "completed", "cancelled")}
    for request in state.swap_requests:
        by_status[request.status] += 1
    ratings = [f.rating for f in state.feedback]
    return AdminStats(
        total_users=len(state.users),
        active_users=sum(1 for u in state.users if not u.is_banned),
        banned_users=sum(1 for u in state.users if u.is_banned),
        admin_users=len(active_admins(state)),
        total_swaps=len(state.swap_requests),
        pending_swaps=by_status["pending"],
        accepted_swaps=by_status["accepted"],
        rejected_swaps=by_status["rejected"],
        completed_swaps=by_status["completed"],
        cancelled_swaps=by_status["cancelled"],
        total_feedback=len(ratings),
        average_rating=sum(ratings) / len(ratings) if ratings else 0.0,
    )


def recent_messages(state: AppState, limit: int = 3) -> List[AdminMessage]:
    return list(reversed(state.admin_messages[-limit:])) if limit > 0 else []


def dashboard_summary(state: AppState, user_id: str) -> Dict[str, Any]:
    user = find_user(state, user_id)
    if user is None:
        return {}
    mine, to_me = split_requests(state, user_id)
    return {
        "totalUsers": sum(1 for u in state.users if u.is_public and not u.is_banned),
        "mySkills": len(user.skills_offered),
        "wantedSkills": len(user.skills_wanted),
        "completedSwaps": sum(1 for r in mine + to_me if r.status == "completed"),
        "pendingRequests": sum(1 for r in to_me if r.status == "pending"),
        "rating": user.rating,
        "totalRatings": user.total_ratings,
        "recentMessages": [m.model_dump(mode="json", by_alias=True) for m in recent_messages(state)],
    }


def build_report(state: AppState, generated_by: str, now: Optional[datetime] = None) -> Dict[str, Any]:
    """Downloadable admin report: aggregate statistics plus per-user and per-swap detail."""
    names = {u.id: u.name for u in state.users}
    report = admin_stats(state).model_dump(by_alias=True)
    report["users"] = report.pop("totalUsers")
    report.update(
        generatedAt=(now or utcnow()).isoformat(),
        generatedBy=generated_by,
        userDetails=[
            {
                "id": u.id,
                "name": u.name,
                "email": u.email,
                "isAdmin": u.is_admin,
                "isBanned": u.is_banned,
                "isPublic": u.is_public,
                "skillsOffered": len(u.skills_offered),
                "skillsWanted": len(u.skills_wanted),
                "rating": u.rating,
                "totalRatings": u.total_ratings,
                "createdAt": u.created_at.isoformat(),
            }
            for u in state.users
        ],
        swapDetails=[
            {
                "id": r.id,
                "status": r.status,
                "createdAt": r.created_at.isoformat(),
                "updatedAt": r.updated_at.isoformat(),
                "fromUser": names.get(r.from_user_id, "Unknown"),
                "toUser": names.get(r.to_user_id, "Unknown"),
                "offeredSkill": r.offered_skill,
                "requestedSkill": r.requested_skill,
            }
            for r in state.swap_requests
        ],
    )
    return report
