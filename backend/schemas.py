"""
Entity schemas for SkillSwap.

Every model is immutable; changes are made with ``model_copy(update=...)`` by the
engine. Attributes are snake_case in Python and camelCase once serialized, which
is the layout of the persisted ``skillSwapData`` record.
"""

from datetime import datetime, timezone
from typing import Annotated, Dict, List, Literal, Optional, Tuple

from bson import ObjectId
from pydantic import AfterValidator, BaseModel, ConfigDict, EmailStr, Field, field_validator, model_validator
from pydantic.alias_generators import to_camel


def new_id() -> str:
    return str(ObjectId())


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def as_utc(value: datetime) -> datetime:
    # Naive timestamps are stored UTC
    if value.tzinfo is None:
        return value.replace(tzinfo=timezone.utc)
    return value


Timestamp = Annotated[datetime, AfterValidator(as_utc)]

SwapStatus = Literal["pending", "accepted", "rejected", "completed", "cancelled"]

# Allowed status changes; anything missing here is terminal
SWAP_TRANSITIONS: Dict[str, Tuple[str, ...]] = {
    "pending": ("accepted", "rejected", "cancelled"),
    "accepted": ("completed",),
}


def can_transition(current: str, target: str) -> bool:
    return target in SWAP_TRANSITIONS.get(current, ())


class Entity(BaseModel):
    model_config = ConfigDict(frozen=True, alias_generator=to_camel, populate_by_name=True)


class User(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    name: str = Field(..., min_length=1, description="Display name")
    email: EmailStr
    location: Optional[str] = None
    profile_photo: Optional[str] = None
    is_admin: bool = False
    is_public: bool = True
    skills_offered: List[str] = Field(default_factory=list)
    skills_wanted: List[str] = Field(default_factory=list)
    availability: List[str] = Field(default_factory=list, description="Free-text tags, e.g. weekends")
    rating: float = Field(0.0, ge=0, le=5)
    total_ratings: int = Field(0, ge=0)
    created_at: Timestamp = Field(default_factory=utcnow)
    is_banned: bool = False

    @field_validator("skills_offered", "skills_wanted", "availability")
    @classmethod
    def _dedupe(cls, values: List[str]) -> List[str]:
        seen: List[str] = []
        for value in values:
            value = value.strip()
            if value and value not in seen:
                seen.append(value)
        return seen

    @model_validator(mode="after")
    def _banned_users_are_not_admins(self):
        if self.is_banned and self.is_admin:
            raise ValueError("a banned user cannot be an admin")
        return self


class SwapRequest(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    offered_skill: str = Field(..., min_length=1)
    requested_skill: str = Field(..., min_length=1)
    message: str = ""
    status: SwapStatus = "pending"
    created_at: Timestamp = Field(default_factory=utcnow)
    updated_at: Timestamp = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _distinct_parties(self):
        if self.from_user_id == self.to_user_id:
            raise ValueError("a swap request needs two different users")
        return self

    def involves(self, user_id: str) -> bool:
        return user_id in (self.from_user_id, self.to_user_id)

    def other_party(self, user_id: str) -> str:
        return self.to_user_id if user_id == self.from_user_id else self.from_user_id


class Feedback(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    swap_request_id: str = Field(..., min_length=1)
    from_user_id: str = Field(..., min_length=1)
    to_user_id: str = Field(..., min_length=1)
    rating: int = Field(..., ge=1, le=5)
    comment: str = ""
    created_at: Timestamp = Field(default_factory=utcnow)

    @model_validator(mode="after")
    def _rates_someone_else(self):
        if self.from_user_id == self.to_user_id:
            raise ValueError("users cannot rate themselves")
        return self


class AdminMessage(Entity):
    id: str = Field(default_factory=new_id, min_length=1)
    title: str = Field(..., min_length=1, max_length=140)
    content: str = Field(..., min_length=1, max_length=5000)
    admin_id: str = Field(..., min_length=1)
    created_at: Timestamp = Field(default_factory=utcnow)


class AppState(Entity):
    """The full snapshot: four entity collections plus the session user."""
    current_user: Optional[User] = None
    users: List[User] = Field(default_factory=list)
    swap_requests: List[SwapRequest] = Field(default_factory=list)
    feedback: List[Feedback] = Field(default_factory=list)
    admin_messages: List[AdminMessage] = Field(default_factory=list)
