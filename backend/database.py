import json
from typing import Any, Optional, Type

from loguru import logger
from motor.motor_asyncio import AsyncIOMotorClient
from pydantic import BaseModel, ValidationError
from pymongo.errors import PyMongoError

from config import get_settings
from schemas import AdminMessage, AppState, Feedback, SwapRequest, User

_client: AsyncIOMotorClient | None = None
_db = None

# Persisted key -> entity schema
COLLECTIONS = {
    "users": User,
    "swapRequests": SwapRequest,
    "feedback": Feedback,
    "adminMessages": AdminMessage,
}


async def get_db():
    global _client, _db
    if _client is None:
        settings = get_settings()
        _client = AsyncIOMotorClient(settings.DATABASE_URL)
        _db = _client[settings.DATABASE_NAME]
    return _db


def dump_snapshot(state: AppState) -> dict:
    """JSON-compatible record: camelCase keys, ISO-8601 timestamps."""
    return state.model_dump(mode="json", by_alias=True)


def _parse_entities(key: str, schema: Type[BaseModel], items: Any) -> list:
    if not isinstance(items, list):
        if items is not None:
            logger.warning(f"Snapshot field {key} is not a list; ignoring it")
        return []
    parsed = []
    for item in items:
        try:
            parsed.append(schema.model_validate(item))
        except ValidationError as e:
            logger.warning(f"Dropping invalid {key} entry: {e.error_count()} error(s)")
    return parsed


def parse_snapshot(raw: Any) -> AppState:
    """Validate a stored record entity by entity; anything unusable is treated as absent."""
    if isinstance(raw, (str, bytes)):
        try:
            raw = json.loads(raw)
        except ValueError:
            logger.warning("Stored snapshot is not valid JSON; starting empty")
            return AppState()
    if not isinstance(raw, dict):
        if raw is not None:
            logger.warning("Stored snapshot is not an object; starting empty")
        return AppState()

    fields = {
        key: _parse_entities(key, schema, raw.get(key))
        for key, schema in COLLECTIONS.items()
    }
    current_user = None
    if raw.get("currentUser") is not None:
        try:
            current_user = User.model_validate(raw["currentUser"])
        except ValidationError:
            logger.warning("Stored session user is invalid; session dropped")
    return AppState.model_validate({**fields, "currentUser": current_user})


class SnapshotRepository:
    """Best-effort mirror of the engine state in a single MongoDB document."""

    def __init__(self, collection=None, key: Optional[str] = None):
        self._collection = collection
        self.key = key or get_settings().SNAPSHOT_KEY

    async def collection(self):
        if self._collection is None:
            db = await get_db()
            self._collection = db[get_settings().SNAPSHOT_COLLECTION]
        return self._collection

    async def save(self, state: AppState) -> None:
        doc = {"_id": self.key, "data": dump_snapshot(state)}
        try:
            collection = await self.collection()
            await collection.replace_one({"_id": self.key}, doc, upsert=True)
        except PyMongoError as e:
            logger.warning(f"Failed to persist snapshot {self.key}: {e}")

    async def load(self) -> AppState:
        try:
            collection = await self.collection()
            doc = await collection.find_one({"_id": self.key})
        except PyMongoError as e:
            logger.warning(f"Failed to read snapshot {self.key}: {e}")
            return AppState()
        if not doc:
            logger.info(f"No stored snapshot under {self.key}; starting empty")
            return AppState()
        return parse_snapshot(doc.get("data"))

    async def ping(self) -> None:
        db = await get_db()
        await db.command("ping")
