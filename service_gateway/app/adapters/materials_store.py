"""
Class materials lookup backed by the class records in Redis.
"""

import json
from typing import Any, Dict, List, Optional, Protocol

import redis.asyncio as redis
from redis.exceptions import RedisError

from shared.logging import get_logger
from service_gateway.app.retrieval import Material


class MaterialsStore(Protocol):
    async def get_materials(self, subject_code: str) -> List[Material]:
        ...


def normalize_code(code: Any) -> str:
    return str(code or "").upper().strip()


def class_key(code: Any) -> str:
    return f"class:{normalize_code(code)}"


def materials_from_record(record: Any) -> List[Material]:
    """Extract ``Material`` objects from a decoded class record."""
    if not isinstance(record, dict):
        return []
    raw = record.get("materials")
    if not isinstance(raw, list):
        return []
    return [Material.from_record(item) for item in raw if isinstance(item, dict)]


class RedisMaterialsStore:
    """Reads ``class:<CODE>`` records written by the class management API."""

    def __init__(self, client: redis.Redis):
        self.client = client
        self.logger = get_logger("gateway.materials_store")

    async def get_class_record(self, subject_code: str) -> Optional[Dict[str, Any]]:
        code = normalize_code(subject_code)
        if not code:
            return None

        raw = await self.client.get(class_key(code))
        if raw is None:
            return None
        if isinstance(raw, bytes):
            raw = raw.decode("utf-8")
        record = json.loads(raw) if isinstance(raw, str) else raw
        return record if isinstance(record, dict) else None

    async def get_materials(self, subject_code: str) -> List[Material]:
        """Materials for a class; an empty list when the class or store is unavailable."""
        try:
            record = await self.get_class_record(subject_code)
        except (RedisError, OSError, ValueError) as e:
            self.logger.warning(
                "Materials lookup failed, continuing without grounding",
                subject_code=normalize_code(subject_code),
                error=str(e),
            )
            return []

        materials = materials_from_record(record)
        self.logger.debug(
            "Materials loaded",
            subject_code=normalize_code(subject_code),
            count=len(materials),
        )
        return materials
