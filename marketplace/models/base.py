"""
Base model classes for marketplace records.

Records are pydantic models serialized as JSON documents in the store.
Parsing goes through model validation, so a malformed document fails at
the store boundary instead of deep inside a service.
"""
import secrets
import time
from datetime import datetime, timezone
from typing import Type, TypeVar

from pydantic import BaseModel, ConfigDict


R = TypeVar("R", bound="Record")


def utcnow() -> datetime:
    return datetime.now(timezone.utc)


def epoch_millis(moment: datetime | None = None) -> int:
    moment = moment or utcnow()
    return int(moment.timestamp() * 1000)


def generate_id(prefix: str) -> str:
    """Sortable-ish unique id, e.g. inst_1718000000000_9f2c4e1ab37d0c55."""
    return f"{prefix}_{int(time.time() * 1000)}_{secrets.token_hex(8)}"


class Record(BaseModel):
    """Base class for all persisted records."""

    model_config = ConfigDict(populate_by_name=True, extra="ignore")

    def dumps(self) -> str:
        return self.model_dump_json(by_alias=True)

    @classmethod
    def loads(cls: Type[R], raw: str | bytes) -> R:
        return cls.model_validate_json(raw)
