from __future__ import annotations

from typing import Any

from pydantic import BaseModel, Field


class RevalidateInstanceRequest(BaseModel):
    uri: str | None = Field(None, max_length=500)


class RevalidateEvent(BaseModel):
    event: str = Field("sweep.completed", max_length=100)
    ts: float | None = None
    report: dict[str, Any] = Field(default_factory=dict)


class InstanceSummary(BaseModel):
    id: int
    uri: str
    title: str
    thumbnail: str
    description: str
    registrations: bool
    approval_required: bool
    user_count: int
    nsfw: bool
