from __future__ import annotations

from dataclasses import dataclass
from typing import Any, Protocol


class InstanceStoreError(Exception):
    """Base class for everything the instance store raises."""


class StorageError(InstanceStoreError):
    """The backing store failed to read or write a record."""


class InstanceNotFoundError(InstanceStoreError):
    def __init__(self, key: object, *, kind: str = "instance") -> None:
        super().__init__(f"{kind} not found: {key!r}")
        self.key = key
        self.kind = kind


@dataclass(frozen=True)
class Instance:
    id: int
    uri: str
    name: str
    type: str
    nsfw: bool
    api_mode: str
    verified: bool = False
    failed_checks: int = 0
    banned: bool = False
    ban_reason: str | None = None
    created_at: float = 0.0


@dataclass(frozen=True)
class InstanceMetadata:
    title: str
    description: str
    thumbnail: str
    user_count: int = 0
    status_count: int = 0
    registrations: bool = False
    approval_required: bool = False
    # JSON snapshot of the last successful probe.
    cache: str = "{}"
    updated_at: float | None = None


class InstanceStore(Protocol):
    """Narrow persistence interface used by the sweep.

    Every call addresses one record. Missing records raise
    InstanceNotFoundError, backend failures raise StorageError.
    """

    def list_active_instances(self) -> list[Instance]: ...

    def get_instance(self, uri: str) -> Instance: ...

    def set_failed_checks(self, instance_id: int, failed_checks: int) -> None: ...

    def ban_instance(self, instance_id: int, reason: str) -> None: ...

    def get_metadata(self, instance_id: int) -> InstanceMetadata: ...

    def replace_metadata(self, instance_id: int, metadata: InstanceMetadata) -> None: ...

    # Read side of the public listing; not used by the sweep itself.
    def list_directory(self) -> list[dict[str, Any]]: ...
