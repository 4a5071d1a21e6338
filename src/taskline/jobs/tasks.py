"""Work items and the task registry.

A work item is the executable payload of a job. It serializes to a
mapping whose ``class`` key is a discriminator; the registry maps each
discriminator back to a factory so stored jobs can be materialized.

Example:
    registry = TaskRegistry()

    @registry.task("send_email")
    class SendEmail(WorkItem):
        def __init__(self, to: str = "", id: str | None = None) -> None:
            super().__init__(id)
            self.to = to

        def handle(self) -> Any:
            mailer.send(self.to)

        def to_data(self) -> dict[str, Any]:
            return {"to": self.to}

        def load_data(self, data: dict[str, Any]) -> None:
            self.to = data["to"]

    queue.push("emails", SendEmail("user@example.com"))
"""

from __future__ import annotations

import hashlib
import json
import logging
from abc import ABC, abstractmethod
from typing import Any, Callable, Mapping, TypeVar
from uuid import uuid4

from taskline.jobs.exceptions import JobError, JobSerializationError

logger = logging.getLogger(__name__)

# Factory building a work item from its serialized mapping
TaskFactory = Callable[[Mapping[str, Any]], "WorkItem"]

W = TypeVar("W", bound="type[WorkItem]")


class WorkItem(ABC):
    """Base class for job payloads.

    Subclasses implement ``handle()`` and, if they carry state,
    ``to_data()``/``load_data()``.
    """

    # Discriminator stored in the serialized form (defaults to class name)
    kind: str = ""

    def __init__(self, id: str | None = None) -> None:
        self.id = id or str(uuid4())
        self.timeout: int | None = None
        self.unique = False
        self.unique_key: str | None = None

    @abstractmethod
    def handle(self) -> Any:
        """Execute the work."""

    def failed(self, exception: BaseException) -> None:
        """Hook invoked once the job has failed permanently."""

    @property
    def name(self) -> str:
        return type(self).__name__

    @classmethod
    def discriminator(cls) -> str:
        return cls.kind or cls.__name__

    def to_data(self) -> dict[str, Any]:
        """Job-specific data (must be JSON serializable)."""
        return {}

    def load_data(self, data: dict[str, Any]) -> None:
        """Restore job-specific data produced by ``to_data()``."""

    def set_timeout(self, timeout: int | None) -> WorkItem:
        self.timeout = timeout
        return self

    def make_unique(self, unique_key: str | None = None) -> WorkItem:
        """Mark the item unique; duplicates are dropped while it is queued."""
        self.unique = True
        self.unique_key = unique_key
        return self

    def get_unique_key(self) -> str:
        """Return the de-duplication key.

        Derived from the discriminator and the data when no explicit key
        was given.
        """
        if not self.unique:
            raise JobError(f"Work item {self.name} is not marked unique")

        if self.unique_key is None:
            canonical = json.dumps(self.to_data(), sort_keys=True, default=str)
            digest = hashlib.md5(  # nosec B324 - key derivation, not security
                f"{self.discriminator()}:{canonical}".encode()
            )
            self.unique_key = digest.hexdigest()

        return self.unique_key

    def to_dict(self) -> dict[str, Any]:
        """Serialize to the payload mapping stored with a job."""
        return {
            "id": self.id,
            "class": self.discriminator(),
            "name": self.name,
            "timeout": self.timeout,
            "unique": self.unique,
            "uniqueKey": self.unique_key,
            "data": self.to_data(),
        }

    @classmethod
    def from_dict(cls, payload: Mapping[str, Any]) -> WorkItem:
        """Default factory: instantiate ``cls`` and restore its fields."""
        item = cls(id=payload.get("id"))  # type: ignore[call-arg]

        if payload.get("timeout") is not None:
            item.timeout = int(payload["timeout"])

        if payload.get("unique"):
            item.unique = True
            item.unique_key = payload.get("uniqueKey")

        data = payload.get("data")
        if isinstance(data, dict):
            item.load_data(data)

        return item


class TaskRegistry:
    """Maps payload discriminators to work item factories.

    Constructed explicitly and handed to the Queue at composition time.
    """

    def __init__(self) -> None:
        self._factories: dict[str, TaskFactory] = {}

    def register(self, kind: str, factory: TaskFactory) -> None:
        """Register a factory for a discriminator.

        Args:
            kind: Discriminator stored under the payload's ``class`` key
            factory: Callable building a work item from the payload mapping
        """
        if kind in self._factories:
            logger.warning(f"Replacing task factory for: {kind}")
        self._factories[kind] = factory
        logger.debug(f"Registered task: {kind}")

    def task(self, kind: str | None = None) -> Callable[[W], W]:
        """Class decorator registering a WorkItem subclass.

        Example:
            @registry.task("cleanup")
            class Cleanup(WorkItem):
                ...
        """

        def decorator(cls: W) -> W:
            if kind is not None:
                cls.kind = kind
            self.register(cls.discriminator(), cls.from_dict)
            return cls

        return decorator

    def create(self, payload: Mapping[str, Any]) -> WorkItem:
        """Materialize a work item from its serialized payload.

        Raises:
            JobError: If the discriminator is missing or unregistered
            JobSerializationError: If the factory cannot rebuild the item
        """
        kind = payload.get("class") or payload.get("kind")
        if not kind:
            raise JobError("Job payload has no 'class' discriminator")

        factory = self._factories.get(kind)
        if factory is None:
            raise JobError(f"No task registered for '{kind}'")

        try:
            return factory(payload)
        except JobError:
            raise
        except Exception as e:
            raise JobSerializationError(f"Cannot load task '{kind}': {e}") from e

    def kinds(self) -> list[str]:
        return list(self._factories)

    def __contains__(self, kind: object) -> bool:
        return kind in self._factories

    def __len__(self) -> int:
        return len(self._factories)
