"""
Optimistic concurrency for entity updates.

Every entity carries an integer ``version``. An update is accepted only if
the submitted version equals the stored one; the stored version then
increases by exactly one. A mismatch raises ConflictError.

Callers that can rebase their change (re-apply it on the freshly stored
entity) use VersionGate.update_with_retry, which performs exactly one
automatic re-fetch-and-retry before surfacing the conflict.
"""

from __future__ import annotations

import copy
import logging
from collections.abc import Callable
from typing import TYPE_CHECKING, Any

if TYPE_CHECKING:
    from ..blob.result import StoreResult
    from .store import CollectionStore

logger = logging.getLogger(__name__)

VERSION_FIELD = "version"


class EntityNotFoundError(Exception):
    """No entity with the requested id exists in the collection."""

    def __init__(self, entity_id: str) -> None:
        super().__init__(f"Entity not found: {entity_id}")
        self.entity_id = entity_id


class ConflictError(Exception):
    """Submitted version does not match the stored version.

    Attributes:
        entity_id: Conflicting entity id
        submitted: Version the caller based its change on
        stored: Version currently stored
        current: The stored entity, for conflict resolution
    """

    def __init__(
        self,
        entity_id: str,
        submitted: int,
        stored: int,
        current: dict[str, Any] | None = None,
    ) -> None:
        super().__init__(
            f"Version conflict on {entity_id}: submitted {submitted}, stored {stored}"
        )
        self.entity_id = entity_id
        self.submitted = submitted
        self.stored = stored
        self.current = current


def version_of(entity: dict[str, Any]) -> int:
    """Integer version of an entity; entities written before versioning are 0."""
    value = entity.get(VERSION_FIELD)
    if value in (None, ""):
        return 0
    return int(value)


class VersionGate:
    """Version check and bump applied by CollectionStore.update.

    Example:
        >>> gate = VersionGate(initiatives)
        >>> result = await gate.update_with_retry(
        ...     "Q1-0001", lambda current: {**current, "status": "Done"}
        ... )
    """

    def __init__(self, store: CollectionStore) -> None:
        self.store = store

    @staticmethod
    def check(stored: dict[str, Any], submitted: dict[str, Any]) -> None:
        """Raise ConflictError unless submitted is based on stored.

        Raises:
            ConflictError: On version mismatch
        """
        stored_version = version_of(stored)
        submitted_version = version_of(submitted)
        if stored_version != submitted_version:
            raise ConflictError(
                str(stored.get("id")),
                submitted=submitted_version,
                stored=stored_version,
                current=copy.deepcopy(stored),
            )

    @staticmethod
    def bump(submitted: dict[str, Any], stored: dict[str, Any]) -> dict[str, Any]:
        """The entity to persist: submitted content at stored version + 1."""
        updated = dict(submitted)
        updated[VERSION_FIELD] = version_of(stored) + 1
        return updated

    async def update_with_retry(
        self,
        entity_id: str,
        mutate: Callable[[dict[str, Any]], dict[str, Any]],
        expected_version: int | None = None,
    ) -> StoreResult:
        """Apply mutate to the stored entity and update it.

        The first attempt is based on expected_version when given (the
        version the caller last saw), otherwise on the freshly read one. On
        conflict the entity is re-fetched and mutate is applied again,
        exactly once.

        Raises:
            EntityNotFoundError: If the entity does not exist
            ConflictError: If the retry also conflicts
        """
        for attempt in (1, 2):
            current = await self.store.get(entity_id)
            if current is None:
                raise EntityNotFoundError(entity_id)

            base_version = version_of(current)
            if attempt == 1 and expected_version is not None:
                base_version = expected_version

            candidate = mutate(copy.deepcopy(current))
            candidate["id"] = current["id"]
            candidate[VERSION_FIELD] = base_version

            try:
                return await self.store.update(candidate)
            except ConflictError as e:
                if attempt == 2:
                    logger.warning(
                        "Version conflict persisted after retry",
                        extra={"entity_id": entity_id, "submitted": e.submitted, "stored": e.stored},
                    )
                    raise
                logger.info(
                    "Version conflict, re-fetching and retrying once",
                    extra={"entity_id": entity_id, "submitted": e.submitted, "stored": e.stored},
                )

        raise RuntimeError("unreachable")
