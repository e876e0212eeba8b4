"""
Entity Cache

Process-wide store of the current tables, sessions, orders and
notifications, keyed by entity id. Every method is synchronous, so a
mutation can never be interleaved with another one on the event loop.
Collections are copy-on-write: a reader holding the result of `all()` keeps
a consistent view even while the cache moves on.
"""

import logging
from collections.abc import Callable, Iterable
from dataclasses import dataclass

from sqlmodel import SQLModel

from .models import EntityType

logger = logging.getLogger(__name__)

CacheListener = Callable[[EntityType, int], None]


@dataclass(frozen=True)
class Snapshot:
    """Opaque copy of one collection, used to roll back a failed mutation."""
    entity_type: EntityType
    entities: dict[str, SQLModel]
    stale: bool


def _sort_key(entity_type: EntityType):
    if entity_type == EntityType.tables:
        return lambda table: table.number
    if entity_type == EntityType.sessions:
        return lambda session: session.start_time
    return None


class EntityCache:
    def __init__(self):
        self._collections: dict[EntityType, dict[str, SQLModel]] = {t: {} for t in EntityType}
        self._stale: set[EntityType] = set(EntityType)  # Nothing loaded yet
        self._listeners: list[CacheListener] = []
        self.version = 0

    # ============ READS ============

    def get(self, entity_type: EntityType, entity_id: str) -> SQLModel | None:
        return self._collections[entity_type].get(entity_id)

    def all(self, entity_type: EntityType) -> list:
        """
        Current collection of one entity type.

        Tables come back ordered by display number, sessions by start time,
        orders and notifications newest first.
        """
        entities = list(self._collections[entity_type].values())
        if entity_type in (EntityType.orders, EntityType.notifications):
            return sorted(entities, key=lambda entity: entity.created_at, reverse=True)
        key = _sort_key(entity_type)
        if key is not None:
            return sorted(entities, key=key)
        return entities

    def ids(self, entity_type: EntityType) -> set[str]:
        return set(self._collections[entity_type])

    def is_stale(self, entity_type: EntityType) -> bool:
        return entity_type in self._stale

    # ============ WRITES ============

    def replace_all(self, entity_type: EntityType, collection: Iterable[SQLModel]) -> None:
        self._collections[entity_type] = {entity.id: entity for entity in collection}
        self._stale.discard(entity_type)
        self._changed(entity_type)

    def upsert(self, entity_type: EntityType, entity: SQLModel) -> None:
        updated = dict(self._collections[entity_type])
        updated[entity.id] = entity
        self._collections[entity_type] = updated
        self._changed(entity_type)

    def patch(self, entity_type: EntityType, entity_id: str, **fields) -> SQLModel:
        """Merge fields into an existing entity. Raises KeyError when the id is not cached."""
        current = self._collections[entity_type]
        if entity_id not in current:
            raise KeyError(f"{entity_type.value}/{entity_id} is not cached")
        patched = current[entity_id].model_copy(update=fields)
        updated = dict(current)
        updated[entity_id] = patched
        self._collections[entity_type] = updated
        self._changed(entity_type)
        return patched

    def remove(self, entity_type: EntityType, entity_id: str) -> None:
        current = self._collections[entity_type]
        if entity_id not in current:
            return
        updated = dict(current)
        del updated[entity_id]
        self._collections[entity_type] = updated
        self._changed(entity_type)

    def replace_where(
        self,
        entity_type: EntityType,
        predicate: Callable[[SQLModel], bool],
        collection: Iterable[SQLModel],
    ) -> None:
        """Atomically swap the entities matching `predicate` for `collection`."""
        updated = {key: entity for key, entity in self._collections[entity_type].items() if not predicate(entity)}
        updated.update({entity.id: entity for entity in collection})
        self._collections[entity_type] = updated
        self._changed(entity_type)

    # ============ ROLLBACK ============

    def snapshot(self, entity_type: EntityType) -> Snapshot:
        entities = {key: entity.model_copy(deep=True) for key, entity in self._collections[entity_type].items()}
        return Snapshot(entity_type, entities, entity_type in self._stale)

    def changed_ids(self, entity_type: EntityType, snapshot: Snapshot) -> set[str]:
        """Ids whose entity differs between the snapshot and the live collection."""
        live = self._collections[entity_type]
        keys = set(live) | set(snapshot.entities)
        return {key for key in keys if live.get(key) != snapshot.entities.get(key)}

    def restore(self, entity_type: EntityType, snapshot: Snapshot, only: set[str] | None = None) -> None:
        """
        Put a collection back to its snapshot.

        With `only`, just those ids are reverted and everything else keeps its
        live value, so unrelated changes made since the snapshot survive.
        """
        if snapshot.entity_type != entity_type:
            raise ValueError(f"Snapshot of {snapshot.entity_type.value} cannot restore {entity_type.value}")
        if only is None:
            self._collections[entity_type] = dict(snapshot.entities)
            if snapshot.stale:
                self._stale.add(entity_type)
            else:
                self._stale.discard(entity_type)
        else:
            updated = dict(self._collections[entity_type])
            for key in only:
                if key in snapshot.entities:
                    updated[key] = snapshot.entities[key]
                else:
                    updated.pop(key, None)
            self._collections[entity_type] = updated
        self._changed(entity_type)

    # ============ LIFECYCLE ============

    def invalidate(self) -> None:
        """Mark every collection stale; the data stays readable until the next refetch replaces it."""
        self._stale = set(EntityType)

    def clear(self) -> None:
        for entity_type in EntityType:
            self._collections[entity_type] = {}
            self._changed(entity_type)
        self._stale = set(EntityType)

    # ============ LISTENERS ============

    def subscribe(self, listener: CacheListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def unsubscribe() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return unsubscribe

    def _changed(self, entity_type: EntityType) -> None:
        self.version += 1
        for listener in list(self._listeners):
            try:
                listener(entity_type, self.version)
            except Exception as e:
                logger.error(f"Cache listener failed for {entity_type.value}: {e}", exc_info=True)
