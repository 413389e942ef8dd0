"""Core domain types shared by the sync engine."""

from klettrack_sync.core.entities import UNKNOWN_ENTITY, EntityKind, entity_label

__all__ = ["UNKNOWN_ENTITY", "EntityKind", "entity_label"]
