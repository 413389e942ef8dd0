"""Closed set of synced entity kinds."""

from __future__ import annotations

from enum import StrEnum

UNKNOWN_ENTITY = "unknown_entity"


class EntityKind(StrEnum):
    """Entity kinds known to the sync authority.

    The values are the wire names used in push/pull payloads.
    """

    PLAN_KINDS = "plan_kinds"
    DAY_TYPES = "day_types"
    PLANS = "plans"
    PLAN_DAYS = "plan_days"
    ACTIVITIES = "activities"
    TRAINING_TYPES = "training_types"
    EXERCISES = "exercises"
    BOULDER_COMBINATIONS = "boulder_combinations"
    BOULDER_COMBINATION_EXERCISES = "boulder_combination_exercises"
    SESSIONS = "sessions"
    SESSION_ITEMS = "session_items"
    TIMER_TEMPLATES = "timer_templates"
    TIMER_INTERVALS = "timer_intervals"
    TIMER_SESSIONS = "timer_sessions"
    TIMER_LAPS = "timer_laps"
    CLIMB_ENTRIES = "climb_entries"
    CLIMB_STYLES = "climb_styles"
    CLIMB_GYMS = "climb_gyms"

    @classmethod
    def parse(cls, value: object) -> EntityKind | None:
        """Return the kind for a raw wire value, or None if it is not known."""
        if isinstance(value, EntityKind):
            return value
        if not isinstance(value, str):
            return None
        try:
            return cls(value.strip().lower())
        except ValueError:
            return None

    @property
    def label(self) -> str:
        return _LABELS[self]


_LABELS: dict[EntityKind, str] = {
    EntityKind.PLAN_KINDS: "Plan Kinds",
    EntityKind.DAY_TYPES: "Training Days",
    EntityKind.PLANS: "Training Plans",
    EntityKind.PLAN_DAYS: "Plan Days",
    EntityKind.ACTIVITIES: "Activities",
    EntityKind.TRAINING_TYPES: "Training Types",
    EntityKind.EXERCISES: "Exercises",
    EntityKind.BOULDER_COMBINATIONS: "Combinations",
    EntityKind.BOULDER_COMBINATION_EXERCISES: "Combination Exercises",
    EntityKind.SESSIONS: "Session Entries",
    EntityKind.SESSION_ITEMS: "Session Items",
    EntityKind.TIMER_TEMPLATES: "Timer Templates",
    EntityKind.TIMER_INTERVALS: "Timer Intervals",
    EntityKind.TIMER_SESSIONS: "Timer Sessions",
    EntityKind.TIMER_LAPS: "Timer Laps",
    EntityKind.CLIMB_ENTRIES: "Climb Entries",
    EntityKind.CLIMB_STYLES: "Climbing Styles",
    EntityKind.CLIMB_GYMS: "Gyms",
}


def entity_label(value: object) -> str:
    """Human label for a kind or raw wire value ("Unknown Item" if unknown)."""
    kind = EntityKind.parse(value)
    return kind.label if kind is not None else "Unknown Item"
