from __future__ import annotations

from dataclasses import dataclass

from counterhub.models import NotificationCategory, TenantSettings, normalize_counter_key


class InvalidCounterError(Exception):
    pass


@dataclass(frozen=True)
class CounterDisplay:
    key: str
    name: str
    icon: str
    increment_by: int
    decrement_by: int
    thresholds: tuple[int, ...]
    category: NotificationCategory
    builtin: bool = True


_BUILTINS: dict[str, tuple[str, str, NotificationCategory]] = {
    "deaths": ("Deaths", "💀", NotificationCategory.death_milestone),
    "swears": ("Swears", "🤬", NotificationCategory.swear_milestone),
    "screams": ("Screams", "😱", NotificationCategory.scream_milestone),
    "bits": ("Bits", "💎", NotificationCategory.bits_milestone),
}

RESETTABLE_BUILTINS = ("deaths", "swears", "screams")


def resolve_counter(settings: TenantSettings, counter: str) -> CounterDisplay:
    key = normalize_counter_key(counter)
    builtin = _BUILTINS.get(key)
    if builtin:
        name, icon, category = builtin
        return CounterDisplay(
            key=key,
            name=name,
            icon=icon,
            increment_by=1,
            decrement_by=1,
            thresholds=tuple(settings.milestones.for_counter(key)),
            category=category,
        )
    definition = settings.custom_counters.get(key)
    if definition is None:
        raise InvalidCounterError(f"unknown counter: {counter}")
    return CounterDisplay(
        key=key,
        name=definition.name,
        icon=definition.icon,
        increment_by=definition.increment_by,
        decrement_by=definition.decrement_by,
        thresholds=tuple(definition.milestones),
        category=NotificationCategory.custom_milestone,
        builtin=False,
    )


def known_counters(settings: TenantSettings) -> list[str]:
    return [*_BUILTINS.keys(), *settings.custom_counters.keys()]
