"""
An ordered, mutable collection of locator strategies.

Registries are constructed explicitly and handed to the resolver; there is
no shared module-level instance. Tests that need a clean slate simply build
a new registry.
"""

import itertools
from dataclasses import dataclass, field
from typing import Any, Callable, Iterable, Iterator

import structlog
from pydantic import BaseModel, Field

from .strategies.base import LocatorStrategy
from .strategies.defaults import create_default_strategies

logger = structlog.get_logger(__name__)

HIGH_CONFIDENCE_THRESHOLD = 0.70
FALLBACK_CONFIDENCE_THRESHOLD = 0.50


class RegistryConfig(BaseModel):
    """Construction options for a StrategyRegistry."""

    auto_register_defaults: bool = Field(
        True, description="Register the ten built-in strategies on construction."
    )
    disabled_strategies: list[str] = Field(
        default_factory=list, description="Names registered in the disabled state."
    )
    priority_overrides: dict[str, int] = Field(
        default_factory=dict, description="Per-name priority overrides applied on registration."
    )


@dataclass
class RegistryEntry:
    strategy: LocatorStrategy
    enabled: bool = True
    priority_override: int | None = None
    registered_at: int = 0

    @property
    def effective_priority(self) -> int:
        return self.priority_override if self.priority_override is not None else self.strategy.priority


EntryFilter = Callable[[RegistryEntry], bool]


def _ordered(entries: Iterable[RegistryEntry]) -> list[RegistryEntry]:
    return sorted(entries, key=lambda e: (e.effective_priority, e.registered_at))


@dataclass
class StrategyRegistry:
    config: RegistryConfig = field(default_factory=RegistryConfig)
    _entries: dict[str, RegistryEntry] = field(default_factory=dict, init=False, repr=False)
    _sorted_cache: list[LocatorStrategy] | None = field(default=None, init=False, repr=False)
    _sequence: Iterator[int] = field(default_factory=itertools.count, init=False, repr=False)

    def __post_init__(self):
        if self.config.auto_register_defaults:
            self.register_defaults()

    def _invalidate(self):
        self._sorted_cache = None

    # --- Registration ---

    def register(
        self, strategy: LocatorStrategy, enabled: bool = True, priority: int | None = None
    ) -> "StrategyRegistry":
        """Adds `strategy`, replacing any entry with the same name."""
        name = strategy.name
        override = priority if priority is not None else self.config.priority_overrides.get(name)
        self._entries[name] = RegistryEntry(
            strategy=strategy,
            enabled=enabled and name not in self.config.disabled_strategies,
            priority_override=override,
            registered_at=next(self._sequence),
        )
        self._invalidate()
        logger.debug("Strategy registered.", strategy=name, enabled=self._entries[name].enabled)
        return self

    def unregister(self, name: str) -> bool:
        if self._entries.pop(name, None) is None:
            return False
        self._invalidate()
        return True

    def register_defaults(self) -> "StrategyRegistry":
        for strategy in create_default_strategies():
            self.register(strategy)
        return self

    def clear(self) -> "StrategyRegistry":
        self._entries.clear()
        self._invalidate()
        return self

    # --- Lookup ---

    def get(self, name: str) -> LocatorStrategy | None:
        entry = self._entries.get(name)
        return entry.strategy if entry else None

    def get_entry(self, name: str) -> RegistryEntry | None:
        return self._entries.get(name)

    def has(self, name: str) -> bool:
        return name in self._entries

    def get_strategies(self, enabled_only: bool = True) -> list[LocatorStrategy]:
        """Strategies in effective-priority order; ties keep registration order."""
        if enabled_only and self._sorted_cache is not None:
            return list(self._sorted_cache)
        entries = [e for e in self._entries.values() if e.enabled or not enabled_only]
        strategies = [e.strategy for e in _ordered(entries)]
        if enabled_only:
            self._sorted_cache = strategies
        return list(strategies)

    def get_entries(self) -> list[RegistryEntry]:
        return list(self._entries.values())

    def names(self, enabled_only: bool = True) -> list[str]:
        return [s.name for s in self.get_strategies(enabled_only)]

    def count(self, enabled_only: bool = False) -> int:
        if enabled_only:
            return sum(1 for e in self._entries.values() if e.enabled)
        return len(self._entries)

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[LocatorStrategy]:
        return iter(self.get_strategies())

    def __contains__(self, name: object) -> bool:
        return name in self._entries

    def iter_entries(self, enabled_only: bool = False) -> Iterator[RegistryEntry]:
        entries = [e for e in self._entries.values() if e.enabled or not enabled_only]
        yield from _ordered(entries)

    # --- Enable / disable ---

    def enable(self, name: str) -> bool:
        return self._set_enabled(name, True)

    def disable(self, name: str) -> bool:
        return self._set_enabled(name, False)

    def _set_enabled(self, name: str, enabled: bool) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        if entry.enabled != enabled:
            entry.enabled = enabled
            self._invalidate()
        return True

    def toggle(self, name: str) -> bool | None:
        entry = self._entries.get(name)
        if entry is None:
            return None
        entry.enabled = not entry.enabled
        self._invalidate()
        return entry.enabled

    def is_enabled(self, name: str) -> bool | None:
        entry = self._entries.get(name)
        return entry.enabled if entry else None

    def enable_all(self, names: Iterable[str]) -> "StrategyRegistry":
        for name in names:
            self.enable(name)
        return self

    def disable_all(self, names: Iterable[str]) -> "StrategyRegistry":
        for name in names:
            self.disable(name)
        return self

    def enable_only(self, names: Iterable[str]) -> "StrategyRegistry":
        wanted = set(names)
        for name, entry in self._entries.items():
            entry.enabled = name in wanted
        self._invalidate()
        return self

    # --- Priority ---

    def set_priority(self, name: str, priority: int) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.priority_override = priority
        self._invalidate()
        return True

    def reset_priority(self, name: str) -> bool:
        entry = self._entries.get(name)
        if entry is None:
            return False
        entry.priority_override = None
        self._invalidate()
        return True

    def get_priority(self, name: str) -> int | None:
        entry = self._entries.get(name)
        return entry.effective_priority if entry else None

    def reorder(self, order: list[str]) -> "StrategyRegistry":
        """Assigns priorities 1..n following `order`; unknown names are ignored."""
        for index, name in enumerate(order):
            self.set_priority(name, index + 1)
        return self

    # --- Queries ---

    def filter(self, predicate: EntryFilter) -> list[LocatorStrategy]:
        return [e.strategy for e in _ordered(e for e in self._entries.values() if predicate(e))]

    def get_by_min_confidence(self, min_confidence: float) -> list[LocatorStrategy]:
        return self.filter(
            lambda e: e.enabled and e.strategy.base_confidence >= min_confidence
        )

    def get_high_confidence(self) -> list[LocatorStrategy]:
        return self.get_by_min_confidence(HIGH_CONFIDENCE_THRESHOLD)

    def get_fallback(self) -> list[LocatorStrategy]:
        return self.filter(
            lambda e: e.enabled and e.strategy.base_confidence < FALLBACK_CONFIDENCE_THRESHOLD
        )

    # --- Persistence ---

    def export_state(self) -> dict[str, Any]:
        return {
            "strategies": [
                {
                    "name": name,
                    "enabled": entry.enabled,
                    "priority_override": entry.priority_override,
                }
                for name, entry in self._entries.items()
            ]
        }

    def import_state(self, state: dict[str, Any]) -> "StrategyRegistry":
        """Applies exported flags and overrides to entries that already exist."""
        for item in state.get("strategies", []):
            entry = self._entries.get(item.get("name"))
            if entry is None:
                logger.debug("Skipping unknown strategy on import.", strategy=item.get("name"))
                continue
            entry.enabled = bool(item.get("enabled", entry.enabled))
            entry.priority_override = item.get("priority_override")
        self._invalidate()
        return self

    def describe(self) -> dict[str, Any]:
        entries = list(self._entries.values())
        enabled = sum(1 for e in entries if e.enabled)
        return {
            "total": len(entries),
            "enabled": enabled,
            "disabled": len(entries) - enabled,
            "order": [
                {
                    "name": e.strategy.name,
                    "priority": e.effective_priority,
                    "enabled": e.enabled,
                    "confidence": e.strategy.base_confidence,
                }
                for e in _ordered(entries)
            ],
        }
