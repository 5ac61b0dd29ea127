"""Project overview - what patterns the indexed code uses."""

from __future__ import annotations

from collections import Counter
from dataclasses import dataclass, field
from typing import Any, Iterable

from .types import KIND_COMPONENT, KIND_HOOK, KIND_STORE, UNIT_KINDS, SourceUnit

DEFAULT_RECOMMENDATIONS = (
    "Use function components with TypeScript",
    "Create clear separation between UI and business logic",
    "Implement proper prop typing with interfaces",
)


@dataclass
class ProjectOverview:
    """Counts and conventions derived from indexed units."""
    kinds: dict[str, int] = field(default_factory=dict)
    component_roles: dict[str, int] = field(default_factory=dict)
    component_patterns: dict[str, int] = field(default_factory=dict)
    hook_types: dict[str, int] = field(default_factory=dict)
    store_types: dict[str, int] = field(default_factory=dict)
    persistent_stores: int = 0
    service_types: dict[str, int] = field(default_factory=dict)
    endpoints: list[str] = field(default_factory=list)
    entities: list[str] = field(default_factory=list)
    annotations: dict[str, list[str]] = field(default_factory=dict)
    degraded: int = 0
    recommendations: list[str] = field(default_factory=list)

    def to_dict(self) -> dict[str, Any]:
        return {
            "kinds": self.kinds,
            "component_roles": self.component_roles,
            "component_patterns": self.component_patterns,
            "hook_types": self.hook_types,
            "store_types": self.store_types,
            "persistent_stores": self.persistent_stores,
            "service_types": self.service_types,
            "endpoints": self.endpoints,
            "entities": self.entities,
            "annotations": self.annotations,
            "degraded": self.degraded,
            "recommendations": self.recommendations,
        }


def recommendations_for(
    component_roles: Counter,
    component_patterns: Counter,
    hook_types: Counter,
    store_types: Counter,
    service_types: Counter | None = None,
) -> list[str]:
    """Convention recommendations for the detected patterns."""
    recs: list[str] = []

    if component_roles["presentation"] and component_roles["container"]:
        recs.append("Follow the presentational/container component pattern")
    if component_patterns["Memoization"]:
        recs.append("Use React.memo for presentational components")

    if hook_types["state"]:
        recs.append("Extract complex state logic into custom hooks")

    if store_types["zustand"]:
        recs.append("Use Zustand for global state management")
    elif store_types["redux"]:
        recs.append("Use Redux with Redux Toolkit for global state management")
    elif store_types["context"]:
        recs.append("Use React Context for shared state")

    if service_types and service_types["react-query"]:
        recs.append("Use React Query hooks for server state")
    elif service_types:
        recs.append("Keep API calls in the service layer")

    return recs or list(DEFAULT_RECOMMENDATIONS)


def build_overview(units: Iterable[SourceUnit]) -> ProjectOverview:
    kinds: Counter = Counter({k: 0 for k in UNIT_KINDS})
    roles: Counter = Counter()
    patterns: Counter = Counter()
    hooks: Counter = Counter()
    stores: Counter = Counter()
    services: dict[str, str] = {}
    endpoints: set[str] = set()
    persistent = 0
    degraded = 0
    entities: set[str] = set()
    annotations: dict[str, set[str]] = {}

    for unit in units:
        kinds[unit.kind] += 1
        degraded += int(unit.degraded)
        tags = unit.tags
        entities.update(tags.get("entities", ()))
        for key, value in tags.get("annotations", {}).items():
            annotations.setdefault(key, set()).add(value)
        if "service_type" in tags:
            services[unit.path] = tags["service_type"]
            endpoints.update(tags.get("endpoints", ()))

        if unit.kind == KIND_COMPONENT:
            if "role" in tags:
                roles[tags["role"]] += 1
            patterns.update(tags.get("patterns", ()))
        elif unit.kind == KIND_HOOK and "hook_type" in tags:
            hooks[tags["hook_type"]] += 1
        elif unit.kind == KIND_STORE and "store_type" in tags:
            stores[tags["store_type"]] += 1
            persistent += int(bool(tags.get("persistent")))

    # One count per service file, not per unit
    service_types = Counter(services.values())

    return ProjectOverview(
        kinds=dict(kinds),
        component_roles=dict(sorted(roles.items())),
        component_patterns=dict(sorted(patterns.items())),
        hook_types=dict(sorted(hooks.items())),
        store_types=dict(sorted(stores.items())),
        persistent_stores=persistent,
        service_types=dict(sorted(service_types.items())),
        endpoints=sorted(endpoints),
        entities=sorted(entities),
        annotations={k: sorted(v) for k, v in sorted(annotations.items())},
        degraded=degraded,
        recommendations=recommendations_for(roles, patterns, hooks, stores, service_types),
    )


__all__ = ["ProjectOverview", "build_overview", "recommendations_for", "DEFAULT_RECOMMENDATIONS"]
