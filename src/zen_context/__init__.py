"""zen-context: a context engine for pattern-consistent code generation.

Scans a source tree, extracts components, hooks, stores and utilities,
embeds them, and answers ranked, size-bounded context queries.

This module uses lazy imports so ``zen-context --help`` stays fast.
"""


def __getattr__(name: str):
    """Lazy import core classes only when accessed."""
    if name in ("ContextEngine", "EngineConfig", "ContextBundle", "Query", "QueryFilters",
                "SourceUnit", "SearchHit", "ContextEngineError", "RootPathError",
                "IndexCorruption"):
        from . import core
        return getattr(core, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__version__ = "0.1.0"
__all__ = [
    # Engine
    "ContextEngine",
    "EngineConfig",
    # Data
    "ContextBundle",
    "Query",
    "QueryFilters",
    "SourceUnit",
    "SearchHit",
    # Errors
    "ContextEngineError",
    "RootPathError",
    "IndexCorruption",
]
