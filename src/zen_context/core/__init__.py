"""Core zen-context modules.

Uses lazy imports so the CLI can start (and print help) without loading
numpy, httpx or watchdog.
"""

# Mapping of names to their source modules for lazy loading
_LAZY_IMPORTS = {
    # Engine
    "ContextEngine": ".engine",
    # Configuration
    "EngineConfig": ".config",
    "DEFAULT_CONFIG": ".config",
    "load_config": ".config",
    "save_config": ".config",
    # Types
    "SourceUnit": ".types",
    "FileRecord": ".types",
    "ScanDiff": ".types",
    "EmbeddingResult": ".types",
    "IndexEntry": ".types",
    "SearchHit": ".types",
    "Query": ".types",
    "QueryFilters": ".types",
    "BundleEntry": ".types",
    "ContextBundle": ".types",
    "UNIT_KINDS": ".types",
    # Errors
    "ContextEngineError": ".errors",
    "RootPathError": ".errors",
    "ScanError": ".errors",
    "ScanCancelled": ".errors",
    "ParseError": ".errors",
    "EmbeddingError": ".errors",
    "IndexCorruption": ".errors",
    # Components
    "FileScanner": ".scanner",
    "PatternExtractor": ".extractor",
    "Embedder": ".embeddings",
    "HashingEmbedder": ".embeddings",
    "RemoteEmbedder": ".embeddings",
    "CachingEmbedder": ".embeddings",
    "get_embedder": ".embeddings",
    "Index": ".vector_index",
    "Generation": ".vector_index",
    "ChangeTracker": ".tracker",
    "UpdateReport": ".tracker",
    "ContextAssembler": ".assembler",
    "SnapshotStore": ".persistence",
    "PersistedState": ".persistence",
    "ProjectOverview": ".overview",
    "build_overview": ".overview",
    # Utilities
    "content_hash": ".content_hash",
    "VectorCache": ".content_hash",
    "setup_logging": ".debug",
    "timer": ".debug",
}


def __getattr__(name: str):
    """Lazy import on first access."""
    if name in _LAZY_IMPORTS:
        import importlib
        module = importlib.import_module(_LAZY_IMPORTS[name], package=__name__)
        return getattr(module, name)

    raise AttributeError(f"module {__name__!r} has no attribute {name!r}")


__all__ = list(_LAZY_IMPORTS.keys())
