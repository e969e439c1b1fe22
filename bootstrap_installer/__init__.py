"""Bootstrap installer (catalog-driven, resumable).

Core design goals:
- Declarative module catalog, validated before anything runs
- Dependency-safe selection with deterministic ordering
- Verify-before-execute for every fetched installer
- Checkpointed, resumable runs with atomic state writes
- Centralized logging
"""

__all__ = []
