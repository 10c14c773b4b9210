"""Flow registry and its process-wide default instance."""

from __future__ import annotations

from .flows import FlowRegistry

_registry_instance: FlowRegistry | None = None


def get_registry() -> FlowRegistry:
    """Return the default registry, creating it on first use."""
    global _registry_instance
    if _registry_instance is None:
        _registry_instance = FlowRegistry()
    return _registry_instance


__all__ = ["FlowRegistry", "get_registry"]
