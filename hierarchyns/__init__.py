"""Hierarchical namespaces: forest model, in-memory reconciliation and admission validation."""

__version__ = "0.1.0"
__all__ = ["api", "config", "forest", "validator", "reconciler"]