"""Dependency cache contract and dependency gating."""

from policysync.dependencies.resolution import (
    DependencyFailure,
    DependencyMap,
    check_dependency,
    evaluate_dependencies,
    generate_pending_message,
    resolve_dependencies,
    resolve_top_level,
)
from policysync.dependencies.watcher import DynamicWatcher, StoreWatcher

__all__ = [
    "DependencyFailure",
    "DependencyMap",
    "DynamicWatcher",
    "StoreWatcher",
    "check_dependency",
    "evaluate_dependencies",
    "generate_pending_message",
    "resolve_dependencies",
    "resolve_top_level",
]
