"""Workers, queues and watch loops shared by every controller."""

from policysync.runtime.controller import Controller, ReconcileResult, Reconciler
from policysync.runtime.uninstall import UninstallState, UninstallWatcher
from policysync.runtime.watch import WatchLoop
from policysync.runtime.workqueue import WorkQueue

__all__ = [
    "Controller",
    "ReconcileResult",
    "Reconciler",
    "UninstallState",
    "UninstallWatcher",
    "WatchLoop",
    "WorkQueue",
]
