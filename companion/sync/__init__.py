"""Offline-first sync: queue draining, connectivity and trigger orchestration."""

from .connectivity import ConnectivityMonitor, NetworkState
from .engine import SyncEngine
from .orchestrator import StatusLabel, SyncOrchestrator, SyncStatusReport
from .remote import HttpRemoteBackend, RemoteBackend
from .scheduler import AsyncioScheduler, Scheduler
from .transforms import StrategyRegistry, TableStrategy, default_registry

__all__ = [
    "AsyncioScheduler",
    "ConnectivityMonitor",
    "HttpRemoteBackend",
    "NetworkState",
    "RemoteBackend",
    "Scheduler",
    "StatusLabel",
    "StrategyRegistry",
    "SyncEngine",
    "SyncOrchestrator",
    "SyncStatusReport",
    "TableStrategy",
    "default_registry",
]
