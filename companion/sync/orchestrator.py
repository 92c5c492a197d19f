"""Sync orchestrator.

Decides when the engine runs. Triggers come from connectivity edges, a
periodic timer, the app returning to the foreground and manual requests.
Every trigger passes the same guards, all checked before the first await,
so at most one engine run is ever in flight.
"""

import logging
from dataclasses import dataclass
from datetime import datetime, timezone
from enum import Enum
from typing import Awaitable, Callable, Optional

from companion.config import Settings
from companion.errors import StorageError
from companion.session import SessionContext
from companion.sponsor.handshake import SponsorHandshake
from companion.types import SyncResult

from .connectivity import ConnectivityMonitor
from .engine import SyncEngine
from .scheduler import Scheduler, TimerHandle, default_scheduler

logger = logging.getLogger(__name__)

DEFAULT_PERIODIC_INTERVAL = 300.0


class SyncPhase(str, Enum):
    IDLE = "idle"
    RUNNING = "running"


class StatusLabel(str, Enum):
    OFFLINE = "offline"
    SYNCING = "syncing"
    ERROR = "error"
    PENDING = "pending"
    UP_TO_DATE = "up_to_date"


@dataclass
class SyncStatusReport:
    """What a status indicator shows. Raw error text is never included."""

    label: StatusLabel
    pending_count: int
    last_sync_at: Optional[datetime]
    is_syncing: bool
    is_online: bool
    has_error: bool

    def describe(self) -> str:
        if self.label == StatusLabel.OFFLINE:
            return "Offline"
        if self.label == StatusLabel.SYNCING:
            return "Syncing…"
        if self.label == StatusLabel.ERROR:
            return "Sync error"
        if self.label == StatusLabel.PENDING:
            return f"{self.pending_count} pending"
        return "Up to date"

    def to_dict(self) -> dict:
        return {
            "label": self.label.value,
            "description": self.describe(),
            "pending_count": self.pending_count,
            "last_sync_at": self.last_sync_at.isoformat() if self.last_sync_at else None,
            "is_syncing": self.is_syncing,
            "is_online": self.is_online,
            "has_error": self.has_error,
        }


class SyncOrchestrator:
    """Single-flight coordinator for sync runs."""

    def __init__(
        self,
        session: SessionContext,
        engine: SyncEngine,
        monitor: ConnectivityMonitor,
        scheduler: Optional[Scheduler] = None,
        periodic_interval: float = DEFAULT_PERIODIC_INTERVAL,
    ):
        self.session = session
        self.engine = engine
        self.monitor = monitor
        self.scheduler = scheduler or default_scheduler()
        self.periodic_interval = periodic_interval

        self.phase = SyncPhase.IDLE
        self.last_sync_at: Optional[datetime] = None
        self.last_result: Optional[SyncResult] = None
        self.has_error = False
        self._app_state = "active"
        self._unsubscribe: Optional[Callable[[], None]] = None
        self._timer: Optional[TimerHandle] = None

    @classmethod
    def from_settings(
        cls,
        session: SessionContext,
        engine: SyncEngine,
        monitor: ConnectivityMonitor,
        settings: Settings,
        scheduler: Optional[Scheduler] = None,
    ) -> "SyncOrchestrator":
        return cls(
            session,
            engine,
            monitor,
            scheduler=scheduler,
            periodic_interval=settings.periodic_interval_seconds,
        )

    @property
    def is_running(self) -> bool:
        return self.phase == SyncPhase.RUNNING

    # === Trigger wiring ===

    def start(self) -> None:
        """Subscribe to connectivity edges and start the periodic timer."""
        if self._unsubscribe is not None:
            return
        self._unsubscribe = self.monitor.subscribe(self._on_connectivity_change)
        self._timer = self.scheduler.call_every(self.periodic_interval, self._on_timer)
        logger.debug(f"Sync triggers started (every {self.periodic_interval}s)")

    def stop(self) -> None:
        if self._unsubscribe is not None:
            self._unsubscribe()
            self._unsubscribe = None
        if self._timer is not None:
            self._timer.cancel()
            self._timer = None

    async def _on_connectivity_change(self, online: bool) -> None:
        if online:
            await self._trigger("connectivity")

    async def _on_timer(self) -> None:
        await self._trigger("periodic")

    async def on_app_state(self, state: str) -> Optional[SyncResult]:
        """Feed app lifecycle changes; returning to ``active`` triggers a sync."""
        previous = self._app_state
        self._app_state = state
        if state == "active" and previous != "active":
            return await self._trigger("foreground")
        return None

    async def sync_now(self) -> Optional[SyncResult]:
        """Manual sync. Returns None if a guard skipped the run."""
        return await self._trigger("manual")

    # === Run ===

    def _skip_reason(self) -> Optional[str]:
        session = self.session
        if session is None or not session.is_active:
            return "no user logged in"
        if not session.store.is_ready:
            return "database not ready"
        if self.phase == SyncPhase.RUNNING:
            return "sync already in progress"
        if not self.monitor.is_online:
            return "offline"
        return None

    async def _trigger(self, reason: str) -> Optional[SyncResult]:
        skip = self._skip_reason()
        if skip is not None:
            logger.info(f"Cannot sync: {skip}")
            return None

        # No await between the guard check and this line
        self.phase = SyncPhase.RUNNING
        logger.debug(f"Sync started ({reason})")
        try:
            result = await self.engine.run()
        except Exception as e:
            logger.error(f"Sync run failed: {e}", exc_info=True)
            self.has_error = True
            return None
        finally:
            self.phase = SyncPhase.IDLE

        self.last_result = result
        self.last_sync_at = datetime.now(timezone.utc)
        self.has_error = bool(result.errors)
        for error in result.errors:
            logger.warning(f"Sync error: {error}")
        return result

    # === Status ===

    def clear_error(self) -> None:
        self.has_error = False

    async def status(self) -> SyncStatusReport:
        pending = 0
        if self.session is not None and self.session.is_active and self.session.store.is_ready:
            try:
                pending = await self.session.queue.pending_count()
            except StorageError as e:
                logger.error(f"Could not count pending changes: {e}")

        is_online = self.monitor.is_online
        if not is_online:
            label = StatusLabel.OFFLINE
        elif self.is_running:
            label = StatusLabel.SYNCING
        elif self.has_error:
            label = StatusLabel.ERROR
        elif pending > 0:
            label = StatusLabel.PENDING
        else:
            label = StatusLabel.UP_TO_DATE

        return SyncStatusReport(
            label=label,
            pending_count=pending,
            last_sync_at=self.last_sync_at,
            is_syncing=self.is_running,
            is_online=is_online,
            has_error=self.has_error,
        )

    # === Logout ===

    async def logout(self, sign_out: Callable[[], Awaitable[None]]) -> None:
        """Stop syncing, wipe local data, end the session, then sign out remotely.

        Local data, sponsor link keys included, is gone before the remote session ends. If the wipe fails
        the error propagates and ``sign_out`` is not called.
        """
        self.stop()
        session = self.session
        if session is not None:
            await SponsorHandshake(session.store, session.cipher.keystore).forget_all_keys()
            await session.store.wipe()
            session.dispose()
        await sign_out()
        logger.info("Logged out")
