"""
Connectivity monitoring and the metered-network preflight notice.

ConnectivityMonitor periodically samples psutil.net_if_stats() and keeps a
snapshot of whether the host is online and whether the active link looks
cellular, expensive (metered) or constrained (slow). It is read-only input
for the preflight notice; the analysis orchestrator never waits on it.
"""
import asyncio
import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Set, Tuple

import psutil

from ai_analysis.core.config import Settings, settings as default_settings

logger = logging.getLogger(__name__)

# Interface name prefixes used by cellular modems on Linux, macOS and Android
CELLULAR_PREFIXES = ("wwan", "rmnet", "pdp_ip", "ccmni", "ppp")
LOOPBACK_PREFIXES = ("lo",)

# Reported link speeds in this range (Mbit/s) count as constrained
CONSTRAINED_MIN_SPEED = 1
CONSTRAINED_MAX_SPEED = 10

PREFLIGHT_RECHECK_DELAY = 0.3


@dataclass(frozen=True)
class ConnectivitySnapshot:
    """Network path characteristics at one sample"""
    is_connected: bool = False
    is_cellular: bool = False
    is_expensive: bool = False
    is_constrained: bool = False
    active_interfaces: Tuple[str, ...] = ()

    @property
    def is_metered(self) -> bool:
        return self.is_cellular or self.is_expensive or self.is_constrained


SnapshotCallback = Callable[[ConnectivitySnapshot], None]


class ConnectivityMonitor:
    """Polls interface state and notifies subscribers on change"""

    def __init__(
        self,
        settings: Optional[Settings] = None,
        poll_interval: Optional[float] = None,
        metered_interfaces: Optional[List[str]] = None,
    ):
        cfg = settings or default_settings
        self.poll_interval = poll_interval if poll_interval is not None else cfg.CONNECTIVITY_POLL_SECONDS
        self.metered_interfaces = set(
            metered_interfaces if metered_interfaces is not None else cfg.metered_interfaces_list
        )
        self._snapshot = ConnectivitySnapshot()
        self._has_first_update = False
        self._subscribers: List[SnapshotCallback] = []
        self._task: Optional[asyncio.Task] = None

    @property
    def snapshot(self) -> ConnectivitySnapshot:
        return self._snapshot

    @property
    def has_first_update(self) -> bool:
        return self._has_first_update

    @property
    def is_connected(self) -> bool:
        return self._snapshot.is_connected

    @property
    def is_cellular(self) -> bool:
        return self._snapshot.is_cellular

    @property
    def is_expensive(self) -> bool:
        return self._snapshot.is_expensive

    @property
    def is_constrained(self) -> bool:
        return self._snapshot.is_constrained

    @property
    def is_running(self) -> bool:
        return self._task is not None and not self._task.done()

    def subscribe(self, callback: SnapshotCallback) -> Callable[[], None]:
        """
        Register a change callback.

        Returns:
            Function that removes the subscription
        """
        self._subscribers.append(callback)

        def unsubscribe() -> None:
            if callback in self._subscribers:
                self._subscribers.remove(callback)

        return unsubscribe

    def _sample(self) -> ConnectivitySnapshot:
        stats = psutil.net_if_stats()

        active = []
        cellular = False
        expensive = False
        constrained = False
        for name, nic in sorted(stats.items()):
            if not nic.isup or name.startswith(LOOPBACK_PREFIXES):
                continue
            active.append(name)
            if name.startswith(CELLULAR_PREFIXES):
                cellular = True
            if name in self.metered_interfaces:
                expensive = True
            if CONSTRAINED_MIN_SPEED <= nic.speed <= CONSTRAINED_MAX_SPEED:
                constrained = True

        return ConnectivitySnapshot(
            is_connected=bool(active),
            is_cellular=cellular,
            is_expensive=expensive or cellular,
            is_constrained=constrained,
            active_interfaces=tuple(active),
        )

    def refresh(self) -> ConnectivitySnapshot:
        """Take one sample now and notify subscribers if anything changed."""
        try:
            snapshot = self._sample()
        except OSError as e:
            logger.warning(
                f"Failed to read network interfaces: {e}",
                extra={"event_type": "connectivity_sample_error", "error_type": type(e).__name__}
            )
            return self._snapshot

        changed = snapshot != self._snapshot or not self._has_first_update
        self._snapshot = snapshot
        self._has_first_update = True

        if changed:
            logger.debug(
                "Connectivity changed",
                extra={
                    "event_type": "connectivity_changed",
                    "is_connected": snapshot.is_connected,
                    "is_cellular": snapshot.is_cellular,
                    "is_expensive": snapshot.is_expensive,
                    "is_constrained": snapshot.is_constrained,
                }
            )
            for callback in list(self._subscribers):
                try:
                    callback(snapshot)
                except Exception as e:
                    logger.warning(f"Connectivity subscriber failed: {e}")

        return snapshot

    def start(self) -> None:
        """Start background polling; calling it again is a no-op."""
        if self.is_running:
            return
        self._task = asyncio.create_task(self._poll_loop(), name="connectivity_monitor")
        logger.info("Connectivity monitor started")

    async def stop(self) -> None:
        if self._task is None:
            return
        task, self._task = self._task, None
        task.cancel()
        try:
            await task
        except asyncio.CancelledError:
            pass
        logger.info("Connectivity monitor stopped")

    async def _poll_loop(self) -> None:
        while True:
            self.refresh()
            await asyncio.sleep(self.poll_interval)


NoticeHook = Callable[[], Awaitable[None]]


class NetworkPreflight:
    """
    Non-blocking metered-network notice shown before large uploads.

    The check runs in its own task so the caller's analyze() path never
    waits on it.
    """

    def __init__(
        self,
        monitor: ConnectivityMonitor,
        notice_hook: Optional[NoticeHook] = None,
        recheck_delay: float = PREFLIGHT_RECHECK_DELAY,
    ):
        self.monitor = monitor
        self.notice_hook = notice_hook
        self.recheck_delay = recheck_delay
        self._pending: Set[asyncio.Task] = set()

    def show_metered_notice_if_needed(self) -> asyncio.Task:
        """
        Schedule the metered-network check.

        If the monitor has not sampled yet the check waits `recheck_delay`
        seconds first to give it a chance to report.

        Returns:
            The scheduled task (callers normally ignore it)
        """
        self.monitor.start()
        delay = 0.0 if self.monitor.has_first_update else self.recheck_delay
        task = asyncio.create_task(self._trigger_if_needed(delay), name="network_preflight")
        self._pending.add(task)
        task.add_done_callback(self._pending.discard)
        return task

    async def _trigger_if_needed(self, delay: float) -> bool:
        if delay:
            await asyncio.sleep(delay)

        snapshot = self.monitor.snapshot
        logger.debug(
            "Network preflight check",
            extra={
                "event_type": "network_preflight",
                "is_cellular": snapshot.is_cellular,
                "is_expensive": snapshot.is_expensive,
                "is_constrained": snapshot.is_constrained,
            }
        )
        if not snapshot.is_metered or self.notice_hook is None:
            return False

        try:
            await self.notice_hook()
        except Exception as e:
            logger.warning(
                f"Preflight notice hook failed: {e}",
                extra={"event_type": "network_preflight_hook_error", "error_type": type(e).__name__}
            )
            return False
        return True
