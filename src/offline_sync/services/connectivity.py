from __future__ import annotations

import asyncio
import logging
from collections.abc import Callable
from dataclasses import dataclass
from typing import Literal

from offline_sync.errors import NetworkError, RemoteRejected
from offline_sync.integrations.remote_api import RemoteAuthority
from offline_sync.services.metadata import SyncMetadataManager
from offline_sync.sync_utils import Clock, now_ms

logger = logging.getLogger(__name__)

Quality = Literal["good", "poor", "offline"]

# Receives the new is_online value on every transition.
TransitionListener = Callable[[bool], None]


@dataclass(frozen=True)
class ConnectivityState:
    is_online: bool
    quality: Quality
    link_up: bool
    latency_ms: float | None
    last_check_ms: int | None
    forced: bool


class ConnectivityMonitor:
    """Link events plus an active probe.

    A link that is up says nothing about the remote authority, so `is_online`
    only turns true after a probe gets an answer. `quality` is for display;
    `is_online` is what gates sync runs.
    """

    def __init__(
        self,
        remote: RemoteAuthority,
        *,
        metadata: SyncMetadataManager | None = None,
        probe_interval_seconds: float = 30.0,
        probe_timeout_seconds: float = 5.0,
        good_latency_threshold_ms: float = 1000.0,
        clock: Clock = now_ms,
    ) -> None:
        self._remote = remote
        self._metadata = metadata
        self._interval = probe_interval_seconds
        self._timeout = probe_timeout_seconds
        self._threshold_ms = good_latency_threshold_ms
        self._clock = clock

        self._link_up = True
        self._is_online = False
        self._quality: Quality = "offline"
        self._latency_ms: float | None = None
        self._last_check_ms: int | None = None
        self._forced: bool | None = None

        self._listeners: list[TransitionListener] = []
        self._task: asyncio.Task[None] | None = None
        self._stopping = asyncio.Event()

    @property
    def is_online(self) -> bool:
        return self._is_online

    @property
    def quality(self) -> Quality:
        return self._quality

    def state(self) -> ConnectivityState:
        return ConnectivityState(
            is_online=self._is_online,
            quality=self._quality,
            link_up=self._link_up,
            latency_ms=self._latency_ms,
            last_check_ms=self._last_check_ms,
            forced=self._forced is not None,
        )

    def add_listener(self, listener: TransitionListener) -> Callable[[], None]:
        self._listeners.append(listener)

        def _remove() -> None:
            if listener in self._listeners:
                self._listeners.remove(listener)

        return _remove

    def _grade(self, latency_ms: float) -> Quality:
        return "good" if latency_ms <= self._threshold_ms else "poor"

    async def _apply(self, online: bool, quality: Quality, latency_ms: float | None) -> None:
        changed = online != self._is_online
        self._is_online = online
        self._quality = quality
        self._latency_ms = latency_ms
        self._last_check_ms = self._clock()
        if self._metadata is not None:
            await self._metadata.set_online(online)
        if not changed:
            return
        logger.info("connectivity changed is_online=%s quality=%s", online, quality)
        for listener in list(self._listeners):
            try:
                listener(online)
            except Exception:
                logger.warning("connectivity listener failed", exc_info=True)

    async def check(self) -> ConnectivityState:
        if self._forced is not None:
            await self._apply(self._forced, "good" if self._forced else "offline", None)
            return self.state()
        if not self._link_up:
            await self._apply(False, "offline", None)
            return self.state()

        try:
            async with asyncio.timeout(self._timeout):
                latency_ms = await self._remote.probe(timeout_seconds=self._timeout)
        except RemoteRejected as e:
            # Something answered, so the authority is reachable.
            logger.info("probe rejected status=%s", e.status_code)
            await self._apply(True, "poor", None)
        except (NetworkError, TimeoutError) as e:
            logger.info("probe failed error=%s", e or type(e).__name__)
            await self._apply(False, "offline", None)
        else:
            await self._apply(True, self._grade(latency_ms), latency_ms)
        return self.state()

    async def set_link_state(self, up: bool) -> ConnectivityState:
        """Platform link event. Down is trusted immediately; up is verified by a probe."""
        self._link_up = up
        return await self.check()

    async def force_offline(self) -> None:
        self._forced = False
        await self._apply(False, "offline", None)

    async def force_online(self) -> None:
        self._forced = True
        await self._apply(True, "good", None)

    async def reset(self) -> ConnectivityState:
        self._forced = None
        return await self.check()

    @property
    def running(self) -> bool:
        return self._task is not None and not self._task.done()

    def start(self) -> None:
        if self.running:
            return
        self._stopping = asyncio.Event()
        self._task = asyncio.create_task(self._run(), name="connectivity-probe")

    async def stop(self) -> None:
        task = self._task
        self._task = None
        if task is None:
            return
        # The loop exits on the event even if a cancel lands inside a probe and is lost.
        self._stopping.set()
        task.cancel()
        await asyncio.wait({task})

    async def _run(self) -> None:
        stopping = self._stopping
        while not stopping.is_set():
            try:
                await self.check()
            except Exception:
                logger.warning("connectivity probe tick failed", exc_info=True)
            try:
                async with asyncio.timeout(self._interval):
                    await stopping.wait()
            except TimeoutError:
                pass
