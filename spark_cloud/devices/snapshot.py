"""
Versioned snapshot of the devices claimed by the session user.
"""

import asyncio
import time
from dataclasses import dataclass, field
from typing import Awaitable, Callable, FrozenSet, Iterable, Optional

from ..auth.session import Session, TokenStore
from ..shared.errors import SparkCloudException, TransportError
from ..shared.logging import get_logger
from ..shared.retry import RetryConfig, RetryError, retry_on_exception


DeviceIdFetcher = Callable[[], Awaitable[Iterable[str]]]


@dataclass(frozen=True)
class DeviceSnapshot:
    """Claimed device IDs as of ``fetched_at`` for one session version."""
    version: int
    session_version: int
    device_ids: FrozenSet[str] = field(default_factory=frozenset)
    fetched_at: float = field(default_factory=time.monotonic)

    def age(self) -> float:
        return time.monotonic() - self.fetched_at


class OwnedDevicesCache:
    """Ownership lookups for event filtering.

    The snapshot is refreshed when the session changes (token store version
    differs from the snapshot's) and when it is older than ``ttl`` seconds.
    A snapshot taken under another session is never used for lookups.
    """

    def __init__(
        self,
        token_store: TokenStore,
        fetch_device_ids: DeviceIdFetcher,
        ttl: float = 300.0,
        retry_config: Optional[RetryConfig] = None
    ):
        self.token_store = token_store
        self.ttl = ttl
        self.logger = get_logger("spark_cloud.devices.snapshot")
        self._fetch = retry_on_exception(
            (TransportError,),
            retry_config or RetryConfig(max_attempts=3, base_delay=0.5, max_delay=2.0)
        )(fetch_device_ids)
        self._snapshot: Optional[DeviceSnapshot] = None
        self._next_version = 0
        self._refresh_lock = asyncio.Lock()
        self._background: Optional[asyncio.Task] = None

        token_store.add_listener(self._on_session_change)

    @property
    def snapshot(self) -> Optional[DeviceSnapshot]:
        return self._snapshot

    def _on_session_change(self, session: Optional[Session]):
        # Drop immediately; lookups fail closed until the next refresh.
        self._snapshot = None

    def _is_current_session(self, snapshot: Optional[DeviceSnapshot]) -> bool:
        return snapshot is not None and snapshot.session_version == self.token_store.version

    def is_stale(self) -> bool:
        snapshot = self._snapshot
        if not self._is_current_session(snapshot):
            return True
        return snapshot.age() > self.ttl

    def is_owned(self, device_id: Optional[str]) -> bool:
        """True when the active session has ``device_id`` claimed."""
        if not device_id or not self.token_store.is_active:
            return False
        snapshot = self._snapshot
        if not self._is_current_session(snapshot):
            return False
        return device_id in snapshot.device_ids

    async def ensure_fresh(self):
        """Make lookups valid for the current session.

        A snapshot from another session is replaced before returning; a
        snapshot that merely outlived its TTL is refreshed in the background
        while the old one keeps serving.
        """
        if not self._is_current_session(self._snapshot):
            await self.refresh()
        elif self._snapshot.age() > self.ttl:
            if self._background is None or self._background.done():
                self._background = asyncio.create_task(self.refresh())

    async def refresh(self, force: bool = False) -> DeviceSnapshot:
        """Fetch the claimed device list and install a new snapshot.

        Without ``force`` a current, unexpired snapshot is returned as is.
        """
        async with self._refresh_lock:
            session_version = self.token_store.version
            current = self._snapshot
            if (
                not force
                and self._is_current_session(current)
                and current.age() <= self.ttl
            ):
                return current

            device_ids: FrozenSet[str] = frozenset()
            fetched_at = time.monotonic()
            if self.token_store.is_active:
                try:
                    device_ids = frozenset(await self._fetch())
                except (SparkCloudException, RetryError) as e:
                    self.logger.error("Failed to refresh owned devices", error=str(e))
                    if current is not None and current.session_version == session_version:
                        return current
                    # Empty and already expired, so the next lookup retries in the background.
                    fetched_at -= self.ttl + 1

            self._next_version += 1
            snapshot = DeviceSnapshot(
                version=self._next_version,
                session_version=session_version,
                device_ids=device_ids,
                fetched_at=fetched_at
            )
            # A login/logout during the fetch makes this result obsolete.
            if session_version == self.token_store.version:
                self._snapshot = snapshot
                self.logger.debug(
                    "Owned devices snapshot refreshed",
                    version=snapshot.version,
                    device_count=len(device_ids)
                )
            return snapshot

    async def close(self):
        if self._background is not None and not self._background.done():
            self._background.cancel()
            try:
                await self._background
            except asyncio.CancelledError:
                pass
        self.token_store.remove_listener(self._on_session_change)
