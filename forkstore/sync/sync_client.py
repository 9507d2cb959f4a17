"""Sync client for exchanging logs with a peer forkstore node.

Pulls the peer's entries past our cursors and merges them, and pushes ours
past the peer's cursors. Handles retries with exponential backoff.
"""

import asyncio
import logging
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from typing import Any

import httpx

from ..storage import LogEntry, Store

logger = logging.getLogger(__name__)


class SyncStatus(Enum):
    """Status of a sync operation."""

    SUCCESS = "success"
    PARTIAL = "partial"  # Some lineages failed to merge
    FAILED = "failed"
    OFFLINE = "offline"  # Remote unavailable


@dataclass
class SyncResult:
    """Result of a sync operation."""

    status: SyncStatus
    entries_pushed: int = 0
    entries_pulled: int = 0
    lineage_failures: int = 0
    error: str | None = None
    timestamp: datetime | None = None


class SyncClient:
    """Client for synchronizing a Store with one peer.

    Supports:
    - Pull: Fetch entries past our cursors and merge them
    - Push: Send entries past the peer's cursors
    - Full sync: Push then pull
    """

    def __init__(
        self,
        store: Store,
        remote_url: str | None = None,
        batch_size: int = 500,
        max_retries: int = 3,
        timeout: float = 30.0,
    ):
        """Initialize the sync client.

        Args:
            store: Local store to sync.
            remote_url: Base URL of the peer (e.g., "http://peer:8420").
            batch_size: Maximum entries per request.
            max_retries: Maximum retry attempts.
            timeout: Request timeout in seconds.
        """
        self.store = store
        self.remote_url = remote_url
        self.batch_size = batch_size
        self.max_retries = max_retries
        self.timeout = timeout
        self._last_sync: datetime | None = None
        self._consecutive_failures = 0

    def set_remote_url(self, url: str) -> None:
        self.remote_url = url
        logger.info(f"Remote URL set to {url}")

    async def _request_with_retry(
        self,
        method: str,
        path: str,
        json_data: Any = None,
    ) -> tuple[Any, str | None]:
        """Make HTTP request with exponential backoff retry.

        Returns:
            Tuple of (response_data, error_message).
        """
        if not self.remote_url:
            return None, "No remote URL configured"

        url = f"{self.remote_url.rstrip('/')}{path}"
        backoff = 1.0

        async with httpx.AsyncClient(timeout=self.timeout) as client:
            for attempt in range(self.max_retries):
                try:
                    if method == "GET":
                        response = await client.get(url)
                    elif method == "POST":
                        response = await client.post(url, json=json_data)
                    else:
                        return None, f"Unsupported method: {method}"

                    if response.status_code == 200:
                        self._consecutive_failures = 0
                        return response.json(), None

                    elif response.status_code >= 500:
                        logger.warning(
                            f"Server error {response.status_code}, "
                            f"attempt {attempt + 1}/{self.max_retries}"
                        )
                    else:
                        # Client error, don't retry
                        return None, f"HTTP {response.status_code}: {response.text}"

                except httpx.ConnectError:
                    logger.warning(
                        f"Connection failed, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.TimeoutException:
                    logger.warning(
                        f"Request timeout, attempt {attempt + 1}/{self.max_retries}"
                    )
                except httpx.HTTPError as e:
                    logger.error(f"Request error: {e}")
                    return None, str(e)

                if attempt < self.max_retries - 1:
                    await asyncio.sleep(backoff)
                    backoff *= 2

        self._consecutive_failures += 1
        return None, f"Max retries ({self.max_retries}) exceeded"

    @staticmethod
    def _error_status(error: str) -> SyncStatus:
        return SyncStatus.OFFLINE if "Connection" in error else SyncStatus.FAILED

    async def _fetch_since(
        self, cursors: dict[str, int]
    ) -> tuple[list[LogEntry], str | None]:
        """Page through the peer's entries past cursors.

        The peer returns entries ordered by machine and chain number, so
        each page's last chain number per machine is where the next starts.
        """
        cursors = dict(cursors)
        entries: list[LogEntry] = []

        while True:
            data, error = await self._request_with_retry(
                "POST",
                "/api/sync/pull",
                {"cursors": cursors, "limit": self.batch_size},
            )
            if error:
                return entries, error

            page = [LogEntry.from_dict(e) for e in data.get("entries", [])]
            entries.extend(page)
            if len(page) < self.batch_size:
                return entries, None

            advanced = dict(cursors)
            for entry in page:
                if entry.chain_number > advanced.get(entry.origin_machine, 0):
                    advanced[entry.origin_machine] = entry.chain_number
            if advanced == cursors:
                logger.warning("Peer returned a page that does not advance, stopping")
                return entries, None
            cursors = advanced

            logger.debug(f"Fetched {len(entries)} entries so far, requesting next page")

    async def pull(self, full: bool = False) -> SyncResult:
        """Fetch entries from the peer and merge them.

        Incremental pulls start from the replay cursors, which reach back to
        any predecessor an earlier merge was missing.

        Args:
            full: Ignore local cursors and request the peer's whole history.
        """
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        cursors = {} if full else self.store.backend.replay_cursors()

        entries, error = await self._fetch_since(cursors)
        if error:
            return SyncResult(status=self._error_status(error), error=error)

        report = self.store.merge(entries)
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.SUCCESS if report.ok else SyncStatus.PARTIAL,
            entries_pulled=len(report.admitted),
            lineage_failures=len(report.failures),
            timestamp=self._last_sync,
        )

    async def push(self) -> SyncResult:
        """Send the entries the peer is missing."""
        if not self.remote_url:
            return SyncResult(status=SyncStatus.FAILED, error="No remote URL configured")

        data, error = await self._request_with_retry("GET", "/api/sync/cursors")
        if error:
            return SyncResult(status=self._error_status(error), error=error)

        remote_cursors = data.get("replay_from")
        if remote_cursors is None:
            remote_cursors = {
                c["machine_id"]: c["chain_number"] for c in data.get("cursors", [])
            }
        entries = self.store.backend.entries_since(remote_cursors)[: self.batch_size]
        if not entries:
            return SyncResult(
                status=SyncStatus.SUCCESS,
                entries_pushed=0,
                timestamp=datetime.now(),
            )

        payload = {
            "machine_id": self.store.machine_id,
            "entries": [e.to_dict() for e in entries],
        }
        data, error = await self._request_with_retry("POST", "/api/sync/push", payload)
        if error:
            return SyncResult(status=self._error_status(error), error=error)

        failures = data.get("failures", [])
        self._last_sync = datetime.now()

        return SyncResult(
            status=SyncStatus.PARTIAL if failures else SyncStatus.SUCCESS,
            entries_pushed=len(data.get("admitted", [])),
            lineage_failures=len(failures),
            timestamp=self._last_sync,
        )

    async def full_sync(self) -> SyncResult:
        """Push, then pull."""
        push_result = await self.push()
        if push_result.status == SyncStatus.OFFLINE:
            return push_result

        pull_result = await self.pull()

        status = pull_result.status
        if status == SyncStatus.SUCCESS and push_result.status != SyncStatus.SUCCESS:
            status = push_result.status

        return SyncResult(
            status=status,
            entries_pushed=push_result.entries_pushed,
            entries_pulled=pull_result.entries_pulled,
            lineage_failures=push_result.lineage_failures + pull_result.lineage_failures,
            error=pull_result.error or push_result.error,
            timestamp=datetime.now(),
        )

    async def sync_loop(
        self,
        interval_seconds: int = 300,
        stop_event: asyncio.Event | None = None,
    ) -> None:
        """Run continuous sync loop.

        Args:
            interval_seconds: Seconds between sync attempts.
            stop_event: Event to signal loop should stop.
        """
        logger.info(f"Starting sync loop with {interval_seconds}s interval")

        while True:
            if stop_event and stop_event.is_set():
                break

            result = await self.full_sync()
            logger.info(
                f"Sync: {result.status.value}, "
                f"pushed={result.entries_pushed}, "
                f"pulled={result.entries_pulled}"
            )

            # Back off on consecutive failures
            wait_time = interval_seconds
            if self._consecutive_failures > 0:
                wait_time = min(
                    interval_seconds * (2 ** self._consecutive_failures),
                    3600,
                )
                logger.debug(f"Backing off sync for {wait_time}s")

            if stop_event:
                try:
                    await asyncio.wait_for(stop_event.wait(), timeout=wait_time)
                    break
                except asyncio.TimeoutError:
                    pass
            else:
                await asyncio.sleep(wait_time)

        logger.info("Sync loop stopped")

    @property
    def last_sync(self) -> datetime | None:
        return self._last_sync

    def get_sync_status(self) -> dict[str, Any]:
        """Get current sync status."""
        stats = self.store.backend.get_stats()

        return {
            "remote_url": self.remote_url,
            "last_sync": self._last_sync.isoformat() if self._last_sync else None,
            "consecutive_failures": self._consecutive_failures,
            "live_entries": stats["live_entries"],
            "total_entries": stats["total_entries"],
        }
