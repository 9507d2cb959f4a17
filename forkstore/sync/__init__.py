"""Log exchange between forkstore nodes.

The client pulls and pushes entries over HTTP; the server app exposes a
store's cursors and entries and merges what peers push. Neither touches the
storage engine beyond merge, cursors and entries_since.
"""

from .sync_client import SyncClient, SyncResult, SyncStatus

__all__ = ["SyncClient", "SyncResult", "SyncStatus"]
