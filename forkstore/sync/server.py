"""FastAPI app serving a store's cursors and entries to peers."""

import logging
from datetime import datetime
from typing import Any

from fastapi import FastAPI, Request
from fastapi.responses import JSONResponse

from ..config import Config
from ..storage import LogEntry, NoMainVersionError, Store

logger = logging.getLogger(__name__)


def create_app(config: Config, store: Store) -> FastAPI:
    """Create the peer sync application.

    Args:
        config: Application configuration.
        store: Store whose log is served and merged into.

    Returns:
        Configured FastAPI application.
    """
    app = FastAPI(
        title="forkstore",
        description="Log exchange endpoint for forkstore nodes",
        version="0.1.0",
    )

    app.state.config = config
    app.state.store = store

    @app.get("/api/health")
    async def api_health() -> dict[str, Any]:
        """Health check with basic store counts."""
        return {
            "status": "ok",
            "timestamp": datetime.now().isoformat(),
            "machine_id": store.machine_id,
            "store": store.backend.get_stats(),
        }

    @app.get("/api/sync/cursors")
    async def api_cursors() -> dict[str, Any]:
        """Replication cursors, so a peer can compute what we are missing."""
        return {
            "machine_id": store.machine_id,
            "cursors": [c.to_dict() for c in store.cursors()],
            "replay_from": store.backend.replay_cursors(),
        }

    @app.post("/api/sync/pull")
    async def api_pull(request: Request):
        """Entries past the caller's per-machine chain numbers."""
        body = await request.json()
        try:
            cursors = {str(k): int(v) for k, v in (body.get("cursors") or {}).items()}
            limit = int(body.get("limit", config.sync.batch_size))
        except (TypeError, ValueError, AttributeError) as e:
            return JSONResponse({"error": f"bad cursors: {e}"}, status_code=422)

        entries = store.backend.entries_since(cursors)[:limit]
        return {
            "machine_id": store.machine_id,
            "entries": [e.to_dict() for e in entries],
        }

    @app.post("/api/sync/push")
    async def api_push(request: Request):
        """Merge entries sent by a peer; returns the merge report."""
        body = await request.json()
        try:
            entries = [LogEntry.from_dict(e) for e in body.get("entries", [])]
        except (KeyError, TypeError, ValueError, AttributeError) as e:
            return JSONResponse({"error": f"bad entries: {e}"}, status_code=422)

        report = store.merge(entries)
        logger.info(
            f"Push from {body.get('machine_id', 'unknown')}: "
            f"{len(report.admitted)} admitted, {len(report.failures)} failures"
        )
        return report.to_dict()

    @app.get("/api/keys/{key}")
    async def api_key(key: str):
        """Main version and conflict branches of a key."""
        try:
            value = store.load(key)
        except NoMainVersionError as e:
            return JSONResponse({"error": str(e), "key": key}, status_code=404)

        return {
            "key": key,
            "main": value.main.to_dict(),
            "branches": [b.to_dict() for b in value.branches],
            "rendered": value.render(),
        }

    return app
