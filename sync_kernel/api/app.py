"""
Sync Kernel API: FastAPI endpoints.

Exposes the controller via a REST API for:
- Source registration
- Per-source status, diff and sync history
- Manual and webhook sync triggers
- Controller configuration
"""

import asyncio
import logging
from contextlib import asynccontextmanager
from typing import Dict, Mapping, Optional

from fastapi import FastAPI, HTTPException, Response
from pydantic import BaseModel

from sync_kernel.config import load_config
from sync_kernel.errors import FetchError, SyncWindowClosedError, UnknownSourceError
from sync_kernel.history.store import SyncHistoryStore
from sync_kernel.models.policy import SyncPolicy
from sync_kernel.models.reconciler import ReconcilerConfig, SyncOutcome
from sync_kernel.models.sync import SyncTrigger
from sync_kernel.reconciler.loop import ManagedSource, SyncController
from sync_kernel.source.provider import HEAD, ManifestDirectoryProvider
from sync_kernel.target.environment import InMemoryEnvironment, TargetEnvironment

logger = logging.getLogger(__name__)


# --- Request/Response Models ---

class SourceRegisterRequest(BaseModel):
    name: str
    path: str                               # Manifest directory on the controller host
    repo_url: Optional[str] = None          # Location webhooks refer to; defaults to path
    target_revision: str = HEAD
    policy: SyncPolicy = SyncPolicy()
    project: Optional[str] = None


class SyncRequest(BaseModel):
    revision: Optional[str] = None


class WebhookRequest(BaseModel):
    repo_url: str
    revision: Optional[str] = None


# --- Application Factory ---

def create_app(
    controller: Optional[SyncController] = None,
    environments: Optional[Mapping[str, TargetEnvironment]] = None,
    history_store: Optional[SyncHistoryStore] = None,
    config: Optional[ReconcilerConfig] = None,
    run_loop: bool = False,
) -> FastAPI:
    """
    Create and configure the FastAPI application.
    With ``run_loop`` the controller's poll loop runs for the app's lifetime.
    """

    if controller is None:
        config = config or load_config()
        if environments is None:
            default_env = InMemoryEnvironment()
            environments = {default_env.server: default_env}
        controller = SyncController(environments, history_store=history_store, config=config)

    @asynccontextmanager
    async def lifespan(app: FastAPI):
        if not run_loop:
            yield
            return
        stop_event = asyncio.Event()
        task = asyncio.create_task(controller.run_async(stop_event))
        try:
            yield
        finally:
            stop_event.set()
            await task

    app = FastAPI(
        title="Sync Kernel API",
        description="Declarative state reconciler",
        version="0.1.0",
        lifespan=lifespan,
    )

    app.state.controller = controller
    app.state.history_store = controller.history

    def _lookup(name: str) -> ManagedSource:
        try:
            return controller.get_source(name)
        except UnknownSourceError:
            raise HTTPException(404, f"Source not found: {name}")

    def _describe(source: ManagedSource) -> Dict:
        return {
            **source.to_dict(),
            "status": controller.get_status(source.name).model_dump(mode="json"),
        }

    @app.get("/health")
    def health():
        return {
            "status": "ok",
            "controller": controller.status,
            "sources": len(controller.list_sources()),
        }

    # === SOURCES ===

    @app.get("/sources")
    def list_sources():
        """All managed sources with their status."""
        return [_describe(s) for s in controller.list_sources()]

    @app.post("/sources")
    def register_source(req: SourceRegisterRequest):
        """Manage a manifest directory as a desired-state source."""
        source = ManagedSource(
            name=req.name,
            provider=ManifestDirectoryProvider(req.path, location=req.repo_url),
            policy=req.policy,
            target_revision=req.target_revision,
            project=req.project,
        )
        try:
            controller.register_source(source)
        except ValueError as e:
            raise HTTPException(400, str(e))
        logger.info("Registered source %s (%s)", source.name, source.provider.location)
        return _describe(source)

    @app.get("/sources/{name}")
    def get_source(name: str):
        return _describe(_lookup(name))

    @app.delete("/sources/{name}")
    def unregister_source(name: str):
        """Stop managing a source. Live resources are left untouched."""
        if not controller.unregister_source(name):
            raise HTTPException(404, f"Source not found: {name}")
        return {"status": "unregistered", "name": name}

    @app.get("/sources/{name}/status")
    def source_status(name: str):
        _lookup(name)
        return controller.get_status(name).model_dump(mode="json")

    @app.get("/sources/{name}/diff")
    def source_diff(name: str, only_drifted: bool = False):
        """Compare the latest revision with live state. Nothing is applied."""
        _lookup(name)
        try:
            comparison = controller.refresh(name)
        except FetchError as e:
            raise HTTPException(502, str(e))
        data = comparison.model_dump(mode="json")
        if only_drifted:
            data["diffs"] = [d.model_dump(mode="json") for d in comparison.drifted()]
        data["counts"] = comparison.counts
        return data

    @app.post("/sources/{name}/sync")
    def sync_source(name: str, response: Response, req: Optional[SyncRequest] = None):
        """Manual sync. Updates run regardless of self-heal; prune still follows policy."""
        _lookup(name)
        revision = req.revision if req else None
        try:
            outcome, result = controller.dispatch(name, SyncTrigger.MANUAL, revision=revision)
        except SyncWindowClosedError as e:
            raise HTTPException(409, str(e))
        except FetchError as e:
            raise HTTPException(502, str(e))
        if outcome == SyncOutcome.SUPERSEDED:
            # The in-flight pass stops early; a follow-up syncs the requested revision
            response.status_code = 202
            return {"status": outcome.value, "name": name, "revision": revision}
        if result is None:
            raise HTTPException(409, f"Sync of {name} already in progress for the same revision")
        return result.model_dump(mode="json")

    @app.get("/sources/{name}/history")
    def source_history(name: str, limit: int = 10):
        _lookup(name)
        return [r.model_dump(mode="json") for r in controller.history.query_by_source(name, limit)]

    # === TRIGGERS ===

    @app.post("/webhook")
    def webhook(req: WebhookRequest):
        """Repository push notification."""
        triggered = controller.notify(req.repo_url, req.revision)
        return {"triggered": triggered}

    # === HISTORY ===

    @app.get("/history")
    def recent_history(limit: int = 50, errors_only: bool = False):
        if errors_only:
            return [r.model_dump(mode="json") for r in controller.history.query_errors(limit=limit)]
        return [r.model_dump(mode="json") for r in controller.history.query_recent(limit)]

    @app.get("/history/{sync_id}")
    def get_sync_record(sync_id: str):
        record = controller.history.get_by_id(sync_id)
        if record is None:
            raise HTTPException(404, "Sync record not found")
        return record.model_dump(mode="json")

    # === RECONCILER ===

    @app.get("/reconciler/status")
    def reconciler_status():
        """Current controller loop status."""
        return {
            "status": controller.status,
            "config": controller.config.model_dump(),
            "managed_sources": len(controller.list_sources()),
            "environments": sorted(controller.environments),
            "recorded_syncs": controller.history.count(),
        }

    @app.post("/reconciler/trigger")
    def trigger_poll():
        """Poll every due source now."""
        results = controller.poll_once()
        return {"results": [r.model_dump(mode="json") for r in results], "count": len(results)}

    @app.get("/reconciler/config")
    def get_reconciler_config():
        """Current controller configuration."""
        return controller.config.model_dump()

    @app.put("/reconciler/config")
    def update_reconciler_config(config: ReconcilerConfig):
        """Update controller configuration."""
        controller.update_config(config)
        return config.model_dump()

    return app


# Default application instance
app = create_app()
