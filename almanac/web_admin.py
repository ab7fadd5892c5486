from __future__ import annotations

import os
from contextlib import asynccontextmanager
from typing import Any, AsyncIterator, NoReturn

from fastapi import FastAPI, HTTPException
from pydantic import BaseModel, Field

from almanac.config_manager import ConfigManager
from almanac.errors import (
    AlmanacError,
    MissingCredentialConfig,
    MissingToken,
    MissingUser,
    PartialSyncError,
    TokenError,
)
from almanac.identity import CredentialManager
from almanac.models import SyncResult
from almanac.scheduler import SyncScheduler
from almanac.snapshots import SnapshotRegistry
from almanac.state_store import StateStore
from almanac.sync_engine import SyncEngine


class ConfigUpdateRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class SnapshotRequest(BaseModel):
    payload: dict[str, Any] = Field(default_factory=dict)


class ConnectRequest(BaseModel):
    code: str = Field(min_length=1)


class AppContext:
    def __init__(self, config_path: str, state_path: str) -> None:
        self.config_manager = ConfigManager(config_path)
        self.state_store = StateStore(state_path)
        self.snapshots = SnapshotRegistry()
        self.credential_manager = CredentialManager(self.state_store)
        self.sync_engine = SyncEngine(self.state_store, self.config_manager.load().google)
        self.scheduler = SyncScheduler(
            self.sync_engine,
            self.credential_manager,
            self.config_manager,
            self.snapshots,
        )

    def refresh_engine_config(self) -> None:
        self.sync_engine.calendar_config = self.config_manager.load().google


def _sanitize_config_payload(payload: dict[str, Any], current: dict[str, Any]) -> dict[str, Any]:
    sanitized = dict(payload)
    current_secret = str(current.get("google", {}).get("client_secret", ""))

    google = sanitized.get("google")
    if isinstance(google, dict):
        google = dict(google)
        secret = google.get("client_secret")
        if secret is not None:
            secret_text = str(secret).strip()
            if secret_text in {"", "***"}:
                if current_secret:
                    google.pop("client_secret", None)
                else:
                    google["client_secret"] = ""
        if google:
            sanitized["google"] = google
        else:
            sanitized.pop("google", None)

    return sanitized


def _sync_response(result: SyncResult | None) -> dict[str, Any]:
    if result is None:
        return {"status": "skipped", "message": "A calendar sync is already in progress."}
    return result.to_dict()


def _raise_http(exc: AlmanacError) -> NoReturn:
    if isinstance(exc, (MissingUser, MissingCredentialConfig, MissingToken)):
        raise HTTPException(status_code=400, detail=str(exc)) from exc
    if isinstance(exc, TokenError):
        raise HTTPException(status_code=401, detail=str(exc)) from exc
    if isinstance(exc, PartialSyncError):
        detail: dict[str, Any] = {"message": str(exc), "failed_keys": exc.failed_keys}
        if exc.result is not None:
            detail["result"] = exc.result.to_dict()
        raise HTTPException(status_code=502, detail=detail) from exc
    raise HTTPException(status_code=500, detail=str(exc)) from exc


def create_app() -> FastAPI:
    config_path = os.getenv("ALMANAC_CONFIG_PATH", "config.yaml")
    state_path = os.getenv("ALMANAC_STATE_PATH", "data/state.db")
    context = AppContext(config_path=config_path, state_path=state_path)

    @asynccontextmanager
    async def lifespan(app: FastAPI) -> AsyncIterator[None]:
        app.state.context.scheduler.start()
        try:
            yield
        finally:
            app.state.context.scheduler.stop()

    app = FastAPI(title="Almanac Calendar Sync", version="0.1.0", lifespan=lifespan)
    app.state.context = context

    @app.get("/healthz")
    def healthz() -> dict[str, str]:
        return {"status": "ok"}

    @app.get("/api/config")
    def get_config() -> dict[str, Any]:
        return app.state.context.config_manager.masked()

    @app.put("/api/config")
    def put_config(request: ConfigUpdateRequest) -> dict[str, Any]:
        current = app.state.context.config_manager.load().to_dict()
        sanitized_payload = _sanitize_config_payload(request.payload, current)
        app.state.context.config_manager.update(sanitized_payload)
        app.state.context.refresh_engine_config()
        return {
            "message": "config updated",
            "config": app.state.context.config_manager.masked(),
        }

    @app.put("/api/users/{user_id}/snapshot")
    def put_snapshot(user_id: str, request: SnapshotRequest) -> dict[str, Any]:
        changed = app.state.context.snapshots.put(user_id, request.payload)
        scheduled = app.state.context.scheduler.notify_change(user_id) if changed else False
        return {"changed": changed, "scheduled": scheduled}

    @app.get("/api/users/{user_id}/calendar")
    def calendar_status(user_id: str) -> dict[str, Any]:
        return app.state.context.scheduler.status(user_id)

    @app.get("/api/users/{user_id}/calendar/state")
    def calendar_state(user_id: str) -> dict[str, Any]:
        return app.state.context.state_store.get_state(user_id).to_dict()

    @app.delete("/api/users/{user_id}")
    def delete_user(user_id: str) -> dict[str, str]:
        app.state.context.scheduler.cancel(user_id)
        app.state.context.state_store.clear_user(user_id)
        app.state.context.snapshots.drop(user_id)
        return {"message": "user removed"}

    @app.get("/api/users/{user_id}/calendar/authorize")
    def calendar_authorize(user_id: str) -> dict[str, str]:
        config = app.state.context.config_manager.load()
        try:
            app.state.context.credential_manager.initialize_from_config(config.google)
            url = app.state.context.credential_manager.authorization_url(state=user_id)
        except AlmanacError as exc:
            _raise_http(exc)
        return {"url": url}

    @app.post("/api/users/{user_id}/calendar/connect")
    def calendar_connect(user_id: str, request: ConnectRequest) -> dict[str, Any]:
        try:
            result = app.state.context.scheduler.connect_and_sync(user_id, request.code)
        except AlmanacError as exc:
            _raise_http(exc)
        return _sync_response(result)

    @app.post("/api/users/{user_id}/calendar/sync")
    def calendar_sync(user_id: str) -> dict[str, Any]:
        try:
            result = app.state.context.scheduler.manual_sync(user_id)
        except AlmanacError as exc:
            _raise_http(exc)
        return _sync_response(result)

    @app.post("/api/users/{user_id}/calendar/disconnect")
    def calendar_disconnect(user_id: str) -> dict[str, Any]:
        app.state.context.scheduler.disconnect(user_id)
        return app.state.context.scheduler.status(user_id)

    @app.get("/api/users/{user_id}/calendar/runs")
    def calendar_runs(user_id: str, limit: int = 20) -> dict[str, Any]:
        return {"runs": app.state.context.state_store.recent_sync_runs(user_id, limit=limit)}

    @app.get("/api/users/{user_id}/calendar/audit")
    def calendar_audit(user_id: str, limit: int = 100, run_id: int | None = None) -> dict[str, Any]:
        return {
            "events": app.state.context.state_store.recent_audit_events(user_id, limit=limit, run_id=run_id)
        }

    return app


app = create_app()
