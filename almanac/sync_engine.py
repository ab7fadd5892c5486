from __future__ import annotations

import logging
import traceback
from datetime import datetime, timezone
from typing import Any

from almanac.calendar_client import GoogleCalendarClient
from almanac.errors import MissingToken, MissingUser, PartialSyncError
from almanac.models import DomainSnapshot, GoogleConfig, SyncItem, SyncResult
from almanac.projector import build_sync_items, resolve_timezone
from almanac.state_store import StateStore, pack_synced_entry


logger = logging.getLogger(__name__)


def partition_items(items: list[SyncItem], identity_map: dict[str, dict[str, str]]) -> tuple[list[SyncItem], list[tuple[SyncItem, str]]]:
    to_create: list[SyncItem] = []
    to_update: list[tuple[SyncItem, str]] = []
    for item in items:
        remote_id = identity_map.get(item.kind, {}).get(item.local_key)
        if remote_id:
            to_update.append((item, remote_id))
        else:
            to_create.append(item)
    return to_create, to_update


def _error_text(exc: Exception) -> str:
    return str(exc) or type(exc).__name__


def aggregate_error_message(errors: list[tuple[str, Exception]]) -> str:
    details = "; ".join(f"{local_key}: {_error_text(exc)}" for local_key, exc in errors)
    return f"Google Calendar sync completed with errors: {details}"


class SyncEngine:
    def __init__(
        self,
        state_store: StateStore,
        calendar_config: GoogleConfig | None = None,
    ) -> None:
        self.state_store = state_store
        self.calendar_config = calendar_config

    def _client(self, access_token: str) -> GoogleCalendarClient:
        return GoogleCalendarClient.from_config(access_token, self.calendar_config)

    def sync(
        self,
        user_id: str,
        access_token: str,
        snapshot: DomainSnapshot | None,
        timezone_name: str | None = None,
        trigger: str = "manual",
    ) -> SyncResult:
        if not user_id:
            raise MissingUser("User ID is required to sync calendar data.")
        if not access_token:
            raise MissingToken("Access token missing for Google Calendar sync.")

        started_at = datetime.now(timezone.utc)
        self.state_store.set_last_attempt_at(user_id, started_at.isoformat())
        run_id = self.state_store.start_sync_run(user_id=user_id, trigger=trigger)
        try:
            return self._run(user_id, access_token, snapshot, timezone_name, trigger, run_id, started_at)
        except PartialSyncError:
            raise
        except Exception as exc:
            duration_ms = int((datetime.now(timezone.utc) - started_at).total_seconds() * 1000)
            error_message = f"{type(exc).__name__}: {exc}"
            logger.exception("Calendar sync run %s for user %s failed", run_id, user_id)
            self.state_store.finish_sync_run(
                run_id=run_id,
                status="error",
                message=error_message,
                duration_ms=duration_ms,
                created=0,
                updated=0,
                failed=0,
            )
            self.state_store.record_audit_event(
                user_id=user_id,
                local_key="sync",
                action="run_error",
                details={
                    "trigger": trigger,
                    "error": error_message,
                    "traceback": traceback.format_exc(limit=5),
                },
                run_id=run_id,
            )
            self.state_store.set_last_error(user_id, error_message)
            raise

    def _run(
        self,
        user_id: str,
        access_token: str,
        snapshot: DomainSnapshot | None,
        timezone_name: str | None,
        trigger: str,
        run_id: int,
        started_at: datetime,
    ) -> SyncResult:
        state = self.state_store.get_state(user_id)
        zone_name = resolve_timezone(timezone_name)
        items = build_sync_items(snapshot, zone_name)
        to_create, to_update = partition_items(items, state.identity_map)

        client = self._client(access_token)
        synced: dict[str, list[str]] = {}
        errors: list[tuple[str, Exception]] = []
        created = 0
        updated = 0

        for item, remote_id in to_update:
            try:
                client.update_event(remote_id, item.event.to_payload())
            except Exception as exc:
                self._record_failure(user_id, run_id, trigger, item, "update", exc)
                errors.append((item.local_key, exc))
                continue
            synced.setdefault(item.kind, []).append(pack_synced_entry(item.local_key, remote_id))
            updated += 1

        for item in to_create:
            try:
                response = client.create_event(item.event.to_payload())
                new_id = str((response or {}).get("id") or "").strip()
                if not new_id:
                    raise ValueError("Google Calendar returned no event id")
            except Exception as exc:
                self._record_failure(user_id, run_id, trigger, item, "create", exc)
                errors.append((item.local_key, exc))
                continue
            synced.setdefault(item.kind, []).append(pack_synced_entry(item.local_key, new_id))
            created += 1

        finished_at = datetime.now(timezone.utc)
        if synced:
            self.state_store.record_bulk_synced(user_id, synced)
            self.state_store.set_last_synced_at(user_id, finished_at.isoformat())
            if not errors:
                self.state_store.set_last_error(user_id, None)

        duration_ms = int((finished_at - started_at).total_seconds() * 1000)
        result = SyncResult(
            status="success",
            message=f"Synced {len(items)} items to Google Calendar.",
            synced_count=len(items),
            updated_kinds=list(synced.keys()),
            created=created,
            updated=updated,
            failed=len(errors),
            duration_ms=duration_ms,
            trigger=trigger,
        )

        if errors:
            message = aggregate_error_message(errors)
            self.state_store.set_last_error(user_id, message)
            result.status = "partial" if synced else "error"
            result.message = message
            self.state_store.finish_sync_run(
                run_id=run_id,
                status=result.status,
                message=message,
                duration_ms=duration_ms,
                created=created,
                updated=updated,
                failed=len(errors),
            )
            raise PartialSyncError(message, result=result, errors=errors)

        self.state_store.finish_sync_run(
            run_id=run_id,
            status="success",
            message=result.message,
            duration_ms=duration_ms,
            created=created,
            updated=updated,
            failed=0,
        )
        return result

    def _record_failure(
        self,
        user_id: str,
        run_id: int,
        trigger: str,
        item: SyncItem,
        action: str,
        exc: Exception,
    ) -> None:
        logger.error("Failed to %s calendar item %s for user %s: %s", action, item.local_key, user_id, exc)
        details: dict[str, Any] = {
            "trigger": trigger,
            "kind": item.kind,
            "error": f"{type(exc).__name__}: {exc}",
        }
        status_code = getattr(exc, "status_code", None)
        if status_code is not None:
            details["status_code"] = status_code
        self.state_store.record_audit_event(
            user_id=user_id,
            local_key=item.local_key,
            action=f"{action}_failed",
            details=details,
            run_id=run_id,
        )
