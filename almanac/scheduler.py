from __future__ import annotations

import logging
import threading
from typing import Any, Callable

from almanac.config_manager import ConfigManager
from almanac.errors import AlmanacError, MissingCredentialConfig, MissingUser
from almanac.identity import CredentialManager
from almanac.models import AppConfig, DomainSnapshot, PromptMode, SyncResult
from almanac.sync_engine import SyncEngine


logger = logging.getLogger(__name__)

LINKING_MESSAGE = "Linking Google Calendar…"
SYNCING_MESSAGE = "Syncing with Google Calendar…"
DISABLED_MESSAGE = "Google Calendar sync disabled."


class SyncScheduler:
    """Drives sync cycles for every user session.

    At most one cycle runs per user at a time; a trigger arriving while one is
    in flight is dropped, not queued. Domain changes are debounced through one
    timer per user.
    """

    def __init__(
        self,
        sync_engine: SyncEngine,
        credential_manager: CredentialManager,
        config_manager: ConfigManager,
        snapshot_provider: Callable[[str], DomainSnapshot],
    ) -> None:
        self.sync_engine = sync_engine
        self.state_store = sync_engine.state_store
        self.credential_manager = credential_manager
        self.config_manager = config_manager
        self.snapshot_provider = snapshot_provider
        self._lock = threading.RLock()
        self._timers: dict[str, threading.Timer] = {}
        self._in_flight: set[str] = set()
        self._status_messages: dict[str, str] = {}
        self._stopped = False

    # ------------------------------------------------------------------
    # Lifecycle
    # ------------------------------------------------------------------

    def start(self) -> None:
        with self._lock:
            self._stopped = False
        self.resume_enabled()

    def stop(self) -> None:
        with self._lock:
            self._stopped = True
            timers = list(self._timers.values())
            self._timers.clear()
        for timer in timers:
            timer.cancel()

    # ------------------------------------------------------------------
    # External triggers
    # ------------------------------------------------------------------

    def connect_and_sync(self, user_id: str, authorization_code: str) -> SyncResult | None:
        return self._perform_sync(
            user_id,
            prompt=PromptMode.CONSENT,
            authorization_code=authorization_code,
            enable_sync=True,
            trigger="connect",
        )

    def manual_sync(self, user_id: str) -> SyncResult | None:
        return self._perform_sync(user_id, prompt=PromptMode.SILENT, trigger="manual")

    def disconnect(self, user_id: str) -> None:
        if not user_id:
            raise MissingUser("No authenticated user available for calendar sync.")
        self.cancel(user_id)
        try:
            config = self._load_config()
            self.credential_manager.initialize_from_config(config.google)
            token = ""
            try:
                token = self.credential_manager.request_access_token(user_id, PromptMode.SILENT)
            except AlmanacError as exc:
                logger.warning("Unable to obtain access token for revocation of %s: %s", user_id, exc)
            if token:
                self.credential_manager.revoke_access(token)
        except AlmanacError as exc:
            logger.warning("Error revoking Google Calendar access for %s: %s", user_id, exc)
        finally:
            self.state_store.set_enabled(user_id, False)
            self.state_store.clear_grant(user_id)
            self._set_status(user_id, DISABLED_MESSAGE)

    def notify_change(self, user_id: str) -> bool:
        """Observe a domain change; only armed while sync is enabled and auto-sync is on."""
        if not self._auto_sync_active(user_id):
            return False
        config = self.config_manager.load()
        return self._schedule(user_id, config.sync.debounce_seconds, trigger="auto")

    def resume(self, user_id: str) -> bool:
        if not self._auto_sync_active(user_id):
            return False
        return self._schedule(user_id, 0, trigger="initial")

    def resume_enabled(self) -> list[str]:
        return [user_id for user_id in self.state_store.enabled_users() if self.resume(user_id)]

    def cancel(self, user_id: str) -> None:
        with self._lock:
            timer = self._timers.pop(user_id, None)
        if timer is not None:
            timer.cancel()

    # ------------------------------------------------------------------
    # Read-only status
    # ------------------------------------------------------------------

    def is_syncing(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._in_flight

    def has_pending(self, user_id: str) -> bool:
        with self._lock:
            return user_id in self._timers

    def status(self, user_id: str) -> dict[str, Any]:
        state = self.state_store.get_state(user_id)
        with self._lock:
            message = self._status_messages.get(user_id)
            syncing = user_id in self._in_flight
        return {
            "is_syncing": syncing,
            "status_message": message,
            "sync_enabled": state.enabled,
            "last_synced_at": state.last_synced_at,
            "last_error": state.last_error,
        }

    # ------------------------------------------------------------------
    # Internals
    # ------------------------------------------------------------------

    def _set_status(self, user_id: str, message: str) -> None:
        with self._lock:
            self._status_messages[user_id] = message

    def _load_config(self) -> AppConfig:
        config = self.config_manager.load()
        if not config.google.client_id:
            raise MissingCredentialConfig("Missing Google OAuth client_id configuration.")
        return config

    def _auto_sync_active(self, user_id: str) -> bool:
        if not user_id:
            return False
        if not self.config_manager.load().sync.auto_sync:
            return False
        return self.state_store.is_enabled(user_id)

    def _schedule(self, user_id: str, delay: float, trigger: str) -> bool:
        with self._lock:
            if self._stopped or user_id in self._in_flight:
                return False
            existing = self._timers.pop(user_id, None)
            if existing is not None:
                existing.cancel()
            timer = threading.Timer(max(0.0, float(delay)), self._fire, args=(user_id, trigger))
            timer.daemon = True
            timer.name = f"almanac-sync-{user_id}"
            self._timers[user_id] = timer
            timer.start()
        return True

    def _fire(self, user_id: str, trigger: str) -> None:
        with self._lock:
            if self._timers.get(user_id) is threading.current_thread():
                del self._timers[user_id]
        try:
            self._perform_sync(user_id, prompt=PromptMode.SILENT, trigger=trigger)
        except AlmanacError as exc:
            # Already recorded as last_error and status by _perform_sync.
            logger.warning("Scheduled calendar sync for %s failed: %s", user_id, exc)

    def _perform_sync(
        self,
        user_id: str,
        *,
        prompt: str,
        trigger: str,
        authorization_code: str = "",
        enable_sync: bool = False,
    ) -> SyncResult | None:
        if not user_id:
            raise MissingUser("No authenticated user available for calendar sync.")
        config = self._load_config()

        with self._lock:
            if user_id in self._in_flight:
                logger.info("Calendar sync for %s already in flight; %s trigger ignored", user_id, trigger)
                return None
            self._in_flight.add(user_id)
            pending = self._timers.pop(user_id, None)
        if pending is not None and pending is not threading.current_thread():
            pending.cancel()

        self._set_status(user_id, LINKING_MESSAGE if prompt == PromptMode.CONSENT else SYNCING_MESSAGE)
        try:
            self.credential_manager.initialize_from_config(config.google)
            access_token = self.credential_manager.request_access_token(
                user_id,
                prompt,
                authorization_code=authorization_code,
            )
            self.state_store.set_last_error(user_id, None)
            if enable_sync:
                self.state_store.set_enabled(user_id, True)

            result = self.sync_engine.sync(
                user_id,
                access_token,
                self.snapshot_provider(user_id),
                config.sync.timezone,
                trigger=trigger,
            )
            self._set_status(user_id, result.message)
            return result
        except Exception as exc:
            message = str(exc) or "Google Calendar sync failed."
            logger.error("Google Calendar sync error for %s: %s", user_id, message)
            self.state_store.set_last_error(user_id, message)
            self._set_status(user_id, message)
            raise
        finally:
            with self._lock:
                self._in_flight.discard(user_id)
