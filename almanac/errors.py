from __future__ import annotations

from typing import Any


class AlmanacError(Exception):
    """Base class for calendar mirroring failures."""


class MissingUser(AlmanacError):
    pass


class MissingToken(AlmanacError):
    pass


class MissingCredentialConfig(AlmanacError):
    pass


class TokenError(AlmanacError):
    """The identity provider refused the request or returned no access token."""


class ApiError(AlmanacError):
    def __init__(self, status_code: int, message: str) -> None:
        self.status_code = status_code
        self.message = message
        super().__init__(message)


class PartialSyncError(AlmanacError):
    """Raised after a sync cycle in which one or more items failed.

    Successful items of the same cycle are already persisted when this is raised,
    so callers should read it as "partially synced" rather than "nothing happened".
    """

    def __init__(self, message: str, result: Any = None, errors: list[tuple[str, Exception]] | None = None) -> None:
        self.result = result
        self.errors = list(errors or [])
        super().__init__(message)

    @property
    def failed_keys(self) -> list[str]:
        return [local_key for local_key, _ in self.errors]
