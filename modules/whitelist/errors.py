"""Error taxonomy for the whitelist pipeline."""

from __future__ import annotations

from typing import Any, Mapping, Optional

__all__ = [
    "WhitelistError",
    "ConfigurationError",
    "RemoteAPIError",
    "EncodingError",
    "InvalidPermissionToken",
    "human_error",
]


class WhitelistError(RuntimeError):
    """Base class for whitelist failures that callers may want to surface."""

    code = "WHITELIST_ERROR"

    def __init__(self, message: str, *, context: Optional[Mapping[str, Any]] = None) -> None:
        super().__init__(message)
        self.context: dict[str, Any] = dict(context or {})


class ConfigurationError(WhitelistError):
    """A required repository or CDN setting is missing."""

    code = "CONFIG_ERROR"


class RemoteAPIError(WhitelistError):
    """Non-2xx response from the git-hosting API."""

    code = "REMOTE_API_ERROR"

    def __init__(
        self,
        status: int,
        body: str,
        *,
        method: str = "GET",
        path: str = "",
        reason: str = "",
    ) -> None:
        detail = f"{status} {reason}".strip()
        super().__init__(
            f"GitHub API error {detail}: {body}",
            context={"status": status, "method": method, "path": path},
        )
        self.status = status
        self.body = body
        self.method = method
        self.path = path


class EncodingError(WhitelistError):
    """The encoded whitelist cannot be produced (e.g. empty XOR key)."""

    code = "ENCODING_ERROR"


class InvalidPermissionToken(WhitelistError, ValueError):
    """A permission token contains a separator or is blank."""

    code = "VALIDATION_ERROR"


def human_error(exc: BaseException) -> str:
    """Return a short operator-facing description of ``exc``."""

    if isinstance(exc, RemoteAPIError):
        return f"GitHub rejected the update (status {exc.status})."
    if isinstance(exc, ConfigurationError):
        return f"Whitelist publishing is not configured: {exc}"
    if isinstance(exc, WhitelistError):
        return str(exc)
    text = str(exc).strip()
    return text or exc.__class__.__name__
