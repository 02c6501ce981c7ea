from __future__ import annotations
from typing import Optional

from git import GitCommandError


class SaveError(Exception):
    """Fehler einer Spielstand-Operation mit optionalem Git-Fehlertext."""

    status_code = 500

    def __init__(self, message: str, details: Optional[str] = None):
        super().__init__(message)
        self.message = message
        self.details = details

    def to_dict(self) -> dict:
        d = {"ok": False, "error": self.message}
        if self.details:
            d["details"] = self.details
        return d


class SaveNotFoundError(SaveError):
    status_code = 404


class NotAuthorizedError(SaveError):
    status_code = 401


class AuthorizationError(SaveError):
    status_code = 400


class ConfigurationError(SaveError):
    status_code = 400


class OperationInProgressError(SaveError):
    status_code = 409

    def __init__(self, operation: str):
        super().__init__(f"Operation läuft bereits: {operation}")
        self.operation = operation


def error_text(exc: Exception) -> str:
    if isinstance(exc, GitCommandError):
        text = (exc.stderr or "").strip() or (exc.stdout or "").strip()
        return text or str(exc)
    return str(exc)


def git_failure(exc: Exception, operation: str) -> SaveError:
    """Git-Fehler in einen SaveError mit lesbarer Meldung verpacken."""
    return SaveError(f"{operation} fehlgeschlagen", details=error_text(exc))
