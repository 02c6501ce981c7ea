"""Datenmodell der Spielstände.

Ein Spielstand ist ein annotierter Git-Tag ``save_<epochMillis>_<base64url(name)>``.
Die Tag-Nachricht besteht aus der Beschreibung und einer Sentinel-Zeile
``Last Updated: <ISO8601>``.
"""

from __future__ import annotations

import base64
import binascii
import re
from dataclasses import dataclass, field
from datetime import datetime, timezone
from typing import Any, Dict, List, Optional, Tuple

TAG_PREFIX = "save_"
TAG_PATTERN = f"{TAG_PREFIX}*"
UPDATED_SENTINEL = "Last Updated:"

_TAG_RE = re.compile(r"^save_(\d+)_(.+)$")


# -----------------------------
# Zeit
# -----------------------------
def iso_now() -> str:
    return to_iso(datetime.now(timezone.utc))


def to_iso(when: datetime) -> str:
    if when.tzinfo is None:
        when = when.replace(tzinfo=timezone.utc)
    return when.astimezone(timezone.utc).isoformat(timespec="milliseconds").replace("+00:00", "Z")


def parse_iso(value: str) -> Optional[datetime]:
    """ISO-8601 parsen (auch mit 'Z'); None wenn unbrauchbar."""
    value = (value or "").strip()
    if not value:
        return None
    if value.endswith("Z"):
        value = value[:-1] + "+00:00"
    try:
        parsed = datetime.fromisoformat(value)
    except ValueError:
        return None
    if parsed.tzinfo is None:
        parsed = parsed.replace(tzinfo=timezone.utc)
    return parsed


# -----------------------------
# Name <-> Tag
# -----------------------------
def encode_save_name(name: str) -> str:
    return base64.urlsafe_b64encode(name.encode("utf-8")).decode("ascii").rstrip("=")


def decode_save_name(encoded: str) -> str:
    padded = encoded + "=" * (-len(encoded) % 4)
    raw = base64.urlsafe_b64decode(padded.encode("ascii"))
    return raw.decode("utf-8")


def make_tag_name(name: str, when: Optional[datetime] = None) -> str:
    when = when or datetime.now(timezone.utc)
    millis = int(when.timestamp() * 1000)
    return f"{TAG_PREFIX}{millis}_{encode_save_name(name)}"


def is_save_tag(tag: str) -> bool:
    return bool(tag) and _TAG_RE.match(tag) is not None


def parse_tag_name(tag: str) -> Tuple[Optional[int], str]:
    """
    Liefert (Erstellungszeit in ms, Anzeigename). Kann der Suffix nicht dekodiert
    werden, ist der Anzeigename der rohe Suffix; bei fremden Tags der Tag selbst.
    """
    m = _TAG_RE.match(tag or "")
    if not m:
        return None, tag
    encoded = m.group(2)
    try:
        return int(m.group(1)), decode_save_name(encoded)
    except (binascii.Error, UnicodeDecodeError, ValueError):
        return int(m.group(1)), encoded


# -----------------------------
# Tag-Nachricht
# -----------------------------
def default_description(name: str) -> str:
    return f"Spielstand: {name}"


def tag_message(description: str, updated_at: str) -> str:
    return f"{description}\n{UPDATED_SENTINEL} {updated_at}"


def parse_tag_message(contents: str) -> Tuple[str, Optional[str]]:
    """(Beschreibung, updatedAt) aus dem vollständigen Annotationstext."""
    lines = (contents or "").splitlines()
    for i, line in enumerate(lines):
        if line.startswith(UPDATED_SENTINEL):
            stamp = line[len(UPDATED_SENTINEL):].strip()
            parsed = parse_iso(stamp)
            description = "\n".join(lines[:i]).strip()
            return description, (to_iso(parsed) if parsed else None)
    # ohne Sentinel zählt nur die Betreffzeile
    subject = lines[0].strip() if lines else ""
    return subject, None


# -----------------------------
# Ergebnisse
# -----------------------------
@dataclass
class Save:
    name: str
    tag: str
    description: str
    created_at: str
    updated_at: str
    creator: str = "unknown"
    commit: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        return {
            "name": self.name,
            "tag": self.tag,
            "commit": self.commit,
            "description": self.description,
            "createdAt": self.created_at,
            "updatedAt": self.updated_at,
            "creator": self.creator,
        }


STATUS_KINDS = {
    "A": "added",
    "M": "modified",
    "D": "deleted",
    "R": "renamed",
    "C": "copied",
    "T": "type-changed",
}


@dataclass
class ChangedFile:
    status: str
    file_name: str
    old_file_name: Optional[str] = None

    @property
    def kind(self) -> str:
        return STATUS_KINDS.get(self.status[:1], "unknown")

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"status": self.status, "fileName": self.file_name, "kind": self.kind}
        if self.old_file_name:
            d["oldFileName"] = self.old_file_name
        return d


@dataclass
class LoadResult:
    stash_created: bool

    def to_dict(self) -> Dict[str, Any]:
        return {"stashCreated": self.stash_created}


@dataclass
class RenameResult:
    old_tag: str
    new_tag: str
    new_name: str

    def to_dict(self) -> Dict[str, Any]:
        return {"oldTag": self.old_tag, "newTag": self.new_tag, "newName": self.new_name}


@dataclass
class OperationResult:
    """Erfolg, ggf. mit Warnung (z. B. lokal ok, remote fehlgeschlagen)."""

    warning: bool = False
    details: Optional[str] = None

    def to_dict(self) -> Dict[str, Any]:
        d: Dict[str, Any] = {"warning": self.warning}
        if self.details:
            d["details"] = self.details
        return d


@dataclass
class RepoStatus:
    initialized: bool
    changes: List[str] = field(default_factory=list)
    current_branch: Optional[str] = None
    current_save: Optional[Dict[str, Any]] = None
    is_detached: bool = False
    ahead: int = 0
    behind: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "initialized": self.initialized,
            "changes": list(self.changes),
            "currentBranch": self.current_branch,
            "currentSave": self.current_save,
            "isDetached": self.is_detached,
            "ahead": self.ahead,
            "behind": self.behind,
        }
