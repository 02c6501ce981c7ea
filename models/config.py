from __future__ import annotations
import json
import logging
import threading
from pathlib import Path
from typing import Any, Dict

logger = logging.getLogger(__name__)

DEFAULT_BRANCH = "main"
MIN_AUTOSAVE_INTERVAL = 1  # Minuten

DEFAULT_CONFIG: Dict[str, Any] = {
    "repo_url": "",
    "branch": DEFAULT_BRANCH,
    "username": "",
    "github_token": "",
    "display_name": "",
    "is_authorized": False,
    "last_save": None,
    "current_save": None,
    "has_temp_stash": False,
    "autoSaveEnabled": False,
    "autoSaveInterval": 30,
    "autoSaveTargetTag": "",
    "data_path": "",
}

# Felder, die niemals an den Client zurückgehen
_SECRET_KEYS = ("github_token",)


def clamp_interval(value: Any) -> float:
    """Auto-Save-Intervall in Minuten, mindestens MIN_AUTOSAVE_INTERVAL."""
    try:
        minutes = float(value)
    except (TypeError, ValueError):
        minutes = float(DEFAULT_CONFIG["autoSaveInterval"])
    if minutes != minutes:  # NaN
        minutes = float(DEFAULT_CONFIG["autoSaveInterval"])
    return max(float(MIN_AUTOSAVE_INTERVAL), minutes)


def data_root(cfg: Dict[str, Any]) -> Path:
    """Verwaltetes Datenverzeichnis; ohne Angabe ./data relativ zum Prozess."""
    raw = (cfg.get("data_path") or "").strip()
    if raw:
        return Path(raw).expanduser()
    return Path.cwd() / "data"


class ConfigStore:
    def __init__(self, path: Path):
        self.path = Path(path)
        self._cfg = dict(DEFAULT_CONFIG)
        self._lock = threading.RLock()
        self.load()

    @property
    def data(self) -> Dict[str, Any]:
        return self._cfg

    def load(self) -> None:
        """
        Liest die Konfiguration. Fehlt die Datei (oder ist sie kaputt), werden die
        Defaults geschrieben. Jedes Feld wird einzeln ergänzt, damit ältere Dateien
        ohne die neueren Auto-Save-Felder weiter funktionieren.
        """
        with self._lock:
            loaded: Dict[str, Any] = {}
            if self.path.exists():
                try:
                    loaded = json.loads(self.path.read_text(encoding="utf-8"))
                    if not isinstance(loaded, dict):
                        raise ValueError("config root is not an object")
                except (OSError, ValueError) as e:
                    logger.warning("Konfiguration unlesbar (%s), Defaults werden geschrieben", e)
                    self._cfg = dict(DEFAULT_CONFIG)
                    self.save()
                    return
            else:
                self._cfg = dict(DEFAULT_CONFIG)
                self.save()
                return

            cfg = dict(DEFAULT_CONFIG)
            cfg.update(loaded)
            cfg["branch"] = (cfg.get("branch") or "").strip() or DEFAULT_BRANCH
            cfg["autoSaveInterval"] = clamp_interval(cfg.get("autoSaveInterval"))
            cfg["autoSaveEnabled"] = bool(cfg.get("autoSaveEnabled"))
            cfg["is_authorized"] = bool(cfg.get("is_authorized"))
            cfg["has_temp_stash"] = bool(cfg.get("has_temp_stash"))
            cfg["autoSaveTargetTag"] = cfg.get("autoSaveTargetTag") or ""
            self._cfg = cfg

    def save(self) -> None:
        with self._lock:
            self.path.parent.mkdir(parents=True, exist_ok=True)
            self.path.write_text(json.dumps(self._cfg, indent=2, ensure_ascii=False), encoding="utf-8")

    def update(self, **fields: Any) -> None:
        """Mehrere Felder setzen und sofort speichern."""
        with self._lock:
            self._cfg.update(fields)
            self.save()

    def public(self) -> Dict[str, Any]:
        """Konfiguration ohne Zugangsdaten (für die API)."""
        with self._lock:
            safe = {k: v for k, v in self._cfg.items() if k not in _SECRET_KEYS}
            safe["has_github_token"] = bool(self._cfg.get("github_token"))
            return safe
