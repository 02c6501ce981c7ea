from __future__ import annotations

import logging
import threading
from collections import deque
from datetime import datetime
from typing import List, Optional

from models.config import ConfigStore, clamp_interval
from .errors import SaveError
from .operation_lock import OperationLock
from .save_service import SaveService

logger = logging.getLogger(__name__)


# -----------------------------
# kleines In-Memory-Log
# -----------------------------
class InMemoryLog(logging.Handler):
    """Ringpuffer der letzten Logzeilen (neueste zuerst), auch als logging.Handler nutzbar."""

    def __init__(self, maxlen: int = 2000):
        super().__init__()
        self._buf = deque(maxlen=maxlen)
        self._buf_lock = threading.Lock()
        self.setFormatter(logging.Formatter("%(levelname)s %(name)s: %(message)s"))

    def add(self, msg: str):
        with self._buf_lock:
            ts = datetime.now().strftime("%H:%M:%S")
            self._buf.appendleft(f"[{ts}] {msg}")

    def dump(self) -> List[str]:
        with self._buf_lock:
            return list(self._buf)

    def emit(self, record: logging.LogRecord) -> None:
        try:
            self.add(self.format(record))
        except Exception:
            self.handleError(record)


# -----------------------------
# Auto-Save
# -----------------------------
class AutoSaveService:
    """
    Periodisches Überschreiben eines Ziel-Spielstands. Läuft gerade irgendeine
    Operation (auch ein vorheriger Tick), wird der Tick ausgelassen, ohne Nachholen.
    """

    def __init__(self, cfg_store: ConfigStore, lock: OperationLock, saves: SaveService):
        self.cfg_store = cfg_store
        self.lock = lock
        self.saves = saves
        self._timer: Optional[threading.Timer] = None
        self._timer_lock = threading.Lock()

    # ---------- Policy ----------
    def enabled(self) -> bool:
        cfg = self.cfg_store.data
        return bool(cfg.get("is_authorized") and cfg.get("autoSaveEnabled") and cfg.get("autoSaveTargetTag"))

    def interval_seconds(self) -> float:
        return clamp_interval(self.cfg_store.data.get("autoSaveInterval")) * 60.0

    # ---------- Timer ----------
    def _arm(self) -> None:
        self._timer = threading.Timer(self.interval_seconds(), self.tick)
        self._timer.daemon = True
        self._timer.start()

    def rearm(self) -> bool:
        """Timer nach Policy-Änderung neu aufsetzen. True, wenn Auto-Save aktiv ist."""
        with self._timer_lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None
            if not self.enabled():
                logger.info("Auto-Save nicht gestartet (nicht autorisiert, deaktiviert oder kein Ziel)")
                return False
            self._arm()
        logger.info(
            "Auto-Save aktiv: alle %.0f s auf %s",
            self.interval_seconds(),
            self.cfg_store.data.get("autoSaveTargetTag"),
        )
        return True

    def stop(self) -> None:
        with self._timer_lock:
            if self._timer:
                self._timer.cancel()
                self._timer = None

    def running(self) -> bool:
        return self._timer is not None

    def tick(self) -> bool:
        """
        Ein Auto-Save-Durchlauf. Der nächste Termin wird vorab gesetzt, damit ein
        Fehler den Zeitplan nie beendet. Liefert True, wenn überschrieben wurde.
        Nur der aktuell geplante Timer setzt nach; ein veralteter (durch rearm()
        ersetzter) oder ein manueller Aufruf lässt den Zeitplan unverändert.
        """
        with self._timer_lock:
            if self._timer is not None and threading.current_thread() is self._timer:
                self._arm()

        if not self.lock.acquire("auto_save"):
            logger.info("Auto-Save übersprungen, Operation läuft: %s", self.lock.current)
            return False
        try:
            if not self.enabled():
                logger.info("Auto-Save-Bedingungen nicht erfüllt, übersprungen")
                return False
            target = self.cfg_store.data["autoSaveTargetTag"]
            self.saves.overwrite_unlocked(target, commit_message=f"Auto Save Overwrite: {target}")
            logger.info("Auto-Save auf %s erfolgreich", target)
            return True
        except SaveError as e:
            logger.error("Auto-Save fehlgeschlagen: %s %s", e.message, e.details or "")
            return False
        except Exception:
            logger.exception("Auto-Save mit unerwartetem Fehler abgebrochen")
            return False
        finally:
            self.lock.release()
