from __future__ import annotations
import logging
from typing import Optional

from git import GitCommandError, Repo

from models.config import ConfigStore, data_root
from models.save import OperationResult
from . import git_service
from .errors import SaveNotFoundError, error_text, git_failure
from .operation_lock import OperationLock

logger = logging.getLogger(__name__)

STASH_MESSAGE = "Temporary stash before loading save"


class StashService:
    """
    Sicherungs-Stash vor einem zerstörerischen Checkout.

    Das Flag ``has_temp_stash`` in der Konfiguration ist nur ein Hinweis. Maßgeblich
    ist die Stash-Liste von Git; Stash-Einträge werden über ihre Position adressiert,
    die sich verschiebt, daher wird die Position vor jedem apply/drop neu gesucht.
    """

    def __init__(self, cfg_store: ConfigStore, lock: OperationLock):
        self.cfg_store = cfg_store
        self.lock = lock

    # ---------- interne Helfer ----------
    def _set_flag(self, value: bool) -> None:
        if self.cfg_store.data.get("has_temp_stash") != value:
            self.cfg_store.update(has_temp_stash=value)

    def find_entry(self, repo: Repo) -> Optional[str]:
        for index, line in enumerate(git_service.stash_list(repo)):
            if STASH_MESSAGE in line:
                return f"stash@{{{index}}}"
        return None

    def _open(self) -> Optional[Repo]:
        root = data_root(self.cfg_store.data)
        if not git_service.is_initialized(root):
            return None
        return git_service.open_local(root)

    # ---------- vom Lade-Protokoll genutzt ----------
    def shelve(self, repo: Repo) -> bool:
        """Änderungen (inkl. untracked) wegsichern und das Flag mit der echten Liste abgleichen."""
        created = git_service.stash_push(repo, STASH_MESSAGE)
        if created:
            logger.info("Temporärer Stash vor dem Laden angelegt")
        else:
            logger.warning("Kein temporärer Stash angelegt (keine Änderungen)")
        self._set_flag(self.find_entry(repo) is not None)
        return created

    def restore_after_failure(self, repo: Repo) -> bool:
        """
        Nach einem fehlgeschlagenen Laden den Stash zurückspielen. Scheitert das,
        bleibt das Flag gesetzt, damit der Nutzer manuell wiederherstellen kann.
        """
        try:
            ref = self.find_entry(repo)
            if ref is None:
                self._set_flag(False)
                return False
            git_service.stash_pop(repo, ref)
        except GitCommandError as e:
            logger.error("Temporärer Stash konnte nach Fehler nicht zurückgespielt werden: %s", error_text(e))
            self._set_flag(True)
            return False
        logger.warning("Temporärer Stash nach Ladefehler zurückgespielt")
        self._set_flag(False)
        return True

    # ---------- API ----------
    def check_temp_stash(self) -> bool:
        repo = self._open()
        if repo is None:
            self._set_flag(False)
            return False
        try:
            exists = self.find_entry(repo) is not None
        except GitCommandError as e:
            logger.error("Stash-Liste nicht lesbar: %s", error_text(e))
            return bool(self.cfg_store.data.get("has_temp_stash"))
        if not exists and self.cfg_store.data.get("has_temp_stash"):
            logger.warning("Flag has_temp_stash war veraltet, wird zurückgesetzt")
        self._set_flag(exists)
        return exists

    def apply_temp_stash(self) -> OperationResult:
        with self.lock.hold("apply_temp_stash"):
            repo = self._open()
            if repo is None:
                self._set_flag(False)
                raise SaveNotFoundError("Kein Repository initialisiert")
            ref = self.find_entry(repo)
            if ref is None:
                self._set_flag(False)
                raise SaveNotFoundError(f'Stash "{STASH_MESSAGE}" nicht gefunden')

            logger.info("Wende temporären Stash an: %s", ref)
            try:
                git_service.stash_apply(repo, ref)
            except GitCommandError as e:
                raise git_failure(e, "Anwenden des temporären Stash")

            # die Position könnte sich verschoben haben
            ref = self.find_entry(repo) or ref
            try:
                git_service.stash_drop(repo, ref)
            except GitCommandError as e:
                logger.error("Stash %s angewendet, aber nicht gelöscht: %s", ref, error_text(e))
                self._set_flag(False)
                return OperationResult(warning=True, details=error_text(e))

            self._set_flag(False)
            return OperationResult()

    def discard_temp_stash(self) -> OperationResult:
        with self.lock.hold("discard_temp_stash"):
            repo = self._open()
            ref = self.find_entry(repo) if repo is not None else None
            if ref is None:
                logger.info("Temporärer Stash bereits entfernt")
                self._set_flag(False)
                return OperationResult()

            logger.info("Verwerfe temporären Stash: %s", ref)
            try:
                git_service.stash_drop(repo, ref)
            except GitCommandError as e:
                raise git_failure(e, "Verwerfen des temporären Stash")
            self._set_flag(False)
            return OperationResult()
