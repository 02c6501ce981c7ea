"""Spielstände über Git-Tags: anlegen, auflisten, laden, umbenennen, löschen, überschreiben.

Jede verändernde Operation läuft unter der gemeinsamen OperationLock und berührt
Working Tree, lokale Tags und Remote vollständig, bevor sie die Sperre freigibt.
"""

from __future__ import annotations

import logging
import shutil
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Dict, List, Optional

from git import GitCommandError, Repo

from models.config import DEFAULT_BRANCH, ConfigStore, data_root
from models.save import (
    TAG_PATTERN,
    ChangedFile,
    LoadResult,
    OperationResult,
    RenameResult,
    RepoStatus,
    Save,
    default_description,
    is_save_tag,
    make_tag_name,
    parse_iso,
    parse_tag_message,
    parse_tag_name,
    tag_message,
    to_iso,
)
from . import git_service
from .errors import (
    AuthorizationError,
    ConfigurationError,
    NotAuthorizedError,
    SaveError,
    SaveNotFoundError,
    error_text,
    git_failure,
)
from .operation_lock import OperationLock
from .stash_service import StashService

logger = logging.getLogger(__name__)

PARENT_SUFFIXES = ("^", "~1")


def _now() -> datetime:
    return datetime.now(timezone.utc)


def record_to_save(record: Dict[str, str]) -> Save:
    """Einen Eintrag aus git_service.list_tags in einen Save dekodieren."""
    tag = record["tag"]
    _, name = parse_tag_name(tag)
    created = parse_iso(record.get("created", ""))
    created_at = to_iso(created) if created else ""
    description, updated_at = parse_tag_message(record.get("contents", ""))
    return Save(
        name=name,
        tag=tag,
        description=description,
        created_at=created_at,
        updated_at=updated_at or created_at,
        creator=record.get("tagger") or "unknown",
    )


class SaveService:
    def __init__(self, cfg_store: ConfigStore, lock: OperationLock, stash: Optional[StashService] = None):
        self.cfg_store = cfg_store
        self.lock = lock
        self.stash = stash or StashService(cfg_store, lock)

    @property
    def cfg(self) -> Dict[str, Any]:
        return self.cfg_store.data

    @property
    def root(self) -> Path:
        return data_root(self.cfg)

    # ---------- interne Helfer ----------
    def _repo(self) -> Repo:
        if not git_service.is_initialized(self.root):
            raise SaveError("Git-Repository ist nicht initialisiert", details=str(self.root))
        return git_service.open_repo(self.root, self.cfg)

    @staticmethod
    def _require_save_tag(tag: str) -> None:
        if not is_save_tag(tag):
            raise SaveNotFoundError(f"Kein Spielstand-Tag: {tag!r}")

    def _read_save(self, repo: Repo, tag: str) -> Optional[Dict[str, str]]:
        for record in git_service.list_tags(repo, tag):
            if record["tag"] == tag:
                return record
        return None

    def _push_branch_if_current(self, repo: Repo, committed: bool) -> None:
        """Branch nur pushen, wenn committet wurde und der konfigurierte Branch ausgecheckt ist."""
        if not committed:
            return
        branch = self.cfg.get("branch") or DEFAULT_BRANCH
        current = git_service.current_branch(repo)
        if current != branch:
            logger.info(
                "Nicht auf dem konfigurierten Branch (%s), Commit wird nicht gepusht. Aktuell: %s",
                branch,
                current or "detached",
            )
            return
        try:
            git_service.push_branch(repo, branch)
            logger.info("Branch %s gepusht", branch)
        except GitCommandError as e:
            # der Tag ist die Quelle der Wahrheit, der Branch-Push nur Komfort
            logger.warning("Push von Branch %s fehlgeschlagen: %s", branch, error_text(e))

    def _push_tag_or_rollback(self, repo: Repo, tag: str, operation: str) -> None:
        try:
            git_service.push_tag(repo, tag)
        except GitCommandError as e:
            logger.error("Push von Tag %s fehlgeschlagen, lokaler Tag wird entfernt", tag)
            try:
                git_service.delete_local_tag(repo, tag)
            except GitCommandError as rollback_error:
                logger.error("Rollback von Tag %s fehlgeschlagen: %s", tag, error_text(rollback_error))
            raise git_failure(e, operation)

    def _delete_remote_tag_best_effort(self, repo: Repo, tag: str) -> Optional[str]:
        """Remote-Tag löschen; liefert den Fehlertext, wenn es nicht geklappt hat."""
        try:
            if not git_service.delete_remote_tag(repo, tag):
                logger.info("Remote-Tag %s existiert nicht (mehr)", tag)
            return None
        except GitCommandError as e:
            logger.warning("Löschen von Remote-Tag %s fehlgeschlagen: %s", tag, error_text(e))
            return error_text(e)

    def _retarget_pointers(self, old_tag: str, new_tag: Optional[str]) -> None:
        """current_save/last_save auf einen neuen Tag umbiegen oder (new_tag=None) leeren."""
        changed = False
        current = self.cfg.get("current_save")
        if current and current.get("tag") == old_tag:
            if new_tag:
                self.cfg["current_save"] = {**current, "tag": new_tag}
            else:
                self.cfg["current_save"] = None
            changed = True
        last = self.cfg.get("last_save")
        if new_tag and last and last.get("tag") == old_tag:
            _, name = parse_tag_name(new_tag)
            self.cfg["last_save"] = {**last, "tag": new_tag, "name": name}
            changed = True
        if changed:
            self.cfg_store.save()

    # ---------- Registry ----------
    def list_saves(self) -> List[Save]:
        with self.lock.hold("list_saves"):
            repo = self._repo()
            try:
                git_service.fetch_tags(repo, prune=True)
                records = git_service.list_tags(repo, TAG_PATTERN)
            except GitCommandError as e:
                raise git_failure(e, "Abrufen der Spielstände")
            return [record_to_save(r) for r in records]

    # ---------- Lebenszyklus ----------
    def create_save(self, name: str, description: Optional[str] = None) -> Save:
        if not name:
            raise ConfigurationError("Name des Spielstands fehlt")
        with self.lock.hold("create_save"):
            logger.info("Erstelle Spielstand: %s", name)
            repo = self._repo()
            now = _now()
            stamp = to_iso(now)
            tag = make_tag_name(name, now)
            text = description or default_description(name)

            try:
                committed = git_service.commit_all(repo, f"Spielstand: {name}")
                if not committed:
                    logger.info("Keine Änderungen, kein Commit")
                git_service.create_tag(repo, tag, tag_message(text, stamp))
            except GitCommandError as e:
                raise git_failure(e, f"Erstellen von Spielstand {name}")

            self._push_branch_if_current(repo, committed)
            self._push_tag_or_rollback(repo, tag, f"Push von Spielstand {name}")

            self.cfg["last_save"] = {
                "name": name,
                "tag": tag,
                "timestamp": stamp,
                "description": text,
            }
            self.cfg_store.save()
            record = self._read_save(repo, tag)
            save = record_to_save(record) if record else Save(name, tag, text, stamp, stamp)
            save.created_at = stamp
            save.updated_at = stamp
            save.commit = git_service.head_commit(repo)
            return save

    def load_save(self, tag: str) -> LoadResult:
        self._require_save_tag(tag)
        with self.lock.hold("load_save"):
            logger.info("Lade Spielstand: %s", tag)
            repo = self._repo()
            try:
                git_service.fetch_tags(repo)
            except GitCommandError as e:
                raise git_failure(e, f"Laden von {tag}")
            if not git_service.tag_exists(repo, tag):
                raise SaveNotFoundError(f"Spielstand {tag} nicht gefunden")

            stash_created = False
            try:
                if git_service.has_changes(repo):
                    logger.info("Ungespeicherte Änderungen, temporärer Stash vor dem Laden")
                    stash_created = self.stash.shelve(repo)
                commit = git_service.resolve_commit(repo, tag)
                git_service.checkout(repo, commit)
            except GitCommandError as e:
                if stash_created:
                    self.stash.restore_after_failure(repo)
                raise git_failure(e, f"Laden von {tag}")

            self.cfg["current_save"] = {"tag": tag, "loaded_at": to_iso(_now())}
            self.cfg_store.save()
            return LoadResult(stash_created=stash_created)

    def delete_save(self, tag: str) -> OperationResult:
        self._require_save_tag(tag)
        with self.lock.hold("delete_save"):
            logger.info("Lösche Spielstand: %s", tag)
            repo = self._repo()
            try:
                if not git_service.delete_local_tag(repo, tag):
                    logger.info("Lokaler Tag %s existiert nicht", tag)
            except GitCommandError as e:
                raise git_failure(e, f"Löschen von {tag}")

            remote_error = self._delete_remote_tag_best_effort(repo, tag)
            self._retarget_pointers(tag, None)
            if remote_error:
                return OperationResult(warning=True, details=remote_error)
            return OperationResult()

    def rename_save(self, old_tag: str, new_name: str, description: Optional[str] = None) -> RenameResult:
        self._require_save_tag(old_tag)
        if not new_name:
            raise ConfigurationError("Neuer Name fehlt")
        with self.lock.hold("rename_save"):
            logger.info("Benenne Spielstand um: %s -> %s", old_tag, new_name)
            repo = self._repo()
            record = self._read_save(repo, old_tag)
            if record is None:
                raise SaveNotFoundError(f"Spielstand {old_tag} nicht gefunden")
            try:
                commit = git_service.resolve_commit(repo, old_tag)
            except GitCommandError as e:
                raise git_failure(e, f"Auflösen von {old_tag}")

            _, old_name = parse_tag_name(old_tag)
            now = _now()
            message = tag_message(description or default_description(new_name), to_iso(now))

            if old_name == new_name:
                logger.info("Name unverändert, nur Beschreibung/Zeitstempel: %s", old_tag)
                try:
                    git_service.create_tag(
                        repo, old_tag, message, commit, force=True, date=record.get("tagger_date") or None
                    )
                    git_service.push_tag(repo, old_tag, force=True)
                except GitCommandError as e:
                    raise git_failure(e, f"Aktualisieren von {old_tag}")
                return RenameResult(old_tag=old_tag, new_tag=old_tag, new_name=new_name)

            new_tag = make_tag_name(new_name, now)
            try:
                git_service.create_tag(repo, new_tag, message, commit)
            except GitCommandError as e:
                raise git_failure(e, f"Umbenennen von {old_tag}")
            self._push_tag_or_rollback(repo, new_tag, f"Umbenennen von {old_tag}")

            try:
                git_service.delete_local_tag(repo, old_tag)
            except GitCommandError as e:
                logger.warning("Alter lokaler Tag %s nicht gelöscht: %s", old_tag, error_text(e))
            self._delete_remote_tag_best_effort(repo, old_tag)
            self._retarget_pointers(old_tag, new_tag)
            return RenameResult(old_tag=old_tag, new_tag=new_tag, new_name=new_name)

    def overwrite_save(self, tag: str) -> Save:
        self._require_save_tag(tag)
        with self.lock.hold("overwrite_save"):
            if not self.cfg.get("is_authorized"):
                raise NotAuthorizedError("Nicht autorisiert, bitte zuerst das Repository verbinden")
            return self.overwrite_unlocked(tag, commit_message=f"Overwrite save: {tag}")

    def overwrite_unlocked(self, tag: str, commit_message: str) -> Save:
        """
        Überschreib-Protokoll ohne eigene Sperre; der Aufrufer hält die OperationLock.
        Wird vom Vordergrund-Überschreiben und vom Auto-Save gleichermaßen genutzt.
        """
        self._require_save_tag(tag)
        logger.info("Überschreibe Spielstand: %s", tag)
        repo = self._repo()
        record = self._read_save(repo, tag)
        if record is None:
            raise SaveNotFoundError(f"Spielstand {tag} nicht gefunden")
        description, _ = parse_tag_message(record["contents"])
        if not description:
            description = f"Overwrite of {tag}"

        try:
            committed = git_service.commit_all(repo, commit_message)
            commit = git_service.head_commit(repo)
        except GitCommandError as e:
            raise git_failure(e, f"Überschreiben von {tag}")
        if not committed:
            logger.info("Keine Änderungen, Tag bleibt auf HEAD %s", commit[:8])
        self._push_branch_if_current(repo, committed)

        try:
            git_service.delete_local_tag(repo, tag)
        except GitCommandError as e:
            raise git_failure(e, f"Überschreiben von {tag}")
        self._delete_remote_tag_best_effort(repo, tag)

        stamp = to_iso(_now())
        try:
            git_service.create_tag(
                repo, tag, tag_message(description, stamp), commit, date=record.get("tagger_date") or None
            )
        except GitCommandError as e:
            raise git_failure(e, f"Überschreiben von {tag}")
        self._push_tag_or_rollback(repo, tag, f"Überschreiben von {tag}")

        last = self.cfg.get("last_save")
        if last and last.get("tag") == tag:
            _, name = parse_tag_name(tag)
            self.cfg["last_save"] = {"name": name, "tag": tag, "timestamp": stamp, "description": description}
            self.cfg_store.save()

        fresh = self._read_save(repo, tag)
        save = record_to_save(fresh or record)
        save.updated_at = stamp
        save.commit = commit
        return save

    def get_save_diff(self, ref1: str, ref2: str) -> List[ChangedFile]:
        if not ref1 or not ref2:
            raise ConfigurationError("Zwei Referenzen erforderlich")
        with self.lock.hold("get_save_diff"):
            repo = self._repo()
            base = ref1
            if ref1 != git_service.EMPTY_TREE:
                try:
                    git_service.verify_ref(repo, ref1)
                except GitCommandError as e:
                    if not self._is_root_parent(repo, ref1):
                        raise SaveNotFoundError(f"Ungültige Referenz: {ref1}", details=error_text(e))
                    logger.warning("%s nicht auflösbar (Eltern des ersten Commits), vergleiche mit leerem Baum", ref1)
                    base = git_service.EMPTY_TREE
            try:
                git_service.verify_ref(repo, ref2)
            except GitCommandError as e:
                raise SaveNotFoundError(f"Ungültige Referenz: {ref2}", details=error_text(e))

            try:
                entries = git_service.diff_name_status(repo, base, ref2)
            except GitCommandError as e:
                raise git_failure(e, f"Vergleich {ref1} <-> {ref2}")
            return [ChangedFile(status, path, old) for status, path, old in entries]

    @staticmethod
    def _is_root_parent(repo: Repo, ref: str) -> bool:
        for suffix in PARENT_SUFFIXES:
            if ref.endswith(suffix):
                try:
                    git_service.verify_ref(repo, ref[: -len(suffix)])
                    return True
                except GitCommandError:
                    return False
        return False

    def get_status(self) -> RepoStatus:
        """Lesender Status, nicht durch die Sperre geschützt."""
        current_save = self.cfg.get("current_save")
        if not git_service.is_initialized(self.root):
            return RepoStatus(initialized=False, current_save=current_save)
        repo = git_service.open_local(self.root)
        detached = git_service.is_detached(repo)
        ahead, behind = git_service.ahead_behind(repo)
        return RepoStatus(
            initialized=True,
            changes=git_service.porcelain_status(repo),
            current_branch=None if detached else git_service.current_branch(repo),
            current_save=current_save,
            is_detached=detached,
            ahead=ahead,
            behind=behind,
        )

    # ---------- Einrichtung ----------
    def authorize(self, branch: Optional[str] = None) -> Dict[str, Any]:
        """
        Verbindet das Datenverzeichnis mit dem Remote: Repo anlegen, initialer Commit,
        'origin' setzen, Zugriff per Tag-Fetch prüfen und den Ziel-Branch remote anlegen.
        """
        with self.lock.hold("authorize"):
            cfg = self.cfg
            target = (branch or cfg.get("branch") or DEFAULT_BRANCH).strip() or DEFAULT_BRANCH
            if not cfg.get("repo_url") or not cfg.get("github_token"):
                raise ConfigurationError("Repository-URL und GitHub-Token sind nicht konfiguriert")

            cfg["branch"] = target
            cfg["is_authorized"] = False
            self.cfg_store.save()

            identity = cfg.get("display_name") or None
            try:
                git_service.init_repository(self.root, identity)
                repo = git_service.open_local(self.root)
                git_service.ensure_identity(repo, identity)
                if git_service.commit_all(repo, "Initial commit of existing data directory"):
                    logger.info("Initialer Commit erstellt")
                git_service.ensure_remote(repo, git_service.auth_url(cfg["repo_url"], cfg["github_token"]))
            except GitCommandError as e:
                raise git_failure(e, "Initialisieren des Repositorys")

            try:
                git_service.fetch_tags(repo, prune=True)
            except GitCommandError as e:
                raise AuthorizationError(
                    "Kein Zugriff auf das Remote-Repository, bitte URL und Token-Rechte prüfen",
                    details=error_text(e),
                )

            try:
                exists = git_service.remote_branch_exists(repo, target)
            except GitCommandError as e:
                logger.warning("ls-remote für %s fehlgeschlagen, Branch gilt als fehlend: %s", target, error_text(e))
                exists = False

            if not exists:
                logger.info("Remote-Branch %s fehlt, wird angelegt", target)
                try:
                    git_service.checkout(repo, target, create=target not in git_service.local_branches(repo))
                    git_service.push_set_upstream(repo, target)
                except GitCommandError as e:
                    text = error_text(e)
                    if "non-fast-forward" in text:
                        raise SaveError(
                            f"Remote-Branch {target} existiert mit abweichender Historie (non-fast-forward)",
                            details=text,
                        )
                    raise SaveError(f"Remote-Branch {target} konnte nicht angelegt werden", details=text)
            else:
                logger.info("Remote-Branch %s vorhanden, lokaler Branch bleibt unverändert", target)

            cfg["is_authorized"] = True
            self.cfg_store.save()
            return self.cfg_store.public()

    def reinitialize(self) -> OperationResult:
        """Erzwingt ein neues Repo: .git löschen, neu initialisieren, 'origin' neu setzen."""
        with self.lock.hold("initialize_repo"):
            git_dir = self.root / ".git"
            if git_dir.exists():
                logger.warning("Lösche %s für Neuinitialisierung", git_dir)
                try:
                    shutil.rmtree(git_dir)
                except OSError as e:
                    raise SaveError(f"{git_dir} konnte nicht gelöscht werden", details=str(e))

            identity = self.cfg.get("display_name") or None
            try:
                git_service.init_repository(self.root, identity)
                repo = git_service.open_local(self.root)
                git_service.commit_all(repo, "Initial commit after forced re-initialization")
            except GitCommandError as e:
                raise git_failure(e, "Neuinitialisierung")

            repo_url = self.cfg.get("repo_url")
            if not repo_url:
                logger.info("Keine Repository-URL, Remote wird nicht konfiguriert")
                return OperationResult()
            try:
                git_service.replace_remote(repo, git_service.auth_url(repo_url, self.cfg.get("github_token")))
            except GitCommandError as e:
                logger.error("Remote konnte nicht konfiguriert werden: %s", error_text(e))
                return OperationResult(warning=True, details=error_text(e))
            return OperationResult()
