from __future__ import annotations
import logging
import os
import shutil
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from git import Repo, GitCommandError, InvalidGitRepositoryError, NoSuchPathError

logger = logging.getLogger(__name__)

REMOTE = "origin"
EMPTY_TREE = "4b825dc642cb6eb9a060e54bf8d69288fbee4904"
GITKEEP = ".gitkeep"
GITLINK_MODE = "160000"
# Unterhalb dieses Pfads liegen Erweiterungen, oft als eigene Git-Klone
EXTENSIONS_PATH = Path("default-user") / "extensions"
VOLATILE_DIRS = ("_uploads", "_cache", "_storage", "_webpack")
DEFAULT_IDENTITY = ("Cloud Saves", "cloud-saves@localhost")

# Feldtrenner (US) und Datensatztrenner (RS) für das Tag-Format
FIELD_SEP = "\x1f"
RECORD_SEP = "\x1e"
TAG_FORMAT = "%1f".join(
    [
        "%(refname:short)",
        "%(creatordate:iso-strict)",
        "%(taggerdate:raw)",
        "%(taggername)",
        "%(contents)",
    ]
) + "%1e"


# -----------------------------
# Hilfen
# -----------------------------
def _active_branch_name(repo: Repo) -> Optional[str]:
    """Aktueller Branch-Name, None bei detached HEAD."""
    try:
        if repo.head.is_detached:
            return None
        return repo.active_branch.name
    except (TypeError, ValueError):
        return None


def _stderr(e: GitCommandError) -> str:
    return f"{e.stderr or ''}\n{e.stdout or ''}"


def auth_url(repo_url: str, token: Optional[str]) -> str:
    """
    Baut die authentifizierte Remote-URL (https://x-access-token:<token>@host/...).
    Nicht-https-URLs oder URLs mit bereits enthaltenen Zugangsdaten bleiben unverändert.
    """
    repo_url = (repo_url or "").strip()
    if token and repo_url.startswith("https://") and "@" not in repo_url:
        return repo_url.replace("https://", f"https://x-access-token:{token}@", 1)
    return repo_url


# -----------------------------
# Repo/Remote/Branch
# -----------------------------
def is_initialized(path: Path) -> bool:
    path = Path(path)
    if not (path / ".git").exists():
        return False
    try:
        Repo(path)
        return True
    except (InvalidGitRepositoryError, NoSuchPathError):
        return False


def open_local(path: Path) -> Repo:
    """Repo ohne Remote-Abgleich (für lesende Zugriffe)."""
    return Repo(path)


def open_repo(path: Path, cfg: Dict[str, Any]) -> Repo:
    """
    Öffnet das Daten-Repo und gleicht 'origin' mit der konfigurierten, authentifizierten
    URL ab. Scheitert der Abgleich, wird nur geloggt: der Aufrufer meldet später selbst.
    """
    repo = Repo(path)
    repo_url = cfg.get("repo_url")
    token = cfg.get("github_token")
    if repo_url and token:
        try:
            ensure_remote(repo, auth_url(repo_url, token))
        except GitCommandError as e:
            logger.warning("Remote 'origin' konnte nicht konfiguriert werden: %s", _stderr(e).strip())
    return repo


def ensure_remote(repo: Repo, remote_url: Optional[str]) -> bool:
    """
    Stellt sicher, dass 'origin' existiert und auf remote_url zeigt.
    Wenn 'origin' existiert, wird die URL gesetzt statt den Remote zu löschen.
    Gibt True zurück, wenn etwas geändert wurde.
    """
    if not remote_url:
        return False
    if REMOTE in [r.name for r in repo.remotes]:
        origin = repo.remote(REMOTE)
        if origin.url != remote_url:
            logger.info("Remote 'origin' wird aktualisiert")
            origin.set_url(remote_url)
            return True
        return False
    logger.info("Remote 'origin' wird angelegt")
    repo.create_remote(REMOTE, remote_url)
    return True


def replace_remote(repo: Repo, remote_url: str) -> None:
    if REMOTE in [r.name for r in repo.remotes]:
        repo.delete_remote(repo.remote(REMOTE))
    repo.create_remote(REMOTE, remote_url)


def ensure_identity(repo: Repo, name: Optional[str] = None) -> None:
    """Lokale Committer-Identität setzen, falls keine konfiguriert ist."""
    reader = repo.config_reader()
    # default=None zählt für GitPython als "kein Default" und wirft NoSectionError
    has_name = reader.get_value("user", "name", default="")
    has_email = reader.get_value("user", "email", default="")
    if has_name and has_email:
        return
    with repo.config_writer() as cw:
        if not has_name:
            cw.set_value("user", "name", name or DEFAULT_IDENTITY[0])
        if not has_email:
            cw.set_value("user", "email", DEFAULT_IDENTITY[1])


def current_branch(repo: Repo) -> Optional[str]:
    return _active_branch_name(repo)


def is_detached(repo: Repo) -> bool:
    return bool(repo.head.is_detached)


def local_branches(repo: Repo) -> List[str]:
    return [h.name for h in repo.heads]


def checkout(repo: Repo, ref: str, create: bool = False) -> None:
    if create:
        repo.git.checkout("-b", ref)
    else:
        repo.git.checkout(ref)


def remote_branch_exists(repo: Repo, branch: str) -> bool:
    out = repo.git.ls_remote("--heads", REMOTE, branch)
    return f"refs/heads/{branch}" in out


# -----------------------------
# Initialisierung
# -----------------------------
def remove_nested_git_files(target: Path) -> None:
    """Verschachtelte .git-Verzeichnisse/-Dateien und .gitignore unterhalb von target entfernen."""
    target = Path(target)
    if not target.is_dir():
        logger.info("Verzeichnis %s nicht vorhanden, nichts zu bereinigen", target)
        return
    for dirpath, dirnames, filenames in os.walk(target):
        if ".git" in dirnames:
            nested = Path(dirpath) / ".git"
            logger.warning("Entferne verschachteltes .git: %s", nested)
            shutil.rmtree(nested, ignore_errors=True)
            dirnames.remove(".git")
        for fn in filenames:
            if fn in (".git", ".gitignore"):
                fp = Path(dirpath) / fn
                logger.warning("Entferne verschachtelte Datei: %s", fp)
                try:
                    fp.unlink()
                except OSError as e:
                    logger.error("Konnte %s nicht entfernen: %s", fp, e)


def fix_gitlink_entries(repo: Repo, prefix: str) -> List[str]:
    """
    Entfernt Gitlink-Einträge (Modus 160000) unter prefix aus dem Index, damit
    'add -A' danach echte Dateien statt eines Submodul-Zeigers aufnimmt.
    """
    prefix = prefix.rstrip("/") + "/"
    try:
        listing = repo.git.ls_files("--stage")
    except GitCommandError:
        # leerer Index in einem frischen Repo
        return []
    removed: List[str] = []
    for line in listing.splitlines():
        meta, _, rel = line.partition("\t")
        parts = meta.split()
        if len(parts) < 3 or parts[0] != GITLINK_MODE:
            continue
        if rel.startswith(prefix) or rel == prefix.rstrip("/"):
            repo.git.rm("--cached", "--ignore-unmatch", "--", rel)
            logger.info("Gitlink aus dem Index entfernt: %s", rel)
            removed.append(rel)
    return removed


def add_gitkeep_recursively(root: Path) -> int:
    """Legt in jedem Verzeichnis (außer .git) eine leere .gitkeep an. Liefert die Anzahl."""
    created = 0
    for dirpath, dirnames, filenames in os.walk(root):
        if ".git" in dirnames:
            dirnames.remove(".git")
        if GITKEEP in filenames:
            continue
        try:
            (Path(dirpath) / GITKEEP).touch(exist_ok=True)
            created += 1
        except OSError as e:
            logger.error("Konnte .gitkeep in %s nicht anlegen: %s", dirpath, e)
    return created


def write_root_gitignore(root: Path) -> Path:
    """Root-.gitignore: alles verfolgen (übergeordnete Ignores aufheben), außer flüchtige Ordner."""
    lines = [
        "# Ensure data directory contents are tracked, overriding parent ignores.",
        "!*",
        "",
        "# Ignore specific subdirectories within data",
    ]
    lines += [f"{d}/" for d in VOLATILE_DIRS]
    path = Path(root) / ".gitignore"
    path.write_text("\n".join(lines) + "\n", encoding="utf-8")
    return path


def init_repository(path: Path, identity: Optional[str] = None) -> bool:
    """
    Initialisiert das Repo genau einmal. Existiert bereits ein gültiges Repo, passiert
    nichts (Rückgabe False). Beim ersten Mal werden verschachtelte Repos unter dem
    Erweiterungspfad entfernt, Gitlinks bereinigt, .gitkeep-Dateien und die Root-.gitignore
    geschrieben (Rückgabe True).
    """
    path = Path(path)
    if is_initialized(path):
        logger.info("Git-Repo in %s bereits initialisiert", path)
        return False

    path.mkdir(parents=True, exist_ok=True)
    repo = Repo.init(path)
    ensure_identity(repo, identity)
    logger.info("Git-Repo in %s initialisiert", path)

    remove_nested_git_files(path / EXTENSIONS_PATH)
    try:
        fix_gitlink_entries(repo, EXTENSIONS_PATH.as_posix())
    except GitCommandError as e:
        logger.error("Gitlinks konnten nicht bereinigt werden: %s", _stderr(e).strip())
    n = add_gitkeep_recursively(path)
    logger.info("%d .gitkeep-Dateien angelegt", n)
    write_root_gitignore(path)
    return True


# -----------------------------
# Status/Stage/Commit
# -----------------------------
def has_changes(repo: Repo) -> bool:
    # True wenn Working Tree oder Index Änderungen hat
    return bool(repo.git.status("--porcelain").strip())


def porcelain_status(repo: Repo) -> List[str]:
    out = repo.git.status("--porcelain")
    return [line for line in out.splitlines() if line.strip()]


def ahead_behind(repo: Repo) -> Tuple[int, int]:
    """(ahead, behind) gegenüber dem Upstream; ohne Upstream (0, 0)."""
    try:
        out = repo.git.rev_list("--left-right", "--count", "HEAD...@{u}")
    except GitCommandError:
        return 0, 0
    parts = out.split()
    if len(parts) != 2:
        return 0, 0
    return int(parts[0]), int(parts[1])


def commit_all(repo: Repo, message: str) -> bool:
    """
    'add -A' und Commit, falls sich etwas geändert hat.
    "nothing to commit" ist kein Fehler: Rückgabe False.
    """
    repo.git.add(A=True)
    if not has_changes(repo):
        return False
    try:
        repo.git.commit("-m", message, "--no-verify")
    except GitCommandError as e:
        if "nothing to commit" in _stderr(e):
            return False
        raise
    return True


def head_commit(repo: Repo) -> str:
    return repo.git.rev_parse("HEAD")


def verify_ref(repo: Repo, ref: str) -> str:
    return repo.git.rev_parse("--verify", ref)


def resolve_commit(repo: Repo, ref: str) -> str:
    return repo.git.rev_parse("--verify", f"{ref}^{{commit}}")


# -----------------------------
# Tags
# -----------------------------
def tag_exists(repo: Repo, tag: str) -> bool:
    return bool(repo.git.tag("-l", tag).strip())


def create_tag(
    repo: Repo,
    tag: str,
    message: str,
    commit: str = "HEAD",
    force: bool = False,
    date: Optional[str] = None,
) -> None:
    """
    Annotierten Tag anlegen. date (Git-Rohformat "<epoch> <tz>") fixiert das
    Tagger-Datum, damit ein neu geschriebener Tag sein Erstellungsdatum behält.
    """
    args = ["-a"]
    if force:
        args.append("-f")
    args += ["-m", message, "--cleanup=whitespace", tag, commit]
    if date:
        repo.git.tag(*args, env={"GIT_COMMITTER_DATE": date})
    else:
        repo.git.tag(*args)


def delete_local_tag(repo: Repo, tag: str) -> bool:
    """Lokalen Tag löschen; fehlt er, ist das kein Fehler (Rückgabe False)."""
    if not tag_exists(repo, tag):
        return False
    repo.git.tag("-d", tag)
    return True


def list_tags(repo: Repo, pattern: str) -> List[Dict[str, str]]:
    """
    Tags nach pattern, neueste zuerst, mit Kurzname, Erstellungsdatum, rohem
    Tagger-Datum, Tagger und vollständiger Nachricht.
    """
    out = repo.git.tag("-l", "--sort=-creatordate", f"--format={TAG_FORMAT}", pattern)
    records: List[Dict[str, str]] = []
    for chunk in out.split(RECORD_SEP):
        chunk = chunk.lstrip("\n")
        if not chunk.strip():
            continue
        parts = chunk.split(FIELD_SEP)
        if len(parts) < 5:
            continue
        records.append(
            {
                "tag": parts[0],
                "created": parts[1],
                "tagger_date": parts[2],
                "tagger": parts[3],
                "contents": FIELD_SEP.join(parts[4:]),
            }
        )
    return records


# -----------------------------
# Fetch/Push
# -----------------------------
def fetch_tags(repo: Repo, prune: bool = False) -> None:
    args = [REMOTE, "--tags", "--force"]
    if prune:
        args += ["--prune", "--prune-tags"]
    repo.git.fetch(*args)


def push_branch(repo: Repo, branch: str) -> None:
    repo.git.push(REMOTE, branch)


def push_set_upstream(repo: Repo, branch: str) -> None:
    repo.git.push("--set-upstream", REMOTE, branch)


def push_tag(repo: Repo, tag: str, force: bool = False) -> None:
    args = [REMOTE, f"refs/tags/{tag}"]
    if force:
        args.append("--force")
    repo.git.push(*args)


def delete_remote_tag(repo: Repo, tag: str) -> bool:
    """
    Remote-Tag löschen. Existiert er remote nicht, gilt das als erledigt (False).
    Je nach Transport ist das ein Fehler ("remote ref does not exist") oder nur
    eine Warnung bei Exit-Code 0 ("deleting a non-existent ref").
    Andere Fehler werden weitergereicht.
    """
    try:
        _, out, err = repo.git.push(REMOTE, f":refs/tags/{tag}", with_extended_output=True)
    except GitCommandError as e:
        if "remote ref does not exist" in _stderr(e):
            return False
        raise
    return "deleting a non-existent ref" not in f"{err}\n{out}"


# -----------------------------
# Stash
# -----------------------------
def stash_push(repo: Repo, message: str) -> bool:
    """Tracked + untracked Änderungen wegsichern. False, wenn es nichts zu sichern gab."""
    out = repo.git.stash("push", "-u", "-m", message)
    return "No local changes to save" not in out


def stash_list(repo: Repo) -> List[str]:
    out = repo.git.stash("list")
    return [line for line in out.splitlines() if line.strip()]


def stash_apply(repo: Repo, ref: str) -> None:
    repo.git.stash("apply", ref)


def stash_drop(repo: Repo, ref: str) -> None:
    repo.git.stash("drop", ref)


def stash_pop(repo: Repo, ref: str) -> None:
    repo.git.stash("pop", ref)


# -----------------------------
# Diff
# -----------------------------
def diff_name_status(repo: Repo, ref1: str, ref2: str) -> List[Tuple[str, str, Optional[str]]]:
    """(Status, Pfad, alter Pfad) zwischen zwei Refs, mit Umbenennungs-/Kopie-Erkennung."""
    out = repo.git.diff("--name-status", "-M", "-C", "-z", ref1, ref2)
    tokens = out.split("\x00")
    entries: List[Tuple[str, str, Optional[str]]] = []
    i = 0
    while i < len(tokens):
        status = tokens[i].strip()
        if not status:
            i += 1
            continue
        if status[0] in ("R", "C") and i + 2 < len(tokens):
            entries.append((status, tokens[i + 2], tokens[i + 1]))
            i += 3
        elif i + 1 < len(tokens):
            entries.append((status, tokens[i + 1], None))
            i += 2
        else:
            break
    return entries
