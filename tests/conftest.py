"""Gemeinsame Fixtures: echtes Daten-Repo mit einem Bare-Repo als 'origin'."""

import subprocess
from pathlib import Path

import pytest

from models.config import ConfigStore
from services.operation_lock import OperationLock
from services.save_service import SaveService
from services.stash_service import StashService


def git(cwd: Path, *args: str) -> str:
    """Git direkt aufrufen (für Aufbau und Prüfung, nicht über den Service)."""
    result = subprocess.run(
        ["git", *args],
        cwd=cwd,
        capture_output=True,
        text=True,
        check=True,
    )
    return result.stdout.strip()


@pytest.fixture(autouse=True)
def isolated_git_config(tmp_path_factory, monkeypatch):
    """Keine globale/System-Git-Konfiguration des Entwicklers verwenden."""
    home = tmp_path_factory.mktemp("gitcfg")
    cfg = home / "gitconfig"
    cfg.write_text(
        "[init]\n\tdefaultBranch = main\n"
        "[commit]\n\tgpgsign = false\n"
        "[tag]\n\tgpgSign = false\n"
        "[advice]\n\tdetachedHead = false\n",
        encoding="utf-8",
    )
    monkeypatch.setenv("GIT_CONFIG_GLOBAL", str(cfg))
    monkeypatch.setenv("GIT_CONFIG_NOSYSTEM", "1")
    monkeypatch.setenv("GIT_TERMINAL_PROMPT", "0")


@pytest.fixture
def remote(tmp_path: Path) -> Path:
    path = tmp_path / "remote.git"
    git(tmp_path, "init", "--bare", str(path))
    return path


@pytest.fixture
def data_dir(tmp_path: Path) -> Path:
    d = tmp_path / "data"
    (d / "chats").mkdir(parents=True)
    (d / "chats" / "chapter.txt").write_text("Kapitel 1\n", encoding="utf-8")
    (d / "empty").mkdir()
    return d


@pytest.fixture
def cfg_store(tmp_path: Path, remote: Path, data_dir: Path) -> ConfigStore:
    store = ConfigStore(tmp_path / "config" / "config.json")
    store.update(repo_url=str(remote), github_token="test-token", data_path=str(data_dir))
    return store


@pytest.fixture
def lock() -> OperationLock:
    return OperationLock()


@pytest.fixture
def stash(cfg_store, lock) -> StashService:
    return StashService(cfg_store, lock)


@pytest.fixture
def saves(cfg_store, lock, stash) -> SaveService:
    return SaveService(cfg_store, lock, stash)


@pytest.fixture
def authorized(saves) -> SaveService:
    """SaveService nach erfolgreichem authorize() gegen das Bare-Repo."""
    saves.authorize("main")
    return saves


def break_remote(cfg_store: ConfigStore, tmp_path: Path) -> None:
    """'origin' auf ein nicht existierendes Repo zeigen lassen."""
    cfg_store.update(repo_url=str(tmp_path / "does-not-exist.git"))
