"""Tests für SaveService gegen ein echtes Daten-Repo und ein Bare-Repo als 'origin'."""

import threading
import time
from datetime import datetime, timezone
from pathlib import Path

import pytest
from git import GitCommandError

from models.save import make_tag_name, parse_iso
from services import git_service
from services.errors import (
    AuthorizationError,
    ConfigurationError,
    NotAuthorizedError,
    OperationInProgressError,
    SaveError,
    SaveNotFoundError,
)
from services.stash_service import STASH_MESSAGE
from conftest import break_remote, git


def commit_of(repo_dir: Path, ref: str) -> str:
    return git(repo_dir, "rev-parse", f"{ref}^{{commit}}")


def local_save_tags(repo_dir: Path) -> list:
    return git(repo_dir, "tag", "-l", "save_*").split()


def remote_save_tags(remote: Path) -> list:
    return git(remote, "tag", "-l", "save_*").split()


# -----------------------------
# Anlegen / Auflisten
# -----------------------------
class TestCreateAndList:
    def test_create_save_defaults(self, authorized, remote):
        before = datetime.now(timezone.utc)
        save = authorized.create_save("Chapter 1")

        assert save.name == "Chapter 1"
        assert save.tag.startswith("save_")
        assert save.description == "Spielstand: Chapter 1"
        assert save.commit
        created = parse_iso(save.created_at)
        assert abs((created - before).total_seconds()) < 10
        assert save.tag in remote_save_tags(remote)

    def test_create_commits_and_pushes_branch(self, authorized, data_dir, remote):
        (data_dir / "chats" / "chapter.txt").write_text("Kapitel 2\n", encoding="utf-8")
        save = authorized.create_save("Chapter 2", "nach dem Boss")
        assert git(data_dir, "status", "--porcelain") == ""
        assert git(remote, "rev-parse", "main") == save.commit
        assert commit_of(remote, save.tag) == save.commit

    def test_create_without_changes_tags_head(self, authorized, data_dir):
        head = git(data_dir, "rev-parse", "HEAD")
        save = authorized.create_save("Nichts Neues")
        assert commit_of(data_dir, save.tag) == head

    def test_create_updates_last_save(self, authorized, cfg_store):
        save = authorized.create_save("Chapter 1", "desc")
        last = cfg_store.data["last_save"]
        assert last["tag"] == save.tag
        assert last["name"] == "Chapter 1"
        assert last["description"] == "desc"

    def test_tag_push_failure_rolls_back_local_tag(self, authorized, cfg_store, data_dir, tmp_path):
        break_remote(cfg_store, tmp_path)
        with pytest.raises(SaveError):
            authorized.create_save("Verloren")
        assert local_save_tags(data_dir) == []

    def test_create_requires_name(self, authorized):
        with pytest.raises(ConfigurationError):
            authorized.create_save("")

    def test_create_requires_repository(self, saves):
        with pytest.raises(SaveError):
            saves.create_save("Chapter 1")

    def test_list_saves_decodes_names(self, authorized):
        authorized.create_save("Kapitel über Grüße", "Umlaute")
        authorized.create_save("a/b")
        listed = {s.name: s for s in authorized.list_saves()}
        assert set(listed) == {"Kapitel über Grüße", "a/b"}
        assert listed["Kapitel über Grüße"].description == "Umlaute"
        assert listed["a/b"].creator

    def test_list_prunes_tags_deleted_on_remote(self, authorized, data_dir, remote):
        keep = authorized.create_save("bleibt")
        gone = authorized.create_save("weg")
        git(remote, "tag", "-d", gone.tag)
        tags = [s.tag for s in authorized.list_saves()]
        assert tags == [keep.tag]
        assert gone.tag not in local_save_tags(data_dir)

    def test_list_picks_up_tags_created_elsewhere(self, authorized, data_dir, remote, tmp_path):
        clone = tmp_path / "clone"
        git(tmp_path, "clone", str(remote), str(clone))
        git(clone, "config", "user.name", "Other")
        git(clone, "config", "user.email", "other@example.com")
        tag = make_tag_name("Fremd")
        git(clone, "tag", "-a", tag, "-m", "von woanders\nLast Updated: 2024-01-01T00:00:00.000Z")
        git(clone, "push", "origin", tag)

        listed = {s.tag: s for s in authorized.list_saves()}
        assert listed[tag].name == "Fremd"
        assert listed[tag].creator == "Other"
        assert listed[tag].updated_at == "2024-01-01T00:00:00.000Z"


# -----------------------------
# Laden / Stash
# -----------------------------
class TestLoad:
    def test_clean_load_detaches_head(self, authorized, data_dir, cfg_store):
        save = authorized.create_save("Chapter 1")
        (data_dir / "chats" / "chapter.txt").write_text("später\n", encoding="utf-8")
        authorized.create_save("Chapter 2")

        result = authorized.load_save(save.tag)

        assert result.stash_created is False
        assert git(data_dir, "rev-parse", "HEAD") == commit_of(data_dir, save.tag)
        assert (data_dir / "chats" / "chapter.txt").read_text(encoding="utf-8") == "Kapitel 1\n"
        assert cfg_store.data["current_save"]["tag"] == save.tag
        assert authorized.get_status().is_detached

    def test_dirty_load_stashes_and_apply_restores(self, authorized, stash, data_dir, cfg_store):
        save = authorized.create_save("Chapter 1")
        (data_dir / "draft.txt").write_text("Entwurf\n", encoding="utf-8")

        result = authorized.load_save(save.tag)

        assert result.stash_created is True
        assert not (data_dir / "draft.txt").exists()
        assert cfg_store.data["has_temp_stash"] is True
        assert STASH_MESSAGE in git(data_dir, "stash", "list")
        assert stash.check_temp_stash() is True

        assert stash.apply_temp_stash().warning is False
        assert (data_dir / "draft.txt").read_text(encoding="utf-8") == "Entwurf\n"
        assert git(data_dir, "stash", "list") == ""
        assert cfg_store.data["has_temp_stash"] is False

    def test_discard_temp_stash(self, authorized, stash, data_dir, cfg_store):
        save = authorized.create_save("Chapter 1")
        (data_dir / "draft.txt").write_text("Entwurf\n", encoding="utf-8")
        authorized.load_save(save.tag)

        assert stash.discard_temp_stash().warning is False
        assert git(data_dir, "stash", "list") == ""
        assert not (data_dir / "draft.txt").exists()
        assert cfg_store.data["has_temp_stash"] is False
        # zweites Verwerfen ist kein Fehler
        assert stash.discard_temp_stash().warning is False

    def test_apply_without_stash_is_not_found(self, authorized, stash):
        with pytest.raises(SaveNotFoundError):
            stash.apply_temp_stash()

    def test_stale_flag_is_reset(self, authorized, stash, cfg_store):
        cfg_store.update(has_temp_stash=True)
        assert stash.check_temp_stash() is False
        assert cfg_store.data["has_temp_stash"] is False

    def test_load_missing_tag(self, authorized):
        with pytest.raises(SaveNotFoundError):
            authorized.load_save(make_tag_name("gibt es nicht"))

    def test_load_rejects_foreign_tag(self, authorized):
        with pytest.raises(SaveNotFoundError):
            authorized.load_save("v1.0")

    def test_failed_checkout_restores_stash(self, authorized, data_dir, cfg_store, monkeypatch):
        save = authorized.create_save("Chapter 1")
        (data_dir / "draft.txt").write_text("Entwurf\n", encoding="utf-8")

        def broken_checkout(*args, **kwargs):
            raise GitCommandError("checkout", 1, stderr="error: kaputt")

        monkeypatch.setattr(git_service, "checkout", broken_checkout)
        with pytest.raises(SaveError):
            authorized.load_save(save.tag)

        assert (data_dir / "draft.txt").read_text(encoding="utf-8") == "Entwurf\n"
        assert git(data_dir, "stash", "list") == ""
        assert cfg_store.data["has_temp_stash"] is False
        assert cfg_store.data["current_save"] is None


# -----------------------------
# Löschen
# -----------------------------
class TestDelete:
    def test_delete_removes_local_and_remote(self, authorized, data_dir, remote):
        save = authorized.create_save("Chapter 1")
        assert authorized.delete_save(save.tag).warning is False
        assert save.tag not in local_save_tags(data_dir)
        assert save.tag not in remote_save_tags(remote)

    def test_delete_is_idempotent(self, authorized):
        save = authorized.create_save("Chapter 1")
        authorized.delete_save(save.tag)
        assert authorized.delete_save(save.tag).warning is False

    def test_remote_failure_is_a_warning(self, authorized, cfg_store, data_dir, tmp_path):
        save = authorized.create_save("Chapter 1")
        break_remote(cfg_store, tmp_path)
        result = authorized.delete_save(save.tag)
        assert result.warning is True
        assert result.details
        assert save.tag not in local_save_tags(data_dir)

    def test_delete_clears_current_save(self, authorized, cfg_store):
        save = authorized.create_save("Chapter 1")
        authorized.load_save(save.tag)
        authorized.delete_save(save.tag)
        assert cfg_store.data["current_save"] is None


# -----------------------------
# Umbenennen
# -----------------------------
class TestRename:
    def test_same_name_keeps_tag_and_created_at(self, authorized, data_dir, remote):
        save = authorized.create_save("Chapter 1", "alt")
        before = {s.tag: s for s in authorized.list_saves()}[save.tag]
        time.sleep(1.1)

        result = authorized.rename_save(save.tag, "Chapter 1", "neu")

        assert result.new_tag == save.tag
        after = {s.tag: s for s in authorized.list_saves()}[save.tag]
        assert after.description == "neu"
        assert after.created_at == before.created_at
        assert after.updated_at != before.updated_at
        assert commit_of(remote, save.tag) == commit_of(data_dir, save.tag)

    def test_new_name_replaces_tag(self, authorized, data_dir, remote, cfg_store):
        save = authorized.create_save("Chapter 1")
        authorized.load_save(save.tag)

        result = authorized.rename_save(save.tag, "Finale", "Endkampf")

        assert result.new_name == "Finale"
        assert result.new_tag != save.tag
        assert local_save_tags(data_dir) == [result.new_tag]
        assert remote_save_tags(remote) == [result.new_tag]
        assert commit_of(data_dir, result.new_tag) == save.commit
        assert cfg_store.data["current_save"]["tag"] == result.new_tag
        assert cfg_store.data["last_save"]["tag"] == result.new_tag
        assert cfg_store.data["last_save"]["name"] == "Finale"

    def test_push_failure_keeps_old_tag(self, authorized, cfg_store, data_dir, tmp_path):
        save = authorized.create_save("Chapter 1")
        break_remote(cfg_store, tmp_path)
        with pytest.raises(SaveError):
            authorized.rename_save(save.tag, "Finale")
        assert local_save_tags(data_dir) == [save.tag]

    def test_rename_missing_tag(self, authorized):
        with pytest.raises(SaveNotFoundError):
            authorized.rename_save(make_tag_name("gibt es nicht"), "x")


# -----------------------------
# Überschreiben
# -----------------------------
class TestOverwrite:
    def test_requires_authorization(self, authorized, cfg_store):
        save = authorized.create_save("Chapter 1")
        cfg_store.update(is_authorized=False)
        with pytest.raises(NotAuthorizedError):
            authorized.overwrite_save(save.tag)

    def test_without_changes_keeps_commit_and_description(self, authorized, data_dir):
        save = authorized.create_save("Chapter 1", "Beschreibung")
        result = authorized.overwrite_save(save.tag)
        assert result.tag == save.tag
        assert result.commit == save.commit
        assert result.description == "Beschreibung"
        assert commit_of(data_dir, save.tag) == save.commit

    def test_moves_tag_to_new_commit(self, authorized, data_dir, remote, cfg_store):
        save = authorized.create_save("Chapter 1", "Beschreibung")
        (data_dir / "chats" / "chapter.txt").write_text("weiter\n", encoding="utf-8")

        result = authorized.overwrite_save(save.tag)

        assert result.commit != save.commit
        assert commit_of(data_dir, save.tag) == result.commit
        assert commit_of(remote, save.tag) == result.commit
        assert result.description == "Beschreibung"
        assert cfg_store.data["last_save"]["timestamp"] == result.updated_at

    def test_missing_tag(self, authorized):
        with pytest.raises(SaveNotFoundError):
            authorized.overwrite_save(make_tag_name("gibt es nicht"))


# -----------------------------
# Vergleich
# -----------------------------
class TestDiff:
    def test_root_parent_compares_against_empty_tree(self, authorized):
        save = authorized.create_save("Start")
        changed = authorized.get_save_diff(f"{save.tag}^", save.tag)
        assert changed
        assert {c.status for c in changed} == {"A"}
        assert "chats/chapter.txt" in {c.file_name for c in changed}

    def test_empty_tree_literal(self, authorized):
        save = authorized.create_save("Start")
        changed = authorized.get_save_diff(git_service.EMPTY_TREE, save.tag)
        assert {c.kind for c in changed} == {"added"}

    def test_modified_between_saves(self, authorized, data_dir):
        first = authorized.create_save("eins")
        (data_dir / "chats" / "chapter.txt").write_text("geändert\n", encoding="utf-8")
        second = authorized.create_save("zwei")
        changed = authorized.get_save_diff(first.tag, second.tag)
        assert [(c.status, c.file_name) for c in changed] == [("M", "chats/chapter.txt")]

    def test_invalid_refs(self, authorized):
        save = authorized.create_save("Start")
        with pytest.raises(SaveNotFoundError):
            authorized.get_save_diff("nope", save.tag)
        with pytest.raises(SaveNotFoundError):
            authorized.get_save_diff("nope^", save.tag)
        with pytest.raises(SaveNotFoundError):
            authorized.get_save_diff(save.tag, "nope")


# -----------------------------
# Sperre
# -----------------------------
class TestConcurrency:
    def test_second_operation_is_rejected(self, authorized, lock, monkeypatch):
        started = threading.Event()
        release = threading.Event()
        original = git_service.commit_all

        def slow_commit(repo, message):
            started.set()
            release.wait(10)
            return original(repo, message)

        monkeypatch.setattr(git_service, "commit_all", slow_commit)
        results = {}

        def run():
            results["save"] = authorized.create_save("Langsam")

        worker = threading.Thread(target=run)
        worker.start()
        assert started.wait(10)

        with pytest.raises(OperationInProgressError) as exc:
            authorized.delete_save(make_tag_name("anderer"))
        assert exc.value.operation == "create_save"

        release.set()
        worker.join(10)
        assert results["save"].name == "Langsam"
        assert lock.current is None

    def test_lock_released_after_failure(self, authorized, lock):
        with pytest.raises(SaveNotFoundError):
            authorized.load_save(make_tag_name("gibt es nicht"))
        assert lock.current is None
        authorized.create_save("danach")


# -----------------------------
# Status / Einrichtung
# -----------------------------
class TestStatusAndSetup:
    def test_status_uninitialized(self, saves):
        status = saves.get_status()
        assert status.initialized is False
        assert status.changes == []

    def test_status_after_authorize(self, authorized, data_dir):
        status = authorized.get_status()
        assert status.initialized is True
        assert status.current_branch == "main"
        assert status.is_detached is False
        assert status.changes == []
        (data_dir / "neu.txt").write_text("x\n", encoding="utf-8")
        assert authorized.get_status().changes == ["?? neu.txt"]

    def test_authorize_sets_up_remote_branch(self, authorized, cfg_store, data_dir, remote):
        assert cfg_store.data["is_authorized"] is True
        assert git(remote, "rev-parse", "main") == git(data_dir, "rev-parse", "HEAD")
        assert (data_dir / ".gitignore").exists()
        assert (data_dir / "empty" / ".gitkeep").exists()

    def test_authorize_is_repeatable(self, authorized, data_dir):
        head = git(data_dir, "rev-parse", "HEAD")
        authorized.authorize("main")
        assert git(data_dir, "rev-parse", "HEAD") == head

    def test_authorize_custom_branch(self, saves, cfg_store, remote):
        public = saves.authorize("saves")
        assert public["branch"] == "saves"
        assert "github_token" not in public
        assert git(remote, "branch", "--list", "saves").strip().endswith("saves")

    def test_authorize_requires_credentials(self, saves, cfg_store):
        cfg_store.update(github_token="")
        with pytest.raises(ConfigurationError):
            saves.authorize("main")

    def test_authorize_unreachable_remote(self, saves, cfg_store, tmp_path):
        break_remote(cfg_store, tmp_path)
        with pytest.raises(AuthorizationError):
            saves.authorize("main")
        assert cfg_store.data["is_authorized"] is False

    def test_reinitialize(self, authorized, data_dir, remote):
        authorized.create_save("vorher")
        old_root = git(data_dir, "rev-list", "--max-parents=0", "HEAD")

        result = authorized.reinitialize()

        assert result.warning is False
        assert local_save_tags(data_dir) == []
        assert git(data_dir, "remote", "get-url", "origin") == str(remote)
        assert git(data_dir, "rev-list", "--count", "HEAD") == "1"
        assert git(data_dir, "rev-parse", "HEAD") != old_root
