from __future__ import annotations
import atexit
import logging
import os
from pathlib import Path
from typing import Optional

from flask import Flask, jsonify, request
from git import GitCommandError

from models.config import DEFAULT_BRANCH, ConfigStore
from services.autosave_service import AutoSaveService, InMemoryLog
from services.errors import ConfigurationError, SaveError, error_text
from services.operation_lock import OperationLock
from services.save_service import SaveService
from services.stash_service import StashService

INFO = {
    "id": "cloud-saves",
    "name": "Cloud Saves",
    "description": "Spielstände eines Datenverzeichnisses über ein GitHub-Repository sichern und wiederherstellen.",
    "version": "1.0.0",
}

CONFIG_PATH = Path(os.environ.get("CLOUD_SAVES_CONFIG", Path.home() / ".cloud_saves" / "config.json"))


def _payload() -> dict:
    return request.get_json(silent=True) or {}


def create_app(config_path: Optional[Path] = None, start_scheduler: bool = True) -> Flask:
    app = Flask(__name__)
    app.secret_key = os.environ.get("FLASK_SECRET_KEY", "dev-secret")

    log = InMemoryLog(maxlen=2000)
    for name in ("services", "models"):
        lg = logging.getLogger(name)
        lg.setLevel(logging.INFO)
        for old in [h for h in lg.handlers if isinstance(h, InMemoryLog)]:
            lg.removeHandler(old)
        lg.addHandler(log)

    cfg_store = ConfigStore(Path(config_path or CONFIG_PATH))
    lock = OperationLock()
    stash = StashService(cfg_store, lock)
    saves = SaveService(cfg_store, lock, stash)
    autosave = AutoSaveService(cfg_store, lock, saves)

    app.extensions["cloud_saves"] = {
        "config": cfg_store,
        "lock": lock,
        "saves": saves,
        "stash": stash,
        "autosave": autosave,
        "log": log,
    }

    @app.errorhandler(SaveError)
    def handle_save_error(e: SaveError):
        return jsonify(e.to_dict()), e.status_code

    @app.errorhandler(GitCommandError)
    def handle_git_error(e: GitCommandError):
        return jsonify(ok=False, error="Git-Operation fehlgeschlagen", details=error_text(e)), 500

    @app.get("/api/info")
    def info():
        return jsonify(INFO)

    @app.get("/api/config")
    def get_config():
        return jsonify(cfg_store.public())

    @app.post("/api/config")
    def post_config():
        body = _payload()
        d = cfg_store.data
        if "repo_url" in body:
            d["repo_url"] = str(body["repo_url"] or "").strip()
        # Token nur überschreiben, wenn ein neuer mitgeschickt wurde
        if body.get("github_token"):
            d["github_token"] = str(body["github_token"])
        if "display_name" in body:
            d["display_name"] = str(body["display_name"] or "").strip()
        if "branch" in body:
            d["branch"] = str(body["branch"] or "").strip() or DEFAULT_BRANCH
        if "data_path" in body:
            d["data_path"] = str(body["data_path"] or "").strip()
        if "is_authorized" in body:
            d["is_authorized"] = bool(body["is_authorized"])
        if "autoSaveEnabled" in body:
            d["autoSaveEnabled"] = bool(body["autoSaveEnabled"])
        if "autoSaveInterval" in body:
            try:
                interval = float(body["autoSaveInterval"])
            except (TypeError, ValueError):
                interval = float("nan")
            if not interval > 0:
                raise ConfigurationError("Ungültiges Auto-Save-Intervall, bitte eine Zahl größer 0 angeben")
            d["autoSaveInterval"] = max(1.0, interval)
        if "autoSaveTargetTag" in body:
            d["autoSaveTargetTag"] = str(body["autoSaveTargetTag"] or "").strip()
        cfg_store.save()
        autosave.rearm()
        return jsonify(ok=True, config=cfg_store.public())

    @app.post("/api/authorize")
    def authorize():
        try:
            config = saves.authorize(_payload().get("branch"))
        finally:
            autosave.rearm()
        return jsonify(ok=True, config=config)

    @app.get("/api/status")
    def status():
        result = saves.get_status().to_dict()
        result["tempStash"] = {"exists": stash.check_temp_stash()}
        result["operation"] = {"busy": lock.busy(), "name": lock.current}
        return jsonify(ok=True, status=result)

    @app.get("/api/saves")
    def list_saves():
        return jsonify(ok=True, saves=[s.to_dict() for s in saves.list_saves()])

    @app.post("/api/saves")
    def create_save():
        body = _payload()
        name = body.get("name")
        if not name:
            raise ConfigurationError("Name des Spielstands fehlt")
        save = saves.create_save(name, body.get("description"))
        return jsonify(ok=True, save=save.to_dict())

    @app.post("/api/saves/load")
    def load_save():
        tag = _payload().get("tagName")
        if not tag:
            raise ConfigurationError("Tag des Spielstands fehlt")
        return jsonify(ok=True, **saves.load_save(tag).to_dict())

    @app.get("/api/saves/diff")
    def save_diff():
        ref1 = request.args.get("tag1", "")
        ref2 = request.args.get("tag2", "")
        if not ref1 or not ref2:
            raise ConfigurationError("Zwei Spielstand-Tags/Referenzen erforderlich")
        changed = saves.get_save_diff(ref1, ref2)
        return jsonify(ok=True, changedFiles=[c.to_dict() for c in changed])

    @app.delete("/api/saves/<tag>")
    def delete_save(tag: str):
        return jsonify(ok=True, **saves.delete_save(tag).to_dict())

    @app.put("/api/saves/<tag>")
    def rename_save(tag: str):
        body = _payload()
        new_name = body.get("newName")
        if not new_name:
            raise ConfigurationError("Neuer Name fehlt")
        result = saves.rename_save(tag, new_name, body.get("description"))
        return jsonify(ok=True, **result.to_dict())

    @app.post("/api/saves/<tag>/overwrite")
    def overwrite_save(tag: str):
        save = saves.overwrite_save(tag)
        return jsonify(ok=True, save=save.to_dict())

    @app.post("/api/stash/apply")
    def apply_stash():
        return jsonify(ok=True, **stash.apply_temp_stash().to_dict())

    @app.post("/api/stash/discard")
    def discard_stash():
        return jsonify(ok=True, **stash.discard_temp_stash().to_dict())

    @app.post("/api/initialize")
    def initialize():
        return jsonify(ok=True, **saves.reinitialize().to_dict())

    @app.get("/api/logs")
    def api_logs():
        lines = list(log.dump()[:500])
        return jsonify(text="\n".join(lines), lines=lines)

    if start_scheduler:
        autosave.rearm()
        # Beim Prozessende Timer sicher stoppen
        atexit.register(autosave.stop)

    return app


if __name__ == "__main__":
    logging.basicConfig(level=logging.INFO)
    # Kein Auto-Reload (use_reloader=False), damit Timer-Threads nicht doppelt laufen.
    create_app().run(host="127.0.0.1", port=5000, debug=False, use_reloader=False)
