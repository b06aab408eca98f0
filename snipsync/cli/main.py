from __future__ import annotations

import json
from datetime import datetime, timezone
from pathlib import Path
from typing import Any, Optional

import typer
from rich.console import Console
from rich.table import Table

from snipsync.capture import FileStorage, add_file, admit_capture, clear_history, convert_to_snippet, search_history
from snipsync.core.config import (
    DEFAULT_CONFIG_PATH,
    LAST_SYNC_PATH,
    RUN_HISTORY_PATH,
    is_remote_configured,
    load_config,
    save_config,
)
from snipsync.core.errors import AlreadySyncing, ConfigurationError, SnipSyncError, SyncNotApproved
from snipsync.core.logging_setup import setup_logging
from snipsync.sync import EntityKind, LocalStore, SupabaseStore, build_adapter, build_orchestrator, describe_result

app = typer.Typer(add_completion=False)
console = Console()


def _now_iso() -> str:
    return datetime.now(timezone.utc).isoformat()


def _print_json(obj: Any):
    print(json.dumps(obj, ensure_ascii=False, indent=2, default=str))


def _append_run_history(summary: dict) -> None:
    RUN_HISTORY_PATH.parent.mkdir(parents=True, exist_ok=True)
    with RUN_HISTORY_PATH.open("a", encoding="utf-8") as f:
        f.write(json.dumps(summary, ensure_ascii=False))
        f.write("\n")


def _require_user(cfg, user: Optional[str]) -> str:
    identity = (user or cfg.sync.user_identity or "").strip()
    if not identity:
        _print_json({"ok": False, "error": "user_identity_missing"})
        raise typer.Exit(2)
    return identity


def _build():
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)
    return cfg, build_orchestrator(cfg)


@app.command("config-show")
def config_show(path: Path = DEFAULT_CONFIG_PATH):
    """Show current config.yaml (secrets masked)."""
    cfg = load_config(path)
    data = cfg.model_dump()
    for key in ("api_key", "access_token"):
        if data["remote"].get(key):
            data["remote"][key] = "***"
    _print_json(data)


@app.command("config-set-remote")
def config_set_remote(
    url: str = typer.Option(..., "--url", help="Supabase project URL"),
    api_key: str = typer.Option(..., "--api-key", help="Supabase anon key"),
    user: str = typer.Option("", "--user", help="User identity (email) used for sync"),
):
    """Set remote store endpoint and credentials."""
    cfg = load_config()
    cfg.remote.supabase_url = url.strip()
    cfg.remote.api_key = api_key.strip()
    if user:
        cfg.sync.user_identity = user.strip()
    save_config(cfg)
    _print_json(
        {
            "ok": True,
            "supabase_url": cfg.remote.supabase_url,
            "api_key_set": bool(cfg.remote.api_key),
            "user_identity": cfg.sync.user_identity,
        }
    )


@app.command("config-validate")
def config_validate(
    path: Path = DEFAULT_CONFIG_PATH,
    strict: bool = typer.Option(False, "--strict", help="Return non-zero when validation fails."),
):
    """Validate config and runtime prerequisites."""
    out: dict[str, Any] = {
        "ok": True,
        "checked_at": _now_iso(),
        "config_path": str(path),
        "checks": {
            "config_exists": path.exists(),
            "remote_configured": False,
            "user_identity_configured": False,
            "web_port_valid": False,
            "database_parent_ready": False,
            "files_dir_ready": False,
        },
        "warnings": [],
        "errors": [],
    }

    try:
        cfg = load_config(path)
    except Exception as e:
        out["ok"] = False
        out["errors"].append(f"load_config_failed: {e}")
        _print_json(out)
        if strict:
            raise typer.Exit(2)
        return

    out["checks"]["remote_configured"] = is_remote_configured(cfg)
    if not out["checks"]["remote_configured"]:
        out["warnings"].append("remote_incomplete: supabase_url/api_key not configured")

    out["checks"]["user_identity_configured"] = bool(cfg.sync.user_identity.strip())
    if not out["checks"]["user_identity_configured"]:
        out["warnings"].append("user_identity_missing")

    port = int(cfg.web_port)
    out["checks"]["web_port_valid"] = 1 <= port <= 65535
    if not out["checks"]["web_port_valid"]:
        out["errors"].append(f"web_port_out_of_range: {port}")

    poll_interval = int(cfg.sync.poll_interval_sec or 0)
    if 0 < poll_interval < 10:
        out["warnings"].append(f"poll_interval_too_short: {poll_interval}")

    try:
        Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
        out["checks"]["database_parent_ready"] = True
    except Exception as e:
        out["errors"].append(f"database_parent_unavailable: {e}")

    try:
        Path(cfg.files.storage_dir).mkdir(parents=True, exist_ok=True)
        out["checks"]["files_dir_ready"] = True
    except Exception as e:
        out["errors"].append(f"files_dir_unavailable: {e}")

    out["ok"] = len(out["errors"]) == 0
    _print_json(out)
    if strict and not out["ok"]:
        raise typer.Exit(2)


@app.command()
def status():
    """Show local record counts and sync readiness."""
    cfg = load_config()
    store = LocalStore(cfg.database.path)
    poll_interval = int(cfg.sync.poll_interval_sec or 0)

    table = Table(title="snipsync status")
    table.add_column("Key")
    table.add_column("Value")
    table.add_row("config", str(DEFAULT_CONFIG_PATH))
    table.add_row("remote", cfg.remote.supabase_url or "(unset)")
    table.add_row("remote_configured", "yes" if is_remote_configured(cfg) else "no")
    table.add_row("user_identity", cfg.sync.user_identity or "(unset)")
    for kind in EntityKind:
        table.add_row(f"{kind.value}_count", str(store.count(kind)))
        table.add_row(f"{kind.value}_pending_deletes", str(len(store.tombstones(kind))))
    table.add_row("last_sync_time", store.get_setting("last_sync_time") or "(never)")
    table.add_row("auto_sync", "on" if poll_interval > 0 else "off")
    table.add_row("poll_interval_sec", str(poll_interval))
    table.add_row("db", cfg.database.path)
    table.add_row("log", cfg.logging.file)
    table.add_row("web", f"http://{cfg.web_bind_host}:{cfg.web_port}")
    console.print(table)


@app.command("approval-check")
def approval_check(user: str = typer.Option("", "--user")):
    """Show the approval record for the user."""
    cfg, orchestrator = _build()
    identity = _require_user(cfg, user)
    try:
        record = orchestrator.check_approval(identity)
    except Exception as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json(
        {
            "ok": True,
            "user_identity": identity,
            "requested": record is not None,
            "approved": bool(record and record.approved),
            "record": record.model_dump(mode="json") if record else None,
        }
    )


@app.command("approval-request")
def approval_request(user: str = typer.Option("", "--user")):
    """Ask the operator to approve sync for the user."""
    cfg, orchestrator = _build()
    identity = _require_user(cfg, user)
    try:
        record = orchestrator.request_approval(identity)
    except Exception as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json({"ok": True, "record": record.model_dump(mode="json")})


@app.command("sync")
def sync(
    user: str = typer.Option("", "--user"),
    run_type: str = typer.Option("manual_cli", "--run-type", help="sync run_type label."),
):
    """Run one full sync and print summary JSON."""
    cfg, orchestrator = _build()
    identity = _require_user(cfg, user)
    try:
        result = orchestrator.sync_all(identity, run_type=run_type)
    except SyncNotApproved as e:
        _print_json({"ok": False, "error": e.code, "user_identity": identity})
        raise typer.Exit(3)
    except (AlreadySyncing, ConfigurationError) as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)

    summary = result.summary()
    summary.update({"run_type": run_type, "user_identity": identity, "message": describe_result(result)})
    LAST_SYNC_PATH.parent.mkdir(parents=True, exist_ok=True)
    LAST_SYNC_PATH.write_text(json.dumps(summary, ensure_ascii=False, indent=2), encoding="utf-8")
    _append_run_history(summary)
    _print_json(summary)
    if result.errors > 0:
        raise typer.Exit(2)


@app.command("clip-add")
def clip_add(
    content: str = typer.Argument(..., help="Captured text."),
    source: str = typer.Option("system", "--source"),
):
    """Record a clipboard capture."""
    cfg = load_config()
    store = LocalStore(cfg.database.path)
    res = admit_capture(store, content, source=source)
    _print_json({"ok": True, "is_new": res.is_new, "message": res.message, "id": res.local_id, "category": res.category})


@app.command("clip-list")
def clip_list(query: str = typer.Option("", "--query", help="Case-insensitive substring filter.")):
    """Show recent clipboard history."""
    cfg = load_config()
    store = LocalStore(cfg.database.path)
    table = Table(title="clipboard history")
    table.add_column("id")
    table.add_column("category")
    table.add_column("created_at")
    table.add_column("content")
    for entry in search_history(store, query, limit=cfg.clipboard.max_history):
        table.add_row(str(entry.local_id), entry.payload.category, entry.created_at.isoformat(), entry.payload.content[:60])
    console.print(table)


@app.command("clip-clear")
def clip_clear():
    """Delete all local clipboard history; synced entries are deleted remotely on the next sync."""
    cfg = load_config()
    removed = clear_history(LocalStore(cfg.database.path))
    _print_json({"ok": True, "removed": removed})


@app.command("clip-to-snippet")
def clip_to_snippet(
    entry_id: int = typer.Argument(...),
    title: str = typer.Option("", "--title"),
    language: str = typer.Option("", "--language"),
    tags: str = typer.Option("", "--tags", help="Comma separated."),
):
    """Turn a clipboard entry into a snippet."""
    cfg = load_config()
    store = LocalStore(cfg.database.path)
    try:
        snippet_id = convert_to_snippet(store, entry_id, title=title, language=language, tags=tags.split(","))
    except LookupError as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json({"ok": True, "snippet_id": snippet_id})


@app.command("file-add")
def file_add(path: Path = typer.Argument(..., exists=True, dir_okay=False)):
    """Copy a file into storage and record its metadata."""
    cfg = load_config()
    store = LocalStore(cfg.database.path)
    storage = FileStorage(cfg.files.storage_dir, cfg.files.max_file_size)
    try:
        file_id = add_file(store, storage, path.name, path.read_bytes())
    except SnipSyncError as e:
        _print_json({"ok": False, "error": str(e)})
        raise typer.Exit(2)
    _print_json({"ok": True, "file_id": file_id})


@app.command("delete")
def delete(
    kind: EntityKind = typer.Argument(..., help="snippets | clipboard | files"),
    local_id: int = typer.Argument(...),
    user: str = typer.Option("", "--user"),
):
    """Delete a local record and propagate the delete to the remote store."""
    cfg = load_config()
    setup_logging(cfg.logging.level, cfg.logging.file)
    identity = (user or cfg.sync.user_identity or "").strip()
    # Deletes apply to every kind, including ones left out of sync.entity_kinds.
    adapter = build_adapter(kind, LocalStore(cfg.database.path), SupabaseStore.from_config(cfg), cfg)
    if adapter.local.get_by_id(kind, local_id) is None:
        _print_json({"ok": False, "error": f"local_record_missing: {kind.value}:{local_id}"})
        raise typer.Exit(2)

    if kind == EntityKind.FILES:
        storage_path = adapter.local.get_extra(kind, local_id).get("storage_path")
        if storage_path:
            FileStorage(cfg.files.storage_dir, cfg.files.max_file_size).delete_file(storage_path)

    remote_done = adapter.delete_record(identity, local_id)
    _print_json({"ok": True, "kind": kind.value, "id": local_id, "remote_deleted": remote_done})


@app.command("serve")
def serve():
    """Run the local HTTP API with the auto-sync scheduler."""
    from snipsync.web.main import main as web_main

    web_main()


def main():
    app()


if __name__ == "__main__":
    main()
