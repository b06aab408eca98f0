from __future__ import annotations

import os
from pathlib import Path

from pydantic import BaseModel, Field

PROJECT_ROOT = Path(os.environ.get("SNIPSYNC_HOME") or (Path.home() / ".nobraindev"))
RUNTIME_DIR = PROJECT_ROOT / "runtime"
DEFAULT_CONFIG_PATH = PROJECT_ROOT / "config.yaml"
DEFAULT_CONFIG_TEMPLATE_PATH = Path(__file__).resolve().parents[2] / "config.yaml.example"
LAST_SYNC_PATH = RUNTIME_DIR / "last_sync.json"
RUN_HISTORY_PATH = RUNTIME_DIR / "run_history.jsonl"

ENV_SUPABASE_URL = "SNIPSYNC_SUPABASE_URL"
ENV_SUPABASE_KEY = "SNIPSYNC_SUPABASE_KEY"
ENV_USER_IDENTITY = "SNIPSYNC_USER"


class RemoteConfig(BaseModel):
    supabase_url: str = ""
    api_key: str = ""
    # Optional user JWT; the anon key is used as bearer when empty.
    access_token: str = ""
    timeout_sec: int = Field(default=30, ge=1, le=600)
    page_size: int = Field(default=1000, ge=1, le=10000)


class SyncConfig(BaseModel):
    user_identity: str = ""
    # 0 means disabled; positive values are seconds between scheduled runs.
    poll_interval_sec: int = Field(default=0, ge=0, le=86400)
    # 1 keeps record processing sequential inside each adapter.
    max_workers: int = Field(default=1, ge=1, le=32)
    entity_kinds: list[str] = Field(default_factory=lambda: ["snippets", "clipboard", "files"])


class ClipboardConfig(BaseModel):
    push_limit: int = Field(default=1000, ge=1)
    pull_limit: int = Field(default=10000, ge=1)
    max_history: int = Field(default=100, ge=1)


class FilesConfig(BaseModel):
    storage_dir: str = str(PROJECT_ROOT / "files")
    max_file_size: int = 50 * 1024 * 1024


class LoggingConfig(BaseModel):
    level: str = "INFO"
    file: str = str(RUNTIME_DIR / "service.log")


class DatabaseConfig(BaseModel):
    path: str = str(PROJECT_ROOT / "nobraindev.db")


class AppConfig(BaseModel):
    remote: RemoteConfig = Field(default_factory=RemoteConfig)
    sync: SyncConfig = Field(default_factory=SyncConfig)
    clipboard: ClipboardConfig = Field(default_factory=ClipboardConfig)
    files: FilesConfig = Field(default_factory=FilesConfig)
    logging: LoggingConfig = Field(default_factory=LoggingConfig)
    database: DatabaseConfig = Field(default_factory=DatabaseConfig)

    # Local API
    web_bind_host: str = "127.0.0.1"
    web_port: int = 8766


def is_remote_configured(cfg: AppConfig) -> bool:
    return bool(cfg.remote.supabase_url.strip() and cfg.remote.api_key.strip())


def apply_env_overrides(cfg: AppConfig) -> AppConfig:
    url = os.environ.get(ENV_SUPABASE_URL, "").strip()
    key = os.environ.get(ENV_SUPABASE_KEY, "").strip()
    user = os.environ.get(ENV_USER_IDENTITY, "").strip()
    if url:
        cfg.remote.supabase_url = url
    if key:
        cfg.remote.api_key = key
    if user:
        cfg.sync.user_identity = user
    return cfg


def ensure_runtime_dirs(cfg: AppConfig):
    Path(cfg.logging.file).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.database.path).parent.mkdir(parents=True, exist_ok=True)
    Path(cfg.files.storage_dir).mkdir(parents=True, exist_ok=True)


def load_config(path: Path = DEFAULT_CONFIG_PATH) -> AppConfig:
    import yaml

    if not path.exists():
        path.parent.mkdir(parents=True, exist_ok=True)
        if DEFAULT_CONFIG_TEMPLATE_PATH.exists():
            try:
                template_text = DEFAULT_CONFIG_TEMPLATE_PATH.read_text(encoding="utf-8")
                data = yaml.safe_load(template_text) or {}
                cfg = AppConfig.model_validate(data)
                path.write_text(template_text, encoding="utf-8")
            except Exception:
                cfg = AppConfig()
                path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        else:
            cfg = AppConfig()
            path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
        apply_env_overrides(cfg)
        ensure_runtime_dirs(cfg)
        return cfg

    data = yaml.safe_load(path.read_text(encoding="utf-8")) or {}
    cfg = AppConfig.model_validate(data)
    apply_env_overrides(cfg)
    ensure_runtime_dirs(cfg)
    return cfg


def save_config(cfg: AppConfig, path: Path = DEFAULT_CONFIG_PATH):
    import yaml

    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(yaml.safe_dump(cfg.model_dump(), allow_unicode=True, sort_keys=False), encoding="utf-8")
