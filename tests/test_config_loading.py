from pathlib import Path

from snipsync.core import config as config_module


def test_load_config_creates_from_template(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    runtime_dir = tmp_path / "runtime"
    template.write_text(
        "\n".join(
            [
                "remote:",
                "  supabase_url: https://tpl.supabase.co",
                "  api_key: tpl_key",
                "sync:",
                "  user_identity: tpl@example.com",
                "  poll_interval_sec: 300",
                "logging:",
                f"  file: {runtime_dir / 'service.log'}",
                "database:",
                f"  path: {runtime_dir / 'nobraindev.db'}",
            ]
        )
        + "\n",
        encoding="utf-8",
    )
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    for name in (config_module.ENV_SUPABASE_URL, config_module.ENV_SUPABASE_KEY, config_module.ENV_USER_IDENTITY):
        monkeypatch.delenv(name, raising=False)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.remote.supabase_url == "https://tpl.supabase.co"
    assert cfg.sync.user_identity == "tpl@example.com"
    assert cfg.sync.poll_interval_sec == 300
    assert config_module.is_remote_configured(cfg) is True


def test_load_config_creates_defaults_when_template_missing(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", tmp_path / "missing-template.yaml")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    monkeypatch.delenv(config_module.ENV_SUPABASE_URL, raising=False)
    monkeypatch.delenv(config_module.ENV_SUPABASE_KEY, raising=False)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.poll_interval_sec == 0
    assert cfg.clipboard.push_limit == 1000
    assert config_module.is_remote_configured(cfg) is False


def test_load_config_falls_back_when_template_invalid(monkeypatch, tmp_path: Path):
    template = tmp_path / "config.yaml.example"
    target = tmp_path / "config.yaml"
    template.write_text("remote: [invalid\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "DEFAULT_CONFIG_TEMPLATE_PATH", template)
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)

    cfg = config_module.load_config(target)

    assert target.exists()
    assert cfg.sync.max_workers == 1


def test_env_overrides_win_over_file(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    target.write_text("remote:\n  supabase_url: https://file.supabase.co\n  api_key: file_key\n", encoding="utf-8")
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    monkeypatch.setenv(config_module.ENV_SUPABASE_URL, "https://env.supabase.co")
    monkeypatch.setenv(config_module.ENV_USER_IDENTITY, "env@example.com")
    monkeypatch.delenv(config_module.ENV_SUPABASE_KEY, raising=False)

    cfg = config_module.load_config(target)

    assert cfg.remote.supabase_url == "https://env.supabase.co"
    assert cfg.remote.api_key == "file_key"
    assert cfg.sync.user_identity == "env@example.com"


def test_save_then_load_roundtrip(monkeypatch, tmp_path: Path):
    target = tmp_path / "config.yaml"
    monkeypatch.setattr(config_module, "ensure_runtime_dirs", lambda _cfg: None)
    cfg = config_module.AppConfig()
    cfg.web_port = 9000
    cfg.sync.entity_kinds = ["snippets"]

    config_module.save_config(cfg, target)
    loaded = config_module.load_config(target)

    assert loaded.web_port == 9000
    assert loaded.sync.entity_kinds == ["snippets"]
