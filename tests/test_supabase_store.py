import json

import pytest

from snipsync.core.config import AppConfig
from snipsync.core.errors import ConfigurationError, RemoteStoreError
from snipsync.sync import remote_store as remote_module
from snipsync.sync.models import EntityKind
from snipsync.sync.remote_store import SupabaseStore


class _Resp:
    def __init__(self, status_code=200, payload=None):
        self.status_code = status_code
        self.text = "" if payload is None else json.dumps(payload)
        self._payload = payload

    def json(self):
        return self._payload


class _Recorder:
    def __init__(self, responses):
        self.responses = list(responses)
        self.calls = []

    def __call__(self, url, **kwargs):
        self.calls.append((url, kwargs))
        return self.responses.pop(0)


def _store(**kwargs) -> SupabaseStore:
    return SupabaseStore("https://proj.supabase.co/", "anon-key", **kwargs)


def test_find_filters_by_user_and_local_id(monkeypatch):
    rec = _Recorder([_Resp(200, [{"id": 9, "local_id": 3}])])
    monkeypatch.setattr(remote_module.requests, "get", rec)

    row = _store().find_by_user_and_local_id("u@example.com", EntityKind.CLIPBOARD, 3)

    assert row == {"id": 9, "local_id": 3}
    url, kwargs = rec.calls[0]
    assert url == "https://proj.supabase.co/rest/v1/clipboard_history"
    assert kwargs["params"]["user_email"] == "eq.u@example.com"
    assert kwargs["params"]["local_id"] == "eq.3"
    assert kwargs["headers"]["apikey"] == "anon-key"
    assert kwargs["headers"]["Authorization"] == "Bearer anon-key"
    assert kwargs["timeout"] == 30


def test_find_returns_none_for_empty_result(monkeypatch):
    monkeypatch.setattr(remote_module.requests, "get", _Recorder([_Resp(200, [])]))
    assert _store().find_by_user_and_local_id("u", EntityKind.SNIPPETS, 1) is None


def test_list_by_user_pages_until_short_page(monkeypatch):
    rec = _Recorder([_Resp(200, [{"id": 1}, {"id": 2}]), _Resp(200, [{"id": 3}])])
    monkeypatch.setattr(remote_module.requests, "get", rec)

    rows = _store(page_size=2).list_by_user("u", EntityKind.SNIPPETS)

    assert [r["id"] for r in rows] == [1, 2, 3]
    assert [c[1]["params"]["offset"] for c in rec.calls] == ["0", "2"]


def test_insert_returns_remote_id_and_tags_user(monkeypatch):
    rec = _Recorder([_Resp(201, [{"id": 42}])])
    monkeypatch.setattr(remote_module.requests, "post", rec)

    remote_id = _store().insert("u@example.com", EntityKind.SNIPPETS, {"local_id": 1, "title": "t"})

    assert remote_id == "42"
    body = rec.calls[0][1]["json"]
    assert body["user_email"] == "u@example.com"
    assert rec.calls[0][1]["headers"]["Prefer"] == "return=representation"


def test_update_targets_row_id_and_never_sends_owner(monkeypatch):
    rec = _Recorder([_Resp(204)])
    monkeypatch.setattr(remote_module.requests, "patch", rec)

    _store().update(EntityKind.FILES, "7", {"id": "7", "user_email": "x", "filename": "a"})

    kwargs = rec.calls[0][1]
    assert kwargs["params"] == {"id": "eq.7"}
    assert kwargs["json"] == {"filename": "a"}


def test_error_status_raises_remote_store_error(monkeypatch):
    monkeypatch.setattr(remote_module.requests, "delete", _Recorder([_Resp(500, {"message": "down"})]))

    with pytest.raises(RemoteStoreError) as exc:
        _store().delete_by_user_and_local_id("u", EntityKind.SNIPPETS, 1)
    assert exc.value.status_code == 500


def test_upsert_approval_ignores_duplicates(monkeypatch):
    rec = _Recorder([_Resp(201)])
    monkeypatch.setattr(remote_module.requests, "post", rec)

    _store().upsert_approval("u@example.com", {"approved": False})

    url, kwargs = rec.calls[0]
    assert url.endswith("/rest/v1/user_approvals")
    assert kwargs["params"] == {"on_conflict": "user_email"}
    assert "resolution=ignore-duplicates" in kwargs["headers"]["Prefer"]


def test_access_token_is_used_as_bearer(monkeypatch):
    rec = _Recorder([_Resp(200, [])])
    monkeypatch.setattr(remote_module.requests, "get", rec)

    _store(access_token="user-jwt").get_approval("u")

    assert rec.calls[0][1]["headers"]["Authorization"] == "Bearer user-jwt"


def test_unconfigured_store_raises_before_any_request(monkeypatch):
    def _boom(*_a, **_k):
        raise AssertionError("no request expected")

    monkeypatch.setattr(remote_module.requests, "get", _boom)
    store = SupabaseStore("", "")
    assert store.is_configured() is False
    with pytest.raises(ConfigurationError):
        store.get_approval("u")


def test_from_config_reads_remote_section():
    cfg = AppConfig()
    cfg.remote.supabase_url = "https://x.supabase.co"
    cfg.remote.api_key = "k"
    cfg.remote.timeout_sec = 5
    store = SupabaseStore.from_config(cfg)
    assert store.is_configured() is True
    assert store.timeout == 5
