"""
Tests for config loading and checks.
"""

import pytest

from ragdesk import config as cfg_mod
from ragdesk.config import check_config, load_config


@pytest.fixture(autouse=True)
def fresh_config():
    orig = cfg_mod._config
    cfg_mod.reset_config()
    yield
    cfg_mod._config = orig


def _valid() -> dict:
    return {
        "upstream": {"url": "https://dify.example.com/v1", "api_key": "app-k", "max_retries": 3},
        "chat": {"max_message_length": 2000},
        "session": {"secret": "s" * 32, "cookie": {"same_site": "lax"}},
        "identity": {
            "tenant_id": "11111111-1111-1111-1111-111111111111",
            "client_id": "22222222-2222-2222-2222-222222222222",
            "client_secret": "shh",
            "redirect_uri": "https://chat.example.com/auth/callback",
            "post_logout_redirect_uri": "https://chat.example.com/",
        },
        "directory": {"department_group_pattern": r"^DEPT_(?P<code>\d+)$"},
    }


def test_load_resolves_env_vars(tmp_path, monkeypatch):
    monkeypatch.setenv("RAGDESK_TEST_KEY", "app-secret")
    path = tmp_path / "config.yaml"
    path.write_text(
        "upstream:\n"
        "  url: http://dify.test/v1\n"
        "  api_key: ${RAGDESK_TEST_KEY}\n"
        "identity:\n"
        "  scopes: [openid, '${RAGDESK_TEST_KEY}']\n"
        "  missing: '${RAGDESK_TEST_UNSET}'\n"
    )

    cfg = load_config(path)

    assert cfg["upstream"]["api_key"] == "app-secret"
    assert cfg["identity"]["scopes"] == ["openid", "app-secret"]
    assert cfg["identity"]["missing"] == ""


def test_load_is_cached(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("server:\n  port: 9000\n")
    first = load_config(path)
    path.write_text("server:\n  port: 9001\n")
    assert load_config(path) is first
    assert cfg_mod.get_config()["server"]["port"] == 9000


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        load_config(tmp_path / "nope.yaml")


def test_empty_file_is_empty_config(tmp_path):
    path = tmp_path / "config.yaml"
    path.write_text("")
    assert load_config(path) == {}


def test_valid_config_has_no_problems():
    assert check_config(_valid()) == []
    assert check_config(_valid(), production=True) == []


def test_short_secret_is_flagged():
    cfg = _valid()
    cfg["session"]["secret"] = "short"
    assert any(p.startswith("session.secret") for p in check_config(cfg))


def test_missing_upstream_is_flagged():
    cfg = _valid()
    cfg["upstream"] = {}
    problems = check_config(cfg)
    assert any(p.startswith("upstream.url") for p in problems)
    assert any(p.startswith("upstream.api_key") for p in problems)


def test_identity_ids_must_be_uuids():
    cfg = _valid()
    cfg["identity"]["tenant_id"] = "contoso"
    assert "identity.tenant_id: must be a UUID" in check_config(cfg)


def test_bad_group_pattern_is_flagged():
    cfg = _valid()
    cfg["directory"]["department_group_pattern"] = "(["
    assert any("department_group_pattern" in p for p in check_config(cfg))


def test_production_rules():
    cfg = _valid()
    cfg["identity"]["redirect_uri"] = "http://chat.example.com/auth/callback"
    cfg["session"]["cookie"]["secure"] = False

    assert check_config(cfg) == []
    problems = check_config(cfg, production=True)
    assert "identity.redirect_uri: must use HTTPS in production" in problems
    assert "session.cookie.secure: must be true in production" in problems


def test_bundled_config_parses(monkeypatch):
    monkeypatch.setenv("SESSION_SECRET", "s" * 40)
    cfg = load_config(cfg_mod._CONFIG_PATH)
    assert cfg["upstream"]["max_retries"] == 3
    assert cfg["session"]["secret"] == "s" * 40
    assert cfg["chat"]["max_message_length"] == 2000
