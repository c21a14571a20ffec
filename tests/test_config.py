import pytest

from config import DEFAULT_USER_AGENT, Config, parse_header_list


def test_parse_header_list_skips_malformed_entries():
    raw = "Accept-Language=en-US, ,novalue,=orphan, X-Token = a=b ,Accept-Language=fr"

    assert parse_header_list(raw) == [
        ("Accept-Language", "en-US"),
        ("X-Token", "a=b"),
        ("Accept-Language", "fr"),
    ]


@pytest.mark.parametrize("raw", [None, "", "   ", ",,"])
def test_parse_header_list_empty(raw):
    assert parse_header_list(raw) == []


@pytest.mark.parametrize("env, expected", [
    ({}, "0.0.0.0:8080"),
    ({"PORT": "9000"}, "0.0.0.0:9000"),
    ({"PORT": ":9001"}, "0.0.0.0:9001"),
    ({"PORT": "9000", "LISTEN_ADDR": "127.0.0.1:7000"}, "127.0.0.1:7000"),
])
def test_listen_address_resolution(monkeypatch, env, expected):
    monkeypatch.delenv("LISTEN_ADDR", raising=False)
    monkeypatch.delenv("PORT", raising=False)
    for key, value in env.items():
        monkeypatch.setenv(key, value)

    assert Config().LISTEN_ADDR == expected


def test_invalid_numbers_fall_back_to_defaults(monkeypatch):
    monkeypatch.setenv("RSS_MAX_BYTES", "lots")
    monkeypatch.setenv("HTTP_TIMEOUT", "-3")
    monkeypatch.setenv("MAX_IDLE_CONNS_PER_HOST", "4")

    cfg = Config()

    assert cfg.MAX_FEED_BYTES == 10 << 20
    assert cfg.HTTP_TIMEOUT == 10.0
    assert cfg.MAX_IDLE_CONNS_PER_HOST == 4


def test_outbound_settings_from_environment(monkeypatch):
    monkeypatch.setenv("RSS_PROXY", " socks5h://127.0.0.1:9050 ")
    monkeypatch.setenv("RSS_HEADERS", "Accept=application/rss+xml")
    monkeypatch.setenv("USER_AGENT", "custom-agent")
    monkeypatch.setenv("REQUEST_LOG", "true")
    monkeypatch.setenv("API_KEY", " key ")

    cfg = Config()

    assert cfg.PROXY_URL == "socks5h://127.0.0.1:9050"
    assert cfg.EXTRA_HEADERS == [("Accept", "application/rss+xml")]
    assert cfg.USER_AGENT == "custom-agent"
    assert cfg.REQUEST_LOG is True
    assert cfg.API_KEY == "key"
    assert cfg.get_config_summary()["auth_enabled"] is True


def test_secrets_file_overrides_environment(monkeypatch, tmp_path):
    secrets = tmp_path / "secrets.yaml"
    secrets.write_text("environment:\n  API_KEY: from-secrets\n  RSS_MAX_BYTES: 2048\n")
    monkeypatch.setenv("SECRETS_FILE", str(secrets))
    monkeypatch.setenv("API_KEY", "from-env")
    monkeypatch.setenv("RSS_MAX_BYTES", "1024")

    cfg = Config()

    assert cfg.API_KEY == "from-secrets"
    assert cfg.MAX_FEED_BYTES == 2048


def test_blank_user_agent_uses_browser_default(monkeypatch):
    monkeypatch.setenv("USER_AGENT", "  ")

    assert Config().USER_AGENT == DEFAULT_USER_AGENT
    assert DEFAULT_USER_AGENT.startswith("Mozilla/5.0")
