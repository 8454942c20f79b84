import pytest

from transcoder.config import Settings, UpstreamKind, WireProtocol


def test_settings_read_environment(monkeypatch):
    monkeypatch.setenv("DEFAULT_UPSTREAM", "Kimi")
    monkeypatch.setenv("THINKING_BUDGET_TOKENS", "2048")
    monkeypatch.setenv("DEFAULT_MAX_TOKENS", "not-a-number")
    monkeypatch.setenv("UPSTREAM_API_KEYS", '{"codex": "explicit"}')
    monkeypatch.setenv("KIMI_API_KEY", "from-env")
    monkeypatch.setenv("DEBUG_PROXY", "yes")
    s = Settings()
    assert s.default_upstream is UpstreamKind.KIMI
    assert s.debug is True
    assert s.default_max_tokens == 4096
    kimi = s.upstream("kimi")
    assert kimi.protocol is WireProtocol.ANTHROPIC
    assert kimi.env_api_key == "from-env"
    assert kimi.thinking_budget == 2048
    assert "k2" in kimi.thinking_markers
    assert s.upstream(UpstreamKind.CODEX).api_key == "explicit"
    assert s.upstream("codex").always_stream is True


def test_bad_values_fall_back(monkeypatch):
    monkeypatch.setenv("DEFAULT_UPSTREAM", "mystery")
    monkeypatch.setenv("UPSTREAM_API_KEYS", "[1, 2]")
    s = Settings()
    assert s.default_upstream is UpstreamKind.ANTHROPIC
    assert s.configured_keys == {}
    with pytest.raises(ValueError):
        s.upstream("mystery")
