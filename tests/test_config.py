"""Tests for engine configuration loading."""

import tempfile
from pathlib import Path

import pytest

from vigil.config import CONFIG_ENV_VAR, DEFAULT_NAMESPACE, EngineConfig, load_config


def _write(tmpdir: str, text: str) -> Path:
    path = Path(tmpdir) / "vigil.yaml"
    path.write_text(text)
    return path


def test_defaults(monkeypatch):
    monkeypatch.delenv(CONFIG_ENV_VAR, raising=False)
    config = load_config()
    assert config == EngineConfig()
    assert config.report_expiry_days == 7.0
    assert config.max_labelers == 20
    assert config.max_mute_lists == 20
    assert config.moderation_namespaces == [DEFAULT_NAMESPACE]


def test_load_overrides_from_yaml():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, """
report_expiry_days: 3
trusted_reviewers: [mod1, mod2]
moderation_namespaces: [MOD, ugc]
blocked_keywords: [scam]
""")
        config = load_config(path)

    assert config.report_expiry_days == 3
    assert config.trusted_reviewers == ["mod1", "mod2"]
    assert config.moderation_namespaces == ["MOD", "ugc"]
    assert config.blocked_keywords == ["scam"]
    assert config.conflict_penalty == 0.2


def test_unknown_keys_are_ignored():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "max_labelers: 5\nrelay_urls: [wss://example]\n")
        config = load_config(path)
    assert config.max_labelers == 5


def test_empty_file_gives_defaults():
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "")
        assert load_config(path) == EngineConfig()


def test_env_var_names_the_file(monkeypatch):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, "max_mute_lists: 4\n")
        monkeypatch.setenv(CONFIG_ENV_VAR, str(path))
        assert load_config().max_mute_lists == 4


@pytest.mark.parametrize("text", [
    "report_expiry_days: 0\n",
    "max_labelers: 0\n",
    "label_blur_threshold: 3\nlabel_hide_threshold: 2\n",
    "conflict_penalty: 1.5\n",
    "moderation_namespaces: []\n",
    "- just\n- a list\n",
])
def test_invalid_config_is_rejected(text):
    with tempfile.TemporaryDirectory() as tmpdir:
        path = _write(tmpdir, text)
        with pytest.raises(ValueError):
            load_config(path)
