"""Tests for configuration loading."""

from pathlib import Path

import pytest

from chatters.config import BackendConfig, Config, expand_env_var, load_config
from chatters.sync.backoff import BackoffPolicy


def write_config(tmp_path: Path, text: str) -> Path:
    path = tmp_path / "config.yaml"
    path.write_text(text)
    return path


class TestDefaults:
    """Tests for the built-in defaults."""

    def test_missing_file(self, tmp_path: Path) -> None:
        """A missing config file should give the defaults."""
        config = load_config(tmp_path / "nope.yaml")
        assert config.sync.page_size == 50
        assert config.sync.backfill_depth == 200
        assert config.cache_db is None
        assert config.hooks.on_new_message is None
        assert list(config.backends) == ["local"]

    def test_empty_file(self, tmp_path: Path) -> None:
        config = load_config(write_config(tmp_path, ""))
        assert config.log_level == "INFO"
        assert config.device_name

    def test_backoff_policy(self) -> None:
        assert Config().sync.backoff.policy() == BackoffPolicy(1.0, 60.0, 2.0, 0.1, None)


class TestLoadConfig:
    """Tests for load_config."""

    def test_full_file(self, tmp_path: Path, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATTERS_DEVICE", "laptop")
        monkeypatch.setenv("HOME", str(tmp_path))
        config = load_config(
            write_config(
                tmp_path,
                """
device_name: ${CHATTERS_DEVICE}
log_level: debug
log_dir: ~/logs
cache_db: ~/cache/chatters.db
sync:
  page_size: 10
  backfill_depth: 0
  lane_capacity: 8
  notification_buffer: 4
  backoff:
    initial_seconds: 0.5
    max_seconds: 30
    max_attempts: 5
hooks:
  on_new_message: notify-send "$CHATTERS_SENDER_NAME"
backends:
  notes:
    kind: local
    options:
      self_name: Me
  work:
    kind: matrix
    enabled: false
    client: mypkg.matrix:Client
""",
            )
        )
        assert config.device_name == "laptop"
        assert config.log_level == "DEBUG"
        assert config.log_dir == tmp_path / "logs"
        assert config.cache_db == tmp_path / "cache" / "chatters.db"
        assert (config.sync.page_size, config.sync.backfill_depth) == (10, 0)
        assert (config.sync.lane_capacity, config.sync.notification_buffer) == (8, 4)
        assert config.sync.backoff.initial_seconds == 0.5
        assert config.sync.backoff.max_attempts == 5
        assert config.hooks.on_new_message == 'notify-send "$CHATTERS_SENDER_NAME"'
        assert config.backends["notes"] == BackendConfig(kind="local", options={"self_name": "Me"})
        assert list(config.enabled_backends()) == ["notes"]
        assert config.backends["work"].factory_options() == {"client": "mypkg.matrix:Client"}

    @pytest.mark.parametrize(
        "text",
        [
            "sync:\n  page_size: 0\n",
            "sync:\n  lane_capacity: -1\n",
            "sync:\n  backfill_depth: -5\n",
            "sync:\n  backoff:\n    multiplier: 0.5\n",
            "sync:\n  backoff:\n    jitter: 1.5\n",
            "backends:\n  'a:b':\n    kind: local\n",
            "backends:\n  notes:\n    enabled: true\n",
            "log_level: loud\n",
        ],
    )
    def test_invalid_values(self, tmp_path: Path, text: str) -> None:
        with pytest.raises(ValueError):
            load_config(write_config(tmp_path, text))


class TestExpandEnvVar:
    def test_expands_set_variable(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.setenv("CHATTERS_TEST", "value")
        assert expand_env_var("${CHATTERS_TEST}") == "value"

    def test_leaves_unset_and_plain_values(self, monkeypatch: pytest.MonkeyPatch) -> None:
        monkeypatch.delenv("CHATTERS_UNSET", raising=False)
        assert expand_env_var("${CHATTERS_UNSET}") == "${CHATTERS_UNSET}"
        assert expand_env_var("plain") == "plain"
