"""Unit tests for snippet_kb.config"""

from __future__ import annotations

import os

import pytest

from snippet_kb.config import Config


@pytest.fixture(autouse=True)
def clean_env(monkeypatch):
    for key in list(os.environ):
        if key.startswith("KB_") or key in ("OPENAI_BASE_URL", "OLLAMA_BASE_URL"):
            monkeypatch.delenv(key, raising=False)


class TestDefaults:

    def test_defaults(self):
        cfg = Config()
        assert cfg.BYTE_THRESHOLD == 4_000_000
        assert cfg.MAX_RECORDS == 10_000
        assert cfg.PRUNE_FRACTION == 0.25
        assert cfg.BATCH_SIZE == 5
        assert cfg.TOP_K == 3
        assert cfg.RETRY_COUNT == 3
        assert cfg.EMBEDDING_BACKEND == "openai"
        assert cfg.STORAGE_QUOTA_BYTES == 0

    def test_db_path(self):
        cfg = Config(data_dir="/tmp/kbdata")
        assert cfg.db_path == os.path.join("/tmp/kbdata", "knowledge.db")

    def test_log_dir_follows_data_dir(self, monkeypatch):
        assert Config(data_dir="/tmp/kbdata").LOG_DIR == os.path.join("/tmp/kbdata", "logs")
        monkeypatch.setenv("KB_DATA_DIR", "/from/env")
        assert Config().LOG_DIR == os.path.join("/from/env", "logs")
        assert Config({"data_dir": "/from/env", "log_dir": "/var/log/kb"}).LOG_DIR == "/var/log/kb"

    def test_max_retry_delay(self):
        assert Config().MAX_RETRY_DELAY == 60.0
        with pytest.raises(ValueError):
            Config(retry_base_delay=5.0, max_retry_delay=1.0)

    def test_effective_worker_count(self):
        assert Config(worker_count=3).effective_worker_count() == 3
        assert Config().effective_worker_count() >= 1


class TestPriority:

    def test_yaml_over_defaults(self):
        cfg = Config({"top_k": 7, "embedding_backend": "ollama"})
        assert cfg.TOP_K == 7
        assert cfg.EMBEDDING_BACKEND == "ollama"

    def test_env_over_yaml(self, monkeypatch):
        monkeypatch.setenv("KB_TOP_K", "9")
        monkeypatch.setenv("OLLAMA_BASE_URL", "http://gpu-box:11434")
        cfg = Config({"top_k": 7})
        assert cfg.TOP_K == 9
        assert cfg.OLLAMA_BASE_URL == "http://gpu-box:11434"

    def test_overrides_over_env(self, monkeypatch):
        monkeypatch.setenv("KB_DATA_DIR", "/from/env")
        assert Config(data_dir="/from/cli").DATA_DIR == "/from/cli"

    def test_none_override_ignored(self, monkeypatch):
        monkeypatch.setenv("KB_DATA_DIR", "/from/env")
        assert Config(data_dir=None).DATA_DIR == "/from/env"


class TestLoad:

    def test_explicit_file(self, tmp_path):
        path = tmp_path / "kb.yaml"
        path.write_text("max_records: 50\nprune_fraction: 0.5\n", encoding="utf-8")
        cfg = Config.load(str(path))
        assert cfg.MAX_RECORDS == 50
        assert cfg.PRUNE_FRACTION == 0.5

    def test_file_in_cwd(self, tmp_path, monkeypatch):
        (tmp_path / ".snippetkb.yaml").write_text("batch_size: 2\n", encoding="utf-8")
        monkeypatch.chdir(tmp_path)
        assert Config.load().BATCH_SIZE == 2

    def test_missing_explicit_file_uses_defaults(self, tmp_path):
        cfg = Config.load(str(tmp_path / "nope.yaml"))
        assert cfg.TOP_K == 3

    def test_broken_yaml_uses_defaults(self, tmp_path):
        path = tmp_path / "broken.yaml"
        path.write_text("top_k: [unclosed\n", encoding="utf-8")
        assert Config.load(str(path)).TOP_K == 3


class TestValidation:

    @pytest.mark.parametrize("overrides", [
        {"prune_fraction": 0},
        {"prune_fraction": 1},
        {"max_records": -1},
        {"byte_threshold": -5},
        {"batch_size": 0},
        {"top_k": 0},
        {"retry_count": 0},
        {"retry_base_delay": -1},
        {"request_timeout": 0},
    ])
    def test_invalid(self, overrides):
        with pytest.raises(ValueError):
            Config(**overrides)
