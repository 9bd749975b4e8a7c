"""Unit tests for snippet_kb.log_setup"""

from __future__ import annotations

import logging

import pytest

from snippet_kb.log_setup import setup_logger


@pytest.fixture
def clean_logger():
    logger = logging.getLogger("snippet_kb")
    saved = list(logger.handlers)
    logger.handlers = []
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers = saved


class TestSetupLogger:

    def test_writes_log_file(self, tmp_path, clean_logger):
        log_dir = tmp_path / "logs"
        logger = setup_logger(str(log_dir))
        logging.getLogger("snippet_kb.service").info("[KnowledgeService] hello")
        for handler in logger.handlers:
            handler.flush()
        [log_file] = list(log_dir.glob("snippetkb_*.log"))
        assert "[KnowledgeService] hello" in log_file.read_text(encoding="utf-8")

    def test_no_duplicate_handlers(self, tmp_path, clean_logger):
        setup_logger(str(tmp_path))
        setup_logger(str(tmp_path))
        assert len(clean_logger.handlers) == 1

    def test_verbose_adds_console_once(self, tmp_path, clean_logger):
        setup_logger(str(tmp_path), verbose=True)
        setup_logger(str(tmp_path), verbose=True)
        assert len(clean_logger.handlers) == 2
