from __future__ import annotations

import logging
import os
import stat
from pathlib import Path

import pytest

from devbox_lib.fileio import remove_tree, write_private
from devbox_lib.logs import ROOT_LOGGER_NAME, configure_logging


@pytest.fixture
def clean_logger():
    logger = logging.getLogger(ROOT_LOGGER_NAME)
    saved = list(logger.handlers)
    saved_propagate = logger.propagate
    logger.handlers.clear()
    logger.propagate = True
    yield logger
    for handler in logger.handlers:
        handler.close()
    logger.handlers[:] = saved
    logger.propagate = saved_propagate


def test_configure_logging_is_idempotent(clean_logger, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVBOX_LOG_LEVEL", "debug")

    configure_logging()
    configure_logging()

    assert len(clean_logger.handlers) == 1
    assert clean_logger.level == logging.DEBUG
    assert clean_logger.propagate is False
    assert clean_logger.handlers[0].formatter._fmt == "%(asctime)s [%(levelname)s] %(message)s"


def test_explicit_level_wins_over_env(clean_logger, monkeypatch: pytest.MonkeyPatch) -> None:
    monkeypatch.setenv("DEVBOX_LOG_LEVEL", "debug")

    configure_logging("warning")

    assert clean_logger.level == logging.WARNING


def test_log_file_handler_writes_messages(clean_logger, monkeypatch: pytest.MonkeyPatch, tmp_path: Path) -> None:
    log_file = tmp_path / "logs" / "devbox.log"
    monkeypatch.setenv("DEVBOX_LOG_FILE", str(log_file))

    configure_logging("info")
    logging.getLogger("devbox.bridge").info("bridge ready")
    for handler in clean_logger.handlers:
        handler.flush()

    assert len(clean_logger.handlers) == 2
    assert "[INFO] bridge ready" in log_file.read_text(encoding="utf-8")


def test_write_private_is_owner_only(tmp_path: Path) -> None:
    target = tmp_path / "keys" / "known_hosts"

    write_private(target, "devbox-sandbox ssh-ed25519 AAAA\n")

    assert target.read_text(encoding="utf-8") == "devbox-sandbox ssh-ed25519 AAAA\n"
    assert stat.S_IMODE(os.stat(target).st_mode) == 0o600
    assert [path.name for path in target.parent.iterdir()] == ["known_hosts"]


def test_remove_tree(tmp_path: Path) -> None:
    target = tmp_path / "session"
    (target / "nested").mkdir(parents=True)
    (target / "nested" / "id_ed25519").write_text("x", encoding="utf-8")

    assert remove_tree(target) is True
    assert not target.exists()
    assert remove_tree(target) is False
