"""
Tests for the logging and filesystem helpers.
Run: pytest tests/test_utils.py -q
"""
import logging

from utils import ensure_dir, get_logger


def test_ensure_dir_creates_nested_directories(tmp_path):
    target = tmp_path / "plots" / "round0"
    ensure_dir(str(target))
    assert target.is_dir()
    # Existing directories are left alone.
    (target / "keep.txt").write_text("x")
    ensure_dir(str(target))
    assert (target / "keep.txt").exists()


def test_get_logger_adds_one_handler():
    logger = get_logger("meter-test")
    get_logger("meter-test")
    assert len(logger.handlers) == 1
    assert logger.level == logging.INFO
