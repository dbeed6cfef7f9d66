import logging

import pytest

from mtnorm.utils.logging import get_logger, logger, set_log_level


def test_logger_single_handler():
    again = get_logger()
    assert again is logger
    assert len(logger.handlers) == 1


def test_set_log_level():
    try:
        set_log_level("debug")
        assert logger.level == logging.DEBUG
        set_log_level(logging.WARNING)
        assert logger.level == logging.WARNING
    finally:
        set_log_level(logging.INFO)


def test_set_log_level_unknown():
    with pytest.raises(ValueError, match="Unknown log level"):
        set_log_level("chatty")
