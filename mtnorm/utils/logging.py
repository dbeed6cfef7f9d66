"""Package-wide logger."""

import logging


def get_logger(name="mtnorm", level=logging.INFO):
    """Return a logger with a single stream handler attached.

    Parameters
    ----------
    name : str, optional
        Logger name.
    level : int, optional
        Logging level.

    Returns
    -------
    logger : logging.Logger
    """
    logger = logging.getLogger(name)
    logger.setLevel(level)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(levelname)s %(message)s"))
        logger.addHandler(handler)
    return logger


def set_log_level(level, *, name="mtnorm"):
    """Change the level of the package logger.

    ``level`` can be an int or a level name such as ``"DEBUG"``.
    """
    if isinstance(level, str):
        level_value = logging.getLevelName(level.upper())
        if not isinstance(level_value, int):
            raise ValueError(f"Unknown log level: {level}")
        level = level_value
    logging.getLogger(name).setLevel(level)


logger = get_logger()
