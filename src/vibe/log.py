"""Logging setup.

The dashboard owns the terminal, so log records go to a file under the
base directory rather than stderr.
"""

from __future__ import annotations

import logging
import os
from pathlib import Path

LOG_FORMAT = "%(asctime)s %(name)s %(levelname)s %(message)s"
LOG_ENV_VAR = "VIBE_LOG"


def setup_logging(base_dir: Path, verbose: bool = False) -> Path:
    """Attach a file handler to the ``vibe`` logger. Returns the log path.

    ``VIBE_LOG`` (e.g. ``debug``) overrides the level chosen by ``verbose``.
    """
    level = logging.DEBUG if verbose else logging.INFO
    env_level = os.environ.get(LOG_ENV_VAR, "").strip().upper()
    if env_level:
        level = logging.getLevelName(env_level)
        if not isinstance(level, int):
            raise ValueError(f"{LOG_ENV_VAR} must be a logging level, got '{env_level}'.")

    base_dir.mkdir(parents=True, exist_ok=True)
    log_path = base_dir / "vibe.log"

    logger = logging.getLogger("vibe")
    logger.setLevel(level)
    # Re-running setup (e.g. CliRunner in tests) must not stack handlers
    for handler in list(logger.handlers):
        if getattr(handler, "_vibe_handler", False):
            logger.removeHandler(handler)
            handler.close()

    handler = logging.FileHandler(log_path)
    handler.setFormatter(logging.Formatter(LOG_FORMAT, datefmt="%H:%M:%S"))
    handler._vibe_handler = True  # type: ignore[attr-defined]
    logger.addHandler(handler)
    return log_path
