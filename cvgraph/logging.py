"""cvgraph logging — thin wrapper around dd-logging for consistent log format.

Usage
-----
In every cvgraph module:
    from cvgraph.logging import get_logger
    _log = get_logger("engine")   # → cvgraph.engine logger

To initialise file logging at application start-up:
    from cvgraph.logging import setup_logging
    setup_logging("chat", log_level="debug")
    # → logs/chat-<YYYYMMDD-HHMMSS>.log under cvgraph.*

Log hierarchy
-------------
    cvgraph              ← root (FileHandler attached by setup_logging)
    ├── cvgraph.checkpoint
    ├── cvgraph.threads
    ├── cvgraph.node
    ├── cvgraph.nodes
    ├── cvgraph.engine
    ├── cvgraph.llm
    └── cvgraph.runner
"""

from __future__ import annotations

import logging
from pathlib import Path

from dd_logging import (
    disable_logging as _disable,
    get_logger as _get,
    setup_logging as _setup,
)

_ROOT = "cvgraph"


def get_logger(name: str) -> logging.Logger:
    """Return a child logger under the cvgraph namespace."""
    return _get(name, _ROOT)


def setup_logging(
    run_name: str = "cvgraph",
    *,
    log_level: str = "info",
    log_dir: str | Path | None = None,
    console: bool = False,
    adapter: str = "",
) -> Path:
    """Attach a timestamped FileHandler to the cvgraph root logger.

    Parameters
    ----------
    run_name :
        Short label used in the log filename, e.g. ``"chat"`` or ``"init-db"``.
    log_level :
        ``"debug"`` | ``"info"`` | ``"warning"`` | ``"error"``.
    log_dir :
        Directory for log files.  Defaults to ``./logs`` relative to CWD.
    console :
        Also attach a StreamHandler (CLI ``--verbose``).
    adapter :
        LLM provider name appended to the filename (e.g. ``"anthropic"``).

    Returns
    -------
    Path
        Absolute path of the created log file.
    """
    return _setup(
        run_name,
        root_name=_ROOT,
        log_level=log_level,
        log_dir=log_dir or (Path.cwd() / "logs"),
        console=console,
        adapter=adapter,
    )


def disable_logging() -> None:
    """Remove all handlers from the cvgraph root logger (silent mode)."""
    _disable(_ROOT)
