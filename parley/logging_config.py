from __future__ import annotations

import logging
from pathlib import Path

from rich.console import Console
from rich.logging import RichHandler

_LOGGING_CONFIGURED = False


def setup_logging(level: str = "WARNING", log_file: Path | None = None) -> None:
    """Configure the ``parley`` logger.

    Console output goes to stderr through rich so it never interleaves with a
    streamed answer on stdout. ``log_file`` additionally gets plain records.
    """
    global _LOGGING_CONFIGURED
    if _LOGGING_CONFIGURED:
        return

    app_logger = logging.getLogger("parley")
    app_logger.setLevel(level.upper())
    app_logger.propagate = False

    console_handler = RichHandler(
        console=Console(stderr=True),
        show_path=False,
        rich_tracebacks=True,
        markup=False,
    )
    console_handler.setFormatter(logging.Formatter("%(name)s - %(message)s"))
    app_logger.addHandler(console_handler)

    if log_file is not None:
        log_file.parent.mkdir(parents=True, exist_ok=True)
        file_handler = logging.FileHandler(log_file, encoding="utf-8")
        file_handler.setFormatter(
            logging.Formatter("%(asctime)s [%(levelname)s] %(name)s - %(message)s")
        )
        app_logger.addHandler(file_handler)

    # SDK request logs are noise at anything above DEBUG.
    if app_logger.level > logging.DEBUG:
        for name in ("httpx", "openai", "ollama"):
            logging.getLogger(name).setLevel(logging.WARNING)

    _LOGGING_CONFIGURED = True
