from __future__ import annotations

import logging
import sys

HANDLER_NAME = "remote_tasks.console"


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep remote_tasks records; let other libraries through at WARNING and above."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("remote_tasks"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: str | int = logging.WARNING) -> None:
    """Install the stderr console handler on the root logger.

    Call once, early, from the CLI entrypoint. Stdout is left alone because the
    runner echoes task output there. Calling again replaces the handler.
    """

    if isinstance(level, str):
        resolved = logging.getLevelName(level.upper())
        if not isinstance(resolved, int):
            raise ValueError(f"Unknown log level: {level!r}")
        level = resolved

    root = logging.getLogger()
    root.setLevel(level)
    remove_console_handler()

    handler = logging.StreamHandler(sys.stderr)
    handler.set_name(HANDLER_NAME)
    handler.setLevel(level)
    handler.setFormatter(
        logging.Formatter(
            fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
            datefmt="%Y-%m-%d %H:%M:%S",
        ),
    )
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)

    logging.captureWarnings(True)


def remove_console_handler() -> None:
    root = logging.getLogger()
    for handler in list(root.handlers):
        if handler.get_name() == HANDLER_NAME:
            root.removeHandler(handler)
