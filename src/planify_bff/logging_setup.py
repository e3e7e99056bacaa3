# src/planify_bff/logging_setup.py

import logging
import sys


class _ThirdPartyNoiseFilter(logging.Filter):
    """Keep planify_bff logs, only warnings and up from everything else."""

    def filter(self, record: logging.LogRecord) -> bool:
        if record.name.startswith("planify_bff") or record.name.startswith("uvicorn.error"):
            return True
        return record.levelno >= logging.WARNING


def setup_logging(level: str = "INFO") -> None:
    """
    Console logging for the service. Call once at startup; calling again
    replaces the handler instead of stacking a second one.
    """
    root = logging.getLogger()
    root.setLevel(level.upper())

    for h in list(root.handlers):
        if getattr(h, "_planify", False):
            root.removeHandler(h)

    handler = logging.StreamHandler(sys.stderr)
    handler._planify = True
    handler.setFormatter(logging.Formatter(
        fmt="%(asctime)s.%(msecs)03d %(levelname)s %(name)s: %(message)s",
        datefmt="%Y-%m-%d %H:%M:%S",
    ))
    handler.addFilter(_ThirdPartyNoiseFilter())
    root.addHandler(handler)

    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(logging.WARNING)
