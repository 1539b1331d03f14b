"""Logging setup shared by the CLI and the HTTP app."""

from __future__ import annotations

import logging

from mneme.config import LoggingConfig

_configured = False


def setup_logging(config: LoggingConfig | None = None, force: bool = False) -> None:
    """Configure root logging once per process."""
    global _configured
    if _configured and not force:
        return
    cfg = config or LoggingConfig()
    level = getattr(logging, cfg.level.strip().upper(), logging.INFO)
    logging.basicConfig(level=level, format=cfg.format, force=force)
    # httpx logs every request at INFO
    logging.getLogger("httpx").setLevel(max(level, logging.WARNING))
    _configured = True
