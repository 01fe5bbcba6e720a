"""Process-wide logging setup for the server and CLI entrypoints."""

from __future__ import annotations

import logging

from handoff_bot.shared.redaction import redact_text

LOG_FORMAT = "%(asctime)s %(levelname)s %(name)s: %(message)s"


class RedactingFormatter(logging.Formatter):
    def format(self, record: logging.LogRecord) -> str:
        return redact_text(super().format(record))


def configure_logging(level: str = "INFO") -> None:
    root = logging.getLogger("handoff_bot")
    root.setLevel(getattr(logging, level.upper(), logging.INFO))
    if any(getattr(handler, "_handoff_bot", False) for handler in root.handlers):
        return
    handler = logging.StreamHandler()
    handler.setFormatter(RedactingFormatter(LOG_FORMAT))
    handler._handoff_bot = True  # type: ignore[attr-defined]
    root.addHandler(handler)
