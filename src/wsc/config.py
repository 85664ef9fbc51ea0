from __future__ import annotations

import logging
import os

from dotenv import load_dotenv

load_dotenv()

LOGGER_NAME = "wst"
logger = logging.getLogger(LOGGER_NAME)


def _env_int(name: str, default: int) -> int:
    raw = os.getenv(name, "").strip()
    if not raw:
        return default
    try:
        return int(raw)
    except ValueError:
        logger.warning("ignoring non-integer %s=%r", name, raw)
        return default


def _env_list(name: str, default: str) -> tuple[str, ...]:
    raw = os.getenv(name, default)
    return tuple(part.strip().lower() for part in raw.split(",") if part.strip())


LOG_LEVEL = os.getenv("WST_LOG_LEVEL", "WARNING").upper()
MIN_SELECTION_CHARS = _env_int("WST_MIN_SELECTION_CHARS", 3)
CONTEXT_CHARS = _env_int("WST_CONTEXT_CHARS", 300)
DIAGRAM_MACRO_NAMES = _env_list("WST_DIAGRAM_MACROS", "mermaid")
MERMAID_CLI = os.getenv("WST_MERMAID_CLI", "mmdc")


def configure_logging(level: str | int | None = None) -> None:
    """Attach a stderr handler to the ``wst`` logger. Called by the CLI only."""
    resolved = level if level is not None else LOG_LEVEL
    if isinstance(resolved, str):
        resolved = getattr(logging, resolved.upper(), logging.WARNING)
    if not logger.handlers:
        handler = logging.StreamHandler()
        handler.setFormatter(logging.Formatter("%(asctime)s | %(levelname)s | %(name)s | %(message)s"))
        logger.addHandler(handler)
    logger.setLevel(resolved)


def log_event(level: int, event: str, **fields) -> None:
    if not logger.isEnabledFor(level):
        return
    parts = [event]
    for key, value in fields.items():
        if value is None:
            continue
        text = str(value)
        if len(text) > 200:
            text = text[:197] + "..."
        parts.append(f"{key}={text}")
    logger.log(level, " | ".join(parts))
