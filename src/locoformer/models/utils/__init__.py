from __future__ import annotations

import logging
import re

_LOGGED: set[tuple[str, str]] = set()


def log_once(logger: logging.Logger, msg: str, *, level: int = logging.INFO) -> None:
    """Log `msg` only the first time it is seen for the given logger."""
    key = (logger.name, msg)
    if key in _LOGGED:
        return
    _LOGGED.add(key)
    logger.log(level, msg)


def parse_version(version: str) -> tuple[int, ...]:
    """Parse the leading numeric components of a version string, e.g. `2.5.1+cu121` -> `(2, 5, 1)`."""
    parts: list[int] = []
    for part in version.split("."):
        if (m := re.match(r"\d+", part)) is None:
            break
        parts.append(int(m.group()))
    return tuple(parts)
