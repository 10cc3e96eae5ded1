"""Central logging configuration for shardcache processes."""

from __future__ import annotations

import sys
from collections.abc import Iterable, Mapping

from loguru import logger

DEFAULT_LOG_FORMAT = (
    "{time:YYYY-MM-DD HH:mm:ss.SSS} | {level: <8} | "
    "{extra[process_id]} | {name}:{function}:{line} - {message}"
)

PACKAGE_PREFIX = "shardcache."


def _scope_matches(record_name: str, scopes: tuple[str, ...]) -> bool:
    for scope in scopes:
        if record_name.startswith(scope):
            return True
        # Allow short scopes such as "core.stampede".
        if not scope.startswith(PACKAGE_PREFIX) and record_name.startswith(
            f"{PACKAGE_PREFIX}{scope}"
        ):
            return True
    return False


def configure_logging(
    level: str,
    *,
    process_id: str = "-",
    debug_scopes: Iterable[str] = (),
    colorize: bool = False,
) -> tuple[int, ...]:
    """Configure loguru for one cache process.

    `debug_scopes` enables DEBUG output for selected modules (for example
    ``core.invalidation_bus``) while the main sink stays at `level`; per-key
    cache events are logged at DEBUG and are too noisy to enable globally.
    """
    logger.remove()
    logger.configure(extra={"process_id": process_id})

    handler_ids: list[int] = [
        logger.add(
            sys.stderr,
            level=level,
            format=DEFAULT_LOG_FORMAT,
            colorize=colorize,
        )
    ]

    scopes = tuple(scope.strip() for scope in debug_scopes if scope.strip())
    if scopes and level.upper() != "DEBUG":

        def _debug_filter(record: object) -> bool:
            if not isinstance(record, Mapping):
                return False
            record_level = record.get("level")
            if getattr(record_level, "name", None) != "DEBUG":
                return False
            return _scope_matches(str(record.get("name", "")), scopes)

        handler_ids.append(
            logger.add(
                sys.stderr,
                level="DEBUG",
                format=DEFAULT_LOG_FORMAT,
                colorize=colorize,
                filter=_debug_filter,
            )
        )

    return tuple(handler_ids)
