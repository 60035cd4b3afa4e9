"""
Logging setup for the livestage CLI.

Library modules only create loggers with ``logging.getLogger(__name__)``;
handlers are installed here, once, by whichever entry point runs first.
"""

from __future__ import annotations

import logging
import os
import sys
from typing import Mapping, Optional, Union

LOG_FORMAT = "[%(asctime)s] %(levelname)-8s %(name)s: %(message)s"
LEVEL_ENV = "LIVESTAGE_LOG_LEVEL"

# Third-party loggers that flood INFO with per-packet detail.
NOISY_LOGGERS = ("aioice", "aiortc", "websockets.client", "libav")


def resolve_level(level: Union[int, str], environ: Optional[Mapping[str, str]] = None) -> int:
    """Pick the effective level: ``LIVESTAGE_LOG_LEVEL`` wins over ``level``."""

    environ = os.environ if environ is None else environ
    override = environ.get(LEVEL_ENV)
    candidate: Union[int, str] = override.strip().upper() if override else level
    if isinstance(candidate, int):
        return candidate
    resolved = logging.getLevelName(str(candidate).upper())
    return resolved if isinstance(resolved, int) else logging.INFO


def configure_logging(
    level: Union[int, str] = logging.INFO,
    format: Optional[str] = None,
    *,
    environ: Optional[Mapping[str, str]] = None,
) -> int:
    """
    Install a stderr handler on the root logger unless one already exists,
    and keep media stack chatter at WARNING unless running at DEBUG.
    Returns the level in effect.
    """

    effective = resolve_level(level, environ)
    root = logging.getLogger()
    if not root.handlers:
        logging.basicConfig(
            level=effective,
            format=format or LOG_FORMAT,
            handlers=[logging.StreamHandler(sys.stderr)],
        )
    for name in NOISY_LOGGERS:
        logging.getLogger(name).setLevel(logging.WARNING if effective > logging.DEBUG else logging.NOTSET)
    return effective
