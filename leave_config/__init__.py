"""
leave_config -- single public entrypoint for runtime configuration.

Responsibility:
    Provides the ONLY way to obtain configuration at runtime through
    ``get_active_config()``.  Services, batch jobs and scripts receive the
    returned ``LeaveConfig`` and hand plain values to the kernel; the kernel
    never imports from this package.

Invariants enforced:
    - Single entrypoint: file selection and environment overrides happen
      here and nowhere else.
    - The returned configuration is frozen and has passed value validation.

Failure modes:
    - ``FileNotFoundError`` -- configured file does not exist.
    - ``ValueError`` / ``KeyError`` -- invalid configuration, naming the key.

Audit relevance:
    Every call emits a ``LEAVE_CONFIG_TRACE`` log entry with the source path
    and checksum, tying each run to the configuration that governed it.
"""

from __future__ import annotations

import logging
import os
from dataclasses import replace
from pathlib import Path

from leave_config.loader import load_config, parse_logging
from leave_config.schema import LeaveConfig

_logger = logging.getLogger("leave_kernel.config")

DEFAULT_CONFIG_PATH = Path(__file__).parent / "defaults.yaml"

CONFIG_PATH_ENV = "LEAVE_LEDGER_CONFIG"
DATABASE_URL_ENV = "DATABASE_URL"
LOG_LEVEL_ENV = "LEAVE_LOG_LEVEL"


def get_active_config(path: Path | str | None = None) -> LeaveConfig:
    """The ONLY public configuration entrypoint.

    File selection: ``path`` if given, else ``$LEAVE_LEDGER_CONFIG``, else
    the packaged ``defaults.yaml``.  ``$DATABASE_URL`` and
    ``$LEAVE_LOG_LEVEL`` override the corresponding keys.

    Raises:
        FileNotFoundError: If the selected file does not exist.
        ValueError: If validation fails.
    """
    selected = Path(path or os.environ.get(CONFIG_PATH_ENV) or DEFAULT_CONFIG_PATH)
    config = load_config(selected)

    database_url = os.environ.get(DATABASE_URL_ENV)
    if database_url:
        config = replace(config, database=replace(config.database, url=database_url))

    log_level = os.environ.get(LOG_LEVEL_ENV)
    if log_level:
        config = replace(config, logging=parse_logging({"level": log_level}))

    _logger.info(
        "LEAVE_CONFIG_TRACE",
        extra={
            "trace_type": "LEAVE_CONFIG_TRACE",
            "source": config.source,
            "checksum": config.checksum,
            "document_type_count": len(config.approval.document_types),
            "database_overridden": bool(database_url),
        },
    )
    return config


__all__ = [
    "DEFAULT_CONFIG_PATH",
    "LeaveConfig",
    "get_active_config",
]
