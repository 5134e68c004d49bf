"""
Logging setup for the impersonation service.

Services log through ``logging.getLogger(__name__)`` and pass structured
context in ``extra={...}``. The formatter below appends those extra fields
to the rendered line so they survive into plain-text log output.

Usage:
    from estatedesk.core.logging_config import configure_logging

    configure_logging(level="INFO")
"""

import logging
import sys
from typing import Any, Dict, Optional

# Attributes every LogRecord carries; anything else came in through ``extra``.
_RESERVED_ATTRS = frozenset(
    logging.LogRecord("", 0, "", 0, "", (), None).__dict__.keys()
) | {"message", "asctime"}

_configured = False


class ExtraFieldsFormatter(logging.Formatter):
    """Formatter that renders ``extra`` fields as ``key=value`` pairs."""

    def format(self, record: logging.LogRecord) -> str:
        base = super().format(record)
        fields = self._extra_fields(record)
        if not fields:
            return base
        rendered = " ".join(f"{key}={value!r}" for key, value in sorted(fields.items()))
        return f"{base} | {rendered}"

    @staticmethod
    def _extra_fields(record: logging.LogRecord) -> Dict[str, Any]:
        return {
            key: value
            for key, value in record.__dict__.items()
            if key not in _RESERVED_ATTRS and not key.startswith("_")
        }


def configure_logging(level: Optional[str] = None, force: bool = False) -> None:
    """
    Install a single stream handler on the root logger.

    Args:
        level: Log level name. Defaults to the ``log_level`` setting.
        force: Reconfigure even if logging was already set up.
    """
    global _configured
    if _configured and not force:
        return

    if level is None:
        from estatedesk.core.config import get_settings

        level = get_settings().log_level

    handler = logging.StreamHandler(sys.stdout)
    handler.setFormatter(
        ExtraFieldsFormatter("%(asctime)s %(levelname)s [%(name)s] %(message)s")
    )

    root = logging.getLogger()
    for existing in list(root.handlers):
        root.removeHandler(existing)
    root.addHandler(handler)
    root.setLevel(level.upper())

    # APScheduler logs every job execution at INFO
    logging.getLogger("apscheduler").setLevel(logging.WARNING)

    _configured = True
