from __future__ import annotations

import json
import logging
import os
import time
from pathlib import Path
from typing import Any, Mapping, Optional


logger = logging.getLogger(__name__)

AUDIT_LOG_ENV_VAR = 'NAS_POOL_AUDIT_LOG'
DEFAULT_AUDIT_LOG = '/var/log/nas-pool/audit.log'


def _resolve_log_path(path: Optional[str] = None) -> Path:
    return Path(path or os.getenv(AUDIT_LOG_ENV_VAR, DEFAULT_AUDIT_LOG))


def _ensure_parent(path: Path) -> None:
    parent = path.parent
    if not parent.exists():
        parent.mkdir(parents=True, exist_ok=True)


def record_storage_event(event: str, payload: Optional[Mapping[str, Any]] = None,
                         path: Optional[str] = None) -> bool:
    """Append a storage event as a JSON line for lightweight auditing."""

    log_path = _resolve_log_path(path)
    entry = {
        "timestamp": time.strftime("%Y-%m-%dT%H:%M:%SZ", time.gmtime()),
        "event": event,
        "payload": dict(payload or {}),
    }

    try:
        _ensure_parent(log_path)
        with log_path.open('a', encoding='utf-8') as fh:
            fh.write(json.dumps(entry, ensure_ascii=True))
            fh.write('\n')
    except OSError as exc:
        logger.error(
            "failed to write storage audit entry",
            extra={"operation": event},
            exc_info=(type(exc), exc, exc.__traceback__),
        )
        return False
    return True


class AuditLog:
    """Audit trail bound to one log file."""

    def __init__(self, path: Optional[str] = None):
        self.path = path

    def record(self, event: str, **payload: Any) -> bool:
        return record_storage_event(event, payload, path=self.path)
