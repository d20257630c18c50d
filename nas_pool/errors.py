"""Error types raised by storage pool operations."""

from typing import Any, Dict, List, Optional


class StorageError(Exception):
    """Base class for storage pool errors."""

    def __init__(self, message: str):
        super().__init__(message)
        self.message = message

    def to_dict(self) -> Dict[str, Any]:
        return {"error": self.message, "type": type(self).__name__}


class ValidationError(StorageError):
    """A disk plan violated a structural rule. Raised before any side effect."""

    def __init__(self, message: str, rule: str, disk: Optional[str] = None):
        super().__init__(message)
        self.rule = rule
        self.disk = disk

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["rule"] = self.rule
        if self.disk:
            result["disk"] = self.disk
        return result


class PreparationWarning(StorageError):
    """Preparing a single disk failed; the surrounding operation continues."""

    def __init__(self, disk_id: str, message: str):
        super().__init__(f"Warning: Format failed for {disk_id}: {message}")
        self.disk_id = disk_id
        self.detail = message


class ConfigurationError(StorageError):
    """A mount, union or config-write step failed and aborted the request."""

    def __init__(self, message: str, results: Optional[List[str]] = None):
        super().__init__(message)
        self.results = list(results or [])

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["results"] = list(self.results)
        return result


class ConflictError(StorageError):
    """An operation of the same kind is already running."""

    def __init__(self, kind: str, progress: int = 0):
        super().__init__(f"{kind.capitalize()} already in progress")
        self.kind = kind
        self.progress = progress

    def to_dict(self) -> Dict[str, Any]:
        result = super().to_dict()
        result["progress"] = self.progress
        return result


class BackendMismatchError(StorageError):
    """An operation was invoked for a backend that is not active."""

    def __init__(self, expected: str, active: str):
        super().__init__(f"{expected} backend not active (active backend: {active})")
        self.expected = expected
        self.active = active


class SubprocessFailure(StorageError):
    """An external command exited nonzero without a known benign pattern."""

    def __init__(self, command: str, returncode: Optional[int], stderr: str = ""):
        detail = stderr.strip() or f"exit code {returncode}"
        super().__init__(f"Command failed: {command}: {detail}")
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
