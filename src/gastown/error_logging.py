"""Error telemetry for the gt CLI.

Fatal command errors are appended to ~/.gt/errors.jsonl so recurring
dispatch failures can be spotted later.

Entry schema:
{
    "timestamp": "2025-12-09T10:42:00Z",
    "command": "gt sling feature gastown/Toast",
    "subcommand": "sling",
    "error_type": "HOOK_OCCUPIED",
    "error_code": "HOOK_OCCUPIED",
    "message": "hook already occupied by gt-abc",
    "context": {"step": "collision"},
    "duration_ms": 45
}
"""

import json
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Optional


class ErrorType(Enum):
    """Error taxonomy for gt CLI errors."""

    INVALID_TARGET = "INVALID_TARGET"
    THING_NOT_FOUND = "THING_NOT_FOUND"
    TARGET_NOT_FOUND = "TARGET_NOT_FOUND"
    HOOK_OCCUPIED = "HOOK_OCCUPIED"
    HOOK_CONFLICT = "HOOK_CONFLICT"
    UNKNOWN_IDENTITY = "UNKNOWN_IDENTITY"
    UNCOMMITTED_WORK = "UNCOMMITTED_WORK"
    UNREAD_MAIL = "UNREAD_MAIL"
    DAEMON_NOT_RUNNING = "DAEMON_NOT_RUNNING"
    BEADS_ERROR = "BEADS_ERROR"
    MAIL_ERROR = "MAIL_ERROR"
    TMUX_ERROR = "TMUX_ERROR"
    CONFIG_ERROR = "CONFIG_ERROR"
    UNEXPECTED_ERROR = "UNEXPECTED_ERROR"


@dataclass
class ErrorEntry:
    """A single error log entry."""

    timestamp: str
    command: str
    subcommand: str
    error_type: ErrorType
    message: str
    context: Optional[dict[str, Any]] = None
    duration_ms: Optional[int] = None

    def to_dict(self) -> dict[str, Any]:
        result = {
            "timestamp": self.timestamp,
            "command": self.command,
            "subcommand": self.subcommand,
            "error_type": self.error_type.value,
            "error_code": self.error_type.value,
            "message": self.message,
        }
        if self.context is not None:
            result["context"] = self.context
        if self.duration_ms is not None:
            result["duration_ms"] = self.duration_ms
        return result


class ErrorLogger:
    """Logger for error telemetry to a JSONL file with rotation."""

    DEFAULT_MAX_ENTRIES = 10000

    def __init__(
        self,
        error_file: Optional[Path] = None,
        max_entries: int = DEFAULT_MAX_ENTRIES,
    ):
        if error_file is None:
            error_file = Path.home() / ".gt" / "errors.jsonl"

        self.error_file = Path(error_file)
        self.max_entries = max_entries

    def log_error(
        self,
        command: str,
        subcommand: str,
        error_type: ErrorType,
        message: str,
        context: Optional[dict[str, Any]] = None,
        duration_ms: Optional[int] = None,
    ) -> None:
        entry = ErrorEntry(
            timestamp=datetime.now().isoformat() + "Z",
            command=command,
            subcommand=subcommand,
            error_type=error_type,
            message=message,
            context=context,
            duration_ms=duration_ms,
        )

        self.error_file.parent.mkdir(parents=True, exist_ok=True)
        with open(self.error_file, "a") as f:
            f.write(json.dumps(entry.to_dict()) + "\n")

        self._rotate_if_needed()

    def _rotate_if_needed(self) -> None:
        if not self.error_file.exists():
            return

        lines = self.error_file.read_text().strip().split("\n")
        if len(lines) > self.max_entries:
            keep_lines = lines[-self.max_entries:]
            self.error_file.write_text("\n".join(keep_lines) + "\n")

    def get_recent_errors(self, limit: int = 10) -> list[dict[str, Any]]:
        """Return the most recent entries, newest first."""
        if not self.error_file.exists():
            return []

        entries = []
        for line in self.error_file.read_text().strip().split("\n"):
            if not line:
                continue
            try:
                entries.append(json.loads(line))
            except json.JSONDecodeError:
                continue

        return list(reversed(entries[-limit:]))


def classify_error(exc: BaseException) -> ErrorType:
    """Map an exception to its ErrorType via its `error_type` attribute."""
    error_type = getattr(exc, "error_type", None)
    if isinstance(error_type, ErrorType):
        return error_type
    return ErrorType.UNEXPECTED_ERROR


_default_logger: Optional[ErrorLogger] = None


def _get_default_logger() -> ErrorLogger:
    global _default_logger
    if _default_logger is None:
        _default_logger = ErrorLogger()
    return _default_logger


def log_error(
    command: str,
    subcommand: str,
    error_type: ErrorType,
    message: str,
    context: Optional[dict[str, Any]] = None,
    duration_ms: Optional[int] = None,
) -> None:
    """Log an error to ~/.gt/errors.jsonl using the default logger."""
    _get_default_logger().log_error(
        command=command,
        subcommand=subcommand,
        error_type=error_type,
        message=message,
        context=context,
        duration_ms=duration_ms,
    )


def reset_default_logger() -> None:
    """Reset the default logger (for testing)."""
    global _default_logger
    _default_logger = None
