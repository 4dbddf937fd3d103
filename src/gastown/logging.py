"""Event log for gt commands with hybrid format.

Events are written in hybrid format:
    YYYY-MM-DD HH:MM:SS LEVEL [command] Human message | {"json": "data"}

The left side is for people tailing the file, the right side for tools.
"""
import json
from pathlib import Path
from datetime import datetime
from typing import Dict, Any, Optional


class EventLogger:
    """Logger for gt command events.

    Events go to monthly files: gt-YYYY-MM.log
    Default location: ~/.gt/logs/ (sling and daemon pass <town>/logs/)
    """

    def __init__(self, log_dir: Optional[Path] = None):
        if log_dir is None:
            log_dir = Path.home() / ".gt" / "logs"

        self.log_dir = Path(log_dir)

    def _get_log_file(self) -> Path:
        """Get current month's log file path."""
        month_str = datetime.now().strftime("%Y-%m")
        return self.log_dir / f"gt-{month_str}.log"

    def _format_log_line(
        self,
        level: str,
        command: str,
        message: str,
        data: Dict[str, Any]
    ) -> str:
        timestamp = datetime.now().strftime("%Y-%m-%d %H:%M:%S")
        level_padded = level.ljust(5)
        json_str = json.dumps(data, ensure_ascii=False, default=str)
        return f"{timestamp} {level_padded} [{command}] {message} | {json_str}\n"

    def log_event(
        self,
        command: str,
        message: str,
        data: Dict[str, Any],
        level: str = "INFO"
    ) -> None:
        """Append one event.

        Args:
            command: Command name (sling, daemon, ...)
            message: Human-readable message
            data: Structured data as dict
            level: Log level (DEBUG, INFO, WARN, ERROR)
        """
        self.log_dir.mkdir(parents=True, exist_ok=True)
        log_line = self._format_log_line(level, command, message, data)
        with open(self._get_log_file(), "a") as f:
            f.write(log_line)

    def log_command_start(self, command: str, data: Dict[str, Any]) -> None:
        thing = data.get("thing", "")
        target = data.get("target", "")
        message = "Starting command"
        if thing and target:
            message = f"Starting command: {thing} -> {target}"

        self.log_event(command, message, data, level="INFO")

    def log_command_complete(
        self,
        command: str,
        duration_ms: int,
        data: Dict[str, Any]
    ) -> None:
        issue_id = data.get("issue_id", "")
        message = f"Command complete ({duration_ms}ms)"
        if issue_id:
            message = f"Command complete: {issue_id} ({duration_ms}ms)"

        if "duration_ms" not in data:
            data = {**data, "duration_ms": duration_ms}

        self.log_event(command, message, data, level="INFO")

    def log_warning(self, command: str, message: str, data: Dict[str, Any]) -> None:
        self.log_event(command, message, data, level="WARN")

    def log_error(
        self,
        command: str,
        message: str,
        data: Dict[str, Any]
    ) -> None:
        reason = data.get("reason", "")
        if reason:
            full_message = f"{message}: {reason}"
        else:
            full_message = message

        self.log_event(command, full_message, data, level="ERROR")

    def get_log_files(self, months_back: int = 6) -> list[Path]:
        """Get available log files, newest first."""
        if not self.log_dir.exists():
            return []
        return sorted(self.log_dir.glob("gt-*.log"), reverse=True)[:months_back]

    def read_logs(
        self,
        limit: int = 50,
        command_filter: Optional[str] = None,
        level_filter: Optional[str] = None
    ) -> list[dict]:
        """Read parsed log entries, newest first, with optional filtering."""
        entries = []

        for log_file in self.get_log_files():
            with open(log_file, 'r') as f:
                lines = f.readlines()
            for line in reversed(lines):
                entry = self._parse_log_line(line)
                if not entry:
                    continue
                if command_filter and entry['command'] != command_filter:
                    continue
                if level_filter and entry['level'] != level_filter:
                    continue

                entries.append(entry)
                if len(entries) >= limit:
                    return entries

        return entries

    def _parse_log_line(self, line: str) -> dict | None:
        try:
            parts = line.split(' | ', 1)
            if len(parts) != 2:
                return None

            left_part, json_part = parts[0], parts[1].strip()

            tokens = left_part.split(None, 3)
            if len(tokens) < 4:
                return None

            command_and_message = tokens[3]
            if not command_and_message.startswith('['):
                return None

            bracket_end = command_and_message.index(']')
            return {
                'timestamp': f"{tokens[0]} {tokens[1]}",
                'level': tokens[2].strip(),
                'command': command_and_message[1:bracket_end],
                'message': command_and_message[bracket_end + 2:].strip(),
                'data': json.loads(json_part),
            }
        except (ValueError, IndexError, json.JSONDecodeError):
            return None
