"""Terminal session backend: one tmux session per agent.

Lookups go through libtmux; mutations shell out to the tmux binary so that
they behave the same with or without a running server.
"""

import logging
import os
import subprocess
import time
from typing import List, Optional

import libtmux

from gastown.errors import TmuxError

logger = logging.getLogger(__name__)


def get_server():
    """Get libtmux server instance."""
    try:
        return libtmux.Server()
    except Exception:
        return None


class Tmux:
    """Session operations used by sling, the lifecycle processor and the daemon.

    Killing or querying a session that does not exist is a no-op, not an error.
    """

    def __init__(self, enter_delay: float = 0.5):
        # Pause between pasting text and pressing Enter; without it Enter can
        # arrive before the paste has landed in the pane.
        self.enter_delay = enter_delay

    def _tmux(self, *args, check: bool = True) -> subprocess.CompletedProcess:
        try:
            result = subprocess.run(
                ["tmux", *args],
                capture_output=True,
                text=True,
            )
        except FileNotFoundError:
            raise TmuxError("tmux not found. Install tmux or check PATH.")
        if check and result.returncode != 0:
            detail = (result.stderr or "").strip() or f"exit status {result.returncode}"
            raise TmuxError(f"tmux {args[0]}: {detail}")
        return result

    def list_sessions(self) -> List[str]:
        """Names of all sessions; empty when tmux is not running."""
        server = get_server()
        if not server:
            return []
        try:
            return [s.session_name for s in server.sessions]
        except Exception:
            return []

    def has_session(self, name: str) -> bool:
        return name in self.list_sessions()

    def new_session(self, name: str, workdir: str) -> None:
        self._tmux("new-session", "-d", "-s", name, "-c", str(workdir))
        logger.debug("created session %s in %s", name, workdir)

    def kill_session(self, name: str) -> None:
        if not self.has_session(name):
            return
        self._tmux("kill-session", "-t", name)
        logger.debug("killed session %s", name)

    def set_environment(self, name: str, key: str, value: str) -> None:
        self._tmux("set-environment", "-t", name, key, value)

    def send_keys(self, name: str, text: str) -> None:
        """Type text into the session and press Enter."""
        self._tmux("send-keys", "-t", name, "-l", text)
        time.sleep(self.enter_delay)
        self._tmux("send-keys", "-t", name, "Enter")

    def send_keys_delayed(self, name: str, text: str, delay_ms: int) -> None:
        time.sleep(delay_ms / 1000)
        self.send_keys(name, text)

    def current_session(self) -> Optional[str]:
        """Name of the session this process runs in, or None outside tmux."""
        if 'TMUX' not in os.environ:
            return None
        result = self._tmux("display-message", "-p", "#{session_name}", check=False)
        name = (result.stdout or "").strip()
        if result.returncode != 0 or not name:
            return None
        return name

    def switch_client(self, name: str) -> None:
        self._tmux("switch-client", "-t", name)

    def nudge_session(self, name: str, text: str) -> None:
        """Send an attention message into a running agent session."""
        if not self.has_session(name):
            raise TmuxError(f"session {name} not found")
        self.send_keys(name, text)

