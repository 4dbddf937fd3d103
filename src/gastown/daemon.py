"""Town daemon: heartbeat loop, lifecycle processing, PID/state files.

The daemon is a dumb scheduler. Every heartbeat it pokes the mayor and each
rig witness so they look at their work, processes lifecycle requests mailed
to the "daemon" identity, and records progress in <town>/daemon/state.json.
"""

import json
import logging
import os
import signal
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

from gastown.address import MAYOR_SESSION, is_witness_session
from gastown.agents import AgentRegistry, builtin_registry
from gastown.config import get_config, get_heartbeat_interval
from gastown.errors import DaemonNotRunningError
from gastown.lifecycle import LifecycleProcessor, ProcessedRequest
from gastown.logging import EventLogger
from gastown.mail import Router
from gastown.tmux import Tmux

logger = logging.getLogger(__name__)

MAYOR_HEARTBEAT = "HEARTBEAT: check your rigs"
WITNESS_HEARTBEAT = "HEARTBEAT: check your workers"

# Grace period between SIGTERM and SIGKILL in stop_daemon()
STOP_GRACE_SECONDS = 0.5


def daemon_dir(town_root: Path) -> Path:
    return Path(town_root) / "daemon"


def state_file(town_root: Path) -> Path:
    return daemon_dir(town_root) / "state.json"


def pid_file(town_root: Path) -> Path:
    return daemon_dir(town_root) / "daemon.pid"


@dataclass
class DaemonConfig:
    """Configuration for one town's daemon."""
    town_root: Path
    heartbeat_interval: float = 60.0
    log_file: Optional[Path] = None
    pid_file: Optional[Path] = None

    def __post_init__(self):
        self.town_root = Path(self.town_root)
        if self.log_file is None:
            self.log_file = daemon_dir(self.town_root) / "daemon.log"
        if self.pid_file is None:
            self.pid_file = pid_file(self.town_root)


def default_config(town_root: Path) -> DaemonConfig:
    return DaemonConfig(
        town_root=Path(town_root),
        heartbeat_interval=get_heartbeat_interval(town_root),
    )


@dataclass
class HeartbeatReport:
    mayor_poked: bool = False
    witnesses_poked: List[str] = field(default_factory=list)
    processed: List[ProcessedRequest] = field(default_factory=list)


class DaemonPhase(Enum):
    STARTING = "starting"
    RUNNING = "running"
    SHUTTING_DOWN = "shutting_down"
    STOPPED = "stopped"


def _format_time(value: Optional[datetime]) -> Optional[str]:
    return value.isoformat() if value else None


def _parse_time(value: Any) -> Optional[datetime]:
    if not value:
        return None
    try:
        return datetime.fromisoformat(str(value))
    except ValueError:
        return None


@dataclass
class DaemonState:
    running: bool = False
    pid: int = 0
    started_at: Optional[datetime] = None
    last_heartbeat: Optional[datetime] = None
    heartbeat_count: int = 0

    def to_dict(self) -> Dict[str, Any]:
        return {
            "running": self.running,
            "pid": self.pid,
            "started_at": _format_time(self.started_at),
            "last_heartbeat": _format_time(self.last_heartbeat),
            "heartbeat_count": self.heartbeat_count,
        }

    @classmethod
    def from_dict(cls, data: Dict[str, Any]) -> "DaemonState":
        return cls(
            running=bool(data.get("running", False)),
            pid=int(data.get("pid") or 0),
            started_at=_parse_time(data.get("started_at")),
            last_heartbeat=_parse_time(data.get("last_heartbeat")),
            heartbeat_count=int(data.get("heartbeat_count") or 0),
        )


def load_state(town_root: Path) -> DaemonState:
    """
    Read <town>/daemon/state.json.

    A missing file is an empty (not running) state. Corrupt JSON raises
    json.JSONDecodeError.
    """
    path = state_file(town_root)
    if not path.exists():
        return DaemonState()
    return DaemonState.from_dict(json.loads(path.read_text()))


def save_state(town_root: Path, state: DaemonState) -> None:
    path = state_file(town_root)
    path.parent.mkdir(parents=True, exist_ok=True)
    path.write_text(json.dumps(state.to_dict(), indent=2))


def _process_alive(pid: int) -> bool:
    try:
        os.kill(pid, 0)
    except (ProcessLookupError, PermissionError):
        return False
    return True


def is_running(town_root: Path) -> Tuple[bool, Optional[int]]:
    """Check whether a daemon is running for town_root.

    Returns:
        Tuple of (is_running, pid). pid is None if not running. A PID file
        naming a dead process is removed.
    """
    pidfile = pid_file(town_root)
    if not pidfile.exists():
        return (False, None)

    try:
        pid = int(pidfile.read_text().strip())
    except ValueError:
        pidfile.unlink(missing_ok=True)
        return (False, None)

    if not _process_alive(pid):
        # PID file is stale
        pidfile.unlink(missing_ok=True)
        return (False, None)
    return (True, pid)


def stop_daemon(town_root: Path, sleep=time.sleep) -> int:
    """
    Stop the town's daemon: SIGTERM, short grace, SIGKILL if still alive.

    The PID file is removed either way. Returns the stopped pid.

    Raises:
        DaemonNotRunningError: If no daemon is running for town_root
    """
    running, pid = is_running(town_root)
    if not running:
        raise DaemonNotRunningError(town_root)

    try:
        try:
            os.kill(pid, signal.SIGTERM)
        except ProcessLookupError:
            logger.info(f"daemon {pid} exited before SIGTERM")
            return pid
        sleep(STOP_GRACE_SECONDS)

        if _process_alive(pid):
            logger.warning(f"daemon {pid} ignored SIGTERM, sending SIGKILL")
            try:
                os.kill(pid, signal.SIGKILL)
            except ProcessLookupError:
                pass
    finally:
        pid_file(town_root).unlink(missing_ok=True)
    return pid


def attach_log_file(log_file: Path) -> logging.Handler:
    """Send gastown.* logging to the daemon log file."""
    log_file = Path(log_file)
    log_file.parent.mkdir(parents=True, exist_ok=True)
    handler = logging.FileHandler(log_file)
    handler.setFormatter(logging.Formatter("%(asctime)s %(levelname)s %(name)s: %(message)s"))
    package_logger = logging.getLogger("gastown")
    package_logger.addHandler(handler)
    if package_logger.level == logging.NOTSET or package_logger.level > logging.INFO:
        package_logger.setLevel(logging.INFO)
    return handler


class Daemon:
    """
    The heartbeat loop.

    run() blocks until stop() is called or SIGINT/SIGTERM arrives. A single
    Event is the only wait point: the heartbeat timer is Event.wait(interval)
    and both signals and stop() set the event, so heartbeats never overlap
    and an in-flight heartbeat always completes.
    """

    def __init__(
        self,
        config: DaemonConfig,
        tmux=None,
        processor: Optional[LifecycleProcessor] = None,
        registry: Optional[AgentRegistry] = None,
        persist_state: bool = True,
        event_logger: Optional[EventLogger] = None,
    ):
        self.config = config
        self.persist_state = persist_state
        self.event_logger = event_logger or EventLogger(config.town_root / "logs")
        self.tmux = tmux if tmux is not None else Tmux()
        if processor is None:
            town_config = get_config(config.town_root)
            processor = LifecycleProcessor(
                config.town_root,
                self.tmux,
                Router(config.town_root, town_config["bd_path"]),
                registry if registry is not None else builtin_registry(),
                agent=town_config["agent"],
                kill_settle_ms=town_config["kill_settle_ms"],
                prime_delay_ms=town_config["prime_delay_ms"],
            )
        self.processor = processor
        self.state = DaemonState()
        self.phase = DaemonPhase.STOPPED
        self._stop_event = threading.Event()
        self._stop_reason = "stop requested"

    def stop(self, reason: str = "stop requested") -> None:
        self._stop_reason = reason
        self._stop_event.set()

    def _handle_signal(self, signum, frame) -> None:
        self.stop(f"received signal {signal.Signals(signum).name}")

    def _install_signal_handlers(self) -> Dict[int, Any]:
        previous = {}
        if threading.current_thread() is not threading.main_thread():
            # Signal handlers can only be installed from the main thread
            return previous
        for signum in (signal.SIGINT, signal.SIGTERM):
            previous[signum] = signal.signal(signum, self._handle_signal)
        return previous

    def _persist(self, what: str) -> None:
        if not self.persist_state:
            return
        try:
            save_state(self.config.town_root, self.state)
        except OSError as e:
            logger.warning(f"failed to save {what}: {e}")

    def _record(self, write, *args) -> None:
        """Write one event-log entry for the daemon command."""
        try:
            write("daemon", *args)
        except OSError as e:
            logger.warning(f"failed to write event log: {e}")

    def _task_failed(self, task: str, error: BaseException) -> None:
        logger.error(f"Error {task}: {error}")
        self._record(self.event_logger.log_warning, f"Heartbeat task failed: {task}", {
            "task": task,
            "reason": str(error),
            "error_class": type(error).__name__,
        })

    def run(self) -> DaemonState:
        """Run until stopped. Returns the final state."""
        self.phase = DaemonPhase.STARTING
        pid = os.getpid()
        start_time = time.time()
        logger.info(f"Daemon starting (PID {pid})")
        self._record(self.event_logger.log_command_start, {
            "town": str(self.config.town_root),
            "pid": pid,
            "interval": self.config.heartbeat_interval,
        })

        pidfile = Path(self.config.pid_file)
        pidfile.parent.mkdir(parents=True, exist_ok=True)
        pidfile.write_text(str(pid))

        previous_handlers = {}
        try:
            self.state = DaemonState(running=True, pid=pid, started_at=datetime.now())
            self._persist("state")
            previous_handlers = self._install_signal_handlers()

            logger.info(f"Daemon running, heartbeat every {self.config.heartbeat_interval}s")
            self.heartbeat()
            self.phase = DaemonPhase.RUNNING

            while not self._stop_event.wait(self.config.heartbeat_interval):
                self.heartbeat()

            logger.info(f"Daemon shutting down ({self._stop_reason})")
            self.phase = DaemonPhase.SHUTTING_DOWN
            self.state.running = False
            self._persist("final state")
        finally:
            for signum, handler in previous_handlers.items():
                signal.signal(signum, handler)
            pidfile.unlink(missing_ok=True)
            self.phase = DaemonPhase.STOPPED

        logger.info("Daemon stopped")
        self._record(self.event_logger.log_command_complete, int((time.time() - start_time) * 1000), {
            "pid": pid,
            "heartbeats": self.state.heartbeat_count,
            "reason": self._stop_reason,
        })
        return self.state

    def heartbeat(self) -> HeartbeatReport:
        """One cycle. Nothing in here stops the daemon."""
        logger.info("Heartbeat starting")

        report = HeartbeatReport(
            mayor_poked=self.poke_mayor(),
            witnesses_poked=self.poke_witnesses(),
            processed=self.process_lifecycle_requests(),
        )

        self.state.last_heartbeat = datetime.now()
        self.state.heartbeat_count += 1
        self._persist("state")

        logger.info(f"Heartbeat complete (#{self.state.heartbeat_count})")
        return report

    def poke_mayor(self) -> bool:
        try:
            if not self.tmux.has_session(MAYOR_SESSION):
                logger.info("Mayor session not running, skipping poke")
                return False
            self.tmux.send_keys(MAYOR_SESSION, MAYOR_HEARTBEAT)
        except Exception as e:
            self._task_failed("poking Mayor", e)
            return False
        logger.info("Poked Mayor")
        return True

    def poke_witnesses(self) -> List[str]:
        poked = []
        try:
            sessions = self.tmux.list_sessions()
        except Exception as e:
            self._task_failed("listing sessions", e)
            return poked

        for session in sessions:
            if not is_witness_session(session):
                continue
            try:
                self.tmux.send_keys(session, WITNESS_HEARTBEAT)
            except Exception as e:
                self._task_failed(f"poking Witness {session}", e)
                continue
            logger.info(f"Poked Witness: {session}")
            poked.append(session)
        return poked

    def process_lifecycle_requests(self) -> List[ProcessedRequest]:
        try:
            return self.processor.process()
        except Exception as e:
            self._task_failed("processing lifecycle requests", e)
            return []


def run_once(
    config: DaemonConfig,
    tmux=None,
    processor: Optional[LifecycleProcessor] = None,
    registry: Optional[AgentRegistry] = None,
) -> HeartbeatReport:
    """Run a single heartbeat without PID or state files."""
    daemon = Daemon(config, tmux=tmux, processor=processor, registry=registry, persist_state=False)
    return daemon.heartbeat()
