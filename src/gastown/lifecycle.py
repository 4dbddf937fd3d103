"""Lifecycle requests: agents asking the daemon to cycle, restart or stop them.

Agents mail the "daemon" identity. A message is a request when its title
mentions one of the keywords below (case-insensitive); anything else is left
alone. Executed requests are closed so they are not run again.
"""

import logging
import time
from dataclasses import dataclass
from datetime import datetime
from enum import Enum
from pathlib import Path
from typing import List, Optional

from gastown.address import (
    MAYOR_SESSION,
    SESSION_PREFIX,
    WITNESS_SESSION_SUFFIX,
)
from gastown.agents import AgentRegistry
from gastown.env import AgentEnvConfig, agent_env
from gastown.errors import (
    BeadsCLINotFoundError,
    GastownError,
    MailError,
    UnknownIdentityError,
)
from gastown.mail import Message
from gastown.session import launch_session

logger = logging.getLogger(__name__)

DAEMON_IDENTITY = "daemon"


class LifecycleAction(Enum):
    CYCLE = "cycle"
    RESTART = "restart"
    SHUTDOWN = "shutdown"


# Checked in order; first match wins
_KEYWORDS = (
    (("cycle", "cycling"), LifecycleAction.CYCLE),
    (("restart",), LifecycleAction.RESTART),
    (("shutdown", "stop"), LifecycleAction.SHUTDOWN),
)


@dataclass(frozen=True)
class LifecycleRequest:
    sender: str
    action: LifecycleAction
    timestamp: datetime
    message_id: str = ""


@dataclass
class ProcessedRequest:
    request: LifecycleRequest
    session: Optional[str] = None
    error: Optional[BaseException] = None
    closed: bool = False

    @property
    def ok(self) -> bool:
        return self.error is None


def parse_lifecycle_request(message: Message, now: Optional[datetime] = None) -> Optional[LifecycleRequest]:
    """Classify a message by its title; None when it is not a lifecycle request."""
    title = message.subject.lower()
    for keywords, action in _KEYWORDS:
        if any(k in title for k in keywords):
            return LifecycleRequest(
                sender=message.sender,
                action=action,
                timestamp=now or datetime.now(),
                message_id=message.id,
            )
    return None


def identity_to_session(identity: str) -> str:
    """
    Map a sender identity to its session name.

        mayor          -> gt-mayor
        <rig>-witness  -> gt-<rig>-witness

    Raises:
        UnknownIdentityError: For any other identity
    """
    if identity == "mayor":
        return MAYOR_SESSION
    if identity.endswith(WITNESS_SESSION_SUFFIX) and len(identity) > len(WITNESS_SESSION_SUFFIX):
        return SESSION_PREFIX + identity
    raise UnknownIdentityError(identity)


class LifecycleProcessor:
    """Executes lifecycle requests from the daemon inbox against sessions."""

    def __init__(
        self,
        town_root: Path,
        tmux,
        router,
        registry: AgentRegistry,
        agent: str = "claude",
        kill_settle_ms: int = 500,
        prime_delay_ms: int = 2000,
        sleep=time.sleep,
    ):
        self.town_root = Path(town_root)
        self.tmux = tmux
        self.router = router
        self.registry = registry
        self.agent = agent
        self.kill_settle_ms = kill_settle_ms
        self.prime_delay_ms = prime_delay_ms
        self.sleep = sleep

    def process(self) -> List[ProcessedRequest]:
        """Run every open lifecycle request in the inbox once."""
        try:
            messages = self.router.inbox(DAEMON_IDENTITY)
        except (MailError, BeadsCLINotFoundError) as e:
            # bd mail unavailable or inbox empty
            logger.debug(f"could not read daemon inbox: {e}")
            return []

        processed = []
        for message in messages:
            if message.is_closed:
                continue
            request = parse_lifecycle_request(message)
            if request is None:
                continue

            logger.info(f"Processing lifecycle request from {request.sender}: {request.action.value}")
            outcome = ProcessedRequest(request)
            processed.append(outcome)
            try:
                outcome.session = self.execute(request)
            except (GastownError, OSError) as e:
                logger.error(f"Error executing lifecycle action: {e}")
                outcome.error = e
                continue

            try:
                self.router.close(message.id)
                outcome.closed = True
            except (GastownError, OSError) as e:
                # Picked up again on the next poll; execution is repeatable
                logger.warning(f"failed to close message {message.id}: {e}")

        return processed

    def execute(self, request: LifecycleRequest) -> str:
        """Run one request; returns the session acted on."""
        session = identity_to_session(request.sender)
        logger.info(f"Executing {request.action.value} for session {session}")
        self.HANDLERS[request.action](self, request, session)
        return session

    def _shutdown(self, request: LifecycleRequest, session: str) -> None:
        if self.tmux.has_session(session):
            self.tmux.kill_session(session)
            logger.info(f"Killed session {session}")

    def _restart(self, request: LifecycleRequest, session: str) -> None:
        if self.tmux.has_session(session):
            self.tmux.kill_session(session)
            logger.info(f"Killed session {session} for restart")
            self.sleep(self.kill_settle_ms / 1000)

        workdir, env = self._session_spec(request.sender)
        launch_session(
            self.tmux,
            session,
            workdir,
            env,
            self.registry.startup_command(self.agent),
            self.prime_delay_ms,
        )
        logger.info(f"Restarted session {session}")

    def _session_spec(self, identity: str):
        """Working directory and environment for a restartable identity."""
        if identity == "mayor":
            return self.town_root, agent_env(AgentEnvConfig(
                role="mayor",
                town_root=str(self.town_root),
                beads_dir=str(self.town_root / ".beads"),
            ))

        rig = identity[:-len(WITNESS_SESSION_SUFFIX)]
        rig_path = self.town_root / rig
        return rig_path, agent_env(AgentEnvConfig(
            role="witness",
            rig=rig,
            town_root=str(self.town_root),
            beads_dir=str(rig_path / ".beads"),
        ))

    HANDLERS = {
        LifecycleAction.CYCLE: _restart,
        LifecycleAction.RESTART: _restart,
        LifecycleAction.SHUTDOWN: _shutdown,
    }


_missing = set(LifecycleAction) - set(LifecycleProcessor.HANDLERS)
if _missing:
    raise RuntimeError(f"no lifecycle handler for: {sorted(a.value for a in _missing)}")
