"""
Session cycling: jump to the next or previous session in the same group.

Groups are derived from the session name:

    gt-mayor, gt-deacon          town sessions
    gt-<rig>-crew-<name>         crew members of one rig

Polecat, witness and refinery sessions belong to no group.
"""

import logging
import re
from typing import List, Optional

from gastown.address import DEACON_SESSION, MAYOR_SESSION

logger = logging.getLogger(__name__)

TOWN_SESSIONS = (MAYOR_SESSION, DEACON_SESSION)

_CREW_SESSION_RE = re.compile(r"^(gt-.+-crew-).+$")


def session_group(session: str, sessions: List[str]) -> List[str]:
    """Running members of session's group, in cycling order (session included)."""
    if session in TOWN_SESSIONS:
        return [s for s in TOWN_SESSIONS if s == session or s in sessions]

    match = _CREW_SESSION_RE.match(session)
    if not match:
        return []
    prefix = match.group(1)
    return sorted({s for s in sessions if s.startswith(prefix)} | {session})


def next_in_group(session: str, sessions: List[str], direction: int) -> Optional[str]:
    """The session `direction` steps away (wrapping), or None when alone."""
    group = session_group(session, sessions)
    if len(group) < 2:
        return None
    index = group.index(session)
    return group[(index + direction) % len(group)]


def cycle(tmux, direction: int, session: Optional[str] = None) -> Optional[str]:
    """
    Switch the client to the neighbouring session.

    Args:
        tmux: Session backend
        direction: 1 for next, -1 for previous
        session: Current session name; detected from tmux when omitted

    Returns:
        The session switched to, or None if there was nothing to do.
    """
    if not session:
        session = tmux.current_session()
        if not session:
            logger.debug("not in tmux, nothing to cycle")
            return None

    target = next_in_group(session, tmux.list_sessions(), direction)
    if target is None:
        return None
    tmux.switch_client(target)
    return target
