"""Address resolution: target and thing strings to structured values.

Target forms (rig inferred from the working directory when omitted):

    Toast                   polecat Toast in the current rig
    polecat/Toast           same
    gastown/Toast           polecat Toast in rig gastown
    gastown/polecats/Toast  same
    gastown/crew/dave       crew member
    gastown/witness         rig witness
    refinery/               current rig's refinery
    deacon/  mayor/         town-level agents
"""

from dataclasses import dataclass
from enum import Enum
from pathlib import Path
from typing import Callable, Optional

from gastown.config import RigInferenceError, infer_rig_from_cwd
from gastown.errors import (
    BeadsError,
    BeadsIssueNotFoundError,
    InvalidTargetError,
    ThingNotFoundError,
)

ISSUE_PREFIXES = ("gt-", "bd-", "hq-", "beads-")

MAYOR_SESSION = "gt-mayor"
DEACON_SESSION = "gt-deacon"
SESSION_PREFIX = "gt-"
WITNESS_SESSION_SUFFIX = "-witness"


class AgentRole(Enum):
    MAYOR = "mayor"
    DEACON = "deacon"
    WITNESS = "witness"
    REFINERY = "refinery"
    POLECAT = "polecat"
    CREW = "crew"

    @property
    def town_level(self) -> bool:
        return self in (AgentRole.MAYOR, AgentRole.DEACON)

    @property
    def requires_name(self) -> bool:
        return self in (AgentRole.POLECAT, AgentRole.CREW)


# Every role is a valid sling target.
TargetKind = AgentRole

_ROLE_ALIASES = {
    "mayor": AgentRole.MAYOR,
    "deacon": AgentRole.DEACON,
    "witness": AgentRole.WITNESS,
    "refinery": AgentRole.REFINERY,
    "polecat": AgentRole.POLECAT,
    "polecats": AgentRole.POLECAT,
    "crew": AgentRole.CREW,
}


def is_agent_role(s: str) -> bool:
    return s.lower() in _ROLE_ALIASES


@dataclass(frozen=True)
class AgentIdentity:
    role: AgentRole
    rig: Optional[str] = None
    name: Optional[str] = None

    @property
    def address(self) -> str:
        if self.role.town_level:
            return f"{self.role.value}/"
        if self.role == AgentRole.POLECAT:
            return f"{self.rig}/polecats/{self.name}"
        if self.name:
            return f"{self.rig}/{self.role.value}/{self.name}"
        return f"{self.rig}/{self.role.value}"

    @property
    def hook_key(self) -> str:
        """Names the identity's handoff record."""
        return self.name or self.role.value

    @property
    def session_name(self) -> str:
        if self.role == AgentRole.MAYOR:
            return MAYOR_SESSION
        if self.role == AgentRole.DEACON:
            return DEACON_SESSION
        if self.role == AgentRole.POLECAT:
            return f"{SESSION_PREFIX}{self.rig}-{self.name}"
        if self.role == AgentRole.CREW:
            return f"{SESSION_PREFIX}{self.rig}-crew-{self.name}"
        return f"{SESSION_PREFIX}{self.rig}-{self.role.value}"

    def __str__(self) -> str:
        return self.address


@dataclass(frozen=True)
class Target:
    kind: TargetKind
    rig: Optional[str] = None
    name: Optional[str] = None

    @property
    def identity(self) -> AgentIdentity:
        return AgentIdentity(self.kind, self.rig, self.name)

    @property
    def address(self) -> str:
        return self.identity.address

    def beads_path(self, town_root: Path) -> Path:
        """Town-level agents use the town's beads, everyone else their rig's."""
        if self.kind.town_level:
            return Path(town_root)
        return Path(town_root) / self.rig


class ThingKind(Enum):
    PROTO = "proto"
    ISSUE = "issue"
    EPIC = "epic"


@dataclass(frozen=True)
class Thing:
    kind: ThingKind
    id: str
    proto: Optional[str] = None
    is_wisp: bool = False


def is_witness_session(name: str) -> bool:
    """gt-<rig>-witness with a non-empty rig."""
    return (
        name.startswith(SESSION_PREFIX)
        and name.endswith(WITNESS_SESSION_SUFFIX)
        and len(name) > len(SESSION_PREFIX) + len(WITNESS_SESSION_SUFFIX)
    )


def looks_like_issue_id(s: str) -> bool:
    return s.startswith(ISSUE_PREFIXES)


def _make_target(role: str, name: str, rig_for: Callable[[], str]) -> Target:
    kind = _ROLE_ALIASES.get(role.lower())
    if kind is None:
        # Bare polecat name
        if not role:
            raise InvalidTargetError("empty target")
        return Target(AgentRole.POLECAT, rig_for(), role)

    if kind.town_level:
        return Target(kind)

    if kind.requires_name and not name:
        raise InvalidTargetError(
            f"{kind.value} target requires a name (e.g., {kind.value}/alpha)"
        )
    if not kind.requires_name:
        # One witness/refinery per rig; a trailing name is ignored
        return Target(kind, rig_for())
    return Target(kind, rig_for(), name)


def parse_target(arg: str, town_root: Path, cwd: Optional[Path] = None) -> Target:
    """
    Parse a target string of 1-3 slash-separated segments.

    Raises:
        InvalidTargetError: If the form is unknown, a polecat/crew name is
            missing, the rig cannot be inferred, or a named rig does not exist.
    """
    town_root = Path(town_root)

    def inferred_rig() -> str:
        try:
            return infer_rig_from_cwd(town_root, cwd)
        except RigInferenceError as e:
            raise InvalidTargetError(f"cannot infer rig: {e}")

    def explicit_rig(rig: str) -> Callable[[], str]:
        def resolve() -> str:
            if not rig or not (town_root / rig).is_dir():
                raise InvalidTargetError(f"rig '{rig}' not found")
            return rig
        return resolve

    parts = arg.split("/")

    if len(parts) == 1:
        return _make_target(parts[0], "", inferred_rig)

    if len(parts) == 2:
        first, second = parts
        if second == "":
            return _make_target(first, "", inferred_rig)
        if is_agent_role(first):
            return _make_target(first, second, inferred_rig)
        return _make_target(second, "", explicit_rig(first))

    if len(parts) == 3:
        rig, role, name = parts
        if not is_agent_role(role):
            raise InvalidTargetError(f"unknown role '{role}' in target {arg}")
        return _make_target(role, name, explicit_rig(rig))

    raise InvalidTargetError(f"invalid target format: {arg}")


def parse_thing(arg: str, store, proto: Optional[str] = None, is_wisp: bool = False) -> Thing:
    """
    Parse a thing: an issue id (gt-, bd-, hq-, beads-) or a proto name.

    Issues are looked up to tell epics from plain issues. Proto names (and
    an issue's companion proto) are resolved against the store's catalog as
    given, then as mol-<name>.

    Raises:
        ThingNotFoundError: If neither lookup succeeds
        InvalidTargetError: If a companion proto is given for anything but
            a plain issue
    """
    if looks_like_issue_id(arg):
        try:
            issue = store.show(arg)
        except BeadsIssueNotFoundError:
            raise ThingNotFoundError(arg, "issue not found")
        kind = ThingKind.EPIC if issue.type == "epic" else ThingKind.ISSUE
        if proto:
            if kind == ThingKind.EPIC:
                raise InvalidTargetError(f"cannot run proto {proto} on epic {arg}; sling the epic itself")
            proto = _resolve_proto(proto, store)
        return Thing(kind, arg, proto=proto, is_wisp=is_wisp)

    if proto:
        raise InvalidTargetError(f"{arg} is already a proto; a companion proto only applies to an issue")
    return Thing(ThingKind.PROTO, _resolve_proto(arg, store), is_wisp=is_wisp)


def _resolve_proto(name: str, store) -> str:
    try:
        proto_id = store.find_proto(name)
    except BeadsError as e:
        raise ThingNotFoundError(name, f"loading catalog: {e}")
    if proto_id is None:
        raise ThingNotFoundError(name, f"tried {name} and mol-{name}")
    return proto_id
