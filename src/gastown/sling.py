"""
Sling: dispatch a unit of work to an agent.

    THING  ->  resolve -> collision -> displace -> preflight -> sync-pull
           ->  materialize -> assign -> pin -> sync-push
           ->  notify -> ignite -> nudge -> notify-witness

Each step carries its own failure policy. FATAL steps abort the sling with
a SlingStepError naming the step; WARN steps are reported and the pipeline
continues. The assignment written by `assign` is the authoritative record;
pinning and the notifications are additional discovery paths on top of it.

How each target kind is treated (accepted things, pre-flight, whether a
session is started, mail policy) lives in PROFILES, one entry per kind.
"""

import logging
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import Callable, Dict, FrozenSet, List, Optional, Tuple, Type

from rich.console import Console
from rich.markup import escape

from gastown.address import (
    AgentIdentity,
    AgentRole,
    Target,
    TargetKind,
    Thing,
    ThingKind,
    parse_target,
    parse_thing,
)
from gastown.agents import AgentRegistry
from gastown.beads import Beads, Issue
from gastown.config import get_bd_path, get_config, get_default_agent
from gastown.errors import (
    GastownError,
    HookConflictError,
    InvalidTargetError,
    MailError,
    GitError,
    SlingStepError,
    TargetNotFoundError,
    UncommittedWorkError,
    UnreadMailError,
)
from gastown.git_utils import check_uncommitted_work
from gastown.hook import HookCoordinator
from gastown.logging import EventLogger
from gastown.mail import Message, Router, detect_sender
from gastown.polecat import CrewManager, PolecatManager
from gastown.session import SessionManager
from gastown.suggest import find_similar
from gastown.tmux import Tmux

logger = logging.getLogger(__name__)

NUDGE_TEMPLATE = (
    "You have a work assignment. Run 'gt mail inbox' to see it, "
    "then start working on issue {issue_id}."
)
SUGGESTION_DISTANCE = 3


class Policy(Enum):
    FATAL = "fatal"
    WARN = "warn"


class Preflight(Enum):
    NONE = "none"
    # Instance must exist
    EXISTENCE = "existence"
    # Instance must exist (or be created) and its worktree is recycled
    RECYCLE = "recycle"


@dataclass(frozen=True)
class TargetProfile:
    accepts: FrozenSet[ThingKind]
    preflight: Preflight = Preflight.NONE
    # Autonomous targets get a session started and nudged
    ignite: bool = False
    # None: no work mail
    mail: Optional[Policy] = None
    notify_witness: bool = False
    # Shown once work is in place; {thing} is the thing id
    consumption: str = ""
    suggest_wisp: bool = False
    label: str = ""


_ALL_THINGS = frozenset(ThingKind)
_NO_EPICS = frozenset({ThingKind.PROTO, ThingKind.ISSUE})

PROFILES: Dict[TargetKind, TargetProfile] = {
    TargetKind.POLECAT: TargetProfile(
        accepts=_NO_EPICS,
        preflight=Preflight.RECYCLE,
        ignite=True,
        mail=Policy.FATAL,
        notify_witness=True,
        label="Polecat",
    ),
    TargetKind.CREW: TargetProfile(
        accepts=_ALL_THINGS,
        preflight=Preflight.EXISTENCE,
        mail=Policy.WARN,
        consumption="Crew member will see work on next session start",
        label="Crew member",
    ),
    TargetKind.WITNESS: TargetProfile(
        accepts=_NO_EPICS,
        consumption="Witness will run {thing} on next patrol",
        suggest_wisp=True,
        label="Witness",
    ),
    TargetKind.REFINERY: TargetProfile(
        accepts=_ALL_THINGS,
        consumption="Refinery will process {thing} on next cycle",
        label="Refinery",
    ),
    TargetKind.DEACON: TargetProfile(
        accepts=frozenset({ThingKind.PROTO}),
        consumption="Deacon will run {thing} on next patrol",
        suggest_wisp=True,
        label="Deacon",
    ),
    TargetKind.MAYOR: TargetProfile(
        accepts=_ALL_THINGS,
        mail=Policy.WARN,
        consumption="Mayor will see work on next session start",
        label="Mayor",
    ),
}

_missing = set(TargetKind) - set(PROFILES)
if _missing:
    raise RuntimeError(f"no sling profile for: {sorted(k.value for k in _missing)}")


@dataclass
class SlingOptions:
    force: bool = False
    no_start: bool = False
    create: bool = False
    wisp: bool = False
    molecule: Optional[str] = None
    priority: Optional[int] = None


@dataclass(frozen=True)
class MoleculeContext:
    proto: str
    root_issue_id: str
    total_steps: int
    step_number: int = 1
    is_wisp: bool = False


@dataclass
class StepOutcome:
    step: str
    ok: bool
    severity: Policy
    error: Optional[BaseException] = None
    skipped: bool = False


@dataclass
class SlingResult:
    thing: Optional[Thing] = None
    target: Optional[Target] = None
    issue_id: Optional[str] = None
    molecule: Optional[MoleculeContext] = None
    attached_id: Optional[str] = None
    displaced_id: Optional[str] = None
    session_name: Optional[str] = None
    outcomes: List[StepOutcome] = field(default_factory=list)

    @property
    def warnings(self) -> List[StepOutcome]:
        return [o for o in self.outcomes if not o.ok]

    def outcome(self, step: str) -> Optional[StepOutcome]:
        for o in self.outcomes:
            if o.step == step:
                return o
        return None


@dataclass
class Step:
    name: str
    run: Callable[["SlingRun"], None]
    policy: Policy
    # Errors that abort even when the step is best-effort
    fatal_errors: Tuple[Type[BaseException], ...] = ()
    applies: Optional[Callable[["SlingRun"], bool]] = None


def build_work_mail(
    to: str,
    issue_id: str,
    issue: Optional[Issue],
    molecule: Optional[MoleculeContext],
    sender: str,
) -> Message:
    """Compose the work-assignment message for an agent's inbox."""
    title = issue.title if issue and issue.title else ""
    lines = ["You have been assigned work.", "", f"Issue: {issue_id}"]
    if title:
        lines.append(f"Title: {title}")
    if issue is not None:
        lines.append(f"Priority: P{issue.priority}")
    if issue and issue.description:
        lines.extend(["", issue.description])
    if molecule is not None:
        lines.extend([
            "",
            f"Molecule: {molecule.proto}",
            f"Root issue: {molecule.root_issue_id}",
            f"Step: {molecule.step_number} of {molecule.total_steps}",
        ])
        if molecule.is_wisp:
            lines.append("Ephemeral: yes (wisp, discarded on completion)")
    lines.extend(["", "Check your hook and start working."])

    return Message(
        to=to,
        sender=sender,
        subject=f"Work: {title or issue_id}",
        body="\n".join(lines),
    )


class Reporter:
    """Console output with the ✓ / ⚠ / Note markers."""

    def __init__(self, console: Optional[Console] = None):
        self.console = console or Console(highlight=False)

    def info(self, message: str) -> None:
        self.console.print(escape(message))

    def success(self, message: str) -> None:
        self.console.print(f"[green]✓[/green] {escape(message)}")

    def warning(self, message: str) -> None:
        self.console.print(f"[yellow]⚠ Warning:[/yellow] {escape(message)}")

    def note(self, message: str) -> None:
        self.console.print(f"[dim]Note:[/dim] {escape(message)}")

    def dim(self, message: str) -> None:
        self.console.print(f"  [dim]{escape(message)}[/dim]")


class SlingRun:
    """State of one sling invocation, threaded through the steps."""

    def __init__(self, dispatcher: "Dispatcher", thing_arg: str, target_arg: str, options: SlingOptions):
        self.dispatcher = dispatcher
        self.thing_arg = thing_arg
        self.target_arg = target_arg
        self.options = options
        self.out = dispatcher.reporter
        self.result = SlingResult()

        self.target: Optional[Target] = None
        self.thing: Optional[Thing] = None
        self.profile: Optional[TargetProfile] = None
        self.store = None
        self.router = None
        self.hook: Optional[HookCoordinator] = None
        # Occupant seen by the collision check; the attach is conditional on it
        self.expected_occupant: Optional[str] = None

    @property
    def identity(self) -> AgentIdentity:
        return self.target.identity

    @property
    def town_root(self) -> Path:
        return self.dispatcher.town_root

    @property
    def beads_path(self) -> Path:
        return self.target.beads_path(self.town_root)

    @property
    def autonomous_start(self) -> bool:
        return self.profile.ignite and not self.options.no_start

    # Steps

    def resolve(self) -> None:
        self.target = parse_target(self.target_arg, self.town_root, self.dispatcher.cwd)
        self.profile = PROFILES[self.target.kind]
        self.store = self.dispatcher.beads_factory(self.beads_path)
        self.router = self.dispatcher.router_factory(self.beads_path)
        self.hook = HookCoordinator(self.store)

        self.thing = parse_thing(
            self.thing_arg,
            self.store,
            proto=self.options.molecule,
            is_wisp=self.options.wisp,
        )
        self.result.target = self.target
        self.result.thing = self.thing

        if self.thing.kind not in self.profile.accepts:
            accepted = " or ".join(sorted(k.value for k in self.profile.accepts))
            hint = ""
            if self.thing.kind == ThingKind.EPIC:
                hint = "; epics should be slung at refinery/, crew or mayor/"
            raise InvalidTargetError(
                f"{self.target.kind.value} accepts {accepted}, not {self.thing.kind.value}{hint}"
            )

        self.out.info(f"Slinging {self.thing.kind.value} {self.thing.id} at {self.target.address}")
        if self.profile.suggest_wisp and not self.thing.is_wisp:
            self.out.note(f"{self.profile.label} work should be ephemeral. Consider using --wisp")

    def collision(self) -> None:
        displaced = self.hook.check_collision(self.identity, self.options.force)
        self.expected_occupant = displaced
        self.result.displaced_id = displaced

    def displace(self) -> None:
        displaced = self.result.displaced_id
        self.out.warning(f"Displaced {displaced} back to ready pool")
        released = self.hook.release(displaced)
        for note in released.notes:
            self.out.note(note)

    def preflight(self) -> None:
        if self.profile.preflight == Preflight.EXISTENCE:
            self._preflight_crew()
        else:
            self._preflight_polecat()

    def _preflight_crew(self) -> None:
        crew = CrewManager(self.town_root, self.target.rig)
        if not crew.exists(self.target.name):
            raise TargetNotFoundError(
                self.profile.label,
                self.target.name,
                find_similar(self.target.name, crew.list_names(), SUGGESTION_DISTANCE),
            )

    def _preflight_polecat(self) -> None:
        name = self.target.name
        manager = PolecatManager(self.town_root, self.target.rig)

        if not manager.exists(name):
            if not self.options.create:
                hint = (
                    f"Or use --create to create: gt sling {self.thing.id} "
                    f"{self.target.rig}/{name} --create"
                )
                raise TargetNotFoundError(
                    self.profile.label,
                    name,
                    find_similar(name, manager.list_names(), SUGGESTION_DISTANCE),
                    hint,
                )
            self.out.info(f"Creating polecat {name}...")
            manager.add(name)
            self.out.success(f"Polecat {name} created")
            return

        polecat = manager.get(name)
        try:
            work = check_uncommitted_work(polecat.path)
        except GitError as e:
            logger.warning(f"could not inspect {polecat.path}: {e}")
            work = None

        if work is not None and not work.clean():
            self.out.warning("Polecat has uncommitted work:")
            for line in work.summary_lines():
                self.out.info(f"  • {line}")
            if not self.options.force:
                raise UncommittedWorkError(name, work.summary())
            self.out.warning("Proceeding with --force")

        try:
            _, unread = self.router.get_mailbox(self.identity.address).count()
        except MailError as e:
            logger.warning(f"could not read mailbox for {self.identity.address}: {e}")
            unread = 0

        if unread > 0:
            if not self.options.force:
                raise UnreadMailError(name, unread)
            self.out.warning(f"Polecat has {unread} unread message(s), proceeding with --force")

        self.out.info(f"Recreating polecat {name} with fresh worktree...")
        manager.recreate(name)
        self.out.success("Fresh worktree created")

    def sync_pull(self) -> None:
        self.store.sync(pull_only=True)

    def materialize(self) -> None:
        thing = self.thing
        if thing.kind == ThingKind.PROTO:
            self._run_molecule(thing.id, {"assignee": self.identity.address})
        elif thing.kind == ThingKind.ISSUE and thing.proto:
            self._run_molecule(thing.proto, {"issue": thing.id, "assignee": self.identity.address})
        else:
            self.result.issue_id = thing.id

    def _run_molecule(self, proto: str, variables: Dict[str, str]) -> None:
        kind = "wisp" if self.thing.is_wisp else "molecule"
        db_path = None
        if self.thing.is_wisp:
            db_path = self.store.wisp_db_path()
            if db_path is None:
                self.out.note("wisp storage not found, using regular storage")
            else:
                self.out.dim("Using ephemeral storage: .beads-wisp/")

        if "issue" in variables:
            self.out.info(f"Running molecule {proto} on issue {variables['issue']}...")
        else:
            self.out.info(f"Spawning {kind} from proto {proto}...")

        run = self.store.mol_run(proto, variables, db_path=db_path)
        molecule = MoleculeContext(
            proto=proto,
            root_issue_id=run.root_id,
            total_steps=max(run.created - 1, 0),
            step_number=1,
            is_wisp=self.thing.is_wisp,
        )
        self.result.molecule = molecule
        self.result.issue_id = run.root_id
        self.out.success(f"{kind} spawned: {run.root_id} ({molecule.total_steps} steps)")

    def assign(self) -> None:
        issue_id = self.result.issue_id
        self.store.assign(issue_id, self.identity.address)
        if self.options.priority is not None:
            self.store.update(issue_id, priority=self.options.priority)
        self.out.success(f"Assigned {issue_id} to {self.identity.address}")

    def pin(self) -> None:
        attached = self.result.issue_id
        if self.result.molecule is not None:
            attached = self.result.molecule.root_issue_id
        attach = self.hook.attach(self.identity, attached, expected=self.expected_occupant)
        self.result.attached_id = attached
        if attach.pin_error:
            self.out.note(f"could not pin work issue: {attach.pin_error}")
        self.out.success(f"Pinned to {self.target.kind.value} hook")

    def sync_push(self) -> None:
        self.store.sync()

    def notify(self) -> None:
        issue_id = self.result.issue_id
        try:
            issue = self.store.show(issue_id)
        except GastownError:
            issue = None

        message = build_work_mail(
            self.identity.address,
            issue_id,
            issue,
            self.result.molecule,
            detect_sender(),
        )
        self.router.send(message)
        self.out.success(f"Work assignment sent to {self.identity.address}")

    def ignite(self) -> None:
        cfg = self.dispatcher.config
        sessions = SessionManager(
            self.dispatcher.tmux,
            self.town_root,
            self.target.rig,
            self.dispatcher.registry,
            agent=self.dispatcher.agent,
            prime_delay_ms=int(cfg["prime_delay_ms"]),
        )
        name = self.target.name
        self.result.session_name = sessions.session_name(name)

        if sessions.is_running(name):
            self.out.info("Session already running, notifying to check inbox...")
            self.dispatcher.sleep(float(cfg["nudge_wait_seconds"]))
        else:
            self.out.info(f"Starting session for {self.identity.address}...")
            sessions.start(name)
            self.dispatcher.sleep(float(cfg["ignite_wait_seconds"]))

        self.out.success(f"Session started. Attach with: tmux attach -t {self.result.session_name}")

    def nudge(self) -> None:
        session = self.result.session_name or self.identity.session_name
        self.dispatcher.tmux.nudge_session(
            session, NUDGE_TEMPLATE.format(issue_id=self.result.issue_id)
        )
        self.out.dim("Polecat nudged to start working")

    def notify_witness(self) -> None:
        sender = detect_sender()
        name = self.target.name
        issue_id = self.result.issue_id
        session = self.result.session_name or self.identity.session_name
        witness = AgentIdentity(AgentRole.WITNESS, self.target.rig)
        message = Message(
            to=witness.address,
            sender=sender,
            subject=f"SLING: {name} starting on {issue_id}",
            body=(
                f"Polecat slung.\n\nPolecat: {name}\nIssue: {issue_id}\n"
                f"Session: {session}\nSlung by: {sender}"
            ),
        )
        self.dispatcher.router_factory(self.town_root).send(message)
        self.out.dim("Witness notified")

    def finish(self) -> None:
        if self.profile.ignite and self.options.no_start:
            self.out.dim(f"Use 'gt session start {self.target.rig}/{self.target.name}' to start the session")
        if self.profile.consumption:
            self.out.success(self.profile.consumption.format(thing=self.thing.id))
        if self.target.kind == TargetKind.CREW:
            self.out.dim("(Crew sessions are human-managed, not auto-started)")


def build_steps(profile: TargetProfile) -> List[Step]:
    """The ordered steps of a sling at a target with this profile."""
    steps = [
        Step("resolve", SlingRun.resolve, Policy.FATAL),
        Step("collision", SlingRun.collision, Policy.FATAL),
        Step("displace", SlingRun.displace, Policy.WARN,
             applies=lambda r: r.result.displaced_id is not None),
        Step("preflight", SlingRun.preflight, Policy.FATAL,
             applies=lambda r: r.profile.preflight != Preflight.NONE),
        Step("sync-pull", SlingRun.sync_pull, Policy.WARN),
        Step("materialize", SlingRun.materialize, Policy.FATAL),
        Step("assign", SlingRun.assign, Policy.FATAL),
        Step("pin", SlingRun.pin, Policy.WARN, fatal_errors=(HookConflictError,)),
        Step("sync-push", SlingRun.sync_push, Policy.WARN),
    ]
    if profile.mail is not None:
        steps.append(Step(
            "notify", SlingRun.notify, profile.mail,
            applies=lambda r: r.autonomous_start or not r.profile.ignite,
        ))
    if profile.ignite:
        steps.extend([
            Step("ignite", SlingRun.ignite, Policy.FATAL, applies=lambda r: r.autonomous_start),
            Step("nudge", SlingRun.nudge, Policy.WARN, applies=lambda r: r.autonomous_start),
        ])
    if profile.notify_witness:
        steps.append(Step(
            "notify-witness", SlingRun.notify_witness, Policy.WARN,
            applies=lambda r: r.autonomous_start,
        ))
    return steps


def run_step(step: Step, run: SlingRun) -> StepOutcome:
    """
    Execute one step and classify its result.

    Raises:
        SlingStepError: If the step failed and its policy (or the error's
            type) makes the failure fatal
    """
    if step.applies is not None and not step.applies(run):
        return StepOutcome(step.name, ok=True, severity=step.policy, skipped=True)

    try:
        step.run(run)
    except (GastownError, OSError) as e:
        if step.policy == Policy.FATAL or isinstance(e, step.fatal_errors):
            raise SlingStepError(step.name, e) from e
        logger.warning(f"sling step {step.name} failed: {e}")
        run.out.warning(f"{step.name}: {e}")
        return StepOutcome(step.name, ok=False, severity=step.policy, error=e)

    return StepOutcome(step.name, ok=True, severity=step.policy)


class Dispatcher:
    """Runs slings within one town.

    Collaborators are injectable: beads_factory(path) and router_factory(path)
    build the store and mail router for a beads directory.
    """

    def __init__(
        self,
        town_root: Path,
        registry: AgentRegistry,
        tmux=None,
        beads_factory: Optional[Callable[[Path], object]] = None,
        router_factory: Optional[Callable[[Path], object]] = None,
        console: Optional[Console] = None,
        event_logger: Optional[EventLogger] = None,
        cwd: Optional[Path] = None,
        sleep: Callable[[float], None] = time.sleep,
    ):
        self.town_root = Path(town_root)
        self.registry = registry
        self.config = get_config(self.town_root)
        self.agent = get_default_agent(self.town_root)
        self.tmux = tmux if tmux is not None else Tmux()

        bd_path = get_bd_path(self.town_root)
        self.beads_factory = beads_factory or (lambda path: Beads(path, cli_path=bd_path))
        self.router_factory = router_factory or (lambda path: Router(path, cli_path=bd_path))
        self.reporter = Reporter(console)
        self.event_logger = event_logger or EventLogger(self.town_root / "logs")
        self.cwd = cwd
        self.sleep = sleep

    def sling(self, thing_arg: str, target_arg: str, options: Optional[SlingOptions] = None) -> SlingResult:
        """
        Dispatch thing_arg to target_arg.

        Raises:
            SlingStepError: If a fatal step fails; the cause is attached
        """
        options = options or SlingOptions()
        run = SlingRun(self, thing_arg, target_arg, options)
        start_time = time.time()
        self.event_logger.log_command_start("sling", {
            "thing": thing_arg,
            "target": target_arg,
            "force": options.force,
            "wisp": options.wisp,
        })

        try:
            # Resolve decides which profile (and so which steps) apply
            run.result.outcomes.append(run_step(Step("resolve", SlingRun.resolve, Policy.FATAL), run))
            for step in build_steps(run.profile)[1:]:
                run.result.outcomes.append(run_step(step, run))
        except SlingStepError as e:
            duration_ms = int((time.time() - start_time) * 1000)
            self.event_logger.log_error("sling", "Sling failed", {
                "thing": thing_arg,
                "target": target_arg,
                "step": e.step,
                "reason": str(e.cause),
                "duration_ms": duration_ms,
            })
            raise

        run.finish()
        duration_ms = int((time.time() - start_time) * 1000)
        result = run.result
        self.event_logger.log_command_complete("sling", duration_ms, {
            "thing": thing_arg,
            "target": result.target.address,
            "issue_id": result.issue_id,
            "attached": result.attached_id,
            "displaced": result.displaced_id,
            "warnings": [o.step for o in result.warnings],
        })
        return result
