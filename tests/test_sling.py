"""Tests for the sling dispatch pipeline."""

import io
from types import SimpleNamespace

import pytest
from rich.console import Console

from conftest import FakeBeads, FakeRouter, FakeTmux
from gastown.address import TargetKind, ThingKind
from gastown.agents import builtin_registry
from gastown.beads import UNCHECKED
from gastown.errors import (
    BeadsError,
    HookConflictError,
    HookOccupiedError,
    InvalidTargetError,
    MailError,
    SlingStepError,
    TargetNotFoundError,
    ThingNotFoundError,
    TmuxError,
    UnreadMailError,
)
from gastown.polecat import PolecatManager
from gastown.sling import (
    NUDGE_TEMPLATE,
    PROFILES,
    Dispatcher,
    Policy,
    SlingOptions,
    Step,
    build_steps,
    build_work_mail,
    run_step,
)


@pytest.fixture
def world(town, monkeypatch):
    """A dispatcher wired to in-memory beads, mail and tmux."""
    beads = FakeBeads(town / "gastown")
    beads.add_issue("gt-abc", title="Fix login bug", description="Users cannot log in.", status="open", priority=1)
    beads.add_issue("gt-epic1", title="Auth overhaul", status="open", type="epic")
    router = FakeRouter()
    tmux = FakeTmux()
    created = []

    def fake_add(self, name):
        self.path_for(name).mkdir(parents=True)
        created.append(name)
        return self.get(name)

    def fake_recreate(self, name):
        return self.get(name)

    monkeypatch.setattr(PolecatManager, "add", fake_add)
    monkeypatch.setattr(PolecatManager, "recreate", fake_recreate)

    out = io.StringIO()
    dispatcher = Dispatcher(
        town,
        builtin_registry(),
        tmux=tmux,
        beads_factory=lambda path: beads,
        router_factory=lambda path: router,
        console=Console(file=out, width=200, highlight=False),
        cwd=town / "gastown",
        sleep=lambda seconds: None,
    )
    return SimpleNamespace(
        town=town, beads=beads, router=router, tmux=tmux,
        dispatcher=dispatcher, out=out, created=created,
    )


class TestProfiles:
    def test_every_target_kind_has_a_profile(self):
        assert set(PROFILES) == set(TargetKind)

    def test_deacon_only_accepts_protos(self):
        assert PROFILES[TargetKind.DEACON].accepts == frozenset({ThingKind.PROTO})

    def test_polecat_and_witness_reject_epics(self):
        assert ThingKind.EPIC not in PROFILES[TargetKind.POLECAT].accepts
        assert ThingKind.EPIC not in PROFILES[TargetKind.WITNESS].accepts

    def test_only_polecats_are_started(self):
        ignited = [kind for kind, profile in PROFILES.items() if profile.ignite]
        assert ignited == [TargetKind.POLECAT]

    def test_polecat_steps_in_order(self):
        names = [s.name for s in build_steps(PROFILES[TargetKind.POLECAT])]
        assert names == [
            "resolve", "collision", "displace", "preflight", "sync-pull",
            "materialize", "assign", "pin", "sync-push",
            "notify", "ignite", "nudge", "notify-witness",
        ]

    def test_witness_has_no_notify_or_ignite(self):
        names = [s.name for s in build_steps(PROFILES[TargetKind.WITNESS])]
        assert "notify" not in names
        assert "ignite" not in names


class TestRunStep:
    def test_warn_step_failure_is_recorded(self, world):
        def boom(run):
            raise BeadsError("bd sync: offline")

        run = SimpleNamespace(out=world.dispatcher.reporter)
        outcome = run_step(Step("sync-pull", boom, Policy.WARN), run)

        assert not outcome.ok
        assert outcome.severity == Policy.WARN
        assert "Warning:" in world.out.getvalue()

    def test_fatal_step_failure_raises(self, world):
        def boom(run):
            raise BeadsError("bd update: locked")

        run = SimpleNamespace(out=world.dispatcher.reporter)
        with pytest.raises(SlingStepError) as exc_info:
            run_step(Step("assign", boom, Policy.FATAL), run)

        assert exc_info.value.step == "assign"
        assert str(exc_info.value) == "assign: bd update: locked"

    def test_fatal_error_type_overrides_warn_policy(self, world):
        def boom(run):
            raise HookConflictError("hq-1", None, "gt-other")

        run = SimpleNamespace(out=world.dispatcher.reporter)
        with pytest.raises(SlingStepError):
            run_step(Step("pin", boom, Policy.WARN, fatal_errors=(HookConflictError,)), run)

    def test_step_not_applicable_is_skipped(self, world):
        run = SimpleNamespace(out=world.dispatcher.reporter)
        outcome = run_step(Step("x", lambda r: 1 / 0, Policy.FATAL, applies=lambda r: False), run)
        assert outcome.skipped
        assert outcome.ok


class TestSlingPolecat:
    def test_sling_proto_at_existing_polecat(self, world):
        result = world.dispatcher.sling("feature", "gastown/Toast")

        root = result.issue_id
        assert result.thing.kind == ThingKind.PROTO
        assert result.thing.id == "mol-feature"
        assert result.molecule.root_issue_id == root
        assert result.molecule.total_steps == 3
        assert result.attached_id == root

        # Molecule bound to the polecat
        assert world.beads.mol_runs[0]["variables"] == {"assignee": "gastown/polecats/Toast"}

        # Assigned, pinned and on the hook
        issue = world.beads.issues[root]
        assert issue.assignee == "gastown/polecats/Toast"
        assert issue.status == "in_progress"
        assert world.beads.pinned[root] == "Toast"
        assert world.beads.hook_of("Toast") == root

        # Synced before and after
        assert world.beads.syncs == [True, False]

    def test_sling_mails_starts_and_nudges(self, world):
        result = world.dispatcher.sling("feature", "gastown/Toast")

        mail = world.router.sent_to("gastown/polecats/Toast")
        assert len(mail) == 1
        assert mail[0].subject == "Work: mol-feature"
        assert result.issue_id in mail[0].body

        session = "gt-gastown-Toast"
        assert result.session_name == session
        assert world.tmux.sessions[session]["workdir"] == str(world.town / "gastown" / "polecats" / "Toast")
        assert world.tmux.sessions[session]["env"]["GT_ROLE"] == "polecat"
        keys = world.tmux.keys(session)
        assert keys[0].endswith("exec claude --dangerously-skip-permissions")
        assert "gt prime" in keys
        assert keys[-1] == NUDGE_TEMPLATE.format(issue_id=result.issue_id)

    def test_sling_notifies_witness(self, world):
        result = world.dispatcher.sling("feature", "gastown/Toast")

        witness_mail = world.router.sent_to("gastown/witness")
        assert len(witness_mail) == 1
        assert witness_mail[0].subject == f"SLING: Toast starting on {result.issue_id}"

    def test_running_session_is_reused(self, world):
        world.tmux.sessions["gt-gastown-Toast"] = {"workdir": "", "env": {}, "keys": []}

        world.dispatcher.sling("feature", "gastown/Toast")

        assert not [c for c in world.tmux.calls if c[0] == "new_session"]
        assert any(c[0] == "nudge_session" for c in world.tmux.calls)

    def test_bare_name_uses_rig_from_cwd(self, world):
        result = world.dispatcher.sling("feature", "Toast")
        assert result.target.rig == "gastown"
        assert result.target.name == "Toast"

    def test_unknown_polecat_suggests_similar_names(self, world):
        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("feature", "gastown/Tost")

        err = exc_info.value
        assert err.step == "preflight"
        assert isinstance(err.cause, TargetNotFoundError)
        assert "Toast" in err.cause.suggestions
        assert "--create" in err.detail
        # Nothing was mutated
        assert world.beads.mol_runs == []
        assert world.beads.hook_of("Tost") is None

    def test_create_makes_new_polecat(self, world):
        result = world.dispatcher.sling("feature", "gastown/Nux", SlingOptions(create=True))

        assert world.created == ["Nux"]
        assert world.beads.hook_of("Nux") == result.molecule.root_issue_id
        assert len(world.router.sent_to("gastown/polecats/Nux")) == 1

    def test_epic_is_rejected_before_any_mutation(self, world):
        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-epic1", "gastown/Toast")

        assert exc_info.value.step == "resolve"
        assert isinstance(exc_info.value.cause, InvalidTargetError)
        assert world.beads.hook_of("Toast") is None
        assert world.beads.issues["gt-epic1"].assignee == ""

    def test_unknown_thing(self, world):
        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("nonexistent", "gastown/Toast")

        assert isinstance(exc_info.value.cause, ThingNotFoundError)
        assert "mol-nonexistent" in str(exc_info.value)

    def test_issue_with_molecule_binds_issue(self, world):
        result = world.dispatcher.sling("gt-abc", "gastown/Toast", SlingOptions(molecule="bugfix"))

        run = world.beads.mol_runs[0]
        assert run["proto"] == "mol-bugfix"
        assert run["variables"] == {"issue": "gt-abc", "assignee": "gastown/polecats/Toast"}
        assert world.beads.hook_of("Toast") == result.molecule.root_issue_id

    def test_bare_issue_is_used_directly(self, world):
        result = world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert result.molecule is None
        assert result.issue_id == "gt-abc"
        assert world.beads.hook_of("Toast") == "gt-abc"
        mail = world.router.sent_to("gastown/polecats/Toast")[0]
        assert mail.subject == "Work: Fix login bug"
        assert "Priority: P1" in mail.body

    def test_priority_override(self, world):
        world.dispatcher.sling("gt-abc", "gastown/Toast", SlingOptions(priority=0))
        assert world.beads.issues["gt-abc"].priority == 0

    def test_wisp_uses_ephemeral_storage(self, world):
        wisp_dir = world.town / "gastown" / ".beads-wisp"
        wisp_dir.mkdir()

        result = world.dispatcher.sling("feature", "gastown/Toast", SlingOptions(wisp=True))

        assert world.beads.mol_runs[0]["db_path"] == wisp_dir / "beads.db"
        assert result.molecule.is_wisp

    def test_wisp_without_storage_falls_back(self, world):
        result = world.dispatcher.sling("feature", "gastown/Toast", SlingOptions(wisp=True))

        assert world.beads.mol_runs[0]["db_path"] is None
        assert result.molecule.is_wisp
        assert "wisp storage not found" in world.out.getvalue()

    def test_no_start_assigns_without_session(self, world):
        result = world.dispatcher.sling("feature", "gastown/Toast", SlingOptions(no_start=True))

        assert world.beads.hook_of("Toast") == result.issue_id
        assert world.tmux.sessions == {}
        assert result.outcome("ignite").skipped
        assert result.outcome("notify-witness").skipped
        assert "gt session start gastown/Toast" in world.out.getvalue()


class TestCollision:
    def test_occupied_hook_blocks_without_force(self, world):
        first = world.dispatcher.sling("gt-abc", "gastown/Toast")

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("feature", "gastown/Toast")

        err = exc_info.value
        assert err.step == "collision"
        assert isinstance(err.cause, HookOccupiedError)
        assert err.overridable
        assert first.issue_id in str(err)
        assert world.beads.hook_of("Toast") == "gt-abc"

    def test_force_displaces_previous_work(self, world):
        world.dispatcher.sling("gt-abc", "gastown/Toast")

        result = world.dispatcher.sling("feature", "gastown/Toast", SlingOptions(force=True))

        assert result.displaced_id == "gt-abc"
        assert world.beads.hook_of("Toast") == result.molecule.root_issue_id
        displaced = world.beads.issues["gt-abc"]
        assert displaced.status == "open"
        assert displaced.assignee == ""
        assert "gt-abc" not in world.beads.pinned

    def test_release_happens_even_if_unpin_fails(self, world):
        world.dispatcher.sling("gt-abc", "gastown/Toast")
        world.beads.fail["unpin"] = BeadsError("bd unpin: not pinned")

        world.dispatcher.sling("feature", "gastown/Toast", SlingOptions(force=True))

        assert world.beads.issues["gt-abc"].status == "open"
        assert world.beads.issues["gt-abc"].assignee == ""

    def test_unread_mail_blocks_without_force(self, world):
        world.router.deliver("gastown/polecats/Toast", "earlier work")

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("feature", "gastown/Toast")

        assert isinstance(exc_info.value.cause, UnreadMailError)
        assert exc_info.value.cause.unread == 1

    def test_concurrent_attach_is_detected(self, world, monkeypatch):
        original = FakeBeads.get_or_create_handoff_bead

        def racing(self, role):
            handoff = original(self, role)
            # Another sling lands between our collision check and attach
            FakeBeads._set_attachment(self, handoff.id, "gt-other", UNCHECKED)
            return handoff

        monkeypatch.setattr(FakeBeads, "get_or_create_handoff_bead", racing)

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert exc_info.value.step == "pin"
        assert isinstance(exc_info.value.cause, HookConflictError)
        assert world.beads.hook_of("Toast") == "gt-other"


class TestFailurePolicy:
    def test_sync_failure_is_a_warning(self, world):
        world.beads.fail["sync"] = BeadsError("bd sync: no remote")

        result = world.dispatcher.sling("feature", "gastown/Toast")

        assert [o.step for o in result.warnings] == ["sync-pull", "sync-push"]
        assert world.beads.hook_of("Toast") == result.issue_id
        assert "⚠ Warning:" in world.out.getvalue()

    def test_molecule_failure_is_fatal(self, world):
        world.beads.fail["mol_run"] = BeadsError("running molecule: proto broken")

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("feature", "gastown/Toast")

        assert exc_info.value.step == "materialize"
        assert world.beads.hook_of("Toast") is None

    def test_assign_failure_is_fatal(self, world):
        world.beads.fail["assign"] = BeadsError("bd update: database locked")

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert exc_info.value.step == "assign"

    def test_pin_failure_is_a_note(self, world):
        world.beads.fail["pin"] = BeadsError("bd pin: unsupported")

        result = world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert result.outcome("pin").ok
        assert world.beads.hook_of("Toast") == "gt-abc"
        assert "could not pin work issue" in world.out.getvalue()

    def test_polecat_mail_failure_is_fatal(self, world):
        world.router.fail["send"] = MailError("sending mail: router down")

        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert exc_info.value.step == "notify"

    def test_nudge_failure_is_a_warning(self, world):
        world.tmux.fail["nudge_session"] = TmuxError("session gt-gastown-Toast: pane busy")

        result = world.dispatcher.sling("gt-abc", "gastown/Toast")

        assert not result.outcome("nudge").ok
        assert result.outcome("notify-witness").ok

    def test_events_are_logged(self, world):
        world.dispatcher.sling("gt-abc", "gastown/Toast")
        with pytest.raises(SlingStepError):
            world.dispatcher.sling("gt-abc", "gastown/Toast")

        entries = world.dispatcher.event_logger.read_logs(command_filter="sling")
        levels = [e["level"] for e in entries]
        assert levels.count("ERROR") == 1
        assert any(e["message"].startswith("Command complete: gt-abc") for e in entries)
        error = next(e for e in entries if e["level"] == "ERROR")
        assert error["data"]["step"] == "collision"


class TestOtherTargets:
    def test_crew_gets_mail_but_no_session(self, world):
        world.dispatcher.sling("gt-abc", "gastown/crew/dave")

        assert world.beads.hook_of("dave") == "gt-abc"
        assert len(world.router.sent_to("gastown/crew/dave")) == 1
        assert world.tmux.sessions == {}
        assert "Crew member will see work on next session start" in world.out.getvalue()

    def test_crew_accepts_epics(self, world):
        result = world.dispatcher.sling("gt-epic1", "gastown/crew/dave")
        assert result.issue_id == "gt-epic1"

    def test_crew_mail_failure_is_a_warning(self, world):
        world.router.fail["send"] = MailError("sending mail: router down")

        result = world.dispatcher.sling("gt-abc", "gastown/crew/dave")

        assert [o.step for o in result.warnings] == ["notify"]
        assert world.beads.hook_of("dave") == "gt-abc"

    def test_unknown_crew_member(self, world):
        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-abc", "gastown/crew/davy")

        assert isinstance(exc_info.value.cause, TargetNotFoundError)
        assert exc_info.value.cause.suggestions == ["dave"]

    def test_deacon_runs_proto_on_patrol(self, world):
        result = world.dispatcher.sling("patrol", "deacon/")

        assert result.target.kind == TargetKind.DEACON
        assert world.beads.hook_of("deacon") == result.issue_id
        assert world.router.messages == []
        assert world.tmux.sessions == {}
        output = world.out.getvalue()
        assert "Deacon will run mol-patrol on next patrol" in output
        assert "--wisp" in output

    def test_deacon_rejects_issues(self, world):
        with pytest.raises(SlingStepError) as exc_info:
            world.dispatcher.sling("gt-abc", "deacon/")
        assert isinstance(exc_info.value.cause, InvalidTargetError)

    def test_witness_gets_hook_only(self, world):
        result = world.dispatcher.sling("patrol", "gastown/witness")

        assert world.beads.hook_of("witness") == result.issue_id
        assert world.router.messages == []
        assert "Witness will run mol-patrol on next patrol" in world.out.getvalue()

    def test_refinery_accepts_epics(self, world):
        world.dispatcher.sling("gt-epic1", "gastown/refinery")
        assert world.beads.hook_of("refinery") == "gt-epic1"

    def test_mayor_gets_mail(self, world):
        world.dispatcher.sling("gt-abc", "mayor/")

        assert world.beads.hook_of("mayor") == "gt-abc"
        assert len(world.router.sent_to("mayor/")) == 1
        assert world.tmux.sessions == {}


class TestWorkMail:
    def test_subject_falls_back_to_issue_id(self):
        message = build_work_mail("gastown/polecats/Toast", "gt-xyz", None, None, "mayor/")
        assert message.subject == "Work: gt-xyz"
        assert message.sender == "mayor/"

    def test_sender_from_bd_actor(self, world, monkeypatch):
        monkeypatch.setenv("BD_ACTOR", "gastown/crew/dave")
        world.dispatcher.sling("gt-abc", "gastown/Toast")

        mail = world.router.sent_to("gastown/polecats/Toast")[0]
        assert mail.sender == "gastown/crew/dave"
