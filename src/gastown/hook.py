"""Hook coordination: the single work slot of each agent identity.

A hook is persisted as the identity's handoff record in the workflow store
(title "<hook_key> Handoff"). It holds zero or one attached molecule id.
Attach and detach are compare-and-set operations at the store boundary, so
two slings racing for the same identity cannot silently overwrite each other.
"""

import logging
from dataclasses import dataclass, field
from typing import List, Optional

from gastown.address import AgentIdentity
from gastown.beads import UNCHECKED, parse_attachment_fields
from gastown.errors import BeadsError, HookOccupiedError

logger = logging.getLogger(__name__)

DISPLACED_REASON = "displaced by new sling"


@dataclass
class AttachResult:
    handoff_id: str
    attached_id: str
    pinned: bool = True
    pin_error: Optional[str] = None


@dataclass
class ReleaseResult:
    released_id: str
    notes: List[str] = field(default_factory=list)


class HookCoordinator:
    """Reads and writes hooks through a Beads-like store."""

    def __init__(self, store):
        self.store = store

    def current(self, identity: AgentIdentity) -> Optional[str]:
        """The molecule on identity's hook, or None."""
        handoff = self.store.find_handoff_bead(identity.hook_key)
        attachment = parse_attachment_fields(handoff)
        return attachment.attached_molecule if attachment else None

    def check_collision(self, identity: AgentIdentity, allow_force: bool) -> Optional[str]:
        """
        Look for work already on identity's hook. Never mutates.

        Returns:
            None when the hook is empty; the occupant's id when occupied and
            allow_force is set.

        Raises:
            HookOccupiedError: If occupied and allow_force is not set
        """
        try:
            occupant = self.current(identity)
        except BeadsError as e:
            # The compare-and-set in attach() still guards the slot
            logger.warning("could not read hook for %s: %s", identity, e)
            return None

        if occupant is None:
            return None
        if not allow_force:
            raise HookOccupiedError(identity.address, occupant)
        return occupant

    def release(self, molecule_id: str, reason: str = DISPLACED_REASON) -> ReleaseResult:
        """
        Return work to the ready pool: unpin (best-effort), then reopen it
        with the assignee cleared.

        Raises:
            BeadsError: If the release itself fails
        """
        result = ReleaseResult(released_id=molecule_id)
        try:
            self.store.unpin(molecule_id)
        except BeadsError as e:
            logger.warning("could not unpin %s: %s", molecule_id, e)
            result.notes.append(f"could not unpin {molecule_id}: {e}")

        self.store.release_with_reason(molecule_id, reason)
        logger.info("released %s (%s)", molecule_id, reason)
        return result

    def attach(self, identity: AgentIdentity, attached_id: str, expected=UNCHECKED) -> AttachResult:
        """
        Put attached_id on identity's hook, creating the handoff record if needed.

        expected is the occupant the caller last saw (None for empty); the
        write fails with HookConflictError if the hook changed since. Pinning
        the work item to the identity afterwards is best-effort.
        """
        handoff = self.store.attach_to_hook(identity.hook_key, attached_id, expected=expected)

        result = AttachResult(handoff_id=handoff.id, attached_id=attached_id)
        try:
            self.store.pin(attached_id, identity.hook_key)
        except BeadsError as e:
            logger.warning("could not pin %s to %s: %s", attached_id, identity, e)
            result.pinned = False
            result.pin_error = str(e)
        return result

    def detach(self, identity: AgentIdentity, expected=UNCHECKED) -> Optional[str]:
        """Clear identity's hook. Returns the id that was attached, if any."""
        handoff = self.store.find_handoff_bead(identity.hook_key)
        attachment = parse_attachment_fields(handoff)
        if attachment is None:
            return None
        self.store.detach_molecule(handoff.id, expected=expected)
        return attachment.attached_molecule
