"""Exception taxonomy for gt.

Every error a command can surface derives from GastownError. Errors the
caller may override with --force set `overridable = True`.
"""

from typing import List, Optional

from gastown.error_logging import ErrorType


class GastownError(Exception):
    """Base class for all gt errors."""

    error_type = ErrorType.UNEXPECTED_ERROR
    overridable = False


class InvalidTargetError(GastownError):
    """Raised when a target string cannot be resolved to an agent."""

    error_type = ErrorType.INVALID_TARGET


class ThingNotFoundError(GastownError):
    """Raised when a thing is neither a known issue nor a catalog proto."""

    error_type = ErrorType.THING_NOT_FOUND

    def __init__(self, thing: str, detail: str = ""):
        self.thing = thing
        message = f"thing not found: {thing}"
        if detail:
            message = f"{message} ({detail})"
        super().__init__(message)


class TargetNotFoundError(GastownError):
    """Raised when the target agent instance does not exist."""

    error_type = ErrorType.TARGET_NOT_FOUND

    def __init__(self, kind: str, name: str, suggestions: Optional[List[str]] = None, hint: str = ""):
        from gastown.suggest import format_suggestion

        self.kind = kind
        self.name = name
        self.suggestions = list(suggestions or [])
        self.hint = hint
        super().__init__(format_suggestion(kind, name, self.suggestions, hint))


class HookOccupiedError(GastownError):
    """Raised when the target's hook already holds work and force is not set."""

    error_type = ErrorType.HOOK_OCCUPIED
    overridable = True

    def __init__(self, address: str, occupant: str):
        self.address = address
        self.occupant = occupant
        super().__init__(f"hook for {address} already occupied by {occupant}; use --force to re-sling")


class HookConflictError(GastownError):
    """Raised when the hook changed between the collision check and the attach."""

    error_type = ErrorType.HOOK_CONFLICT

    def __init__(self, handoff_id: str, expected: Optional[str], actual: Optional[str]):
        self.handoff_id = handoff_id
        self.expected = expected
        self.actual = actual
        super().__init__(
            f"hook {handoff_id} changed concurrently: expected {expected or 'empty'}, "
            f"found {actual or 'empty'}"
        )


class UnknownIdentityError(GastownError):
    """Raised when a lifecycle sender has no known session mapping."""

    error_type = ErrorType.UNKNOWN_IDENTITY

    def __init__(self, identity: str):
        self.identity = identity
        super().__init__(f"unknown agent identity: {identity}")


class UncommittedWorkError(GastownError):
    """Raised when a polecat's working copy holds unsaved work."""

    error_type = ErrorType.UNCOMMITTED_WORK
    overridable = True

    def __init__(self, name: str, summary: str = ""):
        self.name = name
        message = f"polecat '{name}' has uncommitted work"
        if summary:
            message = f"{message} ({summary})"
        super().__init__(f"{message}; use --force to proceed anyway")


class UnreadMailError(GastownError):
    """Raised when a polecat still has unread messages."""

    error_type = ErrorType.UNREAD_MAIL
    overridable = True

    def __init__(self, name: str, unread: int):
        self.name = name
        self.unread = unread
        super().__init__(f"polecat '{name}' has {unread} unread message(s); use --force to override")


class DaemonNotRunningError(GastownError):
    error_type = ErrorType.DAEMON_NOT_RUNNING

    def __init__(self, town_root):
        self.town_root = town_root
        super().__init__(f"daemon is not running for {town_root}")


class BeadsError(GastownError):
    """Raised when a bd command fails."""

    error_type = ErrorType.BEADS_ERROR


class BeadsCLINotFoundError(BeadsError):
    """Raised when the bd CLI is not installed or not in PATH."""

    def __init__(self, message: str = "bd CLI not found. Install beads or check PATH."):
        super().__init__(message)


class BeadsIssueNotFoundError(BeadsError):
    """Raised when a beads issue is not found."""

    def __init__(self, issue_id: str):
        self.issue_id = issue_id
        super().__init__(f"Beads issue '{issue_id}' not found")


class MailError(GastownError):
    error_type = ErrorType.MAIL_ERROR


class TmuxError(GastownError):
    error_type = ErrorType.TMUX_ERROR


class GitError(GastownError):
    error_type = ErrorType.UNEXPECTED_ERROR


class SlingStepError(GastownError):
    """A fatal dispatch step failed; wraps the cause with the step name.

    str() is the one-line headline; any further lines of the cause (such as
    did-you-mean suggestions) are kept in `detail`.
    """

    def __init__(self, step: str, cause: BaseException):
        self.step = step
        self.cause = cause
        headline, _, rest = str(cause).partition("\n")
        self.detail = rest.strip("\n")
        super().__init__(f"{step}: {headline}")

    @property
    def error_type(self):
        return getattr(self.cause, "error_type", ErrorType.UNEXPECTED_ERROR)

    @property
    def overridable(self):
        return getattr(self.cause, "overridable", False)
