"""Exception hierarchy for the cgm-agent worker."""

from __future__ import annotations


class CgmAgentError(Exception):
    """Base class for every error raised deliberately by this package."""


class InvariantViolation(CgmAgentError):
    """A data invariant that should hold by construction does not.

    Example: a window whose marker no longer exists.  Never swallowed; the
    enclosing job or cascade cycle fails loudly.
    """


class SubjectNotFound(CgmAgentError):
    """A queued job refers to an entity that does not exist."""

    def __init__(self, kind: str, subject_id: str) -> None:
        super().__init__(f"{kind} subject {subject_id!r} not found")
        self.kind = kind
        self.subject_id = subject_id


class AnalyzerSoftFailure(CgmAgentError):
    """The analyzer answered, but with nothing usable (empty or failed)."""
