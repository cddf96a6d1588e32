"""Error kinds raised by the hierarchy and synchronization engine."""

from typing import Any

from manuscript_sync.models.node import ChildSummary


class ManuscriptError(Exception):
    """Base class for all manuscript-sync errors."""

    kind = "error"

    def to_dict(self) -> dict[str, Any]:
        """Serialize for tool and CLI responses."""
        return {"error": str(self), "error_kind": self.kind}


class ValidationError(ManuscriptError):
    """Malformed input: empty title, missing project, unknown kind."""

    kind = "validation"


class NotFoundError(ManuscriptError):
    """A referenced node or project does not exist."""

    kind = "not_found"


class AuthorizationError(ManuscriptError):
    """The acting principal does not own the project."""

    kind = "authorization"


class InvalidMoveError(ManuscriptError):
    """Self-move, non-container target, cycle, or a lost move race."""

    kind = "invalid_move"


class NonEmptyContainerError(ManuscriptError):
    """Deleting a container that still has descendants without ``force``."""

    kind = "non_empty_container"

    def __init__(
        self, message: str, *, child_count: int, children: tuple[ChildSummary, ...]
    ) -> None:
        super().__init__(message)
        self.child_count = child_count
        self.children = children

    def to_dict(self) -> dict[str, Any]:
        data = super().to_dict()
        data["child_count"] = self.child_count
        data["children"] = [c.to_dict() for c in self.children]
        return data


class Busy(ManuscriptError):
    """A structural mutation is already in flight on this client."""

    kind = "busy"


class ExternalStoreError(ManuscriptError):
    """An external store call failed or timed out."""

    kind = "external_store"
