"""Serializable tree view state: expansion, selection, focus and the current notice."""

from dataclasses import dataclass, field
from typing import Any


@dataclass
class ViewState:
    """UI state passed explicitly through tree interactions."""

    expanded: set[str] = field(default_factory=set)
    selected_id: str | None = None
    focused_id: str | None = None
    notice: str | None = None

    def expand(self, node_id: str | None) -> None:
        if node_id is not None:
            self.expanded.add(node_id)

    def collapse(self, node_id: str) -> None:
        self.expanded.discard(node_id)

    def dismiss_notice(self) -> None:
        self.notice = None

    def forget(self, node_ids: set[str]) -> None:
        """Drop references to removed nodes."""
        self.expanded -= node_ids
        if self.focused_id in node_ids:
            self.focused_id = None
        if self.selected_id in node_ids:
            self.selected_id = None

    def rename(self, old_id: str, new_id: str) -> None:
        """Follow a node whose provisional id was replaced by the server id."""
        if old_id in self.expanded:
            self.expanded.discard(old_id)
            self.expanded.add(new_id)
        if self.selected_id == old_id:
            self.selected_id = new_id
        if self.focused_id == old_id:
            self.focused_id = new_id

    def to_dict(self) -> dict[str, Any]:
        return {
            "expanded": sorted(self.expanded),
            "selected_id": self.selected_id,
            "focused_id": self.focused_id,
            "notice": self.notice,
        }

    @classmethod
    def from_dict(cls, data: dict[str, Any]) -> "ViewState":
        return cls(
            expanded=set(data.get("expanded", ())),
            selected_id=data.get("selected_id"),
            focused_id=data.get("focused_id"),
            notice=data.get("notice"),
        )
