"""
Data model of the conversation tree.

A `ConversationTree` owns its turns as a flat list in creation order.
Links between turns are plain identifiers (`parent_id`); the root turn
has the id of the tree and no parent. Each turn may carry the
variable state in effect after it, either as a full snapshot or as
changes relative to its parent.
"""

from datetime import datetime
from typing import Any

from pydantic import BaseModel, Field

from .codec import VariableChange


class VariableMetadata(BaseModel):
    """Describes how the variable state of a turn was stored.

    Attributes:
        timestamp: time the record was created
        has_changes: whether any variable changed relative to the
            parent's resolved state
        is_snapshot: True for full snapshots, False for diffs
        size: size in bytes of the stored snapshot or diff
    """

    timestamp: datetime = Field(default_factory=datetime.now)
    has_changes: bool = False
    is_snapshot: bool = False
    size: int = Field(default=0, ge=0)


class ParsedFields(BaseModel):
    """Structured fields extracted from the model response."""

    next_prompts: list[str] = Field(default_factory=list)
    event: str | None = None
    tool_results: list[dict[str, Any]] = Field(default_factory=list)


class Turn(BaseModel):
    """A turn of the conversation (a node of the tree)."""

    turn_id: str = Field(..., min_length=1)
    parent_id: str | None = None
    user_input: str = ""
    response: str = ""
    full_response: str = ""
    reasoning: str | None = None
    parsed: ParsedFields | None = None

    variable_snapshot: dict[str, Any] | None = None
    variable_changes: list[VariableChange] | None = None
    variable_metadata: VariableMetadata | None = None

    @property
    def is_root(self) -> bool:
        return self.parent_id is None

    @property
    def has_state_record(self) -> bool:
        return self.variable_metadata is not None


class ConversationTree(BaseModel):
    """The branching history of a conversation.

    Attributes:
        tree_id: the id of the tree, which is also the id of its root
        owner_id: the conversation identity owning the tree
        current_turn_id: the turn continued by default
        turns: all turns, in creation order
    """

    tree_id: str = Field(..., min_length=1)
    owner_id: str = Field(..., min_length=1)
    current_turn_id: str
    turns: list[Turn] = Field(default_factory=list)

    @property
    def root_id(self) -> str:
        return self.tree_id

    def find_turn(self, turn_id: str) -> Turn | None:
        for turn in self.turns:
            if turn.turn_id == turn_id:
                return turn
        return None

    def children_of(self, turn_id: str) -> list[Turn]:
        return [t for t in self.turns if t.parent_id == turn_id]

    def path_to(self, turn_id: str) -> list[Turn]:
        """Turns from the root to turn_id (inclusive), or an empty
        list if turn_id is not in the tree or its ancestry is
        broken."""
        index: dict[str, Turn] = {t.turn_id: t for t in self.turns}
        path: list[Turn] = []
        seen: set[str] = set()
        current: Turn | None = index.get(turn_id)
        while current is not None:
            if current.turn_id in seen:
                return []
            seen.add(current.turn_id)
            path.append(current)
            if current.parent_id is None:
                break
            current = index.get(current.parent_id)
            if current is None:
                return []
        path.reverse()
        return path

    def subtree_ids(self, turn_id: str) -> set[str]:
        """The id of turn_id and of all its descendants."""
        collected: set[str] = {turn_id}
        frontier: list[str] = [turn_id]
        while frontier:
            parent: str = frontier.pop()
            for child in self.children_of(parent):
                if child.turn_id not in collected:
                    collected.add(child.turn_id)
                    frontier.append(child.turn_id)
        return collected
