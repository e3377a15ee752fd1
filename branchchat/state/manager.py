"""
Management of the variable state along the branches of a
conversation tree.

Each turn stores the variables in effect after it, either as a full
snapshot or as a diff against the resolved state of its parent. The
`BranchStateManager` decides which of the two to store, reconstructs
the resolved state of any turn by replaying the path from the root,
and validates and repairs inconsistent chains.

Storing a snapshot at every turn is simple but costs storage
proportional to turns times state size; diffs cost a replay of the
path at restore time. The hybrid policy (see StatePolicySettings)
stores periodic snapshots as checkpoints and diffs in between.

The live variables of a session are held in a `VariableStore`. The
pipeline modifies them while processing a turn; the manager compares
them with the parent's resolved state when the turn is recorded, and
loads a resolved state back into them when the user switches branch.

Example:
    ```python
    manager = BranchStateManager()
    manager.variables.set("gold", 10)
    record = manager.create_variable_record("t2", "t1", {})
    # record.changes == [VariableChange(key='gold', ...)]
    ```
"""

from collections.abc import Sequence
import copy
import json
from typing import Any, NamedTuple

from branchchat.config.config import StatePolicySettings
from branchchat.errors import ChangeConflictError
from branchchat.loggers import LoggerBase, ConsoleLogger

from .codec import (
    VariableChange,
    VariableState,
    apply_changes,
    apply_changes_strict,
    diff_states,
    state_size,
)
from .turns import Turn, VariableMetadata


class VariableStore:
    """The live variables of a session.

    Variables are addressed by name, or by a dotted path into nested
    dictionaries ('stats.hp'). Array indices may be written as
    'items[0]'.
    """

    def __init__(self, initial: dict[str, Any] | None = None) -> None:
        self._variables: VariableState = copy.deepcopy(initial or {})

    @staticmethod
    def _split(path: str) -> list[str]:
        normalized: str = path.replace("[", ".").replace("]", "")
        return [p for p in normalized.split(".") if p]

    def get(self, path: str, default: Any = None) -> Any:
        current: Any = self._variables
        for key in self._split(path):
            if isinstance(current, dict) and key in current:
                current = current[key]
            elif (
                isinstance(current, list)
                and key.isdigit()
                and int(key) < len(current)
            ):
                current = current[int(key)]
            else:
                return default
        return copy.deepcopy(current)

    def set(self, path: str, value: Any) -> None:
        """Assign a value, creating the missing containers on the way.
        A list index may address an existing element or the end of
        the list (appending).

        Raises:
            ValueError: if the path is empty, or if it indexes a list
                beyond its end or with a non-numeric key
        """
        keys: list[str] = self._split(path)
        if not keys:
            raise ValueError(f"Invalid variable path: '{path}'")
        # a failed write leaves the variables unchanged
        variables: VariableState = copy.deepcopy(self._variables)
        current: Any = variables
        for key, next_key in zip(keys, keys[1:]):
            child: Any = self._child(current, key, path)
            if not isinstance(child, (dict, list)):
                child = [] if next_key.isdigit() else {}
                self._assign(current, key, child, path)
            current = child
        self._assign(current, keys[-1], copy.deepcopy(value), path)
        self._variables = variables

    @staticmethod
    def _list_index(items: list[Any], key: str, path: str) -> int:
        if not key.isdigit() or int(key) > len(items):
            raise ValueError(
                f"Invalid list index '{key}' in variable path '{path}'"
            )
        return int(key)

    @classmethod
    def _child(cls, container: Any, key: str, path: str) -> Any:
        if isinstance(container, list):
            index: int = cls._list_index(container, key, path)
            return container[index] if index < len(container) else None
        return container.get(key)

    @classmethod
    def _assign(cls, container: Any, key: str, value: Any, path: str):
        if isinstance(container, list):
            index: int = cls._list_index(container, key, path)
            if index == len(container):
                container.append(value)
            else:
                container[index] = value
        else:
            container[key] = value

    def delete(self, path: str) -> bool:
        keys: list[str] = self._split(path)
        if not keys:
            return False
        current: Any = self._variables
        for key in keys[:-1]:
            if isinstance(current, dict):
                current = current.get(key)
            elif (
                isinstance(current, list)
                and key.isdigit()
                and int(key) < len(current)
            ):
                current = current[int(key)]
            else:
                return False
        last: str = keys[-1]
        if isinstance(current, dict) and last in current:
            del current[last]
            return True
        if (
            isinstance(current, list)
            and last.isdigit()
            and int(last) < len(current)
        ):
            del current[int(last)]
            return True
        return False

    def snapshot(self) -> VariableState:
        """A deep copy of the live variables."""
        return copy.deepcopy(self._variables)

    def load(self, state: dict[str, Any]) -> None:
        """Replace the live variables with a resolved state."""
        self._variables = copy.deepcopy(state)

    def reset(self) -> None:
        self._variables = {}

    def __contains__(self, path: str) -> bool:
        sentinel = object()
        return self.get(path, sentinel) is not sentinel

    def __len__(self) -> int:
        return len(self._variables)


class VariableRecord(NamedTuple):
    """State data stored with a turn."""

    snapshot: VariableState | None
    changes: list[VariableChange] | None
    metadata: VariableMetadata


class ValidationReport(NamedTuple):
    is_valid: bool
    broken_at: str | None = None
    reason: str | None = None


class StorageStatistics(NamedTuple):
    total_nodes: int
    snapshot_count: int
    diff_count: int
    total_size: int
    average_diff_size: float
    compression_ratio: float


def check_path_structure(path: Sequence[Turn]) -> str | None:
    """Return a description of the structural defect of a path from
    the root, or None if the path is well formed."""
    if not path:
        return "empty path"
    if not path[0].is_root:
        return f"path starts at '{path[0].turn_id}', not at the root"
    for parent, child in zip(path, path[1:]):
        if child.parent_id != parent.turn_id:
            return (
                f"turn '{child.turn_id}' is not a child of "
                f"'{parent.turn_id}'"
            )
    return None


class BranchStateManager:
    """
    Decides how the variable state of each turn is stored, and
    reconstructs it for any turn.

    Args:
        policy: the snapshot policy (defaults to StatePolicySettings())
        variables: the live variable store of the session
        logger: logger for anomalies and diagnostics
    """

    def __init__(
        self,
        policy: StatePolicySettings | None = None,
        variables: VariableStore | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.policy: StatePolicySettings = (
            policy or StatePolicySettings()
        )
        self.variables: VariableStore = (
            variables if variables is not None else VariableStore()
        )
        self.logger = logger

    # -- storage policy ----------------------------------------------

    def should_snapshot(
        self,
        parent_state: VariableState | None,
        changes_count: int,
        diffs_since_snapshot: int = 0,
    ) -> bool:
        """Apply the policy to decide whether to store a snapshot."""
        if parent_state is None:
            return True
        if not self.policy.enable_snapshots:
            return False
        if changes_count > self.policy.max_changes:
            return True
        if (
            len(parent_state) >= self.policy.ratio_min_keys
            and changes_count / len(parent_state)
            > self.policy.max_change_ratio
        ):
            return True
        return diffs_since_snapshot >= self.policy.max_snapshot_interval

    def create_variable_record(
        self,
        turn_id: str,
        parent_turn_id: str | None,
        parent_resolved_state: VariableState | None,
        force_snapshot: bool = False,
        diffs_since_snapshot: int = 0,
    ) -> VariableRecord:
        """
        Create the state record of a new turn from the live variables.

        Args:
            turn_id: the id of the new turn
            parent_turn_id: the id of its parent
            parent_resolved_state: the resolved state of the parent,
                or None if the parent has no known state
            force_snapshot: store a full snapshot regardless of the
                policy (root, initialization directives)
            diffs_since_snapshot: number of consecutive diff turns on
                the path above the new turn

        Returns:
            a VariableRecord with either a snapshot or a diff
        """
        live: VariableState = self.variables.snapshot()
        changes: list[VariableChange] = diff_states(
            parent_resolved_state or {}, live
        )
        has_changes: bool = bool(changes)

        if force_snapshot or self.should_snapshot(
            parent_resolved_state, len(changes), diffs_since_snapshot
        ):
            record = VariableRecord(
                snapshot=live,
                changes=None,
                metadata=VariableMetadata(
                    has_changes=has_changes,
                    is_snapshot=True,
                    size=state_size(live),
                ),
            )
        else:
            record = VariableRecord(
                snapshot=None,
                changes=changes,
                metadata=VariableMetadata(
                    has_changes=has_changes,
                    is_snapshot=False,
                    size=state_size(changes),
                ),
            )

        if has_changes or record.snapshot is not None:
            self.logger.info(
                f"Variable state of turn {turn_id} (parent "
                f"{parent_turn_id}): "
                + (
                    "snapshot"
                    if record.snapshot is not None
                    else f"{len(changes)} changes"
                )
                + f", {record.metadata.size} bytes"
            )
        return record

    # -- reconstruction ----------------------------------------------

    def resolve(self, path: Sequence[Turn]) -> VariableState:
        """
        Replay a path from the root, returning the resolved state at
        its last turn.

        Raises:
            ValueError: if the path is malformed
        """
        defect: str | None = check_path_structure(path)
        if defect is not None:
            raise ValueError(defect)

        state: VariableState = {}
        for turn in path:
            if turn.variable_snapshot is not None:
                state = copy.deepcopy(turn.variable_snapshot)
            elif turn.variable_changes:
                state = apply_changes(state, turn.variable_changes)
        return state

    def restore_variable_state(
        self,
        turn_id: str,
        turn: Turn | None,
        path: Sequence[Turn],
    ) -> VariableState:
        """
        Reconstruct the resolved state of turn_id from its path.

        Fails closed: a malformed path gives an empty state, and the
        anomaly is logged.
        """
        if turn is not None and turn.turn_id != turn_id:
            self.logger.error(
                f"Restore of {turn_id} called with turn "
                f"{turn.turn_id}"
            )
            return {}
        if not path or path[-1].turn_id != turn_id:
            self.logger.error(
                f"Cannot restore variable state of {turn_id}: "
                "the path does not end at the turn"
            )
            return {}
        try:
            return self.resolve(path)
        except (ValueError, TypeError) as e:
            self.logger.error(
                f"Cannot restore variable state of {turn_id}: {e}"
            )
            return {}

    def activate(self, state: VariableState) -> None:
        """Load a resolved state into the live variables."""
        self.variables.load(state)

    # -- validation and repair ---------------------------------------

    def validate_variable_state(
        self, path: Sequence[Turn]
    ) -> ValidationReport:
        """
        Check that the state chain along a path can be replayed.

        A turn is broken if it has a state record but neither a
        snapshot nor a diff, if it is flagged as a snapshot but has
        none, or if its diff was not recorded against the resolved
        state of its parent. The first broken turn is reported.
        """
        if not path:
            return ValidationReport(True)
        defect: str | None = check_path_structure(path)
        if defect is not None:
            return ValidationReport(False, path[0].turn_id, defect)

        state: VariableState = {}
        for turn in path:
            meta: VariableMetadata | None = turn.variable_metadata
            if turn.variable_snapshot is not None:
                state = copy.deepcopy(turn.variable_snapshot)
                continue
            if turn.is_root:
                continue
            if meta is not None and meta.is_snapshot:
                return ValidationReport(
                    False, turn.turn_id, "snapshot missing"
                )
            if turn.variable_changes is None:
                if meta is not None:
                    return ValidationReport(
                        False,
                        turn.turn_id,
                        "state record without snapshot or diff",
                    )
                continue
            try:
                state = apply_changes_strict(
                    state, turn.variable_changes
                )
            except ChangeConflictError as e:
                return ValidationReport(False, turn.turn_id, str(e))
        return ValidationReport(True)

    def repair_variable_state_chain(self, path: Sequence[Turn]) -> bool:
        """
        Rewrite the state records of a path from its first broken turn.

        The broken turn receives a snapshot of its best-known state
        (the parent's state with whatever changes it still records);
        the turns below it on the path receive diffs recomputed
        against their repaired parent. No turn is removed.

        Returns:
            True if the path validates after the repair.
        """
        defect: str | None = check_path_structure(path)
        if defect is not None:
            self.logger.error(f"Cannot repair variable state: {defect}")
            return False

        report: ValidationReport = self.validate_variable_state(path)
        if report.is_valid:
            return True

        try:
            start: int = next(
                i
                for i, t in enumerate(path)
                if t.turn_id == report.broken_at
            )
            state: VariableState = self.resolve(path[:start])

            for index in range(start, len(path)):
                turn: Turn = path[index]
                if index > start and turn.variable_snapshot is not None:
                    state = copy.deepcopy(turn.variable_snapshot)
                    continue

                best_known: VariableState = (
                    apply_changes(state, turn.variable_changes)
                    if turn.variable_changes
                    else copy.deepcopy(state)
                )
                changes = diff_states(state, best_known)
                if index == start:
                    turn.variable_snapshot = best_known
                    turn.variable_changes = None
                    turn.variable_metadata = VariableMetadata(
                        has_changes=bool(changes),
                        is_snapshot=True,
                        size=state_size(best_known),
                    )
                else:
                    turn.variable_snapshot = None
                    turn.variable_changes = changes
                    turn.variable_metadata = VariableMetadata(
                        has_changes=bool(changes),
                        is_snapshot=False,
                        size=state_size(changes),
                    )
                state = best_known

        except (ValueError, TypeError) as e:
            self.logger.error(f"Repair of variable state failed: {e}")
            return False

        self.logger.warning(
            f"Repaired variable state chain from turn "
            f"{report.broken_at} ({report.reason}), "
            f"{len(path) - start} turns rewritten"
        )
        return self.validate_variable_state(path).is_valid

    # -- diagnostics -------------------------------------------------

    def get_storage_statistics(
        self, path: Sequence[Turn]
    ) -> StorageStatistics:
        snapshot_count: int = 0
        diff_sizes: list[int] = []
        total_size: int = 0
        for turn in path:
            size: int = (
                turn.variable_metadata.size
                if turn.variable_metadata
                else 0
            )
            if turn.variable_snapshot is not None:
                snapshot_count += 1
            elif turn.variable_changes is not None:
                diff_sizes.append(size)
            total_size += size

        diff_count: int = len(diff_sizes)
        stored: int = snapshot_count + diff_count
        return StorageStatistics(
            total_nodes=len(path),
            snapshot_count=snapshot_count,
            diff_count=diff_count,
            total_size=total_size,
            average_diff_size=(
                sum(diff_sizes) / diff_count if diff_count else 0.0
            ),
            compression_ratio=diff_count / stored if stored else 0.0,
        )

    @staticmethod
    def summarize_turn(turn: Turn) -> dict[str, Any]:
        return {
            'has_snapshot': turn.variable_snapshot is not None,
            'has_changes': bool(turn.variable_changes),
            'changes_count': len(turn.variable_changes or []),
            'timestamp': (
                turn.variable_metadata.timestamp.isoformat()
                if turn.variable_metadata
                else None
            ),
        }

    def export_turn_state(self, turn: Turn) -> str:
        """JSON dump of the state record of a turn, for debugging."""
        data: dict[str, Any] = {
            'summary': self.summarize_turn(turn),
            'snapshot': turn.variable_snapshot,
            'changes': [
                c.model_dump(mode="json")
                for c in turn.variable_changes or []
            ],
            'metadata': (
                turn.variable_metadata.model_dump(mode="json")
                if turn.variable_metadata
                else None
            ),
        }
        return json.dumps(data, indent=2, ensure_ascii=False, default=str)
