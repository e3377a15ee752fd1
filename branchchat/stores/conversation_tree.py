"""
Persistence of conversation trees.

The `ConversationTreeStore` keeps one tree per owner in a collection
of the storage object, and coordinates the variable state of the
session with the branch being continued: adding a turn records the
live variables as a snapshot or diff, switching branch restores the
resolved state of the target turn into the live variables.

Lookups of missing trees or turns are not errors: the methods return
None, False, or an empty list, and log a warning. Errors of the
storage object (StorageError) propagate to the caller.

Mutations of a tree are not serialized by the store. Callers that
may process concurrent requests for the same tree acquire the lock
of the tree from a `TreeLocks` object first:

```python
locks = TreeLocks()
async with locks.get(tree_id):
    await store.add_turn(tree_id, parent_id, query, response, response)
```
"""

import asyncio
from typing import Any
from uuid import uuid4

from pydantic import ValidationError

from branchchat.errors import StorageError
from branchchat.loggers import LoggerBase, ConsoleLogger
from branchchat.state.codec import VariableState
from branchchat.state.manager import (
    BranchStateManager,
    StorageStatistics,
    ValidationReport,
)
from branchchat.state.turns import ConversationTree, ParsedFields, Turn

from .storage import StorageInterface

# fields of a turn that cannot be changed after creation
_IMMUTABLE_FIELDS: frozenset[str] = frozenset({"turn_id", "parent_id"})


class TreeLocks:
    """A registry of asyncio locks, one per tree id."""

    def __init__(self) -> None:
        self._locks: dict[str, asyncio.Lock] = {}

    def get(self, tree_id: str) -> asyncio.Lock:
        lock: asyncio.Lock | None = self._locks.get(tree_id)
        if lock is None:
            lock = asyncio.Lock()
            self._locks[tree_id] = lock
        return lock

    def discard(self, tree_id: str) -> None:
        lock: asyncio.Lock | None = self._locks.get(tree_id)
        if lock is not None and not lock.locked():
            del self._locks[tree_id]

    def __len__(self) -> int:
        return len(self._locks)


class ConversationTreeStore:
    """
    Stores conversation trees and keeps the live variables of the
    session in step with the active branch.

    Args:
        storage: the storage object
        state_manager: the variable state manager of the session
        collection: the storage key of the trees
        init_directive: user input containing this text forces a
            snapshot of the variables (defaults to the directive of
            the state manager's policy)
        collection_lock: lock serializing the updates of the
            collection, shared by the stores of a storage object
        logger: logger for warnings and errors
    """

    def __init__(
        self,
        storage: StorageInterface,
        state_manager: BranchStateManager | None = None,
        *,
        collection: str = "dialogue_trees",
        init_directive: str | None = None,
        collection_lock: asyncio.Lock | None = None,
        logger: LoggerBase = ConsoleLogger(),
    ) -> None:
        self.storage = storage
        self.state_manager: BranchStateManager = (
            state_manager or BranchStateManager(logger=logger)
        )
        self.collection = collection
        self.init_directive: str = (
            init_directive or self.state_manager.policy.init_directive
        )
        self.collection_lock: asyncio.Lock = (
            collection_lock or asyncio.Lock()
        )
        self.logger = logger

    # -- persistence -------------------------------------------------

    async def _read_trees(self) -> list[dict[str, Any]]:
        return await self.storage.read(self.collection)

    async def _save_tree(self, tree: ConversationTree) -> None:
        async with self.collection_lock:
            records: list[dict[str, Any]] = [
                r
                for r in await self._read_trees()
                if r.get("tree_id") != tree.tree_id
            ]
            records.append(tree.model_dump(mode="json"))
            await self.storage.write(self.collection, records)

    async def get_tree(self, tree_id: str) -> ConversationTree | None:
        """Load a tree, or return None if it does not exist.

        Raises:
            StorageError: if the stored record is not a valid tree
        """
        for record in await self._read_trees():
            if record.get("tree_id") == tree_id:
                try:
                    return ConversationTree.model_validate(record)
                except ValidationError as e:
                    raise StorageError(
                        f"Stored tree {tree_id} is invalid: {e}"
                    ) from e
        return None

    async def _require_tree(self, tree_id: str) -> ConversationTree | None:
        tree: ConversationTree | None = await self.get_tree(tree_id)
        if tree is None:
            self.logger.warning(f"Conversation tree {tree_id} not found")
        return tree

    # -- tree lifecycle ----------------------------------------------

    async def create_tree(self, owner_id: str) -> ConversationTree:
        """
        Create the tree of an owner, replacing any previous tree of the
        same owner. The tree id and the id of the root turn are the
        owner id. The live variables are reset.
        """
        tree = ConversationTree(
            tree_id=owner_id,
            owner_id=owner_id,
            current_turn_id=owner_id,
            turns=[Turn(turn_id=owner_id, parent_id=None)],
        )
        async with self.collection_lock:
            records: list[dict[str, Any]] = [
                r
                for r in await self._read_trees()
                if r.get("owner_id") != owner_id
                and r.get("tree_id") != owner_id
            ]
            records.append(tree.model_dump(mode="json"))
            await self.storage.write(self.collection, records)
        self.state_manager.variables.reset()
        self.logger.info(f"Created conversation tree {owner_id}")
        return tree

    async def delete_tree(self, tree_id: str) -> bool:
        async with self.collection_lock:
            records: list[dict[str, Any]] = await self._read_trees()
            kept = [r for r in records if r.get("tree_id") != tree_id]
            if len(kept) == len(records):
                return False
            await self.storage.write(self.collection, kept)
        return True

    # -- turns -------------------------------------------------------

    def _parent_state(
        self, path: list[Turn]
    ) -> tuple[VariableState | None, int]:
        """The resolved state at the end of a path and the number of
        chained diffs since the last snapshot. The state is None if
        the chain does not validate."""
        if not path:
            return None, 0
        report: ValidationReport = (
            self.state_manager.validate_variable_state(path)
        )
        if not report.is_valid:
            self.logger.warning(
                f"Variable state of turn {path[-1].turn_id} cannot be "
                f"resolved: {report.reason} at {report.broken_at}"
            )
            return None, 0

        diffs: int = 0
        for turn in reversed(path):
            if turn.variable_snapshot is not None:
                break
            if turn.variable_changes is not None:
                diffs += 1
        return self.state_manager.resolve(path), diffs

    async def add_turn(
        self,
        tree_id: str,
        parent_turn_id: str,
        user_input: str,
        response: str,
        full_response: str,
        reasoning: str | None = None,
        parsed: ParsedFields | None = None,
        turn_id: str | None = None,
    ) -> str | None:
        """
        Append a turn to a tree and make it the current turn.

        The variable record of the turn is computed from the live
        variables of the session and the resolved state of the parent.

        Returns:
            the id of the new turn, or None if the tree or parent does
            not exist or the given turn id is already used
        """
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        if tree.find_turn(parent_turn_id) is None:
            self.logger.warning(
                f"Parent turn {parent_turn_id} not found in tree {tree_id}"
            )
            return None
        if turn_id is None:
            turn_id = uuid4().hex
        elif tree.find_turn(turn_id) is not None:
            self.logger.warning(
                f"Turn {turn_id} already exists in tree {tree_id}"
            )
            return None

        parent_state, diffs_since_snapshot = self._parent_state(
            tree.path_to(parent_turn_id)
        )
        record = self.state_manager.create_variable_record(
            turn_id,
            parent_turn_id,
            parent_state,
            force_snapshot=self.init_directive in user_input,
            diffs_since_snapshot=diffs_since_snapshot,
        )

        tree.turns.append(
            Turn(
                turn_id=turn_id,
                parent_id=parent_turn_id,
                user_input=user_input,
                response=response,
                full_response=full_response,
                reasoning=reasoning,
                parsed=parsed,
                variable_snapshot=record.snapshot,
                variable_changes=record.changes,
                variable_metadata=record.metadata,
            )
        )
        tree.current_turn_id = turn_id
        await self._save_tree(tree)
        return turn_id

    async def update_turn(
        self, tree_id: str, turn_id: str, **fields: Any
    ) -> ConversationTree | None:
        """Change fields of a turn. The id and the parent of a turn
        cannot be changed."""
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        forbidden: set[str] = _IMMUTABLE_FIELDS & fields.keys()
        if forbidden:
            self.logger.error(
                f"Cannot change {', '.join(sorted(forbidden))} of a turn"
            )
            return None
        for index, turn in enumerate(tree.turns):
            if turn.turn_id == turn_id:
                try:
                    tree.turns[index] = Turn.model_validate(
                        {**turn.model_dump(), **fields}
                    )
                except ValidationError as e:
                    self.logger.error(
                        f"Invalid update of turn {turn_id}: {e}"
                    )
                    return None
                await self._save_tree(tree)
                return tree
        self.logger.warning(f"Turn {turn_id} not found in tree {tree_id}")
        return None

    def _activate_turn(self, tree: ConversationTree, turn_id: str) -> None:
        """Validate, repair if needed, and load the resolved state of a
        turn into the live variables."""
        manager: BranchStateManager = self.state_manager
        path: list[Turn] = tree.path_to(turn_id)
        report: ValidationReport = manager.validate_variable_state(path)
        if not report.is_valid:
            self.logger.warning(
                f"Variable state chain of turn {turn_id} is broken at "
                f"{report.broken_at} ({report.reason}), repairing"
            )
            if not manager.repair_variable_state_chain(path):
                self.logger.error(
                    f"Repair of the variable state of turn {turn_id} "
                    "failed, the restored state may be incomplete"
                )
        manager.activate(
            manager.restore_variable_state(
                turn_id, tree.find_turn(turn_id), path
            )
        )

    async def switch_branch(
        self, tree_id: str, turn_id: str
    ) -> ConversationTree | None:
        """
        Make turn_id the current turn, restoring its variable state
        into the live variables. A broken state chain on the path is
        repaired first; the repaired records are saved with the tree.
        """
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        if tree.find_turn(turn_id) is None:
            self.logger.warning(f"Turn {turn_id} not found in tree {tree_id}")
            return None

        self._activate_turn(tree, turn_id)
        stats: StorageStatistics = self.state_manager.get_storage_statistics(
            tree.path_to(turn_id)
        )
        self.logger.info(
            f"Switched to turn {turn_id}: {stats.total_nodes} turns, "
            f"{stats.snapshot_count} snapshots, {stats.diff_count} diffs"
        )
        tree.current_turn_id = turn_id
        await self._save_tree(tree)
        return tree

    async def delete_turn(
        self, tree_id: str, turn_id: str
    ) -> ConversationTree | None:
        """
        Delete a turn and all its descendants. The root cannot be
        deleted. If the current turn is removed, the parent of the
        deleted turn becomes current and its state is activated.
        """
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        turn: Turn | None = tree.find_turn(turn_id)
        if turn is None:
            return None
        if turn.is_root:
            self.logger.warning("The root turn cannot be deleted")
            return None

        removed: set[str] = tree.subtree_ids(turn_id)
        tree.turns = [t for t in tree.turns if t.turn_id not in removed]
        if tree.current_turn_id in removed and turn.parent_id is not None:
            tree.current_turn_id = turn.parent_id
            self._activate_turn(tree, turn.parent_id)
        await self._save_tree(tree)
        return tree

    async def clear_history(self, tree_id: str) -> ConversationTree | None:
        """Remove every turn but the root. The live variables are
        reset."""
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        tree.turns = [t for t in tree.turns if t.is_root]
        tree.current_turn_id = tree.root_id
        self.state_manager.variables.reset()
        await self._save_tree(tree)
        return tree

    # -- queries -----------------------------------------------------

    async def resolve_state(
        self, tree_id: str, turn_id: str
    ) -> VariableState | None:
        """The resolved variable state of a turn, without changing the
        live variables."""
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None or tree.find_turn(turn_id) is None:
            return None
        return self.state_manager.restore_variable_state(
            turn_id, tree.find_turn(turn_id), tree.path_to(turn_id)
        )

    async def get_storage_statistics(
        self, tree_id: str, turn_id: str | None = None
    ) -> StorageStatistics | None:
        """Storage statistics of the path to turn_id (default: the
        current turn)."""
        tree: ConversationTree | None = await self._require_tree(tree_id)
        if tree is None:
            return None
        return self.state_manager.get_storage_statistics(
            tree.path_to(turn_id or tree.current_turn_id)
        )

    async def get_path_to_turn(self, tree_id: str, turn_id: str) -> list[Turn]:
        tree: ConversationTree | None = await self.get_tree(tree_id)
        return tree.path_to(turn_id) if tree else []

    async def get_child_turns(self, tree_id: str, turn_id: str) -> list[Turn]:
        tree: ConversationTree | None = await self.get_tree(tree_id)
        return tree.children_of(turn_id) if tree else []

    async def node_exists(self, tree_id: str, turn_id: str) -> bool:
        tree: ConversationTree | None = await self.get_tree(tree_id)
        return tree is not None and tree.find_turn(turn_id) is not None

    async def get_last_turn_id(self, tree_id: str) -> str | None:
        """The current turn of the tree."""
        tree: ConversationTree | None = await self.get_tree(tree_id)
        return tree.current_turn_id if tree else None

    async def get_system_message(self, tree_id: str) -> str:
        """The response of the opening turn (the first child of the
        root), or an empty string."""
        tree: ConversationTree | None = await self.get_tree(tree_id)
        if tree is None:
            return ""
        children: list[Turn] = tree.children_of(tree.root_id)
        return children[0].response if children else ""
