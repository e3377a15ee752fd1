"""
Encoding of variable states as ordered lists of changes.

A variable state is a flat mapping from variable names to values
(values may be nested dicts and lists). The difference between two
states is a list of `VariableChange` objects, one per top-level key:

```python
old = {'gold': 5, 'hp': 100}
new = {'gold': 10, 'mana': 3}
changes = diff_states(old, new)
# set gold 5 -> 10, set mana None -> 3, delete hp
assert apply_changes(old, changes) == new
```

Whether a key changed is decided by deep equality of the values
and of their types (see `values_equal`), not by identity. All
functions are pure: the inputs are never modified, and the outputs
never share mutable values with them.
"""

from collections.abc import Iterable, Mapping
import copy
import json
from typing import Any, Literal

from pydantic import BaseModel, Field

from branchchat.errors import ChangeConflictError

VariableState = dict[str, Any]

ChangeOperation = Literal["set", "delete"]


class VariableChange(BaseModel):
    """A change of one variable.

    Attributes:
        key: the variable name
        old_value: the value before the change (None if the variable
            did not exist)
        new_value: the value after the change (None for deletions)
        op: 'set' or 'delete'
    """

    key: str = Field(..., min_length=1)
    old_value: Any = None
    new_value: Any = None
    op: ChangeOperation = "set"


def values_equal(a: Any, b: Any) -> bool:
    """Deep equality that also requires equal types, so that True,
    1 and 1.0 are different values. Lists and tuples compare as
    JSON arrays."""
    if isinstance(a, (list, tuple)) and isinstance(b, (list, tuple)):
        return len(a) == len(b) and all(
            values_equal(x, y) for x, y in zip(a, b)
        )
    if type(a) is not type(b):
        return False
    if isinstance(a, dict):
        return a.keys() == b.keys() and all(
            values_equal(a[k], b[k]) for k in a
        )
    return a == b


def diff_states(
    old_state: Mapping[str, Any], new_state: Mapping[str, Any]
) -> list[VariableChange]:
    """
    Compute the ordered list of changes transforming old_state into
    new_state.

    Keys added or changed come first, in the order of new_state,
    followed by the deleted keys in the order of old_state. Identical
    inputs give an empty list.
    """
    changes: list[VariableChange] = []

    for key, value in new_state.items():
        if key in old_state and values_equal(old_state[key], value):
            continue
        changes.append(
            VariableChange(
                key=key,
                old_value=copy.deepcopy(old_state.get(key)),
                new_value=copy.deepcopy(value),
                op="set",
            )
        )

    for key, value in old_state.items():
        if key not in new_state:
            changes.append(
                VariableChange(
                    key=key,
                    old_value=copy.deepcopy(value),
                    new_value=None,
                    op="delete",
                )
            )

    return changes


def apply_changes(
    base_state: Mapping[str, Any],
    changes: Iterable[VariableChange],
) -> VariableState:
    """
    Apply a list of changes to a state, returning a new state.

    The recorded old values are not checked (see
    `apply_changes_strict`). Deleting an absent key is a no-op.

    Raises:
        ValueError: if a change has an unknown operation
    """
    state: VariableState = copy.deepcopy(dict(base_state))
    for change in changes:
        match change.op:
            case "set":
                state[change.key] = copy.deepcopy(change.new_value)
            case "delete":
                state.pop(change.key, None)
            case _:
                raise ValueError(
                    f"Invalid change operation: {change.op}"
                )
    return state


def check_change(
    state: Mapping[str, Any], change: VariableChange
) -> str | None:
    """Return a description of the conflict between a change and the
    state it is applied to, or None if the change is consistent."""
    if change.op == "delete":
        if change.key not in state:
            return f"deletes missing variable '{change.key}'"
        if not values_equal(state[change.key], change.old_value):
            return f"old value of '{change.key}' does not match"
        return None
    current: Any = state.get(change.key)
    if not values_equal(current, change.old_value):
        return f"old value of '{change.key}' does not match"
    return None


def apply_changes_strict(
    base_state: Mapping[str, Any],
    changes: Iterable[VariableChange],
) -> VariableState:
    """
    Apply a list of changes, verifying that each change was recorded
    against the state it is applied to.

    Raises:
        ChangeConflictError: at the first inconsistent change
    """
    state: VariableState = copy.deepcopy(dict(base_state))
    for change in changes:
        conflict: str | None = check_change(state, change)
        if conflict is not None:
            raise ChangeConflictError(conflict)
        state = apply_changes(state, [change])
    return state


def state_size(obj: Any) -> int:
    """Size in bytes of the JSON encoding of a state or change list."""
    if isinstance(obj, list):
        obj = [
            c.model_dump(mode="json")
            if isinstance(c, VariableChange)
            else c
            for c in obj
        ]
    return len(
        json.dumps(obj, ensure_ascii=False, default=str).encode(
            "utf-8"
        )
    )
