# pyright: reportUnusedImport=false
# flake8: noqa

from .codec import (
    VariableState,
    VariableChange,
    diff_states,
    apply_changes,
    apply_changes_strict,
    check_change,
    state_size,
    values_equal,
)

from .turns import (
    VariableMetadata,
    ParsedFields,
    Turn,
    ConversationTree,
)

from .manager import (
    VariableStore,
    VariableRecord,
    ValidationReport,
    StorageStatistics,
    BranchStateManager,
    check_path_structure,
)
