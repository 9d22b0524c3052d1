from __future__ import annotations


class WorkspacePredicateError(RuntimeError):
    """Raised when a workspace-scoped query is built without a workspace id."""


def require_workspace_id(workspace_id: str | None) -> str:
    # Empty workspace ids would silently widen a query to every tenant.
    if not workspace_id or not workspace_id.strip():
        raise WorkspacePredicateError("Workspace predicate required but workspace_id is missing")
    return workspace_id


def workspace_predicate(model, workspace_id: str) -> object:
    # Build workspace predicates through a single helper to guarantee guard coverage.
    require_workspace_id(workspace_id)
    return model.workspace_id == workspace_id
