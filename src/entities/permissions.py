"""
src/entities/permissions.py - minimal role-based access control (RBAC)

RBAC = Role-Based Access Control. Instead of granting permissions to specific
people, we grant them to roles (e.g., "manager"). Anyone with that role can do
the operation. This keeps rules simple and scalable.

Operations are keyed as "<Entity>.<operation>". An operation missing from the
matrix is open to everyone, including anonymous callers.

Usage:
    policy = RolePolicy()
    provider = InMemoryActionProvider([...], policy=policy)
"""


from typing import Any, Dict, Literal, Mapping, Optional, Set


Role = Literal["owner", "manager", "member", "viewer"]

# Minimal default for the reference business workspace
ACTION_MATRIX: Dict[str, Set[str]] = {
    "Invoice.create_invoice": {"owner", "manager"},
    "Invoice.mark_paid": {"owner", "manager"},
    "Invoice.chase_late_payers": {"owner", "manager"},
    "Task.create_task": {"owner", "manager", "member"},
    "Task.move_task": {"owner", "manager", "member"},
    "Task.delete_task": {"owner", "manager"},
}


def role_of(actor: Any) -> Optional[str]:
    """
    Pull a role name out of whatever the caller uses as an actor.

    Accepts a plain role string, a mapping with a "role" key, or an object
    with a `role` attribute. Returns None for anonymous callers.
    """

    if actor is None:
        return None

    if isinstance(actor, str):
        return actor

    if isinstance(actor, Mapping):
        return actor.get("role")

    return getattr(actor, "role", None)

def has_permission(user_role: Optional[str], action: str, matrix: Optional[Mapping[str, Set[str]]] = None) -> bool:
    """
    Return True if the given role is allowed to perform `action`.

    Args:
        user_role: One of "owner" | "manager" | "member" | "viewer", or None.
        action: The operation key to check, e.g., "Invoice.create_invoice".
        matrix: Role matrix to consult (defaults to ACTION_MATRIX).
    """

    matrix = ACTION_MATRIX if matrix is None else matrix

    if action not in matrix:
        return True

    return user_role in matrix[action]


class RolePolicy:
    """Policy callable for InMemoryActionProvider backed by a role matrix."""

    def __init__(self, matrix: Optional[Mapping[str, Set[str]]] = None):

        self.matrix = dict(ACTION_MATRIX if matrix is None else matrix)

    def __call__(self, actor: Any, tenant: Any, entity: str, operation: str, input: Dict[str, Any]) -> bool:

        return has_permission(role_of(actor), f"{entity}.{operation}", self.matrix)
