"""RBAC roles, permission actions and the static default matrix.

- 7 roles, 21 gateable actions
- Any (action, role) pair not listed in the default matrix is denied
- admin resolves every action to allowed and is never stored in the matrix
- The default matrix seeds the Permission Engine; runtime overrides are
  overlaid on top of it (see src/permissions/engine.py)
"""

from __future__ import annotations

from enum import Enum, unique


@unique
class Role(Enum):
    """Closed set of user roles."""

    ADMIN = "admin"
    OPERATIONS = "operations"
    OPERATIONS_MANAGER = "operations-manager"
    SALES = "sales"
    SALES_MANAGER = "sales-manager"
    DRIVER = "driver"
    IT = "it"


@unique
class PermissionAction(Enum):
    """Closed set of gateable operations."""

    # Case management
    CREATE_CASE = "create-case"
    VIEW_CASES = "view-cases"
    DELETE_CASE = "delete-case"
    EDIT_SETS = "edit-sets"
    BOOKING_CALENDAR = "booking-calendar"

    # Status transitions
    PROCESS_ORDER = "process-order"
    SALES_APPROVAL = "sales-approval"
    MARK_DELIVERED_HOSPITAL = "mark-delivered-hospital"
    CASE_COMPLETED = "case-completed"
    MARK_DELIVERED_OFFICE = "mark-delivered-office"
    MARK_TO_BE_BILLED = "mark-to-be-billed"

    # Administration
    VIEW_AUDIT_LOGS = "view-audit-logs"
    MANAGE_USERS = "manage-users"
    MANAGE_PERMISSIONS = "manage-permissions"
    MANAGE_SETTINGS = "manage-settings"
    MANAGE_CODE_TABLES = "manage-code-tables"
    MANAGE_EMAIL_CONFIG = "manage-email-config"
    BACKUP_RESTORE = "backup-restore"

    # Data operations
    EXPORT_DATA = "export-data"
    IMPORT_DATA = "import-data"
    VIEW_REPORTS = "view-reports"


# Roles whose actors act on every country/department.
UNSCOPED_ROLES: frozenset[Role] = frozenset({Role.ADMIN, Role.IT})

_A = PermissionAction

_OPERATIONS: frozenset[PermissionAction] = frozenset(
    {
        _A.CREATE_CASE,
        _A.VIEW_CASES,
        _A.BOOKING_CALENDAR,
        _A.PROCESS_ORDER,
        _A.VIEW_REPORTS,
    }
)

_SALES: frozenset[PermissionAction] = frozenset(
    {
        _A.CREATE_CASE,
        _A.VIEW_CASES,
        _A.BOOKING_CALENDAR,
        _A.SALES_APPROVAL,
        _A.CASE_COMPLETED,
        _A.MARK_DELIVERED_OFFICE,
        _A.MARK_TO_BE_BILLED,
        _A.VIEW_REPORTS,
    }
)

# admin is intentionally absent: it is resolved by the engine, not the table.
DEFAULT_PERMISSION_MATRIX: dict[Role, frozenset[PermissionAction]] = {
    Role.OPERATIONS: _OPERATIONS,
    Role.OPERATIONS_MANAGER: _OPERATIONS
    | {_A.DELETE_CASE, _A.EDIT_SETS, _A.EXPORT_DATA},
    Role.SALES: _SALES,
    Role.SALES_MANAGER: _SALES | {_A.EXPORT_DATA},
    Role.DRIVER: frozenset(
        {
            _A.VIEW_CASES,
            _A.BOOKING_CALENDAR,
            _A.MARK_DELIVERED_HOSPITAL,
            _A.MARK_DELIVERED_OFFICE,
        }
    ),
    Role.IT: frozenset(
        {
            _A.CREATE_CASE,
            _A.VIEW_CASES,
            _A.EDIT_SETS,
            _A.PROCESS_ORDER,
            _A.MARK_DELIVERED_HOSPITAL,
            _A.CASE_COMPLETED,
            _A.MARK_DELIVERED_OFFICE,
            _A.MARK_TO_BE_BILLED,
            _A.VIEW_AUDIT_LOGS,
            _A.MANAGE_USERS,
            _A.MANAGE_SETTINGS,
            _A.MANAGE_CODE_TABLES,
            _A.MANAGE_EMAIL_CONFIG,
            _A.BACKUP_RESTORE,
            _A.IMPORT_DATA,
            _A.EXPORT_DATA,
            _A.VIEW_REPORTS,
        }
    ),
}


def default_allowed(role: Role, action: PermissionAction) -> bool:
    """Static default for one matrix cell (admin always True)."""
    if role is Role.ADMIN:
        return True
    return action in DEFAULT_PERMISSION_MATRIX.get(role, frozenset())


def resolve_role(role_str: str) -> Role | None:
    """Parse a role string into a Role enum, returning None if invalid."""
    try:
        return Role(role_str)
    except ValueError:
        return None


def resolve_action(action_str: str) -> PermissionAction | None:
    """Parse an action id (e.g. "process-order"), returning None if invalid."""
    try:
        return PermissionAction(action_str)
    except ValueError:
        return None
