"""
auth/constants.py -- Role, module and permission codes used by authorization.

The permission policy resolves (module, permission) pairs against the DB on
every request; these codes are the vocabulary shared by route declarations,
the seeding routine in auth/store.py, and the tests.

Codes are stored and compared upper-cased.
"""


class RoleCodes:
    ADMIN = "ADMIN"
    CONTENT_CREATOR = "CONTENT_CREATOR"
    CUSTOMER_CARE = "CUSTOMER_CARE"
    STORAGE_STAFF = "STORAGE_STAFF"
    CUSTOMER = "CUSTOMER"

    ALL = (ADMIN, CONTENT_CREATOR, CUSTOMER_CARE, STORAGE_STAFF, CUSTOMER)


class PermissionCodes:
    CREATE = "CREATE"
    EDIT = "EDIT"
    DELETE = "DELETE"
    VIEW_LIST = "VIEW_LIST"
    VIEW_DETAIL = "VIEW_DETAIL"
    ACCESS = "ACCESS"

    ALL = (CREATE, EDIT, DELETE, VIEW_LIST, VIEW_DETAIL, ACCESS)


class ModuleCodes:
    PRODUCT_MANAGER = "PRODUCT_MANAGER"
    USER_MANAGER = "USER_MANAGER"
    SUPPORT_MANAGER = "SUPPORT_MANAGER"
    POST_MANAGER = "POST_MANAGER"
    ROLE_MANAGER = "ROLE_MANAGER"
    SETTINGS_MANAGER = "SETTINGS_MANAGER"
    WAREHOUSE_MANAGER = "WAREHOUSE_MANAGER"

    ALL = (
        PRODUCT_MANAGER,
        USER_MANAGER,
        SUPPORT_MANAGER,
        POST_MANAGER,
        ROLE_MANAGER,
        SETTINGS_MANAGER,
        WAREHOUSE_MANAGER,
    )


# Display names used when seeding an empty database.
ROLE_NAMES: dict[str, str] = {
    RoleCodes.ADMIN: "Administrator",
    RoleCodes.CONTENT_CREATOR: "Content Creator",
    RoleCodes.CUSTOMER_CARE: "Customer Care",
    RoleCodes.STORAGE_STAFF: "Storage Staff",
    RoleCodes.CUSTOMER: "Customer",
}

MODULE_NAMES: dict[str, str] = {
    ModuleCodes.PRODUCT_MANAGER: "Product management",
    ModuleCodes.USER_MANAGER: "User management",
    ModuleCodes.SUPPORT_MANAGER: "Support management",
    ModuleCodes.POST_MANAGER: "Post management",
    ModuleCodes.ROLE_MANAGER: "Role management",
    ModuleCodes.SETTINGS_MANAGER: "Settings management",
    ModuleCodes.WAREHOUSE_MANAGER: "Warehouse management",
}

PERMISSION_NAMES: dict[str, str] = {
    PermissionCodes.CREATE: "Create",
    PermissionCodes.EDIT: "Edit",
    PermissionCodes.DELETE: "Delete",
    PermissionCodes.VIEW_LIST: "View list",
    PermissionCodes.VIEW_DETAIL: "View detail",
    PermissionCodes.ACCESS: "Access",
}


def is_staff_role(code: str) -> bool:
    """Staff-like roles are the ones allowed to serve support queues."""
    upper = (code or "").upper()
    return "CARE" in upper or "ADMIN" in upper


def is_care_role(code: str) -> bool:
    return "CARE" in (code or "").upper()
