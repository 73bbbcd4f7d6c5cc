from rest_framework.permissions import BasePermission

from apps.accounts.models import UserRole


ROLE_CAPABILITIES = {
    UserRole.ADMIN: {
        "clients.view",
        "clients.manage",
        "invoices.view",
        "invoices.manage",
        "schedules.manage",
        "invoices.export",
    },
    UserRole.STAFF: {
        "clients.view",
        "clients.manage",
        "invoices.view",
        "invoices.manage",
        "schedules.manage",
        "invoices.export",
    },
    UserRole.VIEWER: {
        "clients.view",
        "invoices.view",
        "invoices.export",
    },
}


def resolve_role(user):
    group_names = set(user.groups.values_list("name", flat=True))
    for role in (UserRole.ADMIN, UserRole.STAFF, UserRole.VIEWER):
        if role in group_names:
            return role
    return getattr(user, "role", UserRole.VIEWER)


def has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    return capability in ROLE_CAPABILITIES.get(resolve_role(user), set())


class RolePermission(BasePermission):
    def has_permission(self, request, view):
        if not request.user or not request.user.is_authenticated:
            return False

        capability_map = getattr(view, "capability_map", {})
        action = getattr(view, "action", request.method.lower())
        required = capability_map.get(action) or capability_map.get(request.method.lower()) or set()
        if not required:
            return True

        return all(has_capability(request.user, cap) for cap in required)
