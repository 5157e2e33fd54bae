import logging

from rest_framework.permissions import BasePermission

from core.models import User

logger = logging.getLogger("security.authorization")

EVERYONE = {User.Role.DEPLOY, User.Role.ADMIN}
ADMIN_ONLY = {User.Role.ADMIN}

ROLE_CAPABILITY_MATRIX = {
    "invoice.view": EVERYONE,
    "invoice.edit": EVERYONE,
    "invoice.delete": ADMIN_ONLY,
    "invoice.product.delete": ADMIN_ONLY,
    "invoice.renumber": ADMIN_ONLY,
    "invoice.backup": ADMIN_ONLY,
    "invoice.restore": ADMIN_ONLY,
    "invoice.purge": ADMIN_ONLY,
    "suggestions.view": EVERYONE,
    "suggestions.manage": ADMIN_ONLY,
    "user.manage": ADMIN_ONLY,
    "admin.records.manage": ADMIN_ONLY,
}


def get_user_role(user):
    if not user or not user.is_authenticated:
        return None
    if user.is_superuser:
        return User.Role.ADMIN
    role = getattr(user, "role", None)
    if role:
        return role
    return User.Role.DEPLOY


def user_has_capability(user, capability):
    if not user or not user.is_authenticated:
        return False
    if user.is_superuser:
        return True
    allowed_roles = ROLE_CAPABILITY_MATRIX.get(capability)
    if not allowed_roles:
        return False
    return get_user_role(user) in allowed_roles


class RoleCapabilityPermission(BasePermission):
    """Permission class that validates role capability by action/method and logs denied attempts."""

    message = "You do not have permission to perform this action."

    def has_permission(self, request, view):
        capability_map = getattr(view, "permission_action_map", {})
        action_key = getattr(view, "action", None) or request.method.lower()
        capability = capability_map.get(action_key)
        if capability is None:
            return True

        allowed = user_has_capability(request.user, capability)
        if not allowed:
            logger.warning(
                "permission_denied capability=%s user=%s role=%s method=%s path=%s view=%s action=%s",
                capability,
                getattr(request.user, "username", "anonymous"),
                get_user_role(request.user),
                request.method,
                request.path,
                view.__class__.__name__,
                action_key,
            )
        return allowed
