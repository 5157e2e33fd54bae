"""User profile operations used by registration and user administration.

Role checks are the caller's job: `update_user_role` will happily change the
role of whoever it is given, including the acting user.
"""

import logging

from django.contrib.auth import get_user_model
from django.core.exceptions import ValidationError as DjangoValidationError

from common.exceptions import DomainValidationError, NotFoundError

User = get_user_model()
logger = logging.getLogger(__name__)


def _get_user(uid):
    try:
        user = User.objects.filter(pk=uid).first()
    except (ValueError, DjangoValidationError):
        user = None
    if user is None:
        raise NotFoundError(f"User {uid} was not found.")
    return user


def create_user_profile(*, uid, name, email):
    """Attach the profile to an authenticated identity with the default role."""
    user = _get_user(uid)

    user.name = (name or "").strip()
    user.email = email or ""
    user.role = User.Role.DEPLOY
    user.save(update_fields=["name", "email", "role"])
    logger.info("user_profile_created", extra={"user_id": str(user.id)})
    return user


def get_all_users():
    return User.objects.order_by("name", "username")


def update_user_role(target_uid, role):
    if role not in User.Role.values:
        raise DomainValidationError(errors={"role": [f'"{role}" is not a valid role.']})

    user = _get_user(target_uid)

    previous_role = user.role
    user.role = role
    user.save(update_fields=["role"])
    logger.info(
        "user_role_updated from=%s to=%s",
        previous_role,
        role,
        extra={"user_id": str(user.id)},
    )
    return user
