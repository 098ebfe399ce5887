from __future__ import annotations

from typing import Iterable, List

from sessionvault.logging import get_logger
from sessionvault.service.credentials import PrincipalDirectory
from sessionvault.storage.errors import ConstraintViolation
from sessionvault.storage.models import Role

logger = get_logger(__name__)


def ensure_default_roles(directory: PrincipalDirectory, names: Iterable[str]) -> List[Role]:
    """Upsert well-known roles by name; safe to run on every startup."""
    roles: List[Role] = []
    for name in names:
        existing = directory.find_role_by_name(name)
        if existing is not None:
            roles.append(existing)
            continue
        candidate = Role.new(name)
        try:
            role = directory.save_role(candidate)
        except ConstraintViolation:
            # Another node created it between lookup and insert
            role = directory.find_role_by_name(name)
            if role is None:
                raise
        else:
            if role.id == candidate.id:
                logger.info("role_created", role=name)
        roles.append(role)
    return roles
