"""Identity to role mapping injected from configuration."""

from __future__ import annotations

import logging
import re
from dataclasses import dataclass, field
from pathlib import Path
from typing import Mapping

from blockdesk.tickets.policy import Role

logger = logging.getLogger(__name__)

# Accepts the 20 byte hex addresses issued by the identity provider.
_ADDRESS_PATTERN = re.compile(r"^0x[0-9a-fA-F]{40}$")


def is_valid_address(value: str) -> bool:
    return bool(_ADDRESS_PATTERN.match(value.strip()))


def load_role_assignments(path: str | Path) -> dict[str, Role]:
    """Read ``<address> [role]`` lines; a bare address is promoted to manager.

    Blank lines and ``#`` comments are ignored. Lines with a malformed address
    or an unknown role are skipped with a warning.
    """

    assignments: dict[str, Role] = {}
    for number, raw in enumerate(Path(path).read_text(encoding="utf-8").splitlines(), start=1):
        line = raw.split("#", 1)[0].strip()
        if not line:
            continue
        parts = line.split()
        address = parts[0]
        if not is_valid_address(address):
            logger.warning("Skipping line %d of %s: %r is not a valid address", number, path, address)
            continue
        role = Role.parse(parts[1]) if len(parts) > 1 else Role.MANAGER
        if role is None:
            logger.warning("Skipping line %d of %s: unknown role %r", number, path, parts[1])
            continue
        assignments[address.lower()] = role
    return assignments


@dataclass(frozen=True)
class RoleDirectory:
    """Resolves the role of an actor address.

    Addresses without an explicit assignment get ``default_role``; when that
    is not a known role either, the actor receives no role and every check
    fails closed.
    """

    assignments: Mapping[str, Role] = field(default_factory=dict)
    default_role: Role | None = Role.USER

    @classmethod
    def from_settings(cls, settings) -> "RoleDirectory":
        assignments: dict[str, Role] = {}
        if settings.role_assignments_file:
            path = Path(settings.role_assignments_file)
            if path.exists():
                assignments.update(load_role_assignments(path))
            else:
                logger.warning("Role assignments file %s does not exist", path)
        for address, value in settings.role_assignments.items():
            role = Role.parse(value)
            if not is_valid_address(address) or role is None:
                logger.warning("Ignoring role assignment %s=%s", address, value)
                continue
            assignments[address.lower()] = role
        logger.info("Loaded %d role assignments", len(assignments))
        return cls(assignments=assignments, default_role=Role.parse(settings.default_role))

    def role_for(self, address: str) -> Role | None:
        return self.assignments.get(address.strip().lower(), self.default_role)
