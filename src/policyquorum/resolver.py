"""Read path for committed policies used by session authorization."""

from __future__ import annotations

import logging

from .errors import PolicyNotFound
from .store.base import PolicyStore
from .types import CommittedPolicy

_logger = logging.getLogger(__name__)

SSH_ROLE_PREFIX = "ssh:"


def ssh_role_id(ssh_user: str) -> str:
    """Role id governing logins as ``ssh_user``, e.g. ``ssh:root``."""
    return f"{SSH_ROLE_PREFIX}{ssh_user}"


class CommittedPolicyResolver:
    """Serves the latest committed policy bytes per role. Never writes."""

    def __init__(self, store: PolicyStore) -> None:
        self.store = store

    def get_by_role(self, role_id: str) -> CommittedPolicy:
        """Return the live committed policy for ``role_id``.

        Raises PolicyNotFound when there is none, or when the role's row exists
        but carries no usable policy data.
        """
        if not isinstance(role_id, str) or not role_id.strip():
            raise PolicyNotFound("role id is required")
        policy = self.store.get_committed(role_id)
        if policy is None:
            raise PolicyNotFound(f"no committed policy found for role {role_id}")
        if not policy.policy_data:
            raise PolicyNotFound(f"policy for role {role_id} has no committed policy data")
        return policy

    def get_for_ssh_user(self, ssh_user: str) -> CommittedPolicy:
        role_id = ssh_role_id(ssh_user)
        _logger.debug("resolving committed policy for %s", role_id)
        return self.get_by_role(role_id)
