"""
MiSub - Node Group Manager
===========================
CRUD for node groups: named, user-defined sets of node references.

The whole collection is a single list under KEY_NODE_GROUPS. Every mutation
reads the list, applies the change and writes the list back through
atomic_update, so two requests working from the same snapshot cannot
silently drop each other's changes; the loser re-reads and re-validates.

Group record:
    {
        "id": "group-3f2a...",
        "name": "Hong Kong",           # trimmed, unique among groups
        "description": "",             # trimmed, "" when not given
        "nodeIds": ["n1", "n2"],       # non-empty, order kept
        "enabled": true,
        "createdAt": "2026-10-18T08:00:00.000Z",
        "updatedAt": "2026-10-18T08:00:00.000Z"
    }

nodeIds are references into the subscription data; nothing checks that
they exist.
"""

import logging
import uuid
from datetime import datetime, timezone
from typing import Any, Callable

from misub.errors import NotFoundError, ValidationError
from misub.store import KEY_NODE_GROUPS, KeyValueStore, atomic_update


logger = logging.getLogger(__name__)


def utc_timestamp() -> str:
    """Current UTC time as ISO-8601 with milliseconds and a 'Z' suffix."""
    now = datetime.now(timezone.utc)
    return now.isoformat(timespec="milliseconds").replace("+00:00", "Z")


def new_group_id() -> str:
    return f"group-{uuid.uuid4().hex}"


class NodeGroupManager:
    """
    Validates and persists node groups.

    Attributes:
        store:    Key-value store holding the collection.
        clock:    Returns the timestamp string for createdAt/updatedAt.
        attempts: Read-check-write attempts before giving up with a 409.
    """

    def __init__(
        self,
        store: KeyValueStore,
        clock: Callable[[], str] = utc_timestamp,
        attempts: int = 5,
    ):
        self.store = store
        self.clock = clock
        self.attempts = attempts

    def list_groups(self) -> list[dict]:
        """Return all stored groups (empty list when none)."""
        return self.store.get(KEY_NODE_GROUPS) or []

    def save(
        self,
        group_id: str | None,
        name: Any,
        description: str | None,
        node_ids: Any,
        enabled: Any,
    ) -> tuple[list[dict], bool]:
        """
        Create a group (no group_id) or update the one with group_id.

        An update replaces name, description, nodeIds and enabled as a whole:
        an omitted description becomes "" and an omitted enabled becomes True.
        Other stored fields, createdAt included, are kept.

        Checks run in this order, first failure wins:
            1. name is a non-blank string
            2. node_ids is a non-empty list
            3. update: group_id exists (404), name unused by other groups
               create: name unused by any group

        Args:
            group_id:    Id of the group to update, or empty to create.
            name:        Group name; stored trimmed.
            description: Optional description; stored trimmed.
            node_ids:    Node references, stored as given.
            enabled:     Only an explicit False disables the group.

        Returns:
            (full updated collection, True if a group was created).

        Raises:
            ValidationError: Bad name/nodeIds or duplicate name.
            NotFoundError:   Update of an unknown id.
            ConflictError:   Too many concurrent writers.
        """
        if not isinstance(name, str) or not name.strip():
            raise ValidationError("Group name cannot be empty")
        if not isinstance(node_ids, list) or not node_ids:
            raise ValidationError("Select at least one node")

        clean_name = name.strip()
        fields = {
            "name": clean_name,
            "description": (description or "").strip(),
            "nodeIds": node_ids,
            "enabled": enabled is not False,
        }
        created = not group_id

        def apply(groups: list[dict]) -> list[dict]:
            if created:
                if _name_taken(groups, clean_name):
                    raise ValidationError("Group name already exists")
                now = self.clock()
                groups.append({
                    "id": new_group_id(),
                    **fields,
                    "createdAt": now,
                    "updatedAt": now,
                })
                return groups

            index = _find_index(groups, group_id)
            if index is None:
                raise NotFoundError("Group not found")
            if _name_taken(groups, clean_name, skip=index):
                raise ValidationError("Group name already exists")
            groups[index] = {**groups[index], **fields, "updatedAt": self.clock()}
            return groups

        groups = atomic_update(
            self.store, KEY_NODE_GROUPS, apply, default=[], attempts=self.attempts,
        )
        if created:
            logger.info("Created node group %r (%s)", clean_name, groups[-1]["id"])
        else:
            logger.info("Updated node group %r (%s)", clean_name, group_id)
        return groups, created

    def delete(self, group_id: str | None) -> list[dict]:
        """
        Remove the group with group_id.

        Returns:
            The remaining collection.

        Raises:
            ValidationError: group_id missing.
            NotFoundError:   No such group; nothing is written.
        """
        if not group_id:
            raise ValidationError("Missing group id")

        def apply(groups: list[dict]) -> list[dict]:
            index = _find_index(groups, group_id)
            if index is None:
                raise NotFoundError("Group not found")
            del groups[index]
            return groups

        groups = atomic_update(
            self.store, KEY_NODE_GROUPS, apply, default=[], attempts=self.attempts,
        )
        logger.info("Deleted node group %s", group_id)
        return groups


# -- Helper Functions ---------------------------------------------------------

def _find_index(groups: list[dict], group_id: str) -> int | None:
    for i, group in enumerate(groups):
        if group.get("id") == group_id:
            return i
    return None


def _name_taken(groups: list[dict], name: str, skip: int | None = None) -> bool:
    """Case-sensitive comparison of trimmed names."""
    for i, group in enumerate(groups):
        if i == skip:
            continue
        if str(group.get("name") or "").strip() == name:
            return True
    return False
