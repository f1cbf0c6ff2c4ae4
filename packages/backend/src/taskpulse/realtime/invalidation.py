"""Invalidation router — which cached queries does a table change touch?

Learn: The mapping is static and table-scoped. We never look inside
before/after; any event on a table means "something changed, recheck".
Duplicate or out-of-order events only cause redundant invalidations,
which are harmless (stale stays stale).
"""

from typing import Protocol

from taskpulse.realtime.events import ChangeEvent, TableName

# Cache key kinds
PROJECTS = "projects"
TASKS = "tasks"
GOALS = "goals"
PROJECT_INVITES = "project-invites"
NOTIFICATIONS = "notifications"

TABLE_DEPENDENCIES: dict[TableName, tuple[str, ...]] = {
    TableName.PROJECTS: (PROJECTS,),
    TableName.TASKS: (TASKS,),
    TableName.GOALS: (GOALS,),
    TableName.PROJECT_MEMBERS: (PROJECTS, PROJECT_INVITES),
    TableName.PROJECT_INVITES: (PROJECT_INVITES,),
    # Checklist items are embedded in the task list query.
    TableName.CHECKLIST_ITEMS: (TASKS,),
    TableName.NOTIFICATIONS: (NOTIFICATIONS,),
}


class Invalidator(Protocol):
    def invalidate(self, key: tuple[str, str]) -> None: ...


class InvalidationRouter:
    def __init__(self, cache: Invalidator):
        self.cache = cache

    @staticmethod
    def keys_for(table: TableName, user_id: str) -> list[tuple[str, str]]:
        return [(kind, user_id) for kind in TABLE_DEPENDENCIES.get(table, ())]

    def route(self, event: ChangeEvent, user_id: str) -> list[tuple[str, str]]:
        """Invalidate every key that depends on the event's table. Returns them."""
        keys = self.keys_for(TableName(event.table), user_id)
        for key in keys:
            self.cache.invalidate(key)
        return keys
