"""Change events — typed row-change notifications from the watched tables.

Learn: The database triggers send loosely-shaped JSON
({table, operation, before, after}). We decode it exactly once, at the
edge, into a discriminated union keyed on `table`. Past that point every
handler works with a concrete variant (TaskChange, GoalChange, ...) whose
`before`/`after` are typed row snapshots instead of raw dicts.

Snapshot invariants:
- INSERT → before is None
- DELETE → after is None
- never both None
"""

from datetime import date
from enum import Enum
from typing import Annotated, Literal, Optional, Union

from pydantic import BaseModel, Field, TypeAdapter, ValidationError, model_validator


class ChangeDecodeError(Exception):
    """Raised when a change payload can't be decoded into a ChangeEvent."""


class TableName(str, Enum):
    PROJECTS = "projects"
    TASKS = "tasks"
    GOALS = "goals"
    PROJECT_MEMBERS = "project_members"
    PROJECT_INVITES = "project_invites"
    CHECKLIST_ITEMS = "checklist_items"
    NOTIFICATIONS = "notifications"


class Operation(str, Enum):
    INSERT = "INSERT"
    UPDATE = "UPDATE"
    DELETE = "DELETE"


# ─── Row snapshots ───────────────────────────────────────
# Only the columns this subsystem reads are declared. Everything else the
# row carries is kept as extra fields.


class RowSnapshot(BaseModel):
    id: str

    model_config = {"extra": "allow"}


class ProjectRow(RowSnapshot):
    name: str = ""
    owner_id: Optional[str] = None
    is_shared: bool = False


class TaskRow(RowSnapshot):
    title: str = ""
    status: str = "todo"
    project_id: Optional[str] = None
    created_by: Optional[str] = None
    due_date: Optional[date] = None


class GoalRow(RowSnapshot):
    name: str = ""
    progress: float = 0
    created_by: Optional[str] = None


class ProjectMemberRow(RowSnapshot):
    project_id: str
    user_id: str
    role: str = "member"


class ProjectInviteRow(RowSnapshot):
    project_id: str
    created_by: Optional[str] = None
    email: Optional[str] = None


class ChecklistItemRow(RowSnapshot):
    task_id: str
    text: str = ""
    completed: bool = False


class NotificationRow(RowSnapshot):
    user_id: str
    type: str
    message: str = ""
    sent: bool = False


# ─── Change variants ─────────────────────────────────────


class _Change(BaseModel):
    operation: Operation

    @model_validator(mode="after")
    def check_snapshots(self):
        if self.before is None and self.after is None:
            raise ValueError("change carries neither a before nor an after row")
        if self.operation is Operation.INSERT and self.before is not None:
            raise ValueError("INSERT must not carry a before row")
        if self.operation is Operation.DELETE and self.after is not None:
            raise ValueError("DELETE must not carry an after row")
        return self

    @property
    def row(self):
        """The most recent known state of the row."""
        return self.after if self.after is not None else self.before


class ProjectChange(_Change):
    table: Literal["projects"] = "projects"
    before: Optional[ProjectRow] = None
    after: Optional[ProjectRow] = None


class TaskChange(_Change):
    table: Literal["tasks"] = "tasks"
    before: Optional[TaskRow] = None
    after: Optional[TaskRow] = None


class GoalChange(_Change):
    table: Literal["goals"] = "goals"
    before: Optional[GoalRow] = None
    after: Optional[GoalRow] = None


class ProjectMemberChange(_Change):
    table: Literal["project_members"] = "project_members"
    before: Optional[ProjectMemberRow] = None
    after: Optional[ProjectMemberRow] = None


class ProjectInviteChange(_Change):
    table: Literal["project_invites"] = "project_invites"
    before: Optional[ProjectInviteRow] = None
    after: Optional[ProjectInviteRow] = None


class ChecklistItemChange(_Change):
    table: Literal["checklist_items"] = "checklist_items"
    before: Optional[ChecklistItemRow] = None
    after: Optional[ChecklistItemRow] = None


class NotificationChange(_Change):
    table: Literal["notifications"] = "notifications"
    before: Optional[NotificationRow] = None
    after: Optional[NotificationRow] = None


ChangeEvent = Annotated[
    Union[
        ProjectChange,
        TaskChange,
        GoalChange,
        ProjectMemberChange,
        ProjectInviteChange,
        ChecklistItemChange,
        NotificationChange,
    ],
    Field(discriminator="table"),
]

_change_adapter = TypeAdapter(ChangeEvent)


def decode_change(payload: Union[dict, str, bytes]) -> ChangeEvent:
    """Decode a raw trigger payload (dict or JSON text) into a ChangeEvent.

    Raises ChangeDecodeError for unknown tables, missing rows, or rows
    that violate the snapshot invariants.
    """
    try:
        if isinstance(payload, (str, bytes)):
            return _change_adapter.validate_json(payload)
        return _change_adapter.validate_python(payload)
    except ValidationError as e:
        raise ChangeDecodeError(str(e)) from e
