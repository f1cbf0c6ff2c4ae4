"""table change NOTIFY triggers

Learn: Every INSERT/UPDATE/DELETE on a watched table fires
pg_notify(<change channel>, {...}) with the old and new rows plus an
`audience`: the user ids allowed to see the row. Shared entities reach
their project's owner and members, private ones only their owner.
The realtime layer LISTENs on this channel (realtime/source.py).

NOTIFY payloads are capped at 8000 bytes, so long free-text columns are
stripped from the rows before sending. Nothing downstream reads them.

Revision ID: c3f1a9d2e4b7
Revises:
Create Date: 2026-10-19 09:12:41.104220
"""
from typing import Sequence, Union

from alembic import op

from taskpulse.config import settings


# revision identifiers, used by Alembic.
revision: str = 'c3f1a9d2e4b7'
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

# Passed to every trigger as its argument.
CHANNEL = settings.change_channel

WATCHED_TABLES = (
    "projects",
    "tasks",
    "goals",
    "project_members",
    "project_invites",
    "checklist_items",
    "notifications",
)


def upgrade() -> None:
    # ─── Project audience: owner + members ───────────────
    op.execute("""
        CREATE OR REPLACE FUNCTION project_audience(p_project_id uuid)
        RETURNS uuid[] AS $$
            SELECT coalesce(array_agg(DISTINCT uid), '{}')
            FROM (
                SELECT owner_id AS uid FROM projects WHERE id = p_project_id
                UNION
                SELECT user_id FROM project_members WHERE project_id = p_project_id
            ) s
        $$ LANGUAGE sql STABLE;
    """)

    # ─── Generic row-change notifier ─────────────────────
    op.execute("""
        CREATE OR REPLACE FUNCTION notify_table_change()
        RETURNS TRIGGER AS $$
        DECLARE
            new_row jsonb;
            old_row jsonb;
            cur jsonb;
            audience uuid[];
        BEGIN
            IF TG_OP <> 'DELETE' THEN
                new_row := to_jsonb(NEW) - 'description' - 'notes' - 'reward_description';
            END IF;
            IF TG_OP <> 'INSERT' THEN
                old_row := to_jsonb(OLD) - 'description' - 'notes' - 'reward_description';
            END IF;
            cur := coalesce(new_row, old_row);

            audience := CASE TG_TABLE_NAME
                WHEN 'projects' THEN
                    ARRAY[(cur->>'owner_id')::uuid] || project_audience((cur->>'id')::uuid)
                WHEN 'tasks' THEN
                    ARRAY[(cur->>'created_by')::uuid] || project_audience((cur->>'project_id')::uuid)
                WHEN 'goals' THEN
                    ARRAY[(cur->>'created_by')::uuid]
                WHEN 'project_members' THEN
                    ARRAY[(cur->>'user_id')::uuid] || project_audience((cur->>'project_id')::uuid)
                WHEN 'project_invites' THEN
                    ARRAY[(cur->>'created_by')::uuid] || project_audience((cur->>'project_id')::uuid)
                WHEN 'checklist_items' THEN (
                    SELECT ARRAY[t.created_by] || project_audience(t.project_id)
                    FROM tasks t WHERE t.id = (cur->>'task_id')::uuid
                )
                WHEN 'notifications' THEN
                    ARRAY[(cur->>'user_id')::uuid]
            END;

            PERFORM pg_notify(TG_ARGV[0], json_build_object(
                'table', TG_TABLE_NAME,
                'operation', TG_OP,
                'before', old_row,
                'after', new_row,
                'audience', coalesce(audience, '{}')
            )::text);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in WATCHED_TABLES:
        op.execute(f"""
            CREATE TRIGGER {table}_change_notify
                AFTER INSERT OR UPDATE OR DELETE ON {table}
                FOR EACH ROW
                EXECUTE FUNCTION notify_table_change('{CHANNEL}');
        """)


def downgrade() -> None:
    for table in reversed(WATCHED_TABLES):
        op.execute(f"DROP TRIGGER IF EXISTS {table}_change_notify ON {table};")
    op.execute("DROP FUNCTION IF EXISTS notify_table_change;")
    op.execute("DROP FUNCTION IF EXISTS project_audience;")
