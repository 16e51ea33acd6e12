"""Publish row changes on the taskflow_changes notify channel.

Payload: {"table", "eventType", "new", "old": {"id"}}. Rows whose JSON would
not fit a NOTIFY payload are sent with "new": null and re-read by the
listener.

Revision ID: 002
Revises: 001
Create Date: 2026-10-18
"""

from alembic import op


# revision identifiers, used by Alembic.
revision = "002"
down_revision = "001"
branch_labels = None
depends_on = None

TABLES = ("tasks", "subtasks", "messages", "users", "user_roles")


def upgrade():
    op.execute("""
        CREATE OR REPLACE FUNCTION taskflow_notify_change() RETURNS trigger AS $$
        DECLARE
            row_data JSONB;
            payload TEXT;
        BEGIN
            IF TG_OP = 'DELETE' THEN
                row_data := NULL;
            ELSE
                row_data := to_jsonb(NEW);
            END IF;

            payload := json_build_object(
                'table', TG_TABLE_NAME,
                'eventType', TG_OP,
                'new', row_data,
                'old', CASE WHEN TG_OP = 'INSERT' THEN NULL
                            ELSE json_build_object('id', OLD.id) END
            )::text;

            -- NOTIFY payloads are capped just under 8000 bytes
            IF octet_length(payload) > 7900 THEN
                payload := json_build_object(
                    'table', TG_TABLE_NAME,
                    'eventType', TG_OP,
                    'new', NULL,
                    'old', json_build_object('id', COALESCE(NEW.id, OLD.id))
                )::text;
            END IF;

            PERFORM pg_notify('taskflow_changes', payload);
            RETURN NULL;
        END;
        $$ LANGUAGE plpgsql;
    """)

    for table in TABLES:
        op.execute(f"""
            CREATE TRIGGER {table}_notify_change
            AFTER INSERT OR UPDATE OR DELETE ON {table}
            FOR EACH ROW EXECUTE FUNCTION taskflow_notify_change();
        """)


def downgrade():
    for table in TABLES:
        op.execute(f"DROP TRIGGER IF EXISTS {table}_notify_change ON {table};")
    op.execute("DROP FUNCTION IF EXISTS taskflow_notify_change();")
