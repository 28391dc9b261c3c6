"""Initial schema: distros, hosts, tasks, distro task queues, global locks.

Revision ID: 001
Revises:
Create Date: 2026-10-19
"""

from __future__ import annotations

from typing import Sequence, Union

import sqlalchemy as sa
from alembic import op

# revision identifiers, used by Alembic.
revision: str = "001"
down_revision: Union[str, None] = None
branch_labels: Union[str, Sequence[str], None] = None
depends_on: Union[str, Sequence[str], None] = None

HOST_STATUSES = ("provisioning", "running", "decommissioned", "quarantined", "terminated")
TASK_STATUSES = ("undispatched", "dispatched", "started", "succeeded", "failed", "inactive")


def _timestamps() -> list[sa.Column]:
    return [
        sa.Column(
            "created_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
        sa.Column(
            "updated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    ]


def upgrade() -> None:
    op.create_table(
        "distros",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("arch", sa.Text(), nullable=False),
        sa.Column("work_dir", sa.Text(), nullable=False),
        sa.Column("user", sa.Text(), nullable=True),
        sa.Column("ssh_options", sa.JSON(), nullable=True),
        sa.Column("cost_per_hour", sa.Float(), nullable=False, server_default="0"),
        *_timestamps(),
    )

    op.create_table(
        "hosts",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("host", sa.Text(), nullable=False),
        sa.Column("user", sa.Text(), nullable=True),
        sa.Column("distro_id", sa.Text(), sa.ForeignKey("distros.id"), nullable=False),
        sa.Column("status", sa.Enum(*HOST_STATUSES, name="hoststatus"), nullable=False),
        sa.Column("running_task", sa.Text(), nullable=True),
        sa.Column("task_pid", sa.Integer(), nullable=True),
        sa.Column("agent_revision", sa.Text(), nullable=True),
        sa.Column("secret", sa.Text(), nullable=True),
        sa.Column("provisioned", sa.Boolean(), nullable=False, server_default=sa.false()),
        sa.Column("last_task_completed", sa.Text(), nullable=True),
        sa.Column("last_task_completed_time", sa.DateTime(timezone=True), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_hosts_running_task", "hosts", ["running_task"])
    op.create_index("ix_hosts_distro_id", "hosts", ["distro_id"])

    op.create_table(
        "tasks",
        sa.Column("id", sa.Text(), primary_key=True),
        sa.Column("secret", sa.Text(), nullable=False),
        sa.Column("project", sa.Text(), nullable=False, server_default=""),
        sa.Column("version", sa.Text(), nullable=False, server_default=""),
        sa.Column("revision", sa.Text(), nullable=False, server_default=""),
        sa.Column("distro_id", sa.Text(), nullable=False),
        sa.Column("host_id", sa.Text(), nullable=True),
        sa.Column("execution", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("depends_on", sa.JSON(), nullable=True),
        sa.Column("priority", sa.Integer(), nullable=False, server_default="0"),
        sa.Column("activated", sa.Boolean(), nullable=False, server_default=sa.true()),
        sa.Column("activated_by", sa.Text(), nullable=True),
        sa.Column("status", sa.Enum(*TASK_STATUSES, name="taskstatus"), nullable=False),
        sa.Column("scheduled_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("dispatch_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("start_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("finish_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("push_time", sa.DateTime(timezone=True), nullable=True),
        sa.Column("time_taken_seconds", sa.Float(), nullable=True),
        sa.Column("cost", sa.Float(), nullable=True),
        *_timestamps(),
    )
    op.create_index("ix_tasks_distro_id", "tasks", ["distro_id"])
    op.create_index("ix_tasks_status", "tasks", ["status"])

    op.create_table(
        "task_queues",
        sa.Column("distro_id", sa.Text(), primary_key=True),
        sa.Column(
            "generated_at",
            sa.DateTime(timezone=True),
            server_default=sa.func.now(),
            nullable=False,
        ),
    )

    op.create_table(
        "task_queue_items",
        sa.Column("task_id", sa.Text(), primary_key=True),
        sa.Column(
            "distro_id",
            sa.Text(),
            sa.ForeignKey("task_queues.distro_id"),
            nullable=False,
        ),
        sa.Column("position", sa.Integer(), nullable=False),
    )
    op.create_index(
        "ix_task_queue_items_distro_position",
        "task_queue_items",
        ["distro_id", "position"],
    )

    op.create_table(
        "global_locks",
        sa.Column("scope", sa.Text(), primary_key=True),
        sa.Column("holder", sa.Text(), nullable=False),
        sa.Column("acquired_at", sa.DateTime(timezone=True), nullable=False),
        sa.Column("expires_at", sa.DateTime(timezone=True), nullable=False),
    )


def downgrade() -> None:
    op.drop_table("global_locks")
    op.drop_index("ix_task_queue_items_distro_position", table_name="task_queue_items")
    op.drop_table("task_queue_items")
    op.drop_table("task_queues")
    op.drop_index("ix_tasks_status", table_name="tasks")
    op.drop_index("ix_tasks_distro_id", table_name="tasks")
    op.drop_table("tasks")
    op.drop_index("ix_hosts_distro_id", table_name="hosts")
    op.drop_index("ix_hosts_running_task", table_name="hosts")
    op.drop_table("hosts")
    op.drop_table("distros")
    sa.Enum(name="taskstatus").drop(op.get_bind(), checkfirst=True)
    sa.Enum(name="hoststatus").drop(op.get_bind(), checkfirst=True)
