"""Database query functions for Buildfarm.

Async query functions for the persisted entities:
- Host running-task, revision and secret updates
- Task reads and conditional dispatch assignment
- Distro lookups
- Project variable reads and upserts
- Distro task queue rebuild, listing and atomic item removal
"""

from buildfarm.database.queries.distro import create_distro, get_distro
from buildfarm.database.queries.host import (
    clear_running_task,
    create_host,
    create_secret,
    find_host_by_running_task,
    get_host,
    set_agent_revision,
    set_task_pid,
    update_running_task,
)
from buildfarm.database.queries.project_vars import get_project_vars, upsert_project_vars
from buildfarm.database.queries.task import (
    assign_task_to_host,
    create_task,
    get_task,
    get_tasks,
    new_task_secret,
    set_task_cost,
)
from buildfarm.database.queries.task_queue import (
    get_task_queue,
    list_queued_task_ids,
    remove_queue_item,
    save_task_queue,
)

__all__ = [
    "create_distro",
    "get_distro",
    "clear_running_task",
    "create_host",
    "create_secret",
    "find_host_by_running_task",
    "get_host",
    "set_agent_revision",
    "set_task_pid",
    "update_running_task",
    "get_project_vars",
    "upsert_project_vars",
    "assign_task_to_host",
    "create_task",
    "get_task",
    "get_tasks",
    "new_task_secret",
    "set_task_cost",
    "get_task_queue",
    "list_queued_task_ids",
    "remove_queue_item",
    "save_task_queue",
]
