"""Request quota group changes.

Every function expects the caller to hold the state lock. Validation happens
up front; the slice work itself is enqueued as a change for the task runner.
"""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .errors import QuotaConflictError, QuotaError
from .models import (
    QUOTAS_SECTION,
    QuotaGroup,
    QuotaSection,
    validate_group_name,
    validate_memory_limit,
)

if TYPE_CHECKING:
    from collections.abc import Iterable

    from fleetstate.domain.state import Change, State, Task

log = logging.getLogger(__name__)

QUOTA_NAME_KEY = "quota-name"

CREATE_SLICE = "create-slice"
START_SLICE = "start-slice"
RESTART_MEMBER_SERVICE = "restart-member-service"
UPDATE_SLICE = "update-slice"
STOP_SLICE = "stop-slice"
REMOVE_SLICE = "remove-slice"

TASK_KINDS = (
    CREATE_SLICE,
    START_SLICE,
    RESTART_MEMBER_SERVICE,
    UPDATE_SLICE,
    STOP_SLICE,
    REMOVE_SLICE,
)


def all_quotas(state: State) -> dict[str, QuotaGroup]:
    """Return every quota group currently recorded in the state."""

    return dict(state.section(QUOTAS_SECTION, QuotaSection).groups)


def create_quota(
    state: State,
    name: str,
    snaps: Iterable[str] = (),
    memory_limit: int = 0,
    *,
    parent: str | None = None,
) -> Change:
    """Enqueue creation of quota group ``name`` holding ``snaps``."""

    validate_group_name(name)
    validate_memory_limit(memory_limit)
    members = _unique(snaps)
    section = state.section(QUOTAS_SECTION, QuotaSection)
    if name in section.groups:
        raise QuotaError(f"group {name!r} already exists")
    _check_no_conflict(state, name)
    _check_snaps_free(section, members)
    if parent is not None:
        parent_group = section.groups.get(parent)
        if parent_group is None:
            raise QuotaError(f"cannot use non-existent group {parent!r} as parent")
        if memory_limit > parent_group.memory_limit:
            raise QuotaError(
                f"sub-group memory limit of {memory_limit} is too large to fit inside "
                f"remaining quota space {parent_group.memory_limit} for parent group {parent!r}"
            )
        _check_no_conflict(state, parent)

    group = QuotaGroup(memory_limit=memory_limit, snaps=members, parent=parent)
    change = state.new_change("create-quota", f"Create quota group {name!r}")
    change.set(QUOTA_NAME_KEY, name)

    create = _new_task(state, CREATE_SLICE, f"Create slice for quota group {name!r}", name)
    create.set("group", group.model_dump(mode="json"))
    start = _new_task(state, START_SLICE, f"Start slice for quota group {name!r}", name)
    start.wait_for(create)
    change.add_all([create, start])
    change.add_all(_restart_tasks(state, name, members, after=start))
    log.info("Requested creation of quota group %s in change %s", name, change.id)
    return change


def update_quota(
    state: State,
    name: str,
    *,
    memory_limit: int | None = None,
    add_snaps: Iterable[str] = (),
) -> Change | None:
    """Enqueue an update of group ``name``; ``None`` when nothing would change."""

    section = state.section(QUOTAS_SECTION, QuotaSection)
    group = section.groups.get(name)
    if group is None:
        raise QuotaError(f"group {name!r} does not exist")
    _check_no_conflict(state, name)

    added = [snap for snap in _unique(add_snaps) if snap not in group.snaps]
    _check_snaps_free(section, added)
    if memory_limit is not None:
        validate_memory_limit(memory_limit)
        if memory_limit < group.memory_limit:
            raise QuotaError(
                f"cannot decrease memory limit of existing quota-group {name!r}, "
                "remove and re-create it to decrease the limit"
            )
        if group.parent is not None:
            parent_group = section.groups[group.parent]
            if memory_limit > parent_group.memory_limit:
                raise QuotaError(
                    f"sub-group memory limit of {memory_limit} is too large to fit inside "
                    f"parent group {group.parent!r}"
                )
        if memory_limit == group.memory_limit:
            memory_limit = None

    if memory_limit is None and not added:
        return None

    change = state.new_change("update-quota", f"Update quota group {name!r}")
    change.set(QUOTA_NAME_KEY, name)
    update = _new_task(state, UPDATE_SLICE, f"Update slice for quota group {name!r}", name)
    if memory_limit is not None:
        update.set("memory-limit", memory_limit)
    update.set("add-snaps", added)
    change.add_task(update)
    change.add_all(_restart_tasks(state, name, added, after=update))
    log.info("Requested update of quota group %s in change %s", name, change.id)
    return change


def remove_quota(state: State, name: str) -> Change:
    """Enqueue removal of group ``name``; its snaps are restarted outside any slice."""

    section = state.section(QUOTAS_SECTION, QuotaSection)
    group = section.groups.get(name)
    if group is None:
        raise QuotaError(f"cannot remove non-existent quota group {name!r}")
    if group.sub_groups:
        raise QuotaError(
            f"cannot remove quota group {name!r} with sub-groups, remove the sub-groups first"
        )
    _check_no_conflict(state, name)

    change = state.new_change("remove-quota", f"Remove quota group {name!r}")
    change.set(QUOTA_NAME_KEY, name)
    stop = _new_task(state, STOP_SLICE, f"Stop slice for quota group {name!r}", name)
    remove = _new_task(state, REMOVE_SLICE, f"Remove slice for quota group {name!r}", name)
    remove.wait_for(stop)
    change.add_all([stop, remove])
    change.add_all(_restart_tasks(state, name, group.snaps, after=remove))
    log.info("Requested removal of quota group %s in change %s", name, change.id)
    return change


def ensure_snap_absent_from_quota(state: State, snap: str) -> Change | None:
    """Drop ``snap`` from whichever group holds it and restart its services.

    The section is updated immediately. Calling this for a snap that is in no
    group is a no-op returning ``None``.
    """

    section = state.section(QUOTAS_SECTION, QuotaSection)
    name = section.group_of(snap)
    if name is None:
        return None
    section.groups[name].snaps.remove(snap)
    state.set(QUOTAS_SECTION, section)

    change = state.new_change(
        "remove-snap-from-quota", f"Remove snap {snap!r} from quota group {name!r}"
    )
    change.set(QUOTA_NAME_KEY, name)
    change.add_all(_restart_tasks(state, name, [snap], daemon_reload=True))
    log.info("Removed snap %s from quota group %s", snap, name)
    return change


def _new_task(state: State, kind: str, summary: str, name: str) -> Task:
    task = state.new_task(kind, summary)
    task.set(QUOTA_NAME_KEY, name)
    return task


def _restart_tasks(
    state: State,
    name: str,
    snaps: Iterable[str],
    *,
    after: Task | None = None,
    daemon_reload: bool = False,
) -> list[Task]:
    tasks: list[Task] = []
    for snap in snaps:
        task = _new_task(state, RESTART_MEMBER_SERVICE, f"Restart services of snap {snap!r}", name)
        task.set("snap", snap)
        if daemon_reload:
            # The snap's units moved out of the slice and must be reloaded first.
            task.set("daemon-reload", True)
        if after is not None:
            task.wait_for(after)
        tasks.append(task)
    return tasks


def _check_no_conflict(state: State, name: str) -> None:
    for change in state.changes():
        if change.is_ready:
            continue
        if change.get(QUOTA_NAME_KEY) == name:
            raise QuotaConflictError(name, change.id, change.kind)


def _check_snaps_free(section: QuotaSection, snaps: Iterable[str]) -> None:
    for snap in snaps:
        owner = section.group_of(snap)
        if owner is not None:
            raise QuotaError(
                f"cannot add snap {snap!r} to more than one quota group (already in {owner!r})"
            )


def _unique(snaps: Iterable[str]) -> list[str]:
    members: list[str] = []
    for snap in snaps:
        if not snap:
            raise QuotaError("snap name must not be empty")
        if snap in members:
            raise QuotaError(f"duplicate snap {snap!r} in quota group request")
        members.append(snap)
    return members
