"""Task handlers that apply quota group changes through a slice controller."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .control import QUOTA_NAME_KEY
from .models import QUOTAS_SECTION, QuotaGroup, QuotaSection

if TYPE_CHECKING:
    from fleetstate.domain.execution import CancelToken
    from fleetstate.domain.ports.slices import SliceController
    from fleetstate.domain.state import Task

log = logging.getLogger(__name__)


class QuotaHandlers:
    """Bound ``do``/``undo`` pairs for every quota task kind.

    Handlers take the state lock only to read task data and to update the
    ``quotas`` section; controller calls happen outside it.
    """

    def __init__(self, controller: SliceController) -> None:
        self._controller = controller

    # create-slice -------------------------------------------------------------

    def do_create_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            group = QuotaGroup.model_validate(task.get("group"))
            section = state.section(QUOTAS_SECTION, QuotaSection)
            section.groups[name] = group
            path = section.path(name)
        token.raise_if_cancelled()
        self._controller.write_slice(path, group.memory_limit)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            section.groups[name] = group
            if group.parent is not None and group.parent in section.groups:
                siblings = section.groups[group.parent].sub_groups
                if name not in siblings:
                    siblings.append(name)
            state.set(QUOTAS_SECTION, section)
            task.logf("created slice %s", path)

    def undo_create_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            section = state.section(QUOTAS_SECTION, QuotaSection)
            path = section.path(name)
        token.raise_if_cancelled()
        self._controller.remove_slice(path)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups.pop(name, None)
            if group is not None and group.parent in section.groups:
                siblings = section.groups[group.parent].sub_groups
                if name in siblings:
                    siblings.remove(name)
            state.set(QUOTAS_SECTION, section)
            task.logf("removed slice %s", path)

    # start-slice / stop-slice ---------------------------------------------------

    def do_start_slice(self, task: Task, token: CancelToken) -> None:
        path = self._path(task)
        token.raise_if_cancelled()
        self._controller.start_slice(path)

    def do_stop_slice(self, task: Task, token: CancelToken) -> None:
        path = self._path(task)
        token.raise_if_cancelled()
        self._controller.stop_slice(path)

    # restart-member-service ---------------------------------------------------

    def do_restart_member_service(self, task: Task, token: CancelToken) -> None:
        with task.state:
            snap = task.get("snap")
            reload = task.get("daemon-reload", False)
        token.raise_if_cancelled()
        if reload:
            self._controller.daemon_reload()
        self._controller.restart_services(snap)
        with task.state:
            task.logf("restarted services of snap %s", snap)

    # update-slice -------------------------------------------------------------

    def do_update_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups[name]
            if not task.has("old-memory-limit"):
                task.set("old-memory-limit", group.memory_limit)
            added = [snap for snap in task.get("add-snaps", []) if snap not in group.snaps]
            task.set("added-snaps", added)
            memory_limit = task.get("memory-limit", group.memory_limit)
            path = section.path(name)
        token.raise_if_cancelled()
        self._controller.write_slice(path, memory_limit)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups[name]
            group.memory_limit = memory_limit
            group.snaps.extend(added)
            state.set(QUOTAS_SECTION, section)

    def undo_update_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups.get(name)
            if group is None:
                task.logf("quota group %s is gone, nothing to restore", name)
                return
            old_limit = task.get("old-memory-limit", group.memory_limit)
            added = task.get("added-snaps", [])
            path = section.path(name)
        token.raise_if_cancelled()
        self._controller.write_slice(path, old_limit)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups[name]
            group.memory_limit = old_limit
            group.snaps = [snap for snap in group.snaps if snap not in added]
            state.set(QUOTAS_SECTION, section)

    # remove-slice -------------------------------------------------------------

    def do_remove_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            section = state.section(QUOTAS_SECTION, QuotaSection)
            group = section.groups.get(name)
            path = section.path(name)
            if group is not None:
                task.set("group", group.model_dump(mode="json"))
        token.raise_if_cancelled()
        self._controller.remove_slice(path)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            removed = section.groups.pop(name, None)
            if removed is not None and removed.parent in section.groups:
                siblings = section.groups[removed.parent].sub_groups
                if name in siblings:
                    siblings.remove(name)
            state.set(QUOTAS_SECTION, section)

    def undo_remove_slice(self, task: Task, token: CancelToken) -> None:
        with task.state as state:
            name = task.get(QUOTA_NAME_KEY)
            raw = task.get("group")
            if raw is None:
                return
            group = QuotaGroup.model_validate(raw)
            section = state.section(QUOTAS_SECTION, QuotaSection)
            section.groups[name] = group
            path = section.path(name)
        token.raise_if_cancelled()
        self._controller.write_slice(path, group.memory_limit)
        self._controller.daemon_reload()
        with task.state as state:
            section = state.section(QUOTAS_SECTION, QuotaSection)
            section.groups[name] = group
            if group.parent in section.groups:
                siblings = section.groups[group.parent].sub_groups
                if name not in siblings:
                    siblings.append(name)
            state.set(QUOTAS_SECTION, section)

    def _path(self, task: Task) -> str:
        with task.state as state:
            return state.section(QUOTAS_SECTION, QuotaSection).path(task.get(QUOTA_NAME_KEY))
