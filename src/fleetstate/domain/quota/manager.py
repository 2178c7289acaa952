"""State manager owning quota groups."""

from __future__ import annotations

import logging
from typing import TYPE_CHECKING

from .control import (
    CREATE_SLICE,
    REMOVE_SLICE,
    RESTART_MEMBER_SERVICE,
    START_SLICE,
    STOP_SLICE,
    UPDATE_SLICE,
)
from .handlers import QuotaHandlers

if TYPE_CHECKING:
    from fleetstate.domain.execution import HandlerRegistry
    from fleetstate.domain.ports.slices import SliceController
    from fleetstate.domain.state import State

log = logging.getLogger(__name__)


class QuotaManager:
    """Register the quota task handlers; quota work is request driven."""

    def __init__(self, registry: HandlerRegistry, controller: SliceController) -> None:
        self._state: State | None = None
        self.handlers = QuotaHandlers(controller)
        h = self.handlers
        registry.register(CREATE_SLICE, h.do_create_slice, h.undo_create_slice)
        registry.register(START_SLICE, h.do_start_slice, h.do_stop_slice)
        registry.register(RESTART_MEMBER_SERVICE, h.do_restart_member_service)
        registry.register(UPDATE_SLICE, h.do_update_slice, h.undo_update_slice)
        registry.register(STOP_SLICE, h.do_stop_slice, h.do_start_slice)
        registry.register(REMOVE_SLICE, h.do_remove_slice, h.undo_remove_slice)

    def init(self, state: State) -> None:
        self._state = state

    def ensure(self) -> None:
        return None

    def stop(self) -> None:
        return None
