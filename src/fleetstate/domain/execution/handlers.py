"""Mapping from task kind to the logic that performs and reverses it."""

from __future__ import annotations

import logging
from dataclasses import dataclass
from datetime import timedelta
from typing import TYPE_CHECKING

from .errors import DuplicateHandlerError, MissingHandlerError, RegistryFrozenError

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

    from fleetstate.domain.state import Task

    from .cancel import CancelToken

log = logging.getLogger(__name__)

type Handler = Callable[[Task, CancelToken], None]


@dataclass(frozen=True, slots=True)
class HandlerSpec:
    """Handlers and execution limits for one task kind.

    ``undo`` may be ``None`` for kinds without observable effects; rolling
    such a task back is a successful no-op.
    """

    kind: str
    do: Handler
    undo: Handler | None = None
    max_concurrent: int | None = None
    timeout: timedelta | None = None
    max_retries: int | None = None


class HandlerRegistry:
    """Explicit kind -> handler table owned by one engine instance.

    Managers populate it from their constructors during single-threaded
    startup; the runner freezes it on ``init`` after which it is read-only.
    """

    def __init__(self) -> None:
        self._handlers: dict[str, HandlerSpec] = {}
        self._frozen = False

    def register(
        self,
        kind: str,
        do: Handler,
        undo: Handler | None = None,
        *,
        max_concurrent: int | None = None,
        timeout: timedelta | float | None = None,
        max_retries: int | None = None,
    ) -> HandlerSpec:
        if self._frozen:
            raise RegistryFrozenError(f"cannot register handler for {kind!r} after startup")
        if kind in self._handlers:
            raise DuplicateHandlerError(f"handler for task kind {kind!r} already registered")
        if max_concurrent is not None and max_concurrent <= 0:
            raise ValueError("max_concurrent must be positive")
        if isinstance(timeout, int | float):
            timeout = timedelta(seconds=timeout)
        spec = HandlerSpec(
            kind=kind,
            do=do,
            undo=undo,
            max_concurrent=max_concurrent,
            timeout=timeout,
            max_retries=max_retries,
        )
        self._handlers[kind] = spec
        log.debug("Registered handlers for task kind %s", kind)
        return spec

    def handler(self, kind: str) -> HandlerSpec:
        try:
            return self._handlers[kind]
        except KeyError:
            raise MissingHandlerError(f"no handler registered for task kind {kind!r}") from None

    def __contains__(self, kind: object) -> bool:
        return kind in self._handlers

    def kinds(self) -> tuple[str, ...]:
        return tuple(self._handlers)

    def validate(self, kinds: Iterable[str]) -> None:
        """Fail if any of ``kinds`` lacks a handler."""

        missing = sorted({kind for kind in kinds if kind not in self._handlers})
        if missing:
            raise MissingHandlerError(
                "no handler registered for task kinds: " + ", ".join(missing)
            )

    def freeze(self) -> None:
        self._frozen = True

    @property
    def frozen(self) -> bool:
        return self._frozen
