"""Root-of-trust documents supplied to managers that validate signed artifacts.

The documents are opaque here: verification belongs to the consumer. The set
is fixed at startup, extended by ``inject`` and restored through the returned
callable, which keeps test overrides scoped.
"""

from __future__ import annotations

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import TYPE_CHECKING, Final

if TYPE_CHECKING:
    from collections.abc import Callable, Iterable

log = logging.getLogger(__name__)

STAGING_DIR_NAME: Final[str] = "staging"
FALLBACK_POLICY_NAME: Final[str] = "fallback-policy"


@dataclass(frozen=True, slots=True)
class TrustDocument:
    name: str
    content: bytes


type Restore = Callable[[], None]


class TrustedSet:
    """Ordered trusted documents: base (or staging) set followed by injected extras."""

    def __init__(
        self,
        base: Iterable[TrustDocument],
        staging: Iterable[TrustDocument] = (),
        *,
        fallback_policy: TrustDocument | None = None,
        staging_fallback_policy: TrustDocument | None = None,
        use_staging: bool = False,
    ) -> None:
        self._base = tuple(base)
        self._staging = tuple(staging)
        self._fallback = fallback_policy
        self._staging_fallback = staging_fallback_policy
        self._use_staging = use_staging
        self._extra: tuple[TrustDocument, ...] = ()
        self._override: TrustDocument | None = None
        self._lock = threading.Lock()

    @classmethod
    def from_directory(cls, path: Path, *, use_staging: bool = False) -> TrustedSet:
        """Load every file of ``path`` (and its ``staging`` subdirectory) in name order.

        A file named ``fallback-policy`` becomes the fallback policy of its set.
        """

        base, fallback = _load_documents(path)
        staging, staging_fallback = _load_documents(path / STAGING_DIR_NAME)
        log.debug("Loaded %d trusted documents from %s", len(base) + len(staging), path)
        return cls(
            base,
            staging,
            fallback_policy=fallback,
            staging_fallback_policy=staging_fallback,
            use_staging=use_staging,
        )

    @property
    def use_staging(self) -> bool:
        return self._use_staging

    def documents(self) -> tuple[TrustDocument, ...]:
        with self._lock:
            chosen = self._staging if self._use_staging else self._base
            return chosen + self._extra

    def inject(self, extra: Iterable[TrustDocument]) -> Restore:
        """Append ``extra`` to the set; the returned callable restores the previous extras."""

        added = tuple(extra)
        with self._lock:
            previous = self._extra
            self._extra = previous + added

        def restore() -> None:
            with self._lock:
                self._extra = previous

        return restore

    def fallback_policy(self) -> TrustDocument | None:
        with self._lock:
            if self._override is not None:
                return self._override
            return self._staging_fallback if self._use_staging else self._fallback

    def override_fallback_policy(self, document: TrustDocument | None) -> Restore:
        with self._lock:
            previous = self._override
            self._override = document

        def restore() -> None:
            with self._lock:
                self._override = previous

        return restore


def _load_documents(path: Path) -> tuple[list[TrustDocument], TrustDocument | None]:
    documents: list[TrustDocument] = []
    fallback: TrustDocument | None = None
    if not path.is_dir():
        return documents, fallback
    for entry in sorted(path.iterdir()):
        if not entry.is_file():
            continue
        document = TrustDocument(name=entry.name, content=entry.read_bytes())
        if entry.name == FALLBACK_POLICY_NAME:
            fallback = document
        else:
            documents.append(document)
    return documents, fallback
