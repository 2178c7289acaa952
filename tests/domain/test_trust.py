from __future__ import annotations

from typing import TYPE_CHECKING

from fleetstate.domain.trust import TrustDocument, TrustedSet

if TYPE_CHECKING:
    from pathlib import Path


def _write(path: Path, name: str, content: bytes) -> None:
    path.mkdir(parents=True, exist_ok=True)
    (path / name).write_bytes(content)


def test_from_directory_loads_base_and_staging(tmp_path: Path) -> None:
    _write(tmp_path, "b-root", b"b")
    _write(tmp_path, "a-root", b"a")
    _write(tmp_path, "fallback-policy", b"policy")
    _write(tmp_path / "staging", "staging-root", b"s")

    trusted = TrustedSet.from_directory(tmp_path)
    staging = TrustedSet.from_directory(tmp_path, use_staging=True)

    assert [doc.name for doc in trusted.documents()] == ["a-root", "b-root"]
    assert trusted.fallback_policy() == TrustDocument("fallback-policy", b"policy")
    assert [doc.name for doc in staging.documents()] == ["staging-root"]
    assert staging.fallback_policy() is None


def test_missing_directory_yields_empty_set(tmp_path: Path) -> None:
    trusted = TrustedSet.from_directory(tmp_path / "absent")

    assert trusted.documents() == ()
    assert trusted.fallback_policy() is None


def test_inject_appends_and_restores() -> None:
    base = TrustDocument("root", b"root")
    trusted = TrustedSet([base])

    restore_first = trusted.inject([TrustDocument("extra-1", b"1")])
    restore_second = trusted.inject([TrustDocument("extra-2", b"2")])

    assert [doc.name for doc in trusted.documents()] == ["root", "extra-1", "extra-2"]
    restore_second()
    assert [doc.name for doc in trusted.documents()] == ["root", "extra-1"]
    restore_first()
    assert trusted.documents() == (base,)


def test_override_fallback_policy_is_scoped() -> None:
    original = TrustDocument("fallback-policy", b"original")
    trusted = TrustedSet([], fallback_policy=original)

    restore = trusted.override_fallback_policy(TrustDocument("test-policy", b"test"))
    assert trusted.fallback_policy() == TrustDocument("test-policy", b"test")

    restore()
    assert trusted.fallback_policy() == original

