from __future__ import annotations

from datetime import timedelta

import pytest

from fleetstate.config import ConfigurationError
from fleetstate.domain.execution import (
    CancelReason,
    CancelToken,
    DuplicateHandlerError,
    HandlerCancelled,
    HandlerRegistry,
    MissingHandlerError,
    RegistryFrozenError,
    Retry,
)
from tests.helpers.fleet import RecordingHandlers


def test_register_and_lookup(registry: HandlerRegistry, recorder: RecordingHandlers) -> None:
    spec = registry.register("create-slice", recorder.do, recorder.undo, timeout=30)

    assert registry.handler("create-slice") is spec
    assert spec.timeout == timedelta(seconds=30)
    assert "create-slice" in registry
    assert registry.kinds() == ("create-slice",)


def test_duplicate_registration_fails(
    registry: HandlerRegistry, recorder: RecordingHandlers
) -> None:
    registry.register("create-slice", recorder.do)

    with pytest.raises(DuplicateHandlerError):
        registry.register("create-slice", recorder.do)


def test_registration_errors_are_configuration_errors(registry: HandlerRegistry) -> None:
    with pytest.raises(ConfigurationError):
        registry.handler("unknown")


def test_frozen_registry_rejects_registration(
    registry: HandlerRegistry, recorder: RecordingHandlers
) -> None:
    registry.freeze()

    with pytest.raises(RegistryFrozenError):
        registry.register("create-slice", recorder.do)


def test_validate_lists_missing_kinds(
    registry: HandlerRegistry, recorder: RecordingHandlers
) -> None:
    registry.register("create-slice", recorder.do)

    with pytest.raises(MissingHandlerError) as exc:
        registry.validate(["create-slice", "stop-slice", "remove-slice"])

    assert "remove-slice, stop-slice" in str(exc.value)


def test_cancel_token_keeps_first_reason() -> None:
    token = CancelToken()
    assert not token.wait(0)

    token.cancel(CancelReason.TIMEOUT)
    token.cancel(CancelReason.STOP)

    assert token.cancelled
    assert token.reason is CancelReason.TIMEOUT
    assert token.wait(0)
    with pytest.raises(HandlerCancelled):
        token.raise_if_cancelled()


def test_retry_normalises_delay() -> None:
    assert Retry(2.5).after == timedelta(seconds=2.5)
    assert Retry(timedelta(minutes=1), "busy").reason == "busy"
