import json
import logging

import pytest

from botchain.core.clock import ManualClock
from botchain.core.exceptions import (
    BotchainError,
    ConfigError,
    PermanentError,
    TransientError,
)
from botchain.core.retry import retry_transient


@pytest.mark.anyio
async def test_transient_errors_are_retried_until_success() -> None:
    calls = 0

    @retry_transient(max_attempts=3, base_wait=0.001, max_wait=0.001)
    async def flaky() -> str:
        nonlocal calls
        calls += 1
        if calls < 3:
            raise TransientError("busy")
        return "ok"

    assert await flaky() == "ok"
    assert calls == 3


@pytest.mark.anyio
async def test_last_transient_error_is_reraised() -> None:
    calls = 0

    @retry_transient(max_attempts=2, base_wait=0.001, max_wait=0.001)
    async def always_busy() -> None:
        nonlocal calls
        calls += 1
        raise TransientError("still busy")

    with pytest.raises(TransientError, match="still busy"):
        await always_busy()
    assert calls == 2


@pytest.mark.anyio
async def test_permanent_errors_are_not_retried() -> None:
    calls = 0

    @retry_transient(base_wait=0.001)
    async def broken() -> None:
        nonlocal calls
        calls += 1
        raise PermanentError("bad")

    with pytest.raises(PermanentError):
        await broken()
    assert calls == 1


def test_error_hierarchy_flags() -> None:
    assert TransientError("x").recoverable is True
    assert TransientError("x").severity == "warning"
    assert PermanentError("x").recoverable is False
    assert isinstance(ConfigError("x"), PermanentError)
    err = BotchainError("internal", user_message="Try again later")
    assert err.user_message == "Try again later"
    assert str(err) == "internal"


def test_manual_clock() -> None:
    clock = ManualClock(start=5.0)
    clock.advance(2.5)
    assert clock.now() == 7.5
    with pytest.raises(ValueError):
        clock.advance(-1)


@pytest.mark.anyio
async def test_each_retry_is_logged_as_structured_event(caplog) -> None:
    calls = 0

    @retry_transient(max_attempts=2, base_wait=0.001, max_wait=0.001)
    async def locked_once() -> str:
        nonlocal calls
        calls += 1
        if calls == 1:
            raise TransientError("database is locked")
        return "ok"

    with caplog.at_level(logging.WARNING, logger="botchain.core.retry"):
        assert await locked_once() == "ok"

    payloads = [json.loads(record.message) for record in caplog.records]
    assert len(payloads) == 1
    assert payloads[0]["event"] == "retry.transient"
    assert payloads[0]["attempt"] == 1
    assert payloads[0]["operation"].endswith("locked_once")
    assert payloads[0]["error"] == "TransientError: database is locked"
