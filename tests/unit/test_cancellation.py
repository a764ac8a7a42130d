import asyncio

import pytest

from apiflow.cancellation import CancellationController, CancellationToken


def test_token_cancels_once():
    token = CancellationToken("exec-1")

    assert token.cancel("alice") is True
    assert token.cancel("bob") is False
    assert token.is_canceled
    assert token.canceled_by == "alice"
    assert token.requested_at is not None


@pytest.mark.asyncio
async def test_wait_returns_after_cancel():
    token = CancellationToken("exec-1")
    waiter = asyncio.create_task(token.wait())
    await asyncio.sleep(0)
    assert not waiter.done()

    token.cancel()
    await asyncio.wait_for(waiter, 1)


def test_controller_only_signals_registered_executions():
    controller = CancellationController()
    token = controller.token("exec-1")

    assert controller.token("exec-1") is token
    assert "exec-1" in controller
    assert controller.cancel("exec-2") is False
    assert controller.cancel("exec-1", "alice") is True
    assert controller.cancel("exec-1") is False

    controller.discard("exec-1")
    assert "exec-1" not in controller
    assert controller.cancel("exec-1") is False
