import asyncio

import pytest

from cortex_chat.core.cancellation import CancelToken
from cortex_chat.core.errors import OperationCancelled


def test_run_returns_result_when_not_cancelled():
    async def _go():
        async def work():
            await asyncio.sleep(0)
            return 42

        return await CancelToken().run(work())

    assert asyncio.run(_go()) == 42


def test_run_refuses_after_cancel():
    token = CancelToken()
    token.cancel("user stopped")

    async def _go():
        await token.run(asyncio.sleep(0))

    with pytest.raises(OperationCancelled, match="user stopped"):
        asyncio.run(_go())


def test_cancel_interrupts_pending_work():
    state = {}

    async def _go():
        token = CancelToken()

        async def slow():
            try:
                await asyncio.sleep(30)
            except asyncio.CancelledError:
                state["interrupted"] = True
                raise

        runner = asyncio.ensure_future(token.run(slow()))
        await asyncio.sleep(0.01)
        token.cancel("client disconnected")
        with pytest.raises(OperationCancelled):
            await runner

    asyncio.run(_go())

    assert state == {"interrupted": True}


def test_cancel_is_idempotent():
    token = CancelToken()
    token.cancel("first")
    token.cancel("second")

    assert token.cancelled is True
    assert token.reason == "first"
