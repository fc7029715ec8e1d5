import asyncio

import pytest

from helm.core.cancel import Cancelled, CancellationToken


class TestCancellationToken:
    @pytest.mark.asyncio
    async def test_race_returns_result(self):
        token = CancellationToken()
        assert await token.race(asyncio.sleep(0, result=42)) == 42

    @pytest.mark.asyncio
    async def test_race_unblocks_on_cancel(self):
        token = CancellationToken()
        blocked = asyncio.get_running_loop().create_future()

        async def stop_soon():
            await asyncio.sleep(0.01)
            token.cancel("stop")

        asyncio.create_task(stop_soon())
        with pytest.raises(Cancelled) as exc_info:
            await token.race(blocked)
        assert exc_info.value.reason == "stop"
        assert blocked.cancelled()

    @pytest.mark.asyncio
    async def test_race_propagates_errors(self):
        token = CancellationToken()

        async def fail():
            raise KeyError("x")

        with pytest.raises(KeyError):
            await token.race(fail())

    @pytest.mark.asyncio
    async def test_sleep_interrupted(self):
        token = CancellationToken()
        asyncio.get_running_loop().call_later(0.01, token.cancel)
        with pytest.raises(Cancelled):
            await asyncio.wait_for(token.sleep(30), timeout=5)

    @pytest.mark.asyncio
    async def test_sleep_completes(self):
        token = CancellationToken()
        await token.sleep(0.001)
        assert not token.cancelled

    @pytest.mark.asyncio
    async def test_first_reason_kept(self):
        token = CancellationToken()
        token.cancel("first")
        token.cancel("second")
        assert token.reason == "first"
        with pytest.raises(Cancelled, match="first"):
            token.raise_if_cancelled()

    @pytest.mark.asyncio
    async def test_iterate_closes_source(self):
        token = CancellationToken()
        closed = asyncio.Event()

        async def source():
            try:
                yield 1
                await asyncio.Event().wait()
                yield 2
            finally:
                closed.set()

        received = []
        with pytest.raises(Cancelled):
            async for item in token.iterate(source()):
                received.append(item)
                token.cancel()

        assert received == [1]
        assert closed.is_set()

    @pytest.mark.asyncio
    async def test_iterate_exhausts(self):
        token = CancellationToken()

        async def source():
            for i in range(3):
                yield i

        assert [i async for i in token.iterate(source())] == [0, 1, 2]
