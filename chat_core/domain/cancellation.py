"""协作式取消令牌。

调用方与超时逻辑共享同一个 CancellationToken：任何一方调用 cancel()，
guard() 守护的任务都会被取消，进而关闭底层 HTTP 连接。
"""

import asyncio
from typing import Awaitable, Optional, TypeVar

from chat_core.domain.exceptions import RequestAbortedError

T = TypeVar("T")


class CancellationToken:
    def __init__(self) -> None:
        self._event = asyncio.Event()
        self.reason: Optional[str] = None

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def cancel(self, reason: str = "aborted") -> None:
        if self._event.is_set():
            return
        self.reason = reason
        self._event.set()

    async def wait(self) -> None:
        await self._event.wait()

    async def guard(self, aw: Awaitable[T]) -> T:
        """运行 aw，若令牌先被取消则取消它并抛出 RequestAbortedError。

        外层被取消（例如超时）时，内层任务同样被取消，并等到它真正结束后
        才把 CancelledError 继续向上抛。
        """

        task = asyncio.ensure_future(aw)
        waiter = asyncio.ensure_future(self._event.wait())
        try:
            done, _ = await asyncio.wait({task, waiter}, return_when=asyncio.FIRST_COMPLETED)
        except asyncio.CancelledError:
            await _cancel_and_wait(task)
            raise
        finally:
            waiter.cancel()

        if task not in done:
            await _cancel_and_wait(task)
            raise RequestAbortedError(code="ABORTED", message=f"Request aborted: {self.reason}")
        return task.result()


async def _cancel_and_wait(task: "asyncio.Future") -> None:
    task.cancel()
    await asyncio.gather(task, return_exceptions=True)
