"""按操作名去重的并发请求原语

同一个 key 同时只有一个任务在跑；运行期间再次调用不会发起新请求，
而是等待并拿到同一个结果。任务结束（成功或失败）后立即遗忘，
所以失败不会“粘住”，手动重试直接重新调用即可。
"""
import asyncio
from typing import Awaitable, Callable, Dict, TypeVar

from ..utils.structured_logger import get_logger

logger = get_logger(__name__)

T = TypeVar("T")


class SingleFlight:
    """Promise 缓存：key -> 正在运行的 asyncio.Task"""

    def __init__(self):
        self._inflight: Dict[str, asyncio.Task] = {}

    def in_flight(self, key: str) -> bool:
        task = self._inflight.get(key)
        return task is not None and not task.done()

    async def run(self, key: str, factory: Callable[[], Awaitable[T]]) -> T:
        """
        执行或加入 key 对应的任务

        Args:
            key: 操作名
            factory: 无参协程工厂，只有在没有进行中的任务时才会被调用

        Returns:
            任务结果（加入者和发起者拿到同一个结果/异常）
        """
        task = self._inflight.get(key)
        if task is None or task.done():
            task = asyncio.ensure_future(factory())
            self._inflight[key] = task
            task.add_done_callback(lambda done, k=key: self._forget(k, done))
        else:
            logger.info(f"[{key}] 已有请求进行中，加入等待而不是重复发起")
        # shield：某个等待者被取消时不影响共享任务
        return await asyncio.shield(task)

    def _forget(self, key: str, task: asyncio.Task):
        if self._inflight.get(key) is task:
            del self._inflight[key]
        if not task.cancelled() and task.exception() is not None:
            # 取走异常，避免 "exception was never retrieved" 警告
            logger.debug(f"[{key}] 任务以异常结束: {task.exception()!r}")
