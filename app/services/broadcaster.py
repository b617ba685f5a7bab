# app/services/broadcaster.py
from __future__ import annotations
import asyncio
import logging
from typing import Any, AsyncIterator, Dict, Optional

from app.services.registry import FEED_CLOSED, ProcessRegistry, process_registry

logger = logging.getLogger(__name__)


class Subscription:
    """
    run 하나에 붙은 뷰어. 커서는 구독마다 독립적이다.
    """

    def __init__(self, registry: ProcessRegistry, run_id: str, queue: asyncio.Queue, cursor: int):
        self._registry = registry
        self._queue = queue
        self.run_id = run_id
        self.cursor = cursor
        self.closed = False

    def __aiter__(self) -> AsyncIterator[Dict[str, Any]]:
        return self.events()

    async def events(self) -> AsyncIterator[Dict[str, Any]]:
        try:
            while not self.closed:
                event = await self._queue.get()
                if event is FEED_CLOSED:
                    break
                if event["type"] == "output":
                    self.cursor = max(self.cursor, event["index"] + 1)
                yield event
        finally:
            self.detach()

    def detach(self) -> None:
        if self.closed:
            return
        self.closed = True
        self._registry.close_feed(self.run_id, self._queue)
        # 대기 중인 events() 를 깨운다
        self._queue.put_nowait(FEED_CLOSED)
        logger.debug("viewer detached from run %s at cursor %s", self.run_id, self.cursor)


class Broadcaster:
    def __init__(self, registry: ProcessRegistry):
        self.registry = registry

    def attach(self, run_id: str, from_cursor: Optional[int] = None, resume: bool = False) -> Subscription:
        """
        from_cursor 가 없으면 버퍼 처음부터 리플레이 후 실시간 이벤트로 이어진다.
        resume 이면 from_cursor 라인을 overwrite 로 다시 보낸다 (재접속).
        알 수 없는 run 이면 NotFound.
        """
        queue, cursor = self.registry.open_feed(run_id, from_cursor, resume=resume)
        logger.debug("viewer attached to run %s from cursor %s", run_id, cursor)
        return Subscription(self.registry, run_id, queue, cursor)

    def detach(self, subscription: Subscription) -> None:
        subscription.detach()


broadcaster = Broadcaster(process_registry)
