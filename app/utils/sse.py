# app/utils/sse.py
from __future__ import annotations
import json
from typing import Any, AsyncGenerator, Dict

from fastapi.responses import StreamingResponse


def sse_event(event: Dict[str, Any]) -> str:
    """
    이벤트 dict 하나를 SSE 프레임으로. output 이벤트는 라인 인덱스를 id 로 실어
    재접속 시 Last-Event-ID 로 이어받을 수 있게 한다.
    """
    frame = ""
    if event.get("type") == "output":
        frame += f"id: {event['index']}\n"
    data = json.dumps(event, ensure_ascii=False)
    # json.dumps 결과에는 개행이 없으므로 data: 한 줄로 충분
    frame += f"data: {data}\n\n"
    return frame


async def sse_format(gen: AsyncGenerator[Dict[str, Any], None]):
    """
    제네레이터에서 나온 이벤트를 SSE 프레임으로 포맷팅.
    """
    async for event in gen:
        yield sse_event(event)


def event_stream_response(events: AsyncGenerator[Dict[str, Any], None]) -> StreamingResponse:
    return StreamingResponse(
        sse_format(events),
        media_type="text/event-stream",
        headers={
            "Cache-Control": "no-cache",
            "X-Accel-Buffering": "no",  # nginx 버퍼링 비활성화(필요 시)
        },
    )
