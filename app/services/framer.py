# app/services/framer.py
from __future__ import annotations
from typing import List, Optional

from app.models.run_models import LineOp


def status_line(exit_code: Optional[int], signal: Optional[int] = None) -> str:
    if exit_code is None and signal is not None:
        return f"[RC] terminated by signal {signal}"
    return f"[RC] {exit_code}"


class OutputFramer:
    """
    청크 단위 raw 출력 → 라인 연산(append / overwrite) 변환기.

    - '\\r' 로 시작하는 청크는 현재 라인을 덮어쓴다 (스피너/프로그레스 표시용).
    - 그 외 청크는 '\\n' 기준으로 분리, 완성된 세그먼트마다 append.
    - 개행 없이 끝난 꼬리는 보류(partial) 했다가 다음 데이터나 종료 시 확정.
    입력 청크 순서가 같으면 출력 연산 순서도 항상 같다.
    """

    def __init__(self):
        self._partial: Optional[str] = None
        # '\r' 덮어쓰기로 화면에 나간 뒤 아직 개행으로 닫히지 않은 라인
        self._open: Optional[str] = None
        self._emitted = 0
        self._finished = False

    def _emit(self, ops: List[LineOp], op: LineOp) -> None:
        if op.op == "append" or self._emitted == 0:
            op = LineOp.append(op.text)
            self._emitted += 1
        ops.append(op)

    def _complete(self, ops: List[LineOp], text: str) -> None:
        # 라인 중간의 '\r' 은 마지막 것 이후만 남긴다
        text = text.rstrip("\r")
        if "\r" in text:
            text = text.rsplit("\r", 1)[-1]
            if self._open is not None:
                self._open = ""
        if self._open is not None:
            if text or not self._open:
                self._emit(ops, LineOp.overwrite(self._open + text))
            self._open = None
        else:
            self._emit(ops, LineOp.append(text))

    def _plain(self, ops: List[LineOp], chunk: str) -> None:
        segments = chunk.split("\n")
        for seg in segments[:-1]:
            text = (self._partial or "") + seg
            self._partial = None
            self._complete(ops, text)
        tail = segments[-1]
        if tail:
            self._partial = (self._partial or "") + tail

    def feed(self, chunk: str) -> List[LineOp]:
        if self._finished:
            raise RuntimeError("framer already finished")
        ops: List[LineOp] = []
        if not chunk:
            return ops
        chunk = chunk.replace("\r\n", "\n")
        if chunk.startswith("\r"):
            body = chunk.lstrip("\r")
            head, sep, rest = body.partition("\n")
            head = head.rsplit("\r", 1)[-1]
            if self._open is None and self._partial is not None:
                # 아직 화면에 나가지 않은 partial 을 교체 → 새 라인
                self._emit(ops, LineOp.append(head))
            else:
                self._emit(ops, LineOp.overwrite(head))
            self._partial = None
            self._open = None if sep else head
            if sep:
                self._plain(ops, rest)
            return ops
        self._plain(ops, chunk)
        return ops

    def finish(self, exit_code: Optional[int], signal: Optional[int] = None) -> List[LineOp]:
        ops: List[LineOp] = []
        if self._finished:
            return ops
        if self._partial is not None:
            self._complete(ops, self._partial)
            self._partial = None
        self._open = None
        self._emit(ops, LineOp.append(status_line(exit_code, signal)))
        self._finished = True
        return ops
