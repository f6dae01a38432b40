"""Resumable view over an append-only byte buffer."""

import logging
from typing import Optional

from config import config
from .errors import BufferOverflow, InsufficientData

logger = logging.getLogger(__name__)

# 消費済み領域がこのサイズを超えたらメモリを回収する
_COMPACT_THRESHOLD = 1024


class ByteCursor:
    """
    受信バイト列のカーソル

    append() で末尾に追加し、peek() で先読み、consume() で解釈済みの
    バイトを捨てる。部分的な読み取りの間も未消費データは失われない。
    """

    def __init__(self, high_water_mark: Optional[int] = None):
        self._buffer = bytearray()
        self._start = 0  # 未消費データの先頭インデックス
        self._consumed_total = 0
        self.high_water_mark = high_water_mark if high_water_mark is not None else config.MAX_BUFFER_SIZE
        if self.high_water_mark <= 0:
            raise ValueError(f"high_water_mark must be positive, got {self.high_water_mark}")

    def __len__(self) -> int:
        return len(self._buffer) - self._start

    @property
    def position(self) -> int:
        """Absolute stream offset of the first unconsumed byte."""
        return self._consumed_total

    @property
    def free_space(self) -> int:
        return max(0, self.high_water_mark - len(self))

    def append(self, data: bytes) -> None:
        if not data:
            return
        if len(self) + len(data) > self.high_water_mark:
            raise BufferOverflow(
                f"Buffer high-water mark exceeded: {len(self)} buffered + {len(data)} new "
                f"> {self.high_water_mark}",
                offset=self.position + len(self),
                data=data[:16],
            )
        self._buffer.extend(data)

    def peek(self, n: int, offset: int = 0, short_ok: bool = False) -> bytes:
        """Return up to ``n`` bytes starting ``offset`` bytes past the read position."""
        available = len(self) - offset
        if available < n and not short_ok:
            raise InsufficientData(
                f"Need {n} bytes at offset {offset}, have {max(available, 0)}",
                offset=self.position + offset,
            )
        begin = self._start + offset
        return bytes(self._buffer[begin:begin + max(0, min(n, available))])

    def byte_at(self, index: int) -> int:
        if index >= len(self):
            raise InsufficientData(
                f"Need byte at offset {index}, have {len(self)}",
                offset=self.position + index,
            )
        return self._buffer[self._start + index]

    def find(self, marker: bytes, start: int = 0) -> int:
        """Index of ``marker`` relative to the read position, or -1."""
        index = self._buffer.find(marker, self._start + start)
        return index - self._start if index != -1 else -1

    def consume(self, n: int) -> None:
        if n > len(self):
            raise InsufficientData(
                f"Cannot consume {n} bytes, have {len(self)}",
                offset=self.position,
            )
        self._start += n
        self._consumed_total += n
        self._compact()

    def clear(self) -> int:
        """Discard every unconsumed byte and return how many were dropped."""
        dropped = len(self)
        if dropped:
            self.consume(dropped)
        return dropped

    def _compact(self) -> None:
        if self._start == len(self._buffer):
            self._buffer.clear()
            self._start = 0
        elif self._start >= _COMPACT_THRESHOLD and self._start * 2 >= len(self._buffer):
            del self._buffer[:self._start]
            self._start = 0
