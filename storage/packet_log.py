"""Append-only capture log in the format read by capture_file."""

import logging
import threading
import time
from typing import Optional

logger = logging.getLogger(__name__)


class PacketLog:
    """
    受信・送信したバイト列をキャプチャ形式で追記するロガー

    各行は ``<unix time> <RX|TX> <hex>`` 。
    イベントループとワーカースレッドの両方から書かれるためロックで保護する。
    """

    def __init__(self, path: str, clock=time.time):
        self.path = path
        self.clock = clock
        self._lock = threading.Lock()
        self._file = open(path, "a", encoding="ascii", buffering=1)
        self.lines_written = 0
        logger.info(f"Logging packets to {path}")

    def write(self, data: bytes, direction: str = "RX", timestamp: Optional[float] = None):
        if not data:
            return
        ts = self.clock() if timestamp is None else timestamp
        line = f"{ts:.6f} {direction} {bytes(data).hex(' ')}\n"
        with self._lock:
            if self._file is None:
                raise ValueError("PacketLog is closed")
            self._file.write(line)
            self.lines_written += 1

    def close(self):
        with self._lock:
            if self._file is not None:
                self._file.close()
                self._file = None

    def __enter__(self):
        return self

    def __exit__(self, exc_type, exc, tb):
        self.close()
