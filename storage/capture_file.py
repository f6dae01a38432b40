"""
Capture file reading.

One record per line::

    [timestamp] [RX|TX] <hex bytes>

``timestamp`` is float seconds (it must contain a ``.``; brackets are
optional) or an ISO-8601 datetime without spaces. Blank lines and ``#``
comments are ignored. This is the same format PacketLog writes.
"""

import logging
from dataclasses import dataclass
from datetime import datetime
from typing import Iterable, Iterator, List, Optional

from config import config
from processors.replay_scheduler import ReplayEntry
from protocol.frame_parser import FrameDecoder, Packet
from utils.hex_utils import HexParser

logger = logging.getLogger(__name__)

DIRECTIONS = ("RX", "TX")


class CaptureFormatError(ValueError):
    """キャプチャ行の書式エラー"""

    def __init__(self, message: str, line_no: int = 0):
        super().__init__(f"line {line_no}: {message}" if line_no else message)
        self.line_no = line_no


@dataclass(frozen=True)
class CaptureRecord:
    data: bytes
    timestamp: Optional[float] = None
    direction: Optional[str] = None
    line_no: int = 0


def _parse_timestamp(token: str) -> Optional[float]:
    bracketed = token.startswith("[") and token.endswith("]")
    text = token[1:-1] if bracketed else token
    if "T" in text:
        try:
            return datetime.fromisoformat(text).timestamp()
        except ValueError:
            return None
    if "." in text or bracketed:
        try:
            return float(text)
        except ValueError:
            return None
    return None


def parse_capture_line(line: str, line_no: int = 0) -> Optional[CaptureRecord]:
    """Parse one capture line; returns None for blank and comment lines."""
    text = line.split("#", 1)[0].strip()
    if not text:
        return None
    tokens = text.split()

    timestamp = _parse_timestamp(tokens[0])
    if timestamp is not None:
        tokens = tokens[1:]

    direction = None
    if tokens and tokens[0].rstrip(":").upper() in DIRECTIONS:
        direction = tokens[0].rstrip(":").upper()
        tokens = tokens[1:]

    if not tokens:
        raise CaptureFormatError("no data bytes", line_no)
    try:
        data = HexParser.parse_hex(" ".join(tokens))
    except ValueError as e:
        raise CaptureFormatError(f"invalid hex data: {e}", line_no) from e
    return CaptureRecord(data, timestamp, direction, line_no)


def read_capture(path: str) -> Iterator[CaptureRecord]:
    """Yield capture records in file order."""
    with open(path, "r", encoding="ascii", errors="replace") as f:
        for line_no, line in enumerate(f, start=1):
            record = parse_capture_line(line, line_no)
            if record is not None:
                yield record


def decode_records(records: Iterable[CaptureRecord], decoder: Optional[FrameDecoder] = None,
                   direction: Optional[str] = None) -> Iterator[tuple]:
    """
    キャプチャレコードをデコードして (Packet, timestamp) を順に返す

    フレームを完成させたレコードのタイムスタンプがパケットの時刻になる。
    FramingError はログに出して読み飛ばす。
    """
    decoder = decoder or FrameDecoder()
    for record in records:
        if direction is not None and record.direction not in (None, direction):
            continue
        for event in decoder.feed(record.data):
            if isinstance(event, Packet):
                yield event, record.timestamp
            else:
                logger.warning(f"line {record.line_no}: {event.kind}: {event}")
    for event in decoder.flush():
        logger.warning(f"end of capture: {event.kind}: {event}")


def load_replay_entries(records: Iterable[CaptureRecord], decoder: Optional[FrameDecoder] = None,
                        direction: Optional[str] = None,
                        default_interval_ms: Optional[float] = None) -> List[ReplayEntry]:
    """Decode a capture into ordered replay entries."""
    interval = config.REPLAY_DEFAULT_INTERVAL_MS if default_interval_ms is None else default_interval_ms
    entries: List[ReplayEntry] = []
    first_timestamp = None
    for packet, timestamp in decode_records(records, decoder, direction):
        previous = entries[-1].offset_ms if entries else None
        if timestamp is not None:
            if first_timestamp is None:
                first_timestamp = timestamp
            offset = (timestamp - first_timestamp) * 1000.0
            if previous is not None and offset < previous:
                logger.warning(f"Capture timestamp went backwards at offset {packet.offset}, clamping")
                offset = previous
        else:
            offset = 0.0 if previous is None else previous + interval
        entries.append(ReplayEntry(packet, offset))
    logger.info(f"Loaded {len(entries)} replay entries")
    return entries
