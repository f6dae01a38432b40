"""Storage module for captures and observations."""

from .capture_file import (
    CaptureFormatError, CaptureRecord, decode_records, load_replay_entries,
    parse_capture_line, read_capture
)
from .packet_log import PacketLog

__all__ = [
    "CaptureFormatError", "CaptureRecord", "decode_records", "load_replay_entries",
    "parse_capture_line", "read_capture", "PacketLog"
]
