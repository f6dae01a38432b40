import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from storage.capture_file import (CaptureFormatError, CaptureRecord, decode_records,
                                  load_replay_entries, parse_capture_line, read_capture)
from storage.packet_log import PacketLog

ACK_HEX = "ff ff 08 40 00 00 00 00 00 05 4d 61 80"
RESET_HEX = "ffff0c400000000000015d1f0001cabb9b"


def test_parse_plain_hex_line():
    record = parse_capture_line(ACK_HEX, 3)
    assert record.data == bytes.fromhex(ACK_HEX)
    assert record.timestamp is None
    assert record.direction is None
    assert record.line_no == 3


def test_parse_timestamp_and_direction():
    record = parse_capture_line(f"[1700000000.250] RX {RESET_HEX}")
    assert record.timestamp == pytest.approx(1700000000.25)
    assert record.direction == "RX"
    assert record.data == bytes.fromhex(RESET_HEX)

    record = parse_capture_line(f"12.5 tx: {ACK_HEX}  # sent by controller")
    assert record.timestamp == 12.5
    assert record.direction == "TX"


def test_parse_iso_timestamp():
    record = parse_capture_line(f"2024-05-01T10:00:00.500 {ACK_HEX}")
    later = parse_capture_line(f"2024-05-01T10:00:01.000 {ACK_HEX}")
    assert later.timestamp - record.timestamp == pytest.approx(0.5)


def test_integer_first_token_is_data_not_timestamp():
    record = parse_capture_line("12 34")
    assert record.data == b"\x12\x34"
    assert record.timestamp is None


def test_comments_and_blank_lines():
    assert parse_capture_line("") is None
    assert parse_capture_line("   ") is None
    assert parse_capture_line("# header comment") is None


def test_malformed_lines():
    with pytest.raises(CaptureFormatError) as exc_info:
        parse_capture_line("1.0 RX zz", 7)
    assert exc_info.value.line_no == 7
    assert "line 7" in str(exc_info.value)
    with pytest.raises(CaptureFormatError):
        parse_capture_line("1.0 RX")
    with pytest.raises(ValueError):
        parse_capture_line("abc")


def test_read_capture(tmp_path):
    path = tmp_path / "capture.log"
    path.write_text(f"# capture\n0.000 RX {ACK_HEX}\n\n0.150 RX {RESET_HEX}\n")
    records = list(read_capture(str(path)))
    assert [r.line_no for r in records] == [2, 4]
    assert records[1].timestamp == 0.15


def test_decode_records_split_across_lines():
    frame = bytes.fromhex(RESET_HEX)
    records = [
        CaptureRecord(frame[:6], 1.0, "RX", 1),
        CaptureRecord(frame[6:], 1.2, "RX", 2),
        CaptureRecord(bytes.fromhex(ACK_HEX), 1.5, "TX", 3),
    ]
    decoded = list(decode_records(records))
    assert [packet.command_id for packet, _ in decoded] == [b"\x00\x01", b"\x00\x05"]
    # フレームを完成させた行の時刻
    assert decoded[0][1] == 1.2

    rx_only = list(decode_records(records, direction="RX"))
    assert len(rx_only) == 1


def test_load_replay_entries_with_timestamps():
    records = [
        CaptureRecord(bytes.fromhex(ACK_HEX), 10.0),
        CaptureRecord(bytes.fromhex(RESET_HEX), 10.1),
        CaptureRecord(bytes.fromhex(ACK_HEX), 10.05),  # 逆行
        CaptureRecord(bytes.fromhex(ACK_HEX), 10.25),
    ]
    entries = load_replay_entries(records)
    assert [e.offset_ms for e in entries] == pytest.approx([0.0, 100.0, 100.0, 250.0])


def test_load_replay_entries_without_timestamps():
    records = [CaptureRecord(bytes.fromhex(ACK_HEX)) for _ in range(3)]
    entries = load_replay_entries(records, default_interval_ms=40)
    assert [e.offset_ms for e in entries] == [0.0, 40.0, 80.0]
    assert entries[0].raw == bytes.fromhex(ACK_HEX)


def test_packet_log_round_trip(tmp_path):
    path = str(tmp_path / "traffic.log")
    with PacketLog(path) as log:
        log.write(bytes.fromhex(ACK_HEX), "RX", timestamp=100.5)
        log.write(b"", "RX")
        log.write(bytes.fromhex(RESET_HEX), "TX", timestamp=100.75)
        assert log.lines_written == 2

    records = list(read_capture(path))
    assert [(r.timestamp, r.direction) for r in records] == [(100.5, "RX"), (100.75, "TX")]
    assert records[1].data == bytes.fromhex(RESET_HEX)


def test_packet_log_closed(tmp_path):
    log = PacketLog(str(tmp_path / "traffic.log"))
    log.close()
    with pytest.raises(ValueError):
        log.write(b"\x01")
