import os
import sys

import pytest

# テストファイルから見た app.py への正しいパス
sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from protocol.byte_cursor import ByteCursor
from protocol.checksum import ChecksumEngine
from protocol.command_table import CommandTable
from protocol.errors import (BadHeader, BufferOverflow, ChecksumMismatch,
                             IncompleteFrame, LengthOutOfRange)
from protocol.frame_parser import DecoderState, FrameDecoder, Packet, build_frame

# 実機キャプチャ
ACK_FRAME = bytes.fromhex("ffff0840000000000005" "4d6180")
RESET_FRAME = bytes.fromhex("ffff0c40000000000001" "5d1f0001" "cabb9b")


def packets(events):
    return [event for event in events if isinstance(event, Packet)]


def errors(events):
    return [event for event in events if not isinstance(event, Packet)]


def make_decoder(**kwargs):
    kwargs.setdefault("checksum_engine", ChecksumEngine(active="sum8+crc16/arc"))
    kwargs.setdefault("strict", False)
    return FrameDecoder(**kwargs)


def test_captured_frames_literal():
    assert ACK_FRAME == bytes.fromhex("ff ff 08 40 00 00 00 00 00 05 4d 61 80")
    assert len(RESET_FRAME) == 17


def test_decode_ack_frame_fields():
    events = make_decoder().feed(ACK_FRAME)
    assert len(events) == 1
    packet = events[0]
    assert packet.header == b"\xff\xff"
    assert packet.length == 0x08
    assert packet.frame_type == 0x40
    assert packet.sequence == 0
    assert packet.command_id == b"\x00\x05"
    assert packet.payload == b""
    assert packet.checksum == bytes.fromhex("4d6180")
    assert packet.checksum_valid is True
    assert packet.offset == 0
    assert packet.to_bytes() == ACK_FRAME


def test_decode_reset_frame_fields():
    (packet,) = make_decoder().feed(RESET_FRAME)
    assert packet.length == 0x0c
    assert packet.command_id == b"\x00\x01"
    assert packet.payload == bytes.fromhex("5d1f0001")
    assert packet.checksum == bytes.fromhex("cabb9b")
    assert packet.checksum_valid is True
    assert packet.to_bytes() == RESET_FRAME


def test_build_frame_matches_captures():
    assert build_frame(b"\x00\x05") == ACK_FRAME
    assert build_frame(b"\x00\x01", bytes.fromhex("5d1f0001")) == RESET_FRAME


def test_build_frame_rejects_bad_sequence():
    with pytest.raises(ValueError):
        build_frame(b"\x00\x05", sequence=1 << 32)


def test_back_to_back_frames_offsets():
    events = make_decoder().feed(ACK_FRAME + RESET_FRAME)
    assert [p.command_id for p in events] == [b"\x00\x05", b"\x00\x01"]
    assert [p.offset for p in events] == [0, len(ACK_FRAME)]


def test_noise_before_header_reports_one_bad_header():
    events = make_decoder().feed(b"\x00\x13\x37" + ACK_FRAME)
    assert len(events) == 2
    assert isinstance(events[0], BadHeader)
    assert events[0].offset == 0
    assert events[0].data == b"\x00\x13\x37"
    assert isinstance(events[1], Packet)
    assert events[1].offset == 3


def test_spurious_marker_before_frame():
    """FF FF FF FF 08 ...: 余分なマーカーは1つの BadHeader で読み飛ばす"""
    events = make_decoder().feed(b"\xff\xff" + ACK_FRAME)
    assert len(errors(events)) <= 1
    assert packets(events)[0].to_bytes() == ACK_FRAME


def test_spurious_marker_with_plausible_length():
    """FF FF 20 のあとに本物のフレームが続いても、偽フレームに飲み込まれない"""
    decoder = make_decoder()
    events = decoder.feed(b"\xff\xff\x20" + ACK_FRAME * 3)
    assert [type(event) for event in events] == [BadHeader, Packet, Packet, Packet]
    assert events[0].data == b"\xff\xff\x20"
    assert [p.offset for p in packets(events)] == [3, 16, 29]
    assert all(p.checksum_valid for p in packets(events))
    assert decoder.stats["checksum_failures"] == 0


def test_spurious_marker_not_adjacent_to_frame():
    stream = b"\xff\xff\x09\x00" + ACK_FRAME * 3
    events = make_decoder().feed(stream)
    assert [type(event) for event in events] == [BadHeader, Packet, Packet, Packet]
    assert events[0].data == b"\xff\xff\x09\x00"

    decoder = make_decoder()
    byte_by_byte = []
    for i in range(len(stream)):
        byte_by_byte.extend(decoder.feed(stream[i:i + 1]))
    assert byte_by_byte == events


def test_flush_recovers_frame_inside_truncated_one():
    decoder = make_decoder()
    assert decoder.feed(b"\xff\xff\x20" + ACK_FRAME) == []
    events = decoder.flush()
    assert [type(event) for event in events] == [IncompleteFrame, Packet]
    assert events[0].data == b"\xff\xff\x20"
    assert events[1].to_bytes() == ACK_FRAME
    assert decoder.pending == 0


def test_injected_cursor_and_table_are_kept():
    cursor = ByteCursor(high_water_mark=64)
    table = CommandTable({})
    decoder = make_decoder(cursor=cursor, command_table=table)
    assert decoder.cursor is cursor
    assert decoder.command_table is table
    (packet,) = decoder.feed(ACK_FRAME)
    assert packet.command_id == b"\x00\x05"


def test_length_out_of_range_resyncs():
    decoder = make_decoder()
    events = decoder.feed(b"\xff\xff\x03" + RESET_FRAME)
    assert isinstance(events[0], LengthOutOfRange)
    assert events[0].length == 3
    # 再同期直後のノイズは報告しない
    assert len(events) == 2
    assert events[1].to_bytes() == RESET_FRAME
    assert decoder.stats["errors"] == {"length_out_of_range": 1}


def test_frame_right_after_bad_length_is_kept():
    # "ff ff 03" の直後に本物のフレーム
    events = make_decoder().feed(b"\xff\xff\x03" + ACK_FRAME + ACK_FRAME)
    assert [type(event) for event in events] == [LengthOutOfRange, Packet, Packet]
    assert events[1].offset == 3


def test_non_strict_mismatch_emits_unverified_packet():
    corrupted = ACK_FRAME[:-1] + b"\x81"
    decoder = make_decoder()
    (packet,) = decoder.feed(corrupted)
    assert packet.checksum_valid is False
    assert decoder.stats["checksum_failures"] == 1


def test_strict_mismatch_resyncs_to_next_frame():
    corrupted = ACK_FRAME[:-1] + b"\x81"
    decoder = make_decoder(strict=True)
    events = decoder.feed(corrupted + RESET_FRAME)
    assert isinstance(events[0], ChecksumMismatch)
    assert len(events) == 2
    assert events[1].to_bytes() == RESET_FRAME
    assert events[1].checksum_valid is True


def test_structural_validation_without_active_algorithm():
    decoder = make_decoder(checksum_engine=ChecksumEngine(active=None))
    (packet,) = decoder.feed(ACK_FRAME[:-1] + b"\x00")
    assert packet.checksum_valid is None
    assert decoder.stats["unverified_frames"] == 1


def test_partial_frame_waits_for_more_bytes():
    decoder = make_decoder()
    assert decoder.feed(RESET_FRAME[:9]) == []
    assert decoder.state is DecoderState.READING_BODY
    assert decoder.pending == 9
    (packet,) = decoder.feed(RESET_FRAME[9:])
    assert packet.to_bytes() == RESET_FRAME
    assert decoder.pending == 0


def test_flush_reports_incomplete_frame():
    decoder = make_decoder()
    decoder.feed(RESET_FRAME[:-2])
    events = decoder.flush()
    assert len(events) == 1
    assert isinstance(events[0], IncompleteFrame)
    assert events[0].data == RESET_FRAME[:-2]
    assert decoder.pending == 0
    assert decoder.state is DecoderState.SEEKING_HEADER


def test_flush_reports_trailing_noise():
    decoder = make_decoder()
    events = decoder.feed(ACK_FRAME + b"\x01\x02\x03")
    assert len(events) == 1 and isinstance(events[0], Packet)
    events = decoder.flush()
    assert len(events) == 1
    assert isinstance(events[0], BadHeader)
    assert events[0].offset == len(ACK_FRAME)
    assert events[0].data == b"\x01\x02\x03"


def test_buffer_overflow_inside_frame():
    decoder = make_decoder(cursor=ByteCursor(high_water_mark=32))
    events = decoder.feed(b"\xff\xff\xfe" + b"\x00" * 40)
    assert [type(event) for event in events] == [BufferOverflow]
    assert decoder.flush() == []
    assert decoder.feed(ACK_FRAME)[0].to_bytes() == ACK_FRAME


def test_chunking_invariance():
    stream = b"\x00\xff" + ACK_FRAME + b"\xff\xff\x02" + RESET_FRAME + b"\x10\x20" + ACK_FRAME
    whole = make_decoder().feed(stream)
    decoder = make_decoder()
    byte_by_byte = []
    for i in range(len(stream)):
        byte_by_byte.extend(decoder.feed(stream[i:i + 1]))
    assert byte_by_byte == whole

    decoder = make_decoder()
    chunked = []
    for start in range(0, len(stream), 5):
        chunked.extend(decoder.feed(stream[start:start + 5]))
    assert chunked == whole
    assert len(packets(whole)) == 3


def test_fresh_decoders_are_idempotent():
    stream = RESET_FRAME + b"\x99" + ACK_FRAME
    assert make_decoder().feed(stream) == make_decoder().feed(stream)


def test_reset_clears_state_and_stats():
    decoder = make_decoder()
    decoder.feed(b"\x00" + RESET_FRAME[:5])
    decoder.reset()
    assert decoder.pending == 0
    assert decoder.stats["frames"] == 0
    position = decoder.cursor.position
    (packet,) = decoder.feed(ACK_FRAME)
    assert packet.offset == position


def test_invalid_length_range_rejected():
    with pytest.raises(ValueError):
        FrameDecoder(min_length=6)
    with pytest.raises(ValueError):
        FrameDecoder(min_length=20, max_length=10)


def test_length_excludes_length_byte_variant():
    frame = build_frame(b"\x00\x05", sequence=7, length_includes_length_byte=False)
    assert frame[2] == 0x07
    decoder = make_decoder(length_includes_length_byte=False, min_length=6)
    (packet,) = decoder.feed(frame)
    assert packet.sequence == 7
    assert packet.checksum_valid is True
