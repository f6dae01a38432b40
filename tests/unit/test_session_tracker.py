import os
import sys

import pytest

sys.path.insert(0, os.path.join(os.path.dirname(__file__), '..', '..'))

from processors.session_tracker import ObservationKind, SessionTracker
from protocol.command_table import CommandTable
from protocol.checksum import ChecksumEngine
from protocol.frame_parser import FrameDecoder, Packet, build_frame

RESET_FRAME = bytes.fromhex("ff ff 0c 40 00 00 00 00 00 01 5d 1f 00 01 ca bb 9b")
TOKEN = bytes.fromhex("0123456789abcdef")


def decode(frame: bytes) -> Packet:
    (packet,) = FrameDecoder(checksum_engine=ChecksumEngine(active="sum8+crc16/arc")).feed(frame)
    return packet


def frame(command: str, payload: bytes = b"", sequence: int = 0) -> Packet:
    return decode(build_frame(bytes.fromhex(command), payload, sequence))


@pytest.fixture
def tracker():
    return SessionTracker(
        reset_command="0001", challenge_command="0011", response_command="0012",
        heartbeat_commands=["0005"], heartbeat_timeout_s=4.0,
        challenge_token_size=8, response_size=0, clock=lambda: 0.0,
    )


def kinds(tracked):
    return [observation.kind for observation in tracked.observations]


def test_reset_starts_new_epoch_and_clears_challenge(tracker):
    tracker.ingest(frame("0011", TOKEN, sequence=41), 0.0)
    assert tracker.state.pending_challenge == TOKEN

    reset = tracker.ingest(decode(RESET_FRAME), 1.0)
    assert reset.role == "reset"
    assert reset.epoch == 1
    assert tracker.state.pending_challenge is None
    assert tracker.state.last_sequence == 0

    # リセット前のシーケンス(41)は比較に使わない
    response = tracker.ingest(frame("0012", b"\x99", sequence=1), 2.0)
    assert response.epoch == 1
    assert kinds(response) == [ObservationKind.UNSOLICITED_RESPONSE]
    assert tracker.counts["sequence_gap"] == 0


def test_sequence_gap_reported(tracker):
    tracker.ingest(frame("0030", sequence=0), 0.0)
    tracker.ingest(frame("0030", sequence=1), 0.1)
    tracked = tracker.ingest(frame("0030", sequence=4), 0.2)
    assert kinds(tracked) == [ObservationKind.SEQUENCE_GAP]
    details = tracked.observations[0].details
    assert details == {"expected": 2, "actual": 4, "missing": 2}
    # ギャップの後は新しい値から再開
    assert kinds(tracker.ingest(frame("0030", sequence=5), 0.3)) == []


def test_unchanged_and_wrapping_sequences_are_continuous(tracker):
    for sequence in (7, 7, 7):
        assert kinds(tracker.ingest(frame("0030", sequence=sequence), 0.0)) == []
    tracker.ingest(frame("0030", sequence=0xFFFFFFFF), 0.0)
    assert kinds(tracker.ingest(frame("0030", sequence=0), 0.0)) == []


def test_challenge_response_pairing(tracker):
    challenge = tracker.ingest(frame("0011", TOKEN + b"\xee", sequence=1), 0.0)
    assert challenge.role == "challenge"
    assert tracker.state.pending_challenge == TOKEN

    response = tracker.ingest(frame("0012", b"\x01\x02", sequence=2), 0.1)
    assert response.role == "response"
    assert response.paired_challenge == TOKEN
    assert response.observations == ()
    assert tracker.state.pending_challenge is None

    again = tracker.ingest(frame("0012", b"\x01\x02", sequence=3), 0.2)
    assert again.paired_challenge is None
    assert kinds(again) == [ObservationKind.UNSOLICITED_RESPONSE]


def test_short_challenge_is_ignored(tracker):
    tracker.ingest(frame("0011", b"\x01\x02", sequence=1), 0.0)
    assert tracker.state.pending_challenge is None


def test_corrupt_packet_does_not_change_state(tracker):
    tracker.ingest(frame("0030", sequence=10), 0.0)
    good = build_frame(b"\x00\x01", sequence=99)
    (corrupt,) = FrameDecoder(strict=False).feed(good[:-1] + bytes([good[-1] ^ 0xFF]))
    assert corrupt.checksum_valid is False

    tracked = tracker.ingest(corrupt, 0.1)
    assert tracked.role == "corrupt"
    assert tracker.state.epoch == 0
    assert tracker.state.last_sequence == 10


def test_heartbeat_gap_on_ingest(tracker):
    assert tracker.ingest(frame("0005", sequence=0), 0.0).role == "heartbeat"
    assert kinds(tracker.ingest(frame("0005", sequence=1), 3.5)) == []
    late = tracker.ingest(frame("0005", sequence=2), 9.0)
    assert kinds(late) == [ObservationKind.HEARTBEAT_TIMEOUT]
    assert late.observations[0].details["elapsed_s"] == 5.5


def test_check_heartbeat_reports_once_per_silence(tracker):
    assert tracker.check_heartbeat(100.0) is None  # まだハートビートなし
    tracker.ingest(frame("0005", sequence=0), 0.0)
    assert tracker.check_heartbeat(3.0) is None
    observation = tracker.check_heartbeat(5.0)
    assert observation.kind is ObservationKind.HEARTBEAT_TIMEOUT
    assert tracker.check_heartbeat(6.0) is None

    # 復帰したハートビートでは二重に報告しない
    assert kinds(tracker.ingest(frame("0005", sequence=1), 7.0)) == []
    assert tracker.check_heartbeat(12.0) is not None
    assert tracker.counts["heartbeat_timeout"] == 2


def test_observation_history_is_bounded():
    tracker = SessionTracker(history=2, clock=lambda: 0.0)
    tracker.ingest(frame("0030", sequence=0))
    for sequence in (5, 10, 15):
        tracker.ingest(frame("0030", sequence=sequence))
    assert len(tracker.observations) == 2
    assert tracker.counts["sequence_gap"] == 3


def test_independent_trackers_share_no_state():
    first = SessionTracker(clock=lambda: 0.0)
    second = SessionTracker(clock=lambda: 0.0)
    first.ingest(decode(RESET_FRAME))
    assert first.state.epoch == 1
    assert second.state.epoch == 0


def test_empty_command_table_is_kept():
    table = CommandTable({})
    tracker = SessionTracker(command_table=table)
    assert tracker.command_table is table
    tracked = tracker.ingest(frame("0005"), 0.0)
    assert tracked.command_name == "UNKNOWN(0005)"
