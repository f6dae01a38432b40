"""
Session tracking for decoded packets.

The tracker annotates each packet with its session epoch and role and
reports advisory observations (sequence gaps, unsolicited responses,
heartbeat timeouts). Observations never alter decoding.
"""

import enum
import logging
import time
from collections import deque
from dataclasses import dataclass, field
from typing import Callable, Deque, Dict, Iterable, List, Optional, Tuple

from config import config
from protocol.command_table import CommandTable, normalize_command_id
from protocol.constants import SEQUENCE_MODULUS
from protocol.frame_parser import Packet

logger = logging.getLogger(__name__)


class ObservationKind(str, enum.Enum):
    SEQUENCE_GAP = "sequence_gap"
    UNSOLICITED_RESPONSE = "unsolicited_response"
    HEARTBEAT_TIMEOUT = "heartbeat_timeout"


@dataclass(frozen=True)
class SessionObservation:
    """監視用の観測（情報のみ、デコードには影響しない）"""
    kind: ObservationKind
    epoch: int
    timestamp: float
    message: str
    details: Dict[str, object] = field(default_factory=dict, compare=False)


@dataclass
class SessionState:
    epoch: int = 0
    last_sequence: Optional[int] = None
    last_heartbeat_at: Optional[float] = None
    pending_challenge: Optional[bytes] = None


@dataclass(frozen=True)
class TrackedPacket:
    packet: Packet
    epoch: int
    role: str
    command_name: str
    timestamp: float
    observations: Tuple[SessionObservation, ...] = ()
    paired_challenge: Optional[bytes] = None


def _parse_commands(value: str) -> List[bytes]:
    return [normalize_command_id(part) for part in value.split(",") if part.strip()]


class SessionTracker:
    """
    セッション状態の追跡

    リセットコマンドで新しいエポックを開始し、シーケンス番号は
    同じエポック内でのみ比較する。
    """

    def __init__(self, command_table: Optional[CommandTable] = None,
                 reset_command=None, challenge_command=None, response_command=None,
                 heartbeat_commands: Optional[Iterable] = None,
                 heartbeat_timeout_s: Optional[float] = None,
                 challenge_token_size: Optional[int] = None,
                 response_size: Optional[int] = None,
                 clock: Callable[[], float] = time.monotonic,
                 history: Optional[int] = None):
        self.command_table = command_table if command_table is not None else CommandTable()
        self.reset_command = normalize_command_id(reset_command or config.RESET_COMMAND)
        self.challenge_command = normalize_command_id(challenge_command or config.AUTH_CHALLENGE_COMMAND)
        self.response_command = normalize_command_id(response_command or config.AUTH_RESPONSE_COMMAND)
        if heartbeat_commands is None:
            self.heartbeat_commands = set(_parse_commands(config.HEARTBEAT_COMMANDS))
        else:
            self.heartbeat_commands = {normalize_command_id(c) for c in heartbeat_commands}
        self.heartbeat_timeout_s = (
            config.HEARTBEAT_TIMEOUT_S if heartbeat_timeout_s is None else heartbeat_timeout_s
        )
        self.challenge_token_size = (
            config.CHALLENGE_TOKEN_SIZE if challenge_token_size is None else challenge_token_size
        )
        self.response_size = config.AUTH_RESPONSE_SIZE if response_size is None else response_size
        self.clock = clock

        self.state = SessionState()
        self.observations: Deque[SessionObservation] = deque(
            maxlen=history if history is not None else config.OBSERVATION_HISTORY
        )
        self.counts: Dict[str, int] = {kind.value: 0 for kind in ObservationKind}
        self._silence_reported = False

    def ingest(self, packet: Packet, timestamp: Optional[float] = None) -> TrackedPacket:
        """Annotate one packet; packets must be ingested in stream order."""
        now = self.clock() if timestamp is None else timestamp
        state = self.state
        command_id = bytes(packet.command_id)
        name = self.command_table.label(command_id)
        observations: List[SessionObservation] = []
        paired = None

        if packet.checksum_valid is False:
            # 破損パケットのシーケンスは信用できないので状態を更新しない
            logger.debug(f"Not tracking corrupt packet @{packet.offset} (cmd={packet.command_hex})")
            return TrackedPacket(packet, state.epoch, "corrupt", name, now)

        if command_id == self.reset_command:
            state.epoch += 1
            state.pending_challenge = None
            state.last_sequence = packet.sequence
            logger.info(f"Session reset: epoch {state.epoch} starts at sequence {packet.sequence}")
            return TrackedPacket(packet, state.epoch, "reset", name, now)

        gap = self._check_sequence(packet, now)
        if gap is not None:
            observations.append(gap)

        if command_id == self.challenge_command:
            role = "challenge"
            token = bytes(packet.payload[:self.challenge_token_size])
            if len(token) < self.challenge_token_size:
                logger.warning(
                    f"Challenge payload too short ({len(packet.payload)} < {self.challenge_token_size}), ignored"
                )
            else:
                if state.pending_challenge is not None:
                    logger.debug(f"Challenge {state.pending_challenge.hex()} replaced before a response arrived")
                state.pending_challenge = token
        elif command_id == self.response_command:
            role = "response"
            if self.response_size and len(packet.payload) != self.response_size:
                logger.warning(
                    f"Auth response payload is {len(packet.payload)} bytes, expected {self.response_size}"
                )
            if state.pending_challenge is not None:
                paired = state.pending_challenge
                state.pending_challenge = None
            else:
                observations.append(self._observe(
                    ObservationKind.UNSOLICITED_RESPONSE, now,
                    f"Auth response without pending challenge (seq={packet.sequence})",
                    sequence=packet.sequence, payload=bytes(packet.payload).hex(),
                ))
        elif command_id in self.heartbeat_commands:
            role = "heartbeat"
            timeout = self._check_heartbeat_gap(now)
            if timeout is not None:
                observations.append(timeout)
            state.last_heartbeat_at = now
            self._silence_reported = False
        else:
            role = "data"

        return TrackedPacket(packet, state.epoch, role, name, now, tuple(observations), paired)

    def check_heartbeat(self, now: Optional[float] = None) -> Optional[SessionObservation]:
        """Watchdog hook: report a silent link once per silence period."""
        now = self.clock() if now is None else now
        if self._silence_reported:
            return None
        observation = self._check_heartbeat_gap(now)
        if observation is not None:
            self._silence_reported = True
        return observation

    def _check_heartbeat_gap(self, now: float) -> Optional[SessionObservation]:
        last = self.state.last_heartbeat_at
        if last is None or self._silence_reported:
            return None
        elapsed = now - last
        if elapsed <= self.heartbeat_timeout_s:
            return None
        return self._observe(
            ObservationKind.HEARTBEAT_TIMEOUT, now,
            f"No heartbeat for {elapsed:.2f}s (threshold {self.heartbeat_timeout_s:.2f}s)",
            elapsed_s=round(elapsed, 3), threshold_s=self.heartbeat_timeout_s,
        )

    def _check_sequence(self, packet: Packet, now: float) -> Optional[SessionObservation]:
        state = self.state
        last = state.last_sequence
        state.last_sequence = packet.sequence
        if last is None:
            return None
        expected = (last + 1) % SEQUENCE_MODULUS
        # 連番、または据え置き（常に0を送る機器がある）は連続とみなす
        if packet.sequence in (last, expected):
            return None
        missing = (packet.sequence - expected) % SEQUENCE_MODULUS
        return self._observe(
            ObservationKind.SEQUENCE_GAP, now,
            f"Sequence gap in epoch {state.epoch}: expected {expected}, got {packet.sequence}",
            expected=expected, actual=packet.sequence, missing=missing,
        )

    def _observe(self, kind: ObservationKind, now: float, message: str, **details) -> SessionObservation:
        observation = SessionObservation(kind, self.state.epoch, now, message, details)
        self.observations.append(observation)
        self.counts[kind.value] += 1
        return observation
