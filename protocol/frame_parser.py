"""Frame decoding: boundary detection, validation and resynchronization."""

import enum
import logging
from dataclasses import dataclass
from typing import List, Optional, Union

from config import config
from .byte_cursor import ByteCursor
from .checksum import DEFAULT_ALGORITHM, ChecksumAlgorithm, ChecksumEngine
from .command_table import CommandTable
from .constants import (
    CHECKSUM_LENGTH, COMMAND_OFFSET, FIXED_BODY_LENGTH, FRAME_TYPE_COMMAND,
    FRAME_TYPE_OFFSET, HEADER_MARKER, LENGTH_OFFSET, SEQUENCE_MODULUS,
    SEQUENCE_NUM_LENGTH, SEQUENCE_OFFSET
)
from .errors import (
    BadHeader, BufferOverflow, ChecksumMismatch, FramingError, IncompleteFrame,
    LengthOutOfRange
)

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class Packet:
    """検証済みパケット（デコーダだけが生成し、以後変更されない）"""
    header: bytes
    length: int
    frame_type: int
    sequence: int
    command_id: bytes
    payload: bytes
    checksum: bytes
    checksum_valid: Optional[bool]
    offset: int = 0

    @property
    def sequence_bytes(self) -> bytes:
        return self.sequence.to_bytes(SEQUENCE_NUM_LENGTH, "big")

    @property
    def command_hex(self) -> str:
        return self.command_id.hex()

    @property
    def checksum_range(self) -> bytes:
        """Bytes covered by the checksum (length byte through end of payload)."""
        return (
            bytes([self.length, self.frame_type]) + self.sequence_bytes
            + self.command_id + self.payload
        )

    def to_bytes(self) -> bytes:
        return self.header + self.checksum_range + self.checksum

    def hex(self) -> str:
        return self.to_bytes().hex(" ")


DecodeEvent = Union[Packet, FramingError]


class DecoderState(enum.Enum):
    SEEKING_HEADER = "seeking_header"
    READING_LENGTH = "reading_length"
    READING_BODY = "reading_body"
    VALIDATING = "validating"
    EMITTING = "emitting"


def frame_size(length: int, length_includes_length_byte: bool = True) -> int:
    """Total bytes on the wire for a declared length."""
    body = length if length_includes_length_byte else length + 1
    return len(HEADER_MARKER) + body + CHECKSUM_LENGTH


def build_frame(command_id: bytes, payload: bytes = b"", sequence: int = 0,
                frame_type: int = FRAME_TYPE_COMMAND,
                algorithm: Optional[ChecksumAlgorithm] = None,
                length_includes_length_byte: Optional[bool] = None) -> bytes:
    """Encode an outgoing frame."""
    if length_includes_length_byte is None:
        length_includes_length_byte = config.LENGTH_INCLUDES_LENGTH_BYTE
    if not 0 <= sequence < SEQUENCE_MODULUS:
        raise ValueError(f"Sequence out of range: {sequence}")
    tail = bytes([frame_type]) + sequence.to_bytes(SEQUENCE_NUM_LENGTH, "big") + bytes(command_id) + bytes(payload)
    length = len(tail) + 1 if length_includes_length_byte else len(tail)
    if length > 0xFF:
        raise ValueError(f"Frame too long: declared length {length} exceeds one byte")
    checksum_range = bytes([length]) + tail
    checksum = (algorithm or DEFAULT_ALGORITHM).compute(checksum_range)
    return HEADER_MARKER + checksum_range + checksum


class FrameDecoder:
    """
    再開可能なフレームデコーダ

    feed() に届いたバイトを渡すと、その時点で確定した Packet と
    FramingError を返す。1バイトずつの入力でも同じ結果になる。
    リンクごとに独立したインスタンスを使うこと（共有状態なし）。
    """

    def __init__(self, checksum_engine: Optional[ChecksumEngine] = None,
                 command_table: Optional[CommandTable] = None,
                 cursor: Optional[ByteCursor] = None,
                 strict: Optional[bool] = None,
                 min_length: Optional[int] = None,
                 max_length: Optional[int] = None,
                 length_includes_length_byte: Optional[bool] = None):
        self.checksum_engine = checksum_engine if checksum_engine is not None else ChecksumEngine()
        self.command_table = command_table if command_table is not None else CommandTable()
        self.cursor = cursor if cursor is not None else ByteCursor()
        self.strict = config.STRICT_CHECKSUM if strict is None else strict
        self.min_length = config.MIN_FRAME_LENGTH if min_length is None else min_length
        self.max_length = config.MAX_FRAME_LENGTH if max_length is None else max_length
        self.length_includes_length_byte = (
            config.LENGTH_INCLUDES_LENGTH_BYTE if length_includes_length_byte is None
            else length_includes_length_byte
        )

        # commandId は最低1バイト必要
        overhead = FIXED_BODY_LENGTH if self.length_includes_length_byte else FIXED_BODY_LENGTH - 1
        if self.min_length < overhead + 1:
            raise ValueError(f"min_length must be at least {overhead + 1}, got {self.min_length}")
        if self.max_length > 0xFF or self.max_length < self.min_length:
            raise ValueError(f"Invalid length range [{self.min_length}, {self.max_length}]")
        if self.cursor.high_water_mark < frame_size(self.max_length, self.length_includes_length_byte):
            logger.warning(
                f"Buffer high-water mark {self.cursor.high_water_mark} is smaller than the largest "
                f"frame ({frame_size(self.max_length, self.length_includes_length_byte)} bytes)"
            )

        self.state = DecoderState.SEEKING_HEADER
        self._length: Optional[int] = None
        self._frame: Optional[bytes] = None
        self._checksum_valid: Optional[bool] = None
        self._noise = 0
        self._noise_offset = 0
        self._noise_sample = bytearray()
        self._after_resync = False
        self._flushing = False
        self.stats = self._new_stats()

    @staticmethod
    def _new_stats() -> dict:
        return {
            "frames": 0,
            "checksum_failures": 0,
            "unverified_frames": 0,
            "discarded_bytes": 0,
            "errors": {},
        }

    @property
    def pending(self) -> int:
        """Bytes buffered but not yet decoded."""
        return len(self.cursor)

    def reset(self) -> None:
        self.cursor.clear()
        self.state = DecoderState.SEEKING_HEADER
        self._length = None
        self._frame = None
        self._checksum_valid = None
        self._noise = 0
        self._noise_sample.clear()
        self._after_resync = False
        self.stats = self._new_stats()

    def feed(self, data: bytes) -> List[DecodeEvent]:
        """Append newly arrived bytes and decode as far as possible."""
        events: List[DecodeEvent] = []
        position = 0
        while position < len(data):
            space = self.cursor.free_space
            if space == 0:
                events.append(self._overflow())
                continue
            chunk = data[position:position + space]
            self.cursor.append(chunk)
            position += len(chunk)
            events.extend(self._advance())
        return events

    def flush(self) -> List[DecodeEvent]:
        """End of stream: report whatever is still buffered and empty the cursor."""
        events: List[DecodeEvent] = []
        self._flushing = True
        try:
            # 保留中の判定を確定し、途切れたフレーム内の正しいフレームを救出する
            if self.state is DecoderState.VALIDATING:
                events.extend(self._advance())
            while self.state is DecoderState.READING_BODY:
                embedded = self._find_embedded_frame(len(self.cursor))
                if not embedded:
                    break
                events.append(self._error(IncompleteFrame(
                    f"Frame cut short by a header marker after {embedded} bytes",
                    offset=self.cursor.position,
                    data=self.cursor.peek(embedded),
                )))
                self.cursor.consume(embedded)
                self.stats["discarded_bytes"] += embedded
                self._length = None
                self.state = DecoderState.SEEKING_HEADER
                events.extend(self._advance())
        finally:
            self._flushing = False

        tail = len(events)
        if self.state is DecoderState.SEEKING_HEADER:
            if len(self.cursor):
                self._skip_noise(len(self.cursor))
        else:
            remainder = self.cursor.peek(len(self.cursor))
            events.append(self._error(IncompleteFrame(
                f"Stream ended inside a frame ({len(remainder)} bytes buffered)",
                offset=self.cursor.position,
                data=remainder,
            )))
            self.stats["discarded_bytes"] += len(remainder)
            self.cursor.clear()
        pending_noise = self._take_noise()
        if pending_noise is not None:
            events.insert(tail, pending_noise)
        self.state = DecoderState.SEEKING_HEADER
        self._length = None
        self._frame = None
        self._after_resync = False
        return events

    def _advance(self) -> List[DecodeEvent]:
        events: List[DecodeEvent] = []
        while True:
            if self.state is DecoderState.SEEKING_HEADER:
                if not self._seek_header():
                    return events
            elif self.state is DecoderState.READING_LENGTH:
                if not self._read_length(events):
                    return events
            elif self.state is DecoderState.READING_BODY:
                if len(self.cursor) < frame_size(self._length, self.length_includes_length_byte):
                    return events
                self.state = DecoderState.VALIDATING
            elif self.state is DecoderState.VALIDATING:
                if not self._validate(events):
                    return events
            elif self.state is DecoderState.EMITTING:
                events.append(self._emit())

    def _seek_header(self) -> bool:
        index = self.cursor.find(HEADER_MARKER)
        if index == -1:
            # マーカーの一部かもしれないので末尾を残す
            keep = len(HEADER_MARKER) - 1
            if len(self.cursor) > keep:
                self._skip_noise(len(self.cursor) - keep)
            return False
        if index > 0:
            self._skip_noise(index)
        self.state = DecoderState.READING_LENGTH
        return True

    def _read_length(self, events: List[DecodeEvent]) -> bool:
        if len(self.cursor) < LENGTH_OFFSET + 1:
            return False
        length = self.cursor.byte_at(LENGTH_OFFSET)
        if self.min_length <= length <= self.max_length:
            pending_noise = self._take_noise()
            if pending_noise is not None:
                events.append(pending_noise)
            self._after_resync = False
            self._length = length
            self.state = DecoderState.READING_BODY
            return True

        if self.cursor.peek(len(HEADER_MARKER), 1, short_ok=True) == HEADER_MARKER:
            # FF FF FF ...: 本物のマーカーは1バイト後ろから始まる
            self._skip_noise(1)
            return True

        pending_noise = self._take_noise()
        if pending_noise is not None:
            events.append(pending_noise)
        events.append(self._resync(LengthOutOfRange(
            f"Declared length {length} outside [{self.min_length}, {self.max_length}]",
            offset=self.cursor.position,
            data=self.cursor.peek(LENGTH_OFFSET + 1),
            length=length,
        )))
        return True

    def _validate(self, events: List[DecodeEvent]) -> bool:
        """False while waiting for bytes needed to decide."""
        size = frame_size(self._length, self.length_includes_length_byte)
        frame = self.cursor.peek(size)
        checksum_range = frame[len(HEADER_MARKER):-CHECKSUM_LENGTH]
        checksum = frame[-CHECKSUM_LENGTH:]
        valid = self.checksum_engine.validate(checksum_range, checksum)

        if valid is False:
            if self.strict:
                self.stats["checksum_failures"] += 1
                events.append(self._resync(ChecksumMismatch(
                    f"Checksum mismatch under {self.checksum_engine.active_name}: "
                    f"got {checksum.hex()}",
                    offset=self.cursor.position,
                    data=frame,
                )))
                return True
            embedded = self._find_embedded_frame(size)
            if embedded is None:
                return False
            if embedded:
                # 偽マーカー: 内側に正しいフレームがあるのでそこまでをノイズとして捨てる
                logger.debug(f"Spurious header at offset {self.cursor.position}, valid frame {embedded} bytes later")
                self._length = None
                self._skip_noise(embedded)
                self.state = DecoderState.SEEKING_HEADER
                return True
            self.stats["checksum_failures"] += 1
            logger.debug(f"Checksum mismatch at offset {self.cursor.position}, emitting as unverified sample")
        elif valid is None:
            self.stats["unverified_frames"] += 1

        self._frame = frame
        self._checksum_valid = valid
        self.state = DecoderState.EMITTING
        return True

    def _find_embedded_frame(self, limit: int) -> Optional[int]:
        """
        先頭 limit バイト内で始まり、チェックサムが一致するフレームの位置

        見つからなければ 0。判定に必要なバイトが未着なら None
        （flush 中は未着の候補を飛ばす）。
        """
        if self.checksum_engine.active is None:
            return 0
        index = self.cursor.find(HEADER_MARKER, 1)
        while 0 < index < limit:
            if index + LENGTH_OFFSET >= len(self.cursor):
                if not self._flushing:
                    return None
                break
            length = self.cursor.byte_at(index + LENGTH_OFFSET)
            if self.min_length <= length <= self.max_length:
                size = frame_size(length, self.length_includes_length_byte)
                if index + size <= len(self.cursor):
                    candidate = self.cursor.peek(size, index)
                    if self.checksum_engine.validate(
                            candidate[len(HEADER_MARKER):-CHECKSUM_LENGTH], candidate[-CHECKSUM_LENGTH:]):
                        return index
                elif not self._flushing:
                    return None
            index = self.cursor.find(HEADER_MARKER, index + 1)
        return 0

    def _emit(self) -> Packet:
        frame = self._frame
        rest = frame[COMMAND_OFFSET:-CHECKSUM_LENGTH]
        command_size = self.command_table.resolve(rest)
        packet = Packet(
            header=frame[:len(HEADER_MARKER)],
            length=frame[LENGTH_OFFSET],
            frame_type=frame[FRAME_TYPE_OFFSET],
            sequence=int.from_bytes(frame[SEQUENCE_OFFSET:COMMAND_OFFSET], "big"),
            command_id=rest[:command_size],
            payload=rest[command_size:],
            checksum=frame[-CHECKSUM_LENGTH:],
            checksum_valid=self._checksum_valid,
            offset=self.cursor.position,
        )
        self.cursor.consume(len(frame))
        self.stats["frames"] += 1
        self._frame = None
        self._length = None
        self.state = DecoderState.SEEKING_HEADER

        if config.DEBUG_FRAME_PARSING:
            logger.debug(
                f"Decoded frame @{packet.offset}: cmd={packet.command_hex} seq={packet.sequence} "
                f"len={packet.length} valid={packet.checksum_valid}"
            )
        return packet

    def _resync(self, error: FramingError) -> FramingError:
        """Drop only the header bytes, never past a marker that starts inside them."""
        skip = len(HEADER_MARKER)
        for shift in range(1, len(HEADER_MARKER)):
            if self.cursor.peek(len(HEADER_MARKER), shift, short_ok=True) == HEADER_MARKER:
                skip = shift
                break
        self.cursor.consume(skip)
        self.stats["discarded_bytes"] += skip
        self._length = None
        self._frame = None
        self._after_resync = True
        self.state = DecoderState.SEEKING_HEADER
        return self._error(error)

    def _overflow(self) -> FramingError:
        error = BufferOverflow(
            f"Buffer full ({len(self.cursor)} bytes) while {self.state.value}",
            offset=self.cursor.position,
            data=self.cursor.peek(16, short_ok=True),
        )
        if self.state is DecoderState.SEEKING_HEADER:
            self._skip_noise(len(self.cursor))
            return self._error(error)
        return self._resync(error)

    def _skip_noise(self, count: int) -> None:
        if self._noise == 0:
            self._noise_offset = self.cursor.position
        if len(self._noise_sample) < 16:
            self._noise_sample.extend(self.cursor.peek(min(count, 16 - len(self._noise_sample))))
        self.cursor.consume(count)
        self._noise += count
        self.stats["discarded_bytes"] += count

    def _take_noise(self) -> Optional[FramingError]:
        """Pending noise run as one BadHeader (silent right after a resync)."""
        if self._noise == 0:
            return None
        count, offset, sample = self._noise, self._noise_offset, bytes(self._noise_sample)
        self._noise = 0
        self._noise_sample.clear()
        if self._after_resync:
            logger.debug(f"Skipped {count} bytes while resynchronizing at offset {offset}")
            return None
        return self._error(BadHeader(
            f"Skipped {count} bytes before header marker",
            offset=offset,
            data=sample,
        ))

    def _error(self, error: FramingError) -> FramingError:
        errors = self.stats["errors"]
        errors[error.kind] = errors.get(error.kind, 0) + 1
        return error
