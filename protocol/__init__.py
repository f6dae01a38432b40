"""Protocol module for frame processing."""

from .constants import (
    HEADER_MARKER, LENGTH_FIELD_BYTES, FRAME_TYPE_LENGTH, SEQUENCE_NUM_LENGTH,
    CHECKSUM_LENGTH, FRAME_TYPE_COMMAND, DEFAULT_COMMAND_TABLE
)
from .errors import (
    FramingError, IncompleteFrame, InsufficientData, BadHeader, ChecksumMismatch,
    LengthOutOfRange, BufferOverflow, ChecksumDiscoveryError, NoCandidateMatches
)
from .byte_cursor import ByteCursor
from .checksum import (
    ChecksumAlgorithm, ChecksumEngine, DiscoveryResult, DEFAULT_ALGORITHM,
    DEFAULT_CANDIDATES, corpus_from_packets, crc_family
)
from .command_table import CommandTable
from .frame_parser import DecoderState, FrameDecoder, Packet, build_frame

__all__ = [
    "HEADER_MARKER", "LENGTH_FIELD_BYTES", "FRAME_TYPE_LENGTH", "SEQUENCE_NUM_LENGTH",
    "CHECKSUM_LENGTH", "FRAME_TYPE_COMMAND", "DEFAULT_COMMAND_TABLE",
    "FramingError", "IncompleteFrame", "InsufficientData", "BadHeader", "ChecksumMismatch",
    "LengthOutOfRange", "BufferOverflow", "ChecksumDiscoveryError", "NoCandidateMatches",
    "ByteCursor", "ChecksumAlgorithm", "ChecksumEngine", "DiscoveryResult",
    "DEFAULT_ALGORITHM", "DEFAULT_CANDIDATES", "corpus_from_packets", "crc_family",
    "CommandTable", "DecoderState", "FrameDecoder", "Packet", "build_frame"
]
