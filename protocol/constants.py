"""Protocol constants for frame processing."""

# Frame markers (2 bytes)
HEADER_MARKER = b"\xff\xff"

# Frame field sizes
LENGTH_FIELD_BYTES = 1
FRAME_TYPE_LENGTH = 1
SEQUENCE_NUM_LENGTH = 4
CHECKSUM_LENGTH = 3
MAX_COMMAND_ID_LENGTH = 2

# Frame type definitions
FRAME_TYPE_COMMAND = 0x40

# Bytes between the header marker and commandId (length + frameType + sequence)
FIXED_BODY_LENGTH = LENGTH_FIELD_BYTES + FRAME_TYPE_LENGTH + SEQUENCE_NUM_LENGTH

# Offsets from the start of the header marker
LENGTH_OFFSET = len(HEADER_MARKER)
FRAME_TYPE_OFFSET = LENGTH_OFFSET + LENGTH_FIELD_BYTES
SEQUENCE_OFFSET = FRAME_TYPE_OFFSET + FRAME_TYPE_LENGTH
COMMAND_OFFSET = SEQUENCE_OFFSET + SEQUENCE_NUM_LENGTH

SEQUENCE_MODULUS = 1 << (8 * SEQUENCE_NUM_LENGTH)

# Known commands (hex commandId -> label). 注釈専用、検証には使わない
DEFAULT_COMMAND_TABLE = {
    "0001": "reset",
    "0005": "ack",
    "0011": "auth_challenge",
    "0012": "auth_response",
}
