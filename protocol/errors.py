"""Error taxonomy for stream decoding and checksum discovery."""

from typing import List, Optional


class FramingError(ValueError):
    """フレーム構造エラー（再同期で回復する。セッションは継続）"""

    kind = "framing_error"

    def __init__(self, message: str = "", offset: int = 0, data: bytes = b""):
        super().__init__(message)
        self.offset = offset
        self.data = bytes(data)

    def __eq__(self, other):
        return (
            type(self) is type(other)
            and self.args == other.args
            and self.offset == other.offset
            and self.data == other.data
        )

    def __hash__(self):
        return hash((type(self), self.args, self.offset, self.data))


class IncompleteFrame(FramingError):
    """ストリーム終端でフレームが途中までしか届いていない"""

    kind = "incomplete_frame"


class InsufficientData(IncompleteFrame):
    """ByteCursor に要求バイト数がバッファされていない"""

    kind = "insufficient_data"


class BadHeader(FramingError):
    """ヘッダーマーカー以外のバイトを読み飛ばした"""

    kind = "bad_header"


class ChecksumMismatch(FramingError):
    """strict モードでのチェックサム不一致"""

    kind = "checksum_mismatch"


class LengthOutOfRange(FramingError):
    """長さフィールドが設定範囲外"""

    kind = "length_out_of_range"

    def __init__(self, message: str = "", offset: int = 0, data: bytes = b"", length: int = 0):
        super().__init__(message, offset, data)
        self.length = length


class BufferOverflow(FramingError):
    """未消費バイトが high-water mark を超えた"""

    kind = "buffer_overflow"


class ChecksumDiscoveryError(Exception):
    """チェックサム探索のエラー（助言的、致命的ではない）"""


class NoCandidateMatches(ChecksumDiscoveryError):
    """探索は完了したが、どの候補もコーパス全体と一致しなかった"""

    def __init__(self, message: str, closest: Optional[List] = None):
        super().__init__(message)
        self.closest = list(closest or [])
