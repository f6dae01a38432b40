"""Shared hex parsing and formatting helpers."""

import logging
import re
from typing import Optional

logger = logging.getLogger(__name__)

_SEPARATORS = re.compile(r"[\s:,\-]+")


class HexParser:
    """16進文字列の共通ユーティリティ"""

    @staticmethod
    def parse_hex(text: str) -> bytes:
        """
        16進文字列をバイト列に変換

        Args:
            text: "ff ff 08", "ffff08", "FF:FF:08", "0xff 0xff" など

        Returns:
            変換後のバイト列

        Raises:
            ValueError: 16進として解釈できない場合
        """
        cleaned = _SEPARATORS.sub("", text.replace("0x", "").replace("0X", ""))
        if len(cleaned) % 2:
            raise ValueError(f"Odd number of hex digits in {text!r}")
        return bytes.fromhex(cleaned)

    @staticmethod
    def try_parse_hex(text: str) -> Optional[bytes]:
        try:
            return HexParser.parse_hex(text)
        except ValueError:
            return None

    @staticmethod
    def format_hex(data: bytes, separator: str = " ", limit: Optional[int] = None) -> str:
        """
        バイト列を16進文字列に整形（ログ用）

        Args:
            data: 対象のバイト列
            separator: バイト間の区切り文字
            limit: 先頭から表示する最大バイト数（超過分は "..." で省略）
        """
        data = bytes(data)
        shown = data[:limit] if limit is not None else data
        text = shown.hex(separator) if separator else shown.hex()
        if len(shown) < len(data):
            text += f" ... ({len(data)} bytes)"
        return text
