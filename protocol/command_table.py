"""Static command table: commandId -> human label."""

import json
import logging
from typing import Dict, Mapping, Optional, Union

from config import config
from .constants import DEFAULT_COMMAND_TABLE, MAX_COMMAND_ID_LENGTH

logger = logging.getLogger(__name__)

CommandKey = Union[bytes, bytearray, str]


def normalize_command_id(key: CommandKey) -> bytes:
    """Accept ``b"\\x00\\x01"``, ``"0001"`` or ``"00 01"``."""
    if isinstance(key, str):
        try:
            key = bytes.fromhex(key.replace(" ", "").replace("0x", ""))
        except ValueError as e:
            raise ValueError(f"Invalid command id {key!r}: {e}") from e
    command_id = bytes(key)
    if not 1 <= len(command_id) <= MAX_COMMAND_ID_LENGTH:
        raise ValueError(
            f"Command id must be 1-{MAX_COMMAND_ID_LENGTH} bytes, got {len(command_id)}: {command_id.hex()}"
        )
    return command_id


class CommandTable:
    """コマンドテーブル（注釈とcommandIdの切り出しにのみ使用）"""

    def __init__(self, entries: Optional[Mapping[CommandKey, str]] = None,
                 default_size: Optional[int] = None):
        self._entries: Dict[bytes, str] = {}
        for key, label in (DEFAULT_COMMAND_TABLE if entries is None else entries).items():
            self._entries[normalize_command_id(key)] = label
        self.default_size = default_size if default_size is not None else config.COMMAND_ID_DEFAULT_SIZE
        if not 1 <= self.default_size <= MAX_COMMAND_ID_LENGTH:
            raise ValueError(f"default_size must be 1-{MAX_COMMAND_ID_LENGTH}, got {self.default_size}")

    @classmethod
    def from_json(cls, path: str, include_defaults: bool = True) -> "CommandTable":
        with open(path, "r", encoding="utf-8") as f:
            loaded = json.load(f)
        if not isinstance(loaded, dict):
            raise ValueError(f"Command table {path} must be a JSON object of hex id -> label")
        entries: Dict[CommandKey, str] = dict(DEFAULT_COMMAND_TABLE) if include_defaults else {}
        entries.update({key: str(label) for key, label in loaded.items()})
        logger.info(f"Loaded {len(loaded)} command labels from {path}")
        return cls(entries)

    @classmethod
    def from_config(cls) -> "CommandTable":
        if config.COMMAND_TABLE_PATH:
            return cls.from_json(config.COMMAND_TABLE_PATH)
        return cls()

    def __len__(self) -> int:
        return len(self._entries)

    def __contains__(self, key: CommandKey) -> bool:
        return normalize_command_id(key) in self._entries

    def resolve(self, data: bytes) -> int:
        """Size of the commandId at the start of ``data`` (longest known prefix wins)."""
        for size in range(min(MAX_COMMAND_ID_LENGTH, len(data)), 0, -1):
            if bytes(data[:size]) in self._entries:
                return size
        return min(self.default_size, len(data))

    def label(self, command_id: bytes) -> str:
        return self._entries.get(bytes(command_id), f"UNKNOWN({bytes(command_id).hex()})")

    def items(self):
        return self._entries.items()
