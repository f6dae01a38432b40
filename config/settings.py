"""Application configuration settings."""

import os
from dataclasses import dataclass
from dotenv import load_dotenv

load_dotenv()


def _env_bool(name: str, default: str) -> bool:
    return os.environ.get(name, default).lower() == "true"


@dataclass
class Config:
    """アプリケーション設定"""
    # Serial communication settings
    SERIAL_PORT: str = os.environ.get("SERIAL_PORT", "/dev/ttyUSB0")
    BAUD_RATE: int = int(os.environ.get("BAUD_RATE", "9600"))
    RECONNECT_DELAY_S: float = 5.0

    # Framing settings
    MIN_FRAME_LENGTH: int = 7  # length + frameType + sequence(4) + commandId(1)
    MAX_FRAME_LENGTH: int = 0xFE  # 0xFF は常にヘッダーバイトとして扱う
    LENGTH_INCLUDES_LENGTH_BYTE: bool = _env_bool("LENGTH_INCLUDES_LENGTH_BYTE", "true")
    MAX_BUFFER_SIZE: int = 4096  # ByteCursor の high-water mark
    STRICT_CHECKSUM: bool = _env_bool("STRICT_CHECKSUM", "false")
    CHECKSUM_ALGORITHM: str = os.environ.get("CHECKSUM_ALGORITHM", "sum8+crc16/arc")
    COMMAND_ID_DEFAULT_SIZE: int = 2
    COMMAND_TABLE_PATH: str = os.environ.get("COMMAND_TABLE_PATH", "")

    # Session tracking settings (command ids are hex strings)
    RESET_COMMAND: str = os.environ.get("RESET_COMMAND", "0001")
    HEARTBEAT_COMMANDS: str = os.environ.get("HEARTBEAT_COMMANDS", "0005")
    AUTH_CHALLENGE_COMMAND: str = os.environ.get("AUTH_CHALLENGE_COMMAND", "0011")
    AUTH_RESPONSE_COMMAND: str = os.environ.get("AUTH_RESPONSE_COMMAND", "0012")
    CHALLENGE_TOKEN_SIZE: int = int(os.environ.get("CHALLENGE_TOKEN_SIZE", "8"))
    AUTH_RESPONSE_SIZE: int = int(os.environ.get("AUTH_RESPONSE_SIZE", "0"))  # 0 = 任意長
    HEARTBEAT_TIMEOUT_S: float = float(os.environ.get("HEARTBEAT_TIMEOUT_S", "4.0"))
    WATCHDOG_INTERVAL_S: float = 1.0
    OBSERVATION_HISTORY: int = 1000

    # Replay settings
    REPLAY_SPEED: float = 1.0
    REPLAY_TOLERANCE_MS: float = 10.0
    REPLAY_DEFAULT_INTERVAL_MS: float = 100.0

    # InfluxDB settings
    INFLUXDB_ENABLED: bool = _env_bool("INFLUXDB_ENABLED", "false")
    INFLUXDB_URL: str = os.environ.get("INFLUXDB_URL", "http://localhost:8086")
    INFLUXDB_ORG: str = os.environ.get("INFLUXDB_ORG", "home")
    INFLUXDB_BUCKET: str = os.environ.get("INFLUXDB_BUCKET", "appliance_link")
    INFLUXDB_TOKEN: str = os.environ.get("INFLUXDB_TOKEN", "")
    INFLUXDB_TIMEOUT_SECONDS: int = 3
    INFLUXDB_MEASUREMENT: str = "session_observation"

    # Test environment detection
    IS_TEST_ENV: bool = os.environ.get("PYTEST_CURRENT_TEST") is not None

    # Debug settings
    DEBUG_FRAME_PARSING: bool = _env_bool("DEBUG_FRAME_PARSING", "false")
    LOG_LEVEL: str = os.environ.get("LOG_LEVEL", "INFO")  # DEBUG, INFO, WARNING, ERROR, CRITICAL
    SUPPRESS_SYNC_ERRORS: bool = _env_bool("SUPPRESS_SYNC_ERRORS", "false")


# Global configuration instance
config = Config()
