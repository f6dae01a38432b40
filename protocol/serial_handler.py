"""Serial link protocol: decodes live traffic and tracks the session."""

import asyncio
import logging
import time
from typing import Callable, List, Optional

from config import config
from processors.session_tracker import SessionObservation, SessionTracker, TrackedPacket
from utils.hex_utils import HexParser
from .frame_parser import FrameDecoder, Packet, build_frame
from .errors import FramingError

logger = logging.getLogger(__name__)


class LinkProtocol(asyncio.Protocol):
    """Asyncio protocol to handle one serial link."""

    def __init__(self, connection_lost_future: Optional[asyncio.Future] = None,
                 decoder: Optional[FrameDecoder] = None,
                 tracker: Optional[SessionTracker] = None,
                 packet_log=None, observation_store=None,
                 on_packet: Optional[Callable[[TrackedPacket], None]] = None,
                 link_name: Optional[str] = None,
                 watchdog_interval_s: Optional[float] = None):
        super().__init__()
        self.transport = None
        self.connection_lost_future = connection_lost_future
        self.decoder = decoder if decoder is not None else FrameDecoder()
        self.tracker = tracker if tracker is not None else SessionTracker(command_table=self.decoder.command_table)
        self.packet_log = packet_log
        self.observation_store = observation_store
        self.on_packet = on_packet
        self.link_name = link_name or config.SERIAL_PORT
        self.watchdog_interval_s = (
            config.WATCHDOG_INTERVAL_S if watchdog_interval_s is None else watchdog_interval_s
        )
        self._watchdog_task: Optional[asyncio.Task] = None
        self._tx_sequence = 0

        self.stats = {"rx_bytes": 0, "tx_bytes": 0, "packets": 0, "observations": 0}

    def connection_made(self, transport):
        self.transport = transport
        serial = getattr(transport, "serial", None)
        if serial is not None:
            try:
                serial.dtr = True
                logger.info(f"Serial port {serial.port} opened, DTR set.")
            except IOError as e:
                logger.warning(f"Could not set DTR on {serial.port}: {e}")
        if self.watchdog_interval_s > 0:
            self._watchdog_task = asyncio.get_running_loop().create_task(self._watchdog())

    def data_received(self, data):
        """受信データをデコーダに渡し、確定したパケットを処理"""
        self.stats["rx_bytes"] += len(data)
        if config.DEBUG_FRAME_PARSING:
            logger.debug(f"RX {len(data)} bytes: {HexParser.format_hex(data, limit=64)}")
        if self.packet_log is not None:
            self.packet_log.write(data, "RX")
        self._handle_events(self.decoder.feed(data))

    def _handle_events(self, events: List) -> None:
        for event in events:
            if isinstance(event, Packet):
                self._handle_packet(event)
            else:
                self._log_framing_error(event)

    def _handle_packet(self, packet: Packet) -> TrackedPacket:
        tracked = self.tracker.ingest(packet, time.monotonic())
        self.stats["packets"] += 1
        if packet.checksum_valid is False:
            logger.warning(
                f"Accepted packet with bad checksum seq={packet.sequence} "
                f"cmd={tracked.command_name}: {packet.hex()}"
            )
        else:
            logger.info(
                f"[epoch {tracked.epoch}] {tracked.role} seq={packet.sequence} "
                f"cmd={tracked.command_name} payload={packet.payload.hex(' ') or '-'}"
            )
        if tracked.paired_challenge is not None:
            logger.info(f"Auth response paired with challenge {tracked.paired_challenge.hex()}")
        for observation in tracked.observations:
            self._report_observation(observation)
        if self.on_packet is not None:
            self.on_packet(tracked)
        return tracked

    def _log_framing_error(self, error: FramingError) -> None:
        level = logging.DEBUG if config.SUPPRESS_SYNC_ERRORS else logging.WARNING
        logger.log(level, f"{error.kind} @{error.offset}: {error} ({HexParser.format_hex(error.data, limit=32)})")

    def _report_observation(self, observation: SessionObservation) -> None:
        self.stats["observations"] += 1
        logger.warning(f"Session observation [{observation.kind.value}]: {observation.message}")
        if self.observation_store is not None:
            self.observation_store.write_observation(self.link_name, observation)

    async def _watchdog(self):
        """パケットが届かない間もハートビート途絶を検出"""
        try:
            while True:
                await asyncio.sleep(self.watchdog_interval_s)
                observation = self.tracker.check_heartbeat(time.monotonic())
                if observation is not None:
                    self._report_observation(observation)
        except asyncio.CancelledError:
            logger.debug("Heartbeat watchdog cancelled.")
            raise

    def send(self, data: bytes) -> None:
        """Write raw bytes to the link."""
        if not self.transport or self.transport.is_closing():
            raise ConnectionError("No open transport to send on")
        self.transport.write(data)
        self.stats["tx_bytes"] += len(data)
        if self.packet_log is not None:
            self.packet_log.write(data, "TX")
        logger.info(f"TX {HexParser.format_hex(data)}")

    def send_command(self, command_id: bytes, payload: bytes = b"", sequence: Optional[int] = None) -> bytes:
        """フレームを組み立てて送信（シーケンス省略時は自動採番）"""
        if sequence is None:
            sequence = self._tx_sequence
        frame = build_frame(
            command_id, payload, sequence,
            algorithm=self.decoder.checksum_engine.active,
            length_includes_length_byte=self.decoder.length_includes_length_byte,
        )
        self.send(frame)
        self._tx_sequence = (sequence + 1) & 0xFFFFFFFF
        return frame

    def connection_lost(self, exc):
        log_prefix = f"connection_lost ({id(self)}):"
        if exc:
            logger.error(f"{log_prefix} Serial port connection lost: {exc}")
        else:
            logger.info(f"{log_prefix} Serial port connection closed normally.")
        self.transport = None

        self._handle_events(self.decoder.flush())
        if self._watchdog_task is not None:
            self._watchdog_task.cancel()
            self._watchdog_task = None

        if self.connection_lost_future and not self.connection_lost_future.done():
            if exc:
                try:
                    self.connection_lost_future.set_exception(exc)
                except asyncio.InvalidStateError:
                    logger.warning(f"{log_prefix} Future was already set/cancelled when trying to set exception.")
            else:
                try:
                    self.connection_lost_future.set_result(True)
                except asyncio.InvalidStateError:
                    logger.warning(f"{log_prefix} Future was already set/cancelled when trying to set result.")
        elif self.connection_lost_future is not None:
            logger.warning(f"{log_prefix} connection_lost called but future is already done.")
