"""
Appliance Link Decoder

Decodes the framed serial protocol spoken between an appliance and its
controller:
- monitor: live decoding with session tracking and reconnection
- decode: decode a capture file
- discover: identify the checksum algorithm from a capture
- replay: replay a capture onto a serial link with original timing
- send: encode and send a single command frame
"""

import argparse
import asyncio
import sys
from typing import List, Optional

import serial
import serial_asyncio

from config import config
from processors import ReplayScheduler, SessionTracker
from protocol import ChecksumEngine, CommandTable, FrameDecoder, corpus_from_packets
from protocol.serial_handler import LinkProtocol
from storage import PacketLog, decode_records, load_replay_entries, read_capture
from utils import HexParser, setup_logging

# Setup logging
logger = setup_logging()


def build_decoder(args, algorithm: Optional[str] = "") -> FrameDecoder:
    """CLI 引数からデコーダを構築（algorithm=None は構造検証のみ）"""
    command_table = CommandTable.from_json(args.command_table) if args.command_table else CommandTable.from_config()
    if algorithm == "":
        algorithm = args.checksum
    engine = ChecksumEngine(active=None if algorithm in (None, "none") else algorithm)
    return FrameDecoder(checksum_engine=engine, command_table=command_table, strict=args.strict)


def make_observation_store(enabled: bool):
    if not enabled:
        return None
    # influxdb_client は必要な時だけ読み込む
    from storage.influxdb_client import ObservationStore
    return ObservationStore()


async def monitor(args) -> None:
    """Live decoding with the reconnection loop."""
    logger.info("Starting appliance link monitor")
    loop = asyncio.get_running_loop()
    packet_log = PacketLog(args.log) if args.log else None
    observation_store = make_observation_store(args.influx)

    # 再接続をまたいでセッション状態とデコーダ統計を保持する
    decoder = build_decoder(args)
    tracker = SessionTracker(command_table=decoder.command_table)

    try:
        while True:  # Reconnection loop
            transport = None
            connection_lost_future = loop.create_future()

            try:
                logger.info(f"Attempting to connect to {args.port} at {args.baud} baud...")

                def protocol_factory():
                    return LinkProtocol(
                        connection_lost_future, decoder, tracker,
                        packet_log=packet_log, observation_store=observation_store,
                        link_name=args.port,
                    )

                transport, protocol = await serial_asyncio.create_serial_connection(
                    loop, protocol_factory, args.port, baudrate=args.baud
                )
                logger.info("Connection established.")
                await connection_lost_future
                logger.info("Connection lost signaled (future completed).")

            except serial.SerialException as e:
                logger.error(f"Serial connection error: {e}")
                if not connection_lost_future.done():
                    connection_lost_future.set_exception(e)

            except asyncio.CancelledError:
                logger.info("Monitor task cancelled during connection/monitoring.")
                if not connection_lost_future.done():
                    connection_lost_future.cancel("Monitor task cancelled")
                break

            except Exception as e:
                logger.exception(f"Error during connection or monitoring: {e}")
                if not connection_lost_future.done():
                    try:
                        connection_lost_future.set_exception(e)
                    except asyncio.InvalidStateError:
                        pass

            finally:
                if transport and not transport.is_closing():
                    logger.info("Closing transport in finally block.")
                    transport.close()
                transport = None
                # 統計は残し、途中のフレームだけ捨てる
                for event in decoder.flush():
                    logger.debug(f"Dropped on reconnect: {event}")

            logger.info(f"Waiting {config.RECONNECT_DELAY_S} seconds before retrying connection...")
            try:
                await asyncio.sleep(config.RECONNECT_DELAY_S)
            except asyncio.CancelledError:
                logger.info("Retry delay cancelled. Exiting reconnection loop.")
                break
    finally:
        logger.info(f"Decoder stats: {decoder.stats}")
        logger.info(f"Session observations: {tracker.counts}")
        if observation_store is not None:
            await observation_store.close()
        if packet_log is not None:
            packet_log.close()
        logger.info("Monitor finished.")


def decode(args) -> int:
    """Decode a capture file and print one line per packet."""
    decoder = build_decoder(args)
    tracker = SessionTracker(command_table=decoder.command_table)
    count = 0
    for packet, timestamp in decode_records(read_capture(args.file), decoder, args.direction):
        tracked = tracker.ingest(packet, timestamp if timestamp is not None else float(count))
        valid = {True: "ok", False: "BAD", None: "--"}[packet.checksum_valid]
        print(
            f"{packet.offset:8d} epoch={tracked.epoch} seq={packet.sequence:<10d} "
            f"{tracked.role:<9s} {tracked.command_name:<14s} csum={valid} "
            f"payload={packet.payload.hex(' ') or '-'}"
        )
        for observation in tracked.observations:
            print(f"         ! {observation.kind.value}: {observation.message}")
        count += 1
    logger.info(f"Decoded {count} packets, stats: {decoder.stats}")
    return 0


async def discover(args) -> int:
    """Identify the checksum algorithm that explains every frame in a capture."""
    decoder = build_decoder(args, algorithm=None)
    packets = [packet for packet, _ in decode_records(read_capture(args.file), decoder, args.direction)]
    if not packets:
        logger.error(f"No frames found in {args.file}")
        return 1

    engine = decoder.checksum_engine
    result = await engine.discover_async(corpus_from_packets(packets))
    for score in result.scores[:args.top]:
        marker = "*" if score.consistent else " "
        print(f"{marker} {score.name:<28s} {score.matched}/{score.total}")
    adopted = engine.adopt(result)
    if adopted is None:
        print(f"No consistent algorithm: {result.error}")
        return 2
    print(f"Adopted: {adopted}")
    return 0


async def replay(args) -> int:
    """Replay a capture onto a serial link (or stdout with --dry-run)."""
    entries = load_replay_entries(read_capture(args.file), build_decoder(args), args.direction)
    if not entries:
        logger.error(f"No frames to replay in {args.file}")
        return 1

    if args.dry_run:
        def sink(data: bytes):
            print(HexParser.format_hex(data))
        report = await ReplayScheduler(entries, sink, speed=args.speed).run()
        return 0 if report.late == 0 else 3

    loop = asyncio.get_running_loop()
    transport = None
    try:
        transport, protocol = await serial_asyncio.create_serial_connection(
            loop, lambda: LinkProtocol(watchdog_interval_s=0, link_name=args.port),
            args.port, baudrate=args.baud
        )
        scheduler = ReplayScheduler(entries, protocol.send, speed=args.speed)
        task = scheduler.start()
        try:
            report = await task
        except asyncio.CancelledError:
            scheduler.cancel()
            raise
    finally:
        if transport and not transport.is_closing():
            transport.close()
    return 0 if report.late == 0 else 3


async def send(args) -> int:
    """Send a single command frame."""
    command_id = HexParser.try_parse_hex(args.command_id)
    payload = HexParser.try_parse_hex(args.payload) if args.payload else b""
    if not command_id or payload is None:
        logger.error(f"Invalid hex: command={args.command_id!r} payload={args.payload!r}")
        return 1
    loop = asyncio.get_running_loop()
    transport = None
    try:
        transport, protocol = await serial_asyncio.create_serial_connection(
            loop, lambda: LinkProtocol(watchdog_interval_s=0, link_name=args.port),
            args.port, baudrate=args.baud
        )
        protocol.send_command(command_id, payload, args.sequence)
        # 書き込みがはけるまで待つ
        await asyncio.sleep(args.linger)
    finally:
        if transport and not transport.is_closing():
            transport.close()
    return 0


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(description="Decode and monitor the appliance serial link.")
    parser.add_argument(
        "--checksum", default=config.CHECKSUM_ALGORITHM or "none",
        help=f"Checksum algorithm, or 'none' for structural validation (default: {config.CHECKSUM_ALGORITHM})"
    )
    parser.add_argument(
        "--strict", action=argparse.BooleanOptionalAction, default=config.STRICT_CHECKSUM,
        help="Reject frames with a bad checksum instead of flagging them"
    )
    parser.add_argument("--command-table", default=None, help="JSON file of hex command id -> label")
    subparsers = parser.add_subparsers(dest="command", required=True)

    def add_serial(sub):
        sub.add_argument(
            "-p", "--port", default=config.SERIAL_PORT,
            help=f"Serial port (default: {config.SERIAL_PORT})"
        )
        sub.add_argument(
            "-b", "--baud", type=int, default=config.BAUD_RATE,
            help=f"Baud rate (default: {config.BAUD_RATE})"
        )

    def add_capture(sub):
        sub.add_argument("file", help="Capture file ([timestamp] [RX|TX] hex per line)")
        sub.add_argument("--direction", choices=["RX", "TX"], default=None, help="Only use records of this direction")

    sub = subparsers.add_parser("monitor", help="Decode a live serial link")
    add_serial(sub)
    sub.add_argument("--log", default=None, help="Append raw traffic to this capture file")
    sub.add_argument(
        "--influx", action=argparse.BooleanOptionalAction, default=config.INFLUXDB_ENABLED,
        help="Write session observations to InfluxDB"
    )

    sub = subparsers.add_parser("decode", help="Decode a capture file")
    add_capture(sub)

    sub = subparsers.add_parser("discover", help="Identify the checksum algorithm from a capture")
    add_capture(sub)
    sub.add_argument("--top", type=int, default=5, help="Number of candidate scores to print")

    sub = subparsers.add_parser("replay", help="Replay a capture onto a serial link")
    add_serial(sub)
    add_capture(sub)
    sub.add_argument("--speed", type=float, default=config.REPLAY_SPEED, help="Speed multiplier")
    sub.add_argument("--dry-run", action="store_true", help="Print frames instead of writing them")

    sub = subparsers.add_parser("send", help="Send one command frame")
    add_serial(sub)
    sub.add_argument("command_id", metavar="command", help="Command id in hex, e.g. 0005")
    sub.add_argument("payload", nargs="?", default="", help="Payload in hex")
    sub.add_argument("--sequence", type=int, default=None, help="Sequence number (default: 0)")
    sub.add_argument("--linger", type=float, default=0.2, help="Seconds to wait before closing the port")
    return parser


def main(argv: Optional[List[str]] = None) -> int:
    args = build_parser().parse_args(argv)
    if args.command == "decode":
        return decode(args)
    handlers = {"monitor": monitor, "discover": discover, "replay": replay, "send": send}
    return asyncio.run(handlers[args.command](args)) or 0


if __name__ == "__main__":
    try:
        sys.exit(main())
    except KeyboardInterrupt:
        logger.info("Exiting due to KeyboardInterrupt.")
