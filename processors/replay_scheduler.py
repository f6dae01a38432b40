"""
Timed replay of captured packets.

Entries are emitted strictly in capture order. Each entry waits until its
capture offset (divided by the speed multiplier) has elapsed on the replay
clock; pausing freezes that clock and speed changes rebase it.
"""

import asyncio
import enum
import inspect
import logging
from dataclasses import dataclass, field
from typing import Any, Awaitable, Callable, List, Optional, Sequence, Union

from config import config
from protocol.frame_parser import Packet

logger = logging.getLogger(__name__)

Sink = Callable[[bytes], Union[None, Awaitable[Any]]]


@dataclass(frozen=True)
class ReplayEntry:
    packet: Packet
    offset_ms: float

    @property
    def raw(self) -> bytes:
        return self.packet.to_bytes()


class ReplayState(enum.Enum):
    IDLE = "idle"
    RUNNING = "running"
    PAUSED = "paused"
    CANCELLED = "cancelled"
    FINISHED = "finished"


@dataclass
class Emission:
    index: int
    offset_ms: float
    emitted_at_ms: float
    lateness_ms: float


@dataclass
class ReplayReport:
    """リプレイ結果の統計"""
    emitted: int = 0
    late: int = 0
    max_lateness_ms: float = 0.0
    cancelled: bool = False
    emissions: List[Emission] = field(default_factory=list)


class ReplayScheduler:
    """
    キャプチャの再生スケジューラ

    一時停止・再開・キャンセルはエントリ間でのみ有効（パケット途中では止めない）。
    """

    def __init__(self, entries: Sequence[ReplayEntry], sink: Sink,
                 speed: Optional[float] = None, tolerance_ms: Optional[float] = None):
        self.entries = list(entries)
        for previous, current in zip(self.entries, self.entries[1:]):
            if current.offset_ms < previous.offset_ms:
                raise ValueError(
                    f"Replay entries must be ordered by offset: {current.offset_ms} after {previous.offset_ms}"
                )
        self.sink = sink
        self._speed = self._check_speed(config.REPLAY_SPEED if speed is None else speed)
        self.tolerance_ms = config.REPLAY_TOLERANCE_MS if tolerance_ms is None else tolerance_ms

        self.state = ReplayState.IDLE
        self.position = 0  # 次に送出するエントリ
        self.report = ReplayReport()
        self._task: Optional[asyncio.Task] = None
        self._loop: Optional[asyncio.AbstractEventLoop] = None
        self._started_at = 0.0
        self._anchor_real = 0.0
        self._anchor_virtual_ms = 0.0
        self._paused = False
        self._cancelled = False
        self._wakeup: Optional[asyncio.Event] = None
        self._resumed: Optional[asyncio.Event] = None

    @staticmethod
    def _check_speed(speed: float) -> float:
        if speed <= 0:
            raise ValueError(f"Replay speed must be positive, got {speed}")
        return float(speed)

    @property
    def speed(self) -> float:
        return self._speed

    def start(self) -> asyncio.Task:
        if self._task is None:
            self._task = asyncio.get_running_loop().create_task(self.run())
        return self._task

    async def run(self) -> ReplayReport:
        if self.state is not ReplayState.IDLE:
            raise RuntimeError(f"Replay already {self.state.value}")
        self._loop = asyncio.get_running_loop()
        self._wakeup = asyncio.Event()
        self._resumed = asyncio.Event()
        self._resumed.set()
        self._started_at = self._anchor_real = self._loop.time()
        self._anchor_virtual_ms = 0.0
        if self._paused:
            self._resumed.clear()
        if not self._cancelled:
            self.state = ReplayState.PAUSED if self._paused else ReplayState.RUNNING
        logger.info(f"Replay started: {len(self.entries)} entries at {self._speed}x")

        try:
            while self.position < len(self.entries) and not self._cancelled:
                entry = self.entries[self.position]
                if not await self._wait_for(entry):
                    break
                await self._emit(self.position, entry)
                self.position += 1
        finally:
            if self._cancelled:
                self.state = ReplayState.CANCELLED
                self.report.cancelled = True
                logger.info(f"Replay cancelled after {self.report.emitted} entries")
            else:
                self.state = ReplayState.FINISHED
                logger.info(
                    f"Replay finished: {self.report.emitted} emitted, {self.report.late} late "
                    f"(max {self.report.max_lateness_ms:.1f}ms)"
                )
        return self.report

    def pause(self) -> None:
        if self._paused or self.state in (ReplayState.CANCELLED, ReplayState.FINISHED):
            return
        if self._loop is not None:
            self._rebase()
            self._resumed.clear()
            self._wakeup.set()
            self.state = ReplayState.PAUSED
        self._paused = True
        logger.info(f"Replay paused at entry {self.position}")

    def resume(self) -> None:
        if not self._paused:
            return
        self._paused = False
        if self._loop is not None:
            self._anchor_real = self._loop.time()
            self._resumed.set()
            self._wakeup.set()
            if self.state is ReplayState.PAUSED:
                self.state = ReplayState.RUNNING
        logger.info(f"Replay resumed at entry {self.position}")

    def cancel(self) -> None:
        self._cancelled = True
        if self._loop is not None:
            self._resumed.set()
            self._wakeup.set()

    def set_speed(self, speed: float) -> None:
        speed = self._check_speed(speed)
        if self._loop is not None:
            self._rebase()
            self._wakeup.set()
        self._speed = speed
        logger.info(f"Replay speed set to {speed}x")

    def _virtual_ms(self, now: float) -> float:
        if self._paused:
            return self._anchor_virtual_ms
        return self._anchor_virtual_ms + (now - self._anchor_real) * 1000.0 * self._speed

    def _rebase(self) -> None:
        now = self._loop.time()
        self._anchor_virtual_ms = self._virtual_ms(now)
        self._anchor_real = now

    async def _wait_for(self, entry: ReplayEntry) -> bool:
        """Sleep until ``entry`` is due. Returns False when cancelled."""
        while not self._cancelled:
            if self._paused:
                await self._resumed.wait()
                continue
            remaining_ms = entry.offset_ms - self._virtual_ms(self._loop.time())
            if remaining_ms <= 0:
                return True
            self._wakeup.clear()
            try:
                await asyncio.wait_for(self._wakeup.wait(), timeout=remaining_ms / 1000.0 / self._speed)
            except asyncio.TimeoutError:
                pass
        return False

    async def _emit(self, index: int, entry: ReplayEntry) -> None:
        now = self._loop.time()
        lateness_ms = (self._virtual_ms(now) - entry.offset_ms) / self._speed
        result = self.sink(entry.raw)
        if inspect.isawaitable(result):
            await result

        emission = Emission(index, entry.offset_ms, (now - self._started_at) * 1000.0, lateness_ms)
        self.report.emissions.append(emission)
        self.report.emitted += 1
        self.report.max_lateness_ms = max(self.report.max_lateness_ms, lateness_ms)
        if lateness_ms > self.tolerance_ms:
            self.report.late += 1
            logger.warning(
                f"Replay entry {index} emitted {lateness_ms:.1f}ms late "
                f"(tolerance {self.tolerance_ms:.1f}ms)"
            )
        elif config.DEBUG_FRAME_PARSING:
            logger.debug(f"Replay entry {index} @{entry.offset_ms:.1f}ms: {entry.packet.hex()}")
