"""
Checksum algorithms, validation and empirical discovery.

The device appends a 3-byte checksum covering the bytes from the length
field through the last payload byte. Captured traffic matches an 8-bit
additive sum followed by CRC-16/ARC, but the engine keeps every algorithm
pluggable so that new captures can be re-checked with ``discover``.
"""

import asyncio
import logging
from dataclasses import dataclass, field
from typing import Dict, Iterable, List, Optional, Sequence, Tuple

from config import config
from .constants import CHECKSUM_LENGTH
from .errors import ChecksumDiscoveryError, NoCandidateMatches

logger = logging.getLogger(__name__)

_MASK24 = (1 << (8 * CHECKSUM_LENGTH)) - 1

CorpusPair = Tuple[bytes, bytes]


def _reflect(value: int, width: int) -> int:
    result = 0
    for _ in range(width):
        result = (result << 1) | (value & 1)
        value >>= 1
    return result


def crc(data: bytes, width: int, poly: int, init: int = 0, refin: bool = False,
        refout: bool = False, xorout: int = 0) -> int:
    """Generic bitwise CRC (Rocksoft model parameters)."""
    top = 1 << (width - 1)
    mask = (1 << width) - 1
    register = init
    for byte in data:
        if refin:
            byte = _reflect(byte, 8)
        register ^= byte << (width - 8)
        for _ in range(8):
            if register & top:
                register = ((register << 1) ^ poly) & mask
            else:
                register = (register << 1) & mask
    if refout:
        register = _reflect(register, width)
    return register ^ xorout


class ChecksumAlgorithm:
    """bytes -> 3-byte checksum. Subclasses must be pure and carry a ``name``."""

    def compute(self, data: bytes) -> bytes:
        raise NotImplementedError

    def __call__(self, data: bytes) -> bytes:
        return self.compute(data)


@dataclass(frozen=True)
class AdditiveSum(ChecksumAlgorithm):
    """Additive sum variants.

    ``sum8_prefix`` puts the 8-bit sum in the first byte and a 16-bit sum in
    the remaining two; otherwise the 24-bit sum is used. ``negate`` stores
    the two's complement.
    """

    name: str
    sum8_prefix: bool = False
    negate: bool = False

    def compute(self, data: bytes) -> bytes:
        total = -sum(data) if self.negate else sum(data)
        if self.sum8_prefix:
            return bytes([total & 0xFF]) + (total & 0xFFFF).to_bytes(2, "big")
        value = total & _MASK24
        return value.to_bytes(CHECKSUM_LENGTH, "big")


@dataclass(frozen=True)
class CrcParams:
    width: int
    poly: int
    init: int = 0
    refin: bool = False
    refout: bool = False
    xorout: int = 0


@dataclass(frozen=True)
class FoldedCrc(ChecksumAlgorithm):
    """CRC folded to 3 bytes.

    Folding rules:
      - ``sum8-prefix``: 8-bit additive sum, then the 16-bit CRC big-endian
      - ``pad``: CRC zero-padded to 3 bytes big-endian (width <= 24)
      - ``truncate``: low 3 bytes of a wider CRC
    """

    name: str
    params: CrcParams
    fold: str = "pad"

    def __post_init__(self):
        if self.fold not in ("sum8-prefix", "pad", "truncate"):
            raise ValueError(f"Unknown fold rule: {self.fold}")
        if self.fold == "sum8-prefix" and self.params.width != 16:
            raise ValueError("sum8-prefix folding needs a 16-bit CRC")
        if self.fold == "pad" and self.params.width > 24:
            raise ValueError("pad folding needs a CRC of at most 24 bits")

    def compute(self, data: bytes) -> bytes:
        p = self.params
        value = crc(data, p.width, p.poly, p.init, p.refin, p.refout, p.xorout)
        if self.fold == "sum8-prefix":
            return bytes([sum(data) & 0xFF]) + value.to_bytes(2, "big")
        return (value & _MASK24).to_bytes(CHECKSUM_LENGTH, "big")


CRC16_ARC = CrcParams(16, 0x8005, 0x0000, True, True)
CRC16_MODBUS = CrcParams(16, 0x8005, 0xFFFF, True, True)
CRC16_XMODEM = CrcParams(16, 0x1021, 0x0000)
CRC16_CCITT_FALSE = CrcParams(16, 0x1021, 0xFFFF)
CRC16_KERMIT = CrcParams(16, 0x1021, 0x0000, True, True)
CRC24_OPENPGP = CrcParams(24, 0x864CFB, 0xB704CE)
CRC32 = CrcParams(32, 0x04C11DB7, 0xFFFFFFFF, True, True, 0xFFFFFFFF)

DEFAULT_ALGORITHM = FoldedCrc("sum8+crc16/arc", CRC16_ARC, "sum8-prefix")

DEFAULT_CANDIDATES: Tuple[ChecksumAlgorithm, ...] = (
    DEFAULT_ALGORITHM,
    FoldedCrc("sum8+crc16/modbus", CRC16_MODBUS, "sum8-prefix"),
    FoldedCrc("sum8+crc16/xmodem", CRC16_XMODEM, "sum8-prefix"),
    FoldedCrc("sum8+crc16/ccitt-false", CRC16_CCITT_FALSE, "sum8-prefix"),
    FoldedCrc("sum8+crc16/kermit", CRC16_KERMIT, "sum8-prefix"),
    FoldedCrc("crc16/arc", CRC16_ARC, "pad"),
    FoldedCrc("crc16/modbus", CRC16_MODBUS, "pad"),
    FoldedCrc("crc24/openpgp", CRC24_OPENPGP, "pad"),
    FoldedCrc("crc32/low24", CRC32, "truncate"),
    AdditiveSum("sum24"),
    AdditiveSum("sum8+sum16", sum8_prefix=True),
    AdditiveSum("sum24/neg", negate=True),
)


def crc_family(width: int, polys: Iterable[int], inits: Iterable[int] = (0,),
               reflections: Iterable[bool] = (False, True), fold: str = "pad",
               xorout: int = 0) -> List[FoldedCrc]:
    """Build a CRC sweep for manual narrowing of unknown parameters."""
    candidates = []
    inits = list(inits)
    reflections = list(reflections)
    for poly in polys:
        for init in inits:
            for reflected in reflections:
                params = CrcParams(width, poly, init, reflected, reflected, xorout)
                name = (
                    f"crc{width}/p{poly:0{width // 4}x}/i{init:0{width // 4}x}"
                    f"/{'ref' if reflected else 'noref'}/{fold}"
                )
                candidates.append(FoldedCrc(name, params, fold))
    return candidates


@dataclass(frozen=True)
class CandidateScore:
    name: str
    matched: int
    total: int
    first_mismatch: Optional[int] = None

    @property
    def consistent(self) -> bool:
        return self.total > 0 and self.matched == self.total


@dataclass
class DiscoveryResult:
    """Discover の結果（一致候補と近さ順のスコア）"""
    matches: List[str]
    scores: List[CandidateScore]
    corpus_size: int
    error: Optional[NoCandidateMatches] = field(default=None, compare=False)
    # 一致した候補の実体（登録外のスイープ候補も adopt できるように保持）
    algorithms: Dict[str, ChecksumAlgorithm] = field(default_factory=dict, compare=False, repr=False)

    @property
    def ok(self) -> bool:
        return bool(self.matches)

    @property
    def closest(self) -> List[CandidateScore]:
        return [score for score in self.scores if not score.consistent][:3]


def _score(algorithm: ChecksumAlgorithm, corpus: Sequence[CorpusPair]) -> CandidateScore:
    matched = 0
    first_mismatch = None
    for index, (data, observed) in enumerate(corpus):
        if algorithm.compute(data) == observed:
            matched += 1
        elif first_mismatch is None:
            first_mismatch = index
    return CandidateScore(algorithm.name, matched, len(corpus), first_mismatch)


def corpus_from_packets(packets: Iterable) -> List[CorpusPair]:
    """(checksum range, observed checksum) pairs from decoded packets."""
    return [(packet.checksum_range, packet.checksum) for packet in packets]


class ChecksumEngine:
    """
    チェックサムエンジン

    アルゴリズム名 -> 実装の対応表と「アクティブ」な選択を保持する。
    アクティブが None の場合は構造検証のみ（validate は None を返す）。
    """

    _UNSET = object()

    def __init__(self, algorithms: Optional[Iterable[ChecksumAlgorithm]] = None, active=_UNSET):
        self._algorithms: Dict[str, ChecksumAlgorithm] = {}
        for algorithm in (DEFAULT_CANDIDATES if algorithms is None else algorithms):
            self.register(algorithm)
        if active is ChecksumEngine._UNSET:
            active = config.CHECKSUM_ALGORITHM or None
        self._active: Optional[ChecksumAlgorithm] = None
        self.select(active)

    def register(self, algorithm: ChecksumAlgorithm) -> None:
        if algorithm.name in self._algorithms:
            raise ValueError(f"Checksum algorithm already registered: {algorithm.name}")
        self._algorithms[algorithm.name] = algorithm

    @property
    def algorithms(self) -> List[str]:
        return list(self._algorithms)

    @property
    def active(self) -> Optional[ChecksumAlgorithm]:
        return self._active

    @property
    def active_name(self) -> Optional[str]:
        return self._active.name if self._active else None

    def select(self, name: Optional[str]) -> None:
        if name is None:
            self._active = None
            logger.info("Checksum validation disabled, using structural validation only")
            return
        if name not in self._algorithms:
            raise KeyError(f"Unknown checksum algorithm: {name}")
        self._active = self._algorithms[name]
        logger.debug(f"Active checksum algorithm: {name}")

    def compute(self, data: bytes) -> bytes:
        if self._active is None:
            raise ChecksumDiscoveryError("No active checksum algorithm selected")
        return self._active.compute(data)

    def validate(self, data: bytes, checksum: bytes) -> Optional[bool]:
        if self._active is None:
            return None
        return self._active.compute(data) == bytes(checksum)

    def discover(self, corpus: Sequence[CorpusPair],
                 candidates: Optional[Iterable[ChecksumAlgorithm]] = None) -> DiscoveryResult:
        """Test every candidate against every pair; deterministic, no early exit across candidates."""
        corpus = [(bytes(data), bytes(observed)) for data, observed in corpus]
        if not corpus:
            raise ChecksumDiscoveryError("Checksum discovery needs a non-empty corpus")
        for index, (_, observed) in enumerate(corpus):
            if len(observed) != CHECKSUM_LENGTH:
                raise ValueError(
                    f"Corpus entry {index}: checksum must be {CHECKSUM_LENGTH} bytes, got {len(observed)}"
                )

        pool = list(self._algorithms.values()) if candidates is None else list(candidates)
        scores = [_score(algorithm, corpus) for algorithm in pool]
        matches = [score.name for score in scores if score.consistent]
        # 安定ソート: 一致数の多い順、同数なら登録順
        ranked = sorted(scores, key=lambda score: -score.matched)

        result = DiscoveryResult(
            matches=matches, scores=ranked, corpus_size=len(corpus),
            algorithms={algorithm.name: algorithm for algorithm in pool if algorithm.name in matches},
        )
        if matches:
            logger.info(f"Checksum discovery: {len(matches)} candidate(s) consistent with "
                        f"{len(corpus)} samples: {', '.join(matches)}")
        else:
            closest = result.closest
            summary = ", ".join(f"{s.name}={s.matched}/{s.total}" for s in closest)
            result.error = NoCandidateMatches(
                f"No candidate matched all {len(corpus)} samples (closest: {summary})",
                closest=closest,
            )
            logger.warning(str(result.error))
        return result

    async def discover_async(self, corpus: Sequence[CorpusPair],
                             candidates: Optional[Iterable[ChecksumAlgorithm]] = None) -> DiscoveryResult:
        """Run discovery in a worker thread so that live decoding keeps going."""
        candidates = list(candidates) if candidates is not None else None
        return await asyncio.to_thread(self.discover, corpus, candidates)

    def adopt(self, result: DiscoveryResult) -> Optional[str]:
        """Activate the first consistent candidate, or fall back to structural validation."""
        if not result.ok:
            logger.warning("No consistent checksum algorithm, falling back to structural validation")
            self.select(None)
            return None
        name = result.matches[0]
        if name not in self._algorithms:
            if name not in result.algorithms:
                raise KeyError(f"Discovered algorithm is not registered: {name}")
            self.register(result.algorithms[name])
        self.select(name)
        logger.info(f"Adopted checksum algorithm {name}")
        return name
