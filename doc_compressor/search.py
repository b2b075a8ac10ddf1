"""
search.py - Band-seeking quality search.

Finds document-wide encoding settings whose assembled size lands in a
KB band:

1. Binary search JPEG quality (4:4:4, full size)
2. If still over the band: gentle downscale in 3% steps to 0.92
3. If still over the band: 4:2:0 chroma subsampling

Every loop is bounded, so a builder whose size is not monotonic in
quality still terminates.
"""

import logging
from dataclasses import dataclass, replace
from typing import Callable, Optional

from .compression import EncodingSettings, Subsampling
from .errors import EncodingError

logger = logging.getLogger(__name__)

QUALITY_MIN = 70
QUALITY_MAX = 100
QUALITY_START = 90
TOLERANCE_KB = 2
MAX_SEARCH_ITERATIONS = 8

DOWNSCALE_STEP = 0.03
DOWNSCALE_FLOOR = 0.92

# Builds the complete document for the given settings and returns its bytes
DocumentBuilder = Callable[[EncodingSettings], bytes]


@dataclass(frozen=True)
class SizeBand:
    """Acceptance window and attractor, all in KB (bytes / 1024)."""
    min_kb: float
    max_kb: float
    target_kb: float

    def __post_init__(self):
        if not 0 < self.min_kb <= self.target_kb <= self.max_kb:
            raise ValueError(
                f"Invalid band: need 0 < min <= target <= max, "
                f"got min={self.min_kb} target={self.target_kb} max={self.max_kb}"
            )

    def contains(self, kb: float) -> bool:
        return self.min_kb <= kb <= self.max_kb

    def distance(self, kb: float) -> float:
        return abs(kb - self.target_kb)

    def __str__(self) -> str:
        return f"{self.min_kb:g}-{self.max_kb:g}KB (target {self.target_kb:g}KB)"


@dataclass
class CandidateEncoding:
    """One fully assembled candidate document."""
    settings: EncodingSettings
    data: bytes

    @property
    def size(self) -> int:
        return len(self.data)

    @property
    def kb(self) -> float:
        return len(self.data) / 1024

    def beats(self, other: "CandidateEncoding", band: SizeBand) -> bool:
        """In-band wins over out-of-band, then closer to target wins."""
        mine, theirs = band.contains(self.kb), band.contains(other.kb)
        if mine != theirs:
            return mine
        return band.distance(self.kb) < band.distance(other.kb)


@dataclass
class SearchOutcome:
    """Best candidate plus a record of what the search did."""
    best: CandidateEncoding
    iterations: int = 0
    downscaled: bool = False
    aggressive_subsampling: bool = False


def _build(build: DocumentBuilder, settings: EncodingSettings) -> CandidateEncoding:
    candidate = CandidateEncoding(settings=settings, data=build(settings))
    logger.debug(f"Candidate {settings.describe()} -> {candidate.kb:.1f}KB")
    return candidate


def try_build(build: DocumentBuilder, settings: EncodingSettings) -> Optional[CandidateEncoding]:
    """Build a candidate, or None if encoding failed."""
    try:
        return _build(build, settings)
    except EncodingError as e:
        logger.warning(f"Skipping {settings.describe()}: {e}")
        return None


def _settled(kb: float, band: SizeBand) -> bool:
    return band.contains(kb) and band.distance(kb) <= TOLERANCE_KB


def _needs_smaller(kb: float, band: SizeBand) -> bool:
    return kb > band.max_kb or (band.contains(kb) and kb > band.target_kb)


def _binary_search(
    build: DocumentBuilder,
    band: SizeBand,
    start: CandidateEncoding,
    outcome: SearchOutcome
) -> CandidateEncoding:
    """
    Narrow [q_low, q_high] around the target.

    Invariant: QUALITY_MIN <= q_low, q_high <= QUALITY_MAX, and every
    quality tried lies inside the bounds at the time it is tried.
    """
    best = start
    q_low, q_high = QUALITY_MIN, QUALITY_MAX
    quality = start.settings.quality
    kb = start.kb

    for _ in range(MAX_SEARCH_ITERATIONS):
        if _settled(kb, band):
            break

        if _needs_smaller(kb, band):
            q_high = min(q_high, quality - 1)
        else:
            q_low = max(q_low, quality + 1)

        if q_low > q_high:
            break

        quality = (q_low + q_high) // 2
        outcome.iterations += 1
        candidate = try_build(build, replace(start.settings, quality=quality))

        if candidate is None:
            # Treat a failed encode as too large and try cheaper settings
            kb = float("inf")
            continue

        kb = candidate.kb
        if candidate.beats(best, band):
            best = candidate

    logger.info(
        f"Quality search: {outcome.iterations} iteration(s), "
        f"best q={best.settings.quality} -> {best.kb:.1f}KB"
    )
    return best


def _downscale(
    build: DocumentBuilder,
    band: SizeBand,
    best: CandidateEncoding,
    outcome: SearchOutcome
) -> CandidateEncoding:
    """Shrink pixel dimensions at the best quality until under band.max or the floor."""
    scale = best.settings.scale
    while scale > DOWNSCALE_FLOOR and best.kb > band.max_kb:
        scale = max(DOWNSCALE_FLOOR, round(scale - DOWNSCALE_STEP, 2))
        outcome.downscaled = True

        candidate = try_build(build, replace(best.settings, scale=scale))
        if candidate is not None and candidate.kb <= best.kb:
            best = candidate

    logger.info(f"Downscale: scale={best.settings.scale:.2f} -> {best.kb:.1f}KB")
    return best


def _aggressive_subsampling(
    build: DocumentBuilder,
    best: CandidateEncoding,
    outcome: SearchOutcome
) -> CandidateEncoding:
    outcome.aggressive_subsampling = True
    settings = replace(best.settings, subsampling=Subsampling.AGGRESSIVE)
    candidate = try_build(build, settings)
    if candidate is not None and candidate.kb <= best.kb:
        best = candidate

    logger.info(f"Subsampling {best.settings.subsampling.value} -> {best.kb:.1f}KB")
    return best


def search_quality(build: DocumentBuilder, band: SizeBand) -> SearchOutcome:
    """
    Search encoding settings for a document that fits the band.

    Args:
        build: Callable assembling the full document for given settings
        band: Target window in KB

    Returns:
        SearchOutcome whose best candidate is either in band or the
        closest reachable one (it may still be over band.max)

    Raises:
        EncodingError: if the starting candidate cannot be built
    """
    start = _build(build, EncodingSettings(quality=QUALITY_START))
    outcome = SearchOutcome(best=start)

    if band.contains(start.kb):
        logger.info(f"Start q={QUALITY_START} already in {band}: {start.kb:.1f}KB")
        return outcome

    best = _binary_search(build, band, start, outcome)

    if best.kb > band.max_kb:
        best = _downscale(build, band, best, outcome)

    if best.kb > band.max_kb:
        best = _aggressive_subsampling(build, best, outcome)

    outcome.best = best
    return outcome
