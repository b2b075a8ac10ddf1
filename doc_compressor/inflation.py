"""
inflation.py - Lossless bump for documents that came out too small.

When the best candidate is under band.min, one page is swapped to a
lossless encoding to add bytes back. Smallest page first: the heuristic
limits the visible change, it does not guarantee the closest size.
Never more than one page is lossless. A page's remaining levels are
skipped once one overshoots band.max, assuming lower zlib effort never
shrinks the output; zlib does not guarantee that, so this is a shortcut.
"""

import logging
from dataclasses import replace
from typing import List, Sequence

from .search import CandidateEncoding, DocumentBuilder, SizeBand, try_build

logger = logging.getLogger(__name__)

# zlib effort, most compressed first
LOSSLESS_LEVELS = tuple(range(9, -1, -1))


def inflation_order(page_areas: Sequence[int]) -> List[int]:
    """Page indexes by ascending pixel area, ties in page order."""
    return sorted(range(len(page_areas)), key=lambda i: page_areas[i])


def inflate(
    build: DocumentBuilder,
    best: CandidateEncoding,
    band: SizeBand,
    page_areas: Sequence[int]
) -> CandidateEncoding:
    """
    Re-encode a single page losslessly to pull an undersized document into the band.

    Args:
        build: Callable assembling the full document for given settings
        best: Best candidate from the quality search
        band: Target window in KB
        page_areas: Pixel area of each page, by page index

    Returns:
        The first in-band candidate, otherwise the one closest to
        band.target (which may be `best` itself)
    """
    if best.kb >= band.min_kb:
        return best

    logger.info(f"{best.kb:.1f}KB is under {band}, trying lossless bump")

    chosen = best
    for index in inflation_order(page_areas):
        for level in LOSSLESS_LEVELS:
            settings = replace(best.settings, lossless_page=index, lossless_level=level)
            candidate = try_build(build, settings)
            if candidate is None:
                continue

            if band.contains(candidate.kb):
                logger.info(f"Lossless page {index} @ level {level}: {candidate.kb:.1f}KB in band")
                return candidate

            if band.distance(candidate.kb) < band.distance(chosen.kb):
                chosen = candidate

            if candidate.kb > band.max_kb:
                # Heuristic: lower levels of this page are assumed to only get bigger
                break

    logger.info(f"Lossless bump best effort: {chosen.settings.describe()} -> {chosen.kb:.1f}KB")
    return chosen
