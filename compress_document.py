#!/usr/bin/env python3
"""
compress_document.py - Band-seeking document compression CLI.

TARGET: 275-295 KB per document (default band)
PHILOSOPHY: Land inside the band with the best quality that fits.

Usage:
    python compress_document.py input.pdf -o output.pdf
    python compress_document.py scan.jpg --min 95 --max 105 --target 100
    python compress_document.py *.pdf --output-dir ./compressed/
"""

import argparse
import json
import logging
import sys
from pathlib import Path

# Add parent to path when running as script
if __name__ == "__main__":
    sys.path.insert(0, str(Path(__file__).parent))

from doc_compressor.errors import CompressionError
from doc_compressor.image_target import compress_image_to_target
from doc_compressor.pdf_writer import image_to_a4_pdf
from doc_compressor.pipeline import (
    DEFAULT_BAND,
    EXTREME_BAND,
    CompressionOptions,
    CompressionRequest,
    CompressorConfig,
    DocumentCompressor,
)
from doc_compressor.rasterize import is_pdf
from doc_compressor.search import SizeBand


def setup_logging(verbose: bool = False):
    """Configure logging."""
    level = logging.DEBUG if verbose else logging.INFO
    logging.basicConfig(
        level=level,
        format="%(asctime)s [%(levelname)s] %(message)s",
        datefmt="%H:%M:%S"
    )


def parse_args(argv=None):
    """Parse command-line arguments."""
    parser = argparse.ArgumentParser(
        description="Compress PDFs and images into a size band. Default: 275-295 KB.",
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog="""
Examples:
  python compress_document.py scan.pdf -o compressed.pdf
  python compress_document.py scan.pdf --gray --contrast-boost 0.1
  python compress_document.py *.pdf --output-dir ./out/
  python compress_document.py photo.jpg --image-target 250 --a4

Strategy:
  - Already under target: copied as-is
  - Ghostscript pass for 300 KB - 1000 MB PDFs, kept if in band
  - Otherwise pages are rasterized and JPEG quality is searched,
    then gentle downscale, then 4:2:0 chroma subsampling
  - Too small: one page is stored losslessly to land in band
"""
    )

    parser.add_argument(
        "input",
        nargs="+",
        type=Path,
        help="Input PDF or image file(s)"
    )

    output = parser.add_mutually_exclusive_group()
    output.add_argument(
        "-o", "--output",
        type=Path,
        help="Output file (single input only)"
    )
    output.add_argument(
        "--output-dir",
        type=Path,
        help="Output directory (for multiple files)"
    )

    band = parser.add_argument_group("size band (KB)")
    band.add_argument(
        "--min", type=float, default=DEFAULT_BAND.min_kb, help="Band minimum (default: %(default)g)"
    )
    band.add_argument(
        "--max", type=float, default=DEFAULT_BAND.max_kb, help="Band maximum (default: %(default)g)"
    )
    band.add_argument(
        "--target", type=float, default=DEFAULT_BAND.target_kb,
        help="Band target (default: %(default)g)"
    )
    band.add_argument(
        "--extreme",
        action="store_true",
        help=f"Raster pipeline only, aim at {EXTREME_BAND}"
    )

    parser.add_argument(
        "-g", "--gray",
        action="store_true",
        help="Convert output to grayscale"
    )

    parser.add_argument(
        "--contrast-boost",
        type=float,
        default=0.0,
        help="Legibility boost 0-0.2 (default: 0)"
    )

    gs = parser.add_mutually_exclusive_group()
    gs.add_argument(
        "--force-gs",
        action="store_true",
        help="Try Ghostscript regardless of input size"
    )
    gs.add_argument(
        "--no-gs",
        action="store_true",
        help="Never use Ghostscript"
    )

    parser.add_argument(
        "-d", "--dpi",
        type=int,
        default=None,
        help="Render DPI 50-300 (default: 150)"
    )

    parser.add_argument(
        "--workers",
        type=int,
        default=None,
        help="Parallel page encoders (0 = auto, default: auto-detect CPU count)"
    )

    parser.add_argument(
        "--analyze",
        action="store_true",
        help="Print what compression would involve and exit"
    )

    parser.add_argument(
        "--image-target",
        type=float,
        metavar="KB",
        help="Compress an image to at most KB as JPEG instead of banding"
    )

    parser.add_argument(
        "--a4",
        action="store_true",
        help="With --image-target: place the result on an A4 PDF page"
    )

    parser.add_argument(
        "-v", "--verbose",
        action="store_true",
        help="Verbose output"
    )

    return parser.parse_args(argv)


def build_compressor(args) -> DocumentCompressor:
    config = CompressorConfig.from_env()
    if args.dpi is not None:
        config.dpi = args.dpi
    if args.workers is not None:
        config.max_workers = args.workers
    if args.no_gs or args.extreme:
        config.use_ghostscript = False
    return DocumentCompressor(config)


def output_path_for(input_path: Path, args, batch: bool) -> Path:
    suffix = ".jpg" if args.image_target and not args.a4 else ".pdf"
    if not batch and args.output:
        return args.output
    directory = args.output_dir or input_path.parent
    return directory / f"{input_path.stem}_compressed{suffix}"


def run_image_target(input_path: Path, output_path: Path, args) -> tuple:
    result = compress_image_to_target(input_path, args.image_target)
    if not result.success:
        return False, result.original_size, 0, result.error

    data = result.data
    try:
        if args.a4:
            data = image_to_a4_pdf(data)
        output_path.write_bytes(data)
    except (ValueError, OSError) as e:
        return False, result.original_size, 0, str(e)
    return True, result.original_size, len(data), None


def run_one(
    compressor: DocumentCompressor,
    input_path: Path,
    output_path: Path,
    band: SizeBand,
    args
) -> tuple:
    """Compress one file, returns (success, input_size, output_size, error)."""
    if args.image_target:
        return run_image_target(input_path, output_path, args)

    request = CompressionRequest(
        source=input_path,
        output_path=output_path,
        band=band,
        options=CompressionOptions(
            grayscale=args.gray,
            contrast_boost=args.contrast_boost,
            force_external_tool=args.force_gs
        )
    )
    if args.extreme:
        result = compressor.compress_raster(request)
    else:
        result = compressor.compress(request)

    if result.success:
        if result.method == "none" and not args.output and not is_pdf(result.data):
            # Unchanged image input keeps its own extension
            kept = output_path.with_suffix(input_path.suffix)
            output_path.replace(kept)
            result.output_path = kept
        print(f"\n{result.summary()}")
    return result.success, result.original_size, result.compressed_size, result.error


def main(argv=None):
    args = parse_args(argv)
    setup_logging(args.verbose)

    # Validate inputs
    valid_inputs = []
    for p in args.input:
        if not p.exists():
            print(f"Error: File not found: {p}", file=sys.stderr)
            continue
        valid_inputs.append(p)

    if not valid_inputs:
        print("Error: No valid input files", file=sys.stderr)
        sys.exit(1)

    try:
        band = EXTREME_BAND if args.extreme else SizeBand(args.min, args.max, args.target)
    except ValueError as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(1)

    compressor = build_compressor(args)

    if args.analyze:
        failed = 0
        for input_path in valid_inputs:
            try:
                analysis = compressor.analyze(input_path, band)
            except (CompressionError, OSError) as e:
                print(f"Error: {input_path.name}: {e}", file=sys.stderr)
                failed += 1
                continue
            print(f"{input_path.name}: {json.dumps(analysis.to_dict(), indent=2)}")
        sys.exit(1 if failed else 0)

    # Determine output
    batch = len(valid_inputs) > 1
    if batch:
        if args.output:
            print("Error: Use --output-dir for multiple files", file=sys.stderr)
            sys.exit(1)
        if not args.output_dir:
            args.output_dir = Path(".")
    if args.output_dir:
        args.output_dir.mkdir(parents=True, exist_ok=True)

    total_in = 0
    total_out = 0
    successes = 0

    for i, input_path in enumerate(valid_inputs):
        output_path = output_path_for(input_path, args, batch)
        if batch:
            print(f"\n[{i+1}/{len(valid_inputs)}] {input_path.name}")

        ok, size_in, size_out, error = run_one(compressor, input_path, output_path, band, args)
        total_in += size_in
        if ok:
            total_out += size_out
            successes += 1
        else:
            print(f"Error: {input_path.name}: {error}", file=sys.stderr)

    if batch:
        print(f"\n{'='*50}")
        print(f"Batch complete: {successes}/{len(valid_inputs)} files")
        print(f"Total: {total_in:,} -> {total_out:,} bytes")
        if total_in > 0:
            print(f"Reduction: {(1 - total_out/total_in)*100:.1f}%")

    sys.exit(0 if successes == len(valid_inputs) else 1)


if __name__ == "__main__":
    main()
