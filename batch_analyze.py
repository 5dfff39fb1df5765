#!/usr/bin/env python3
"""Batch analyze a directory of captured frames and print a summary per image."""

import argparse
import logging
import sys
import time
from pathlib import Path

from analyze import AnalysisEngine, add_analysis_arguments, build_config, run_analysis
from errors import InvalidInput
from source import SourceImage


def find_images(directory: Path) -> list[Path]:
    """Find all image files in directory."""
    extensions = {'.jpg', '.jpeg', '.png', '.webp', '.bmp', '.tif', '.tiff'}
    images = []
    for ext in extensions:
        images.extend(directory.glob(f'*{ext}'))
        images.extend(directory.glob(f'*{ext.upper()}'))
    return sorted(set(images))


def summarize(reports: list) -> str:
    """One-line summary of an image's reports."""
    parts = []
    for report in reports:
        if not report.ok:
            parts.append(f"{report.mode.value}=ERROR")
        elif report.mode.value == 'palette':
            parts.append("palette=" + " ".join(c.hex for c in report.result.clusters))
        else:
            parts.append(f"{report.mode.value}={report.elapsed * 1000:.0f}ms")
    return " | ".join(parts)


def main():
    parser = argparse.ArgumentParser(
        description='Batch analyze captured frames.'
    )
    parser.add_argument(
        '--input', '-i',
        required=True,
        help='Directory containing images to analyze'
    )
    add_analysis_arguments(parser)
    args = parser.parse_args()

    if args.verbose:
        logging.basicConfig(level=logging.DEBUG)

    input_dir = Path(args.input)
    if not input_dir.is_dir():
        print(f"Error: Input directory not found: {input_dir}", file=sys.stderr)
        sys.exit(2)

    try:
        config = build_config(args)
        config.validate()
    except InvalidInput as e:
        print(f"Error: {e}", file=sys.stderr)
        sys.exit(2)

    images = find_images(input_dir)
    if not images:
        print(f"No images found in {input_dir}", file=sys.stderr)
        sys.exit(2)

    total = len(images)
    succeeded = 0
    failed = []

    batch_start = time.perf_counter()

    # One engine for the whole batch: buffers are reused while resolution holds
    with AnalysisEngine(config) as engine:
        for i, image_path in enumerate(images, 1):
            try:
                image = SourceImage.from_file(str(image_path))
            except (FileNotFoundError, InvalidInput) as e:
                print(f"[{i}/{total}] {image_path.name} → ERROR: {e}", file=sys.stderr)
                failed.append((image_path.name, str(e)))
                continue

            reports = run_analysis(engine, image, args.mode)
            print(f"[{i}/{total}] {image_path.name} ({image.width}x{image.height}) → {summarize(reports)}")

            errors = [r for r in reports if not r.ok]
            if errors:
                message = "; ".join(f"{r.mode.value}: {r.error.message}" for r in errors)
                failed.append((image_path.name, message))
            else:
                succeeded += 1

    batch_elapsed = time.perf_counter() - batch_start

    # Summary
    print()
    print(f"Completed: {succeeded}/{total} succeeded in {batch_elapsed:.2f}s")
    if succeeded > 0:
        print(f"Average: {batch_elapsed / total:.2f}s per image")
    if failed:
        print(f"Failed ({len(failed)}):")
        for name, error in failed:
            print(f"  - {name}: {error}")
        sys.exit(1)


if __name__ == '__main__':
    main()
