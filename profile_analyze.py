#!/usr/bin/env python3
"""Profile the analysis modes to identify performance bottlenecks."""

import cProfile
import pstats
import io
import sys
import time
from pathlib import Path

from analyze import AnalysisEngine, AnalysisMode
from extract_colors import DominantColorExtractor
from source import SourceImage


def profile_image(image_path: str, verbose: bool = True):
    """Time every analysis mode on a single image."""

    if verbose:
        print(f"\n{'='*60}")
        print(f"Profiling: {Path(image_path).name}")
        print(f"{'='*60}")

    start = time.perf_counter()
    image = SourceImage.from_file(image_path)
    timings = {'load': time.perf_counter() - start}

    if verbose:
        print(f"  Size: {image.width}x{image.height} ({image.total_pixels:,} pixels)")

    with AnalysisEngine() as engine:
        for mode in AnalysisMode:
            # First call allocates; time the steady state
            engine.analyze(image, mode)
            start = time.perf_counter()
            report = engine.analyze(image, mode)
            timings[mode.value] = time.perf_counter() - start
            if verbose and not report.ok:
                print(f"  {mode.value}: {report.error.message}")

    total = sum(timings.values())
    timings['total'] = total

    if verbose:
        print(f"\nMode timings:")
        for stage, t in timings.items():
            pct = (t / total * 100) if stage != 'total' else 100
            print(f"  {stage:20s}: {t:6.3f}s ({pct:5.1f}%)")

    return timings, image


def detailed_profile(image: SourceImage):
    """Run detailed cProfile on dominant color extraction (the main compute stage)."""

    print(f"\n{'='*60}")
    print(f"Detailed profile of DominantColorExtractor.extract()")
    print(f"{'='*60}")

    extractor = DominantColorExtractor()
    extractor.allocate()

    profiler = cProfile.Profile()
    profiler.enable()
    palette = extractor.extract(image)
    profiler.disable()
    extractor.release()

    stream = io.StringIO()
    stats = pstats.Stats(profiler, stream=stream)
    stats.sort_stats('cumulative')
    stats.print_stats(30)  # Top 30 functions

    print(stream.getvalue())

    return palette


def main():
    if len(sys.argv) > 1:
        images = [Path(p) for p in sys.argv[1:]]
    else:
        images_dir = Path(__file__).parent / "source_images"
        images = sorted(images_dir.glob("*.jpeg")) + sorted(images_dir.glob("*.png"))

    if not images:
        print("Usage: profile_analyze.py IMAGE [IMAGE ...] (or place images in source_images/)")
        sys.exit(2)

    print(f"Found {len(images)} images")

    all_timings = []
    loaded = []
    for path in images:
        try:
            timings, image = profile_image(str(path))
        except (FileNotFoundError, ValueError) as e:
            print(f"Error: {e}", file=sys.stderr)
            continue
        all_timings.append((path.name, timings))
        loaded.append(image)

    # Summary
    print(f"\n{'='*60}")
    print("SUMMARY")
    print(f"{'='*60}")
    print(f"{'Image':<35} {'Palette':>10} {'Saliency':>10} {'Total':>8}")
    print("-" * 66)
    for name, timings in all_timings:
        print(f"{name:<35} {timings['palette']:>9.3f}s {timings['saliency']:>9.3f}s "
              f"{timings['total']:>7.3f}s")

    # Detailed profile on first image
    if loaded:
        detailed_profile(loaded[0])


if __name__ == "__main__":
    main()
