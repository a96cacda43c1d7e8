#!/usr/bin/env python3
"""Benchmark byte counting with different read chunk sizes."""

import random
import tempfile
import time
from pathlib import Path

import bytemap


def generate_random_file(size: int) -> Path:
    """Generate a file with truly random bytes."""
    tmp = tempfile.NamedTemporaryFile(delete=False, suffix='.bin')
    tmp.close()
    path = Path(tmp.name)

    with path.open("wb") as f:
        # Generate in chunks to avoid memory issues
        chunk_size = 1024 * 1024
        remaining = size
        while remaining > 0:
            write_size = min(chunk_size, remaining)
            f.write(random.randbytes(write_size))
            remaining -= write_size

    return path


def main():
    size = 20_000_000
    chunk_sizes = [
        (4 * 1024, "4 KiB"),
        (64 * 1024, "64 KiB"),
        (bytemap.DEFAULT_CHUNK_SIZE, "1 MiB (default)"),
        (16 * 1024 * 1024, "16 MiB"),
    ]

    print("=" * 80)
    print("BYTE COUNT CHUNK SIZE BENCHMARK")
    print("=" * 80)

    print(f"\nGenerating random test file ({size:,} bytes)...")
    test_file = generate_random_file(size)

    try:
        results = []
        for chunk_size, label in chunk_sizes:
            print(f"Testing {label}...", flush=True)
            start = time.perf_counter()
            with test_file.open("rb") as handle:
                counts = bytemap.scan(handle, chunk_size)
            results.append((label, time.perf_counter() - start, counts))

        baseline = results[0][1]
        print()
        print(f"{'Chunk size':<20} {'Time':>12} {'Speedup':>10}")
        print("-" * 80)
        for label, elapsed, _ in results:
            print(f"{label:<20} {elapsed:>10.2f}s {baseline/elapsed:>10.2f}x")

        # Every chunk size must agree on the histogram
        reference = results[0][2]
        mismatched = [label for label, _, counts in results if counts != reference]
        print()
        print(f"Bytes counted: {sum(reference):,}")
        print(f"Mismatched histograms: {', '.join(mismatched) or 'none'}")

    finally:
        print(f"\nCleaning up {test_file}")
        test_file.unlink()

    print()


if __name__ == "__main__":
    main()
