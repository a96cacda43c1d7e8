"""Byte-frequency fingerprint renderer.

This module counts how often each of the 256 byte values occurs across a set of
files, scales the counts into an 8-bit intensity map and renders the map as a
16x16 grayscale PNG in which frequent byte values appear darker. Byte value
``i`` lives at column ``i % 16`` and row ``i // 16``, so the image reads like a
hex table of the input.
"""

from __future__ import annotations

import argparse
import functools
import glob
import io
import logging
import os
import re
import sys
from dataclasses import dataclass
from pathlib import Path
from typing import BinaryIO, Iterable, List, Optional, Sequence, Tuple

from PIL import Image


LOG = logging.getLogger("bytemap")

GRID_SIZE = 16
BYTE_VALUES = GRID_SIZE * GRID_SIZE
DEFAULT_CHUNK_SIZE = 1 << 20

ByteCount = List[int]
NormalizedByteCount = Tuple[int, ...]
Grid = Tuple[Tuple[int, ...], ...]


class BytemapError(Exception):
    """Base class for failures that abort a run."""


class PatternError(BytemapError):
    """A glob pattern could not be parsed."""

    def __init__(self, pattern: str, reason: str) -> None:
        super().__init__(f"bad pattern {pattern!r}: {reason}")
        self.pattern = pattern


class ReadError(BytemapError):
    """An input file could not be opened or read."""


class EncodingError(BytemapError):
    """The image could not be encoded or written out."""


class ConfigError(BytemapError):
    """A configuration value is out of range."""


@dataclass(frozen=True)
class Config:
    patterns: Tuple[str, ...]
    excludes: Tuple[str, ...] = ()
    scale: int = 1
    include_zero: bool = False
    chunk_size: int = DEFAULT_CHUNK_SIZE
    output: Optional[Path] = None

    def __post_init__(self) -> None:
        if self.scale < 1:
            raise ConfigError(f"scale must be a positive integer, got {self.scale}")
        if self.chunk_size < 1:
            raise ConfigError(
                f"chunk size must be a positive integer, got {self.chunk_size}"
            )
        for pattern in self.patterns + self.excludes:
            compile_pattern(pattern)

    @classmethod
    def from_args(cls, args: argparse.Namespace) -> "Config":
        return cls(
            patterns=tuple(args.patterns),
            excludes=tuple(args.exclude),
            scale=args.scale,
            include_zero=args.include_zero,
            chunk_size=args.chunk_size,
            output=args.output,
        )


def build_parser() -> argparse.ArgumentParser:
    parser = argparse.ArgumentParser(
        prog="bytemap",
        description=(
            "Count byte values across the files matching the given glob patterns "
            "and write a 16x16 grayscale PNG where darker pixels mark more "
            "frequent byte values."
        ),
    )
    parser.add_argument(
        "patterns",
        nargs="*",
        metavar="PATTERN",
        help="Shell glob pattern selecting input files (repeatable)",
    )
    parser.add_argument(
        "--exclude",
        action="append",
        default=[],
        metavar="PATTERN",
        help="Skip files whose path matches this glob pattern (repeatable)",
    )
    parser.add_argument(
        "--scale",
        type=int,
        default=1,
        help="Integer factor used to enlarge the 16x16 image (default: 1)",
    )
    parser.add_argument(
        "--include-zero",
        action="store_true",
        help=(
            "Let the count of NUL bytes take part in choosing the brightness "
            "scale. By default it is ignored so padding does not wash out the map."
        ),
    )
    parser.add_argument(
        "-o",
        "--output",
        type=Path,
        default=None,
        help="Write the PNG to this path instead of standard output",
    )
    parser.add_argument(
        "--chunk-size",
        type=int,
        default=DEFAULT_CHUNK_SIZE,
        help="Number of bytes to read per chunk when streaming files",
    )
    parser.add_argument(
        "-q",
        "--quiet",
        action="store_true",
        help="Do not report each file as it is read",
    )
    return parser


def setup_logging(quiet: bool) -> None:
    LOG.handlers.clear()
    handler = logging.StreamHandler(sys.stderr)
    handler.setFormatter(logging.Formatter("%(message)s"))
    LOG.addHandler(handler)
    LOG.setLevel(logging.WARNING if quiet else logging.INFO)
    LOG.propagate = False


@functools.lru_cache(maxsize=None)
def compile_pattern(pattern: str) -> "re.Pattern[str]":
    """Translate a shell glob into an anchored regular expression.

    ``*`` and ``?`` never match the path separator, so ``*.bin`` does not reach
    into subdirectories. Character classes support ranges and negation with
    either ``!`` or ``^``; a ``]`` right after the opening bracket is literal.

    Backslash is an ordinary character here, as it is for :mod:`glob`, so
    ``\\*`` does not match a literal star. Use ``[*]`` for that instead.
    """

    sep = re.escape(os.sep)
    parts = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char == "*":
            parts.append(f"[^{sep}]*")
        elif char == "?":
            parts.append(f"[^{sep}]")
        elif char == "[":
            end = i
            if end < n and pattern[end] in "!^":
                end += 1
            if end < n and pattern[end] == "]":
                end += 1
            while end < n and pattern[end] != "]":
                end += 1
            if end >= n:
                raise PatternError(pattern, "unterminated character class")
            parts.append(_translate_class(pattern, pattern[i:end], sep))
            i = end + 1
        else:
            parts.append(re.escape(char))
    return re.compile("".join(parts) + r"\Z", re.DOTALL)


def _translate_class(pattern: str, body: str, sep: str) -> str:
    negate = body[:1] in ("!", "^")
    if negate:
        body = body[1:]

    items = []
    j = 0
    while j < len(body):
        if j + 2 < len(body) and body[j + 1] == "-":
            low, high = body[j], body[j + 2]
            if low > high:
                raise PatternError(pattern, f"reversed range {low}-{high}")
            items.append(f"{re.escape(low)}-{re.escape(high)}")
            j += 3
        else:
            items.append(re.escape(body[j]))
            j += 1

    if negate:
        return f"[^{sep}{''.join(items)}]"
    return f"[{''.join(items)}]"


def to_glob_pattern(pattern: str) -> str:
    """Rewrite ``pattern`` for :func:`glob.glob`, which only negates on ``!``."""

    compile_pattern(pattern)
    out = []
    i, n = 0, len(pattern)
    while i < n:
        char = pattern[i]
        i += 1
        if char != "[":
            out.append(char)
            continue
        end = i
        if pattern[end] in "!^":
            end += 1
        if pattern[end] == "]":
            end += 1
        while pattern[end] != "]":
            end += 1
        body = pattern[i:end]
        if body.startswith("^"):
            body = "!" + body[1:]
        out.append(f"[{body}]")
        i = end + 1
    return "".join(out)


def is_excluded(path: str, patterns: Iterable[str]) -> bool:
    """Return True when ``path`` matches any of ``patterns``, checked in order."""

    for pattern in patterns:
        if compile_pattern(pattern).match(path):
            return True
    return False


def empty_counts() -> ByteCount:
    return [0] * BYTE_VALUES


def scan(source: BinaryIO, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ByteCount:
    """Count every byte value in ``source`` until it is exhausted.

    The result does not depend on ``chunk_size``; it only bounds how much is
    held in memory at once.
    """

    if chunk_size < 1:
        raise ConfigError(f"chunk size must be a positive integer, got {chunk_size}")

    counts = empty_counts()
    while True:
        try:
            chunk = source.read(chunk_size)
        except OSError as exc:
            raise ReadError(f"read failed: {exc}") from exc
        if not chunk:
            break
        for value in chunk:
            counts[value] += 1
    return counts


def scan_path(path: str, chunk_size: int = DEFAULT_CHUNK_SIZE) -> ByteCount:
    LOG.info("reading %s", path)
    try:
        handle = open(path, "rb")
    except OSError as exc:
        raise ReadError(f"cannot open {path}: {exc}") from exc

    with handle:
        try:
            return scan(handle, chunk_size)
        except ReadError as exc:
            raise ReadError(f"cannot read {path}: {exc.__cause__}") from exc


def merge(a: Sequence[int], b: Sequence[int]) -> ByteCount:
    """Return the element-wise sum of two histograms."""

    if len(a) != BYTE_VALUES or len(b) != BYTE_VALUES:
        raise ValueError(f"histograms must have {BYTE_VALUES} buckets")
    return [left + right for left, right in zip(a, b)]


def normalize(counts: Sequence[int], include_zero: bool) -> NormalizedByteCount:
    """Scale raw counts into 0-255 relative to the largest eligible bucket.

    Bucket 0 only competes for the maximum when ``include_zero`` is set, but it
    is always scaled against whatever maximum was found. When it outgrows that
    maximum it saturates at 255.
    """

    if len(counts) != BYTE_VALUES:
        raise ValueError(f"histogram must have {BYTE_VALUES} buckets, got {len(counts)}")

    eligible = counts if include_zero else counts[1:]
    max_value = max(eligible)
    if max_value == 0:
        return (0,) * BYTE_VALUES

    return tuple(min(255, count * 255 // max_value) for count in counts)


def to_raster(normalized: Sequence[int]) -> Grid:
    """Lay the 256 values out row-major on a 16x16 grid, inverted."""

    return tuple(
        tuple(255 - normalized[y * GRID_SIZE + x] for x in range(GRID_SIZE))
        for y in range(GRID_SIZE)
    )


def upscale(grid: Grid, factor: int) -> Grid:
    """Blow every pixel up into a ``factor`` x ``factor`` block."""

    if factor < 1:
        raise ConfigError(f"scale must be a positive integer, got {factor}")

    height = len(grid)
    width = len(grid[0]) if height else 0
    return tuple(
        tuple(grid[y // factor][x // factor] for x in range(width * factor))
        for y in range(height * factor)
    )


def render(counts: Sequence[int], include_zero: bool, scale: int) -> Grid:
    return upscale(to_raster(normalize(counts, include_zero)), scale)


def encode_png(grid: Grid) -> bytes:
    """Encode ``grid`` as an 8-bit grayscale PNG."""

    height = len(grid)
    width = len(grid[0]) if height else 0
    image = Image.new("L", (width, height))
    image.putdata([value for row in grid for value in row])

    buffer = io.BytesIO()
    try:
        image.save(buffer, format="PNG")
    except (OSError, ValueError) as exc:
        raise EncodingError(f"cannot encode PNG: {exc}") from exc
    return buffer.getvalue()


def expand_patterns(patterns: Iterable[str]) -> List[str]:
    """Resolve glob patterns against the filesystem, in argument order."""

    paths: List[str] = []
    for pattern in patterns:
        paths.extend(sorted(glob.glob(to_glob_pattern(pattern), include_hidden=True)))
    return paths


def accumulate(
    paths: Iterable[str],
    excludes: Sequence[str] = (),
    chunk_size: int = DEFAULT_CHUNK_SIZE,
) -> ByteCount:
    cumulative = empty_counts()
    for path in paths:
        if is_excluded(path, excludes):
            LOG.debug("skipping %s", path)
            continue
        cumulative = merge(cumulative, scan_path(path, chunk_size))
    return cumulative


def _silence_stdout() -> None:
    devnull = os.open(os.devnull, os.O_WRONLY)
    os.dup2(devnull, sys.stdout.fileno())
    os.close(devnull)


def write_output(data: bytes, output: Optional[Path], stream: Optional[BinaryIO]) -> None:
    try:
        if output is not None:
            output.write_bytes(data)
            return
        if stream is None:
            try:
                sys.stdout.buffer.write(data)
                sys.stdout.buffer.flush()
            except BrokenPipeError:
                # the interpreter flushes stdout again on exit
                _silence_stdout()
                raise
            return
        stream.write(data)
        stream.flush()
    except OSError as exc:
        target = output if output is not None else "standard output"
        raise EncodingError(f"cannot write image to {target}: {exc}") from exc


def run(config: Config, stream: Optional[BinaryIO] = None) -> Grid:
    """Render the byte map for ``config`` and write it out.

    The PNG is built in memory first so that nothing is written if any input
    fails. Returns the rendered grid.
    """

    paths = expand_patterns(config.patterns)
    counts = accumulate(paths, config.excludes, config.chunk_size)
    grid = render(counts, config.include_zero, config.scale)
    write_output(encode_png(grid), config.output, stream)
    return grid


def main(argv: Optional[Sequence[str]] = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    if not args.patterns:
        parser.print_help(sys.stderr)
        return

    setup_logging(args.quiet)
    try:
        run(Config.from_args(args))
    except BytemapError as exc:
        raise SystemExit(f"error: {exc}") from exc


if __name__ == "__main__":
    main()
