#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic>=2",
# ]
# ///
"""
Filter paired FASTQ files (R1/R2) by sequence length.

Read pairs are kept only when both mates are longer than a threshold. Pairs can
additionally be dropped by sequencer tile (the fifth colon-delimited field of an
Illumina-style R1 header), and kept reads can be trimmed to a fixed length per
side. Inputs may be gzip-compressed or plain text; outputs are plain FASTQ.
"""

from __future__ import annotations

import argparse
import gzip
import sys
from dataclasses import dataclass, field
from enum import Enum, auto
from typing import IO, TYPE_CHECKING, NamedTuple

from loguru import logger
from pydantic import Field, ValidationError, ValidationInfo, field_validator
from pydantic.dataclasses import dataclass as validated_dataclass

if TYPE_CHECKING:
    from collections.abc import Sequence

__version__ = "1.0.0"

# ------------------------------- CONSTANTS -------------------------------- #

# Capped read size for --unsafe; one byte is reserved, as with gzgets()
UNSAFE_BLOCK_SIZE: int = 4096

GZIP_MAGIC: bytes = b"\x1f\x8b"

# 0-based index of the tile field in instrument:run:flowcell:lane:tile:x:y
TILE_FIELD: int = 4

OUTPUT_SUFFIX = "_filtered.fastq"
INPUT_EXTENSIONS = (".fastq.gz", ".fastq")

# Emit a progress debug line after checking this many read pairs
DEBUG_EVERY: int = 100_000

LOG_FORMAT = "[{time:YYYY-MM-DD HH:mm:ss}][fastq_filterer] {level}: {message}"


# ------------------------------- DATA TYPES -------------------------------- #


class FastqRecord(NamedTuple):
    """One FASTQ entry as four raw lines, trailing newlines retained."""

    header: bytes
    sequence: bytes
    strand: bytes
    quality: bytes

    @property
    def seq_len(self) -> int:
        """Number of bases, not counting the line terminator."""
        return len(self.sequence.rstrip(b"\r\n"))


class ReadMode(Enum):
    """How lines are pulled from an input stream. Chosen once per run."""

    SAFE = auto()  # Unbounded lines, never truncated
    UNSAFE = auto()  # Fixed-size reads, faster but long lines are cut

    def readln(self, handle: IO[bytes]) -> bytes:
        """
        Read the next raw line from `handle`, newline included.

        Returns b"" once the stream is exhausted. In UNSAFE mode at most
        UNSAFE_BLOCK_SIZE - 1 bytes are returned and anything past that stays
        on the stream, so this is a throughput trade-off and not a guarantee
        that records stay aligned.
        """
        match self:
            case ReadMode.SAFE:
                return handle.readline()
            case ReadMode.UNSAFE:
                return handle.readline(UNSAFE_BLOCK_SIZE - 1)


@dataclass
class RunCounts:
    """Read pair counters for one filtering run."""

    checked: int = 0
    removed: int = 0
    kept: int = 0


@dataclass
class FilterResult:
    """Outcome of a run: counters plus whether the inputs fell out of step."""

    counts: RunCounts = field(default_factory=RunCounts)
    mismatch: bool = False
    mismatch_line: int | None = None

    @property
    def exit_status(self) -> int:
        return 1 if self.mismatch else 0


# ----------------------------- CONFIGURATION ------------------------------- #


def build_output_path(input_path: str) -> str:
    """
    Convert e.g. sample_R1.fastq.gz to sample_R1_filtered.fastq. Used when
    output paths are not given.
    """
    for ext in INPUT_EXTENSIONS:
        if input_path.endswith(ext):
            return input_path[: -len(ext)] + OUTPUT_SUFFIX
    return input_path + OUTPUT_SUFFIX


def parse_remove_tiles(text: str) -> tuple[str, ...]:
    """Split a comma-separated tile list, dropping empty entries."""
    return tuple(tile for tile in text.split(",") if tile)


@validated_dataclass(frozen=True)
class FilterConfig:
    """Resolved settings for one run. Validated on construction."""

    r1_in: str = Field(min_length=1)
    r2_in: str = Field(min_length=1)
    threshold: int = Field(ge=0)
    r1_out: str | None = Field(default=None, validate_default=True)
    r2_out: str | None = Field(default=None, validate_default=True)
    trim_r1: int = Field(default=0, ge=0)
    trim_r2: int = Field(default=0, ge=0)
    remove_tiles: str | None = None
    unsafe: bool = False
    stats_file: str | None = None

    @field_validator("r1_out", "r2_out")
    @classmethod
    def derive_output_path(cls, v: str | None, info: ValidationInfo) -> str | None:
        if v:
            return v
        source = "r1_in" if info.field_name == "r1_out" else "r2_in"
        if info.data and source in info.data:
            return build_output_path(info.data[source])
        return v

    @field_validator("remove_tiles")
    @classmethod
    def tiles_not_empty(cls, v: str | None) -> str | None:
        if v is not None and not parse_remove_tiles(v):
            msg = "remove_tiles must name at least one tile"
            raise ValueError(msg)
        return v

    @property
    def tiles(self) -> tuple[str, ...]:
        if self.remove_tiles is None:
            return ()
        return parse_remove_tiles(self.remove_tiles)

    @property
    def read_mode(self) -> ReadMode:
        return ReadMode.UNSAFE if self.unsafe else ReadMode.SAFE


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at INFO (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +2.. = TRACE
      +1   = DEBUG
       0   = INFO
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 2:  # noqa: PLR2004
            level_str = "TRACE"
        case 1:
            level_str = "DEBUG"
        case 0:
            level_str = "INFO"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case d if d <= -3:  # noqa: PLR2004
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str, format=LOG_FORMAT)
    logger.debug(f"Logger configured at level: {level_str}")


# ---------------------------- HEADER UTILITIES ----------------------------- #


def tile_id(header: bytes) -> bytes | None:
    """
    Return the tile field of an Illumina-style header, or None if the header has
    fewer than five colon-delimited fields. Empty fields are skipped, so
    `a::b` counts as two fields. The header itself is never modified.
    """
    fields = [f for f in header.rstrip(b"\r\n").split(b":") if f]
    if len(fields) <= TILE_FIELD:
        return None
    return fields[TILE_FIELD]


# ------------------------------- POLICIES ---------------------------------- #


@dataclass(frozen=True)
class LengthPolicy:
    """Keep a pair only if both sequences are longer than `threshold` bases."""

    threshold: int

    def keep(self, r1: FastqRecord, r2: FastqRecord) -> bool:
        return r1.seq_len > self.threshold and r2.seq_len > self.threshold


@dataclass(frozen=True)
class TilePolicy(LengthPolicy):
    """Length check first, then drop pairs whose R1 tile is excluded."""

    tiles: tuple[bytes, ...] = ()

    def keep(self, r1: FastqRecord, r2: FastqRecord) -> bool:
        if not super().keep(r1, r2):
            return False
        tile = tile_id(r1.header)
        if tile is None:
            logger.trace(f"No tile field in header {r1.header!r}; keeping pair.")
            return True
        return tile not in self.tiles


def build_policy(config: FilterConfig) -> LengthPolicy:
    """Pick the inclusion policy for a run."""
    if config.tiles:
        return TilePolicy(
            threshold=config.threshold,
            tiles=tuple(t.encode() for t in config.tiles),
        )
    return LengthPolicy(threshold=config.threshold)


@dataclass(frozen=True)
class RecordTrimmer:
    """
    Cut sequence and quality to `length` bases. A length of 0 disables it.
    Each line keeps its own terminator (LF, CRLF or none).
    """

    length: int = 0

    def _cut(self, line: bytes) -> bytes:
        body = line.rstrip(b"\r\n")
        return body[: self.length] + line[len(body) :]

    def apply(self, record: FastqRecord) -> FastqRecord:
        if self.length <= 0 or record.seq_len <= self.length:
            return record
        return record._replace(
            sequence=self._cut(record.sequence),
            quality=self._cut(record.quality),
        )


# ----------------------------- I/O UTILITIES ------------------------------- #


def open_fastq(path: str) -> IO[bytes]:
    """Open a FASTQ for binary reading, decompressing if it is gzipped."""
    with open(path, "rb") as probe:
        compressed = probe.read(len(GZIP_MAGIC)) == GZIP_MAGIC
    logger.debug(f"Opening for read: {path} (gzip={compressed})")
    if compressed:
        return gzip.open(path, "rb")
    return open(path, "rb")  # noqa: SIM115


def open_output(path: str) -> IO[bytes]:
    """Open a plain-text FASTQ for binary writing."""
    logger.debug(f"Opening for write: {path}")
    return open(path, "wb")  # noqa: SIM115


def read_record(handle: IO[bytes], mode: ReadMode) -> FastqRecord:
    """Read header, sequence, strand and quality lines, in that order."""
    header = mode.readln(handle)
    sequence = mode.readln(handle)
    strand = mode.readln(handle)
    quality = mode.readln(handle)
    return FastqRecord(header, sequence, strand, quality)


def write_record(handle: IO[bytes], record: FastqRecord) -> None:
    handle.writelines(record)


# ------------------------------ CORE LOGIC --------------------------------- #


def filter_pairs(  # noqa: PLR0913
    r1_in: IO[bytes],
    r2_in: IO[bytes],
    r1_out: IO[bytes],
    r2_out: IO[bytes],
    policy: LengthPolicy,
    r1_trimmer: RecordTrimmer | None = None,
    r2_trimmer: RecordTrimmer | None = None,
    read_mode: ReadMode = ReadMode.SAFE,
) -> FilterResult:
    """
    Walk R1 and R2 in lockstep, writing pairs that `policy` keeps.

    Both records of a pair are read before anything is decided. The loop ends
    when either header read comes back empty; if only one side is exhausted
    the inputs had differing numbers of reads and the result is flagged as a
    mismatch.

    Args:
        r1_in, r2_in: Binary input streams
        r1_out, r2_out: Binary output streams
        policy: Inclusion predicate applied to each pair
        r1_trimmer, r2_trimmer: Applied to kept records before writing
        read_mode: Line reading strategy

    Returns:
        FilterResult with pair counters and mismatch status
    """
    r1_trimmer = r1_trimmer or RecordTrimmer()
    r2_trimmer = r2_trimmer or RecordTrimmer()
    result = FilterResult()
    counts = result.counts

    while True:
        r1 = read_record(r1_in, read_mode)
        r2 = read_record(r2_in, read_mode)

        if not r1.header or not r2.header:
            if bool(r1.header) != bool(r2.header):
                result.mismatch = True
                result.mismatch_line = counts.checked * 4
                logger.error(
                    f"Input fastqs have differing numbers of reads, from line {result.mismatch_line}",
                )
            break

        counts.checked += 1
        if policy.keep(r1, r2):
            counts.kept += 1
            write_record(r1_out, r1_trimmer.apply(r1))
            write_record(r2_out, r2_trimmer.apply(r2))
        else:
            counts.removed += 1

        if counts.checked % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: checked={counts.checked}, kept={counts.kept}, removed={counts.removed}",
            )

    # Final invariant: every checked pair is either kept or removed
    assert counts.checked == counts.kept + counts.removed, (
        f"Pair count inconsistency: checked={counts.checked}, kept={counts.kept}, removed={counts.removed}"
    )
    return result


def run_filter(config: FilterConfig) -> FilterResult:
    """Open all four streams for `config`, filter, and close them again."""
    assert config.r1_out is not None and config.r2_out is not None  # noqa: PT018

    policy = build_policy(config)
    logger.debug(f"Inclusion policy: {policy}")

    with (
        open_fastq(config.r1_in) as r1i,
        open_fastq(config.r2_in) as r2i,
        open_output(config.r1_out) as r1o,
        open_output(config.r2_out) as r2o,
    ):
        return filter_pairs(
            r1i,
            r2i,
            r1o,
            r2o,
            policy,
            r1_trimmer=RecordTrimmer(config.trim_r1),
            r2_trimmer=RecordTrimmer(config.trim_r2),
            read_mode=config.read_mode,
        )


# ------------------------------- REPORTING --------------------------------- #


def write_stats(path: str, config: FilterConfig, counts: RunCounts) -> None:
    """Write run settings and counters as `key value` lines."""
    lines = [
        f"r1i {config.r1_in}",
        f"r1o {config.r1_out}",
        f"r2i {config.r2_in}",
        f"r2o {config.r2_out}",
        f"read_pairs_checked {counts.checked}",
        f"read_pairs_removed {counts.removed}",
        f"read_pairs_remaining {counts.kept}",
    ]
    if config.trim_r1:
        lines.append(f"trim_r1 {config.trim_r1}")
    if config.trim_r2:
        lines.append(f"trim_r2 {config.trim_r2}")
    if config.remove_tiles:
        lines.append(f"remove_tiles {config.remove_tiles}")

    with open(path, "w") as fh:
        fh.write("\n".join(lines) + "\n")


def log_config(config: FilterConfig) -> None:
    logger.info(f"R1: {config.r1_in} -> {config.r1_out}")
    logger.info(f"R2: {config.r2_in} -> {config.r2_out}")
    logger.info(f"Filter threshold: {config.threshold}")
    if config.trim_r1:
        logger.info(f"Trimming R1 to {config.trim_r1}")
    if config.trim_r2:
        logger.info(f"Trimming R2 to {config.trim_r2}")
    if config.remove_tiles:
        logger.info(f"Removing tiles: {config.remove_tiles}")
    if config.unsafe:
        logger.warning(
            f"Unsafe reading enabled: lines over {UNSAFE_BLOCK_SIZE - 1} bytes will be truncated",
        )


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (INFO -> WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog="fastq_filterer",
        description=(
            "Filter paired FASTQ files, keeping read pairs where both reads are\n"
            "longer than --threshold. Optionally drop pairs by R1 tile ID and trim\n"
            "kept reads to a fixed length."
        ),
        formatter_class=argparse.RawDescriptionHelpFormatter,
    )

    # I/O
    p.add_argument("--i1", dest="r1_in", help="Input R1 FASTQ (plain or gzipped)")
    p.add_argument("--i2", dest="r2_in", help="Input R2 FASTQ (plain or gzipped)")
    p.add_argument(
        "--o1",
        dest="r1_out",
        default=None,
        help="Output R1 FASTQ (default: derived from --i1, e.g. R1_filtered.fastq)",
    )
    p.add_argument(
        "--o2",
        dest="r2_out",
        default=None,
        help="Output R2 FASTQ (default: derived from --i2)",
    )
    p.add_argument(
        "--stats_file",
        "--stats-file",
        dest="stats_file",
        default=None,
        help="Write a `key value` summary of the run to this file",
    )

    # Filtering
    p.add_argument(
        "--threshold",
        type=int,
        default=None,
        help="Read pairs are kept only if both reads are longer than this (required)",
    )
    p.add_argument(
        "--remove_tiles",
        "--remove-tiles",
        dest="remove_tiles",
        default=None,
        help="Comma-separated tile IDs; pairs whose R1 header has one of these tiles are removed",
    )

    # Trimming
    p.add_argument(
        "--trim_r1",
        "--trim-r1",
        dest="trim_r1",
        type=int,
        default=0,
        help="Trim kept R1 reads to this length (0 = no trimming)",
    )
    p.add_argument(
        "--trim_r2",
        "--trim-r2",
        dest="trim_r2",
        type=int,
        default=0,
        help="Trim kept R2 reads to this length (0 = no trimming)",
    )

    # Reading
    p.add_argument(
        "--unsafe",
        action="store_true",
        help=(
            f"Read lines into a fixed {UNSAFE_BLOCK_SIZE}-byte buffer. Faster, but lines "
            "longer than the buffer are truncated"
        ),
    )

    p.add_argument("--version", action="version", version=f"%(prog)s {__version__}")

    # Verbosity: -v/-vv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def main(argv: Sequence[str] | None = None) -> int:
    args = build_parser().parse_args(argv)
    configure_logging(args.verbose, args.quiet)

    try:
        config = FilterConfig(
            r1_in=args.r1_in,
            r2_in=args.r2_in,
            threshold=args.threshold,
            r1_out=args.r1_out,
            r2_out=args.r2_out,
            trim_r1=args.trim_r1,
            trim_r2=args.trim_r2,
            remove_tiles=args.remove_tiles,
            unsafe=args.unsafe,
            stats_file=args.stats_file,
        )
    except ValidationError as err:
        logger.error("Missing or invalid arguments (required: --i1, --i2, --threshold)")
        for problem in err.errors():
            loc = ".".join(str(part) for part in problem["loc"])
            logger.error(f"  {loc}: {problem['msg']}")
        return 1

    if args.r1_out is None:
        logger.info("No o1 argument given - deriving from i1")
    if args.r2_out is None:
        logger.info("No o2 argument given - deriving from i2")
    log_config(config)

    result = run_filter(config)
    counts = result.counts
    logger.success(
        f"Checked {counts.checked} read pairs, {counts.removed} removed, "
        f"{counts.kept} remaining. Exit status {result.exit_status}",
    )

    if config.stats_file is not None:
        logger.info(f"Writing stats file {config.stats_file}")
        write_stats(config.stats_file, config, counts)

    return result.exit_status


if __name__ == "__main__":
    sys.exit(main())
