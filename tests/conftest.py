# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic>=2",
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for fastq_filterer testing.

This module provides shared fixtures for testing fastq_filterer.py: builders for
FASTQ records and paired input files (plain and gzipped), plus quiet logging.
"""

import gzip
import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path

import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the module we're testing
from fastq_filterer import FastqRecord


def make_record(
    name: str,
    sequence: str,
    tile: str = "1101",
    strand: str = "+",
) -> FastqRecord:
    """Build a FASTQ record with an Illumina-style header and constant qualities."""
    header = f"@M00123:45:000000000-ABCDE:1:{tile}:{len(name) * 100}:2000 {name}\n"
    return FastqRecord(
        header=header.encode(),
        sequence=f"{sequence}\n".encode(),
        strand=f"{strand}\n".encode(),
        quality=("I" * len(sequence) + "\n").encode(),
    )


def fastq_bytes(records: list[FastqRecord]) -> bytes:
    return b"".join(b"".join(record) for record in records)


def write_fastq(path: Path, records: list[FastqRecord]) -> Path:
    """Write records to `path`, gzipping if the name ends in .gz."""
    data = fastq_bytes(records)
    if path.name.endswith(".gz"):
        with gzip.open(path, "wb") as fh:
            fh.write(data)
    else:
        path.write_bytes(data)
    return path


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


@pytest.fixture
def r1_records() -> list[FastqRecord]:
    """Five R1 reads of varying length across two tiles."""
    return [
        make_record("read1/1", "ACGTACGTAC", tile="1101"),
        make_record("read2/1", "ACGTA", tile="1101"),
        make_record("read3/1", "ACGTACGTACGT", tile="1102"),
        make_record("read4/1", "ACGTACGT", tile="1102"),
        make_record("read5/1", "ACGTACGTACGTACGT", tile="2101"),
    ]


@pytest.fixture
def r2_records() -> list[FastqRecord]:
    """R2 mates for r1_records; read4's mate is short. Separator lines repeat the name."""
    return [
        make_record("read1/2", "TTGCAATTGC", tile="1101", strand="+read1/2"),
        make_record("read2/2", "TTGCAATTGCAA", tile="1101", strand="+read2/2"),
        make_record("read3/2", "TTGCAATTGCAA", tile="1102", strand="+read3/2"),
        make_record("read4/2", "TTGC", tile="1102", strand="+read4/2"),
        make_record("read5/2", "TTGCAATTGCAATTGC", tile="2101", strand="+read5/2"),
    ]


@pytest.fixture
def paired_fastqs(
    temp_dir: Path,
    r1_records: list[FastqRecord],
    r2_records: list[FastqRecord],
) -> tuple[Path, Path]:
    """Plain-text paired input files."""
    return (
        write_fastq(temp_dir / "sample_R1.fastq", r1_records),
        write_fastq(temp_dir / "sample_R2.fastq", r2_records),
    )


@pytest.fixture
def paired_fastqs_gz(
    temp_dir: Path,
    r1_records: list[FastqRecord],
    r2_records: list[FastqRecord],
) -> tuple[Path, Path]:
    """Gzipped paired input files."""
    return (
        write_fastq(temp_dir / "sample_R1.fastq.gz", r1_records),
        write_fastq(temp_dir / "sample_R2.fastq.gz", r2_records),
    )


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    # Remove existing handlers and set to WARNING level for tests
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
