# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "pysam",
#     "pytest",
# ]
# ///
"""
Pytest fixtures and configuration for cap_mapq testing.

This module provides shared fixtures for testing cap_mapq.py: a mock aligned
segment with an aux-tag store, SAM files with read groups, and group files.
"""

import sys
import tempfile
from collections.abc import Iterator
from pathlib import Path
from typing import Any

import pysam
import pytest

# Add bin directory to Python path so we can import the module under test
BIN_DIR = Path(__file__).parent.parent / "bin"
sys.path.insert(0, str(BIN_DIR))

# Now we can import the module we're testing
from cap_mapq import CappingConfig, GroupCapTableBuilder


@pytest.fixture
def temp_dir() -> Iterator[Path]:
    """Create a temporary directory for test files."""
    with tempfile.TemporaryDirectory() as tmp_dir:
        yield Path(tmp_dir)


class MockAlignedSegment:
    """Mock AlignedSegment for unit testing without pysam I/O."""

    def __init__(
        self,
        query_name: str = "test_read",
        mapping_quality: int = 60,
        reference_id: int = 0,
        tags: dict[str, Any] | None = None,
    ) -> None:
        self.query_name = query_name
        self.mapping_quality = mapping_quality
        self.reference_id = reference_id
        self._tags: dict[str, Any] = dict(tags or {})

    def has_tag(self, tag: str) -> bool:
        return tag in self._tags

    def get_tag(self, tag: str) -> Any:
        if tag not in self._tags:
            msg = f"tag '{tag}' not present"
            raise KeyError(msg)
        return self._tags[tag]

    def set_tag(self, tag: str, value: Any, value_type: str | None = None) -> None:
        # pysam semantics: None deletes the tag
        if value is None:
            self._tags.pop(tag, None)
            return
        self._tags[tag] = value

    def get_tags(self) -> list[tuple[str, Any]]:
        return list(self._tags.items())


class RecordingWriter:
    """Stands in for an output AlignmentFile; keeps what was written."""

    def __init__(self) -> None:
        self.written: list[Any] = []

    def write(self, aln: Any) -> None:
        self.written.append(aln)


@pytest.fixture
def grouped_reads() -> list[MockAlignedSegment]:
    """Four placed reads, MAPQ 45..48, read groups a, a, b, b."""
    return [
        MockAlignedSegment("r1", 45, tags={"RG": "a"}),
        MockAlignedSegment("r2", 46, tags={"RG": "a"}),
        MockAlignedSegment("r3", 47, tags={"RG": "b"}),
        MockAlignedSegment("r4", 48, tags={"RG": "b"}),
    ]


@pytest.fixture
def override_config() -> CappingConfig:
    """Default cap 40 with group 'a' overridden to 41."""
    builder = GroupCapTableBuilder()
    builder.insert("a", 41)
    return CappingConfig(default_cap=40, table=builder.finalize())


SAM_HEADER = (
    "@HD\tVN:1.6\tSO:unsorted\n"
    "@SQ\tSN:chr1\tLN:1000\n"
    "@RG\tID:a\tSM:sample1\n"
    "@RG\tID:b\tSM:sample1\n"
)


def sam_line(
    qname: str,
    mapq: int,
    rg: str | None = None,
    extra: str = "",
    placed: bool = True,
) -> str:
    """One SAM record line with an 8-base read."""
    if placed:
        fields = [qname, "0", "chr1", "100", str(mapq), "8M", "*", "0", "0"]
    else:
        fields = [qname, "4", "*", "0", str(mapq), "*", "*", "0", "0"]
    fields += ["ACGTACGT", "IIIIIIII"]
    if rg is not None:
        fields.append(f"RG:Z:{rg}")
    if extra:
        fields.append(extra)
    return "\t".join(fields) + "\n"


@pytest.fixture
def sample_sam_file(temp_dir: Path) -> Path:
    """Four placed reads, MAPQ 45..48, read groups a, a, b, b."""
    sam_path = temp_dir / "test1.sam"
    sam_path.write_text(
        SAM_HEADER
        + sam_line("r1", 45, "a")
        + sam_line("r2", 46, "a")
        + sam_line("r3", 47, "b")
        + sam_line("r4", 48, "b")
    )
    return sam_path


@pytest.fixture
def sample_bam_file(temp_dir: Path, sample_sam_file: Path) -> Path:
    """The sample SAM records converted to BAM."""
    bam_path = temp_dir / "test1.bam"
    with pysam.AlignmentFile(str(sample_sam_file)) as sam_file, pysam.AlignmentFile(
        str(bam_path), "wb", template=sam_file
    ) as bam_file:
        for read in sam_file:
            bam_file.write(read)
    return bam_path


@pytest.fixture
def mixed_sam_file(temp_dir: Path) -> Path:
    """Placed, ungrouped, unplaced and already-tagged reads."""
    sam_path = temp_dir / "mixed.sam"
    sam_path.write_text(
        SAM_HEADER
        + sam_line("grouped", 50, "a")
        + sam_line("ungrouped", 50)
        + sam_line("unplaced", 50, "a", placed=False)
        + sam_line("low", 10, "b")
        + sam_line("tagged", 30, "b", extra="om:i:55")
    )
    return sam_path


@pytest.fixture
def reference_fasta(temp_dir: Path) -> Path:
    """Reference FASTA matching the chr1 @SQ line of the SAM fixtures."""
    ref_path = temp_dir / "reference.fasta"
    ref_path.write_text(">chr1\n" + "ACGT" * 250 + "\n")
    return ref_path


@pytest.fixture
def foreign_om_sam_file(temp_dir: Path) -> Path:
    """A read whose om tag was written by another tool as a string."""
    sam_path = temp_dir / "foreign.sam"
    sam_path.write_text(SAM_HEADER + sam_line("x", 50, "a", extra="om:Z:foo") + sam_line("y", 50, "a"))
    return sam_path


@pytest.fixture
def group_file(temp_dir: Path) -> Path:
    """Contamination fractions per read group, with a comment and blank line."""
    path = temp_dir / "test1.txt"
    path.write_text("# read group\tfreemix\nb\t0.00005\n\na\t0.0001\n")
    return path


def read_records(path: Path) -> list[pysam.AlignedSegment]:
    with pysam.AlignmentFile(str(path)) as f:
        return list(f)


def mapqs(path: Path) -> list[int]:
    return [read.mapping_quality for read in read_records(path)]


def originals(path: Path) -> list[int]:
    """om:i values per record, -1 where the tag is absent."""
    return [
        read.get_tag("om") if read.has_tag("om") else -1 for read in read_records(path)
    ]


@pytest.fixture(autouse=True)
def configure_logging_for_tests() -> None:
    """Configure logging for tests to reduce noise."""
    from loguru import logger

    logger.remove()
    logger.add(sys.stderr, level="WARNING")
