#!/usr/bin/env python3
# /// script
# requires-python = ">=3.10"
# dependencies = [
#     "loguru",
#     "pydantic>=2",
#     "pysam",
# ]
# ///
"""
Cap mapping quality (MAPQ) in SAM/BAM/CRAM files.

Every placed alignment whose MAPQ exceeds the effective cap is lowered to it.
The effective cap is the default cap, replaced by a per-read-group override
when one exists, and raised to a floor when caps come from contamination
fractions. The original MAPQ can be kept in the `om:i` aux tag so a later
`--restore` pass puts it back exactly.
"""

from __future__ import annotations

import argparse
import math
import shlex
import sys
from bisect import bisect_left
from typing import TYPE_CHECKING, Any, NamedTuple, Protocol

import pysam
from loguru import logger
from pydantic import ConfigDict, Field, ValidationError
from pydantic.dataclasses import dataclass
from pysam.version import __htslib_version__ as HTSLIB_VERSION

if TYPE_CHECKING:
    from collections.abc import Iterable, Iterator, Sequence

__version__ = "0.1.0"

# ------------------------------- CONSTANTS -------------------------------- #

# MAPQ is an unsigned 8-bit field in BAM
MAPQ_MIN: int = 0
MAPQ_MAX: int = 255

# Reserved aux tag holding the pre-cap MAPQ, stored as SAM type 'i'
ORIGINAL_MAPQ_TAG: str = "om"
ORIGINAL_MAPQ_TYPE: str = "i"
READ_GROUP_TAG: str = "RG"

PROGRAM_ID: str = "cap_mapq"

EXIT_FAILURE: int = 1
EXIT_NOTHING_TO_DO: int = 2

# Emit a progress debug line after processing this many records
DEBUG_EVERY: int = 100_000


# --------------------------------- ERRORS ---------------------------------- #


class CapMapqError(Exception):
    """Base class for errors raised while capping MAPQ."""


class ConfigurationError(CapMapqError, ValueError):
    """An option, group override or group file cannot be used."""


class NothingToDoError(ConfigurationError):
    """No default cap, no group overrides and no restore were requested."""


class MalformedRecordError(CapMapqError, ValueError):
    """A record carries a preserved MAPQ that cannot be restored."""


# ------------------------------ QUALITY CODEC ------------------------------ #


def clamp_mapq(value: float) -> int:
    """
    Saturate `value` into 0..255, truncating toward zero inside the range.

    Out-of-range values clamp rather than wrap: MAPQ is a bounded confidence
    score, not a counter.
    """
    if math.isnan(value):
        msg = "Cannot convert NaN to a MAPQ value"
        raise ConfigurationError(msg)
    if value < MAPQ_MIN:
        return MAPQ_MIN
    if value > MAPQ_MAX:
        return MAPQ_MAX
    return int(value)


def to_mapq(value: int, what: str = "MAPQ") -> int:
    """Strict conversion: anything outside 0..255 is a configuration error."""
    if isinstance(value, bool) or not isinstance(value, int):
        msg = f"{what} must be an integer, got {value!r}"
        raise ConfigurationError(msg)
    if not MAPQ_MIN <= value <= MAPQ_MAX:
        msg = f"{what} must be between {MAPQ_MIN} and {MAPQ_MAX}, got {value}"
        raise ConfigurationError(msg)
    return value


def parse_mapq(text: str, what: str = "MAPQ") -> int:
    try:
        value = int(text.strip())
    except ValueError as exc:
        msg = f"{what} must be an integer, got {text!r}"
        raise ConfigurationError(msg) from exc
    return to_mapq(value, what)


def parse_fraction(text: str, what: str = "contamination fraction") -> float:
    try:
        return float(text.strip())
    except ValueError as exc:
        msg = f"{what} must be a number, got {text!r}"
        raise ConfigurationError(msg) from exc


# ------------------------- CONTAMINATION CONVERSION ------------------------ #


def cap_from_fraction(fraction: float) -> int:
    """
    Convert an estimated contamination fraction (freemix) to a MAPQ cap.

    Uses the Phred transform `-10 * log10(fraction)`, clamped to 0..255.
    A fraction of exactly zero maps to 0; negative fractions are rejected.
    """
    if math.isnan(fraction) or fraction < 0:
        msg = f"Contamination fraction must be non-negative, got {fraction}"
        raise ConfigurationError(msg)
    if fraction == 0:
        return 0
    return clamp_mapq(-10.0 * math.log10(fraction))


def parse_cap_value(text: str, use_fraction: bool, what: str = "cap") -> int:  # noqa: FBT001
    """Parse a cap slot: an integer MAPQ, or a fraction when `use_fraction`."""
    if use_fraction:
        cap = cap_from_fraction(parse_fraction(text, what))
        logger.debug(f"Converted {what} fraction {text.strip()} to MAPQ cap {cap}")
        return cap
    return parse_mapq(text, what)


# ----------------------------- GROUP CAP TABLE ----------------------------- #


class GroupCapEntry(NamedTuple):
    """One per-group override: (group identifier, cap)."""

    group_id: str
    cap: int


class GroupCapTable:
    """
    Immutable, key-ordered group → cap lookup.

    Entries are sorted by the UTF-8 bytes of the group identifier and found
    by binary search, since the table is probed once per record. Build one
    with `GroupCapTableBuilder`.
    """

    __slots__ = ("_entries", "_keys")

    def __init__(self, entries: Iterable[GroupCapEntry] = ()) -> None:
        ordered = tuple(entries)
        keys = tuple(entry.group_id.encode() for entry in ordered)
        assert all(a < b for a, b in zip(keys, keys[1:])), (
            "GroupCapTable entries must be unique and sorted by group id"
        )
        self._entries: tuple[GroupCapEntry, ...] = ordered
        self._keys: tuple[bytes, ...] = keys

    @classmethod
    def empty(cls) -> GroupCapTable:
        return cls()

    def lookup(self, group_id: str) -> int | None:
        """Return the override cap for `group_id`, or None when absent."""
        key = group_id.encode()
        i = bisect_left(self._keys, key)
        if i < len(self._keys) and self._keys[i] == key:
            return self._entries[i].cap
        return None

    def __len__(self) -> int:
        return len(self._entries)

    def __iter__(self) -> Iterator[GroupCapEntry]:
        return iter(self._entries)

    def __contains__(self, group_id: object) -> bool:
        return isinstance(group_id, str) and self.lookup(group_id) is not None

    def __eq__(self, other: object) -> bool:
        if not isinstance(other, GroupCapTable):
            return NotImplemented
        return self._entries == other._entries

    def __hash__(self) -> int:
        return hash(self._entries)

    def __repr__(self) -> str:
        body = ", ".join(f"{e.group_id}:{e.cap}" for e in self._entries)
        return f"GroupCapTable({body})"


class GroupCapTableBuilder:
    """Collects overrides in insertion order until `finalize()`."""

    def __init__(self) -> None:
        self._entries: list[GroupCapEntry] = []

    def insert(self, group_id: str, cap: int) -> None:
        if not group_id:
            msg = "Group identifier must not be empty"
            raise ConfigurationError(msg)
        self._entries.append(
            GroupCapEntry(group_id, to_mapq(cap, f"cap for group '{group_id}'"))
        )

    def __len__(self) -> int:
        return len(self._entries)

    def finalize(self) -> GroupCapTable:
        """Freeze into a lookup table; a repeated group id keeps its last cap."""
        latest: dict[str, GroupCapEntry] = {}
        for entry in self._entries:
            if entry.group_id in latest and latest[entry.group_id] != entry:
                logger.warning(
                    f"Group '{entry.group_id}' given more than once; "
                    f"cap {entry.cap} replaces {latest[entry.group_id].cap}",
                )
            latest[entry.group_id] = entry
        ordered = sorted(latest.values(), key=lambda e: e.group_id.encode())
        return GroupCapTable(ordered)


def parse_group_override(text: str) -> tuple[str, str]:
    """Split an inline `GROUP:VALUE` override on its last colon."""
    group_id, sep, value = text.rpartition(":")
    if not sep or not group_id or not value.strip():
        msg = f"Group override must look like GROUP:VALUE, got {text!r}"
        raise ConfigurationError(msg)
    return group_id, value


def load_group_file(path: str) -> list[tuple[str, str]]:
    """
    Read `group<TAB>value` rows from a text file.

    Blank lines and lines starting with '#' are skipped. Values are returned
    as text; the caller converts them according to `--freemix`.
    """
    rows: list[tuple[str, str]] = []
    try:
        with open(path) as f:
            for lineno, raw in enumerate(f, start=1):
                line = raw.rstrip("\r\n")
                if not line.strip() or line.startswith("#"):
                    continue
                parts = line.split("\t")
                if len(parts) < 2 or not parts[0] or not parts[1].strip():  # noqa: PLR2004
                    msg = f"{path}:{lineno}: expected 'group<TAB>value', got {line!r}"
                    raise ConfigurationError(msg)
                rows.append((parts[0], parts[1]))
    except OSError as exc:
        msg = f"Cannot read group file {path}: {exc}"
        raise ConfigurationError(msg) from exc
    logger.info(f"Loaded {len(rows)} group overrides from {path}")
    return rows


# ------------------------------ CONFIGURATION ------------------------------ #


@dataclass(frozen=True, config=ConfigDict(arbitrary_types_allowed=True))
class CappingConfig:
    """
    Everything a run needs to decide each record's MAPQ.

    `default_cap` is 255 when no default was given, which never caps.
    `floor` only takes effect when `use_fraction` is set.
    """

    default_cap: int = Field(default=MAPQ_MAX, ge=MAPQ_MIN, le=MAPQ_MAX)
    floor: int = Field(default=MAPQ_MIN, ge=MAPQ_MIN, le=MAPQ_MAX)
    use_fraction: bool = False
    preserve_original: bool = True
    restore_mode: bool = False
    table: GroupCapTable = Field(default_factory=GroupCapTable.empty)


@dataclass
class CapStats:
    """Per-run counters."""

    processed: int = Field(default=0, ge=0)
    unplaced: int = Field(default=0, ge=0)  # passed through untouched
    capped: int = Field(default=0, ge=0)
    preserved: int = Field(default=0, ge=0)  # new om tags written
    restored: int = Field(default=0, ge=0)


# --------------------------- ALIGNMENT RECORDS ----------------------------- #


class AlignmentRecord(Protocol):
    """The slice of `pysam.AlignedSegment` that capping relies on."""

    mapping_quality: int
    reference_id: int

    def has_tag(self, tag: str) -> bool: ...

    def get_tag(self, tag: str) -> Any: ...

    def set_tag(
        self, tag: str, value: Any, value_type: str | None = None
    ) -> None: ...


class CappableRecord:
    """
    View of an alignment exposing MAPQ, read group, and the preserved MAPQ.

    The preserved MAPQ is the only tag this view can write; `None` means the
    record carries no `om` tag.
    """

    __slots__ = ("aln",)

    def __init__(self, aln: AlignmentRecord) -> None:
        self.aln = aln

    @property
    def is_placed(self) -> bool:
        return self.aln.reference_id >= 0

    @property
    def mapq(self) -> int:
        return self.aln.mapping_quality

    @mapq.setter
    def mapq(self, value: int) -> None:
        assert MAPQ_MIN <= value <= MAPQ_MAX, f"MAPQ out of range: {value}"
        self.aln.mapping_quality = value

    @property
    def group_id(self) -> str | None:
        if not self.aln.has_tag(READ_GROUP_TAG):
            return None
        return str(self.aln.get_tag(READ_GROUP_TAG))

    @property
    def has_original(self) -> bool:
        """True when an om tag is present, whatever its contents."""
        return self.aln.has_tag(ORIGINAL_MAPQ_TAG)

    @property
    def original_mapq(self) -> int | None:
        if not self.has_original:
            return None
        value = self.aln.get_tag(ORIGINAL_MAPQ_TAG)
        if isinstance(value, bool) or not isinstance(value, int):
            msg = f"{ORIGINAL_MAPQ_TAG} tag holds a non-integer value: {value!r}"
            raise MalformedRecordError(msg)
        if not MAPQ_MIN <= value <= MAPQ_MAX:
            msg = f"{ORIGINAL_MAPQ_TAG} tag holds an out-of-range MAPQ: {value}"
            raise MalformedRecordError(msg)
        return value

    @original_mapq.setter
    def original_mapq(self, value: int | None) -> None:
        if value is None:
            # pysam deletes a tag when set to None
            self.aln.set_tag(ORIGINAL_MAPQ_TAG, None)
            return
        assert MAPQ_MIN <= value <= MAPQ_MAX, f"MAPQ out of range: {value}"
        self.aln.set_tag(ORIGINAL_MAPQ_TAG, value, value_type=ORIGINAL_MAPQ_TYPE)


# ----------------------------- CAPPING POLICY ------------------------------ #


def effective_cap(record: CappableRecord, config: CappingConfig) -> int:
    """
    Cap that applies to `record`:
      1. the default cap,
      2. replaced by the record's group override, if any,
      3. raised to the floor when caps derive from contamination fractions.
    """
    assert not config.restore_mode, "Restore mode does not compute caps"
    cap = config.default_cap
    group_id = record.group_id
    if group_id is not None and len(config.table) > 0:
        override = config.table.lookup(group_id)
        if override is not None:
            cap = override
    if config.use_fraction:
        cap = max(cap, config.floor)
    return cap


def decide(record: CappableRecord, config: CappingConfig) -> int:
    """New MAPQ for `record`: min(current MAPQ, effective cap)."""
    return min(record.mapq, effective_cap(record, config))


# ------------------------------ PRESERVATION ------------------------------- #


def preserve_and_cap(record: CappableRecord, cap: int) -> bool:
    """
    Store the current MAPQ in the om tag, then lower MAPQ to `cap`.

    An existing om tag is left alone, unread, so the oldest original survives
    repeated capping passes. Returns True when a new original was stored.
    """
    stored = False
    if not record.has_original:
        record.original_mapq = record.mapq
        stored = True
    record.mapq = cap
    return stored


def restore(record: CappableRecord) -> bool:
    """Put back the preserved MAPQ and drop the om tag. No-op without one."""
    original = record.original_mapq
    if original is None:
        return False
    record.mapq = original
    record.original_mapq = None
    return True


# ----------------------------- LOGGING SETUP ------------------------------- #


def configure_logging(verbose: int, quiet: int) -> None:
    """
    Base at SUCCESS (0). Positive → louder (more verbose), negative → quieter.
    Map:
      +3.. = TRACE
      +2   = DEBUG
      +1   = INFO
       0   = SUCCESS
      -1   = WARNING
      -2   = ERROR
      <=-3 = CRITICAL
    """
    logger.remove()
    delta = verbose - quiet
    match delta:
        case d if d >= 3:  # noqa: PLR2004
            level_str = "TRACE"
        case 2:
            level_str = "DEBUG"
        case 1:
            level_str = "INFO"
        case 0:
            level_str = "SUCCESS"
        case -1:
            level_str = "WARNING"
        case -2:
            level_str = "ERROR"
        case _:
            level_str = "CRITICAL"
    logger.add(sys.stderr, level=level_str)
    logger.debug(f"Logger configured at level: {level_str}")


# ----------------------------- I/O UTILITIES ------------------------------- #

_MODES = {
    "sam": ("r", "w"),
    "bam": ("rb", "wb"),
    "cram": ("rc", "wc"),
}


def _io_mode(path: str, write: bool, fmt: str | None = None) -> str:  # noqa: FBT001
    """Determine pysam open mode from an explicit format or the extension."""
    if fmt is None:
        if path == "-":
            # htslib auto-detects the format of a stream; write SAM by default
            return "w" if write else "r"
        fmt = path.lower().rsplit(".", 1)[-1] if "." in path else ""
    if fmt not in _MODES:
        msg = "Output/input must end with .sam, .bam, or .cram"
        logger.error(msg)
        raise ValueError(msg)
    read_mode, write_mode = _MODES[fmt]
    return write_mode if write else read_mode


def parse_format_spec(text: str) -> tuple[str, list[str]]:
    """
    Split an htslib-style `fmt(,opt...)` spec, e.g. `cram,lossy_names,level=9`.

    Bare options are passed as `opt=1`.
    """
    fmt, *raw_options = text.split(",")
    fmt = fmt.strip().lower()
    if fmt not in _MODES:
        msg = f"format must be one of {', '.join(sorted(_MODES))}, got {fmt!r}"
        raise argparse.ArgumentTypeError(msg)
    options = []
    for raw in raw_options:
        option = raw.strip()
        if not option or option.startswith("="):
            msg = f"empty format option in {text!r}"
            raise argparse.ArgumentTypeError(msg)
        options.append(option if "=" in option else f"{option}=1")
    return fmt, options


def open_alignment(
    path: str,
    write: bool,  # noqa: FBT001
    template_or_header: pysam.AlignmentFile | dict | None = None,
    reference: str | None = None,
    fmt: str | None = None,
    format_options: Sequence[str] | None = None,
) -> pysam.AlignmentFile:
    """
    Open SAM/BAM/CRAM (or '-' for stdin/stdout) with the correct mode.
    For CRAM, pass a reference filename. `format_options` are htslib
    `key=value` options such as `level=1` or `seqs_per_slice=100000`.
    - If write=True and template_or_header is an AlignmentFile, its header is
      reused as is.
    - Otherwise, pass a header dict.
    """
    assert isinstance(path, str) and len(path) > 0, (  # noqa: PT018
        f"Path must be non-empty string, got: {path!r}"
    )

    mode = _io_mode(path, write, fmt)

    kwargs = {}
    is_cram = mode.endswith("c")
    if is_cram and reference is None:
        logger.warning(
            f"Opening CRAM without explicit reference: {path}. "
            "Decoding may fail unless the reference is resolvable.",
        )
    if is_cram and reference is not None:
        kwargs["reference_filename"] = reference
    if format_options:
        kwargs["format_options"] = list(format_options)

    action = "write" if write else "read"
    logger.debug(
        f"Opening for {action}: {path} (mode={mode}, options={list(format_options or [])})",
    )
    if write:
        assert template_or_header is not None, (
            f"Writing to '{path}' requires template_or_header but got None"
        )
        if isinstance(template_or_header, pysam.AlignmentFile):
            return pysam.AlignmentFile(
                path,
                mode,
                template=template_or_header,
                **kwargs,
            )
        if isinstance(template_or_header, dict):
            return pysam.AlignmentFile(path, mode, header=template_or_header, **kwargs)
        msg = f"Writing requires either a template AlignmentFile or a header dict, got {type(template_or_header)}"
        logger.error(msg)
        raise ValueError(msg)
    return pysam.AlignmentFile(path, mode, **kwargs)


def add_program_record(header: dict, command_line: str) -> dict:
    """
    Return a copy of `header` with an @PG line for this run appended.

    The ID is made unique with a numeric suffix, and PP chains to the
    previously last @PG line.
    """
    new_header = dict(header)
    programs = [dict(pg) for pg in header.get("PG", [])]
    taken = {pg.get("ID") for pg in programs}

    pg_id = PROGRAM_ID
    suffix = 0
    while pg_id in taken:
        suffix += 1
        pg_id = f"{PROGRAM_ID}.{suffix}"

    record = {"ID": pg_id, "PN": PROGRAM_ID}
    if programs and "ID" in programs[-1]:
        record["PP"] = programs[-1]["ID"]
    record["VN"] = __version__
    record["CL"] = command_line

    programs.append(record)
    new_header["PG"] = programs
    return new_header


# ------------------------------ CORE LOGIC --------------------------------- #


def cap_record(aln: AlignmentRecord, config: CappingConfig, stats: CapStats) -> None:
    """Apply the capping policy (or restore) to one record in place."""
    record = CappableRecord(aln)
    if not record.is_placed:
        stats.unplaced += 1
        return

    if config.restore_mode:
        if restore(record):
            stats.restored += 1
        return

    new_mapq = decide(record, config)
    if new_mapq == record.mapq:
        return

    stats.capped += 1
    if config.preserve_original:
        if preserve_and_cap(record, new_mapq):
            stats.preserved += 1
    else:
        record.mapq = new_mapq


def process_stream(
    inp: Iterable[AlignmentRecord],
    outp: pysam.AlignmentFile,
    config: CappingConfig,
) -> CapStats:
    """
    Stream input -> output one record at a time, capping or restoring MAPQ.

    Unplaced records (no reference id) pass through unchanged. Records are
    written in input order. Read and write errors propagate.

    Returns:
        Counters for the run.
    """
    stats = CapStats()
    action = "Restoring" if config.restore_mode else "Capping"
    logger.debug(f"{action} with {config}")

    for aln in inp:
        cap_record(aln, config, stats)
        outp.write(aln)
        stats.processed += 1
        if stats.processed % DEBUG_EVERY == 0:
            logger.debug(
                f"Progress: processed={stats.processed}, capped={stats.capped}, "
                f"restored={stats.restored}, unplaced={stats.unplaced}",
            )

    assert stats.preserved <= stats.capped <= stats.processed, (
        f"Counter inconsistency: preserved={stats.preserved}, "
        f"capped={stats.capped}, processed={stats.processed}"
    )
    logger.info(
        f"Process totals: processed={stats.processed}, capped={stats.capped}, "
        f"preserved={stats.preserved}, restored={stats.restored}, "
        f"unplaced={stats.unplaced}",
    )
    return stats


# --------------------------------- CLI ------------------------------------- #


def build_parser() -> argparse.ArgumentParser:
    """
    CLI:
      -v / -vv / -vvv : increase verbosity (INFO -> DEBUG -> TRACE)
      -q / -qq / -qqq : decrease verbosity (WARNING -> ERROR -> CRITICAL)
    (Mutually exclusive.)
    """
    p = argparse.ArgumentParser(
        prog=PROGRAM_ID,
        formatter_class=argparse.RawDescriptionHelpFormatter,
        description=(
            "Cap mapping quality (MAPQ) of placed alignments in SAM/BAM/CRAM.\n"
            "  - default cap:    -C INT (or a contamination fraction with -f)\n"
            "  - group override: -g RG:INT or a -G file of RG<TAB>INT lines\n"
            "Original MAPQ is kept in the om:i tag unless --no-preserve is given;\n"
            "-r puts it back."
        ),
    )
    p.add_argument(
        "--version",
        action="version",
        version=f"%(prog)s {__version__} (using pysam {pysam.__version__}, htslib {HTSLIB_VERSION})",
    )

    # I/O
    p.add_argument(
        "-i",
        "--in",
        dest="in_path",
        default="-",
        help="Input SAM/BAM/CRAM (default: stdin)",
    )
    p.add_argument(
        "-o",
        "--out",
        dest="out_path",
        default="-",
        help="Output SAM/BAM/CRAM (default: stdout)",
    )
    p.add_argument(
        "-I",
        "--input-format",
        type=parse_format_spec,
        default=None,
        metavar="FMT[,OPT...]",
        help="Input format (sam, bam, cram) and htslib format options [auto]",
    )
    p.add_argument(
        "-O",
        "--output-format",
        type=parse_format_spec,
        default=None,
        metavar="FMT[,OPT...]",
        help=(
            "Output format and htslib format options, e.g. cram,lossy_names,seqs_per_slice=100000; "
            "overrides the output extension (stdout defaults to sam)"
        ),
    )
    p.add_argument(
        "--ref",
        dest="reference",
        default=None,
        help="Reference FASTA (required/recommended for CRAM read/write)",
    )

    # Capping policy
    cap_group = p.add_argument_group("Capping")
    cap_group.add_argument(
        "-C",
        "--cap",
        default=None,
        help="Cap MAPQ at this value (a contamination fraction with -f)",
    )
    cap_group.add_argument(
        "-f",
        "--freemix",
        action="store_true",
        help="Read -C, -g and -G values as contamination fractions, cap = -10*log10(value)",
    )
    cap_group.add_argument(
        "-g",
        "--group",
        action="append",
        default=[],
        metavar="RG:VALUE",
        help="Per-read-group cap; repeat for several groups",
    )
    cap_group.add_argument(
        "-G",
        "--group-file",
        default=None,
        help="File of RG<TAB>VALUE lines; -g overrides given on the command line win",
    )
    cap_group.add_argument(
        "-m",
        "--min-cap",
        type=int,
        default=MAPQ_MIN,
        help="Never cap below this value (only with -f)",
    )

    # Preservation
    keep_group = p.add_argument_group("Preservation")
    keep_group.add_argument(
        "--preserve",
        action=argparse.BooleanOptionalAction,
        default=True,
        help=f"Store the original MAPQ in the {ORIGINAL_MAPQ_TAG}:{ORIGINAL_MAPQ_TYPE} tag",
    )
    keep_group.add_argument(
        "-r",
        "--restore",
        action="store_true",
        help=f"Restore the original MAPQ from the {ORIGINAL_MAPQ_TAG}:{ORIGINAL_MAPQ_TYPE} tag",
    )

    # Verbosity: -v/-vv/-vvv or -q/-qq/-qqq (mutually exclusive)
    g = p.add_mutually_exclusive_group()
    g.add_argument(
        "-v",
        "--verbose",
        action="count",
        default=0,
        help="Increase verbosity (use up to -vvv).",
    )
    g.add_argument(
        "-q",
        "--quiet",
        action="count",
        default=0,
        help="Decrease verbosity (use up to -qqq).",
    )

    return p


def build_config(args: argparse.Namespace) -> CappingConfig:
    """
    Turn parsed options into a validated CappingConfig.

    Group-file entries are inserted before inline -g overrides, so an inline
    override wins for a group listed in both.
    """
    if args.restore:
        if args.cap is not None or args.group or args.group_file is not None:
            logger.warning("--restore given: cap and group options are ignored.")
        return CappingConfig(restore_mode=True)

    use_fraction = bool(args.freemix)
    builder = GroupCapTableBuilder()
    if args.group_file is not None:
        for group_id, value in load_group_file(args.group_file):
            builder.insert(
                group_id,
                parse_cap_value(value, use_fraction, f"cap for group '{group_id}'"),
            )
    for override in args.group:
        group_id, value = parse_group_override(override)
        builder.insert(
            group_id,
            parse_cap_value(value, use_fraction, f"cap for group '{group_id}'"),
        )

    if args.cap is None and len(builder) == 0:
        msg = "Nothing to do: give a cap (-C), group overrides (-g/-G), or --restore."
        raise NothingToDoError(msg)

    default_cap = (
        MAPQ_MAX
        if args.cap is None
        else parse_cap_value(args.cap, use_fraction, "default cap")
    )
    floor = to_mapq(args.min_cap, "minimum cap")
    if floor != MAPQ_MIN and not use_fraction:
        logger.warning("--min-cap only applies to contamination fractions (-f); ignoring it.")

    try:
        return CappingConfig(
            default_cap=default_cap,
            floor=floor,
            use_fraction=use_fraction,
            preserve_original=bool(args.preserve),
            restore_mode=False,
            table=builder.finalize(),
        )
    except ValidationError as exc:
        raise ConfigurationError(str(exc)) from exc


def main(argv: Sequence[str] | None = None) -> None:
    parser = build_parser()
    args = parser.parse_args(argv)
    configure_logging(args.verbose, args.quiet)
    logger.info("Starting MAPQ capping run.")

    try:
        config = build_config(args)
    except NothingToDoError as exc:
        parser.print_usage(sys.stderr)
        logger.error(str(exc))
        sys.exit(EXIT_NOTHING_TO_DO)
    except ConfigurationError as exc:
        logger.error(f"Invalid configuration: {exc}")
        sys.exit(EXIT_FAILURE)
    logger.debug(f"CappingConfig: {config}")

    input_fmt, input_options = args.input_format or (None, [])
    output_fmt, output_options = args.output_format or (None, [])
    raw_args = sys.argv[1:] if argv is None else list(argv)
    command_line = shlex.join([PROGRAM_ID, *raw_args])

    input_alignment = open_alignment(
        args.in_path,
        write=False,
        reference=args.reference,
        fmt=input_fmt,
        format_options=input_options,
    )
    try:
        header = add_program_record(input_alignment.header.to_dict(), command_line)
        output_alignment = open_alignment(
            args.out_path,
            write=True,
            template_or_header=header,
            reference=args.reference,
            fmt=output_fmt,
            format_options=output_options,
        )
    except (OSError, ValueError):
        input_alignment.close()
        raise

    try:
        stats = process_stream(
            inp=input_alignment,
            outp=output_alignment,
            config=config,
        )
    except OSError as exc:
        logger.error(f"Aborting: {exc}")
        raise
    except CapMapqError as exc:
        logger.error(f"Aborting: {exc}")
        sys.exit(EXIT_FAILURE)
    finally:
        output_alignment.close()
        input_alignment.close()

    if config.restore_mode:
        logger.success(
            f"Records: {stats.processed} | Restored: {stats.restored} | "
            f"Unplaced (untouched): {stats.unplaced}",
        )
    else:
        logger.success(
            f"Records: {stats.processed} | Capped: {stats.capped} | "
            f"Originals stored: {stats.preserved} | Unplaced (untouched): {stats.unplaced}",
        )
    logger.info("MAPQ capping run complete.")


if __name__ == "__main__":
    main()
