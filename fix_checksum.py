#!/usr/bin/env python3
"""
Option ROM Checksum Fixer v1.0

Patches a single correction byte inside a firmware image so the 8-bit byte sum
of a region is zero, the convention used by BIOS option ROM validation.

Supports three ways of choosing the region:
  - legacy: whole ROM (size byte at offset 2, in 512-byte blocks), correction byte 5
  - offset: whole ROM, correction byte given in hex
  - explicit: one or more hex (start, end, offset) triples

Copyright (c) 2025 The fix-checksum Authors
Licensed under the MIT License
"""

import argparse
import sys
import time
from dataclasses import dataclass, field
from enum import Enum
from pathlib import Path
from typing import List, Optional, Sequence, Tuple

from rich.console import Console
from rich.table import Table
from rich.panel import Panel
from rich import box
from rich.text import Text

__version__ = "1.0.0"

# Rich console for styled output
console = Console()
error_console = Console(stderr=True)

MIN_ROM_SIZE = 5  # Smallest file that still holds a size byte and correction byte
SIZE_BYTE_OFFSET = 2  # ROM length in 512-byte blocks
ROM_BLOCK_SIZE = 512
CORRECTION_BYTE = 5  # Legacy correction byte position


def print_banner():
    """Display tool banner with version info."""
    banner_text = f"""
================================================================
             Option ROM Checksum Fixer v{__version__}
================================================================
    """
    console.print(banner_text, style="bold cyan")
    console.print("Byte-sum checksum corrector for option ROM images", style="dim")
    console.print("Modes: legacy (offset 5), single offset, explicit regions\n", style="dim")


def print_success(message: str):
    """Print success message in green."""
    console.print(f"✓ {message}", style="bold green")


def print_error(message: str):
    """Print error message in red."""
    error_console.print(f"✗ {message}", style="bold red")


def print_info(message: str):
    """Print info message in blue."""
    console.print(f"ℹ {message}", style="blue")


def print_warning(message: str):
    """Print warning message in yellow."""
    console.print(f"⚠ {message}", style="yellow")


# Errors

class ChecksumToolError(Exception):
    """Base class for every failure the tool reports to the user"""
    exit_code = 1


class InvalidArguments(ChecksumToolError):
    """Wrong argument count or shape"""
    exit_code = 1


class InputError(ChecksumToolError):
    """Input-side failure"""
    exit_code = 2


class InputUnavailable(InputError):
    pass


class InputTruncated(InputError):
    pass


class BufferTooShort(InputError):
    pass


class RegionOutOfBounds(InputError):
    """Region does not fit the buffer, or its correction offset lies outside it"""

    def __init__(self, message: str, region: Optional["Region"] = None, length: Optional[int] = None):
        super().__init__(message)
        self.region = region
        self.length = length


class OutputError(ChecksumToolError):
    """Output-side failure"""
    exit_code = 3


class OutputUnavailable(OutputError):
    pass


class OutputTruncated(OutputError):
    pass


class ChecksumMismatch(ChecksumToolError):
    """Raised by --check when a region does not sum to zero"""
    exit_code = 4


# Data model

@dataclass(frozen=True)
class Region:
    """Inclusive byte range plus the byte inside it that holds the correction"""
    start: int
    end: int
    correction_offset: int

    @property
    def size(self) -> int:
        return self.end - self.start + 1

    def __str__(self) -> str:
        return f"0x{self.start:X}-0x{self.end:X} @ 0x{self.correction_offset:X}"


@dataclass
class CorrectionResult:
    """Outcome of correcting one region"""
    region: Region
    original_checksum: int  # Sum of the region without the correction byte
    previous_value: int  # Correction byte before the write
    correction: int  # Correction byte after the write
    fixed_checksum: int  # Sum of the whole region after the write

    @property
    def changed(self) -> bool:
        return self.previous_value != self.correction


# Checksum arithmetic

def byte_sum(data: Sequence[int], start: int, end_inclusive: int, skip: Optional[int] = None) -> int:
    """
    Calculate the 8-bit byte sum of data[start..end_inclusive].

    Args:
        data: Buffer to sum
        start: First offset (inclusive)
        end_inclusive: Last offset (inclusive)
        skip: Offset to leave out of the sum, usually the correction byte

    Returns:
        Sum modulo 256
    """
    checksum = sum(data[start:end_inclusive + 1])
    if skip is not None and start <= skip <= end_inclusive:
        checksum -= data[skip]
    return checksum & 0xFF


def check_length(length: int) -> None:
    """Raise BufferTooShort for buffers too small to hold a ROM header"""
    if length < MIN_ROM_SIZE:
        raise BufferTooShort(f"File is too short ({length} bytes, need at least {MIN_ROM_SIZE})")


def check_region(buffer: Sequence[int], region: Region) -> None:
    """Raise BufferTooShort or RegionOutOfBounds unless region fits inside buffer"""
    length = len(buffer)
    check_length(length)

    if region.start < 0:
        raise RegionOutOfBounds(f"Invalid region: negative start {region.start}", region, length)

    if region.start > region.end:
        raise RegionOutOfBounds(
            f"Invalid region: start 0x{region.start:X} is after end 0x{region.end:X}",
            region, length)

    if region.end >= length:
        raise RegionOutOfBounds(
            f"Region end 0x{region.end:X} is beyond the end of the buffer (size 0x{length:X})",
            region, length)

    if not region.start <= region.correction_offset <= region.end:
        raise RegionOutOfBounds(
            f"Correction offset 0x{region.correction_offset:X} is outside region "
            f"0x{region.start:X}-0x{region.end:X}",
            region, length)


def correct_region(buffer: bytearray, region: Region) -> CorrectionResult:
    """
    Write the correction byte so the region sums to zero.

    The bounds are checked before anything is summed or written, so a rejected
    region leaves the buffer untouched. Exactly one byte is written.

    Args:
        buffer: Mutable ROM data
        region: Region to correct

    Returns:
        CorrectionResult with checksums before and after
    """
    check_region(buffer, region)

    checksum = byte_sum(buffer, region.start, region.end, skip=region.correction_offset)
    previous_value = buffer[region.correction_offset]

    # Two's-complement negation in 8 bits
    correction = (0x100 - checksum) & 0xFF
    buffer[region.correction_offset] = correction

    return CorrectionResult(
        region=region,
        original_checksum=checksum,
        previous_value=previous_value,
        correction=correction,
        fixed_checksum=byte_sum(buffer, region.start, region.end),
    )


def correct_regions(buffer: bytearray, regions: Sequence[Region]) -> List[CorrectionResult]:
    """
    Correct regions in order.

    Each region is corrected against the buffer as left by the ones before it,
    so overlapping regions see earlier corrections. A failing region stops the
    run; regions already corrected stay corrected.
    """
    check_length(len(buffer))
    return [correct_region(buffer, region) for region in regions]


def verify_region(buffer: Sequence[int], region: Region) -> bool:
    """Check whether a region already sums to zero"""
    check_region(buffer, region)
    return byte_sum(buffer, region.start, region.end) == 0


# Region resolution

def parse_hex(text: str, name: str = "value") -> int:
    """Parse a base-16 offset, with or without a 0x prefix"""
    try:
        value = int(text, 16)
    except ValueError:
        raise InvalidArguments(f"Invalid hex {name}: '{text}'") from None

    if value < 0:
        raise InvalidArguments(f"Invalid hex {name}: '{text}' is negative")

    return value


def derive_rom_end(buffer: Sequence[int]) -> int:
    """
    Derive the last ROM offset from the size byte.

    The size byte at offset 2 counts 512-byte blocks. The derived ROM must fit
    in the file; a larger ROM is rejected rather than truncated.

    Returns:
        Inclusive end offset
    """
    check_length(len(buffer))

    rom_size = buffer[SIZE_BYTE_OFFSET] * ROM_BLOCK_SIZE
    if rom_size == 0:
        raise RegionOutOfBounds("ROM code size is zero (size byte at offset 2 is 0)", None, len(buffer))

    if rom_size > len(buffer):
        raise RegionOutOfBounds(
            f"ROM code size is bigger than ROM file size (0x{rom_size:X} > 0x{len(buffer):X})",
            None, len(buffer))

    return rom_size - 1


class RegionMode(Enum):
    LEGACY = "legacy"
    OFFSET = "offset"
    EXPLICIT = "explicit"


@dataclass(frozen=True)
class RegionSource:
    """
    Where the regions to correct come from.

    Three construction paths (legacy, offset, explicit) produce the same list of
    Region values for the corrector.
    """
    mode: RegionMode
    offset: int = CORRECTION_BYTE
    triples: Tuple[Tuple[int, int, int], ...] = field(default_factory=tuple)

    @classmethod
    def legacy(cls) -> "RegionSource":
        return cls(RegionMode.LEGACY)

    @classmethod
    def with_offset(cls, offset: int) -> "RegionSource":
        return cls(RegionMode.OFFSET, offset=offset)

    @classmethod
    def explicit(cls, triples: Sequence[Tuple[int, int, int]]) -> "RegionSource":
        if not triples:
            raise InvalidArguments("At least one region is required")
        return cls(RegionMode.EXPLICIT, triples=tuple(tuple(t) for t in triples))

    @classmethod
    def from_args(cls, values: Sequence[str]) -> "RegionSource":
        """
        Build a source from command-line parameters.

        No values selects legacy mode, one value is a hex correction offset, and
        a multiple of three values is a list of hex (start, end, offset) triples.
        """
        if not values:
            return cls.legacy()

        if len(values) == 1:
            return cls.with_offset(parse_hex(values[0], "offset"))

        if len(values) % 3 != 0:
            raise InvalidArguments(
                f"Expected a hex offset or (start, end, offset) triples, got {len(values)} values")

        triples = []
        for i in range(0, len(values), 3):
            triples.append((
                parse_hex(values[i], "start"),
                parse_hex(values[i + 1], "end"),
                parse_hex(values[i + 2], "offset"),
            ))
        return cls.explicit(triples)

    def resolve(self, buffer: Sequence[int]) -> List[Region]:
        """Build the regions for this buffer"""
        if self.mode == RegionMode.EXPLICIT:
            return [Region(start, end, offset) for start, end, offset in self.triples]

        return [Region(0, derive_rom_end(buffer), self.offset)]


# File I/O

def load_buffer(path) -> bytearray:
    """
    Load a ROM file into memory.

    Args:
        path: Input file

    Returns:
        Mutable copy of the file contents
    """
    path = Path(path)

    try:
        file_size = path.stat().st_size
    except OSError as e:
        raise InputUnavailable(f"Failed to stat '{path}': {e.strerror}") from e

    check_length(file_size)

    try:
        with open(path, 'rb') as f:
            data = bytearray(f.read())
    except OSError as e:
        raise InputUnavailable(f"Failed to open '{path}': {e.strerror}") from e

    if len(data) < file_size:
        raise InputTruncated(f"Short read: got {len(data)} of {file_size} bytes")

    return data


def write_buffer(path, data: bytes) -> None:
    """Write the full buffer to path"""
    path = Path(path)

    try:
        f = open(path, 'wb')
    except OSError as e:
        raise OutputUnavailable(f"Failed to open '{path}': {e.strerror}") from e

    # Buffered bytes reach the disk on close; a failed close is a failed write
    try:
        with f:
            written = f.write(data)
    except OSError as e:
        raise OutputTruncated(f"Short write to '{path}': {e.strerror}") from e

    if written != len(data):
        raise OutputTruncated(f"Short write: wrote {written} of {len(data)} bytes")


# Reporting

def print_results(results: List[CorrectionResult]) -> None:
    """Print a summary table of corrected regions"""
    table = Table(title=f"Corrected Regions ({len(results)})", box=box.ROUNDED)

    table.add_column("#", style="dim", width=3)
    table.add_column("Range", width=21)
    table.add_column("Offset", justify="right")
    table.add_column("Original", justify="right")
    table.add_column("Byte", justify="right")
    table.add_column("Fixed", justify="right")
    table.add_column("Status", justify="center")

    for i, result in enumerate(results, 1):
        region = result.region
        if result.changed:
            status = Text("✓ FIXED", style="bold green")
        else:
            status = Text("✓ VALID", style="green")

        table.add_row(
            str(i),
            f"0x{region.start:06X}-0x{region.end:06X}",
            f"0x{region.correction_offset:X}",
            f"0x{result.original_checksum:02X}",
            f"0x{result.previous_value:02X} → 0x{result.correction:02X}",
            f"0x{result.fixed_checksum:02X}",
            status,
        )

    console.print(table)


def check_regions(buffer: bytearray, regions: List[Region]) -> int:
    """
    Report which regions already sum to zero.

    Returns:
        Number of regions with a non-zero sum
    """
    check_length(len(buffer))

    invalid = 0
    for i, region in enumerate(regions, 1):
        if verify_region(buffer, region):
            console.print(f"  Region {i} ({region}): [green]✓[/green] Valid")
        else:
            checksum = byte_sum(buffer, region.start, region.end)
            console.print(f"  Region {i} ({region}): [red]✗[/red] Invalid (0x{checksum:02X})")
            invalid += 1
    return invalid


class _ArgumentParser(argparse.ArgumentParser):
    """ArgumentParser that reports usage errors as InvalidArguments"""

    def error(self, message):
        raise InvalidArguments(f"{message}\n{self.format_usage().strip()}")


def build_parser() -> argparse.ArgumentParser:
    parser = _ArgumentParser(
        prog='fix-checksum',
        description=f'Option ROM Checksum Fixer v{__version__}',
        formatter_class=argparse.RawDescriptionHelpFormatter,
        epilog='''
Examples:
  # Fix byte 5 over the whole ROM (size from byte 2, in 512-byte blocks)
  %(prog)s option.rom fixed.rom

  # Fix byte 0x7FFF over the whole ROM
  %(prog)s option.rom fixed.rom 7FFF

  # Fix two regions, each with its own correction byte
  %(prog)s option.rom fixed.rom 0 1FF 1FF 200 3FF 3FF

  # Only report the checksums
  %(prog)s --check option.rom

Note: --check takes no OUTPUT, so its first ARG is already a hex OFFSET.
        '''
    )

    parser.add_argument('input_file', help='Input ROM image')
    parser.add_argument('params', nargs='*', metavar='ARG',
                        help='OUTPUT file (omitted with --check), then an optional hex '
                             'OFFSET or hex START END OFFSET triples')
    parser.add_argument('--check', action='store_true',
                        help='Verify checksums without writing an output file '
                             '(ARGs are region parameters only)')
    parser.add_argument('--quiet', '-q', action='store_true',
                        help='Only print errors')
    parser.add_argument('--version', action='version', version=f'%(prog)s {__version__}')

    return parser


def run(args) -> int:
    """Run one correction (or check) pass; returns the number of regions handled"""
    params = list(args.params)
    output_file = None
    if not args.check:
        if not params:
            raise InvalidArguments("Missing output file")
        output_file = params.pop(0)

    source = RegionSource.from_args(params)

    data = load_buffer(args.input_file)
    print_success(f"Loaded: {Path(args.input_file).name}")
    print_info(f"Size: 0x{len(data):X} ({len(data):,} bytes)")

    regions = source.resolve(data)
    if source.mode != RegionMode.EXPLICIT:
        print_info(f"ROM code size: 0x{regions[0].size:X} ({regions[0].size:,} bytes)")
        if regions[0].size < len(data):
            print_warning(f"{len(data) - regions[0].size:,} trailing byte(s) are outside the ROM checksum")

    if args.check:
        console.print()
        console.print("[bold blue]Checking regions[/bold blue]")
        invalid = check_regions(data, regions)
        if invalid:
            raise ChecksumMismatch(f"{invalid} of {len(regions)} region(s) do not sum to zero")
        print_success(f"All {len(regions)} region(s) valid")
        return len(regions)

    console.print()
    console.print(f"[bold blue]Correcting {len(regions)} region(s)[/bold blue] ({source.mode.value} mode)")

    results = correct_regions(data, regions)
    for result in results:
        print_info(f"Region {result.region}: original checksum 0x{result.original_checksum:02X}")
        print_success(f"Fixed checksum: 0x{result.fixed_checksum:02X}")

    console.print()
    print_results(results)

    write_buffer(output_file, data)

    unchanged = sum(1 for r in results if not r.changed)
    console.print()
    console.print(Panel(
        f"[green]✓[/green] Corrected binary saved to:\n[cyan]{output_file}[/cyan]\n\n" +
        f"[bold]Regions corrected:[/bold] {len(results) - unchanged}",
        title="💾 Success",
        border_style="green"
    ))
    if unchanged:
        print_info(f"{unchanged} region(s) were already valid")

    return len(results)


def main(argv: Optional[Sequence[str]] = None):
    """Main entry point"""
    parser = build_parser()

    try:
        args = parser.parse_args(argv)
    except InvalidArguments as e:
        print_error(str(e))
        sys.exit(e.exit_code)

    console.quiet = args.quiet
    print_banner()

    start_time = time.time()

    try:
        run(args)
    except ChecksumToolError as e:
        print_error(str(e))
        sys.exit(e.exit_code)
    finally:
        console.quiet = False

    # Print elapsed time
    elapsed = time.time() - start_time
    if not args.quiet:
        console.print()
        console.print(f"[dim]Completed in {elapsed:.2f}s[/dim]")


if __name__ == "__main__":
    main()
