#!/usr/bin/env python3
"""
Rebuilds a best-guess binary from several copies of the same data that may
have been corrupted independently (repeated ROM dumps, copies salvaged from
flaky media). Every byte offset is decided by majority vote: unanimous bytes
are copied as-is, anything else is voted bit by bit.
"""
import os
import argparse
import sys
import csv
from collections import Counter, deque
from concurrent.futures import ProcessPoolExecutor
from dataclasses import dataclass, field
from itertools import repeat
from typing import Optional

MIN_INPUT_FILES = 3
DEFAULT_OUTPUT = '/tmp/output.bin'
DEFAULT_CHUNK_SIZE = 8192
REPORT_FIELDS = ['offset', 'voted_byte', 'corrected_bits', 'all_votes']


class VoterError(Exception):
    """Base class for every failure a voting run can report."""


class ConfigurationError(VoterError):
    pass


class InputReadError(VoterError, OSError):
    pass


class LengthMismatchError(VoterError, ValueError):
    pass


class EmptyVoteSetError(VoterError, ValueError):
    pass


class OutputWriteError(VoterError, OSError):
    pass


def fast_check(column):
    """True when every byte in the column matches the first one."""
    first = column[0]
    return all(b == first for b in column)


def vote_byte(column):
    """
    Decides one output byte from a column of candidate bytes.

    Returns (byte, corrected) where corrected counts the bit positions
    that were not unanimous, whichever way the vote went. A bit is set only
    with a strict majority, so an even split resolves to 0.
    """
    # identical bytes SHOULD be the most common case
    if fast_check(column):
        return column[0], 0

    half = len(column) // 2
    voted = 0
    corrected = 0
    for bit in range(8):
        mask = 1 << bit
        ones = sum(1 for b in column if b & mask)
        if ones > half:
            voted |= mask
        if ones != len(column) and ones != 0:
            corrected += 1
    return voted, corrected


def _vote_chunk(start, chunks, collect):
    """
    Votes one run of aligned slices, one slice per input.

    Module level so a process pool can pickle it. Returns the voted bytes,
    the corrected-bit total and, when collect is set, a list of
    (offset, byte, corrected, column) for every column that disagreed.
    """
    first = chunks[0]
    if all(chunk == first for chunk in chunks):
        return bytes(first), 0, []

    voted = bytearray(len(first))
    corrected = 0
    discrepancies = []
    for i, column in enumerate(zip(*chunks)):
        b, n = vote_byte(column)
        voted[i] = b
        if n:
            corrected += n
            if collect:
                discrepancies.append((start + i, b, n, column))
    return bytes(voted), corrected, discrepancies


def _bounded_map(executor, fn, tasks, window):
    """
    Like executor.map, but keeps at most window tasks in flight so the
    argument iterator is only pulled as results are consumed. Results come
    back in submission order.
    """
    pending = deque()
    for args in tasks:
        pending.append(executor.submit(fn, *args))
        if len(pending) >= window:
            yield pending.popleft().result()
    while pending:
        yield pending.popleft().result()


def vote_files(buffers, out_f, chunk_size=DEFAULT_CHUNK_SIZE, jobs=1, on_discrepancy=None, on_progress=None):
    """
    Votes every offset of the aligned buffers and writes the result to out_f.

    Bytes are written in ascending offset order, one write per chunk, and
    the total number of corrected bits is returned. Flushing and closing
    out_f is left to the caller. A failed write stops the run straight away;
    whatever was already written stays in the sink.

    on_discrepancy(offset, byte, corrected, column) is called in offset
    order for every column that was not unanimous. on_progress(done) gets
    the number of offsets written so far after each chunk. With jobs > 1
    the chunks are voted in a process pool; results are still consumed in
    order, so output and callbacks are identical to a sequential run.
    """
    if not buffers:
        raise EmptyVoteSetError("Invalid vote set: no input buffers were given.")

    length = len(buffers[0])
    collect = on_discrepancy is not None
    starts = range(0, length, chunk_size)
    chunks = ([buf[start:start + chunk_size] for buf in buffers] for start in starts)

    executor = None
    if jobs > 1:
        executor = ProcessPoolExecutor(max_workers=jobs)
        tasks = zip(starts, chunks, repeat(collect))
        results = _bounded_map(executor, _vote_chunk, tasks, window=2 * jobs)
    else:
        results = map(_vote_chunk, starts, chunks, repeat(collect))

    corrected = 0
    done = 0
    try:
        for voted, n, discrepancies in results:
            try:
                out_f.write(voted)
            except OSError as e:
                raise OutputWriteError(f"Failed to write voted bytes at offset 0x{done:X}: {e}") from e
            corrected += n
            done += len(voted)
            for discrepancy in discrepancies:
                on_discrepancy(*discrepancy)
            if on_progress is not None:
                on_progress(done)
    finally:
        if executor is not None:
            executor.shutdown(cancel_futures=True)
    return corrected


class Reporter:
    """Prints progress and per-byte detail to stdout."""

    def info(self, message, end='\n'):
        print(message, end=end, flush=end != '\n')


class QuietReporter(Reporter):
    """Swallows everything; used when verbose output is off."""

    def info(self, message, end='\n'):
        pass


@dataclass
class VoterConfig:
    input_files: list = field(default_factory=list)
    output: str = DEFAULT_OUTPUT
    verbose: bool = False
    force: bool = False
    report: Optional[str] = None
    chunk_size: int = DEFAULT_CHUNK_SIZE
    jobs: int = 1

    @classmethod
    def from_args(cls, args):
        return cls(
            input_files=list(args.input_files),
            output=args.output,
            verbose=args.verbose,
            force=args.force,
            report=args.report,
            chunk_size=args.chunk_size,
            jobs=args.jobs,
        )

    def validate(self):
        if not self.output:
            raise ConfigurationError("An output file is required.")
        if len(self.input_files) < MIN_INPUT_FILES:
            raise ConfigurationError(
                f"At least {MIN_INPUT_FILES} input files are needed for a majority vote, got {len(self.input_files)}."
            )
        if self.chunk_size <= 0:
            raise ConfigurationError("Chunk size must be a positive integer.")
        if self.jobs < 1:
            raise ConfigurationError("Jobs must be at least 1.")

    def make_reporter(self):
        return Reporter() if self.verbose else QuietReporter()


def read_inputs(paths, reporter=None):
    """
    Loads every input fully into memory and checks they share one length.
    """
    reporter = reporter or QuietReporter()
    buffers = []
    expected = None
    for path in paths:
        try:
            with open(path, 'rb') as f:
                data = f.read()
        except OSError as e:
            raise InputReadError(f"Failed to read input file '{path}': {e}") from e

        if expected is None:
            expected = len(data)
        elif len(data) != expected:
            raise LengthMismatchError(
                f"Input file '{path}' is {len(data)} bytes but '{paths[0]}' is {expected} bytes. "
                f"All files must be the same length."
            )
        reporter.info(f"Loaded '{path}' ({len(data)} bytes).")
        buffers.append(data)
    return buffers


def format_votes(column):
    return ", ".join(f"0x{b:02X}({c})" for b, c in Counter(column).items())


def write_report(report_file, rows):
    with open(report_file, 'w', newline='') as csvfile:
        writer = csv.DictWriter(csvfile, fieldnames=REPORT_FIELDS)
        writer.writeheader()
        writer.writerows(rows)


def _abandon(out_f):
    """Closes an output the run is giving up on; the error already raised wins."""
    try:
        out_f.close()
    except OSError:
        # pending buffered bytes hit the same failure again
        pass


def create_voted_file(config, reporter):
    """
    Runs a whole vote: load the inputs, write the voted output, and save the
    discrepancy report if one was asked for.

    Returns (corrected_bits, length). The output file is only created once
    every input has been read and checked.
    """
    if os.path.exists(config.output) and not config.force:
        raise ConfigurationError(f"Output file '{config.output}' already exists. Use --force to overwrite.")

    buffers = read_inputs(config.input_files, reporter)
    length = len(buffers[0])
    reporter.info(f"Processing {len(buffers)} files, each of size: {length} bytes.")
    if config.report:
        reporter.info(f"Discrepancy report will be saved to: {config.report}")
    reporter.info(f"Output will be written to: {config.output}")

    report_rows = []

    def on_discrepancy(offset, byte, corrected, column):
        reporter.info(
            f"\nDiscrepancy at offset 0x{offset:X}: voted 0x{byte:02X}, {corrected} bit(s) corrected. "
            f"Votes: [ {format_votes(column)} ]"
        )
        if config.report:
            report_rows.append({
                'offset': f'0x{offset:X}',
                'voted_byte': f'0x{byte:02X}',
                'corrected_bits': corrected,
                'all_votes': format_votes(column),
            })

    def on_progress(done):
        percentage = (done / length) * 100
        reporter.info(f"Processed {done}/{length} bytes ({percentage:.2f}%)", end='\r')

    collect = config.verbose or bool(config.report)

    try:
        out_f = open(config.output, 'wb')
    except OSError as e:
        raise OutputWriteError(f"Failed to open output file '{config.output}': {e}") from e

    try:
        corrected = vote_files(
            buffers, out_f,
            chunk_size=config.chunk_size,
            jobs=config.jobs,
            on_discrepancy=on_discrepancy if collect else None,
            on_progress=on_progress,
        )
    except KeyboardInterrupt:
        _abandon(out_f)
        os.remove(config.output)
        raise
    except BaseException:
        _abandon(out_f)
        raise

    try:
        out_f.close()
    except OSError as e:
        raise OutputWriteError(f"Failed to flush output file '{config.output}': {e}") from e

    if config.report and report_rows:
        try:
            write_report(config.report, report_rows)
            reporter.info(f"\nDiscrepancy report saved to '{config.report}'.")
        except OSError as e:
            print(f"\nError writing report file: {e}", file=sys.stderr)

    return corrected, length


def build_parser():
    parser = argparse.ArgumentParser(
        description="Rebuilds a binary from several corrupted copies by byte-wise, then bit-wise, majority vote.",
        epilog="Example: bin-voter -v -o recovered.bin dump1.bin dump2.bin dump3.bin"
    )
    parser.add_argument('input_files', nargs='*', help=f'At least {MIN_INPUT_FILES} equally sized input files.')
    parser.add_argument('-o', '--output', default=DEFAULT_OUTPUT, help=f'Path for the voted output file (default: {DEFAULT_OUTPUT}).')
    parser.add_argument('-v', '--verbose', action='store_true', help='Print progress and every byte with a discrepancy.')
    parser.add_argument('-f', '--force', action='store_true', help='Force overwrite of the output file if it exists.')
    parser.add_argument('--report', help='Write a CSV report of all discrepancies.')
    parser.add_argument('--chunk-size', type=int, default=DEFAULT_CHUNK_SIZE, help=f'Number of offsets voted and written at a time (default: {DEFAULT_CHUNK_SIZE}).')
    parser.add_argument('-j', '--jobs', type=int, default=1, help='Worker processes used for voting (default: 1).')
    return parser


def main(argv=None):
    parser = build_parser()
    args = parser.parse_args(argv)
    config = VoterConfig.from_args(args)
    try:
        config.validate()
    except ConfigurationError as e:
        parser.error(str(e))

    reporter = config.make_reporter()
    try:
        corrected, length = create_voted_file(config, reporter)
    except VoterError as e:
        print(f"Error: {e}", file=sys.stderr)
        return 1
    except KeyboardInterrupt:
        print("\n\nProcess interrupted by user.", file=sys.stderr)
        return 1

    print("\n\nProcessing complete.")
    print(f"{corrected} bits corrected out of {8 * length}")
    print(f"Voted output saved to '{config.output}'")
    return 0


if __name__ == '__main__':
    sys.exit(main())
