"""Split newline-delimited request files into aligned, size-bounded parts.

Parts are cut every ``ceil(total_lines / num_parts)`` records. A part is also
closed early when the next record would push it over the byte ceiling. When
several correlated files are split together they are read in lockstep and
share every boundary, so part ``i`` of each file holds the same records.
"""

from __future__ import annotations

import logging
import math
import os
from contextlib import ExitStack
from itertools import zip_longest
from pathlib import Path
from typing import IO, Iterator, List, Optional, Sequence

from .constants import DEFAULT_MAX_PART_BYTES, DEFAULT_TARGET_PART_BYTES, MIB
from .contracts import Chunk, SplitResult
from .errors import ChunkTooLargeError, EmptyInputError, MisalignedStreamsError

logger = logging.getLogger(__name__)


def _iter_records(handle: IO[str]) -> Iterator[str]:
    for raw in handle:
        line = raw.rstrip("\r\n")
        if line.strip():
            yield line


def _record_size(line: str) -> int:
    return len(line.encode("utf-8")) + 1


def count_lines(path: str | Path) -> tuple[int, int]:
    """Return ``(records, bytes)`` for ``path`` in one streaming pass.

    Whitespace-only lines are ignored. Bytes are counted as written to a part,
    one newline per record.
    """
    lines = 0
    size = 0
    with open(path, "r", encoding="utf-8") as handle:
        for line in _iter_records(handle):
            lines += 1
            size += _record_size(line)
    return lines, size


def plan_parts(total_bytes: int, target_part_bytes: int = DEFAULT_TARGET_PART_BYTES) -> int:
    """Number of parts needed to keep each part near ``target_part_bytes``."""
    if target_part_bytes <= 0:
        raise ValueError("target_part_bytes must be positive")
    return max(1, math.ceil(total_bytes / target_part_bytes))


def _part_name(stem: str, index: int, total: int) -> str:
    return f"{stem}-part{index}of{total}.jsonl"


class _PartWriter:
    """Writes the parts of one stream to temporary files."""

    def __init__(self, source: Path, out_dir: Path) -> None:
        self.source = source
        self.out_dir = out_dir
        self.stem = source.stem
        self.temp_paths: List[Path] = []
        self.final_paths: List[Path] = []
        self.line_counts: List[int] = []
        self.byte_sizes: List[int] = []
        self._handle: Optional[IO[str]] = None

    @property
    def current_bytes(self) -> int:
        return self.byte_sizes[-1] if self.byte_sizes else 0

    @property
    def current_lines(self) -> int:
        return self.line_counts[-1] if self.line_counts else 0

    def open_part(self) -> None:
        self.close()
        index = len(self.temp_paths) + 1
        path = self.out_dir / f".{self.stem}-part{index}.tmp"
        self._handle = open(path, "w", encoding="utf-8", newline="\n")
        self.temp_paths.append(path)
        self.line_counts.append(0)
        self.byte_sizes.append(0)

    def write(self, line: str, size: int) -> None:
        self._handle.write(line + "\n")
        self.line_counts[-1] += 1
        self.byte_sizes[-1] += size

    def close(self) -> None:
        if self._handle is not None:
            self._handle.flush()
            os.fsync(self._handle.fileno())
            self._handle.close()
            self._handle = None

    def finalize(self, lines_per_part: int, total_lines: int, total_bytes: int) -> SplitResult:
        self.close()
        total_parts = len(self.temp_paths)
        parts: List[Chunk] = []
        for index, temp in enumerate(self.temp_paths, start=1):
            final = self.out_dir / _part_name(self.stem, index, total_parts)
            os.replace(temp, final)
            self.final_paths.append(final)
            parts.append(
                Chunk(
                    index=index,
                    total_parts=total_parts,
                    line_count=self.line_counts[index - 1],
                    byte_size=self.byte_sizes[index - 1],
                    path=final,
                )
            )
            logger.info(
                f"[split] Completed part {index}/{total_parts}: {final.name}, "
                f"{self.byte_sizes[index - 1] / MIB:.2f} MB, "
                f"{self.line_counts[index - 1]} lines"
            )
        return SplitResult(
            source=self.source,
            total_lines=total_lines,
            total_bytes=total_bytes,
            lines_per_part=lines_per_part,
            parts=parts,
        )

    def discard(self) -> None:
        self.close()
        for path in self.temp_paths + self.final_paths:
            try:
                path.unlink()
            except FileNotFoundError:
                pass


def split_correlated(
    paths: Sequence[str | Path],
    out_dir: str | Path,
    num_parts: Optional[int] = None,
    max_part_bytes: int = DEFAULT_MAX_PART_BYTES,
    target_part_bytes: int = DEFAULT_TARGET_PART_BYTES,
) -> List[SplitResult]:
    """Split one or more correlated streams at identical record boundaries.

    Args:
        paths: Input files. Every file must hold the same number of records.
        out_dir: Directory for the part files (created if missing).
        num_parts: Requested number of parts. When omitted it is derived from
            the largest input and ``target_part_bytes``.
        max_part_bytes: Hard ceiling for any single part.
        target_part_bytes: Size used to plan parts when ``num_parts`` is omitted.

    Returns:
        One :class:`SplitResult` per input, in input order.

    Raises:
        EmptyInputError: An input has no records.
        MisalignedStreamsError: Inputs disagree on record count.
        ChunkTooLargeError: A part cannot stay under ``max_part_bytes``.
    """
    if not paths:
        raise ValueError("At least one input path is required")
    if num_parts is not None and num_parts < 1:
        raise ValueError("num_parts must be at least 1")

    sources = [Path(p) for p in paths]
    stems = [p.stem for p in sources]
    if len(set(stems)) != len(stems):
        raise ValueError(f"Correlated inputs must have distinct file names: {stems}")

    counts = {}
    sizes = {}
    for source in sources:
        lines, size = count_lines(source)
        if lines == 0:
            raise EmptyInputError(str(source))
        counts[str(source)] = lines
        sizes[str(source)] = size
        logger.info(f"[split] {source.name}: {lines} lines, {size / MIB:.2f} MB")

    if len(set(counts.values())) > 1:
        raise MisalignedStreamsError(counts)

    total_lines = next(iter(counts.values()))
    largest = max(sizes.values())
    if num_parts is None:
        num_parts = plan_parts(largest, target_part_bytes)
    lines_per_part = math.ceil(total_lines / num_parts)
    suggested = max(num_parts + 1, plan_parts(largest, target_part_bytes))
    logger.info(
        f"[split] Splitting {total_lines} lines into {num_parts} parts, "
        f"{lines_per_part} lines per part"
    )

    out = Path(out_dir)
    out.mkdir(parents=True, exist_ok=True)
    writers = [_PartWriter(source, out) for source in sources]

    try:
        with ExitStack() as stack:
            handles = [
                stack.enter_context(open(source, "r", encoding="utf-8"))
                for source in sources
            ]
            rows = zip_longest(*(_iter_records(h) for h in handles))
            for writer in writers:
                writer.open_part()

            for row_index, row in enumerate(rows):
                if any(line is None for line in row):
                    raise MisalignedStreamsError(counts)
                row_sizes = [_record_size(line) for line in row]
                part_count = len(writers[0].temp_paths)

                if max(row_sizes) > max_part_bytes:
                    raise ChunkTooLargeError(
                        part_count, max(row_sizes), max_part_bytes, suggested
                    )

                if row_index > 0 and row_index % lines_per_part == 0 and part_count < num_parts:
                    for writer in writers:
                        writer.open_part()
                elif any(
                    writer.current_bytes + size > max_part_bytes
                    for writer, size in zip(writers, row_sizes)
                ):
                    if part_count >= num_parts:
                        over = max(
                            writer.current_bytes + size
                            for writer, size in zip(writers, row_sizes)
                        )
                        raise ChunkTooLargeError(
                            part_count, over, max_part_bytes, suggested
                        )
                    logger.warning(
                        f"[split] Part {part_count} reached the size limit "
                        f"({writers[0].current_bytes / MIB:.2f} MB) before its line "
                        "limit. Creating new part early."
                    )
                    for writer in writers:
                        writer.open_part()

                for writer, line, size in zip(writers, row, row_sizes):
                    writer.write(line, size)

        results = [
            writer.finalize(lines_per_part, total_lines, sizes[str(writer.source)])
            for writer in writers
        ]
    except BaseException:
        for writer in writers:
            writer.discard()
        raise

    distribution = ", ".join(
        f"{part.filename}: {part.line_count} lines" for part in results[0].parts
    )
    logger.info(f"[split] Line distribution: {distribution}")
    return results


def split_file(
    path: str | Path,
    out_dir: str | Path,
    num_parts: Optional[int] = None,
    max_part_bytes: int = DEFAULT_MAX_PART_BYTES,
    target_part_bytes: int = DEFAULT_TARGET_PART_BYTES,
) -> SplitResult:
    """Split a single stream. See :func:`split_correlated`."""
    return split_correlated(
        [path],
        out_dir,
        num_parts=num_parts,
        max_part_bytes=max_part_bytes,
        target_part_bytes=target_part_bytes,
    )[0]


__all__ = ["count_lines", "plan_parts", "split_file", "split_correlated"]
