"""Semantic chunking of source files into bounded, labeled units.

Boundary detection is a line-oriented regex heuristic, one strategy per
language family, selected by file extension. Nesting depth is tracked by
naive delimiter counting, so braces inside strings or comments are counted
as well. Files with an unknown extension go straight to fixed-size chunking.
"""

from __future__ import annotations

import functools
import logging
import math
import os
import re
from typing import Callable, Dict, List, NamedTuple, Optional

import tiktoken

from .models import ChunkDescriptor, UnitType

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHUNK_SIZE = 4000
DEFAULT_MIN_CHUNK_SIZE = 200
DEFAULT_OVERLAP_PERCENT = 0.08


@functools.lru_cache(maxsize=1)
def _encoder():
    # cl100k_base is compatible with most modern models
    return tiktoken.get_encoding("cl100k_base")


def count_tokens(text: str) -> int:
    """Count tokens in text using tiktoken."""
    return len(_encoder().encode(text))


class Boundary(NamedTuple):
    start_line: int  # 0-based, relative to the lines being split
    unit_type: UnitType
    unit_name: Optional[str] = None


def _joined_len(lines: List[str]) -> int:
    if not lines:
        return 0
    return sum(len(line) for line in lines) + len(lines) - 1


# -----------------------------------------------------------------------------
# Boundary strategies
# -----------------------------------------------------------------------------

class BoundaryStrategy:
    """Finds declaration boundaries for one language family."""

    extensions: tuple = ()

    def find_boundaries(self, lines: List[str]) -> List[Boundary]:
        raise NotImplementedError

    def secondary_boundaries(self, lines: List[str]) -> List[int]:
        """Line offsets of top-level control blocks inside one large region."""
        raise NotImplementedError


class BraceLanguageStrategy(BoundaryStrategy):
    """TypeScript / JavaScript declarations, nesting tracked by `{` and `}`."""

    extensions = (".ts", ".tsx", ".js", ".jsx", ".mjs", ".cjs")

    CLASS = re.compile(r"^(?:export\s+)?(?:abstract\s+)?class\s+(\w+)")
    INTERFACE = re.compile(r"^(?:export\s+)?interface\s+(\w+)")
    TYPE = re.compile(r"^(?:export\s+)?type\s+(\w+)")
    FUNCTION = re.compile(r"^(?:export\s+)?(?:async\s+)?function\s+(\w+)")
    ARROW = re.compile(r"^(?:export\s+)?(?:const|let|var)\s+(\w+)\s*=\s*(?:async\s+)?\(")
    DEFAULT_EXPORT = re.compile(r"^export\s+default\s+(?:async\s+)?function(?:\s+(\w+))?")
    METHOD = re.compile(r"^\s+(?:async\s+)?(?:public|private|protected|static|get|set)?\s*(\w+)\s*\(")
    CONTROL = re.compile(r"^(?:if|for|while|switch|try|catch|else)\b")
    CONTROL_WORDS = {"if", "for", "while", "switch", "catch"}

    # Order matters: the first matching pattern labels the line.
    DECLARATIONS = (
        (INTERFACE, UnitType.CLASS),
        (TYPE, UnitType.CLASS),
        (FUNCTION, UnitType.FUNCTION),
        (ARROW, UnitType.FUNCTION),
        (DEFAULT_EXPORT, UnitType.FUNCTION),
    )

    def find_boundaries(self, lines: List[str]) -> List[Boundary]:
        boundaries: List[Boundary] = []
        in_class = False
        depth = 0

        for i, line in enumerate(lines):
            stripped = line.strip()
            if not stripped or stripped.startswith("//") or stripped.startswith("*"):
                continue

            depth += line.count("{") - line.count("}")

            match = self.CLASS.match(stripped)
            if match:
                in_class = True
                boundaries.append(Boundary(i, UnitType.CLASS, match.group(1)))
                continue

            if in_class and depth == 0:
                in_class = False

            matched = False
            for pattern, unit_type in self.DECLARATIONS:
                match = pattern.match(stripped)
                if match:
                    name = match.group(1)
                    if pattern is self.DEFAULT_EXPORT and not name:
                        name = "default"
                    boundaries.append(Boundary(i, unit_type, name))
                    matched = True
                    break
            if matched:
                continue

            if in_class:
                match = self.METHOD.match(line)
                if match and match.group(1) not in self.CONTROL_WORDS:
                    boundaries.append(Boundary(i, UnitType.METHOD, match.group(1)))

        return boundaries

    def secondary_boundaries(self, lines: List[str]) -> List[int]:
        cues: List[int] = []
        depth = 0
        for i, line in enumerate(lines):
            if depth <= 1 and self.CONTROL.match(line.strip()):
                cues.append(i)
            depth += line.count("{") - line.count("}")
        return cues


class PythonStrategy(BoundaryStrategy):
    """Python declarations, nesting tracked by indentation."""

    extensions = (".py",)

    CLASS = re.compile(r"^class\s+(\w+)")
    FUNCTION = re.compile(r"^(?:async\s+)?def\s+(\w+)")
    CONTROL = re.compile(r"^(?:if|elif|else|for|while|try|except|finally|with)\b")

    @staticmethod
    def _indent(line: str) -> int:
        return len(line) - len(line.lstrip())

    def find_boundaries(self, lines: List[str]) -> List[Boundary]:
        boundaries: List[Boundary] = []
        class_indent: Optional[int] = None

        for i, line in enumerate(lines):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            indent = self._indent(line)
            if class_indent is not None and indent <= class_indent:
                class_indent = None

            match = self.CLASS.match(stripped)
            if match:
                class_indent = indent
                boundaries.append(Boundary(self._decorated_start(lines, i), UnitType.CLASS, match.group(1)))
                continue

            match = self.FUNCTION.match(stripped)
            if not match:
                continue
            if indent == 0:
                boundaries.append(Boundary(self._decorated_start(lines, i), UnitType.FUNCTION, match.group(1)))
            elif class_indent is not None:
                boundaries.append(Boundary(self._decorated_start(lines, i), UnitType.METHOD, match.group(1)))

        return boundaries

    @staticmethod
    def _decorated_start(lines: List[str], i: int) -> int:
        start = i
        while start > 0 and lines[start - 1].strip().startswith("@"):
            start -= 1
        return start

    def secondary_boundaries(self, lines: List[str]) -> List[int]:
        if not lines:
            return []
        head_indent = self._indent(lines[0])
        body_indent: Optional[int] = None
        cues: List[int] = []
        for i, line in enumerate(lines[1:], start=1):
            stripped = line.strip()
            if not stripped or stripped.startswith("#"):
                continue
            indent = self._indent(line)
            if body_indent is None and indent > head_indent:
                body_indent = indent
            if indent == body_indent and self.CONTROL.match(stripped):
                cues.append(i)
        return cues


STRATEGIES: Dict[str, BoundaryStrategy] = {}


def register_strategy(strategy: BoundaryStrategy) -> None:
    for ext in strategy.extensions:
        STRATEGIES[ext.lower()] = strategy


register_strategy(BraceLanguageStrategy())
register_strategy(PythonStrategy())


def get_strategy_for_file(filename: Optional[str]) -> Optional[BoundaryStrategy]:
    """Get the boundary strategy for a file extension, if any."""
    if not filename:
        return None
    _, ext = os.path.splitext(filename)
    return STRATEGIES.get(ext.lower())


# -----------------------------------------------------------------------------
# Chunker
# -----------------------------------------------------------------------------

class Chunker:
    """Abstract base class for text chunking."""

    def chunk(self, content: str, file_path: Optional[str] = None) -> List[ChunkDescriptor]:
        raise NotImplementedError


class SemanticChunker(Chunker):
    """Splits files along declaration boundaries, bounded by character size.

    Every produced chunk is at most `max_chunk_size` characters. Chunks below
    `min_chunk_size` are dropped. Consecutive chunks share roughly
    `overlap_percent` of the previous chunk's trailing lines.
    """

    def __init__(
        self,
        max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
        min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
        overlap_percent: float = DEFAULT_OVERLAP_PERCENT,
        count_tokens: bool = False,
    ):
        if max_chunk_size <= 0:
            raise ValueError(f"max_chunk_size must be positive, got {max_chunk_size}")
        if not 0 <= overlap_percent < 1:
            raise ValueError(f"overlap_percent must be in [0, 1), got {overlap_percent}")
        self.max_chunk_size = max_chunk_size
        self.min_chunk_size = min(min_chunk_size, max_chunk_size)
        self.overlap_percent = overlap_percent
        self.count_tokens = count_tokens

    def chunk(self, content: str, file_path: Optional[str] = None) -> List[ChunkDescriptor]:
        if not content:
            return []
        lines = content.split("\n")

        # Small files are kept as a single chunk
        if len(content) <= self.max_chunk_size:
            logger.debug(f"File {file_path or 'unknown'}: {len(content)} chars, keeping as single chunk")
            return self._finalize([ChunkDescriptor(content, 1, len(lines), UnitType.FULL)])

        strategy = get_strategy_for_file(file_path)
        if strategy is None:
            logger.debug(f"Using size-based chunking for {file_path or 'unknown file'}")
            chunks = self._chunk_by_size(lines, 0)
        else:
            boundaries = strategy.find_boundaries(lines)
            if not boundaries or boundaries[0].start_line > 0:
                boundaries.insert(0, Boundary(0, UnitType.BLOCK))
            logger.debug(f"Found {len(boundaries)} boundaries in {file_path}")
            chunks = self._accumulate(
                lines,
                boundaries,
                0,
                lambda region, offset, b: self._split_large_region(region, offset, b, strategy),
            )

        result = self._finalize(chunks)
        logger.debug(f"Created {len(result)} chunks from {file_path or 'unknown file'}")
        return result

    # -- accumulation --------------------------------------------------------

    def _accumulate(
        self,
        lines: List[str],
        boundaries: List[Boundary],
        offset: int,
        split_oversized: Callable[[List[str], int, Boundary], List[ChunkDescriptor]],
    ) -> List[ChunkDescriptor]:
        """Group consecutive boundary regions into chunks up to the max size."""
        chunks: List[ChunkDescriptor] = []
        current: List[str] = []
        current_start = 0
        label: Optional[Boundary] = None

        for i, boundary in enumerate(boundaries):
            end = boundaries[i + 1].start_line if i + 1 < len(boundaries) else len(lines)
            region = lines[boundary.start_line:end]
            if not region:
                continue
            region_len = _joined_len(region)

            if region_len > self.max_chunk_size:
                self._flush(chunks, current, offset + current_start, label)
                chunks.extend(split_oversized(region, offset + boundary.start_line, boundary))
                current, label = [], None
                continue

            if current and _joined_len(current) + 1 + region_len > self.max_chunk_size:
                self._flush(chunks, current, offset + current_start, label)
                seed = self._overlap_tail(current)
                if seed and _joined_len(seed) + 1 + region_len > self.max_chunk_size:
                    seed = []
                current, label = seed, None

            if not current:
                current_start = boundary.start_line
            elif label is None:
                # seeded with overlap lines that directly precede this boundary
                current_start = boundary.start_line - len(current)
            if label is None:
                label = boundary
            current.extend(region)

        self._flush(chunks, current, offset + current_start, label)
        return chunks

    def _split_large_region(
        self,
        region: List[str],
        offset: int,
        boundary: Boundary,
        strategy: BoundaryStrategy,
    ) -> List[ChunkDescriptor]:
        cues = [c for c in strategy.secondary_boundaries(region) if c > 0]
        if not cues:
            return self._chunk_by_size(region, offset, boundary.unit_type, boundary.unit_name)

        sub_boundaries = [Boundary(0, boundary.unit_type, boundary.unit_name)]
        sub_boundaries += [Boundary(c, boundary.unit_type, boundary.unit_name) for c in cues]
        return self._accumulate(
            region,
            sub_boundaries,
            offset,
            lambda block, block_offset, b: self._chunk_by_size(block, block_offset, b.unit_type, b.unit_name),
        )

    def _chunk_by_size(
        self,
        lines: List[str],
        offset: int,
        unit_type: UnitType = UnitType.BLOCK,
        unit_name: Optional[str] = None,
    ) -> List[ChunkDescriptor]:
        """Sliding-window chunking over lines with the configured overlap."""
        label = Boundary(0, unit_type, unit_name)
        chunks: List[ChunkDescriptor] = []
        current: List[str] = []
        current_start = 0
        current_len = 0

        for i, line in enumerate(lines):
            if len(line) > self.max_chunk_size:
                self._flush(chunks, current, offset + current_start, label)
                for pos in range(0, len(line), self.max_chunk_size):
                    piece = line[pos:pos + self.max_chunk_size]
                    self._flush(chunks, [piece], offset + i, label)
                current, current_len = [], 0
                current_start = i + 1
                continue

            if current and current_len + 1 + len(line) > self.max_chunk_size:
                self._flush(chunks, current, offset + current_start, label)
                seed = self._overlap_tail(current)
                if seed and _joined_len(seed) + 1 + len(line) > self.max_chunk_size:
                    seed = []
                current = seed
                current_len = _joined_len(seed)
                current_start = i - len(seed)

            if not current:
                current_start = i
                current_len = len(line)
            else:
                current_len += 1 + len(line)
            current.append(line)

        self._flush(chunks, current, offset + current_start, label)
        return chunks

    # -- helpers -------------------------------------------------------------

    def _overlap_tail(self, lines: List[str]) -> List[str]:
        n = math.floor(len(lines) * self.overlap_percent)
        return list(lines[-n:]) if n > 0 else []

    def _flush(
        self,
        chunks: List[ChunkDescriptor],
        lines: List[str],
        start: int,
        label: Optional[Boundary],
    ) -> None:
        if not lines:
            return
        content = "\n".join(lines)
        if len(content) < self.min_chunk_size:
            logger.debug(f"Dropping {len(content)}-char chunk at line {start + 1} (below minimum)")
            return
        chunks.append(
            ChunkDescriptor(
                content=content,
                start_line=start + 1,
                end_line=start + len(lines),
                unit_type=label.unit_type if label else UnitType.BLOCK,
                unit_name=label.unit_name if label else None,
            )
        )

    def _finalize(self, chunks: List[ChunkDescriptor]) -> List[ChunkDescriptor]:
        total = len(chunks)
        for idx, chunk in enumerate(chunks):
            chunk.chunk_index = idx
            chunk.chunk_count = total
            if self.count_tokens:
                chunk.token_count = count_tokens(chunk.content)
        return chunks


def chunk_source(
    content: str,
    file_path: Optional[str] = None,
    max_chunk_size: int = DEFAULT_MAX_CHUNK_SIZE,
    min_chunk_size: int = DEFAULT_MIN_CHUNK_SIZE,
    overlap_percent: float = DEFAULT_OVERLAP_PERCENT,
) -> List[ChunkDescriptor]:
    """Chunk one file's text (functional wrapper)."""
    chunker = SemanticChunker(max_chunk_size, min_chunk_size, overlap_percent)
    return chunker.chunk(content, file_path=file_path)
