from __future__ import annotations

import re
from dataclasses import dataclass

_RANGE_RE = re.compile(r"^\s*bytes\s*=\s*(\d*)\s*-\s*(\d*)\s*$", re.IGNORECASE)


class RangeNotSatisfiable(ValueError):
    def __init__(self, size: int) -> None:
        super().__init__(f"Requested range not satisfiable for {size} bytes")
        self.size = size


@dataclass(frozen=True, slots=True)
class ByteRange:
    start: int
    end: int

    @property
    def length(self) -> int:
        return self.end - self.start + 1

    def content_range(self, size: int) -> str:
        return f"bytes {self.start}-{self.end}/{size}"


def parse_byte_range(header: str | None, size: int) -> ByteRange | None:
    """Parse a single ``Range: bytes=...`` header against a resource of ``size`` bytes.

    Returns None when the header is absent or not a single byte range, in which
    case the whole resource is served. Raises RangeNotSatisfiable for ranges that
    fall outside the resource.
    """
    if not header:
        return None
    match = _RANGE_RE.match(header)
    if match is None:
        return None

    first, last = match.group(1), match.group(2)
    if not first and not last:
        return None

    if not first:
        suffix = int(last)
        if suffix == 0 or size == 0:
            raise RangeNotSatisfiable(size)
        return ByteRange(start=max(size - suffix, 0), end=size - 1)

    start = int(first)
    end = int(last) if last else size - 1
    if start >= size or end < start:
        raise RangeNotSatisfiable(size)
    return ByteRange(start=start, end=min(end, size - 1))
