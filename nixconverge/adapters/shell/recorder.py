"""
Prefix/suffix recorder — bounded capture of an unbounded byte stream.

Child processes can write megabytes to stderr. For error messages we
only want the beginning (usually the real cause) and the end (usually
the final failure), so the recorder keeps the first ``limit`` bytes and
the last ``limit`` bytes and counts what it threw away in between.

Memory use is bounded by ``2 * limit`` regardless of stream length.
"""

from __future__ import annotations

# Default budget for each of the prefix and the suffix
DEFAULT_LIMIT = 32 * 1024


class PrefixSuffixRecorder:
    """File-like sink that retains the first and last ``limit`` bytes.

    The suffix becomes a ring buffer once it fills up; ``_offset`` is the
    next write position in the ring, which is also where the oldest
    retained byte lives.
    """

    def __init__(self, limit: int = DEFAULT_LIMIT):
        if limit <= 0:
            raise ValueError("limit must be positive")
        self.limit = limit
        self._prefix = bytearray()
        self._suffix = bytearray()
        self._offset = 0
        self._skipped = 0
        self._total = 0

    @property
    def skipped(self) -> int:
        """Bytes written but no longer retained."""
        return self._skipped

    @property
    def total(self) -> int:
        """Bytes written over the recorder's lifetime."""
        return self._total

    def write(self, data: bytes) -> int:
        """Append a chunk. Never raises, never blocks."""
        size = len(data)
        self._total += size
        view = memoryview(data)

        view = self._fill(self._prefix, view)

        # Only the last `limit` bytes of what's left can survive.
        overage = len(view) - self.limit
        if overage > 0:
            view = view[overage:]
            self._skipped += overage

        view = self._fill(self._suffix, view)

        # Suffix is full if anything remains: overwrite in a circle.
        while view:
            n = min(len(view), self.limit - self._offset)
            self._suffix[self._offset:self._offset + n] = view[:n]
            view = view[n:]
            self._skipped += n
            self._offset += n
            if self._offset == self.limit:
                self._offset = 0

        return size

    def _fill(self, dst: bytearray, view: memoryview) -> memoryview:
        """Append up to the remaining capacity of ``dst``, return the rest."""
        remain = self.limit - len(dst)
        if remain > 0 and view:
            add = min(len(view), remain)
            dst += view[:add]
            view = view[add:]
        return view

    def flush(self) -> None:
        pass

    def getvalue(self) -> bytes:
        """Reconstruct prefix + marker + suffix in chronological order."""
        if not self._suffix:
            return bytes(self._prefix)
        if self._skipped == 0:
            return bytes(self._prefix + self._suffix)
        return b"".join((
            bytes(self._prefix),
            b"\n... omitting %d bytes ...\n" % self._skipped,
            bytes(self._suffix[self._offset:]),
            bytes(self._suffix[:self._offset]),
        ))

    def __len__(self) -> int:
        return len(self._prefix) + len(self._suffix)
