"""
Bounded cache of recently scanned block hashes, used for reorg detection.
"""

from collections import OrderedDict


class HeaderCache:
    """
    Maps block height to the hash seen when that height was scanned.

    Uses an OrderedDict kept in ascending height order so the oldest entry
    can be evicted in O(1) once the cache is full.
    """

    def __init__(self, max_size: int) -> None:
        """
        Initialize the cache.

        Args:
            max_size: Number of heights to retain
        """
        self.max_size = max_size
        self._hashes: OrderedDict[int, bytes] = OrderedDict()

    def __len__(self) -> int:
        return len(self._hashes)

    def __contains__(self, height: int) -> bool:
        return height in self._hashes

    def get(self, height: int) -> bytes | None:
        return self._hashes.get(height)

    def put(self, height: int, block_hash: bytes) -> None:
        """
        Record the hash for a height.

        Heights at or above the new one are dropped first: they belong to a
        branch the caller has already moved away from.
        """
        self.truncate_above(height - 1)
        self._hashes[height] = block_hash

        while len(self._hashes) > self.max_size:
            self._hashes.popitem(last=False)

    def heights(self) -> list[int]:
        """Cached heights in ascending order."""
        return list(self._hashes.keys())

    def truncate_above(self, height: int) -> int:
        """
        Forget every height strictly above the given one.

        Returns:
            Number of entries removed
        """
        removed = 0
        while self._hashes:
            last = next(reversed(self._hashes))
            if last <= height:
                break
            del self._hashes[last]
            removed += 1
        return removed
