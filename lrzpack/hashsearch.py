"""Rolling-tag hash table used by the rzip long-range match search."""

from __future__ import annotations

import random
from dataclasses import dataclass
from functools import reduce
from operator import xor
from typing import Sequence

MINIMUM_MATCH = 31
GREAT_MATCH = 1024
HASH_ENTRY_SIZE = 16
_MASK64 = (1 << 64) - 1
_COMPARE_STEP = 256


@dataclass(frozen=True)
class Level:
    """Hash table size and insertion policy for one compression level."""

    mb_used: int
    initial_freq: int
    max_chain_len: int

    def __post_init__(self) -> None:
        if self.mb_used < 1:
            raise ValueError("mb_used must be positive")
        if self.initial_freq < 0:
            raise ValueError("initial_freq cannot be negative")
        if self.max_chain_len < 1:
            raise ValueError("max_chain_len must be positive")


LEVELS: tuple[Level, ...] = (
    Level(1, 4, 1),
    Level(2, 4, 2),
    Level(4, 4, 2),
    Level(8, 4, 2),
    Level(16, 4, 3),
    Level(32, 4, 4),
    Level(32, 2, 6),
    Level(64, 1, 16),
    Level(64, 1, 32),
    Level(64, 1, 128),
)


def make_hash_index(seed: int | None = None) -> tuple[int, ...]:
    """Build the 256-entry table of random values that tags are made from."""
    rng = random.Random(seed)
    return tuple(
        (rng.getrandbits(31) << 16) ^ rng.getrandbits(31) for _ in range(256)
    )


def full_tag(data: Sequence[int], p: int, hash_index: Sequence[int]) -> int:
    """Tag of the MINIMUM_MATCH bytes starting at p."""
    return reduce(xor, (hash_index[b] for b in data[p:p + MINIMUM_MATCH]), 0)


def _forward_common(data: Sequence[int], a: int, b: int, limit: int) -> int:
    """Count equal bytes going forward from a and b, at most limit."""
    n = 0
    while n + _COMPARE_STEP <= limit and (
        data[a + n:a + n + _COMPARE_STEP] == data[b + n:b + n + _COMPARE_STEP]
    ):
        n += _COMPARE_STEP
    while n < limit and data[a + n] == data[b + n]:
        n += 1
    return n


def _backward_common(data: Sequence[int], a: int, b: int, limit: int) -> int:
    """Count equal bytes going backward from just before a and b, at most limit."""
    n = 0
    while n + _COMPARE_STEP <= limit and (
        data[a - n - _COMPARE_STEP:a - n] == data[b - n - _COMPARE_STEP:b - n]
    ):
        n += _COMPARE_STEP
    while n < limit and data[a - n - 1] == data[b - n - 1]:
        n += 1
    return n


def match_len(
    data: Sequence[int], p0: int, op: int, end: int, last_match: int
) -> tuple[int, int]:
    """Length of the match between p0 and the earlier op, and how far it reaches back.

    The match is extended forward up to end and backward no further than
    last_match. Returns (0, 0) when there is no match of MINIMUM_MATCH bytes.
    """
    if op >= p0:
        return 0, 0
    forward = _forward_common(data, p0, op, max(0, end - p0))
    back_limit = min(p0 - max(0, last_match), op)
    rev = _backward_common(data, p0, op, max(0, back_limit))
    length = forward + rev
    if length < MINIMUM_MATCH:
        return 0, 0
    return length, rev


def _trailing_ones_rank(t: int) -> int:
    inverted = ~t & _MASK64
    if not inverted:
        return 0
    return (inverted & -inverted).bit_length()


def _lesser_bitness(a: int, b: int) -> bool:
    """Is a going to be cleaned before b, having fewer low bits set?"""
    return _trailing_ones_rank(a) < _trailing_ones_rank(b)


def _increase_mask(mask: int) -> int:
    return (mask << 1) | 1


class HashTable:
    """Open-addressed table of tag positions, culled by the count of low set bits."""

    def __init__(self, level: Level) -> None:
        self.level = level
        hashsize = level.mb_used * (1024 * 1024 // HASH_ENTRY_SIZE)
        self.hash_bits = max(0, (hashsize - 1).bit_length())
        self.size = 1 << self.hash_bits
        self.hash_limit = self.size // 3 * 2
        self._mask = self.size - 1
        self._tags = [0] * self.size
        self._offsets = [0] * self.size
        self._victim_round = 0
        self.tag_hits = 0
        self.tag_misses = 0
        self.reset()

    @property
    def initial_mask(self) -> int:
        return (1 << self.level.initial_freq) - 1

    def reset(self) -> None:
        """Empty the table and restore the starting tag mask."""
        self._tags = [0] * self.size
        self._offsets = [0] * self.size
        self.minimum_tag_mask = self.initial_mask
        self.tag_clean_ptr = 0
        self.hash_count = 0

    def _empty(self, h: int) -> bool:
        return not (self._tags[h] | self._offsets[h])

    def _primary(self, t: int) -> int:
        return t & self._mask

    def insert(self, t: int, offset: int) -> None:
        """Add a tag at offset, counting it in hash_count."""
        self.hash_count += 1
        self._place(t, offset)

    def _place(self, t: int, offset: int) -> None:
        tags = self._tags
        h = self._primary(t)
        victim_h = 0
        rounds = 0
        max_chain = self.level.max_chain_len
        while not self._empty(h):
            occupant = tags[h]
            better_than_min = _increase_mask(self.minimum_tag_mask)
            if (occupant & better_than_min) != better_than_min:
                self.hash_count -= 1
                break
            if _lesser_bitness(occupant, t):
                self._place(occupant, self._offsets[h])
                break
            if occupant == t:
                if rounds == self._victim_round:
                    victim_h = h
                rounds += 1
                if rounds == max_chain:
                    h = victim_h
                    self.hash_count -= 1
                    self._victim_round += 1
                    if self._victim_round == max_chain:
                        self._victim_round = 0
                    break
            h = (h + 1) & self._mask
        tags[h] = t
        self._offsets[h] = offset

    def clean_one(self) -> int:
        """Drop one entry with the fewest low bits set; return the new insertion mask."""
        tags = self._tags
        while True:
            better_than_min = _increase_mask(self.minimum_tag_mask)
            while self.tag_clean_ptr < self.size:
                h = self.tag_clean_ptr
                if not self._empty(h) and (tags[h] & better_than_min) != better_than_min:
                    tags[h] = 0
                    self._offsets[h] = 0
                    self.hash_count -= 1
                    return better_than_min
                self.tag_clean_ptr += 1
            if better_than_min > _MASK64:
                raise LookupError("Hash table holds no entry to clean")
            self.minimum_tag_mask = better_than_min
            self.tag_clean_ptr = 0

    def find_best_match(
        self, data: Sequence[int], t: int, p: int, end: int, last_match: int
    ) -> tuple[int, int, int]:
        """Longest match for position p among entries with tag t.

        Returns (length, offset, reverse); length is 0 when nothing matched.
        """
        length = offset = reverse = 0
        h = self._primary(t)
        while not self._empty(h):
            if self._tags[h] == t:
                mlen, rev = match_len(data, p, self._offsets[h], end, last_match)
                if mlen:
                    if mlen > length:
                        length = mlen
                        offset = self._offsets[h] - rev
                        reverse = rev
                    self.tag_hits += 1
                else:
                    self.tag_misses += 1
            h = (h + 1) & self._mask
        return length, offset, reverse