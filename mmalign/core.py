"""Shared flags, record types and small helpers used across the mapper."""

from __future__ import annotations

import enum
import struct
from array import array
from dataclasses import dataclass, field
from typing import Iterable, Optional, Union

MASK32 = 0xFFFFFFFF
MASK64 = 0xFFFFFFFFFFFFFFFF


class MapFlag(enum.IntFlag):
    """Mapping option flags."""

    NO_DIAG = 0x1
    NO_DUAL = 0x2
    CIGAR = 0x4
    OUT_SAM = 0x8
    NO_QUAL = 0x10
    OUT_CG = 0x20
    OUT_CS = 0x40
    SPLICE = 0x80
    SPLICE_FOR = 0x100
    SPLICE_REV = 0x200
    NO_LJOIN = 0x400
    OUT_CS_LONG = 0x800
    SR = 0x1000
    FRAG_MODE = 0x2000
    NO_PRINT_2ND = 0x4000
    TWO_IO_THREADS = 0x8000
    LONG_CIGAR = 0x10000
    INDEPEND_SEG = 0x20000
    SPLICE_FLANK = 0x40000
    SOFTCLIP = 0x80000
    FOR_ONLY = 0x100000
    REV_ONLY = 0x200000
    HEAP_SORT = 0x400000
    ALL_CHAINS = 0x800000
    OUT_MD = 0x1000000
    COPY_COMMENT = 0x2000000
    EQX = 0x4000000
    PAF_NO_HIT = 0x8000000
    NO_END_FLT = 0x10000000
    HARD_MLEVEL = 0x20000000
    SAM_HIT_ONLY = 0x40000000
    RMQ = 0x80000000
    QSTRAND = 0x100000000
    NO_INV = 0x200000000


class CigarOp(enum.IntEnum):
    """CIGAR operation codes, stored in the low 4 bits of a packed operation."""

    MATCH = 0
    INS = 1
    DEL = 2
    N_SKIP = 3
    SOFT_CLIP = 4
    HARD_CLIP = 5
    PADDING = 6
    EQ_MATCH = 7
    X_MISMATCH = 8
    BACK = 9


CIGAR_STR = "MIDNSHP=XB"

# index flags
IDX_HPC = 0x1
IDX_NO_SEQ = 0x2
IDX_NO_NAME = 0x4
IDX_MAGIC = b"MMI\x02"

PARENT_UNSET = -1
PARENT_TMP_PRI = -2

SEED_LONG_JOIN = 1 << 40
SEED_IGNORE = 1 << 41
SEED_TANDEM = 1 << 42
SEED_SELF = 1 << 43
SEED_SEG_SHIFT = 48
SEED_SEG_MASK = 0xFF << SEED_SEG_SHIFT

_NT4 = bytearray([4] * 256)
for _i, _c in enumerate("ACGT"):
    _NT4[ord(_c)] = _i
    _NT4[ord(_c.lower())] = _i
_NT4[ord("U")] = 3
_NT4[ord("u")] = 3
NT4_TABLE = bytes(_NT4)


def _int32(v: int) -> int:
    v &= MASK32
    return v - (1 << 32) if v & 0x80000000 else v


@dataclass
class Anchor:
    """A seed hit: x packs strand, reference id and reference end; y packs flags, span and query end."""

    x: int = 0
    y: int = 0

    @property
    def rev(self) -> int:
        return (self.x >> 63) & 1

    @property
    def rid(self) -> int:
        return (self.x >> 32) & 0x7FFFFFFF

    @property
    def rpos(self) -> int:
        return _int32(self.x)

    @property
    def qpos(self) -> int:
        return _int32(self.y)

    @property
    def q_span(self) -> int:
        return (self.y >> 32) & 0xFF


@dataclass
class Extra:
    """Base-level alignment details attached to a region."""

    dp_score: int = 0
    dp_max: int = 0
    dp_max2: int = 0
    n_ambi: int = 0
    trans_strand: int = 0
    cigar: list[int] = field(default_factory=list)


@dataclass
class Region:
    """One hit of a query against the reference."""

    id: int = 0
    cnt: int = 0
    rid: int = 0
    score: int = 0
    qs: int = 0
    qe: int = 0
    rs: int = 0
    re: int = 0
    parent: int = PARENT_UNSET
    subsc: int = 0
    as_: int = 0
    mlen: int = 0
    blen: int = 0
    n_sub: int = 0
    score0: int = 0
    mapq: int = 0
    split: int = 0
    rev: int = 0
    inv: int = 0
    sam_pri: int = 0
    proper_frag: int = 0
    pe_thru: int = 0
    seg_split: int = 0
    seg_id: int = 0
    split_inv: int = 0
    is_alt: int = 0
    strand_retained: int = 0
    hash: int = 0
    div: float = -1.0
    p: Optional[Extra] = None


class PackedSequence:
    """Nucleotide codes packed eight to a 32-bit word, four bits each."""

    def __init__(self, length: int = 0) -> None:
        self.words = array("I", [0]) * ((length + 7) // 8)

    def _ensure(self, word: int) -> None:
        if word >= len(self.words):
            self.words.extend([0] * (word + 1 - len(self.words)))

    def set(self, i: int, c: int) -> None:
        """OR the code c into position i."""
        w = i >> 3
        self._ensure(w)
        self.words[w] = (self.words[w] | ((c & 0xF) << ((i & 7) << 2))) & MASK32

    def get(self, i: int) -> int:
        w = i >> 3
        if w >= len(self.words):
            return 0
        return (self.words[w] >> ((i & 7) << 2)) & 0xF


def mg_log2(x: float) -> float:
    """Fast approximate base-2 logarithm; only accurate for x >= 2."""
    z = struct.unpack("<I", struct.pack("<f", x))[0]
    log_2 = float(((z >> 23) & 255) - 128)
    z &= ~(255 << 23) & MASK32
    z = (z + (127 << 23)) & MASK32
    f = struct.unpack("<f", struct.pack("<I", z))[0]
    log_2 += (-0.34484843 * f + 2.02466578) * f - 0.67487759
    return struct.unpack("<f", struct.pack("<f", log_2))[0]


def encode_nt4(seq: Union[str, bytes]) -> bytes:
    """Map A/C/G/T(U) to 0-3 and every other character to 4."""
    if isinstance(seq, str):
        seq = seq.encode("latin-1")
    return bytes(seq).translate(NT4_TABLE)


def cigar_to_string(cigar: Iterable[int]) -> str:
    """Render packed CIGAR operations as text."""
    return "".join(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in cigar)