"""Minimizer index over a set of reference sequences, with BED and ALT annotations."""

from __future__ import annotations

import gzip
import logging
import os
import re
import struct
import sys
from bisect import bisect_left
from contextlib import contextmanager
from dataclasses import dataclass, field
from itertools import groupby
from typing import BinaryIO, Iterable, Iterator, Optional, Sequence, Union

from .core import IDX_MAGIC, IDX_NO_NAME, IDX_NO_SEQ, MASK32, MASK64, PackedSequence, encode_nt4

logger = logging.getLogger(__name__)

INT32_MAX = 0x7FFFFFFF

_ATOL = re.compile(r"[ \t\n\v\f\r]*([+-]?\d+)")


@dataclass
class RefSeq:
    """A reference sequence: its name, offset into the packed store and length."""

    name: Optional[str]
    offset: int
    length: int
    is_alt: bool = False


@dataclass
class Interval:
    """An annotated interval on a reference sequence."""

    st: int
    en: int
    max: int = -1
    score: int = -1
    strand: int = 0


@dataclass
class _Bucket:
    pending: list = field(default_factory=list)
    p: list = field(default_factory=list)
    h: Optional[dict] = None  # (minimizer >> b) -> (is_single, value)


def _atol(s: str) -> int:
    m = _ATOL.match(s)
    return int(m.group(1)) if m else 0


def _xy(m) -> tuple[int, int]:
    if hasattr(m, "x"):
        return m.x & MASK64, m.y & MASK64
    return m[0] & MASK64, m[1] & MASK64


def _read_exact(fp: BinaryIO, n: int) -> bytes:
    data = fp.read(n)
    if len(data) != n:
        raise ValueError("truncated index file")
    return data


@contextmanager
def _open_lines(path: Optional[str]) -> Iterator[Iterator[str]]:
    owns = path is not None and path != "-"
    raw = open(path, "rb") if owns else sys.stdin.buffer
    try:
        head = raw.peek(2)[:2] if hasattr(raw, "peek") else b""
        stream = gzip.GzipFile(fileobj=raw) if head == b"\x1f\x8b" else raw
        yield (line.rstrip(b"\r\n").decode("latin-1") for line in stream)
    finally:
        if owns:
            raw.close()


class Index:
    """Reference sequences and the hash of their minimizers, split into 2**b buckets."""

    def __init__(self, w: int, k: int, b: int, flag: int = 0) -> None:
        if k * 2 < b:
            b = k * 2
        if w < 1:
            w = 1
        self.w = w
        self.k = k
        self.b = b
        self.flag = flag
        self.seqs: list[RefSeq] = []
        self.S: Optional[PackedSequence] = None if flag & IDX_NO_SEQ else PackedSequence(0)
        self.sum_len = 0
        self.buckets = [_Bucket() for _ in range(1 << b)]
        self.intervals: Optional[list[list[Interval]]] = None
        self.n_alt = 0
        self.part = 0
        self._names: Optional[dict[str, int]] = None

    # ---- building ----

    def add_sequences(
        self, names: Optional[Sequence[Optional[str]]], seqs: Sequence[Union[str, bytes]]
    ) -> list[int]:
        """Append reference sequences and return their ids."""
        if names is None:
            names = [None] * len(seqs)
        if len(names) != len(seqs):
            raise ValueError("names and sequences differ in number")
        rids = []
        for name, seq in zip(names, seqs):
            codes = encode_nt4(seq)
            rid = len(self.seqs)
            if self.flag & IDX_NO_NAME:
                name = None
            self.seqs.append(RefSeq(name, self.sum_len, len(codes)))
            if self.S is not None:
                for j, c in enumerate(codes):
                    self.S.set(self.sum_len + j, c)
            if self._names is not None and name is not None and name not in self._names:
                self._names[name] = rid
            self.sum_len += len(codes)
            rids.append(rid)
        return rids

    def add_minimizers(self, minimizers: Iterable) -> None:
        """Queue (x, y) minimizers; x holds hash<<8|span, y holds rid<<32|pos<<1|strand."""
        mask = (1 << self.b) - 1
        for m in minimizers:
            x, y = _xy(m)
            self.buckets[(x >> 8) & mask].pending.append((x, y))

    def finalize(self) -> None:
        """Sort queued minimizers and build the per-bucket hash tables."""
        for bucket in self.buckets:
            if not bucket.pending:
                continue
            entries = sorted(bucket.pending, key=lambda t: t[0])
            h: dict[int, tuple[int, int]] = {}
            p: list[int] = []
            for hv, grp in groupby(entries, key=lambda t: t[0] >> 8):
                ys = [y for _, y in grp]
                key = hv >> self.b
                if len(ys) == 1:
                    h[key] = (1, ys[0])
                else:
                    h[key] = (0, len(p) << 32 | len(ys))
                    p.extend(sorted(ys))
            bucket.h, bucket.p, bucket.pending = h, p, []

    # ---- queries ----

    def get(self, minimizer: int) -> list[int]:
        """Positions of a minimizer hash; empty if absent."""
        bucket = self.buckets[minimizer & ((1 << self.b) - 1)]
        if not bucket.h:
            return []
        ent = bucket.h.get(minimizer >> self.b)
        if ent is None:
            return []
        single, val = ent
        if single:
            return [val]
        start, n = val >> 32, val & MASK32
        return bucket.p[start:start + n]

    def index_names(self) -> bool:
        """Build the name lookup; return True if some names are duplicated."""
        if self._names is not None:
            return False
        names: dict[str, int] = {}
        has_dup = False
        for i, s in enumerate(self.seqs):
            if s.name is None:
                continue
            if s.name in names:
                has_dup = True
            else:
                names[s.name] = i
        self._names = names
        if has_dup:
            logger.warning("some database sequences have identical sequence names")
        return has_dup

    def name_to_id(self, name: str) -> Optional[int]:
        """Id of the named sequence, or None if there is none."""
        if self._names is None:
            raise RuntimeError("sequence names are not indexed")
        return self._names.get(name)

    def _check_range(self, rid: int, st: int) -> RefSeq:
        if self.S is None:
            raise ValueError("the index holds no sequences")
        if rid < 0 or rid >= len(self.seqs) or st < 0 or st >= self.seqs[rid].length:
            raise IndexError(f"invalid range on sequence {rid} starting at {st}")
        return self.seqs[rid]

    def getseq(self, rid: int, st: int, en: int) -> bytes:
        """Nucleotide codes of [st, en) on the forward strand; en is clamped."""
        s = self._check_range(rid, st)
        en = min(en, s.length)
        S = self.S
        return bytes(S.get(i) for i in range(s.offset + st, s.offset + en))

    def getseq_rev(self, rid: int, st: int, en: int) -> bytes:
        """Nucleotide codes of [st, en) in reverse-strand coordinates."""
        s = self._check_range(rid, st)
        en = min(en, s.length)
        st1 = s.offset + (s.length - en)
        en1 = s.offset + (s.length - st)
        S = self.S
        out = bytearray()
        for i in range(en1 - 1, st1 - 1, -1):
            c = S.get(i)
            out.append(3 - c if c < 4 else c)
        return bytes(out)

    def getseq2(self, is_rev: bool, rid: int, st: int, en: int) -> bytes:
        return self.getseq_rev(rid, st, en) if is_rev else self.getseq(rid, st, en)

    def cal_max_occ(self, f: float) -> int:
        """Occurrence threshold above which the top fraction f of minimizers lies."""
        if f <= 0.0:
            return INT32_MAX
        counts = sorted(
            1 if single else val & MASK32
            for bucket in self.buckets
            if bucket.h
            for single, val in bucket.h.values()
        )
        if not counts:
            return INT32_MAX
        kk = min(max(int((1.0 - f) * len(counts)), 0), len(counts) - 1)
        return counts[kk] + 1

    # ---- I/O ----

    def dump(self, fp: BinaryIO) -> None:
        """Write the index in the binary index format."""
        fp.write(IDX_MAGIC)
        fp.write(struct.pack("<5I", self.w, self.k, self.b, len(self.seqs), self.flag & MASK32))
        for s in self.seqs:
            if s.name is not None:
                nb = s.name.encode("latin-1")
                l = len(nb) & 0xFF
                fp.write(bytes([l]) + nb[:l])
            else:
                fp.write(b"\x00")
            fp.write(struct.pack("<I", s.length))
        for bucket in self.buckets:
            fp.write(struct.pack("<i", len(bucket.p)))
            fp.write(struct.pack(f"<{len(bucket.p)}Q", *bucket.p))
            h = bucket.h or {}
            fp.write(struct.pack("<I", len(h)))
            for key in sorted(h):
                single, val = h[key]
                fp.write(struct.pack("<QQ", (key << 1 | single) & MASK64, val & MASK64))
        if not self.flag & IDX_NO_SEQ:
            n = (self.sum_len + 7) // 8
            words = list(self.S.words[:n]) if self.S is not None else []
            words.extend([0] * (n - len(words)))
            fp.write(struct.pack(f"<{n}I", *words))
        fp.flush()

    @classmethod
    def load(cls, fp: BinaryIO) -> Optional["Index"]:
        """Read one index; None at the end of the stream."""
        magic = fp.read(4)
        if not magic:
            return None
        if magic != IDX_MAGIC:
            raise ValueError("not an index file")
        w, k, b, n_seq, flag = struct.unpack("<5I", _read_exact(fp, 20))
        mi = cls(w, k, b, flag)
        for _ in range(n_seq):
            l = _read_exact(fp, 1)[0]
            name = _read_exact(fp, l).decode("latin-1") if l else None
            (length,) = struct.unpack("<I", _read_exact(fp, 4))
            mi.seqs.append(RefSeq(name, mi.sum_len, length))
            mi.sum_len += length
        for bucket in mi.buckets:
            (n,) = struct.unpack("<i", _read_exact(fp, 4))
            bucket.p = list(struct.unpack(f"<{n}Q", _read_exact(fp, 8 * n)))
            (size,) = struct.unpack("<I", _read_exact(fp, 4))
            if size == 0:
                continue
            h = {}
            for _ in range(size):
                key, val = struct.unpack("<QQ", _read_exact(fp, 16))
                h[key >> 1] = (key & 1, val)
            bucket.h = h
        if not flag & IDX_NO_SEQ:
            n = (mi.sum_len + 7) // 8
            packed = PackedSequence(0)
            packed.words.extend(struct.unpack(f"<{n}I", _read_exact(fp, 4 * n)))
            mi.S = packed
        return mi

    # ---- annotations ----

    def read_alt(self, path: Optional[str]) -> int:
        """Mark the sequences named in a list file as ALT contigs; return the count."""
        if self._names is None:
            self.index_names()
        n_alt = 0
        with _open_lines(path) as lines:
            for line in lines:
                name = re.split(r"\s", line, maxsplit=1)[0]
                rid = self.name_to_id(name)
                if rid is not None:
                    self.seqs[rid].is_alt = True
                    n_alt += 1
        self.n_alt = n_alt
        logger.info("found %d ALT contigs", n_alt)
        return n_alt

    def read_bed(self, path: Optional[str], read_junc: bool) -> None:
        """Load BED intervals; with read_junc, BED12 records yield their introns."""
        if self._names is None:
            self.index_names()
        intervals: list[list[Interval]] = [[] for _ in self.seqs]
        with _open_lines(path) as lines:
            for line in lines:
                rid: Optional[int] = None
                st = en = score = -1
                strand = n_blk = last = 0
                bl = bs = ""
                for i, f in enumerate(line.split("\t")):
                    last = i
                    if i == 0:
                        rid = self.name_to_id(f)
                        if rid is None:
                            break
                    elif i == 1:
                        st = _atol(f)
                        if st < 0:
                            break
                    elif i == 2:
                        en = _atol(f)
                        if en < 0:
                            break
                    elif i == 4:
                        score = _atol(f)
                    elif i == 5:
                        strand = 1 if f[:1] == "+" else -1 if f[:1] == "-" else 0
                    elif i == 9:
                        if not (f and "0" <= f[0] <= "9"):
                            break
                        n_blk = _atol(f)
                    elif i == 10:
                        bl = f
                    elif i == 11:
                        bs = f
                        break
                if rid is None or st < 0 or st >= en:
                    continue
                out = intervals[rid]
                if last >= 11 and read_junc:
                    starts, sizes = bs.split(","), bl.split(",")

                    def _nth(items: list[str], j: int) -> int:
                        return _atol(items[j]) if j < len(items) else 0

                    blk_en = st + _nth(starts, 0) + _nth(sizes, 0)
                    for j in range(1, n_blk):
                        bst, bsz = _nth(starts, j), _nth(sizes, j)
                        s_st, s_en = blk_en, st + bst
                        blk_en = st + bst + bsz
                        if s_en > s_st:
                            out.append(Interval(s_st, s_en, -1, score, strand))
                else:
                    out.append(Interval(st, en, -1, score, strand))
        for ivs in intervals:
            ivs.sort(key=lambda iv: iv.st)
        self.intervals = intervals

    def bed_junc(self, ctg: int, st: int, en: int) -> bytes:
        """Per-base splice-site flags for [st, en) from stranded intervals contained in it."""
        s = bytearray(max(en - st, 0))
        if self.intervals is None or ctg < 0 or ctg >= len(self.seqs):
            return bytes(s)
        r = self.intervals[ctg]
        left = bisect_left(r, st, key=lambda iv: iv.st)
        for iv in r[left:]:
            if st <= iv.st and en >= iv.en and iv.strand != 0:
                if iv.strand > 0:
                    s[iv.st - st] |= 1
                    s[iv.en - 1 - st] |= 2
                else:
                    s[iv.st - st] |= 8
                    s[iv.en - 1 - st] |= 4
        return bytes(s)


def is_index_file(path: str) -> int:
    """Size of the file if it is a prebuilt index, else 0; '-' is never an index."""
    if path == "-":
        return 0
    with open(path, "rb") as fh:
        size = fh.seek(0, os.SEEK_END)
        if size >= 4:
            fh.seek(0)
            if fh.read(4) == IDX_MAGIC:
                return size
    return 0