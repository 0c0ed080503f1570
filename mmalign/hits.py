"""Turning chains into hits, and ranking, filtering and scoring those hits."""

from __future__ import annotations

import math
from dataclasses import replace
from itertools import pairwise
from typing import Optional, Sequence

from .core import (
    MASK32,
    MASK64,
    PARENT_TMP_PRI,
    PARENT_UNSET,
    SEED_SEG_MASK,
    SEED_SEG_SHIFT,
    Anchor,
    Region,
)

_INT32_MIN = -(1 << 31)
_Q_COEF = 40.0


def _int32(v: int) -> int:
    v &= MASK32
    return v - (1 << 32) if v & 0x80000000 else v


def _div(a: float, b: float) -> float:
    """Floating division that yields inf/nan on a zero divisor instead of raising."""
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a) * (math.copysign(1.0, b))
    return a / b


def _log(x: float) -> float:
    if math.isnan(x) or x < 0:
        return math.nan
    if x == 0:
        return -math.inf
    return math.log(x)


def _trunc(x: float) -> int:
    """Truncate towards zero; non-finite values become the smallest 32-bit integer."""
    if not math.isfinite(x):
        return _INT32_MIN
    return int(x)


def hash64(key: int) -> int:
    """Invertible 64-bit integer hash."""
    key &= MASK64
    key = ((~key & MASK64) + (key << 21)) & MASK64
    key ^= key >> 24
    key = (key + (key << 3) + (key << 8)) & MASK64
    key ^= key >> 14
    key = (key + (key << 2) + (key << 4)) & MASK64
    key ^= key >> 28
    key = (key + (key << 31)) & MASK64
    return key


def _cal_fuzzy_len(r: Region, a: Sequence[Anchor]) -> None:
    r.mlen = r.blen = 0
    if r.cnt <= 0:
        return
    r.mlen = r.blen = a[r.as_].q_span
    for prev, cur in pairwise(a[r.as_:r.as_ + r.cnt]):
        span = cur.q_span
        tl = cur.rpos - prev.rpos
        ql = cur.qpos - prev.qpos
        r.blen += max(tl, ql)
        r.mlen += span if tl > span and ql > span else min(tl, ql)


def _set_coor(r: Region, qlen: int, a: Sequence[Anchor], is_qstrand: bool) -> None:
    first = a[r.as_]
    last = a[r.as_ + r.cnt - 1]
    q_span = first.q_span
    r.rev = first.rev
    r.rid = first.rid
    r.rs = first.rpos + 1 - q_span if first.rpos + 1 > q_span else 0
    r.re = last.rpos + 1
    if not r.rev or is_qstrand:
        r.qs = first.qpos + 1 - q_span
        r.qe = last.qpos + 1
    else:
        r.qs = qlen - (last.qpos + 1)
        r.qe = qlen - (first.qpos + 1 - q_span)
    _cal_fuzzy_len(r, a)


def gen_regs(
    hash_: int, qlen: int, u: Sequence[int], a: Sequence[Anchor], is_qstrand: bool = False
) -> list[Region]:
    """Convert chains into hits, best score first.

    Each u[i] holds the chain score in its high 32 bits and the number of its
    anchors in a in its low 32 bits; chains are consecutive in a.
    """
    if not u:
        return []
    z: list[tuple[int, int]] = []
    k = 0
    for ui in u:
        ui &= MASK64
        h = hash64(((hash64(a[k].x) + hash64(a[k].y)) & MASK64) ^ (hash_ & MASK32)) & MASK32
        cnt = _int32(ui)
        z.append(((ui ^ h) & MASK64, ((k << 32) | (cnt & MASK64)) & MASK64))
        k += cnt
    z.sort(key=lambda t: t[0])
    z.reverse()
    regs = []
    for i, (zx, zy) in enumerate(z):
        score = _int32(zx >> 32)
        r = Region(
            id=i,
            parent=PARENT_UNSET,
            score=score,
            score0=score,
            hash=zx & MASK32,
            cnt=_int32(zy),
            as_=zy >> 32,
            div=-1.0,
        )
        _set_coor(r, qlen, a, is_qstrand)
        regs.append(r)
    return regs


def mark_alt(index, regs: Sequence[Region]) -> None:
    """Flag hits that land on ALT contigs of the index."""
    if index.n_alt == 0:
        return
    for r in regs:
        if index.seqs[r.rid].is_alt:
            r.is_alt = 1


def _alt_score(score: int, alt_diff_frac: float) -> int:
    if score < 0:
        return score
    score = int(score * (1.0 - alt_diff_frac) + 0.499)
    return score if score > 0 else 1


def split_reg(
    r: Region, n: int, qlen: int, a: Sequence[Anchor], is_qstrand: bool = False
) -> Optional[Region]:
    """Split r after its first n anchors; return the second part, or None if n is out of range."""
    if n <= 0 or n >= r.cnt:
        return None
    r2 = replace(r)
    r2.id = -1
    r2.sam_pri = 0
    r2.p = None
    r2.split_inv = 0
    r2.cnt = r.cnt - n
    r2.score = int(r.score * (r2.cnt / r.cnt) + 0.499)
    r2.as_ = r.as_ + n
    if r.parent == r.id:
        r2.parent = PARENT_TMP_PRI
    _set_coor(r2, qlen, a, is_qstrand)
    r.cnt -= r2.cnt
    r.score -= r2.score
    _set_coor(r, qlen, a, is_qstrand)
    r.split |= 1
    r2.split |= 2
    return r2


def set_parent(
    mask_level: float,
    mask_len: int,
    regs: Sequence[Region],
    sub_diff: int,
    hard_mask_level: bool,
    alt_diff_frac: float,
) -> None:
    """Decide primary and secondary hits in place and record sub-optimal scores."""
    n = len(regs)
    if n <= 0:
        return
    for i, r in enumerate(regs):
        r.id = i
    primaries = [0]
    regs[0].parent = 0
    for i in range(1, n):
        ri = regs[i]
        si, ei = ri.qs, ri.qe
        uncov_len = 0
        if not hard_mask_level:
            cov = []
            for w in primaries:
                rp = regs[w]
                sj, ej = rp.qs, rp.qe
                if ej <= si or sj >= ei:
                    continue
                cov.append((max(sj, si), min(ej, ei)))
            if not cov:
                primaries.append(i)
                ri.parent = i
                ri.n_sub = 0
                continue
            cov.sort()
            x = si
            for s, e in cov:
                if s > x:
                    uncov_len += s - x
                x = max(e, x)
            if ei > x:
                uncov_len += ei - x
        is_secondary = False
        for w in primaries:
            rp = regs[w]
            sj, ej = rp.qs, rp.qe
            if ej <= si or sj >= ei:
                continue
            mn = min(ej - sj, ei - si)
            mx = max(ej - sj, ei - si)
            if si < sj:
                ol = 0 if ei < sj else (ei - sj if ei < ej else ej - sj)
            else:
                ol = 0 if ej < si else (ej - si if ej < ei else ei - si)
            if _div(ol, mn) - _div(uncov_len, mx) > mask_level and uncov_len <= mask_len:
                cnt_sub = False
                sci = ri.score
                ri.parent = rp.parent
                if not rp.is_alt and ri.is_alt:
                    sci = _alt_score(sci, alt_diff_frac)
                rp.subsc = max(rp.subsc, sci)
                if ri.cnt >= rp.cnt:
                    cnt_sub = True
                if rp.p and ri.p and (rp.rid != ri.rid or rp.rs != ri.rs or rp.re != ri.re or ol != mn):
                    sci = ri.p.dp_max
                    if not rp.is_alt and ri.is_alt:
                        sci = _alt_score(sci, alt_diff_frac)
                    rp.p.dp_max2 = max(rp.p.dp_max2, sci)
                    if rp.p.dp_max - ri.p.dp_max <= sub_diff:
                        cnt_sub = True
                if cnt_sub:
                    rp.n_sub += 1
                is_secondary = True
                break
        if not is_secondary:
            primaries.append(i)
            ri.parent = i
            ri.n_sub = 0


def hit_sort(regs: Sequence[Region], alt_diff_frac: float) -> list[Region]:
    """Drop soft-deleted hits and order the rest by score, best first."""
    if len(regs) <= 1:
        return list(regs)
    aux: list[tuple[int, int]] = []
    has_cigar = no_cigar = False
    for i, r in enumerate(regs):
        if r.inv or r.cnt > 0:
            if r.p is not None:
                score = r.p.dp_max
                has_cigar = True
            else:
                score = r.score
                no_cigar = True
            if r.is_alt:
                score = _alt_score(score, alt_diff_frac)
            aux.append((((score & MASK64) << 32 | (r.hash & MASK32)) & MASK64, i))
        else:
            r.p = None
    if has_cigar == no_cigar:
        raise ValueError("hits must either all or none carry base-level alignments")
    aux.sort(key=lambda t: t[0])
    return [regs[i] for _, i in reversed(aux)]


def set_sam_pri(regs: Sequence[Region]) -> int:
    """Flag the first primary hit for SAM output; return the number of primaries."""
    n_pri = 0
    for r in regs:
        if r.id == r.parent:
            n_pri += 1
            r.sam_pri = int(n_pri == 1)
        else:
            r.sam_pri = 0
    return n_pri


def sync_regs(regs: Sequence[Region]) -> None:
    """Renumber hits by position and remap their parents accordingly."""
    if not regs:
        return
    old_to_new = {}
    for i, r in enumerate(regs):
        if r.id >= 0:
            old_to_new[r.id] = i
    for i, r in enumerate(regs):
        r.id = i
        if r.parent == PARENT_TMP_PRI:
            r.parent = i
        elif r.parent >= 0 and old_to_new.get(r.parent, -1) >= 0:
            r.parent = old_to_new[r.parent]
        else:
            r.parent = PARENT_UNSET
    set_sam_pri(regs)


def select_sub(
    pri_ratio: float,
    min_diff: int,
    best_n: int,
    check_strand: bool,
    min_strand_sc: int,
    regs: Sequence[Region],
) -> list[Region]:
    """Keep primaries and the best secondaries; return the kept hits."""
    r = list(regs)
    n = len(r)
    if not (pri_ratio > 0.0 and n > 0):
        return r
    k = n_2nd = 0
    for i in range(n):
        ri = r[i]
        p = ri.parent
        rp = r[p]
        if p == i or ri.inv:
            r[k] = ri
            k += 1
        elif (ri.score >= rp.score * pri_ratio or ri.score + min_diff >= rp.score) and n_2nd < best_n:
            identical = (
                ri.qs == rp.qs and ri.qe == rp.qe and ri.rid == rp.rid and ri.rs == rp.rs and ri.re == rp.re
            )
            if not identical:
                r[k] = ri
                k += 1
                n_2nd += 1
        elif check_strand and n_2nd < best_n and ri.score > min_strand_sc and ri.rev != rp.rev:
            ri.strand_retained = 1
            r[k] = ri
            k += 1
            n_2nd += 1
    kept = r[:k]
    if k != n:
        sync_regs(kept)
    return kept


def filter_strand_retained(regs: Sequence[Region]) -> list[Region]:
    """Drop strand-retained secondaries that diverge much more than their primary."""
    r = list(regs)
    k = 0
    for i in range(len(r)):
        ri = r[i]
        p = ri.parent
        if not ri.strand_retained or ri.div < r[p].div * 5.0 or ri.div < 0.01:
            r[k] = ri
            k += 1
    return r[:k]


def filter_regs(
    regs: Sequence[Region],
    qlen: int,
    min_cnt: int,
    min_chain_score: int,
    min_dp_max: int,
    max_clip_ratio: float,
) -> list[Region]:
    """Drop hits with too few anchors, or, when aligned, too short, low-scoring or over-clipped."""
    kept = []
    for r in regs:
        flt = not r.inv and not r.seg_split and r.cnt < min_cnt
        if r.p is not None:
            if r.mlen < min_chain_score:
                flt = True
            elif r.p.dp_max < min_dp_max:
                flt = True
            elif r.qs > qlen * max_clip_ratio and qlen - r.qe > qlen * max_clip_ratio:
                flt = True
        if not flt:
            kept.append(r)
    return kept


def squeeze_a(regs: Sequence[Region], a: list[Anchor]) -> int:
    """Move the anchors used by regs to the front of a; return how many there are."""
    pos = 0
    for _, i in sorted((r.as_, i) for i, r in enumerate(regs)):
        r = regs[i]
        if r.as_ != pos:
            a[pos:pos + r.cnt] = a[r.as_:r.as_ + r.cnt]
            r.as_ = pos
        pos += r.cnt
    return pos


def seg_gen(
    hash_: int, qlens: Sequence[int], regs0: Sequence[Region], a: Sequence[Anchor]
) -> list[tuple[list[Region], list[Anchor]]]:
    """Split chains over concatenated segments into per-segment hits.

    Returns, for each segment, its hits and the anchors they refer to, with
    query positions made relative to the segment.
    """
    n_segs = len(qlens)
    acc_qlen = [0] * n_segs
    for s in range(1, n_segs):
        acc_qlen[s] = acc_qlen[s - 1] + qlens[s - 1]
    qlen_sum = acc_qlen[-1] + qlens[-1] if n_segs else 0

    u = [[((r.score & MASK64) << 32) & MASK64 for r in regs0] for _ in range(n_segs)]
    seg_a: list[list[Anchor]] = [[] for _ in range(n_segs)]
    for i, r in enumerate(regs0):
        for anc in a[r.as_:r.as_ + r.cnt]:
            sid = (anc.y & SEED_SEG_MASK) >> SEED_SEG_SHIFT
            u[sid][i] += 1
    for i, r in enumerate(regs0):
        for anc in a[r.as_:r.as_ + r.cnt]:
            sid = (anc.y & SEED_SEG_MASK) >> SEED_SEG_SHIFT
            off = qlen_sum - (qlens[sid] + acc_qlen[sid]) if anc.rev else acc_qlen[sid]
            seg_a[sid].append(Anchor(anc.x, (anc.y - off) & MASK64))

    out = []
    for s in range(n_segs):
        us = [x for x in u[s] if _int32(x) != 0]
        regs = gen_regs(hash_, qlens[s], us, seg_a[s], False)
        for r in regs:
            r.seg_split = 1
            r.seg_id = s
        out.append((regs, seg_a[s]))
    return out


def _set_inv_mapq(regs: Sequence[Region]) -> None:
    if len(regs) < 3 or not any(r.inv for r in regs):
        return
    aux = sorted(
        (
            ((r.rid << 32 | (r.rs & MASK64)) & MASK64, i)
            for i, r in enumerate(regs)
            if r.parent == i or r.parent < 0
        ),
        key=lambda t: t[0],
    )
    for (_, li), (_, ii), (_, ri) in zip(aux, aux[1:], aux[2:]):
        inv = regs[ii]
        if inv.inv:
            inv.mapq = min(regs[li].mapq, regs[ri].mapq)


def set_mapq(
    regs: Sequence[Region], min_chain_sc: int, match_sc: int, rep_len: int, is_sr: bool
) -> None:
    """Compute mapping quality for every hit in place."""
    if not regs:
        return
    sum_sc = sum(r.score for r in regs if r.parent == r.id)
    uniq_ratio = _div(float(sum_sc), float(sum_sc + rep_len))
    for r in regs:
        if r.inv:
            r.mapq = 0
        elif r.parent == r.id:
            pen_s1 = (1.0 if r.score > 100 else 0.01 * r.score) * uniq_ratio
            pen_cm = 1.0 if r.cnt > 10 else 0.1 * r.cnt
            pen_cm = pen_s1 if pen_s1 < pen_cm else pen_cm
            subsc = max(r.subsc, min_chain_sc)
            if r.p and r.p.dp_max2 > 0 and r.p.dp_max > 0:
                identity = _div(r.mlen, r.blen)
                x = _div(_div(float(r.p.dp_max2) * subsc, r.p.dp_max), r.score0)
                mapq = _trunc(
                    identity * pen_cm * _Q_COEF * (1.0 - x * x) * _log(r.p.dp_max / match_sc)
                )
                if not is_sr:
                    mapq_alt = _trunc(
                        6.02 * identity * identity * (r.p.dp_max - r.p.dp_max2) / match_sc + 0.499
                    )
                    mapq = min(mapq, mapq_alt)
            else:
                x = _div(float(subsc), r.score0)
                if r.p:
                    identity = _div(r.mlen, r.blen)
                    mapq = _trunc(
                        identity * pen_cm * _Q_COEF * (1.0 - x) * _log(r.p.dp_max / match_sc)
                    )
                else:
                    mapq = _trunc(pen_cm * _Q_COEF * (1.0 - x) * _log(r.score))
            mapq -= _trunc(4.343 * _log(r.n_sub + 1) + 0.499)
            mapq = max(mapq, 0)
            r.mapq = min(mapq, 60)
            if r.p and r.p.dp_max > r.p.dp_max2 and r.mapq == 0:
                r.mapq = 1
        else:
            r.mapq = 0
    _set_inv_mapq(regs)