"""Cleaning up the anchors of a chain before base-level alignment."""

from __future__ import annotations

from typing import Sequence

from .core import Anchor, Region

_SEED_LONG_JOIN = 1 << 40
_SEED_IGNORE = 1 << 41
_IDX_HPC = 0x1


def _gap(a: Sequence[Anchor], i: int) -> int:
    """Difference between the query and the target distance from anchor i-1 to anchor i."""
    cur, prev = a[i], a[i - 1]
    return (cur.qpos - prev.qpos) - (cur.rpos - prev.rpos)


def _set_flag(a: list[Anchor], i: int, flag: int) -> None:
    anc = a[i]
    a[i] = Anchor(anc.x, anc.y | flag)


def collect_long_gaps(a: Sequence[Anchor], as1: int, cnt1: int, min_gap: int) -> list[int]:
    """Offsets (relative to as1) of anchors preceded by a gap longer than min_gap.

    Returns an empty list unless there are at least two such gaps.
    """
    found = [
        i for i in range(1, cnt1)
        if not -min_gap <= _gap(a, as1 + i) <= min_gap
    ]
    return found if len(found) > 1 else []


def filter_bad_seeds(
    a: list[Anchor],
    as1: int,
    cnt1: int,
    min_gap: int,
    diff_thres: int,
    max_ext_len: int,
    max_ext_cnt: int,
) -> None:
    """Mark as ignored the anchors inside regions where insertions and deletions cancel out."""
    K = collect_long_gaps(a, as1, cnt1, min_gap)
    if not K:
        return
    n = len(K)
    best = 0
    max_st = max_en = -1
    k = 0
    while True:
        if k == n or k >= max_en:
            if max_en > 0:
                for i in range(K[max_st], K[max_en]):
                    _set_flag(a, as1 + i, _SEED_IGNORE)
            best = 0
            max_st = max_en = -1
            if k == n:
                break
        i = K[k]
        n_ins = n_del = 0
        gap = _gap(a, as1 + i)
        if gap > 0:
            n_ins += gap
        else:
            n_del -= gap
        qs = a[as1 + i - 1].qpos
        rs = a[as1 + i - 1].rpos
        max_diff, max_diff_l = 0, -1
        for l in range(k + 1, min(n, k + max_ext_cnt + 1)):
            j = K[l]
            if a[as1 + j].qpos - qs > max_ext_len or a[as1 + j].rpos - rs > max_ext_len:
                break
            gap = _gap(a, as1 + j)
            if gap > 0:
                n_ins += gap
            else:
                n_del -= gap
            diff = n_ins + n_del - abs(n_ins - n_del)
            if max_diff < diff:
                max_diff, max_diff_l = diff, l
        if max_diff > diff_thres and max_diff > best:
            best, max_st, max_en = max_diff, k, max_diff_l
        k += 1


def filter_bad_seeds_alt(a: list[Anchor], as1: int, cnt1: int, min_gap: int, max_ext: int) -> None:
    """Join runs of nearby long gaps: ignore the anchors between them and mark the last as a long join."""
    K = collect_long_gaps(a, as1, cnt1, min_gap)
    if not K:
        return
    n = len(K)
    k = 0
    while k < n:
        i = K[k]
        gap1 = abs(_gap(a, as1 + i))
        re1 = a[as1 + i].rpos
        qe1 = a[as1 + i].qpos
        l = k + 1
        while l < n:
            j = K[l]
            if a[as1 + j].qpos - qe1 > max_ext or a[as1 + j].rpos - re1 > max_ext:
                break
            gap2 = abs(_gap(a, as1 + j))
            pre = a[as1 + j - 1]
            rs2 = pre.rpos + pre.q_span
            qs2 = pre.qpos + pre.q_span
            m = min(rs2 - re1, qs2 - qe1)
            if m > gap1 + gap2:
                break
            re1 = a[as1 + j].rpos
            qe1 = a[as1 + j].qpos
            gap1 = gap2
            l += 1
        if l > k + 1:
            end = K[l - 1]
            for j in range(K[k], end):
                _set_flag(a, as1 + j, _SEED_IGNORE)
            _set_flag(a, as1 + end, _SEED_LONG_JOIN)
        k = l


def fix_bad_ends(region: Region, a: Sequence[Anchor], bw: int, min_match: int) -> tuple[int, int]:
    """Trim poorly placed anchors at both ends of a chain; return the new (start, count)."""
    r = region
    as_, cnt = r.as_, r.cnt
    if r.cnt < 3:
        return as_, cnt
    m = l = a[r.as_].q_span
    for i in range(r.as_ + 1, r.as_ + r.cnt - 1):
        if a[i].y & _SEED_LONG_JOIN:
            break
        q_span = a[i].q_span
        lr = a[i].rpos - a[i - 1].rpos
        lq = a[i].qpos - a[i - 1].qpos
        mn, mx = min(lr, lq), max(lr, lq)
        if mx - mn > l >> 1:
            as_ = i
        l += mn
        m += min(mn, q_span)
        if l >= bw << 1 or (m >= min_match and m >= bw) or m >= r.mlen >> 1:
            break
    cnt = r.as_ + r.cnt - as_
    m = l = a[r.as_ + r.cnt - 1].q_span
    for i in range(r.as_ + r.cnt - 2, as_, -1):
        if a[i + 1].y & _SEED_LONG_JOIN:
            break
        q_span = a[i + 1].q_span
        lr = a[i + 1].rpos - a[i].rpos
        lq = a[i + 1].qpos - a[i].qpos
        mn, mx = min(lr, lq), max(lr, lq)
        if mx - mn > l >> 1:
            cnt = i + 1 - as_
        l += mn
        m += min(mn, q_span)
        if l >= bw << 1 or (m >= min_match and m >= bw) or m >= r.mlen >> 1:
            break
    return as_, cnt


def max_stretch(region: Region, a: Sequence[Anchor]) -> tuple[int, int]:
    """The best-scoring run of anchors on a single diagonal, as (start, count)."""
    r = region
    if r.cnt < 2:
        return r.as_, r.cnt
    max_score, max_i, max_len = -1, -1, 0
    score, length = a[r.as_].q_span, 1
    end = r.as_ + r.cnt
    for i in range(r.as_ + 1, end):
        q_span = a[i].q_span
        lr = a[i].rpos - a[i - 1].rpos
        lq = a[i].qpos - a[i - 1].qpos
        if lq == lr:
            score += min(lq, q_span)
            length += 1
        else:
            if score > max_score:
                max_score, max_len, max_i = score, length, i - length
            score, length = q_span, 1
    if score > max_score:
        max_len, max_i = length, end - length
    return max_i, max_len


def hplen_back(index, rid: int, x: int) -> int:
    """Length of the homopolymer run ending at position x of reference rid."""
    off0 = index.seqs[rid].offset
    off = off0 + x
    S = index.S
    c = S.get(off)
    i = off - 1
    while i >= off0 and S.get(i) == c:
        i -= 1
    return off - i


def adjust_minier(index, qseqs: Sequence[Sequence[int]], anchor: Anchor) -> tuple[int, int]:
    """Reference and query positions at which an anchor's minimizer is taken to end.

    With a homopolymer-compressed index these move to the start of the
    homopolymer runs; otherwise they are shifted back by half the k-mer size.
    """
    if index.flag & _IDX_HPC:
        qseq = qseqs[anchor.rev]
        q = anchor.qpos
        c = qseq[q]
        i = q - 1
        while i > 0 and qseq[i] == c:
            i -= 1
        q = i + 1
        run = hplen_back(index, anchor.rid, anchor.rpos)
        return anchor.rpos + 1 - run, q
    half = index.k >> 1
    return anchor.rpos - half, anchor.qpos - half