"""CIGAR clean-up and the alignment statistics derived from it."""

from __future__ import annotations

import math
from typing import Sequence

from .core import CigarOp, Extra, Region, mg_log2

_MATCH = int(CigarOp.MATCH)
_INS = int(CigarOp.INS)
_DEL = int(CigarOp.DEL)
_N_SKIP = int(CigarOp.N_SKIP)
_EQ = int(CigarOp.EQ_MATCH)
_X = int(CigarOp.X_MISMATCH)


def _div(a: float, b: float) -> float:
    if b == 0:
        if a == 0 or math.isnan(a):
            return math.nan
        return math.copysign(math.inf, a)
    return a / b


def gen_simple_mat(m: int, a: int, b: int, sc_ambi: int) -> list[int]:
    """Row-major m*m scoring matrix: a on the diagonal, -b elsewhere, -sc_ambi on the last row and column."""
    a = -a if a < 0 else a
    b = -b if b > 0 else b
    sc_ambi = -sc_ambi if sc_ambi > 0 else sc_ambi
    mat = [0] * (m * m)
    for i in range(m - 1):
        for j in range(m - 1):
            mat[i * m + j] = a if i == j else b
        mat[i * m + m - 1] = sc_ambi
    for j in range(m):
        mat[(m - 1) * m + j] = sc_ambi
    return mat


def _check_span(r: Region, qoff: int, toff: int) -> None:
    if qoff != r.qe - r.qs or toff != r.re - r.rs:
        raise ValueError("CIGAR does not span the region")


def _squeeze(cig: list[int]) -> list[int]:
    """Drop zero-length operations and merge neighbours with the same operation."""
    out: list[int] = []
    for c in cig:
        if c >> 4 == 0:
            continue
        if out and (out[-1] & 0xF) == (c & 0xF):
            out[-1] += c >> 4 << 4
        else:
            out.append(c)
    return out


def fix_cigar(region: Region, qseq: Sequence[int], tseq: Sequence[int]) -> tuple[int, int]:
    """Left-align indels, collapse runs of mixed I/D and drop a leading I or D.

    Returns how far the query and target starts moved.
    """
    p = region.p
    if p is None or len(p.cigar) <= 1:
        return 0, 0
    cig = p.cigar
    n = len(cig)
    toff = qoff = 0
    to_shrink = False
    for k in range(n):
        op, ln = cig[k] & 0xF, cig[k] >> 4
        if ln == 0:
            to_shrink = True
        if op == _MATCH:
            toff += ln
            qoff += ln
        elif op in (_INS, _DEL):
            if 0 < k < n - 1 and (cig[k - 1] & 0xF) == 0 and (cig[k + 1] & 0xF) == 0:
                prev_len = cig[k - 1] >> 4
                seq, off = (qseq, qoff) if op == _INS else (tseq, toff)
                l = 0
                while l < prev_len and seq[off - 1 - l] == seq[off + ln - 1 - l]:
                    l += 1
                if l > 0:
                    cig[k - 1] -= l << 4
                    cig[k + 1] += l << 4
                    qoff -= l
                    toff -= l
                if l == prev_len:
                    to_shrink = True
            if op == _INS:
                qoff += ln
            else:
                toff += ln
        elif op == _N_SKIP:
            toff += ln
    _check_span(region, qoff, toff)

    k = 0
    while k < n - 2:
        if (cig[k] & 0xF) > 0 and (cig[k] & 0xF) + (cig[k + 1] & 0xF) == 3:
            s = [0] * 16
            l = k
            while l < n:
                op = cig[l] & 0xF
                if op in (_INS, _DEL) or cig[l] >> 4 == 0:
                    s[op] += cig[l] >> 4
                else:
                    break
                l += 1
            if s[1] > 0 and s[2] > 0 and l - k > 2:
                cig[k] = s[1] << 4 | _INS
                cig[k + 1] = s[2] << 4 | _DEL
                for j in range(k + 2, l):
                    cig[j] &= 0xF
                to_shrink = True
            k = l
        k += 1

    if to_shrink:
        cig = _squeeze(cig)
        p.cigar = cig

    qshift = tshift = 0
    if cig and (cig[0] & 0xF) in (_INS, _DEL):
        l = cig[0] >> 4
        if (cig[0] & 0xF) == _INS:
            if region.rev:
                region.qe -= l
            else:
                region.qs += l
            qshift = l
        else:
            region.rs += l
            tshift = l
        del cig[0]
    return qshift, tshift


def _eqx_runs(qseq: Sequence[int], tseq: Sequence[int], qoff: int, toff: int, ln: int) -> list[int]:
    runs: list[int] = []
    while ln > 0:
        l = 0
        while l < ln and qseq[qoff + l] == tseq[toff + l]:
            l += 1
        if l > 0:
            runs.append(l << 4 | _EQ)
        ln -= l
        qoff += l
        toff += l
        l = 0
        while l < ln and qseq[qoff + l] != tseq[toff + l]:
            l += 1
        if l > 0:
            runs.append(l << 4 | _X)
        ln -= l
        qoff += l
        toff += l
    return runs


def update_cigar_eqx(region: Region, qseq: Sequence[int], tseq: Sequence[int]) -> None:
    """Replace M operations with runs of '=' and 'X'."""
    p = region.p
    if p is None:
        return
    out: list[int] = []
    n_eqx = n_m = 0
    toff = qoff = 0
    for c in p.cigar:
        op, ln = c & 0xF, c >> 4
        if op == _MATCH:
            runs = _eqx_runs(qseq, tseq, qoff, toff, ln)
            n_eqx += len(runs)
            n_m += 1
            out.extend(runs)
            qoff += ln
            toff += ln
            continue
        if op == _INS:
            qoff += ln
        elif op in (_DEL, _N_SKIP):
            toff += ln
        out.append(c)
    if n_eqx == n_m:
        p.cigar = [(c >> 4) << 4 | _EQ if (c & 0xF) == _MATCH else c for c in p.cigar]
    else:
        p.cigar = out


def update_extra(
    region: Region,
    qseq: Sequence[int],
    tseq: Sequence[int],
    mat: Sequence[int],
    q: int,
    e: int,
    is_eqx: bool,
    log_gap: bool,
) -> None:
    """Tidy the CIGAR and recompute blen, mlen, n_ambi and dp_max from the sequences."""
    p = region.p
    if p is None:
        return
    qshift, tshift = fix_cigar(region, qseq, tseq)
    qseq = qseq[qshift:]
    tseq = tseq[tshift:]
    region.blen = region.mlen = 0
    s = mx = 0.0
    toff = qoff = 0
    for c in p.cigar:
        op, ln = c & 0xF, c >> 4
        if op == _MATCH:
            n_ambi = n_diff = 0
            for l in range(ln):
                cq, ct = qseq[qoff + l], tseq[toff + l]
                if ct > 3 or cq > 3:
                    n_ambi += 1
                elif ct != cq:
                    n_diff += 1
                s += mat[ct * 5 + cq]
                if s < 0:
                    s = 0.0
                else:
                    mx = max(mx, s)
            region.blen += ln - n_ambi
            region.mlen += ln - (n_ambi + n_diff)
            p.n_ambi += n_ambi
            toff += ln
            qoff += ln
        elif op in (_INS, _DEL):
            seq, off = (qseq, qoff) if op == _INS else (tseq, toff)
            n_ambi = sum(1 for x in seq[off:off + ln] if x > 3)
            region.blen += ln - n_ambi
            p.n_ambi += n_ambi
            if log_gap:
                s -= q + float(e) * mg_log2(1.0 + ln)
            else:
                s -= q + e
            if s < 0:
                s = 0.0
            if op == _INS:
                qoff += ln
            else:
                toff += ln
        elif op == _N_SKIP:
            toff += ln
    p.dp_max = int(mx + 0.499)
    _check_span(region, qoff, toff)
    if is_eqx:
        update_cigar_eqx(region, qseq, tseq)


def append_cigar(region: Region, cigar: Sequence[int]) -> None:
    """Append operations to the region's CIGAR, merging at the boundary when the operations match."""
    if not cigar:
        return
    if region.p is None:
        region.p = Extra()
    cig = region.p.cigar
    if cig and (cig[-1] & 0xF) == (cigar[0] & 0xF):
        cig[-1] += cigar[0] >> 4 << 4
        cig.extend(cigar[1:])
    else:
        cig.extend(cigar)


def count_gaps(region: Region) -> tuple[int, int]:
    """Total gap length and number of gap openings; (-1, -1) without an alignment."""
    if region.p is None:
        return -1, -1
    n_gap = n_gapo = 0
    for c in region.p.cigar:
        if (c & 0xF) in (_INS, _DEL):
            n_gapo += 1
            n_gap += c >> 4
    return n_gap, n_gapo


def event_identity(region: Region) -> float:
    """Identity counting each gap opening as a single event; -1 without an alignment."""
    if region.p is None:
        return -1.0
    n_gap, n_gapo = count_gaps(region)
    return _div(float(region.mlen), region.blen + region.p.n_ambi - n_gap + n_gapo)


def recal_max_dp(region: Region, b2: float, match_sc: int) -> int:
    """Rescore the alignment with mismatch penalty b2 and log-scaled gap costs."""
    if region.p is None:
        return -1
    n_gap = 0
    gap_cost = 0.0
    for c in region.p.cigar:
        if (c & 0xF) in (_INS, _DEL):
            ln = c >> 4
            gap_cost += b2 + mg_log2(1.0 + ln)
            n_gap += ln
    n_mis = region.blen + region.p.n_ambi - region.mlen - n_gap
    return int(match_sc * (region.mlen - b2 * n_mis - gap_cost) + 0.499)


def update_dp_max(qlen: int, regs: Sequence[Region], frac: float, a: int, b: int) -> None:
    """Rescore dp_max of all hits when the two best are close, using the best hit's divergence."""
    if len(regs) < 2:
        return
    mx = mx2 = max_i = -1
    for i, r in enumerate(regs):
        if r.p is None:
            continue
        if r.p.dp_max > mx:
            mx2, mx, max_i = mx, r.p.dp_max, i
        elif r.p.dp_max > mx2:
            mx2 = r.p.dp_max
    if max_i < 0 or mx < 0 or mx2 < 0:
        return
    best = regs[max_i]
    if best.qe - best.qs < float(qlen) * frac:
        return
    if mx2 < float(mx) * frac:
        return
    div = 1.0 - event_identity(best)
    if div < 0.02:
        div = 0.02
    b2 = 0.5 / div
    if b2 * a < b:
        b2 = a / b
    for r in regs:
        if r.p is None:
            continue
        r.p.dp_max = max(recal_max_dp(r, b2, a), 0)