"""Estimating per-base divergence of hits from minimizer matches."""

from __future__ import annotations

import logging
from typing import Sequence

from .core import MASK32, Anchor, Region

logger = logging.getLogger(__name__)


def _int32(v: int) -> int:
    v &= MASK32
    return v - (1 << 32) if v & 0x80000000 else v


def _for_qpos(qlen: int, a: Anchor) -> int:
    """Position of the anchor on the forward strand of the query."""
    x = a.qpos
    if a.rev:
        x = qlen - 1 - (x + 1 - a.q_span)
    return x


def _mini_idx(qlen: int, a: Anchor, mini_pos: Sequence[int]) -> int:
    x = _for_qpos(qlen, a)
    lo, hi = 0, len(mini_pos) - 1
    while lo <= hi:
        m = (lo + hi) >> 1
        y = _int32(mini_pos[m])
        if y < x:
            lo = m + 1
        elif y > x:
            hi = m - 1
        else:
            return m
    return -1


def est_err(
    index, qlen: int, regs: Sequence[Region], a: Sequence[Anchor], mini_pos: Sequence[int]
) -> None:
    """Set each hit's div to the divergence implied by the query minimizers it misses.

    mini_pos holds the query minimizers, sorted by position: span in bits
    32-39, forward-strand position in the low 32 bits.
    """
    n = len(mini_pos)
    if n == 0:
        return
    avg_k = sum((m >> 32) & 0xFF for m in mini_pos) / n
    for r in regs:
        r.div = -1.0
        if r.cnt == 0:
            continue
        chain = list(a[r.as_:r.as_ + r.cnt])
        if r.rev:
            chain.reverse()
        st = _mini_idx(qlen, chain[0], mini_pos)
        if st < 0:
            logger.warning("logic inconsistency in est_err()")
            continue
        en = st
        l_ref = index.seqs[r.rid].length
        k = n_match = 1
        for j in range(st + 1, n):
            if k >= r.cnt:
                break
            if _for_qpos(qlen, chain[k]) == _int32(mini_pos[j]):
                k += 1
                en = j
                n_match += 1
        n_tot = en - st + 1
        if r.qs > avg_k and r.rs > avg_k:
            n_tot += 1
        if qlen - r.qs > avg_k and l_ref - r.re > avg_k:
            n_tot += 1
        r.div = 0.0 if n_match >= n_tot else 1.0 - (n_match / n_tot) ** (1.0 / avg_k)