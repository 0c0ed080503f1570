import pytest

from mmalign.cigar import (
    append_cigar,
    count_gaps,
    event_identity,
    fix_cigar,
    gen_simple_mat,
    recal_max_dp,
    update_cigar_eqx,
    update_dp_max,
    update_extra,
)
from mmalign.core import CigarOp, Extra, Region, cigar_to_string


def op(n, o):
    return n << 4 | int(o)


def span(cigar):
    q = sum(c >> 4 for c in cigar if (c & 0xF) in (0, 1, 7, 8))
    t = sum(c >> 4 for c in cigar if (c & 0xF) in (0, 2, 3, 7, 8))
    return q, t


def make_region(cigar, qlen, tlen, **kw):
    return Region(qs=0, qe=qlen, rs=0, re=tlen, p=Extra(cigar=list(cigar)), **kw)


def test_gen_simple_mat_layout():
    mat = gen_simple_mat(5, 2, 4, 1)
    assert len(mat) == 25
    for i in range(4):
        for j in range(4):
            assert mat[i * 5 + j] == (2 if i == j else -4)
        assert mat[i * 5 + 4] == -1
    assert mat[20:25] == [-1] * 5


def test_gen_simple_mat_sign_normalised():
    assert gen_simple_mat(5, -2, -4, -1) == gen_simple_mat(5, 2, 4, 1)


def test_fix_cigar_left_aligns_insertion():
    q = [0, 1, 1, 2]
    t = [0, 1, 2]
    r = make_region([op(2, CigarOp.MATCH), op(1, CigarOp.INS), op(1, CigarOp.MATCH)], 4, 3)
    assert fix_cigar(r, q, t) == (0, 0)
    assert cigar_to_string(r.p.cigar) == "1M1I2M"
    assert span(r.p.cigar) == (4, 3)


def test_fix_cigar_collapses_mixed_indels():
    q = [0, 1, 2, 3, 0, 1]
    t = [0, 1, 3, 0, 1]
    cig = [op(2, CigarOp.MATCH), op(1, CigarOp.INS), op(1, CigarOp.DEL), op(1, CigarOp.INS), op(2, CigarOp.MATCH)]
    r = make_region(cig, 6, 5)
    fix_cigar(r, q, t)
    assert cigar_to_string(r.p.cigar) == "2M2I1D2M"
    assert span(r.p.cigar) == (6, 5)


def test_fix_cigar_drops_leading_deletion():
    r = make_region([op(1, CigarOp.DEL), op(3, CigarOp.MATCH)], 3, 4)
    assert fix_cigar(r, [0, 1, 2], [3, 0, 1, 2]) == (0, 1)
    assert r.rs == 1
    assert r.p.cigar == [op(3, CigarOp.MATCH)]


def test_fix_cigar_drops_leading_insertion_on_reverse():
    r = make_region([op(2, CigarOp.INS), op(3, CigarOp.MATCH)], 5, 3, rev=1)
    assert fix_cigar(r, [0, 0, 1, 2, 3], [1, 2, 3]) == (2, 0)
    assert (r.qs, r.qe) == (0, 3)


def test_fix_cigar_rejects_inconsistent_span():
    r = make_region([op(2, CigarOp.MATCH), op(1, CigarOp.INS)], 10, 2)
    with pytest.raises(ValueError):
        fix_cigar(r, [0] * 10, [0] * 2)


def test_update_cigar_eqx_splits_runs():
    r = make_region([op(4, CigarOp.MATCH)], 4, 4)
    update_cigar_eqx(r, [0, 1, 2, 3], [0, 1, 0, 3])
    assert cigar_to_string(r.p.cigar) == "2=1X1="
    assert span(r.p.cigar) == (4, 4)


def test_update_cigar_eqx_in_place_for_perfect_match():
    r = make_region([op(3, CigarOp.MATCH), op(1, CigarOp.INS), op(2, CigarOp.MATCH)], 6, 5)
    update_cigar_eqx(r, [0, 1, 2, 3, 0, 1], [0, 1, 2, 0, 1])
    assert r.p.cigar == [op(3, CigarOp.EQ_MATCH), op(1, CigarOp.INS), op(2, CigarOp.EQ_MATCH)]


def test_update_extra_perfect_match():
    mat = gen_simple_mat(5, 1, 4, 1)
    seq = [0, 1, 2, 3]
    r = make_region([op(4, CigarOp.MATCH)], 4, 4)
    update_extra(r, seq, seq, mat, 6, 2, False, True)
    assert r.blen == len(seq)
    assert r.mlen == len(seq)
    assert r.p.dp_max == len(seq)
    assert r.p.n_ambi == 0


def test_update_extra_counts_ambiguous_bases_and_eqx():
    mat = gen_simple_mat(5, 1, 4, 1)
    r = make_region([op(3, CigarOp.MATCH)], 3, 3)
    update_extra(r, [0, 4, 2], [0, 1, 2], mat, 6, 2, True, True)
    assert r.p.n_ambi == 1
    assert r.blen == 2
    assert r.mlen == 2
    assert span(r.p.cigar) == (3, 3)
    assert all((c & 0xF) in (7, 8) for c in r.p.cigar)


def test_append_cigar_creates_and_merges():
    r = Region()
    append_cigar(r, [op(3, CigarOp.MATCH)])
    append_cigar(r, [op(2, CigarOp.MATCH), op(1, CigarOp.INS)])
    assert r.p.cigar == [op(5, CigarOp.MATCH), op(1, CigarOp.INS)]
    append_cigar(r, [])
    assert len(r.p.cigar) == 2


def test_count_gaps():
    assert count_gaps(Region()) == (-1, -1)
    r = make_region([op(2, CigarOp.MATCH), op(3, CigarOp.INS), op(1, CigarOp.MATCH), op(2, CigarOp.DEL)], 6, 5)
    assert count_gaps(r) == (5, 2)


def test_event_identity():
    assert event_identity(Region()) == -1.0
    r = make_region([op(10, CigarOp.MATCH)], 10, 10, mlen=10, blen=10)
    assert event_identity(r) == 1.0


def test_recal_max_dp():
    assert recal_max_dp(Region(), 1.0, 2) == -1
    r = make_region([op(10, CigarOp.MATCH)], 10, 10, mlen=10, blen=10)
    assert recal_max_dp(r, 3.0, 2) == 2 * r.mlen


def test_update_dp_max_rescores_close_hits():
    regs = []
    for dp in (90, 80):
        r = make_region([op(100, CigarOp.MATCH)], 100, 100, mlen=100, blen=100)
        r.p.dp_max = dp
        regs.append(r)
    update_dp_max(100, regs, 0.5, 1, 4)
    assert [r.p.dp_max for r in regs] == [r.mlen for r in regs]


def test_update_dp_max_leaves_distant_hits():
    regs = []
    for dp in (90, 10):
        r = make_region([op(100, CigarOp.MATCH)], 100, 100, mlen=100, blen=100)
        r.p.dp_max = dp
        regs.append(r)
    update_dp_max(100, regs, 0.5, 1, 4)
    assert [r.p.dp_max for r in regs] == [90, 10]