import pytest

from mmalign.core import MASK64, PARENT_TMP_PRI, SEED_SEG_SHIFT, Anchor, Extra, Region
from mmalign.hits import (
    filter_regs,
    filter_strand_retained,
    gen_regs,
    hash64,
    hit_sort,
    mark_alt,
    seg_gen,
    select_sub,
    set_mapq,
    set_parent,
    set_sam_pri,
    split_reg,
    squeeze_a,
    sync_regs,
)
from mmalign.index import Index


def anchor(rid, rpos, qpos, span=15, rev=0, seg=0):
    return Anchor(rev << 63 | rid << 32 | rpos, seg << SEED_SEG_SHIFT | span << 32 | qpos)


def colinear(n, start=14, step=10, rid=0):
    return [anchor(rid, start + i * step, start + i * step) for i in range(n)]


def test_hash64_in_range_and_deterministic():
    keys = [0, 1, 2, 12345, MASK64]
    values = [hash64(k) for k in keys]
    assert all(0 <= v <= MASK64 for v in values)
    assert values == [hash64(k) for k in keys]
    assert len(set(values)) == len(keys)


def test_gen_regs_empty():
    assert gen_regs(0, 100, [], []) == []


def test_gen_regs_coordinates():
    a = colinear(4)
    regs = gen_regs(7, 100, [50 << 32 | 4], a)
    assert len(regs) == 1
    r = regs[0]
    assert r.score == 50 and r.score0 == 50
    assert r.cnt == 4 and r.as_ == 0
    assert r.re == a[-1].rpos + 1
    assert r.rs == a[0].rpos + 1 - a[0].q_span
    assert r.qe == a[-1].qpos + 1
    assert r.rev == 0 and r.rid == 0
    assert 0 < r.mlen <= r.blen


def test_gen_regs_orders_by_score():
    a = colinear(3) + colinear(2, start=500)
    regs = gen_regs(0, 1000, [10 << 32 | 3, 30 << 32 | 2], a)
    assert [r.score for r in regs] == [30, 10]
    assert [r.id for r in regs] == [0, 1]
    assert regs[0].as_ == 3 and regs[1].as_ == 0


def test_gen_regs_reverse_strand_query_coords():
    a = [anchor(0, 14 + 10 * i, 14 + 10 * i, rev=1) for i in range(3)]
    qlen = 100
    r = gen_regs(0, qlen, [20 << 32 | 3], a)[0]
    assert r.rev == 1
    assert r.qe == qlen - (a[0].qpos + 1 - a[0].q_span)
    assert r.qs == qlen - (a[-1].qpos + 1)


def test_split_reg():
    a = colinear(6)
    r = gen_regs(0, 200, [60 << 32 | 6], a)[0]
    r.parent = r.id
    r2 = split_reg(r, 2, 200, a)
    assert r2 is not None
    assert r.cnt + r2.cnt == 6 and r.cnt == 2
    assert r.score + r2.score == 60
    assert r2.as_ == r.as_ + 2
    assert r.split & 1 and r2.split & 2
    assert r2.parent == PARENT_TMP_PRI
    assert r2.id == -1 and r2.p is None
    assert r.re == a[1].rpos + 1
    assert r2.rs == a[2].rpos + 1 - a[2].q_span


def test_split_reg_out_of_range():
    a = colinear(3)
    r = gen_regs(0, 200, [30 << 32 | 3], a)[0]
    assert split_reg(r, 0, 200, a) is None
    assert split_reg(r, 3, 200, a) is None
    assert r.cnt == 3


def _overlapping_regs():
    return [
        Region(qs=0, qe=100, score=100, cnt=10),
        Region(qs=10, qe=90, score=30, cnt=5),
        Region(qs=200, qe=300, score=40, cnt=8),
    ]


def test_set_parent():
    regs = _overlapping_regs()
    set_parent(0.5, 1000, regs, 0, False, 0.0)
    assert [r.parent for r in regs] == [0, 0, 2]
    assert regs[0].subsc == 30
    assert regs[0].n_sub == 0


def test_set_parent_counts_sub_when_secondary_has_more_anchors():
    regs = _overlapping_regs()
    regs[1].cnt = 20
    set_parent(0.5, 1000, regs, 0, False, 0.0)
    assert regs[0].n_sub == 1


def test_hit_sort_orders_and_drops_deleted():
    regs = [
        Region(score=10, cnt=3, hash=1),
        Region(score=30, cnt=3, hash=2),
        Region(score=0, cnt=0, hash=3),
        Region(score=20, cnt=3, hash=4),
    ]
    out = hit_sort(regs, 0.0)
    assert [r.score for r in out] == [30, 20, 10]


def test_hit_sort_mixed_alignment_raises():
    regs = [Region(score=10, cnt=3), Region(score=5, cnt=3, p=Extra(dp_max=5))]
    with pytest.raises(ValueError):
        hit_sort(regs, 0.0)


def test_set_sam_pri():
    regs = [Region(id=0, parent=0), Region(id=1, parent=0), Region(id=2, parent=2)]
    assert set_sam_pri(regs) == 2
    assert [r.sam_pri for r in regs] == [1, 0, 0]


def test_sync_regs():
    regs = [Region(id=0, parent=0), Region(id=2, parent=0), Region(id=5, parent=PARENT_TMP_PRI)]
    sync_regs(regs)
    assert [r.id for r in regs] == [0, 1, 2]
    assert [r.parent for r in regs] == [0, 0, 2]
    assert regs[0].sam_pri == 1


def test_select_sub_drops_weak_secondary():
    regs = _overlapping_regs()
    regs[1].score = 10
    set_parent(0.5, 1000, regs, 0, False, 0.0)
    kept = select_sub(0.8, 5, 5, False, 0, regs)
    assert len(kept) == 2
    assert [r.id for r in kept] == [0, 1]
    assert [r.parent for r in kept] == [0, 1]


def test_select_sub_keeps_strong_secondary():
    regs = _overlapping_regs()
    regs[1].score = 95
    set_parent(0.5, 1000, regs, 0, False, 0.0)
    kept = select_sub(0.8, 5, 5, False, 0, regs)
    assert len(kept) == 3


def test_filter_strand_retained():
    regs = [
        Region(id=0, parent=0, div=0.1),
        Region(id=1, parent=0, div=0.2, strand_retained=1),
        Region(id=2, parent=0, div=0.9, strand_retained=1),
    ]
    kept = filter_strand_retained(regs)
    assert [r.id for r in kept] == [0, 1]


def test_filter_regs():
    regs = [
        Region(id=0, cnt=2),
        Region(id=1, cnt=5),
        Region(id=2, cnt=5, mlen=10, p=Extra(dp_max=100)),
        Region(id=3, cnt=5, mlen=100, qs=0, qe=100, p=Extra(dp_max=100)),
    ]
    kept = filter_regs(regs, 100, 3, 40, 50, 1.0)
    assert [r.id for r in kept] == [1, 3]


def test_squeeze_a():
    a = colinear(6)
    original = list(a)
    regs = [Region(as_=3, cnt=2), Region(as_=0, cnt=1)]
    total = squeeze_a(regs, a)
    assert total == 3
    assert regs[1].as_ == 0 and regs[0].as_ == 1
    assert a[1:3] == original[3:5]


def test_seg_gen():
    a = [
        anchor(0, 14, 14, seg=0),
        anchor(0, 24, 24, seg=0),
        anchor(0, 100, 64, seg=1),
        anchor(0, 110, 74, seg=1),
    ]
    regs0 = gen_regs(0, 100, [40 << 32 | 4], a)
    out = seg_gen(0, [50, 50], regs0, a)
    assert len(out) == 2
    regs1, a1 = out[1]
    assert len(regs1) == 1
    assert regs1[0].seg_id == 1 and regs1[0].seg_split == 1
    assert regs1[0].score == 40 and regs1[0].cnt == 2
    assert a1[0].qpos == a[2].qpos - 50
    assert out[0][0][0].seg_id == 0


def test_set_mapq_unique_hit_caps():
    regs = [Region(id=0, parent=0, score=1000, score0=1000, cnt=20)]
    set_mapq(regs, 40, 2, 0, False)
    assert regs[0].mapq == 60


def test_set_mapq_secondary_and_inversion_zero():
    regs = [
        Region(id=0, parent=0, score=1000, score0=1000, cnt=20),
        Region(id=1, parent=0, score=500, score0=500, cnt=20, mapq=7),
        Region(id=2, parent=2, score=500, score0=500, cnt=20, inv=1, mapq=7),
    ]
    set_mapq(regs, 40, 2, 0, False)
    assert regs[1].mapq == 0
    assert 0 <= regs[0].mapq <= 60


def test_set_mapq_aligned_hit_at_least_one():
    p = Extra(dp_max=200, dp_max2=199)
    regs = [Region(id=0, parent=0, score=100, score0=100, cnt=20, mlen=90, blen=100, subsc=100, p=p)]
    set_mapq(regs, 40, 2, 0, False)
    assert 1 <= regs[0].mapq <= 60


def test_set_mapq_inversion_takes_neighbour_minimum():
    regs = [
        Region(id=0, parent=0, score=1000, score0=1000, cnt=20, rs=0),
        Region(id=1, parent=1, score=500, score0=500, cnt=20, rs=100, inv=1),
        Region(id=2, parent=2, score=60, score0=60, cnt=5, rs=200),
    ]
    set_mapq(regs, 40, 2, 0, False)
    assert regs[1].mapq == min(regs[0].mapq, regs[2].mapq)
    assert regs[0].mapq > regs[2].mapq


def test_mark_alt():
    mi = Index(10, 15, 4)
    mi.add_sequences(["a", "b"], ["ACGT", "ACGT"])
    regs = [Region(rid=0), Region(rid=1)]
    mark_alt(mi, regs)
    assert [r.is_alt for r in regs] == [0, 0]
    mi.seqs[1].is_alt = True
    mi.n_alt = 1
    mark_alt(mi, regs)
    assert [r.is_alt for r in regs] == [0, 1]