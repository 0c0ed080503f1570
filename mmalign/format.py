"""PAF and SAM output, plus the cs and MD difference strings."""

from __future__ import annotations

from typing import Optional, Sequence

from .bseq import COMPLEMENT, SeqRecord, qname_len
from .cigar import event_identity
from .core import CIGAR_STR, CigarOp, MapFlag, Region, encode_nt4

PROGRAM_NAME = "mmalign"
MAX_BAM_CIGAR_OP = 65535

_LOWER = "acgtn"
_UPPER = "ACGTN"

_MATCH = int(CigarOp.MATCH)
_INS = int(CigarOp.INS)
_DEL = int(CigarOp.DEL)
_N_SKIP = int(CigarOp.N_SKIP)
_EQ = int(CigarOp.EQ_MATCH)
_X = int(CigarOp.X_MISMATCH)
_ALIGNED_OPS = (_MATCH, _EQ, _X)
_VALID_OPS = (_MATCH, _INS, _DEL, _N_SKIP, _EQ, _X)


def escape(s: str) -> str:
    """Turn '\\t' into a tab and '\\\\' into a backslash; other escapes are dropped."""
    out = []
    it = iter(s)
    for ch in it:
        if ch == "\\":
            nxt = next(it, None)
            if nxt == "t":
                out.append("\t")
            elif nxt == "\\":
                out.append("\\")
        else:
            out.append(ch)
    return "".join(out)


def parse_rg_line(line: str) -> tuple[str, str]:
    """Check and unescape a read-group line; return the line and its ID."""
    if not line.startswith("@RG"):
        raise ValueError("the read group line is not started with @RG")
    if "\t" in line:
        raise ValueError(
            "the read group line contained literal <tab> characters -- replace with escaped tabs: \\t"
        )
    rg_line = escape(line)
    pos = rg_line.find("\tID:")
    if pos < 0:
        raise ValueError("no ID within the read group line")
    rest = rg_line[pos + 4:]
    end = len(rest)
    for i, ch in enumerate(rest):
        if ch in "\t\n":
            end = i
            break
    rg_id = rest[:end]
    if len(rg_id) > 255:
        raise ValueError("@RG:ID is longer than 255 characters")
    return rg_line, rg_id


def write_sam_hdr(index, rg: Optional[str], ver: Optional[str], argv: Sequence[str]) -> str:
    """SAM header text: @SQ lines, an optional @RG line and the @PG line."""
    parts = []
    if index is not None:
        for s in index.seqs:
            parts.append(f"@SQ\tSN:{s.name}\tLN:{s.length}\n")
    if rg:
        rg_line, _ = parse_rg_line(rg)
        parts.append(rg_line + "\n")
    parts.append(f"@PG\tID:{PROGRAM_NAME}\tPN:{PROGRAM_NAME}")
    if ver:
        parts.append(f"\tVN:{ver}")
    if len(argv) > 1:
        parts.append(f"\tCL:{PROGRAM_NAME}")
        parts.extend(f" {a}" for a in argv[1:])
    parts.append("\n")
    return "".join(parts)


def _cs_core(tseq: bytes, qseq: bytes, r: Region, no_iden: bool) -> str:
    parts: list[str] = []
    q_off = t_off = 0

    def flush(run: list[str]) -> None:
        if run:
            parts.append(f":{len(run)}" if no_iden else "=" + "".join(run))

    for c in r.p.cigar:
        op, ln = c & 0xF, c >> 4
        if op not in _VALID_OPS:
            raise ValueError(f"unexpected CIGAR operation {CIGAR_STR[op] if op < len(CIGAR_STR) else op}")
        if op in _ALIGNED_OPS:
            run: list[str] = []
            for j in range(ln):
                qc, tc = qseq[q_off + j], tseq[t_off + j]
                if qc != tc:
                    flush(run)
                    run = []
                    parts.append(f"*{_LOWER[tc]}{_LOWER[qc]}")
                else:
                    run.append(_UPPER[qc])
            flush(run)
            q_off += ln
            t_off += ln
        elif op == _INS:
            parts.append("+" + "".join(_LOWER[x] for x in qseq[q_off:q_off + ln]))
            q_off += ln
        elif op == _DEL:
            parts.append("-" + "".join(_LOWER[x] for x in tseq[t_off:t_off + ln]))
            t_off += ln
        else:
            if ln < 2:
                raise ValueError("intron shorter than 2 bases")
            parts.append(
                f"~{_LOWER[tseq[t_off]]}{_LOWER[tseq[t_off + 1]]}{ln}"
                f"{_LOWER[tseq[t_off + ln - 2]]}{_LOWER[tseq[t_off + ln - 1]]}"
            )
            t_off += ln
    if t_off != r.re - r.rs or q_off != r.qe - r.qs:
        raise ValueError("CIGAR does not span the region")
    return "".join(parts)


def _md_core(tseq: bytes, qseq: bytes, r: Region) -> str:
    parts: list[str] = []
    q_off = t_off = l_md = 0
    for c in r.p.cigar:
        op, ln = c & 0xF, c >> 4
        if op not in _VALID_OPS:
            raise ValueError(f"unexpected CIGAR operation {op}")
        if op in _ALIGNED_OPS:
            for j in range(ln):
                if qseq[q_off + j] != tseq[t_off + j]:
                    parts.append(f"{l_md}{_UPPER[tseq[t_off + j]]}")
                    l_md = 0
                else:
                    l_md += 1
            q_off += ln
            t_off += ln
        elif op == _INS:
            q_off += ln
        elif op == _DEL:
            parts.append(f"{l_md}^" + "".join(_UPPER[x] for x in tseq[t_off:t_off + ln]))
            l_md = 0
            t_off += ln
        else:
            t_off += ln
    if l_md > 0:
        parts.append(str(l_md))
    if t_off != r.re - r.rs or q_off != r.qe - r.qs:
        raise ValueError("CIGAR does not span the region")
    return "".join(parts)


def _cs_or_md(index, r: Region, seq: str, no_iden: bool, is_md: bool, is_qstrand: bool) -> str:
    if r.p is None:
        return ""
    q = encode_nt4(seq[r.qs:r.qe])
    if is_qstrand:
        tseq = index.getseq2(r.rev, r.rid, r.rs, r.re)
        qseq = q
    else:
        tseq = index.getseq(r.rid, r.rs, r.re)
        qseq = bytes(4 if c >= 4 else 3 - c for c in reversed(q)) if r.rev else q
    return _md_core(tseq, qseq, r) if is_md else _cs_core(tseq, qseq, r, no_iden)


def gen_cs(index, region: Region, seq: str, no_iden: bool = True, is_qstrand: bool = False) -> str:
    """The cs difference string of an aligned region; empty without an alignment."""
    return _cs_or_md(index, region, seq, no_iden, False, is_qstrand)


def gen_md(index, region: Region, seq: str, is_qstrand: bool = False) -> str:
    """The MD string of an aligned region; empty without an alignment."""
    return _cs_or_md(index, region, seq, False, True, is_qstrand)


def _fmt_div(d: float) -> str:
    return "0" if d == 0.0 else f"{d:.4f}"


def format_tags(region: Region) -> str:
    """Optional fields shared by PAF and SAM output, each preceded by a tab."""
    r = region
    if r.id == r.parent:
        tp = "I" if r.inv else "P"
    else:
        tp = "i" if r.inv else "S"
    parts = []
    if r.p is not None:
        parts.append(
            f"\tNM:i:{r.blen - r.mlen + r.p.n_ambi}\tms:i:{r.p.dp_max}"
            f"\tAS:i:{r.p.dp_score}\tnn:i:{r.p.n_ambi}"
        )
        if r.p.trans_strand in (1, 2):
            parts.append(f"\tts:A:{'?+-?'[r.p.trans_strand]}")
    parts.append(f"\ttp:A:{tp}\tcm:i:{r.cnt}\ts1:i:{r.score}")
    if r.parent == r.id:
        parts.append(f"\ts2:i:{r.subsc}")
    if r.p is not None:
        parts.append(f"\tde:f:{_fmt_div(1.0 - event_identity(r))}")
    elif 0.0 <= r.div <= 1.0:
        parts.append(f"\tdv:f:{_fmt_div(r.div)}")
    if r.split:
        parts.append(f"\tzd:i:{r.split}")
    return "".join(parts)


def _ref_name(index, rid: int) -> str:
    name = index.seqs[rid].name
    return name if name is not None else str(rid)


def write_paf(
    index, record: SeqRecord, region: Optional[Region], opt_flag: int = 0, rep_len: int = -1
) -> str:
    """One PAF line (without newline); region None gives an unmapped line."""
    l_seq = len(record.seq)
    if region is None:
        line = f"{record.name}\t{l_seq}\t0\t0\t*\t*\t0\t0\t0\t0\t0\t0"
        if rep_len >= 0:
            line += f"\trl:i:{rep_len}"
        return line
    r = region
    ref = index.seqs[r.rid]
    parts = [f"{record.name}\t{l_seq}\t{r.qs}\t{r.qe}\t{'+-'[r.rev]}\t"]
    parts.append(_ref_name(index, r.rid))
    parts.append(f"\t{ref.length}")
    if (opt_flag & MapFlag.QSTRAND) and r.rev:
        parts.append(f"\t{ref.length - r.re}\t{ref.length - r.rs}")
    else:
        parts.append(f"\t{r.rs}\t{r.re}")
    parts.append(f"\t{r.mlen}\t{r.blen}\t{r.mapq}")
    parts.append(format_tags(r))
    if rep_len >= 0:
        parts.append(f"\trl:i:{rep_len}")
    if r.p is not None and (opt_flag & MapFlag.OUT_CG):
        parts.append("\tcg:Z:" + "".join(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in r.p.cigar))
    if r.p is not None and (opt_flag & (MapFlag.OUT_CS | MapFlag.OUT_MD)):
        is_md = bool(opt_flag & MapFlag.OUT_MD)
        s = _cs_or_md(
            index, r, record.seq, not (opt_flag & MapFlag.OUT_CS_LONG), is_md,
            bool(opt_flag & MapFlag.QSTRAND),
        )
        parts.append(("\tMD:Z:" if is_md else "\tcs:Z:") + s)
    if (opt_flag & MapFlag.COPY_COMMENT) and record.comment:
        parts.append(f"\t{record.comment}")
    return "".join(parts)


def _sam_sq(seq: str, rev: bool, comp: bool) -> str:
    if not rev:
        return seq
    s = seq[::-1]
    return s.translate(COMPLEMENT) if comp else s


def _sam_pri(regs: Sequence[Region]) -> Optional[Region]:
    for r in regs:
        if r.sam_pri:
            return r
    if regs:
        raise ValueError("no primary hit flagged for SAM output")
    return None


def _sam_cigar(sam_flag: int, in_tag: bool, qlen: int, r: Region, opt_flag: int) -> str:
    if r.p is None:
        return "*"
    clip0 = qlen - r.qe if r.rev else r.qs
    clip1 = r.qs if r.rev else qlen - r.qe
    hard = (sam_flag & 0x800) and not (opt_flag & MapFlag.SOFTCLIP)
    parts = []
    if in_tag:
        clip_code = 5 if hard else 4
        parts.append("\tCG:B:I")
        if clip0:
            parts.append(f",{clip0 << 4 | clip_code}")
        parts.extend(f",{c}" for c in r.p.cigar)
        if clip1:
            parts.append(f",{clip1 << 4 | clip_code}")
    else:
        clip_char = "H" if hard else "S"
        if clip0 >= qlen or clip1 >= qlen:
            raise ValueError("clipping covers the whole query")
        if clip0:
            parts.append(f"{clip0}{clip_char}")
        parts.extend(f"{c >> 4}{CIGAR_STR[c & 0xF]}" for c in r.p.cigar)
        if clip1:
            parts.append(f"{clip1}{clip_char}")
    return "".join(parts)


def write_sam(
    index,
    record: SeqRecord,
    seg_idx: int,
    reg_idx: int,
    regss: Sequence[Sequence[Region]],
    opt_flag: int = 0,
    rep_len: int = -1,
    rg_id: Optional[str] = None,
) -> str:
    """One SAM line (without newline) for hit reg_idx of segment seg_idx.

    regss holds the hits of every segment of the fragment; an out-of-range
    reg_idx gives an unmapped record.
    """
    n_seg = len(regss)
    regs = regss[seg_idx]
    n_regs = len(regs)
    r = regs[reg_idx] if 0 <= reg_idx < n_regs else None
    l_seq = len(record.seq)

    r_prev = r_next = None
    if n_seg > 1:
        r_next = _sam_pri(regss[(seg_idx + 1) % n_seg])
        if n_seg > 2:
            for i in range(1, n_seg):
                prev_sid = (seg_idx + n_seg - i) % n_seg
                if regss[prev_sid]:
                    r_prev = _sam_pri(regss[prev_sid])
                    break
        else:
            r_prev = r_next

    name = record.name[:qname_len(record.name)] if n_seg > 1 else record.name
    parts = [name]

    flag = 0x1 if n_seg > 1 else 0
    if r is None:
        flag |= 0x4
    else:
        if r.rev:
            flag |= 0x10
        if r.parent != r.id:
            flag |= 0x100
        elif not r.sam_pri:
            flag |= 0x800
    if n_seg > 1:
        if r is not None and r.proper_frag:
            flag |= 0x2
        if seg_idx == 0:
            flag |= 0x40
        elif seg_idx == n_seg - 1:
            flag |= 0x80
        if r_next is None:
            flag |= 0x8
        elif r_next.rev:
            flag |= 0x20
    parts.append(f"\t{flag}")

    this_rid = this_pos = -1
    cigar_in_tag = False
    if r is None:
        if r_prev is not None:
            this_rid, this_pos = r_prev.rid, r_prev.rs
            parts.append(f"\t{_ref_name(index, this_rid)}\t{this_pos + 1}\t0\t*")
        else:
            parts.append("\t*\t0\t0\t*")
    else:
        this_rid, this_pos = r.rid, r.rs
        parts.append(f"\t{_ref_name(index, r.rid)}\t{r.rs + 1}\t{r.mapq}\t")
        if (opt_flag & MapFlag.LONG_CIGAR) and r.p is not None and len(r.p.cigar) > MAX_BAM_CIGAR_OP - 2:
            n_cigar = len(r.p.cigar) + (r.qs != 0) + (r.qe != l_seq)
            cigar_in_tag = n_cigar > MAX_BAM_CIGAR_OP
        if cigar_in_tag:
            if (flag & 0x900) == 0 or (opt_flag & MapFlag.SOFTCLIP):
                slen = l_seq
            elif flag & 0x100:
                slen = 0
            else:
                slen = r.qe - r.qs
            parts.append(f"{slen}S{r.re - r.rs}N")
        else:
            parts.append(_sam_cigar(flag, False, l_seq, r, opt_flag))

    if n_seg > 1:
        tlen = 0
        if this_rid >= 0 and r_next is not None:
            if this_rid == r_next.rid:
                if r is not None:
                    this_pos5 = r.re - 1 if r.rev else this_pos
                    next_pos5 = r_next.re - 1 if r_next.rev else r_next.rs
                    tlen = next_pos5 - this_pos5
                parts.append("\t=\t")
            else:
                parts.append(f"\t{_ref_name(index, r_next.rid)}\t")
            parts.append(f"{r_next.rs + 1}\t")
        elif r_next is not None:
            parts.append(f"\t{_ref_name(index, r_next.rid)}\t{r_next.rs + 1}\t")
        elif this_rid >= 0:
            parts.append(f"\t=\t{this_pos + 1}\t")
        else:
            parts.append("\t*\t0\t")
        if tlen > 0:
            tlen += 1
        elif tlen < 0:
            tlen -= 1
        parts.append(f"{tlen}\t")
    else:
        parts.append("\t*\t0\t0\t")

    qual = record.qual
    if r is None:
        parts.append(record.seq + "\t" + (qual if qual else "*"))
    elif (flag & 0x900) == 0 or (opt_flag & MapFlag.SOFTCLIP):
        parts.append(_sam_sq(record.seq, bool(r.rev), bool(r.rev)) + "\t")
        parts.append(_sam_sq(qual, bool(r.rev), False) if qual else "*")
    elif flag & 0x100:
        parts.append("*\t*")
    else:
        parts.append(_sam_sq(record.seq[r.qs:r.qe], bool(r.rev), bool(r.rev)) + "\t")
        parts.append(_sam_sq(qual[r.qs:r.qe], bool(r.rev), False) if qual else "*")

    if rg_id:
        parts.append(f"\tRG:Z:{rg_id}")
    if n_seg > 2:
        parts.append(f"\tFI:i:{seg_idx}")
    if r is not None:
        parts.append(format_tags(r))
        if r.parent == r.id and r.p is not None and n_regs > 1:
            others = [
                q for i, q in enumerate(regs)
                if i != reg_idx and q.parent == q.id and q.p is not None
            ]
            if others:
                parts.append("\tSA:Z:")
                for q in others:
                    l_i = l_d = 0
                    if q.qe - q.qs < q.re - q.rs:
                        l_m = q.qe - q.qs
                        l_d = (q.re - q.rs) - l_m
                    else:
                        l_m = q.re - q.rs
                        l_i = (q.qe - q.qs) - l_m
                    clip5 = l_seq - q.qe if q.rev else q.qs
                    clip3 = q.qs if q.rev else l_seq - q.qe
                    parts.append(f"{_ref_name(index, q.rid)},{q.rs + 1},{'+-'[q.rev]},")
                    if clip5:
                        parts.append(f"{clip5}S")
                    if l_m:
                        parts.append(f"{l_m}M")
                    if l_i:
                        parts.append(f"{l_i}I")
                    if l_d:
                        parts.append(f"{l_d}D")
                    if clip3:
                        parts.append(f"{clip3}S")
                    parts.append(f",{q.mapq},{q.blen - q.mlen + q.p.n_ambi};")
        if r.p is not None and (opt_flag & (MapFlag.OUT_CS | MapFlag.OUT_MD)):
            is_md = bool(opt_flag & MapFlag.OUT_MD)
            s = _cs_or_md(index, r, record.seq, not (opt_flag & MapFlag.OUT_CS_LONG), is_md, False)
            parts.append(("\tMD:Z:" if is_md else "\tcs:Z:") + s)
        if cigar_in_tag:
            parts.append(_sam_cigar(flag, True, l_seq, r, opt_flag))
    if rep_len >= 0:
        parts.append(f"\trl:i:{rep_len}")
    if (opt_flag & MapFlag.COPY_COMMENT) and record.comment:
        parts.append(f"\t{record.comment}")
    return "".join(parts)