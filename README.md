# mmalign

Pure-Python building blocks of a long-read sequence mapper. The package reads
FASTA/FASTQ input, keeps reference sequences and their minimizers in an index
that can be written to and read from a binary file, post-processes chained
hits (primary/secondary assignment, filtering, mapping quality, divergence
estimates), tidies CIGAR strings and formats PAF and SAM records.

It has no dependencies outside the standard library and supports Python 3.10
and later.

## Installation

```
pip install .
```

To run the tests:

```
pip install ".[test]"
pytest
```

## Modules

- `mmalign.core` – shared types and helpers: `Anchor` (a seed hit packed into
  two 64-bit integers, with `rev`, `rid`, `rpos`, `qpos` and `q_span`
  properties), `Region` (one hit), `Extra` (the base-level alignment attached
  to a region, including its packed CIGAR), the `CigarOp` and `MapFlag`
  enumerations, `PackedSequence` (nucleotide codes stored four bits each),
  `encode_nt4`, `cigar_to_string` and the fast approximate `mg_log2`.
- `mmalign.bseq` – `SequenceReader`, a context manager that reads plain or
  gzip-compressed FASTA/FASTQ (a path of `-` or `None` reads standard input).
  `read(chunk_size, with_qual, with_comment, frag_mode)` returns a list of
  `SeqRecord`s whose total length reaches `chunk_size`; in fragment mode,
  records named like the last one (`r/1`, `r/2`) stay in the same chunk. `U`
  is read as `T`. `read_fragments` reads one record from each of several
  readers in step. `qname_len`, `qname_same` and `revcomp_record` are small
  helpers for read names and reverse complements.
- `mmalign.index` – `Index`, holding reference sequences (`RefSeq`) and
  minimizer buckets. Sequences are added with `add_sequences`; precomputed
  `(x, y)` minimizers are queued with `add_minimizers` and turned into lookup
  tables by `finalize`, after which `get` returns a minimizer's positions.
  `getseq`, `getseq_rev` and `getseq2` return nucleotide codes of a range;
  `cal_max_occ` gives an occurrence cutoff; `dump` and the class method
  `load` write and read the binary index format. `read_alt` marks ALT contigs
  from a list of names, `read_bed` loads BED intervals (or, with `read_junc`,
  the introns of BED12 records) as `Interval`s, and `bed_junc` returns
  per-base splice-site flags. `is_index_file` returns a file's size if it
  starts with the index magic, otherwise 0.
- `mmalign.hits` – `gen_regs` turns chains into `Region`s, best first;
  `split_reg`, `set_parent`, `hit_sort`, `set_sam_pri`, `sync_regs`,
  `select_sub`, `filter_strand_retained`, `filter_regs`, `squeeze_a`,
  `seg_gen` (per-segment hits for multi-segment reads), `mark_alt`,
  `set_mapq` and the integer hash `hash64`.
- `mmalign.esterr` – `est_err` sets each hit's `div` from the query
  minimizers its chain misses.
- `mmalign.cigar` – `gen_simple_mat` builds a scoring matrix; `fix_cigar`
  left-aligns indels, collapses mixed I/D runs and removes a leading I or D;
  `update_cigar_eqx` expands `M` into `=`/`X`; `update_extra` recomputes
  `blen`, `mlen`, `n_ambi` and `dp_max`; `append_cigar`, `count_gaps`,
  `event_identity`, `recal_max_dp` and `update_dp_max`.
- `mmalign.anchors` – anchor clean-up before alignment:
  `collect_long_gaps`, `filter_bad_seeds`, `filter_bad_seeds_alt`,
  `fix_bad_ends`, `max_stretch`, `hplen_back` and `adjust_minier`.
- `mmalign.format` – `write_paf` and `write_sam` return one record line
  without a newline; `write_sam_hdr` returns the header text (`@SQ`, an
  optional `@RG` checked by `parse_rg_line`, and `@PG`); `gen_cs` and
  `gen_md` give the `cs` and `MD` difference strings; `format_tags` gives the
  optional fields shared by both formats. A malformed read-group line raises
  `ValueError`.

## Example

```python
from mmalign.bseq import SequenceReader, SeqRecord
from mmalign.core import Extra, MapFlag, Region
from mmalign.format import write_paf
from mmalign.index import Index

with SequenceReader("ref.fa") as reader:
    records = reader.read(1 << 30, False, False, False)

idx = Index(10, 15, 14, 0)
idx.add_sequences([r.name for r in records], [r.seq for r in records])
print(idx.getseq(0, 0, 20))

with open("ref.mmi", "wb") as fp:
    idx.dump(fp)

# A hit with a base-level alignment of 10 matching bases
hit = Region(id=0, parent=0, cnt=3, score=30, qs=0, qe=10, rs=0, re=10,
             mlen=10, blen=10, mapq=60, p=Extra(cigar=[10 << 4]))
query = SeqRecord("q1", records[0].seq[:10])
print(write_paf(idx, query, hit, MapFlag.OUT_CG | MapFlag.OUT_CS))
```

## What the package does not do

- It does not compute minimizers from sequences: `Index.add_minimizers`
  takes minimizers that have already been computed.
- It has no seeding, chaining or dynamic-programming alignment. Chains,
  anchors and CIGARs are inputs to `mmalign.hits`, `mmalign.anchors` and
  `mmalign.cigar`, not things the package produces from raw reads.
- There is no command-line program and no multi-threaded mapping pipeline;
  the modules are a library to be called from Python.