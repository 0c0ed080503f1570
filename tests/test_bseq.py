import gzip
import logging

import pytest

from mmalign.bseq import (
    SeqRecord,
    SequenceReader,
    qname_len,
    qname_same,
    read_fragments,
    revcomp_record,
)


def _write(tmp_path, name, text):
    path = tmp_path / name
    path.write_text(text)
    return str(path)


def test_fasta_multiline_and_comment(tmp_path):
    path = _write(tmp_path, "a.fa", ">r1 desc here\nACG\nTU\n>r2\nacgu\n")
    with SequenceReader(path) as reader:
        recs = reader.read(10**9, with_comment=True)
    assert [r.name for r in recs] == ["r1", "r2"]
    assert recs[0].seq == "ACGTT"
    assert recs[0].comment == "desc here"
    assert recs[1].comment is None
    assert recs[1].seq == "acgt"
    assert recs[0].qual is None


def test_fastq_quality(tmp_path):
    path = _write(tmp_path, "a.fq", "@q1\nACGT\n+\nIIII\n@q2\nGG\n+q2\n#@\n")
    with SequenceReader(path) as reader:
        recs = reader.read(10**9, with_qual=True)
    assert [(r.name, r.seq, r.qual) for r in recs] == [("q1", "ACGT", "IIII"), ("q2", "GG", "#@")]


def test_fastq_without_quality(tmp_path):
    path = _write(tmp_path, "a.fq", "@q1\nACGT\n+\nIIII\n")
    with SequenceReader(path) as reader:
        recs = reader.read(10**9, with_qual=False)
    assert recs[0].qual is None
    assert recs[0].seq == "ACGT"


def test_gzip_input(tmp_path):
    path = tmp_path / "a.fa.gz"
    with gzip.open(path, "wt") as fh:
        fh.write(">g1\nACGT\n>g2\nTTTT\n")
    with SequenceReader(str(path)) as reader:
        recs = reader.read(10**9)
    assert [(r.name, r.seq) for r in recs] == [("g1", "ACGT"), ("g2", "TTTT")]


def test_chunking_and_eof(tmp_path):
    path = _write(tmp_path, "a.fa", ">a\nACGT\n>b\nACGT\n>c\nACGT\n")
    with SequenceReader(path) as reader:
        assert not reader.eof()
        first = reader.read(5)
        second = reader.read(5)
        assert reader.eof()
        third = reader.read(5)
    assert [r.name for r in first] == ["a", "b"]
    assert [r.name for r in second] == ["c"]
    assert third == []


def test_frag_mode_keeps_pairs_together(tmp_path):
    path = _write(tmp_path, "a.fa", ">r/1\nACGT\n>r/2\nACGT\n>s/1\nACGT\n")
    with SequenceReader(path) as reader:
        first = reader.read(1, frag_mode=True)
        assert not reader.eof()
        second = reader.read(1, frag_mode=True)
    assert [r.name for r in first] == ["r/1", "r/2"]
    assert [r.name for r in second] == ["s/1"]


def test_truncated_quality_warns(tmp_path, caplog):
    path = _write(tmp_path, "a.fq", "@a\nACGT\n+\nII\n")
    with caplog.at_level(logging.WARNING):
        with SequenceReader(path) as reader:
            recs = reader.read(10**9)
    assert recs == []
    assert "failed to parse the first" in caplog.text


def test_empty_name_warns(tmp_path, caplog):
    path = _write(tmp_path, "a.fa", ">\nACGT\n")
    with caplog.at_level(logging.WARNING):
        with SequenceReader(path) as reader:
            recs = reader.read(10**9)
    assert recs[0].name == ""
    assert "empty sequence name" in caplog.text


def test_missing_file_raises(tmp_path):
    with pytest.raises(FileNotFoundError):
        SequenceReader(str(tmp_path / "absent.fa"))


def test_read_fragments_pairs_and_mismatch(tmp_path, caplog):
    p1 = _write(tmp_path, "r1.fa", ">x/1\nAAAA\n>y/1\nCCCC\n")
    p2 = _write(tmp_path, "r2.fa", ">x/2\nGGGG\n")
    with caplog.at_level(logging.WARNING):
        with SequenceReader(p1) as a, SequenceReader(p2) as b:
            recs = read_fragments([a, b], 10**9)
    assert [r.name for r in recs] == ["x/1", "x/2"]
    assert "different number of records" in caplog.text


def test_read_fragments_no_readers():
    assert read_fragments([], 100) == []


@pytest.mark.parametrize(
    "name,expected",
    [("read/1", len("read")), ("r/1", len("r")), ("/1", len("/1")), ("read/x", len("read/x")), ("read", len("read"))],
)
def test_qname_len(name, expected):
    assert qname_len(name) == expected


@pytest.mark.parametrize(
    "n1,n2,same",
    [("read/1", "read/2", True), ("read/1", "reads/1", False), ("ab", "ab", True), ("a/1", "a/x", False)],
)
def test_qname_same(n1, n2, same):
    assert qname_same(n1, n2) is same


def test_revcomp_record():
    rec = SeqRecord(name="q", seq="AACGTn", qual="123456")
    rc = revcomp_record(rec)
    assert rc.seq == "nACGTT"
    assert rc.qual == "654321"
    assert rec.seq == "AACGTn"
    assert revcomp_record(rc) == rec


def test_revcomp_keeps_non_ascii_and_missing_qual():
    rec = SeqRecord(name="q", seq="\u00e9A")
    rc = revcomp_record(rec)
    assert rc.seq == "T\u00e9"
    assert rc.qual is None