"""Reading FASTA/FASTQ records from plain or gzip-compressed files."""

from __future__ import annotations

import gzip
import logging
import re
import sys
from dataclasses import dataclass, replace
from typing import IO, Iterator, Optional, Sequence, Union

logger = logging.getLogger(__name__)

CHECK_PAIR_THRES = 1_000_000

_U_TO_T = str.maketrans("uU", "tT")
_UPPER = "ABCDEFGHIJKLMNOPQRSTUVWXYZ"
_UPPER_COMP = "TVGHEFCDIJMLKNOPQYSAABWXRZ"
COMPLEMENT = str.maketrans(_UPPER + _UPPER.lower(), _UPPER_COMP + _UPPER_COMP.lower())

_HEADER = re.compile(rb"(\S*)(?:\s(.*))?", re.DOTALL)


@dataclass
class SeqRecord:
    """One sequence with its name and optional quality and comment."""

    name: str
    seq: str
    qual: Optional[str] = None
    comment: Optional[str] = None
    rid: int = 0


class _ParseError(Exception):
    pass


_RawRecord = tuple  # (name, comment, seq, qual)


def _strip(line: bytes) -> bytes:
    return line.rstrip(b"\r\n")


def _parse_records(stream: IO[bytes]) -> Iterator[_RawRecord]:
    lines = iter(stream)
    header: Optional[bytes] = None
    for raw in lines:
        if raw[:1] in (b">", b"@"):
            header = raw
            break
    while header is not None:
        m = _HEADER.match(_strip(header)[1:])
        name, comment = m.group(1), m.group(2)
        header = None
        parts = []
        is_fastq = False
        for raw in lines:
            c = raw[:1]
            if c in (b">", b"@"):
                header = raw
                break
            if c == b"+":
                is_fastq = True
                break
            parts.append(_strip(raw))
        seq = b"".join(parts)
        if not is_fastq:
            yield (name, comment, seq, None)
            continue
        qual = b""
        while len(qual) < len(seq):
            raw = next(lines, None)
            if raw is None:
                break
            qual += _strip(raw)
        if len(qual) != len(seq):
            raise _ParseError("quality string has a different length from the sequence")
        yield (name, comment, seq, qual)
        for raw in lines:
            if raw[:1] in (b">", b"@"):
                header = raw
                break


def _decode(b: Optional[bytes]) -> Optional[str]:
    return None if b is None else b.decode("latin-1")


_NOTHING = object()


class SequenceReader:
    """Streams records from a FASTA/FASTQ file; '-' or None reads standard input."""

    def __init__(self, path: Optional[str]) -> None:
        self._owns = path is not None and path != "-"
        self._raw = open(path, "rb") if self._owns else sys.stdin.buffer
        head = self._raw.peek(2)[:2] if hasattr(self._raw, "peek") else b""
        if head == b"\x1f\x8b":
            self._stream: IO[bytes] = gzip.GzipFile(fileobj=self._raw)
        else:
            self._stream = self._raw
        self._records = _parse_records(self._stream)
        self._lookahead: object = _NOTHING
        self._pending: Optional[SeqRecord] = None

    def _fetch(self) -> Union[_RawRecord, _ParseError, None]:
        try:
            return next(self._records)
        except StopIteration:
            return None
        except _ParseError as exc:
            return exc

    def _next_raw(self) -> Union[_RawRecord, _ParseError, None]:
        if self._lookahead is not _NOTHING:
            item, self._lookahead = self._lookahead, _NOTHING
            return item  # type: ignore[return-value]
        return self._fetch()

    def _next_record(self, with_qual: bool, with_comment: bool) -> Union[SeqRecord, _ParseError, None]:
        item = self._next_raw()
        if item is None or isinstance(item, _ParseError):
            return item
        name, comment, seq, qual = item
        if not name:
            logger.warning("empty sequence name in the input.")
        return SeqRecord(
            name=_decode(name),
            seq=_decode(seq).translate(_U_TO_T),
            qual=_decode(qual) if with_qual and qual else None,
            comment=_decode(comment) if with_comment and comment else None,
        )

    def read(
        self,
        chunk_size: int,
        with_qual: bool = True,
        with_comment: bool = False,
        frag_mode: bool = False,
    ) -> list[SeqRecord]:
        """Read records until their total length reaches chunk_size.

        In fragment mode, records named like the last one (e.g. r/1, r/2) are
        kept in the same chunk.
        """
        records: list[SeqRecord] = []
        size = 0
        if self._pending is not None:
            records.append(self._pending)
            size = len(self._pending.seq)
            self._pending = None
        failed = False
        while True:
            rec = self._next_record(with_qual, with_comment)
            if rec is None:
                break
            if isinstance(rec, _ParseError):
                failed = True
                break
            records.append(rec)
            size += len(rec.seq)
            if size >= chunk_size:
                if frag_mode and len(records[-1].seq) < CHECK_PAIR_THRES:
                    while True:
                        nxt = self._next_record(with_qual, with_comment)
                        if nxt is None:
                            break
                        if isinstance(nxt, _ParseError):
                            failed = True
                            break
                        if qname_same(nxt.name, records[-1].name):
                            records.append(nxt)
                        else:
                            self._pending = nxt
                            break
                break
        if failed:
            if records:
                logger.warning(
                    "failed to parse the FASTA/FASTQ record next to '%s'. Continue anyway.",
                    records[-1].name,
                )
            else:
                logger.warning("failed to parse the first FASTA/FASTQ record. Continue anyway.")
        return records

    def eof(self) -> bool:
        """True when no record is left to read."""
        if self._pending is not None:
            return False
        if self._lookahead is _NOTHING:
            self._lookahead = self._fetch()
        return self._lookahead is None

    def close(self) -> None:
        if self._stream is not self._raw:
            self._stream.close()
        if self._owns:
            self._raw.close()

    def __enter__(self) -> "SequenceReader":
        return self

    def __exit__(self, *args) -> None:
        self.close()


def read_fragments(
    readers: Sequence[SequenceReader],
    chunk_size: int,
    with_qual: bool = True,
    with_comment: bool = False,
) -> list[SeqRecord]:
    """Read one record from each reader in turn until chunk_size bases are collected."""
    records: list[SeqRecord] = []
    if not readers:
        return records
    size = 0
    while True:
        batch = [r._next_record(with_qual, with_comment) for r in readers]
        got = [x for x in batch if isinstance(x, SeqRecord)]
        if len(got) < len(readers):
            if got:
                logger.warning("query files have different number of records; extra records skipped.")
            break
        records.extend(got)
        size += sum(len(x.seq) for x in got)
        if size >= chunk_size:
            break
    return records


def qname_len(name: str) -> int:
    """Length of a read name without a trailing '/<digit>' suffix."""
    n = len(name)
    if n >= 3 and name[-1].isdigit() and "0" <= name[-1] <= "9" and name[-2] == "/":
        return n - 2
    return n


def qname_same(name1: str, name2: str) -> bool:
    """Whether two read names are equal once '/<digit>' suffixes are removed."""
    l1, l2 = qname_len(name1), qname_len(name2)
    return l1 == l2 and name1[:l1] == name2[:l2]


def revcomp_record(record: SeqRecord) -> SeqRecord:
    """Return the reverse complement of a record; the quality is reversed."""
    return replace(
        record,
        seq=record.seq[::-1].translate(COMPLEMENT),
        qual=record.qual[::-1] if record.qual is not None else None,
    )