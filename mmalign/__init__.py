"""Sequence reading, minimizer index, hit processing, CIGAR handling and PAF/SAM output for a long-read mapper."""

__version__ = "0.1.0"
__all__ = ["core", "bseq", "index", "hits", "esterr", "cigar", "format", "anchors"]