"""Quality filtering and trimming of paired FASTQ reads."""

import gzip
import logging
import os
from collections import Counter
from typing import Iterator, Optional, Set, Tuple

import edlib
import numpy as np
from Bio import SeqIO
from Bio.Seq import reverse_complement
from Bio.SeqRecord import SeqRecord

from asvinfer.config import FilterConfig
from asvinfer.types import Sample, FilterResult, FilterError


# IUPAC equivalencies so edlib treats ambiguity codes in primers as matching their bases
IUPAC_EQUIV = [("Y", "C"), ("Y", "T"), ("R", "A"), ("R", "G"),
               ("N", "A"), ("N", "C"), ("N", "G"), ("N", "T"),
               ("W", "A"), ("W", "T"), ("M", "A"), ("M", "C"),
               ("S", "C"), ("S", "G"), ("K", "G"), ("K", "T"),
               ("B", "C"), ("B", "G"), ("B", "T"),
               ("D", "A"), ("D", "G"), ("D", "T"),
               ("H", "A"), ("H", "C"), ("H", "T"),
               ("V", "A"), ("V", "C"), ("V", "G"), ]

CONTAMINANT_WORD_SIZE = 16
CONTAMINANT_MIN_MATCHES = 2


def open_fastq(path: str, mode: str = 'rt'):
    """Open a FASTQ file, transparently handling gzip compression."""
    if path.endswith('.gz'):
        return gzip.open(path, mode)
    return open(path, mode)


def expected_errors(qualities) -> float:
    """Sum of per-base error probabilities implied by Phred qualities."""
    q = np.asarray(qualities, dtype=float)
    return float(np.sum(np.power(10.0, -q / 10.0)))


def load_contaminant_kmers(fasta_path: str, word_size: int = CONTAMINANT_WORD_SIZE) -> Set[str]:
    """Collect all k-mers of the contaminant references on both strands."""
    kmers = set()
    for record in SeqIO.parse(fasta_path, "fasta"):
        seq = str(record.seq).upper()
        for strand in (seq, reverse_complement(seq)):
            for i in range(len(strand) - word_size + 1):
                kmers.add(strand[i:i + word_size])
    logging.debug(f"Loaded {len(kmers)} contaminant {word_size}-mers from {fasta_path}")
    return kmers


def matches_contaminant(sequence: str, kmers: Set[str],
                        word_size: int = CONTAMINANT_WORD_SIZE,
                        min_matches: int = CONTAMINANT_MIN_MATCHES) -> bool:
    """True if the read shares at least min_matches k-mers with the contaminant set."""
    hits = 0
    for i in range(len(sequence) - word_size + 1):
        if sequence[i:i + word_size] in kmers:
            hits += 1
            if hits >= min_matches:
                return True
    return False


def find_primer_end(sequence: str, primer: str, max_mismatches: int) -> Optional[int]:
    """Locate a primer at the 5' end of a read.

    Returns:
        Index just past the primer match, or None if the primer was not found
    """
    search_region = sequence[:len(primer) * 2]
    result = edlib.align(primer, search_region, task="locations", mode="HW",
                         k=max_mismatches, additionalEqualities=IUPAC_EQUIV)
    if result["editDistance"] == -1 or not result["locations"]:
        return None
    # Reject matches that start too far into the read to be a 5' primer
    start, end = result["locations"][0]
    if start > max_mismatches:
        return None
    return end + 1


def trim_read(record: SeqRecord, direction: int, config: FilterConfig,
              contaminant_kmers: Optional[Set[str]] = None) -> Tuple[Optional[SeqRecord], Optional[str]]:
    """Apply truncation, trimming and quality checks to one read.

    Args:
        record: Read with phred_quality letter annotations
        direction: 0 for forward, 1 for reverse
        config: Filtering parameters
        contaminant_kmers: Contaminant word set, or None to skip screening

    Returns:
        Tuple of (trimmed record or None, rejection reason or None)
    """
    quals = record.letter_annotations["phred_quality"]

    # Truncate at the first low-quality base
    cut = len(quals)
    for i, q in enumerate(quals):
        if q <= config.trunc_q:
            cut = i
            break
    record = record[:cut]

    trunc_len = config.trunc_len[direction]
    if trunc_len > 0:
        if len(record) < trunc_len:
            return None, 'truncation'
        record = record[:trunc_len]

    if config.primers:
        primer_end = find_primer_end(str(record.seq).upper(), config.primers[direction],
                                     config.max_primer_mismatches)
        if primer_end is None:
            return None, 'primer'
        record = record[primer_end:]

    record = record[config.trim_left[direction]:]

    if len(record) < config.min_len:
        return None, 'length'

    sequence = str(record.seq).upper()
    if sequence.count('N') > config.max_n:
        return None, 'ambiguous'

    if expected_errors(record.letter_annotations["phred_quality"]) > config.max_ee[direction]:
        return None, 'expected_errors'

    if contaminant_kmers and matches_contaminant(sequence, contaminant_kmers):
        return None, 'contaminant'

    return record, None


def _read_key(record: SeqRecord) -> str:
    """Read identifier with pair-direction markers removed."""
    read_id = record.id
    if read_id.endswith('/1') or read_id.endswith('/2'):
        read_id = read_id[:-2]
    return read_id


def iterate_pairs(forward_path: str, reverse_path: str,
                  match_ids: bool = True) -> Iterator[Tuple[SeqRecord, SeqRecord]]:
    """Stream read pairs from two FASTQ files in lockstep.

    Raises:
        FilterError: Files of different lengths, or mismatched read identifiers.
    """
    with open_fastq(forward_path) as fh, open_fastq(reverse_path) as rh:
        fwd_iter = SeqIO.parse(fh, "fastq")
        rev_iter = SeqIO.parse(rh, "fastq")
        sentinel = object()
        while True:
            fwd = next(fwd_iter, sentinel)
            rev = next(rev_iter, sentinel)
            if fwd is sentinel and rev is sentinel:
                return
            if fwd is sentinel or rev is sentinel:
                raise FilterError(f"Forward and reverse files contain different numbers of reads: "
                                  f"{forward_path}, {reverse_path}")
            if match_ids and _read_key(fwd) != _read_key(rev):
                raise FilterError(f"Mismatched read identifiers '{fwd.id}' and '{rev.id}' "
                                  f"in {forward_path}")
            yield fwd, rev


def _remove_outputs(*paths: str) -> None:
    for path in paths:
        if os.path.exists(path):
            os.remove(path)


def filter_and_trim(sample: Sample, out_dir: str, config: FilterConfig,
                    contaminant_kmers: Optional[Set[str]] = None) -> FilterResult:
    """Filter one sample's read pairs, writing survivors as gzipped FASTQ.

    A pair is kept only if both reads pass; otherwise both are dropped.
    Output files are removed again when no read survives, or when an input
    file turns out to be truncated or malformed.

    Raises:
        FilterError: Unpaired or unreadable input files
    """
    os.makedirs(out_dir, exist_ok=True)
    forward_out = os.path.join(out_dir, f"{sample.sample_id}_F_filt.fastq.gz")
    reverse_out = os.path.join(out_dir, f"{sample.sample_id}_R_filt.fastq.gz")

    reads_in = 0
    reads_out = 0
    rejected = Counter()

    try:
        with gzip.open(forward_out, 'wt') as fo, gzip.open(reverse_out, 'wt') as ro:
            for fwd, rev in iterate_pairs(sample.forward_path, sample.reverse_path, config.match_ids):
                reads_in += 1
                fwd_trimmed, reason = trim_read(fwd, 0, config, contaminant_kmers)
                if fwd_trimmed is None:
                    rejected[reason] += 1
                    continue
                rev_trimmed, reason = trim_read(rev, 1, config, contaminant_kmers)
                if rev_trimmed is None:
                    rejected[reason] += 1
                    continue
                SeqIO.write(fwd_trimmed, fo, "fastq")
                SeqIO.write(rev_trimmed, ro, "fastq")
                reads_out += 1
    except FilterError:
        _remove_outputs(forward_out, reverse_out)
        raise
    except (EOFError, OSError, ValueError) as e:
        _remove_outputs(forward_out, reverse_out)
        raise FilterError(f"Could not read {sample.sample_id} after {reads_in} read pairs: {e}") from e

    if reads_out == 0:
        _remove_outputs(forward_out, reverse_out)
        forward_out = reverse_out = None

    logging.debug(f"{sample.sample_id}: {reads_out}/{reads_in} read pairs passed filtering "
                  f"({dict(rejected)})")
    return FilterResult(
        sample_id=sample.sample_id,
        reads_in=reads_in,
        reads_out=reads_out,
        forward_path=forward_out,
        reverse_path=reverse_out,
        rejected=dict(rejected),
    )
