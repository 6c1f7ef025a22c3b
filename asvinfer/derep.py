"""Dereplication: collapse identical reads into unique sequences with counts."""

import logging
from typing import Dict, Iterable, List

import numpy as np
from Bio import SeqIO
from Bio.SeqRecord import SeqRecord

from asvinfer.filtering import open_fastq
from asvinfer.types import Derep, UniqueSequence


def dereplicate(records: Iterable[SeqRecord]) -> Derep:
    """Collapse reads into unique sequences.

    Sequences are compared case-insensitively. Each unique's quality profile is
    the per-position mean over the reads that cover that position. Uniques are
    ordered by decreasing abundance, ties broken by sequence.
    """
    index_of: Dict[str, int] = {}
    sequences: List[str] = []
    counts: List[int] = []
    qual_sums: List[np.ndarray] = []
    qual_cover: List[np.ndarray] = []
    read_map: List[int] = []

    for record in records:
        seq = str(record.seq).upper()
        quals = np.asarray(record.letter_annotations["phred_quality"], dtype=float)
        idx = index_of.get(seq)
        if idx is None:
            idx = len(sequences)
            index_of[seq] = idx
            sequences.append(seq)
            counts.append(0)
            qual_sums.append(np.zeros(len(seq)))
            qual_cover.append(np.zeros(len(seq)))
        counts[idx] += 1
        qual_sums[idx][:len(quals)] += quals[:len(seq)]
        qual_cover[idx][:len(quals)] += 1
        read_map.append(idx)

    order = sorted(range(len(sequences)), key=lambda i: (-counts[i], sequences[i]))
    new_index = {old: new for new, old in enumerate(order)}

    uniques = []
    for old in order:
        with np.errstate(invalid='ignore', divide='ignore'):
            mean_q = np.where(qual_cover[old] > 0, qual_sums[old] / qual_cover[old], 0.0)
        uniques.append(UniqueSequence(sequences[old], counts[old], mean_q))

    derep = Derep(uniques=uniques, read_map=[new_index[i] for i in read_map])
    logging.debug(f"Dereplicated {derep.total_reads} reads into {len(uniques)} unique sequences")
    return derep


def dereplicate_fastq(path: str) -> Derep:
    """Dereplicate a (optionally gzipped) FASTQ file."""
    with open_fastq(path) as handle:
        return dereplicate(SeqIO.parse(handle, "fastq"))
