"""Samples x sequences abundance table."""

import hashlib
import logging
from collections import Counter
from typing import Dict, List, Optional

import numpy as np


def content_hash(sequence: str) -> str:
    """Stable identifier for a sequence, independent of processing order."""
    return hashlib.md5(sequence.upper().encode('ascii')).hexdigest()


class SequenceTable:
    """Abundance matrix with samples as rows and sequences as columns.

    Columns are keyed by the sequence strings themselves. Filtering operations
    return new tables and never modify this one.
    """

    def __init__(self, samples: List[str], sequences: List[str], counts: np.ndarray):
        counts = np.array(counts, dtype=np.int64)
        if counts.shape != (len(samples), len(sequences)):
            raise ValueError(f"Count matrix shape {counts.shape} does not match "
                             f"{len(samples)} samples x {len(sequences)} sequences")
        if len(set(sequences)) != len(sequences):
            raise ValueError("Sequence table columns must be unique")
        self.samples = list(samples)
        self.sequences = list(sequences)
        self.counts = counts
        self.counts.setflags(write=False)

    @classmethod
    def from_merged(cls, merged: Dict[str, Dict[str, int]]) -> 'SequenceTable':
        """Build a table from per-sample {sequence: abundance} mappings.

        The column universe is the union of every sample's sequences, ordered by
        decreasing total abundance and then by sequence. Absent entries are zero.
        """
        totals: Counter = Counter()
        for abundances in merged.values():
            totals.update(abundances)
        sequences = sorted(totals, key=lambda s: (-totals[s], s))
        column = {seq: j for j, seq in enumerate(sequences)}

        samples = list(merged)
        counts = np.zeros((len(samples), len(sequences)), dtype=np.int64)
        for i, sample_id in enumerate(samples):
            for seq, abundance in merged[sample_id].items():
                counts[i, column[seq]] += abundance

        logging.info(f"Sequence table: {len(samples)} samples x {len(sequences)} sequences")
        return cls(samples, sequences, counts)

    @property
    def shape(self):
        return self.counts.shape

    def __len__(self) -> int:
        return len(self.sequences)

    def column_totals(self) -> np.ndarray:
        return self.counts.sum(axis=0)

    def sample_totals(self) -> Dict[str, int]:
        return {s: int(t) for s, t in zip(self.samples, self.counts.sum(axis=1))}

    def abundance(self, sample_id: str, sequence: str) -> int:
        return int(self.counts[self.samples.index(sample_id), self.sequences.index(sequence)])

    def subset_columns(self, keep) -> 'SequenceTable':
        """New table with only the columns where keep is True."""
        keep = np.asarray(keep, dtype=bool)
        sequences = [s for s, k in zip(self.sequences, keep) if k]
        return SequenceTable(self.samples, sequences, self.counts[:, keep])

    def filter_length(self, min_length: Optional[int] = None,
                      max_length: Optional[int] = None) -> 'SequenceTable':
        """Drop sequences whose length falls outside [min_length, max_length].

        Bounds are inclusive; None or 0 leaves that side open.
        """
        lengths = np.array([len(s) for s in self.sequences], dtype=int)
        keep = np.ones(len(self.sequences), dtype=bool)
        if min_length:
            keep &= lengths >= min_length
        if max_length:
            keep &= lengths <= max_length
        if not keep.all():
            logging.info(f"Length filter [{min_length}, {max_length}] removed "
                         f"{int((~keep).sum())} of {len(keep)} sequences")
        return self.subset_columns(keep)

    def drop_empty_samples(self) -> 'SequenceTable':
        keep = self.counts.sum(axis=1) > 0
        samples = [s for s, k in zip(self.samples, keep) if k]
        return SequenceTable(samples, self.sequences, self.counts[keep, :])

    def length_distribution(self) -> Dict[int, int]:
        """Sequence length -> number of columns with that length."""
        return dict(sorted(Counter(len(s) for s in self.sequences).items()))

    def asv_ids(self, prefix: str = "ASV") -> List[str]:
        """Sequential zero-padded identifiers in column order."""
        width = max(4, len(str(len(self.sequences))))
        return [f"{prefix}{i:0{width}d}" for i in range(1, len(self.sequences) + 1)]

    def hashes(self) -> List[str]:
        return [content_hash(s) for s in self.sequences]
