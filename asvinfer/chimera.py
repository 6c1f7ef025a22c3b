"""De novo bimera detection by per-sample consensus."""

import logging
from dataclasses import dataclass
from typing import Dict, List, Optional, Tuple

import edlib
import numpy as np
from tqdm import tqdm

from asvinfer.config import ChimeraConfig
from asvinfer.seqtable import SequenceTable


@dataclass
class ChimeraResult:
    """Outcome of chimera removal.

    Attributes:
        table: New table without the flagged columns
        flags: Per-column chimera flag, aligned with the input table's columns
        removed: Flagged sequences, in input column order
        nflag: Number of samples in which each column was flagged
        nsam: Number of samples in which each column was present
        removed_fraction: Abundance in flagged columns over total abundance
    """
    table: SequenceTable
    flags: np.ndarray
    removed: List[str]
    nflag: np.ndarray
    nsam: np.ndarray
    removed_fraction: float

    @property
    def nonchimeric_fraction(self) -> float:
        return 1.0 - self.removed_fraction


def match_lengths(candidate: str, parent: str) -> Tuple[int, int, int]:
    """Lengths of the candidate's prefix and suffix that match the parent exactly.

    Parent bases overhanging either end of the candidate are ignored.

    Returns:
        Tuple of (left match length, right match length, edit distance)
    """
    if candidate == parent:
        return len(candidate), len(candidate), 0

    result = edlib.align(candidate, parent, mode="NW", task="path")
    alignment = edlib.getNiceAlignment(result, candidate, parent)
    query = alignment['query_aligned']
    target = alignment['target_aligned']

    def run_length(columns) -> int:
        matched = 0
        for q, t in columns:
            if q == '-':
                if matched == 0:
                    continue
                break
            if q != t:
                break
            matched += 1
        return matched

    left = run_length(zip(query, target))
    right = run_length(zip(reversed(query), reversed(target)))
    return left, right, result["editDistance"]


def is_bimera(candidate: str, parents: List[str], allow_one_off: bool = False,
              min_one_off_parent_distance: int = 4,
              cache: Optional[Dict[Tuple[str, str], Tuple[int, int, int]]] = None) -> bool:
    """True if the candidate is a left part of one parent joined to a right part of another."""
    if len(parents) < 2:
        return False

    matches = []
    for parent in parents:
        key = (candidate, parent)
        if cache is not None and key in cache:
            matches.append(cache[key])
            continue
        found = match_lengths(candidate, parent)
        if cache is not None:
            cache[key] = found
        matches.append(found)

    n = len(candidate)
    for i, (left, _, dist_left) in enumerate(matches):
        for j, (_, right, dist_right) in enumerate(matches):
            if i == j:
                continue
            if left + right >= n:
                return True
            if (allow_one_off and left + right >= n - 1
                    and dist_left >= min_one_off_parent_distance
                    and dist_right >= min_one_off_parent_distance):
                return True
    return False


def flag_chimeras(table: SequenceTable, config: Optional[ChimeraConfig] = None) -> Tuple[np.ndarray, np.ndarray, np.ndarray]:
    """Per-column chimera flags by consensus across samples.

    In each sample, a present sequence is tested against the sequences in that
    sample that are at least min_parent_abundance and more than
    min_fold_parent_over_abundance times as abundant. A column is chimeric when
    it was flagged in at least one sample and in a large enough share of the
    samples where it occurs.

    Returns:
        Tuple of (flags, nflag, nsam) arrays over the table's columns
    """
    config = config or ChimeraConfig()
    counts = table.counts
    n_cols = len(table.sequences)
    nflag = np.zeros(n_cols, dtype=int)
    nsam = np.zeros(n_cols, dtype=int)
    cache: Dict[Tuple[str, str], Tuple[int, int, int]] = {}

    totals = table.column_totals()
    order = sorted(range(n_cols), key=lambda j: (-totals[j], table.sequences[j]))

    for j in tqdm(order, desc="Checking for chimeras", disable=n_cols < 100):
        candidate = table.sequences[j]
        for i in range(len(table.samples)):
            abundance = counts[i, j]
            if abundance <= 0:
                continue
            nsam[j] += 1
            parents = [table.sequences[k] for k in range(n_cols)
                       if k != j
                       and counts[i, k] >= config.min_parent_abundance
                       and counts[i, k] > config.min_fold_parent_over_abundance * abundance]
            if is_bimera(candidate, parents, config.allow_one_off,
                         config.min_one_off_parent_distance, cache):
                nflag[j] += 1

    flags = (nflag > 0) & ((nflag >= nsam * config.min_sample_fraction)
                           | (nflag >= nsam - config.ignore_n_negatives))
    return flags, nflag, nsam


def remove_chimeras(table: SequenceTable, config: Optional[ChimeraConfig] = None) -> ChimeraResult:
    """Remove chimeric columns, returning a new table and removal diagnostics."""
    flags, nflag, nsam = flag_chimeras(table, config)
    clean = table.subset_columns(~flags)

    total = int(table.counts.sum())
    removed_abundance = int(table.counts[:, flags].sum()) if flags.any() else 0
    removed_fraction = removed_abundance / total if total > 0 else 0.0
    removed = [s for s, f in zip(table.sequences, flags) if f]

    logging.info(f"Identified {len(removed)} bimeras out of {len(table.sequences)} input sequences "
                 f"({removed_fraction:.1%} of reads)")
    return ChimeraResult(clean, flags, removed, nflag, nsam, removed_fraction)
