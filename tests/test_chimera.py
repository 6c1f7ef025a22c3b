"""Tests for de novo bimera detection."""

import hashlib

import numpy as np
import pytest

from asvinfer.chimera import flag_chimeras, is_bimera, match_lengths, remove_chimeras
from asvinfer.config import ChimeraConfig
from asvinfer.seqtable import SequenceTable


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def substitute(sequence: str, positions) -> str:
    seq = list(sequence)
    for pos in positions:
        seq[pos] = {"A": "C", "C": "G", "G": "T", "T": "A"}[seq[pos]]
    return "".join(seq)


# Two parents differing at four positions, and their crossover at position 100
PARENT_A = generate_dna_sequence("chimera_parent", 200)
PARENT_B = substitute(PARENT_A, [20, 40, 160, 180])
CHIMERA = PARENT_A[:100] + PARENT_B[100:]


class TestMatchLengths:
    """Exact-match runs from each end."""

    def test_identical(self):
        assert match_lengths(PARENT_A, PARENT_A) == (200, 200, 0)

    def test_substitutions(self):
        left, right, dist = match_lengths(CHIMERA, PARENT_A)
        assert left == 160
        assert right == 19
        assert dist == 2

    def test_is_bimera(self):
        assert is_bimera(CHIMERA, [PARENT_A, PARENT_B])
        assert not is_bimera(CHIMERA, [PARENT_A])
        assert not is_bimera(PARENT_A, [PARENT_B, substitute(PARENT_B, [100])])


class TestChimeraRemoval:
    """Consensus flagging across samples."""

    def test_bimera_removed(self):
        table = SequenceTable(["S1"], [PARENT_A, PARENT_B, CHIMERA], np.array([[100, 80, 10]]))
        result = remove_chimeras(table)
        assert result.removed == [CHIMERA]
        assert result.table.sequences == [PARENT_A, PARENT_B]
        assert result.removed_fraction == pytest.approx(10 / 190)
        assert result.nonchimeric_fraction == pytest.approx(180 / 190)
        # Input table is unchanged
        assert len(table) == 3

    def test_parents_must_be_more_abundant(self):
        table = SequenceTable(["S1"], [PARENT_A, PARENT_B, CHIMERA], np.array([[100, 80, 60]]))
        flags, nflag, nsam = flag_chimeras(table)
        assert not flags.any()

    def test_consensus_tolerates_one_negative_sample(self):
        table = SequenceTable(["S1", "S2"], [PARENT_A, PARENT_B, CHIMERA],
                              np.array([[100, 80, 10], [10, 10, 50]]))
        flags, nflag, nsam = flag_chimeras(table)
        assert nflag[2] == 1
        assert nsam[2] == 2
        assert flags[2]

        flags, _, _ = flag_chimeras(table, ChimeraConfig(ignore_n_negatives=0))
        assert not flags[2]

    def test_raising_fold_never_flags_more(self):
        table = SequenceTable(["S1", "S2"], [PARENT_A, PARENT_B, CHIMERA],
                              np.array([[100, 80, 10], [100, 40, 30]]))
        previous = None
        for fold in [1.0, 1.5, 3.0, 5.0, 20.0]:
            flags, _, _ = flag_chimeras(table, ChimeraConfig(min_fold_parent_over_abundance=fold))
            flagged = set(np.flatnonzero(flags))
            if previous is not None:
                assert flagged <= previous
            previous = flagged
        assert previous == set()

    def test_fold_below_one_rejected(self):
        with pytest.raises(ValueError):
            ChimeraConfig(min_fold_parent_over_abundance=0.5)

    def test_empty_table(self):
        table = SequenceTable(["S1"], [], np.zeros((1, 0), dtype=int))
        result = remove_chimeras(table)
        assert result.removed == []
        assert result.removed_fraction == 0.0
