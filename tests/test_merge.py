"""Tests for merging denoised forward and reverse ASVs."""

import hashlib

import numpy as np
import pytest
from Bio.Seq import reverse_complement

from asvinfer.config import MergeConfig
from asvinfer.merge import CONCATENATE_SPACER, find_overlap, merge_pairs, merge_sequences
from asvinfer.types import ASV, DenoiseResult, Derep, UniqueSequence


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


AMPLICON = generate_dna_sequence("merge_amplicon", 250)


def mutate(sequence: str, pos: int) -> str:
    base = {"A": "C", "C": "G", "G": "T", "T": "A"}[sequence[pos]]
    return sequence[:pos] + base + sequence[pos + 1:]


class TestMergeSequences:
    """Overlap detection and merged sequence construction."""

    def test_fifty_base_overlap(self):
        forward = AMPLICON[:150]
        reverse = reverse_complement(AMPLICON[100:])
        merged, overlap, mismatches = merge_sequences(forward, reverse, MergeConfig())
        assert merged == AMPLICON
        assert overlap == 50
        assert mismatches == 0

    def test_short_overlap_above_minimum(self):
        forward = AMPLICON[:130]
        reverse = reverse_complement(AMPLICON[110:])
        merged, overlap, _ = merge_sequences(forward, reverse, MergeConfig(min_overlap=12))
        assert merged == AMPLICON
        assert overlap == 20

    def test_overlap_below_minimum_rejected(self):
        forward = AMPLICON[:130]
        reverse = reverse_complement(AMPLICON[120:])
        merged, _, _ = merge_sequences(forward, reverse, MergeConfig(min_overlap=20))
        assert merged is None

    def test_mismatch_rejected_by_default(self):
        forward = AMPLICON[:130]
        reverse = reverse_complement(mutate(AMPLICON, 120)[110:])
        merged, _, _ = merge_sequences(forward, reverse, MergeConfig(min_overlap=20))
        assert merged is None

    def test_mismatch_within_tolerance(self):
        forward = AMPLICON[:150]
        reverse = reverse_complement(mutate(AMPLICON, 120)[100:])
        merged, overlap, mismatches = merge_sequences(
            forward, reverse, MergeConfig(max_mismatch_rate=0.05))
        # Forward bases are kept through the overlap
        assert merged == AMPLICON
        assert overlap == 50
        assert mismatches == 1

    def test_just_concatenate(self):
        forward = AMPLICON[:100]
        reverse = reverse_complement(AMPLICON[150:])
        merged, _, _ = merge_sequences(forward, reverse, MergeConfig(just_concatenate=True))
        assert merged == AMPLICON[:100] + CONCATENATE_SPACER + AMPLICON[150:]

    def test_overhang(self):
        amplicon = AMPLICON[:100]
        leader = generate_dna_sequence("adapter", 10)
        forward = amplicon
        reverse_rc = leader + amplicon[:90]
        assert find_overlap(forward, reverse_rc, 12, 0.0) == (-10, 90, 0)

        merged, _, _ = merge_sequences(forward, reverse_complement(reverse_rc), MergeConfig())
        assert merged == leader + amplicon

        trimmed, _, _ = merge_sequences(forward, reverse_complement(reverse_rc),
                                        MergeConfig(trim_overhang=True))
        assert trimmed == amplicon[:90]


def make_derep(sequences, read_map):
    uniques = [UniqueSequence(s, read_map.count(i), np.zeros(len(s))) for i, s in enumerate(sequences)]
    return Derep(uniques=uniques, read_map=read_map)


def make_denoised(asv_sequences, unique_map, abundances):
    return DenoiseResult(asvs=[ASV(s, a) for s, a in zip(asv_sequences, abundances)],
                         unique_map=unique_map, pvalues=[1.0] * len(unique_map),
                         transitions=np.zeros((16, 42)))


class TestMergePairs:
    """Following read pairs through dereplication and denoising."""

    def test_pairs_traced_to_asv_combinations(self):
        fwd_asv = AMPLICON[:150]
        rev_asv = reverse_complement(AMPLICON[100:])
        fwd_derep = make_derep([fwd_asv, mutate(fwd_asv, 3)], [0, 0, 1, 1, 0])
        rev_derep = make_derep([rev_asv, mutate(rev_asv, 3)], [0, 0, 0, 1, 1])
        fwd_denoised = make_denoised([fwd_asv], [0, None], [3])
        rev_denoised = make_denoised([rev_asv], [0, 0], [5])

        result = merge_pairs(fwd_derep, fwd_denoised, rev_derep, rev_denoised)
        assert result.sequence_abundances() == {AMPLICON: 3}
        assert result.unassigned_reads == 2
        assert result.unmerged_reads == 0
        assert result.merged_reads == 3

    def test_unmergeable_combination_counted(self):
        fwd_asv = AMPLICON[:100]
        rev_asv = reverse_complement(AMPLICON[150:])
        fwd_derep = make_derep([fwd_asv], [0, 0])
        rev_derep = make_derep([rev_asv], [0, 0])
        result = merge_pairs(fwd_derep, make_denoised([fwd_asv], [0], [2]),
                             rev_derep, make_denoised([rev_asv], [0], [2]))
        assert result.merged_reads == 0
        assert result.unmerged_reads == 2
        assert result.pairs[0].accepted is False

    def test_read_count_mismatch(self):
        fwd_derep = make_derep(["ACGT"], [0, 0])
        rev_derep = make_derep(["ACGT"], [0])
        with pytest.raises(ValueError):
            merge_pairs(fwd_derep, make_denoised(["ACGT"], [0], [2]),
                        rev_derep, make_denoised(["ACGT"], [0], [1]))
