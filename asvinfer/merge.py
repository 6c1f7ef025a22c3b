"""Merge denoised forward and reverse ASVs into full amplicon sequences."""

import logging
from collections import Counter
from typing import Optional, Tuple

from Bio.Seq import reverse_complement

from asvinfer.config import MergeConfig
from asvinfer.types import Derep, DenoiseResult, MergedPair, MergeResult


CONCATENATE_SPACER = "N" * 10


def find_overlap(forward: str, reverse_rc: str, min_overlap: int,
                 max_mismatch_rate: float) -> Optional[Tuple[int, int, int]]:
    """Find where the reverse-complemented reverse read overlaps the forward read.

    Offsets are the position in the forward sequence where reverse_rc starts.
    Offsets are tried from the longest possible overlap downwards; the first one
    whose mismatch rate is within tolerance wins. Negative offsets mean the
    reverse read extends past the start of the forward read.

    Returns:
        Tuple of (offset, overlap_length, mismatches), or None if no overlap qualifies
    """
    candidates = []
    for offset in range(-(len(reverse_rc) - min_overlap), len(forward) - min_overlap + 1):
        start = max(0, offset)
        end = min(len(forward), offset + len(reverse_rc))
        overlap = end - start
        if overlap >= min_overlap:
            candidates.append((overlap, offset, start, end))
    candidates.sort(key=lambda c: (-c[0], c[1]))

    for overlap, offset, start, end in candidates:
        fwd_part = forward[start:end]
        rev_part = reverse_rc[start - offset:end - offset]
        mismatches = sum(1 for a, b in zip(fwd_part, rev_part) if a != b)
        if mismatches <= max_mismatch_rate * overlap:
            return offset, overlap, mismatches
    return None


def merge_sequences(forward: str, reverse: str,
                    config: MergeConfig) -> Tuple[Optional[str], int, int]:
    """Merge one forward ASV with one reverse ASV.

    Returns:
        Tuple of (merged sequence or None, overlap length, mismatches in overlap)
    """
    reverse_rc = reverse_complement(reverse)
    if config.just_concatenate:
        return forward + CONCATENATE_SPACER + reverse_rc, 0, 0

    found = find_overlap(forward, reverse_rc, config.min_overlap, config.max_mismatch_rate)
    if found is None:
        return None, 0, 0
    offset, overlap, mismatches = found

    tail = reverse_rc[len(forward) - offset:]
    if offset >= 0:
        merged = forward + tail
    elif config.trim_overhang:
        # Each read ran past the start of its mate; keep only the shared span
        merged = forward[:offset + len(reverse_rc)] + tail
    else:
        merged = reverse_rc[:-offset] + forward + tail
    return merged, overlap, mismatches


def merge_pairs(forward_derep: Derep, forward_denoised: DenoiseResult,
                reverse_derep: Derep, reverse_denoised: DenoiseResult,
                config: Optional[MergeConfig] = None) -> MergeResult:
    """Merge one sample's forward and reverse ASVs, following each read pair.

    Every read pair maps to a (forward ASV, reverse ASV) combination through
    the dereplication and denoising maps. Each distinct combination is merged
    once; its abundance is the number of read pairs it holds. Pairs whose
    forward or reverse unique was left unassigned by denoising are not merged.
    """
    config = config or MergeConfig()
    if forward_derep.total_reads != reverse_derep.total_reads:
        raise ValueError(f"Forward and reverse reads differ in number "
                         f"({forward_derep.total_reads} vs {reverse_derep.total_reads})")

    combinations: Counter = Counter()
    unassigned = 0
    for fwd_unique, rev_unique in zip(forward_derep.read_map, reverse_derep.read_map):
        fwd_asv = forward_denoised.unique_map[fwd_unique]
        rev_asv = reverse_denoised.unique_map[rev_unique]
        if fwd_asv is None or rev_asv is None:
            unassigned += 1
            continue
        combinations[(fwd_asv, rev_asv)] += 1

    pairs = []
    unmerged = 0
    for (fwd_asv, rev_asv), abundance in sorted(combinations.items(), key=lambda kv: (-kv[1], kv[0])):
        merged, overlap, mismatches = merge_sequences(
            forward_denoised.asvs[fwd_asv].sequence,
            reverse_denoised.asvs[rev_asv].sequence,
            config,
        )
        accepted = merged is not None
        if not accepted:
            unmerged += abundance
        pairs.append(MergedPair(fwd_asv, rev_asv, merged, abundance, overlap, mismatches, accepted))

    result = MergeResult(pairs=pairs, unmerged_reads=unmerged, unassigned_reads=unassigned)
    logging.debug(f"Merged {result.merged_reads} read pairs into {len(result.sequence_abundances())} "
                  f"sequences ({unmerged} unmerged, {unassigned} unassigned)")
    return result
