"""Shared record types and exceptions for the asvinfer pipeline."""

from dataclasses import dataclass, field
from typing import Dict, List, NamedTuple, Optional

import numpy as np


class AsvInferError(Exception):
    """Base class for all pipeline errors."""


class SchemaError(AsvInferError):
    """Sample table is malformed or references missing files."""


class PairingMismatch(AsvInferError):
    """Forward and reverse file sets do not pair up."""

    def __init__(self, forward_only: List[str], reverse_only: List[str],
                 mismatched_samples: Optional[List[str]] = None):
        self.forward_only = sorted(forward_only)
        self.reverse_only = sorted(reverse_only)
        self.mismatched_samples = sorted(mismatched_samples or [])
        parts = []
        if self.forward_only:
            parts.append(f"forward files without reverse: {', '.join(self.forward_only)}")
        if self.reverse_only:
            parts.append(f"reverse files without forward: {', '.join(self.reverse_only)}")
        if self.mismatched_samples:
            parts.append(f"samples with differing file keys: {', '.join(self.mismatched_samples)}")
        super().__init__("Forward/reverse pairing mismatch; " + "; ".join(parts))


class FilterError(AsvInferError):
    """A single sample's reads could not be filtered."""


class InsufficientDataError(AsvInferError):
    """Too few reads to estimate the error model."""


class ConvergenceError(AsvInferError):
    """Error model estimation did not converge."""


class ServiceError(AsvInferError):
    """An external collaborator (aligner, classifier, tree builder) failed."""


class Sample(NamedTuple):
    """One sequenced sample with its paired FASTQ files."""
    sample_id: str
    forward_path: str
    reverse_path: str


class UniqueSequence(NamedTuple):
    """A distinct read sequence within one sample."""
    sequence: str
    abundance: int
    quality: np.ndarray  # Per-position mean Phred quality


@dataclass
class Derep:
    """Dereplicated reads for one sample and direction.

    Attributes:
        uniques: Unique sequences, most abundant first (ties by sequence)
        read_map: For each input read (in file order), the index of its unique
    """
    uniques: List[UniqueSequence]
    read_map: List[int]

    @property
    def total_reads(self) -> int:
        return len(self.read_map)


class ASV(NamedTuple):
    """A denoised sequence variant and the number of reads it absorbed."""
    sequence: str
    abundance: int


@dataclass
class DenoiseResult:
    """Output of one denoising pass over a sample's unique sequences.

    Attributes:
        asvs: Denoised variants, in order of discovery
        unique_map: For each unique (by index), its ASV index or None if unassigned
        pvalues: Abundance p-value of each unique against its final center
        transitions: 16 x Q transition counts (center base -> member base by quality)
    """
    asvs: List[ASV]
    unique_map: List[Optional[int]]
    pvalues: List[float]
    transitions: np.ndarray

    @property
    def denoised_reads(self) -> int:
        return sum(asv.abundance for asv in self.asvs)


class MergedPair(NamedTuple):
    """Result of attempting to merge one forward/reverse ASV combination."""
    forward_index: int
    reverse_index: int
    sequence: Optional[str]
    abundance: int
    overlap: int
    mismatches: int
    accepted: bool


@dataclass
class MergeResult:
    """Merged sequences for one sample."""
    pairs: List[MergedPair]
    unmerged_reads: int = 0
    unassigned_reads: int = 0

    def sequence_abundances(self) -> Dict[str, int]:
        """Merged sequence -> abundance, summed across combinations."""
        abundances: Dict[str, int] = {}
        for pair in self.pairs:
            if pair.accepted:
                abundances[pair.sequence] = abundances.get(pair.sequence, 0) + pair.abundance
        return abundances

    @property
    def merged_reads(self) -> int:
        return sum(p.abundance for p in self.pairs if p.accepted)


@dataclass
class FilterResult:
    """Read counts and output files from quality filtering one sample."""
    sample_id: str
    reads_in: int
    reads_out: int
    forward_path: Optional[str]
    reverse_path: Optional[str]
    rejected: Dict[str, int] = field(default_factory=dict)


class TaxonomyHit(NamedTuple):
    """Hierarchical labels for one ASV, from Kingdom down to Species."""
    kingdom: Optional[str] = None
    phylum: Optional[str] = None
    klass: Optional[str] = None
    order: Optional[str] = None
    family: Optional[str] = None
    genus: Optional[str] = None
    species: Optional[str] = None
