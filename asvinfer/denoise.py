"""ASV inference: partition unique sequences into error-explained clusters.

Every unique sequence starts in a single cluster centred on the most abundant
unique. Each unique is aligned to every center with a bounded edit distance, and
the probability that it arose from the center by substitution errors (lambda) is
computed from the error model. Uniques join the center that is expected to
produce the most copies of them. The unique whose observed abundance is least
explainable as error (smallest abundance p-value) is then promoted to a new
center, and the process repeats until no unique is significant.
"""

import logging
import re
from typing import List, NamedTuple, Optional, TYPE_CHECKING

import edlib
import numpy as np
from scipy.stats import poisson

from asvinfer.config import DenoiseConfig
from asvinfer.types import ASV, Derep, DenoiseResult

if TYPE_CHECKING:
    from asvinfer.errormodel import ErrorModel


CIGAR_PATTERN = re.compile(r"(\d+)([=XIDM])")

# A, C, G, T -> 0..3; anything else -> 4 (ignored in likelihoods)
_BASE_CODES = np.full(256, 4, dtype=np.uint8)
for _i, _b in enumerate(b"ACGT"):
    _BASE_CODES[_b] = _i


def encode_sequence(sequence: str) -> np.ndarray:
    """Nucleotide string -> array of base codes."""
    return _BASE_CODES[np.frombuffer(sequence.encode('ascii'), dtype=np.uint8)]


class Alignment(NamedTuple):
    """Aligned columns between a center and a unique sequence.

    ref_codes/obs_codes hold the center and unique base codes of each
    non-gap column; positions holds the unique's coordinate for quality lookup.
    """
    ref_codes: np.ndarray
    obs_codes: np.ndarray
    positions: np.ndarray
    gaps: int
    edits: int


def align_to_center(center: str, sequence: str, band_size: int,
                    center_codes: Optional[np.ndarray] = None,
                    seq_codes: Optional[np.ndarray] = None) -> Optional[Alignment]:
    """Globally align a unique sequence to a center, bounded by band_size edits.

    Returns:
        Alignment, or None if the sequences are more than band_size edits apart
    """
    if center_codes is None:
        center_codes = encode_sequence(center)
    if seq_codes is None:
        seq_codes = encode_sequence(sequence)

    if center == sequence:
        n = len(sequence)
        return Alignment(center_codes, seq_codes, np.arange(n), 0, 0)

    result = edlib.align(sequence, center, mode="NW", task="path", k=band_size)
    if result["editDistance"] == -1:
        return None

    ref_parts, obs_parts, pos_parts = [], [], []
    qpos = tpos = 0
    gaps = 0
    for count, op in CIGAR_PATTERN.findall(result["cigar"]):
        n = int(count)
        if op in "=XM":
            ref_parts.append(center_codes[tpos:tpos + n])
            obs_parts.append(seq_codes[qpos:qpos + n])
            pos_parts.append(np.arange(qpos, qpos + n))
            qpos += n
            tpos += n
        elif op == "I":
            qpos += n
            gaps += n
        else:
            tpos += n
            gaps += n

    return Alignment(
        np.concatenate(ref_parts) if ref_parts else np.zeros(0, dtype=np.uint8),
        np.concatenate(obs_parts) if obs_parts else np.zeros(0, dtype=np.uint8),
        np.concatenate(pos_parts) if pos_parts else np.zeros(0, dtype=int),
        gaps,
        result["editDistance"],
    )


def abundance_pvalue(abundance: int, expected: float) -> float:
    """P(X >= abundance | X >= 1) for X ~ Poisson(expected)."""
    if abundance <= 1:
        return 1.0
    if expected <= 0:
        return 0.0
    numerator = poisson.sf(abundance - 1, expected)
    denominator = -np.expm1(-expected)
    if denominator <= 0:
        return 0.0
    return float(min(1.0, numerator / denominator))


class _Partition:
    """Working state of one denoising run."""

    def __init__(self, derep: Derep, model: 'ErrorModel', config: DenoiseConfig):
        self.uniques = derep.uniques
        self.config = config
        self.model = model
        self.log_rates = model.log_rates
        self.log_indel = 0.0 if model.is_uninformative else float(np.log(config.indel_prob))
        self.abundances = np.array([u.abundance for u in self.uniques], dtype=float)
        self.codes = [encode_sequence(u.sequence) for u in self.uniques]
        self.qidx = [model.quality_index(u.quality) for u in self.uniques]

        self.centers: List[int] = []
        self.log_lambda: List[np.ndarray] = []
        self.alignments: List[List[Optional[Alignment]]] = []
        self.assignment = np.zeros(len(self.uniques), dtype=int)

    def _log_lambda(self, alignment: Optional[Alignment], qidx: np.ndarray) -> float:
        if alignment is None:
            return -np.inf
        valid = (alignment.ref_codes < 4) & (alignment.obs_codes < 4)
        rows = alignment.ref_codes[valid].astype(int) * 4 + alignment.obs_codes[valid]
        cols = qidx[alignment.positions[valid]]
        return float(np.sum(self.log_rates[rows, cols])) + alignment.gaps * self.log_indel

    def add_center(self, index: int) -> None:
        center = self.uniques[index].sequence
        center_codes = self.codes[index]
        row = np.empty(len(self.uniques))
        aligned = []
        for i, unique in enumerate(self.uniques):
            alignment = align_to_center(center, unique.sequence, self.config.band_size,
                                        center_codes, self.codes[i])
            aligned.append(alignment)
            row[i] = self._log_lambda(alignment, self.qidx[i])
        self.centers.append(index)
        self.log_lambda.append(row)
        self.alignments.append(aligned)
        self.assignment[index] = len(self.centers) - 1

    def cluster_sizes(self) -> np.ndarray:
        return np.bincount(self.assignment, weights=self.abundances, minlength=len(self.centers))

    def shuffle(self) -> None:
        """Move each unique to the cluster expected to produce the most copies of it."""
        center_idx = np.array(self.centers)
        for _ in range(self.config.max_shuffle):
            with np.errstate(divide='ignore'):
                log_sizes = np.log(self.cluster_sizes())
            log_expected = np.vstack(self.log_lambda) + log_sizes[:, None]
            best = np.argmax(log_expected, axis=0)
            best[center_idx] = np.arange(len(self.centers))
            if np.array_equal(best, self.assignment):
                return
            self.assignment = best

    def pvalues(self) -> np.ndarray:
        sizes = self.cluster_sizes()
        pvals = np.ones(len(self.uniques))
        self.expected = np.zeros(len(self.uniques))
        center_set = set(self.centers)
        for i in range(len(self.uniques)):
            if i in center_set:
                continue
            cluster = self.assignment[i]
            expected = float(np.exp(self.log_lambda[cluster][i]) * sizes[cluster])
            self.expected[i] = expected
            abundance = int(self.abundances[i])
            if abundance == 1 and self.config.detect_singletons:
                # Unconditional chance of observing the sequence at all
                pvals[i] = float(-np.expm1(-expected))
            else:
                pvals[i] = abundance_pvalue(abundance, expected)
        return pvals

    def next_center(self, pvals: np.ndarray) -> Optional[int]:
        """Most significant unique eligible for promotion, or None."""
        n = len(self.uniques)
        center_set = set(self.centers)
        best = None
        best_p = None
        for i in range(n):
            if i in center_set:
                continue
            abundance = self.abundances[i]
            if abundance < 2 and not self.config.detect_singletons:
                continue
            if pvals[i] * n >= self.config.omega_a:
                continue
            if abundance < self.config.min_fold * self.expected[i]:
                continue
            alignment = self.alignments[self.assignment[i]][i]
            if alignment is not None and alignment.edits < self.config.min_hamming:
                continue
            if best is None or pvals[i] < best_p:
                best, best_p = i, pvals[i]
        return best


def denoise(derep: Derep, model: 'ErrorModel', config: Optional[DenoiseConfig] = None) -> DenoiseResult:
    """Infer ASVs from one sample's unique sequences.

    Deterministic for a fixed error model: uniques are processed in order of
    decreasing abundance with ties broken by sequence, and ties between
    clusters go to the earlier-discovered one.

    Args:
        derep: Dereplicated reads of one sample and direction
        model: Error model for the read direction
        config: Denoising parameters

    Returns:
        DenoiseResult with ASVs, unique->ASV map, p-values and transition counts
    """
    config = config or DenoiseConfig()
    n = len(derep.uniques)
    transitions = np.zeros((16, model.n_qualities))
    if n == 0:
        return DenoiseResult(asvs=[], unique_map=[], pvalues=[], transitions=transitions)

    partition = _Partition(derep, model, config)
    partition.add_center(0)

    while True:
        partition.shuffle()
        pvals = partition.pvalues()
        candidate = partition.next_center(pvals)
        if candidate is None:
            break
        logging.debug(f"New ASV from unique {candidate} (abundance={int(partition.abundances[candidate])}, "
                      f"p={pvals[candidate]:.3g})")
        partition.add_center(candidate)

    unique_map: List[Optional[int]] = []
    abundances = [0] * len(partition.centers)
    for i, unique in enumerate(derep.uniques):
        cluster = int(partition.assignment[i])
        alignment = partition.alignments[cluster][i]
        # Unalignable or significant members are not errors of their center
        if alignment is None or pvals[i] * n < config.omega_c:
            unique_map.append(None)
            continue
        unique_map.append(cluster)
        abundances[cluster] += unique.abundance

        valid = (alignment.ref_codes < 4) & (alignment.obs_codes < 4)
        rows = alignment.ref_codes[valid].astype(int) * 4 + alignment.obs_codes[valid]
        cols = partition.qidx[i][alignment.positions[valid]]
        np.add.at(transitions, (rows, cols), unique.abundance)

    asvs = [ASV(derep.uniques[c].sequence, abundances[k]) for k, c in enumerate(partition.centers)]
    unassigned = sum(u.abundance for u, m in zip(derep.uniques, unique_map) if m is None)
    logging.debug(f"Denoised {n} uniques into {len(asvs)} ASVs ({unassigned} reads uncorrected)")

    return DenoiseResult(asvs=asvs, unique_map=unique_map, pvalues=[float(p) for p in pvals],
                         transitions=transitions)
