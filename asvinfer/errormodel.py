"""Substitution error model and its self-consistent estimation from reads."""

import json
import logging
import random
from concurrent.futures import ThreadPoolExecutor
from typing import Dict, List, Optional

import numpy as np
from Bio import SeqIO
from tqdm import tqdm

from asvinfer.config import DenoiseConfig, ErrorLearnConfig
from asvinfer.denoise import denoise
from asvinfer.derep import dereplicate
from asvinfer.filtering import open_fastq
from asvinfer.types import ConvergenceError, InsufficientDataError


BASES = "ACGT"
TRANSITION_LABELS = [f"{ref}2{obs}" for ref in BASES for obs in BASES]
DEFAULT_MAX_QUALITY = 41
MIN_ERROR_RATE = 1e-7
MAX_ERROR_RATE = 0.25


class ErrorModel:
    """Probability of observing each base given the true base and quality score.

    rates is a 16 x Q matrix: row ref*4+obs (A2A, A2C, ..., T2T), column = Phred quality.
    """

    def __init__(self, rates: np.ndarray,
                 transitions: Optional[np.ndarray] = None,
                 iterations: int = 0,
                 log_likelihoods: Optional[List[float]] = None,
                 converged: bool = False):
        self.rates = np.asarray(rates, dtype=float)
        if self.rates.ndim != 2 or self.rates.shape[0] != 16:
            raise ValueError(f"Error rates must be a 16 x Q matrix, got shape {self.rates.shape}")
        self.transitions = transitions
        self.iterations = iterations
        self.log_likelihoods = list(log_likelihoods or [])
        self.converged = converged
        with np.errstate(divide='ignore'):
            self._log_rates = np.log(self.rates)

    @property
    def n_qualities(self) -> int:
        return self.rates.shape[1]

    @property
    def log_rates(self) -> np.ndarray:
        return self._log_rates

    @property
    def is_uninformative(self) -> bool:
        return bool(np.all(self.rates == 1.0))

    @property
    def log_likelihood_change(self) -> Optional[float]:
        if len(self.log_likelihoods) < 2:
            return None
        return self.log_likelihoods[-1] - self.log_likelihoods[-2]

    def quality_index(self, qualities) -> np.ndarray:
        """Round and clip qualities to valid column indices."""
        q = np.rint(np.asarray(qualities, dtype=float)).astype(int)
        return np.clip(q, 0, self.n_qualities - 1)

    def prob(self, ref: str, obs: str, quality: float) -> float:
        row = BASES.index(ref.upper()) * 4 + BASES.index(obs.upper())
        return float(self.rates[row, self.quality_index([quality])[0]])

    @classmethod
    def uninformative(cls, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Starting point for estimation: every transition equally likely."""
        return cls(np.ones((16, max_quality + 1)))

    @classmethod
    def phred_expected(cls, max_quality: int = DEFAULT_MAX_QUALITY) -> 'ErrorModel':
        """Nominal rates implied by Phred scores, errors split evenly between bases."""
        q = np.arange(max_quality + 1)
        p_err = np.clip(np.power(10.0, -q / 10.0), MIN_ERROR_RATE, 0.75)
        rates = np.empty((16, max_quality + 1))
        for ref in range(4):
            for obs in range(4):
                rates[ref * 4 + obs] = 1.0 - p_err if ref == obs else p_err / 3.0
        return cls(rates)

    def to_dict(self) -> dict:
        return {
            "transitions_labels": TRANSITION_LABELS,
            "rates": self.rates.tolist(),
            "counts": self.transitions.tolist() if self.transitions is not None else None,
            "iterations": self.iterations,
            "log_likelihoods": self.log_likelihoods,
            "converged": self.converged,
        }

    @classmethod
    def from_dict(cls, data: dict) -> 'ErrorModel':
        counts = data.get("counts")
        return cls(
            np.array(data["rates"]),
            transitions=np.array(counts) if counts is not None else None,
            iterations=data.get("iterations", 0),
            log_likelihoods=data.get("log_likelihoods"),
            converged=data.get("converged", False),
        )

    def to_json(self, path: str) -> None:
        with open(path, 'w') as f:
            json.dump(self.to_dict(), f, indent=2)

    @classmethod
    def from_json(cls, path: str) -> 'ErrorModel':
        with open(path) as f:
            return cls.from_dict(json.load(f))


def fit_error_rates(transitions: np.ndarray) -> np.ndarray:
    """Smooth observed transition counts into an error-rate matrix.

    Each off-diagonal transition's frequency is fitted as a straight line in
    log10 space against quality, weighted by the square root of the number of
    reference bases observed at that quality. Qualities without observations
    are extrapolated from the fit. The diagonal takes the remaining mass.
    """
    n_q = transitions.shape[1]
    qualities = np.arange(n_q)
    rates = np.zeros((16, n_q))

    for ref in range(4):
        totals = transitions[ref * 4:ref * 4 + 4].sum(axis=0)
        observed = totals > 0
        for obs in range(4):
            if obs == ref:
                continue
            row = ref * 4 + obs
            if not observed.any():
                rates[row] = MIN_ERROR_RATE
                continue
            # Pseudocount keeps zero-error qualities finite in log space
            freq = (transitions[row, observed] + 0.5) / (totals[observed] + 1.0)
            y = np.log10(freq)
            weights = np.sqrt(totals[observed])
            if observed.sum() >= 2:
                slope, intercept = np.polyfit(qualities[observed], y, 1, w=weights)
                fitted = intercept + slope * qualities
            else:
                fitted = np.full(n_q, y[0])
            rates[row] = np.clip(np.power(10.0, fitted), MIN_ERROR_RATE, MAX_ERROR_RATE)
        off_diag = [ref * 4 + obs for obs in range(4) if obs != ref]
        rates[ref * 4 + ref] = 1.0 - rates[off_diag].sum(axis=0)

    return rates


def transition_log_likelihood(transitions: np.ndarray, rates: np.ndarray) -> float:
    """Log-likelihood of the observed transitions under the given rates."""
    mask = (transitions > 0) & (rates > 0)
    return float(np.sum(transitions[mask] * np.log(rates[mask])))


def load_reads(read_sets: Dict[str, str], nbases: int, seed: int) -> Dict[str, List]:
    """Read samples in a seeded random order until the base budget is reached.

    Files are streamed and reading stops at the first read that brings the
    total to nbases, so memory use follows the budget rather than the input.
    Reads keep their file order within each sample; the selection depends
    only on the seed and the input.
    """
    sample_ids = sorted(read_sets)
    random.Random(seed).shuffle(sample_ids)

    reads: Dict[str, List] = {}
    bases = 0
    for sample_id in sample_ids:
        records = reads.setdefault(sample_id, [])
        with open_fastq(read_sets[sample_id]) as handle:
            for record in SeqIO.parse(handle, "fastq"):
                records.append(record)
                bases += len(record)
                if bases >= nbases:
                    break
        if bases >= nbases:
            break

    if bases >= nbases:
        logging.info(f"Read {sum(len(r) for r in reads.values())} reads ({bases} bases) from "
                     f"{len(reads)} of {len(sample_ids)} samples for error learning")
    return reads


def learn_errors(read_sets: Dict[str, str],
                 config: Optional[ErrorLearnConfig] = None,
                 denoise_config: Optional[DenoiseConfig] = None,
                 threads: int = 1,
                 direction: str = "") -> ErrorModel:
    """Estimate the error model by alternating denoising and rate fitting.

    Args:
        read_sets: Sample identifier -> filtered FASTQ path, all for one read direction
        config: Learning parameters
        denoise_config: Parameters for the provisional denoising passes
        threads: Samples denoised in parallel within each iteration
        direction: Label used in log messages

    Raises:
        InsufficientDataError: Fewer bases than config.min_bases are available
        ConvergenceError: Not converged and config.require_convergence is set
    """
    config = config or ErrorLearnConfig()
    denoise_config = denoise_config or DenoiseConfig()
    label = f"{direction} " if direction else ""

    reads = load_reads(read_sets, config.nbases, config.seed)
    total_bases = sum(len(r) for records in reads.values() for r in records)
    if total_bases < config.min_bases:
        raise InsufficientDataError(f"Only {total_bases} {label}bases available for error learning "
                                    f"(minimum {config.min_bases})")

    max_quality = DEFAULT_MAX_QUALITY
    for records in reads.values():
        for r in records:
            quals = r.letter_annotations["phred_quality"]
            if quals:
                max_quality = max(max_quality, max(quals))

    dereps = [dereplicate(reads[s]) for s in sorted(reads) if reads[s]]
    logging.info(f"Learning {label}error rates from {total_bases} bases in "
                 f"{sum(d.total_reads for d in dereps)} reads across {len(dereps)} samples")

    model = ErrorModel.uninformative(max_quality)
    log_likelihoods: List[float] = []

    for iteration in range(1, config.max_iterations + 1):
        if threads > 1 and len(dereps) > 1:
            with ThreadPoolExecutor(max_workers=threads) as executor:
                results = list(executor.map(lambda d: denoise(d, model, denoise_config), dereps))
        else:
            results = [denoise(d, model, denoise_config)
                       for d in tqdm(dereps, desc=f"{label}error learning round {iteration}",
                                     disable=len(dereps) < 2)]

        transitions = np.sum([r.transitions for r in results], axis=0)
        rates = fit_error_rates(transitions)
        log_likelihoods.append(transition_log_likelihood(transitions, rates))
        n_asvs = sum(len(r.asvs) for r in results)

        converged = False
        if len(log_likelihoods) >= 2:
            change = abs(log_likelihoods[-1] - log_likelihoods[-2])
            converged = change <= config.tolerance * abs(log_likelihoods[-2])
            logging.info(f"{label.capitalize()}error learning iteration {iteration}: {n_asvs} ASVs, "
                         f"log-likelihood {log_likelihoods[-1]:.2f} (change {change:.3g})")
        else:
            logging.info(f"{label.capitalize()}error learning iteration {iteration}: {n_asvs} ASVs, "
                         f"log-likelihood {log_likelihoods[-1]:.2f}")

        model = ErrorModel(rates, transitions=transitions, iterations=iteration,
                           log_likelihoods=log_likelihoods, converged=converged)
        if converged:
            logging.info(f"{label.capitalize()}error rates converged after {iteration} iterations")
            return model

    message = (f"{label.capitalize()}error rates did not converge after "
               f"{config.max_iterations} iterations")
    if config.require_convergence:
        raise ConvergenceError(message)
    logging.warning(message)
    return model
