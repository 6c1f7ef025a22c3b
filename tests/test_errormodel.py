"""Tests for the error model and its self-consistent estimation."""

import gzip
import hashlib
import random

import numpy as np
import pytest
from Bio import SeqIO
from Bio.Seq import Seq
from Bio.SeqRecord import SeqRecord

from asvinfer.config import ErrorLearnConfig
from asvinfer.errormodel import (
    MAX_ERROR_RATE,
    MIN_ERROR_RATE,
    ErrorModel,
    fit_error_rates,
    learn_errors,
    load_reads,
)
from asvinfer.types import ConvergenceError, InsufficientDataError


def generate_dna_sequence(seed: str, length: int) -> str:
    """Generate a reproducible pseudo-random DNA sequence."""
    result = []
    bases = "ACGT"
    for i in range(length):
        h = hashlib.md5(f"{seed}_{i}".encode()).hexdigest()
        result.append(bases[int(h[0], 16) % 4])
    return "".join(result)


def make_read(read_id, sequence, quality=30):
    return SeqRecord(Seq(sequence), id=read_id, description="",
                     letter_annotations={"phred_quality": [quality] * len(sequence)})


def noisy_reads(seed: int, n_reads: int = 200, length: int = 150):
    """Reads of one template; every tenth read carries one random substitution."""
    rng = random.Random(seed)
    template = generate_dna_sequence("errormodel_template", length)
    reads = []
    for i in range(n_reads):
        seq = template
        if i % 10 == 0:
            pos = rng.randrange(length)
            base = rng.choice([b for b in "ACGT" if b != seq[pos]])
            seq = seq[:pos] + base + seq[pos + 1:]
        reads.append(make_read(f"r{i}", seq))
    return reads


def write_fastq(path, records):
    with gzip.open(path, 'wt') as f:
        SeqIO.write(records, f, "fastq")
    return str(path)


class TestErrorModel:
    """Model construction and serialization."""

    def test_uninformative(self):
        model = ErrorModel.uninformative()
        assert model.is_uninformative
        assert model.rates.shape == (16, 42)
        assert model.prob("A", "C", 30) == 1.0

    def test_phred_expected(self):
        model = ErrorModel.phred_expected()
        assert not model.is_uninformative
        assert model.prob("A", "A", 30) == pytest.approx(0.999)
        assert model.prob("A", "G", 20) == pytest.approx(0.01 / 3)

    def test_quality_index_clipped(self):
        model = ErrorModel.uninformative(max_quality=40)
        np.testing.assert_array_equal(model.quality_index([-3, 12.4, 55]), [0, 12, 40])

    def test_invalid_shape(self):
        with pytest.raises(ValueError):
            ErrorModel(np.ones((4, 41)))

    def test_json_roundtrip(self, tmp_path):
        transitions = np.arange(16 * 42, dtype=float).reshape(16, 42)
        model = ErrorModel(fit_error_rates(transitions), transitions=transitions,
                           iterations=3, log_likelihoods=[-10.0, -9.0, -9.0], converged=True)
        path = str(tmp_path / "model.json")
        model.to_json(path)
        loaded = ErrorModel.from_json(path)
        np.testing.assert_allclose(loaded.rates, model.rates)
        np.testing.assert_allclose(loaded.transitions, transitions)
        assert loaded.converged
        assert loaded.iterations == 3
        assert loaded.log_likelihood_change == 0.0


class TestFitErrorRates:
    """Smoothing transition counts into rates."""

    def transitions(self):
        counts = np.zeros((16, 41))
        counts[0, 20], counts[1, 20] = 9900, 100   # A2A, A2C at Q20
        counts[0, 30], counts[1, 30] = 9990, 10    # A2A, A2C at Q30
        return counts

    def test_follows_observed_frequencies(self):
        rates = fit_error_rates(self.transitions())
        assert rates[1, 20] == pytest.approx(100.5 / 10001, rel=1e-3)
        assert rates[1, 30] == pytest.approx(10.5 / 10001, rel=1e-3)
        assert rates[1, 25] < rates[1, 20]

    def test_rows_sum_to_one(self):
        rates = fit_error_rates(self.transitions())
        for ref in range(4):
            np.testing.assert_allclose(rates[ref * 4:ref * 4 + 4].sum(axis=0), 1.0)

    def test_rates_clamped(self):
        rates = fit_error_rates(self.transitions())
        off_diagonal = [r for r in range(16) if r % 5 != 0]
        assert rates[off_diagonal].min() >= MIN_ERROR_RATE
        assert rates[off_diagonal].max() <= MAX_ERROR_RATE

    def test_unobserved_base_gets_floor(self):
        rates = fit_error_rates(self.transitions())
        # No C reference bases were observed
        assert rates[4 + 0, 30] == MIN_ERROR_RATE
        assert rates[4 + 1, 30] == pytest.approx(1 - 3 * MIN_ERROR_RATE)


class TestLoadReads:
    """Seeded, budget-limited reading of the read pool."""

    def test_under_budget_reads_everything(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1, 20)),
                 "S2": write_fastq(tmp_path / "S2.fastq.gz", noisy_reads(2, 10))}
        reads = load_reads(paths, 10_000, seed=1)
        assert {k: len(v) for k, v in reads.items()} == {"S1": 20, "S2": 10}

    def test_deterministic_for_seed(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1, 50)),
                 "S2": write_fastq(tmp_path / "S2.fastq.gz", noisy_reads(2, 50))}
        first = load_reads(paths, 3000, seed=100)
        second = load_reads(paths, 3000, seed=100)
        assert {k: [r.id for r in v] for k, v in first.items()} == \
               {k: [r.id for r in v] for k, v in second.items()}
        total = sum(len(r) for v in first.values() for r in v)
        assert 3000 <= total < 3000 + 150

    def test_stops_reading_at_budget(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1, 50)),
                 "S2": write_fastq(tmp_path / "S2.fastq.gz", noisy_reads(2, 50))}
        reads = load_reads(paths, 1500, seed=7)
        assert len(reads) == 1
        (sample_id, records), = reads.items()
        with gzip.open(paths[sample_id], 'rt') as f:
            expected = [r.id for r in SeqIO.parse(f, "fastq")][:10]
        assert [r.id for r in records] == expected


class TestLearnErrors:
    """Alternating denoising and rate fitting."""

    def test_converges_on_clean_data(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1)),
                 "S2": write_fastq(tmp_path / "S2.fastq.gz", noisy_reads(2))}
        model = learn_errors(paths, ErrorLearnConfig(), direction="forward")
        assert model.converged
        assert model.iterations == 2
        # About 40 substitutions in 60,000 bases, all at quality 30
        assert 5e-5 < 1 - model.prob("A", "A", 30) < 1e-2

    def test_insufficient_data(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1, n_reads=2, length=50))}
        with pytest.raises(InsufficientDataError):
            learn_errors(paths, ErrorLearnConfig())

    def test_not_converged_raises(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1))}
        with pytest.raises(ConvergenceError):
            learn_errors(paths, ErrorLearnConfig(max_iterations=1))

    def test_not_converged_allowed(self, tmp_path):
        paths = {"S1": write_fastq(tmp_path / "S1.fastq.gz", noisy_reads(1))}
        model = learn_errors(paths, ErrorLearnConfig(max_iterations=1, require_convergence=False))
        assert not model.converged
        assert model.iterations == 1
