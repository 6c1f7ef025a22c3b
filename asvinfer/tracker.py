"""Per-sample read accounting across pipeline stages."""

import logging
from typing import Dict, List, NamedTuple, Optional


STAGES = ("input", "filtered", "denoised_forward", "denoised_reverse", "merged", "nonchimeric")


class StageCounts(NamedTuple):
    """Reads surviving each stage for one sample (None = stage not reached)."""
    input: Optional[int] = None
    filtered: Optional[int] = None
    denoised_forward: Optional[int] = None
    denoised_reverse: Optional[int] = None
    merged: Optional[int] = None
    nonchimeric: Optional[int] = None


class Diagnostic(NamedTuple):
    """A non-fatal quality warning."""
    kind: str
    message: str
    value: Optional[float] = None
    sample_id: Optional[str] = None


class PipelineTracker:
    """Collects stage counts, per-sample failures and quality diagnostics.

    Each (sample, stage) count may be recorded only once.
    """

    def __init__(self, sample_ids: List[str]):
        self.sample_ids = list(sample_ids)
        self._counts: Dict[str, Dict[str, int]] = {s: {} for s in self.sample_ids}
        self.failures: Dict[str, str] = {}
        self.diagnostics: List[Diagnostic] = []

    def record(self, sample_id: str, stage: str, count: int) -> None:
        if stage not in STAGES:
            raise ValueError(f"Unknown stage: {stage}")
        if sample_id not in self._counts:
            raise KeyError(f"Unknown sample: {sample_id}")
        if stage in self._counts[sample_id]:
            raise ValueError(f"Count for {sample_id}/{stage} already recorded")
        self._counts[sample_id][stage] = int(count)

    def fail(self, sample_id: str, reason: str) -> None:
        """Exclude a sample from later stages; remaining stages count zero."""
        logging.warning(f"Sample {sample_id} excluded: {reason}")
        self.failures[sample_id] = reason
        for stage in STAGES:
            self._counts[sample_id].setdefault(stage, 0)

    def warn(self, kind: str, message: str, value: Optional[float] = None,
             sample_id: Optional[str] = None) -> None:
        logging.warning(message)
        self.diagnostics.append(Diagnostic(kind, message, value, sample_id))

    def active_samples(self) -> List[str]:
        return [s for s in self.sample_ids if s not in self.failures]

    def counts(self) -> Dict[str, StageCounts]:
        return {s: StageCounts(**self._counts[s]) for s in self.sample_ids}

    def summary_rows(self) -> List[List]:
        """Rows of [sample_id, count per stage..., status] for reporting."""
        rows = []
        for sample_id, counts in self.counts().items():
            status = f"failed: {self.failures[sample_id]}" if sample_id in self.failures else "ok"
            rows.append([sample_id] + [("" if c is None else c) for c in counts] + [status])
        return rows
