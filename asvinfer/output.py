"""Tab-separated result files."""

import csv
import json
import logging
from datetime import datetime
from typing import Dict, Optional

from asvinfer.seqtable import SequenceTable
from asvinfer.services import RANKS, display_name
from asvinfer.tracker import STAGES, PipelineTracker
from asvinfer.types import TaxonomyHit


def write_asv_table(table: SequenceTable, path: str) -> None:
    """Samples as rows, one column per ASV identifier."""
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(['sample-id'] + table.asv_ids())
        for sample_id, row in zip(table.samples, table.counts):
            writer.writerow([sample_id] + [int(v) for v in row])
    logging.debug(f"Wrote ASV table to {path}")


def write_asv_fasta(table: SequenceTable, path: str) -> None:
    with open(path, 'w') as f:
        for asv_id, seq_hash, seq in zip(table.asv_ids(), table.hashes(), table.sequences):
            f.write(f">{asv_id} md5={seq_hash}\n{seq}\n")


def write_taxonomy_table(table: SequenceTable, hits: Dict[str, TaxonomyHit], path: str) -> None:
    """One row per ASV: identifier, content hash, rank labels and display name."""
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(['ASV', 'Hash'] + list(RANKS) + ['Name'])
        for asv_id, seq_hash in zip(table.asv_ids(), table.hashes()):
            hit = hits.get(asv_id, TaxonomyHit())
            writer.writerow([asv_id, seq_hash] + [label or '' for label in hit] + [display_name(hit)])
    logging.debug(f"Wrote taxonomy table to {path}")


def write_track_table(tracker: PipelineTracker, path: str) -> None:
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(['sample-id'] + list(STAGES) + ['status'])
        writer.writerows(tracker.summary_rows())


def write_diagnostics(tracker: PipelineTracker, path: str) -> None:
    with open(path, 'w', newline='') as f:
        writer = csv.writer(f, delimiter='\t')
        writer.writerow(['kind', 'sample-id', 'value', 'message'])
        for d in tracker.diagnostics:
            value = '' if d.value is None else f"{d.value:.4g}"
            writer.writerow([d.kind, d.sample_id or '', value, d.message])


def write_run_metadata(path: str, version: str, parameters: dict,
                       sample_table: Optional[str] = None, extra: Optional[dict] = None) -> None:
    """Record run parameters for reproducibility."""
    metadata = {
        "version": version,
        "timestamp": datetime.now().isoformat(),
        "sample_table": sample_table,
        "parameters": parameters,
    }
    if extra:
        metadata.update(extra)
    with open(path, 'w') as f:
        json.dump(metadata, f, indent=2)
    logging.debug(f"Wrote run metadata to {path}")
