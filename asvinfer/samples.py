"""Sample registry: load the sample table and enforce forward/reverse pairing."""

import csv
import logging
import os
import re
from typing import Dict, List

from asvinfer.types import Sample, SchemaError, PairingMismatch


# Accepted header names for each required column; first entry is canonical
COLUMN_ALIASES = {
    'sample-id': ('sample-id', 'sample_id', 'sampleid', 'sample'),
    'forward': ('forward-absolute-filepath', 'forward', 'forward_path', 'r1'),
    'reverse': ('reverse-absolute-filepath', 'reverse', 'reverse_path', 'r2'),
}


def _resolve_columns(fieldnames: List[str]) -> Dict[str, str]:
    """Map canonical column names to the headers present in the table."""
    lowered = {name.strip().lower(): name for name in fieldnames}
    resolved = {}
    missing = []
    for canonical, aliases in COLUMN_ALIASES.items():
        for alias in aliases:
            if alias in lowered:
                resolved[canonical] = lowered[alias]
                break
        else:
            missing.append(aliases[0])
    if missing:
        raise SchemaError(f"Sample table is missing required column(s): {', '.join(missing)}. "
                          f"Columns present: {', '.join(fieldnames)}")
    return resolved


def load_samples(path: str) -> List[Sample]:
    """Load the sample-to-file mapping.

    The table is comma-separated when the file ends in .csv and tab-separated
    otherwise. Lines starting with '#' are ignored. Relative file paths are
    resolved against the directory holding the table.

    Raises:
        SchemaError: Missing columns, empty fields or duplicate sample identifiers.
    """
    delimiter = ',' if path.lower().endswith('.csv') else '\t'
    base_dir = os.path.dirname(os.path.abspath(path))

    with open(path, newline='') as f:
        lines = [line for line in f if line.strip() and not line.startswith('#')]

    reader = csv.DictReader(lines, delimiter=delimiter)
    if not reader.fieldnames:
        raise SchemaError(f"Sample table is empty: {path}")
    columns = _resolve_columns(reader.fieldnames)

    samples = []
    seen = set()
    for line_num, row in enumerate(reader, 2):
        sample_id = (row.get(columns['sample-id']) or '').strip()
        forward = (row.get(columns['forward']) or '').strip()
        reverse = (row.get(columns['reverse']) or '').strip()

        if not sample_id or not forward or not reverse:
            raise SchemaError(f"Row {line_num} of {path} has an empty sample identifier or file path")
        if sample_id in seen:
            raise SchemaError(f"Duplicate sample identifier in {path}: '{sample_id}'")
        seen.add(sample_id)

        samples.append(Sample(
            sample_id=sample_id,
            forward_path=os.path.join(base_dir, forward),
            reverse_path=os.path.join(base_dir, reverse),
        ))

    if not samples:
        raise SchemaError(f"Sample table has no samples: {path}")

    logging.info(f"Loaded {len(samples)} samples from {path}")
    return samples


def strip_suffix(file_name: str, suffix_pattern: str) -> str:
    """Return the canonical key for a file name by removing the suffix pattern.

    The pattern is a regular expression matched at the end of the base name.
    Names that do not match are returned unchanged.
    """
    base = os.path.basename(file_name)
    return re.sub(f"(?:{suffix_pattern})$", '', base)


def validate_pairing(samples: List[Sample], forward_suffix: str,
                     reverse_suffix: str) -> Dict[str, Sample]:
    """Check that forward and reverse files pair up by canonical key.

    Returns:
        Dict mapping canonical key to sample

    Raises:
        PairingMismatch: Listing unmatched keys on both sides.
        SchemaError: Two samples resolve to the same file key
    """
    forward_keys = {}
    reverse_keys = {}
    mismatched = []
    for sample in samples:
        fkey = strip_suffix(sample.forward_path, forward_suffix)
        rkey = strip_suffix(sample.reverse_path, reverse_suffix)
        for keys, key, direction in ((forward_keys, fkey, "forward"), (reverse_keys, rkey, "reverse")):
            if key in keys:
                raise SchemaError(f"Samples {keys[key].sample_id} and {sample.sample_id} "
                                  f"share the {direction} file key '{key}'")
            keys[key] = sample
        if fkey != rkey:
            mismatched.append(sample.sample_id)

    forward_only = set(forward_keys) - set(reverse_keys)
    reverse_only = set(reverse_keys) - set(forward_keys)
    if forward_only or reverse_only or mismatched:
        raise PairingMismatch(list(forward_only), list(reverse_only), mismatched)

    logging.debug(f"Validated pairing of {len(forward_keys)} forward/reverse file pairs")
    return forward_keys


def discover_samples(directory: str, forward_suffix: str, reverse_suffix: str) -> List[Sample]:
    """Build the sample list from FASTQ files in a directory.

    Sample identifiers are the canonical keys left after removing the
    forward/reverse suffix patterns.

    Raises:
        PairingMismatch: Files without a partner in the other direction.
    """
    forward_files = {}
    reverse_files = {}
    for name in sorted(os.listdir(directory)):
        path = os.path.join(directory, name)
        if not os.path.isfile(path):
            continue
        if re.search(f"(?:{forward_suffix})$", name):
            forward_files[strip_suffix(name, forward_suffix)] = path
        elif re.search(f"(?:{reverse_suffix})$", name):
            reverse_files[strip_suffix(name, reverse_suffix)] = path

    forward_only = set(forward_files) - set(reverse_files)
    reverse_only = set(reverse_files) - set(forward_files)
    if forward_only or reverse_only:
        raise PairingMismatch(list(forward_only), list(reverse_only))

    samples = [Sample(key, forward_files[key], reverse_files[key]) for key in sorted(forward_files)]
    logging.info(f"Discovered {len(samples)} paired samples in {directory}")
    return samples


def check_files_exist(samples: List[Sample]) -> None:
    """Raise SchemaError listing any FASTQ files that do not exist."""
    missing = [path for sample in samples
               for path in (sample.forward_path, sample.reverse_path)
               if not os.path.exists(path)]
    if missing:
        raise SchemaError(f"{len(missing)} FASTQ file(s) not found: {', '.join(missing)}")
