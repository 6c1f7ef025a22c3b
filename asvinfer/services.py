"""Interfaces to external collaborators: alignment, taxonomy and tree building.

The pipeline only depends on the protocols below. The adapters shell out to
mafft, FastTree and vsearch; each reports availability so callers can skip a
service whose tool is not installed.
"""

import logging
import os
import shutil
import subprocess
import tempfile
from io import StringIO
from typing import Dict, List, Optional, Protocol, Sequence, Set, Tuple

from Bio import SeqIO
from Bio.Seq import reverse_complement

from asvinfer.types import ServiceError, TaxonomyHit


RANKS = ("Kingdom", "Phylum", "Class", "Order", "Family", "Genus", "Species")

# SINTAX rank prefixes -> TaxonomyHit field position
SINTAX_RANK_PREFIXES = {'d': 0, 'k': 0, 'p': 1, 'c': 2, 'o': 3, 'f': 4, 'g': 5, 's': 6}


class Aligner(Protocol):
    def align(self, sequences: Dict[str, str]) -> Dict[str, str]:
        """Return aligned (gapped) sequences keyed like the input."""
        ...


class Classifier(Protocol):
    def classify(self, sequences: Dict[str, str], references: Sequence[str]) -> Dict[str, TaxonomyHit]:
        """Return hierarchical labels for each sequence."""
        ...


class TreeBuilder(Protocol):
    def build_tree(self, alignment: Dict[str, str]) -> str:
        """Return a Newick tree over the aligned sequences."""
        ...


def display_name(hit: TaxonomyHit) -> str:
    """Best-effort label for an ASV.

    "<Genus> <Species>" when both are known, otherwise "Unclassified" followed
    by the deepest classified rank.
    """
    if hit.genus and hit.species:
        return f"{hit.genus} {hit.species}"
    deepest = None
    for label in hit:
        if label:
            deepest = label
    if deepest is None:
        return "Unclassified"
    return f"Unclassified {deepest}"


def write_fasta(sequences: Dict[str, str], path: str) -> None:
    with open(path, 'w') as f:
        for seq_id, seq in sequences.items():
            f.write(f">{seq_id}\n{seq}\n")


def run_tool(cmd: List[str], tool: str) -> subprocess.CompletedProcess:
    """Run an external tool, converting failures into ServiceError."""
    try:
        result = subprocess.run(cmd, capture_output=True, text=True, check=True)
    except FileNotFoundError as e:
        raise ServiceError(f"{tool} not found: {e}") from e
    except subprocess.CalledProcessError as e:
        logging.error(f"{tool} failed with return code {e.returncode}")
        logging.error(f"Command: {' '.join(cmd)}")
        logging.error(f"Stderr: {e.stderr}")
        raise ServiceError(f"{tool} failed with return code {e.returncode}") from e
    logging.debug(f"{tool} stderr: {result.stderr}")
    return result


class MafftAligner:
    """Multiple sequence alignment with mafft."""

    def __init__(self, threads: int = 1, executable: str = "mafft"):
        self.threads = threads
        self.executable = executable

    @property
    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def align(self, sequences: Dict[str, str]) -> Dict[str, str]:
        with tempfile.TemporaryDirectory() as temp_dir:
            input_file = os.path.join(temp_dir, "sequences.fasta")
            write_fasta(sequences, input_file)
            result = run_tool([self.executable, "--auto", "--thread", str(self.threads),
                               "--quiet", input_file], "mafft")
        aligned = {record.id: str(record.seq).upper()
                   for record in SeqIO.parse(StringIO(result.stdout), "fasta")}
        missing = set(sequences) - set(aligned)
        if missing:
            raise ServiceError(f"mafft output is missing {len(missing)} sequences")
        return aligned


class FastTreeBuilder:
    """Approximate maximum-likelihood tree with FastTree."""

    def __init__(self, executable: str = "FastTree"):
        self.executable = executable

    @property
    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def build_tree(self, alignment: Dict[str, str]) -> str:
        with tempfile.TemporaryDirectory() as temp_dir:
            input_file = os.path.join(temp_dir, "alignment.fasta")
            write_fasta(alignment, input_file)
            result = run_tool([self.executable, "-nt", "-gtr", "-quiet", input_file], "FastTree")
        tree = result.stdout.strip()
        if not tree.endswith(';'):
            raise ServiceError("FastTree did not produce a Newick tree")
        return tree


def parse_sintax_line(line: str) -> Tuple[str, TaxonomyHit]:
    """Parse one line of vsearch --sintax tabbed output.

    Uses the fourth column (ranks passing the confidence cutoff), e.g.
    "d:Bacteria,p:Firmicutes,c:Bacilli".
    """
    fields = line.rstrip('\n').split('\t')
    query = fields[0]
    labels: List[Optional[str]] = [None] * len(RANKS)
    passing = fields[3] if len(fields) > 3 else ''
    for entry in filter(None, passing.split(',')):
        prefix, _, name = entry.partition(':')
        position = SINTAX_RANK_PREFIXES.get(prefix.strip())
        if position is not None and name:
            labels[position] = name.strip().strip('"')
    return query, TaxonomyHit(*labels)


def load_species_reference(path: str) -> List[Tuple[str, str, str]]:
    """Read a species reference FASTA with headers like ">ID Genus species".

    Returns:
        List of (sequence, genus, species)
    """
    references = []
    for record in SeqIO.parse(path, "fasta"):
        parts = record.description.split()
        if len(parts) < 3:
            logging.debug(f"Skipping species reference without binomial: {record.description}")
            continue
        references.append((str(record.seq).upper(), parts[1], parts[2]))
    return references


def assign_species(sequence: str, genus: Optional[str],
                   references: List[Tuple[str, str, str]]) -> Optional[str]:
    """Species epithet from exact matches, if unambiguous and consistent with the genus."""
    sequence = sequence.upper()
    sequence_rc = reverse_complement(sequence)
    hits: Set[Tuple[str, str]] = set()
    for ref_seq, ref_genus, ref_species in references:
        if sequence in ref_seq or sequence_rc in ref_seq:
            hits.add((ref_genus, ref_species))
    if len(hits) != 1:
        return None
    hit_genus, hit_species = hits.pop()
    if genus and genus != hit_genus:
        return None
    return hit_species


class SintaxClassifier:
    """Rank assignment with vsearch SINTAX plus exact-match species refinement.

    references: (rank training FASTA, optional species FASTA)
    """

    def __init__(self, cutoff: float = 0.8, threads: int = 1, executable: str = "vsearch"):
        self.cutoff = cutoff
        self.threads = threads
        self.executable = executable

    @property
    def is_available(self) -> bool:
        return shutil.which(self.executable) is not None

    def classify(self, sequences: Dict[str, str], references: Sequence[str]) -> Dict[str, TaxonomyHit]:
        if not references:
            raise ServiceError("SINTAX classification needs a reference database")

        with tempfile.TemporaryDirectory() as temp_dir:
            input_file = os.path.join(temp_dir, "asvs.fasta")
            output_file = os.path.join(temp_dir, "sintax.tsv")
            write_fasta(sequences, input_file)
            run_tool([self.executable, "--sintax", input_file, "--db", references[0],
                      "--tabbedout", output_file, "--sintax_cutoff", str(self.cutoff),
                      "--threads", str(self.threads)], "vsearch")
            hits = {}
            with open(output_file) as f:
                for line in f:
                    if line.strip():
                        query, hit = parse_sintax_line(line)
                        hits[query] = hit

        for seq_id in sequences:
            hits.setdefault(seq_id, TaxonomyHit())

        if len(references) > 1 and references[1]:
            species_refs = load_species_reference(references[1])
            for seq_id, seq in sequences.items():
                hit = hits[seq_id]
                species = assign_species(seq, hit.genus, species_refs)
                if species:
                    hits[seq_id] = hit._replace(species=species)

        classified = sum(1 for h in hits.values() if h.kingdom)
        logging.info(f"Classified {classified} of {len(sequences)} sequences")
        return hits
