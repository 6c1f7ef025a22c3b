#!/usr/bin/env python3
"""Run the full amplicon pipeline: filter, learn errors, denoise, merge, tabulate, remove chimeras."""

import argparse
import logging
import os
import sys
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field
from typing import Callable, Dict, List, Optional, Tuple

from tqdm import tqdm

try:
    from asvinfer import __version__
except ImportError:
    __version__ = "dev"

from asvinfer.chimera import ChimeraResult, remove_chimeras
from asvinfer.config import PipelineConfig
from asvinfer.denoise import denoise
from asvinfer.derep import dereplicate_fastq
from asvinfer.errormodel import ErrorModel, learn_errors
from asvinfer.filtering import filter_and_trim, load_contaminant_kmers
from asvinfer.merge import merge_pairs
from asvinfer.output import (
    write_asv_fasta,
    write_asv_table,
    write_diagnostics,
    write_run_metadata,
    write_taxonomy_table,
    write_track_table,
)
from asvinfer.samples import check_files_exist, discover_samples, load_samples, validate_pairing
from asvinfer.seqtable import SequenceTable
from asvinfer.services import (
    Aligner,
    Classifier,
    FastTreeBuilder,
    MafftAligner,
    SintaxClassifier,
    TreeBuilder,
)
from asvinfer.tracker import PipelineTracker
from asvinfer.types import (
    AsvInferError,
    Derep,
    DenoiseResult,
    FilterResult,
    MergeResult,
    Sample,
    SchemaError,
    ServiceError,
    TaxonomyHit,
)


@dataclass
class SampleState:
    """Intermediate results for one sample, handed from stage to stage."""
    sample: Sample
    filtered: Optional[FilterResult] = None
    derep_forward: Optional[Derep] = None
    derep_reverse: Optional[Derep] = None
    denoised_forward: Optional[DenoiseResult] = None
    denoised_reverse: Optional[DenoiseResult] = None
    merged: Optional[MergeResult] = None


@dataclass
class RunContext:
    """Everything produced during one run."""
    config: PipelineConfig
    samples: List[Sample]
    tracker: PipelineTracker
    states: Dict[str, SampleState]
    error_forward: Optional[ErrorModel] = None
    error_reverse: Optional[ErrorModel] = None
    table: Optional[SequenceTable] = None
    chimeras: Optional[ChimeraResult] = None
    taxonomy: Dict[str, TaxonomyHit] = field(default_factory=dict)
    tree: Optional[str] = None


class AmpliconPipeline:
    """Paired-end amplicon denoising pipeline.

    Services for taxonomy, alignment and tree building are optional; steps
    whose service is missing are skipped.
    """

    def __init__(self, config: Optional[PipelineConfig] = None,
                 aligner: Optional[Aligner] = None,
                 classifier: Optional[Classifier] = None,
                 tree_builder: Optional[TreeBuilder] = None):
        self.config = config or PipelineConfig()
        self.aligner = aligner
        self.classifier = classifier
        self.tree_builder = tree_builder

    def preflight(self, samples: List[Sample]) -> None:
        """Checks that must pass before any reads are processed.

        Raises:
            PairingMismatch: Forward and reverse files do not pair up
            SchemaError: Missing FASTQ or reference files, or contaminant
                screening without a reference
        """
        validate_pairing(samples, self.config.forward_suffix, self.config.reverse_suffix)
        check_files_exist(samples)
        if self.config.filtering.remove_phix and not self.config.filtering.contaminants:
            raise SchemaError("Contaminant screening requested but no contaminant reference given")
        references = [self.config.taxonomy_reference, self.config.species_reference,
                      self.config.filtering.contaminants]
        missing = [path for path in references if path and not os.path.exists(path)]
        if missing:
            raise SchemaError(f"Reference file(s) not found: {', '.join(missing)}")

    def _map_samples(self, func: Callable, sample_ids: List[str],
                     desc: str) -> List[Tuple[str, object, Optional[Exception]]]:
        """Apply func to each sample, isolating per-sample failures."""
        def guarded(sample_id):
            try:
                return sample_id, func(sample_id), None
            except (AsvInferError, EOFError, OSError, ValueError) as e:
                return sample_id, None, e

        if self.config.threads > 1 and len(sample_ids) > 1:
            with ThreadPoolExecutor(max_workers=self.config.threads) as executor:
                return list(tqdm(executor.map(guarded, sample_ids), total=len(sample_ids), desc=desc))
        return [guarded(s) for s in tqdm(sample_ids, desc=desc)]

    def _filter(self, ctx: RunContext) -> None:
        filtering = self.config.filtering
        kmers = None
        if filtering.remove_phix:
            kmers = load_contaminant_kmers(filtering.contaminants)
        filtered_dir = os.path.join(self.config.output_dir, "filtered")

        def run(sample_id):
            return filter_and_trim(ctx.states[sample_id].sample, filtered_dir, filtering, kmers)

        for sample_id, result, error in self._map_samples(run, ctx.tracker.active_samples(), "Filtering"):
            if error is not None:
                ctx.tracker.fail(sample_id, f"filtering failed: {error}")
                continue
            ctx.states[sample_id].filtered = result
            ctx.tracker.record(sample_id, "input", result.reads_in)
            ctx.tracker.record(sample_id, "filtered", result.reads_out)
            if result.reads_out == 0:
                ctx.tracker.fail(sample_id, "no reads passed filtering")

        total_in = sum(s.filtered.reads_in for s in ctx.states.values() if s.filtered)
        total_out = sum(s.filtered.reads_out for s in ctx.states.values() if s.filtered)
        logging.info(f"Filtering kept {total_out} of {total_in} read pairs")

    def _learn(self, ctx: RunContext) -> None:
        active = ctx.tracker.active_samples()
        forward_reads = {s: ctx.states[s].filtered.forward_path for s in active}
        reverse_reads = {s: ctx.states[s].filtered.reverse_path for s in active}
        ctx.error_forward = learn_errors(forward_reads, self.config.learning, self.config.denoising,
                                         self.config.threads, direction="forward")
        ctx.error_reverse = learn_errors(reverse_reads, self.config.learning, self.config.denoising,
                                         self.config.threads, direction="reverse")

    def _denoise(self, ctx: RunContext) -> None:
        def run(sample_id):
            state = ctx.states[sample_id]
            derep_f = dereplicate_fastq(state.filtered.forward_path)
            derep_r = dereplicate_fastq(state.filtered.reverse_path)
            dada_f = denoise(derep_f, ctx.error_forward, self.config.denoising)
            dada_r = denoise(derep_r, ctx.error_reverse, self.config.denoising)
            return derep_f, derep_r, dada_f, dada_r

        for sample_id, result, error in self._map_samples(run, ctx.tracker.active_samples(), "Denoising"):
            if error is not None:
                ctx.tracker.fail(sample_id, f"denoising failed: {error}")
                continue
            state = ctx.states[sample_id]
            state.derep_forward, state.derep_reverse, state.denoised_forward, state.denoised_reverse = result
            ctx.tracker.record(sample_id, "denoised_forward", state.denoised_forward.denoised_reads)
            ctx.tracker.record(sample_id, "denoised_reverse", state.denoised_reverse.denoised_reads)
            logging.debug(f"{sample_id}: {len(state.denoised_forward.asvs)} forward and "
                          f"{len(state.denoised_reverse.asvs)} reverse ASVs")

    def _merge(self, ctx: RunContext) -> None:
        for sample_id in ctx.tracker.active_samples():
            state = ctx.states[sample_id]
            state.merged = merge_pairs(state.derep_forward, state.denoised_forward,
                                       state.derep_reverse, state.denoised_reverse,
                                       self.config.merging)
            ctx.tracker.record(sample_id, "merged", state.merged.merged_reads)

            attempted = state.merged.merged_reads + state.merged.unmerged_reads
            if attempted and state.merged.unmerged_reads / attempted > self.config.max_unmerged_fraction:
                fraction = state.merged.unmerged_reads / attempted
                ctx.tracker.warn("unmerged_pairs",
                                 f"{sample_id}: {fraction:.1%} of denoised read pairs failed to merge",
                                 fraction, sample_id)

    def _tabulate(self, ctx: RunContext) -> None:
        active = ctx.tracker.active_samples()
        table = SequenceTable.from_merged(
            {s: ctx.states[s].merged.sequence_abundances() for s in active})

        if self.config.min_length or self.config.max_length:
            filtered = table.filter_length(self.config.min_length, self.config.max_length)
            removed = len(table) - len(filtered)
            if removed:
                ctx.tracker.warn("length_window",
                                 f"{removed} of {len(table)} sequences fall outside "
                                 f"[{self.config.min_length}, {self.config.max_length}] and were removed",
                                 removed)
            table = filtered

        ctx.chimeras = remove_chimeras(table, self.config.chimeras)
        ctx.table = ctx.chimeras.table

        if ctx.chimeras.nonchimeric_fraction < self.config.min_nonchimeric_fraction:
            ctx.tracker.warn("chimeras",
                             f"Only {ctx.chimeras.nonchimeric_fraction:.1%} of merged reads are non-chimeric",
                             ctx.chimeras.nonchimeric_fraction)

        totals = ctx.table.sample_totals()
        for sample_id in active:
            ctx.tracker.record(sample_id, "nonchimeric", totals.get(sample_id, 0))

    def _annotate(self, ctx: RunContext) -> None:
        if not len(ctx.table):
            return
        sequences = dict(zip(ctx.table.asv_ids(), ctx.table.sequences))

        if self.classifier is not None and self.config.taxonomy_reference:
            references = [self.config.taxonomy_reference]
            if self.config.species_reference:
                references.append(self.config.species_reference)
            try:
                ctx.taxonomy = self.classifier.classify(sequences, references)
            except ServiceError as e:
                ctx.tracker.warn("taxonomy", f"Taxonomy assignment failed: {e}")

        if self.aligner is not None and self.tree_builder is not None and len(sequences) >= 3:
            try:
                alignment = self.aligner.align(sequences)
                ctx.tree = self.tree_builder.build_tree(alignment)
            except ServiceError as e:
                ctx.tracker.warn("phylogeny", f"Tree building failed: {e}")

    def write_outputs(self, ctx: RunContext, sample_table: Optional[str] = None) -> None:
        out = self.config.output_dir
        write_track_table(ctx.tracker, os.path.join(out, "track.tsv"))
        write_diagnostics(ctx.tracker, os.path.join(out, "diagnostics.tsv"))
        if ctx.error_forward is not None:
            ctx.error_forward.to_json(os.path.join(out, "error_model_F.json"))
        if ctx.error_reverse is not None:
            ctx.error_reverse.to_json(os.path.join(out, "error_model_R.json"))
        if ctx.table is not None:
            write_asv_table(ctx.table, os.path.join(out, "asv_table.tsv"))
            write_asv_fasta(ctx.table, os.path.join(out, "asv_sequences.fasta"))
            write_taxonomy_table(ctx.table, ctx.taxonomy, os.path.join(out, "taxonomy.tsv"))
        if ctx.tree:
            with open(os.path.join(out, "tree.nwk"), 'w') as f:
                f.write(ctx.tree + "\n")
        write_run_metadata(os.path.join(out, "run_metadata.json"), __version__,
                           self.config.to_dict(), sample_table,
                           extra={"failed_samples": ctx.tracker.failures})
        logging.info(f"Results written to {out}")

    def run(self, samples: List[Sample], sample_table: Optional[str] = None,
            write: bool = True) -> RunContext:
        """Process all samples.

        Raises:
            PairingMismatch, SchemaError: Pre-flight failures, before any processing
            InsufficientDataError, ConvergenceError: Error model could not be estimated
        """
        self.preflight(samples)
        os.makedirs(self.config.output_dir, exist_ok=True)

        ctx = RunContext(
            config=self.config,
            samples=samples,
            tracker=PipelineTracker([s.sample_id for s in samples]),
            states={s.sample_id: SampleState(s) for s in samples},
        )

        self._filter(ctx)
        self._learn(ctx)
        self._denoise(ctx)
        self._merge(ctx)
        self._tabulate(ctx)
        self._annotate(ctx)

        for sample_id, counts in ctx.tracker.counts().items():
            logging.info(f"{sample_id}: " + ", ".join(f"{k}={v}" for k, v in counts._asdict().items()))
        if write:
            self.write_outputs(ctx, sample_table)
        return ctx


def setup_logging(log_level: str, log_file: str = None):
    """Setup logging configuration with optional file output."""
    for handler in logging.root.handlers[:]:
        logging.root.removeHandler(handler)

    formatter = logging.Formatter('%(asctime)s - %(levelname)s - %(message)s')

    console_handler = logging.StreamHandler()
    console_handler.setFormatter(formatter)

    logger = logging.getLogger()
    logger.setLevel(getattr(logging, log_level))
    logger.addHandler(console_handler)

    if log_file:
        file_handler = logging.FileHandler(log_file, mode='w')
        file_handler.setFormatter(formatter)
        logger.addHandler(file_handler)


def parse_arguments(argv=None):
    parser = argparse.ArgumentParser(
        description="Denoise paired-end amplicon reads into amplicon sequence variants"
    )
    source = parser.add_mutually_exclusive_group(required=True)
    source.add_argument("sample_table", nargs="?",
                        help="Sample table (TSV or CSV) with sample-id, forward and reverse file columns")
    source.add_argument("--input-dir", help="Directory of paired FASTQ files (instead of a sample table)")
    parser.add_argument("-O", "--output-dir", default="asvinfer_output",
                        help="Output directory for all files (default: asvinfer_output)")
    parser.add_argument("--forward-suffix", default=PipelineConfig.forward_suffix,
                        help="Regular expression for the forward file name suffix (default: %(default)s)")
    parser.add_argument("--reverse-suffix", default=PipelineConfig.reverse_suffix,
                        help="Regular expression for the reverse file name suffix (default: %(default)s)")

    # Filtering
    parser.add_argument("--trim-left", type=int, nargs=2, default=[0, 0], metavar=("F", "R"),
                        help="Bases to remove from the 5' end of forward and reverse reads (default: 0 0)")
    parser.add_argument("--trunc-len", type=int, nargs=2, default=[0, 0], metavar=("F", "R"),
                        help="Truncate reads to this length, discarding shorter reads (default: 0 0 = off)")
    parser.add_argument("--max-ee", type=float, nargs=2, default=[2.0, 2.0], metavar=("F", "R"),
                        help="Maximum expected errors per read (default: 2 2)")
    parser.add_argument("--trunc-q", type=int, default=2,
                        help="Truncate reads at the first base with quality <= this (default: 2)")
    parser.add_argument("--max-n", type=int, default=0,
                        help="Maximum ambiguous bases per read (default: 0)")
    parser.add_argument("--min-len", type=int, default=20,
                        help="Minimum read length after trimming (default: 20)")
    parser.add_argument("--contaminants", help="FASTA of control sequences to screen out (e.g. PhiX)")
    parser.add_argument("--forward-primer", help="Forward primer to remove from the start of forward reads")
    parser.add_argument("--reverse-primer", help="Reverse primer to remove from the start of reverse reads")
    parser.add_argument("--max-primer-mismatches", type=int, default=2,
                        help="Edit distance allowed when matching primers (default: 2)")

    # Error learning and denoising
    parser.add_argument("--nbases", type=float, default=1e8,
                        help="Base budget for error learning (default: 1e8)")
    parser.add_argument("--seed", type=int, default=100,
                        help="Random seed for error-learning subsampling (default: 100)")
    parser.add_argument("--max-consist", type=int, default=10,
                        help="Maximum error-learning iterations (default: 10)")
    parser.add_argument("--allow-unconverged", action="store_true",
                        help="Continue with the last estimate if error learning does not converge")
    parser.add_argument("--omega-a", type=float, default=1e-40,
                        help="Significance threshold for new ASVs (default: 1e-40)")
    parser.add_argument("--band-size", type=int, default=16,
                        help="Maximum edit distance considered in denoising alignments (default: 16)")
    parser.add_argument("--detect-singletons", action="store_true",
                        help="Allow ASVs supported by a single read")

    # Merging, table and chimeras
    parser.add_argument("--min-overlap", type=int, default=12,
                        help="Minimum overlap when merging read pairs (default: 12)")
    parser.add_argument("--max-mismatch-rate", type=float, default=0.0,
                        help="Maximum mismatch rate in the overlap (default: 0)")
    parser.add_argument("--trim-overhang", action="store_true",
                        help="Trim read overhangs past the start of the mate")
    parser.add_argument("--just-concatenate", action="store_true",
                        help="Concatenate pairs with 10 Ns instead of merging")
    parser.add_argument("--min-length", type=int, default=0,
                        help="Minimum merged sequence length kept in the table (default: 0 = off)")
    parser.add_argument("--max-length", type=int, default=0,
                        help="Maximum merged sequence length kept in the table (default: 0 = off)")
    parser.add_argument("--min-fold-parent", type=float, default=1.5,
                        help="Parents must be this many times more abundant than a chimera (default: 1.5)")
    parser.add_argument("--min-sample-fraction", type=float, default=0.9,
                        help="Fraction of samples that must flag a chimera (default: 0.9)")

    # Collaborators
    parser.add_argument("--taxonomy-reference", help="SINTAX-formatted reference FASTA for rank assignment")
    parser.add_argument("--species-reference", help="Reference FASTA ('>ID Genus species') for species assignment")
    parser.add_argument("--skip-tree", action="store_true", help="Do not build a phylogenetic tree")

    parser.add_argument("--threads", type=int, default=1, metavar="N",
                        help="Samples processed in parallel (default: 1)")
    parser.add_argument("--log-level", default="INFO",
                        choices=["DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"])
    parser.add_argument("--log-file", help="Also write the log to this file")
    parser.add_argument("--version", action="version",
                        version=f"asvinfer {__version__}",
                        help="Show program's version number and exit")
    return parser.parse_args(argv)


def main(argv=None):
    args = parse_arguments(argv)
    setup_logging(args.log_level, args.log_file)

    try:
        config = PipelineConfig.from_args(args)
    except ValueError as e:
        logging.error(f"Invalid parameters: {e}")
        sys.exit(1)

    classifier = aligner = tree_builder = None
    if config.taxonomy_reference:
        classifier = SintaxClassifier(threads=config.threads)
        if not classifier.is_available:
            logging.warning("Taxonomy reference given but vsearch not found. Taxonomy will be skipped.")
            classifier = None
    if not args.skip_tree:
        aligner = MafftAligner(threads=config.threads)
        tree_builder = FastTreeBuilder()
        if not (aligner.is_available and tree_builder.is_available):
            logging.warning("mafft or FastTree not found. Tree building will be skipped.")
            aligner = tree_builder = None

    try:
        if args.input_dir:
            samples = discover_samples(args.input_dir, config.forward_suffix, config.reverse_suffix)
        else:
            samples = load_samples(args.sample_table)
        pipeline = AmpliconPipeline(config, aligner=aligner, classifier=classifier,
                                    tree_builder=tree_builder)
        pipeline.run(samples, sample_table=args.sample_table)
    except AsvInferError as e:
        logging.error(str(e))
        sys.exit(1)


if __name__ == "__main__":
    main()
