"""Parameter sets for each pipeline stage."""

from dataclasses import dataclass, field, asdict
from typing import Optional, Tuple


@dataclass
class FilterConfig:
    """Quality filtering and trimming parameters.

    Paired values are (forward, reverse).

    Attributes:
        trim_left: Bases removed from the 5' end
        trunc_len: Reads are cut to this length; shorter reads are discarded (0 = off)
        max_ee: Maximum expected errors per read
        trunc_q: Truncate at the first base with quality <= this value
        max_n: Maximum number of ambiguous bases
        min_len: Minimum length after trimming
        remove_phix: Screen reads against the contaminant reference
        contaminants: FASTA of contaminant control sequences (e.g. PhiX)
        primers: Primer sequences removed from the 5' end (None = no primer trimming)
        max_primer_mismatches: Edit distance allowed when locating primers
        match_ids: Require forward/reverse read identifiers to agree
    """
    trim_left: Tuple[int, int] = (0, 0)
    trunc_len: Tuple[int, int] = (0, 0)
    max_ee: Tuple[float, float] = (2.0, 2.0)
    trunc_q: int = 2
    max_n: int = 0
    min_len: int = 20
    remove_phix: bool = False
    contaminants: Optional[str] = None
    primers: Optional[Tuple[str, str]] = None
    max_primer_mismatches: int = 2
    match_ids: bool = True

    @classmethod
    def from_args(cls, args) -> 'FilterConfig':
        primers = None
        if getattr(args, 'forward_primer', None) and getattr(args, 'reverse_primer', None):
            primers = (args.forward_primer.upper(), args.reverse_primer.upper())
        return cls(
            trim_left=tuple(args.trim_left),
            trunc_len=tuple(args.trunc_len),
            max_ee=tuple(args.max_ee),
            trunc_q=args.trunc_q,
            max_n=args.max_n,
            min_len=args.min_len,
            remove_phix=args.contaminants is not None,
            contaminants=args.contaminants,
            primers=primers,
            max_primer_mismatches=args.max_primer_mismatches,
        )


@dataclass
class ErrorLearnConfig:
    """Error model estimation parameters.

    Attributes:
        nbases: Base budget; samples are read in random order until it is reached
        seed: Seed for the subsampling random generator
        max_iterations: Maximum self-consistency iterations
        tolerance: Relative log-likelihood change considered converged
        min_bases: Fewer sampled bases than this is an error
        require_convergence: Raise instead of warn when not converged
    """
    nbases: int = 100_000_000
    seed: int = 100
    max_iterations: int = 10
    tolerance: float = 1e-6
    min_bases: int = 1000
    require_convergence: bool = True

    @classmethod
    def from_args(cls, args) -> 'ErrorLearnConfig':
        return cls(
            nbases=int(args.nbases),
            seed=args.seed,
            max_iterations=args.max_consist,
            require_convergence=not args.allow_unconverged,
        )


@dataclass
class DenoiseConfig:
    """Denoising parameters.

    Attributes:
        omega_a: Significance threshold for promoting a unique to a new ASV
        omega_c: Members with p-values below this stay unassigned
        band_size: Maximum edit distance considered when aligning to a center
        min_fold: Minimum ratio of observed to expected abundance for a new ASV
        min_hamming: Minimum edits from its center for a new ASV
        detect_singletons: Allow abundance-1 uniques to become ASVs
        indel_prob: Probability charged per gap column
        max_shuffle: Maximum reassignment rounds per promotion
    """
    omega_a: float = 1e-40
    omega_c: float = 1e-40
    band_size: int = 16
    min_fold: float = 1.0
    min_hamming: int = 1
    detect_singletons: bool = False
    indel_prob: float = 1e-5
    max_shuffle: int = 10

    @classmethod
    def from_args(cls, args) -> 'DenoiseConfig':
        return cls(
            omega_a=args.omega_a,
            band_size=args.band_size,
            detect_singletons=args.detect_singletons,
        )


@dataclass
class MergeConfig:
    """Paired-read merging parameters."""
    min_overlap: int = 12
    max_mismatch_rate: float = 0.0
    trim_overhang: bool = False
    just_concatenate: bool = False

    @classmethod
    def from_args(cls, args) -> 'MergeConfig':
        return cls(
            min_overlap=args.min_overlap,
            max_mismatch_rate=args.max_mismatch_rate,
            trim_overhang=args.trim_overhang,
            just_concatenate=args.just_concatenate,
        )


@dataclass
class ChimeraConfig:
    """Consensus bimera detection parameters."""
    min_fold_parent_over_abundance: float = 1.5
    min_parent_abundance: int = 2
    min_sample_fraction: float = 0.9
    ignore_n_negatives: int = 1
    allow_one_off: bool = False
    min_one_off_parent_distance: int = 4

    def __post_init__(self):
        if self.min_fold_parent_over_abundance < 1.0:
            raise ValueError("min_fold_parent_over_abundance must be at least 1.0")

    @classmethod
    def from_args(cls, args) -> 'ChimeraConfig':
        return cls(
            min_fold_parent_over_abundance=args.min_fold_parent,
            min_sample_fraction=args.min_sample_fraction,
        )


@dataclass
class PipelineConfig:
    """Complete run configuration."""
    output_dir: str = "asvinfer_output"
    forward_suffix: str = r"_R1(_001)?\.f(ast)?q(\.gz)?"
    reverse_suffix: str = r"_R2(_001)?\.f(ast)?q(\.gz)?"
    min_length: int = 0
    max_length: int = 0
    threads: int = 1
    min_nonchimeric_fraction: float = 0.75
    max_unmerged_fraction: float = 0.5
    taxonomy_reference: Optional[str] = None
    species_reference: Optional[str] = None
    filtering: FilterConfig = field(default_factory=FilterConfig)
    learning: ErrorLearnConfig = field(default_factory=ErrorLearnConfig)
    denoising: DenoiseConfig = field(default_factory=DenoiseConfig)
    merging: MergeConfig = field(default_factory=MergeConfig)
    chimeras: ChimeraConfig = field(default_factory=ChimeraConfig)

    def to_dict(self) -> dict:
        return asdict(self)

    @classmethod
    def from_args(cls, args) -> 'PipelineConfig':
        return cls(
            output_dir=args.output_dir,
            forward_suffix=args.forward_suffix,
            reverse_suffix=args.reverse_suffix,
            min_length=args.min_length,
            max_length=args.max_length,
            threads=args.threads,
            taxonomy_reference=args.taxonomy_reference,
            species_reference=args.species_reference,
            filtering=FilterConfig.from_args(args),
            learning=ErrorLearnConfig.from_args(args),
            denoising=DenoiseConfig.from_args(args),
            merging=MergeConfig.from_args(args),
            chimeras=ChimeraConfig.from_args(args),
        )
