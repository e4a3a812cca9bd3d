"""Stages for source estimation: forward (head) models, inverse kernels, dipole
scanning, and merging dipoles from different variants.

The solver configuration blocks are plain parameter dataclasses nested in the
stage parameters, with defaults matching the reference tutorial run.
"""

from dataclasses import dataclass, field

from headfactory.artifact import ArtifactKind as K
from headfactory.hashing import set_hash_functions
from headfactory.params import InvalidParameters, StageParameters, option
from headfactory.staging import InputSlot, StageSpec, register_stage

INVERSE_DATA_TYPES = ("EEG", "MEG", "MEG GRAD", "MEG MAG", "ECOG", "SEEG")


@dataclass
class DuneuroOptions(StageParameters):
    """Options of the DUNEuro finite element solver."""

    fem_cond: list[float] = option([])
    """Isotropic conductivities per tissue, empty to use the ones stored with the mesh."""
    fem_select: list[int] = option([1, 1, 1, 1, 1])
    """Which tissues of the mesh take part in the model."""
    use_tensor: bool = True
    isotropic: bool = True
    src_shrink: float = 0
    src_force_in_gm: bool = False
    fem_type: str = option("fitted", choices=("fitted", "unfitted"))
    solver_type: str = option("cg", choices=("cg", "dg"))
    geometry_adapted: bool = False
    tolerance: float = 1e-08
    elec_type: str = option("normal", choices=("normal", "closest_subentity_center"))
    meg_intorderadd: int = 0
    meg_type: str = option("physical", choices=("physical",))
    solv_solver_type: str = option("cg", choices=("cg",))
    solv_precond: str = option("amg", choices=("amg",))
    solv_smoother_type: str = option("ssor", choices=("ssor",))
    solv_intorderadd: int = 0
    dg_smoother_type: str = option("ssor", choices=("ssor",))
    dg_scheme: str = option("sipg", choices=("sipg", "nipg", "iipg"))
    dg_penalty: float = 20
    dg_edge_norm_type: str = option("houston", choices=("houston", "cell", "face"))
    dg_weights: bool = True
    dg_reduction: bool = True
    sol_post_process: bool = True
    sol_substract_mean: bool = False
    sol_solver_reduction: float = 1e-10
    src_model: str = option(
        "venant", choices=("venant", "subtraction", "partial_integration")
    )
    src_intorderadd: int = 0
    src_intorderadd_lb: int = 2
    src_nb_moments: int = 3
    src_ref_len: float = 20
    src_weight_exp: float = 1
    src_relax_factor: float = 6
    src_mixed_moments: bool = True
    src_restrict: bool = True
    src_init: str = option(
        "closest_vertex", choices=("closest_vertex", "closest_subentity_center")
    )
    bst_save_transfer: bool = False
    bst_eeg_transfer_file: str = "eeg_transfer.dat"
    bst_meg_transfer_file: str = "meg_transfer.dat"
    bst_eeg_lf_file: str = "eeg_lf.dat"
    bst_meg_lf_file: str = "meg_lf.dat"
    use_integration_point: bool = True
    enable_cache_memory: bool = False
    meg_per_block_of_sensor: bool = False

    # intermediate file names and memory settings don't change the head model
    hash_representations: dict = set_hash_functions(
        bst_save_transfer=None,
        bst_eeg_transfer_file=None,
        bst_meg_transfer_file=None,
        bst_eeg_lf_file=None,
        bst_meg_lf_file=None,
        enable_cache_memory=None,
        meg_per_block_of_sensor=None,
    )

    def validate(self):
        super().validate()
        if not any(self.fem_select):
            raise InvalidParameters("At least one tissue must be selected")
        if len(self.fem_cond) > 0 and len(self.fem_cond) != len(self.fem_select):
            raise InvalidParameters(
                "Got %d conductivities for %d tissues"
                % (len(self.fem_cond), len(self.fem_select))
            )
        if self.tolerance <= 0:
            raise InvalidParameters("tolerance must be positive")


@dataclass
class OpenMeegOptions(StageParameters):
    """Options of the OpenMEEG boundary element solver."""

    bem_select: list[int] = option([1, 1, 1])
    bem_cond: list[float] = option([1, 0.0125, 1])
    bem_names: list[str] = option(["Scalp", "Skull", "Brain"])
    bem_files: list[str] = option([])
    is_adjoint: bool = False
    is_adaptative: bool = True
    is_split: bool = False
    split_length: int = 4000

    def validate(self):
        super().validate()
        if not len(self.bem_select) == len(self.bem_cond) == len(self.bem_names):
            raise InvalidParameters(
                "bem_select, bem_cond and bem_names must have one entry per layer"
            )
        if self.split_length <= 0:
            raise InvalidParameters("split_length must be positive")


@dataclass
class HeadModelParameters(StageParameters):
    modality: str = option("EEG", choices=("EEG", "MEG"))
    method: str = option(
        "duneuro", choices=("duneuro", "openmeeg", "os_meg", "single_sphere")
    )
    source_space: str = option("cortex", choices=("cortex", "volume"))
    duneuro: DuneuroOptions = field(default_factory=DuneuroOptions)
    openmeeg: OpenMeegOptions = field(default_factory=OpenMeegOptions)

    def validate(self):
        super().validate()
        if self.method == "os_meg" and self.modality != "MEG":
            raise InvalidParameters("Overlapping spheres is a MEG-only method")
        if self.method == "duneuro":
            self.duneuro.validate()
        elif self.method == "openmeeg":
            self.openmeeg.validate()

    def required_kinds(self) -> list:
        if self.method == "duneuro":
            if self.duneuro.use_tensor:
                return [K.VOLUME_MESH, K.CONDUCTIVITY_TENSOR_FIELD]
            return [K.VOLUME_MESH]
        if self.method == "openmeeg":
            return [K.BEM_LAYER_SET]
        return []


@dataclass
class InverseOptions(StageParameters):
    """Options of the minimum-norm family of inverse solvers."""

    comment: str = ""
    inverse_method: str = option("gls", choices=("minnorm", "gls", "lcmv"))
    inverse_measure: str = option(
        "performance",
        choices=("amplitude", "dspm2018", "sloreta", "performance", "fit", "chi"),
    )
    source_orient: str = option("free", choices=("fixed", "loose", "free"))
    loose: float = 0.2
    use_depth: bool = True
    weight_exp: float = 0.5
    weight_limit: float = 10
    noise_method: str = option(
        "median", choices=("reg", "diag", "shrink", "median", "none")
    )
    noise_reg: float = 0.1
    snr_method: str = option("rms", choices=("rms", "fixed"))
    snr_rms: float = 1e-06
    snr_fixed: float = 3
    compute_kernel: bool = True
    data_types: list[str] = option(["EEG"])

    hash_representations: dict = set_hash_functions(comment=None)

    def validate(self):
        super().validate()
        if len(self.data_types) == 0:
            raise InvalidParameters("At least one data type is needed")
        for data_type in self.data_types:
            if data_type not in INVERSE_DATA_TYPES:
                raise InvalidParameters(
                    "Unknown data type '%s', expected any of %s"
                    % (data_type, list(INVERSE_DATA_TYPES))
                )
        if not 0 <= self.loose <= 1:
            raise InvalidParameters("loose must be between 0 and 1")
        if self.noise_reg < 0:
            raise InvalidParameters("noise_reg can't be negative")


@dataclass
class DipoleScanningParameters(StageParameters):
    time_window: list[float] = option([0.022, 0.022])
    scouts: list[str] = option([])

    def validate(self):
        super().validate()
        if len(self.time_window) != 2 or self.time_window[0] > self.time_window[1]:
            raise InvalidParameters("time_window must be [start, end]")


HEAD_MODEL = register_stage(
    StageSpec(
        "HeadModel",
        inputs=(
            InputSlot("sources", (K.SURFACE_MESH,)),
            InputSlot("geometry", (K.VOLUME_MESH, K.BEM_LAYER_SET), optional=True),
            InputSlot("tensors", (K.CONDUCTIVITY_TENSOR_FIELD,), optional=True),
            InputSlot(
                "channels",
                (K.RECORDING, K.FILTERED_RECORDING, K.AVERAGE_RECORDING),
            ),
        ),
        outputs=(K.HEAD_MODEL,),
        parameters=HeadModelParameters,
        description="Compute a forward model (lead field) with DUNEuro, OpenMEEG or a sphere model.",
    )
)

INVERSE_SOLUTION = register_stage(
    StageSpec(
        "InverseSolution",
        inputs=(
            InputSlot("head_model", (K.HEAD_MODEL,)),
            InputSlot("noise_covariance", (K.NOISE_COVARIANCE,)),
            InputSlot("data", (K.AVERAGE_RECORDING,)),
        ),
        outputs=(K.INVERSE_KERNEL,),
        parameters=InverseOptions,
        description="Compute a shared inverse kernel.",
    )
)

DIPOLE_SCANNING = register_stage(
    StageSpec(
        "DipoleScanning",
        inputs=(
            InputSlot("kernel", (K.INVERSE_KERNEL,)),
            InputSlot("data", (K.AVERAGE_RECORDING,)),
        ),
        outputs=(K.DIPOLE_SET,),
        parameters=DipoleScanningParameters,
        description="Fit the best dipole at each time point of a window.",
    )
)

MERGE_DIPOLES = register_stage(
    StageSpec(
        "MergeDipoles",
        inputs=(InputSlot("dipoles", (K.DIPOLE_SET,), many=True),),
        outputs=(K.DIPOLE_SET,),
        parameters=None,
        description="Merge dipole sets from several variants into one for comparison.",
    )
)
