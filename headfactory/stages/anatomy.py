"""Stages building the head anatomy: volume import and registration, diffusion
tensors, tissue meshing, conductivity tensors, and BEM surfaces."""

from dataclasses import dataclass, field

from headfactory.artifact import ArtifactKind as K
from headfactory.params import InvalidParameters, StageParameters, option
from headfactory.staging import InputSlot, StageSpec, register_stage

FEM_TISSUES_12 = [
    "white",
    "gray",
    "csf",
    "bone",
    "scalp",
    "eyes",
    "compact_bone",
    "spongy_bone",
    "blood",
    "muscle",
    "cartilage",
    "fat",
]
"""Tissue labels of a SimNIBS 4 (charm) segmentation, in mesh order."""

FEM_TISSUES_5 = ["white", "gray", "csf", "skull", "scalp"]


@dataclass
class ImportVolumeParameters(StageParameters):
    path: str = None
    modality: str = option("T1", choices=("T1", "T2", "CT", "DWI"))
    mni_normalization: str = option("none", choices=("none", "maff8", "segment"))
    """Compute the MNI normalization (the affine "maff8" variant or the full SPM segmentation.)"""

    def validate(self):
        super().validate()
        if not self.path:
            raise InvalidParameters("ImportVolume needs a 'path' to import from")


@dataclass
class CoregisterParameters(StageParameters):
    method: str = option("spm", choices=("spm", "ct2mri", "vox2ras"))
    reslice: bool = True


@dataclass
class DwiToDtiParameters(StageParameters):
    dwi_path: str = None
    bval_path: str = None
    bvec_path: str = None

    def validate(self):
        super().validate()
        missing = [
            name for name in ("dwi_path", "bval_path", "bvec_path") if not getattr(self, name)
        ]
        if len(missing) > 0:
            raise InvalidParameters("DwiToDti is missing %s" % missing)


@dataclass
class FemMeshParameters(StageParameters):
    method: str = option(
        "simnibs4",
        choices=("simnibs4", "simnibs3", "iso2mesh", "brain2mesh", "roast", "fieldtrip"),
    )
    nvertices: int = 15000
    zneck: float = 0
    tissues: list[str] = option(list(FEM_TISSUES_12))

    def validate(self):
        super().validate()
        if self.nvertices <= 0:
            raise InvalidParameters("nvertices must be positive, got %s" % self.nvertices)


@dataclass
class MergeTissuesParameters(StageParameters):
    """Relabel the tissues of a mesh. ``mapping`` gives the new label of each existing
    tissue in order, an empty string drops the tissue's elements."""

    mapping: list[str] = option(
        [
            "white",
            "gray",
            "csf",
            "skull",
            "scalp",
            "scalp",
            "skull",
            "skull",
            "csf",
            "csf",
            "",
            "",
        ]
    )

    def merged_tissues(self) -> list[str]:
        """The resulting tissue labels, in order of first appearance."""
        tissues = []
        for label in self.mapping:
            if label and label not in tissues:
                tissues.append(label)
        return tissues

    def validate(self):
        super().validate()
        if len(self.merged_tissues()) == 0:
            raise InvalidParameters("Merging tissues would leave an empty mesh")


@dataclass
class FemTensorsParameters(StageParameters):
    """Conductivities (S/m) per tissue of the 5-tissue mesh, and how anisotropic
    tensors are estimated from the diffusion tensors."""

    conductivities: list[float] = option([0.14, 0.33, 1.79, 0.008, 0.43])
    isotropic: list[bool] = option([False, True, True, True, True])
    aniso_method: str = option("ema+vc", choices=("ema", "ema+vc"))
    """Effective medium approach, optionally with volume constraint."""
    sim_ratio: float = 10
    sim_constr_method: str = option("wolters", choices=("wolters", "wang"))

    def validate(self):
        super().validate()
        if len(self.conductivities) != len(self.isotropic):
            raise InvalidParameters(
                "Got %d conductivities for %d isotropic flags"
                % (len(self.conductivities), len(self.isotropic))
            )
        if any(value <= 0 for value in self.conductivities):
            raise InvalidParameters("Conductivities must be positive")

    def required_kinds(self) -> list:
        if all(self.isotropic):
            return []
        return [K.TRACTOGRAPHY]


@dataclass
class ClearTensorsParameters(StageParameters):
    tensors: str = option("none", choices=("none",))


@dataclass
class BemParameters(StageParameters):
    nscalp: int = 1922
    nouter: int = 1922
    ninner: int = 1922
    thickness: float = 4
    """Skull thickness in mm."""

    def validate(self):
        super().validate()
        for name in ("nscalp", "nouter", "ninner"):
            if getattr(self, name) <= 0:
                raise InvalidParameters("%s must be positive" % name)


IMPORT_VOLUME = register_stage(
    StageSpec(
        "ImportVolume",
        inputs=(),
        outputs=(K.RAW_VOLUME,),
        parameters=ImportVolumeParameters,
        description="Import an MRI volume from a NIfTI file.",
    )
)

COREGISTER = register_stage(
    StageSpec(
        "Coregister",
        inputs=(
            InputSlot("moving", (K.RAW_VOLUME,)),
            InputSlot("reference", (K.RAW_VOLUME, K.REGISTERED_VOLUME)),
        ),
        outputs=(K.REGISTERED_VOLUME,),
        parameters=CoregisterParameters,
        description="Register a volume onto a reference volume.",
    )
)

DWI_TO_DTI = register_stage(
    StageSpec(
        "DwiToDti",
        inputs=(InputSlot("anatomy", (K.RAW_VOLUME, K.REGISTERED_VOLUME)),),
        outputs=(K.TRACTOGRAPHY,),
        parameters=DwiToDtiParameters,
        description="Estimate diffusion tensors from diffusion-weighted images (BrainSuite).",
    )
)

FEM_MESH = register_stage(
    StageSpec(
        "GenerateFemMesh",
        inputs=(
            InputSlot("t1", (K.RAW_VOLUME,)),
            InputSlot("t2", (K.REGISTERED_VOLUME,), optional=True),
        ),
        outputs=(K.VOLUME_MESH, K.SURFACE_MESH),
        parameters=FemMeshParameters,
        description="Segment the head and generate a tetrahedral tissue mesh and the cortex surface.",
    )
)

MERGE_TISSUES = register_stage(
    StageSpec(
        "MergeTissues",
        inputs=(InputSlot("mesh", (K.VOLUME_MESH,)),),
        outputs=(K.VOLUME_MESH,),
        parameters=MergeTissuesParameters,
        description="Relabel and merge the tissues of a mesh into a new mesh.",
    )
)

FEM_TENSORS = register_stage(
    StageSpec(
        "FemTensors",
        inputs=(
            InputSlot("mesh", (K.VOLUME_MESH,)),
            InputSlot("dti", (K.TRACTOGRAPHY,), optional=True),
        ),
        outputs=(K.CONDUCTIVITY_TENSOR_FIELD, K.VOLUME_MESH),
        parameters=FemTensorsParameters,
        description="Compute per-element conductivity tensors, and a tensor-bearing version of the mesh.",
        inherit_parameters=True,
    )
)

CLEAR_TENSORS = register_stage(
    StageSpec(
        "ClearTensors",
        inputs=(InputSlot("mesh", (K.VOLUME_MESH,)),),
        outputs=(K.VOLUME_MESH,),
        parameters=ClearTensorsParameters,
        description="Strip the conductivity tensors from a mesh, producing a new version of it.",
        mutation_gate=True,
        inherit_parameters=True,
        output_note="conductivity tensors cleared",
    )
)

GENERATE_BEM = register_stage(
    StageSpec(
        "GenerateBem",
        inputs=(InputSlot("anatomy", (K.RAW_VOLUME, K.REGISTERED_VOLUME)),),
        outputs=(K.BEM_LAYER_SET,),
        parameters=BemParameters,
        description="Generate the scalp, outer skull and inner skull surfaces.",
    )
)
