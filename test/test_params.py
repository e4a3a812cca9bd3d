from dataclasses import dataclass

import pytest

from headfactory.artifact import ArtifactKind as K
from headfactory.params import InvalidParameters, StageParameters, option
from headfactory.stages import (
    BandpassParameters,
    BemParameters,
    DuneuroOptions,
    FemMeshParameters,
    FemTensorsParameters,
    HeadModelParameters,
    ImportVolumeParameters,
    InverseOptions,
    MergeTissuesParameters,
)


@dataclass
class SolverOptions(StageParameters):
    solver_type: str = option("cg", choices=("cg", "dg"), help="The linear solver.")
    tolerance: float = 1e-8
    weights: list = option([1, 1, 1])


def test_recognized_options_exclude_internal_fields():
    assert SolverOptions.recognized_options() == ["solver_type", "tolerance", "weights"]
    assert SolverOptions.option_choices() == {"solver_type": ("cg", "dg")}


def test_from_options_rejects_unknown():
    with pytest.raises(InvalidParameters) as error:
        SolverOptions.from_options({"solver": "cg"})
    assert "solver" in str(error.value)


def test_from_options_with_kwargs():
    params = SolverOptions.from_options({"solver_type": "dg"}, tolerance=1e-6)
    assert params.solver_type == "dg"
    assert params.tolerance == 1e-6


def test_choices_are_checked_on_validate():
    """Constructing with a bad value is allowed, validation is what rejects it."""
    params = SolverOptions(solver_type="gmres")
    with pytest.raises(InvalidParameters):
        params.validate()
    SolverOptions().validate()


def test_list_defaults_are_not_shared():
    first = SolverOptions()
    first.weights.append(2)
    assert SolverOptions().weights == [1, 1, 1]


def test_nested_options_from_dict():
    params = HeadModelParameters.from_options(
        {"modality": "MEG", "duneuro": {"fem_select": [1, 1, 1, 0, 0], "use_tensor": False}}
    )
    assert isinstance(params.duneuro, DuneuroOptions)
    assert params.duneuro.fem_select == [1, 1, 1, 0, 0]
    assert params.duneuro.use_tensor is False
    # untouched options keep their defaults
    assert params.duneuro.solver_type == "cg"


def test_nested_unknown_option_rejected():
    with pytest.raises(InvalidParameters):
        HeadModelParameters.from_options({"duneuro": {"use_tensors": True}})


def test_nested_options_are_validated():
    params = HeadModelParameters(duneuro=DuneuroOptions(solver_type="direct"))
    with pytest.raises(InvalidParameters):
        params.validate()
    # the options of another method aren't used, so they aren't checked
    HeadModelParameters(method="openmeeg", duneuro=DuneuroOptions(solver_type="direct")).validate()


def test_as_dict_strips_internal_fields():
    values = HeadModelParameters().as_dict()
    assert "hash_representations" not in values
    assert "hash_representations" not in values["duneuro"]
    assert values["duneuro"]["use_tensor"] is True


def test_head_model_required_kinds():
    assert HeadModelParameters().required_kinds() == [K.VOLUME_MESH, K.CONDUCTIVITY_TENSOR_FIELD]
    assert HeadModelParameters(duneuro=DuneuroOptions(use_tensor=False)).required_kinds() == [K.VOLUME_MESH]
    assert HeadModelParameters(method="openmeeg").required_kinds() == [K.BEM_LAYER_SET]
    assert HeadModelParameters(modality="MEG", method="os_meg").required_kinds() == []


def test_overlapping_spheres_is_meg_only():
    with pytest.raises(InvalidParameters):
        HeadModelParameters(modality="EEG", method="os_meg").validate()


def test_fem_tensors_required_kinds():
    assert FemTensorsParameters().required_kinds() == [K.TRACTOGRAPHY]
    assert FemTensorsParameters(isotropic=[True] * 5).required_kinds() == []


@pytest.mark.parametrize(
    "params",
    [
        FemTensorsParameters(conductivities=[0.33]),
        FemTensorsParameters(conductivities=[0.14, 0.33, 1.79, 0, 0.43]),
        BandpassParameters(highpass=300),
        BandpassParameters(sensor_types="MEG, EMG"),
        DuneuroOptions(fem_select=[0, 0, 0, 0, 0]),
        InverseOptions(data_types=["NIRS"]),
        InverseOptions(data_types=[]),
        MergeTissuesParameters(mapping=["", ""]),
    ],
)
def test_custom_validation(params):
    with pytest.raises(InvalidParameters):
        params.validate()


def test_merged_tissues_in_order_of_appearance():
    params = MergeTissuesParameters()
    assert params.merged_tissues() == ["white", "gray", "csf", "skull", "scalp"]


@pytest.mark.parametrize(
    "params",
    [
        SolverOptions(tolerance="tight"),
        SolverOptions(weights="1, 1, 1"),
        SolverOptions(weights=[1, "1", 1]),
        SolverOptions(solver_type=2),
        BemParameters(nscalp="lots"),
        FemMeshParameters(nvertices="15000"),
        FemTensorsParameters(isotropic=["yes"] * 5),
        HeadModelParameters(duneuro={"use_tensor": False}),
    ],
)
def test_value_types_are_checked_on_validate(params):
    """Values that don't match the type of the option's default are rejected before any
    custom constraint gets to compare them."""
    with pytest.raises(InvalidParameters) as error:
        params.validate()
    assert "expected" in str(error.value)


def test_compatible_value_types_are_accepted():
    SolverOptions(tolerance=0, weights=(1.5, 2, 3)).validate()
    BemParameters(nscalp=1000, thickness=3.5).validate()
    FemTensorsParameters(isotropic=[1, 1, 1, 1, 1]).validate()
    # an unset option with a None default takes any value
    ImportVolumeParameters(path="t1.nii").validate()
