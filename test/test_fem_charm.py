import numpy as np
import pytest

from headfactory.driver import Directory, Executable, InputFile
from headfactory.params import InvalidParameters
from headfactory.pipeline import Branch, Merge, Section
from headfactory.pipelines import fem_charm
from headfactory.pipelines.fem_charm import FemCharmParameters
from headfactory.reporting import DFReporter, FigureReporter, JsonReporter, LinePlotReporter


@pytest.fixture()
def sensor_payload():
    channels = ["MEG0111", "MEG0112", "EEG001", "EEG002", "EEG003"]
    times = np.linspace(-0.05, 0.1, 16)
    return {
        "channels": channels,
        "times": times,
        "data": np.arange(len(channels) * len(times), dtype=float).reshape(len(channels), -1),
    }


@pytest.fixture()
def artifact(mocker):
    artifact = mocker.Mock()
    artifact.describe.return_value = {"name": "avg_2"}
    return artifact


def test_build_sections():
    pipeline = fem_charm.build(FemCharmParameters())

    assert pipeline.name == "fem_charm"
    assert pipeline.description.startswith("FEM head modeling with SimNIBS 4")
    assert [element.title for element in pipeline.elements] == [
        "Import anatomy",
        "FEM mesh",
        "Access the recordings",
        "Pre-processing",
        "Import recordings",
        "Noise covariance",
        "Forward models",
        "Merge dipoles",
    ]
    assert all(isinstance(element, Section) for element in pipeline.elements)
    assert isinstance(pipeline.elements[6].elements[0], Branch)


def test_merge_stage_only_when_enabled():
    assert "MergeDipoles" not in fem_charm.build(FemCharmParameters()).stage_ids()
    pipeline = fem_charm.build(FemCharmParameters(merge_dipoles=True))
    assert "MergeDipoles" in pipeline.stage_ids()
    merge = pipeline.elements[7].elements[0]
    assert isinstance(merge, Merge)
    assert merge.groups == ["EEG", "MEG"]
    assert merge.key == "FEM DTI"


def test_forward_variants():
    variants = fem_charm.forward_variants(FemCharmParameters(latency=0.03))

    assert [(variant.group, variant.key) for variant in variants] == [
        ("EEG", "FEM DTI"),
        ("MEG", "FEM DTI"),
        ("EEG", "FEM ISO"),
        ("MEG", "FEM ISO"),
        ("EEG", "BEM"),
        ("MEG", "OS"),
    ]
    # only removing the tensors changes shared artifacts
    assert [variant.exclusive() for variant in variants] == [False, False, True, False, False, False]
    assert variants[2].steps[0].stage_id == "ClearTensors"

    scanning = variants[0].steps[-1]
    assert scanning.stage_id == "DipoleScanning"
    assert scanning.params.time_window == [0.03, 0.03]


def test_forward_variants_inverse_data_types():
    variants = fem_charm.forward_variants(FemCharmParameters())
    inverses = [variant.steps[-2].params for variant in variants]

    assert inverses[0].data_types == ["EEG"]
    assert inverses[1].data_types == ["MEG GRAD", "MEG MAG"]
    assert inverses[0].comment == "Dipoles: EEG FEM DTI"
    # the comment is a label, it doesn't change the kernel's parameters
    assert inverses[0].params_hash() == inverses[2].params_hash()


def test_capabilities(tmp_path):
    params = FemCharmParameters(
        input_dir=str(tmp_path), brainsuite_dir="/opt/BrainSuite23a", iso2mesh_dir="/opt/iso2mesh"
    )
    capabilities = fem_charm.capabilities(params)

    assert capabilities[0] == Executable("charm", "SimNIBS 4")
    assert capabilities[1] == Directory("/opt/BrainSuite23a/bin", "BrainSuite")
    assert capabilities[2] == Directory("/opt/iso2mesh", "iso2mesh")
    inputs = [capability for capability in capabilities if isinstance(capability, InputFile)]
    assert len(inputs) == 6
    assert inputs[-1].path.endswith("sub-fem01_ses-meg_task-mediannerve_run-01_proc-tsss_meg.fif")


def test_params_hash_ignores_locations():
    default = FemCharmParameters()
    moved = FemCharmParameters(input_dir="/data", brainsuite_dir="/opt/bs", workspace_name="Other")
    assert default.params_hash() == moved.params_hash()
    assert default.params_hash() != FemCharmParameters(latency=0.03).params_hash()


@pytest.mark.parametrize(
    "params",
    [
        FemCharmParameters(latency=-0.01),
        FemCharmParameters(subject_name=""),
        FemCharmParameters(workspace_name=""),
        FemCharmParameters(workspace_name="../x"),
        FemCharmParameters(latency="soon"),
    ],
)
def test_validate(params):
    with pytest.raises(InvalidParameters):
        params.validate()


def test_reporters_fall_back_to_description(artifact):
    """Payloads that aren't sensor data (e.g. from a real collaborator's file handle)
    are reported through the artifact description."""
    for reporter in (
        fem_charm._sensor_registration("EEG"),
        fem_charm._time_series("MEG"),
        fem_charm._topography("EEG", 0.022),
    ):
        reportables = reporter(artifact, "/path/to/file.fif")
        assert len(reportables) == 1
        assert isinstance(reportables[0], JsonReporter)
        assert reportables[0].data == {"name": "avg_2"}

    assert isinstance(fem_charm._psd_summary(artifact, None)[0], JsonReporter)


def test_sensor_registration_selects_modality(artifact, sensor_payload):
    eeg = fem_charm._sensor_registration("EEG")(artifact, sensor_payload)[0]
    meg = fem_charm._sensor_registration("MEG")(artifact, sensor_payload)[0]

    assert eeg.name == "eeg_registration"
    assert eeg.data["channels"] == ["EEG001", "EEG002", "EEG003"]
    assert meg.data["channels"] == ["MEG0111", "MEG0112"]
    assert eeg.data["electrodes_projected"] is False


def test_time_series_and_topography(artifact, sensor_payload):
    series = fem_charm._time_series("EEG")(artifact, sensor_payload)[0]
    assert isinstance(series, LinePlotReporter)
    assert series.name == "eeg_erp"
    assert list(series.y) == ["EEG001", "EEG002", "EEG003"]

    topography = fem_charm._topography("MEG", 0.022)(artifact, sensor_payload)[0]
    assert isinstance(topography, FigureReporter)
    assert topography.name == "meg_erf_topography"
    assert topography.fig.axes[0].get_title() == "MEG at 22 ms"


def test_psd_summary(artifact):
    payload = {
        "channels": ["EEG001", "EEG002"],
        "freqs": np.array([1.0, 2.0, 3.0]),
        "psd": np.array([[1.0, 5.0, 2.0], [3.0, 1.0, 1.0]]),
    }
    reportable = fem_charm._psd_summary(artifact, payload)[0]

    assert isinstance(reportable, DFReporter)
    assert list(reportable.df["peak_frequency"]) == [2.0, 1.0]
    assert list(reportable.df["mean_power"]) == pytest.approx([8 / 3, 5 / 3])
