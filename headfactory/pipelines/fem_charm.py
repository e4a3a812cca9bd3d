"""FEM head modeling with SimNIBS 4 (charm): from MRI and MEG/EEG recordings to six forward models and their dipoles.

Runs on the "sample_fem" dataset (one subject with T1, T2, DWI, and a median nerve
stimulation MEG/EEG recording.) The run imports and registers the anatomy, builds a
12-tissue FEM mesh merged down to 5 tissues with anisotropic conductivity tensors
from the DTI, pre-processes the recordings into an evoked response, and then
compares six forward models (DUNEuro FEM with and without tensors for EEG and MEG,
OpenMEEG BEM for EEG, overlapping spheres for MEG) through dipole scanning at the
response latency.

Input layout (under ``input_dir``):

.. code-block:: text

    sample_fem/sub-fem01/ses-mri/anat/sub-fem01_ses-mri_T1w.nii.gz
    sample_fem/sub-fem01/ses-mri/anat/sub-fem01_ses-mri_T2w.nii.gz
    sample_fem/sub-fem01/ses-mri/dwi/sub-fem01_ses-mri_dwi.nii.gz (.bval, .bvec)
    sample_fem/sub-fem01/ses-meg/meg/sub-fem01_ses-meg_task-mediannerve_run-01_proc-tsss_meg.fif
"""

import os
from dataclasses import dataclass, field

import numpy as np
import pandas as pd
from matplotlib.figure import Figure

from headfactory.artifact import ArtifactKind as K
from headfactory.driver import Directory, Executable, InputFile
from headfactory.hashing import set_hash_functions
from headfactory.params import InvalidParameters, StageParameters
from headfactory.pipeline import (
    Branch,
    Cleanup,
    Merge,
    Named,
    Pipeline,
    Section,
    Snapshot,
    Step,
    Upstream,
    Variant,
)
from headfactory.reporting import DFReporter, FigureReporter, JsonReporter, LinePlotReporter
from headfactory.stages import (
    AverageParameters,
    BandpassParameters,
    BemParameters,
    CoregisterParameters,
    DipoleScanningParameters,
    DuneuroOptions,
    DwiToDtiParameters,
    EpochParameters,
    FemMeshParameters,
    FemTensorsParameters,
    HeadModelParameters,
    ImportRecordingParameters,
    ImportVolumeParameters,
    InverseOptions,
    MergeTissuesParameters,
    NoiseCovarianceParameters,
    NotchParameters,
    OpenMeegOptions,
    PsdParameters,
    ReadEventsParameters,
    ReReferenceParameters,
)
from headfactory.staging import OutputSpec
from headfactory.workspace import check_workspace_name

MEG_DATA_TYPES = ["MEG GRAD", "MEG MAG"]


@dataclass
class FemCharmParameters(StageParameters):
    input_dir: str = "."
    """The folder containing the ``sample_fem`` dataset."""
    subject_name: str = "Subject01"
    workspace_name: str = "TutorialFem"
    latency: float = 0.022
    """Latency of the evoked response (s) used for the topographies and dipole scanning."""
    brainsuite_dir: str = field(default_factory=lambda: os.environ.get("BRAINSUITE_DIR", ""))
    iso2mesh_dir: str = field(default_factory=lambda: os.environ.get("ISO2MESH_DIR", ""))
    """The iso2mesh toolbox installation, used for remeshing the tissue meshes."""
    merge_dipoles: bool = False
    """Merge the FEM DTI dipoles of EEG and MEG. Without this the merge is only recorded as skipped."""

    # where the data lives doesn't change the results
    hash_representations: dict = set_hash_functions(
        input_dir=None, brainsuite_dir=None, iso2mesh_dir=None, workspace_name=None
    )

    @property
    def subject_dir(self) -> str:
        return os.path.join(self.input_dir, "sample_fem", "sub-fem01")

    @property
    def t1_path(self) -> str:
        return os.path.join(self.subject_dir, "ses-mri", "anat", "sub-fem01_ses-mri_T1w.nii.gz")

    @property
    def t2_path(self) -> str:
        return os.path.join(self.subject_dir, "ses-mri", "anat", "sub-fem01_ses-mri_T2w.nii.gz")

    def dwi_path(self, extension: str = ".nii.gz") -> str:
        return os.path.join(self.subject_dir, "ses-mri", "dwi", f"sub-fem01_ses-mri_dwi{extension}")

    @property
    def fif_path(self) -> str:
        return os.path.join(
            self.subject_dir,
            "ses-meg",
            "meg",
            "sub-fem01_ses-meg_task-mediannerve_run-01_proc-tsss_meg.fif",
        )

    def input_files(self) -> list[str]:
        return [
            self.t1_path,
            self.t2_path,
            self.dwi_path(),
            self.dwi_path(".bval"),
            self.dwi_path(".bvec"),
            self.fif_path,
        ]

    def validate(self):
        super().validate()
        if self.latency < 0:
            raise InvalidParameters("latency can't be negative, got %s" % self.latency)
        if not self.subject_name:
            raise InvalidParameters("A subject name is required")
        try:
            check_workspace_name(self.workspace_name)
        except ValueError as e:
            raise InvalidParameters(str(e))


def get_params() -> FemCharmParameters:
    return FemCharmParameters()


def capabilities(params: FemCharmParameters) -> list:
    """The external tools and input files the real collaborators need."""
    return [
        Executable("charm", "SimNIBS 4"),
        Directory(os.path.join(params.brainsuite_dir, "bin"), "BrainSuite"),
        Directory(params.iso2mesh_dir, "iso2mesh"),
    ] + [InputFile(path, "sample_fem") for path in params.input_files()]


# -- snapshot reporters --


def _eeg_channels(channels: list[str]) -> np.ndarray:
    return np.array([channel.startswith("EEG") for channel in channels], dtype=bool)


def _has_sensor_data(payload) -> bool:
    return isinstance(payload, dict) and "data" in payload and "channels" in payload


def _sensor_registration(modality: str):
    def reporter(artifact, payload):
        name = f"{modality.lower()}_registration"
        if not _has_sensor_data(payload):
            return [JsonReporter(artifact.describe(), name=name, group="Recordings")]
        eeg = _eeg_channels(payload["channels"])
        selected = eeg if modality == "EEG" else ~eeg
        summary = {
            "recording": str(artifact.ref),
            "modality": modality,
            "channels": [
                channel for channel, keep in zip(payload["channels"], selected) if keep
            ],
            "electrodes_projected": bool(payload.get("electrodes_projected", False)),
        }
        return [JsonReporter(summary, name=name, group="Recordings")]

    return reporter


def _psd_summary(artifact, payload):
    if not isinstance(payload, dict) or "psd" not in payload:
        return [JsonReporter(artifact.describe(), name="psd_summary", group="Pre-processing")]
    df = pd.DataFrame(
        {
            "channel": payload["channels"],
            "mean_power": payload["psd"].mean(axis=1),
            "peak_frequency": payload["freqs"][payload["psd"].argmax(axis=1)],
        }
    )
    return [DFReporter(df, name="psd_summary", group="Pre-processing")]


def _time_series(modality: str):
    def reporter(artifact, payload):
        name = "eeg_erp" if modality == "EEG" else "meg_erf"
        if not _has_sensor_data(payload):
            return [JsonReporter(artifact.describe(), name=name, group="Evoked")]
        eeg = _eeg_channels(payload["channels"])
        selected = eeg if modality == "EEG" else ~eeg
        y = {
            channel: payload["data"][index]
            for index, channel in enumerate(payload["channels"])
            if selected[index]
        }
        x = {channel: payload["times"] for channel in y}
        return [
            LinePlotReporter(
                y=y,
                x=x,
                name=name,
                group="Evoked",
                xlabel="Time (s)",
                plot_kwargs={"linewidth": 0.8},
            )
        ]

    return reporter


def _topography(modality: str, latency: float):
    def reporter(artifact, payload):
        name = "eeg_erp_topography" if modality == "EEG" else "meg_erf_topography"
        if not _has_sensor_data(payload):
            return [JsonReporter(artifact.describe(), name=name, group="Evoked")]
        eeg = _eeg_channels(payload["channels"])
        selected = eeg if modality == "EEG" else ~eeg
        sample = int(np.abs(np.asarray(payload["times"]) - latency).argmin())
        values = payload["data"][selected, sample]
        channels = [channel for channel, keep in zip(payload["channels"], selected) if keep]

        fig = Figure(facecolor="white")
        ax = fig.add_subplot(111)
        ax.bar(range(len(values)), values)
        ax.set_xticks(range(len(values)))
        ax.set_xticklabels(channels, rotation=90, fontsize=6)
        ax.set_title(f"{modality} at {latency * 1000:.0f} ms")
        return [FigureReporter(fig, name=name, group="Evoked")]

    return reporter


# -- forward models --


def _forward_variant(
    comment: str,
    group: str,
    key: str,
    head_model: HeadModelParameters,
    geometry: list,
    params: FemCharmParameters,
    before: list = None,
) -> Variant:
    """Head model, shared inverse kernel, and dipole scanning at the latency."""
    output_name = comment.lower().replace(" ", "_")
    data_types = ["EEG"] if head_model.modality == "EEG" else list(MEG_DATA_TYPES)
    dipoles_comment = f"Dipoles: {group} {key}"
    steps = list(before or []) + [
        Step(
            "HeadModel",
            [Named(K.SURFACE_MESH, "cortex_mid_low")]
            + geometry
            + [Named(K.AVERAGE_RECORDING, "avg_2")],
            params=head_model,
            outputs=[(K.HEAD_MODEL, output_name)],
            comment=comment,
        ),
        Step(
            "InverseSolution",
            [
                Upstream(K.HEAD_MODEL),
                Named(K.NOISE_COVARIANCE, "noise_cov"),
                Named(K.AVERAGE_RECORDING, "avg_2"),
            ],
            params=InverseOptions(comment=dipoles_comment, data_types=data_types),
            outputs=[(K.INVERSE_KERNEL, output_name)],
            comment=dipoles_comment,
        ),
        Step(
            "DipoleScanning",
            [Upstream(K.INVERSE_KERNEL), Named(K.AVERAGE_RECORDING, "avg_2")],
            params=DipoleScanningParameters(time_window=[params.latency, params.latency]),
            outputs=[(K.DIPOLE_SET, output_name)],
            comment=dipoles_comment,
        ),
    ]
    return Variant(comment, steps, group=group, key=key)


def forward_variants(params: FemCharmParameters) -> list[Variant]:
    fem_dti = [Named(K.VOLUME_MESH, "fem_5"), Named(K.CONDUCTIVITY_TENSOR_FIELD, "fem_5_tensors")]
    fem_iso = [Named(K.VOLUME_MESH, "fem_5")]
    meg_tissues = [1, 1, 1, 0, 0]
    return [
        _forward_variant(
            "DUNEuro FEM EEG DTI",
            "EEG",
            "FEM DTI",
            HeadModelParameters(modality="EEG", duneuro=DuneuroOptions(use_tensor=True)),
            fem_dti,
            params,
        ),
        _forward_variant(
            "DUNEuro FEM MEG DTI",
            "MEG",
            "FEM DTI",
            HeadModelParameters(
                modality="MEG",
                duneuro=DuneuroOptions(use_tensor=True, fem_select=meg_tissues),
            ),
            fem_dti,
            params,
        ),
        _forward_variant(
            "DUNEuro FEM EEG ISO",
            "EEG",
            "FEM ISO",
            HeadModelParameters(modality="EEG", duneuro=DuneuroOptions(use_tensor=False)),
            fem_iso,
            params,
            before=[
                Step(
                    "ClearTensors",
                    [Named(K.VOLUME_MESH, "fem_5")],
                    outputs=[OutputSpec(K.VOLUME_MESH, "fem_5", overwrite=True)],
                    comment="Remove tensors",
                )
            ],
        ),
        _forward_variant(
            "DUNEuro FEM MEG ISO",
            "MEG",
            "FEM ISO",
            HeadModelParameters(
                modality="MEG",
                duneuro=DuneuroOptions(use_tensor=False, fem_select=meg_tissues),
            ),
            fem_iso,
            params,
        ),
        _forward_variant(
            "OpenMEEG BEM EEG",
            "EEG",
            "BEM",
            HeadModelParameters(modality="EEG", method="openmeeg", openmeeg=OpenMeegOptions()),
            [Named(K.BEM_LAYER_SET, "bem")],
            params,
        ),
        _forward_variant(
            "OS MEG",
            "MEG",
            "OS",
            HeadModelParameters(modality="MEG", method="os_meg"),
            [],
            params,
        ),
    ]


# -- pipeline --


def build(params: FemCharmParameters) -> Pipeline:
    anatomy = Section(
        "Import anatomy",
        [
            Step(
                "ImportVolume",
                params=ImportVolumeParameters(
                    path=params.t1_path, modality="T1", mni_normalization="maff8"
                ),
                outputs=[(K.RAW_VOLUME, "T1")],
                comment="Import T1 MRI, MNI normalization",
            ),
            Step(
                "ImportVolume",
                params=ImportVolumeParameters(path=params.t2_path, modality="T2"),
                outputs=[(K.RAW_VOLUME, "T2")],
                comment="Import T2 MRI",
            ),
            Step(
                "Coregister",
                [Named(K.RAW_VOLUME, "T2"), Named(K.RAW_VOLUME, "T1")],
                params=CoregisterParameters(method="spm", reslice=True),
                outputs=[(K.REGISTERED_VOLUME, "T2_spm")],
                comment="Register T2 on T1 with SPM",
            ),
            Cleanup([Named(K.RAW_VOLUME, "T2")], comment="Delete the non-registered T2"),
            Step(
                "DwiToDti",
                [Named(K.RAW_VOLUME, "T1")],
                params=DwiToDtiParameters(
                    dwi_path=params.dwi_path(),
                    bval_path=params.dwi_path(".bval"),
                    bvec_path=params.dwi_path(".bvec"),
                ),
                outputs=[(K.TRACTOGRAPHY, "dti")],
                comment="Convert DWI to DTI (BrainSuite)",
            ),
        ],
    )

    meshes = Section(
        "FEM mesh",
        [
            Step(
                "GenerateFemMesh",
                [Named(K.RAW_VOLUME, "T1"), Named(K.REGISTERED_VOLUME, "T2_spm")],
                params=FemMeshParameters(method="simnibs4", nvertices=15000, zneck=0),
                outputs=[(K.VOLUME_MESH, "fem_12"), (K.SURFACE_MESH, "cortex_mid_low")],
                comment="SimNIBS 4 (charm) segmentation and mesh",
            ),
            Step(
                "MergeTissues",
                [Named(K.VOLUME_MESH, "fem_12")],
                params=MergeTissuesParameters(),
                outputs=[(K.VOLUME_MESH, "fem_5")],
                comment="Merge 12 tissues into 5",
            ),
            Step(
                "FemTensors",
                [Named(K.VOLUME_MESH, "fem_5"), Named(K.TRACTOGRAPHY, "dti")],
                params=FemTensorsParameters(),
                outputs=[
                    (K.CONDUCTIVITY_TENSOR_FIELD, "fem_5_tensors"),
                    OutputSpec(K.VOLUME_MESH, "fem_5", overwrite=True, note="conductivity tensors added"),
                ],
                comment="Compute FEM tensors",
            ),
            Step(
                "GenerateBem",
                [Named(K.RAW_VOLUME, "T1")],
                params=BemParameters(),
                outputs=[(K.BEM_LAYER_SET, "bem")],
                comment="Generate BEM surfaces",
            ),
        ],
    )

    recordings = Section(
        "Access the recordings",
        [
            Step(
                "ImportRecording",
                params=ImportRecordingParameters(path=params.fif_path, format="FIF"),
                outputs=[(K.RECORDING, "raw")],
                comment="Link to raw file",
            ),
            Step(
                "ReadEvents",
                [Named(K.RECORDING, "raw")],
                params=ReadEventsParameters(stim_channel="STI101", track_mode="value"),
                outputs=[(K.RECORDING, "raw")],
                comment="Read events from STI101",
                overwrite=True,
            ),
            Step(
                "ProjectChannels",
                [Named(K.RECORDING, "raw"), Named(K.BEM_LAYER_SET, "bem")],
                outputs=[(K.RECORDING, "raw")],
                comment="Project electrodes on scalp",
                overwrite=True,
            ),
            Snapshot(
                "MEG/MRI Registration",
                Named(K.RECORDING, "raw"),
                _sensor_registration("MEG"),
            ),
            Snapshot(
                "EEG/MRI Registration",
                Named(K.RECORDING, "raw"),
                _sensor_registration("EEG"),
            ),
        ],
    )

    preprocessing = Section(
        "Pre-processing",
        [
            Step(
                "Psd",
                [Named(K.RECORDING, "raw")],
                params=PsdParameters(),
                outputs=[(K.POWER_SPECTRUM, "psd")],
                comment="Power spectrum density (Welch)",
            ),
            Snapshot("Power spectrum density", Named(K.POWER_SPECTRUM, "psd"), _psd_summary),
            Step(
                "Bandpass",
                [Named(K.RECORDING, "raw")],
                params=BandpassParameters(highpass=20, lowpass=250),
                outputs=[(K.FILTERED_RECORDING, "band")],
                comment="Band-pass 20Hz-250Hz",
            ),
            Step(
                "Notch",
                [Named(K.FILTERED_RECORDING, "band")],
                params=NotchParameters(frequencies=[60, 120, 180]),
                outputs=[(K.FILTERED_RECORDING, "clean")],
                comment="Notch filter 60Hz 120Hz 180Hz",
            ),
            Cleanup(
                [Named(K.RECORDING, "raw"), Named(K.FILTERED_RECORDING, "band")],
                comment="Delete raw and band-passed recordings",
            ),
            Step(
                "ReReference",
                [Named(K.FILTERED_RECORDING, "clean")],
                params=ReReferenceParameters(reference="AVERAGE", sensor_types="EEG"),
                outputs=[(K.FILTERED_RECORDING, "clean")],
                comment="Re-reference EEG",
                overwrite=True,
            ),
        ],
    )

    evoked = Section(
        "Import recordings",
        [
            Step(
                "Epochs",
                [Named(K.FILTERED_RECORDING, "clean")],
                params=EpochParameters(event_name="2"),
                outputs=[(K.EPOCH_SET, "epochs_2")],
                comment="Import epochs around event 2",
            ),
            Step(
                "Average",
                [Named(K.EPOCH_SET, "epochs_2")],
                params=AverageParameters(),
                outputs=[(K.AVERAGE_RECORDING, "avg_2")],
                comment="Average by trial group",
            ),
            Snapshot("EEG ERP", Named(K.AVERAGE_RECORDING, "avg_2"), _time_series("EEG")),
            Snapshot(
                "EEG ERP (topography)",
                Named(K.AVERAGE_RECORDING, "avg_2"),
                _topography("EEG", params.latency),
            ),
            Snapshot("MEG ERF", Named(K.AVERAGE_RECORDING, "avg_2"), _time_series("MEG")),
            Snapshot(
                "MEG ERF (topography)",
                Named(K.AVERAGE_RECORDING, "avg_2"),
                _topography("MEG", params.latency),
            ),
        ],
    )

    noise = Section(
        "Noise covariance",
        [
            Step(
                "NoiseCovariance",
                [Named(K.EPOCH_SET, "epochs_2")],
                params=NoiseCovarianceParameters(),
                outputs=[(K.NOISE_COVARIANCE, "noise_cov")],
                comment="Noise covariance over the baseline",
            ),
        ],
    )

    forward = Section("Forward models", [Branch("Forward models", forward_variants(params))])

    merge = Section(
        "Merge dipoles",
        [
            Merge(
                ["EEG", "MEG"],
                "FEM DTI",
                stage_id="MergeDipoles" if params.merge_dipoles else None,
                comment="FEM DTI: EEG vs MEG",
            )
        ],
    )

    return Pipeline(
        "fem_charm",
        [anatomy, meshes, recordings, preprocessing, evoked, noise, forward, merge],
        description=" ".join(__doc__.split("\n\n")[0].split()),
    )
