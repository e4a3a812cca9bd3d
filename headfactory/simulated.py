"""In-process collaborators producing small, deterministic numpy payloads for every
stage of the reference pipelines.

These stand in for SimNIBS, BrainSuite, DUNEuro, OpenMEEG and the rest of the
external tooling, so that a pipeline can be run end to end (``headfactory
<pipeline> --simulate``) and tested without any of them installed. The numbers are
plausible in shape only.
"""

import hashlib

import numpy as np

from headfactory.reporting import LinePlotReporter
from headfactory.staging import Collaborators

SIMULATED = Collaborators()
"""The simulated collaborator table."""

SFREQ = 100.0
"""Sampling frequency of simulated recordings, in Hz."""
DURATION = 150.0
"""Length of simulated recordings, in seconds."""
EVENT_PERIOD = 0.5
N_SOURCES = 60
EEG_CHANNELS = [f"EEG{index:03d}" for index in range(1, 9)]
MEG_CHANNELS = [f"MEG{index:04d}" for index in range(111, 123)]
MEG_MAG_CHANNELS = MEG_CHANNELS[::3]


def _rng(context) -> np.random.Generator:
    """A generator seeded from the stage and its parameters, so that replaying a run
    produces identical payloads."""
    seed_source = f"{context.spec.stage_id}:{context.invocation.params_hash}"
    seed = int(hashlib.md5(seed_source.encode()).hexdigest()[:8], 16)
    return np.random.default_rng(seed)


def _channel_types(channels: list[str]) -> list[str]:
    types = []
    for channel in channels:
        if channel.startswith("EEG"):
            types.append("EEG")
        elif channel in MEG_MAG_CHANNELS:
            types.append("MEG MAG")
        else:
            types.append("MEG GRAD")
    return types


def _select_channels(channels: list[str], data_types: list[str]) -> np.ndarray:
    wanted = set(data_types)
    if "MEG" in wanted:
        wanted |= {"MEG GRAD", "MEG MAG"}
    return np.array(
        [index for index, kind in enumerate(_channel_types(channels)) if kind in wanted],
        dtype=int,
    )


def _recording_copy(recording: dict, **changes) -> dict:
    copied = {key: value for key, value in recording.items()}
    copied.update(changes)
    return copied


# -- anatomy --


@SIMULATED.implements("ImportVolume")
def import_volume(context, inputs, params):
    rng = _rng(context)
    return [
        {
            "modality": params.modality,
            "data": rng.random((16, 16, 16)),
            "affine": np.eye(4),
            "mni_normalized": params.mni_normalization != "none",
            "source": params.path,
        }
    ]


@SIMULATED.implements("Coregister")
def coregister(context, inputs, params):
    moving = inputs.one("moving").payload
    reference = inputs.one("reference")
    return [
        {
            "modality": moving["modality"],
            "data": np.array(moving["data"]),
            "affine": np.array(reference.payload["affine"]),
            "registered_to": reference.artifact.name,
            "method": params.method,
        }
    ]


@SIMULATED.implements("DwiToDti")
def dwi_to_dti(context, inputs, params):
    rng = _rng(context)
    eigenvalues = np.sort(rng.random((200, 3)), axis=1)[:, ::-1]
    return [{"eigenvalues": eigenvalues, "eigenvectors": np.tile(np.eye(3), (200, 1, 1))}]


@SIMULATED.implements("GenerateFemMesh")
def generate_fem_mesh(context, inputs, params):
    rng = _rng(context)
    n_nodes = 120
    n_elements = 200
    mesh = {
        "nodes": rng.normal(scale=0.08, size=(n_nodes, 3)),
        "elements": rng.integers(0, n_nodes, size=(n_elements, 4)),
        "tissue_ids": rng.integers(0, len(params.tissues), size=n_elements),
        "tissues": list(params.tissues),
        "tensors": None,
    }
    vertices = rng.normal(size=(N_SOURCES, 3))
    vertices = 0.07 * vertices / np.linalg.norm(vertices, axis=1, keepdims=True)
    cortex = {"vertices": vertices, "faces": rng.integers(0, N_SOURCES, size=(100, 3))}
    return [mesh, cortex]


@SIMULATED.implements("MergeTissues")
def merge_tissues(context, inputs, params):
    mesh = inputs.one("mesh").payload
    if len(params.mapping) != len(mesh["tissues"]):
        raise ValueError(
            "Mapping has %d labels for a mesh with %d tissues"
            % (len(params.mapping), len(mesh["tissues"]))
        )
    merged = params.merged_tissues()
    new_ids = np.array(
        [merged.index(label) if label else -1 for label in params.mapping], dtype=int
    )
    element_ids = new_ids[mesh["tissue_ids"]]
    keep = element_ids >= 0
    return [
        {
            "nodes": np.array(mesh["nodes"]),
            "elements": np.array(mesh["elements"][keep]),
            "tissue_ids": element_ids[keep],
            "tissues": merged,
            "tensors": None,
        }
    ]


@SIMULATED.implements("FemTensors")
def fem_tensors(context, inputs, params):
    mesh = inputs.one("mesh").payload
    if len(params.conductivities) != len(mesh["tissues"]):
        raise ValueError(
            "Got %d conductivities for a mesh with %d tissues"
            % (len(params.conductivities), len(mesh["tissues"]))
        )
    dti = inputs.one("dti")
    n_elements = len(mesh["tissue_ids"])
    tensors = np.zeros((n_elements, 3, 3))
    for element, tissue in enumerate(mesh["tissue_ids"]):
        sigma = params.conductivities[tissue]
        if params.isotropic[tissue] or dti is None:
            tensors[element] = sigma * np.eye(3)
        else:
            eigenvalues = dti.payload["eigenvalues"][element % len(dti.payload["eigenvalues"])]
            scaled = eigenvalues / eigenvalues.mean() * sigma
            # volume constraint keeps the geometric mean of the eigenvalues at sigma
            if params.aniso_method == "ema+vc":
                scaled = scaled * sigma / np.cbrt(np.prod(scaled))
            tensors[element] = np.diag(scaled)
    field = {"tensors": tensors, "conductivities": list(params.conductivities)}
    tensor_mesh = {key: value for key, value in mesh.items()}
    tensor_mesh["tensors"] = tensors
    return [field, tensor_mesh]


@SIMULATED.implements("ClearTensors")
def clear_tensors(context, inputs, params):
    mesh = inputs.one("mesh").payload
    cleared = {key: value for key, value in mesh.items()}
    cleared["tensors"] = None
    return [cleared]


@SIMULATED.implements("GenerateBem")
def generate_bem(context, inputs, params):
    rng = _rng(context)
    layers = {}
    for name, count, radius in (
        ("scalp", params.nscalp, 0.09),
        ("outer_skull", params.nouter, 0.085 - params.thickness / 1000),
        ("inner_skull", params.ninner, 0.08 - params.thickness / 1000),
    ):
        # keep the simulated surfaces small, whatever resolution is requested
        points = rng.normal(size=(min(count, 162), 3))
        layers[name] = radius * points / np.linalg.norm(points, axis=1, keepdims=True)
    return [{"layers": layers, "requested_vertices": [params.nscalp, params.nouter, params.ninner]}]


# -- recordings --


@SIMULATED.implements("ImportRecording")
def import_recording(context, inputs, params):
    rng = _rng(context)
    channels = EEG_CHANNELS + MEG_CHANNELS
    times = np.arange(int(DURATION * SFREQ)) / SFREQ
    data = rng.normal(scale=1e-6, size=(len(channels), len(times)))
    # evoked bursts after each stimulation
    stim = np.zeros(len(times))
    for onset in np.arange(1.0, DURATION - 1.0, EVENT_PERIOD):
        sample = int(onset * SFREQ)
        stim[sample : sample + 5] = 2
        burst = np.sin(2 * np.pi * 30 * np.arange(10) / SFREQ)
        data[:, sample + 2 : sample + 12] += 5e-6 * burst
    return [
        {
            "sfreq": SFREQ,
            "channels": channels,
            "channel_types": _channel_types(channels),
            "data": data,
            "stim": {"STI101": stim},
            "events": {},
            "source": params.path,
            "format": params.format,
        }
    ]


@SIMULATED.implements("ReadEvents")
def read_events(context, inputs, params):
    recording = inputs.one("recording").payload
    if params.stim_channel not in recording["stim"]:
        raise ValueError("No stimulation channel '%s'" % params.stim_channel)
    stim = recording["stim"][params.stim_channel]
    changes = np.flatnonzero(np.diff(stim) != 0) + 1
    events = {}
    for sample in changes:
        value = stim[sample]
        if value != 0:
            events.setdefault(str(int(value)), []).append(int(sample))
    events = {name: np.array(samples) for name, samples in events.items()}
    return [_recording_copy(recording, events=events)]


@SIMULATED.implements("ProjectChannels")
def project_channels(context, inputs, params):
    recording = inputs.one("recording").payload
    return [_recording_copy(recording, electrodes_projected=True)]


@SIMULATED.implements("Psd")
def psd(context, inputs, params):
    recording = inputs.one("recording").payload
    sfreq = recording["sfreq"]
    start, end = (int(bound * sfreq) for bound in params.time_window)
    data = recording["data"][:, start:end]
    window = int(params.win_length * sfreq)
    step = max(1, int(window * (1 - params.win_overlap / 100)))
    spectra = []
    for offset in range(0, data.shape[1] - window + 1, step):
        segment = data[:, offset : offset + window] * np.hanning(window)
        spectra.append(np.abs(np.fft.rfft(segment, axis=1)) ** 2 / (sfreq * window))
    freqs = np.fft.rfftfreq(window, 1 / sfreq)
    power = np.mean(spectra, axis=0)

    types = np.array(_channel_types(recording["channels"]))
    per_type = {kind: power[types == kind].mean(axis=0) for kind in sorted(set(types))}
    context.report(
        LinePlotReporter(
            y=per_type,
            x={kind: freqs for kind in per_type},
            xlabel="Frequency (Hz)",
            ylabel="Power",
            logy=True,
            name="psd",
            group="Pre-processing",
        )
    )
    return [
        {
            "freqs": freqs,
            "psd": power,
            "channels": list(recording["channels"]),
            "units": params.units,
        }
    ]


def _fft_filter(data: np.ndarray, sfreq: float, mask_function) -> np.ndarray:
    spectrum = np.fft.rfft(data, axis=1)
    freqs = np.fft.rfftfreq(data.shape[1], 1 / sfreq)
    spectrum[:, ~mask_function(freqs)] = 0
    return np.fft.irfft(spectrum, n=data.shape[1], axis=1)


@SIMULATED.implements("Bandpass")
def bandpass(context, inputs, params):
    recording = inputs.one("recording").payload
    filtered = _fft_filter(
        recording["data"],
        recording["sfreq"],
        lambda freqs: (freqs >= params.highpass) & (freqs <= params.lowpass),
    )
    return [_recording_copy(recording, data=filtered)]


@SIMULATED.implements("Notch")
def notch(context, inputs, params):
    recording = inputs.one("recording").payload

    def mask(freqs):
        keep = np.ones(len(freqs), dtype=bool)
        for frequency in params.frequencies:
            keep &= np.abs(freqs - frequency) > params.cutoff_width / 2
        return keep

    return [_recording_copy(recording, data=_fft_filter(recording["data"], recording["sfreq"], mask))]


@SIMULATED.implements("ReReference")
def re_reference(context, inputs, params):
    recording = inputs.one("recording").payload
    data = np.array(recording["data"])
    eeg = _select_channels(recording["channels"], [params.sensor_types])
    if len(eeg) > 0:
        data[eeg] -= data[eeg].mean(axis=0)
    return [_recording_copy(recording, data=data, reference=params.reference)]


@SIMULATED.implements("Epochs")
def epochs(context, inputs, params):
    recording = inputs.one("recording").payload
    if params.event_name not in recording["events"]:
        raise ValueError("No events named '%s' in the recording" % params.event_name)
    sfreq = recording["sfreq"]
    before = int(round(-params.epoch_time[0] * sfreq))
    after = int(round(params.epoch_time[1] * sfreq))
    window_start, window_end = (bound * sfreq for bound in params.time_window)
    samples = [
        sample
        for sample in recording["events"][params.event_name]
        if window_start <= sample <= window_end
        and sample - before >= 0
        and sample + after < recording["data"].shape[1]
    ]
    if len(samples) == 0:
        raise ValueError("No complete epochs in the time window")
    data = np.stack([recording["data"][:, sample - before : sample + after + 1] for sample in samples])
    return [
        {
            "data": data,
            "times": np.arange(-before, after + 1) / sfreq,
            "channels": list(recording["channels"]),
            "event": params.event_name,
        }
    ]


@SIMULATED.implements("Average")
def average(context, inputs, params):
    epochs = inputs.one("epochs").payload
    functions = {
        "mean": lambda data: data.mean(axis=0),
        "abs_mean": lambda data: np.abs(data).mean(axis=0),
        "rms": lambda data: np.sqrt((data**2).mean(axis=0)),
        "median": lambda data: np.median(data, axis=0),
    }
    return [
        {
            "data": functions[params.avg_func](epochs["data"]),
            "times": np.array(epochs["times"]),
            "channels": list(epochs["channels"]),
            "n_averaged": len(epochs["data"]),
        }
    ]


@SIMULATED.implements("NoiseCovariance")
def noise_covariance(context, inputs, params):
    epochs = inputs.one("epochs").payload
    times = epochs["times"]
    baseline = (times >= params.baseline[0]) & (times <= params.baseline[1])
    segments = epochs["data"][:, :, baseline]
    if params.dc_offset == "block":
        segments = segments - segments.mean(axis=2, keepdims=True)
    stacked = np.concatenate(list(segments), axis=1)
    return [{"cov": np.cov(stacked), "channels": list(epochs["channels"])}]


# -- sources --


@SIMULATED.implements("HeadModel")
def head_model(context, inputs, params):
    rng = _rng(context)
    cortex = inputs.one("sources").payload
    channels = inputs.one("channels").payload["channels"]
    geometry = inputs.one("geometry")
    if params.method == "duneuro" and params.duneuro.use_tensor:
        if geometry is None or geometry.payload.get("tensors") is None:
            raise ValueError("The FEM mesh has no conductivity tensors")
    data_types = ["EEG"] if params.modality == "EEG" else ["MEG"]
    selected = _select_channels(channels, data_types)
    n_sources = len(cortex["vertices"])
    return [
        {
            "gain": rng.normal(size=(len(selected), n_sources * 3)),
            "channels": [channels[index] for index in selected],
            "source_positions": np.array(cortex["vertices"]),
            "modality": params.modality,
            "method": params.method,
        }
    ]


@SIMULATED.implements("InverseSolution")
def inverse_solution(context, inputs, params):
    model = inputs.one("head_model").payload
    covariance = inputs.one("noise_covariance").payload
    selected = _select_channels(model["channels"], params.data_types)
    if len(selected) == 0:
        raise ValueError(
            "Head model (%s) has no channels of type %s" % (model["modality"], params.data_types)
        )
    gain = model["gain"][selected]
    cov_index = [covariance["channels"].index(model["channels"][index]) for index in selected]
    noise = covariance["cov"][np.ix_(cov_index, cov_index)]
    regularized = noise + params.noise_reg * np.trace(noise) / len(noise) * np.eye(len(noise))
    whitener = np.linalg.inv(np.linalg.cholesky(regularized))
    kernel = np.linalg.pinv(whitener @ gain) @ whitener
    return [
        {
            "kernel": kernel,
            "channels": [model["channels"][index] for index in selected],
            "source_positions": np.array(model["source_positions"]),
            "comment": params.comment,
        }
    ]


@SIMULATED.implements("DipoleScanning")
def dipole_scanning(context, inputs, params):
    kernel = inputs.one("kernel").payload
    data = inputs.one("data").payload
    times = data["times"]
    channel_index = [data["channels"].index(channel) for channel in kernel["channels"]]
    window = (times >= params.time_window[0] - 1e-9) & (times <= params.time_window[1] + 1e-9)
    if not window.any():
        # a single latency between two samples uses the closest sample
        window = np.abs(times - params.time_window[0]) == np.abs(times - params.time_window[0]).min()
    sources = kernel["kernel"] @ data["data"][channel_index][:, window]
    amplitudes = np.linalg.norm(sources.reshape(-1, 3, sources.shape[1]), axis=1)
    best = amplitudes.argmax(axis=0)
    return [
        {
            "times": times[window],
            "positions": kernel["source_positions"][best],
            "amplitudes": amplitudes[best, np.arange(len(best))],
            "comment": kernel["comment"],
        }
    ]


@SIMULATED.implements("MergeDipoles")
def merge_dipoles(context, inputs, params):
    dipoles = [item.payload for item in inputs.all("dipoles")]
    return [
        {
            "times": np.concatenate([item["times"] for item in dipoles]),
            "positions": np.concatenate([item["positions"] for item in dipoles]),
            "amplitudes": np.concatenate([item["amplitudes"] for item in dipoles]),
            "sources": [item["comment"] for item in dipoles],
        }
    ]
