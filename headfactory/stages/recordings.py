"""Stages for MEG/EEG recordings: import, events, pre-processing, epoching, averaging
and noise covariance."""

from dataclasses import dataclass

from headfactory.artifact import ArtifactKind as K
from headfactory.params import InvalidParameters, StageParameters, option
from headfactory.staging import InputSlot, StageSpec, register_stage

SENSOR_TYPES = ("MEG", "EEG", "MEG GRAD", "MEG MAG", "ECOG", "SEEG")


def _check_window(name: str, window: list):
    if len(window) != 2 or window[0] > window[1]:
        raise InvalidParameters("%s must be a [start, end] window, got %s" % (name, window))


def _check_sensor_types(sensor_types: str):
    for sensor_type in sensor_types.split(","):
        if sensor_type.strip() not in SENSOR_TYPES:
            raise InvalidParameters(
                "Unknown sensor type '%s', expected any of %s"
                % (sensor_type.strip(), list(SENSOR_TYPES))
            )


@dataclass
class ImportRecordingParameters(StageParameters):
    path: str = None
    format: str = option("FIF", choices=("FIF", "CTF", "4D", "EDF", "BRAINVISION"))
    channel_replace: bool = False
    channel_align: bool = True
    """Automatic registration with the digitized head points."""
    event_mode: str = option("value", choices=("value", "bit", "ignore"))

    def validate(self):
        super().validate()
        if not self.path:
            raise InvalidParameters("ImportRecording needs a 'path' to link")


@dataclass
class ReadEventsParameters(StageParameters):
    stim_channel: str = "STI101"
    track_mode: str = option("value", choices=("value", "bit", "ttl", "rttl"))
    zero: bool = False


@dataclass
class PsdParameters(StageParameters):
    """Welch power spectrum density."""

    time_window: list[float] = option([18, 148.999])
    win_length: float = 5
    """Window length in seconds."""
    win_overlap: float = 50
    """Window overlap in percent."""
    units: str = option("physical", choices=("physical", "normalized", "db"))
    sensor_types: str = "MEG, EEG"

    def validate(self):
        super().validate()
        _check_window("time_window", self.time_window)
        _check_sensor_types(self.sensor_types)
        if not 0 <= self.win_overlap < 100:
            raise InvalidParameters("win_overlap must be a percentage below 100")


@dataclass
class BandpassParameters(StageParameters):
    sensor_types: str = "MEG, EEG"
    highpass: float = 20
    lowpass: float = 250
    attenuation: str = option("strict", choices=("strict", "relax"))
    version: str = option("2019", choices=("2019", "2016", "2008"))
    mirror: bool = False

    def validate(self):
        super().validate()
        _check_sensor_types(self.sensor_types)
        if self.lowpass and self.highpass and self.highpass >= self.lowpass:
            raise InvalidParameters(
                "highpass (%s) must be below lowpass (%s)" % (self.highpass, self.lowpass)
            )


@dataclass
class NotchParameters(StageParameters):
    sensor_types: str = "MEG, EEG"
    frequencies: list[float] = option([60, 120, 180])
    cutoff_width: float = 2

    def validate(self):
        super().validate()
        _check_sensor_types(self.sensor_types)
        if len(self.frequencies) == 0:
            raise InvalidParameters("Notch filter needs at least one frequency")


@dataclass
class ReReferenceParameters(StageParameters):
    reference: str = option("AVERAGE", choices=("AVERAGE", "LOCAL AVERAGE", "LAPLACIAN"))
    sensor_types: str = "EEG"


@dataclass
class EpochParameters(StageParameters):
    event_name: str = "2"
    time_window: list[float] = option([18, 148.999])
    epoch_time: list[float] = option([-0.1, 0.2])
    ignore_short: bool = True
    use_ssp: bool = True

    def validate(self):
        super().validate()
        _check_window("time_window", self.time_window)
        _check_window("epoch_time", self.epoch_time)


@dataclass
class AverageParameters(StageParameters):
    avg_type: str = option(
        "trial_group",
        choices=("everything", "subject", "condition", "trial_group"),
    )
    avg_func: str = option("mean", choices=("mean", "abs_mean", "rms", "median"))
    weighted: bool = False
    keep_events: bool = False


@dataclass
class NoiseCovarianceParameters(StageParameters):
    baseline: list[float] = option([-0.1, -0.01])
    sensor_types: str = "MEG, EEG"
    dc_offset: str = option("block", choices=("block", "all", "none"))
    """Remove the DC offset block by block, to avoid effects of slow shifts in the data."""
    replace_file: bool = True

    def validate(self):
        super().validate()
        _check_window("baseline", self.baseline)
        _check_sensor_types(self.sensor_types)


RECORDING_KINDS = (K.RECORDING, K.FILTERED_RECORDING)

IMPORT_RECORDING = register_stage(
    StageSpec(
        "ImportRecording",
        inputs=(),
        outputs=(K.RECORDING,),
        parameters=ImportRecordingParameters,
        description="Link a raw MEG/EEG file and register its sensors with the head points.",
    )
)

READ_EVENTS = register_stage(
    StageSpec(
        "ReadEvents",
        inputs=(InputSlot("recording", (K.RECORDING,)),),
        outputs=(K.RECORDING,),
        parameters=ReadEventsParameters,
        description="Read the events from a stimulation channel.",
        inherit_parameters=True,
        output_note="events read from stimulation channel",
    )
)

PROJECT_CHANNELS = register_stage(
    StageSpec(
        "ProjectChannels",
        inputs=(
            InputSlot("recording", (K.RECORDING,)),
            InputSlot("head", (K.SURFACE_MESH, K.BEM_LAYER_SET), optional=True),
        ),
        outputs=(K.RECORDING,),
        parameters=None,
        description="Project the EEG electrodes onto the scalp.",
        inherit_parameters=True,
        output_note="electrodes projected on scalp",
    )
)

PSD = register_stage(
    StageSpec(
        "Psd",
        inputs=(InputSlot("recording", RECORDING_KINDS),),
        outputs=(K.POWER_SPECTRUM,),
        parameters=PsdParameters,
        description="Estimate the power spectrum density (Welch).",
    )
)

BANDPASS = register_stage(
    StageSpec(
        "Bandpass",
        inputs=(InputSlot("recording", RECORDING_KINDS),),
        outputs=(K.FILTERED_RECORDING,),
        parameters=BandpassParameters,
        description="Band-pass filter the recordings.",
    )
)

NOTCH = register_stage(
    StageSpec(
        "Notch",
        inputs=(InputSlot("recording", RECORDING_KINDS),),
        outputs=(K.FILTERED_RECORDING,),
        parameters=NotchParameters,
        description="Remove line noise and its harmonics.",
    )
)

RE_REFERENCE = register_stage(
    StageSpec(
        "ReReference",
        inputs=(InputSlot("recording", (K.FILTERED_RECORDING,)),),
        outputs=(K.FILTERED_RECORDING,),
        parameters=ReReferenceParameters,
        description="Re-reference the EEG.",
        inherit_parameters=True,
    )
)

EPOCHS = register_stage(
    StageSpec(
        "Epochs",
        inputs=(InputSlot("recording", RECORDING_KINDS),),
        outputs=(K.EPOCH_SET,),
        parameters=EpochParameters,
        description="Import the epochs around an event.",
    )
)

AVERAGE = register_stage(
    StageSpec(
        "Average",
        inputs=(InputSlot("epochs", (K.EPOCH_SET,)),),
        outputs=(K.AVERAGE_RECORDING,),
        parameters=AverageParameters,
        description="Average the epochs.",
    )
)

NOISE_COVARIANCE = register_stage(
    StageSpec(
        "NoiseCovariance",
        inputs=(InputSlot("epochs", (K.EPOCH_SET,)),),
        outputs=(K.NOISE_COVARIANCE,),
        parameters=NoiseCovarianceParameters,
        description="Compute the noise covariance over the pre-stimulus baseline.",
    )
)
