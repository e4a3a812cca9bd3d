"""Declarations of every stage of the reference pipelines. Importing this package
registers them in ``headfactory.staging.STAGES``."""

from headfactory.stages import anatomy, recordings, sources  # noqa: F401
from headfactory.stages.anatomy import (  # noqa: F401
    BemParameters,
    ClearTensorsParameters,
    CoregisterParameters,
    DwiToDtiParameters,
    FemMeshParameters,
    FemTensorsParameters,
    ImportVolumeParameters,
    MergeTissuesParameters,
)
from headfactory.stages.recordings import (  # noqa: F401
    AverageParameters,
    BandpassParameters,
    EpochParameters,
    ImportRecordingParameters,
    NoiseCovarianceParameters,
    NotchParameters,
    PsdParameters,
    ReadEventsParameters,
    ReReferenceParameters,
)
from headfactory.stages.sources import (  # noqa: F401
    DipoleScanningParameters,
    DuneuroOptions,
    HeadModelParameters,
    InverseOptions,
    OpenMeegOptions,
)
