"""Classes describing the artifacts of a workspace: the enumerated artifact kinds,
the lightweight references passed between stages, and the immutable artifact
entries themselves."""

import copy
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from types import MappingProxyType
from typing import Any, Optional

import numpy as np


class ArtifactKind(Enum):
    RAW_VOLUME = "RawVolume"
    REGISTERED_VOLUME = "RegisteredVolume"
    TRACTOGRAPHY = "Tractography"
    SURFACE_MESH = "SurfaceMesh"
    VOLUME_MESH = "VolumeMesh"
    CONDUCTIVITY_TENSOR_FIELD = "ConductivityTensorField"
    BEM_LAYER_SET = "BEMLayerSet"
    RECORDING = "Recording"
    FILTERED_RECORDING = "FilteredRecording"
    POWER_SPECTRUM = "PowerSpectrum"
    EPOCH_SET = "EpochSet"
    AVERAGE_RECORDING = "AverageRecording"
    NOISE_COVARIANCE = "NoiseCovariance"
    HEAD_MODEL = "HeadModel"
    INVERSE_KERNEL = "InverseKernel"
    DIPOLE_SET = "DipoleSet"

    def __str__(self):
        return self.value


@dataclass(frozen=True)
class ArtifactRef:
    """A reference to one specific version of an artifact.

    References are plain values: they are captured when a stage is invoked and
    keep pointing at that exact version, even if the registry entry is later
    superseded (in which case resolving it raises ``NotFound`` rather than
    silently returning the newer version.)

    A reference is also tied to the store instance that issued it, so that it
    doesn't resolve in a later workspace that happens to reuse the same name.
    """

    workspace: str
    subject: str
    kind: ArtifactKind
    name: str
    version: int = 1
    store_id: str = field(default="", repr=False)

    def __str__(self):
        return f"{self.subject}/{self.kind.value}/{self.name}@{self.version}"

    def to_dict(self) -> dict:
        return {
            "workspace": self.workspace,
            "subject": self.subject,
            "kind": self.kind.value,
            "name": self.name,
            "version": self.version,
        }


@dataclass(frozen=True)
class Subject:
    """Logical owner of anatomical and recording data within a workspace."""

    name: str
    created: datetime = field(default_factory=datetime.now)


@dataclass(frozen=True)
class Artifact:
    """A named, typed, immutable-once-created data product.

    The payload itself is not part of the artifact, only an opaque handle to it
    that is owned by the artifact store (see ``ArtifactStore.load()``.)
    """

    ref: ArtifactRef
    parameters: MappingProxyType
    produced_by: Optional[str] = None
    """The id of the stage invocation that created this artifact. This is only an
    id: the invocation record itself lives in the provenance log."""
    note: Optional[str] = None
    """A transformation note, e.g. for a new version created by stripping a derived
    property from a previous one."""
    created: datetime = field(default_factory=datetime.now, compare=False)
    payload_handle: Any = field(default=None, compare=False, repr=False)

    @property
    def kind(self) -> ArtifactKind:
        return self.ref.kind

    @property
    def name(self) -> str:
        return self.ref.name

    @property
    def subject(self) -> str:
        return self.ref.subject

    @property
    def version(self) -> int:
        return self.ref.version

    def describe(self) -> dict:
        """A json-friendly summary, used by the registry dump and snapshot reportables."""
        return {
            **self.ref.to_dict(),
            "parameters": {key: _jsonable(value) for key, value in self.parameters.items()},
            "produced_by": self.produced_by,
            "note": self.note,
            "created": self.created.isoformat(),
        }


def freeze_parameters(parameters) -> MappingProxyType:
    """Deep copy a parameter mapping into a read-only view, so that nobody holding the
    original dictionary can change an artifact's parameters after the fact."""
    if parameters is None:
        parameters = {}
    elif hasattr(parameters, "as_dict"):
        parameters = parameters.as_dict()
    return MappingProxyType(copy.deepcopy(dict(parameters)))


def freeze_payload(payload):
    """Copy a payload and make any numpy arrays inside it read-only.

    Payloads in the store are shared between every stage that consumes them, so a
    collaborator that needs to "edit" one has to produce a copy. Attempting to write
    into a frozen array raises a ``ValueError``.
    """
    if isinstance(payload, np.ndarray):
        frozen = payload.copy()
        frozen.setflags(write=False)
        return frozen
    if isinstance(payload, dict):
        return {key: freeze_payload(value) for key, value in payload.items()}
    if isinstance(payload, list):
        return [freeze_payload(value) for value in payload]
    if isinstance(payload, tuple):
        return tuple(freeze_payload(value) for value in payload)
    return payload


def _jsonable(value):
    if isinstance(value, Enum):
        return value.value
    if isinstance(value, (list, tuple)):
        return [_jsonable(item) for item in value]
    if isinstance(value, dict):
        return {str(key): _jsonable(item) for key, item in value.items()}
    if isinstance(value, (str, int, float, bool)) or value is None:
        return value
    return str(value)
