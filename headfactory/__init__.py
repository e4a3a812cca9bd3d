# flake8: noqa

# make all submodules directly accessible from a single headfactory import
from headfactory import (
    artifact,
    caching,
    driver,
    hashing,
    params,
    pipeline,
    provenance,
    reporting,
    staging,
    stages,
    store,
    utils,
    workspace,
)

# make super important things accessible directly off of the top level module
from headfactory.artifact import Artifact, ArtifactKind, ArtifactRef
from headfactory.driver import CapabilityUnavailable, run_pipeline
from headfactory.hashing import set_hash_functions
from headfactory.params import InvalidParameters, StageParameters, option
from headfactory.pipeline import (
    Branch,
    Cleanup,
    Latest,
    Merge,
    Named,
    Pipeline,
    PipelineAborted,
    Section,
    Snapshot,
    Step,
    Upstream,
    Variant,
)
from headfactory.staging import (
    Collaborators,
    InputMissing,
    InputTypeMismatch,
    StageExecutionError,
    StageExecutor,
    UnknownStage,
)
from headfactory.store import ArtifactStore, DuplicateArtifact, NotFound
from headfactory.workspace import Workspace

__version__ = "0.1.0"
