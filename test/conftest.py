import os

import pytest
from pytest_mock import mocker  # noqa: F401 -- flake8 doesn't see it's used as fixture

import headfactory.stages  # noqa: F401 -- registers the stage contracts
from headfactory.artifact import ArtifactKind as K
from headfactory.pipeline import PipelineContext
from headfactory.provenance import ProvenanceLog
from headfactory.simulated import SIMULATED
from headfactory.staging import Collaborators, StageExecutor
from headfactory.store import ArtifactStore


def pytest_configure(config):
    config.addinivalue_line(
        "markers", "noautofixt: don't patch the configuration for this test"
    )


@pytest.fixture()
def configuration(tmp_path):
    config = {
        "pipelines_module_name": "headfactory.pipelines",
        "workspaces_path": str(tmp_path / "data" / "workspaces"),
        "logs_path": str(tmp_path / "logs"),
        "reports_path": str(tmp_path / "reports"),
        "report_css_path": str(tmp_path / "reports" / "style.css"),
    }
    return config


@pytest.fixture(autouse=True)
def configured(request, mocker, configuration):  # noqa: F811 -- mocker has to be passed in as fixture
    """Point every configured path at a temporary directory."""
    if "noautofixt" in request.keywords:
        yield None
        return
    mock = mocker.patch("headfactory.utils.get_configuration")
    mock.return_value = configuration
    yield configuration


@pytest.fixture()
def store():
    store = ArtifactStore("test")
    store.add_subject("S1")
    return store


@pytest.fixture()
def persistent_store(tmp_path):
    store = ArtifactStore("test", str(tmp_path / "artifacts"))
    store.add_subject("S1")
    return store


@pytest.fixture()
def log():
    return ProvenanceLog()


@pytest.fixture()
def executor(store, log):
    return StageExecutor(store, log, SIMULATED)


@pytest.fixture()
def context(executor):
    return PipelineContext(executor, "S1")


@pytest.fixture()
def override(executor):
    """Replace some of the simulated collaborators of the executor."""

    def apply(**collaborators):
        executor.collaborators = SIMULATED.merged(Collaborators(collaborators))
        return executor

    return apply


@pytest.fixture()
def t1(executor):
    """A raw T1 volume registered through the executor."""
    result = executor.invoke(
        "ImportVolume",
        parameters={"path": "t1.raw", "modality": "T1"},
        outputs=[(K.RAW_VOLUME, "T1")],
        subject="S1",
    )
    result.raise_for_status()
    return result.outputs[0]


@pytest.fixture()
def sample_fem(tmp_path):
    """An (empty file) copy of the sample_fem dataset layout."""
    from headfactory.pipelines.fem_charm import FemCharmParameters

    params = FemCharmParameters(input_dir=str(tmp_path / "inputs"))
    for path in params.input_files():
        os.makedirs(os.path.dirname(path), exist_ok=True)
        with open(path, "w") as outfile:
            outfile.write("")
    return params
