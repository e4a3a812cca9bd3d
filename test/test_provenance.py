import pytest

from headfactory.artifact import ArtifactKind as K
from headfactory.pipeline import Named, Pipeline, Section, Snapshot, Step
from headfactory.provenance import InvocationEntry, ProvenanceLog, Status
from headfactory.simulated import SIMULATED
from headfactory.staging import StageExecutor
from headfactory.store import ArtifactStore


def small_pipeline():
    return Pipeline(
        "small",
        [
            Section(
                "Anatomy",
                [
                    Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")], comment="T1"),
                    Snapshot("MRI", Named(K.RAW_VOLUME, "T1")),
                    Step("GenerateBem", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.BEM_LAYER_SET, "bem")]),
                ],
            ),
        ],
    )


def replay(path=None) -> ProvenanceLog:
    store = ArtifactStore("replay")
    store.add_subject("S1")
    log = ProvenanceLog(path)
    small_pipeline().execute(StageExecutor(store, log, SIMULATED), "S1")
    return log


def test_invocation_ids_are_sequential(log):
    ids = [log.next_invocation_id() for _ in range(3)]
    assert ids == ["inv0001", "inv0002", "inv0003"]


def test_replay_renders_identically():
    """Without timestamps, the rendering should only depend on what ran with which
    parameters."""
    first = replay().render(timestamps=False)
    second = replay().render(timestamps=False)

    assert first == second
    assert "[inv0001] ImportVolume - Succeeded (T1)" in first
    assert "[snapshot] MRI: S1/RawVolume/T1@1" in first
    assert "outputs: S1/BEMLayerSet/bem@1" in first


def test_render_with_timestamps_includes_start():
    log = replay()
    start = log.invocations[0].start.isoformat(timespec="seconds")
    assert start in log.render()
    assert start not in log.render(timestamps=False)


def test_failed_invocations_render_error(log):
    entry = InvocationEntry("inv0001", "Bandpass", subject="S1")
    entry.fail(ValueError("highpass above lowpass"))
    log.append(entry)

    rendered = log.render(timestamps=False)
    assert "[inv0001] Bandpass - Failed" in rendered
    assert "error:   ValueError: highpass above lowpass" in rendered
    assert log.failed() == [entry]


def test_cancelled_counts_as_failed(log):
    entry = InvocationEntry("inv0001", "HeadModel")
    entry.fail(KeyboardInterrupt(), Status.CANCELLED)
    skipped = InvocationEntry("inv0002", "Merge", status=Status.SKIPPED)
    log.append(entry)
    log.append(skipped)
    assert log.failed() == [entry]


def test_persistent_log_writes_json_lines(tmp_path):
    path = str(tmp_path / "nested" / "provenance.jsonl")
    log = replay(path)

    entries = ProvenanceLog.read_entries(path)

    assert len(entries) == len(log)
    assert [entry["type"] for entry in entries] == ["section", "invocation", "snapshot", "invocation"]
    assert entries[1]["stage_id"] == "ImportVolume"
    assert entries[1]["outputs"][0]["name"] == "T1"
    assert entries[1]["parameters"]["path"] == "'t1.raw'"
    assert entries[3]["inputs"][0]["kind"] == "RawVolume"


def test_to_dataframe():
    df = replay().to_dataframe()

    assert list(df["id"]) == ["inv0001", "inv0002"]
    assert list(df["stage"]) == ["ImportVolume", "GenerateBem"]
    assert list(df["section"]) == ["Anatomy", "Anatomy"]
    assert list(df["status"]) == ["Succeeded", "Succeeded"]
    assert df["inputs"][0] == "-"


def test_empty_dataframe_has_columns(log):
    df = log.to_dataframe()
    assert len(df) == 0
    assert "params_hash" in df.columns


def test_get_invocation():
    log = replay()
    assert log.get_invocation("inv0002").stage_id == "GenerateBem"
    with pytest.raises(KeyError):
        log.get_invocation("inv0100")
