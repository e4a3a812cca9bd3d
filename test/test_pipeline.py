import logging
import time

import numpy as np
import pytest

from headfactory.artifact import ArtifactKind as K
from headfactory.pipeline import (
    Branch,
    Cleanup,
    Latest,
    Merge,
    Named,
    Pipeline,
    PipelineAborted,
    PipelineContext,
    Section,
    Snapshot,
    Step,
    Upstream,
    Variant,
)
from headfactory.provenance import Status
from headfactory.reporting import JsonReporter
from headfactory.staging import InputMissing, OutputSpec
from headfactory.store import NotFound


def bem_variant(index: int, **kwargs) -> Variant:
    return Variant(
        f"V{index}",
        [
            Step(
                "GenerateBem",
                [Named(K.RAW_VOLUME, "T1")],
                outputs=[(K.BEM_LAYER_SET, f"bem_{index}")],
            ),
            Snapshot(f"bem {index}", Upstream(K.BEM_LAYER_SET)),
            Step(
                "GenerateBem",
                [Named(K.RAW_VOLUME, "T1")],
                params={"thickness": 5},
                outputs=[(K.BEM_LAYER_SET, f"bem_{index}_thick")],
            ),
        ],
        **kwargs,
    )


def failing_bem(failing_variant: str):
    def collaborator(context, inputs, params):
        if context.invocation.variant == failing_variant:
            raise RuntimeError("surfaces intersect")
        return [{"layers": {}}]

    return collaborator


@pytest.mark.parametrize("parallel", [1, 3])
def test_failed_variant_does_not_stop_siblings(override, store, t1, parallel):
    """With six variants where the third fails, the other five should still produce
    their outputs and the branch should report a partial failure."""
    executor = override(GenerateBem=failing_bem("V3"))
    context = PipelineContext(executor, "S1", parallel=parallel)
    branch = Branch("Forward models", [bem_variant(index) for index in range(1, 7)])

    outcome = branch.run(context)

    assert outcome.partial
    assert not outcome.succeeded
    assert outcome.failed_labels == ["V3"]
    assert [variant.label for variant in outcome.variants] == [f"V{i}" for i in range(1, 7)]
    for index in (1, 2, 4, 5, 6):
        store.find("S1", K.BEM_LAYER_SET, f"bem_{index}")
        store.find("S1", K.BEM_LAYER_SET, f"bem_{index}_thick")
    with pytest.raises(NotFound):
        store.find("S1", K.BEM_LAYER_SET, "bem_3")

    failed = outcome.variants[2]
    assert failed.status == Status.FAILED
    assert failed.failed_stage == "GenerateBem"
    assert "surfaces intersect" in failed.error
    # the rest of the chain was never attempted
    assert len(failed.invocation_ids) == 1
    assert context.branches == [outcome]


def test_all_variants_succeeding(executor, t1):
    context = PipelineContext(executor, "S1")
    outcome = Branch("BEM", [bem_variant(1), bem_variant(2)]).run(context)
    assert outcome.succeeded
    assert not outcome.partial
    assert outcome.failed_labels == []
    assert outcome.variants[0].output(K.BEM_LAYER_SET).name == "bem_1_thick"


def test_variant_outputs_are_isolated(executor, store, t1):
    """An Upstream selector only sees the outputs of its own chain, not a sibling's."""
    context = PipelineContext(executor, "S1")
    branch = Branch(
        "isolation",
        [
            Variant("first", [Step("GenerateBem", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.BEM_LAYER_SET, "bem_a")])]),
            Variant("second", [Snapshot("upstream bem", Upstream(K.BEM_LAYER_SET))]),
        ],
    )

    branch.run(context)

    snapshot = executor.log.snapshots[0]
    assert snapshot.ref is None
    assert snapshot.error is not None
    # ...but the store itself is shared
    assert Latest(K.BEM_LAYER_SET).resolve(context) == store.find("S1", K.BEM_LAYER_SET, "bem_a")
    with pytest.raises(NotFound):
        Upstream(K.BEM_LAYER_SET).resolve(context)


def crashing_reporter(artifact, payload):
    raise KeyError("layers")


@pytest.mark.parametrize("parallel", [1, 3])
def test_variant_raising_does_not_stop_siblings(executor, store, t1, parallel):
    """An error raised outside of the collaborator (here a snapshot reporter) should
    only fail the variant it happened in, and be recorded as a failed invocation."""
    variants = [bem_variant(index) for index in range(1, 7)]
    variants[2] = Variant(
        "V3",
        [
            Step("GenerateBem", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.BEM_LAYER_SET, "bem_3")]),
            Snapshot("bem 3", Upstream(K.BEM_LAYER_SET), reporter=crashing_reporter),
            Step("GenerateBem", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.BEM_LAYER_SET, "bem_3_thick")]),
        ],
    )
    context = PipelineContext(executor, "S1", parallel=parallel)

    outcome = Branch("BEM", variants).run(context)

    assert outcome.failed_labels == ["V3"]
    for index in (1, 2, 4, 5, 6):
        store.find("S1", K.BEM_LAYER_SET, f"bem_{index}_thick")
    store.find("S1", K.BEM_LAYER_SET, "bem_3")
    with pytest.raises(NotFound):
        store.find("S1", K.BEM_LAYER_SET, "bem_3_thick")

    failed = outcome.variants[2]
    assert failed.status == Status.FAILED
    assert failed.failed_stage == "Snapshot"
    assert "layers" in failed.error
    assert len(failed.invocation_ids) == 2
    recorded = executor.log.get_invocation(failed.invocation_ids[-1])
    assert recorded.status == Status.FAILED
    assert recorded.error_type == "KeyError"
    assert recorded.variant == "V3"


@pytest.mark.parametrize("parallel", [1, 3])
def test_variant_with_mistyped_parameters_does_not_stop_siblings(executor, store, t1, parallel):
    variants = [bem_variant(index) for index in range(1, 7)]
    variants[2] = Variant(
        "V3",
        [
            Step(
                "GenerateBem",
                [Named(K.RAW_VOLUME, "T1")],
                params={"nscalp": "lots"},
                outputs=[(K.BEM_LAYER_SET, "bem_3")],
            )
        ],
    )

    outcome = Branch("BEM", variants).run(PipelineContext(executor, "S1", parallel=parallel))

    assert outcome.failed_labels == ["V3"]
    assert outcome.variants[2].error is not None and "nscalp" in outcome.variants[2].error
    assert len(store.list("S1", K.BEM_LAYER_SET)) == 10


def test_parallel_variants_log_in_declaration_order(override, t1):
    """However the variants interleave, their invocation ids and log entries follow the
    order they were declared in."""

    def slow_bem(context, inputs, params):
        # the first variant finishes last
        time.sleep(0.05 * (4 - int(context.invocation.variant[1:])))
        return [{"layers": {}}]

    executor = override(GenerateBem=slow_bem)
    branch = Branch("BEM", [bem_variant(index) for index in (1, 2, 3)])

    outcome = branch.run(PipelineContext(executor, "S1", parallel=3))

    assert outcome.succeeded
    assert [(inv.variant, inv.id) for inv in executor.log.invocations[1:]] == [
        ("V1", "inv0002"),
        ("V1", "inv0003"),
        ("V2", "inv0004"),
        ("V2", "inv0005"),
        ("V3", "inv0006"),
        ("V3", "inv0007"),
    ]
    assert [entry.label for entry in executor.log.snapshots] == ["bem 1", "bem 2", "bem 3"]
    assert outcome.variants[0].invocation_ids == ["inv0002", "inv0003"]


# -- mutation gates --


@pytest.fixture()
def gated_branch(override, store):
    """A branch where one variant clears the tensors of a mesh the others consume,
    recording which mesh version each consumer saw."""
    seen = {}

    def consume(context, inputs, params):
        seen[context.invocation.variant] = inputs.one("mesh").ref.version
        return [{"tissues": []}]

    executor = override(MergeTissues=consume)
    store.put("S1", K.VOLUME_MESH, "fem_5", payload={"tensors": np.eye(3)})

    def consumer(name):
        return Step("MergeTissues", [Named(K.VOLUME_MESH, "fem_5")], outputs=[(K.VOLUME_MESH, name)])

    branch = Branch(
        "tensors",
        [
            Variant("A", [consumer("a")]),
            Variant("B", [consumer("b")]),
            Variant(
                "Gate",
                [
                    Step(
                        "ClearTensors",
                        [Named(K.VOLUME_MESH, "fem_5")],
                        outputs=[OutputSpec(K.VOLUME_MESH, "fem_5", overwrite=True)],
                    ),
                    Step("MergeTissues", [Upstream(K.VOLUME_MESH)], outputs=[(K.VOLUME_MESH, "gate")]),
                ],
            ),
            Variant("C", [consumer("c")]),
        ],
    )
    return executor, branch, seen


@pytest.mark.parametrize("parallel", [1, 4])
def test_mutation_gate_ordering(gated_branch, parallel):
    """Variants declared before the gate see the original mesh, variants after it see
    the cleared version, however many run at once."""
    executor, branch, seen = gated_branch
    outcome = branch.run(PipelineContext(executor, "S1", parallel=parallel))

    assert outcome.succeeded
    assert seen == {"A": 1, "B": 1, "Gate": 2, "C": 2}
    ids = {variant.label: variant.invocation_ids for variant in outcome.variants}
    assert max(ids["A"] + ids["B"]) < min(ids["Gate"])
    assert max(ids["Gate"]) < min(ids["C"])


def test_mutation_gate_runs_alone(gated_branch, caplog):
    executor, branch, seen = gated_branch
    assert [variant.exclusive() for variant in branch.variants] == [False, False, True, False]
    assert [[v.label for v in batch] for batch in branch._batches(None)] == [
        ["A", "B"],
        ["Gate"],
        ["C"],
    ]

    with caplog.at_level(logging.INFO):
        branch.run(PipelineContext(executor, "S1", parallel=4))
    assert "(gate) Gate contains a mutation gate, running it alone" in caplog.text


def test_unknown_stage_is_not_a_gate():
    assert not Variant("unknown", [Step("NotAStage")]).exclusive()


# -- linear pipelines --


def test_failing_step_aborts_pipeline(executor, store):
    pipeline = Pipeline(
        "aborting",
        [
            Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")]),
            Step("Bandpass", [Named(K.RECORDING, "raw")], outputs=[(K.FILTERED_RECORDING, "band")]),
            Step("GenerateBem", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.BEM_LAYER_SET, "bem")]),
        ],
    )

    with pytest.raises(PipelineAborted) as error:
        pipeline.execute(executor, "S1")

    assert error.value.invocation.stage_id == "Bandpass"
    assert isinstance(error.value.__cause__, InputMissing)
    assert [inv.stage_id for inv in executor.log.invocations] == ["ImportVolume", "Bandpass"]
    assert executor.log.invocations[1].status == Status.FAILED
    assert store.list(kind=K.BEM_LAYER_SET) == []


def test_sections_are_logged(executor):
    pipeline = Pipeline(
        "sections",
        [
            Section("Import anatomy", [Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")])]),
            Section("BEM", [Step("GenerateBem", [Upstream(K.RAW_VOLUME)], outputs=[(K.BEM_LAYER_SET, "bem")])]),
        ],
    )

    pipeline.execute(executor, "S1")

    assert pipeline.stage_ids() == ["ImportVolume", "GenerateBem"]
    assert [inv.section for inv in executor.log.invocations] == ["Import anatomy", "BEM"]
    assert "===== BEM =====" in executor.log.render(timestamps=False)


def test_section_label_is_restored(executor):
    pipeline = Pipeline(
        "sections",
        [
            Section("Import anatomy", [Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")])]),
            Step("GenerateBem", [Upstream(K.RAW_VOLUME)], outputs=[(K.BEM_LAYER_SET, "bem")]),
        ],
    )

    context = pipeline.execute(executor, "S1")

    assert [inv.section for inv in executor.log.invocations] == ["Import anatomy", None]
    assert context.section is None


def test_section_label_is_restored_when_aborting(executor):
    context = PipelineContext(executor, "S1", section="Outer")
    section = Section("Filters", [Step("Bandpass", [Named(K.RECORDING, "raw")], outputs=[(K.FILTERED_RECORDING, "band")])])

    with pytest.raises(PipelineAborted):
        section.run(context)

    assert executor.log.invocations[0].section == "Filters"
    assert context.section == "Outer"


def test_step_overwrite_flag(executor, store, t1):
    step = Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")], overwrite=True)
    result = step.run(PipelineContext(executor, "S1"))
    assert result.succeeded
    assert result.outputs[0].version == 2


def test_step_accepts_literal_refs(executor, t1):
    result = Step("GenerateBem", [t1], outputs=[(K.BEM_LAYER_SET, "bem")]).run(PipelineContext(executor, "S1"))
    assert result.invocation.inputs == [t1]


# -- snapshots and cleanups --


def test_snapshot_of_missing_artifact_does_not_raise(context):
    entry = Snapshot("Registration", Named(K.RECORDING, "raw")).run(context)
    assert entry.ref is None
    assert "raw" in entry.error
    assert context.log.snapshots == [entry]
    assert "unavailable" in entry.render()[0]


def test_snapshot_with_reporter(context, t1):
    def reporter(artifact, payload):
        return [JsonReporter({"modality": payload["modality"]}, name="t1_info")]

    entry = Snapshot("MRI", Named(K.RAW_VOLUME, "T1"), reporter=reporter).run(context)

    assert entry.ref == t1
    assert entry.description["name"] == "T1"
    assert entry.reportables[0].data == {"modality": "T1"}


def test_cleanup_removes_artifacts(context, store, t1):
    result = Cleanup([Named(K.RAW_VOLUME, "T1")], comment="free the T1").run(context)

    assert result.succeeded
    assert result.invocation.stage_id == "Cleanup"
    assert result.invocation.inputs == [t1]
    assert t1 not in store
    # provenance of the removed artifact is untouched
    assert context.log.invocations[0].outputs == [t1]


def test_cleanup_of_missing_artifact_aborts(executor):
    pipeline = Pipeline("cleanup", [Cleanup([Named(K.RECORDING, "raw")])])
    with pytest.raises(PipelineAborted):
        pipeline.execute(executor, "S1")
    assert executor.log.invocations[0].status == Status.FAILED


# -- merges --


@pytest.fixture()
def dipole_branch(override, store):
    store.put("S1", K.INVERSE_KERNEL, "kernel", payload={})
    store.put("S1", K.AVERAGE_RECORDING, "avg", payload={})

    def scan(context, inputs, params):
        if context.invocation.variant == "MEG broken":
            raise RuntimeError("no MEG channels")
        return [
            {
                "times": np.array([0.022]),
                "positions": np.zeros((1, 3)),
                "amplitudes": np.ones(1),
                "comment": context.invocation.variant,
            }
        ]

    def variant(label, group, key):
        return Variant(
            label,
            [
                Step(
                    "DipoleScanning",
                    [Named(K.INVERSE_KERNEL, "kernel"), Named(K.AVERAGE_RECORDING, "avg")],
                    outputs=[(K.DIPOLE_SET, label.replace(" ", "_"))],
                )
            ],
            group=group,
            key=key,
        )

    executor = override(DipoleScanning=scan)
    branch = Branch(
        "dipoles",
        [
            variant("EEG FEM", "EEG", "FEM"),
            variant("MEG FEM", "MEG", "FEM"),
            variant("EEG BEM", "EEG", "BEM"),
            variant("MEG broken", "MEG", "BEM"),
        ],
    )
    context = PipelineContext(executor, "S1")
    branch.run(context)
    return context


def test_merge_without_stage_is_skipped(dipole_branch):
    result = Merge(["EEG", "MEG"], "FEM").run(dipole_branch)

    assert result.status == Status.SKIPPED
    assert result.invocation.stage_id == "Merge"
    assert result.invocation.comment == "Merge DipoleSet: FEM, EEG vs MEG"
    assert dipole_branch.merges == [result]


def test_merge_combines_group_members(dipole_branch, store):
    result = Merge(["EEG", "MEG"], "FEM", stage_id="MergeDipoles").run(dipole_branch)

    assert result.succeeded
    assert result.outputs[0].name == "fem_eeg_meg"
    merged = store.load(result.outputs[0])
    assert merged["sources"] == ["EEG FEM", "MEG FEM"]
    assert len(merged["times"]) == 2


def test_merge_with_failed_member_is_skipped(dipole_branch, store):
    """A merge that can't find one of its members is logged but never raises."""
    result = Merge(["EEG", "MEG"], "BEM", stage_id="MergeDipoles").run(dipole_branch)

    assert result.status == Status.SKIPPED
    assert "did not succeed" in result.invocation.error
    assert store.list(kind=K.DIPOLE_SET) == [
        store.find("S1", K.DIPOLE_SET, "EEG_FEM"),
        store.find("S1", K.DIPOLE_SET, "MEG_FEM"),
        store.find("S1", K.DIPOLE_SET, "EEG_BEM"),
    ]


def test_merge_unknown_group(dipole_branch):
    result = Merge(["EEG", "ECOG"], "FEM", stage_id="MergeDipoles").run(dipole_branch)
    assert result.status == Status.SKIPPED
    assert "ECOG" in result.invocation.error


def test_branch_groups(dipole_branch):
    groups = dipole_branch.branches[0].groups()
    assert list(groups) == ["EEG", "MEG"]
    assert groups["EEG"].member("BEM").label == "EEG BEM"
    assert groups["MEG"].member("FEM").succeeded
    assert groups["EEG"].member("DTI") is None
    assert len(groups["MEG"].invocation_ids) == 2


# -- end to end --


def test_forward_models_on_merged_mesh(executor, store):
    """Meshing, merging tissues, and then two forward models on the merged mesh: the
    one asking for tensors fails since none were computed, the other one succeeds."""
    pipeline = Pipeline(
        "forward",
        [
            Step("ImportVolume", params={"path": "t1.raw"}, outputs=[(K.RAW_VOLUME, "T1")]),
            Step(
                "GenerateFemMesh",
                [Named(K.RAW_VOLUME, "T1")],
                outputs=[(K.VOLUME_MESH, "mesh1"), (K.SURFACE_MESH, "cortex")],
            ),
            Step("MergeTissues", [Named(K.VOLUME_MESH, "mesh1")], outputs=[(K.VOLUME_MESH, "mesh2")]),
            Step("ImportRecording", params={"path": "rec.fif"}, outputs=[(K.RECORDING, "raw")]),
            Branch(
                "forward models",
                [
                    Variant(
                        label,
                        [
                            Step(
                                "HeadModel",
                                [
                                    Named(K.SURFACE_MESH, "cortex"),
                                    Named(K.VOLUME_MESH, "mesh2"),
                                    Named(K.RECORDING, "raw"),
                                ],
                                params={"duneuro": {"use_tensor": use_tensor}},
                                outputs=[(K.HEAD_MODEL, label)],
                            )
                        ],
                    )
                    for label, use_tensor in (("fem_dti", True), ("fem_iso", False))
                ],
            ),
        ],
    )

    context = pipeline.execute(executor, "S1")

    mesh1 = store.find("S1", K.VOLUME_MESH, "mesh1")
    assert mesh1.version == 1
    assert len(store.load(mesh1)["tissues"]) == 12
    assert len(store.load(store.find("S1", K.VOLUME_MESH, "mesh2"))["tissues"]) == 5

    outcome = context.branches[0]
    assert outcome.failed_labels == ["fem_dti"]
    failed = executor.log.get_invocation(outcome.variants[0].invocation_ids[0])
    assert failed.error_type == "InputMissing"
    assert [ref.name for ref in store.list(kind=K.HEAD_MODEL)] == ["fem_iso"]
