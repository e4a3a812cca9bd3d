"""Classes for declaring a pipeline: an ordered list of steps, sections, snapshots,
cleanups, branches of independent variant chains, and the merge of their results.

A pipeline is only a declaration. Running it resolves every step's input
selectors against the store at the moment that step is invoked, so a reference
captured by an earlier step is never changed by anything that happens later.

Example:
    .. code-block:: python

        from headfactory.artifact import ArtifactKind as K
        from headfactory.pipeline import Branch, Named, Pipeline, Section, Step, Upstream, Variant

        pipeline = Pipeline(
            "example",
            [
                Section("Anatomy", [
                    Step("ImportVolume", params=ImportVolumeParameters(path="t1.nii"), outputs=[(K.RAW_VOLUME, "T1")]),
                    Step("GenerateFemMesh", [Named(K.RAW_VOLUME, "T1")], outputs=[(K.VOLUME_MESH, "fem_12")]),
                ]),
                Branch("Forward models", [
                    Variant("FEM EEG", [
                        Step("HeadModel", [Named(K.VOLUME_MESH, "fem_12"), ...], outputs=[(K.HEAD_MODEL, "fem_eeg")]),
                        Step("InverseSolution", [Upstream(K.HEAD_MODEL), ...], outputs=[(K.INVERSE_KERNEL, "fem_eeg")]),
                    ]),
                    ...
                ]),
            ],
        )
"""

import logging
from concurrent.futures import ThreadPoolExecutor
from dataclasses import dataclass, field, replace
from typing import Any, Callable, Optional

from headfactory import utils
from headfactory.artifact import ArtifactKind, ArtifactRef
from headfactory.provenance import SnapshotEntry, Status
from headfactory.staging import (
    InputMissing,
    OutputSpec,
    StageExecutor,
    StageResult,
    UnknownStage,
    get_stage_spec,
)
from headfactory.store import NotFound


class PipelineAborted(Exception):
    """A step outside of any branch failed, which stops the pipeline. The failing step's
    error is chained as ``__cause__``."""

    def __init__(self, message, invocation=None):
        super().__init__(message)
        self.invocation = invocation


# -- selectors --


@dataclass(frozen=True)
class Latest:
    """The most recently registered artifact of a kind for the subject."""

    kind: ArtifactKind

    def resolve(self, context: "PipelineContext") -> ArtifactRef:
        return context.store.latest(context.subject, self.kind)


@dataclass(frozen=True)
class Named:
    """The current version of a specific named artifact."""

    kind: ArtifactKind
    name: str

    def resolve(self, context: "PipelineContext") -> ArtifactRef:
        return context.store.find(context.subject, self.kind, self.name)


@dataclass(frozen=True)
class Upstream:
    """The most recent output of a kind produced earlier in the same chain (the linear
    part of the pipeline, or the current variant.)"""

    kind: ArtifactKind

    def resolve(self, context: "PipelineContext") -> ArtifactRef:
        for ref in reversed(context.chain):
            if ref.kind == self.kind:
                return ref
        raise NotFound("No earlier step in this chain produced a %s" % self.kind.value)


def resolve_selector(selector, context: "PipelineContext") -> ArtifactRef:
    if isinstance(selector, ArtifactRef):
        return selector
    return selector.resolve(context)


# -- execution state --


@dataclass
class PipelineContext:
    """Mutable state of one pipeline run, forked for every variant of a branch."""

    executor: StageExecutor
    subject: str
    section: Optional[str] = None
    variant: Optional[str] = None
    chain: list[ArtifactRef] = field(default_factory=list)
    """Outputs produced so far in this chain, in order."""
    branches: list["BranchOutcome"] = field(default_factory=list)
    merges: list[StageResult] = field(default_factory=list)
    parallel: int = 1

    @property
    def store(self):
        return self.executor.store

    @property
    def log(self):
        return self.executor.log

    def fork(self, variant: str) -> "PipelineContext":
        return PipelineContext(
            executor=self.executor,
            subject=self.subject,
            section=self.section,
            variant=variant,
            chain=list(self.chain),
            branches=self.branches,
            merges=self.merges,
            parallel=self.parallel,
        )


# -- elements --


class Step:
    """A single stage invocation.

    Args:
        stage_id (str): The registered stage to run.
        inputs (list): Selectors (or literal ``ArtifactRef`` s) for the inputs.
        params: The stage parameters, an instance of the stage's parameter class or a
            dictionary of options.
        outputs (list): ``OutputSpec`` s or ``(kind, name)`` tuples.
        comment (str): A human-readable label recorded on the invocation.
        overwrite (bool): Supersede existing artifacts with the same output names.
    """

    def __init__(
        self,
        stage_id: str,
        inputs: list = None,
        params: Any = None,
        outputs: list = None,
        comment: str = "",
        overwrite: bool = False,
    ):
        self.stage_id = stage_id
        self.inputs = list(inputs or [])
        self.params = params
        self.comment = comment
        self.outputs = []
        for output in outputs or []:
            if not isinstance(output, OutputSpec):
                output = OutputSpec(*output)
            if overwrite and not output.overwrite:
                output = OutputSpec(output.kind, output.name, True, output.note)
            self.outputs.append(output)

    def __repr__(self):
        return f"Step({self.stage_id!r}, comment={self.comment!r})"

    def stage_ids(self) -> list[str]:
        return [self.stage_id]

    def run(self, context: PipelineContext) -> StageResult:
        refs = []
        for selector in self.inputs:
            try:
                refs.append(resolve_selector(selector, context))
            except NotFound as e:
                error = InputMissing("Input %s could not be selected: %s" % (selector, e))
                logging.error("Stage %s could not start: %s" % (self.stage_id, error))
                return context.executor.record(
                    self.stage_id,
                    Status.FAILED,
                    inputs=refs,
                    error=error,
                    comment=self.comment,
                    subject=context.subject,
                    variant=context.variant,
                    section=context.section,
                )

        result = context.executor.invoke(
            self.stage_id,
            refs,
            parameters=self.params,
            outputs=self.outputs,
            comment=self.comment,
            subject=context.subject,
            variant=context.variant,
            section=context.section,
        )
        context.chain.extend(result.outputs)
        return result


class Snapshot:
    """A user-annotated look at an artifact, e.g. a registration check figure.

    Args:
        label (str): The title of the snapshot in the log and report.
        selector: Which artifact to snapshot.
        reporter (Callable): Optional function taking ``(artifact, payload)`` and
            returning a list of reportables to include in the report.
    """

    def __init__(self, label: str, selector, reporter: Callable = None, comment: str = ""):
        self.label = label
        self.selector = selector
        self.reporter = reporter
        self.comment = comment

    def stage_ids(self) -> list[str]:
        return []

    def run(self, context: PipelineContext) -> SnapshotEntry:
        entry = SnapshotEntry(
            self.label,
            comment=self.comment,
            variant=context.variant,
            section=context.section,
        )
        try:
            entry.ref = resolve_selector(self.selector, context)
            artifact = context.store.get(entry.ref)
            entry.description = artifact.describe()
            if self.reporter is not None:
                entry.reportables = list(
                    self.reporter(artifact, context.store.load(entry.ref))
                )
        except NotFound as e:
            # snapshots are informational, a missing artifact doesn't stop the run
            logging.warning("Snapshot '%s' unavailable: %s" % (self.label, e))
            entry.error = str(e)
        context.log.append(entry)
        logging.info("Snapshot '%s' %s" % (self.label, entry.ref))
        return entry


class Cleanup:
    """Explicitly remove intermediate artifacts that are no longer needed."""

    def __init__(self, selectors: list, comment: str = ""):
        self.selectors = list(selectors)
        self.comment = comment

    def stage_ids(self) -> list[str]:
        return []

    def run(self, context: PipelineContext) -> StageResult:
        refs = []
        try:
            for selector in self.selectors:
                ref = resolve_selector(selector, context)
                context.store.remove(ref)
                refs.append(ref)
        except NotFound as e:
            return context.executor.record(
                "Cleanup",
                Status.FAILED,
                inputs=refs,
                error=e,
                comment=self.comment,
                subject=context.subject,
                variant=context.variant,
                section=context.section,
            )
        logging.info("Removed %s" % ", ".join(str(ref) for ref in refs))
        return context.executor.record(
            "Cleanup",
            Status.SUCCEEDED,
            inputs=refs,
            comment=self.comment,
            subject=context.subject,
            variant=context.variant,
            section=context.section,
        )


class Section:
    """A titled group of elements, which becomes a header in the log and report."""

    def __init__(self, title: str, elements: list):
        self.title = title
        self.elements = list(elements)

    def stage_ids(self) -> list[str]:
        return _collect_stage_ids(self.elements)

    def run(self, context: PipelineContext):
        context.log.section(self.title)
        previous, context.section = context.section, self.title
        try:
            _run_linear(self.elements, context)
        finally:
            context.section = previous


# -- branches --


@dataclass
class VariantOutcome:
    label: str
    group: Optional[str] = None
    key: Optional[str] = None
    status: Status = Status.PENDING
    invocation_ids: list[str] = field(default_factory=list)
    outputs: list[ArtifactRef] = field(default_factory=list)
    failed_stage: Optional[str] = None
    error: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == Status.SUCCEEDED

    def output(self, kind: ArtifactKind) -> Optional[ArtifactRef]:
        """The last output of the given kind this variant produced."""
        for ref in reversed(self.outputs):
            if ref.kind == kind:
                return ref
        return None


@dataclass
class VariantGroup:
    """The variants of a branch sharing a group label (e.g. every EEG forward model),
    each identified by its comparison key (e.g. "FEM DTI".)"""

    label: str
    members: list[VariantOutcome] = field(default_factory=list)

    @property
    def invocation_ids(self) -> list[str]:
        return [id for member in self.members for id in member.invocation_ids]

    def member(self, key: str) -> Optional[VariantOutcome]:
        for member in self.members:
            if member.key == key:
                return member
        return None


@dataclass
class BranchOutcome:
    label: str
    variants: list[VariantOutcome] = field(default_factory=list)

    @property
    def succeeded(self) -> bool:
        return all(variant.succeeded for variant in self.variants)

    @property
    def partial(self) -> bool:
        """Some, but not all, variants succeeded."""
        return not self.succeeded and any(variant.succeeded for variant in self.variants)

    @property
    def failed_labels(self) -> list[str]:
        return [variant.label for variant in self.variants if not variant.succeeded]

    def groups(self) -> dict[str, VariantGroup]:
        groups = {}
        for variant in self.variants:
            if variant.group is None:
                continue
            groups.setdefault(variant.group, VariantGroup(variant.group))
            groups[variant.group].members.append(variant)
        return groups


class Variant:
    """One chain of steps within a branch.

    Args:
        label (str): Human-readable comment identifying the variant, e.g. "DUNEuro FEM EEG DTI".
        steps (list): The chain, each step typically consuming the previous one's output
            through an ``Upstream`` selector.
        group (str): The variant group label used for merging (e.g. "EEG".)
        key (str): The comparison key within the group (e.g. "FEM DTI".)
    """

    def __init__(self, label: str, steps: list, group: str = None, key: str = None):
        self.label = label
        self.steps = list(steps)
        self.group = group
        self.key = key

    def stage_ids(self) -> list[str]:
        return _collect_stage_ids(self.steps)

    def exclusive(self, registry: dict = None) -> bool:
        """Whether this variant contains a mutation gate, which means no other variant
        may run concurrently with it."""
        for stage_id in self.stage_ids():
            try:
                if get_stage_spec(stage_id, registry).mutation_gate:
                    return True
            except UnknownStage:
                # an unknown stage fails at invocation, not here
                continue
        return False

    def invocation_budget(self) -> int:
        """How many invocations this variant records at most when every step runs."""
        return len([step for step in self.steps if isinstance(step, (Step, Cleanup))])

    def _record_error(self, step, error: Exception, context: PipelineContext) -> StageResult:
        """Anything a step raises instead of returning a failed result (e.g. a snapshot
        reporter that crashes) fails this variant only, as a failed invocation."""
        stage_id = getattr(step, "stage_id", type(step).__name__)
        logging.exception("Variant '%s' raised in %s" % (self.label, stage_id))
        return context.executor.record(
            stage_id,
            Status.FAILED,
            error=error,
            comment=getattr(step, "comment", ""),
            subject=context.subject,
            variant=context.variant,
            section=context.section,
        )

    def run(self, context: PipelineContext) -> VariantOutcome:
        context = context.fork(self.label)
        outcome = VariantOutcome(self.label, self.group, self.key, Status.RUNNING)
        logging.info("(variant) %s" % self.label)
        if context.parallel <= 1:
            utils.set_logging_prefix(f"[{self.label}] ")
        try:
            for step in self.steps:
                try:
                    result = step.run(context)
                except Exception as e:
                    result = self._record_error(step, e, context)
                if not isinstance(result, StageResult):
                    continue
                outcome.invocation_ids.append(result.invocation.id)
                outcome.outputs.extend(result.outputs)
                if not result.succeeded:
                    outcome.status = result.status
                    outcome.failed_stage = result.invocation.stage_id
                    outcome.error = result.invocation.error
                    logging.warning(
                        "Variant '%s' stopped at %s: %s"
                        % (self.label, outcome.failed_stage, outcome.error)
                    )
                    return outcome
        finally:
            if context.parallel <= 1:
                utils.set_logging_prefix("")
        outcome.status = Status.SUCCEEDED
        return outcome


class Branch:
    """Independent variant chains sharing the same upstream artifacts.

    A failing variant only stops itself: its siblings still run, and the branch
    reports which variants failed. With ``parallel`` above 1 (or overridden by the
    run) the variants run in a thread pool, except that a variant containing a
    mutation gate runs alone, after every earlier variant and before every later one.
    """

    def __init__(self, label: str, variants: list[Variant], parallel: int = None):
        self.label = label
        self.variants = list(variants)
        self.parallel = parallel

    def stage_ids(self) -> list[str]:
        return _collect_stage_ids(self.variants)

    def _batches(self, registry) -> list[list[Variant]]:
        batches = [[]]
        for variant in self.variants:
            if variant.exclusive(registry):
                batches.append([variant])
                batches.append([])
            else:
                batches[-1].append(variant)
        return [batch for batch in batches if len(batch) > 0]

    def run(self, context: PipelineContext) -> BranchOutcome:
        workers = self.parallel if self.parallel is not None else context.parallel
        outcome = BranchOutcome(self.label)
        logging.info("(branch) %s - %d variants" % (self.label, len(self.variants)))

        if workers <= 1:
            for variant in self.variants:
                outcome.variants.append(variant.run(context))
        else:
            context = replace(context, parallel=workers)
            registry = context.executor.registry
            for batch in self._batches(registry):
                if len(batch) == 1:
                    if batch[0].exclusive(registry):
                        logging.info(
                            "(gate) %s contains a mutation gate, running it alone"
                            % batch[0].label
                        )
                    outcome.variants.append(batch[0].run(context))
                    continue
                logs = [context.log.buffered(variant.invocation_budget()) for variant in batch]
                try:
                    with ThreadPoolExecutor(max_workers=workers) as pool:
                        futures = [
                            pool.submit(
                                variant.run,
                                replace(context, executor=context.executor.with_log(log)),
                            )
                            for variant, log in zip(batch, logs)
                        ]
                        # results are collected in declaration order, not completion order
                        for future in futures:
                            outcome.variants.append(future.result())
                finally:
                    for log in logs:
                        log.flush()

        if outcome.succeeded:
            logging.info("Branch '%s' complete" % self.label)
        else:
            logging.warning(
                "Branch '%s' partially failed, failed variants: %s"
                % (self.label, outcome.failed_labels)
            )
        context.branches.append(outcome)
        return outcome


class Merge:
    """Combine the results of variants from two or more groups that share a comparison
    key (e.g. the "FEM DTI" dipoles of the EEG and MEG groups.)

    Without a ``stage_id`` the merge is a placeholder, recorded as skipped. A merge
    that fails or can't find what it needs is logged, but never stops the run.
    """

    def __init__(
        self,
        groups: list[str],
        key: str,
        kind: ArtifactKind = ArtifactKind.DIPOLE_SET,
        stage_id: str = None,
        output_name: str = None,
        params: Any = None,
        comment: str = "",
    ):
        self.groups = list(groups)
        self.key = key
        self.kind = kind
        self.stage_id = stage_id
        self.output_name = output_name
        self.params = params
        self.comment = comment or f"Merge {self.kind.value}: {key}, {' vs '.join(groups)}"

    def stage_ids(self) -> list[str]:
        return [self.stage_id] if self.stage_id is not None else []

    def select(self, context: PipelineContext) -> list[ArtifactRef]:
        groups = {}
        for branch in context.branches:
            for label, group in branch.groups().items():
                groups.setdefault(label, VariantGroup(label))
                groups[label].members.extend(group.members)

        refs = []
        for label in self.groups:
            if label not in groups:
                raise NotFound("No variant group '%s'" % label)
            member = groups[label].member(self.key)
            if member is None:
                raise NotFound("Variant group '%s' has no '%s' member" % (label, self.key))
            if not member.succeeded:
                raise NotFound(
                    "Variant '%s' did not succeed (%s)" % (member.label, member.status.value)
                )
            ref = member.output(self.kind)
            if ref is None:
                raise NotFound("Variant '%s' produced no %s" % (member.label, self.kind.value))
            refs.append(ref)
        return refs

    def run(self, context: PipelineContext) -> StageResult:
        record_args = dict(
            comment=self.comment,
            subject=context.subject,
            section=context.section,
        )
        if self.stage_id is None:
            logging.info("Merge '%s' has no merge stage, skipping" % self.comment)
            result = context.executor.record("Merge", Status.SKIPPED, **record_args)
            context.merges.append(result)
            return result

        try:
            refs = self.select(context)
        except NotFound as e:
            logging.warning("Merge '%s' skipped: %s" % (self.comment, e))
            result = context.executor.record(
                self.stage_id, Status.SKIPPED, error=e, **record_args
            )
            context.merges.append(result)
            return result

        output_name = self.output_name or utils.slugify(
            f"{self.key} {' '.join(self.groups)}"
        )
        result = context.executor.invoke(
            self.stage_id,
            refs,
            parameters=self.params,
            outputs=[OutputSpec(self.kind, output_name)],
            **record_args,
        )
        if not result.succeeded:
            logging.warning("Merge '%s' failed: %s" % (self.comment, result.invocation.error))
        context.merges.append(result)
        return result


# -- pipeline --


def _collect_stage_ids(elements) -> list[str]:
    stage_ids = []
    for element in elements:
        for stage_id in element.stage_ids():
            if stage_id not in stage_ids:
                stage_ids.append(stage_id)
    return stage_ids


def _run_linear(elements, context: PipelineContext):
    for element in elements:
        result = element.run(context)
        if isinstance(element, (Step, Cleanup)) and not result.succeeded:
            error = PipelineAborted(
                "Step %s failed: %s" % (result.invocation.stage_id, result.invocation.error),
                invocation=result.invocation,
            )
            raise error from result.error


class Pipeline:
    """A named, ordered list of elements (steps, sections, snapshots, cleanups,
    branches, and merges.)"""

    def __init__(self, name: str, elements: list, description: str = ""):
        self.name = name
        self.elements = list(elements)
        self.description = description

    def stage_ids(self) -> list[str]:
        """Every stage id this pipeline may invoke."""
        return _collect_stage_ids(self.elements)

    def run(self, context: PipelineContext) -> PipelineContext:
        """Run every element in order.

        Raises:
            PipelineAborted: if a step outside of a branch fails. Branch and merge
                failures are recorded in the context but don't raise.
        """
        _run_linear(self.elements, context)
        return context

    def execute(self, executor: StageExecutor, subject: str, parallel: int = 1) -> PipelineContext:
        """Convenience for running the pipeline with a fresh context."""
        context = PipelineContext(executor, subject, parallel=parallel)
        return self.run(context)
