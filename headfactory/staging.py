"""The stage executor: stage contracts, the collaborator table, and the machinery that
validates, runs, and records a single stage invocation.

A stage is declared with a :code:`StageSpec` (what it consumes, what it can produce,
and which parameter class configures it) and implemented by an external
"collaborator", any callable registered for the stage id in a :code:`Collaborators`
table. The executor never calls a collaborator until every local check has passed,
and registers a stage's outputs all at once, so a failed stage never leaves
partial results in the store.
"""

import copy
import logging
import os
import subprocess
import threading
import time
from dataclasses import dataclass, field
from datetime import datetime
from typing import Any, Callable, Optional, Union

import psutil

from headfactory import hashing, utils
from headfactory.artifact import Artifact, ArtifactKind, ArtifactRef
from headfactory.params import InvalidParameters, StageParameters
from headfactory.provenance import InvocationEntry, ProvenanceLog, Status
from headfactory.store import (
    ArtifactStore,
    DuplicateArtifact,
    NotFound,
    PendingArtifact,
)

# NOTE: resource only exists on unix systems
if os.name != "nt":
    import resource


class PreflightError(Exception):
    """Base class for local validation errors, raised before a collaborator is called."""

    pass


class UnknownStage(PreflightError):
    pass


class MissingCollaborator(PreflightError):
    pass


class InputMissing(PreflightError):
    pass


class InputTypeMismatch(PreflightError):
    pass


class StageExecutionError(Exception):
    """The collaborator for a stage failed. The original error is chained as ``__cause__``."""

    pass


class StageCancelled(StageExecutionError):
    pass


class CommandFailed(Exception):
    def __init__(self, command, returncode, stderr):
        self.command = command
        self.returncode = returncode
        self.stderr = stderr
        super().__init__(
            "Command '%s' exited with code %s: %s"
            % (" ".join(command), returncode, stderr.strip())
        )


# -- stage contracts --


@dataclass(frozen=True)
class InputSlot:
    """A named input position of a stage.

    Args:
        name (str): The slot name, collaborators look their inputs up by this.
        kinds (tuple[ArtifactKind]): The artifact kinds this slot accepts.
        optional (bool): Whether the stage can run with nothing in this slot.
        many (bool): Whether the slot accepts more than one artifact.
    """

    name: str
    kinds: tuple
    optional: bool = False
    many: bool = False

    def accepts(self, kind: ArtifactKind) -> bool:
        return kind in self.kinds


@dataclass(frozen=True)
class StageSpec:
    """The declared contract of a stage."""

    stage_id: str
    inputs: tuple = ()
    """Ordered ``InputSlot`` s."""
    outputs: tuple = ()
    """The artifact kinds this stage can produce."""
    parameters: type = None
    """The ``StageParameters`` subclass configuring this stage, ``None`` if it takes none."""
    description: str = ""
    mutation_gate: bool = False
    """A stage that replaces an artifact other variants may already have consumed. A
    variant containing one can't run concurrently with its siblings."""
    inherit_parameters: bool = False
    """Output artifacts carry the parameters of the first input merged with the
    stage parameters, rather than only the stage parameters. Used for new versions
    of an existing artifact."""
    output_note: Optional[str] = None
    """Transformation note recorded on every output, unless the step gives one."""


STAGES: dict[str, StageSpec] = {}
"""The module-level registry of every declared stage, by stage id."""


def register_stage(spec: StageSpec, registry: dict = None) -> StageSpec:
    """Add a stage contract to the registry and return it."""
    registry = STAGES if registry is None else registry
    if spec.stage_id in registry and registry[spec.stage_id] != spec:
        raise ValueError("A different stage '%s' is already registered" % spec.stage_id)
    registry[spec.stage_id] = spec
    return spec


def get_stage_spec(stage_id: str, registry: dict = None) -> StageSpec:
    registry = STAGES if registry is None else registry
    if stage_id not in registry:
        raise UnknownStage("No stage '%s' is registered" % stage_id)
    return registry[stage_id]


@dataclass(frozen=True)
class OutputSpec:
    """An expected output of an invocation: what to name it and how to register it."""

    kind: ArtifactKind
    name: str
    overwrite: bool = False
    note: Optional[str] = None


# -- collaborators --


class Collaborators:
    """The table of external collaborators, by stage id.

    Example:
        .. code-block:: python

            collaborators = Collaborators()

            @collaborators.implements("Bandpass")
            def bandpass(context, inputs, params):
                recording = inputs.one("recording").payload
                ...
                return [filtered]
    """

    def __init__(self, table: dict[str, Callable] = None):
        self._table = dict(table or {})

    def __contains__(self, stage_id: str):
        return stage_id in self._table

    def __len__(self):
        return len(self._table)

    def implements(self, stage_id: str):
        """Decorator registering the wrapped function as the collaborator for a stage."""

        def decorator(function):
            self.register(stage_id, function)
            return function

        return decorator

    def register(self, stage_id: str, collaborator: Callable):
        self._table[stage_id] = collaborator

    def get(self, stage_id: str) -> Callable:
        if stage_id not in self._table:
            raise MissingCollaborator("No collaborator is registered for '%s'" % stage_id)
        return self._table[stage_id]

    def stage_ids(self) -> list[str]:
        return list(self._table.keys())

    def merged(self, other: "Collaborators") -> "Collaborators":
        """A new table with the entries of ``other`` taking precedence over these."""
        return Collaborators({**self._table, **other._table})


class CancellationToken:
    """Cooperative cancellation flag shared between the driver and running collaborators."""

    def __init__(self):
        self._event = threading.Event()

    def cancel(self):
        self._event.set()

    @property
    def cancelled(self) -> bool:
        return self._event.is_set()

    def raise_if_cancelled(self):
        if self.cancelled:
            raise StageCancelled("Stage was cancelled")


@dataclass
class StageInput:
    artifact: Artifact
    payload: Any

    @property
    def ref(self) -> ArtifactRef:
        return self.artifact.ref


class StageInputs(dict):
    """The resolved inputs of an invocation, by slot name. Every slot of the stage is
    present, with an empty list if nothing was given for it."""

    def all(self, slot: str) -> list[StageInput]:
        return self[slot]

    def one(self, slot: str) -> Optional[StageInput]:
        """The single input in a slot, or ``None`` for an empty optional slot."""
        if len(self[slot]) == 0:
            return None
        return self[slot][0]


@dataclass
class StageContext:
    """Passed to the collaborator along with the inputs and parameters."""

    token: CancellationToken
    invocation: InvocationEntry
    spec: StageSpec

    def check_cancelled(self):
        """Collaborators running long computations should call this periodically."""
        self.token.raise_if_cancelled()

    def report(self, reportable):
        """Attach a reportable (see ``headfactory.reporting``) to this invocation so
        it shows up in the run report."""
        reportable.invocation_id = self.invocation.id
        self.invocation.reportables.append(reportable)


class CommandCollaborator:
    """Collaborator that runs an external command line.

    The process is polled so that the run can be cancelled while it executes, in
    which case the process is terminated.

    Args:
        command: The command as a list of strings, or a function taking
            ``(context, inputs, params)`` and returning one.
        parse_outputs: Function taking ``(context, inputs, params, stdout)`` and
            returning the list of output payloads. By default the output payload is
            the stripped stdout.
        poll_interval (float): Seconds between cancellation checks.
    """

    def __init__(
        self,
        command: Union[list[str], Callable],
        parse_outputs: Callable = None,
        poll_interval: float = 0.2,
        cwd: str = None,
        env: dict = None,
    ):
        self.command = command
        self.parse_outputs = parse_outputs
        self.poll_interval = poll_interval
        self.cwd = cwd
        self.env = env

    def __call__(self, context: StageContext, inputs: StageInputs, params):
        command = self.command
        if callable(command):
            command = command(context, inputs, params)
        command = [str(part) for part in command]

        logging.info("Running '%s'" % " ".join(command))
        process = subprocess.Popen(
            command,
            stdout=subprocess.PIPE,
            stderr=subprocess.PIPE,
            cwd=self.cwd,
            env=self.env,
            text=True,
        )
        while True:
            try:
                stdout, stderr = process.communicate(timeout=self.poll_interval)
                break
            except subprocess.TimeoutExpired:
                if context.token.cancelled:
                    logging.warning("Terminating '%s'" % command[0])
                    process.terminate()
                    try:
                        process.communicate(timeout=5)
                    except subprocess.TimeoutExpired:
                        process.kill()
                        process.communicate()
                    raise StageCancelled("'%s' was cancelled" % command[0])

        if process.returncode != 0:
            raise CommandFailed(command, process.returncode, stderr)
        if self.parse_outputs is not None:
            return self.parse_outputs(context, inputs, params, stdout)
        return [stdout.strip()]


# -- execution --


@dataclass
class StageResult:
    """What an invocation returns: the log entry, the registered outputs, and the
    error if it didn't succeed."""

    invocation: InvocationEntry
    outputs: list[ArtifactRef] = field(default_factory=list)
    error: Optional[Exception] = None

    @property
    def status(self) -> Status:
        return self.invocation.status

    @property
    def succeeded(self) -> bool:
        return self.invocation.status == Status.SUCCEEDED

    def raise_for_status(self):
        """Re-raise the error of a failed invocation, does nothing on success."""
        if self.error is not None:
            raise self.error

    def output(self, kind: ArtifactKind) -> ArtifactRef:
        """The first output of the given kind."""
        for ref in self.outputs:
            if ref.kind == kind:
                return ref
        raise NotFound("Invocation %s produced no %s" % (self.invocation.id, kind.value))


def _memory_usage() -> tuple[int, int]:
    mem_usage = psutil.Process().memory_info().rss
    footprint = 0
    if os.name != "nt":
        footprint = resource.getrusage(resource.RUSAGE_SELF).ru_maxrss * 1024
    return mem_usage, footprint


def _log_stats(invocation, exec_time, pre_mem_usage, post_mem_usage, pre_footprint, post_footprint):
    mem_change = post_mem_usage - pre_mem_usage
    footprint_change = post_footprint - pre_footprint
    invocation.memory = {
        "rss": post_mem_usage,
        "rss_change": mem_change,
        "max_footprint": post_footprint,
        "max_footprint_change": footprint_change,
    }

    logging.debug(
        "Memory (current usage/max allocated) - %s / %s"
        % (
            utils.human_readable_mem_usage(post_mem_usage),
            utils.human_readable_mem_usage(post_footprint),
        )
    )
    logging.debug(
        "Stage memory impact (current/max) - %s / %s"
        % (
            utils.human_readable_mem_usage(mem_change),
            utils.human_readable_mem_usage(footprint_change),
        )
    )
    logging.debug("Timing - execution: %s" % utils.human_readable_time(exec_time))


class StageExecutor:
    """Runs single stage invocations against a store, recording each in a provenance log.

    Args:
        store (ArtifactStore): Where inputs are resolved from and outputs registered to.
        log (ProvenanceLog): Where every invocation is appended, whatever its outcome.
        collaborators (Collaborators): The implementations of the stages.
        registry (dict): Stage contracts to validate against, the module-level
            ``STAGES`` by default.
        overwrite (bool): Re-running a stage with the same output names supersedes
            the previous outputs, rather than failing with ``DuplicateArtifact``.
        token (CancellationToken): Shared cancellation flag.
    """

    def __init__(
        self,
        store: ArtifactStore,
        log: ProvenanceLog,
        collaborators: Collaborators,
        registry: dict = None,
        overwrite: bool = False,
        token: CancellationToken = None,
    ):
        self.store = store
        self.log = log
        self.collaborators = collaborators
        self.registry = STAGES if registry is None else registry
        self.overwrite = overwrite
        self.token = token if token is not None else CancellationToken()

    def invoke(
        self,
        stage_id: str,
        inputs: list[ArtifactRef] = None,
        parameters: Union[StageParameters, dict] = None,
        outputs: list[OutputSpec] = None,
        comment: str = "",
        subject: str = None,
        variant: str = None,
        section: str = None,
    ) -> StageResult:
        """Validate and run one stage.

        Errors are not raised, they are recorded on the invocation and returned in the
        ``StageResult`` (use ``raise_for_status()`` to propagate them.) Local problems
        (an unknown stage, bad parameters, missing or mistyped inputs, output names
        that are already taken) are caught before the collaborator is ever called.

        Args:
            stage_id (str): The id of a registered stage.
            inputs (list[ArtifactRef]): The input references, each is assigned to the
                first slot of the stage that accepts its kind.
            parameters: A parameter instance of the stage's parameter class, or a
                dictionary of options to build one from. ``None`` uses the defaults.
            outputs (list): ``OutputSpec`` s or ``(kind, name)`` tuples, the outputs to
                register in the order the collaborator returns them.
            comment (str): Free-text label recorded on the invocation.
            subject (str): The subject outputs are registered under. Defaults to the
                subject of the first input.
        """
        inputs = list(inputs or [])
        outputs = [
            output if isinstance(output, OutputSpec) else OutputSpec(*output)
            for output in outputs or []
        ]
        if subject is None and len(inputs) > 0:
            subject = inputs[0].subject

        invocation = InvocationEntry(
            id=self.log.next_invocation_id(),
            stage_id=stage_id,
            subject=subject,
            inputs=inputs,
            comment=comment,
            variant=variant,
            section=section,
        )

        try:
            spec, collaborator, params, resolved = self._preflight(
                stage_id, inputs, parameters, outputs, subject, invocation
            )
        except (PreflightError, InvalidParameters, NotFound, DuplicateArtifact) as e:
            return self._preflight_failed(invocation, e)
        except Exception as e:
            error = PreflightError("Stage '%s' could not start: %s" % (stage_id, e))
            error.__cause__ = e
            return self._preflight_failed(invocation, error)

        return self._execute(spec, collaborator, params, resolved, outputs, invocation)

    def record(
        self,
        stage_id: str,
        status: Status,
        inputs: list[ArtifactRef] = None,
        error: Exception = None,
        comment: str = "",
        subject: str = None,
        variant: str = None,
        section: str = None,
    ) -> StageResult:
        """Append an invocation that didn't go through a collaborator, e.g. an explicit
        cleanup, a placeholder that was skipped, or a step whose inputs couldn't even
        be selected."""
        invocation = InvocationEntry(
            id=self.log.next_invocation_id(),
            stage_id=stage_id,
            subject=subject,
            inputs=list(inputs or []),
            comment=comment,
            variant=variant,
            section=section,
            status=status,
        )
        invocation.start = invocation.end = datetime.now()
        invocation.duration = 0.0
        if error is not None:
            invocation.fail(error, status)
        self.log.append(invocation)
        return StageResult(invocation, error=error)

    def _preflight_failed(self, invocation: InvocationEntry, error: Exception) -> StageResult:
        logging.error("Stage %s could not start: %s" % (invocation.stage_id, error))
        invocation.fail(error)
        self.log.append(invocation)
        return StageResult(invocation, error=error)

    def with_log(self, log) -> "StageExecutor":
        """A copy of this executor sharing the store, collaborators, and cancellation
        token, but recording into a different log."""
        executor = copy.copy(self)
        executor.log = log
        return executor

    def _coerce_parameters(self, spec: StageSpec, parameters) -> Optional[StageParameters]:
        if spec.parameters is None:
            if parameters:
                raise InvalidParameters("Stage '%s' takes no parameters" % spec.stage_id)
            return None
        if parameters is None:
            return spec.parameters()
        if isinstance(parameters, dict):
            return spec.parameters.from_options(parameters)
        if not isinstance(parameters, spec.parameters):
            raise InvalidParameters(
                "Stage '%s' expects %s parameters, got %s"
                % (spec.stage_id, spec.parameters.__name__, type(parameters).__name__)
            )
        return parameters

    def _assign_slots(self, spec: StageSpec, artifacts: list[Artifact]) -> dict[str, list]:
        slots = {slot.name: [] for slot in spec.inputs}
        for artifact in artifacts:
            for slot in spec.inputs:
                if slot.accepts(artifact.kind) and (
                    slot.many or len(slots[slot.name]) == 0
                ):
                    slots[slot.name].append(artifact)
                    break
            else:
                raise InputTypeMismatch(
                    "Stage '%s' has no free input slot accepting %s (%s)"
                    % (spec.stage_id, artifact.kind.value, artifact.ref)
                )
        for slot in spec.inputs:
            if not slot.optional and len(slots[slot.name]) == 0:
                raise InputMissing(
                    "Stage '%s' requires an input for '%s' (%s)"
                    % (
                        spec.stage_id,
                        slot.name,
                        " or ".join(kind.value for kind in slot.kinds),
                    )
                )
        return slots

    def _preflight(self, stage_id, inputs, parameters, outputs, subject, invocation):
        spec = get_stage_spec(stage_id, self.registry)
        collaborator = self.collaborators.get(stage_id)

        params = self._coerce_parameters(spec, parameters)
        if params is not None:
            params.validate()
            invocation.parameters = hashing.param_set_string_hash_representations(params)
            invocation.params_hash = hashing.hash_param_set(params)

        artifacts = []
        for ref in inputs:
            try:
                artifacts.append(self.store.get(ref))
            except NotFound as e:
                raise InputMissing("Input %s is not available: %s" % (ref, e))
        slots = self._assign_slots(spec, artifacts)

        if params is not None:
            given_kinds = {artifact.kind for artifact in artifacts}
            for kind in params.required_kinds():
                if kind not in given_kinds:
                    raise InputMissing(
                        "Stage '%s' with these parameters requires a %s input"
                        % (stage_id, kind.value)
                    )

        if subject is None and len(outputs) > 0:
            raise InputMissing("Stage '%s' needs a subject for its outputs" % stage_id)
        if subject is not None:
            self.store.get_subject(subject)
        for output in outputs:
            if output.kind not in spec.outputs:
                raise InvalidParameters(
                    "Stage '%s' cannot produce %s (it produces %s)"
                    % (stage_id, output.kind.value, [kind.value for kind in spec.outputs])
                )
            if not (self.overwrite or output.overwrite):
                try:
                    existing = self.store.find(subject, output.kind, output.name)
                except NotFound:
                    continue
                raise DuplicateArtifact(
                    "Output %s already exists and overwriting isn't enabled" % existing
                )

        # payloads are loaded now, so that the collaborator sees exactly the
        # versions that were referenced when the stage was invoked
        resolved = StageInputs(
            {
                name: [StageInput(artifact, self.store.load(artifact.ref)) for artifact in slot]
                for name, slot in slots.items()
            }
        )
        return spec, collaborator, params, resolved

    def _output_parameters(self, spec: StageSpec, params, resolved: StageInputs) -> dict:
        values = params.as_dict() if params is not None else {}
        if spec.inherit_parameters:
            for slot in spec.inputs:
                if len(resolved[slot.name]) > 0:
                    inherited = dict(resolved[slot.name][0].artifact.parameters)
                    values = {**inherited, **values}
                    break
        return values

    def _execute(self, spec, collaborator, params, resolved, outputs, invocation):
        context = StageContext(self.token, invocation, spec)
        invocation.status = Status.RUNNING
        invocation.start = datetime.now()
        logging.info(
            "Stage %s executing... %s"
            % (spec.stage_id, f"({invocation.comment})" if invocation.comment else "")
        )
        pre_mem_usage, pre_footprint = _memory_usage()
        exec_time_start = time.perf_counter()

        error = None
        refs = []
        try:
            self.token.raise_if_cancelled()
            payloads = collaborator(context, resolved, params)
            self.token.raise_if_cancelled()
            if payloads is None:
                payloads = []
            payloads = list(payloads)
            if len(payloads) != len(outputs):
                raise StageExecutionError(
                    "Stage '%s' returned %d payload(s), %d output(s) were expected"
                    % (spec.stage_id, len(payloads), len(outputs))
                )
            output_parameters = self._output_parameters(spec, params, resolved)
            pending = [
                PendingArtifact(
                    subject=invocation.subject,
                    kind=output.kind,
                    name=output.name,
                    parameters=output_parameters,
                    payload=payload,
                    produced_by=invocation.id,
                    overwrite=self.overwrite or output.overwrite,
                    note=output.note if output.note is not None else spec.output_note,
                )
                for output, payload in zip(outputs, payloads)
            ]
            refs = self.store.put_many(pending)
        except StageCancelled as e:
            error = e
            invocation.fail(e, Status.CANCELLED)
        except StageExecutionError as e:
            error = e
            invocation.fail(e)
        except Exception as e:
            error = StageExecutionError("Stage '%s' failed: %s" % (spec.stage_id, e))
            error.__cause__ = e
            invocation.fail(error)
        else:
            invocation.status = Status.SUCCEEDED
            invocation.outputs = refs

        exec_time = time.perf_counter() - exec_time_start
        invocation.end = datetime.now()
        invocation.duration = exec_time
        post_mem_usage, post_footprint = _memory_usage()
        _log_stats(
            invocation,
            exec_time,
            pre_mem_usage,
            post_mem_usage,
            pre_footprint,
            post_footprint,
        )

        if error is not None:
            logging.error(
                "Stage %s %s: %s"
                % (spec.stage_id, invocation.status.value.lower(), invocation.error)
            )
        self.log.append(invocation)
        return StageResult(invocation, outputs=refs, error=error)
