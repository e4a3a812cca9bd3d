"""The run driver: sets up logging, checks that everything a pipeline needs is
available, creates the workspace, runs the pipeline, and renders the report.

Pipelines are plain modules under the configured ``pipelines_module_name``, each
exposing three functions:

* ``get_params()`` - the default run parameters (a ``StageParameters`` subclass.)
* ``build(params)`` - the ``Pipeline`` declaration for those parameters.
* ``capabilities(params)`` - the external executables, directories, and input
  files the real collaborators need.
"""

import importlib
import logging
import os
import pkgutil
import shutil
import sys
import traceback
from dataclasses import dataclass, field, replace
from typing import Any, Optional

from headfactory import utils
from headfactory.pipeline import PipelineContext
from headfactory.provenance import ProvenanceLog
from headfactory.simulated import SIMULATED
from headfactory.staging import STAGES, CancellationToken, Collaborators, StageExecutor
from headfactory.workspace import Workspace, check_workspace_name


class CapabilityUnavailable(Exception):
    """Something the pipeline needs isn't available, nothing was started.

    Args:
        message (str): The error message.
        missing (list[str]): A description of each missing capability.
    """

    def __init__(self, message: str, missing: list = None):
        super().__init__(message)
        self.missing = list(missing or [])


# -- capabilities --


@dataclass
class Executable:
    """An external program that must be on the path, e.g. SimNIBS ``charm``."""

    command: str
    description: str = ""

    def check(self) -> Optional[str]:
        if shutil.which(self.command) is None:
            return "%s: the command '%s' could not be found" % (
                self.description or self.command,
                self.command,
            )
        return None


@dataclass
class Directory:
    """A configured installation directory, e.g. the BrainSuite binaries."""

    path: str
    description: str = ""

    def check(self) -> Optional[str]:
        if not self.path or not os.path.isdir(self.path):
            return "%s: directory '%s' not found" % (
                self.description or "Directory",
                self.path,
            )
        return None


@dataclass
class InputFile:
    path: str
    description: str = ""

    def check(self) -> Optional[str]:
        if not os.path.isfile(self.path):
            return "%s: input file '%s' not found" % (
                self.description or "Input",
                self.path,
            )
        return None


def check_capabilities(pipeline, capabilities: list, collaborators: Collaborators, registry: dict = None) -> list[str]:
    """Get a description of every capability that is unavailable: each of the passed
    capabilities, and a registered stage and collaborator for every stage the
    pipeline may invoke."""
    registry = STAGES if registry is None else registry
    missing = []
    for capability in capabilities:
        problem = capability.check()
        if problem is not None:
            missing.append(problem)
    for stage_id in pipeline.stage_ids():
        if stage_id not in registry:
            missing.append("Stage '%s' is not registered" % stage_id)
        elif stage_id not in collaborators:
            missing.append("No collaborator is registered for stage '%s'" % stage_id)
    return missing


# -- pipelines --


def load_pipeline_module(pipeline_name: str, config: dict = None):
    config = config if config is not None else utils.get_configuration()
    module_name = f"{config['pipelines_module_name']}.{pipeline_name}"
    logging.debug("Loading pipeline module '%s'" % module_name)
    return importlib.import_module(module_name)


def list_pipelines(config: dict = None) -> list[str]:
    """Every importable pipeline module, with its top of file docstring if it has one."""
    config = config if config is not None else utils.get_configuration()
    # NOTE: this allows a project-local pipelines package to be found
    if os.getcwd() not in sys.path:
        sys.path.append(os.getcwd())
    package = importlib.import_module(config["pipelines_module_name"])

    names = []
    for module_info in pkgutil.iter_modules(package.__path__):
        try:
            module = importlib.import_module(f"{package.__name__}.{module_info.name}")
        except Exception as e:
            names.append(f"{module_info.name} [ERROR - {e}]")
            continue
        if not hasattr(module, "build"):
            continue
        comment = ""
        if module.__doc__ is not None:
            comment = " ".join(module.__doc__.split("\n\n")[0].split())
        names.append(f"{module_info.name} - {comment}" if comment else module_info.name)
    names.sort()
    return names


# -- running --


@dataclass
class RunResult:
    """The outcome of a pipeline run."""

    status: str
    """'incomplete', 'complete', or 'error'. Failed branch variants don't make a run
    an error, check ``failed_variants``."""
    workspace: Workspace
    log: ProvenanceLog
    error: Optional[BaseException] = None
    params: Any = None
    branches: list = field(default_factory=list)
    merges: list = field(default_factory=list)
    report_path: Optional[str] = None

    @property
    def succeeded(self) -> bool:
        return self.status == "complete"

    @property
    def failed_variants(self) -> list[str]:
        return [label for branch in self.branches for label in branch.failed_labels]


def run_pipeline(  # noqa: C901
    pipeline_name: str,
    parameters=None,
    input_dir: str = None,
    workspace_name: str = None,
    collaborators: Collaborators = None,
    simulate: bool = False,
    parallel: int = 1,
    overwrite: bool = False,
    dry: bool = False,
    report: bool = True,
    log: bool = False,
    log_debug: bool = False,
    quiet: bool = False,
    plain: bool = False,
    no_color: bool = False,
    notes: str = None,
    run_string: str = None,
    token: CancellationToken = None,
) -> RunResult:
    """Run a pipeline end to end.

    Args:
        pipeline_name (str): The name of the pipeline module.
        parameters: Run parameters to use instead of the module's ``get_params()``.
        input_dir (str): Override the input dataset folder of the parameters.
        workspace_name (str): Override the workspace name of the parameters. Any
            existing workspace with this name is deleted.
        collaborators (Collaborators): The stage implementations. With ``simulate``
            these take precedence over the simulated ones.
        simulate (bool): Use the in-process simulated collaborators. This skips the
            executable, directory, and input file checks.
        parallel (int): How many branch variants may run concurrently.
        overwrite (bool): Let re-runs of a stage supersede existing outputs.
        dry (bool): Keep everything in memory, don't write any files.
        report (bool): Render the HTML report at the end of the run.
        log (bool): Configure logging (console, and a log file unless dry.)
        log_debug (bool): Log at debug level.
        quiet (bool): Suppress console log output.
        plain (bool): Plain text console logs rather than rich.
        no_color (bool): Suppress colors in console output.
        notes (str): Free text notes for the run metadata and report.
        run_string (str): The CLI command for this run, recorded in the metadata.
        token (CancellationToken): Cancel the run cooperatively from elsewhere.

    Raises:
        CapabilityUnavailable: Before anything is created, if an executable, directory,
            input file, or collaborator the pipeline needs is missing.
        ValueError: Before anything is created, if the parameters are invalid
            (``InvalidParameters``) or the workspace name isn't a plain directory name.

    Returns:
        A ``RunResult``. Errors during the run don't raise, they set the status to
        'error' and are stored in the result.

    Example:
        .. code-block:: python

            from headfactory.driver import run_pipeline

            result = run_pipeline("fem_charm", simulate=True, dry=True)
            print(result.log.render(timestamps=False))
    """
    level = logging.DEBUG if log_debug else logging.INFO
    if log:
        utils.init_logging(None, level, include_thread=parallel > 1, no_color=no_color, quiet=quiet, plain=plain)

    if run_string is None:
        run_string = f"headfactory {pipeline_name}"
        if input_dir is not None:
            run_string += f" --input-dir {input_dir}"
        if workspace_name is not None:
            run_string += f" --workspace {workspace_name}"
        if simulate:
            run_string += " --simulate"
        if parallel > 1:
            run_string += f" --parallel {parallel}"
        if overwrite:
            run_string += " --overwrite"
        if dry:
            run_string += " --dry"

    config = utils.get_configuration()
    module = load_pipeline_module(pipeline_name, config)
    params = parameters if parameters is not None else module.get_params()
    if input_dir is not None:
        params = replace(params, input_dir=input_dir)
    params.validate()
    if workspace_name is not None:
        check_workspace_name(workspace_name)
    pipeline = module.build(params)

    if simulate:
        collaborators = SIMULATED if collaborators is None else SIMULATED.merged(collaborators)
        capabilities = []
    else:
        collaborators = collaborators if collaborators is not None else Collaborators()
        capabilities = module.capabilities(params)

    logging.info("Checking capabilities for pipeline '%s'..." % pipeline.name)
    missing = check_capabilities(pipeline, capabilities, collaborators)
    if len(missing) > 0:
        for problem in missing:
            logging.error(problem)
        raise CapabilityUnavailable(
            "%d capabilities needed by '%s' are unavailable: %s"
            % (len(missing), pipeline.name, "; ".join(missing)),
            missing,
        )

    if workspace_name is None:
        workspace_name = getattr(params, "workspace_name", None) or pipeline.name
    workspace = Workspace.create(
        workspace_name,
        pipeline_name=pipeline_name,
        dry=dry,
        run_line=run_string,
        notes=notes,
        params_hash=params.params_hash(),
    )
    workspace.record_run()
    if log and not dry:
        utils.init_logging(
            workspace.get_log_path(),
            level,
            include_thread=parallel > 1,
            no_color=no_color,
            quiet=quiet,
            plain=plain,
        )
    logging.info("Running pipeline '%s' in workspace '%s'" % (pipeline.name, workspace.name))
    if not dry:
        logging.info("Run reference name is '%s'" % workspace.get_reference_name())
    else:
        logging.info("NOTE - running in dry mode, no files will be written.")
    logging.info("Run command is '%s'" % run_string)

    token = token if token is not None else CancellationToken()
    executor = StageExecutor(
        workspace.store,
        workspace.log,
        collaborators,
        overwrite=overwrite,
        token=token,
    )
    subject = getattr(params, "subject_name", None) or "Subject01"
    context = PipelineContext(executor, subject, parallel=parallel)
    result = RunResult(
        "incomplete",
        workspace,
        workspace.log,
        params=params,
        branches=context.branches,
        merges=context.merges,
    )

    try:
        workspace.add_subject(subject)
        pipeline.run(context)
        workspace.status = "complete"
    except KeyboardInterrupt as e:
        token.cancel()
        workspace.status = "error"
        workspace.error = "KeyboardInterrupt - run cancelled"
        result.error = e
        logging.error("Run cancelled")
    except Exception as e:
        logging.error(e)
        logging.error(traceback.format_exc())
        workspace.status = "error"
        workspace.error = f"{str(e.__class__.__name__)} - {str(e)}"
        result.error = e
    result.status = workspace.status

    if len(result.failed_variants) > 0:
        logging.warning("Failed variants: %s" % result.failed_variants)

    workspace.save_registry()
    if report and not dry:
        result.report_path = workspace.generate_report(result)
        logging.info("Report written to %s" % result.report_path)
    else:
        workspace.record_run()

    logging.info("Pipeline '%s' finished with status '%s'" % (pipeline.name, result.status))
    if isinstance(result.error, KeyboardInterrupt):
        raise result.error
    return result
