"""Contains the workspace class: the top-level namespace of a run, owning its subjects,
artifacts, provenance log, and run metadata."""

import logging
import os
import shutil
import sys
import threading
from datetime import datetime
from socket import gethostname

from headfactory import reporting, utils
from headfactory.caching import PickleCacher
from headfactory.provenance import ProvenanceLog
from headfactory.runs import RunStore
from headfactory.store import ArtifactStore

_ACTIVE_WORKSPACES: dict = {}
_ACTIVE_LOCK = threading.Lock()


def check_workspace_name(name: str):
    """A workspace name is also its directory name under the workspaces path, which
    gets deleted when the workspace is recreated. It must therefore be a single,
    non-empty path component.

    Raises:
        ValueError: if the name is empty, or could point outside of its own directory.
    """
    if not isinstance(name, str) or name.strip() == "":
        raise ValueError("Workspace name can't be empty")
    separators = [sep for sep in (os.sep, os.altsep, "/") if sep is not None]
    if name in (".", "..") or any(sep in name for sep in separators):
        raise ValueError(
            "Workspace name '%s' must be a plain directory name, not a path" % name
        )


class Workspace:
    """Every pipeline run happens in a workspace (a "protocol".)

    Workspaces are created fresh for each run: creating a workspace with the name of
    an existing one (see :code:`Workspace.create()`) tears the old one down and
    deletes it, it never merges with it.

    Args:
        name (str): The name of the workspace, which is also its directory name.
        pipeline_name (str): The pipeline this workspace is running, used for the run
            reference name.
        dry (bool): Keep everything in memory, suppressing all file output (payloads,
            provenance, logs, the run database, and reports.)
        cacher_type: The ``Cacheable`` used to persist payloads when not dry.
        run_line (str): The CLI command used for this run.
        notes (str): Free text notes to include in the run metadata and report.
        workspaces_path (str): Where workspace directories are created. Defaults to the
            configuration value.
    """

    def __init__(
        self,
        name: str,
        pipeline_name: str = None,
        dry: bool = False,
        cacher_type=PickleCacher,
        run_line: str = None,
        notes: str = None,
        params_hash: str = "",
        workspaces_path: str = None,
        logs_path: str = None,
        reports_path: str = None,
        report_css_path: str = None,
    ):
        check_workspace_name(name)
        self.name = name
        """The name of the workspace."""
        self.pipeline_name = pipeline_name if pipeline_name is not None else name
        """The name of the pipeline run in this workspace."""
        self.dry = dry
        """Flag for whether to suppress all file outputs."""
        self.run_timestamp = datetime.now()
        """When the workspace was created (and usually also when the run starts.)"""
        self.run_number = 0
        """The run counter for runs of this pipeline."""
        self.params_hash = params_hash
        """The hash of the pipeline parameters this run used."""
        self.git_commit_hash = ""
        """The current commit hash if a git repo is in use."""
        self.hostname = gethostname()
        """The hostname of the machine this run is on."""
        self.os = utils.get_os()
        self.notes = notes
        self.run_line = run_line if run_line is not None else " ".join(sys.argv)
        """The CLI command used to run the current pipeline."""

        self.status = "incomplete"
        """The current status of the run: 'incomplete', 'complete', or 'error'."""
        self.error = None
        """The exception class and error string, if one was thrown."""
        self.run_info = None
        """The metadata block of this run in the :code:`RunStore`."""
        self.stored = False

        self.config = utils.get_configuration()
        """The configuration loaded from the headfactory config file if present."""
        self.workspaces_path = workspaces_path or self.config["workspaces_path"]
        self.logs_path = logs_path or self.config["logs_path"]
        self.reports_path = reports_path or self.config["reports_path"]
        self.report_css_path = report_css_path or self.config["report_css_path"]

        self.path = None if self.dry else os.path.join(self.workspaces_path, self.name)
        """The workspace directory, ``None`` for a dry workspace."""

        payload_path = None if self.dry else os.path.join(self.path, "artifacts")
        provenance_path = None if self.dry else os.path.join(self.path, "provenance.jsonl")
        self.store = ArtifactStore(self.name, payload_path, cacher_type)
        """The artifact store of this workspace."""
        self.log = ProvenanceLog(provenance_path)
        """The provenance log of this workspace."""
        self.torn_down = False

    @classmethod
    def create(cls, name: str, **kwargs) -> "Workspace":
        """Create a fresh workspace, destroying any existing workspace with the same
        name (in memory and on disk.) Takes the same arguments as the constructor.

        Raises:
            ValueError: if the name isn't a valid workspace name, before anything is deleted.
        """
        check_workspace_name(name)
        with _ACTIVE_LOCK:
            existing = _ACTIVE_WORKSPACES.pop(name, None)
        if existing is not None:
            logging.warning("Replacing existing workspace '%s'" % name)
            existing.teardown()

        workspace_dir = None
        if not kwargs.get("dry", False):
            workspaces_path = kwargs.get("workspaces_path") or utils.get_configuration()[
                "workspaces_path"
            ]
            workspace_dir = os.path.join(workspaces_path, name)
            if os.path.exists(workspace_dir):
                logging.warning("Deleting existing workspace directory '%s'" % workspace_dir)
                shutil.rmtree(workspace_dir)
            os.makedirs(workspace_dir)

        workspace = cls(name, **kwargs)
        with _ACTIVE_LOCK:
            _ACTIVE_WORKSPACES[name] = workspace
        logging.info("Created workspace '%s'" % name)
        return workspace

    def teardown(self):
        """Release every payload. Nothing in the workspace resolves afterwards."""
        if self.torn_down:
            return
        self.store.close()
        self.torn_down = True
        with _ACTIVE_LOCK:
            if _ACTIVE_WORKSPACES.get(self.name) is self:
                del _ACTIVE_WORKSPACES[self.name]
        logging.debug("Tore down workspace '%s'" % self.name)

    def add_subject(self, name: str):
        return self.store.add_subject(name)

    def get_path(self, obj_name: str = None) -> str:
        """Path inside of the workspace directory, or ``None`` for a dry workspace."""
        if self.dry:
            return None
        if obj_name is None:
            return self.path
        return os.path.join(self.path, obj_name)

    def get_str_timestamp(self) -> str:
        """Convert the run timestamp into a string representation."""
        return self.run_timestamp.strftime(utils.TIMESTAMP_FORMAT)

    def get_reference_name(self) -> str:
        """Get the reference name of this run in the run database.

        The format for this name is [pipeline_name]_[run_number]_[timestamp]."""
        return f"{self.pipeline_name}_{self.run_number}_{self.get_str_timestamp()}"

    def get_log_path(self) -> str:
        if self.dry:
            return None
        return os.path.join(self.logs_path, f"{self.get_reference_name()}.log")

    def record_run(self):
        """Add or update this run in the :code:`RunStore`."""
        if self.dry:
            return
        store = RunStore(self.workspaces_path)
        if self.stored:
            self.run_info = store.update_run(self)
            return
        self.run_info = store.add_run(self)
        self.stored = True

    def save_registry(self):
        """Write the artifact registry metadata next to the payloads."""
        if self.dry or self.torn_down:
            return
        self.store.save(self.get_path("registry.json"))

    def generate_report(self, result=None) -> str:
        """Output the run report to a run-specific report folder and ``reports/_latest``.

        Returns:
            The path to the run-specific report's index.html, ``None`` if dry.
        """
        if self.dry:
            return None
        logging.info("Generating report...")
        self.record_run()
        reporting.run_report(self, result, self.reports_path, "_latest", self.report_css_path)
        report_path = reporting.run_report(
            self, result, self.reports_path, self.get_reference_name(), self.report_css_path
        )
        reporting.update_report_index(self.workspaces_path, self.reports_path)
        return report_path
