"""Local 'database' of pipeline runs."""

import json
import os

from headfactory import utils


class RunStore:
    """Manages the mini database of metadata on previous pipeline runs. This is how we
    keep track of run numbers etc. A metadata block for each run is stored in the
    workspaces path under :code:`runs.json`.

    The metadata block kept for each run follows this example:

    .. code-block:: json

        {
            "reference": "fem_charm_1_2026-06-15-T100003",
            "pipeline_name": "fem_charm",
            "workspace": "TutorialFem",
            "run_number": 1,
            "timestamp": "2026-06-15-T100003",
            "commit": "",
            "params_hash": "44b5e428e7165975a3e4f0d1674dbe5f",
            "status": "complete",
            "cli": "headfactory fem_charm --input-dir data/sample_fem",
            "hostname": "mycomputer",
            "notes": ""
        }

    Args:
        workspaces_path (str): The path to the directory to keep the :code:`runs.json` in.
    """

    def __init__(self, workspaces_path: str):
        self.runs = []
        """The list of metadata blocks for each run."""
        self.path = os.path.join(workspaces_path, "runs.json")
        """The location of the :code:`runs.json`."""

        self.load()

    def load(self):
        """Load the current run database from :code:`runs.json` into :code:`self.runs`."""
        if os.path.exists(self.path):
            with open(self.path, "r") as infile:
                self.runs = json.load(infile)

    def save(self):
        """Save the current database in :code:`self.runs` into the :code:`runs.json` file."""
        os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)
        with open(self.path, "w") as outfile:
            json.dump(self.runs, outfile, indent=4)

    def get_pipeline_runs(self, pipeline_name: str) -> list[dict]:
        """Get all the runs of the specified pipeline from the database."""
        return [run for run in self.runs if run["pipeline_name"] == pipeline_name]

    def get_run(self, ref_name: str):
        """Get the metadata block for the run with the specified reference name.

        Returns:
            The dictionary (metadata block) for the run and its index within the total
            list of runs, or ``(None, -1)`` if there's no such run.
        """
        for index, run in enumerate(self.runs):
            if run["reference"] == ref_name:
                return run, index
        return None, -1

    def add_run(self, workspace) -> dict:
        """Add a new metadata block for the passed :code:`Workspace`, assigning it its
        run number. This automatically calls :code:`save()`."""
        prev_runs = self.get_pipeline_runs(workspace.pipeline_name)
        if len(prev_runs) == 0:
            workspace.run_number = 1
        else:
            workspace.run_number = prev_runs[-1]["run_number"] + 1
        workspace.git_commit_hash = utils.get_current_commit()

        run = {
            "reference": workspace.get_reference_name(),
            "pipeline_name": workspace.pipeline_name,
            "workspace": workspace.name,
            "run_number": workspace.run_number,
            "timestamp": workspace.get_str_timestamp(),
            "commit": workspace.git_commit_hash,
            "params_hash": workspace.params_hash,
            "status": "incomplete",
            "cli": workspace.run_line,
            "hostname": workspace.hostname,
            "notes": workspace.notes,
        }
        self.runs.append(run)
        self.save()
        return run

    def update_run(self, workspace) -> dict:
        """Update the status (and error, if any) of the run of the passed workspace.
        Returns ``None`` if the run isn't in the database."""
        run_info, index = self.get_run(workspace.get_reference_name())
        if index == -1:
            return None

        run_info["status"] = workspace.status
        if workspace.status == "error":
            run_info["error"] = workspace.error
        run_info["failed_invocations"] = [
            invocation.id for invocation in workspace.log.failed()
        ]
        self.runs[index] = run_info
        self.save()
        return run_info
