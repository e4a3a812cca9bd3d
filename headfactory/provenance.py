"""The provenance log: an append-only, ordered record of every stage invocation
(and the section headers and snapshots around them) in a workspace.

The log is what the report is built from, and what two runs are compared with.
Rendering it without timestamps produces output that only depends on what ran
and with which parameters, so replaying the same successful run twice renders
identically.
"""

import json
import logging
import os
import threading
from dataclasses import dataclass, field
from datetime import datetime
from enum import Enum
from typing import Any, Optional

import pandas as pd

from headfactory.artifact import ArtifactRef


class Status(Enum):
    PENDING = "Pending"
    RUNNING = "Running"
    SUCCEEDED = "Succeeded"
    FAILED = "Failed"
    CANCELLED = "Cancelled"
    SKIPPED = "Skipped"

    def __str__(self):
        return self.value


def _format_refs(refs: list[ArtifactRef]) -> str:
    if len(refs) == 0:
        return "-"
    return ", ".join(str(ref) for ref in refs)


@dataclass
class SectionEntry:
    """A titled header grouping the entries that follow it."""

    title: str
    timestamp: datetime = field(default_factory=datetime.now)

    def to_dict(self) -> dict:
        return {
            "type": "section",
            "title": self.title,
            "timestamp": self.timestamp.isoformat(),
        }

    def render(self, timestamps: bool = True) -> list[str]:
        header = f"===== {self.title} ====="
        if timestamps:
            header += f"  [{self.timestamp.isoformat(timespec='seconds')}]"
        return ["", header]


@dataclass
class InvocationEntry:
    """One execution attempt of a stage, with everything needed to audit it."""

    id: str
    stage_id: str
    subject: Optional[str] = None
    inputs: list[ArtifactRef] = field(default_factory=list)
    outputs: list[ArtifactRef] = field(default_factory=list)
    parameters: dict = field(default_factory=dict)
    """The string representations of the effective parameters (see
    ``hashing.param_set_string_hash_representations``.)"""
    params_hash: str = ""
    status: Status = Status.PENDING
    comment: str = ""
    """Free-text label, used to tell variants of the same stage apart."""
    variant: Optional[str] = None
    section: Optional[str] = None
    start: Optional[datetime] = None
    end: Optional[datetime] = None
    duration: Optional[float] = None
    """Execution time in seconds."""
    error: Optional[str] = None
    error_type: Optional[str] = None
    memory: dict = field(default_factory=dict)
    reportables: list = field(default_factory=list, repr=False)

    @property
    def failed(self) -> bool:
        return self.status in (Status.FAILED, Status.CANCELLED)

    def fail(self, error: Exception, status: Status = Status.FAILED):
        self.status = status
        self.error = str(error)
        self.error_type = type(error).__name__

    def to_dict(self) -> dict:
        return {
            "type": "invocation",
            "id": self.id,
            "stage_id": self.stage_id,
            "subject": self.subject,
            "inputs": [ref.to_dict() for ref in self.inputs],
            "outputs": [ref.to_dict() for ref in self.outputs],
            "parameters": self.parameters,
            "params_hash": self.params_hash,
            "status": self.status.value,
            "comment": self.comment,
            "variant": self.variant,
            "section": self.section,
            "start": self.start.isoformat() if self.start is not None else None,
            "end": self.end.isoformat() if self.end is not None else None,
            "duration": self.duration,
            "error": self.error,
            "error_type": self.error_type,
            "memory": self.memory,
            "reportables": [reportable.name for reportable in self.reportables],
        }

    def render(self, timestamps: bool = True) -> list[str]:
        line = f"[{self.id}] {self.stage_id} - {self.status.value}"
        if self.comment:
            line += f" ({self.comment})"
        if timestamps and self.start is not None:
            line += f"  {self.start.isoformat(timespec='seconds')}"
            if self.duration is not None:
                line += f" ({self.duration:.3f}s)"
        lines = [
            line,
            f"    inputs:  {_format_refs(self.inputs)}",
            f"    params:  {self.params_hash or '-'}",
            f"    outputs: {_format_refs(self.outputs)}",
        ]
        if self.error is not None:
            lines.append(f"    error:   {self.error_type}: {self.error}")
        return lines


@dataclass
class SnapshotEntry:
    """A user-annotated snapshot of an artifact at a point in the pipeline."""

    label: str
    ref: Optional[ArtifactRef] = None
    description: dict = field(default_factory=dict)
    comment: str = ""
    variant: Optional[str] = None
    section: Optional[str] = None
    error: Optional[str] = None
    timestamp: datetime = field(default_factory=datetime.now)
    reportables: list = field(default_factory=list, repr=False)

    def to_dict(self) -> dict:
        return {
            "type": "snapshot",
            "label": self.label,
            "ref": self.ref.to_dict() if self.ref is not None else None,
            "description": self.description,
            "comment": self.comment,
            "variant": self.variant,
            "section": self.section,
            "error": self.error,
            "timestamp": self.timestamp.isoformat(),
            "reportables": [reportable.name for reportable in self.reportables],
        }

    def render(self, timestamps: bool = True) -> list[str]:
        target = str(self.ref) if self.ref is not None else "-"
        line = f"[snapshot] {self.label}: {target}"
        if self.error is not None:
            line += f" (unavailable: {self.error})"
        return [line]


class ProvenanceLog:
    """Append-only ordered log of section headers, invocations, and snapshots.

    Args:
        path (str): If given, every entry is also appended to this file as a single
            line of json as soon as it's logged.
    """

    def __init__(self, path: str = None):
        self.path = path
        self.entries: list = []
        self._lock = threading.Lock()
        self._invocation_count = 0
        if self.path is not None:
            os.makedirs(os.path.dirname(os.path.abspath(self.path)), exist_ok=True)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(list(self.entries))

    def next_invocation_id(self) -> str:
        """Reserve the id for a new invocation. Ids are sequential within a log."""
        return self.reserve_invocation_ids(1)[0]

    def reserve_invocation_ids(self, count: int) -> list[str]:
        """Reserve a contiguous block of invocation ids (see ``BufferedLog``.)"""
        with self._lock:
            first = self._invocation_count + 1
            self._invocation_count += count
            return [f"inv{number:04d}" for number in range(first, first + count)]

    def buffered(self, max_invocations: int) -> "BufferedLog":
        return BufferedLog(self, self.reserve_invocation_ids(max_invocations))

    def append(self, entry):
        """Add an entry to the end of the log.

        Raises:
            OSError: if the entry can't be written to a persistent log (e.g. the disk is
                full.) This is not recoverable and should abort the run.
        """
        with self._lock:
            if self.path is not None:
                with open(self.path, "a") as outfile:
                    outfile.write(json.dumps(entry.to_dict(), default=str) + "\n")
            self.entries.append(entry)

    def section(self, title: str) -> SectionEntry:
        entry = SectionEntry(title)
        self.append(entry)
        logging.info("----- %s -----" % title)
        return entry

    @property
    def invocations(self) -> list[InvocationEntry]:
        return [entry for entry in self if isinstance(entry, InvocationEntry)]

    @property
    def snapshots(self) -> list[SnapshotEntry]:
        return [entry for entry in self if isinstance(entry, SnapshotEntry)]

    def get_invocation(self, invocation_id: str) -> InvocationEntry:
        for invocation in self.invocations:
            if invocation.id == invocation_id:
                return invocation
        raise KeyError("No invocation with id '%s'" % invocation_id)

    def failed(self) -> list[InvocationEntry]:
        """Every invocation that failed or was cancelled, in log order."""
        return [invocation for invocation in self.invocations if invocation.failed]

    def render(self, timestamps: bool = True) -> str:
        """A human-readable plain text summary of the log, in order and grouped by
        section headers.

        Args:
            timestamps (bool): Include start times and durations. Turn this off to get
                output that can be compared between runs.
        """
        lines = []
        for entry in self:
            lines.extend(entry.render(timestamps=timestamps))
        return "\n".join(lines).strip("\n") + "\n"

    def to_dataframe(self) -> pd.DataFrame:
        """One row per invocation, for tabular reporting."""
        rows = []
        for invocation in self.invocations:
            rows.append(
                {
                    "id": invocation.id,
                    "section": invocation.section,
                    "stage": invocation.stage_id,
                    "variant": invocation.variant,
                    "comment": invocation.comment,
                    "status": invocation.status.value,
                    "params_hash": invocation.params_hash,
                    "inputs": _format_refs(invocation.inputs),
                    "outputs": _format_refs(invocation.outputs),
                    "start": invocation.start,
                    "duration": invocation.duration,
                    "error": invocation.error,
                }
            )
        columns = [
            "id",
            "section",
            "stage",
            "variant",
            "comment",
            "status",
            "params_hash",
            "inputs",
            "outputs",
            "start",
            "duration",
            "error",
        ]
        return pd.DataFrame(rows, columns=columns)

    @staticmethod
    def read_entries(path: str) -> list[dict[str, Any]]:
        """Load the raw entry dictionaries back from a persistent ``provenance.jsonl``."""
        entries = []
        with open(path) as infile:
            for line in infile:
                line = line.strip()
                if line:
                    entries.append(json.loads(line))
        return entries


class BufferedLog:
    """Collects the entries of one branch variant that runs concurrently with its
    siblings, and hands them to the parent log on ``flush()``.

    The variant's invocation ids are reserved up front and the buffers are flushed
    in declaration order, so both the ids and the order of the entries in the parent
    log are the same however the variants happen to interleave. If the variant
    records more invocations than were reserved, the extra ones take the parent's
    next ids.

    Args:
        parent (ProvenanceLog): The log the entries end up in.
        invocation_ids (list[str]): The ids reserved for this variant, in order.
    """

    def __init__(self, parent: ProvenanceLog, invocation_ids: list[str]):
        self.parent = parent
        self.entries: list = []
        self._invocation_ids = list(invocation_ids)

    def __len__(self):
        return len(self.entries)

    def __iter__(self):
        return iter(list(self.entries))

    def next_invocation_id(self) -> str:
        if len(self._invocation_ids) > 0:
            return self._invocation_ids.pop(0)
        return self.parent.next_invocation_id()

    def append(self, entry):
        self.entries.append(entry)

    def section(self, title: str) -> SectionEntry:
        entry = SectionEntry(title)
        self.append(entry)
        logging.info("----- %s -----" % title)
        return entry

    def flush(self):
        """Append everything collected so far to the parent log."""
        entries, self.entries = self.entries, []
        for entry in entries:
            self.parent.append(entry)
