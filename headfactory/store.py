"""The artifact store: the registry of every artifact (and subject) in a workspace.

The store is the only owner of artifact payloads. Stages receive references
(:code:`ArtifactRef`) and resolve them through the store; nothing else keeps a
live pointer to a payload, which is what makes it safe to supersede or remove
an entry without corrupting consumers that captured an earlier version.
"""

import json
import logging
import os
import threading
import uuid
from dataclasses import dataclass
from typing import Any, Optional

from headfactory import utils
from headfactory.artifact import (
    Artifact,
    ArtifactKind,
    ArtifactRef,
    Subject,
    freeze_parameters,
)
from headfactory.caching import CachedPayload, MemoryPayload, PickleCacher


class NotFound(LookupError):
    pass


class DuplicateArtifact(Exception):
    pass


class DuplicateSubject(Exception):
    pass


@dataclass
class PendingArtifact:
    """Everything needed to register one artifact, used to register several outputs
    of a stage all at once (see :code:`ArtifactStore.put_many()`.)"""

    subject: str
    kind: ArtifactKind
    name: str
    parameters: Any = None
    payload: Any = None
    produced_by: Optional[str] = None
    overwrite: bool = False
    note: Optional[str] = None

    @property
    def key(self) -> tuple:
        return (self.subject, self.kind, self.name)


class ArtifactStore:
    """Registry of typed, named artifacts for a single workspace.

    Artifacts are unique per (subject, kind, name). Registering a name that
    already exists either fails, or with :code:`overwrite=True` supersedes the
    previous entry: the new artifact gets the next version number, becomes the
    most recent artifact of its kind, and the old payload is released. References
    to the superseded version no longer resolve.

    Args:
        workspace_name (str): The name of the owning workspace, stamped on every reference.
        payload_path (str): Directory to write payloads to. If ``None``, payloads are
            only kept in memory (a dry workspace.)
        cacher_type: The ``Cacheable`` subclass used to write payloads when a
            ``payload_path`` is given.
    """

    def __init__(
        self, workspace_name: str, payload_path: str = None, cacher_type=PickleCacher
    ):
        self.workspace_name = workspace_name
        self.store_id = uuid.uuid4().hex
        """Identifies this store instance on the references it issues."""
        self.payload_path = payload_path
        self.cacher_type = cacher_type
        self.subjects: dict[str, Subject] = {}
        self.closed = False
        """Set when the owning workspace is torn down, after which nothing resolves."""

        # NOTE: insertion ordered, superseding an entry moves it to the end
        self._entries: dict[tuple, Artifact] = {}
        self._versions: dict[tuple, int] = {}
        self._lock = threading.Lock()

    def __len__(self):
        return len(self._entries)

    def __contains__(self, ref: ArtifactRef):
        try:
            self.get(ref)
        except NotFound:
            return False
        return True

    def _check_open(self):
        if self.closed:
            raise NotFound(
                "Workspace '%s' has been torn down, no artifacts can be resolved."
                % self.workspace_name
            )

    # -- subjects --

    def add_subject(self, name: str) -> Subject:
        self._check_open()
        with self._lock:
            if name in self.subjects:
                raise DuplicateSubject(
                    "Subject '%s' already exists in workspace '%s'"
                    % (name, self.workspace_name)
                )
            subject = Subject(name)
            self.subjects[name] = subject
        logging.debug("Created subject '%s'" % name)
        return subject

    def get_subject(self, name: str) -> Subject:
        self._check_open()
        if name not in self.subjects:
            raise NotFound(
                "Subject '%s' not found in workspace '%s'" % (name, self.workspace_name)
            )
        return self.subjects[name]

    # -- artifacts --

    def put(
        self,
        subject: str,
        kind: ArtifactKind,
        name: str,
        parameters=None,
        payload=None,
        produced_by: str = None,
        overwrite: bool = False,
        note: str = None,
    ) -> ArtifactRef:
        """Register a single artifact and return its reference.

        Raises:
            DuplicateArtifact: if the name is already registered for this subject and
                kind and ``overwrite`` isn't set. The store is left unchanged.
            NotFound: if the subject doesn't exist or the workspace was torn down.
        """
        pending = PendingArtifact(
            subject, kind, name, parameters, payload, produced_by, overwrite, note
        )
        return self.put_many([pending])[0]

    def put_many(self, pending: list[PendingArtifact]) -> list[ArtifactRef]:
        """Register several artifacts all at once: either every one of them is registered,
        or (on any error) none are."""
        self._check_open()
        if len(pending) == 0:
            return []

        # validate and reserve version numbers
        with self._lock:
            versions = self._validate_pending(pending)
            for item, version in zip(pending, versions):
                self._versions[item.key] = max(self._versions.get(item.key, 0), version)

        # payload io happens outside of the lock so that parallel branches writing
        # different artifacts don't wait on each other
        artifacts = []
        try:
            for item, version in zip(pending, versions):
                ref = ArtifactRef(
                    self.workspace_name,
                    item.subject,
                    item.kind,
                    item.name,
                    version,
                    self.store_id,
                )
                artifacts.append(
                    Artifact(
                        ref=ref,
                        parameters=freeze_parameters(item.parameters),
                        produced_by=item.produced_by,
                        note=item.note,
                        payload_handle=self._make_handle(ref, item.payload),
                    )
                )
        except Exception:
            for artifact in artifacts:
                artifact.payload_handle.release()
            with self._lock:
                self._unreserve_versions(pending, versions)
            raise

        # commit, re-checking for anything registered in the meantime
        superseded = []
        with self._lock:
            try:
                self._validate_pending(pending)
            except Exception:
                for artifact in artifacts:
                    artifact.payload_handle.release()
                self._unreserve_versions(pending, versions)
                raise
            for item, artifact in zip(pending, artifacts):
                if item.key in self._entries:
                    superseded.append(self._entries.pop(item.key))
                self._entries[item.key] = artifact

        for old in superseded:
            logging.debug("Superseding %s" % old.ref)
            old.payload_handle.release()
        for artifact in artifacts:
            logging.debug("Registered %s" % artifact.ref)
        return [artifact.ref for artifact in artifacts]

    def _validate_pending(self, pending: list[PendingArtifact]) -> list[int]:
        """Check subjects and duplicates, and return the version each pending artifact
        would get. Must be called with the lock held."""
        seen = set()
        versions = []
        for item in pending:
            if item.subject not in self.subjects:
                raise NotFound(
                    "Subject '%s' not found in workspace '%s'"
                    % (item.subject, self.workspace_name)
                )
            if item.key in seen:
                raise DuplicateArtifact(
                    "Artifact %s '%s' is registered twice in the same batch"
                    % (item.kind.value, item.name)
                )
            seen.add(item.key)
            if item.key in self._entries and not item.overwrite:
                raise DuplicateArtifact(
                    "Artifact %s '%s' already exists for subject '%s'"
                    % (item.kind.value, item.name, item.subject)
                )
            versions.append(self._versions.get(item.key, 0) + 1)
        return versions

    def _unreserve_versions(self, pending: list[PendingArtifact], versions: list[int]):
        """Give back the version numbers reserved for a registration that failed, so
        the next attempt gets the same numbers. A version that a concurrent
        registration has already moved past is left alone. Must be called with the
        lock held."""
        for item, version in zip(pending, versions):
            if self._versions.get(item.key) == version:
                if version > 1:
                    self._versions[item.key] = version - 1
                else:
                    del self._versions[item.key]

    def _make_handle(self, ref: ArtifactRef, payload):
        if self.payload_path is None:
            return MemoryPayload(payload)
        path = os.path.join(
            self.payload_path,
            utils.slugify(ref.subject),
            ref.kind.value,
            f"{utils.slugify(ref.name)}@{ref.version}",
        )
        return CachedPayload(payload, self.cacher_type(path))

    def get(self, ref: ArtifactRef) -> Artifact:
        """Resolve a reference.

        Raises:
            NotFound: if the artifact was never registered, has been removed or
                superseded by a newer version, belongs to another workspace, or the
                workspace was torn down.
        """
        self._check_open()
        if ref.workspace != self.workspace_name:
            raise NotFound(
                "%s belongs to workspace '%s', not '%s'"
                % (ref, ref.workspace, self.workspace_name)
            )
        if ref.store_id != self.store_id:
            raise NotFound(
                "%s was issued by an earlier instance of workspace '%s'"
                % (ref, self.workspace_name)
            )
        artifact = self._entries.get((ref.subject, ref.kind, ref.name))
        if artifact is None:
            raise NotFound("Artifact %s not found" % ref)
        if artifact.ref.version != ref.version:
            raise NotFound(
                "Artifact %s has been superseded by version %s"
                % (ref, artifact.ref.version)
            )
        return artifact

    def load(self, ref: ArtifactRef):
        """Return the payload of a live artifact."""
        return self.get(ref).payload_handle.load()

    def find(self, subject: str, kind: ArtifactKind, name: str) -> ArtifactRef:
        """Get the reference for the current version of a named artifact."""
        self._check_open()
        artifact = self._entries.get((subject, kind, name))
        if artifact is None:
            raise NotFound(
                "No %s named '%s' for subject '%s'" % (kind.value, name, subject)
            )
        return artifact.ref

    def list(self, subject: str = None, kind: ArtifactKind = None) -> list[ArtifactRef]:
        """References in registration order, optionally filtered by subject and kind."""
        self._check_open()
        return [
            artifact.ref
            for artifact in list(self._entries.values())
            if (subject is None or artifact.subject == subject)
            and (kind is None or artifact.kind == kind)
        ]

    def latest(self, subject: str, kind: ArtifactKind) -> ArtifactRef:
        """The most recently registered artifact of a kind for a subject."""
        refs = self.list(subject, kind)
        if len(refs) == 0:
            raise NotFound("No %s registered for subject '%s'" % (kind.value, subject))
        return refs[-1]

    def remove(self, ref: ArtifactRef):
        """Remove an artifact and release its payload. Provenance entries (and the
        ``produced_by`` links of other artifacts) are unaffected."""
        with self._lock:
            artifact = self.get(ref)
            del self._entries[(ref.subject, ref.kind, ref.name)]
        artifact.payload_handle.release()
        logging.debug("Removed %s" % ref)

    def close(self):
        """Release every payload. After this nothing in the store resolves."""
        with self._lock:
            artifacts = list(self._entries.values())
            self._entries.clear()
            self.closed = True
        for artifact in artifacts:
            artifact.payload_handle.release()

    def describe(self) -> dict:
        """A json-friendly dump of the registry (without payloads.)"""
        artifacts = []
        for artifact in list(self._entries.values()):
            description = artifact.describe()
            description["payload"] = artifact.payload_handle.describe()
            artifacts.append(description)
        return {
            "workspace": self.workspace_name,
            "subjects": [
                {"name": subject.name, "created": subject.created.isoformat()}
                for subject in self.subjects.values()
            ],
            "artifacts": artifacts,
        }

    def save(self, path: str):
        """Write the registry metadata to a json file."""
        with open(path, "w") as outfile:
            json.dump(self.describe(), outfile, indent=4)
