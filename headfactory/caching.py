"""Classes for the payload storage strategies of the artifact store, known as "cachers",
and the opaque payload handles the store hands out.

A dry (in-memory) workspace keeps every payload in a :code:`MemoryPayload`. A
persistent workspace writes each payload to disk with a cacher as soon as it is
registered and wraps it in a :code:`CachedPayload`, which only reloads it when a
stage actually needs it (similar to a lazy object.)
"""

import json
import logging
import os
import pickle

from headfactory.artifact import freeze_payload


class PayloadReleased(Exception):
    """The payload was already released by the store (superseded, removed, or the
    workspace was torn down.)"""

    pass


class Cacheable:
    """The base caching class, any caching strategy should extend this.

    Args:
        path_override (str): The full path (minus extension) to save the payload to.
        extension (str): The filetype extension to add at the end of the path.

    Note:
        Subclasses must implement :code:`save()` and :code:`load()`, using
        :code:`get_path()` to determine where to write.

        .. code-block:: python

            class NumpyCacher(Cacheable):
                def __init__(self, *args, **kwargs):
                    super().__init__(*args, extension=".npy", **kwargs)

                def save(self, obj):
                    np.save(self.get_path(), obj)

                def load(self):
                    return np.load(self.get_path())
    """

    def __init__(self, path_override: str = None, extension: str = None):
        self.path_override = path_override
        self.extension = extension

    def get_path(self) -> str:
        """Returns the path this cacher writes to, including the extension."""
        if self.path_override is None:
            raise ValueError("Cacher has no path to write to.")
        path = self.path_override
        if self.extension is not None and not path.endswith(self.extension):
            path += self.extension
        return path

    def check(self) -> bool:
        """Whether the cached file exists."""
        return os.path.exists(self.get_path())

    def save(self, obj):
        raise NotImplementedError

    def load(self):
        raise NotImplementedError

    def remove(self):
        """Delete the cached file, if it exists."""
        if self.check():
            logging.debug("Removing cached payload '%s'" % self.get_path())
            os.remove(self.get_path())


class PickleCacher(Cacheable):
    """Dumps a payload to a pickle file. This is the default strategy, since it handles
    numpy arrays and nested containers of them."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, extension=".pkl", **kwargs)

    def save(self, obj):
        os.makedirs(os.path.dirname(os.path.abspath(self.get_path())), exist_ok=True)
        with open(self.get_path(), "wb") as outfile:
            pickle.dump(obj, outfile)

    def load(self):
        with open(self.get_path(), "rb") as infile:
            return pickle.load(infile)


class JsonCacher(Cacheable):
    """Dumps a json-serializable payload (e.g. a small dictionary of results) to a json file."""

    def __init__(self, *args, **kwargs):
        super().__init__(*args, extension=".json", **kwargs)

    def save(self, obj):
        os.makedirs(os.path.dirname(os.path.abspath(self.get_path())), exist_ok=True)
        with open(self.get_path(), "w") as outfile:
            json.dump(obj, outfile, indent=4, default=str)

    def load(self):
        with open(self.get_path()) as infile:
            return json.load(infile)


class MemoryPayload:
    """Payload handle keeping a frozen copy of the payload in memory."""

    def __init__(self, payload):
        self._payload = freeze_payload(payload)
        self.released = False

    def load(self):
        if self.released:
            raise PayloadReleased("Payload has been released.")
        return self._payload

    def release(self):
        self._payload = None
        self.released = True

    def describe(self) -> str:
        return "memory"


class CachedPayload:
    """Payload handle backed by a cacher. The payload is written out immediately and
    every :code:`load()` returns a fresh (frozen) copy read back from disk."""

    def __init__(self, payload, cacher: Cacheable):
        self.cacher = cacher
        self.released = False
        self.cacher.save(payload)

    def load(self):
        if self.released:
            raise PayloadReleased("Payload has been released.")
        return freeze_payload(self.cacher.load())

    def release(self):
        self.cacher.remove()
        self.released = True

    def describe(self) -> str:
        return self.cacher.get_path()
