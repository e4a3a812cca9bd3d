"""Utility functions for generating hashes of stage parameter sets.

Every stage invocation records the hash of its effective parameters in the
provenance log. This makes it easy to tell whether two invocations of the same
stage (for instance the same inverse solver in two different forward-model
variants) were configured identically, and to compare runs with each other.

The basic idea of this hash computation is that some representation for every
parameter in a parameter set is retrieved, which is then turned into a string,
and the md5 hash of that string is then computed. The integer value of the
resulting md5 hashes of each parameter is added up, and the final integer is
turned back into a string hex "hash", so the field order doesn't matter.

Parameters can override how individual fields are represented for hashing
through ``hash_representations``, or exclude a field by setting its
representation to ``None``. (Useful for operational options such as the number
of solver threads, which don't change the produced artifact.)
"""

import hashlib
from dataclasses import field, fields, is_dataclass
from typing import Any, Callable

PARAMETERS_BLACKLIST = ["hash_representations"]
"""Parameter fields that are never part of the hash."""


def set_hash_functions(*args, **kwargs):
    """Build the ``hash_representations`` dataclass field of a parameter class, from
    a dictionary and/or keyword arguments (keywords win.)

    Example:
        .. code-block:: python

            @dataclass
            class SolverOptions(StageParameters):
                tolerance: float = 1e-8
                n_threads: int = 4

                # the thread count doesn't change the result, leave it out of the hash
                hash_representations: dict = set_hash_functions(n_threads=None)
    """
    if len(args) > 1 or (len(args) == 1 and not isinstance(args[0], dict)):
        raise ValueError("set_hash_functions takes at most one positional dictionary.")
    functions = {**(args[0] if len(args) > 0 else {}), **kwargs}
    return field(default_factory=lambda: dict(functions), repr=False)


def get_parameter_hash_value(param_set, param_name: str) -> tuple[str, Any]:
    """Determines which hashing representation mechanism to use for the specified
    parameter, computes the result of the mechanism, and returns both.

    The mechanisms, in order:

    1. Skip blacklisted internal fields.
    2. If there's an associated entry in ``hash_representations``, use it (``None``
       skips the parameter, otherwise it's called with the parameter set and the value.)
    3. Skip the parameter if its value is ``None``.
    4. Recurse into nested dataclasses.
    5. Use the qualified name of callables rather than their memory address.
    6. Fall back to ``repr``.

    Returns:
        A tuple with a string description of the mechanism and the resulting
        representation (``None`` if skipped.)
    """
    value = getattr(param_set, param_name)
    hash_representations = getattr(param_set, "hash_representations", {}) or {}

    if param_name in PARAMETERS_BLACKLIST:
        return ("SKIPPED: blacklist", None)
    elif param_name in hash_representations:
        if hash_representations[param_name] is None:
            return ("SKIPPED: set to None in hash_representations", None)
        return (
            f"hash_representations['{param_name}'](param_set, param_set.{param_name})",
            hash_representations[param_name](param_set, value),
        )
    elif value is None:
        return ("SKIPPED: value is None", None)
    elif is_dataclass(value):
        return (
            f"get_param_set_hash_values(param_set, {param_name})",
            get_param_set_hash_values(value),
        )
    elif isinstance(value, Callable):
        return ("value.__qualname__", value.__qualname__)

    return (f"repr(param_set.{param_name})", repr(value))


def get_param_set_hash_values(param_set) -> dict[str, tuple[str, Any]]:
    """Collect the hash representations from every parameter in the passed parameter set."""
    return {
        param.name: get_parameter_hash_value(param_set, param.name)
        for param in fields(param_set)
    }


def _sum_hashes(hash_values: dict[str, tuple[str, Any]]) -> int:
    total = 0
    for key, (mechanism, representation) in hash_values.items():
        if representation is None:
            continue
        if mechanism.startswith("get_param_set_hash_values"):
            total += _sum_hashes(representation)
            continue
        # the key is included so that two options with swapped values differ
        digest = hashlib.md5(f"{key}{representation}".encode()).hexdigest()
        total += int(digest, 16)
    return total


def hash_param_set(param_set) -> str:
    """Returns a hex string representing the passed parameter dataclass. ``None``
    (a stage with no parameters) hashes to an empty string."""
    if param_set is None:
        return ""
    return f"{_sum_hashes(get_param_set_hash_values(param_set)):x}"


def param_set_string_hash_representations(param_set) -> dict[str, Any]:
    """Get the parameters as a json-dumpable dictionary, with any parameters that are
    excluded from the hash listed under ``IGNORED_PARAMS``. This is what gets
    shown in the provenance log and report."""
    if param_set is None:
        return {}
    representations = {}
    ignored = {}
    for key, (mechanism, representation) in get_param_set_hash_values(param_set).items():
        if key in PARAMETERS_BLACKLIST:
            continue
        value = getattr(param_set, key)
        if mechanism.startswith("get_param_set_hash_values"):
            representations[key] = param_set_string_hash_representations(value)
        elif representation is not None:
            representations[key] = str(representation)
        elif value is None:
            representations[key] = None
        else:
            ignored[key] = str(value)
    if len(ignored) > 0:
        representations["IGNORED_PARAMS"] = ignored
    return representations
