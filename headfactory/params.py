"""Contains the base parameter class StageParameters, a dataclass meant to represent
the configuration block of a single stage (e.g. the options of a forward-model solver)."""

import numbers
from dataclasses import MISSING, asdict, dataclass, field, fields
from typing import Callable, Union

from headfactory import hashing


class InvalidParameters(ValueError):
    """An unrecognized option, or an option value outside of its enumerated choices."""

    pass


def option(default=MISSING, choices: tuple = None, help: str = None, **kwargs):
    """Declare a stage option with an explicit enumeration of the values it accepts.

    Example:
        .. code-block:: python

            @dataclass
            class SolverOptions(StageParameters):
                solver_type: str = option("cg", choices=("cg", "bicgstab"))
    """
    metadata = dict(kwargs.pop("metadata", {}))
    if choices is not None:
        metadata["choices"] = tuple(choices)
    if help is not None:
        metadata["help"] = help
    if default is not MISSING and isinstance(default, (list, dict, set)):
        return field(
            default_factory=lambda: type(default)(default), metadata=metadata, **kwargs
        )
    return field(default=default, metadata=metadata, **kwargs)


def _default_value(param):
    if param.default is not MISSING:
        return param.default
    if param.default_factory is not MISSING:
        return param.default_factory()
    return None


def _same_type(value, default) -> bool:
    """Whether a value is acceptable for an option with the given default. Integers
    are accepted for float options, and 0/1 for flags."""
    if isinstance(default, StageParameters):
        return isinstance(value, type(default))
    if isinstance(default, bool):
        return isinstance(value, numbers.Integral)
    if isinstance(default, numbers.Real):
        return isinstance(value, numbers.Real)
    if isinstance(default, str):
        return isinstance(value, str)
    if isinstance(default, (list, tuple)):
        return isinstance(value, (list, tuple))
    return True


def _strip_blacklisted(values: dict) -> dict:
    for key in hashing.PARAMETERS_BLACKLIST:
        values.pop(key, None)
    for key, value in values.items():
        if isinstance(value, dict):
            values[key] = _strip_blacklisted(value)
    return values


@dataclass
class StageParameters:
    """Base parameter class for the configuration of a stage.

    Every stage declares one subclass of this with named, defaulted fields. The
    fields *are* the recognized options of the stage: anything else passed in
    through :code:`from_options()` is rejected, and values are checked against
    any declared :code:`choices` when the stage executor runs its pre-flight
    validation (before the external collaborator is ever called.)

    Example:
        .. code-block:: python

            from dataclasses import dataclass
            from headfactory.params import StageParameters, option

            @dataclass
            class BandpassParameters(StageParameters):
                highpass: float = 20
                lowpass: float = 250
                attenuation: str = option("strict", choices=("strict", "relaxed"))
    """

    hash_representations: dict[str, Union[None, Callable]] = field(
        default_factory=dict, repr=False
    )
    """Dictionary of parameter names where you can provide functions that return a
        unique/consistent representation of the parameter for hashing, or ``None`` to
        exclude an operational option from the hash. (see ``hashing.get_parameter_hash_value``)"""

    @classmethod
    def recognized_options(cls) -> list[str]:
        """The names of every option this stage accepts."""
        return [
            param.name
            for param in fields(cls)
            if param.name not in hashing.PARAMETERS_BLACKLIST
        ]

    @classmethod
    def option_choices(cls) -> dict[str, tuple]:
        """The enumerated values for any options that declare them."""
        return {
            param.name: param.metadata["choices"]
            for param in fields(cls)
            if "choices" in param.metadata
        }

    @classmethod
    def from_options(cls, options: dict = None, **kwargs) -> "StageParameters":
        """Build a parameter set from a plain dictionary of options, the way the
        configuration literals for a solver are usually written.

        Raises:
            InvalidParameters: if any key isn't a recognized option of this stage.
        """
        options = {**(options or {}), **kwargs}
        recognized = cls.recognized_options()
        unknown = [key for key in options if key not in recognized]
        if len(unknown) > 0:
            raise InvalidParameters(
                "Unrecognized option(s) %s for %s. Recognized options are: %s"
                % (unknown, cls.__name__, recognized)
            )
        # nested option blocks (e.g. the solver options of a head model) can be
        # given as dictionaries too
        for param in fields(cls):
            nested_type = param.default_factory
            if (
                param.name in options
                and isinstance(options[param.name], dict)
                and isinstance(nested_type, type)
                and issubclass(nested_type, StageParameters)
            ):
                options[param.name] = nested_type.from_options(options[param.name])
        return cls(**options)

    def validate(self):
        """Check every option value against the type of its default and its declared
        choices. Subclasses with additional constraints should extend this and call
        ``super().validate()`` first, so that their own checks can rely on the value
        types. Nested option blocks are only type checked here, the subclass decides
        which of them are in use and validates those.

        Raises:
            InvalidParameters: if a value doesn't match the type of the option's default,
                or is outside of its enumerated choices.
        """
        for param in fields(self):
            if param.name in hashing.PARAMETERS_BLACKLIST:
                continue
            value = getattr(self, param.name)
            default = _default_value(param)
            if value is None or default is None:
                continue
            if not _same_type(value, default):
                raise InvalidParameters(
                    "Option '%s' of %s has value %r, expected a %s"
                    % (param.name, type(self).__name__, value, type(default).__name__)
                )
            if isinstance(default, (list, tuple)) and len(default) > 0:
                for item in value:
                    if not _same_type(item, default[0]):
                        raise InvalidParameters(
                            "Option '%s' of %s has item %r, expected a list of %s"
                            % (param.name, type(self).__name__, item, type(default[0]).__name__)
                        )
        for name, choices in self.option_choices().items():
            value = getattr(self, name)
            if value not in choices:
                raise InvalidParameters(
                    "Option '%s' of %s has value %r, expected one of %s"
                    % (name, type(self).__name__, value, list(choices))
                )

    def required_kinds(self) -> list:
        """Any artifact kinds that must be among the stage inputs given *these* parameter
        values, beyond what the stage's input slots already require. (e.g. a FEM head
        model using anisotropic tensors needs a conductivity tensor field.)"""
        return []

    def as_dict(self) -> dict:
        """The options as a plain (deep-copied) dictionary."""
        return _strip_blacklisted(asdict(self))

    def params_hash(self) -> str:
        """Convenience function to see the hash that is recorded in provenance for
        these parameters."""
        return hashing.hash_param_set(self)
