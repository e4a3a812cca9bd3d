"""Ensure the parameter hashing works as expected."""

from dataclasses import dataclass, field

from headfactory.hashing import (
    get_param_set_hash_values,
    hash_param_set,
    param_set_string_hash_representations,
    set_hash_functions,
)
from headfactory.params import StageParameters
from headfactory.stages import DuneuroOptions, HeadModelParameters, InverseOptions


def test_hash_includes_all_parameters():
    """The hash of a subclass of stage parameters should include all of the subclass's
    fields, and skip the internal ones."""

    @dataclass
    class MeshOptions(StageParameters):
        nvertices: int = 0
        zneck: float = None

    params1 = MeshOptions(nvertices=6, zneck=7)
    hash_values = get_param_set_hash_values(params1)
    assert hash_values["nvertices"] == ("repr(param_set.nvertices)", "6")
    assert hash_values["zneck"] == ("repr(param_set.zneck)", "7")
    assert hash_values["hash_representations"][0] == "SKIPPED: blacklist"

    params2 = MeshOptions(nvertices=5, zneck=6)
    assert params1.params_hash() != params2.params_hash()


def test_static_hashing_function_same_when_vals_diff():
    """Two instances where a value is different but the hashing mechanism is a function
    that returns the same value should both have the same hash."""

    @dataclass
    class SolverOptions(StageParameters):
        tolerance: float = 1e-8
        n_threads: int = 4

        hash_representations: dict = set_hash_functions(n_threads=lambda self, obj: 1)

    assert SolverOptions().params_hash() == SolverOptions(n_threads=16).params_hash()


def test_none_hashing_function_same_when_vals_diff():
    @dataclass
    class SolverOptions(StageParameters):
        tolerance: float = 1e-8
        n_threads: int = 4

        hash_representations: dict = set_hash_functions(n_threads=None)

    params = SolverOptions()
    assert params.params_hash() == SolverOptions(n_threads=16).params_hash()
    assert (
        get_param_set_hash_values(params)["n_threads"][0]
        == "SKIPPED: set to None in hash_representations"
    )


def test_none_value_not_hashed():
    """A parameter set to None shouldn't be included in the hash, so adding a new
    option defaulting to None keeps the hashes of earlier runs."""

    @dataclass
    class Options1(StageParameters):
        highpass: float = 20
        lowpass: float = None

    @dataclass
    class Options2(StageParameters):
        highpass: float = 20

    assert Options1().params_hash() == Options2().params_hash()
    assert get_param_set_hash_values(Options1())["lowpass"][0] == "SKIPPED: value is None"


def test_parameter_name_included_in_hash():
    """Two parameter sets where values are swapped between options should not hash to
    the same value."""

    @dataclass
    class Window(StageParameters):
        start: float = 0
        end: float = 1

    assert Window(start=5, end=6).params_hash() != Window(start=6, end=5).params_hash()


def test_field_order_does_not_matter():
    @dataclass
    class WindowA(StageParameters):
        start: float = 0
        end: float = 1

    @dataclass
    class WindowB(StageParameters):
        end: float = 1
        start: float = 0

    assert WindowA().params_hash() == WindowB().params_hash()


def test_nested_options_change_hash():
    """Changing a solver option nested in the head model parameters should change the
    head model's hash."""
    params1 = HeadModelParameters()
    params2 = HeadModelParameters(duneuro=DuneuroOptions(use_tensor=False))
    assert params1.params_hash() != params2.params_hash()


def test_nested_ignored_options_keep_hash():
    """Intermediate file names of the solver don't change the head model."""
    params1 = HeadModelParameters()
    params2 = HeadModelParameters(duneuro=DuneuroOptions(bst_eeg_lf_file="other.dat"))
    assert params1.params_hash() == params2.params_hash()
    assert type(get_param_set_hash_values(params1)["duneuro"][1]) == dict


def test_inverse_comment_is_not_hashed():
    """The same inverse configuration with a different label should hash the same, so
    two variants can be compared by their hashes."""
    eeg = InverseOptions(comment="DUNEuro FEM EEG DTI")
    bem = InverseOptions(comment="OpenMEEG BEM EEG")
    assert eeg.params_hash() == bem.params_hash()
    assert eeg.params_hash() != InverseOptions(comment="x", data_types=["MEG"]).params_hash()


def test_no_parameters_hash():
    assert hash_param_set(None) == ""
    assert param_set_string_hash_representations(None) == {}


def test_set_hash_functions_with_dict_and_kwargs():
    """Calling set_hash_functions with both a dictionary and kwargs should create a
    merged dictionary, the kwargs overriding the dictionary."""

    @dataclass
    class Options(StageParameters):
        a: int = 0
        b: int = None
        c: int = 5

        hash_representations: dict = set_hash_functions({"a": None, "b": None}, b=str, c=None)

    params = Options()
    assert set(params.hash_representations) == {"a", "b", "c"}
    assert params.hash_representations["b"] is str


def test_set_hash_functions_on_instance():
    """Setting the hashing functions on an instance should change that instance's hash,
    but not any other instance's."""

    @dataclass
    class Options(StageParameters):
        a: int = 0
        c: int = 5

    params0 = Options()
    params1 = Options()
    params0.hash_representations["c"] = None
    assert params0.params_hash() != params1.params_hash()
    assert Options().hash_representations == {}


def test_ignored_values_in_string_rep():
    """The string representation of an ignored parameter should still include the value,
    in a sub IGNORED_PARAMS dictionary."""

    @dataclass
    class Options(StageParameters):
        a: int = 0
        b: int = 5

        hash_representations: dict = set_hash_functions(a=None)

    rep = param_set_string_hash_representations(Options(a=6))
    assert rep["b"] == "5"
    assert rep["IGNORED_PARAMS"] == {"a": "6"}
    assert "hash_representations" not in rep


def test_nested_string_rep():
    @dataclass
    class NormalDC:
        c: int = 5
        d: int = 6

        hash_representations: dict = set_hash_functions(d=None)

    @dataclass
    class Options(StageParameters):
        a: int = 0
        others: NormalDC = field(default_factory=NormalDC)

    rep = param_set_string_hash_representations(Options(others=NormalDC(d=7)))
    assert rep["others"]["c"] == "5"
    assert rep["others"]["IGNORED_PARAMS"]["d"] == "7"
