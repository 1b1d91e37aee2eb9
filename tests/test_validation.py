"""Tests for input checks and the error/warning taxonomy."""

import warnings

import numpy as np
import pytest

from otsolve import validation


def test_error_classes_are_value_errors():
    assert issubclass(validation.ShapeMismatchError, ValueError)
    assert issubclass(validation.MassImbalanceError, ValueError)
    assert issubclass(validation.ConvergenceWarning, UserWarning)


def test_as_marginal_accepts_lists():
    a = validation.as_marginal([1, 2, 3], "a")
    assert a.dtype == np.float64
    np.testing.assert_array_equal(a, [1.0, 2.0, 3.0])


@pytest.mark.parametrize("x", [1.0, [[0.5, 0.5]], np.ones((2, 2, 2))])
def test_as_marginal_rejects_ranks(x):
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_marginal(x, "a")


def test_as_marginal_batch():
    b = validation.as_marginal([[0.0, 0.5], [1.0, 0.5]], "b", allow_batch=True)
    assert b.shape == (2, 2)
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_marginal(np.ones((2, 2, 2)), "b", allow_batch=True)


def test_as_marginal_rejects_empty():
    with pytest.raises(validation.ShapeMismatchError, match="empty"):
        validation.as_marginal([], "a")
    with pytest.raises(validation.ShapeMismatchError, match="empty"):
        validation.as_marginal(np.zeros((3, 0)), "b", allow_batch=True)


def test_as_marginal_values():
    with pytest.raises(validation.ShapeMismatchError, match="expected 3"):
        validation.as_marginal([0.5, 0.5], "a", size=3)
    with pytest.raises(ValueError, match="nonnegative"):
        validation.as_marginal([0.5, -0.5], "a")
    with pytest.raises(ValueError, match="non-finite"):
        validation.as_marginal([0.5, np.nan], "a")


def test_as_cost_matrix():
    cost = validation.as_cost_matrix([[0, 1], [1, 0]], (2, 2))
    assert cost.shape == (2, 2)
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_cost_matrix([0.0, 1.0])
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_cost_matrix(np.zeros((2, 3)), (3, 2))
    with pytest.raises(ValueError):
        validation.as_cost_matrix([[0.0, np.inf], [1.0, 0.0]])


def test_as_support():
    np.testing.assert_array_equal(
        validation.as_support([[0.1], [0.2]], "x"), [0.1, 0.2]
    )
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_support(np.zeros((2, 2)), "x")
    with pytest.raises(validation.ShapeMismatchError):
        validation.as_support([], "x")


def test_check_positive():
    validation.check_positive(1e-12, "epsilon")
    validation.check_positive(np.inf, "reg_m")
    for value in (0.0, -1.0, np.nan):
        with pytest.raises(ValueError):
            validation.check_positive(value, "epsilon")


def test_check_mass_balance():
    a = np.array([0.5, 0.5])
    validation.check_mass_balance(a, np.array([0.2, 0.3, 0.5]))
    validation.check_mass_balance(a, np.array([1.0 + 1e-8]))
    validation.check_mass_balance(a, np.array([[0.0, 0.5], [1.0, 0.5]]))
    with pytest.raises(validation.MassImbalanceError):
        validation.check_mass_balance(a, np.array([[0.0, 0.5], [1.0, 0.6]]))
    with pytest.raises(validation.MassImbalanceError):
        validation.check_mass_balance(a, np.array([0.9]), tolerance=1e-2)
    validation.check_mass_balance(a, np.array([0.9]), tolerance=0.2)


def test_warn_not_converged():
    with warnings.catch_warnings(record=True) as caught:
        warnings.simplefilter("always")
        validation.warn_not_converged("Sinkhorn", 1000, 1e-3)
    assert len(caught) == 1
    assert issubclass(caught[0].category, validation.ConvergenceWarning)
    assert "1000 iterations" in str(caught[0].message)
