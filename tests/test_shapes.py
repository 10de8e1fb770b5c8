import os
import sys

import pytest

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
from stacknet import shapes
from stacknet.errors import ShapeError


def test_validators_pass_on_matching_shapes():
    shapes.validate_shape(
        (4, 3, 2),
        shapes.ndims(3),
        shapes.nth_dim(1, 3),
        shapes.matching_shape([4, 3, 2]),
        shapes.matching_volume((2, 12)),
        shapes.at_least_ndims(2),
    )


def test_first_failing_validator_reports_expected_and_actual():
    with pytest.raises(ShapeError) as excinfo:
        shapes.validate_shape((4, 3), shapes.at_least_ndims(1), shapes.ndims(3))
    message = str(excinfo.value)
    assert "ndims 3" in message
    assert "ndims 2" in message


def test_nth_dim_out_of_range_axis():
    with pytest.raises(ShapeError):
        shapes.validate_shape((4,), shapes.nth_dim(2, 1))


def test_matching_volume_rejects_different_size():
    with pytest.raises(ShapeError, match="same size"):
        shapes.validate_shape((4, 5), shapes.matching_volume((4, 6)))


def test_shape_error_is_a_value_error():
    with pytest.raises(ValueError):
        shapes.validate_shape((1,), shapes.matching_shape((2,)))


def test_volume_and_exact_eq():
    assert shapes.volume((2, 3, 4)) == 24
    assert shapes.volume(()) == 1
    assert shapes.exact_shape_eq([2, 3], (2, 3))
    assert not shapes.exact_shape_eq((2, 3), (3, 2))
