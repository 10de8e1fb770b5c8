import os
import sys

import pytest
import torch
import torch.nn.functional as F

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn
from stacknet import ops


ACT_INPUT = [[-0.1, 0.3, 0.5], [-2.0, 1.0, 2.0]]


def _run_activation(make_layer, data=ACT_INPUT, dtype=torch.float32):
    model = sn.Model(dtype=dtype)
    x = sn.Input(model, "x", (2, 3))
    y = make_layer(model)(x.node)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))
    return model.predict_batch({"x": torch.tensor(data, dtype=dtype)})["y"]


@pytest.mark.parametrize(
    "make_layer,expected",
    [
        (
            lambda m: sn.Sigmoid(m, "act"),
            [[0.47502081, 0.57444252, 0.62245933], [0.11920292, 0.73105858, 0.88079708]],
        ),
        (
            lambda m: sn.Tanh(m, "act"),
            [[-0.09966799, 0.29131261, 0.46211716], [-0.96402758, 0.76159416, 0.96402758]],
        ),
        (lambda m: sn.Relu(m, "act"), [[0.0, 0.3, 0.5], [0.0, 1.0, 2.0]]),
        (lambda m: sn.Binary(m, "act"), [[0.0, 1.0, 1.0], [0.0, 1.0, 1.0]]),
        (lambda m: sn.LeakyRelu(m, "act", 0.01), [[-0.001, 0.3, 0.5], [-0.02, 1.0, 2.0]]),
    ],
)
def test_activation_values(make_layer, expected):
    out = _run_activation(make_layer)
    assert out.dtype == torch.float32
    torch.testing.assert_close(out, torch.tensor(expected, dtype=torch.float32), atol=1e-6, rtol=1e-5)


def test_softmax_rows_sum_to_one():
    out = _run_activation(lambda m: sn.Softmax(m, "act"), dtype=torch.float64)
    expected = torch.softmax(torch.tensor(ACT_INPUT, dtype=torch.float64), dim=1)
    torch.testing.assert_close(out, expected)
    torch.testing.assert_close(out.sum(dim=1), torch.ones(2, dtype=torch.float64))


def test_unknown_activation_fails_at_attach():
    model = sn.Model()
    x = sn.Input(model, "x", (2, 3))
    with pytest.raises(ValueError, match="swish"):
        sn.Activation(model, "act", "swish")(x.node)


def test_one_hot_encodes_indices():
    indices = [1, 3, 2, 0, 4, 1, 3, 2]
    model = sn.Model()
    idx = sn.Input(model, "idx", (8,), dtype=torch.int64)
    oh = sn.OneHot(model, "oh", 5)(idx.node)
    assert oh.shape == (8, 5)
    model.build({"idx": idx.node}, {"oh": oh}, sn.mse_loss("target", oh))

    out = model.predict_batch({"idx": sn.make_1d_tensor(indices)})["oh"]
    expected = F.one_hot(torch.tensor(indices), num_classes=5).to(torch.float64)
    torch.testing.assert_close(out, expected)


def test_one_hot_output_is_not_differentiable():
    out = ops.one_hot(torch.tensor([0, 2]), 3, torch.float64)
    assert not out.requires_grad
    torch.testing.assert_close(out, torch.tensor([[1.0, 0.0, 0.0], [0.0, 0.0, 1.0]], dtype=torch.float64))


def test_one_hot_rejects_bad_configuration():
    model = sn.Model()
    with pytest.raises(ValueError):
        sn.OneHot(model, "oh", 0)
    x = sn.Input(model, "x", (4,))
    with pytest.raises(TypeError):
        sn.OneHot(model, "oh2", 3)(x.node)
    idx = sn.Input(model, "idx", (4, 1), dtype=torch.int64)
    with pytest.raises(sn.ShapeError):
        sn.OneHot(model, "oh3", 3)(idx.node)


def test_one_hot_index_out_of_range():
    model = sn.Model()
    idx = sn.Input(model, "idx", (2,), dtype=torch.int64)
    oh = sn.OneHot(model, "oh", 3)(idx.node)
    model.build({"idx": idx.node}, {"oh": oh}, sn.mse_loss("target", oh))
    with pytest.raises(IndexError):
        model.predict_batch({"idx": torch.tensor([0, 3])})


def test_elementwise_arithmetic():
    a_data = [[0.0, 0.0, 1.0], [1.0, 0.0, 0.0]]
    b_data = [[1.0, 1.0, 0.0], [1.0, 1.0, 0.0]]
    model = sn.Model()
    a = sn.Input(model, "a", (2, 3))
    b = sn.Input(model, "b", (2, 3))
    outputs = {
        "add": sn.Add(model, "add")(a.node, b.node),
        "sub": sn.Sub(model, "sub")(a.node, b.node),
        "mul": sn.HadamardProd(model, "mul")(a.node, b.node),
        "dot": sn.Dot(model, "dot")(a.node, b.node),
    }
    assert outputs["dot"].shape == (2, 1)
    model.build({"a": a.node, "b": b.node}, outputs, sn.mse_loss("target", outputs["add"]))

    out = model.predict_batch(
        {"a": torch.tensor(a_data, dtype=torch.float64), "b": torch.tensor(b_data, dtype=torch.float64)}
    )
    f64 = dict(dtype=torch.float64)
    torch.testing.assert_close(out["add"], torch.tensor([[1.0, 1.0, 1.0], [2.0, 1.0, 0.0]], **f64))
    torch.testing.assert_close(out["sub"], torch.tensor([[-1.0, -1.0, 1.0], [0.0, -1.0, 0.0]], **f64))
    torch.testing.assert_close(out["mul"], torch.tensor([[0.0, 0.0, 0.0], [1.0, 0.0, 0.0]], **f64))
    torch.testing.assert_close(out["dot"], torch.tensor([[0.0], [1.0]], **f64))


def test_hadamard_div():
    model = sn.Model()
    a = sn.Input(model, "a", (1, 2))
    b = sn.Input(model, "b", (1, 2))
    y = sn.HadamardDiv(model, "div")(a.node, b.node)
    model.build({"a": a.node, "b": b.node}, {"y": y}, sn.mse_loss("target", y))
    out = model.predict_batch(
        {"a": torch.tensor([[3.0, 1.0]], dtype=torch.float64), "b": torch.tensor([[2.0, 4.0]], dtype=torch.float64)}
    )["y"]
    torch.testing.assert_close(out, torch.tensor([[1.5, 0.25]], dtype=torch.float64))


def test_arithmetic_requires_identical_shapes_and_known_op():
    model = sn.Model()
    a = sn.Input(model, "a", (2, 3))
    b = sn.Input(model, "b", (2, 4))
    with pytest.raises(sn.ShapeError):
        sn.Add(model, "add")(a.node, b.node)
    with pytest.raises(ValueError, match="pow"):
        sn.BinElemArithmetic(model, "pow", "pow")(a.node, a.node)


def test_dense_shapes_and_bias_row():
    model = sn.Model()
    x = sn.Input(model, "x", (4, 3))
    dense = sn.Dense(model, "d", 5)
    y = dense(x.node)
    assert y.shape == (4, 5)
    assert dense.parameters()["weights"].shape == (4, 5)
    assert dense.trainable

    bad = sn.Input(model, "bad", (4, 3, 2))
    with pytest.raises(sn.ShapeError):
        sn.Dense(model, "d2", 5)(bad.node)


def test_dense_computes_affine_map():
    model = sn.Model()
    x = sn.Input(model, "x", (2, 2))
    dense = sn.Dense(model, "d", 1)
    y = dense(x.node)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))
    model.set_params({"d:weights": torch.tensor([[1.0], [2.0], [0.5]], dtype=torch.float64)})
    out = model.predict_batch({"x": torch.tensor([[1.0, 1.0], [2.0, 0.0]], dtype=torch.float64)})["y"]
    torch.testing.assert_close(out, torch.tensor([[3.5], [2.5]], dtype=torch.float64))


def test_conv_output_shapes():
    model = sn.Model()
    x = sn.Input(model, "x", (2, 1, 5, 5))
    same = sn.SimpleConv2D(model, "same", 3, 4)(x.node)
    valid = sn.Conv2D(model, "valid", 3, 1, "valid", 4)(x.node)
    strided = sn.Conv2D(model, "strided", (3, 3), (2, 2), "same", 2)(x.node)
    assert same.shape == (2, 4, 5, 5)
    assert valid.shape == (2, 4, 3, 3)
    assert strided.shape == (2, 2, 3, 3)
    with pytest.raises(ValueError):
        sn.Conv2D(model, "bad", 3, 1, "full", 4)


def test_max_pool_same_padding_uses_negative_infinity():
    model = sn.Model()
    x = sn.Input(model, "x", (1, 1, 5, 5))
    y = sn.SimpleMaxPooling2D(model, "pool", 2)(x.node)
    assert y.shape == (1, 1, 3, 3)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))

    data = -(torch.arange(25, dtype=torch.float64) + 1).reshape(1, 1, 5, 5)
    out = model.predict_batch({"x": data})["y"]
    expected = torch.tensor(
        [[-1.0, -3.0, -5.0], [-11.0, -13.0, -15.0], [-21.0, -23.0, -25.0]], dtype=torch.float64
    ).reshape(1, 1, 3, 3)
    torch.testing.assert_close(out, expected)


def test_same_padding_split():
    assert ops.same_padding(5, 2, 2) == [0, 1]
    assert ops.same_padding(4, 2, 2) == [0, 0]
    assert ops.same_padding(5, 3, 1) == [1, 1]


def test_dropout_is_identity_at_inference():
    model = sn.Model()
    x = sn.Input(model, "x", (4, 10))
    y = sn.Dropout(model, "drop", 0.5)(x.node)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))
    data = torch.randn(4, 10, dtype=torch.float64)
    torch.testing.assert_close(model.predict_batch({"x": data})["y"], data)
    with pytest.raises(ValueError):
        sn.Dropout(sn.Model(), "drop", 1.0)


def test_reshape_checks_volume():
    model = sn.Model()
    x = sn.Input(model, "x", (4, 6))
    y = sn.Reshape(model, "r", (4, 2, 3))(x.node)
    assert y.shape == (4, 2, 3)
    with pytest.raises(sn.ShapeError):
        sn.Reshape(model, "r2", (4, 5))(x.node)


def test_layer_attaches_once_and_not_after_build():
    model = sn.Model()
    x = sn.Input(model, "x", (2, 3))
    act = sn.Relu(model, "act")
    y = act(x.node)
    with pytest.raises(sn.BuildError):
        act.attach(x.node)
    with pytest.raises(sn.BuildError):
        x.attach(y)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))
    with pytest.raises(sn.BuildError):
        sn.Relu(model, "late")


def test_namer_counts_up():
    namer = sn.Namer("dense")
    assert namer() == "dense_1"
    assert namer.next() == "dense_2"
