import io
import os
import sys

import pytest
import torch

sys.path.insert(0, os.path.abspath(os.path.join(os.path.dirname(__file__), "..")))
import stacknet as sn
from stacknet.training import progress_line


def _linear_model():
    torch.manual_seed(0)
    model = sn.Model()
    x = sn.Input(model, "x", (2, 1))
    y = sn.Dense(model, "d", 1)(x.node)
    model.build({"x": x.node}, {"y": y}, sn.mse_loss("yt", y))
    xs = {"x": torch.linspace(-1, 1, 6, dtype=torch.float64).reshape(6, 1)}
    ys = {"yt": 3 * xs["x"] + 1}
    return model, xs, ys


def test_fit_config_defaults_and_mapping():
    cfg = sn.FitConfig()
    assert (cfg.epochs, cfg.log_every, cfg.verbose, cfg.clear_line, cfg.callbacks) == (1, 1, True, False, ())
    cfg = sn.fit_config_from_mapping({"epochs": "3", "verbose": 0})
    assert cfg.epochs == 3
    assert cfg.verbose is False
    with pytest.raises(KeyError, match="lr"):
        sn.fit_config_from_mapping({"epochs": 2, "lr": 0.1})
    with pytest.raises(ValueError):
        sn.FitConfig(epochs=0)


def test_progress_line_format():
    line = progress_line(3, 10, 0.5, 5, 10)
    assert line.startswith("Epoch 3/10 - Loss: 0.500000 |")
    assert line.endswith(" 50%")
    assert progress_line(1, 1, 0.0, 4, 4).endswith("| 100%")


def test_fit_logs_first_last_and_every_kth_epoch(capsys):
    model, xs, ys = _linear_model()
    model.fit(xs, ys, sn.SGDSolver(0.1), epochs=5, log_every=2)
    out = capsys.readouterr().out
    for epoch in (1, 2, 4, 5):
        assert f"Epoch {epoch}/5 - Loss:" in out
    assert "Epoch 3/5" not in out
    assert out.count("Done") == 4
    assert out.endswith("\n")


def test_fit_clear_line_and_quiet(capsys):
    model, xs, ys = _linear_model()
    model.fit(xs, ys, sn.SGDSolver(0.1), epochs=2, clear_line=True)
    out = capsys.readouterr().out
    assert out.count("\n") == 1
    assert out.endswith("\r\n")

    model.fit(xs, ys, sn.SGDSolver(0.1), epochs=2, verbose=False)
    assert capsys.readouterr().out == ""


def test_fit_redraws_progress_about_a_hundred_times_per_epoch(capsys):
    model, _, _ = _linear_model()
    xs = {"x": torch.linspace(-1, 1, 600, dtype=torch.float64).reshape(600, 1)}
    ys = {"yt": 3 * xs["x"] + 1}
    model.fit(xs, ys, sn.SGDSolver(0.01), epochs=1)
    out = capsys.readouterr().out
    # 300 batches, redrawn on batches 1, 4, ..., 298
    assert out.count("%\r") == 100
    assert "Epoch 1/1 - Loss:" in out
    assert out.count("Done") == 1


def test_fit_reduces_loss():
    model, xs, ys = _linear_model()
    history = model.fit(xs, ys, sn.SGDSolver(0.1), epochs=200, verbose=False)
    assert len(history) == 200
    assert history[-1] < history[0]
    assert history[-1] < 1e-3


def test_fit_rejects_config_and_options_together():
    model, xs, ys = _linear_model()
    with pytest.raises(TypeError):
        model.fit(xs, ys, sn.SGDSolver(), sn.FitConfig(), epochs=2)


def test_callback_order():
    model, xs, ys = _linear_model()
    events = []
    cb = sn.TrainingCallback(
        on_training_start=lambda: events.append("start"),
        on_batch_end=lambda epoch, batch, total, metrics: events.append(f"batch {epoch}.{batch}/{total}"),
        on_epoch_end=lambda epoch, metrics: events.append(f"epoch {epoch}"),
        on_training_end=lambda: events.append("end"),
        on_cleanup=lambda: events.append("cleanup"),
    )
    model.fit(xs, ys, sn.SGDSolver(), epochs=2, verbose=False, callbacks=[cb])
    assert events == [
        "start",
        "batch 1.1/3",
        "batch 1.2/3",
        "batch 1.3/3",
        "epoch 1",
        "batch 2.1/3",
        "batch 2.2/3",
        "batch 2.3/3",
        "epoch 2",
        "end",
        "cleanup",
    ]


def test_callback_error_aborts_and_still_cleans_up():
    model, xs, ys = _linear_model()
    events = []

    def fail(epoch, metrics):
        if epoch == 2:
            raise RuntimeError("boom")
        return False

    cb = sn.TrainingCallback(
        on_epoch_end=fail,
        on_training_end=lambda: events.append("end"),
        on_cleanup=lambda: events.append("cleanup"),
    )
    with pytest.raises(RuntimeError, match="boom"):
        model.fit(xs, ys, sn.SGDSolver(), epochs=5, verbose=False, callbacks=[cb])
    assert events == ["cleanup"]


def test_graceful_stop_via_early_stopping():
    model, xs, ys = _linear_model()
    constant = sn.custom_epoch_metric_callback(lambda: 1.0, "flat", every=1)
    stopper = sn.early_stopping_callback("flat", patience=2)
    history = model.fit(xs, ys, sn.SGDSolver(), epochs=10, verbose=False, callbacks=[constant, stopper])
    assert len(history) == 3


def test_generator_without_batches_is_an_error():
    model, _, _ = _linear_model()
    gen = sn.TensorDataGenerator({"x": torch.zeros(1, 1, dtype=torch.float64)}, {"yt": torch.zeros(1, 1, dtype=torch.float64)})
    with pytest.raises(ValueError, match="no batches"):
        model.fit_generator(gen, sn.SGDSolver(), verbose=False)


def test_fit_generator_with_synthetic_data():
    model, _, _ = _linear_model()

    def sample(batch_size, generator):
        x = torch.rand(batch_size, 1, generator=generator, dtype=torch.float64) * 2 - 1
        return {"x": x}, {"yt": 3 * x + 1}

    gen = sn.SyntheticDataGenerator(sample, samples_per_epoch=20, seed=0)
    history = model.fit_generator(gen, sn.AdamSolver(0.1), epochs=50, verbose=False)
    assert len(history) == 50
    assert history[-1] < history[0]


def test_csv_metrics_callback():
    model, xs, ys = _linear_model()
    buf = io.StringIO()
    cb = sn.csv_metrics_callback(buf, "loss", "acc")
    assert buf.getvalue().splitlines() == ["epoch,loss,acc"]
    model.fit(xs, ys, sn.SGDSolver(), epochs=2, verbose=False, callbacks=[cb])
    lines = buf.getvalue().splitlines()
    assert len(lines) == 3
    assert lines[1].startswith("1,")
    assert lines[2].endswith(",")

    only_missing = io.StringIO()
    cb = sn.csv_metrics_callback(only_missing, "acc")
    model.fit(xs, ys, sn.SGDSolver(), epochs=2, verbose=False, callbacks=[cb])
    assert only_missing.getvalue().splitlines() == ["epoch,acc"]


def test_csv_metrics_file_callback(tmp_path):
    model, xs, ys = _linear_model()
    path = tmp_path / "metrics.csv"
    model.fit(xs, ys, sn.SGDSolver(), epochs=3, verbose=False, callbacks=[sn.csv_metrics_file_callback(str(path), "loss")])
    lines = path.read_text().splitlines()
    assert lines[0] == "epoch,loss"
    assert [line.split(",")[0] for line in lines[1:]] == ["1", "2", "3"]


def test_save_params_callbacks(tmp_path):
    model, xs, ys = _linear_model()
    final = tmp_path / "final.pt"
    template = str(tmp_path / "model_{epoch}.pt")
    callbacks = [
        sn.save_params_callback(model, str(final)),
        sn.repeated_save_params_callback(model, template, every=2),
    ]
    model.fit(xs, ys, sn.SGDSolver(0.1), epochs=4, verbose=False, callbacks=callbacks)
    assert final.exists()
    assert (tmp_path / "model_2.pt").exists()
    assert (tmp_path / "model_4.pt").exists()
    assert not (tmp_path / "model_1.pt").exists()

    clone, _, _ = _linear_model()
    clone.read_params(str(final))
    torch.testing.assert_close(clone.get_params()["d:weights"], model.get_params()["d:weights"])


def test_batch_metric_callback_records_every_n_batches():
    model, xs, ys = _linear_model()
    calls = []

    def metric():
        calls.append(1)
        return float(len(calls))

    seen = []
    recorder = sn.TrainingCallback(on_epoch_end=lambda epoch, metrics: seen.append(dict(metrics)))
    cb = sn.custom_batch_metric_callback(metric, "count", every=2)
    model.fit(xs, ys, sn.SGDSolver(), epochs=2, verbose=False, callbacks=[cb, recorder])
    # three batches per epoch: metric runs after batch 2 of each epoch
    assert len(calls) == 2
    assert seen[0]["count"] == 1.0
    assert "loss" in seen[0]


def test_loss_history_and_parameter_stats(tmp_path):
    model, xs, ys = _linear_model()
    history = sn.LossHistory()
    losses = model.fit(xs, ys, sn.SGDSolver(0.1), epochs=3, verbose=False, callbacks=[history.callback()])
    assert [epoch for epoch, _ in history.metrics["loss"]] == [1, 2, 3]
    assert history.last() == pytest.approx(losses[-1])

    stats = sn.parameter_stats(model)
    assert [rec.name for rec in stats.records] == ["d:weights"]
    assert "d:weights" in stats.to_text()

    pytest.importorskip("matplotlib")
    out = tmp_path / "loss.png"
    sn.plot_metric_history(history, str(out), ["loss"])
    assert out.exists()
