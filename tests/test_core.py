import asyncio

import numpy as np
import pytest

from conftest import make_panel_text
from panel_direction import core
from panel_direction.config import load_config
from panel_direction.data import DataSufficiencyError, FormatError
from panel_direction.dataset import load_dataset
from panel_direction.evaluate import CancellationToken, reference_accuracy
from panel_direction.model import DirectionModel, EpochMetrics, model_exists


@pytest.fixture
def long_panel_csv(tmp_path):
    rng = np.random.default_rng(5)
    steps = rng.normal(0.0, 1.0, size=(60, 3))
    base = np.array([100.0, 40.0, 70.0]) + np.cumsum(steps, axis=0)
    closes = {"AAA": base[:, 0].round(2).tolist(), "BBB": base[:, 1].round(2).tolist(), "CCC": base[:, 2].round(2).tolist()}
    path = tmp_path / "long_panel.csv"
    path.write_text(make_panel_text(closes), encoding="utf-8")
    return path


def _config(**overrides):
    params = {"epochs": 3, "batch_size": 8, "eval_batch_size": 5, "model_name": "core_test"}
    params.update(overrides)
    return load_config(**params)


def test_run_analysis_trains_saves_and_scores(long_panel_csv):
    events = []
    result = asyncio.run(
        core.run_analysis(
            long_panel_csv,
            _config(),
            train=True,
            on_epoch_end=events.append,
            collect_timeline=True,
            model_factory=lambda: DirectionModel(hidden_layer_sizes=(8,)),
        )
    )

    training = result["training"]
    evaluation = result["evaluation"]
    assert training.completed and not training.loaded
    assert [m.epoch for m in events] == [1, 2, 3]
    assert model_exists("core_test")
    assert result["dataset"]["symbols"] == ["AAA", "BBB", "CCC"]
    assert evaluation.completed
    assert evaluation.rows_processed == result["dataset"]["n_test"]
    assert set(evaluation.symbol_accuracy) == {"AAA", "BBB", "CCC"}
    assert len(evaluation.day_accuracy) == 3
    assert len(evaluation.timeline) == evaluation.rows_processed

    dataset = load_dataset(long_panel_csv)
    model = DirectionModel.load("core_test")
    expected_symbols, expected_days = reference_accuracy(
        model.predict(dataset.X_test), dataset.y_test, dataset.symbols
    )
    assert evaluation.symbol_accuracy == pytest.approx(expected_symbols)
    assert evaluation.day_accuracy == pytest.approx(expected_days)


def test_single_symbol_one_day_horizon_runs_end_to_end(tmp_path):
    rng = np.random.default_rng(9)
    closes = (50.0 + np.cumsum(rng.normal(0.0, 1.0, size=60))).round(2).tolist()
    path = tmp_path / "single.csv"
    path.write_text(make_panel_text({"AAA": closes}), encoding="utf-8")

    result = asyncio.run(
        core.run_analysis(
            path,
            _config(horizon=1, epochs=2),
            train=True,
            model_factory=lambda: DirectionModel(hidden_layer_sizes=(8,)),
        )
    )

    evaluation = result["evaluation"]
    assert result["training"].completed
    assert all(m.val_loss is not None for m in result["training"].history)
    assert evaluation.completed
    assert evaluation.rows_processed == result["dataset"]["n_test"]
    assert set(evaluation.symbol_accuracy) == {"AAA"}
    assert len(evaluation.day_accuracy) == 1


def test_saved_model_is_reused(long_panel_csv):
    config = _config()
    asyncio.run(core.run_analysis(long_panel_csv, config, train=True))

    def fail_factory():
        raise AssertionError("should not build a new model")

    result = asyncio.run(core.run_analysis(long_panel_csv, config, model_factory=fail_factory))
    assert result["training"].loaded
    assert result["evaluation"].completed


def test_incompatible_saved_model_is_retrained(long_panel_csv, tmp_path):
    other = DirectionModel(hidden_layer_sizes=(4,)).build(["ZZZ"])
    other.fit(np.zeros((4, 12, 2)), np.array([[0, 1, 0], [1, 0, 1], [0, 0, 1], [1, 1, 0]]), epochs=1)
    other.save("core_test")

    result = asyncio.run(core.run_analysis(long_panel_csv, _config()))
    assert not result["training"].loaded
    assert DirectionModel.load("core_test").symbols == ["AAA", "BBB", "CCC"]


def test_cancel_during_training_aborts_without_saving(long_panel_csv):
    token = CancellationToken()

    def on_epoch_end(metrics: EpochMetrics) -> None:
        if metrics.epoch == 1:
            token.cancel()

    result = asyncio.run(
        core.run_analysis(long_panel_csv, _config(epochs=5), train=True, token=token, on_epoch_end=on_epoch_end)
    )

    assert result["training"].status == "aborted"
    assert len(result["training"].history) == 1
    assert result["evaluation"].aborted
    assert result["evaluation"].symbol_accuracy is None
    assert not model_exists("core_test")


def test_train_model_checks_token_before_first_epoch(long_panel_csv):
    dataset = load_dataset(long_panel_csv)
    model = DirectionModel().build(dataset.symbols)
    token = CancellationToken()
    token.cancel()
    outcome = asyncio.run(core.train_model(model, dataset, epochs=3, batch_size=8, token=token))
    assert outcome.status == "aborted"
    assert outcome.history == []
    assert not model.is_fitted


def test_empty_test_split_is_rejected(tmp_path):
    path = tmp_path / "short.csv"
    path.write_text(make_panel_text({"AAA": [float(v) for v in range(1, 16)]}), encoding="utf-8")
    with pytest.raises(DataSufficiencyError):
        asyncio.run(core.run_analysis(path, _config()))


def test_format_errors_surface_unchanged(tmp_path):
    path = tmp_path / "bad.csv"
    path.write_text("Date,Ticker,Open,Close\n2024-01-01,AAA,1,2\n", encoding="utf-8")
    with pytest.raises(FormatError, match="Symbol"):
        asyncio.run(core.run_analysis(path, _config()))
