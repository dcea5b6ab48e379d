import math

import numpy as np
import pytest

from conftest import make_panel_text
from panel_direction.data import DataSufficiencyError, forward_fill_gaps, parse_panel
from panel_direction.dataset import (
    EPS,
    build_dataset,
    build_windows,
    candidate_window_count,
    compute_scaling_params,
    load_dataset,
    split_windows,
)


def test_end_to_end_two_symbols_twenty_days(panel_csv, two_symbol_closes):
    dataset = load_dataset(panel_csv, train_fraction=0.8)

    assert dataset.symbols == ("AAA", "BBB")
    assert dataset.candidate_windows == 6
    assert dataset.dropped_windows == 0
    assert dataset.X_train.shape == (4, 12, 4)
    assert dataset.y_train.shape == (4, 6)
    assert dataset.X_test.shape == (2, 12, 4)
    assert dataset.y_test.shape == (2, 6)

    closes_a = two_symbol_closes["AAA"]
    labels = np.concatenate([dataset.y_train, dataset.y_test])
    for k in range(6):
        i = 12 + k
        assert labels[k, 0] == (1.0 if closes_a[i] > closes_a[i - 1] else 0.0)


def test_feature_layout_interleaves_open_and_close_per_symbol(panel_csv, two_symbol_closes):
    dataset = load_dataset(panel_csv)
    params = dataset.scaling
    first_window = dataset.X_train[0]
    close_b = two_symbol_closes["BBB"][0]
    expected_open_a = (two_symbol_closes["AAA"][0] - 0.5 - params.open_min["AAA"]) / (
        params.open_max["AAA"] - params.open_min["AAA"] + EPS
    )
    expected_close_b = (close_b - params.close_min["BBB"]) / (params.close_max["BBB"] - params.close_min["BBB"] + EPS)
    assert first_window[0, 0] == pytest.approx(expected_open_a, rel=1e-5)
    assert first_window[0, 3] == pytest.approx(expected_close_b, rel=1e-5)


def test_labels_are_symbol_major_and_strict():
    # flat AAA never rises (equal close -> 0); BBB rises every day
    closes = {
        "AAA": [10.0] * 15,
        "BBB": [float(v) for v in range(1, 16)],
    }
    panel = forward_fill_gaps(parse_panel(make_panel_text(closes)))
    params = compute_scaling_params(panel, 0.8)
    windows = build_windows(panel, params)
    assert windows.X.shape[0] == 1
    assert windows.y[0].tolist() == [0.0, 0.0, 0.0, 1.0, 1.0, 1.0]


def test_base_value_is_previous_close_not_open():
    closes = {"AAA": [float(v) for v in range(1, 16)]}
    text = make_panel_text(closes)
    # open of the last lookback day sits above every future close
    text = text.replace("2024-01-12,AAA,11.5,12.0", "2024-01-12,AAA,99.0,12.0")
    panel = forward_fill_gaps(parse_panel(text))
    windows = build_windows(panel, compute_scaling_params(panel, 0.8))
    assert windows.y[0].tolist() == [1.0, 1.0, 1.0]


def test_scaling_ignores_dates_after_train_end():
    closes = {"AAA": [float(v) for v in range(1, 21)], "BBB": [float(v) * 2 for v in range(1, 21)]}
    baseline = compute_scaling_params(parse_panel(make_panel_text(closes)), 0.8)

    altered = {key: list(values) for key, values in closes.items()}
    for idx in range(16, 20):
        altered["AAA"][idx] = 1_000.0
        altered["BBB"][idx] = -1_000.0
    changed = compute_scaling_params(parse_panel(make_panel_text(altered)), 0.8)

    assert baseline.train_end == changed.train_end == 16
    assert baseline == changed
    assert baseline.close_max["AAA"] == 16.0


def test_test_period_values_can_fall_outside_unit_range():
    closes = {"AAA": [float(v) for v in range(1, 21)]}
    dataset = build_dataset(parse_panel(make_panel_text(closes)), train_fraction=0.8)
    assert dataset.X_test.max() > 1.0
    assert dataset.X_train.min() >= 0.0


def test_zero_range_symbol_scales_without_division_error():
    closes = {"AAA": [5.0] * 16}
    panel = forward_fill_gaps(parse_panel(make_panel_text(closes)))
    windows = build_windows(panel, compute_scaling_params(panel, 0.8))
    assert np.isfinite(windows.X).all()
    assert np.allclose(windows.X, 0.0)


def test_unresolved_leading_gap_drops_whole_windows():
    closes = {
        "AAA": [float(v) for v in range(1, 21)],
        "BBB": [None, None, None] + [float(v) for v in range(4, 21)],
    }
    panel = forward_fill_gaps(parse_panel(make_panel_text(closes)))
    windows = build_windows(panel, compute_scaling_params(panel, 0.8))

    assert windows.candidates == candidate_window_count(20) == 6
    # windows starting at i = 12, 13, 14 reach back into dates 0..2
    assert windows.X.shape[0] == 3
    assert windows.dropped == 3
    assert [str(d.date()) for d in windows.anchor_dates] == ["2024-01-16", "2024-01-17", "2024-01-18"]


def test_repaired_gap_keeps_every_window():
    closes = {
        "AAA": [float(v) for v in range(1, 21)],
        "BBB": [float(v) for v in range(1, 21)],
    }
    closes["BBB"][8] = None
    closes["BBB"][9] = None
    dataset = build_dataset(parse_panel(make_panel_text(closes)))
    assert dataset.dropped_windows == 0
    assert dataset.n_train + dataset.n_test == 6


def test_symbol_missing_from_training_prefix_has_no_windows():
    closes = {
        "AAA": [float(v) for v in range(1, 21)],
        "LATE": [None] * 17 + [1.0, 2.0, 3.0],
    }
    with pytest.raises(DataSufficiencyError):
        build_dataset(parse_panel(make_panel_text(closes)))


def test_too_few_dates_raise_data_sufficiency_error():
    closes = {"AAA": [float(v) for v in range(1, 15)]}
    assert candidate_window_count(14) == 0
    with pytest.raises(DataSufficiencyError):
        build_dataset(parse_panel(make_panel_text(closes)))


def test_split_is_chronological_and_deterministic():
    closes = {"AAA": [float((v * 37) % 11) for v in range(40)]}
    panel = forward_fill_gaps(parse_panel(make_panel_text(closes)))
    windows = build_windows(panel, compute_scaling_params(panel, 0.7))
    first = split_windows(windows, panel.symbols, 0.7)
    second = split_windows(windows, panel.symbols, 0.7)

    n = windows.X.shape[0]
    assert first.n_train == math.floor(n * 0.7)
    assert first.n_train + first.n_test == n
    np.testing.assert_array_equal(first.X_train, windows.X[: first.n_train])
    np.testing.assert_array_equal(first.X_test, second.X_test)
    assert first.train_dates.max() < first.test_dates.min()


def test_dataset_arrays_are_read_only(panel_csv):
    dataset = load_dataset(panel_csv)
    with pytest.raises(ValueError):
        dataset.X_train[0, 0, 0] = 1.0


def test_build_dataset_validates_fraction(panel_csv):
    panel = parse_panel(panel_csv.read_text(encoding="utf-8"))
    with pytest.raises(ValueError):
        build_dataset(panel, train_fraction=1.5)


def test_scaling_params_and_symbols_cannot_be_mutated(panel_csv):
    dataset = load_dataset(panel_csv)
    with pytest.raises(TypeError):
        dataset.scaling.open_min["AAA"] = 0.0
    with pytest.raises(TypeError):
        dataset.scaling.close_max["BBB"] = 0.0
    with pytest.raises(AttributeError):
        dataset.symbols.append("CCC")
    assert dataset.symbols == ("AAA", "BBB")


def test_summary_reports_anchor_dates(panel_csv):
    dataset = load_dataset(panel_csv)
    summary = dataset.summary()
    # panel starts 2024-01-01, so the first anchor is the 13th date
    assert summary["first_train_anchor"] == "2024-01-13"
    assert summary["last_test_anchor"] == "2024-01-18"
    assert summary["symbols"] == ["AAA", "BBB"]
