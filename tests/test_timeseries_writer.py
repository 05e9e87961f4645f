"""Tests for the Parquet output of series and alerts."""

import pandas as pd
import pytest

from conftest import BASE_TIME, at, bsl, insulin
from metabolic_twin.data_models import EventWindow
from metabolic_twin.prediction_engine import AlertSeverity, AlertType, BSLAlert
from metabolic_twin.reporting import TimeSeriesWriter
from metabolic_twin.reporting.timeseries_writer import ALERT_COLUMNS, TIMESERIES_COLUMNS


@pytest.fixture
def writer(tmp_path):
    return TimeSeriesWriter(tmp_path / "out")


@pytest.fixture
def window():
    return EventWindow.build([bsl(9.0), insulin(3)], BASE_TIME, at(120))


def test_creates_output_dir(tmp_path):
    TimeSeriesWriter(tmp_path / "a" / "b")
    assert (tmp_path / "a" / "b").is_dir()


def test_frame_flattens_state(writer, model, window):
    series = model.generate_bsl_time_series(window, BASE_TIME, at(30))
    df = writer.to_frame(series)
    assert list(df.columns) == TIMESERIES_COLUMNS
    assert len(df) == 7
    assert df["iob"].iloc[0] == pytest.approx(3.0)
    assert (df["last_bsl"] == 9.0).all()
    assert df["predicted_bsl"].tolist() == pytest.approx([p.predicted_bsl for p in series.points])


def test_frame_without_reading(writer, model):
    series = model.generate_bsl_time_series(EventWindow.empty(BASE_TIME), BASE_TIME, at(10))
    assert writer.to_frame(series)["last_bsl"].isna().all()


def test_write_and_append(writer, model, window):
    first = model.generate_bsl_time_series(window, BASE_TIME, at(60))
    path = writer.write_timeseries(first)
    assert path.name == "bsl_timeseries.parquet"
    assert len(pd.read_parquet(path)) == 13

    second = model.generate_bsl_time_series(window, at(30), at(90))
    writer.write_timeseries(second)
    df = pd.read_parquet(path)
    # overlapping timestamps are replaced, not duplicated
    assert len(df) == 19
    assert df["timestamp"].is_monotonic_increasing
    assert df["timestamp"].is_unique


def test_overwrite(writer, model, window):
    writer.write_timeseries(model.generate_bsl_time_series(window, BASE_TIME, at(60)))
    path = writer.write_timeseries(
        model.generate_bsl_time_series(window, BASE_TIME, at(10)), append=False
    )
    assert len(pd.read_parquet(path)) == 3


def test_alerts(writer):
    alerts = [
        BSLAlert(AlertType.HYPO, at(40), 3.4, 0.8, AlertSeverity.URGENT),
        BSLAlert(AlertType.HYPER, at(10), 11.0, 0.7, AlertSeverity.ALERT),
    ]
    df = writer.alerts_to_frame(alerts)
    assert list(df.columns) == ALERT_COLUMNS
    assert df["alert_type"].tolist() == ["hypo", "hyper"]

    path = writer.write_alerts(alerts)
    writer.write_alerts([BSLAlert(AlertType.HYPO, at(40), 3.2, 0.8, AlertSeverity.URGENT)])
    stored = pd.read_parquet(path)
    assert stored["alert_type"].tolist() == ["hyper", "hypo"]
    assert stored["predicted_bsl"].tolist() == [11.0, 3.2]
