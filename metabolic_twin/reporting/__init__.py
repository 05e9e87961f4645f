"""Parquet export for prediction output."""

from .timeseries_writer import TimeSeriesWriter  # noqa: F401
