"""Write BSL prediction series and alerts to Parquet."""

import logging
from pathlib import Path
from typing import Iterable, List

import pandas as pd

from metabolic_twin.prediction_engine import BSLAlert, BSLTimeSeries

logger = logging.getLogger(__name__)

TIMESERIES_COLUMNS = [
    "timestamp",
    "predicted_bsl",
    "lower_bound",
    "upper_bound",
    "iob",
    "insulin_activity_rate",
    "cob",
    "carb_absorption_rate",
    "blood_alcohol_level",
    "alcohol_sensitivity_modifier",
    "circadian_factor",
    "last_bsl",
]

ALERT_COLUMNS = ["alert_type", "predicted_time", "predicted_bsl", "confidence", "severity"]


class TimeSeriesWriter:
    """Flatten prediction output into tables and persist them as Parquet.

    One row per time-series point with the metabolic state reduced to
    scalar columns, so the files load straight into pandas or Spark.
    """

    def __init__(self, output_dir: Path):
        self.output_dir = Path(output_dir)
        self.output_dir.mkdir(parents=True, exist_ok=True)

    def to_frame(self, series: BSLTimeSeries) -> pd.DataFrame:
        records = []
        for point in series.points:
            state = point.state
            records.append({
                "timestamp": point.timestamp,
                "predicted_bsl": point.predicted_bsl,
                "lower_bound": point.lower_bound,
                "upper_bound": point.upper_bound,
                "iob": state.insulin.total_iob,
                "insulin_activity_rate": state.insulin.activity_rate,
                "cob": state.carbs.total_cob,
                "carb_absorption_rate": state.carbs.absorption_rate,
                "blood_alcohol_level": state.alcohol.blood_alcohol_level,
                "alcohol_sensitivity_modifier": state.alcohol.insulin_sensitivity_modifier,
                "circadian_factor": state.circadian.combined_factor,
                "last_bsl": state.last_bsl.value if state.last_bsl else None,
            })
        return pd.DataFrame(records, columns=TIMESERIES_COLUMNS)

    def alerts_to_frame(self, alerts: Iterable[BSLAlert]) -> pd.DataFrame:
        records = [
            {
                "alert_type": alert.alert_type.value,
                "predicted_time": alert.predicted_time,
                "predicted_bsl": alert.predicted_bsl,
                "confidence": alert.confidence,
                "severity": alert.severity.value,
            }
            for alert in alerts
        ]
        return pd.DataFrame(records, columns=ALERT_COLUMNS)

    def write_timeseries(
        self,
        series: BSLTimeSeries,
        name: str = "bsl_timeseries",
        append: bool = True,
    ) -> Path:
        """Write a prediction series, appending to an existing file by default.

        Rows with a timestamp already present are replaced by the new ones.

        Args:
            series: Generated BSL time series
            name: File stem inside the output directory
            append: If True, merge with an existing file of the same name

        Returns:
            Path to the written file
        """
        df = self.to_frame(series)
        return self._write(df, name, append, dedupe_on=["timestamp"])

    def write_alerts(
        self,
        alerts: Iterable[BSLAlert],
        name: str = "bsl_alerts",
        append: bool = True,
    ) -> Path:
        df = self.alerts_to_frame(alerts)
        return self._write(df, name, append, dedupe_on=["alert_type", "predicted_time"])

    def _write(self, df: pd.DataFrame, name: str, append: bool, dedupe_on: List[str]) -> Path:
        output_path = self.output_dir / f"{name}.parquet"
        logger.info(f"Writing {len(df):,} rows to {output_path} (append={append})")

        if append and output_path.exists():
            existing_df = pd.read_parquet(output_path)
            combined_df = pd.concat([existing_df, df], ignore_index=True)
            combined_df = combined_df.drop_duplicates(subset=dedupe_on, keep="last")
            combined_df = combined_df.sort_values(dedupe_on[-1]).reset_index(drop=True)
            combined_df.to_parquet(output_path, engine="pyarrow", compression="snappy", index=False)
            logger.info(f"Appended {len(df):,} rows, total now: {len(combined_df):,}")
        else:
            df.to_parquet(output_path, engine="pyarrow", compression="snappy", index=False)
            logger.info(f"Created new file with {len(df):,} rows")

        final_size = output_path.stat().st_size / 1024 / 1024
        logger.debug(f"{output_path.name} size: {final_size:.2f} MB")
        return output_path
