"""
linkrewards/metrics.py

Prometheus metrics for reward runs.

Counts what each run consumed and produced and how long each stage took,
rendered in the Prometheus text exposition format.
"""

import logging
from typing import Dict, List, Optional

logger = logging.getLogger("linkrewards.metrics")


class PipelineMetrics:
    """
    Prometheus metrics collector for reward runs.

    Usage:
        from linkrewards.metrics import PipelineMetrics

        metrics = PipelineMetrics()
        orchestrator = RewardOrchestrator(config, oracle, metrics=metrics)
        orchestrator.run(source, after_us, before_us, reward_pool)

        prometheus_output = metrics.collect()
    """

    # Metric definitions
    METRICS = {
        "linkrewards_runs_total": {
            "type": "counter",
            "help": "Reward runs by outcome",
        },
        "linkrewards_samples_ingested": {
            "type": "gauge",
            "help": "Samples inside the window of the last run",
        },
        "linkrewards_samples_dropped": {
            "type": "gauge",
            "help": "Samples outside the window of the last run",
        },
        "linkrewards_private_links": {
            "type": "gauge",
            "help": "Private links in the last run",
        },
        "linkrewards_public_links": {
            "type": "gauge",
            "help": "Public links in the last run",
        },
        "linkrewards_demands": {
            "type": "gauge",
            "help": "Demand entries in the last run",
        },
        "linkrewards_rewarded_operators": {
            "type": "gauge",
            "help": "Operators in the last committed reward set",
        },
        "linkrewards_stage_duration_seconds": {
            "type": "gauge",
            "help": "Duration of each stage in the last run",
        },
        "linkrewards_last_epoch": {
            "type": "gauge",
            "help": "Epoch of the last committed run",
        },
    }

    def __init__(self):
        self._runs: Dict[str, int] = {}
        self._gauges: Dict[str, float] = {}
        self._stage_durations: Dict[str, float] = {}

    def record_run(self, outcome: str) -> None:
        """Count a finished run ('committed' or 'failed')."""
        self._runs[outcome] = self._runs.get(outcome, 0) + 1

    def set_gauge(self, name: str, value: float) -> None:
        if name not in self.METRICS:
            raise KeyError(f"Unknown metric {name}")
        self._gauges[name] = value

    def record_stage(self, stage: str, seconds: float) -> None:
        self._stage_durations[stage] = seconds

    def get(self, name: str) -> Optional[float]:
        return self._gauges.get(name)

    def runs(self, outcome: str) -> int:
        return self._runs.get(outcome, 0)

    def collect(self) -> str:
        """
        Collect all metrics and return in Prometheus format.

        Returns:
            Prometheus-formatted metrics string
        """
        lines: List[str] = []

        def header(name: str) -> None:
            metric_def = self.METRICS[name]
            lines.append(f"# HELP {name} {metric_def['help']}")
            lines.append(f"# TYPE {name} {metric_def['type']}")

        if self._runs:
            header("linkrewards_runs_total")
            for outcome in sorted(self._runs):
                lines.append(f'linkrewards_runs_total{{outcome="{outcome}"}} {self._runs[outcome]}')

        for name in sorted(self._gauges):
            header(name)
            lines.append(f"{name} {self._gauges[name]}")

        if self._stage_durations:
            header("linkrewards_stage_duration_seconds")
            for stage in sorted(self._stage_durations):
                lines.append(
                    f'linkrewards_stage_duration_seconds{{stage="{stage}"}} '
                    f"{self._stage_durations[stage]:.6f}"
                )

        return "\n".join(lines) + "\n"
