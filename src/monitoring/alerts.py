"""
Alert Rules for Index Tool Runs

Prometheus alerting rules over the metrics recorded by IndexToolMetrics:
failed or foreign-tenant runs, slow builds, and index rows that stayed
inconsistent.
"""

import logging
from collections import Counter
from typing import Any, Dict, List

import yaml

logger = logging.getLogger(__name__)

COMPONENT = "index_tool"


def _rule(alert: str, expr: str, severity: str, summary: str, description: str,
          for_: str = "0m") -> Dict[str, Any]:
    return {
        "alert": alert,
        "expr": expr,
        "for": for_,
        "labels": {"severity": severity, "component": COMPONENT},
        "annotations": {"summary": summary, "description": description},
    }


class AlertRuleGenerator:
    """
    Builds the index tool's alert rule groups.

    Args:
        max_run_seconds: p95 run duration above which builds count as slow
        lookback: Range over which failed runs raise an alert
    """

    def __init__(self, max_run_seconds: int = 3600, lookback: str = "1h"):
        self.max_run_seconds = max_run_seconds
        self.lookback = lookback

    def generate_alert_rules(self) -> Dict[str, Any]:
        """Rule file content: {"groups": [...]} in Prometheus format."""
        groups = [
            {"name": "index_tool_runs", "interval": "1m", "rules": self._run_rules()},
            {"name": "index_tool_consistency", "interval": "5m", "rules": self._consistency_rules()},
        ]
        logger.debug(f"Generated {sum(len(g['rules']) for g in groups)} index tool alert rules")
        return {"groups": groups}

    def _run_rules(self) -> List[Dict[str, Any]]:
        return [
            _rule(
                "IndexToolRunFailed",
                f'increase(index_tool_runs_total{{status="failure"}}[{self.lookback}]) > 0',
                "critical",
                "Index tool run failed",
                "A build of {{ $labels.index }} failed",
            ),
            _rule(
                "IndexToolTenantMismatch",
                f'increase(index_tool_runs_total{{status="mismatch"}}[{self.lookback}]) > 0',
                "warning",
                "Index tool run targeted a foreign index",
                "{{ $labels.index }} does not belong to the requested tenant view",
            ),
            _rule(
                "IndexToolSlowRun",
                "histogram_quantile(0.95, rate(index_tool_run_duration_seconds_bucket[6h])) "
                f"> {self.max_run_seconds}",
                "warning",
                "Index builds are slow",
                "p95 build duration for {{ $labels.index }} is {{ $value }}s "
                f"(threshold: {self.max_run_seconds}s)",
                for_="15m",
            ),
        ]

    @staticmethod
    def _consistency_rules() -> List[Dict[str, Any]]:
        return [
            _rule(
                "InconsistentIndexRows",
                'index_tool_last_run_inconsistent_rows{phase="before_rebuild"} > 0',
                "warning",
                "Inconsistent index rows detected",
                "{{ $value }} rows of {{ $labels.index }} did not match their data rows",
            ),
            _rule(
                "IndexRebuildIncomplete",
                "index_tool_last_run_failed_rows > 0",
                "critical",
                "Index rows still inconsistent after rebuild",
                "{{ $value }} rows of {{ $labels.index }} failed verification after rebuild",
            ),
        ]

    def export_to_yaml(self, output_file: str) -> None:
        with open(output_file, 'w') as f:
            yaml.safe_dump(self.generate_alert_rules(), f, default_flow_style=False, sort_keys=False)
        logger.info(f"Alert rules exported to {output_file}")

    def get_alert_summary(self) -> Dict[str, int]:
        """Group and rule counts, plus rule counts per severity."""
        groups = self.generate_alert_rules()["groups"]
        rules = [rule for group in groups for rule in group["rules"]]
        severities = Counter(rule["labels"]["severity"] for rule in rules)
        return {
            "total_groups": len(groups),
            "total_alerts": len(rules),
            "critical": severities["critical"],
            "warning": severities["warning"],
            "info": severities["info"],
        }
