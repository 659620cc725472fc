"""
Monitoring Module for the Index Tool

Observability components for index build and verification runs:
- Prometheus metrics recorded from final job counters
- Alert rule definitions

Usage:
    from src.monitoring import IndexToolMetrics, AlertRuleGenerator

    metrics = IndexToolMetrics()
    metrics.record_run(
        index="S.IDX",
        verify_type="BEFORE",
        status="success",
        duration_seconds=12.5,
        counters=tool.job.counters()
    )

    rules = AlertRuleGenerator().generate_alert_rules()
"""

from src.monitoring.metrics import IndexToolMetrics
from src.monitoring.alerts import AlertRuleGenerator

__all__ = [
    "IndexToolMetrics",
    "AlertRuleGenerator",
]

__version__ = "1.0.0"
