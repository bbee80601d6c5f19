"""
Monitoring Module for roster synchronisation

Usage:
    from rostersync.monitoring import SyncMetrics, AlertRuleGenerator

    metrics = SyncMetrics()
    metrics.record_member_outcome("updated")
    metrics.push("pushgateway:9091")

    rules = AlertRuleGenerator().generate_alert_rules()
"""

from rostersync.monitoring.alerts import AlertRuleGenerator
from rostersync.monitoring.metrics import SyncMetrics

__all__ = [
    "SyncMetrics",
    "AlertRuleGenerator",
]
