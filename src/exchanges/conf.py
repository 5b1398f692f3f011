"""
Access to the exchange workflow module configuration.
"""

from typing import Any, Dict

from django.conf import settings

DEFAULTS = {
    "IDENTIFICATION_PERIOD_DAYS": 45,
    "COMPLETION_PERIOD_DAYS": 180,
    "AT_RISK_WINDOW_DAYS": 30,
    "REMINDER_THRESHOLDS": [30, 14, 7, 1],
    "DEADLINE_SCAN_INTERVAL_MINUTES": 5,
}


def get_workflow_config() -> Dict[str, Any]:
    """Module settings merged over the defaults."""
    config = dict(DEFAULTS)
    config.update(getattr(settings, 'EXCHANGE_WORKFLOW_CONFIG', {}))
    return config
