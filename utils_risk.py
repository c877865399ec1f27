import math
from enum import Enum
from typing import Optional, Union

import config_master as config


class RiskTier(Enum):
    """Ordered risk tiers. The value is the ledger label."""
    LOW = 'Low'
    MEDIUM = 'Medium'
    HIGH = 'High'

    @property
    def rank(self) -> int:
        return _RANKS[self]

    @property
    def ledger_label(self) -> str:
        return self.value

    @property
    def badge_label(self) -> str:
        return _BADGE_LABELS[self]

    @property
    def color(self) -> str:
        return _COLORS[self]

    def warning_label(self, language: str = 'EN') -> str:
        labels = _WARNING_LABELS[self]
        return labels.get(language, labels['EN'])


_RANKS = {RiskTier.LOW: 0, RiskTier.MEDIUM: 1, RiskTier.HIGH: 2}
_BADGE_LABELS = {RiskTier.LOW: 'LOW', RiskTier.MEDIUM: 'MODERATE', RiskTier.HIGH: 'HIGH'}
_COLORS = {RiskTier.LOW: '#10b981', RiskTier.MEDIUM: '#f59e0b', RiskTier.HIGH: '#ef4444'}
_WARNING_LABELS = {
    RiskTier.HIGH: {'CN': '高风险警告', 'EN': 'HIGH RISK WARNING', 'JP': '高リスク警告'},
    RiskTier.MEDIUM: {'CN': '中风险警告', 'EN': 'MODERATE RISK WARNING', 'JP': '中リスク警告'},
    RiskTier.LOW: {'CN': '低风险提示', 'EN': 'LOW RISK NOTICE', 'JP': '低リスク通知'},
}

# Tier used when a score is missing or unparsable. Permissive: a fail-safe
# deployment would use RiskTier.HIGH here instead.
DEFAULT_TIER = RiskTier.LOW


def parse_score(score: Union[str, float, int, None]) -> Optional[float]:
    """
    Reads the numeric part of a risk score such as "8.5/10", "8.5 / 10" or "8.5".
    Returns None for anything that is not a finite number.
    """
    if score is None or isinstance(score, bool):
        return None
    if isinstance(score, (int, float)):
        value = float(score)
    else:
        head = str(score).split('/')[0].strip()
        if not head:
            return None
        try:
            value = float(head)
        except ValueError:
            return None
    if math.isnan(value) or math.isinf(value):
        return None
    return value


def classify_score(score: Union[str, float, int, None]) -> RiskTier:
    """The one threshold rule behind the report badge, the history ledger and the chart."""
    value = parse_score(score)
    if value is None:
        return DEFAULT_TIER
    if value >= config.HIGH_RISK_THRESHOLD:
        return RiskTier.HIGH
    if value >= config.MEDIUM_RISK_THRESHOLD:
        return RiskTier.MEDIUM
    return RiskTier.LOW


def chart_reference_point(score: Union[str, float, int, None]) -> Optional[float]:
    """Patient marker on the chart's 0-1 axis, or None when there is no usable score."""
    value = parse_score(score)
    if value is None:
        return None
    return min(max(value / config.SCORE_SCALE, 0.0), 1.0)
