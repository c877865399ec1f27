import io
import math

import matplotlib
matplotlib.use('Agg')
import matplotlib.pyplot as plt
import numpy as np

import config_master as config
from utils_risk import RiskTier, chart_reference_point, classify_score

# Where each tier's label sits on the 0-1 axis (score / 10)
TIER_LABEL_POSITIONS = {
    RiskTier.LOW: config.MEDIUM_RISK_THRESHOLD / config.SCORE_SCALE / 2,
    RiskTier.MEDIUM: (config.MEDIUM_RISK_THRESHOLD + config.HIGH_RISK_THRESHOLD) / config.SCORE_SCALE / 2,
    RiskTier.HIGH: (config.HIGH_RISK_THRESHOLD + config.SCORE_SCALE) / config.SCORE_SCALE / 2,
}
MUTED_COLOR = '#94a3b8'


def _normal_density(x, mean, std_dev):
    return (1 / (std_dev * math.sqrt(2 * math.pi))) * np.exp(-0.5 * ((x - mean) / std_dev) ** 2)


def build_chart_data(risk_score=None) -> dict:
    """
    Points for the illustrative population curve plus the patient's marker.
    The curve is synthetic (fixed mean and spread) and carries no clinical meaning.
    """
    x = np.linspace(0.0, 1.0, config.CHART_POINTS)
    density = _normal_density(x, config.CHART_MEAN, config.CHART_STD_DEV)
    rng = np.random.default_rng(config.CHART_SEED)
    bars = density * (0.4 + rng.random(config.CHART_POINTS) * 0.4)

    tier = classify_score(risk_score)
    return {
        "points": [
            {"x": round(float(xi), 2), "density": float(di), "bar": float(bi)}
            for xi, di, bi in zip(x, density, bars)
        ],
        "mean": config.CHART_MEAN,
        "stdDev": config.CHART_STD_DEV,
        "patientRisk": chart_reference_point(risk_score),
        "tier": tier.ledger_label,
        "tiers": [
            {
                "label": t.badge_label,
                "position": TIER_LABEL_POSITIONS[t],
                "color": t.color if t is tier else MUTED_COLOR,
            }
            for t in RiskTier
        ],
        "illustrative": True,
    }


def render_risk_chart(risk_score=None, figsize=(6, 3.2), dpi=120) -> bytes:
    """PNG bytes of the distribution chart with the patient marker, if any."""
    data = build_chart_data(risk_score)
    xs = [p["x"] for p in data["points"]]

    fig, ax = plt.subplots(1, figsize=figsize)
    ax.bar(xs, [p["bar"] for p in data["points"]], width=0.03, color='#cbd5e1')
    ax.plot(xs, [p["density"] for p in data["points"]], color='#0f172a', linewidth=1)
    ax.set_xlim(0, 1)
    ax.set_xticks([0, 0.25, 0.5, 0.75, 1.0])
    ax.tick_params(labelsize=8, colors=MUTED_COLOR)
    for spine in ('top', 'right', 'left'):
        ax.spines[spine].set_visible(False)
    ax.grid(axis='y', color='#f1f5f9')

    if data["patientRisk"] is not None:
        ax.axvline(data["patientRisk"], color='#ef4444', linewidth=1.5)
        ax.text(data["patientRisk"], ax.get_ylim()[1], "PATIENT RISK",
                color='#ef4444', fontsize=7, ha='center', va='bottom')

    for tier in data["tiers"]:
        ax.text(tier["position"], -0.18, tier["label"], transform=ax.get_xaxis_transform(),
                color=tier["color"], fontsize=8, fontweight='bold', ha='center')
    fig.text(0.01, 0.01, "Illustrative distribution, not population data.",
             fontsize=6, color=MUTED_COLOR)

    buffer = io.BytesIO()
    fig.savefig(buffer, format='png', dpi=dpi, bbox_inches='tight')
    plt.close(fig)
    return buffer.getvalue()
