from __future__ import annotations

import copy
from typing import Any, Dict

from machines import MACHINE_IDS


def _machine_config(
    *,
    active: bool = False,
    target_bal: float = 0,
    target_volume: float = 0,
    target_cadence: float = 0,
) -> Dict[str, Any]:
    return {
        "active": bool(active),
        "target_bal": max(0, target_bal),
        "target_volume": max(0, target_volume),
        "target_cadence": max(0, target_cadence),
    }


# Reset state of a week: every machine stopped, no targets. Manual bagging keeps
# cadence 0 and relies on the flat-rate fallback.
DEFAULT_MACHINE_CONFIGS: Dict[str, Dict[str, Any]] = {
    machine_id: _machine_config() for machine_id in MACHINE_IDS
}

DEFAULT_FORECASTS: Dict[str, float] = {
    "total_volume": 0,
    "total_weight": 0,
    "predicted_bal": 0,
    "max_docs_per_handful": 0,
    "max_weight_per_handful": 0,
}

# Fields zeroed on the preparation forecast once it has been promoted.
PROMOTION_RESET_FORECAST_FIELDS = ("total_volume", "total_weight", "predicted_bal")
PROMOTION_RESET_CONFIG_FIELDS = ("target_bal", "target_volume")

CURRENT_FORECAST_ID = 1
PREPARATION_FORECAST_ID = 2

LEGAL_WEEKLY_HOURS = 35
DEFAULT_WEEKLY_HOURS = 35

# Crew rules used by the headcount and man-hour estimators.
STAFFING_RULES: Dict[str, Any] = {
    "single_machine_crew": {"M1": 4, "M2": 4, "PAC": 2},
    "pair_base_crew": 2,
    "pair_shared_crew": 2,
    "shift_teams": 2,
    # Man-hour multipliers of the precise estimator.
    "pair_both_active_base": 2,
    "pair_both_active_shared": 1,
    "pair_single_active": 4,
    # Crew sizes shown next to the man-hour rows.
    "pair_both_active_display": 3,
    "pair_single_active_display": 4,
    # Run-time cadence used when a machine has none configured.
    "run_time_fallback_cadence": 2000,
}


def build_default_machine_configs() -> Dict[str, Dict[str, Any]]:
    return copy.deepcopy(DEFAULT_MACHINE_CONFIGS)


def build_default_forecasts() -> Dict[str, float]:
    return copy.deepcopy(DEFAULT_FORECASTS)


def build_staffing_rules() -> Dict[str, Any]:
    return copy.deepcopy(STAFFING_RULES)
