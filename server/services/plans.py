"""Subscription plan limits.

Built-in plans are merged with ``config/plans.json`` (or the file named by
the ``PLANS_FILE`` setting) so operators can tune limits without a release.
A ``null`` limit means unlimited.
"""

import json
from dataclasses import dataclass, asdict, fields
from pathlib import Path
from typing import Any, Dict, Optional

from core.logging import get_logger
from constants import DEFAULT_PLAN_ID, METRIC_EXECUTIONS, METRIC_CREDITS

logger = get_logger(__name__)

# Path to plan configuration file
CONFIG_PATH = Path(__file__).parent.parent / "config" / "plans.json"


@dataclass(frozen=True)
class PlanLimit:
    """Limits for one plan."""
    max_active_workflows: Optional[int] = None
    max_executions_per_month: Optional[int] = None
    max_concurrency: Optional[int] = None
    max_credits_per_month: Optional[int] = None
    max_steps_per_workflow: Optional[int] = None

    def for_metric(self, metric: str) -> Optional[int]:
        if metric == METRIC_EXECUTIONS:
            return self.max_executions_per_month
        if metric == METRIC_CREDITS:
            return self.max_credits_per_month
        raise ValueError(f"Unknown usage metric: {metric}")

    def to_dict(self) -> Dict[str, Any]:
        return asdict(self)

    @classmethod
    def from_dict(cls, data: Dict[str, Any], base: Optional["PlanLimit"] = None) -> "PlanLimit":
        merged = base.to_dict() if base else {}
        known = {f.name for f in fields(cls)}
        merged.update({k: v for k, v in data.items() if k in known})
        return cls(**merged)


DEFAULT_PLANS: Dict[str, PlanLimit] = {
    "personal": PlanLimit(
        max_active_workflows=3,
        max_executions_per_month=100,
        max_concurrency=5,
        max_credits_per_month=100,
        max_steps_per_workflow=10,
    ),
    "professional": PlanLimit(
        max_active_workflows=10,
        max_executions_per_month=1000,
        max_concurrency=10,
        max_credits_per_month=500,
    ),
    "advanced": PlanLimit(
        max_active_workflows=50,
        max_executions_per_month=10000,
        max_concurrency=25,
        max_credits_per_month=5000,
    ),
    "custom": PlanLimit(),
}


class PlanService:
    """Resolves plan ids to limits."""

    def __init__(self, plans_file: Optional[str] = None,
                 plans: Optional[Dict[str, PlanLimit]] = None):
        self._path = Path(plans_file) if plans_file else CONFIG_PATH
        self._default_plan = DEFAULT_PLAN_ID
        self._plans: Dict[str, PlanLimit] = dict(DEFAULT_PLANS)
        if plans is not None:
            self._plans.update(plans)
        else:
            self._load_config()

    def _load_config(self) -> None:
        """Merge plan overrides from the JSON file over the built-in plans."""
        if not self._path.exists():
            logger.info("[Plans] No plan config, using built-in plans", path=str(self._path))
            return

        try:
            with open(self._path, 'r', encoding='utf-8') as f:
                config = json.load(f)
        except (OSError, json.JSONDecodeError) as e:
            logger.error("[Plans] Failed to load config, using built-in plans",
                         path=str(self._path), error=str(e))
            return

        for plan_id, data in config.get("plans", {}).items():
            self._plans[plan_id] = PlanLimit.from_dict(data, base=self._plans.get(plan_id))
        self._default_plan = config.get("default_plan", DEFAULT_PLAN_ID)
        logger.info("[Plans] Loaded plan config", version=config.get("version", "unknown"),
                    plans=sorted(self._plans))

    def get(self, plan_id: Optional[str]) -> PlanLimit:
        """Limits for ``plan_id``; unknown or missing ids fall back to the default plan."""
        plan = self._plans.get(plan_id) if plan_id else None
        if plan is None:
            if plan_id:
                logger.warning("[Plans] Unknown plan, using default", plan_id=plan_id)
            return self._plans[self._default_plan]
        return plan

    def all(self) -> Dict[str, PlanLimit]:
        return dict(self._plans)
