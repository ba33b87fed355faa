"""Utility node handlers - set-fields, condition and delay."""

import asyncio
from typing import Dict, Any

from core.logging import get_logger
from models.nodes import SetFieldsParams, ConditionParams, DelayParams
from services.execution.conditions import evaluate_condition

logger = get_logger(__name__)


def _flatten_input(node_input: Any) -> Dict[str, Any]:
    if isinstance(node_input, dict):
        return dict(node_input)
    return {"value": node_input}


async def handle_set_fields(node_input: Any, config: SetFieldsParams) -> Dict[str, Any]:
    """Merge configured fields over the input (or emit only the fields)."""
    result = _flatten_input(node_input) if config.keep_input else {}
    result.update(config.fields)
    return result


async def handle_condition(node_input: Any, config: ConditionParams) -> Dict[str, Any]:
    """Evaluate a single condition against the input.

    Downstream edges usually branch on ``result`` with ``is_true``/``is_false``.
    """
    condition = {"field": config.field, "operator": config.operator, "value": config.value}
    result = evaluate_condition(condition, node_input)
    logger.debug("Condition node evaluated", field=config.field,
                 operator=config.operator, result=result)
    return {"result": result, "input": node_input}


async def handle_delay(node_input: Any, config: DelayParams) -> Any:
    """Sleep, then pass the input through."""
    await asyncio.sleep(config.seconds)
    return node_input
