"""Template resolution for node config values.

Resolves ``{{input.path}}`` against the node's own input and
``{{<node_id>.path}}`` against outputs of already-completed nodes.
"""

import re
from typing import Dict, Any

from core.logging import get_logger
from .conditions import get_nested_value

logger = get_logger(__name__)

TEMPLATE_PATTERN = re.compile(r'\{\{\s*([^}]+?)\s*\}\}')

INPUT_KEY = "input"


def resolve_templates(config: Any, node_input: Any, outputs: Dict[str, Any]) -> Any:
    """Resolve templates in a config value recursively.

    A string consisting of exactly one template keeps the referenced value's
    type; templates embedded in a longer string are stringified. Unresolvable
    references become an empty string.
    """
    if isinstance(config, str) and '{{' in config:
        return _resolve_string(config, node_input, outputs)
    if isinstance(config, dict):
        return {k: resolve_templates(v, node_input, outputs) for k, v in config.items()}
    if isinstance(config, list):
        return [resolve_templates(item, node_input, outputs) for item in config]
    return config


def _lookup(reference: str, node_input: Any, outputs: Dict[str, Any]) -> Any:
    root, _, path = reference.partition('.')
    if root == INPUT_KEY:
        return get_nested_value(node_input, path)
    if root in outputs:
        return get_nested_value(outputs[root], path)
    return None


def _resolve_string(value: str, node_input: Any, outputs: Dict[str, Any]) -> Any:
    match = TEMPLATE_PATTERN.fullmatch(value.strip())
    if match:
        return _lookup(match.group(1), node_input, outputs)

    def substitute(m: re.Match) -> str:
        resolved = _lookup(m.group(1), node_input, outputs)
        if resolved is None:
            logger.debug("Unresolved template", template=m.group(0))
            return ''
        return str(resolved)

    return TEMPLATE_PATTERN.sub(substitute, value)
