"""Trigger node handlers - entry points that pass the trigger payload through."""

from typing import Any

from pydantic import BaseModel

from core.logging import get_logger

logger = get_logger(__name__)


async def handle_trigger_node(node_input: Any, config: BaseModel) -> Any:
    """Handle manual, webhook and scheduled trigger nodes.

    Root nodes receive the trigger payload as input; the trigger's output is
    that payload unchanged so downstream nodes can template against it.
    """
    return node_input if node_input is not None else {}


async def handle_polling_trigger(node_input: Any, config: BaseModel) -> Any:
    """Polling triggers run after poll() found data; emit the enqueued batch."""
    if isinstance(node_input, dict) and "items" in node_input:
        return node_input
    return {"items": [], "cursor": None}
