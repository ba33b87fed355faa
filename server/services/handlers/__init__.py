"""Built-in node handlers, organized by category:

- triggers.py: manual, webhook, scheduled and polling trigger passthroughs
- http.py: HTTP Request, HTTP polling trigger
- utility.py: Set Fields, Condition, Delay
"""

from functools import partial

import httpx

from constants import (
    MANUAL_TRIGGER_TYPE,
    WEBHOOK_TRIGGER_TYPE,
    SCHEDULED_TRIGGER_TYPE,
    KIND_ACTION,
    KIND_TRIGGER,
    KIND_SCHEDULED_TRIGGER,
    KIND_POLLING_TRIGGER,
)
from models.nodes import (
    ManualTriggerParams,
    WebhookTriggerParams,
    ScheduledTriggerParams,
    NewHttpItemsParams,
    HttpRequestParams,
    SetFieldsParams,
    ConditionParams,
    DelayParams,
)
from services.registry import NodeRegistry

# Trigger handlers
from .triggers import (
    handle_trigger_node,
    handle_polling_trigger,
)

# HTTP handlers
from .http import (
    handle_http_request,
    poll_new_http_items,
)

# Utility handlers
from .utility import (
    handle_set_fields,
    handle_condition,
    handle_delay,
)


def register_builtin_capabilities(registry: NodeRegistry,
                                  client_factory=httpx.AsyncClient) -> NodeRegistry:
    """Register built-in capabilities with the HTTP client factory bound via partial."""
    registry.register(MANUAL_TRIGGER_TYPE, ManualTriggerParams, handle_trigger_node,
                      kind=KIND_TRIGGER, description="Start a workflow on demand")
    registry.register(WEBHOOK_TRIGGER_TYPE, WebhookTriggerParams, handle_trigger_node,
                      kind=KIND_TRIGGER, description="Start a workflow from an inbound request")
    registry.register(SCHEDULED_TRIGGER_TYPE, ScheduledTriggerParams, handle_trigger_node,
                      kind=KIND_SCHEDULED_TRIGGER, description="Start a workflow on a cron schedule")
    registry.register("new-http-items", NewHttpItemsParams, handle_polling_trigger,
                      kind=KIND_POLLING_TRIGGER,
                      poll=partial(poll_new_http_items, client_factory=client_factory),
                      description="Start a workflow when a JSON feed has new items")

    registry.register("http-request", HttpRequestParams,
                      partial(handle_http_request, client_factory=client_factory),
                      kind=KIND_ACTION, description="Call an HTTP endpoint")
    registry.register("set-fields", SetFieldsParams, handle_set_fields,
                      kind=KIND_ACTION, description="Add or overwrite fields")
    registry.register("condition", ConditionParams, handle_condition,
                      kind=KIND_ACTION, description="Evaluate a field against a value")
    registry.register("delay", DelayParams, handle_delay,
                      kind=KIND_ACTION, description="Wait before continuing")
    return registry


__all__ = [
    "register_builtin_capabilities",
    "handle_trigger_node",
    "handle_polling_trigger",
    "handle_http_request",
    "poll_new_http_items",
    "handle_set_fields",
    "handle_condition",
    "handle_delay",
]
