"""HTTP node handlers - outbound requests and the HTTP polling trigger."""

from typing import Dict, Any, List, Callable, Optional, Tuple

import httpx

from core.logging import get_logger
from models.nodes import HttpRequestParams, NewHttpItemsParams
from services.execution.conditions import get_nested_value
from services.registry import PollState, PollResult

logger = get_logger(__name__)

ClientFactory = Callable[..., httpx.AsyncClient]


def _parse_body(response: httpx.Response) -> Any:
    try:
        return response.json()
    except ValueError:
        return response.text


async def handle_http_request(
    node_input: Any,
    config: HttpRequestParams,
    client_factory: ClientFactory = httpx.AsyncClient,
) -> Dict[str, Any]:
    """Handle HTTP request node execution.

    Raises httpx errors on transport failure or timeout, and on 4xx/5xx
    responses unless ``fail_on_error`` is off.
    """
    logger.info("[HTTP Request] Executing", method=config.method, url=config.url)

    kwargs: Dict[str, Any] = {"headers": config.headers, "params": config.query}
    if config.method in ("POST", "PUT", "PATCH") and config.body is not None:
        if isinstance(config.body, (dict, list)):
            kwargs["json"] = config.body
        else:
            kwargs["content"] = str(config.body)

    async with client_factory(timeout=config.timeout) as client:
        response = await client.request(config.method, config.url, **kwargs)

    if config.fail_on_error:
        response.raise_for_status()

    return {
        "status": response.status_code,
        "data": _parse_body(response),
        "headers": dict(response.headers),
        "url": str(response.url),
        "method": config.method,
    }


def _cursor_key(value: Any) -> Tuple[int, Any]:
    """Order numeric cursors numerically and everything else as strings."""
    try:
        return (0, float(value))
    except (TypeError, ValueError):
        return (1, str(value))


async def poll_new_http_items(
    config: NewHttpItemsParams,
    state: PollState,
    client_factory: ClientFactory = httpx.AsyncClient,
) -> PollResult:
    """Fetch the item list and return items newer than the stored cursor.

    The first poll only records a baseline cursor unless
    ``emit_on_first_poll`` is set.
    """
    async with client_factory(timeout=config.timeout) as client:
        response = await client.get(config.url, headers=config.headers)
    response.raise_for_status()

    payload = response.json()
    items = get_nested_value(payload, config.items_path) if config.items_path else payload
    if not isinstance(items, list):
        raise ValueError(f"Expected a list at '{config.items_path or '<root>'}', got {type(items).__name__}")

    keyed: List[Tuple[Tuple[int, Any], Any]] = []
    for item in items:
        value = get_nested_value(item, config.cursor_field)
        if value is not None:
            keyed.append((_cursor_key(value), item))
    keyed.sort(key=lambda pair: pair[0])

    if not keyed:
        return PollResult(items=[], cursor=state.cursor)

    newest = str(get_nested_value(keyed[-1][1], config.cursor_field))

    if state.cursor is None:
        if not config.emit_on_first_poll:
            logger.info("Polling baseline recorded", url=config.url, cursor=newest)
            return PollResult(items=[], cursor=newest)
        fresh = [item for _, item in keyed]
    else:
        stored: Optional[Tuple[int, Any]] = _cursor_key(state.cursor)
        fresh = [item for key, item in keyed if key > stored]

    return PollResult(items=fresh, cursor=newest if fresh else state.cursor)
