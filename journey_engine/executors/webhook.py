"""Outbound webhook executor."""

from ..core.collaborators import summarize
from ..core.exceptions import JourneyEngineError, LogicExecutorError, TransientExecutorError
from ..core.logging import get_logger
from ..models.core import NodeType
from .base import NO_EDGE, AbstractNodeExecutor, ExecutionContext, NodeOutcome, choose_handle

logger = get_logger(__name__)

METHODS = {"GET", "POST", "PUT", "PATCH", "DELETE"}
WEBHOOK_HANDLES = {"success", "failure"}


class WebhookExecutor(AbstractNodeExecutor):
    """
    Calls an external HTTP endpoint.

    Network errors, timeouts, 5xx and 429 responses are transient. Other
    non-2xx responses follow the ``failure`` handle when one is connected and
    are logic errors otherwise. Successful responses follow ``success`` when
    connected, else the default edge.
    """

    node_type = NodeType.WEBHOOK

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        method = (config.method or "").upper()
        if not config.url:
            raise LogicExecutorError("Webhook node requires a url", node_id=node.id)
        if method not in METHODS:
            raise LogicExecutorError(f"Unsupported webhook method: {config.method!r}", node_id=node.id)

        timeout = config.timeout or ctx.services.webhook_timeout
        try:
            response = ctx.services.webhooks.call(
                config.url, method, config.auth, config.body, dict(config.headers), timeout
            )
        except JourneyEngineError:
            raise
        except Exception as e:
            raise TransientExecutorError(f"Webhook call failed: {str(e)}", node_id=node.id) from e

        record = {"status_code": response.status_code, "ok": response.ok}
        status = response.status_code

        if status >= 500 or status == 429:
            raise TransientExecutorError(
                f"Webhook {method} {config.url} returned {status}", node_id=node.id
            ).add_details(status_code=status)

        if not response.ok:
            if ctx.graph.has_handle(node.id, "failure"):
                logger.warning(f"Webhook {node.id} returned {status}; following failure branch")
                return NodeOutcome(
                    next_handle="failure",
                    context_updates={f"webhook_{node.id}": record},
                    output=record,
                )
            raise LogicExecutorError(
                f"Webhook {method} {config.url} returned {status}: {summarize(response.body, 200)}",
                node_id=node.id
            ).add_details(status_code=status)

        updates = {f"webhook_{node.id}": record}
        if config.response_field:
            updates[config.response_field] = response.body

        handle = choose_handle(ctx.graph, node.id, "success", WEBHOOK_HANDLES)
        return NodeOutcome(
            next_handle=None if handle is NO_EDGE else handle,
            context_updates=updates,
            output=record,
            terminal=handle is NO_EDGE,
        )
