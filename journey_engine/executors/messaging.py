"""Message executor."""

import re
from typing import Any, Dict

from ..core.exceptions import JourneyEngineError, LogicExecutorError, TransientExecutorError
from ..core.logging import get_logger
from ..models.core import NodeType
from .base import AbstractNodeExecutor, ExecutionContext, NodeOutcome

logger = get_logger(__name__)

PLACEHOLDER = re.compile(r"\{\{\s*([\w.]+)\s*\}\}")


def render_text(template: str, ctx: ExecutionContext, name: str) -> str:
    """Substitute ``{{field}}`` placeholders from the contact, then the context."""
    def replace(match):
        key = match.group(1)
        if key in ("name", "contact_name"):
            return name
        value = ctx.resolve(key)
        return "" if value is None else str(value)

    return PLACEHOLDER.sub(replace, template)


class MessageExecutor(AbstractNodeExecutor):
    """Renders a message for the contact and hands it to the messaging transport."""

    node_type = NodeType.MESSAGE

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        phone = ctx.contact.get("phone") or ctx.contact.get("phone_number")
        if not phone:
            raise LogicExecutorError(
                f"Contact {ctx.execution.contact_id} has no phone number", node_id=node.id
            )

        name = ctx.contact.get("name") or ctx.contact.get("first_name") or ""
        if config.use_contact_name or not name:
            name = name or config.fallback_name

        content = self._build_content(node, ctx, name)

        try:
            receipt = ctx.services.messaging.send(phone, content)
        except JourneyEngineError:
            raise
        except Exception as e:
            raise TransientExecutorError(
                f"Message delivery failed: {str(e)}", node_id=node.id
            ) from e

        record = {
            "delivery_id": receipt.delivery_id,
            "status": receipt.status,
            "sent_at": ctx.now.isoformat(),
        }
        logger.info(f"Message {receipt.delivery_id} sent for execution {ctx.execution.id}")
        return NodeOutcome(context_updates={f"message_{node.id}": record}, output=record)

    @staticmethod
    def _build_content(node, ctx: ExecutionContext, name: str) -> Dict[str, Any]:
        config = node.data
        if config.template_id:
            return {
                "type": "template",
                "template_id": config.template_id,
                "variables": {
                    key: render_text(value, ctx, name)
                    for key, value in config.template_variables.items()
                },
            }
        if config.custom_message:
            content = {"type": "text", "text": render_text(config.custom_message, ctx, name)}
            if config.media_url:
                content.update({"media_url": config.media_url, "media_type": config.media_type})
            return content
        raise LogicExecutorError("Message node has neither a template nor text", node_id=node.id)
