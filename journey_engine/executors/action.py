"""Contact action executor."""

from typing import Any, Dict

from ..core.exceptions import JourneyEngineError, LogicExecutorError, TransientExecutorError
from ..models.core import NodeType
from .base import AbstractNodeExecutor, ExecutionContext, NodeOutcome

# action type -> config fields it needs
ACTION_TYPES = {
    "add_tag": ("tag_ids",),
    "remove_tag": ("tag_ids",),
    "update_field": ("field_name",),
    "add_to_list": ("list_id",),
    "remove_from_list": ("list_id",),
    "send_notification": ("notification_message",),
}


class ActionExecutor(AbstractNodeExecutor):
    node_type = NodeType.ACTION

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        required = ACTION_TYPES.get(config.action_type)
        if required is None:
            raise LogicExecutorError(f"Unknown action type: {config.action_type!r}", node_id=node.id)

        params: Dict[str, Any] = {
            key: value
            for key, value in config.model_dump(
                include={"tag_ids", "field_name", "field_value", "list_id",
                         "notification_email", "notification_message"}
            ).items()
            if value not in (None, [], "")
        }
        missing = [name for name in required if name not in params]
        if missing:
            raise LogicExecutorError(
                f"Action {config.action_type} requires {', '.join(missing)}", node_id=node.id
            )

        try:
            result = ctx.services.actions.apply_action(
                ctx.execution.contact_id, config.action_type, params
            )
        except JourneyEngineError:
            raise
        except Exception as e:
            raise TransientExecutorError(
                f"Action {config.action_type} failed: {str(e)}", node_id=node.id
            ) from e

        record = {"action_type": config.action_type, "result": result}
        return NodeOutcome(context_updates={f"action_{node.id}": record}, output=record)
