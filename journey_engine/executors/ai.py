"""AI classification and generation executor."""

from ..core.exceptions import JourneyEngineError, LogicExecutorError, TransientExecutorError
from ..models.core import NodeType
from .base import AbstractNodeExecutor, ExecutionContext, NodeOutcome

AI_ACTIONS = (
    "sentiment_analysis",
    "categorize",
    "extract_info",
    "generate_response",
    "translate",
)

LAST_INBOUND_KEYS = ("last_inbound_message", "last_message")


class AIExecutor(AbstractNodeExecutor):
    node_type = NodeType.AI

    def do_execute(self, node, ctx: ExecutionContext) -> NodeOutcome:
        config = node.data
        if config.action not in AI_ACTIONS:
            raise LogicExecutorError(f"Unknown AI action: {config.action!r}", node_id=node.id)

        text = self._input_text(node, ctx)
        options = dict(config.options)
        if config.model:
            options.setdefault("model", config.model)

        try:
            result = ctx.services.ai.classify(text, config.action, options)
        except JourneyEngineError:
            raise
        except Exception as e:
            raise TransientExecutorError(f"AI provider error: {str(e)}", node_id=node.id) from e

        return NodeOutcome(context_updates={f"ai_{node.id}": result}, output={"action": config.action})

    @staticmethod
    def _input_text(node, ctx: ExecutionContext) -> str:
        if node.data.input_field:
            value = ctx.resolve(node.data.input_field)
        else:
            value = next(
                (ctx.resolve(key) for key in LAST_INBOUND_KEYS if ctx.resolve(key) is not None),
                None,
            )
        if value is None or value == "":
            raise LogicExecutorError("AI node has no input text", node_id=node.id)
        return str(value)
