"""
Initial prompt construction for a node.

The first evaluated instruction becomes the system message; the remaining
ones become the text parts of a single user message. Parts that render
blank are dropped, and so is a message left without content.
"""

from typing import Any

from graphrunner.graph.messages import Message, TextPart
from graphrunner.graph.templating import evaluate_template

SYSTEM_RULES = (
    "You are a node in a DAG-based workflow. You must return a single JSON object. "
    "If required inputs are missing, request them using the available tools."
)

DEFAULT_INSTRUCTIONS = [
    SYSTEM_RULES,
    "## Node JSON",
    "{{node}}",
    "## Upstream Inputs JSON",
    "{{inputs}}",
    '{{prompt != null ? "## User Prompt (extract inputs from this if possible/needed)" : ""}}',
    '{{prompt != null ? prompt : ""}}',
]


def build_prompt_messages(
    instructions: list[str] | None,
    context: dict[str, Any],
) -> list[Message]:
    """
    Evaluate a node's instructions into its opening messages.

    Args:
        instructions: Templated prompt lines (None selects the defaults)
        context: Template variables (node, inputs, prompt, transcript, ...)

    Returns:
        Zero, one or two messages: system, then user

    Raises:
        TemplateError: If an instruction fails to evaluate
    """
    lines = instructions if instructions is not None else DEFAULT_INSTRUCTIONS
    rendered = [evaluate_template(line, context) for line in lines]

    messages = []
    if rendered and rendered[0]:
        messages.append(Message.system(rendered[0]))

    parts = [TextPart(text=text) for text in rendered[1:] if text.strip()]
    if parts:
        messages.append(Message(role="user", content=parts))

    return messages
