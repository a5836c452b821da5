"""ask_user tool declaration.

The conversation engine intercepts this tool and prompts the user itself;
the registry only advertises the declaration.
"""

from typing import Any

from gmn_agent.exceptions import ToolExecutionError
from gmn_agent.tools.registry import BuiltinTool, Tool, ToolResult


class AskUserTool(Tool):
    """Ask the user clarifying questions."""

    name = BuiltinTool.ASK_USER.value
    description = (
        "Ask the user one or more questions to gather preferences, clarify "
        "requirements, or make decisions. Use when you need user input before proceeding."
    )
    parameters = {
        "type": "object",
        "properties": {
            "questions": {
                "type": "array",
                "description": "Questions to ask the user (1-4 questions).",
                "items": {
                    "type": "object",
                    "properties": {
                        "question": {
                            "type": "string",
                            "description": "The question to ask. Should be clear and end with a question mark.",
                        },
                        "header": {
                            "type": "string",
                            "description": "Very short label (max 16 chars). E.g. 'Auth method', 'Library'.",
                        },
                        "type": {
                            "type": "string",
                            "description": (
                                "Question type: 'choice' for multiple-choice, 'text' for "
                                "free-form, 'yesno' for confirmation."
                            ),
                            "enum": ["choice", "text", "yesno"],
                        },
                        "options": {
                            "type": "array",
                            "description": "Choices for 'choice' type questions.",
                            "items": {
                                "type": "object",
                                "properties": {
                                    "label": {"type": "string", "description": "Option display text (1-5 words)."},
                                    "description": {"type": "string", "description": "Brief explanation of this option."},
                                },
                                "required": ["label", "description"],
                            },
                        },
                    },
                    "required": ["question", "header"],
                },
            },
        },
        "required": ["questions"],
    }

    async def execute(self, **kwargs: Any) -> ToolResult:
        raise ToolExecutionError(self.name, "ask_user must be handled by the conversation engine")
