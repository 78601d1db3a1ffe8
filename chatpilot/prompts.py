"""System prompt assembly for the ask, query and agent response modes.

Prompts come from an operator-supplied custom template for the mode when one is
set, otherwise from the built-in default. Operator rules scoped to the mode are
appended last. Assembly is a pure function of its inputs.
"""

from __future__ import annotations

import re
from dataclasses import dataclass, field
from typing import Any, Iterable

from chatpilot.models import AvatarPersona, FileContext, Mode, Participant


_PLACEHOLDER_RE = re.compile(r"\{([A-Za-z_][A-Za-z0-9_.]*)\}")


# ---------------------------------------------------------------------------
# Default templates
# ---------------------------------------------------------------------------


def _ask_prompt(assistant_name: str, user_name: str) -> str:
    return (
        f"Your name is {assistant_name} and you are assistant for your companion {user_name}.\n"
        "\n"
        f"You and your companion {user_name} will be hearing messages in chats.\n"
        "Your responses should be short, concise, friendly, helpful, and professional.\n"
        "Use emojis only when appropriate.\n"
        "\n"
        "You will be provided a list of messages in a chat with timestamps as contexts for your references."
    )


def _copilot_code_prompt(assistant_name: str, user_name: str, file: FileContext) -> str:
    ext = file.extension.lstrip(".")
    return (
        f"Your name is {assistant_name} and you are an AI Copilot assistant for {user_name}.\n"
        "\n"
        f'You are currently assisting with editing and modifying the file: "{file.name}"\n'
        f"File extension: {ext}\n"
        "\n"
        "CURRENT FILE CONTENT:\n"
        f"```{ext}\n{file.content}\n```\n"
        "\n"
        "Help with editing, refactoring, debugging, or enhancing the file. Explain code when asked\n"
        "and suggest improvements that fit the file type.\n"
        "\n"
        "CRITICAL OUTPUT FORMAT:\n"
        "When suggesting code changes or modifications, you MUST output them in the following format:\n"
        f"```{ext}\n[your suggested code changes here]\n```\n"
        "\n"
        "This format is essential for the system to properly process and apply your suggestions.\n"
        "Keep responses concise and focused on the file being edited."
    )


def _copilot_docx_prompt(assistant_name: str, user_name: str, file: FileContext) -> str:
    return (
        f"Your name is {assistant_name} and you are an AI Copilot assistant for {user_name}.\n"
        "\n"
        f'You are currently assisting with editing the Word document: "{file.name}"\n'
        "\n"
        "CURRENT DOCUMENT STRUCTURE (indexed elements):\n"
        f"{file.content}\n"
        "\n"
        "CRITICAL OUTPUT FORMAT:\n"
        "Never rewrite the whole document. Express every change as structured element patches\n"
        "inside a docx-structure-patch block:\n"
        "```docx-structure-patch\n"
        "[\n"
        '  {"elementIndex": 3, "action": "replace", "elementType": "paragraph",\n'
        '   "newElement": {"type": "paragraph", "text": "Updated text"}},\n'
        '  {"elementIndex": 5, "action": "insert", "insertPosition": "after",\n'
        '   "newElement": {"type": "heading", "level": 2, "text": "New section"}},\n'
        '  {"elementIndex": 7, "action": "delete"}\n'
        "]\n"
        "```\n"
        "\n"
        'Allowed actions are "replace", "insert", "delete" and "modify". elementIndex refers to the\n'
        "indexed elements above. Explain the intent of the patch briefly before the block."
    )


def _query_prompt(
    assistant_name: str,
    user_name: str,
    kb_ids: list[str],
    query_engine: str,
    embedding_model: str,
) -> str:
    kb_info = "No specific Knowledge Bases are selected for this query."
    if kb_ids:
        kb_info = (
            "You should primarily use the following Knowledge Base(s) for your answer: "
            f"[{', '.join(kb_ids)}]."
        )
        if query_engine:
            kb_info += f'\nUse the "{query_engine}" query engine.'
        if embedding_model and embedding_model != "none":
            kb_info += f'\nContextual embeddings were generated using "{embedding_model}".'
    return (
        f"You are {assistant_name}, a specialized assistant for {user_name}.\n"
        "Your task is to answer questions based on the provided chat history and available Knowledge Bases.\n"
        f"{kb_info}\n"
        "Analyze the user's latest message in the context of the conversation history.\n"
        "Formulate a comprehensive answer using the information from the specified Knowledge Bases.\n"
        "If the KBs do not contain relevant information, clearly state that.\n"
        "Be concise and informative."
    )


def _kb_note(kb_ids: list[str]) -> str:
    if not kb_ids:
        return ""
    return (
        f"\n\nYou have access to the following Knowledge Base(s): [{', '.join(kb_ids)}]. "
        "Use them when relevant to provide more accurate and contextual responses."
    )


def _agent_prompt(assistant_name: str, user_name: str, kb_ids: list[str]) -> str:
    return (
        f"You are {assistant_name}, the Master Agent coordinating specialized AI agents to solve complex tasks.\n"
        f"You are in a chat with your companion, {user_name}.\n"
        "\n"
        "You have access to a distributed swarm of specialized agents and tools. "
        f"Your available tools will be provided to you separately.{_kb_note(kb_ids)}\n"
        "\n"
        "Your role:\n"
        f"1. Analyze complex requests from {user_name}\n"
        "2. Coordinate specialized agents (Research, Analysis, Creative, Technical, Communication, Validation)\n"
        "3. Decompose tasks into subtasks for agent specialization\n"
        "4. Synthesize agent results into comprehensive responses\n"
        "5. Use available tools when needed for enhanced capabilities\n"
        "6. Leverage Knowledge Bases when they contain relevant information\n"
        "7. Work within system limits to ensure efficient resource usage\n"
        "\n"
        "Based on messages in this chat, coordinate your agent swarm and use tools that are most relevant "
        "to efficiently solve the user's request.\n"
        "If no tools or agent coordination is needed, provide a direct response.\n"
        "Remember to respect swarm limits and optimize for quality over quantity in agent selection."
    )


# ---------------------------------------------------------------------------
# Rules
# ---------------------------------------------------------------------------


def append_rules(prompt: str, mode: Mode | str, rules: Iterable[Any]) -> str:
    """Append enabled operator rules scoped to ``mode``.

    Rules are objects (or dicts) with ``content``, ``modes`` and ``enabled``.
    """
    mode_value = Mode(mode).value
    lines: list[str] = []
    for rule in rules:
        data = rule if isinstance(rule, dict) else rule.model_dump()
        if not data.get("enabled", True):
            continue
        modes = data.get("modes") or [m.value for m in Mode]
        if mode_value not in modes:
            continue
        content = str(data.get("content", "")).strip()
        if content:
            lines.append(content)
    if not lines:
        return prompt
    numbered = "\n".join(f"{i}. {line}" for i, line in enumerate(lines, start=1))
    return f"{prompt}\n\nPlease follow these rules:\n{numbered}"


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


def substitute_placeholders(template: str, values: dict[str, str]) -> str:
    """Replace ``{name}`` placeholders; unknown placeholders are left as-is."""

    def _replace(match: re.Match[str]) -> str:
        key = match.group(1)
        if key in values:
            return values[key]
        return match.group(0)

    return _PLACEHOLDER_RE.sub(_replace, template)


@dataclass
class PromptAssembler:
    """Builds the system prompt for one response."""

    custom_templates: dict[str, str] = field(default_factory=dict)
    rules: list[Any] = field(default_factory=list)

    @classmethod
    def from_config(cls, config: Any) -> PromptAssembler:
        return cls(
            custom_templates=config.prompts.custom_templates(),
            rules=list(config.prompts.rules),
        )

    def build(
        self,
        mode: Mode | str,
        user: Participant,
        assistant: Participant,
        *,
        avatar: AvatarPersona | None = None,
        kb_ids: list[str] | None = None,
        query_engine: str = "",
        embedding_model: str = "",
        file_context: FileContext | None = None,
    ) -> str:
        mode = Mode(mode)
        kb_ids = list(kb_ids or [])
        assistant_name = avatar.name if avatar else assistant.username
        user_name = user.username

        custom = (self.custom_templates.get(mode.value) or "").strip()
        if custom:
            values = {
                "agent.username": assistant_name,
                "agent_username": assistant_name,
                "user.username": user_name,
                "user_username": user_name,
                "file_name": file_context.name if file_context else "",
                "file_extension": file_context.extension if file_context else "",
                "file_content": file_context.content if file_context else "",
                "kbIds": ", ".join(kb_ids),
                "kb_ids": ", ".join(kb_ids),
                "queryEngine": query_engine,
                "embeddingModel": embedding_model,
            }
            prompt = substitute_placeholders(custom, values)
            if mode == Mode.AGENT:
                prompt += _kb_note(kb_ids)
        elif mode == Mode.ASK:
            if file_context is None:
                prompt = _ask_prompt(assistant_name, user_name)
            elif file_context.is_rich_document:
                prompt = _copilot_docx_prompt(assistant_name, user_name, file_context)
            else:
                prompt = _copilot_code_prompt(assistant_name, user_name, file_context)
        elif mode == Mode.QUERY:
            prompt = _query_prompt(assistant_name, user_name, kb_ids, query_engine, embedding_model)
        else:
            prompt = _agent_prompt(assistant_name, user_name, kb_ids)

        return append_rules(prompt, mode, self.rules)
