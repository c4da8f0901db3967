"""
Context Assembler

Merges ranked knowledge snippets and recent conversation turns into one
size-bounded text block for the prompt.

Format:
    Recent Relevant Messages:
    User: ...
    Assistant: ...

    Knowledge Context:
    # Source 1 (handbook.pdf)
    ...
    ---
    # Source 2
    ...

The block is hard-sliced to the character budget; snippet boundaries are
not preserved.
"""

import logging
from typing import Any, Iterable, List, Optional

from botforge.vector_store import SearchResult

logger = logging.getLogger(__name__)

DEFAULT_MAX_CHARS = 8000
SNIPPET_SEPARATOR = "\n\n---\n\n"
NO_KNOWLEDGE_PLACEHOLDER = "No knowledge context found."

ROLE_LABELS = {
    "user": "User",
    "assistant": "Assistant",
    "system": "System",
}


def truncate(text: Optional[str], max_chars: int = DEFAULT_MAX_CHARS) -> str:
    """Return text unchanged if within max_chars, else its first max_chars characters."""
    text = text or ""
    if len(text) <= max_chars:
        return text
    return text[:max_chars]


def format_knowledge(results: List[SearchResult]) -> str:
    """Render ranked snippets with a numbered source header each."""
    parts = []
    for i, result in enumerate(results, 1):
        label = f" ({result.file_name})" if result.file_name else ""
        parts.append(f"# Source {i}{label}\n{result.chunk.text}")
    return SNIPPET_SEPARATOR.join(parts)


def format_turns(turns: Iterable[Any]) -> str:
    """
    Render turns as "Role: content" lines.

    Turns are any objects with ``role`` and ``content`` attributes, already
    in chronological order.
    """
    lines = []
    for turn in turns:
        label = ROLE_LABELS.get(turn.role, turn.role.capitalize())
        lines.append(f"{label}: {turn.content}")
    return "\n".join(lines)


def assemble_context(
    knowledge: List[SearchResult],
    turns: Optional[List[Any]] = None,
    max_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """
    Build the combined context block.

    Args:
        knowledge: Ranked knowledge results (may be empty)
        turns: Recent turns in chronological order (may be empty)
        max_chars: Character budget for the whole block

    Returns:
        Context text, at most max_chars long
    """
    block = ""
    if turns:
        block += f"Recent Relevant Messages:\n{format_turns(turns)}\n\n"

    if knowledge:
        block += f"Knowledge Context:\n{format_knowledge(knowledge)}"
    else:
        block += NO_KNOWLEDGE_PLACEHOLDER

    if len(block) > max_chars:
        logger.debug(f"Context truncated from {len(block)} to {max_chars} chars")

    return truncate(block, max_chars)
