"""Prompt templates for the chat runtime and the knowledge query endpoint."""

from typing import Optional

from botforge.context import DEFAULT_MAX_CHARS, truncate

DEFAULT_DIRECTIVE = "Be a helpful, friendly assistant."
SAFETY_DIRECTIVE = "Answer concisely. Refuse harmful or illegal requests."

KNOWLEDGE_SYSTEM_PROMPT = (
    "You are a helpful AI assistant. Use the provided knowledge context and "
    "relevant past chat messages to answer the user's question. If the answer "
    "is not present in the context, say you don't have enough information "
    "rather than guessing."
)


def build_system_prompt(
    name: Optional[str],
    directive: Optional[str],
    knowledge_base: Optional[str] = None,
    max_knowledge_chars: int = DEFAULT_MAX_CHARS,
) -> str:
    """
    Compose a bot's system instruction.

    Args:
        name: Bot display name
        directive: Bot-specific instructions
        knowledge_base: Inline knowledge text, included under "Context:"
        max_knowledge_chars: Budget for the inline knowledge text

    Returns:
        Identity line, directive, optional context and the safety line,
        separated by blank lines
    """
    name = (name or "").strip()
    directive = (directive or "").strip()
    knowledge_base = (knowledge_base or "").strip()

    parts = [
        f"You are {name}." if name else "You are an assistant.",
        directive or DEFAULT_DIRECTIVE,
    ]
    if knowledge_base:
        parts.append(f"Context:\n{truncate(knowledge_base, max_knowledge_chars)}")
    parts.append(SAFETY_DIRECTIVE)

    return "\n\n".join(parts)


def build_knowledge_context_message(context: str) -> str:
    """System message carrying retrieved knowledge for the chat runtime."""
    return (
        "Use the following retrieved knowledge when it is relevant to the "
        f"conversation.\n\n{context}"
    )


def build_knowledge_user_prompt(
    question: str,
    knowledge_context: str = "",
    memory_context: str = "",
) -> str:
    """User turn for the knowledge query endpoint: memory, knowledge, question."""
    prompt = ""
    if memory_context:
        prompt += f"Recent Relevant Messages:\n{memory_context}\n\n"
    if knowledge_context:
        prompt += f"Knowledge Context:\n{knowledge_context}\n\n"
    else:
        prompt += "No knowledge context found.\n\n"
    prompt += f"Question: {question}"
    return prompt
