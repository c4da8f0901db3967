"""
Tests for the context assembler and prompt templates.
"""

from types import SimpleNamespace

from botforge.chunker import Chunk
from botforge.context import (
    NO_KNOWLEDGE_PLACEHOLDER,
    assemble_context,
    format_knowledge,
    format_turns,
    truncate,
)
from botforge.prompts import (
    DEFAULT_DIRECTIVE,
    SAFETY_DIRECTIVE,
    build_knowledge_user_prompt,
    build_system_prompt,
)
from botforge.vector_store import SearchResult


def result(text, file_name="faq.pdf", score=0.9):
    chunk = Chunk(text=text, chunk_id="k", source=file_name or "", chunk_index=0)
    return SearchResult(chunk, score, 1)


def turn(role, content):
    return SimpleNamespace(role=role, content=content)


class TestTruncate:

    def test_within_budget(self):
        assert truncate("hello", 10) == "hello"

    def test_hard_slice(self):
        assert truncate("abcdefghij", 4) == "abcd"

    def test_none(self):
        assert truncate(None) == ""


class TestAssembleContext:
    """Tests for the combined context block."""

    def test_knowledge_format(self):
        """Test numbered source headers and separators."""
        text = format_knowledge([result("Refunds take 5 days."), result("Ship in 2 days.", None)])

        assert text == (
            "# Source 1 (faq.pdf)\nRefunds take 5 days."
            "\n\n---\n\n"
            "# Source 2\nShip in 2 days."
        )

    def test_turns_format(self):
        """Test role labels."""
        assert format_turns([turn("user", "Hi"), turn("assistant", "Hello")]) == "User: Hi\nAssistant: Hello"

    def test_turns_before_knowledge(self):
        """Test that recent turns precede the knowledge block."""
        block = assemble_context([result("Refunds take 5 days.")], [turn("user", "refund?")])

        assert block.startswith("Recent Relevant Messages:\nUser: refund?\n\n")
        assert "Knowledge Context:\n# Source 1 (faq.pdf)" in block

    def test_placeholder_without_knowledge(self):
        """Test the placeholder when nothing was retrieved."""
        assert assemble_context([], []) == NO_KNOWLEDGE_PLACEHOLDER

    def test_budget(self):
        """Test that the whole block respects the character budget."""
        block = assemble_context([result("x" * 500)], [turn("user", "y" * 500)], max_chars=100)
        assert len(block) == 100


class TestPrompts:
    """Tests for prompt templates."""

    def test_system_prompt_parts(self):
        """Test identity, directive, context and safety lines."""
        prompt = build_system_prompt("Math Tutor", "Explain step by step.", "Pi is 3.14")

        assert prompt == (
            "You are Math Tutor.\n\nExplain step by step.\n\n"
            f"Context:\nPi is 3.14\n\n{SAFETY_DIRECTIVE}"
        )

    def test_system_prompt_defaults(self):
        """Test fallbacks for a blank name and directive."""
        prompt = build_system_prompt("", "  ")

        assert prompt.startswith("You are an assistant.")
        assert DEFAULT_DIRECTIVE in prompt
        assert "Context:" not in prompt

    def test_knowledge_truncated(self):
        """Test that inline knowledge respects its budget."""
        prompt = build_system_prompt("Bot", "", "k" * 50, max_knowledge_chars=10)
        assert "Context:\n" + "k" * 10 + "\n\n" in prompt

    def test_knowledge_user_prompt(self):
        """Test memory, knowledge and question order."""
        prompt = build_knowledge_user_prompt("How long?", "# Source 1\nFive days.", "User: hi")

        assert prompt.index("Recent Relevant Messages") < prompt.index("Knowledge Context")
        assert prompt.endswith("Question: How long?")

    def test_knowledge_user_prompt_without_context(self):
        prompt = build_knowledge_user_prompt("How long?")
        assert "No knowledge context found." in prompt
