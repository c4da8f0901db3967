"""
Tests for RAG Chain Module

Tests for the ChatOrchestrator: public chat, knowledge query, grounding
and preview. Uses the in-memory store, the stub embedder and a recording
LLM provider.
"""

from unittest.mock import Mock, patch

import pytest

from botforge.errors import InvalidRequestError, NotFoundError, UpstreamError
from botforge.models import BotDraft, BotRules, BotUpdate
from botforge.rag_chain import last_user_text


@pytest.fixture
def orchestrator(services):
    return services.orchestrator


def user(content):
    return [{"role": "user", "content": content}]


class TestLastUserText:

    def test_skips_assistant_and_images(self):
        messages = [
            {"role": "user", "content": "first"},
            {"role": "user", "content": "look ![x](https://x.test/a.png)"},
            {"role": "assistant", "content": "ok"},
        ]
        assert last_user_text(messages) == "look"

    def test_no_user_message(self):
        assert last_user_text([{"role": "assistant", "content": "hi"}]) == ""


class TestChat:
    """Tests for the public chat runtime."""

    def test_chat_logs_exchange(self, orchestrator, services, public_bot, fake_llm):
        """Test the 2+2 example end to end."""
        reply = orchestrator.chat(public_bot.slug, user("2+2?"))

        assert reply.reply == "4"
        assert reply.to_dict() == {"reply": "4", "conversationId": reply.conversation_id}
        messages = services.conversations.list_messages(reply.conversation_id)
        assert [(m.role, m.content) for m in messages] == [("user", "2+2?"), ("assistant", "4")]

        sent = fake_llm.calls[0]
        assert sent["model"] == "gpt-4o-mini"
        assert sent["messages"][0]["role"] == "system"
        assert sent["messages"][0]["content"].startswith("You are Math Tutor.")
        assert sent["messages"][-1] == {"role": "user", "content": "2+2?"}

    def test_continues_conversation(self, orchestrator, services, public_bot):
        first = orchestrator.chat(public_bot.slug, user("2+2?"))
        second = orchestrator.chat(public_bot.slug, user("3+3?"), conversation_id=first.conversation_id)

        assert second.conversation_id == first.conversation_id
        assert len(services.conversations.list_messages(first.conversation_id)) == 4

    def test_empty_messages(self, orchestrator, public_bot):
        with pytest.raises(InvalidRequestError):
            orchestrator.chat(public_bot.slug, [])

    def test_unknown_slug(self, orchestrator):
        with pytest.raises(NotFoundError, match="Bot not found"):
            orchestrator.chat("no-such-bot", user("hi"))

    def test_private_bot_not_served(self, orchestrator, services, owner_id):
        bot = services.bots.create(owner_id, "Private Bot")
        with pytest.raises(NotFoundError):
            orchestrator.chat(bot.slug, user("hi"))

    def test_knowledge_context_included(self, orchestrator, services, public_bot, owner_id, fake_llm):
        """Test that retrieved knowledge is sent as a second system message."""
        services.ingestor.ingest(owner_id, public_bot.id, text="The office opens at nine every weekday.")

        reply = orchestrator.chat(public_bot.slug, user("When does the office open?"))

        assert reply.metadata["chunks_found"] == 1
        context_message = fake_llm.calls[0]["messages"][1]
        assert context_message["role"] == "system"
        assert "The office opens at nine every weekday." in context_message["content"]

    def test_other_bot_knowledge_not_used(self, orchestrator, services, public_bot, owner_id):
        other = services.bots.create(owner_id, "Other Bot")
        services.ingestor.ingest(owner_id, other.id, text="Secret pricing details.")

        assert orchestrator.chat(public_bot.slug, user("pricing?")).sources == []

    def test_embedding_failure_not_fatal(self, orchestrator, public_bot, fake_llm):
        """Test that a failed query embedding still answers, without context."""
        orchestrator.embedding_service = Mock()
        orchestrator.embedding_service.embed_query.side_effect = RuntimeError("embeddings down")

        reply = orchestrator.chat(public_bot.slug, user("2+2?"))

        assert reply.reply == "4"
        assert len(fake_llm.calls[0]["messages"]) == 2

    def test_fallback_message_skips_model(self, orchestrator, services, public_bot, owner_id, fake_llm):
        """Test message-mode fallback when no knowledge exists."""
        rules = BotRules.model_validate({"settings": {
            "knowledge_fallback_mode": "message",
            "knowledge_fallback_message": "Please contact support.",
        }})
        services.bots.update(public_bot.id, owner_id, BotUpdate(rules=rules))

        reply = orchestrator.chat(public_bot.slug, user("What is the refund policy?"))

        assert reply.reply == "Please contact support."
        assert fake_llm.calls == []
        assert reply.conversation_id is not None

    def test_fallback_ignored_with_inline_knowledge(self, orchestrator, services, public_bot, owner_id, fake_llm):
        rules = BotRules.model_validate({"settings": {
            "knowledge_fallback_mode": "message",
            "knowledge_fallback_message": "Please contact support.",
        }})
        services.bots.update(public_bot.id, owner_id, BotUpdate(rules=rules, knowledge_base="Refunds take 5 days."))

        assert orchestrator.chat(public_bot.slug, user("Refunds?")).reply == "4"
        assert len(fake_llm.calls) == 1

    def test_logging_failure_keeps_reply(self, orchestrator, public_bot):
        """Test that a logging failure returns the reply with no conversation id."""
        with patch.object(orchestrator.turn_log, "record_exchange", side_effect=RuntimeError("db down")):
            reply = orchestrator.chat(public_bot.slug, user("2+2?"))

        assert reply.reply == "4"
        assert reply.conversation_id is None

    def test_upstream_error_propagates(self, orchestrator, public_bot, fake_llm):
        with patch.object(fake_llm, "complete", side_effect=UpstreamError("DeepSeek error 429", 429)):
            with pytest.raises(UpstreamError):
                orchestrator.chat(public_bot.slug, user("2+2?"))


class TestAnswerQuestion:
    """Tests for the knowledge query endpoint."""

    def test_answer_writes_memory(self, orchestrator, services, public_bot, owner_id, db):
        services.ingestor.ingest(owner_id, public_bot.id, text="Refunds take five business days.")

        response = orchestrator.answer_question(owner_id, public_bot.id, "How long do refunds take?")

        assert response.answer == "4"
        assert len(response.top) == 1
        assert response.to_dict()["top"][0]["file_name"] == "manual.txt"
        assert db.count("chat_memory") == 2

    def test_memory_used_on_next_question(self, orchestrator, public_bot, owner_id, fake_llm):
        """Test that remembered turns appear in the follow-up prompt."""
        orchestrator.answer_question(owner_id, public_bot.id, "My order number is 1234")
        orchestrator.answer_question(owner_id, public_bot.id, "What is my order number?")

        prompt = fake_llm.calls[-1]["messages"][1]["content"]
        assert "Recent Relevant Messages:" in prompt
        assert "My order number is 1234" in prompt
        assert prompt.endswith("Question: What is my order number?")

    def test_negative_similarity_still_returned(self, orchestrator, public_bot, owner_id, db):
        """Test that the knowledge query ranks top-k without a similarity floor."""
        db.insert_one("knowledge_chunks", {
            "_id": "k-opposite", "user_id": owner_id, "chatbot_id": public_bot.id,
            "file_name": "faq.txt", "chunk_index": 0, "chunk_text": "Unrelated text.",
            "embedding": [-1.0] + [0.0] * 31,
        })
        orchestrator.embedding_service = Mock()
        orchestrator.embedding_service.embed_query.return_value = [1.0] + [0.0] * 31

        response = orchestrator.answer_question(owner_id, public_bot.id, "Anything?")

        assert [r.chunk.chunk_id for r in response.top] == ["k-opposite"]
        assert response.to_dict()["top"][0]["similarity"] == pytest.approx(-1.0)

    def test_unknown_bot_uses_knowledge_defaults(self, orchestrator, owner_id, fake_llm):
        orchestrator.answer_question(owner_id, "missing-bot", "Anything?")

        assert fake_llm.calls[0]["model"] == "gpt-4o"
        assert fake_llm.calls[0]["temperature"] == 0.2
        assert "No knowledge context found." in fake_llm.calls[0]["messages"][1]["content"]


class TestGround:
    """Tests for the strict grounding variant."""

    @pytest.fixture
    def search(self, orchestrator):
        orchestrator.knowledge_store = Mock()
        orchestrator.knowledge_store.search.return_value = []
        orchestrator.knowledge_store.count.return_value = 0
        return orchestrator.knowledge_store.search

    @pytest.mark.parametrize("top_n,expected", [(None, 3), (2, 2), (50, 5), (-4, 1)])
    def test_top_n_clamped(self, orchestrator, search, top_n, expected):
        orchestrator.ground("u1", "b1", "question", top_n=top_n)

        assert search.call_args.kwargs["top_k"] == expected
        assert search.call_args.kwargs["threshold"] == 0.3

    def test_recent_messages_in_context(self, orchestrator, services, public_bot, owner_id):
        reply = orchestrator.chat(public_bot.slug, user("2+2?"))

        result = orchestrator.ground(owner_id, public_bot.id, "math", conversation_id=reply.conversation_id)

        assert "2+2?" in result.context
        assert result.to_dict()["ok"] is True

    def test_reports_counts(self, orchestrator, services, public_bot, owner_id):
        """Test that grounding reports retrieved and stored chunk counts."""
        services.ingestor.ingest(owner_id, public_bot.id, text="Refunds take five business days.")
        services.ingestor.ingest(owner_id, public_bot.id, text="The office opens at nine.")

        body = orchestrator.ground(owner_id, public_bot.id, "refunds").to_dict()

        assert body["totalChunks"] == 2
        assert body["retrieved"] == len(body["top"])

    def test_count_failure_not_fatal(self, orchestrator, search):
        orchestrator.knowledge_store.count.side_effect = RuntimeError("db down")

        body = orchestrator.ground("u1", "b1", "question").to_dict()

        assert body["totalChunks"] == 0
        assert body["retrieved"] == 0


class TestPreview:
    """Tests for unsaved bot previews."""

    def test_mock_reply_without_credentials(self, orchestrator, fake_llm):
        fake_llm.configured = False

        reply = orchestrator.preview(BotDraft(name="Draft Bot"), user("Hello"))

        assert "Bot: Draft Bot" in reply
        assert reply.endswith("User: Hello")
        assert fake_llm.calls == []

    def test_preview_calls_model_without_logging(self, orchestrator, fake_llm, db):
        reply = orchestrator.preview(BotDraft(name="Draft Bot", directive="Be terse."), user("2+2?"))

        assert reply == "4"
        assert "Be terse." in fake_llm.calls[0]["messages"][0]["content"]
        assert db.count("conversations") == 0
        assert db.count("messages") == 0
