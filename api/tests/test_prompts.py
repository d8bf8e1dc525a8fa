"""
Unit tests for prompt templates and per-model prompt adaptation.
"""

import pytest

from vault_copilot.models.settings import (
    BUILTIN_CHAT_MODELS,
    CustomModel,
    ModelCapabilities,
    ModelProvider,
)
from vault_copilot.services.chat_models import ChatModel
from vault_copilot.services.prompts import (
    DropSystemAdapter,
    PromptManager,
    SystemAsAssistantAdapter,
    adapter_for_model,
    build_qa_prompt,
)


def model(name, **kwargs):
    return ChatModel(None, CustomModel(name=name, provider=ModelProvider.OPENAI, **kwargs))


class TestChatPrompt:
    def test_chat_prompt_roles(self, store):
        prompt = PromptManager(store).get_chat_prompt()
        assert prompt.roles == ["system", "user"]
        assert prompt.system_message == store.system_prompt

    def test_history_is_inserted_before_input(self, store):
        prompt = PromptManager(store).get_chat_prompt()
        history = [{"role": "user", "content": "a"}, {"role": "assistant", "content": "b"}]

        messages = prompt.format_messages(history=history, input="c")

        assert [m["role"] for m in messages] == ["system", "user", "assistant", "user"]
        assert messages[-1]["content"] == "c"

    @pytest.mark.asyncio
    async def test_system_prompt_with_braces_is_not_formatted(self, store):
        await store.update(user_system_prompt="Reply as JSON like {\"a\": 1}.")
        messages = PromptManager(store).get_chat_prompt().format_messages(input="x")
        assert messages[0]["content"] == "Reply as JSON like {\"a\": 1}."

    def test_qa_prompt_includes_context_and_question(self):
        prompt = build_qa_prompt("Be brief.")
        messages = prompt.format_messages(context="[doc1] (Source: A): text", input="What?")

        assert messages[0]["role"] == "system"
        assert messages[0]["content"].startswith("Be brief.")
        assert "[doc1] (Source: A): text" in messages[-1]["content"]
        assert messages[-1]["content"].endswith("What?")

    def test_condense_prompt_has_only_a_user_message(self):
        prompt = PromptManager.get_condense_prompt()
        messages = prompt.format_messages(chat_history="Human: hi\nAssistant: hello", input="and?")
        assert [m["role"] for m in messages] == ["user"]
        assert "Follow Up Input: and?" in messages[0]["content"]


class TestAdapters:
    def test_system_as_assistant_moves_system_content(self, store):
        prompt = PromptManager(store).get_chat_prompt()

        adapted = SystemAsAssistantAdapter().adapt(prompt)

        assert "system" not in adapted.roles
        messages = adapted.format_messages(input="hi")
        assert messages[0] == {"role": "assistant", "content": store.system_prompt}

    def test_drop_system(self, store):
        adapted = DropSystemAdapter().adapt(PromptManager(store).get_chat_prompt())
        assert adapted.roles == ["user"]

    def test_adapter_lookup_for_reasoning_models(self):
        assert isinstance(adapter_for_model(model("o1-preview")), SystemAsAssistantAdapter)
        assert isinstance(adapter_for_model(ChatModel(None, BUILTIN_CHAT_MODELS[2])), SystemAsAssistantAdapter)
        assert adapter_for_model(model("gpt-4o")) is None

    def test_reasoning_capability_flag(self):
        reasoning = model("deep-thinker", capabilities=ModelCapabilities(reasoning=True))
        assert isinstance(adapter_for_model(reasoning), SystemAsAssistantAdapter)

    def test_reasoning_models_use_completion_token_limit(self):
        assert model("o1-mini")._request_params() == {"max_completion_tokens": 1000}
        assert model("gpt-4o")._request_params() == {"temperature": 0.1, "max_tokens": 1000}
