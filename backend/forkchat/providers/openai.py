"""OpenAI chat completion provider."""

from openai import AsyncOpenAI

from forkchat.providers.openai_compat import OpenAICompatibleProvider


class OpenAIProvider(OpenAICompatibleProvider):
    suggested_models = ["gpt-4o", "gpt-4o-mini", "gpt-4.1", "o4-mini"]

    def __init__(self, *, client: AsyncOpenAI | None = None, api_key: str | None = None) -> None:
        super().__init__(client or AsyncOpenAI(api_key=api_key))

    @property
    def name(self) -> str:
        return "openai"
