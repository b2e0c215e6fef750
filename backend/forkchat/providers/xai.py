"""xAI (Grok) provider.

The xAI API speaks the OpenAI chat completions protocol, so this is the
OpenAI-compatible provider pointed at api.x.ai.
"""

from openai import AsyncOpenAI

from forkchat.providers.openai_compat import OpenAICompatibleProvider

XAI_BASE_URL = "https://api.x.ai/v1"


class XAIProvider(OpenAICompatibleProvider):
    suggested_models = [
        "grok-4",
        "grok-3",
        "grok-3-mini",
    ]

    def __init__(
        self,
        *,
        client: AsyncOpenAI | None = None,
        api_key: str | None = None,
        base_url: str = XAI_BASE_URL,
    ) -> None:
        if client is None:
            client = AsyncOpenAI(api_key=api_key, base_url=base_url)
        super().__init__(client)

    @property
    def name(self) -> str:
        return "xai"
