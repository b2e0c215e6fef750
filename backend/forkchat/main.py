"""Forkchat FastAPI application entry point."""

import logging
import os
from collections.abc import AsyncIterator
from contextlib import asynccontextmanager
from pathlib import Path

from anthropic import AsyncAnthropic
from dotenv import load_dotenv
from fastapi import FastAPI
from fastapi.middleware.cors import CORSMiddleware

from forkchat.providers.anthropic import AnthropicProvider
from forkchat.providers.base import LLMProvider
from forkchat.providers.openai import OpenAIProvider
from forkchat.providers.registry import (
    clear_providers,
    get_all_providers,
    register_provider,
    resolve_provider,
)
from forkchat.providers.relay import RelayProvider
from forkchat.providers.xai import XAIProvider
from forkchat.relay.router import RelayTarget, get_relay_target
from forkchat.relay.router import router as relay_router
from forkchat.settings import Settings, load_settings
from forkchat.trees.router import get_tree_service
from forkchat.trees.router import router as trees_router
from forkchat.trees.service import TreeService

logger = logging.getLogger("forkchat")

# Load .env from backend/ directory (secrets stay out of shell profile)
load_dotenv(Path(__file__).resolve().parent.parent / ".env")
settings = load_settings()


def register_env_providers() -> list[LLMProvider]:
    """Register every provider whose credentials are present in the environment."""
    xai_key = os.environ.get("XAI_API_KEY") or os.environ.get("GROK_API_KEY")
    if xai_key:
        register_provider(XAIProvider(api_key=xai_key))

    if os.environ.get("OPENAI_API_KEY"):
        register_provider(OpenAIProvider(api_key=os.environ["OPENAI_API_KEY"]))

    if os.environ.get("ANTHROPIC_API_KEY"):
        register_provider(AnthropicProvider(AsyncAnthropic()))

    if os.environ.get("FORKCHAT_RELAY_URL"):
        register_provider(RelayProvider(os.environ["FORKCHAT_RELAY_URL"]))

    return get_all_providers()


def pick_relay_target(config: Settings) -> RelayTarget | None:
    """The configured default provider, else the first registered one."""
    provider = resolve_provider(config.provider)
    if provider is None:
        return None
    model = config.model if provider.name == config.provider else None
    return RelayTarget(
        provider=provider,
        model=model or provider.default_model or "default",
        system_prompt=config.system_prompt,
    )


@asynccontextmanager
async def lifespan(app: FastAPI) -> AsyncIterator[None]:
    """Register providers and wire services."""
    logger.setLevel(settings.log_level.upper())

    registered = register_env_providers()
    if not registered:
        logger.warning("No chat provider credentials found; sends will fail")

    service = TreeService(settings)
    app.dependency_overrides[get_tree_service] = lambda: service

    target = pick_relay_target(settings)
    if target is not None:
        app.dependency_overrides[get_relay_target] = lambda: target
        logger.info("Relay forwards to %s/%s", target.provider.name, target.model)

    yield

    await service.shutdown()
    for provider in get_all_providers():
        if isinstance(provider, RelayProvider):
            await provider.aclose()
    clear_providers()


app = FastAPI(
    title="Forkchat",
    description="Branching conversation canvas backed by a streaming LLM relay",
    version="0.1.0",
    lifespan=lifespan,
)

app.add_middleware(
    CORSMiddleware,
    allow_origins=settings.cors_origins,
    allow_methods=["*"],
    allow_headers=["*"],
)

app.include_router(trees_router)
app.include_router(relay_router)


@app.get("/api/health")
async def health() -> dict:
    return {"status": "ok", "version": "0.1.0"}


@app.get("/api/providers")
async def providers() -> list[dict]:
    return [
        {"name": p.name, "available": True, "models": p.suggested_models}
        for p in get_all_providers()
    ]
