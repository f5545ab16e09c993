"""Dependency container wiring for the agent."""

from collections.abc import Awaitable, Callable
from dataclasses import dataclass
from functools import partial

from photo_agent.adapters.openai_planner_client import OpenAIPlannerClient
from photo_agent.adapters.tool_provider_client import HttpxToolProviderClient
from photo_agent.config import Settings, parse_term_list
from photo_agent.domain.planning import PlannerConfig
from photo_agent.services.cache import InMemoryCache, PreviewCache
from photo_agent.services.commands import CommandRouter
from photo_agent.services.llm_planner import LlmClient, LlmPlanner, RetryPolicy
from photo_agent.services.planner import Planner, PlannerTuning, RuleBasedPlanner
from photo_agent.services.sessions import SessionController
from photo_agent.services.tools import (
    ToolProvider,
    ToolProviderConfig,
    ToolProviderFactory,
    ToolProviderRegistry,
)


@dataclass
class AppContainer:
    """Holds application-wide dependencies."""

    settings: Settings
    controller: SessionController
    router: CommandRouter
    tool_providers: ToolProviderRegistry
    llm_client: LlmClient | None
    close_resources: Callable[[], Awaitable[None]]


def build_planner(
    settings: Settings,
    config: PlannerConfig | None = None,
    client: LlmClient | None = None,
) -> Planner:
    """Select the planner for a session from its config and the settings."""
    tuning = PlannerTuning()
    terms = parse_term_list(settings.planner_ambiguous_terms)
    if terms is not None:
        tuning = PlannerTuning(ambiguous_terms=terms)
    rule_planner = RuleBasedPlanner(tuning)
    kind = config.kind if config is not None else settings.planner_kind
    if kind != "llm":
        return rule_planner
    return LlmPlanner(
        client=client,
        model=(config.model if config and config.model else settings.openai_model),
        reasoning_effort=settings.openai_reasoning_effort,
        store=settings.openai_store,
        timeout_seconds=(
            config.timeout_seconds
            if config and config.timeout_seconds
            else settings.planner_timeout_seconds
        ),
        max_calls=(
            config.max_calls if config and config.max_calls else settings.planner_max_calls
        ),
        log_text=settings.planner_log_text,
        policy=RetryPolicy(
            max_attempts=settings.planner_max_attempts,
            deadline_seconds=settings.planner_deadline_seconds,
        ),
        fallback=rule_planner,
    )


def connect_tool_provider(config: ToolProviderConfig) -> ToolProvider:
    """Open an HTTP tool-provider connection."""
    return HttpxToolProviderClient.create(
        base_url=config.url,
        headers=config.headers,
        timeout_seconds=config.timeout_seconds,
    )


def build_container(
    settings: Settings | None = None,
    tool_provider_factory: ToolProviderFactory | None = None,
    llm_client: LlmClient | None = None,
) -> AppContainer:
    """Create the default dependency container."""
    resolved_settings = settings or Settings()
    openai_client = None
    if llm_client is None and resolved_settings.openai_api_key:
        openai_client = OpenAIPlannerClient.create(resolved_settings.openai_api_key)
        llm_client = openai_client

    default_providers: tuple[ToolProviderConfig, ...] = ()
    if resolved_settings.tool_provider_url:
        default_providers = (
            ToolProviderConfig(
                name="default",
                url=resolved_settings.tool_provider_url,
                timeout_seconds=resolved_settings.tool_provider_timeout_seconds,
            ),
        )
    tool_providers = ToolProviderRegistry(
        factory=tool_provider_factory or connect_tool_provider,
        default_configs=default_providers,
    )
    router = CommandRouter(
        tool_providers=tool_providers,
        previews=PreviewCache(
            cache=InMemoryCache(),
            ttl_seconds=resolved_settings.preview_cache_ttl_seconds,
        ),
        max_calls=resolved_settings.planner_max_calls,
        preview_max_pixels=resolved_settings.preview_max_pixels,
        thumbnail_max_pixels=resolved_settings.thumbnail_max_pixels,
        export_quality=resolved_settings.export_quality,
    )
    controller = SessionController(
        handler=router,
        planner_factory=partial(build_planner, resolved_settings, client=llm_client),
        tool_providers=tool_providers,
    )

    async def close_resources() -> None:
        await controller.shutdown()
        if openai_client is not None:
            await openai_client.close()

    return AppContainer(
        settings=resolved_settings,
        controller=controller,
        router=router,
        tool_providers=tool_providers,
        llm_client=llm_client,
        close_resources=close_resources,
    )
