"""Session provider registry and startup detection."""
from __future__ import annotations

import logging

from sessionlens import config
from sessionlens.models import ProviderInfo
from sessionlens.parsers.platforms.base import SessionProvider
from sessionlens.parsers.platforms.claude_code.provider import ClaudeCodeProvider
from sessionlens.parsers.platforms.codex.provider import CodexProvider
from sessionlens.parsers.platforms.opencode.provider import OpenCodeProvider

logger = logging.getLogger("sessionlens.detector")

PROVIDERS: dict[str, type[SessionProvider]] = {
    ClaudeCodeProvider.id: ClaudeCodeProvider,
    OpenCodeProvider.id: OpenCodeProvider,
    CodexProvider.id: CodexProvider,
}


def create_provider(provider_id: str) -> SessionProvider:
    """Instantiate a provider by id; raises ``ValueError`` for unknown ids."""
    try:
        return PROVIDERS[provider_id]()
    except KeyError:
        raise ValueError(f"Unknown session provider: {provider_id!r}") from None


def detect_provider(override: str | None = None) -> SessionProvider:
    """Pick the provider to monitor.

    An explicit override wins; otherwise the available provider whose store
    changed most recently; otherwise Claude Code.
    """
    requested = (override if override is not None else config.PROVIDER_OVERRIDE).strip().lower()
    if requested:
        if requested in PROVIDERS:
            logger.info("Using configured session provider %s", requested)
            return create_provider(requested)
        logger.warning("Ignoring unknown provider override %r", requested)

    best: SessionProvider | None = None
    best_activity = -1.0
    for provider_id in PROVIDERS:
        provider = create_provider(provider_id)
        if not provider.is_available():
            provider.dispose()
            continue
        activity = provider.get_last_activity()
        logger.debug("Provider %s available (last activity %.0f)", provider_id, activity)
        if activity > best_activity:
            if best is not None:
                best.dispose()
            best, best_activity = provider, activity
        else:
            provider.dispose()

    if best is None:
        logger.info("No session store found; defaulting to %s", config.DEFAULT_PROVIDER)
        return create_provider(config.DEFAULT_PROVIDER)
    logger.info("Detected session provider %s", best.id)
    return best


def list_providers(active_id: str | None = None) -> list[ProviderInfo]:
    infos: list[ProviderInfo] = []
    for provider_id in PROVIDERS:
        provider = create_provider(provider_id)
        try:
            available = provider.is_available()
            infos.append(
                ProviderInfo(
                    id=provider.id,
                    displayName=provider.display_name,
                    baseDirectory=provider.get_base_directory(),
                    available=available,
                    lastActivity=provider.get_last_activity() if available else 0.0,
                    selected=provider.id == active_id,
                )
            )
        finally:
            provider.dispose()
    return infos
