"""
Configuration Management for Evidence Agents

Loads configuration from ~/.evidence/config.json and environment variables.
"""

import os
import json
import logging
from pathlib import Path
from dataclasses import dataclass, field

logger = logging.getLogger("evidence.common.config")

# Default config paths
CONFIG_DIR = Path.home() / ".evidence"
CONFIG_PATH = CONFIG_DIR / "config.json"

SUPPORTED_LANGUAGES = ("de", "en")


class ConfigurationError(ValueError):
    """Raised for missing or invalid caller-supplied identifiers.

    This is the only error the pipeline raises to its caller, and it is
    always raised before any retrieval begins.
    """


@dataclass
class LLMConfig:
    """LLM provider configuration shared by the synthesizer and planners"""
    provider: str = "anthropic"
    anthropic_api_key: str = ""
    anthropic_model: str = "claude-sonnet-4-20250514"
    openai_api_key: str = ""
    openai_model: str = "gpt-4o-mini"
    google_api_key: str = ""
    google_model: str = "gemini-2.0-flash-exp"
    temperature: float = 0.2
    timeout: float = 30.0

    @property
    def model(self) -> str:
        return {
            "anthropic": self.anthropic_model,
            "openai": self.openai_model,
            "google": self.google_model,
        }.get(self.provider, "")


@dataclass
class SearchConfig:
    """Document-collection search configuration"""
    collections: list = field(default_factory=lambda: ["documents"])
    timeout: float = 2.0


@dataclass
class WebSearchConfig:
    """Web search (SearXNG) configuration"""
    enabled: bool = True
    base_url: str = "http://localhost:8080"
    language: str = "de-DE"
    categories: str = "general"
    safesearch: int = 0
    max_results: int = 8
    timeout: float = 2.5
    crawl_top: int = 3
    crawl_timeout: float = 3.0
    crawl_max_chars: int = 2000


@dataclass
class RetrieverConfig:
    """Retrieval tuning shared by the coordinator and the deduplicator"""
    prior_research_timeout: float = 3.0
    retry_delay: float = 0.25
    max_retries: int = 1
    mmr_lambda: float = 0.7
    max_per_domain: int = 2
    max_sources: int = 8


@dataclass
class GroundingConfig:
    """Grounding validator thresholds"""
    max_ungrounded_ratio: float = 0.5
    min_citations: int = 3
    min_overlap_ratio: float = 0.15


@dataclass
class EvidenceConfig:
    """Main Evidence configuration"""
    llm: LLMConfig = field(default_factory=LLMConfig)
    search: SearchConfig = field(default_factory=SearchConfig)
    web: WebSearchConfig = field(default_factory=WebSearchConfig)
    retriever: RetrieverConfig = field(default_factory=RetrieverConfig)
    grounding: GroundingConfig = field(default_factory=GroundingConfig)
    language: str = "de"
    _env_sourced_keys: set = field(default_factory=set, repr=False)


def _parse_llm_config(data: dict) -> LLMConfig:
    """Parse llm section from config dict"""
    llm_data = data.get("llm", {})
    return LLMConfig(
        provider=llm_data.get("provider", "anthropic"),
        anthropic_api_key=llm_data.get("anthropic_api_key", ""),
        anthropic_model=llm_data.get("anthropic_model", "claude-sonnet-4-20250514"),
        openai_api_key=llm_data.get("openai_api_key", ""),
        openai_model=llm_data.get("openai_model", "gpt-4o-mini"),
        google_api_key=llm_data.get("google_api_key", ""),
        google_model=llm_data.get("google_model", "gemini-2.0-flash-exp"),
        temperature=llm_data.get("temperature", 0.2),
        timeout=llm_data.get("timeout", 30.0),
    )


def _parse_search_config(data: dict) -> SearchConfig:
    """Parse search section from config dict"""
    search_data = data.get("search", {})
    return SearchConfig(
        collections=list(search_data.get("collections", ["documents"])),
        timeout=search_data.get("timeout", 2.0),
    )


def _parse_web_config(data: dict) -> WebSearchConfig:
    """Parse web section from config dict"""
    web_data = data.get("web", {})
    return WebSearchConfig(
        enabled=web_data.get("enabled", True),
        base_url=web_data.get("base_url") or web_data.get("url", "http://localhost:8080"),
        language=web_data.get("language", "de-DE"),
        categories=web_data.get("categories", "general"),
        safesearch=web_data.get("safesearch", 0),
        max_results=web_data.get("max_results", 8),
        timeout=web_data.get("timeout", 2.5),
        crawl_top=web_data.get("crawl_top", 3),
        crawl_timeout=web_data.get("crawl_timeout", 3.0),
        crawl_max_chars=web_data.get("crawl_max_chars", 2000),
    )


def _parse_retriever_config(data: dict) -> RetrieverConfig:
    """Parse retriever section from config dict"""
    retriever_data = data.get("retriever", {})
    return RetrieverConfig(
        prior_research_timeout=retriever_data.get("prior_research_timeout", 3.0),
        retry_delay=retriever_data.get("retry_delay", 0.25),
        max_retries=retriever_data.get("max_retries", 1),
        mmr_lambda=retriever_data.get("mmr_lambda", 0.7),
        max_per_domain=retriever_data.get("max_per_domain", 2),
        max_sources=retriever_data.get("max_sources", 8),
    )


def _parse_grounding_config(data: dict) -> GroundingConfig:
    """Parse grounding section from config dict"""
    grounding_data = data.get("grounding", {})
    return GroundingConfig(
        max_ungrounded_ratio=grounding_data.get("max_ungrounded_ratio", 0.5),
        min_citations=grounding_data.get("min_citations", 3),
        min_overlap_ratio=grounding_data.get("min_overlap_ratio", 0.15),
    )


def validate_config(config: EvidenceConfig) -> None:
    """Reject values the pipeline cannot run with."""
    if not 0.0 <= config.retriever.mmr_lambda <= 1.0:
        raise ConfigurationError(
            f"retriever.mmr_lambda must be within [0, 1], got {config.retriever.mmr_lambda}"
        )
    if not 0.0 < config.grounding.max_ungrounded_ratio <= 1.0:
        raise ConfigurationError(
            "grounding.max_ungrounded_ratio must be within (0, 1], "
            f"got {config.grounding.max_ungrounded_ratio}"
        )
    if config.retriever.max_retries < 0:
        raise ConfigurationError("retriever.max_retries must not be negative")
    if config.web.crawl_top < 0:
        raise ConfigurationError("web.crawl_top must not be negative")
    if config.language not in SUPPORTED_LANGUAGES:
        raise ConfigurationError(
            f"Unsupported answer language {config.language!r}, "
            f"expected one of {', '.join(SUPPORTED_LANGUAGES)}"
        )


def load_config() -> EvidenceConfig:
    """
    Load configuration from file and environment variables.

    Priority (highest to lowest):
    1. Environment variables
    2. Config file (~/.evidence/config.json)
    3. Default values
    """
    config = EvidenceConfig()

    if CONFIG_PATH.exists():
        try:
            with open(CONFIG_PATH) as f:
                data = json.load(f)

            config.llm = _parse_llm_config(data)
            config.search = _parse_search_config(data)
            config.web = _parse_web_config(data)
            config.retriever = _parse_retriever_config(data)
            config.grounding = _parse_grounding_config(data)
            config.language = data.get("language", "de")
        except (json.JSONDecodeError, IOError) as e:
            logger.warning("Failed to load config file %s: %s", CONFIG_PATH, e)

    if os.getenv("SEARXNG_URL"):
        config.web.base_url = os.getenv("SEARXNG_URL")
    if os.getenv("EVIDENCE_WEB_ENABLED"):
        config.web.enabled = os.getenv("EVIDENCE_WEB_ENABLED").lower() in ("1", "true", "yes")
    if os.getenv("EVIDENCE_WEB_TIMEOUT"):
        config.web.timeout = float(os.getenv("EVIDENCE_WEB_TIMEOUT"))
    if os.getenv("EVIDENCE_CRAWL_TOP"):
        config.web.crawl_top = int(os.getenv("EVIDENCE_CRAWL_TOP"))
    if os.getenv("EVIDENCE_DOCUMENT_TIMEOUT"):
        config.search.timeout = float(os.getenv("EVIDENCE_DOCUMENT_TIMEOUT"))
    if os.getenv("EVIDENCE_MMR_LAMBDA"):
        config.retriever.mmr_lambda = float(os.getenv("EVIDENCE_MMR_LAMBDA"))
    if os.getenv("EVIDENCE_LANGUAGE"):
        config.language = os.getenv("EVIDENCE_LANGUAGE")

    # LLM env var overrides (track env-sourced keys)
    _env_llm_map = {
        "ANTHROPIC_API_KEY": "anthropic_api_key",
        "ANTHROPIC_MODEL": "anthropic_model",
        "OPENAI_API_KEY": "openai_api_key",
        "OPENAI_MODEL": "openai_model",
        "GOOGLE_API_KEY": "google_api_key",
        "GEMINI_API_KEY": "google_api_key",
        "GOOGLE_MODEL": "google_model",
        "EVIDENCE_LLM_PROVIDER": "provider",
    }
    for env_var, attr in _env_llm_map.items():
        val = os.getenv(env_var)
        if val:
            setattr(config.llm, attr, val)
            config._env_sourced_keys.add(attr)

    validate_config(config)
    return config


def save_config(config: EvidenceConfig) -> None:
    """Save configuration to file.

    API key fields that were sourced from environment variables are written
    as empty strings so that secrets are not persisted to disk.
    """
    CONFIG_DIR.mkdir(parents=True, exist_ok=True)

    env_sourced = getattr(config, "_env_sourced_keys", set())

    llm_section = {
        "provider": config.llm.provider,
        "anthropic_api_key": config.llm.anthropic_api_key,
        "anthropic_model": config.llm.anthropic_model,
        "openai_api_key": config.llm.openai_api_key,
        "openai_model": config.llm.openai_model,
        "google_api_key": config.llm.google_api_key,
        "google_model": config.llm.google_model,
        "temperature": config.llm.temperature,
        "timeout": config.llm.timeout,
    }
    for key in ("anthropic_api_key", "openai_api_key", "google_api_key"):
        if key in env_sourced:
            llm_section[key] = ""

    data = {
        "llm": llm_section,
        "search": {
            "collections": list(config.search.collections),
            "timeout": config.search.timeout,
        },
        "web": {
            "enabled": config.web.enabled,
            "base_url": config.web.base_url,
            "language": config.web.language,
            "categories": config.web.categories,
            "safesearch": config.web.safesearch,
            "max_results": config.web.max_results,
            "timeout": config.web.timeout,
            "crawl_top": config.web.crawl_top,
            "crawl_timeout": config.web.crawl_timeout,
            "crawl_max_chars": config.web.crawl_max_chars,
        },
        "retriever": {
            "prior_research_timeout": config.retriever.prior_research_timeout,
            "retry_delay": config.retriever.retry_delay,
            "max_retries": config.retriever.max_retries,
            "mmr_lambda": config.retriever.mmr_lambda,
            "max_per_domain": config.retriever.max_per_domain,
            "max_sources": config.retriever.max_sources,
        },
        "grounding": {
            "max_ungrounded_ratio": config.grounding.max_ungrounded_ratio,
            "min_citations": config.grounding.min_citations,
            "min_overlap_ratio": config.grounding.min_overlap_ratio,
        },
        "language": config.language,
    }

    with open(CONFIG_PATH, "w") as f:
        json.dump(data, f, indent=2)

    # Set secure permissions
    CONFIG_PATH.chmod(0o600)
