"""Core runtime utilities for AutoApply."""

from .application_queue import ApplicationQueue, QueueSettings, compute_backoff_ms, get_queue_settings
from .applications import ApplicationHistory
from .config_loader import (
    clear_config_cache,
    get_application_queue_config,
    get_database_path,
    get_discovery_config,
    get_executor_path,
    get_job_search_config,
    get_provider_config,
    load_config,
)
from .db import Database
from .job_store import JobStore
from .job_types import ApplyResult, DiscoveredJob, DiscoveryConfig, DiscoveryProgress
from .llm_client import call_llm, get_completion
from .log import get_logger
from .session_registry import SessionRegistry
from .user_profiles import UserProfileStore

__all__ = [
    "ApplicationHistory",
    "ApplicationQueue",
    "ApplyResult",
    "Database",
    "DiscoveredJob",
    "DiscoveryConfig",
    "DiscoveryProgress",
    "JobStore",
    "QueueSettings",
    "SessionRegistry",
    "UserProfileStore",
    "call_llm",
    "clear_config_cache",
    "compute_backoff_ms",
    "get_application_queue_config",
    "get_completion",
    "get_database_path",
    "get_discovery_config",
    "get_executor_path",
    "get_job_search_config",
    "get_logger",
    "get_provider_config",
    "get_queue_settings",
    "load_config",
]
