"""Job-search tool surface for AutoApply."""

from src.autoapply.core.job_types import format_salary

from .jsearch import clear_search_cache, format_location, search_jobs

__all__ = [
    "clear_search_cache",
    "format_location",
    "format_salary",
    "search_jobs",
]
