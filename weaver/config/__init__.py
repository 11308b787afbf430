"""
Fiction Weaver Configuration Module
Service and governance settings loaded from the environment.
"""

from .settings import (
    LangfuseSettings,
    RedisSettings,
    SchedulerOptions,
    SupabaseSettings,
    WeaverSettings,
    create_settings_from_env,
)

__all__ = [
    "LangfuseSettings",
    "RedisSettings",
    "SchedulerOptions",
    "SupabaseSettings",
    "WeaverSettings",
    "create_settings_from_env",
]
