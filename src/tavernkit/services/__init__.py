"""Configuration and telemetry services."""

from .settings import (
    BackendSettings,
    ContextSettings,
    InstructSettings,
    ReasoningSettings,
    SecretVault,
    Settings,
    SettingsStore,
    ToolSettings,
)
from .telemetry import InMemoryTelemetrySink, emit, register_event_listener, unregister_event_listener

__all__ = [
    "Settings",
    "BackendSettings",
    "ContextSettings",
    "InstructSettings",
    "ReasoningSettings",
    "ToolSettings",
    "SettingsStore",
    "SecretVault",
    "InMemoryTelemetrySink",
    "emit",
    "register_event_listener",
    "unregister_event_listener",
]
