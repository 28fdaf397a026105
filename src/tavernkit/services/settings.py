"""Settings dataclasses and persistence helpers."""

from __future__ import annotations

import json
import logging
import os
from dataclasses import asdict, dataclass, field, fields, replace
from pathlib import Path
from typing import Any, Dict, List, Mapping

from cryptography.fernet import Fernet, InvalidToken

__all__ = [
    "Settings",
    "BackendSettings",
    "ContextSettings",
    "InstructSettings",
    "ReasoningSettings",
    "ToolSettings",
    "SettingsStore",
    "SecretVault",
    "DEFAULT_STORY_STRING",
    "redact_secret",
]

LOGGER = logging.getLogger(__name__)
_SETTINGS_DIR = Path.home() / ".tavernkit"
_DEFAULT_SETTINGS_PATH = _SETTINGS_DIR / "settings.json"
_SETTINGS_VERSION = 1
_ENV_OVERRIDES: Mapping[str, str] = {
    "TAVERNKIT_API_KEY": "backend.api_key",
    "TAVERNKIT_BASE_URL": "backend.base_url",
    "TAVERNKIT_MODEL": "backend.model",
    "TAVERNKIT_BACKEND": "backend.family",
}
_BOOL_ENV_OVERRIDES: Mapping[str, str] = {
    "TAVERNKIT_STREAM": "backend.stream",
    "TAVERNKIT_INSTRUCT": "instruct.enabled",
    "TAVERNKIT_DEBUG_LOGGING": "debug_logging",
}
_INT_ENV_OVERRIDES: Mapping[str, str] = {
    "TAVERNKIT_MAX_CONTEXT": "backend.max_context",
    "TAVERNKIT_RESPONSE_LENGTH": "backend.response_length",
}
_FLOAT_ENV_OVERRIDES: Mapping[str, str] = {
    "TAVERNKIT_TEMPERATURE": "backend.temperature",
    "TAVERNKIT_REQUEST_TIMEOUT": "backend.request_timeout",
}
_TRUE_VALUES = {"1", "true", "yes", "on"}
_API_KEY_FIELD = "api_key_ciphertext"

DEFAULT_STORY_STRING = (
    "{{#if system}}{{system}}\n{{/if}}"
    "{{#if wiBefore}}{{wiBefore}}\n{{/if}}"
    "{{#if description}}{{description}}\n{{/if}}"
    "{{#if personality}}{{char}}'s personality: {{personality}}\n{{/if}}"
    "{{#if scenario}}Scenario: {{scenario}}\n{{/if}}"
    "{{#if wiAfter}}{{wiAfter}}\n{{/if}}"
    "{{#if persona}}{{persona}}\n{{/if}}"
)


@dataclass(slots=True)
class BackendSettings:
    """Connection and sampling settings for the active backend."""

    family: str = "openai"
    base_url: str = "https://api.openai.com/v1"
    api_key: str = ""
    model: str = "gpt-4o-mini"
    tier: str = ""
    max_context: int = 8_192
    max_context_unlocked: bool = False
    response_length: int = 300
    stream: bool = True
    n: int = 1
    temperature: float = 1.0
    request_timeout: float = 90.0
    max_retries: int = 3


@dataclass(slots=True)
class ContextSettings:
    """Prompt assembly templates and toggles."""

    story_string: str = DEFAULT_STORY_STRING
    main_prompt: str = "Write {{char}}'s next reply in a fictional chat between {{char}} and {{user}}."
    example_separator: str = "***"
    chat_start: str = "***"
    pin_examples: bool = False
    names_behavior: str = "default"
    names_as_stop_strings: bool = True
    custom_stop_strings: List[str] = field(default_factory=list)
    trim_sentences: bool = False
    single_line: bool = False
    new_chat_prompt: str = "[Start a new Chat]"
    new_group_chat_prompt: str = "[Start a new group chat. Group members: {{group}}]"
    new_example_chat_prompt: str = "[Example Chat]"
    continue_nudge_prompt: str = (
        "[Continue your last message without repeating its original content.]"
    )
    continue_prefill: bool = False
    impersonation_prompt: str = (
        "[Write your next reply from the point of view of {{user}}, using the chat history so far "
        "as a guideline for the writing style of {{user}}. Don't write as {{char}} or system. "
        "Don't describe actions of {{char}}.]"
    )
    send_if_empty: str = ""
    cfg_negative_prompt: str = ""
    wi_format: str = "{0}"
    streaming_fps: int = 30


@dataclass(slots=True)
class InstructSettings:
    """Instruct-mode sequence template."""

    enabled: bool = False
    preset: str = "Alpaca"
    input_sequence: str = "### Instruction:"
    input_suffix: str = ""
    output_sequence: str = "### Response:"
    output_suffix: str = ""
    system_sequence: str = ""
    system_suffix: str = ""
    last_output_sequence: str = ""
    stop_sequence: str = ""
    story_string_prefix: str = ""
    story_string_suffix: str = ""
    wrap: bool = True
    macro: bool = True
    names_behavior: str = "force"
    sequences_as_stop_strings: bool = True


@dataclass(slots=True)
class ReasoningSettings:
    auto_parse: bool = False
    prefix: str = "<think>\n"
    suffix: str = "\n</think>"
    add_to_prompts: bool = False
    separator: str = "\n\n"


@dataclass(slots=True)
class ToolSettings:
    enabled: bool = True
    max_recursion_depth: int = 5


_SECTIONS: Mapping[str, type] = {
    "backend": BackendSettings,
    "context": ContextSettings,
    "instruct": InstructSettings,
    "reasoning": ReasoningSettings,
    "tools": ToolSettings,
}


@dataclass(slots=True)
class Settings:
    """User-configurable settings persisted between sessions."""

    backend: BackendSettings = field(default_factory=BackendSettings)
    context: ContextSettings = field(default_factory=ContextSettings)
    instruct: InstructSettings = field(default_factory=InstructSettings)
    reasoning: ReasoningSettings = field(default_factory=ReasoningSettings)
    tools: ToolSettings = field(default_factory=ToolSettings)
    debug_logging: bool = False


def redact_secret(secret: str | None) -> str:
    """Return a short hint such as ``sk-...9f2c`` for display."""

    if not secret:
        return ""
    if len(secret) <= 8:
        return "*" * len(secret)
    return f"{secret[:3]}...{secret[-4:]}"


class SecretVault:
    """Encrypts and decrypts sensitive strings with a Fernet key stored on disk."""

    name = "fernet"

    def __init__(self, *, key_path: Path | None = None) -> None:
        self._key_path = key_path or (_SETTINGS_DIR / "settings.key")
        self._fernet: Fernet | None = None

    def encrypt(self, secret: str) -> str:
        if not secret:
            return ""
        token = self._get_fernet().encrypt(secret.encode("utf-8"))
        return f"{self.name}:{token.decode('ascii')}"

    def decrypt(self, token: str | None) -> str:
        if not token:
            return ""
        prefix, _, payload = token.partition(":")
        if prefix != self.name or not payload:
            raise ValueError(f"Unknown secret token prefix {prefix!r}")
        try:
            raw = self._get_fernet().decrypt(payload.encode("ascii"))
        except InvalidToken as exc:
            raise ValueError("Invalid Fernet token") from exc
        return raw.decode("utf-8")

    def _get_fernet(self) -> Fernet:
        if self._fernet is None:
            self._fernet = Fernet(self._load_or_create_key())
        return self._fernet

    def _load_or_create_key(self) -> bytes:
        path = self._key_path
        path.parent.mkdir(parents=True, exist_ok=True)
        if path.exists():
            return path.read_bytes().strip()
        key = Fernet.generate_key()
        tmp_path = path.with_suffix(".tmp")
        tmp_path.write_bytes(key)
        if os.name != "nt":  # pragma: no cover - depends on OS
            os.chmod(tmp_path, 0o600)
        tmp_path.replace(path)
        return key


class SettingsStore:
    """Persistence adapter for :class:`Settings`."""

    def __init__(self, path: Path | None = None, *, vault: SecretVault | None = None) -> None:
        self._path = path or _DEFAULT_SETTINGS_PATH
        self._vault = vault or SecretVault(key_path=self._path.with_suffix(".key"))

    @property
    def path(self) -> Path:
        return self._path

    @property
    def vault(self) -> SecretVault:
        return self._vault

    def load(self, *, overrides: Mapping[str, Any] | None = None) -> Settings:
        """Load settings from disk, applying CLI/environment overrides when present.

        Override keys address nested sections with dots, e.g. ``backend.model``.
        """

        payload = self._read_payload()
        settings = Settings()
        if payload:
            ciphertext = payload.pop(_API_KEY_FIELD, None)
            sections: Dict[str, Any] = {}
            for name, section_type in _SECTIONS.items():
                sections[name] = self._build_section(section_type, payload.get(name))
            settings = Settings(debug_logging=bool(payload.get("debug_logging", False)), **sections)
            api_key = self._decrypt_api_key(ciphertext)
            if api_key:
                settings.backend.api_key = api_key
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="CLI")
        return self._apply_env_overrides(settings)

    def save(self, settings: Settings) -> Path:
        """Persist settings to disk with atomic file writes."""

        payload = asdict(settings)
        api_key = payload["backend"].pop("api_key", "") or ""
        if api_key:
            payload[_API_KEY_FIELD] = self._vault.encrypt(api_key)
        payload["version"] = _SETTINGS_VERSION
        body = json.dumps(payload, indent=2, sort_keys=True)
        self._path.parent.mkdir(parents=True, exist_ok=True)
        tmp_path = self._path.with_suffix(".tmp")
        tmp_path.write_text(body, encoding="utf-8")
        tmp_path.replace(self._path)
        LOGGER.debug("Settings saved to %s (api key %s)", self._path, redact_secret(api_key) or "unset")
        return self._path

    def _read_payload(self) -> Dict[str, Any]:
        if not self._path.exists():
            return {}
        try:
            payload = json.loads(self._path.read_text(encoding="utf-8"))
        except json.JSONDecodeError as exc:
            LOGGER.warning("Settings file %s is not valid JSON: %s", self._path, exc)
            return {}
        return payload if isinstance(payload, dict) else {}

    @staticmethod
    def _build_section(section_type: type, payload: Any) -> Any:
        if not isinstance(payload, Mapping):
            return section_type()
        allowed = {item.name for item in fields(section_type)}
        unknown = sorted(set(payload) - allowed)
        if unknown:
            LOGGER.warning("Ignoring unknown %s settings: %s", section_type.__name__, unknown)
        return section_type(**{key: value for key, value in payload.items() if key in allowed})

    def _decrypt_api_key(self, ciphertext: str | None) -> str:
        if not ciphertext:
            return ""
        try:
            return self._vault.decrypt(ciphertext)
        except ValueError as exc:
            LOGGER.warning("Unable to decrypt API key: %s", exc)
            return ""

    def _apply_overrides(
        self,
        settings: Settings,
        overrides: Mapping[str, Any],
        *,
        source: str = "runtime",
    ) -> Settings:
        applied: List[str] = []
        for key, value in overrides.items():
            if value is None:
                continue
            section_name, _, field_name = key.rpartition(".")
            if not section_name:
                if field_name in {item.name for item in fields(Settings)} and field_name not in _SECTIONS:
                    settings = replace(settings, **{field_name: value})
                    applied.append(key)
                continue
            section = getattr(settings, section_name, None)
            if section is None or field_name not in {item.name for item in fields(section)}:
                LOGGER.debug("Ignoring unknown %s override %s", source, key)
                continue
            setattr(settings, section_name, replace(section, **{field_name: value}))
            applied.append(key)
        if applied:
            LOGGER.debug("Applied %s settings overrides: %s", source, sorted(applied))
        return settings

    def _apply_env_overrides(self, settings: Settings) -> Settings:
        overrides: Dict[str, Any] = {}
        for env_name, field_name in _ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value
        for env_name, field_name in _BOOL_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is not None:
                overrides[field_name] = value.strip().lower() in _TRUE_VALUES
        for env_name, field_name in _INT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = int(value, 10)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid integer", env_name, value)
        for env_name, field_name in _FLOAT_ENV_OVERRIDES.items():
            value = os.environ.get(env_name)
            if value is None:
                continue
            try:
                overrides[field_name] = float(value)
            except ValueError:
                LOGGER.warning("Environment override %s=%s is not a valid float", env_name, value)
        if overrides:
            settings = self._apply_overrides(settings, overrides, source="environment")
        return settings
