"""Layered TOML configuration with typed dataclass mapping.

Priority stack (highest wins):
    1. Hardcoded defaults (ChatLLMConfig())
    2. config/default.toml (bundled)
    3. ~/.config/chatllm/config.toml (user config)
    4. CLI overrides (dot-notation)
"""

from __future__ import annotations

import tomllib
from dataclasses import dataclass, field
from importlib import resources
from pathlib import Path
from typing import Any

from chatllm.catalog import ModelDescriptor, build_catalog

# ---------------------------------------------------------------------------
# Typed config tree -- all frozen, slots for memory efficiency
# ---------------------------------------------------------------------------


@dataclass(frozen=True, slots=True)
class GeneralConfig:
    """Top-level general settings."""

    data_dir: str = "~/.local/share/chatllm"
    models_dirname: str = "LLM_Models"
    settings_filename: str = "settings.json"
    log_level: str = "warning"


@dataclass(frozen=True, slots=True)
class DownloadConfig:
    """Model download transport settings."""

    user_agent: str = "Mozilla/5.0"
    timeout_seconds: float = 60.0
    connect_timeout_seconds: float = 10.0
    progress_step: float = 0.01
    staging_dirname: str = ".staging"


@dataclass(frozen=True, slots=True)
class InferenceConfig:
    """Model loading and sampling settings."""

    system_prompt: str = "You are a helpful assistant. Answer concisely and directly."
    n_ctx: int = 2048
    n_threads: int = 4
    n_gpu_layers: int = 0
    max_tokens: int = 512
    temperature: float = 0.7
    top_p: float = 0.9
    top_k: int = 40
    repeat_penalty: float = 1.1


@dataclass(frozen=True, slots=True)
class CatalogConfig:
    """Known models. Empty means the built-in catalog."""

    models: tuple[ModelDescriptor, ...] = ()


@dataclass(frozen=True, slots=True)
class ChatLLMConfig:
    """Root configuration node."""

    general: GeneralConfig = field(default_factory=GeneralConfig)
    download: DownloadConfig = field(default_factory=DownloadConfig)
    inference: InferenceConfig = field(default_factory=InferenceConfig)
    catalog: CatalogConfig = field(default_factory=CatalogConfig)

    @property
    def data_dir(self) -> Path:
        return Path(self.general.data_dir).expanduser()

    @property
    def models_dir(self) -> Path:
        return self.data_dir / self.general.models_dirname

    @property
    def staging_dir(self) -> Path:
        return self.data_dir / self.download.staging_dirname

    @property
    def settings_path(self) -> Path:
        return self.data_dir / self.general.settings_filename

    @property
    def models(self) -> tuple[ModelDescriptor, ...]:
        """Configured catalog, falling back to the built-in list."""
        return self.catalog.models or build_catalog()


# ---------------------------------------------------------------------------
# Config loading helpers
# ---------------------------------------------------------------------------


def _deep_merge(base: dict[str, Any], override: dict[str, Any]) -> dict[str, Any]:
    """Recursively merge override into base. Lists replace, dicts recurse."""
    merged = dict(base)
    for key, value in override.items():
        if key in merged and isinstance(merged[key], dict) and isinstance(value, dict):
            merged[key] = _deep_merge(merged[key], value)
        else:
            merged[key] = value
    return merged


def _coerce_value(s: str) -> bool | int | float | str:
    """Coerce a CLI string value to its typed equivalent."""
    if s.lower() == "true":
        return True
    if s.lower() == "false":
        return False
    try:
        return int(s)
    except ValueError:
        pass
    try:
        return float(s)
    except ValueError:
        pass
    return s


def _apply_dot_override(raw: dict[str, Any], dot_key: str, str_value: str) -> None:
    """Apply a dot-notation CLI override into the raw config dict.

    Example: _apply_dot_override(raw, "inference.n_ctx", "4096")
    sets raw["inference"]["n_ctx"] = 4096
    """
    parts = dot_key.split(".")
    target = raw
    for part in parts[:-1]:
        if part not in target:
            target[part] = {}
        target = target[part]
    target[parts[-1]] = _coerce_value(str_value)


def _load_toml_file(path: Path) -> dict[str, Any]:
    """Load and parse a TOML file, returning empty dict if not found."""
    if not path.is_file():
        return {}
    with open(path, "rb") as f:
        return tomllib.load(f)


def _load_bundled_toml(filename: str) -> dict[str, Any]:
    """Load a TOML file bundled in the config/ directory relative to project root."""
    current = Path(__file__).resolve().parent
    # Source checkout: src/chatllm -> src -> project root holding config/
    for _ in range(5):
        config_path = current / "config" / filename
        if config_path.is_file():
            with open(config_path, "rb") as f:
                return tomllib.load(f)
        current = current.parent

    # Fallback: try importlib.resources for installed packages
    try:
        config_pkg = resources.files("chatllm").joinpath(f"../../config/{filename}")
        if hasattr(config_pkg, "read_bytes"):
            data = config_pkg.read_bytes()
            return tomllib.loads(data.decode("utf-8"))
    except (FileNotFoundError, TypeError):
        pass

    return {}


def _build_config(raw: dict[str, Any]) -> ChatLLMConfig:
    """Map a merged raw dict to the typed ChatLLMConfig tree."""
    catalog_raw = dict(raw.get("catalog", {}))
    models = build_catalog(catalog_raw.get("models", [])) if catalog_raw.get("models") else ()

    return ChatLLMConfig(
        general=GeneralConfig(**raw.get("general", {})),
        download=DownloadConfig(**raw.get("download", {})),
        inference=InferenceConfig(**raw.get("inference", {})),
        catalog=CatalogConfig(models=models),
    )


def load_config(
    user_config_path: Path | None = None,
    cli_overrides: dict[str, str] | None = None,
    data_dir: Path | str | None = None,
) -> ChatLLMConfig:
    """Load configuration with the 4-layer priority stack.

    Args:
        user_config_path: Path to user config TOML. Defaults to
            ~/.config/chatllm/config.toml.
        cli_overrides: Dot-notation key->value pairs from CLI flags.
        data_dir: Replaces ``general.data_dir`` after all other layers. Kept
            as a string, so names like ``2024`` are not coerced.

    Returns:
        Fully resolved, typed ChatLLMConfig.

    Raises:
        TypeError: A config table contains an unknown key.
        ValueError: The catalog is malformed.
    """
    # Layer 1: hardcoded defaults (implicit via dataclass defaults)
    # Layer 2: bundled default.toml
    raw = _load_bundled_toml("default.toml")

    # Layer 3: user config
    if user_config_path is None:
        user_config_path = Path.home() / ".config" / "chatllm" / "config.toml"
    raw = _deep_merge(raw, _load_toml_file(user_config_path))

    # Layer 4: CLI overrides
    if cli_overrides:
        for dot_key, str_value in cli_overrides.items():
            _apply_dot_override(raw, dot_key, str_value)
    if data_dir is not None:
        raw.setdefault("general", {})["data_dir"] = str(data_dir)

    return _build_config(raw)
