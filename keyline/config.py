"""
Config system - Layered typed configuration with validation.

Merge precedence (later overrides earlier):
defaults < config files (JSON/YAML) < .env file < environment variables < overrides
"""

from typing import Any, Dict, Optional, Type, get_args, get_origin
from dataclasses import dataclass, field, fields, is_dataclass, MISSING
from pathlib import Path
import json
import os
import types

import yaml
from dotenv import dotenv_values


class ConfigError(Exception):
    """Raised when configuration validation fails."""
    pass


class ConfigLoader:
    """
    Loads and merges configuration from multiple sources.

    Environment variables use ``KEYLINE_`` as prefix; a double underscore
    nests, so ``KEYLINE_TOKENS__ACCESS_TOKEN_TTL=600`` becomes
    ``tokens.access_token_ttl = 600``.
    """

    def __init__(self, env_prefix: str = "KEYLINE_"):
        self.env_prefix = env_prefix
        self.config_data: Dict[str, Any] = {}
        # Dotted path -> raw text, for env values later read into str fields
        self._env_strings: Dict[str, str] = {}

    @classmethod
    def load(
        cls,
        paths: Optional[list[str]] = None,
        env_prefix: str = "KEYLINE_",
        env_file: Optional[str] = None,
        overrides: Optional[Dict[str, Any]] = None,
        environ: Optional[Dict[str, str]] = None,
    ) -> "ConfigLoader":
        """
        Load configuration from multiple sources with proper merge strategy.

        Args:
            paths: Config file paths (.json, .yaml or .yml), merged in order
            env_prefix: Prefix for environment variables
            env_file: Path to .env file
            overrides: Manual overrides (highest precedence)
            environ: Environment mapping to read instead of ``os.environ``

        Returns:
            Configured ConfigLoader instance
        """
        loader = cls(env_prefix=env_prefix)

        for path in paths or []:
            loader._load_file(Path(path))

        if env_file:
            loader._load_env_file(env_file)

        loader._load_from_env(os.environ if environ is None else environ)

        if overrides:
            loader._merge_dict(loader.config_data, overrides)

        return loader

    def _load_file(self, path: Path):
        if not path.exists():
            raise ConfigError(f"Config file not found: {path}")

        if path.suffix == ".json":
            self._load_json_file(path)
        elif path.suffix in (".yaml", ".yml"):
            self._load_yaml_file(path)
        else:
            raise ConfigError(f"Unsupported config file type: {path.suffix}")

    def _load_json_file(self, path: Path):
        """Load config from JSON file."""
        with open(path) as f:
            try:
                data = json.load(f)
            except json.JSONDecodeError as exc:
                raise ConfigError(f"Invalid JSON in {path}: {exc}") from exc
            self._merge_dict(self.config_data, data)

    def _load_yaml_file(self, path: Path):
        """Load config from YAML file."""
        with open(path) as f:
            try:
                data = yaml.safe_load(f)
            except yaml.YAMLError as exc:
                raise ConfigError(f"Invalid YAML in {path}: {exc}") from exc
            if data:
                self._merge_dict(self.config_data, data)

    def _load_env_file(self, path: str):
        """Load prefixed keys from a .env file."""
        env_path = Path(path)
        if not env_path.exists():
            return

        for key, value in dotenv_values(env_path).items():
            if value is not None and key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _load_from_env(self, environ):
        """Load config from environment variables."""
        for key, value in environ.items():
            if key.startswith(self.env_prefix):
                self._set_nested(key, value)

    def _set_nested(self, key: str, value: str):
        """Convert KEYLINE_TOKENS__ISSUER to nested dict."""
        key = key[len(self.env_prefix):]
        parts = key.lower().split("__")

        current = self.config_data
        for part in parts[:-1]:
            if not isinstance(current.get(part), dict):
                current[part] = {}
            current = current[part]

        current[parts[-1]] = self._parse_value(value)
        self._env_strings[".".join(parts)] = value

    def _parse_value(self, value: str) -> Any:
        """Parse string value to appropriate type."""
        if value.lower() in ("true", "yes"):
            return True
        if value.lower() in ("false", "no"):
            return False

        try:
            if "." in value:
                return float(value)
            return int(value)
        except ValueError:
            pass

        if value.startswith(("{", "[")):
            try:
                return json.loads(value)
            except json.JSONDecodeError:
                pass

        return value

    def _merge_dict(self, target: dict, source: dict):
        """Deep merge source into target."""
        for key, value in source.items():
            if key in target and isinstance(target[key], dict) and isinstance(value, dict):
                self._merge_dict(target[key], value)
            else:
                target[key] = value

    def get(self, path: str, default: Any = None) -> Any:
        """Get config value by dot-separated path."""
        current = self.config_data

        for part in path.split("."):
            if isinstance(current, dict) and part in current:
                current = current[part]
            else:
                return default

        return current

    def section(self, name: str, config_class: Type):
        """Instantiate a dataclass section from ``config_data[name]``."""
        data = self.get(name, {})
        if not isinstance(data, dict):
            raise ConfigError(f"Config section '{name}' must be a mapping")
        return self._instantiate_dataclass(config_class, data, path=name)

    def _instantiate_dataclass(self, config_class: Type, data: dict, path: str = ""):
        """Instantiate dataclass config with validation."""
        if not is_dataclass(config_class):
            raise ConfigError(f"{config_class.__name__} is not a dataclass")

        known = {f.name for f in fields(config_class)}
        unknown = set(data) - known
        if unknown:
            raise ConfigError(
                f"Unknown config field(s) for {config_class.__name__}: {', '.join(sorted(unknown))}"
            )

        kwargs = {}
        for field_info in fields(config_class):
            field_name = field_info.name

            if field_name in data:
                expected = field_info.type
                value = self._coerce_env_string(
                    data[field_name], expected, f"{path}.{field_name}" if path else field_name
                )
                if not self._check_type(value, expected):
                    raise ConfigError(
                        f"Config field '{field_name}' expected {getattr(expected, '__name__', expected)}, "
                        f"got {type(value).__name__}"
                    )
                kwargs[field_name] = value
            elif field_info.default is not MISSING:
                kwargs[field_name] = field_info.default
            elif field_info.default_factory is not MISSING:
                kwargs[field_name] = field_info.default_factory()
            else:
                raise ConfigError(f"Required config field '{field_name}' not provided")

        instance = config_class(**kwargs)
        validate = getattr(instance, "validate", None)
        if validate is not None:
            validate()
        return instance

    def _coerce_env_string(self, value: Any, expected_type: Type, path: str) -> Any:
        """
        Hand a str field the original text of an env value that parsing
        turned into a number, bool or list (``KEYLINE_TOKENS__ISSUER=2024``).
        """
        raw = self._env_strings.get(path)
        if raw is None or isinstance(value, str):
            return value
        if not self._check_type(raw, expected_type):
            return value
        if self._parse_value(raw) != value:
            return value
        return raw

    def _check_type(self, value: Any, expected_type: Type) -> bool:
        """Basic type checking."""
        origin = get_origin(expected_type)
        if origin is types.UnionType:
            if value is None:
                return True
            return any(self._check_type(value, arg) for arg in get_args(expected_type))

        if expected_type is int:
            return isinstance(value, int) and not isinstance(value, bool)

        return isinstance(value, expected_type)

    def to_dict(self) -> dict:
        return self.config_data


# ============================================================================
# Typed Sections
# ============================================================================

USE_COUNT_POLICIES = ("exchange", "request")
SIGNING_ALGORITHMS = ("RS256", "ES256", "EdDSA")
HASH_ALGORITHMS = ("argon2id", "pbkdf2_sha256")


@dataclass
class TokenSettings:
    issuer: str = "keyline"
    owner_audience: str = "console"
    key_audience: str = "api"
    access_token_ttl: int = 900
    refresh_token_ttl: int = 2592000
    leeway: int = 10
    algorithm: str = "RS256"

    def validate(self):
        if self.algorithm not in SIGNING_ALGORITHMS:
            raise ConfigError(f"tokens.algorithm must be one of {SIGNING_ALGORITHMS}")
        if self.access_token_ttl <= 0 or self.refresh_token_ttl <= 0:
            raise ConfigError("tokens TTLs must be positive")
        if self.leeway < 0:
            raise ConfigError("tokens.leeway must not be negative")


@dataclass
class HashingConfig:
    algorithm: str = "argon2id"
    time_cost: int = 2
    memory_cost: int = 65536
    parallelism: int = 4
    iterations: int = 600000

    def validate(self):
        if self.algorithm not in HASH_ALGORITHMS:
            raise ConfigError(f"hashing.algorithm must be one of {HASH_ALGORITHMS}")
        if min(self.time_cost, self.memory_cost, self.parallelism, self.iterations) < 1:
            raise ConfigError("hashing costs must be positive")


@dataclass
class LimitsConfig:
    """
    ``use_count_policy`` decides when a Use key's use-count is charged:
    ``"exchange"`` once per credential exchange, ``"request"`` also on
    every authenticated request.
    """
    use_count_policy: str = "exchange"
    password_min_length: int = 8

    def validate(self):
        if self.use_count_policy not in USE_COUNT_POLICIES:
            raise ConfigError(f"limits.use_count_policy must be one of {USE_COUNT_POLICIES}")
        if self.password_min_length < 1:
            raise ConfigError("limits.password_min_length must be positive")


@dataclass
class KeylineConfig:
    tokens: TokenSettings = field(default_factory=TokenSettings)
    hashing: HashingConfig = field(default_factory=HashingConfig)
    limits: LimitsConfig = field(default_factory=LimitsConfig)

    @classmethod
    def from_loader(cls, loader: ConfigLoader) -> "KeylineConfig":
        return cls(
            tokens=loader.section("tokens", TokenSettings),
            hashing=loader.section("hashing", HashingConfig),
            limits=loader.section("limits", LimitsConfig),
        )

    @classmethod
    def load(cls, **kwargs) -> "KeylineConfig":
        """Shortcut for ``from_loader(ConfigLoader.load(**kwargs))``."""
        return cls.from_loader(ConfigLoader.load(**kwargs))
