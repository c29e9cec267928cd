#!/usr/bin/env python3
"""
Configuration Manager for the image migrator

This module handles loading and validating the migration configuration from a
YAML (or JSON) file and environment variables.
"""

import os
import re
import shutil
from dataclasses import dataclass, field
from pathlib import Path
from typing import Any, Dict, List, Optional, Tuple

import yaml

from image_migrator.error_utils import ConfigurationError, create_config_error
from image_migrator.logging_utils import get_logger

logger = get_logger(__name__)

ON_RATE_LIMIT_CHOICES = ("continue", "abort")

_COMPONENT = r"[a-z0-9]+(?:(?:[._]|__|-+)[a-z0-9]+)*"
REPOSITORY_NAME_RE = re.compile(rf"^{_COMPONENT}(?:/{_COMPONENT})*$")

PODMAN_AUTH_FILE = "~/.config/containers/auth.json"
DOCKER_AUTH_FILE = "~/.docker/config.json"


@dataclass(frozen=True)
class RegistryConfig:
    host: str
    username: Optional[str] = None
    tls_verify: bool = True


@dataclass(frozen=True)
class MigrationPlanEntry:
    """One repository to migrate, from the ``migration_plan`` section."""

    source_repo: str
    target_repo: Optional[str] = None
    tag_patterns: Tuple[str, ...] = (".*",)
    _compiled: Tuple[Any, ...] = field(default=(), init=False, repr=False, compare=False)

    def __post_init__(self):
        object.__setattr__(self, "_compiled", tuple(re.compile(p) for p in self.tag_patterns))

    @property
    def resolved_target_repo(self) -> str:
        return self.target_repo or self.source_repo

    def matches(self, tag: str) -> bool:
        """True if any pattern matches somewhere in the tag."""
        return any(pattern.search(tag) for pattern in self._compiled)


class ConfigManager:
    """Manages configuration for one migration"""

    def __init__(self, config_file: str, validate: bool = True):
        """Initialize ConfigManager

        Args:
            config_file: Path to the configuration file (YAML or JSON)
            validate: If True, validate configuration on initialization

        Raises:
            ConfigurationError: if the file is missing, unparseable or invalid
        """
        self.config_file = os.path.abspath(os.path.expanduser(config_file))
        self.config = self._load_config()
        self._plan: Optional[List[MigrationPlanEntry]] = None

        if validate:
            self.validate_config()

    def _load_config(self) -> Dict[str, Any]:
        """Load configuration from file with defaults"""
        default_config = {
            "container_registries": {
                "source": {"host": "", "username": None, "tls_verify": True},
                "target": {"host": "", "username": None, "tls_verify": True},
            },
            "container_engine_auth_file": None,
            "state_file": None,
            "migration_plan": {},
            "retry": {
                "max_retries": 3,
                "initial_delay": 1.0,
                "max_delay": 60.0,
                "exponential_base": 2.0,
                "jitter": True,
                "timeout": 1800,  # Timeout for skopeo calls in seconds; copies can be slow
            },
            "skopeo": {
                "rate_limit": {
                    "enabled": True,
                    "requests_per_second": 2.0,
                    "burst_size": 5,
                },
            },
            "migration": {
                "verify_target_digest": False,
                "on_rate_limit": "continue",
            },
        }

        if not os.path.exists(self.config_file):
            raise ConfigurationError(
                f"Config file {self.config_file} not found",
                suggestions=["Pass the configuration with -c/--config", "Start from config-example.yaml"],
            )

        try:
            with open(self.config_file, "r") as f:
                user_config = yaml.safe_load(f) or {}
        except (OSError, yaml.YAMLError) as e:
            raise ConfigurationError(
                f"{self.config_file}: file cannot be parsed as YAML/JSON",
                details={"error": str(e)},
            )

        if not isinstance(user_config, dict):
            raise ConfigurationError(f"{self.config_file}: top level must be a mapping")
        return self._merge_config(default_config, user_config)

    def _merge_config(self, default: Dict[str, Any], user: Dict[str, Any], prefix: str = "") -> Dict[str, Any]:
        """Recursively merge user config with defaults

        A section left empty (``retry:`` with no value) keeps its defaults.

        Raises:
            ConfigurationError: if a section is given something other than a mapping
        """
        result = default.copy()
        for key, value in user.items():
            if key in result and isinstance(result[key], dict):
                if value is None:
                    continue
                if not isinstance(value, dict):
                    raise create_config_error(f"{prefix}{key}", value, "must be a mapping")
                result[key] = self._merge_config(result[key], value, f"{prefix}{key}.")
            else:
                result[key] = value
        return result

    # Registry configuration
    def _registry(self, side: str) -> Dict[str, Any]:
        registries = self.config.get("container_registries") or {}
        return registries.get(side) or {}

    def get_source_host(self) -> str:
        """Get source registry host from environment or config"""
        return os.environ.get("SOURCE_REGISTRY_HOST") or self._registry("source").get("host") or ""

    def get_target_host(self) -> str:
        """Get target registry host from environment or config"""
        return os.environ.get("TARGET_REGISTRY_HOST") or self._registry("target").get("host") or ""

    def get_source_username(self) -> Optional[str]:
        return self._registry("source").get("username") or None

    def get_target_username(self) -> Optional[str]:
        return self._registry("target").get("username") or None

    def get_source_tls_verify(self) -> bool:
        return bool(self._registry("source").get("tls_verify", True))

    def get_target_tls_verify(self) -> bool:
        return bool(self._registry("target").get("tls_verify", True))

    def get_source_registry(self) -> RegistryConfig:
        return RegistryConfig(self.get_source_host(), self.get_source_username(), self.get_source_tls_verify())

    def get_target_registry(self) -> RegistryConfig:
        return RegistryConfig(self.get_target_host(), self.get_target_username(), self.get_target_tls_verify())

    def get_auth_file(self) -> Optional[str]:
        """Container engine auth file used by skopeo.

        Priority: env REGISTRY_AUTH_FILE -> config container_engine_auth_file ->
        podman's auth.json when podman is installed -> docker's config.json when
        docker is installed -> None (skopeo defaults).
        """
        configured = os.environ.get("REGISTRY_AUTH_FILE") or self.config.get("container_engine_auth_file")
        if configured:
            return os.path.expanduser(configured)
        if shutil.which("podman"):
            return os.path.expanduser(PODMAN_AUTH_FILE)
        if shutil.which("docker"):
            return os.path.expanduser(DOCKER_AUTH_FILE)
        return None

    # State configuration
    def get_state_file(self) -> str:
        """Path of the migration state file (defaults to <config file>.state)"""
        configured = os.environ.get("MIGRATION_STATE_FILE") or self.config.get("state_file")
        if configured:
            path = Path(os.path.expanduser(configured))
            if not path.is_absolute():
                path = Path(self.config_file).parent / path
            return str(path)
        return f"{self.config_file}.state"

    # Migration plan
    def get_migration_plan(self) -> List[MigrationPlanEntry]:
        """Plan entries in configuration order.

        Raises:
            ConfigurationError: if an entry is malformed
        """
        if self._plan is None:
            self._plan = [self._parse_plan_entry(repo, spec) for repo, spec in self._raw_plan().items()]
        return self._plan

    def get_plan_entry(self, source_repo: str) -> Optional[MigrationPlanEntry]:
        for entry in self.get_migration_plan():
            if entry.source_repo == source_repo:
                return entry
        return None

    def get_target_repo(self, source_repo: str) -> str:
        """Target repository for a source repository (itself when unmapped)."""
        entry = self.get_plan_entry(source_repo)
        return entry.resolved_target_repo if entry else source_repo

    def _raw_plan(self) -> Dict[str, Any]:
        plan = self.config.get("migration_plan")
        if not isinstance(plan, dict):
            raise create_config_error("migration_plan", plan, "must be a mapping of source repository to options")
        return plan

    @staticmethod
    def _parse_plan_entry(source_repo: str, spec: Any) -> MigrationPlanEntry:
        spec = spec or {}
        if not isinstance(spec, dict):
            raise create_config_error(f"migration_plan.{source_repo}", spec, "must be a mapping")

        target_repo = spec.get("target_repo") or None
        if target_repo is not None and not isinstance(target_repo, str):
            raise create_config_error(f"migration_plan.{source_repo}.target_repo", target_repo, "must be a string")

        # tag_jq_filters is the name used by older configuration files
        patterns = spec.get("tag_patterns", spec.get("tag_jq_filters"))
        if patterns is None:
            patterns = [".*"]
        if isinstance(patterns, str):
            patterns = [patterns]
        if not isinstance(patterns, list) or not patterns or not all(isinstance(p, str) for p in patterns):
            raise create_config_error(
                f"migration_plan.{source_repo}.tag_patterns", patterns, "must be a non-empty list of strings"
            )

        for pattern in patterns:
            try:
                re.compile(pattern)
            except re.error as e:
                raise create_config_error(f"migration_plan.{source_repo}.tag_patterns", pattern, str(e))

        return MigrationPlanEntry(source_repo=source_repo, target_repo=target_repo, tag_patterns=tuple(patterns))

    # Retry configuration
    def get_max_retries(self) -> int:
        """Get max retries from config, with type coercion"""
        retries = self.config.get("retry", {}).get("max_retries", 3)
        try:
            return int(retries)
        except (ValueError, TypeError):
            raise create_config_error("retry.max_retries", retries, "must be an integer")

    def get_retry_initial_delay(self) -> float:
        """Get initial retry delay from config, with type coercion"""
        delay = self.config.get("retry", {}).get("initial_delay", 1.0)
        try:
            return float(delay)
        except (ValueError, TypeError):
            raise create_config_error("retry.initial_delay", delay, "must be a number")

    def get_retry_max_delay(self) -> float:
        """Get max retry delay from config, with type coercion"""
        delay = self.config.get("retry", {}).get("max_delay", 60.0)
        try:
            return float(delay)
        except (ValueError, TypeError):
            raise create_config_error("retry.max_delay", delay, "must be a number")

    def get_retry_exponential_base(self) -> float:
        """Get exponential base for retry backoff from config, with type coercion"""
        base = self.config.get("retry", {}).get("exponential_base", 2.0)
        try:
            return float(base)
        except (ValueError, TypeError):
            raise create_config_error("retry.exponential_base", base, "must be a number")

    def get_retry_jitter(self) -> bool:
        """Get whether to use jitter in retry delays from config"""
        return bool(self.config.get("retry", {}).get("jitter", True))

    def get_retry_timeout(self) -> int:
        """Get timeout for skopeo calls from config, with type coercion"""
        timeout = self.config.get("retry", {}).get("timeout", 1800)
        try:
            return int(timeout)
        except (ValueError, TypeError):
            raise create_config_error("retry.timeout", timeout, "must be an integer")

    # Skopeo configuration
    def get_skopeo_rate_limit_enabled(self) -> bool:
        """Get whether rate limiting is enabled for Skopeo operations"""
        return bool(self.config.get("skopeo", {}).get("rate_limit", {}).get("enabled", True))

    def get_skopeo_rate_limit_rps(self) -> float:
        """Get requests per second for Skopeo rate limiting"""
        rps = self.config.get("skopeo", {}).get("rate_limit", {}).get("requests_per_second", 2.0)
        try:
            return float(rps)
        except (ValueError, TypeError):
            raise create_config_error("skopeo.rate_limit.requests_per_second", rps, "must be a number")

    def get_skopeo_rate_limit_burst(self) -> int:
        """Get burst size for Skopeo rate limiting"""
        burst = self.config.get("skopeo", {}).get("rate_limit", {}).get("burst_size", 5)
        try:
            return int(burst)
        except (ValueError, TypeError):
            raise create_config_error("skopeo.rate_limit.burst_size", burst, "must be an integer")

    # Migration behaviour
    def get_verify_target_digest(self) -> bool:
        """Require the target manifest digest to match the source before skipping a copy"""
        return bool(self.config.get("migration", {}).get("verify_target_digest", False))

    def get_on_rate_limit(self) -> str:
        """What to do when a copy is still rate limited after retries: continue or abort"""
        return str(self.config.get("migration", {}).get("on_rate_limit", "continue")).lower()

    def validate_config(self) -> None:
        """Validate configuration values

        Raises:
            ConfigurationError: If configuration is invalid
        """
        errors = []
        warnings = []

        for side, host in (("source", self.get_source_host()), ("target", self.get_target_host())):
            if not host or not host.strip():
                errors.append(f"container_registries.{side}.host is required and cannot be empty")
            elif "://" in host:
                errors.append(f"container_registries.{side}.host '{host}' must not include a scheme")

        if self.get_source_host() and self.get_source_host() == self.get_target_host():
            warnings.append("source and target registries are the same host")

        try:
            plan = self.get_migration_plan()
        except ConfigurationError as e:
            errors.append(e.message + (f" ({e.details.get('reason')})" if e.details.get("reason") else ""))
            plan = []
        else:
            if not plan:
                errors.append("migration_plan must list at least one source repository")

        for entry in plan:
            if not self._is_valid_repository_name(entry.source_repo):
                errors.append(f"Repository name '{entry.source_repo}' contains invalid characters")
            if entry.target_repo and not self._is_valid_repository_name(entry.target_repo):
                errors.append(f"Target repository name '{entry.target_repo}' contains invalid characters")

        try:
            max_retries = self.get_max_retries()
            if max_retries < 0:
                errors.append(f"retry.max_retries must be a non-negative integer, got: {max_retries}")
            elif max_retries > 10:
                warnings.append(f"max_retries is very high ({max_retries}), operations may take a long time")

            initial_delay = self.get_retry_initial_delay()
            max_delay = self.get_retry_max_delay()
            if initial_delay < 0:
                errors.append(f"retry.initial_delay must be a non-negative number, got: {initial_delay}")
            if max_delay < initial_delay:
                errors.append(f"retry.max_delay ({max_delay}) must be >= retry.initial_delay ({initial_delay})")

            exponential_base = self.get_retry_exponential_base()
            if exponential_base < 1.0:
                errors.append(f"retry.exponential_base must be >= 1.0, got: {exponential_base}")

            timeout = self.get_retry_timeout()
            if timeout < 1:
                errors.append(f"retry.timeout must be a positive integer (seconds), got: {timeout}")

            if self.get_skopeo_rate_limit_enabled():
                if self.get_skopeo_rate_limit_rps() <= 0:
                    errors.append("skopeo.rate_limit.requests_per_second must be positive")
                if self.get_skopeo_rate_limit_burst() < 1:
                    errors.append("skopeo.rate_limit.burst_size must be at least 1")
        except ConfigurationError as e:
            errors.append(f"{e.details.get('field')}: {e.details.get('reason')}")

        if self.get_on_rate_limit() not in ON_RATE_LIMIT_CHOICES:
            errors.append(
                f"migration.on_rate_limit must be one of {', '.join(ON_RATE_LIMIT_CHOICES)}, "
                f"got: {self.get_on_rate_limit()}"
            )

        for warning in warnings:
            logger.warning(f"Configuration warning: {warning}")

        if errors:
            error_msg = "Configuration validation failed:\n  " + "\n  ".join(errors)
            logger.error(error_msg)
            raise ConfigurationError(
                "Configuration validation failed",
                suggestions=errors,
                details={"config_file": self.config_file},
            )

    @staticmethod
    def _is_valid_repository_name(name: str) -> bool:
        """Repository names: lowercase path components separated by slashes"""
        return bool(REPOSITORY_NAME_RE.match(name))
