"""
Health check utilities for verifying prerequisites before a migration.

This module provides checks for:
- skopeo being installed
- credentials being present in the container engine auth file for every
  registry that is configured with a username

The migrator never logs in itself; a failed credential check tells the
operator which login command to run.
"""

import base64
import binascii
import json
import shutil
from dataclasses import dataclass
from typing import Dict, List, Optional

from image_migrator.config_manager import RegistryConfig
from image_migrator.logging_utils import get_logger

logger = get_logger(__name__)


@dataclass
class HealthCheckResult:
    """Result of a health check"""

    name: str
    status: bool  # True if healthy, False if unhealthy
    message: str
    optional: bool = False
    details: Optional[Dict] = None


class HealthChecker:
    """Performs prerequisite checks for a migration"""

    def __init__(self, config_manager):
        self.config_manager = config_manager
        self.logger = get_logger(self.__class__.__name__)

    def check_skopeo_installed(self) -> HealthCheckResult:
        path = shutil.which("skopeo")
        if path:
            return HealthCheckResult(name="skopeo", status=True, message=f"skopeo found at {path}")
        return HealthCheckResult(
            name="skopeo",
            status=False,
            message="'skopeo' utility not found",
            details={"suggestions": ["Install skopeo: https://github.com/containers/skopeo/blob/main/install.md"]},
        )

    @staticmethod
    def _auth_entry_user(auth_data: Dict, host: str) -> Optional[str]:
        """Username stored for a host in an auth file, if any."""
        entry = (auth_data.get("auths") or {}).get(host)
        if not entry:
            return None
        encoded = entry.get("auth")
        if not encoded:
            return None
        try:
            decoded = base64.b64decode(encoded).decode("utf-8")
        except (binascii.Error, UnicodeDecodeError):
            return None
        return decoded.split(":", 1)[0]

    def check_registry_credentials(self, registry: RegistryConfig, role: str) -> HealthCheckResult:
        """Check that the auth file holds credentials for ``registry.username``."""
        name = f"{role}_credentials"
        if not registry.username:
            return HealthCheckResult(
                name=name, status=True, optional=True, message=f"No username configured for {registry.host}"
            )

        auth_file = self.config_manager.get_auth_file()
        login_hint = f"skopeo login {registry.host} -u {registry.username}" + (
            f" --authfile {auth_file}" if auth_file else ""
        )

        auth_data = {}
        if auth_file:
            try:
                with open(auth_file, "r") as f:
                    auth_data = json.load(f) or {}
            except FileNotFoundError:
                auth_data = {}
            except (OSError, json.JSONDecodeError) as e:
                self.logger.debug(f"Could not read auth file {auth_file}: {e}")
                auth_data = {}

        user = self._auth_entry_user(auth_data, registry.host)
        if user == registry.username:
            return HealthCheckResult(
                name=name, status=True, optional=True, message=f"Found credentials for {user} on {registry.host}"
            )

        return HealthCheckResult(
            name=name,
            status=False,
            optional=True,
            message=f"No stored credentials for {registry.username} on {registry.host}",
            details={"auth_file": auth_file, "suggestions": [f"Run: {login_hint}"]},
        )

    def run_all_checks(self, skip_optional: bool = False) -> List[HealthCheckResult]:
        results = [self.check_skopeo_installed()]
        if not skip_optional:
            results.append(self.check_registry_credentials(self.config_manager.get_source_registry(), "source"))
            results.append(self.check_registry_credentials(self.config_manager.get_target_registry(), "target"))

        for result in results:
            if result.status:
                self.logger.info(f"✓ {result.name}: {result.message}")
            elif result.optional:
                self.logger.warning(f"⚠ {result.name}: {result.message}")
            else:
                self.logger.error(f"✗ {result.name}: {result.message}")
            for suggestion in (result.details or {}).get("suggestions", []):
                self.logger.info(f"    {suggestion}")
        return results

    def all_required_passed(self, results: List[HealthCheckResult]) -> bool:
        return all(result.status for result in results if not result.optional)
