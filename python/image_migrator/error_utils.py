"""
Error types for the image migrator.

Every error carries actionable guidance (suggested fixes and context) so that a
failed item can be diagnosed from the log without re-running with more
verbosity.
"""

from enum import Enum
from typing import Any, Dict, List, Optional


class ErrorCategory(Enum):
    """Categories of errors for better error handling"""

    CONNECTION = "connection"
    CONFIGURATION = "configuration"
    DISCOVERY = "discovery"
    MANIFEST = "manifest"
    COPY = "copy"
    STATE = "state"
    RATE_LIMIT = "rate_limit"
    NOT_FOUND = "not_found"
    UNKNOWN = "unknown"


class ActionableError(Exception):
    """Exception with actionable guidance for users"""

    def __init__(
        self,
        message: str,
        category: ErrorCategory = ErrorCategory.UNKNOWN,
        suggestions: Optional[List[str]] = None,
        details: Optional[Dict[str, Any]] = None,
    ):
        """Initialize actionable error

        Args:
            message: Primary error message
            category: Error category for classification
            suggestions: List of suggested fixes
            details: Additional context information
        """
        self.message = message
        self.category = category
        self.suggestions = suggestions or []
        self.details = details or {}
        super().__init__(self.format_message())

    def format_message(self) -> str:
        """Format the complete error message with suggestions"""
        lines = [f"❌ {self.message}"]

        if self.suggestions:
            lines.append("\n💡 Suggested fixes:")
            for i, suggestion in enumerate(self.suggestions, 1):
                lines.append(f"   {i}. {suggestion}")

        if self.details:
            lines.append("\n📋 Additional details:")
            for key, value in self.details.items():
                lines.append(f"   {key}: {value}")

        return "\n".join(lines)


class ConfigurationError(ActionableError):
    """Malformed or missing configuration. Fatal before any registry call."""

    def __init__(self, message: str, suggestions: Optional[List[str]] = None, details: Optional[Dict] = None):
        super().__init__(message, ErrorCategory.CONFIGURATION, suggestions, details)


class StateCorruptionError(ActionableError):
    """The persisted migration state cannot be parsed. Never reset silently."""

    def __init__(self, path: str, reason: str):
        self.path = path
        self.reason = reason
        super().__init__(
            message=f"Migration state file {path} is unreadable: {reason}",
            category=ErrorCategory.STATE,
            suggestions=[
                f"Inspect {path} and repair the JSON by hand",
                "Restore the state file from a backup if one exists",
                "Move the file aside to start over (every tag will be inspected again)",
            ],
            details={"state_file": path, "reason": reason},
        )


class RegistryError(ActionableError):
    """Base class for failures reported by a registry client."""

    def __init__(
        self,
        message: str,
        reference: str = "",
        category: ErrorCategory = ErrorCategory.CONNECTION,
        suggestions: Optional[List[str]] = None,
        stderr: str = "",
    ):
        self.reference = reference
        self.stderr = stderr
        details = {"reference": reference}
        if stderr:
            details["stderr"] = stderr.strip()
        super().__init__(message, category, suggestions, details)


class RegistryUnavailableError(RegistryError):
    """The registry could not be reached or returned an unexpected failure."""

    def __init__(self, reference: str, stderr: str = "", reason: str = ""):
        suggestions = [
            f"Verify the registry in {reference} is reachable from this host",
            "Check network connectivity and firewall rules",
            "Verify credentials with 'skopeo login' for the registry host",
        ]
        if "timed out" in reason.lower() or "timeout" in stderr.lower():
            suggestions.insert(1, "Increase retry.timeout in the configuration")
        super().__init__(
            message=f"Registry operation failed for {reference}{': ' + reason if reason else ''}",
            reference=reference,
            category=ErrorCategory.CONNECTION,
            suggestions=suggestions,
            stderr=stderr,
        )


class ManifestNotFoundError(RegistryError):
    """No manifest exists at the reference. Never retried."""

    def __init__(self, reference: str, stderr: str = ""):
        super().__init__(
            message=f"No manifest found at {reference}",
            reference=reference,
            category=ErrorCategory.NOT_FOUND,
            stderr=stderr,
        )


class RateLimitedError(RegistryError):
    """The registry throttled the request."""

    def __init__(self, reference: str, retry_after: Optional[float] = None, stderr: str = ""):
        self.retry_after = retry_after
        suggestions = [
            "Lower skopeo.rate_limit.requests_per_second in the configuration",
            "Wait before re-running; completed work is not repeated",
            "Authenticate against the registry to get a higher pull quota",
        ]
        if retry_after:
            suggestions.insert(0, f"Wait {retry_after:.1f} seconds before retrying")
        super().__init__(
            message=f"Rate limit exceeded for {reference}",
            reference=reference,
            category=ErrorCategory.RATE_LIMIT,
            suggestions=suggestions,
            stderr=stderr,
        )


class DiscoveryError(ActionableError):
    """Listing or inspecting failed for one repository or tag."""

    def __init__(self, repository: str, operation: str, cause: Exception, tag: Optional[str] = None):
        self.repository = repository
        self.tag = tag
        self.operation = operation
        self.cause = cause
        target = f"{repository}:{tag}" if tag else repository
        details = {"repository": repository, "operation": operation, "error": getattr(cause, "message", str(cause))}
        if tag:
            details["tag"] = tag
        super().__init__(
            message=f"Discovery failed for {target} during {operation}",
            category=ErrorCategory.DISCOVERY,
            suggestions=["The item is skipped for this run and retried on the next one"],
            details=details,
        )


class UnrecognizedManifestError(ActionableError):
    """The manifest media type is not one the migrator understands."""

    def __init__(self, repository: str, tag: str, media_type: Optional[str]):
        self.repository = repository
        self.tag = tag
        self.media_type = media_type
        super().__init__(
            message=f"Unrecognized manifest mediaType '{media_type}' for {repository}:{tag}",
            category=ErrorCategory.MANIFEST,
            details={"repository": repository, "tag": tag, "media_type": media_type},
        )


class CopyError(ActionableError):
    """A copy failed after the client's retries were exhausted."""

    def __init__(self, source_ref: str, target_ref: str, cause: Exception):
        self.source_ref = source_ref
        self.target_ref = target_ref
        self.cause = cause
        super().__init__(
            message=f"Failed to copy {source_ref} to {target_ref}",
            category=ErrorCategory.COPY,
            suggestions=["The item is marked 'error' and retried on the next run"],
            details={"source": source_ref, "target": target_ref, "error": getattr(cause, "message", str(cause))},
        )


def create_config_error(field: str, value: Any, reason: str) -> ConfigurationError:
    """Create actionable error for an invalid configuration value"""
    suggestions = [
        f"Check the '{field}' entry in the configuration file",
        "Compare with config-example.yaml for the expected format",
    ]

    if "pattern" in field.lower():
        suggestions.insert(1, "Tag patterns are Python regular expressions; escape literal dots as '\\\\.'")
    elif "host" in field.lower():
        suggestions.insert(1, "Hosts look like hostname[:port] without a scheme")
    elif "delay" in field.lower() or "timeout" in field.lower():
        suggestions.insert(1, "Time values must be positive numbers")

    return ConfigurationError(
        message=f"Configuration error: Invalid value for '{field}'",
        suggestions=suggestions,
        details={"field": field, "value": value, "reason": reason},
    )
