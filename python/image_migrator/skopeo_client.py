"""
Skopeo client for registry operations.

This module implements the RegistryClient interface on top of the skopeo
command line tool, with client-side rate limiting, bounded retries and
credential redaction in logs.
"""

import json
import logging
import subprocess
import time
from threading import Lock
from typing import List, Optional

from image_migrator.error_utils import ManifestNotFoundError, RateLimitedError, RegistryUnavailableError
from image_migrator.registry_client import MultiArch, RegistryClient, image_url
from image_migrator.retry_utils import RetryPolicy, is_not_found, is_rate_limited, retry_with_backoff


def classify_skopeo_failure(reference: str, stderr: str) -> Exception:
    """Map skopeo's stderr to the registry error kinds."""
    error_str = stderr or ""
    if is_rate_limited(error_str):
        return RateLimitedError(reference, stderr=stderr)
    if is_not_found(error_str):
        return ManifestNotFoundError(reference, stderr=stderr)
    return RegistryUnavailableError(reference, stderr=stderr)


class SkopeoClient(RegistryClient):
    """Standardized Skopeo client for registry operations."""

    def __init__(self, config_manager, retry_policy: Optional[RetryPolicy] = None):
        """Initialize SkopeoClient.

        Args:
            config_manager: ConfigManager instance for accessing configuration
            retry_policy: Override for the retry policy built from configuration
        """
        self.config_manager = config_manager
        self.retry_policy = retry_policy or RetryPolicy.from_config(config_manager)
        self.timeout = config_manager.get_retry_timeout()
        self.auth_file = config_manager.get_auth_file()

        # Registry hosts -> TLS verification
        self._tls_verify = {
            config_manager.get_source_host(): config_manager.get_source_tls_verify(),
            config_manager.get_target_host(): config_manager.get_target_tls_verify(),
        }

        # Rate limiting
        self.rate_limit_enabled = config_manager.get_skopeo_rate_limit_enabled()
        self.rate_limit_rps = config_manager.get_skopeo_rate_limit_rps()
        self.rate_limit_burst = config_manager.get_skopeo_rate_limit_burst()
        self._rate_limiter_lock = Lock()

        if self.rate_limit_enabled:
            self._init_rate_limiter()

    def _init_rate_limiter(self):
        """Initialize token bucket rate limiter."""
        self._tokens = float(self.rate_limit_burst)
        self._last_update = time.time()
        self._token_refill_rate = self.rate_limit_rps

    def _acquire_rate_limit_token(self):
        """Acquire a token from the rate limiter, waiting if necessary."""
        if not self.rate_limit_enabled:
            return

        with self._rate_limiter_lock:
            now = time.time()
            elapsed = now - self._last_update

            # Refill tokens based on elapsed time
            self._tokens = min(self.rate_limit_burst, self._tokens + elapsed * self._token_refill_rate)
            self._last_update = now

            if self._tokens >= 1.0:
                self._tokens -= 1.0
                return

            wait_time = (1.0 - self._tokens) / self._token_refill_rate
            if wait_time > 0:
                logging.debug(f"Rate limiting: waiting {wait_time:.2f}s (tokens: {self._tokens:.2f})")
                time.sleep(wait_time)
                self._tokens = 0.0
                self._last_update = time.time()

    def _tls_flag(self, host: str, prefix: str = "") -> str:
        verify = self._tls_verify.get(host, True)
        return f"--{prefix}tls-verify={'true' if verify else 'false'}"

    @staticmethod
    def _host_of(ref: str) -> str:
        """Registry host of a ``docker://host/repo:tag`` reference."""
        return ref.split("://", 1)[-1].split("/", 1)[0]

    def _auth_args(self, prefix: str = "") -> List[str]:
        if self.auth_file:
            return [f"--{prefix}authfile", self.auth_file]
        return []

    @staticmethod
    def _redact_command_for_logging(cmd: List[str]) -> List[str]:
        """Return a copy of the command with any credentials redacted."""
        redacted = list(cmd)

        creds_flags = ("--creds", "--src-creds", "--dest-creds")
        token_flags = ("--password", "--registry-token", "--src-registry-token", "--dest-registry-token")

        for i, token in enumerate(redacted):
            if token in creds_flags and i + 1 < len(redacted):
                value = redacted[i + 1]
                if isinstance(value, str) and ":" in value:
                    user, _ = value.split(":", 1)
                    redacted[i + 1] = f"{user}:****"
            if token in token_flags and i + 1 < len(redacted):
                redacted[i + 1] = "****"

        return redacted

    def _run(self, cmd: List[str], reference: str) -> str:
        """Run one skopeo command with rate limiting and retries.

        Raises:
            RegistryError: once the retry policy gives up
        """
        log_cmd = " ".join(self._redact_command_for_logging(cmd))

        @retry_with_backoff(self.retry_policy)
        def _execute():
            self._acquire_rate_limit_token()
            logging.debug(f"Running: {log_cmd}")
            try:
                result = subprocess.run(cmd, capture_output=True, text=True, check=True, timeout=self.timeout)
                return result.stdout
            except subprocess.TimeoutExpired:
                logging.error(f"Skopeo command timed out after {self.timeout}s: {log_cmd}")
                raise RegistryUnavailableError(reference, reason=f"timed out after {self.timeout}s")
            except subprocess.CalledProcessError as e:
                error = classify_skopeo_failure(reference, e.stderr)
                if not isinstance(error, ManifestNotFoundError):
                    logging.debug(f"Skopeo command failed: {log_cmd}: {(e.stderr or '').strip()}")
                raise error
            except OSError as e:
                raise RegistryUnavailableError(reference, reason=str(e))

        return _execute()

    def list_tags(self, host: str, repository: str) -> List[str]:
        """List all tags for a repository."""
        reference = image_url(host, repository)
        cmd = ["skopeo", "list-tags", self._tls_flag(host)] + self._auth_args() + [reference]

        output = self._run(cmd, reference)
        try:
            tags_data = json.loads(output)
        except json.JSONDecodeError as e:
            raise RegistryUnavailableError(reference, reason=f"unparseable tag list ({e})")
        return tags_data.get("Tags") or []

    def inspect_manifest(self, host: str, repository: str, tag: str) -> str:
        """Fetch the raw manifest for a tag. This call is rate-limited by most registries."""
        reference = image_url(host, repository, tag)
        cmd = ["skopeo", "inspect", "--raw", self._tls_flag(host)] + self._auth_args() + [reference]
        return self._run(cmd, reference)

    def copy_image(
        self,
        src_ref: str,
        dest_ref: str,
        preserve_digests: bool = True,
        multi_arch: MultiArch = MultiArch.NONE,
    ) -> bool:
        """Copy an image from source to destination registry.

        Args:
            src_ref: Full source image reference (e.g. "docker://registry:5000/repo:tag")
            dest_ref: Full destination image reference (e.g. "docker://mirror.example.com/repo:tag")
            preserve_digests: Fail rather than change manifest digests during the copy
            multi_arch: MultiArch.ALL to copy every platform of an index

        Returns:
            True if the copy succeeded

        Raises:
            RegistryError: if the copy failed after retries
        """
        cmd = ["skopeo", "copy", self._tls_flag(self._host_of(src_ref), "src-")]
        cmd.extend(self._auth_args("src-"))
        cmd.append(self._tls_flag(self._host_of(dest_ref), "dest-"))
        cmd.extend(self._auth_args("dest-"))
        if preserve_digests:
            cmd.append("--preserve-digests")
        if multi_arch is not MultiArch.NONE:
            cmd.extend(["--multi-arch", multi_arch.value])
        cmd.extend([src_ref, dest_ref])

        self._run(cmd, dest_ref)
        return True
