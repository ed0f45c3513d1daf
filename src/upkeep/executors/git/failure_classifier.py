"""Deterministic git failure classification for retry and remediation decisions."""

from __future__ import annotations

from dataclasses import dataclass
from enum import Enum

from upkeep.executors.git.runner import GitCommandError


class GitFailureClass(str, Enum):
    """Why a git network operation failed."""

    AUTH = "auth"
    NOT_FOUND = "not_found"
    TRANSIENT = "transient"
    NON_RETRYABLE = "non_retryable"


_AUTH_PATTERNS: tuple[str, ...] = (
    "permission denied (publickey",
    "host key verification failed",
    "authentication failed",
    "could not read username",
    "could not read password",
    "terminal prompts disabled",
    "invalid username or password",
    "the requested url returned error: 403",
    "the requested url returned error: 401",
)
_NOT_FOUND_PATTERNS: tuple[str, ...] = (
    "repository not found",
    "does not appear to be a git repository",
    "the requested url returned error: 404",
    "couldn't find remote ref",
    "no such file or directory",
)
_TRANSIENT_PATTERNS: tuple[str, ...] = (
    "could not resolve host",
    "could not resolve hostname",
    "temporary failure in name resolution",
    "connection timed out",
    "operation timed out",
    "connection reset",
    "connection refused",
    "network is unreachable",
    "the remote end hung up unexpectedly",
    "early eof",
    "rpc failed",
    "the requested url returned error: 5",
    "gnutls",
    "ssl_error",
)


@dataclass(slots=True)
class GitFailureClassification:
    """Normalized failure classification result."""

    failure_class: GitFailureClass
    reason_code: str
    matched_pattern: str | None

    @property
    def retryable(self) -> bool:
        return self.failure_class == GitFailureClass.TRANSIENT

    def remediation(self, url: str) -> str | None:
        if self.failure_class == GitFailureClass.AUTH:
            if url.startswith(("http://", "https://")):
                return (
                    f"Configure a credential helper or token with access to {url} "
                    "(git config --global credential.helper ...)."
                )
            return (
                f"Check your SSH key has access to {url}: is it loaded "
                "(ssh-add -l, ssh-add ~/.ssh/id_ed25519) and registered with the host?"
            )
        if self.failure_class == GitFailureClass.NOT_FOUND:
            return f"Check the repository URL {url} exists and you have access to it."
        if self.failure_class == GitFailureClass.TRANSIENT:
            return "Check your network connection and try again."
        return None


def classify_git_failure(
    *,
    operation: str,
    exit_code: int | None,
    stdout: str,
    stderr: str,
) -> GitFailureClassification:
    """Classify a failed git network operation (clone, fetch, submodule update)."""

    haystack = _normalize_text(stdout=stdout, stderr=stderr)

    pattern = _first_match(haystack, _AUTH_PATTERNS)
    if pattern is not None:
        return GitFailureClassification(
            failure_class=GitFailureClass.AUTH,
            reason_code=f"{operation}_auth",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _NOT_FOUND_PATTERNS)
    if pattern is not None:
        return GitFailureClassification(
            failure_class=GitFailureClass.NOT_FOUND,
            reason_code=f"{operation}_not_found",
            matched_pattern=pattern,
        )

    pattern = _first_match(haystack, _TRANSIENT_PATTERNS)
    if pattern is not None:
        return GitFailureClassification(
            failure_class=GitFailureClass.TRANSIENT,
            reason_code=f"{operation}_transient",
            matched_pattern=pattern,
        )

    return GitFailureClassification(
        failure_class=GitFailureClass.NON_RETRYABLE,
        reason_code=f"{operation}_non_retryable" if exit_code is not None else "spawn_failure",
        matched_pattern=None,
    )


def classify_error(operation: str, error: GitCommandError) -> GitFailureClassification:
    return classify_git_failure(
        operation=operation,
        exit_code=error.returncode,
        stdout=error.stdout,
        stderr=error.stderr,
    )


def is_transient(error: Exception) -> bool:
    """Retry predicate: only transient git command failures are worth another attempt."""

    if not isinstance(error, GitCommandError):
        return False
    return classify_error("retry", error).retryable


def _normalize_text(*, stdout: str, stderr: str) -> str:
    return f"{stderr}\n{stdout}".lower()


def _first_match(haystack: str, patterns: tuple[str, ...]) -> str | None:
    for pattern in patterns:
        if pattern in haystack:
            return pattern
    return None
