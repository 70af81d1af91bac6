"""
Remote repository configuration and URL helpers.

Every reused repository gets its remote reconfigured before any of its local
state is trusted: the URL of a root can change between builds.
"""

import logging
from pathlib import Path
from typing import Optional, Tuple
from urllib.parse import urlsplit, urlunsplit

from ..git.command import GIT_WITH_CREDENTIALS_SECTION, GIT_WITH_HTTP_PASSWORD_AUTH, GitCommandRunner, GitVersion
from ..git.errors import PolicyViolationError
from .models import AUTH_ANONYMOUS, AUTH_PRIVATE_KEY_FILE, RepositorySpec, url_scheme


logger = logging.getLogger(__name__)

DEFAULT_FETCH_REFSPEC = "+refs/heads/*:refs/remotes/origin/*"

HTTP_SCHEMES = ("http", "https")


def file_uri(path: Path) -> str:
    """Return the file:// URI git accepts for a local repository."""
    return Path(path).resolve().as_uri()


def split_username(url: str) -> Tuple[str, Optional[str]]:
    """
    Remove the user info of an http(s) URL.

    Returns:
        (url without user info, username or None)
    """
    if url_scheme(url) not in HTTP_SCHEMES:
        return url, None
    parts = urlsplit(url)
    if not parts.username:
        return url, None
    host = parts.hostname or ""
    if parts.port:
        host = f"{host}:{parts.port}"
    return urlunsplit((parts.scheme, host, parts.path, parts.query, parts.fragment)), parts.username


def inject_username(url: str, username: str) -> str:
    """Add username to an http(s) URL which has no user info yet."""
    if url_scheme(url) not in HTTP_SCHEMES:
        return url
    parts = urlsplit(url)
    if parts.username:
        return url
    return urlunsplit((parts.scheme, f"{username}@{parts.netloc}", parts.path, parts.query, parts.fragment))


def is_anonymous_git_with_username(url: str) -> bool:
    return url_scheme(url) == "git" and bool(urlsplit(url).username)


def validate_auth(spec: RepositorySpec, git_version: GitVersion) -> None:
    """
    Check that the authentication method can be used with the root's transport.

    Raises:
        PolicyViolationError: If the combination is not supported
    """
    scheme = spec.scheme
    auth = spec.auth
    if scheme == "git" or auth.method == AUTH_ANONYMOUS:
        return
    if auth.uses_password:
        if scheme not in HTTP_SCHEMES:
            raise PolicyViolationError(
                f"Unsupported authentication method '{auth.method}' for '{scheme}' protocol, "
                f"use an http(s) URL for root {spec.name}"
            )
        if git_version < GIT_WITH_HTTP_PASSWORD_AUTH:
            raise PolicyViolationError(
                f"Password authentication requires git {GIT_WITH_HTTP_PASSWORD_AUTH}, found git {git_version}"
            )
    elif auth.method == AUTH_PRIVATE_KEY_FILE and scheme != "ssh":
        raise PolicyViolationError(
            f"Private key authentication is only supported for ssh URLs, root {spec.name} uses '{scheme}'"
        )


class RemoteConfigurator:
    """Writes remote.origin.* and credential.* settings of a repository."""

    def __init__(self, runner: GitCommandRunner, exclude_username_from_http_urls: bool = True):
        self._runner = runner
        self._exclude_username = exclude_username_from_http_urls

    def configure(self, repo_dir: Path, fetch_url: str, push_url: Optional[str] = None) -> None:
        """
        Point origin of the repository at fetch_url (and push_url if different).

        Args:
            repo_dir: Working directory or bare mirror
            fetch_url: Fetch URL of the root
            push_url: Push URL of the root, None if it equals the fetch URL
        """
        url, user = fetch_url, None
        if self._exclude_username and not self._runner.version() < GIT_WITH_CREDENTIALS_SECTION:
            url, user = split_username(fetch_url)

        self._runner.run(["config", "remote.origin.url", url], cwd=repo_dir)
        self._runner.run(["config", "--unset-all", "credential.username"], cwd=repo_dir, tolerate_failure=True)
        if user:
            self._runner.run(["config", f"credential.{url}.username", user], cwd=repo_dir)
        self._runner.run(["config", "remote.origin.fetch", DEFAULT_FETCH_REFSPEC], cwd=repo_dir)

        if push_url and push_url != fetch_url:
            self._runner.run(["config", "remote.origin.pushurl", push_url], cwd=repo_dir)
        else:
            self._runner.run(["config", "--unset-all", "remote.origin.pushurl"], cwd=repo_dir, tolerate_failure=True)

    def read_remote_url(self, repo_dir: Path) -> Optional[str]:
        result = self._runner.run(["config", "--get", "remote.origin.url"], cwd=repo_dir, tolerate_failure=True)
        url = result.stdout.strip()
        return url if result.ok and url else None
