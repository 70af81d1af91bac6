"""
Immutable per-build inputs of the synchronization pipeline.

RepositorySpec describes one VCS root of a build: where to fetch from, what
to check out and how to treat the working directory. Checkout rules decide
which part of the repository lands where.
"""

from dataclasses import dataclass, field
from typing import List, Optional, Tuple
from urllib.parse import urlsplit

from ..config import CLEAN_ALL_UNTRACKED, CLEAN_ON_BRANCH_CHANGE, SUBMODULES_CHECKOUT
from ..git.errors import PolicyViolationError


AUTH_ANONYMOUS = "anonymous"
AUTH_PASSWORD = "password"
AUTH_ACCESS_TOKEN = "access-token"
AUTH_PRIVATE_KEY_DEFAULT = "private-key-default"
AUTH_PRIVATE_KEY_FILE = "private-key-file"
AUTH_METHODS = (AUTH_ANONYMOUS, AUTH_PASSWORD, AUTH_ACCESS_TOKEN, AUTH_PRIVATE_KEY_DEFAULT, AUTH_PRIVATE_KEY_FILE)


@dataclass(frozen=True)
class AuthSettings:
    """Authentication method and credentials of a root."""

    method: str = AUTH_ANONYMOUS
    username: Optional[str] = None
    password: Optional[str] = None
    private_key_path: Optional[str] = None

    def __post_init__(self):
        if self.method not in AUTH_METHODS:
            raise PolicyViolationError(f"Unsupported authentication method: {self.method}")

    @property
    def uses_password(self) -> bool:
        return self.method in (AUTH_PASSWORD, AUTH_ACCESS_TOKEN)


def normalize_rule_path(path: str) -> str:
    path = path.strip().replace("\\", "/").strip("/")
    return "" if path == "." else path


def is_under(prefix: str, path: str) -> bool:
    """True if path equals prefix or lies below it ("" is the root)."""
    return prefix == "" or path == prefix or path.startswith(prefix + "/")


@dataclass(frozen=True)
class IncludeRule:
    """Maps repository path `from_path` to checkout path `to_path`."""

    from_path: str
    to_path: str


@dataclass(frozen=True)
class CheckoutRules:
    """
    Include rules `from => to` and exclude rules `-:from`.

    With no rules at all the whole repository goes to the checkout directory.
    """

    includes: Tuple[IncludeRule, ...] = (IncludeRule("", ""),)
    excludes: Tuple[str, ...] = ()

    @classmethod
    def parse(cls, text: str) -> "CheckoutRules":
        """
        Parse rules, one per line.

        Accepted forms: `+:from => to`, `from => to`, `+:path`, `path`,
        `-:path`. A `.` path denotes the repository root.
        """
        includes: List[IncludeRule] = []
        excludes: List[str] = []
        for raw in text.splitlines():
            line = raw.strip()
            if not line or line.startswith("#"):
                continue
            if line.startswith("-:"):
                excludes.append(normalize_rule_path(line[2:]))
                continue
            if line.startswith("+:"):
                line = line[2:]
            if "=>" in line:
                from_path, to_path = line.split("=>", 1)
            else:
                from_path = to_path = line
            includes.append(IncludeRule(normalize_rule_path(from_path), normalize_rule_path(to_path)))
        if not includes:
            includes.append(IncludeRule("", ""))
        return cls(tuple(includes), tuple(excludes))

    def is_whole_repository(self) -> bool:
        return len(self.includes) == 1 and self.includes[0].from_path == ""

    def maps_paths_onto_themselves(self) -> bool:
        return all(rule.from_path == rule.to_path for rule in self.includes)

    def map_path(self, path: str) -> Optional[str]:
        """Return where a repository path is checked out, None if it is not."""
        path = normalize_rule_path(path)
        matching = [rule for rule in self.includes if is_under(rule.from_path, path)]
        if not matching:
            return None
        rule = max(matching, key=lambda r: len(r.from_path))
        for exclude in self.excludes:
            if is_under(exclude, path) and len(exclude) >= len(rule.from_path):
                return None
        rest = path[len(rule.from_path):].lstrip("/")
        if not rule.to_path:
            return rest
        return f"{rule.to_path}/{rest}" if rest else rule.to_path

    def __str__(self) -> str:
        lines = [f"+:{r.from_path or '.'} => {r.to_path or '.'}" for r in self.includes]
        lines.extend(f"-:{e}" for e in self.excludes)
        return "\n".join(lines)


@dataclass(frozen=True)
class SiblingRoot:
    """Another root of the same build checked out into the shared checkout directory."""

    name: str
    rules: CheckoutRules = field(default_factory=CheckoutRules)


@dataclass(frozen=True)
class RepositorySpec:
    """
    What one root of a build must look like after synchronization.

    `branch` is a full or short ref name; `revision` is the commit sha the
    working tree must end at.
    """

    fetch_url: str
    revision: str
    branch: str
    push_url: Optional[str] = None
    auth: AuthSettings = field(default_factory=AuthSettings)
    checkout_rules: CheckoutRules = field(default_factory=CheckoutRules)
    submodule_policy: str = SUBMODULES_CHECKOUT
    clean_policy: str = CLEAN_ON_BRANCH_CHANGE
    clean_files_policy: str = CLEAN_ALL_UNTRACKED
    root_name: str = ""
    sibling_roots: Tuple[SiblingRoot, ...] = ()
    upper_limit_revision: Optional[str] = None

    @property
    def name(self) -> str:
        return self.root_name or self.fetch_url

    @property
    def effective_push_url(self) -> str:
        return self.push_url or self.fetch_url

    @property
    def scheme(self) -> str:
        return url_scheme(self.fetch_url)


def url_scheme(url: str) -> str:
    """Return the transport of a git url; scp-like `user@host:path` is ssh, plain paths are file."""
    if "://" in url:
        return urlsplit(url).scheme.lower()
    if ":" in url.split("/", 1)[0] and not _looks_like_windows_path(url):
        return "ssh"
    return "file"


def _looks_like_windows_path(url: str) -> bool:
    return len(url) > 1 and url[1] == ":" and url[0].isalpha()
