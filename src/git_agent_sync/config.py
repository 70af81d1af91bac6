"""
Configuration for the git synchronization engine.

Settings are grouped into dataclass sections hanging under AgentSyncConfig,
persisted as JSON by AgentConfigManager and overridable through
GIT_AGENT_SYNC_* environment variables.
"""

import json
import logging
import os
from dataclasses import asdict, dataclass, field
from pathlib import Path
from typing import List, Optional


logger = logging.getLogger(__name__)

FETCH_AFTER_BRANCH = "after-branch"
FETCH_BEFORE_BRANCH = "before-branch"
FETCH_ALWAYS = "always"
FETCH_HEADS_MODES = (FETCH_AFTER_BRANCH, FETCH_BEFORE_BRANCH, FETCH_ALWAYS)

CLEAN_ALWAYS = "always"
CLEAN_ON_BRANCH_CHANGE = "on-branch-change"
CLEAN_NEVER = "never"
CLEAN_POLICIES = (CLEAN_ALWAYS, CLEAN_ON_BRANCH_CHANGE, CLEAN_NEVER)

CLEAN_ALL_UNTRACKED = "all-untracked"
CLEAN_NON_IGNORED_ONLY = "non-ignored-only"
CLEAN_IGNORED_ONLY = "ignored-only"
CLEAN_FILES_POLICIES = (CLEAN_ALL_UNTRACKED, CLEAN_NON_IGNORED_ONLY, CLEAN_IGNORED_ONLY)

SUBMODULES_IGNORE = "ignore"
SUBMODULES_CHECKOUT = "checkout"
SUBMODULES_NON_RECURSIVE_CHECKOUT = "non-recursive-checkout"
SUBMODULE_POLICIES = (SUBMODULES_IGNORE, SUBMODULES_CHECKOUT, SUBMODULES_NON_RECURSIVE_CHECKOUT)

DEFAULT_HOME = Path.home() / ".git-agent-sync"


@dataclass
class FetchConfig:
    """Fetch breadth and depth settings."""

    # after-branch | before-branch | always
    fetch_heads_mode: str = FETCH_AFTER_BRANCH
    # Pass --tags to regular (non-shallow) fetches
    fetch_tags: bool = False
    # Fetch the checkout directory with shallow fetches
    use_shallow_clone: bool = False
    # --depth of shallow fetches
    shallow_depth: int = 1
    # --depth of `submodule update` in the direct-shallow variant
    submodules_shallow_depth: int = 1
    # Move usernames of http(s) urls into credential.<url>.username
    exclude_username_from_http_urls: bool = True


@dataclass
class MirrorConfig:
    """Shared local mirror settings."""

    # Base directory holding bare mirrors and their mapping files
    mirrors_dir: str = str(DEFAULT_HOME / "mirrors")
    # Fetch into a shared bare mirror, then check out from it
    use_mirrors: bool = False
    # Point the checkout object store at the mirror instead of copying objects
    use_alternates: bool = False
    # Give every submodule url its own mirror
    use_mirrors_for_submodules: bool = True
    # Surface mirror fetch failures instead of recloning the mirror
    fail_on_clean_checkout: bool = False
    # Unused mirrors older than this are removed by the mirror cleaner
    mirror_expiration_days: int = 7


@dataclass
class CheckoutConfig:
    """Defaults for per-root checkout policies."""

    # Materialize only the paths named in checkout rules
    use_sparse_checkout: bool = False
    # always | on-branch-change | never
    clean_policy: str = CLEAN_ON_BRANCH_CHANGE
    # all-untracked | non-ignored-only | ignored-only
    clean_files_policy: str = CLEAN_ALL_UNTRACKED
    # ignore | checkout | non-recursive-checkout
    submodule_policy: str = SUBMODULES_CHECKOUT
    # Exclude paths of other roots checked out below this one from git clean
    clean_respects_other_roots: bool = True
    # Put the username of the root into http(s) submodule urls without one
    use_main_repo_user_for_submodules: bool = True


@dataclass
class TimeoutsConfig:
    """Idle-output timeouts for git processes, in seconds."""

    # Local operations: checkout, reset, clean, config
    git_local_timeout: int = 300
    # Fetches and submodule updates
    git_fetch_timeout: int = 1800
    # ls-remote while pruning outdated refs
    git_ls_remote_timeout: int = 300
    # git gc run by the idle maintenance task
    git_gc_timeout: int = 3600


@dataclass
class RetryConfig:
    """Retry settings for network operations."""

    # Attempts for every fetch / ls-remote
    remote_operation_attempts: int = 3
    # Wait before attempt N+1 is retry_delays_seconds[min(N-1, len-1)]
    retry_delays_seconds: List[float] = field(default_factory=lambda: [5.0, 10.0, 20.0])


@dataclass
class IdleGcConfig:
    """Background mirror compaction settings."""

    enabled: bool = True
    # Idle time after the last build before compaction may start
    cool_down_minutes: int = 30
    # Minimum time between two compactions of the same mirror
    gc_rate_hours: int = 12
    # How often the scheduler thread wakes up
    check_interval_seconds: int = 60


@dataclass
class AgentSyncConfig:
    """Top-level configuration."""

    git_path: str = "git"
    # Root logger level of the command line, --verbose switches to DEBUG
    log_level: str = "WARNING"
    fetch: Optional[FetchConfig] = None
    mirrors: Optional[MirrorConfig] = None
    checkout: Optional[CheckoutConfig] = None
    timeouts: Optional[TimeoutsConfig] = None
    retry: Optional[RetryConfig] = None
    idle_gc: Optional[IdleGcConfig] = None

    def __post_init__(self):
        if self.fetch is None:
            self.fetch = FetchConfig()
        if self.mirrors is None:
            self.mirrors = MirrorConfig()
        if self.checkout is None:
            self.checkout = CheckoutConfig()
        if self.timeouts is None:
            self.timeouts = TimeoutsConfig()
        if self.retry is None:
            self.retry = RetryConfig()
        if self.idle_gc is None:
            self.idle_gc = IdleGcConfig()


_SECTIONS = {
    "fetch": FetchConfig,
    "mirrors": MirrorConfig,
    "checkout": CheckoutConfig,
    "timeouts": TimeoutsConfig,
    "retry": RetryConfig,
    "idle_gc": IdleGcConfig,
}


def _parse_bool(value: str) -> bool:
    lowered = value.strip().lower()
    if lowered in ("1", "true", "yes", "on"):
        return True
    if lowered in ("0", "false", "no", "off"):
        return False
    raise ValueError(f"not a boolean: {value!r}")


class AgentConfigManager:
    """
    Loads, saves, overrides and validates AgentSyncConfig.

    The configuration file is JSON; a missing file means defaults.
    """

    def __init__(self, config_file_path: Optional[Path] = None):
        """
        Initialize the config manager.

        Args:
            config_file_path: Path of config.json, defaults to ~/.git-agent-sync/config.json
        """
        self.config_file_path = Path(config_file_path or DEFAULT_HOME / "config.json")

    def save_config(self, config: AgentSyncConfig) -> None:
        """
        Save configuration to file.

        Args:
            config: AgentSyncConfig object to save
        """
        self.config_file_path.parent.mkdir(parents=True, exist_ok=True)
        with open(self.config_file_path, "w") as f:
            json.dump(asdict(config), f, indent=2)

    def load_config(self) -> Optional[AgentSyncConfig]:
        """
        Load configuration from file.

        Returns:
            AgentSyncConfig if the file exists, None otherwise

        Raises:
            ValueError: If the configuration file is malformed
        """
        if not self.config_file_path.exists():
            return None

        try:
            with open(self.config_file_path, "r") as f:
                config_dict = json.load(f)

            for name, section_cls in _SECTIONS.items():
                if isinstance(config_dict.get(name), dict):
                    config_dict[name] = section_cls(**config_dict[name])

            return AgentSyncConfig(**config_dict)
        except (json.JSONDecodeError, TypeError) as e:
            raise ValueError(f"Failed to load configuration from {self.config_file_path}: {e}")

    def load_or_default(self) -> AgentSyncConfig:
        """Load the file (or defaults), apply env overrides and validate."""
        config = self.load_config() or AgentSyncConfig()
        config = self.apply_env_overrides(config)
        self.validate_config(config)
        return config

    def apply_env_overrides(self, config: AgentSyncConfig) -> AgentSyncConfig:
        """
        Apply environment variable overrides to configuration.

        Supported environment variables:
        - GIT_AGENT_SYNC_GIT_PATH: git executable
        - GIT_AGENT_SYNC_LOG_LEVEL: log level
        - GIT_AGENT_SYNC_MIRRORS_DIR: mirrors base directory
        - GIT_AGENT_SYNC_USE_MIRRORS / GIT_AGENT_SYNC_USE_ALTERNATES: mirror variants
        - GIT_AGENT_SYNC_USE_SHALLOW_CLONE: shallow checkouts
        - GIT_AGENT_SYNC_FETCH_HEADS_MODE: fetch breadth
        - GIT_AGENT_SYNC_FETCH_TIMEOUT: fetch idle timeout in seconds
        - GIT_AGENT_SYNC_REMOTE_OPERATION_ATTEMPTS: fetch attempts
        - GIT_AGENT_SYNC_SHALLOW_DEPTH: depth of shallow fetches
        - GIT_AGENT_SYNC_SUBMODULES_SHALLOW_DEPTH: depth of shallow submodule updates
        - GIT_AGENT_SYNC_IDLE_GC_ENABLED: background mirror compaction

        Args:
            config: Base configuration to apply overrides to

        Returns:
            Updated configuration with environment overrides
        """
        assert config.fetch is not None
        assert config.mirrors is not None
        assert config.timeouts is not None
        assert config.retry is not None
        assert config.idle_gc is not None

        if git_path_env := os.environ.get("GIT_AGENT_SYNC_GIT_PATH"):
            config.git_path = git_path_env

        if log_level_env := os.environ.get("GIT_AGENT_SYNC_LOG_LEVEL"):
            config.log_level = log_level_env.upper()

        if mirrors_dir_env := os.environ.get("GIT_AGENT_SYNC_MIRRORS_DIR"):
            config.mirrors.mirrors_dir = mirrors_dir_env

        if mode_env := os.environ.get("GIT_AGENT_SYNC_FETCH_HEADS_MODE"):
            config.fetch.fetch_heads_mode = mode_env

        for env_name, section, attr in (
            ("GIT_AGENT_SYNC_USE_MIRRORS", config.mirrors, "use_mirrors"),
            ("GIT_AGENT_SYNC_USE_ALTERNATES", config.mirrors, "use_alternates"),
            ("GIT_AGENT_SYNC_USE_SHALLOW_CLONE", config.fetch, "use_shallow_clone"),
            ("GIT_AGENT_SYNC_IDLE_GC_ENABLED", config.idle_gc, "enabled"),
        ):
            if value := os.environ.get(env_name):
                try:
                    setattr(section, attr, _parse_bool(value))
                except ValueError:
                    logging.warning(
                        f"Invalid {env_name} environment variable value '{value}'. "
                        f"Using default {getattr(section, attr)}"
                    )

        if timeout_env := os.environ.get("GIT_AGENT_SYNC_FETCH_TIMEOUT"):
            try:
                config.timeouts.git_fetch_timeout = int(timeout_env)
            except ValueError:
                logging.warning(
                    f"Invalid GIT_AGENT_SYNC_FETCH_TIMEOUT environment variable value '{timeout_env}'. "
                    f"Using default {config.timeouts.git_fetch_timeout}"
                )

        for env_name, attr in (
            ("GIT_AGENT_SYNC_SHALLOW_DEPTH", "shallow_depth"),
            ("GIT_AGENT_SYNC_SUBMODULES_SHALLOW_DEPTH", "submodules_shallow_depth"),
        ):
            if depth_env := os.environ.get(env_name):
                try:
                    setattr(config.fetch, attr, int(depth_env))
                except ValueError:
                    logging.warning(
                        f"Invalid {env_name} environment variable value '{depth_env}'. "
                        f"Using default {getattr(config.fetch, attr)}"
                    )

        if attempts_env := os.environ.get("GIT_AGENT_SYNC_REMOTE_OPERATION_ATTEMPTS"):
            try:
                config.retry.remote_operation_attempts = int(attempts_env)
            except ValueError:
                logging.warning(
                    f"Invalid GIT_AGENT_SYNC_REMOTE_OPERATION_ATTEMPTS environment variable value "
                    f"'{attempts_env}'. Using default {config.retry.remote_operation_attempts}"
                )

        return config

    def validate_config(self, config: AgentSyncConfig) -> None:
        """
        Validate configuration settings.

        Args:
            config: Configuration to validate

        Raises:
            ValueError: If any configuration value is invalid
        """
        assert config.fetch is not None
        assert config.checkout is not None
        assert config.timeouts is not None
        assert config.retry is not None
        assert config.idle_gc is not None
        assert config.mirrors is not None

        if config.fetch.fetch_heads_mode not in FETCH_HEADS_MODES:
            raise ValueError(
                f"Fetch heads mode must be one of {FETCH_HEADS_MODES}, got {config.fetch.fetch_heads_mode}"
            )

        for name in ("shallow_depth", "submodules_shallow_depth"):
            value = getattr(config.fetch, name)
            if value < 1:
                raise ValueError(f"{name} must be at least 1, got {value}")

        if config.checkout.clean_policy not in CLEAN_POLICIES:
            raise ValueError(f"Clean policy must be one of {CLEAN_POLICIES}, got {config.checkout.clean_policy}")

        if config.checkout.clean_files_policy not in CLEAN_FILES_POLICIES:
            raise ValueError(
                f"Clean files policy must be one of {CLEAN_FILES_POLICIES}, "
                f"got {config.checkout.clean_files_policy}"
            )

        if config.checkout.submodule_policy not in SUBMODULE_POLICIES:
            raise ValueError(
                f"Submodule policy must be one of {SUBMODULE_POLICIES}, got {config.checkout.submodule_policy}"
            )

        if config.mirrors.use_alternates and not config.mirrors.use_mirrors:
            raise ValueError("use_alternates requires use_mirrors")

        for name in ("git_local_timeout", "git_fetch_timeout", "git_ls_remote_timeout", "git_gc_timeout"):
            value = getattr(config.timeouts, name)
            if value <= 0:
                raise ValueError(f"{name} must be greater than 0, got {value}")

        if not (1 <= config.retry.remote_operation_attempts <= 10):
            raise ValueError(
                f"remote_operation_attempts must be between 1 and 10, got {config.retry.remote_operation_attempts}"
            )

        if not config.retry.retry_delays_seconds or any(d < 0 for d in config.retry.retry_delays_seconds):
            raise ValueError("retry_delays_seconds must be a non-empty list of non-negative numbers")

        if config.idle_gc.cool_down_minutes < 0 or config.idle_gc.gc_rate_hours < 0:
            raise ValueError("Idle gc cool-down and rate must not be negative")

        valid_log_levels = {"DEBUG", "INFO", "WARNING", "ERROR", "CRITICAL"}
        if config.log_level.upper() not in valid_log_levels:
            raise ValueError(f"Log level must be one of {valid_log_levels}, got {config.log_level}")
