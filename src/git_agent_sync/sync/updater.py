"""
Update pipeline of one VCS root.

SelectDirectory -> ConfigureOrInit -> PruneOutdatedRefs -> EnsureCommitLoaded
-> Checkout -> Clean -> SubmoduleRecurse

The variant selected from configuration supplies the mirror linkage, the
commit loading and the submodule update steps. When a working directory
cannot be brought to the build revision in place, it is wiped and the
pipeline restarts once from ConfigureOrInit with a fresh repository.
"""

import logging
import threading
from dataclasses import dataclass
from pathlib import Path
from typing import Optional

from ..config import SUBMODULES_IGNORE, AgentSyncConfig
from ..fs import delete_dir_content
from ..git.command import GitCommandRunner
from ..git.error_classifier import is_authentication_error, is_connection_error, is_reclone_safe, is_ssl_error
from ..git.errors import (
    CheckoutCanceledError,
    GitSyncError,
    PolicyViolationError,
    RevisionNotFoundError,
    UnrecoverableMirrorError,
)
from ..logging.build_logger import BuildProgressLogger
from ..mirrors.mirror_manager import MirrorManager
from ..mirrors.submodule_cache import SubmoduleUrlCache
from .checkout import WorkingTreeCheckout
from .cleaner import WorkingDirCleaner
from .mirror_update import MirrorUpdater
from .models import RepositorySpec
from .refs import RefPruner, expand_ref
from .remote_config import RemoteConfigurator, is_anonymous_git_with_username, split_username, validate_auth
from .repository import is_shallow_repository, remove_orphaned_idx_files
from .retry import RetryPolicy
from .sparse_checkout import check_sparse_checkout_supported, configure_sparse_checkout, determine_checkout_mode
from .submodules import SubmoduleCheckout
from .upper_limit import check_no_diff_with_upper_limit
from .variants import UpdateContext, UpdateVariant, select_variant


logger = logging.getLogger(__name__)


@dataclass
class UpdateResult:
    """Outcome of a successful update."""

    target_dir: Path
    revision: str
    branch: str
    variant: str
    branch_changed: bool
    cleaned: bool
    recloned: bool = False
    mirror_dir: Optional[Path] = None


class GitUpdater:
    """
    Brings the working directory of one root to the build revision.

    Example:
        >>> updater = GitUpdater(spec, Path("/builds/checkout"), config)
        >>> result = updater.update()
    """

    def __init__(
        self,
        spec: RepositorySpec,
        checkout_dir: Path,
        config: AgentSyncConfig,
        runner: Optional[GitCommandRunner] = None,
        build_logger: Optional[BuildProgressLogger] = None,
        mirror_manager: Optional[MirrorManager] = None,
        variant: Optional[UpdateVariant] = None,
        cancel_event: Optional[threading.Event] = None,
    ):
        """
        Initialize the updater.

        Args:
            spec: Root to synchronize
            checkout_dir: Checkout directory of the build
            config: Engine configuration
            runner: Git runner, one honouring cancel_event is created when None
            build_logger: Build progress logger
            mirror_manager: Mirror manager, created from config.mirrors when a mirror variant needs one
            variant: Variant to use, selected from config when None
            cancel_event: Set when the build is interrupted

        Raises:
            PolicyViolationError: If the checkout rules cannot be satisfied
        """
        assert config.checkout is not None
        assert config.fetch is not None
        assert config.mirrors is not None
        assert config.timeouts is not None
        assert config.retry is not None

        self.spec = spec
        self.config = config
        self.variant = variant or select_variant(config)
        self.build_logger = build_logger or BuildProgressLogger()
        interrupt_check = cancel_event.is_set if cancel_event is not None else None
        if runner is None:
            runner = GitCommandRunner(
                config.git_path, default_timeout=config.timeouts.git_local_timeout, interrupt_check=interrupt_check
            )
        elif interrupt_check is not None:
            runner = runner.with_interrupt_check(interrupt_check)
        self.runner = runner

        retry_policy = RetryPolicy(config.retry.remote_operation_attempts, list(config.retry.retry_delays_seconds))
        mode = determine_checkout_mode(spec.checkout_rules, Path(checkout_dir), config.checkout.use_sparse_checkout)

        mirror_updater = None
        submodule_cache = None
        if self.variant.uses_mirror:
            mirror_manager = mirror_manager or MirrorManager(Path(config.mirrors.mirrors_dir), runner)
            mirror_updater = MirrorUpdater(runner, self.build_logger, config, mirror_manager, retry_policy)
            submodule_cache = SubmoduleUrlCache(mirror_manager)

        main_repo_username = None
        if config.checkout.use_main_repo_user_for_submodules:
            main_repo_username = spec.auth.username or split_username(spec.fetch_url)[1]

        self.ctx = UpdateContext(
            spec=spec,
            config=config,
            runner=runner,
            build_logger=self.build_logger,
            checkout_dir=Path(checkout_dir),
            mode=mode,
            branch=expand_ref(spec.branch),
            retry_policy=retry_policy,
            remote=RemoteConfigurator(runner, config.fetch.exclude_username_from_http_urls),
            submodules=SubmoduleCheckout(
                runner, self.build_logger, config.timeouts.git_fetch_timeout, main_repo_username
            ),
            mirror_manager=mirror_manager,
            mirror_updater=mirror_updater,
            submodule_cache=submodule_cache,
        )
        self._pruner = RefPruner(runner, self.build_logger, config.timeouts.git_ls_remote_timeout, retry_policy)
        self._checkout = WorkingTreeCheckout(runner, self.build_logger, config.timeouts.git_local_timeout)
        self._cleaner = WorkingDirCleaner(
            runner, self.build_logger, config.checkout.clean_respects_other_roots, config.timeouts.git_local_timeout
        )

    # ------------------------------------------------------------------
    # Pipeline
    # ------------------------------------------------------------------

    def update(self) -> UpdateResult:
        """
        Run the pipeline.

        Raises:
            PolicyViolationError: Unsupported auth or sparse checkout
            RevisionNotFoundError: The build revision cannot be fetched
            CheckoutCanceledError: The build was interrupted
            GitSyncError: Any other failure, after the reclone attempt
        """
        ctx = self.ctx
        version = self.runner.version()
        self.build_logger.message(f"Git version: {version}")
        logger.info(
            f"Starting update of root {self.spec.name} in {ctx.target_dir} to revision {self.spec.revision} "
            f"(variant {self.variant.name})"
        )
        validate_auth(self.spec, version)
        if ctx.mode.sparse:
            check_sparse_checkout_supported(self.runner, self.build_logger)

        if self.variant.uses_mirror:
            assert ctx.mirror_updater is not None
            ctx.mirror_dir = ctx.mirror_updater.update_mirror(self.spec.fetch_url, [(self.spec.revision, ctx.branch)])

        self.build_logger.progress(f"Update checkout directory ({ctx.target_dir})")
        try:
            result = self._update_working_dir(force_init=False)
        except GitSyncError as e:
            if not self._should_reclone(e):
                raise
            logger.warning(f"Failed to update {ctx.target_dir}, will clone the repository from scratch: {e}")
            self.build_logger.warning(
                f"Failed to update {ctx.target_dir}: {e}. Will remove the repository and clone it from scratch"
            )
            result = self._update_working_dir(force_init=True)
            result.recloned = True

        check_no_diff_with_upper_limit(ctx)
        return result

    def _update_working_dir(self, force_init: bool) -> UpdateResult:
        ctx = self.ctx
        self._configure_or_init(force_init)
        fetch_required = self._pruner.remove_outdated_refs(ctx.target_dir, ctx.git_dir)
        self.variant.ensure_commit_loaded(ctx, fetch_required)

        branch_changed = self._checkout.update_sources(ctx.target_dir, ctx.branch, self.spec.revision)
        with_submodules = self.spec.submodule_policy != SUBMODULES_IGNORE
        cleaned = self._cleaner.clean(self.spec, ctx.target_dir, ctx.checkout_dir, branch_changed, with_submodules)
        if with_submodules:
            ctx.submodules.checkout_submodules(
                ctx.target_dir,
                self.spec.submodule_policy,
                lambda repo_dir: self.variant.update_submodules(ctx, repo_dir),
            )

        return UpdateResult(
            target_dir=ctx.target_dir,
            revision=self.spec.revision,
            branch=ctx.branch,
            variant=self.variant.name,
            branch_changed=branch_changed,
            cleaned=cleaned,
            mirror_dir=ctx.mirror_dir,
        )

    def _should_reclone(self, error: GitSyncError) -> bool:
        assert self.config.mirrors is not None
        if isinstance(
            error, (CheckoutCanceledError, PolicyViolationError, RevisionNotFoundError, UnrecoverableMirrorError)
        ):
            return False
        if self.config.mirrors.fail_on_clean_checkout:
            return False
        if is_connection_error(error) or is_ssl_error(error) or is_authentication_error(error):
            return False
        return is_reclone_safe(error)

    # ------------------------------------------------------------------
    # ConfigureOrInit
    # ------------------------------------------------------------------

    def _configure_or_init(self, force_init: bool) -> bool:
        """Reuse or (re)create the repository. Returns True if it was created."""
        ctx = self.ctx
        git_dir = ctx.git_dir
        if force_init:
            self._init_directory(remove_old=True)
        elif git_dir.exists():
            if self.variant.shallow != is_shallow_repository(self.runner, ctx.target_dir, git_dir):
                self.build_logger.message(
                    f"Shallow clone settings changed, recreate the repository in {ctx.target_dir}"
                )
                self._init_directory(remove_old=True)
                force_init = True
            else:
                try:
                    self._configure_existing()
                except (CheckoutCanceledError, PolicyViolationError):
                    raise
                except (GitSyncError, OSError) as e:
                    logger.warning(f"Do clean checkout due to errors while configuring {ctx.target_dir}: {e}")
                    self._init_directory(remove_old=True)
                    force_init = True
        else:
            self._init_directory(remove_old=False)
            force_init = True
        remove_orphaned_idx_files(git_dir)
        return force_init

    def _configure_existing(self) -> None:
        ctx = self.ctx
        ctx.remote.configure(ctx.target_dir, self.spec.fetch_url, self.spec.push_url)
        self.variant.setup_mirror_linkage(ctx, False)
        configure_sparse_checkout(self.runner, ctx.target_dir, ctx.mode, self.spec.checkout_rules)

    def _init_directory(self, remove_old: bool) -> None:
        ctx = self.ctx
        target_dir = ctx.target_dir
        if remove_old and not delete_dir_content(target_dir):
            raise GitSyncError(f"Failed to remove the content of {target_dir} before cloning the repository again")

        target_dir.mkdir(parents=True, exist_ok=True)
        self.build_logger.message(f"The .git directory is missing in '{target_dir}'. Running 'git init'...")
        self.runner.run(["init"], cwd=target_dir)
        self._warn_about_anonymous_urls()
        ctx.remote.configure(target_dir, self.spec.fetch_url, self.spec.push_url)
        self.variant.setup_mirror_linkage(ctx, True)
        configure_sparse_checkout(self.runner, target_dir, ctx.mode, self.spec.checkout_rules)

    def _warn_about_anonymous_urls(self) -> None:
        for kind, url in (("Fetch", self.spec.fetch_url), ("Push", self.spec.effective_push_url)):
            if is_anonymous_git_with_username(url):
                logger.warning(
                    f"{kind} URL '{url}' for root {self.spec.name} uses an anonymous git protocol and contains "
                    f"a username, {kind.lower()} will probably fail"
                )
