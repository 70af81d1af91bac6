"""
Update variants.

The updater runs one pipeline for every variant. What differs between them
is data: an UpdateVariant carries the three hooks the pipeline calls
(mirror linkage setup, commit loading, submodule update) plus two flags.
select_variant() picks one from configuration once per build.

- direct:                 fetch straight from the remote into the working directory
- direct-shallow:         the same with shallow fetches, submodules included
- mirror:                 fetch into a shared bare mirror, the working directory
                          fetches from it through a url.<mirror>.insteadOf rewrite
- mirror-with-alternates: the working directory borrows the mirror's objects
                          through .git/objects/info/alternates
- shallow-mirror:         shallow fetch of the build commit from the mirror
"""

import logging
import shutil
from dataclasses import dataclass
from pathlib import Path
from typing import Callable, Optional

from ..config import AgentSyncConfig
from ..git.command import GitCommandRunner
from ..git.errors import CheckoutCanceledError, GitSyncError, RevisionNotFoundError
from ..logging.build_logger import BuildProgressLogger
from ..mirrors.mirror_manager import MirrorManager
from ..mirrors.submodule_cache import SubmoduleUrlCache
from .commit_loader import CommitLoader
from .mirror_update import MirrorUpdater
from .models import RepositorySpec
from .remote_config import RemoteConfigurator, file_uri
from .retry import RetryPolicy
from .sparse_checkout import CheckoutMode
from .submodules import SubmoduleCheckout


logger = logging.getLogger(__name__)


@dataclass
class UpdateContext:
    """Everything the pipeline and the variant hooks work with during one update."""

    spec: RepositorySpec
    config: AgentSyncConfig
    runner: GitCommandRunner
    build_logger: BuildProgressLogger
    checkout_dir: Path
    mode: CheckoutMode
    branch: str
    retry_policy: RetryPolicy
    remote: RemoteConfigurator
    submodules: SubmoduleCheckout
    mirror_manager: Optional[MirrorManager] = None
    mirror_updater: Optional[MirrorUpdater] = None
    submodule_cache: Optional[SubmoduleUrlCache] = None
    # set once the mirror of the root has been updated
    mirror_dir: Optional[Path] = None

    @property
    def target_dir(self) -> Path:
        return self.mode.target_dir

    @property
    def git_dir(self) -> Path:
        return self.mode.target_dir / ".git"

    def working_dir_loader(self) -> CommitLoader:
        assert self.config.fetch is not None
        assert self.config.timeouts is not None
        return CommitLoader.for_working_dir(
            self.runner,
            self.target_dir,
            build_logger=self.build_logger,
            fetch_heads_mode=self.config.fetch.fetch_heads_mode,
            fetch_tags=self.config.fetch.fetch_tags,
            shallow_depth=self.config.fetch.shallow_depth,
            fetch_timeout=self.config.timeouts.git_fetch_timeout,
            ls_remote_timeout=self.config.timeouts.git_ls_remote_timeout,
            retry_policy=self.retry_policy,
        )

    def require_mirror_dir(self) -> Path:
        if self.mirror_dir is None:
            raise RuntimeError("The mirror of the root has not been updated yet")
        return self.mirror_dir


@dataclass(frozen=True)
class UpdateVariant:
    """
    Variant hooks of the update pipeline.

    Attributes:
        name: Variant name used in logs and on the command line
        uses_mirror: Update the shared mirror before the working directory
        shallow: The working directory must be a shallow repository
        setup_mirror_linkage: (context, is_new_repository) -> None
        ensure_commit_loaded: (context, fetch_required) -> None
        update_submodules: (context, repository_dir) -> None
    """

    name: str
    uses_mirror: bool
    shallow: bool
    setup_mirror_linkage: Callable[[UpdateContext, bool], None]
    ensure_commit_loaded: Callable[[UpdateContext, bool], None]
    update_submodules: Callable[[UpdateContext, Path], None]


# ----------------------------------------------------------------------
# Mirror linkage
# ----------------------------------------------------------------------


def _remove_url_sections(ctx: UpdateContext) -> None:
    result = ctx.runner.run(["config", "--get-regexp", r"^url\."], cwd=ctx.target_dir, tolerate_failure=True)
    sections = set()
    for line in result.lines():
        key = line.split(" ", 1)[0]
        # url.<base>.insteadof -> url.<base>
        sections.add(key.rsplit(".", 1)[0])
    for section in sorted(sections):
        ctx.runner.run(["config", "--remove-section", section], cwd=ctx.target_dir, tolerate_failure=True)


def _remove_lfs_storage(ctx: UpdateContext) -> None:
    ctx.runner.run(["config", "--remove-section", "lfs"], cwd=ctx.target_dir, tolerate_failure=True)


def _disable_alternates(ctx: UpdateContext) -> None:
    alternates = ctx.git_dir / "objects" / "info" / "alternates"
    if alternates.exists():
        assert ctx.config.timeouts is not None
        # copy borrowed objects in, refs still point at them
        try:
            ctx.runner.run(
                ["repack", "-a", "-d", "-q"], cwd=ctx.target_dir, timeout=ctx.config.timeouts.git_local_timeout
            )
        except CheckoutCanceledError:
            raise
        except GitSyncError as e:
            logger.warning(f"Error while copying objects from alternates into {ctx.git_dir}: {e}")
        alternates.unlink()
        logger.info(f"Removed alternates file {alternates}")


def setup_direct(ctx: UpdateContext, is_new: bool) -> None:
    if is_new:
        return
    _remove_url_sections(ctx)
    _remove_lfs_storage(ctx)
    _disable_alternates(ctx)


def setup_mirror(ctx: UpdateContext, is_new: bool) -> None:
    if not is_new:
        _remove_url_sections(ctx)
        _remove_lfs_storage(ctx)
    # the configured url has the username stripped
    remote_url = ctx.remote.read_remote_url(ctx.target_dir) or ctx.spec.fetch_url
    mirror_url = file_uri(ctx.require_mirror_dir())
    ctx.runner.run(["config", f"url.{mirror_url}.insteadOf", remote_url], cwd=ctx.target_dir)
    ctx.runner.run(["config", f"url.{remote_url}.pushInsteadOf", remote_url], cwd=ctx.target_dir)
    _disable_alternates(ctx)


def setup_alternates(ctx: UpdateContext, is_new: bool) -> None:
    mirror_dir = ctx.require_mirror_dir()
    objects_info = ctx.git_dir / "objects" / "info"
    objects_info.mkdir(parents=True, exist_ok=True)
    (objects_info / "alternates").write_text(f"{(mirror_dir / 'objects').resolve()}\n", encoding="utf-8")
    _copy_refs(ctx, mirror_dir)


def _copy_refs(ctx: UpdateContext, mirror_dir: Path) -> None:
    try:
        ctx.runner.run(["pack-refs", "--all"], cwd=mirror_dir)
        shutil.copyfile(str(mirror_dir / "packed-refs"), str(ctx.git_dir / "packed-refs"))
        return
    except (OSError, GitSyncError) as e:
        logger.warning(f"Error while packing refs, will copy them one by one: {e}")

    src_dir = mirror_dir / "refs"
    dst_dir = ctx.git_dir / "refs"
    for src in src_dir.rglob("*"):
        if not src.is_file():
            continue
        dst = dst_dir / src.relative_to(src_dir)
        if dst.exists():
            continue
        try:
            dst.parent.mkdir(parents=True, exist_ok=True)
            shutil.copyfile(str(src), str(dst))
        except OSError as e:
            logger.warning(f"Error while copying refs, refs will be created during fetch: {e}")


# ----------------------------------------------------------------------
# Commit loading
# ----------------------------------------------------------------------


def load_in_branch(ctx: UpdateContext, fetch_required: bool) -> None:
    ctx.working_dir_loader().ensure_commit_loaded(ctx.spec.revision, ctx.branch, enforce_fetch=fetch_required)


def load_prefer_shallow(ctx: UpdateContext, fetch_required: bool) -> None:
    ctx.working_dir_loader().ensure_commit_loaded(ctx.spec.revision, ctx.branch, shallow=True)


def load_shallow_from_mirror(ctx: UpdateContext, fetch_required: bool) -> None:
    loader = ctx.working_dir_loader()
    revision = ctx.spec.revision
    if loader.has_revision(revision) and loader.get_ref(loader.remote_ref_name(ctx.branch)) == revision:
        logger.debug(f"Revision '{revision}' of '{ctx.branch}' is present in the local repository, skip fetch")
        return
    loader.load_shallow_branch(revision, ctx.branch, ctx.require_mirror_dir())
    if not loader.has_revision(revision):
        raise RevisionNotFoundError(revision, ctx.branch, tried=loader.fetched_refspecs)


# ----------------------------------------------------------------------
# Submodules
# ----------------------------------------------------------------------


def update_submodules_plain(ctx: UpdateContext, repo_dir: Path) -> None:
    ctx.submodules.update_submodules(repo_dir)


def update_submodules_shallow(ctx: UpdateContext, repo_dir: Path) -> None:
    assert ctx.config.fetch is not None
    ctx.submodules.update_submodules(repo_dir, depth=ctx.config.fetch.submodules_shallow_depth)


def update_submodules_via_mirrors(ctx: UpdateContext, repo_dir: Path) -> None:
    assert ctx.config.mirrors is not None
    mirror_updater = ctx.mirror_updater
    if not ctx.config.mirrors.use_mirrors_for_submodules or mirror_updater is None:
        ctx.submodules.update_submodules(repo_dir)
        return
    ctx.submodules.update_submodules_with_mirrors(
        repo_dir,
        ctx.branch,
        lambda url, revisions: mirror_updater.update_mirror(url, revisions, is_submodule=True),
        ctx.submodule_cache,
    )


DIRECT = UpdateVariant("direct", False, False, setup_direct, load_in_branch, update_submodules_plain)
DIRECT_SHALLOW = UpdateVariant(
    "direct-shallow", False, True, setup_direct, load_prefer_shallow, update_submodules_shallow
)
MIRROR = UpdateVariant("mirror", True, False, setup_mirror, load_in_branch, update_submodules_via_mirrors)
MIRROR_WITH_ALTERNATES = UpdateVariant(
    "mirror-with-alternates", True, False, setup_alternates, load_in_branch, update_submodules_via_mirrors
)
SHALLOW_MIRROR = UpdateVariant(
    "shallow-mirror", True, True, setup_mirror, load_shallow_from_mirror, update_submodules_via_mirrors
)

VARIANTS = {v.name: v for v in (DIRECT, DIRECT_SHALLOW, MIRROR, MIRROR_WITH_ALTERNATES, SHALLOW_MIRROR)}


def select_variant(config: AgentSyncConfig) -> UpdateVariant:
    """Pick the variant matching the mirror, alternates and shallow clone settings."""
    assert config.mirrors is not None
    assert config.fetch is not None
    if not config.mirrors.use_mirrors:
        return DIRECT_SHALLOW if config.fetch.use_shallow_clone else DIRECT
    if config.mirrors.use_alternates:
        return MIRROR_WITH_ALTERNATES
    if config.fetch.use_shallow_clone:
        return SHALLOW_MIRROR
    return MIRROR
