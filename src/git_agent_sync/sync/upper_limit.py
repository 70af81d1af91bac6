"""
Diff with the upper-limit revision.

A build can be started on a revision older than the newest one its changes
were collected for (the upper limit). After checkout the files differing
between the two revisions are reported as a build problem, restricted to
paths the checkout rules map into the checkout directory. If the upper
limit revision cannot be fetched the check is skipped with a warning.
"""

import logging
from typing import TYPE_CHECKING, List

from ..git.errors import CheckoutCanceledError, GitSyncError


if TYPE_CHECKING:
    from .variants import UpdateContext

logger = logging.getLogger(__name__)


def check_no_diff_with_upper_limit(ctx: "UpdateContext") -> List[str]:
    """
    Report paths changed between the build revision and the upper limit.

    Returns:
        The reported (checkout-rule filtered) paths, empty when nothing differs
    """
    spec = ctx.spec
    upper = spec.upper_limit_revision
    if not upper or upper == spec.revision:
        return []

    ctx.build_logger.progress(f"Check no diff with upper limit revision {upper}")
    loader = ctx.working_dir_loader()
    try:
        loaded = loader.load_commit(upper)
    except CheckoutCanceledError:
        raise
    except GitSyncError as e:
        logger.warning(f"Failed to fetch upper limit revision {upper}: {e}")
        loaded = False
    if not loaded:
        ctx.build_logger.warning(f"Failed to fetch {upper}, will not check for diff with upper limit revision")
        return []

    result = ctx.runner.run(["diff", "--name-only", upper, f"^{spec.revision}"], cwd=ctx.target_dir)
    paths = [p for p in result.lines() if spec.checkout_rules.map_path(p) is not None]
    if paths:
        shown = "\n".join(paths[:50])
        more = f"\n... and {len(paths) - 50} more" if len(paths) > 50 else ""
        ctx.build_logger.build_problem(
            f"upper-limit-diff:{spec.name}",
            f"Diff with upper limit revision {upper} found in root {spec.name}:\n{shown}{more}",
        )
    return paths
