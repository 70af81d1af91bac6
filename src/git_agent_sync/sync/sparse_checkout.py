"""Checkout mode selection and the sparse-checkout path file."""

import logging
from dataclasses import dataclass
from pathlib import Path

from ..git.command import GIT_WITH_BROKEN_SPARSE_CHECKOUT, GIT_WITH_SPARSE_CHECKOUT, GitCommandRunner
from ..git.errors import PolicyViolationError
from ..logging.build_logger import BuildProgressLogger
from .models import CheckoutRules


logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class CheckoutMode:
    """
    Where the repository goes and whether only part of it is materialized.

    Attributes:
        sparse: Write the sparse-checkout file and enable core.sparseCheckout
        target_dir: Directory the repository is checked out into
    """

    sparse: bool
    target_dir: Path


def determine_checkout_mode(rules: CheckoutRules, checkout_dir: Path, use_sparse_checkout: bool) -> CheckoutMode:
    """
    Choose the checkout mode for a root.

    Raises:
        PolicyViolationError: If the rules can be satisfied by neither mode
    """
    checkout_dir = Path(checkout_dir)
    if rules.is_whole_repository():
        to_path = rules.includes[0].to_path
        target = checkout_dir / to_path if to_path else checkout_dir
        return CheckoutMode(sparse=use_sparse_checkout and bool(rules.excludes), target_dir=target)
    if use_sparse_checkout and rules.maps_paths_onto_themselves():
        return CheckoutMode(sparse=True, target_dir=checkout_dir)
    reason = (
        "only rules mapping a path onto itself can be used with sparse checkout"
        if use_sparse_checkout
        else "enable sparse checkout or use a single rule mapping the repository root into a directory"
    )
    raise PolicyViolationError(f"Incompatible checkout rules ({reason}):\n{rules}")


def check_sparse_checkout_supported(runner: GitCommandRunner, build_logger: BuildProgressLogger) -> None:
    """
    Raises:
        PolicyViolationError: If the detected git cannot do sparse checkout
    """
    version = runner.version()
    if version < GIT_WITH_SPARSE_CHECKOUT:
        raise PolicyViolationError(f"Cannot perform sparse checkout using git {version}, git {GIT_WITH_SPARSE_CHECKOUT}+ is required")
    if version == GIT_WITH_BROKEN_SPARSE_CHECKOUT:
        build_logger.warning(f"Sparse checkout does not work reliably with git {version}, consider updating git")


def sparse_checkout_content(rules: CheckoutRules) -> str:
    lines = []
    for rule in rules.includes:
        lines.append("/*" if not rule.from_path else f"/{rule.from_path}")
    if not lines:
        lines.append("/*")
    lines.extend(f"!/{exclude}" for exclude in rules.excludes)
    return "".join(f"{line}\n" for line in lines)


def configure_sparse_checkout(
    runner: GitCommandRunner, target_dir: Path, mode: CheckoutMode, rules: CheckoutRules
) -> None:
    """Enable (and write) or disable sparse checkout of the working directory."""
    if not mode.sparse:
        runner.run(["config", "core.sparseCheckout", "false"], cwd=target_dir)
        return

    runner.run(["config", "core.sparseCheckout", "true"], cwd=target_dir)
    sparse_file = Path(target_dir) / ".git" / "info" / "sparse-checkout"
    try:
        sparse_file.parent.mkdir(parents=True, exist_ok=True)
        sparse_file.write_text(sparse_checkout_content(rules), encoding="utf-8")
    except OSError as e:
        logger.warning(f"Error while writing sparse checkout config, disable sparse checkout: {e}")
        runner.run(["config", "core.sparseCheckout", "false"], cwd=target_dir)
