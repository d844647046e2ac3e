"""
nix-build — evaluate and build an expression file.
"""

from __future__ import annotations

import logging
import tempfile

from nixconverge.adapters.nix.environment import build_env
from nixconverge.adapters.shell.command import ProcessRunner

logger = logging.getLogger(__name__)


def build_expression(
    nix_path: str,
    expression_path: str,
    out_link: str | None = None,
    runner: ProcessRunner | None = None,
) -> str:
    """Build ``expression_path`` and return the resulting store path.

    Args:
        nix_path: NIX_PATH for the build.
        expression_path: Absolute path of the expression file.
        out_link: Where to create the output link. None builds
            without creating any link (preview).
        runner: Process runner to use.

    Raises:
        ChildProcessFailure: If nix-build fails.
    """
    runner = runner or ProcessRunner()

    if out_link is None:
        argv = ["nix-build", "--no-link", expression_path]
    else:
        argv = ["nix-build", "-o", out_link, expression_path]

    # Run from a private scratch directory so nothing lands in the cwd.
    with tempfile.TemporaryDirectory(prefix="nixconverge-build-") as scratch:
        result = runner.run(argv, cwd=scratch, env=build_env(nix_path))

    result.check("building expression failed")
    store_path = result.text
    logger.info("Built %s → %s", expression_path, store_path)
    return store_path
