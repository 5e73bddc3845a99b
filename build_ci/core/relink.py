"""
Relink — re-run a captured linker command against instrumented inputs.

The captured ``LinkInvocation`` is never modified.  ``plan_relink``
derives a new argument list from it:

  - each referenced archive with a patched copy → the patched copy
  - each direct object input with an instrumented version → that version
    (the allocator shim and objects nobody instrumented stay as they are)
  - ``-o <original>`` → ``-o <ci_dir>/<bin|tests|examples>/<name>-ci``
    (``tests/<name>-<hash>-ci`` for test harnesses, which share crate names)

Argument order is preserved; it decides symbol resolution order.
"""
import logging
import os
from dataclasses import dataclass
from pathlib import Path
from typing import Mapping, Optional, Tuple, Union

from build_ci.core.link_parser import LinkInvocation, TargetKind
from build_ci.core.toolchain import run_tool
from build_ci.errors import ToolError

logger = logging.getLogger(__name__)


@dataclass(frozen=True)
class RelinkPlan:
    invocation: LinkInvocation
    args: Tuple[str, ...]
    output_path: Path
    substitutions: Tuple[Tuple[str, str], ...] = ()

    @property
    def program(self) -> str:
        return self.args[0]


def instrumented_binary_path(
    ci_dir: Union[str, Path],
    name: str,
    kind: TargetKind,
    suffix: str = "ci",
    target_hash: Optional[str] = None,
) -> Path:
    """
    Where the instrumented binary for target *name* is written.

    With *target_hash* the name keeps the build hash, as cargo does for
    everything under ``deps/``.
    """
    stem = f"{name}-{target_hash}" if target_hash else name
    return Path(ci_dir) / kind.dir_name / f"{stem}-{suffix}"


def output_for(invocation: LinkInvocation, ci_dir: Path, suffix: str = "ci", hashed: bool = False) -> Path:
    """Instrumented output of *invocation*; test harnesses always keep their hash."""
    keep_hash = hashed or invocation.kind == TargetKind.TEST
    return instrumented_binary_path(
        ci_dir, invocation.target_name, invocation.kind, suffix,
        invocation.target_hash if keep_hash else None,
    )


def _key(path: Union[str, Path]) -> str:
    return os.path.normpath(str(path))


def plan_relink(
    invocation: LinkInvocation,
    archive_map: Mapping[Path, Path],
    object_map: Mapping[Path, Path],
    ci_dir: Path,
    suffix: str = "ci",
    output_flag: str = "-o",
    output: Optional[Path] = None,
) -> RelinkPlan:
    archives = {_key(k): str(v) for k, v in archive_map.items()}
    objects = {_key(k): str(v) for k, v in object_map.items()}
    shim = _key(invocation.allocator_shim) if invocation.allocator_shim else None
    if output is None:
        output = output_for(invocation, ci_dir, suffix)

    args = [invocation.program]
    subs = []
    it = iter(invocation.args[1:])
    for tok in it:
        if tok == output_flag:
            original = next(it, None)
            args += [output_flag, str(output)]
            if original is not None:
                subs.append((original, str(output)))
            continue
        key = _key(tok)
        new: Optional[str] = None
        if key in archives:
            new = archives[key]
        elif key != shim and key in objects:
            new = objects[key]
        if new is not None and new != tok:
            subs.append((tok, new))
            args.append(new)
        else:
            args.append(tok)

    return RelinkPlan(invocation, tuple(args), output, tuple(subs))


def relink(plan: RelinkPlan, cwd: Optional[Path] = None) -> Path:
    """
    Run the derived link command and return the instrumented binary path.

    Raises ``ToolError`` with the linker's output on failure.
    """
    plan.output_path.parent.mkdir(parents=True, exist_ok=True)
    logger.info("linking: %s -> %s", plan.invocation.target_name, plan.output_path)
    logger.debug("%d substitution(s) in link command", len(plan.substitutions))
    run_tool(plan.args, tool=Path(plan.program).name, cwd=cwd)
    if not plan.output_path.is_file():
        raise ToolError(
            Path(plan.program).name, 0,
            stderr=f"process returned success but output file does not exist\nexpected file: {plan.output_path}",
        )
    return plan.output_path


def remove_stale_binary(path: Path) -> bool:
    """Delete an instrumented binary left over from an earlier run."""
    if path.is_file():
        path.unlink()
        logger.info("removed stale instrumented binary: %s", path)
        return True
    return False
