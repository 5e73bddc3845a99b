"""
Link parser — recover linker invocations from captured build diagnostics.

With ``RUSTC_LOG=rustc_codegen_ssa::back::link=info`` rustc prints every
linker command it runs, e.g.

    INFO rustc_codegen_ssa::back::link LC_ALL="C" "cc" "-m64" "/x/deps/app-1a.app.2b-cgu.0.rcgu.o" ... "-o" "/x/deps/app-1a"

That text is not a stable interface.  Everything that depends on its
exact shape is held by ``LinkLineMatcher`` so the rules can change
without touching the parsing code.
"""
import logging
import re
import shlex
from dataclasses import dataclass, field
from enum import Enum, unique
from pathlib import Path
from typing import Dict, Iterable, List, Optional, Tuple

from build_ci.core.catalog import crate_name_from_path
from build_ci.errors import NoLinkerInvocationsError
from build_ci.policy.profile import LinkLineMatcher

logger = logging.getLogger(__name__)

_ANSI = re.compile(r"\x1b\[[0-9;?]*[A-Za-z]")
_ENV_ASSIGNMENT = re.compile(r"^[A-Za-z_][A-Za-z0-9_]*=")


@unique
class TargetKind(str, Enum):
    BINARY = "binary"
    TEST = "test"
    EXAMPLE = "example"

    @property
    def dir_name(self) -> str:
        """Subdirectory of the instrumented output area for this kind."""
        return {"binary": "bin", "test": "tests", "example": "examples"}[self.value]


@dataclass(frozen=True)
class LinkInvocation:
    """One linker command, exactly as the build ran it."""

    target_name: str
    kind: TargetKind
    output_path: Path
    args: Tuple[str, ...]
    archives: Tuple[Path, ...] = ()
    objects: Tuple[Path, ...] = ()
    search_paths: Tuple[Path, ...] = ()
    line_number: int = 0
    allocator_shim: Optional[Path] = None

    @property
    def program(self) -> str:
        return self.args[0]

    @property
    def target_id(self) -> str:
        """``<name>-<hash>`` of the linked output; unique among the targets of a build."""
        return self.output_path.name.split(".")[0]

    @property
    def target_hash(self) -> Optional[str]:
        _, sep, tail = self.target_id.rpartition("-")
        return tail if sep else None


@dataclass(frozen=True)
class LineParseError:
    """A link line that could not be tokenized; only its target is dropped."""

    line_number: int
    target_name: Optional[str]
    message: str
    target_id: Optional[str] = None


@dataclass
class ParseResult:
    invocations: List[LinkInvocation] = field(default_factory=list)
    errors: List[LineParseError] = field(default_factory=list)
    lines_scanned: int = 0
    lines_matched: int = 0


def strip_ansi(text: str) -> str:
    return _ANSI.sub("", text)


def _guess_output(command: str, matcher: LinkLineMatcher) -> Optional[Path]:
    """Best-effort output path for a line shlex could not split."""
    flag = re.escape(matcher.output_flag)
    m = re.search(rf"(?:^|\s)[\"']?{flag}[\"']?\s+[\"']?([^\s\"']+)", command)
    return Path(m.group(1)) if m else None


def _drop_preamble(tokens: List[str], matcher: LinkLineMatcher) -> List[str]:
    i = 0
    while i < len(tokens) and (
        tokens[i] in matcher.label_tokens or _ENV_ASSIGNMENT.match(tokens[i])
    ):
        i += 1
    return tokens[i:]


def _classify(
    output: Path,
    target_name: str,
    archives: Iterable[Path],
    test_targets: Iterable[str],
    matcher: LinkLineMatcher,
) -> TargetKind:
    if output.parent.name == "examples":
        return TargetKind.EXAMPLE
    if target_name in test_targets or any(matcher.is_test_harness(str(a)) for a in archives):
        return TargetKind.TEST
    return TargetKind.BINARY


def _build_invocation(
    tokens: List[str],
    line_number: int,
    matcher: LinkLineMatcher,
    test_targets: Iterable[str],
) -> Optional[LinkInvocation]:
    output: Optional[str] = None
    archives: List[Path] = []
    objects: List[Path] = []
    search_paths: List[Path] = []

    it = iter(tokens[1:])
    for tok in it:
        if tok == matcher.output_flag:
            nxt = next(it, None)
            if nxt is not None:
                output = nxt
            continue
        if tok.startswith(matcher.search_path_prefix):
            value = tok[len(matcher.search_path_prefix):]
            if not value:
                nxt = next(it, None)
                value = nxt or ""
            if value:
                # "-L native=/path" style kinds
                kind, sep, rest = value.partition("=")
                search_paths.append(Path(rest if sep and "/" not in kind else value))
            continue
        if matcher.is_archive(tok):
            archives.append(Path(tok))
        elif matcher.is_input(tok):
            objects.append(Path(tok))

    if output is None or not (archives or objects):
        return None

    output_path = Path(output)
    target_name = crate_name_from_path(output_path)
    return LinkInvocation(
        target_name=target_name,
        kind=_classify(output_path, target_name, archives, test_targets, matcher),
        output_path=output_path,
        args=tuple(tokens),
        archives=tuple(dict.fromkeys(archives)),
        objects=tuple(objects),
        search_paths=tuple(search_paths),
        line_number=line_number,
    )


def parse_link_invocations(
    text: str,
    matcher: Optional[LinkLineMatcher] = None,
    test_targets: Iterable[str] = (),
) -> ParseResult:
    """
    Extract one ``LinkInvocation`` per linked target from *text*.

    Raises ``NoLinkerInvocationsError`` if no line carries the linker
    marker at all.  Lines that carry the marker but are not link commands
    (no output flag or no object/archive input) are skipped.  Lines that
    cannot be tokenized end up in ``result.errors``.  When two lines link
    the same output path, the later one wins.
    """
    if matcher is None:
        matcher = LinkLineMatcher()
    test_targets = frozenset(test_targets)

    result = ParseResult()
    by_output: Dict[Path, LinkInvocation] = {}

    for line_number, raw in enumerate(text.splitlines(), start=1):
        result.lines_scanned += 1
        command = matcher.command_text(strip_ansi(raw))
        if command is None:
            continue
        result.lines_matched += 1

        try:
            tokens = shlex.split(command)
        except ValueError as e:
            guessed = _guess_output(command, matcher)
            err = LineParseError(
                line_number,
                crate_name_from_path(guessed) if guessed else None,
                str(e),
                guessed.name.split(".")[0] if guessed else None,
            )
            logger.warning("line %d: cannot tokenize link command (%s)", line_number, e)
            result.errors.append(err)
            continue

        tokens = _drop_preamble(tokens, matcher)
        if not tokens:
            logger.debug("line %d: marker without a command", line_number)
            continue

        inv = _build_invocation(tokens, line_number, matcher, test_targets)
        if inv is None:
            logger.debug("line %d: not a link step, ignored", line_number)
            continue
        if inv.output_path in by_output:
            logger.debug("line %d: replaces earlier link of %s", line_number, inv.output_path)
            del by_output[inv.output_path]
        by_output[inv.output_path] = inv

    if result.lines_matched == 0:
        raise NoLinkerInvocationsError(result.lines_scanned)

    # tokenize errors for a target that also linked cleanly are superseded
    linked = {inv.target_id for inv in by_output.values()}
    result.errors = [e for e in result.errors if e.target_id is None or e.target_id not in linked]
    result.invocations = list(by_output.values())

    logger.info(
        "parsed %d linker invocation(s) from %d line(s), %d error(s)",
        len(result.invocations), result.lines_scanned, len(result.errors),
    )
    return result
