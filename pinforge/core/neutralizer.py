"""Network-call neutralizer: stub outbound fetches in a working tree.

Text-pattern based and best-effort. It reduces the number of build steps
that try to reach the network; the sandbox that denies egress during the
build is what actually enforces isolation.

Each patched file gets a marker line and a ``<file>.orig`` backup, or
``<file>.pinforge.orig`` when the source already ships a ``.orig``. Files
already carrying the marker are left alone, so running the neutralizer
twice over a tree changes nothing the second time. A Python file whose
stubbed form would no longer parse is left untouched and reported.
"""

from __future__ import annotations

import ast
import fnmatch
import logging
import os
import re
import shlex
import shutil
import stat
from pathlib import Path

from pinforge.core.hasher import sha256_hex
from pinforge.models.config import NeutralizationConfig
from pinforge.models.neutralization import (
    NeutralizationPatch,
    NeutralizationResult,
    NeutralizationRule,
    PatchPolicy,
    ScriptReplacement,
)
from pinforge.models.reports import BuildWarning

logger = logging.getLogger(__name__)

MARKER = "pinforge: network calls neutralized"
BACKUP_SUFFIX = ".orig"
# Used instead of BACKUP_SUFFIX when the source already ships a ".orig" file
FALLBACK_BACKUP_SUFFIX = ".pinforge.orig"

_SKIP_DIRS = {".git", ".hg", ".svn"}

# Left-hand side of an assignment whose value starts with the call site:
#   x = requests.get(   /   resp: Response = await httpx.get(   /   local X=$(curl
_ASSIGN_RE = re.compile(
    r"^(\s*)((?:local|export|readonly)\s+)?"
    r"([A-Za-z_][\w.]*(?:\[[^\]]*\])?)\s*(?::[^=]+)?=\s*"
    r"(?:await\s+)?(?:\$\(|`)?\s*$"
)
_CODING_RE = re.compile(r"^[ \t\f]*#.*?coding[:=]")
# A definition of a function or class that happens to share a call name
_DEFINITION_RE = re.compile(r"\b(?:def|class)\s+$")


# ---------------------------------------------------------------------------
# Default rule set
# ---------------------------------------------------------------------------

PYTHON_RULE = NeutralizationRule(
    name="python-http",
    glob="*.py",
    detect=r"\b(?:urllib\.request|requests|urlopen|httpx|aiohttp)\b",
    call=(
        r"(?<![.\w])(?:urllib\.request\.urlopen|urlopen"
        r"|requests\.(?:get|post|put|patch|delete|head|request)"
        r"|httpx\.(?:get|post|put|patch|delete|head|request|stream)"
        r"|aiohttp\.request)\s*\("
    ),
    stub="pass",
    assign_stub="{name} = None",
    inline_stub="None",
)

SHELL_RULE = NeutralizationRule(
    name="shell-fetch",
    glob="*.sh",
    detect=r"\b(?:curl|wget)\b",
    call=r"(?:^|(?<=[\s;&|(`]))(?:curl|wget)\b",
    stub=":",
    assign_stub='{name}=""',
)

DEFAULT_RULES: list[NeutralizationRule] = [PYTHON_RULE, SHELL_RULE]


# ---------------------------------------------------------------------------
# Call-site stubbing
# ---------------------------------------------------------------------------


def _paren_end(lines: list[str], row: int, col: int, comment: str) -> tuple[int, int] | None:
    """Find the closing parenthesis matching ``lines[row][col]``.

    Returns ``(row, col_after_paren)`` or None when the call never closes.
    Quotes are tracked per line; comments end the line.
    """
    depth = 0
    for j in range(row, len(lines)):
        text = lines[j]
        k = col if j == row else 0
        quote = None
        while k < len(text):
            ch = text[k]
            if quote:
                if ch == "\\":
                    k += 2
                    continue
                if ch == quote:
                    quote = None
            elif ch in "'\"":
                quote = ch
            elif text.startswith(comment, k):
                break
            elif ch == "(":
                depth += 1
            elif ch == ")":
                depth -= 1
                if depth == 0:
                    return j, k + 1
            k += 1
    return None


def _continued_end(lines: list[str], row: int) -> int:
    """Last row of a shell command continued with trailing backslashes."""
    j = row
    while j < len(lines) - 1 and lines[j].rstrip("\r\n").endswith("\\"):
        j += 1
    return j


def _eol(line: str) -> str:
    if line.endswith("\r\n"):
        return "\r\n"
    return "\n" if line.endswith("\n") else ""


def _first_call(call_re: re.Pattern[str], line: str) -> re.Match[str] | None:
    """First match on ``line`` that is a call, not a definition or attribute."""
    for match in call_re.finditer(line):
        prefix = line[: match.start()]
        if prefix.endswith(".") or _DEFINITION_RE.search(prefix):
            continue
        return match
    return None


def stub_calls(text: str, rule: NeutralizationRule) -> tuple[str, int]:
    """Replace every call site ``rule`` finds in ``text``.

    Returns the new text and the number of call sites replaced. Call sites
    that cannot be rewritten without breaking the syntax are left as-is.
    """
    call_re = re.compile(rule.call)
    lines = text.splitlines(keepends=True)
    out: list[str] = []
    count = 0
    i = 0
    while i < len(lines):
        line = lines[i]
        match = None if line.lstrip().startswith(rule.comment) else _first_call(call_re, line)
        if match is None:
            out.append(line)
            i += 1
            continue

        prefix = line[: match.start()]
        indent = line[: len(line) - len(line.lstrip())]
        paren_mode = match.group(0).rstrip().endswith("(")
        if paren_mode:
            end = _paren_end(lines, i, match.end() - 1, rule.comment)
            if end is None:
                out.append(line)
                i += 1
                continue
            last, col = end
            remainder = lines[last][col:]
        else:
            last = _continued_end(lines, i)
            remainder = ""

        assign = _ASSIGN_RE.match(prefix)
        if assign and rule.assign_stub is not None:
            keyword = assign.group(2) or ""
            replacement = (
                indent + keyword + rule.assign_stub.format(name=assign.group(3)) + _eol(lines[last])
            )
        elif not prefix.strip():
            replacement = indent + rule.stub + _eol(lines[last])
        elif paren_mode and rule.inline_stub is not None:
            replacement = prefix + rule.inline_stub + remainder
        else:
            out.append(line)
            i += 1
            continue

        out.append(replacement)
        count += 1
        i = last + 1
    return "".join(out), count


def _parses(source: str) -> bool:
    try:
        ast.parse(source)
    except (SyntaxError, ValueError):
        return False
    return True


def _free_backup_path(path: Path) -> Path:
    """Backup location for ``path`` that does not clobber an upstream file."""
    for suffix in (BACKUP_SUFFIX, FALLBACK_BACKUP_SUFFIX):
        candidate = path.with_name(path.name + suffix)
        if not candidate.exists():
            return candidate
    raise FileExistsError(f"{path.name}: both backup names are taken")


def _with_marker(text: str, comment: str, policy: PatchPolicy) -> str:
    lines = text.splitlines(keepends=True)
    at = 0
    if lines and lines[0].startswith("#!"):
        at = 1
    if len(lines) > at and _CODING_RE.match(lines[at]):
        at += 1
    eol = (_eol(lines[0]) if lines else "") or "\n"
    lines.insert(at, f"{comment} {MARKER} ({policy.value}){eol}")
    return "".join(lines)


# ---------------------------------------------------------------------------
# Whole-script replacement
# ---------------------------------------------------------------------------

_PY_REPLACEMENT = '''#!/usr/bin/env python3
# {marker} (replace_script)
"""Offline stand-in for {filename}: use a pre-staged resource or a placeholder."""
import os
import shutil
import sys

CANDIDATES = {candidates!r}
PLACEHOLDER = {placeholder!r}


def main():
    here = os.path.dirname(os.path.abspath(__file__))
    target = os.path.join(here, PLACEHOLDER)
    for base in (here, os.getcwd()):
        for name in CANDIDATES:
            path = os.path.join(base, name)
            if os.path.isfile(path) and os.path.getsize(path) > 0:
                if os.path.abspath(path) != target:
                    shutil.copyfile(path, target)
                print("using pre-staged " + path)
                return 0
    open(target, "a").close()
    print("WARNING: no pre-staged copy of " + PLACEHOLDER
          + "; wrote an empty placeholder", file=sys.stderr)
    return 0


if __name__ == "__main__":
    sys.exit(main())
'''

_SH_REPLACEMENT = """#!/bin/sh
# {marker} (replace_script)
# Offline stand-in for {filename}: use a pre-staged resource or a placeholder.
here=$(cd "$(dirname "$0")" && pwd)
target="$here/{placeholder}"
for base in "$here" "$PWD"; do
  for name in {candidates}; do
    if [ -s "$base/$name" ]; then
      [ "$base/$name" = "$target" ] || cp "$base/$name" "$target"
      echo "using pre-staged $base/$name"
      exit 0
    fi
  done
done
: > "$target"
echo "WARNING: no pre-staged copy of {placeholder}; wrote an empty placeholder" >&2
exit 0
"""


def render_replacement(replacement: ScriptReplacement) -> str:
    """Deterministic body that replaces a known fetch script."""
    if replacement.filename.endswith(".py"):
        return _PY_REPLACEMENT.format(
            marker=MARKER,
            filename=replacement.filename,
            candidates=list(replacement.resource_names),
            placeholder=replacement.placeholder,
        )
    return _SH_REPLACEMENT.format(
        marker=MARKER,
        filename=replacement.filename,
        candidates=" ".join(shlex.quote(n) for n in replacement.resource_names),
        placeholder=replacement.placeholder,
    )


# ---------------------------------------------------------------------------
# Neutralizer
# ---------------------------------------------------------------------------


class Neutralizer:
    """Applies rules and script replacements to a working tree.

    Parameters
    ----------
    rules:
        Call-site rules. The first rule whose glob matches a file wins.
    replacements:
        Known fetch scripts replaced wholesale, matched by file name.
    """

    def __init__(
        self,
        rules: list[NeutralizationRule] | None = None,
        replacements: list[ScriptReplacement] | None = None,
    ) -> None:
        self._rules = list(DEFAULT_RULES if rules is None else rules)
        self._replacements = {r.filename: r for r in replacements or []}

    @classmethod
    def from_config(cls, config: NeutralizationConfig) -> Neutralizer:
        rules = [*(DEFAULT_RULES if config.use_default_rules else []), *config.rules]
        return cls(rules, config.replacements)

    def _walk(self, tree: Path):
        for dirpath, dirnames, filenames in os.walk(tree):
            dirnames[:] = sorted(d for d in dirnames if d not in _SKIP_DIRS)
            for name in sorted(filenames):
                if not name.endswith(BACKUP_SUFFIX):
                    yield Path(dirpath) / name

    def neutralize(self, tree: Path) -> NeutralizationResult:
        """Patch every candidate file under ``tree`` in place."""
        tree = Path(tree)
        patches: list[NeutralizationPatch] = []
        warnings: list[BuildWarning] = []
        for path in self._walk(tree):
            replacement = self._replacements.get(path.name)
            rule = None
            if replacement is None:
                rule = next((r for r in self._rules if fnmatch.fnmatch(path.name, r.glob)), None)
                if rule is None:
                    continue
            try:
                patch = self._patch_file(path, rule, replacement)
            except (OSError, UnicodeDecodeError, SyntaxError) as exc:
                rel = path.relative_to(tree).as_posix()
                logger.warning("Could not neutralize %s: %s", rel, exc)
                warnings.append(
                    BuildWarning(kind="neutralization_skipped", subject=rel, message=str(exc))
                )
                continue
            if patch is not None:
                patches.append(patch)

        logger.info(
            "Neutralized %d file(s) under %s (%d skipped)", len(patches), tree, len(warnings)
        )
        return NeutralizationResult(tree=tree, patches=patches, warnings=warnings)

    def _patch_file(
        self,
        path: Path,
        rule: NeutralizationRule | None,
        replacement: ScriptReplacement | None,
    ) -> NeutralizationPatch | None:
        raw = path.read_bytes()
        text = raw.decode("utf-8")
        if MARKER in text:
            return None

        if replacement is not None:
            policy = PatchPolicy.REPLACE_SCRIPT
            new_text = render_replacement(replacement)
            count = 0
        else:
            if rule is None or not re.search(rule.detect, text):
                return None
            new_text, count = stub_calls(text, rule)
            if count == 0:
                return None
            policy = PatchPolicy.STUB_CALLS
            new_text = _with_marker(new_text, rule.comment, policy)
            if path.suffix == ".py" and _parses(text) and not _parses(new_text):
                raise SyntaxError(f"stubbing call sites would break the syntax of {path.name}")

        if not path.stat().st_mode & stat.S_IWUSR:
            raise PermissionError(f"{path.name} is not writable")

        backup = _free_backup_path(path)
        shutil.copy2(path, backup)
        path.write_bytes(new_text.encode("utf-8"))
        logger.debug("Neutralized %s (%s, %d call sites)", path, policy.value, count)
        return NeutralizationPatch(
            path=path,
            backup_path=backup,
            policy=policy,
            original=text,
            replacement=new_text,
            original_digest=f"sha256:{sha256_hex(raw)}",
            call_sites=count,
        )

    def restore(self, tree: Path) -> list[Path]:
        """Move every backup written by ``neutralize`` back into place.

        Only files still carrying the marker are restored, each from the
        backup ``neutralize`` wrote for it, so upstream ``.orig`` files
        shipped in the source are never touched.
        """
        restored: list[Path] = []
        for path in self._walk(Path(tree)):
            backups = [
                path.with_name(path.name + suffix)
                for suffix in (FALLBACK_BACKUP_SUFFIX, BACKUP_SUFFIX)
            ]
            backup = next((b for b in backups if b.is_file()), None)
            if backup is None or MARKER.encode() not in path.read_bytes():
                continue
            os.replace(backup, path)
            restored.append(path)
        return restored
