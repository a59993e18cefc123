"""Assembly & relocation: merge build outputs into one publishable tree.

Order matters and is fixed:

1. fresh staging directory beside the output location
2. copy (never move) every declared output into ``bin/`` / ``share/``
3. copy static assets
4. generate a fresh credential pair into ``share/``
5. rewrite build-time tokens in every generated config file
6. scan the shipped config for leftover tokens and build-machine paths
7. write the optional deterministic archive from staging
8. publish the tree with an atomic rename, then move the archive into place

Any failure removes the staging directory and the pending archive, so an
incomplete tree is never visible at the output location. An existing
directory is only ever replaced when it is empty or carries the marker
file of an earlier pinforge publish.
"""

from __future__ import annotations

import gzip
import logging
import os
import re
import shutil
import tarfile
import uuid
from pathlib import Path

from pinforge.core.credentials import CredentialGenerator, OpenSSLCredentialGenerator
from pinforge.core.errors import (
    BuildPathLeak,
    ConfigError,
    MissingExpectedArtifact,
    UnresolvedConfigToken,
)
from pinforge.models.assembly import AssemblyManifest, AssemblySpec, OutputTree
from pinforge.models.components import BuildResult, BuildStatus

logger = logging.getLogger(__name__)

# 1980-01-01, the same epoch exported to builds as SOURCE_DATE_EPOCH
ARCHIVE_MTIME = 315576000

# Marks a directory as published by pinforge and therefore safe to replace
OUTPUT_MARKER = ".pinforge-output"

_TOKEN_BOUNDARY = r"(?<![\w/.-])"


# ---------------------------------------------------------------------------
# Rewriting
# ---------------------------------------------------------------------------


def _token_pattern(token: str) -> str:
    # a leading "./" is part of the relative token and is replaced with it
    return rf"{_TOKEN_BOUNDARY}(?:\./)?{re.escape(token)}"


def rewrite(text: str, manifest: AssemblyManifest, *, subject: str = "") -> str:
    """Rewrite every token of ``manifest`` in one pass.

    Already-resolved install paths are matched first and left untouched,
    which makes the rewrite idempotent. Raises UnresolvedConfigToken when a
    required token appears neither raw nor resolved.
    """
    rules = manifest.rules
    if not rules:
        return text
    resolved = {rule.token: manifest.resolve(rule) for rule in rules}

    for rule in rules:
        if not rule.required:
            continue
        if resolved[rule.token] not in text and not re.search(_token_pattern(rule.token), text):
            raise UnresolvedConfigToken(
                f"{subject or 'config'}: expected token {rule.token!r} not found",
                subject=rule.token,
            )

    targets = sorted(set(resolved.values()), key=len, reverse=True)
    tokens = sorted(resolved, key=len, reverse=True)
    pattern = re.compile(
        "|".join(
            [f"(?P<t{i}>{re.escape(t)})" for i, t in enumerate(targets)]
            + [f"(?P<k{i}>{_token_pattern(k)})" for i, k in enumerate(tokens)]
        )
    )

    def _replace(match: re.Match[str]) -> str:
        group = match.lastgroup or ""
        if group.startswith("t"):
            return match.group(0)
        return resolved[tokens[int(group[1:])]]

    return pattern.sub(_replace, text)


def find_unrewritten(text: str, manifest: AssemblyManifest) -> list[str]:
    """Tokens of ``manifest`` still present anywhere in ``text`` outside resolved paths.

    Unlike ``rewrite`` this ignores token boundaries: an occurrence that
    ``rewrite`` refused to touch, such as ``static/404.html``, is still a
    build-time path and is reported.
    """
    stripped = text
    for target in sorted({manifest.resolve(r) for r in manifest.rules}, key=len, reverse=True):
        stripped = stripped.replace(target, "")
    return sorted({r.token for r in manifest.rules if r.token in stripped})


# ---------------------------------------------------------------------------
# Archive
# ---------------------------------------------------------------------------


def _normalize(info: tarfile.TarInfo) -> tarfile.TarInfo:
    info.mtime = ARCHIVE_MTIME
    info.uid = info.gid = 0
    info.uname = info.gname = ""
    return info


def write_archive(tree: Path, archive: Path, *, arcname: str | None = None) -> Path:
    """Write a reproducible ``.tar.gz`` of ``tree``.

    Members are sorted, timestamps and ownership fixed, and the only path
    prefix is ``arcname`` (the tree's own directory name by default). The
    output marker is not archived.
    """
    top = arcname or tree.name
    tmp = archive.with_name(f".{archive.name}.{uuid.uuid4().hex[:8]}")
    try:
        with open(tmp, "wb") as raw, gzip.GzipFile(
            filename="", mode="wb", fileobj=raw, mtime=0
        ) as gz, tarfile.open(fileobj=gz, mode="w", format=tarfile.PAX_FORMAT) as tar:
            tar.add(tree, arcname=top, recursive=False, filter=_normalize)
            for dirpath, dirnames, filenames in os.walk(tree):
                dirnames.sort()
                for name in sorted(dirnames + filenames):
                    path = Path(dirpath) / name
                    rel = path.relative_to(tree).as_posix()
                    if rel == OUTPUT_MARKER:
                        continue
                    tar.add(path, arcname=f"{top}/{rel}", recursive=False, filter=_normalize)
        os.replace(tmp, archive)
    finally:
        if tmp.exists():
            tmp.unlink()
    return archive


# ---------------------------------------------------------------------------
# Assembler
# ---------------------------------------------------------------------------


def check_relocatable(spec: AssemblySpec, archive: bool) -> None:
    """Refuse to archive a tree whose configs would point at this machine.

    Without an explicit ``install_prefix`` the rewritten config paths are the
    absolute output directory, which does not exist where the archive is
    extracted.
    """
    if archive and not spec.install_prefix:
        raise ConfigError(
            "assembly.archive requires an explicit assembly.install_prefix "
            "(the install location on the target machine)",
            subject="assembly.install_prefix",
        )


class Assembler:
    """Owns the staging directory and produces the OutputTree.

    Parameters
    ----------
    spec:
        Static assembly description from the project file.
    credentials:
        Credential backend; openssl by default.
    """

    def __init__(
        self,
        spec: AssemblySpec,
        credentials: CredentialGenerator | None = None,
    ) -> None:
        self._spec = spec
        self._credentials = credentials or OpenSSLCredentialGenerator()

    def manifest(self, install_prefix: str) -> AssemblyManifest:
        return AssemblyManifest(install_prefix=install_prefix, rules=self._spec.rewrites)

    def assemble(
        self,
        results: list[BuildResult],
        output_dir: Path,
        *,
        archive: bool | None = None,
        build_roots: list[Path] | None = None,
    ) -> OutputTree:
        """Merge ``results`` into ``output_dir``.

        ``build_roots`` are build-machine directories that must not appear
        in any shipped config file.
        """
        output_dir = Path(output_dir).resolve()
        want_archive = self._spec.archive if archive is None else archive
        check_relocatable(self._spec, want_archive)
        install_prefix = self._spec.install_prefix or str(output_dir)
        manifest = self.manifest(install_prefix)

        output_dir.parent.mkdir(parents=True, exist_ok=True)
        staging = output_dir.parent / f".{output_dir.name}.staging-{uuid.uuid4().hex[:8]}"
        staging.mkdir()
        leaks = [str(Path(p).resolve()) for p in build_roots or []] + [str(staging)]
        if want_archive and install_prefix.rstrip("/") != str(output_dir):
            # the archive is extracted elsewhere; the local output path is a leak
            leaks.append(str(output_dir))
        archive_path = output_dir.with_name(f"{output_dir.name}.tar.gz")
        pending: Path | None = None
        try:
            tree = self._stage(results, staging, manifest, leaks)
            if want_archive:
                pending = write_archive(
                    staging,
                    archive_path.with_name(f".{archive_path.name}.pending-{uuid.uuid4().hex[:8]}"),
                    arcname=output_dir.name,
                )
            self._publish(staging, output_dir)
            if pending is not None:
                os.replace(pending, archive_path)
        except BaseException:
            if staging.exists():
                shutil.rmtree(staging)
            if pending is not None and pending.exists():
                pending.unlink()
            raise

        tree = tree.model_copy(
            update={
                "root": output_dir,
                "executables": [output_dir / p for p in tree.executables],
                "share_files": [output_dir / p for p in tree.share_files],
                "config_files": [output_dir / p for p in tree.config_files],
                "archive": archive_path if want_archive else None,
            }
        )
        logger.info("Assembled %s (%d executables)", output_dir, len(tree.executables))
        return tree

    def _stage(
        self,
        results: list[BuildResult],
        staging: Path,
        manifest: AssemblyManifest,
        leaks: list[str],
    ) -> OutputTree:
        (staging / "bin").mkdir()
        share = staging / "share"
        share.mkdir()
        by_name = {r.component: r for r in results if r.status == BuildStatus.PASSED}
        extensions: list[str] = []

        for result in sorted(by_name.values(), key=lambda r: r.component):
            for output in result.outputs:
                src = result.artifacts[output.path]
                dest_dir = self._inside(staging, output.dest, result.component)
                if src.is_dir():
                    shutil.copytree(
                        src,
                        dest_dir,
                        symlinks=True,
                        dirs_exist_ok=True,
                        ignore=shutil.ignore_patterns(*result.exclude),
                    )
                    ext_root = f"share/{self._spec.extensions_dir}/"
                    if output.dest.startswith(ext_root):
                        extensions.append(output.dest[len(ext_root):])
                else:
                    dest_dir.mkdir(parents=True, exist_ok=True)
                    dest = dest_dir / src.name
                    shutil.copy2(src, dest)
                    if output.executable:
                        dest.chmod(0o755)

        for asset in self._spec.assets:
            src = self._component_file(by_name, asset.component, asset.path)
            dest = self._inside(share, asset.dest or Path(asset.path).name, asset.component)
            if src.is_dir():
                shutil.copytree(src, dest, symlinks=True, dirs_exist_ok=True)
            else:
                dest.parent.mkdir(parents=True, exist_ok=True)
                shutil.copy2(src, dest)

        if self._spec.credentials.enabled:
            self._credentials.generate(self._spec.credentials, share)

        config_files: list[Path] = []
        for tpl in self._spec.templates:
            src = self._component_file(by_name, tpl.component, tpl.path)
            dest = self._inside(share, tpl.dest or Path(tpl.path).name, tpl.component)
            dest.parent.mkdir(parents=True, exist_ok=True)
            text = rewrite(src.read_text(encoding="utf-8"), manifest, subject=tpl.path)
            dest.write_text(text, encoding="utf-8")
            config_files.append(dest)

        for path in config_files:
            self._scan(path, staging, manifest, leaks)

        executables = sorted(
            p.relative_to(staging) for p in (staging / "bin").rglob("*") if p.is_file()
        )
        share_files = sorted(p.relative_to(staging) for p in share.rglob("*") if p.is_file())
        (staging / OUTPUT_MARKER).write_text("published by pinforge; replaced on the next build\n")
        return OutputTree(
            root=staging,
            install_prefix=manifest.install_prefix,
            executables=executables,
            share_files=share_files,
            config_files=[p.relative_to(staging) for p in config_files],
            extensions=sorted(extensions),
        )

    @staticmethod
    def _scan(path: Path, staging: Path, manifest: AssemblyManifest, leaks: list[str]) -> None:
        text = path.read_text(encoding="utf-8")
        rel = path.relative_to(staging).as_posix()
        left = find_unrewritten(text, manifest)
        if left:
            raise UnresolvedConfigToken(
                f"{rel}: unrewritten build-time tokens {left}", subject=left[0]
            )
        for root in leaks:
            if re.search(re.escape(root) + r"(?![\w.-])", text):
                raise BuildPathLeak(
                    f"{rel}: contains build-machine path {root}", subject=rel
                )

    @staticmethod
    def _inside(base: Path, rel: str, subject: str) -> Path:
        target = (base / rel).resolve()
        if target != base.resolve() and base.resolve() not in target.parents:
            raise ConfigError(f"{subject}: destination {rel!r} escapes the output tree", subject=subject)
        return target

    @staticmethod
    def _component_file(by_name: dict[str, BuildResult], component: str, rel: str) -> Path:
        result = by_name.get(component)
        src = result.tree / rel if result else None
        if src is None or not src.exists():
            raise MissingExpectedArtifact(
                f"{component}: assembly input {rel!r} not found", subject=component
            )
        return src

    @staticmethod
    def _publish(staging: Path, output_dir: Path) -> None:
        if output_dir.exists() or output_dir.is_symlink():
            owned = output_dir.is_dir() and not output_dir.is_symlink() and (
                (output_dir / OUTPUT_MARKER).is_file() or not any(output_dir.iterdir())
            )
            if not owned:
                raise ConfigError(
                    f"Refusing to replace {output_dir}: it exists and was not "
                    f"published by pinforge (no {OUTPUT_MARKER})",
                    subject=str(output_dir),
                )
            retired = output_dir.with_name(f".{output_dir.name}.old-{uuid.uuid4().hex[:8]}")
            os.replace(output_dir, retired)
            os.replace(staging, output_dir)
            shutil.rmtree(retired)
        else:
            os.replace(staging, output_dir)
