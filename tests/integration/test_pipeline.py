"""End-to-end orchestration runs over a small synthetic suite.

The suite has a service and a client (primary components), two extension
modules of which one always fails, a dependency resolved through a static
index, reference data, a fetch script to neutralize and a profile whose
build-time tokens are rewritten at assembly.
"""

from __future__ import annotations

import json
import os
import shlex
import shutil
import subprocess
import sys
import tarfile
from datetime import datetime
from pathlib import Path

import pytest

from conftest import make_tarball, pin_of
from pinforge.config import ForgeSettings
from pinforge.core.orchestrator import Orchestrator
from pinforge.models.config import ProjectConfig
from pinforge.models.stages import PipelineState

PY = shlex.quote(sys.executable)

_SERVER_BUILD = """\
import json
import os

assert os.path.isfile("vendor/libfoo-1.2.0/foo.h"), "vendor bundle missing"
assert os.path.isfile("vendor/vendor.lock.json"), "lock manifest missing"
with open("data/privileges/privileges.json") as f:
    assert json.load(f)["privileges"] == ["read", "write"]
with open("scripts/fetch_assets.sh") as f:
    assert "curl" not in f.read(), "fetch script was not neutralized"
assert os.environ["GOFLAGS"] == "-mod=vendor"
os.makedirs("out", exist_ok=True)
with open("out/suite-server", "w") as f:
    f.write("#!/bin/sh\\necho suite-server\\n")
"""

_CLIENT_BUILD = """\
import os
os.makedirs("out", exist_ok=True)
with open("out/suite-client", "w") as f:
    f.write("#!/bin/sh\\necho suite-client\\n")
"""

_GOOD_EXT = """\
with open("module.txt", "w") as f:
    f.write("good module\\n")
"""

_BAD_EXT = """\
import sys
print("linker error: undefined reference")
sys.exit(1)
"""

_FETCH_SCRIPT = """\
#!/bin/sh
set -e
curl -fsSL https://assets.example.org/bundle.tar.gz -o bundle.tar.gz
"""

_PROFILE = {
    "cert": "server.rsa.crt",
    "key": "server.rsa.key",
    "extenders": "extenders/",
    "error_page": "404.html",
}


class Suite:
    """Synthetic upstream: tarballs, a dependency index, a project mapping."""

    def __init__(self, root: Path) -> None:
        self.root = root
        self.source = make_tarball(
            root / "upstream" / "suite-1.0.0.tar.gz",
            {
                "server/build.py": _SERVER_BUILD,
                "server/profile.json": json.dumps(_PROFILE, indent=2),
                "server/static/404.html": "<h1>404</h1>\n",
                "server/scripts/fetch_assets.sh": _FETCH_SCRIPT,
                "server/data/privileges/README": "drop privileges.json here\n",
                "client/build.py": _CLIENT_BUILD,
                "extenders/good/Makefile": "all:\n",
                "extenders/good/build.py": _GOOD_EXT,
                "extenders/bad/Makefile": "all:\n",
                "extenders/bad/build.py": _BAD_EXT,
            },
            top="suite-1.0.0",
        )
        self.privileges = root / "upstream" / "privileges.json"
        self.privileges.write_text(json.dumps({"privileges": ["read", "write"]}))
        self.libfoo = make_tarball(
            root / "upstream" / "libfoo-1.2.0.tar.gz",
            {"foo.h": "int foo(void);\n"},
            top="libfoo-1.2.0",
        )
        self.index = root / "index"
        (self.index / "libfoo").mkdir(parents=True)
        (self.index / "libfoo" / "1.2.0.json").write_text(
            json.dumps({"url": self.libfoo.as_uri(), "sha256": pin_of(self.libfoo)})
        )

    def mapping(self, **assembly) -> dict:
        return {
            "project": {"name": "suite", "version": "1.0.0"},
            "registry": {"index_url": self.index.as_uri()},
            "artifacts": [
                {"name": "source", "url": self.source.as_uri(), "hash": pin_of(self.source)},
                {
                    "name": "privilege-data",
                    "url": self.privileges.as_uri(),
                    "hash": pin_of(self.privileges),
                },
            ],
            "components": [
                {
                    "name": "server",
                    "kind": "service",
                    "source": "source",
                    "subdir": "server",
                    "commands": [f"{PY} build.py"],
                    "outputs": [{"path": "out/suite-server", "executable": True}],
                    "dependencies": [{"name": "libfoo", "version": "1.2.0"}],
                },
                {
                    "name": "client",
                    "kind": "client",
                    "source": "source",
                    "subdir": "client",
                    "commands": [f"{PY} build.py"],
                    "outputs": [{"path": "out/suite-client", "executable": True}],
                },
            ],
            "extension_sets": [
                {
                    "name": "extenders",
                    "source": "source",
                    "subdir": "extenders",
                    "commands": [f"{PY} build.py"],
                    "fallback_commands": [],
                    "requires_tools": [],
                }
            ],
            "reference_data": [
                {
                    "artifact": "privilege-data",
                    "dir_pattern": "privileges",
                    "filename": "privileges.json",
                }
            ],
            "assembly": {
                "templates": [{"component": "server", "path": "profile.json"}],
                "assets": [{"component": "server", "path": "static/404.html"}],
                "rewrites": [
                    {"token": "server.rsa.crt", "target": "share/server.rsa.crt"},
                    {"token": "server.rsa.key", "target": "share/server.rsa.key"},
                    {"token": "extenders/", "target": "share/extenders/"},
                    {"token": "404.html", "target": "share/404.html"},
                ],
                **assembly,
            },
        }

    def config(self, **assembly) -> ProjectConfig:
        return ProjectConfig.from_mapping(self.mapping(**assembly))


@pytest.fixture
def suite(tmp_dir) -> Suite:
    return Suite(tmp_dir)


def _settings(base: Path) -> ForgeSettings:
    return ForgeSettings(
        work_dir=base / "work",
        cache_dir=base / "cache",
        ledger_path=base / "ledger.db",
        sandbox="none",
        max_workers=4,
    )


def _cert_days(cert: Path) -> int:
    def _date(field: str) -> datetime:
        out = subprocess.run(
            ["openssl", "x509", "-noout", f"-{field}", "-in", str(cert)],
            capture_output=True,
            text=True,
            check=True,
        ).stdout.strip()
        return datetime.strptime(out.split("=", 1)[1], "%b %d %H:%M:%S %Y %Z")

    return (_date("enddate") - _date("startdate")).days


# ---------------------------------------------------------------------------
# Successful builds
# ---------------------------------------------------------------------------


class TestSuccessfulBuild:
    @pytest.mark.skipif(shutil.which("openssl") is None, reason="openssl not installed")
    def test_full_build_with_real_credentials(self, suite, tmp_dir):
        output = tmp_dir / "result"
        report = Orchestrator(suite.config(), _settings(tmp_dir)).run(output)

        assert report.state == PipelineState.DONE, report.error
        assert report.exit_code == 0
        assert report.built == ["client", "extenders.good", "server"]
        assert report.skipped == ["extenders.bad"]
        assert os.access(output / "bin" / "suite-server", os.X_OK)
        assert os.access(output / "bin" / "suite-client", os.X_OK)

        cert = output / "share" / "server.rsa.crt"
        assert "PRIVATE KEY" in (output / "share" / "server.rsa.key").read_text()
        assert _cert_days(cert) == 3650

        profile = json.loads((output / "share" / "profile.json").read_text())
        prefix = str(output.resolve())
        assert profile == {
            "cert": f"{prefix}/share/server.rsa.crt",
            "key": f"{prefix}/share/server.rsa.key",
            "extenders": f"{prefix}/share/extenders/",
            "error_page": f"{prefix}/share/404.html",
        }
        assert (output / "share" / "extenders" / "good" / "module.txt").is_file()
        assert not (output / "share" / "extenders" / "bad").exists()

    def test_report_contents(self, suite, tmp_dir, fake_credentials):
        report = Orchestrator(
            suite.config(), _settings(tmp_dir), credential_generator=fake_credentials
        ).run(tmp_dir / "result")

        assert report.succeeded, report.error
        assert report.pins["source"] == pin_of(suite.source)
        assert report.pins["privilege-data"] == pin_of(suite.privileges)
        assert report.pins["server:libfoo@1.2.0"] == pin_of(suite.libfoo)
        assert set(report.vendor_bundles) == {"server"}

        kinds = {(w.kind, w.subject) for w in report.warnings}
        assert ("component_skipped", "extenders.bad") in kinds
        assert ("vendor_hash_unpinned", "server") in kinds
        assert ("sandbox_unavailable", "sandbox") in kinds
        skipped = next(w for w in report.warnings if w.subject == "extenders.bad")
        assert skipped.message.startswith("build failed")

    def test_ledger_records_run(self, suite, tmp_dir, fake_credentials):
        orch = Orchestrator(
            suite.config(), _settings(tmp_dir), credential_generator=fake_credentials
        )
        report = orch.run(tmp_dir / "result")

        assert orch.ledger.verify_chain(report.run_id) is True
        pipeline = [
            e.transition for e in orch.ledger.get_subject_history(report.run_id, "pipeline")
        ]
        assert pipeline[0] == "pending->fetching"
        assert pipeline[-1] == "assembling->done"
        build_bad = orch.ledger.get_subject_history(report.run_id, "build:extenders.bad")
        assert build_bad[-1].transition == "running->failed"

    def test_work_dir_removed_cache_kept(self, suite, tmp_dir, fake_credentials):
        settings = _settings(tmp_dir)
        report = Orchestrator(
            suite.config(), settings, credential_generator=fake_credentials
        ).run(tmp_dir / "result")
        assert not (settings.work_dir / report.run_id).exists()
        assert any((settings.cache_dir / "blobs").iterdir())

    def test_archive(self, suite, tmp_dir, fake_credentials):
        report = Orchestrator(
            suite.config(archive=True, install_prefix="/opt/suite"),
            _settings(tmp_dir),
            credential_generator=fake_credentials,
        ).run(tmp_dir / "result")
        assert report.succeeded, report.error
        assert report.archive == (tmp_dir / "result.tar.gz").resolve()

        target = tmp_dir / "elsewhere"
        with tarfile.open(report.archive) as tar:
            tar.extractall(target, filter="data")
        profile = (target / "result" / "share" / "profile.json").read_text()
        assert "/opt/suite/share/404.html" in profile
        assert str(tmp_dir.resolve()) not in profile

    def test_archive_requires_install_prefix(self, suite, tmp_dir, fake_credentials):
        report = Orchestrator(
            suite.config(archive=True), _settings(tmp_dir), credential_generator=fake_credentials
        ).run(tmp_dir / "result")
        assert report.exit_code == 1
        assert report.error.kind == "ConfigError"
        assert report.error.subject == "assembly.install_prefix"
        assert not (tmp_dir / "result").exists()
        assert not (tmp_dir / "result.tar.gz").exists()


# ---------------------------------------------------------------------------
# Failures
# ---------------------------------------------------------------------------


class TestFailures:
    def test_corrupted_source_fails_fetch(self, suite, tmp_dir, fake_credentials):
        config = suite.config()
        data = bytearray(suite.source.read_bytes())
        data[len(data) // 2] ^= 0xFF
        suite.source.write_bytes(bytes(data))

        output = tmp_dir / "result"
        orch = Orchestrator(config, _settings(tmp_dir), credential_generator=fake_credentials)
        report = orch.run(output)

        assert report.state == PipelineState.FAILED
        assert report.exit_code == 3
        assert report.error.kind == "IntegrityMismatch"
        assert report.error.subject == "source"
        assert not output.exists()
        last = orch.ledger.get_subject_history(report.run_id, "pipeline")[-1]
        assert last.transition == "fetching->failed"

    def test_unpinned_artifact_refused_before_fetch(self, suite, tmp_dir, fake_credentials):
        mapping = suite.mapping()
        mapping["artifacts"][1]["hash"] = ""
        settings = _settings(tmp_dir)
        report = Orchestrator(
            ProjectConfig.from_mapping(mapping), settings, credential_generator=fake_credentials
        ).run(tmp_dir / "result")

        assert report.exit_code == 3
        assert report.error.kind == "UnpinnedDependency"
        assert report.error.subject == "privilege-data"
        assert report.pins == {}

    def test_registry_unavailable_without_cache(self, suite, tmp_dir, fake_credentials):
        shutil.rmtree(suite.index)
        output = tmp_dir / "result"
        report = Orchestrator(
            suite.config(), _settings(tmp_dir), credential_generator=fake_credentials
        ).run(output)

        assert report.exit_code == 5
        assert report.error.kind == "DependencyResolutionUnavailable"
        assert report.error.subject == "libfoo@1.2.0"
        assert not output.exists()

    def test_registry_unavailable_with_cached_resolution(self, suite, tmp_dir, fake_credentials):
        settings = _settings(tmp_dir)
        first = Orchestrator(suite.config(), settings, credential_generator=fake_credentials)
        assert first.run(tmp_dir / "one").succeeded

        shutil.rmtree(suite.index)
        second = Orchestrator(suite.config(), settings, credential_generator=fake_credentials)
        report = second.run(tmp_dir / "two")
        assert report.succeeded, report.error
        assert report.pins["server:libfoo@1.2.0"] == pin_of(suite.libfoo)

    def test_required_component_failure_keeps_previous_output(
        self, suite, tmp_dir, fake_credentials
    ):
        mapping = suite.mapping()
        mapping["components"][1]["commands"] = [f"{PY} -c 'raise SystemExit(3)'"]
        output = tmp_dir / "result"
        output.mkdir()
        (output / "previous.txt").write_text("last good build")

        report = Orchestrator(
            ProjectConfig.from_mapping(mapping), _settings(tmp_dir), credential_generator=fake_credentials
        ).run(output)

        assert report.exit_code == 4
        assert report.error.kind == "ComponentBuildFailed"
        assert report.error.subject == "client"
        assert (output / "previous.txt").read_text() == "last good build"
        assert [p.name for p in tmp_dir.iterdir() if ".staging-" in p.name] == []

    def test_unresolved_token_fails_assembly(self, suite, tmp_dir, fake_credentials):
        mapping = suite.mapping()
        mapping["assembly"]["rewrites"].append({"token": "motd.txt", "target": "share/motd.txt"})
        output = tmp_dir / "result"
        report = Orchestrator(
            ProjectConfig.from_mapping(mapping), _settings(tmp_dir), credential_generator=fake_credentials
        ).run(output)

        assert report.exit_code == 6
        assert report.error.kind == "UnresolvedConfigToken"
        assert not output.exists()


# ---------------------------------------------------------------------------
# Reproducibility
# ---------------------------------------------------------------------------


class TestReproducibility:
    def test_two_clean_runs_match(self, suite, tmp_dir, fake_credentials):
        config = suite.config(install_prefix="/opt/suite")
        reports = []
        for name in ("a", "b"):
            base = tmp_dir / name
            reports.append(
                Orchestrator(config, _settings(base), credential_generator=fake_credentials).run(
                    base / "result"
                )
            )

        a, b = reports
        assert a.succeeded and b.succeeded
        assert a.pins == b.pins
        assert a.vendor_bundles == b.vendor_bundles

        [lock_a] = (tmp_dir / "a" / "cache" / "vendor").glob("server-*/vendor.lock.json")
        [lock_b] = (tmp_dir / "b" / "cache" / "vendor").glob("server-*/vendor.lock.json")
        assert lock_a.read_bytes() == lock_b.read_bytes()

        for rel in ("share/profile.json", "bin/suite-server", "bin/suite-client"):
            assert (tmp_dir / "a" / "result" / rel).read_bytes() == (
                tmp_dir / "b" / "result" / rel
            ).read_bytes()

    def test_second_run_reuses_cache(self, suite, tmp_dir, fake_credentials):
        settings = _settings(tmp_dir)
        config = suite.config()
        Orchestrator(config, settings, credential_generator=fake_credentials).run(tmp_dir / "r1")
        # Upstream disappears; every input is served from the verified cache.
        for path in (suite.source, suite.privileges, suite.libfoo):
            path.unlink()
        report = Orchestrator(config, settings, credential_generator=fake_credentials).run(
            tmp_dir / "r2"
        )
        assert report.succeeded, report.error
