"""Tests for the install pipeline."""

import asyncio
import io
import json
import os
import threading
import time
import zipfile
from pathlib import Path

import pytest
import script_vendor.installer as installer_module
from script_vendor import AliasStatus
from script_vendor import AliasTakenError
from script_vendor import Archive
from script_vendor import ExtractionError
from script_vendor import FetcherRegistry
from script_vendor import FetchError
from script_vendor import Installer
from script_vendor import InstallerConfig
from script_vendor import InvalidSpecifierError
from script_vendor import ManifestCorruptError
from script_vendor import ManifestWriteError
from script_vendor import NotInstalledError
from script_vendor import UnsupportedPlatformError


def make_zip(files: dict[str, str]) -> bytes:
    buf = io.BytesIO()
    with zipfile.ZipFile(buf, "w") as zf:
        for name, content in files.items():
            zf.writestr(name, content)
    return buf.getvalue()


def repo_zip(repo: str) -> bytes:
    return make_zip(
        {
            f"{repo}-master/index.abs": f"echo('{repo}')",
            f"{repo}-master/lib/util.abs": "return 1",
        }
    )


class MockFetcher:
    """In-memory fetcher serving one archive per repo name."""

    def __init__(self, platform: str = "platformX", failures: int = 0, delay: float = 0):
        self.platform = platform
        self.failures = failures
        self.delay = delay
        self.calls: list[str] = []
        self.active = 0
        self.max_active = 0
        self.archives: dict[str, bytes] = {}

    async def fetch(self, specifier) -> Archive:
        self.calls.append(specifier.canonical)
        self.active += 1
        self.max_active = max(self.max_active, self.active)
        try:
            await asyncio.sleep(self.delay)
            if self.failures:
                self.failures -= 1
                raise FetchError("connection reset")
            data = self.archives.get(specifier.repo) or repo_zip(specifier.repo)
            return Archive(data=data, url=f"mock://{specifier.canonical}")
        finally:
            self.active -= 1


def make_installer(root: Path, fetcher: MockFetcher | None = None, **config) -> Installer:
    fetcher = fetcher or MockFetcher()
    return Installer(InstallerConfig(project_root=root, **config), fetchers=FetcherRegistry([fetcher]))


def read_manifest(root: Path) -> dict:
    return json.loads((root / "packages.abs.json").read_text())


@pytest.mark.asyncio
async def test_install_end_to_end(tmp_path):
    """Test fresh install writes the vendor tree and the alias."""
    installer = make_installer(tmp_path)

    module = await installer.install("platformX/acme/widget")

    assert module.status == AliasStatus.ALIASED
    assert module.alias == "widget"
    assert module.reference == "widget"
    assert module.install_path == "vendor/platformX/acme/widget"
    assert read_manifest(tmp_path) == {"widget": "vendor/platformX/acme/widget"}

    vendor_dir = tmp_path / "vendor" / "platformX" / "acme" / "widget"
    assert module.vendor_dir == vendor_dir
    assert (vendor_dir / "index.abs").read_text() == "echo('widget')"
    assert (vendor_dir / "lib" / "util.abs").exists()
    assert 'require("widget")' in module.summary()


@pytest.mark.asyncio
async def test_install_twice_is_idempotent(tmp_path):
    """Test second install reports already-installed and leaves the manifest alone."""
    installer = make_installer(tmp_path)
    await installer.install("platformX/acme/widget")
    before = (tmp_path / "packages.abs.json").read_bytes()

    module = await installer.install("platformX/acme/widget")

    assert module.status == AliasStatus.ALREADY_INSTALLED
    assert module.reference == "widget"
    assert (tmp_path / "packages.abs.json").read_bytes() == before


@pytest.mark.asyncio
async def test_alias_conflict_keeps_manifest(tmp_path):
    """Test a taken alias yields alias-conflict and the full path as reference."""
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"foo": "/other/path"}))
    before = manifest_path.read_bytes()
    installer = make_installer(tmp_path)

    module = await installer.install("platformX/acme/foo")

    assert module.status == AliasStatus.ALIAS_CONFLICT
    assert module.alias is None
    assert module.candidate_alias == "foo"
    assert module.reference == "vendor/platformX/acme/foo"
    assert manifest_path.read_bytes() == before
    assert (tmp_path / "vendor" / "platformX" / "acme" / "foo" / "index.abs").exists()


@pytest.mark.asyncio
async def test_strict_aliases_fails_on_conflict(tmp_path):
    (tmp_path / "packages.abs.json").write_text(json.dumps({"foo": "/other/path"}))
    installer = make_installer(tmp_path, strict_aliases=True)

    with pytest.raises(AliasTakenError) as exc_info:
        await installer.install("platformX/acme/foo")

    assert exc_info.value.stage == "aliasing"
    assert read_manifest(tmp_path) == {"foo": "/other/path"}


@pytest.mark.asyncio
async def test_unrelated_entries_preserved(tmp_path):
    """Test a hand-added entry survives an install unchanged."""
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"bar": "./local/bar"}, indent=4) + "\n")
    installer = make_installer(tmp_path)

    await installer.install("platformX/acme/widget")

    text = manifest_path.read_text()
    assert '"bar": "./local/bar"' in text
    assert read_manifest(tmp_path) == {"bar": "./local/bar", "widget": "vendor/platformX/acme/widget"}


@pytest.mark.asyncio
async def test_persist_failure_keeps_manifest(tmp_path, monkeypatch):
    """Test interrupted persistence after extraction leaves the old manifest byte-identical."""
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"bar": "./local/bar"}, indent=4) + "\n")
    before = manifest_path.read_bytes()
    installer = make_installer(tmp_path)

    def failing_replace(src, dst):
        raise OSError("simulated write failure")

    monkeypatch.setattr(os, "replace", failing_replace)

    with pytest.raises(ManifestWriteError) as exc_info:
        await installer.install("platformX/acme/widget")

    assert exc_info.value.stage == "persisting"
    assert manifest_path.read_bytes() == before
    assert (tmp_path / "vendor" / "platformX" / "acme" / "widget" / "index.abs").exists()
    assert sorted(p.name for p in tmp_path.iterdir()) == ["packages.abs.json", "vendor"]


@pytest.mark.asyncio
async def test_path_traversal_archive_fails_install(tmp_path):
    fetcher = MockFetcher()
    fetcher.archives["widget"] = make_zip({"widget-master/index.abs": "x", "../../etc/passwd": "root"})
    installer = make_installer(tmp_path / "project", fetcher)

    with pytest.raises(ExtractionError) as exc_info:
        await installer.install("platformX/acme/widget")

    assert exc_info.value.stage == "extracting"
    assert not (tmp_path / "etc").exists()
    assert not (tmp_path / "project" / "packages.abs.json").exists()
    assert [p for p in tmp_path.rglob("*") if p.is_file()] == []


@pytest.mark.asyncio
async def test_fetch_error_reports_stage_and_specifier(tmp_path):
    """Test failures name the stage and the specifier."""
    installer = make_installer(tmp_path, MockFetcher(failures=1))

    with pytest.raises(FetchError) as exc_info:
        await installer.install("platformX/acme/widget")

    assert exc_info.value.stage == "fetching"
    assert exc_info.value.specifier == "platformX/acme/widget@master"
    assert "platformX/acme/widget@master" in str(exc_info.value)
    assert "stage fetching" in str(exc_info.value)
    assert not (tmp_path / "packages.abs.json").exists()


@pytest.mark.asyncio
async def test_fetch_retries_restart_install(tmp_path):
    fetcher = MockFetcher(failures=2)
    installer = make_installer(tmp_path, fetcher, fetch_retries=2, retry_backoff=0)

    module = await installer.install("platformX/acme/widget")

    assert module.status == AliasStatus.ALIASED
    assert len(fetcher.calls) == 3


@pytest.mark.asyncio
async def test_fetch_retries_exhausted(tmp_path):
    fetcher = MockFetcher(failures=5)
    installer = make_installer(tmp_path, fetcher, fetch_retries=1, retry_backoff=0)

    with pytest.raises(FetchError):
        await installer.install("platformX/acme/widget")

    assert len(fetcher.calls) == 2


@pytest.mark.asyncio
async def test_corrupt_manifest_fails_before_fetch(tmp_path):
    """Test a corrupt manifest stops the install without network or repair."""
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text("{broken")
    fetcher = MockFetcher()
    installer = make_installer(tmp_path, fetcher)

    with pytest.raises(ManifestCorruptError) as exc_info:
        await installer.install("platformX/acme/widget")

    assert exc_info.value.stage == "start"
    assert fetcher.calls == []
    assert manifest_path.read_text() == "{broken"


@pytest.mark.asyncio
async def test_unsupported_platform_fails_fast(tmp_path):
    fetcher = MockFetcher()
    installer = make_installer(tmp_path, fetcher)

    with pytest.raises(UnsupportedPlatformError) as exc_info:
        await installer.install("example.org/acme/widget")

    assert exc_info.value.stage == "start"
    assert exc_info.value.specifier == "example.org/acme/widget"
    assert fetcher.calls == []
    assert list(tmp_path.iterdir()) == []


@pytest.mark.asyncio
async def test_install_subpath(tmp_path):
    installer = make_installer(tmp_path)

    module = await installer.install("platformX/acme/widget/lib")

    assert module.alias == "lib"
    assert read_manifest(tmp_path) == {"lib": "vendor/platformX/acme/widget/lib"}


@pytest.mark.asyncio
async def test_install_missing_subpath(tmp_path):
    installer = make_installer(tmp_path)

    with pytest.raises(ExtractionError, match="not found in archive"):
        await installer.install("platformX/acme/widget/nope")

    assert not (tmp_path / "packages.abs.json").exists()


@pytest.mark.asyncio
async def test_batch_installs_distinct_modules(tmp_path):
    """Test concurrent installs in one batch both land in the manifest."""
    fetcher = MockFetcher(delay=0.01)
    installer = make_installer(tmp_path, fetcher)

    outcomes = await installer.install_many(["platformX/acme/widget", "platformX/acme/gadget"])

    assert [outcome.ok for outcome in outcomes] == [True, True]
    assert fetcher.max_active == 2
    assert read_manifest(tmp_path) == {
        "widget": "vendor/platformX/acme/widget",
        "gadget": "vendor/platformX/acme/gadget",
    }


@pytest.mark.asyncio
async def test_batch_respects_concurrency_limit(tmp_path):
    fetcher = MockFetcher(delay=0.01)
    installer = make_installer(tmp_path, fetcher, concurrency=1)

    outcomes = await installer.install_many(["platformX/acme/a", "platformX/acme/b", "platformX/acme/c"])

    assert all(outcome.ok for outcome in outcomes)
    assert fetcher.max_active == 1
    assert set(read_manifest(tmp_path)) == {"a", "b", "c"}


@pytest.mark.asyncio
async def test_batch_isolates_failures(tmp_path):
    """Test one failing module does not abort its siblings."""
    installer = make_installer(tmp_path)

    outcomes = await installer.install_many(
        ["platformX/acme/widget", "example.org/acme/x", "platformX/acme", "platformX/acme/gadget"]
    )

    assert [outcome.ok for outcome in outcomes] == [True, False, False, True]
    assert isinstance(outcomes[1].error, UnsupportedPlatformError)
    assert isinstance(outcomes[2].error, InvalidSpecifierError)
    assert outcomes[0].module is not None and outcomes[0].module.alias == "widget"
    assert set(read_manifest(tmp_path)) == {"widget", "gadget"}


@pytest.mark.asyncio
async def test_same_specifier_is_single_flight(tmp_path):
    """Test concurrent installs of one module run one after the other."""
    fetcher = MockFetcher(delay=0.01)
    installer = make_installer(tmp_path, fetcher)

    outcomes = await installer.install_many(["platformX/acme/widget", "platformX/acme/widget@master"])

    assert fetcher.max_active == 1
    statuses = sorted(outcome.module.status.value for outcome in outcomes if outcome.module)
    assert statuses == ["aliased", "already-installed"]
    assert read_manifest(tmp_path) == {"widget": "vendor/platformX/acme/widget"}


@pytest.mark.asyncio
async def test_cancelled_install_leaves_manifest_untouched(tmp_path):
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"bar": "./local/bar"}))
    before = manifest_path.read_bytes()
    installer = make_installer(tmp_path, MockFetcher(delay=10))

    task = asyncio.create_task(installer.install("platformX/acme/widget"))
    await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    assert manifest_path.read_bytes() == before


@pytest.mark.asyncio
async def test_custom_vendor_dir_and_manifest_name(tmp_path):
    installer = make_installer(tmp_path, vendor_dir="deps", manifest_name="aliases.json")

    module = await installer.install("platformX/acme/widget")

    assert module.install_path == "deps/platformX/acme/widget"
    assert json.loads((tmp_path / "aliases.json").read_text()) == {"widget": "deps/platformX/acme/widget"}
    assert (tmp_path / "deps" / "platformX" / "acme" / "widget" / "index.abs").exists()


@pytest.mark.asyncio
async def test_uninstall_removes_alias_and_vendor_dir(tmp_path):
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"bar": "./local/bar"}))
    installer = make_installer(tmp_path)
    await installer.install("platformX/acme/widget")

    removed = await installer.uninstall("platformX/acme/widget")

    assert removed == ["widget"]
    assert read_manifest(tmp_path) == {"bar": "./local/bar"}
    assert not (tmp_path / "vendor" / "platformX" / "acme" / "widget").exists()


@pytest.mark.asyncio
async def test_uninstall_subpath_keeps_shared_vendor_dir(tmp_path):
    installer = make_installer(tmp_path)
    await installer.install("platformX/acme/widget")
    await installer.install("platformX/acme/widget/lib")

    removed = await installer.uninstall("platformX/acme/widget/lib")

    assert removed == ["lib"]
    assert read_manifest(tmp_path) == {"widget": "vendor/platformX/acme/widget"}
    assert (tmp_path / "vendor" / "platformX" / "acme" / "widget" / "index.abs").exists()


@pytest.mark.asyncio
async def test_uninstall_not_installed(tmp_path):
    installer = make_installer(tmp_path)

    with pytest.raises(NotInstalledError, match="not installed"):
        await installer.uninstall("platformX/acme/widget")


def test_default_fetchers_from_config(tmp_path):
    installer = Installer(InstallerConfig(project_root=tmp_path, fetch_timeout=3.0))

    assert sorted(installer.fetchers.platforms()) == ["bitbucket.org", "github.com", "gitlab.com"]
    assert installer.fetchers.get("github.com").timeout == 3.0
    assert installer.store.manifest_path == tmp_path / "packages.abs.json"


@pytest.mark.asyncio
async def test_repo_and_subpath_extract_one_at_a_time(tmp_path, monkeypatch):
    """Test a repo and one of its sub-paths never extract into the shared tree concurrently."""
    real_extract = installer_module.extract
    guard = threading.Lock()
    active: dict[str, int] = {}
    peak: dict[str, int] = {}

    def tracking_extract(archive, destination):
        key = destination.relative_to(tmp_path).as_posix()
        with guard:
            active[key] = active.get(key, 0) + 1
            peak[key] = max(peak.get(key, 0), active[key])
        try:
            time.sleep(0.05)
            return real_extract(archive, destination)
        finally:
            with guard:
                active[key] -= 1

    monkeypatch.setattr(installer_module, "extract", tracking_extract)
    installer = make_installer(tmp_path)

    outcomes = await installer.install_many(["platformX/acme/widget", "platformX/acme/widget/lib"])

    assert [outcome.ok for outcome in outcomes] == [True, True]
    assert peak == {"vendor/platformX/acme/widget": 1}
    assert read_manifest(tmp_path) == {
        "widget": "vendor/platformX/acme/widget",
        "lib": "vendor/platformX/acme/widget/lib",
    }


@pytest.mark.asyncio
async def test_vendor_locks_released_after_batch(tmp_path):
    installer = make_installer(tmp_path, MockFetcher(delay=0.01))

    await installer.install_many(["platformX/acme/widget", "platformX/acme/widget", "platformX/acme/gadget"])
    await installer.uninstall("platformX/acme/gadget")

    assert installer._vendor_locks == {}
    assert installer._vendor_lock_users == {}


@pytest.mark.asyncio
async def test_cancel_during_extraction_leaves_manifest_untouched(tmp_path, monkeypatch):
    """Test cancelling while the archive is being unpacked never writes the manifest."""
    manifest_path = tmp_path / "packages.abs.json"
    manifest_path.write_text(json.dumps({"bar": "./local/bar"}))
    before = manifest_path.read_bytes()

    real_extract = installer_module.extract
    started = threading.Event()
    release = threading.Event()
    finished = threading.Event()

    def blocking_extract(archive, destination):
        started.set()
        release.wait(5)
        try:
            return real_extract(archive, destination)
        finally:
            finished.set()

    monkeypatch.setattr(installer_module, "extract", blocking_extract)
    installer = make_installer(tmp_path)

    task = asyncio.create_task(installer.install("platformX/acme/widget"))
    while not started.is_set():
        await asyncio.sleep(0.01)
    task.cancel()

    with pytest.raises(asyncio.CancelledError):
        await task

    release.set()
    await asyncio.to_thread(finished.wait, 5)

    assert manifest_path.read_bytes() == before
    assert installer._vendor_locks == {}


@pytest.mark.asyncio
async def test_unexpected_fetch_failure_keeps_cause(tmp_path):
    class BrokenFetcher(MockFetcher):
        async def fetch(self, specifier) -> Archive:
            raise RuntimeError("socket exploded")

    installer = make_installer(tmp_path, BrokenFetcher())

    with pytest.raises(FetchError) as exc_info:
        await installer.install("platformX/acme/widget")

    assert isinstance(exc_info.value.cause, RuntimeError)
    assert exc_info.value.__cause__ is exc_info.value.cause
    assert exc_info.value.stage == "fetching"
