import asyncio

import pytest

from hytainstall.core import config
from hytainstall.core.applier import PatchApplier
from hytainstall.core.catalog import VersionCatalog
from hytainstall.core.errors import DownloadError, InstallFailed
from hytainstall.core.installer import (
    VERSION_FILE_NAME,
    InstallationOrchestrator,
    create_orchestrator,
    game_dir,
    package_cache_name,
    read_installed_version,
    write_installed_version,
)
from hytainstall.core.models import Branch, GameVersion, InstallPhase, edge
from hytainstall.core.pathing import FullInstallRequired, UpdatePath
from hytainstall.core.progress import SILENT, Reporter
from hytainstall.core.transfer import ResilientTransfer

from conftest import ELF_CLIENT

BASE = "/patches/linux/amd64/release"


def _serve(server, packages):
    for (prev, target), mode in packages.items():
        server.add(f"{BASE}/{prev}/{target}.pwr", mode.encode())


def _pretend_installed(version: int) -> None:
    client = game_dir(Branch.release) / "Client" / "HytaleClient"
    client.parent.mkdir(parents=True, exist_ok=True)
    client.write_bytes(ELF_CLIENT)
    write_installed_version(game_dir(Branch.release), version)


def _v(n: int) -> GameVersion:
    return GameVersion(branch=Branch.release, version=n)


class CrashAfter23(PatchApplier):
    """Simulates the process dying right after butler finished 2 -> 3."""

    async def apply(self, package, install_dir, reporter=SILENT):
        result = await super().apply(package, install_dir, reporter)
        if package.name.endswith("_2_3.pwr"):
            raise RuntimeError("power loss")
        return result


@pytest.fixture
async def make_orch(patch_server, fake_butler, linux, fast_retry):
    transfers = []

    def factory(always_full=True, applier_cls=PatchApplier):
        http = ResilientTransfer(fast_retry)
        transfers.append(http)
        return InstallationOrchestrator(
            catalog=VersionCatalog(http, patch_server.url("/patches/linux/amd64")),
            applier=applier_cls(http, linux, tool_path=fake_butler),
            platform_info=linux,
            always_full_download=always_full,
            retry=fast_retry,
        )

    yield factory
    for http in transfers:
        await http.close()


# ──────────────────────────────────────────────
# Local state
# ──────────────────────────────────────────────
def test_version_marker_roundtrip_and_garbage(tmp_path):
    assert read_installed_version(tmp_path) == 0
    write_installed_version(tmp_path, 7)
    assert read_installed_version(tmp_path) == 7
    assert [p.name for p in tmp_path.iterdir()] == [VERSION_FILE_NAME]
    (tmp_path / VERSION_FILE_NAME).write_text("seven")
    assert read_installed_version(tmp_path) == 0


def test_layout():
    assert game_dir("beta") == config.INSTALL_DIR / "beta" / "package" / "game" / "latest"
    assert package_cache_name(Branch.pre_release, edge(3, 4)) == "pre-release_3_4.pwr"


# ──────────────────────────────────────────────
# Install flows
# ──────────────────────────────────────────────
async def test_fresh_install_downloads_only_the_full_package(patch_server, make_orch):
    _serve(patch_server, {(0, 1): "ok-elf", (0, 2): "ok-elf", (0, 3): "ok-elf"})
    phases = []
    orch = make_orch()

    installed = await orch.install(_v(3), Reporter(on_phase=phases.append))

    assert installed == 3
    assert read_installed_version(game_dir(Branch.release)) == 3
    assert patch_server.get_paths() == [f"{BASE}/0/3.pwr"]
    assert phases == [
        InstallPhase.checking_java,
        InstallPhase.checking_game,
        InstallPhase.downloading,
        InstallPhase.applying,
        InstallPhase.validating,
        InstallPhase.launchable,
    ]
    assert orch.is_installed(_v(3))


async def test_up_to_date_install_touches_nothing(patch_server, make_orch):
    _pretend_installed(3)
    orch = make_orch()

    assert await orch.install(_v(3)) == 3
    assert patch_server.requests == []
    assert orch.phase is InstallPhase.launchable


async def test_incremental_update_walks_the_patch_chain(patch_server, make_orch):
    _serve(patch_server, {
        (0, 1): "ok-elf", (0, 2): "ok-elf", (0, 3): "ok-elf",
        (1, 2): "ok-elf", (2, 3): "ok-elf",
    })
    _pretend_installed(1)
    orch = make_orch(always_full=False)

    assert await orch.install(_v(3)) == 3

    assert patch_server.get_paths() == [f"{BASE}/1/2.pwr", f"{BASE}/2/3.pwr"]
    assert read_installed_version(game_dir(Branch.release)) == 3


async def test_corrupted_patch_falls_back_to_full_install(patch_server, make_orch):
    _serve(patch_server, {(0, 1): "ok-elf", (0, 2): "ok-elf", (1, 2): "ok-garbage"})
    _pretend_installed(1)
    phases = []
    orch = make_orch(always_full=False)

    assert await orch.install(_v(2), Reporter(on_phase=phases.append)) == 2

    assert InstallPhase.corrupted in phases
    assert phases[-1] is InstallPhase.launchable
    assert patch_server.get_paths() == [f"{BASE}/1/2.pwr", f"{BASE}/0/2.pwr"]
    assert read_installed_version(game_dir(Branch.release)) == 2


async def test_failed_patch_falls_back_to_full_install(patch_server, make_orch):
    _serve(patch_server, {(0, 1): "ok-elf", (0, 2): "ok-elf", (1, 2): "fail"})
    _pretend_installed(1)
    orch = make_orch(always_full=False)

    assert await orch.install(_v(2)) == 2
    assert patch_server.get_paths()[-1] == f"{BASE}/0/2.pwr"


async def test_corrupted_full_install_is_fatal(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "ok-garbage"})
    orch = make_orch()

    with pytest.raises(InstallFailed, match="corrupted"):
        await orch.install(_v(2))

    assert orch.phase is InstallPhase.failed
    assert not (game_dir(Branch.release) / VERSION_FILE_NAME).exists()
    # no second fallback round
    assert patch_server.get_paths() == [f"{BASE}/0/2.pwr"]


async def test_failed_full_install_reports_the_butler_error(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "fail"})
    orch = make_orch()

    with pytest.raises(InstallFailed) as info:
        await orch.install(_v(2))

    assert "Patch could not be applied" in str(info.value)
    assert "patch does not match installed files" in str(info.value)
    assert "corrupted" not in str(info.value)
    assert orch.phase is InstallPhase.failed


async def test_unusable_butler_download_fails_the_install(patch_server, monkeypatch, linux, fast_retry):
    _serve(patch_server, {(0, 2): "ok-elf"})
    patch_server.add("/butler/linux-amd64/LATEST/archive/default", b"<html>captive portal</html>")
    monkeypatch.setattr(config, "BUTLER_URL",
                        patch_server.url("/butler/{channel}/LATEST/archive/default"))

    async with ResilientTransfer(fast_retry) as http:
        orch = InstallationOrchestrator(
            catalog=VersionCatalog(http, patch_server.url("/patches/linux/amd64")),
            applier=PatchApplier(http, linux),
            platform_info=linux,
            retry=fast_retry,
        )
        with pytest.raises(InstallFailed, match="butler"):
            await orch.install(_v(2))

    assert orch.phase is InstallPhase.failed
    assert f"{BASE}/0/2.pwr" not in patch_server.get_paths()


async def test_download_failure_surfaces_as_install_failed(patch_server, make_orch):
    orch = make_orch()

    with pytest.raises(InstallFailed) as info:
        await orch.install(_v(2))

    assert isinstance(info.value.__cause__, DownloadError)
    assert orch.phase is InstallPhase.failed


async def test_crash_mid_edge_resumes_from_last_validated_version(patch_server, make_orch):
    _serve(patch_server, {
        (0, 1): "ok-elf", (0, 2): "ok-elf", (0, 3): "ok-elf",
        (1, 2): "ok-elf", (2, 3): "ok-elf",
    })
    _pretend_installed(1)

    with pytest.raises(RuntimeError, match="power loss"):
        await make_orch(always_full=False, applier_cls=CrashAfter23).install(_v(3))

    # 1 -> 2 was applied and validated, 2 -> 3 never got that far
    assert read_installed_version(game_dir(Branch.release)) == 2

    orch = make_orch(always_full=False)
    plan = await orch.plan(_v(3), installed=2)
    assert plan == UpdatePath(edges=[edge(2, 3)])

    patch_server.requests.clear()
    assert await orch.install(_v(3)) == 3
    # the 2 -> 3 package was already complete in the cache
    assert f"{BASE}/2/3.pwr" not in patch_server.get_paths()


async def test_cached_package_is_reused(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "ok-elf"})
    cached = config.CACHE_DIR / "release_0_2.pwr"
    cached.write_bytes(b"ok-elf")

    assert await make_orch().install(_v(2)) == 2
    assert patch_server.get_paths() == []


async def test_stale_cached_package_is_downloaded_again(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "ok-elf"})
    (config.CACHE_DIR / "release_0_2.pwr").write_bytes(b"trunc")

    assert await make_orch().install(_v(2)) == 2
    assert patch_server.get_paths() == [f"{BASE}/0/2.pwr"]


async def test_reinstall_wipes_game_and_cached_packages(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "ok-elf"})
    orch = make_orch()
    await orch.install(_v(2))
    marker = game_dir(Branch.release) / "mods.txt"
    marker.write_text("user file")

    assert await orch.reinstall(_v(2)) == 2

    assert not marker.exists()
    assert patch_server.get_paths() == [f"{BASE}/0/2.pwr", f"{BASE}/0/2.pwr"]


# ──────────────────────────────────────────────
# Planning
# ──────────────────────────────────────────────
async def test_plan_prefers_full_install_for_fresh_or_forced(make_orch):
    assert await make_orch(always_full=False).plan(_v(4), installed=0) == FullInstallRequired(target=4)
    assert await make_orch(always_full=True).plan(_v(4), installed=3) == FullInstallRequired(target=4)


async def test_plan_falls_back_to_full_when_nothing_to_apply(patch_server, make_orch):
    _serve(patch_server, {(0, 3): "ok-elf"})
    orch = make_orch(always_full=False)
    # marker says 3 but the client is missing, or the user wants to go back to 2
    assert await orch.plan(_v(3), installed=3) == FullInstallRequired(target=3)
    assert await orch.plan(_v(2), installed=3) == FullInstallRequired(target=2)


async def test_catalog_is_cached_per_session(patch_server, make_orch):
    _serve(patch_server, {(0, 1): "ok-elf"})
    orch = make_orch(always_full=False)

    first = await orch.catalog("release")
    probes = patch_server.count("HEAD")
    assert await orch.catalog(Branch.release) is first
    assert patch_server.count("HEAD") == probes
    await orch.catalog(Branch.release, refresh=True)
    assert patch_server.count("HEAD") == 2 * probes


async def test_create_orchestrator_reads_settings(linux):
    cfg = {**config.read_config(), "alwaysFullDownload": False,
           "useMirror": True, "mirrorUrl": "https://mirror.example/p"}
    async with ResilientTransfer() as http:
        orch = create_orchestrator(http, linux, cfg)
    assert orch.always_full_download is False
    assert orch.catalog_service.package_url("beta", 1, 2) == "https://mirror.example/p/beta/1/2.pwr"
    assert orch.jre is not None


async def test_full_download_override_is_per_call(patch_server, make_orch):
    _serve(patch_server, {
        (0, 1): "ok-elf", (0, 2): "ok-elf", (0, 3): "ok-elf",
        (1, 2): "ok-elf", (2, 3): "ok-elf",
    })
    _pretend_installed(1)
    orch = make_orch(always_full=True)

    assert await orch.install(_v(3), full_download=False) == 3

    assert patch_server.get_paths() == [f"{BASE}/1/2.pwr", f"{BASE}/2/3.pwr"]
    assert orch.always_full_download is True
    assert await orch.plan(_v(4), installed=3) == FullInstallRequired(target=4)


# ──────────────────────────────────────────────
# Cancellation
# ──────────────────────────────────────────────
async def test_cancel_during_download_keeps_the_marker(patch_server, make_orch):
    _serve(patch_server, {(0, 2): "ok-elf"})
    patch_server.stall.add(f"{BASE}/0/2.pwr")
    _pretend_installed(1)
    task = asyncio.create_task(make_orch().install(_v(2)))

    await asyncio.wait_for(patch_server.stalled.wait(), timeout=5)
    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert read_installed_version(game_dir(Branch.release)) == 1


async def test_cancel_during_apply_keeps_the_marker(patch_server, make_orch):
    _serve(patch_server, {(0, 1): "ok-elf", (0, 2): "ok-elf", (1, 2): "sleep"})
    _pretend_installed(1)
    orch = make_orch(always_full=False)
    task = asyncio.create_task(orch.install(_v(2)))

    started = game_dir(Branch.release) / "staging_entries"
    for _ in range(200):
        if started.exists():
            break
        await asyncio.sleep(0.05)
    assert started.exists()

    task.cancel()
    with pytest.raises(asyncio.CancelledError):
        await task

    assert read_installed_version(game_dir(Branch.release)) == 1
    assert orch.phase is not InstallPhase.launchable
    # the full package was never fetched
    assert f"{BASE}/0/2.pwr" not in patch_server.get_paths()
