import json
import os

import pytest

from common.errors import AssetWarning, RegistryError, VerificationWarning
from orchestrator.artifacts import ArtifactFetcher, DownloadOutcome, version_key
from orchestrator.models import AssetType


@pytest.fixture
def images_dir(tmp_path):
    return tmp_path / "images"


@pytest.fixture
def fetcher(registry, images_dir):
    return ArtifactFetcher(registry, images_dir)


def test_resolve_latest_is_stable(fetcher):
    assert fetcher.resolve("latest") == "v1.3.0"
    assert fetcher.resolve("latest") == "v1.3.0"


def test_resolve_latest_queries_registry_each_time(fetcher, registry):
    fetcher.resolve("latest")
    fetcher.resolve("latest")
    assert registry.calls.count("latest_release") == 2


def test_resolve_passes_concrete_version_through(fetcher, registry):
    assert fetcher.resolve("v1.2.0") == "v1.2.0"
    assert registry.calls == []


def test_list_assets_filters_by_exact_suffix(fetcher):
    assets = fetcher.list_assets("v1.2.0", [AssetType.ISO])
    assert [a.name for a in assets] == ["kairos-v1.2.0.iso"]
    assert assets[0].type is AssetType.ISO


def test_list_assets_ignores_lookalike_names(fetcher, registry):
    registry.releases["v1.2.0"] = ["kairos-v1.2.0.iso.sha256", "kairos-v1.2.0.iso"]
    assets = fetcher.list_assets("v1.2.0", [AssetType.ISO])
    assert [a.name for a in assets] == ["kairos-v1.2.0.iso"]


def test_download_twice_skips_existing(fetcher, registry):
    asset = fetcher.list_assets("v1.2.0", [AssetType.ISO])[0]
    assert fetcher.download(asset) is DownloadOutcome.DOWNLOADED
    content = asset.local_path.read_bytes()

    assert fetcher.download(asset) is DownloadOutcome.SKIPPED_EXISTS
    assert fetcher.download(asset) is DownloadOutcome.SKIPPED_EXISTS
    assert asset.local_path.read_bytes() == content
    assert registry.downloads == ["kairos-v1.2.0.iso"]


def test_force_download_overwrites(fetcher, registry):
    asset = fetcher.list_assets("v1.2.0", [AssetType.ISO])[0]
    asset.local_path.parent.mkdir(parents=True)
    asset.local_path.write_bytes(b"stale content")
    assert fetcher.download(asset, force=True) is DownloadOutcome.DOWNLOADED
    assert asset.local_path.read_bytes() == b"data"


def test_failed_download_is_a_warning(fetcher, registry):
    registry.fail_downloads.add("kairos-v1.2.0.iso")
    asset = fetcher.list_assets("v1.2.0", [AssetType.ISO])[0]
    assert fetcher.download(asset) is DownloadOutcome.FAILED
    assert isinstance(fetcher.warnings[0], AssetWarning)


def test_missing_file_after_download_is_verification_warning(fetcher, registry):
    registry.skip_write.add("kairos-v1.2.0.iso")
    asset = fetcher.list_assets("v1.2.0", [AssetType.ISO])[0]
    assert fetcher.download(asset) is DownloadOutcome.DOWNLOADED
    assert isinstance(fetcher.warnings[0], VerificationWarning)


def test_fetch_latest_updates_pointer_and_marker(fetcher, images_dir):
    report = fetcher.fetch("latest", [AssetType.ISO, AssetType.RAW])
    assert report.release.tag == "v1.3.0"
    assert report.count(DownloadOutcome.DOWNLOADED) == 2
    assert os.readlink(images_dir / "latest") == "v1.3.0"
    marker = json.loads((images_dir / "last-release.json").read_text())
    assert marker["tagName"] == "v1.3.0"
    assert marker["name"] == "Kairos v1.3.0"
    assert marker["publishedAt"].startswith("2025-02-01")
    assert fetcher.local_latest() == "v1.3.0"


def test_fetch_concrete_version_leaves_pointer_alone(fetcher, images_dir):
    fetcher.fetch("v1.2.0", [AssetType.ISO])
    assert not (images_dir / "latest").is_symlink()
    assert (images_dir / "v1.2.0" / "kairos-v1.2.0.iso").is_file()


def test_fetch_missing_type_is_warning(fetcher):
    report = fetcher.fetch("v1.2.0", [AssetType.ISO, AssetType.QCOW2])
    assert report.usable == 1
    assert any("qcow2" in w.message for w in report.warnings)


def test_fetch_without_usable_assets_fails(fetcher, registry):
    registry.fail_downloads.update({"kairos-v1.2.0.iso", "kairos-v1.2.0.raw"})
    with pytest.raises(RegistryError):
        fetcher.fetch("v1.2.0", [AssetType.ISO, AssetType.RAW])


def test_fetch_registry_unavailable(fetcher, registry):
    registry.unavailable = True
    with pytest.raises(RegistryError):
        fetcher.fetch("latest", [AssetType.ISO])


def test_update_latest_pointer_is_idempotent(fetcher, images_dir):
    release = fetcher.release("v1.3.0")
    fetcher.update_latest_pointer(release)
    fetcher.update_latest_pointer(release)
    assert os.readlink(images_dir / "latest") == "v1.3.0"
    assert sorted(p.name for p in images_dir.iterdir()) == ["last-release.json", "latest"]


def test_version_key_is_natural():
    names = ["v1.10.0", "v1.9.2", "v1.2.0", "v2.0.0"]
    assert sorted(names, key=version_key) == ["v1.2.0", "v1.9.2", "v1.10.0", "v2.0.0"]


def _make_versions(images_dir, names):
    for name in names:
        (images_dir / name).mkdir(parents=True)
        (images_dir / name / f"kairos-{name}.iso").write_bytes(b"x")


def test_cleanup_keeps_three_highest(fetcher, images_dir):
    _make_versions(images_dir, ["v1.0.0", "v1.1.0", "v1.2.0", "v1.10.0", "v1.9.0"])
    removed = fetcher.cleanup(keep_n=3)
    assert removed == ["v1.0.0", "v1.1.0"]
    assert fetcher.local_versions() == ["v1.2.0", "v1.9.0", "v1.10.0"]


def test_cleanup_never_removes_latest_target(fetcher, images_dir):
    _make_versions(images_dir, ["v1.0.0", "v1.1.0", "v1.2.0", "v1.3.0", "v1.4.0"])
    (images_dir / "latest").symlink_to("v1.0.0", target_is_directory=True)
    removed = fetcher.cleanup(keep_n=3)
    assert removed == ["v1.1.0"]
    assert (images_dir / "v1.0.0").is_dir()
    assert (images_dir / "latest").is_symlink()


def test_cleanup_plan_is_read_only(fetcher, images_dir):
    _make_versions(images_dir, ["v1.0.0", "v1.1.0", "v1.2.0", "v1.3.0"])
    assert fetcher.cleanup_plan(keep_n=3) == ["v1.0.0"]
    assert len(fetcher.local_versions()) == 4


def test_cleanup_rejects_zero(fetcher):
    with pytest.raises(ValueError):
        fetcher.cleanup(keep_n=0)
