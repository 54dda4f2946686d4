"""Tests for storage naming, staging, promotion and the orphan sweep."""

import os
import re
import stat
import time

import anyio
import pytest
from conftest import MINIMAL_PDF, stored_files

from src.security.storage import (
    STAGING_DIR_NAME,
    SizeLimitExceeded,
    StagingArea,
    StorageNamer,
    UploadStorageError,
)
from src.security.uploads import _BytesSource

NAME_RE = re.compile(r"^[0-9a-f]{32}\.(pdf|jpg|jpeg|png)$")


class TestStorageNamer:
    def test_name_is_random_hex_plus_extension(self, content_classes):
        name = StorageNamer().assign(".PDF", content_classes["any"])
        assert NAME_RE.match(name)
        assert name.endswith(".pdf")

    def test_names_do_not_repeat(self, content_classes):
        namer = StorageNamer()
        names = {namer.assign(".png", content_classes["images"]) for _ in range(500)}
        assert len(names) == 500

    @pytest.mark.parametrize("extension", [".php", ".pdf/../x", "", ".png.php"])
    def test_refuses_extension_outside_allowlist(self, extension, content_classes):
        with pytest.raises(ValueError):
            StorageNamer().assign(extension, content_classes["images"])


@pytest.mark.anyio
async def test_stage_writes_private_file(staging, storage_dir, content_classes):
    staged = await staging.stage(
        _BytesSource(MINIMAL_PDF),
        extension=".pdf",
        content_class=content_classes["documents"],
        original_name="valid_doc.pdf",
    )

    assert staged.storage_path.parent == (storage_dir / STAGING_DIR_NAME).resolve()
    assert staged.storage_path.read_bytes() == MINIMAL_PDF
    assert staged.size_bytes == len(MINIMAL_PDF)
    assert staged.original_name_for_audit == "valid_doc.pdf"
    assert "valid_doc" not in staged.assigned_name
    assert stat.S_IMODE(os.stat(staged.storage_path).st_mode) == 0o600
    # Nothing is visible in the storage root before promotion.
    assert stored_files(storage_dir) == []


@pytest.mark.anyio
async def test_stage_aborts_and_cleans_up_over_limit(staging, storage_dir, content_classes):
    limit = content_classes["documents"].max_bytes
    with pytest.raises(SizeLimitExceeded):
        await staging.stage(
            _BytesSource(MINIMAL_PDF + b"\x00" * limit),
            extension=".pdf",
            content_class=content_classes["documents"],
            original_name="big.pdf",
        )

    assert stored_files(storage_dir / STAGING_DIR_NAME) == []


@pytest.mark.anyio
async def test_promote_moves_into_root(staging, storage_dir, content_classes):
    staged = await staging.stage(
        _BytesSource(MINIMAL_PDF),
        extension=".pdf",
        content_class=content_classes["documents"],
        original_name="valid_doc.pdf",
    )
    trusted = await staging.promote(staged, "application/pdf")

    assert trusted.storage_path == (storage_dir / staged.assigned_name).resolve()
    assert trusted.storage_path.exists()
    assert not staged.storage_path.exists()
    assert trusted.detected_type == "application/pdf"


@pytest.mark.anyio
async def test_purge_removes_staged_file(staging, content_classes):
    staged = await staging.stage(
        _BytesSource(b"plain text"),
        extension=".pdf",
        content_class=content_classes["documents"],
        original_name="fake.pdf",
    )
    await staging.purge(staged)
    assert not staged.storage_path.exists()


@pytest.mark.anyio
async def test_delete_failure_is_raised(staging, tmp_path, monkeypatch):
    async def failing_unlink(self, missing_ok=False):
        raise PermissionError("read-only storage")

    monkeypatch.setattr(anyio.Path, "unlink", failing_unlink)
    with pytest.raises(UploadStorageError) as exc_info:
        await staging.delete(tmp_path / "victim.pdf")
    assert exc_info.value.code == "delete_failed"


def test_symlinked_root_is_refused(tmp_path):
    real = tmp_path / "real"
    real.mkdir()
    link = tmp_path / "link"
    link.symlink_to(real, target_is_directory=True)

    with pytest.raises(UploadStorageError) as exc_info:
        StagingArea(link).prepare()
    assert exc_info.value.code == "symlink_parent"


def test_symlinked_entry_is_refused(staging, tmp_path):
    _, staging_dir = staging.prepare()
    outside = tmp_path / "outside.pdf"
    outside.write_bytes(MINIMAL_PDF)
    # Same directory after resolution, so only the link check can catch it.
    (staging_dir / "planted.pdf").symlink_to(staging_dir / "target.pdf")
    (staging_dir / "escape.pdf").symlink_to(outside)

    for name in ("planted.pdf", "escape.pdf"):
        with pytest.raises(UploadStorageError) as exc_info:
            staging._checked_path(staging_dir, name)
        assert exc_info.value.code == "symlink_entry"
    assert outside.read_bytes() == MINIMAL_PDF


@pytest.mark.anyio
async def test_sweep_purges_only_old_staged_files(staging, content_classes):
    old = await staging.stage(
        _BytesSource(MINIMAL_PDF),
        extension=".pdf",
        content_class=content_classes["documents"],
        original_name="old.pdf",
    )
    fresh = await staging.stage(
        _BytesSource(MINIMAL_PDF),
        extension=".pdf",
        content_class=content_classes["documents"],
        original_name="fresh.pdf",
    )
    past = time.time() - 3600
    os.utime(old.storage_path, (past, past))

    purged = await staging.sweep_orphans(max_age_seconds=300)

    assert purged == [old.assigned_name]
    assert not old.storage_path.exists()
    assert fresh.storage_path.exists()


@pytest.mark.anyio
async def test_sweep_without_staging_dir(tmp_path):
    assert await StagingArea(tmp_path / "missing").sweep_orphans(60) == []
