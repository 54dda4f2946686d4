# tests/conftest.py
import sys
from pathlib import Path

import pytest

ROOT = Path(__file__).resolve().parents[1]  # repository root
if str(ROOT) not in sys.path:
    sys.path.insert(0, str(ROOT))

from src.app.settings import UploadSettings  # noqa: E402
from src.security.signatures import default_content_classes  # noqa: E402
from src.security.storage import StagingArea  # noqa: E402
from src.security.uploads import IngestPipeline  # noqa: E402

MINIMAL_PDF = (
    b"%PDF-1.0\n1 0 obj<</Type/Catalog/Pages 2 0 R>>endobj 2 0 obj<</Type/Pages/Kids[3 0 R]"
    b"/Count 1>>endobj 3 0 obj<</Type/Page/MediaBox[0 0 3 3]>>endobj\nxref\n0 4\n"
    b"0000000000 65535 f\n0000000010 00000 n\n0000000060 00000 n\n0000000111 00000 n\n"
    b"trailer<</Size 4/Root 1 0 R>>\nstartxref\n178\n%%EOF"
)
MINIMAL_JPEG = bytes([0xFF, 0xD8, 0xFF, 0xE0, 0x00, 0x10, 0x4A, 0x46, 0x49, 0x46, 0x00, 0x01])
MINIMAL_PNG = b"\x89PNG\r\n\x1a\n" + b"\x00\x00\x00\x0dIHDR" + b"\x00" * 17 + b"\x00\x00\x00\x00IEND\xaeB`\x82"
PLAIN_TEXT = b"This is a text file masked as a PDF."


@pytest.fixture()
def anyio_backend():
    return "asyncio"


@pytest.fixture()
def storage_dir(tmp_path):
    """Isolated storage root per test."""
    return tmp_path / "uploads"


@pytest.fixture()
def content_classes():
    return default_content_classes()


@pytest.fixture()
def staging(storage_dir):
    return StagingArea(storage_dir)


@pytest.fixture()
def pipeline(staging):
    return IngestPipeline(staging)


@pytest.fixture()
def settings(storage_dir):
    return UploadSettings(storage_path=storage_dir)


def stored_files(directory: Path) -> list[Path]:
    """Files directly inside ``directory`` (staging excluded)."""
    if not directory.exists():
        return []
    return sorted(p for p in directory.iterdir() if p.is_file())
