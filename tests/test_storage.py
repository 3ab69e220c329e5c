from datetime import datetime
from pathlib import Path

from docgen.storage import LocalFileStore


def test_upload_writes_into_monthly_folder(tmp_path):
    store = LocalFileStore(root=str(tmp_path))

    ref = store.upload(b"%PDF", "Engagement Letter (final).pdf", "corr-1")

    path = Path(ref.path)
    assert path.parent == tmp_path / datetime.now().strftime("%Y-%m")
    assert path.name == f"Engagement-Letter-final_{ref.file_id}.pdf"
    assert path.read_bytes() == b"%PDF"
    assert ref.size == 4


def test_upload_without_extension_or_usable_name(tmp_path):
    store = LocalFileStore(root=str(tmp_path))

    ref = store.upload(b"x", "???")

    assert Path(ref.path).name == f"document_{ref.file_id}"


def test_each_upload_gets_its_own_id(tmp_path):
    store = LocalFileStore(root=str(tmp_path))

    first = store.upload(b"a", "same.pdf")
    second = store.upload(b"b", "same.pdf")

    assert first.file_id != second.file_id
    assert Path(first.path).read_bytes() == b"a"
