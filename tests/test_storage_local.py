import pytest

from app.procuretrain.storage import LocalStorage, S3Storage, StorageAccessDenied, StorageNotFound, storage_from_config


@pytest.fixture()
def storage(tmp_path):
    return LocalStorage(root=tmp_path, bucket="registrations")


def test_put_and_download(storage, tmp_path):
    storage.put_bytes("evidence/u1/e1/f.pdf", b"%PDF-1.4")
    assert storage.download("evidence/u1/e1/f.pdf") == b"%PDF-1.4"
    assert (tmp_path / "registrations" / "evidence" / "u1" / "e1" / "f.pdf").is_file()
    with storage.open("evidence/u1/e1/f.pdf") as fh:
        assert fh.read() == b"%PDF-1.4"


def test_missing_object(storage):
    with pytest.raises(StorageNotFound):
        storage.download("evidence/nope.pdf")
    assert storage.exists("evidence/nope.pdf") is False


def test_keys_cannot_escape_bucket(storage, tmp_path):
    (tmp_path / "secret.txt").write_text("x")
    with pytest.raises(StorageAccessDenied):
        storage.download("../secret.txt")
    assert storage.exists("../secret.txt") is False


def test_leading_slash_is_ignored(storage):
    storage.put_bytes("/evidence/a.png", b"png")
    assert storage.download("evidence/a.png") == b"png"


def test_delete(storage):
    storage.put_bytes("evidence/a.png", b"png")
    assert storage.exists("evidence/a.png") is True
    storage.delete("evidence/a.png")
    assert storage.exists("evidence/a.png") is False
    # Deleting a missing key is a no-op.
    storage.delete("evidence/a.png")


def test_storage_from_config(tmp_path):
    local = storage_from_config({"STORAGE_BACKEND": "local", "LOCAL_STORAGE_ROOT": str(tmp_path), "EVIDENCE_BUCKET": "receipts"})
    assert isinstance(local, LocalStorage)
    assert local.bucket == "receipts"

    s3 = storage_from_config(
        {
            "STORAGE_BACKEND": "s3",
            "S3_ENDPOINT": "s3.example.com",
            "S3_ACCESS_KEY_ID": "k",
            "S3_SECRET_ACCESS_KEY": "s",
            "EVIDENCE_PROBE_TIMEOUT_SECONDS": 2.5,
        },
        bucket="registrations",
    )
    assert isinstance(s3, S3Storage)
    assert s3.bucket == "registrations"
    assert s3.timeout_seconds == 2.5


class _ClientError(Exception):
    def __init__(self, code):
        super().__init__(code)
        self.response = {"Error": {"Code": code}}


@pytest.mark.parametrize(
    "code,expected",
    [("NoSuchKey", StorageNotFound), ("404", StorageNotFound), ("AccessDenied", StorageAccessDenied), ("403", StorageAccessDenied)],
)
def test_s3_error_translation(code, expected):
    s3 = S3Storage(endpoint="", region="us-east-1", bucket="b", access_key_id="k", secret_access_key="s")
    assert type(s3._translate("key", _ClientError(code))) is expected
