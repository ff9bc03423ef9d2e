import os
import tempfile

# Settings are read at import time; pin a fast, isolated configuration first.
os.environ["DATABASE_URL"] = "sqlite:///:memory:"
os.environ["LOG_DIR"] = os.path.join(tempfile.gettempdir(), "timecapsule-test-logs")
os.environ["JWT_SECRET"] = "test-secret"
os.environ["PASSPHRASE_TIME_COST"] = "1"
os.environ["PASSPHRASE_MEMORY_COST"] = "1024"
os.environ["PASSPHRASE_PARALLELISM"] = "1"
os.environ.pop("DEV_FAKE_OWNER_ID", None)

import io
import uuid
from datetime import datetime, timedelta, timezone
from pathlib import Path

import pytest
from jose import jwt
from PIL import Image
from sqlalchemy import create_engine
from sqlalchemy.orm import sessionmaker
from sqlalchemy.pool import StaticPool

from timecapsule.core.config import Settings
from timecapsule.core.errors import ObjectStoreError, TranscoderError
from timecapsule.core.security import PassphraseVerifier
from timecapsule.db.init_db import init_db
from timecapsule.db.session import enable_sqlite_foreign_keys
from timecapsule.media.transcoder import ProbeResult
from timecapsule.models.capsule import Capsule
from timecapsule.services.reveal_gate import RevealGate
from timecapsule.storage.object_store import SignedDownload, StoredObject, UploadTarget, build_object_key

NOW = datetime(2026, 10, 17, 12, 0, tzinfo=timezone.utc)


def make_image(width: int, height: int, fmt: str = "JPEG", orientation: int | None = None) -> bytes:
    img = Image.new("RGB", (width, height), (200, 120, 40))
    buf = io.BytesIO()
    if orientation is not None:
        exif = Image.Exif()
        exif[0x0112] = orientation
        img.save(buf, format=fmt, exif=exif.tobytes())
    else:
        img.save(buf, format=fmt)
    return buf.getvalue()


def make_token(owner_id: str) -> str:
    return jwt.encode({"sub": owner_id}, "test-secret", algorithm="HS256")


def auth(owner_id: str) -> dict:
    return {"Authorization": f"Bearer {make_token(owner_id)}"}


class FakeObjectStore:
    """In-memory stand-in for the B2 client."""

    def __init__(self):
        self.objects: dict[str, dict] = {}
        self.deleted: list[tuple[str, str]] = []
        self.fail_uploads_with_prefix: str | None = None

    def get_upload_target(self) -> UploadTarget:
        return UploadTarget(upload_url="https://upload.example/b2", upload_token="upload-token")

    def get_direct_upload_target(self, owner_id, prefix, content_type, original_file_name=None):
        if not content_type.startswith("image/"):
            from timecapsule.core.errors import ValidationError
            raise ValidationError("UnsupportedContentType", code="UnsupportedContentType")
        return {
            "upload_url": "https://upload.example/b2",
            "authorization_token": "upload-token",
            "bucket_id": "bucket-1",
            "file_name": build_object_key(prefix, owner_id, content_type, original_file_name),
            "content_type": content_type,
            "upload_headers": {"Content-Type": content_type},
        }

    def upload_buffer(self, key, data, content_type, metadata=None) -> StoredObject:
        if self.fail_uploads_with_prefix and key.startswith(self.fail_uploads_with_prefix):
            raise ObjectStoreError("upload failed")
        file_id = f"fid-{uuid.uuid4()}"
        self.objects[key] = {"data": data, "content_type": content_type, "metadata": metadata, "file_id": file_id}
        return StoredObject(file_id=file_id, file_name=key, content_type=content_type, content_length=len(data))

    def get_signed_download(self, key, ttl_seconds=None) -> SignedDownload:
        ttl = 300 if ttl_seconds is None else min(max(ttl_seconds, 60), 3600)
        return SignedDownload(url=f"https://download.example/file/bucket/{key}", token="dl-token", expires_in=ttl)

    def delete_object(self, key, file_id) -> None:
        self.deleted.append((key, file_id))
        self.objects.pop(key, None)


class FakeTranscoder:
    """
    Writes small placeholder outputs. ``fail_at`` names the stage that should
    raise; ``calls`` records the order stages ran in.
    """

    def __init__(self, probe: ProbeResult | None = None, fail_at: str | None = None):
        self.probe_result = probe or ProbeResult(duration_seconds=12.5, bitrate=1_800_000, width=1280, height=720)
        self.fail_at = fail_at
        self.calls: list[str] = []
        self.seen_paths: list[str] = []

    def transcode(self, source, target):
        self.calls.append("transcode")
        self.seen_paths.append(source)
        Path(target).write_bytes(b"partial-output")
        if self.fail_at == "transcode":
            raise TranscoderError("transcode failed")
        Path(target).write_bytes(b"\x00\x00\x00\x18ftypmp42" + b"\x00" * 64)

    def probe(self, path):
        self.calls.append("probe")
        if self.fail_at == "probe":
            raise TranscoderError("probe failed")
        return self.probe_result

    def extract_poster(self, source, target, offset_seconds):
        self.calls.append("poster")
        self.poster_offset = offset_seconds
        if self.fail_at == "poster":
            raise TranscoderError("poster failed")
        Path(target).write_bytes(make_image(320, 180))


@pytest.fixture
def engine():
    eng = create_engine(
        "sqlite://",
        connect_args={"check_same_thread": False},
        poolclass=StaticPool,
    )
    enable_sqlite_foreign_keys(eng)
    init_db(eng)
    yield eng
    eng.dispose()


@pytest.fixture
def session_factory(engine):
    return sessionmaker(bind=engine, autocommit=False, autoflush=False, expire_on_commit=False)


@pytest.fixture
def db(session_factory):
    session = session_factory()
    try:
        yield session
    finally:
        session.close()


@pytest.fixture(scope="session")
def verifier() -> PassphraseVerifier:
    return PassphraseVerifier(time_cost=1, memory_cost=1024, parallelism=1)


@pytest.fixture
def gate(verifier) -> RevealGate:
    return RevealGate(verifier)


@pytest.fixture
def cfg(tmp_path) -> Settings:
    return Settings(
        MEDIA_SCRATCH_DIR=str(tmp_path / "scratch"),
        MEDIA_MAX_IMAGE_BYTES=2 * 1024 * 1024,
        MEDIA_MAX_IMAGE_RES="800x600",
        MEDIA_MAX_VIDEO_BYTES=64 * 1024,
        B2_APPLICATION_KEY_ID="key-id",
        B2_APPLICATION_KEY="key",
        B2_BUCKET_ID="bucket-1",
        B2_BUCKET_NAME="capsule-bucket",
    )


@pytest.fixture
def object_store() -> FakeObjectStore:
    return FakeObjectStore()


@pytest.fixture
def make_capsule(verifier):
    def _make(
        reveal_in: timedelta = timedelta(hours=-1),
        passphrase: str | None = None,
        owner_id: str = "owner-1",
        message: str = "See you in ten years",
    ) -> Capsule:
        return Capsule(
            id=str(uuid.uuid4()),
            title="Letter",
            message=message,
            author="Ada",
            owner_id=owner_id,
            created_at=NOW - timedelta(days=1),
            reveal_at=NOW + reveal_in,
            is_locked=passphrase is not None,
            passphrase_digest=verifier.hash(passphrase) if passphrase else None,
        )

    return _make
