import hashlib
import re

import httpx
import pytest

from timecapsule.core.config import Settings
from timecapsule.core.errors import ObjectStoreError, ObjectStoreMisconfigured, ValidationError
from timecapsule.storage.object_store import B2ObjectStore, build_object_key, key_belongs_to, key_owner, owner_segment


class FakeB2:
    """Routes B2 native API calls; ``fail`` maps an operation to a list of status codes to return first."""

    def __init__(self):
        self.calls: list[str] = []
        self.requests: list[httpx.Request] = []
        self.fail: dict[str, list[int]] = {}
        self.tokens_issued = 0

    def _next_failure(self, op):
        queue = self.fail.get(op)
        return queue.pop(0) if queue else None

    def __call__(self, request: httpx.Request) -> httpx.Response:
        op = request.url.path.rsplit("/", 1)[-1]
        if request.url.host == "upload.b2.test":
            op = "upload"
        self.calls.append(op)
        self.requests.append(request)

        status = self._next_failure(op)
        if status is not None:
            return httpx.Response(status, json={"code": "failure", "message": op})

        if op == "b2_authorize_account":
            self.tokens_issued += 1
            return httpx.Response(200, json={
                "authorizationToken": f"account-token-{self.tokens_issued}",
                "apiUrl": "https://api.b2.test",
                "downloadUrl": "https://f000.b2.test",
            })
        if op == "b2_get_upload_url":
            return httpx.Response(200, json={
                "uploadUrl": "https://upload.b2.test/b2api/v2/b2_upload_file/bucket-1",
                "authorizationToken": "upload-token",
            })
        if op == "upload":
            return httpx.Response(200, json={"fileId": "4_z-file-id", "fileName": request.headers["X-Bz-File-Name"]})
        if op == "b2_get_download_authorization":
            return httpx.Response(200, json={"authorizationToken": "download-token"})
        if op == "b2_delete_file_version":
            return httpx.Response(200, json={"fileId": "4_z-file-id"})
        return httpx.Response(404, json={"code": "not_found"})


class Clock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


@pytest.fixture
def b2():
    return FakeB2()


@pytest.fixture
def clock():
    return Clock()


@pytest.fixture
def sleeps():
    return []


@pytest.fixture
def client(cfg, b2, clock, sleeps):
    return B2ObjectStore(
        cfg,
        http=httpx.Client(transport=httpx.MockTransport(b2)),
        clock=clock,
        sleep=sleeps.append,
    )


def test_authorization_is_cached_until_expiry(client, b2, clock, cfg):
    client.get_upload_target()
    client.get_upload_target()
    assert b2.calls.count("b2_authorize_account") == 1

    clock.now += cfg.b2_auth_cache_seconds + 1
    client.get_upload_target()
    assert b2.calls.count("b2_authorize_account") == 2


def test_unauthorized_api_call_forces_reauthorization(client, b2):
    b2.fail["b2_get_upload_url"] = [401]

    target = client.get_upload_target()

    assert target.upload_token == "upload-token"
    assert b2.calls == [
        "b2_authorize_account", "b2_get_upload_url", "b2_authorize_account", "b2_get_upload_url",
    ]
    assert b2.requests[-1].headers["Authorization"] == "account-token-2"


def test_upload_target_retried_with_backoff(client, b2, sleeps):
    b2.fail["b2_get_upload_url"] = [503, 503]

    client.get_upload_target()

    assert b2.calls.count("b2_get_upload_url") == 3
    assert sleeps == [0.5, 1.0]


def test_upload_target_gives_up_after_retries(client, b2, sleeps):
    b2.fail["b2_get_upload_url"] = [503, 503, 503]

    with pytest.raises(ObjectStoreError):
        client.get_upload_target()

    assert b2.calls.count("b2_get_upload_url") == 3
    assert len(sleeps) == 2


def test_client_errors_are_not_retried(client, b2, sleeps):
    b2.fail["b2_get_upload_url"] = [400]

    with pytest.raises(ObjectStoreError) as exc:
        client.get_upload_target()

    assert exc.value.details["status"] == 400
    assert sleeps == []


def test_upload_sends_checksum_and_metadata(client, b2):
    data = b"webp-bytes"

    stored = client.upload_buffer(
        "capsules/images/owner-1/1-abc-beach day.webp", data, "image/webp", {"width": 800, "height": 600},
    )

    upload = b2.requests[-1]
    assert upload.headers["Authorization"] == "upload-token"
    assert upload.headers["X-Bz-Content-Sha1"] == hashlib.sha1(data).hexdigest()
    assert upload.headers["X-Bz-File-Name"] == "capsules/images/owner-1/1-abc-beach%20day.webp"
    assert upload.headers["X-Bz-Info-src-width"] == "800"
    assert stored.file_id == "4_z-file-id"
    assert stored.content_length == len(data)


def test_upload_failure_is_not_retried(client, b2, sleeps):
    b2.fail["upload"] = [503]

    with pytest.raises(ObjectStoreError):
        client.upload_buffer("capsules/images/owner-1/k.webp", b"x", "image/webp")

    assert b2.calls.count("upload") == 1
    assert sleeps == []


def test_empty_upload_rejected(client, b2):
    with pytest.raises(ValidationError):
        client.upload_buffer("capsules/images/owner-1/k.webp", b"", "image/webp")
    assert b2.calls == []


@pytest.mark.parametrize("requested, expected", [(None, 300), (10, 60), (600, 600), (99999, 3600)])
def test_signed_download_ttl_is_clamped(client, b2, requested, expected):
    signed = client.get_signed_download("capsules/images/owner-1/k.webp", requested)

    assert signed.expires_in == expected
    assert signed.token == "download-token"
    assert signed.url == "https://f000.b2.test/file/capsule-bucket/capsules/images/owner-1/k.webp"
    payload = b2.requests[-1].read()
    assert f'"validDurationInSeconds":{expected}'.encode() in payload.replace(b" ", b"")


def test_download_authorization_retried_on_rate_limit(client, b2, sleeps):
    b2.fail["b2_get_download_authorization"] = [429]
    client.get_signed_download("capsules/images/owner-1/k.webp")
    assert sleeps == [0.5]


def test_delete_object(client, b2):
    client.delete_object("capsules/images/owner-1/k.webp", "4_z-file-id")
    assert b2.calls[-1] == "b2_delete_file_version"


def test_missing_credentials_fail_before_any_request(b2, tmp_path):
    store = B2ObjectStore(
        Settings(MEDIA_SCRATCH_DIR=str(tmp_path)),
        http=httpx.Client(transport=httpx.MockTransport(b2)),
    )
    with pytest.raises(ObjectStoreMisconfigured):
        store.get_upload_target()
    assert b2.calls == []


def test_direct_upload_target_scopes_key_to_owner(client):
    target = client.get_direct_upload_target("owner-1", "capsules/images", "image/png", "My Photo.png")

    assert key_owner(target["file_name"]) == "owner-1"
    assert target["file_name"].startswith("capsules/images/owner-1/")
    assert target["file_name"].endswith("-my-photo.png")
    assert target["bucket_id"] == "bucket-1"
    assert target["upload_headers"]["Content-Type"] == "image/png"


def test_direct_upload_target_rejects_other_types(client, b2):
    with pytest.raises(ValidationError):
        client.get_direct_upload_target("owner-1", "capsules/images", "application/pdf")
    assert b2.calls == []


def test_object_key_format():
    key = build_object_key("capsules/videos/", "owner-1", "video/mp4", None, fallback_base="video", now_ms=1700000000000)
    assert re.fullmatch(r"capsules/videos/owner-1/1700000000000-[0-9a-f-]{36}-video\.mp4", key)
    assert build_object_key("p", None, "application/x-unknown").startswith("p/anonymous/")
    assert build_object_key("p", None, "application/x-unknown").endswith(".bin")


def test_unreadable_success_body_is_an_object_store_error(cfg, b2, clock, sleeps):
    def handler(request):
        if request.url.path.endswith("b2_get_upload_url"):
            return httpx.Response(200, text="<html>maintenance</html>")
        return b2(request)

    store = B2ObjectStore(
        cfg,
        http=httpx.Client(transport=httpx.MockTransport(handler)),
        clock=clock,
        sleep=sleeps.append,
    )
    with pytest.raises(ObjectStoreError) as exc:
        store.get_upload_target()
    assert exc.value.details == {"status": 200}
    assert sleeps == []


@pytest.mark.parametrize("owner", ["ada@example.com", "google-oauth2|1234", "team/ops", "a:b+c", "h-cafe"])
def test_owner_ids_with_separators_get_a_hashed_segment(owner):
    segment = owner_segment(owner)
    assert re.fullmatch(r"h-[0-9a-f]{32}", segment)

    key = build_object_key("capsules/images", owner, "image/webp", "photo.webp")
    assert key.startswith(f"capsules/images/{segment}/")
    assert key_belongs_to(key, owner)
    assert not key_belongs_to(key, "someone-else")


def test_plain_owner_ids_are_kept():
    assert owner_segment("owner-1") == "owner-1"
    assert owner_segment("user_42.dev") == "user_42.dev"
    assert owner_segment(None) == "anonymous"
    assert not key_belongs_to("capsules/images/anonymous/x.webp", None)
