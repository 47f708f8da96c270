"""Tests for the interchangeable storage backends."""
import json
from unittest.mock import MagicMock

import httpx
import pytest
from botocore.exceptions import ClientError, ReadTimeoutError

from storefront.services.errors import (
    NotFound,
    StorageConfigError,
    StorageDeleteError,
    StorageWriteError,
)
from storefront.services.storage import (
    LocalStorage,
    S3Storage,
    SupabaseStorage,
    close_storage,
    get_storage,
)
from storefront.services.storage.base import StorageBackend


def _client_error(code, status, op="PutObject"):
    return ClientError(
        {"Error": {"Code": code, "Message": code}, "ResponseMetadata": {"HTTPStatusCode": status}},
        op,
    )


# ---------------------------------------------------------------------------
# Retry policy
# ---------------------------------------------------------------------------

class FlakyStorage(StorageBackend):
    name = "flaky"

    def __init__(self, failures, transient=True, **kwargs):
        super().__init__(**kwargs)
        self.failures = failures
        self.transient = transient
        self.calls = 0

    def public_url(self, key):
        return f"mem://{key}"

    def _put(self, key, data, content_type):
        self.calls += 1
        if self.calls <= self.failures:
            raise StorageWriteError("backend hiccup", transient=self.transient)


def test_transient_write_is_retried():
    storage = FlakyStorage(failures=2, max_attempts=3, retry_backoff=0)
    assert storage.put("a_48.webp", b"x", "image/webp") == "mem://a_48.webp"
    assert storage.calls == 3


def test_retries_are_bounded():
    storage = FlakyStorage(failures=5, max_attempts=3, retry_backoff=0)
    with pytest.raises(StorageWriteError):
        storage.put("a_48.webp", b"x", "image/webp")
    assert storage.calls == 3


def test_non_transient_write_is_not_retried():
    storage = FlakyStorage(failures=1, transient=False, max_attempts=3, retry_backoff=0)
    with pytest.raises(StorageWriteError):
        storage.put("a_48.webp", b"x", "image/webp")
    assert storage.calls == 1


# ---------------------------------------------------------------------------
# Local filesystem
# ---------------------------------------------------------------------------

def test_local_put_locate_remove(tmp_path):
    storage = LocalStorage(root=str(tmp_path), url_prefix="/images/")

    assert storage.put("abc_400.webp", b"data", "image/webp") == "/images/abc_400.webp"
    assert (tmp_path / "abc_400.webp").read_bytes() == b"data"
    assert storage.locate("abc_400.webp") == "/images/abc_400.webp"

    assert storage.remove("abc_400.webp") is True
    assert storage.remove("abc_400.webp") is False
    with pytest.raises(NotFound):
        storage.locate("abc_400.webp")


def test_local_refuses_to_overwrite(tmp_path):
    storage = LocalStorage(root=str(tmp_path), retry_backoff=0)
    storage.put("abc_48.webp", b"first", "image/webp")

    with pytest.raises(StorageWriteError) as exc:
        storage.put("abc_48.webp", b"second", "image/webp")
    assert exc.value.transient is False
    assert (tmp_path / "abc_48.webp").read_bytes() == b"first"


@pytest.mark.parametrize("key", ["../escape.webp", "nested/key.webp", "", ".."])
def test_local_rejects_keys_outside_root(tmp_path, key):
    storage = LocalStorage(root=str(tmp_path))
    with pytest.raises(StorageConfigError):
        storage.put(key, b"data", "image/webp")


def test_local_requires_root():
    with pytest.raises(StorageConfigError):
        LocalStorage(root="")


# ---------------------------------------------------------------------------
# S3
# ---------------------------------------------------------------------------

def _s3(client, **kwargs):
    return S3Storage(
        bucket="product-images",
        public_url_base="https://cdn.example.com/",
        client=client,
        retry_backoff=0,
        **kwargs,
    )


def test_s3_put_is_conditional_and_returns_public_url():
    client = MagicMock()
    storage = _s3(client)

    url = storage.put("abc_1080.webp", b"data", "image/webp")

    assert url == "https://cdn.example.com/abc_1080.webp"
    kwargs = client.put_object.call_args.kwargs
    assert kwargs["Bucket"] == "product-images"
    assert kwargs["Key"] == "abc_1080.webp"
    assert kwargs["ContentType"] == "image/webp"
    assert kwargs["IfNoneMatch"] == "*"


def test_s3_collision_fails_loudly():
    client = MagicMock()
    client.put_object.side_effect = _client_error("PreconditionFailed", 412)
    storage = _s3(client)

    with pytest.raises(StorageWriteError) as exc:
        storage.put("abc_1080.webp", b"data", "image/webp")
    assert exc.value.transient is False
    assert client.put_object.call_count == 1


def test_s3_retries_slowdown():
    client = MagicMock()
    client.put_object.side_effect = [_client_error("SlowDown", 503), {}]
    storage = _s3(client)

    storage.put("abc_1080.webp", b"data", "image/webp")
    assert client.put_object.call_count == 2


def test_s3_retries_timeouts():
    client = MagicMock()
    client.put_object.side_effect = [ReadTimeoutError(endpoint_url="https://s3"), {}]
    storage = _s3(client)

    storage.put("abc_1080.webp", b"data", "image/webp")
    assert client.put_object.call_count == 2


def test_s3_access_denied_is_not_retried():
    client = MagicMock()
    client.put_object.side_effect = _client_error("AccessDenied", 403)
    storage = _s3(client, max_attempts=5)

    with pytest.raises(StorageWriteError) as exc:
        storage.put("abc_1080.webp", b"data", "image/webp")
    assert exc.value.transient is False
    assert client.put_object.call_count == 1


def test_s3_locate_missing_raises_not_found():
    client = MagicMock()
    client.head_object.side_effect = _client_error("404", 404, op="HeadObject")
    with pytest.raises(NotFound):
        _s3(client).locate("abc_400.webp")


def test_s3_remove_failure_raises_delete_error():
    client = MagicMock()
    client.delete_object.side_effect = _client_error("AccessDenied", 403, op="DeleteObject")
    with pytest.raises(StorageDeleteError):
        _s3(client).remove("abc_400.webp")


def test_s3_public_url_without_cdn():
    storage = S3Storage(bucket="bucket", endpoint_url="https://r2.example.com", client=MagicMock())
    assert storage.public_url("k.webp") == "https://r2.example.com/bucket/k.webp"


# ---------------------------------------------------------------------------
# Supabase (hosted)
# ---------------------------------------------------------------------------

def _supabase(handler):
    return SupabaseStorage(
        url="https://proj.supabase.co/",
        service_key="service-key",
        transport=httpx.MockTransport(handler),
        retry_backoff=0,
    )


def test_supabase_put_never_upserts():
    seen = []

    def handler(request):
        seen.append(request)
        return httpx.Response(200, json={"Key": "product-images/abc_1080.webp"})

    storage = _supabase(handler)
    url = storage.put("abc_1080.webp", b"data", "image/webp")

    assert url == (
        "https://proj.supabase.co/storage/v1/object/public/product-images/abc_1080.webp"
    )
    request = seen[0]
    assert request.method == "POST"
    assert request.url.path == "/storage/v1/object/product-images/abc_1080.webp"
    assert request.headers["x-upsert"] == "false"
    assert request.headers["Authorization"] == "Bearer service-key"
    assert request.content == b"data"
    assert storage.stores_urls is True


def test_supabase_duplicate_is_a_collision():
    def handler(request):
        return httpx.Response(
            400,
            json={"statusCode": "409", "error": "Duplicate", "message": "The resource already exists"},
        )

    with pytest.raises(StorageWriteError) as exc:
        _supabase(handler).put("abc_1080.webp", b"data", "image/webp")
    assert exc.value.transient is False


def test_supabase_retries_server_errors():
    responses = iter([httpx.Response(503, text="busy"), httpx.Response(200, json={})])

    def handler(request):
        return next(responses)

    _supabase(handler).put("abc_1080.webp", b"data", "image/webp")


def test_supabase_timeout_is_transient():
    calls = []

    def handler(request):
        calls.append(request)
        raise httpx.ReadTimeout("slow", request=request)

    with pytest.raises(StorageWriteError) as exc:
        _supabase(handler).put("abc_1080.webp", b"data", "image/webp")
    assert exc.value.transient is True
    assert len(calls) == 3


def test_supabase_remove_is_idempotent():
    removed = iter([[{"name": "abc_400.webp"}], []])

    def handler(request):
        assert request.method == "DELETE"
        assert request.url.path == "/storage/v1/object/product-images"
        assert json.loads(request.content) == {"prefixes": ["abc_400.webp"]}
        return httpx.Response(200, json=next(removed))

    storage = _supabase(handler)
    assert storage.remove("abc_400.webp") is True
    assert storage.remove("abc_400.webp") is False


def test_supabase_locate_missing():
    def handler(request):
        return httpx.Response(400, json={"error": "not_found"})

    with pytest.raises(NotFound):
        _supabase(handler).locate("abc_400.webp")


def test_supabase_requires_credentials():
    with pytest.raises(StorageConfigError):
        SupabaseStorage(url="", service_key="")


# ---------------------------------------------------------------------------
# Factory
# ---------------------------------------------------------------------------

def test_get_storage_builds_each_backend(tmp_path):
    assert isinstance(
        get_storage({"STORAGE_BACKEND": "local", "LOCAL_IMAGE_DIR": str(tmp_path)}),
        LocalStorage,
    )
    assert isinstance(
        get_storage({"STORAGE_BACKEND": "s3", "S3_BUCKET_NAME": "b"}),
        S3Storage,
    )
    assert isinstance(
        get_storage({
            "STORAGE_BACKEND": "supabase",
            "SUPABASE_URL": "https://proj.supabase.co",
            "SUPABASE_SERVICE_ROLE_KEY": "k",
        }),
        SupabaseStorage,
    )


def test_get_storage_rejects_unknown_backend():
    with pytest.raises(StorageConfigError):
        get_storage({"STORAGE_BACKEND": "ftp"})


def _use_supabase(app, monkeypatch, url="https://proj.supabase.co"):
    monkeypatch.setitem(app.config, "STORAGE_BACKEND", "supabase")
    monkeypatch.setitem(app.config, "SUPABASE_URL", url)
    monkeypatch.setitem(app.config, "SUPABASE_SERVICE_ROLE_KEY", "k")


def test_get_storage_reuses_the_app_backend(app, monkeypatch):
    _use_supabase(app, monkeypatch)
    storage = get_storage()
    assert get_storage() is storage
    assert not storage._client.is_closed


def test_get_storage_rebuilds_when_settings_change(app, monkeypatch):
    _use_supabase(app, monkeypatch)
    first = get_storage()

    monkeypatch.setitem(app.config, "SUPABASE_URL", "https://other.supabase.co")
    second = get_storage()

    assert second is not first
    assert first._client.is_closed
    assert second.public_url("a.webp").startswith("https://other.supabase.co/")


def test_close_storage_releases_the_client(app, monkeypatch):
    _use_supabase(app, monkeypatch)
    storage = get_storage()
    close_storage(app)

    assert storage._client.is_closed
    assert get_storage() is not storage
