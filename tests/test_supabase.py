import asyncio
import json
from types import SimpleNamespace

import httpx
import pytest

from app import auth, storage


@pytest.fixture()
def supabase(monkeypatch):
    """Turn Supabase on against a mock transport. Responses are keyed by URL path."""
    seen: list[httpx.Request] = []
    responses: dict[str, httpx.Response] = {}

    def handler(request: httpx.Request) -> httpx.Response:
        seen.append(request)
        return responses.get(request.url.path, httpx.Response(404, json={"msg": "not found"}))

    monkeypatch.setattr(auth, "SUPABASE_ENABLED", True)
    monkeypatch.setattr(auth, "SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setattr(auth, "SUPABASE_AUTH_URL", "https://sb.test/auth/v1")
    monkeypatch.setattr(auth, "SUPABASE_REST_URL", "https://sb.test/rest/v1")
    monkeypatch.setattr(storage, "SUPABASE_ENABLED", True)
    monkeypatch.setattr(storage, "SUPABASE_URL", "https://sb.test")
    monkeypatch.setattr(storage, "SUPABASE_ANON_KEY", "anon-key")
    monkeypatch.setattr(auth, "_http_client", httpx.AsyncClient(transport=httpx.MockTransport(handler)))

    return SimpleNamespace(requests=seen, responses=responses)


@pytest.mark.parametrize("raw, friendly", [
    ("Invalid login credentials", "Incorrect email or password. Please try again."),
    ("User already registered", "An account with this email already exists."),
    ("Password should be at least 6 characters", "Password must be at least 6 characters."),
    ("Email rate limit exceeded", "Too many attempts. Please wait a few minutes and try again."),
    ("Something odd", "Something odd"),
])
def test_friendly_error(raw, friendly):
    assert auth._friendly_error(raw) == friendly


def test_disabled_helpers_return_error():
    assert asyncio.run(auth.supabase_sign_in("a@b.c", "pw")) == {"error": "Supabase not configured"}
    assert asyncio.run(auth.supabase_user_id_from_email("a@b.c")) is None


def test_sign_in_failure_is_friendly(supabase):
    supabase.responses["/auth/v1/token"] = httpx.Response(400, json={"error_description": "Invalid login credentials"})

    result = asyncio.run(auth.supabase_sign_in("jane@dealer.test", "bad"))

    assert result == {"error": "Incorrect email or password. Please try again."}
    req = supabase.requests[0]
    assert req.url.params["grant_type"] == "password"
    assert req.headers["apikey"] == "anon-key"
    assert json.loads(req.content) == {"email": "jane@dealer.test", "password": "bad"}


def test_sign_in_success(supabase):
    payload = {"access_token": "tok", "user": {"id": "uuid-1", "email": "jane@dealer.test"}}
    supabase.responses["/auth/v1/token"] = httpx.Response(200, json=payload)
    assert asyncio.run(auth.supabase_sign_in("jane@dealer.test", "good")) == payload


def test_sign_out_sends_bearer_token(supabase):
    supabase.responses["/auth/v1/logout"] = httpx.Response(204)
    assert asyncio.run(auth.supabase_sign_out("tok")) == {}
    assert supabase.requests[0].headers["Authorization"] == "Bearer tok"


def test_user_id_rpc(supabase):
    supabase.responses["/rest/v1/rpc/get_user_id_from_email"] = httpx.Response(200, json="uuid-9")
    assert asyncio.run(auth.supabase_user_id_from_email("bob@dealer.test")) == "uuid-9"
    assert json.loads(supabase.requests[0].content) == {"email_address": "bob@dealer.test"}


def test_storage_upload_to_bucket(supabase):
    path = "spiff-images/abc.png"
    supabase.responses[f"/storage/v1/object/sales-documents/{path}"] = httpx.Response(200, json={"Key": path})

    url = asyncio.run(storage.upload(path, b"img", "image/png"))

    assert url == f"https://sb.test/storage/v1/object/public/sales-documents/{path}"
    req = supabase.requests[0]
    assert req.method == "POST"
    assert req.headers["Content-Type"] == "image/png"
    assert req.content == b"img"


def test_storage_upload_failure(supabase):
    with pytest.raises(storage.StorageError):
        asyncio.run(storage.upload("spiff-images/x.png", b"img", "image/png"))


def test_storage_rejects_large_files():
    with pytest.raises(storage.StorageError):
        asyncio.run(storage.upload("spiff-images/x.png", b"0" * (storage.MAX_UPLOAD_BYTES + 1)))


def test_spiff_image_path_keeps_extension():
    path = storage.spiff_image_path("Receipt.JPG")
    assert path.startswith("spiff-images/")
    assert path.endswith(".jpg")
    assert storage.spiff_image_path("noext").endswith(".bin")


@pytest.mark.parametrize("filename", ["x./a/b", "x.p n g", "photo.averyverylongext", "x."])
def test_spiff_image_path_rejects_odd_extensions(filename):
    path = storage.spiff_image_path(filename)
    assert path.count("/") == 1
    assert path.endswith(".bin")
