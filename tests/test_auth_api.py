"""AuthAPI response parsing and TransportClient classification."""

import httpx
import pytest

from authsession.config import ValidateMethod
from authsession.service.auth_api import AuthAPI
from authsession.service.errors import ErrorKind
from authsession.service.transport import TransportClient, classify_status
from authsession.storage.credentials import CredentialStore
from authsession.storage.memory import MemoryStore
from authsession.storage.models import TokenPair


def build_api(settings, tmp_path, handler):
    credentials = CredentialStore(MemoryStore(fs_root=str(tmp_path / "api")))
    transport = TransportClient(
        settings.api_base_url, credentials, transport=httpx.MockTransport(handler)
    )
    return AuthAPI(transport, settings), credentials


@pytest.mark.parametrize(
    "status,expected",
    [
        (400, ErrorKind.MALFORMED_REQUEST),
        (401, ErrorKind.INVALID_CREDENTIALS),
        (409, ErrorKind.DUPLICATE_ACCOUNT),
        (500, ErrorKind.SERVER_ERROR),
        (503, ErrorKind.SERVER_ERROR),
        (404, ErrorKind.UNEXPECTED_STATUS),
    ],
)
def test_classify_status(status, expected):
    assert classify_status(status) is expected


async def test_login_accepts_nested_user(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, json={"access_token": "a", "user": {"id": 4, "username": "n"}})

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.login("n@example.com", "pw")

    assert result.ok
    assert result.data.access_token == "a"
    assert result.data.refresh_token is None


async def test_login_without_user_is_malformed(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, json={"access_token": "a"})

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.login("n@example.com", "pw")

    assert result.error is ErrorKind.MALFORMED_RESPONSE


async def test_non_json_success_is_malformed(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, text="<html>maintenance</html>")

    api, credentials = build_api(settings, tmp_path, handler)
    await credentials.save_tokens(TokenPair("a", "r"))
    result = await api.me()

    assert result.error is ErrorKind.MALFORMED_RESPONSE


async def test_refresh_rejection_maps_to_refresh_failed(settings, tmp_path):
    def handler(request):
        return httpx.Response(400, json={"error": "bad token"})

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.refresh("r")

    assert result.error is ErrorKind.REFRESH_FAILED
    assert result.status_code == 400


async def test_refresh_blank_rotation_treated_as_missing(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, json={"access_token": "new", "refresh_token": ""})

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.refresh("r")

    assert result.ok
    assert result.data.refresh_token is None


async def test_validate_uses_configured_method(settings, tmp_path):
    seen = []

    def handler(request):
        seen.append((request.method, request.headers.get("Authorization")))
        return httpx.Response(200, json={"user": {"id": 1}})

    get_method_settings = settings.model_copy(update={"validate_method": ValidateMethod.GET})
    api, _ = build_api(get_method_settings, tmp_path, handler)
    result = await api.validate("tok")

    assert result.ok
    assert seen == [("GET", "Bearer tok")]


async def test_validate_without_user_id_is_malformed(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, json={"user": {"username": "x"}})

    api, _ = build_api(settings, tmp_path, handler)

    assert (await api.validate("tok")).error is ErrorKind.MALFORMED_RESPONSE


async def test_passport_null_memberships(settings, tmp_path):
    def handler(request):
        return httpx.Response(200, json={"memberships": None})

    api, credentials = build_api(settings, tmp_path, handler)
    await credentials.save_tokens(TokenPair("a", "r"))
    result = await api.fetch_passport()

    assert result.ok
    assert result.data.memberships == []


async def test_stored_token_attached(settings, tmp_path):
    seen = []

    def handler(request):
        seen.append(request.headers.get("Authorization"))
        return httpx.Response(200, json={"memberships": []})

    api, credentials = build_api(settings, tmp_path, handler)
    await credentials.save_tokens(TokenPair("stored-access", "r"))
    await api.sync_passport()

    assert seen == ["Bearer stored-access"]


async def test_401_without_handler_is_returned(settings, tmp_path):
    def handler(request):
        return httpx.Response(401)

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.fetch_passport()

    assert result.status_code == 401
    assert result.error is ErrorKind.INVALID_CREDENTIALS


async def test_network_error_is_unreachable(settings, tmp_path):
    def handler(request):
        raise httpx.ReadTimeout("timed out", request=request)

    api, _ = build_api(settings, tmp_path, handler)
    result = await api.health_check()

    assert result.error is ErrorKind.UNREACHABLE
    assert result.status_code is None
