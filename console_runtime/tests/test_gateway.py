import time

import pytest
import requests

from console_runtime.errors import (
    ApiError,
    AuthenticationError,
    AuthorizationError,
    NetworkError,
    ProtocolError,
    RequestTimeout,
)
from console_runtime.network import RequestGateway


def _gateway(settings, fake_http, *, token="tok", on_unauthorized=None):
    return RequestGateway(
        settings,
        token_provider=lambda: token,
        on_unauthorized=on_unauthorized,
        http=fake_http,
    )


@pytest.mark.asyncio
async def test_get_retries_transient_network_errors(settings, fake_http, respond):
    fake_http.route(
        "GET",
        "/api/devices",
        requests.ConnectionError("refused"),
        requests.ConnectionError("refused"),
        respond(200, {"success": True, "data": [{"id": "42"}]}),
    )
    gateway = _gateway(settings, fake_http)

    response = await gateway.get("/devices")

    assert response.success
    assert response.data == [{"id": "42"}]
    assert len(fake_http.calls) == 3


@pytest.mark.asyncio
async def test_get_gives_up_after_configured_attempts(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices", respond(503, {"error": "maintenance"}))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(ApiError) as excinfo:
        await gateway.get("/devices")

    assert excinfo.value.status_code == 503
    assert str(excinfo.value) == "maintenance"
    assert len(fake_http.calls) == 1 + settings.request_retry_attempts


@pytest.mark.asyncio
async def test_post_is_not_retried_by_default(settings, fake_http):
    fake_http.route("POST", "/api/devices", requests.ConnectionError("refused"))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(NetworkError):
        await gateway.post("/devices", json={"name": "pump"})

    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_unauthorized_response_invalidates_session_and_is_not_retried(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices", respond(401, {"message": "Token expired"}))
    invalidations = []
    gateway = _gateway(settings, fake_http, on_unauthorized=invalidations.append)

    with pytest.raises(AuthorizationError) as excinfo:
        await gateway.get("/devices")

    assert str(excinfo.value) == "Token expired"
    assert invalidations == ["tok"]
    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_unauthorized_on_anonymous_call_is_an_authentication_error(settings, fake_http, respond):
    fake_http.route("POST", "/api/auth/login", respond(401, {"error": "Invalid credentials"}))
    invalidations = []
    gateway = _gateway(settings, fake_http, on_unauthorized=invalidations.append)

    with pytest.raises(AuthenticationError):
        await gateway.post("/auth/login", json={}, authenticated=False)

    assert invalidations == []


@pytest.mark.asyncio
async def test_failing_unauthorized_hook_still_raises_authorization_error(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices", respond(401))

    def _broken_hook(token):
        raise RuntimeError("listener failed")

    gateway = _gateway(settings, fake_http, on_unauthorized=_broken_hook)

    with pytest.raises(AuthorizationError):
        await gateway.get("/devices")


@pytest.mark.asyncio
async def test_unparsable_body_is_a_protocol_error(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices", respond(200, raw=b"<html>oops</html>"))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(ProtocolError):
        await gateway.get("/devices")


@pytest.mark.asyncio
async def test_client_error_is_not_retried(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices/9", respond(404, {"error": {"message": "Device not found"}}))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(ApiError) as excinfo:
        await gateway.get("/devices/9")

    assert excinfo.value.status_code == 404
    assert str(excinfo.value) == "Device not found"
    assert len(fake_http.calls) == 1


@pytest.mark.asyncio
async def test_explicit_failure_envelope_is_normalized(settings, fake_http, respond):
    fake_http.route("PUT", "/api/devices/9", respond(200, {"success": False, "error": "Name taken"}))
    gateway = _gateway(settings, fake_http)

    response = await gateway.put("/devices/9", json={"name": "dup"})

    assert response.is_error
    assert response.error_message == "Name taken"


@pytest.mark.asyncio
async def test_empty_body_is_success_without_data(settings, fake_http, respond):
    fake_http.route("DELETE", "/api/devices/9", respond(204))
    gateway = _gateway(settings, fake_http)

    response = await gateway.delete("/devices/9")

    assert response.success
    assert response.status_code == 204
    assert response.data is None


@pytest.mark.asyncio
async def test_bearer_header_follows_token_provider(settings, fake_http, respond):
    fake_http.route("GET", "/api/devices", respond(200, {"data": []}))
    fake_http.route("GET", "/api/public", respond(200, {"data": []}))
    gateway = _gateway(settings, fake_http, token="abc")

    await gateway.get("/devices")
    await gateway.get("/public", authenticated=False)

    assert fake_http.calls_to("/api/devices")[0].headers["Authorization"] == "Bearer abc"
    assert "Authorization" not in fake_http.calls_to("/api/public")[0].headers


@pytest.mark.asyncio
async def test_requests_timeout_becomes_request_timeout(settings, fake_http):
    fake_http.route("GET", "/api/devices", requests.Timeout("read timed out"))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(RequestTimeout):
        await gateway.get("/devices", retry=False)


@pytest.mark.asyncio
async def test_slow_response_hits_gateway_timeout(settings, fake_http, respond):
    def _slow(method, url, kwargs):
        time.sleep(0.3)
        return respond(200, {"data": []})

    fake_http.route("GET", "/api/devices", _slow)
    gateway = _gateway(settings, fake_http)

    with pytest.raises(RequestTimeout):
        await gateway.get("/devices", retry=False, timeout_ms=50)


def test_build_url_normalizes_paths_and_params(settings, fake_http):
    gateway = _gateway(settings, fake_http)

    assert gateway.build_url("devices") == "http://api.test/api/devices"
    assert gateway.build_url("/api/devices") == "http://api.test/api/devices"
    assert gateway.build_url("https://cdn.test/file.bin") == "https://cdn.test/file.bin"
    assert (
        gateway.build_url("/devices", params={"page": 2, "status": None, "tag": ["a", "b"]})
        == "http://api.test/api/devices?page=2&tag=a&tag=b"
    )


@pytest.mark.asyncio
async def test_download_streams_body_to_disk(settings, fake_http, respond, tmp_path):
    payload = b"firmware-image" * 100
    fake_http.route("GET", "/api/firmware/7/download", respond(200, raw=payload))
    gateway = _gateway(settings, fake_http)
    dest = tmp_path / "downloads" / "fw.bin"

    result = await gateway.download("/firmware/7/download", dest)

    assert result.size_bytes == len(payload)
    assert dest.read_bytes() == payload
    assert fake_http.calls[0].stream is True


@pytest.mark.asyncio
async def test_download_failure_raises_api_error(settings, fake_http, respond, tmp_path):
    fake_http.route("GET", "/api/firmware/8/download", respond(500, {"error": "storage offline"}))
    gateway = _gateway(settings, fake_http)

    with pytest.raises(ApiError):
        await gateway.download("/firmware/8/download", tmp_path / "fw.bin")

    assert not (tmp_path / "fw.bin").exists()


@pytest.mark.asyncio
async def test_upload_sends_multipart_file(settings, fake_http, respond, tmp_path):
    source = tmp_path / "config.json"
    source.write_text("{}", encoding="utf-8")
    fake_http.route("POST", "/api/devices/42/config", respond(200, {"success": True, "data": {"id": 1}}))
    gateway = _gateway(settings, fake_http)

    response = await gateway.upload("/devices/42/config", source, field="config", data={"note": "x"})

    assert response.data == {"id": 1}
    call = fake_http.calls[0]
    assert list(call.files) == ["config"]
    assert call.files["config"][0] == "config.json"
    assert call.data == {"note": "x"}
