"""Integration tests for hookedlee/main.py — full request pipeline via ASGI transport."""

import httpx
import pytest

from hookedlee.errors import ConfigurationError
from hookedlee.main import GLOBAL_LIMIT_MESSAGE, SECURITY_HEADERS, VERSION, create_app
from tests.conftest import (
    BIGMODEL_KEY,
    DEEPSEEK_KEY,
    FakeIdentity,
    FakeSleep,
    UpstreamStub,
    chat_completion,
    make_settings,
    sse_body,
)


async def build_client(settings, upstream=None):
    upstream = upstream or UpstreamStub()
    app = create_app(settings, identity=FakeIdentity(), transport=upstream.transport, sleep=FakeSleep())
    client = httpx.AsyncClient(transport=httpx.ASGITransport(app=app), base_url="http://test")
    return app, client


class TestHealthEndpoint:

    async def test_health(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200
        data = resp.json()
        assert data["status"] == "ok"
        assert data["version"] == VERSION
        assert data["providersConfigured"] == {"bigmodel": True, "deepseek": True}
        assert "timestamp" in data

    async def test_request_id_header(self, client):
        resp = await client.get("/api/health")
        assert len(resp.headers["x-request-id"]) == 12

    async def test_no_auth_required(self, client):
        resp = await client.get("/api/health")
        assert resp.status_code == 200


class TestModelsEndpoint:

    async def test_lists_catalog_anonymously(self, client):
        resp = await client.get("/api/models")
        assert resp.status_code == 200
        models = resp.json()["models"]
        ids = [m["id"] for m in models]
        assert "glm-4.7" in ids
        assert "deepseek-reasoner" in ids
        assert all(m["available"] for m in models)

    async def test_unconfigured_provider_marked_unavailable(self):
        _, client = await build_client(make_settings(deepseek_api_key=""))
        async with client:
            resp = await client.get("/api/models")
        by_id = {m["id"]: m for m in resp.json()["models"]}
        assert by_id["deepseek-chat"]["available"] is False
        assert by_id["glm-4.7"]["available"] is True


class TestLogin:

    async def test_issues_token(self, client, app):
        resp = await client.post("/api/auth/login", json={"code": "good-code"})
        assert resp.status_code == 200
        data = resp.json()
        assert data["subjectId"] == "openid-alice-0001"
        claims = app.state.token_service.verify(data["token"])
        assert claims.subject == "openid-alice-0001"

    async def test_missing_code(self, client):
        resp = await client.post("/api/auth/login", json={})
        assert resp.status_code == 400
        assert resp.json()["error"] == "Missing code"

    async def test_rejected_code(self, client):
        resp = await client.post("/api/auth/login", json={"code": "bad-code"})
        assert resp.status_code == 401
        assert resp.json()["error"] == "Authentication required"

    async def test_token_from_login_unlocks_proxy(self, client, chat_request_body):
        login = await client.post("/api/auth/login", json={"code": "good-code"})
        token = login.json()["token"]
        resp = await client.post(
            "/api/proxy/chat", json=chat_request_body, headers={"Authorization": f"Bearer {token}"}
        )
        assert resp.status_code == 200


class TestAuthentication:

    async def test_missing_token(self, client, chat_request_body, upstream):
        resp = await client.post("/api/proxy/chat", json=chat_request_body)
        assert resp.status_code == 401
        assert resp.json() == {"error": "Authentication required", "message": "Please login first"}
        assert upstream.calls == 0

    async def test_invalid_token(self, client, chat_request_body, upstream):
        resp = await client.post(
            "/api/proxy/chat", json=chat_request_body, headers={"Authorization": "Bearer garbage"}
        )
        assert resp.status_code == 401
        assert resp.json()["message"] == "Token expired or invalid"
        assert upstream.calls == 0

    async def test_token_query_parameter(self, client, app, chat_request_body):
        token = app.state.token_service.issue("openid-bob-0002")
        resp = await client.post(f"/api/proxy/chat?token={token}", json=chat_request_body)
        assert resp.status_code == 200

    async def test_image_requires_auth(self, client):
        resp = await client.post("/api/proxy/image", json={"prompt": "trout"})
        assert resp.status_code == 401


class TestProxyChat:

    async def test_success_passthrough(self, client, auth_headers, chat_request_body, upstream):
        upstream.push(httpx.Response(200, json=chat_completion("Wet the line first.")))
        resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["choices"][0]["message"]["content"] == "Wet the line first."

    async def test_server_key_attached(self, client, auth_headers, chat_request_body, upstream):
        await client.post("/api/proxy/chat", json=chat_request_body, headers=auth_headers)
        sent = upstream.requests[0]
        assert sent.headers["authorization"] == f"Bearer {BIGMODEL_KEY}"
        assert auth_headers["Authorization"] != sent.headers["authorization"]

    async def test_deepseek_routing(self, client, auth_headers, upstream):
        body = {"model": "deepseek-chat", "messages": [{"role": "user", "content": "hi"}]}
        await client.post("/api/proxy/chat", json=body, headers=auth_headers)
        assert upstream.requests[0].url.host == "api.deepseek.com"
        assert upstream.requests[0].headers["authorization"] == f"Bearer {DEEPSEEK_KEY}"

    async def test_model_required(self, client, auth_headers):
        resp = await client.post(
            "/api/proxy/chat", json={"messages": [{"role": "user", "content": "hi"}]}, headers=auth_headers
        )
        assert resp.status_code == 400
        assert resp.json()["error"] == "Model is required"

    async def test_unknown_model(self, client, auth_headers, upstream):
        body = {"model": "gpt-4o", "messages": [{"role": "user", "content": "hi"}]}
        resp = await client.post("/api/proxy/chat", json=body, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Unknown model"
        assert upstream.calls == 0

    async def test_messages_required(self, client, auth_headers):
        resp = await client.post("/api/proxy/chat", json={"model": "glm-4.7"}, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Invalid request"

    async def test_upstream_429_exhausted(self, client, auth_headers, chat_request_body, upstream, fake_sleep):
        upstream.default = httpx.Response(429, json={"error": "quota detail for account 42"})
        resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=auth_headers)
        assert resp.status_code == 429
        assert upstream.calls == 3
        assert fake_sleep.delays == [2.0, 4.0]
        data = resp.json()
        assert data["retryAfter"] > 0
        assert "Retry-After" in resp.headers
        assert "account 42" not in resp.text

    async def test_upstream_error_hidden(self, client, auth_headers, chat_request_body, upstream):
        upstream.push(httpx.Response(500, json={"error": "internal stack trace at node-7"}))
        resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=auth_headers)
        assert resp.status_code == 502
        data = resp.json()
        assert data["details"] == {"upstreamStatus": 500}
        assert "node-7" not in resp.text
        assert upstream.calls == 1

    async def test_upstream_unreachable(self, client, auth_headers, chat_request_body, upstream):
        upstream.push(httpx.ConnectError("connection refused"))
        resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=auth_headers)
        assert resp.status_code == 502
        assert resp.json()["error"] == "Upstream unreachable"

    async def test_streaming(self, client, auth_headers, chat_request_body, upstream):
        upstream.push(httpx.Response(200, content=sse_body("Tight", " lines")))
        body = {**chat_request_body, "stream": True}
        resp = await client.post("/api/proxy/chat", json=body, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.headers["content-type"].startswith("text/event-stream")
        assert "Tight" in resp.text
        assert resp.text.rstrip().endswith("data: [DONE]")


class TestProviderAliasRoutes:

    async def test_glm_alias_defaults_model(self, client, auth_headers, upstream):
        body = {"messages": [{"role": "user", "content": "hi"}]}
        resp = await client.post("/api/proxy/glm", json=body, headers=auth_headers)
        assert resp.status_code == 200
        assert upstream.json_bodies()[0]["model"] == "glm-4.7"
        assert upstream.requests[0].url.host == "open.bigmodel.cn"

    async def test_deepseek_alias_with_model(self, client, auth_headers, upstream):
        body = {"model": "deepseek-reasoner", "messages": [{"role": "user", "content": "hi"}]}
        resp = await client.post("/api/proxy/deepseek", json=body, headers=auth_headers)
        assert resp.status_code == 200
        assert upstream.json_bodies()[0]["model"] == "deepseek-reasoner"

    async def test_alias_rejects_foreign_model(self, client, auth_headers, upstream):
        body = {"model": "glm-4.7", "messages": [{"role": "user", "content": "hi"}]}
        resp = await client.post("/api/proxy/deepseek", json=body, headers=auth_headers)
        assert resp.status_code == 400
        assert resp.json()["error"] == "Unknown model"
        assert upstream.calls == 0

    async def test_unknown_alias_is_404(self, client, auth_headers):
        body = {"messages": [{"role": "user", "content": "hi"}]}
        resp = await client.post("/api/proxy/openai", json=body, headers=auth_headers)
        assert resp.status_code == 404
        assert resp.json() == {"error": "Endpoint not found", "path": "/api/proxy/openai"}


class TestProxyImage:

    async def test_image(self, client, auth_headers, upstream):
        upstream.push(httpx.Response(200, json={"data": [{"url": "https://img.example/trout.png"}]}))
        resp = await client.post("/api/proxy/image", json={"prompt": "A trout"}, headers=auth_headers)
        assert resp.status_code == 200
        assert resp.json()["data"][0]["url"] == "https://img.example/trout.png"
        assert upstream.json_bodies()[0]["model"] == "cogview-3-flash"

    async def test_hero_image(self, client, auth_headers, upstream):
        body = {"prompt": "Cover", "isHero": True, "size": "1344x768"}
        await client.post("/api/proxy/image", json=body, headers=auth_headers)
        sent = upstream.json_bodies()[0]
        assert sent["model"] == "cogview-4"
        assert sent["size"] == "1344x768"

    async def test_empty_prompt(self, client, auth_headers, upstream):
        resp = await client.post("/api/proxy/image", json={"prompt": ""}, headers=auth_headers)
        assert resp.status_code == 400
        assert upstream.calls == 0


class TestPerUserRateLimit:

    async def test_limit_per_user(self, chat_request_body):
        app, client = await build_client(make_settings(user_rate_limit_max=3))
        alice = {"Authorization": f"Bearer {app.state.token_service.issue('openid-alice')}"}
        bob = {"Authorization": f"Bearer {app.state.token_service.issue('openid-bob')}"}
        async with client:
            for _ in range(3):
                resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=alice)
                assert resp.status_code == 200
            resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=alice)
            assert resp.status_code == 429
            assert resp.json()["error"] == "Rate limit exceeded"
            assert resp.json()["retryAfter"] >= 1
            assert int(resp.headers["Retry-After"]) >= 1

            resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=bob)
            assert resp.status_code == 200

    async def test_limited_request_never_reaches_upstream(self, chat_request_body):
        upstream = UpstreamStub()
        app, client = await build_client(make_settings(user_rate_limit_max=1), upstream)
        headers = {"Authorization": f"Bearer {app.state.token_service.issue('openid-alice')}"}
        async with client:
            await client.post("/api/proxy/chat", json=chat_request_body, headers=headers)
            resp = await client.post("/api/proxy/chat", json=chat_request_body, headers=headers)
        assert resp.status_code == 429
        assert upstream.calls == 1


class TestGlobalRateLimit:

    async def test_limit_per_ip(self):
        _, client = await build_client(make_settings(global_rate_limit_max=3))
        async with client:
            for _ in range(3):
                assert (await client.get("/api/health")).status_code == 200
            resp = await client.get("/api/health")
        assert resp.status_code == 429
        assert resp.json() == {"error": GLOBAL_LIMIT_MESSAGE}

    async def test_forwarded_addresses_limited_separately(self):
        _, client = await build_client(make_settings(global_rate_limit_max=1))
        async with client:
            first = await client.get("/api/health", headers={"X-Forwarded-For": "198.51.100.1"})
            second = await client.get("/api/health", headers={"X-Forwarded-For": "198.51.100.2"})
            third = await client.get("/api/health", headers={"X-Forwarded-For": "198.51.100.1"})
        assert first.status_code == 200
        assert second.status_code == 200
        assert third.status_code == 429

    async def test_forwarded_header_ignored_without_trust(self):
        _, client = await build_client(make_settings(global_rate_limit_max=1, trust_proxy=False))
        async with client:
            await client.get("/api/health", headers={"X-Forwarded-For": "198.51.100.1"})
            resp = await client.get("/api/health", headers={"X-Forwarded-For": "198.51.100.2"})
        assert resp.status_code == 429

    async def test_paths_outside_api_not_counted(self):
        _, client = await build_client(make_settings(global_rate_limit_max=1))
        async with client:
            await client.get("/openapi.json")
            await client.get("/openapi.json")
            resp = await client.get("/api/health")
        assert resp.status_code == 200

    async def test_preflight_not_counted(self):
        _, client = await build_client(make_settings(global_rate_limit_max=1))
        preflight = {"Origin": "https://servicewechat.com", "Access-Control-Request-Method": "POST"}
        async with client:
            for _ in range(3):
                resp = await client.options("/api/proxy/chat", headers=preflight)
                assert resp.status_code == 200
                assert resp.headers["access-control-allow-origin"] == "*"
            await client.options("/api/health")
            resp = await client.get("/api/health")
        assert resp.status_code == 200

    async def test_rejection_carries_cors_headers(self):
        _, client = await build_client(make_settings(global_rate_limit_max=1))
        origin = {"Origin": "https://servicewechat.com"}
        async with client:
            await client.get("/api/health", headers=origin)
            resp = await client.get("/api/health", headers=origin)
        assert resp.status_code == 429
        assert resp.headers["access-control-allow-origin"] == "*"
        assert len(resp.headers["x-request-id"]) == 12


class TestSecurityHeaders:

    async def test_headers_on_success(self, client):
        resp = await client.get("/api/health")
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert resp.headers["x-frame-options"] == "SAMEORIGIN"
        assert resp.headers["strict-transport-security"] == "max-age=15552000; includeSubDomains"
        for name, value in SECURITY_HEADERS.items():
            assert resp.headers[name] == value

    async def test_no_csp_or_coep(self, client):
        resp = await client.get("/api/health")
        assert "content-security-policy" not in resp.headers
        assert "cross-origin-embedder-policy" not in resp.headers

    async def test_headers_on_errors(self, client):
        resp = await client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert resp.headers["x-content-type-options"] == "nosniff"


class TestBodyLimit:

    async def test_default_is_ten_megabytes(self):
        assert make_settings().max_body_bytes == 10 * 1024 * 1024

    async def test_oversized_body_rejected(self):
        upstream = UpstreamStub()
        _, client = await build_client(make_settings(max_body_bytes=100), upstream)
        body = {"model": "glm-4.7", "messages": [{"role": "user", "content": "x" * 200}]}
        async with client:
            resp = await client.post("/api/proxy/chat", json=body)
        assert resp.status_code == 413
        assert resp.json() == {"error": "Request entity too large"}
        assert resp.headers["x-content-type-options"] == "nosniff"
        assert upstream.calls == 0

    async def test_oversized_body_not_counted(self):
        _, client = await build_client(make_settings(max_body_bytes=100, global_rate_limit_max=1))
        async with client:
            await client.post("/api/proxy/chat", content=b"x" * 500)
            resp = await client.get("/api/health")
        assert resp.status_code == 200

    async def test_body_within_limit_passes(self, auth_headers, upstream):
        _, client = await build_client(make_settings(max_body_bytes=2000), upstream)
        body = {"model": "glm-4.7", "messages": [{"role": "user", "content": "x" * 200}]}
        async with client:
            resp = await client.post("/api/proxy/chat", json=body, headers=auth_headers)
        assert resp.status_code == 200
        assert upstream.calls == 1


class TestNotFound:

    async def test_unknown_endpoint(self, client):
        resp = await client.get("/api/does-not-exist")
        assert resp.status_code == 404
        assert resp.json() == {"error": "Endpoint not found", "path": "/api/does-not-exist"}


class TestStartup:

    def test_refuses_without_jwt_secret(self):
        with pytest.raises(ConfigurationError):
            create_app(make_settings(jwt_secret=""))

    def test_refuses_without_provider_keys(self):
        with pytest.raises(ConfigurationError):
            create_app(make_settings(bigmodel_api_key="", deepseek_api_key=""))

    def test_single_provider_is_enough(self):
        app = create_app(make_settings(deepseek_api_key=""), identity=FakeIdentity())
        assert app.state.registry.is_configured("bigmodel")
        assert not app.state.registry.is_configured("deepseek")
