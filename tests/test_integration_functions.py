"""HTTP-level tests for the completion proxy and the account functions."""

import httpx
import pytest
from fastapi.testclient import TestClient

from conftest import subscriber
from quoteai import app as app_module
from quoteai.service.completions import CompletionClient
from quoteai.service.runtime import get_runtime, reset_runtime_for_tests
from quoteai.storage.models import CONVERSATIONS_TABLE, PROFILES_TABLE, SAVED_QUOTES_TABLE

PROXY = "/functions/v1/kimi-proxy"
DELETE = "/functions/v1/delete-account"
MIGRATE = "/functions/v1/migrate-account"
ENDPOINTS = [PROXY, DELETE, MIGRATE]

BUCKET = "profile-images"


@pytest.fixture
def client():
    return TestClient(app_module.app)


def _auth(token="member-token"):
    return {"Authorization": f"Bearer {token}"}


class TestSharedConventions:
    @pytest.mark.parametrize("path", ENDPOINTS)
    def test_options_returns_ok_with_cors_headers(self, client, path):
        response = client.options(path)

        assert response.status_code == 200
        assert response.text == "ok"
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-headers"] == (
            "authorization, x-client-info, apikey, content-type"
        )

    @pytest.mark.parametrize("path", ENDPOINTS)
    @pytest.mark.parametrize("method", ["GET", "PUT", "DELETE", "PATCH"])
    def test_non_post_methods_are_rejected(self, client, path, method):
        response = client.request(method, path, headers=_auth())

        assert response.status_code == 405
        assert response.json() == {"error": "method_not_allowed"}
        assert response.headers["access-control-allow-origin"] == "*"

    @pytest.mark.parametrize("path", ENDPOINTS)
    @pytest.mark.parametrize(
        "body", [b"", b"{not json", b'{"oldUserId": "guest", "model": "moonshot-v1-8k"}']
    )
    def test_missing_bearer_is_auth_required(self, client, path, body):
        response = client.post(path, content=body)

        assert response.status_code == 401
        assert response.json() == {"error": "auth_required"}
        assert response.headers["content-type"] == "application/json"

    @pytest.mark.parametrize("path", ENDPOINTS)
    def test_unknown_token_is_auth_required(self, client, path):
        response = client.post(path, headers=_auth("nope"), json={})

        assert response.status_code == 401
        assert response.json() == {"error": "auth_required"}

    @pytest.mark.parametrize("path", ENDPOINTS)
    def test_missing_backend_config_is_reported_first(self, client, path, monkeypatch):
        monkeypatch.delenv("SUPABASE_SERVICE_ROLE_KEY", raising=False)

        response = client.post(path)

        assert response.status_code == 500
        body = response.json()
        assert body["error"] == "server_misconfigured"
        assert "SUPABASE_SERVICE_ROLE_KEY" in body["missing"]

    def test_proxy_requires_ledger_and_upstream_keys(self, client, monkeypatch):
        monkeypatch.delenv("KIMI_API_KEY", raising=False)
        monkeypatch.delenv("REVENUECAT_SECRET_KEY", raising=False)

        response = client.post(PROXY, headers=_auth(), json={})

        assert response.status_code == 500
        assert response.json() == {
            "error": "server_misconfigured",
            "missing": ["KIMI_API_KEY", "REVENUECAT_SECRET_KEY"],
        }

    def test_account_functions_do_not_need_proxy_keys(self, client, monkeypatch):
        monkeypatch.delenv("KIMI_API_KEY", raising=False)
        reset_runtime_for_tests()
        get_runtime().backend.add_identity("member", token="member-token")

        response = client.post(DELETE, headers=_auth())

        assert response.status_code == 200

    def test_request_id_is_echoed(self, client):
        response = client.post(DELETE, headers={"X-Request-ID": "req-123"})

        assert response.headers["x-request-id"] == "req-123"

    def test_unexpected_failure_keeps_cors_headers(self, backend, monkeypatch):
        async def explode(token):
            raise RuntimeError("auth reply was not JSON")

        monkeypatch.setattr(backend, "get_user_by_token", explode)
        client = TestClient(app_module.app, raise_server_exceptions=False)

        response = client.post(DELETE, headers={**_auth(), "X-Request-ID": "req-500"})

        assert response.status_code == 500
        assert response.json() == {"error": "server_error"}
        assert response.headers["access-control-allow-origin"] == "*"
        assert response.headers["access-control-allow-headers"] == (
            "authorization, x-client-info, apikey, content-type"
        )
        assert response.headers["x-request-id"] == "req-500"

    def test_healthz_reports_configuration(self, client, monkeypatch):
        monkeypatch.delenv("REVENUECAT_SECRET_KEY", raising=False)

        body = client.get("/healthz").json()

        assert body["status"] == "degraded"
        assert body["missing"]["kimi-proxy"] == ["REVENUECAT_SECRET_KEY"]
        assert body["missing"]["delete-account"] == []


class TestCompletionProxy:
    @pytest.fixture(autouse=True)
    def member(self, backend):
        return backend.add_identity("Member-ID", token="member-token")

    def test_entitled_request_is_relayed(self, client, ledger, upstream):
        ledger.responses["member-id"] = subscriber({"is_active": True})
        raw = b'{"model":"moonshot-v1-8k",  "messages":[{"role":"user","content":"hi"}]}'

        response = client.post(PROXY, headers=_auth(), content=raw)

        assert response.status_code == 200
        assert response.content == upstream.body
        assert len(upstream.requests) == 1
        sent = upstream.requests[0]
        assert sent.content == raw
        assert sent.headers["authorization"] == "Bearer kimi-key-for-tests"
        assert str(sent.url) == "https://upstream.test/v1/chat/completions"

    @pytest.mark.parametrize(
        "status_code,body",
        [
            (200, b'{"id":"cmpl-1","choices":[{"message":{"content":"Be brave."}}]}'),
            (429, b'{"error":{"message":"rate limited","type":"rate_limit_reached_error"}}'),
            (500, b"upstream exploded"),
        ],
    )
    def test_upstream_status_and_body_pass_through(
        self, client, ledger, upstream, status_code, body
    ):
        ledger.responses["Member-ID"] = subscriber({"is_active": True})
        upstream.status_code = status_code
        upstream.body = body

        response = client.post(PROXY, headers=_auth(), json={"messages": []})

        assert response.status_code == status_code
        assert response.content == body

    @pytest.mark.parametrize(
        "body",
        [b'{"messages": [', b"NaN", b'{"temperature": Infinity}', b'{"top_p": -Infinity}'],
    )
    def test_invalid_json_is_rejected_even_when_entitled(self, client, ledger, upstream, body):
        ledger.responses["Member-ID"] = subscriber({"is_active": True})

        response = client.post(PROXY, headers=_auth(), content=body)

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request"}
        assert upstream.requests == []

    def test_unentitled_caller_gets_payment_required(self, client, ledger, upstream):
        ledger.responses["Member-ID"] = subscriber(
            {"is_active": False, "expires_date": "2020-01-01T00:00:00Z"}
        )

        response = client.post(PROXY, headers=_auth(), json={"messages": []})

        assert response.status_code == 402
        assert response.json() == {"error": "subscription_required"}
        assert ledger.requested == ["Member-ID", "member-id", "MEMBER-ID"]
        assert upstream.requests == []

    def test_ledger_error_is_payment_required(self, client, ledger, upstream):
        ledger.responses["Member-ID"] = (500, {"message": "ledger down"})

        response = client.post(PROXY, headers=_auth(), json={"messages": []})

        assert response.status_code == 402
        assert response.json() == {"error": "subscription_required"}
        assert ledger.requested == ["Member-ID"]

    def test_unreachable_upstream_is_bad_gateway(self, client, runtime, ledger):
        ledger.responses["Member-ID"] = subscriber({"is_active": True})

        def refuse(request):
            raise httpx.ConnectError("connection refused", request=request)

        runtime.completions = CompletionClient(
            "kimi-key-for-tests",
            "https://upstream.test/v1/chat/completions",
            transport=httpx.MockTransport(refuse),
        )

        response = client.post(PROXY, headers=_auth(), json={"messages": []})

        assert response.status_code == 502
        assert response.json() == {"error": "upstream_unreachable"}

    def test_entitlement_checked_before_body(self, client, ledger, upstream):
        response = client.post(PROXY, headers=_auth(), content=b"not json")

        assert response.status_code == 402


class TestDeleteAccount:
    def test_delete_account_removes_everything(self, client, backend):
        backend.add_identity("Member-ID", token="member-token")
        backend.add_row(PROFILES_TABLE, "Member-ID", name="Ada")
        backend.add_row(CONVERSATIONS_TABLE, "member-id")
        backend.add_row(SAVED_QUOTES_TABLE, "MEMBER-ID")
        backend.add_object(BUCKET, "member-id/profile.jpg")

        response = client.post(DELETE, headers=_auth())

        assert response.status_code == 200
        assert response.json() == {"success": True}
        assert backend.rows(PROFILES_TABLE) == []
        assert backend.rows(CONVERSATIONS_TABLE) == []
        assert backend.rows(SAVED_QUOTES_TABLE) == []
        assert backend.object_paths(BUCKET) == []
        assert "Member-ID" not in backend.identities

    def test_delete_account_ignores_body(self, client, backend):
        backend.add_identity("member", token="member-token")

        response = client.post(DELETE, headers=_auth(), content=b"{broken")

        assert response.status_code == 200

    def test_second_call_after_deletion_is_auth_required(self, client, backend):
        backend.add_identity("member", token="member-token")

        assert client.post(DELETE, headers=_auth()).status_code == 200
        response = client.post(DELETE, headers=_auth())

        assert response.status_code == 401
        assert response.json() == {"error": "auth_required"}

    def test_step_failure_code_is_returned(self, client, backend):
        backend.add_identity("member", token="member-token")
        backend.fail_on["delete_rows:saved_quotes"] = "permission denied"

        response = client.post(DELETE, headers=_auth())

        assert response.status_code == 500
        assert response.json() == {"error": "delete_quotes_failed"}
        assert "member" in backend.identities


class TestMigrateAccount:
    @pytest.fixture(autouse=True)
    def member(self, backend):
        return backend.add_identity("Member-ID", token="member-token")

    def test_guest_data_moves_to_member(self, client, backend):
        backend.add_identity("Guest-1", is_anonymous=True)
        backend.add_row(PROFILES_TABLE, "Guest-1", name="Ada")
        backend.add_row(CONVERSATIONS_TABLE, "guest-1")
        backend.add_row(SAVED_QUOTES_TABLE, "GUEST-1")
        backend.add_object(BUCKET, "guest-1/profile.jpg")

        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "Guest-1"})

        assert response.status_code == 200
        assert response.json() == {"migrated": True}
        for table in (PROFILES_TABLE, CONVERSATIONS_TABLE, SAVED_QUOTES_TABLE):
            assert [row["user_id"] for row in backend.rows(table)] == ["member-id"]
        assert backend.object_paths(BUCKET) == ["member-id/profile.jpg"]
        profile_url = backend.rows(PROFILES_TABLE)[0]["profile_image_url"]
        assert profile_url.startswith(
            "https://project.supabase.test/storage/v1/object/public/"
            "profile-images/member-id/profile.jpg?t="
        )

    def test_same_user_is_skipped(self, client, backend):
        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "MEMBER-id"})

        assert response.status_code == 200
        assert response.json() == {"skipped": True, "reason": "same_user"}
        assert backend.writes == []

    def test_non_empty_target_is_skipped(self, client, backend):
        backend.add_identity("guest", is_anonymous=True)
        backend.add_row(CONVERSATIONS_TABLE, "guest")
        backend.add_row(CONVERSATIONS_TABLE, "member-id")

        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "guest"})

        assert response.status_code == 200
        assert response.json() == {"skipped": True, "reason": "target_not_empty"}
        assert backend.writes == []

    def test_permanent_old_user_is_rejected(self, client, backend):
        backend.add_identity("other", is_anonymous=False)

        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "other"})

        assert response.status_code == 400
        assert response.json() == {"error": "old_user_not_anonymous"}
        assert backend.writes == []

    def test_unknown_old_user_is_rejected(self, client):
        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "ghost"})

        assert response.status_code == 400
        assert response.json() == {"error": "old_user_not_found"}

    @pytest.mark.parametrize(
        "body",
        [
            b"",
            b"{oops",
            b"[]",
            b"{}",
            b'{"oldUserId": ""}',
            b'{"oldUserId": 42}',
            b'{"oldUserId": "ghost", "retries": NaN}',
        ],
    )
    def test_missing_old_user_id_is_invalid(self, client, body):
        response = client.post(MIGRATE, headers=_auth(), content=body)

        assert response.status_code == 400
        assert response.json() == {"error": "invalid_request"}

    def test_update_failure_code_is_returned(self, client, backend):
        backend.add_identity("guest", is_anonymous=True)
        backend.add_row(CONVERSATIONS_TABLE, "guest")
        backend.fail_on["update_rows:conversations"] = "timeout"

        response = client.post(MIGRATE, headers=_auth(), json={"oldUserId": "guest"})

        assert response.status_code == 500
        assert response.json() == {"error": "migrate_conversations_failed"}
