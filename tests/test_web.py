"""Tests for the group views and the sign-in flow."""
from unittest.mock import MagicMock, patch

import pytest
import requests

from group_admin.graph_client import GraphError, PagedResults
from group_admin.models import DirectoryObject, Group, User


TOKEN_PATH = "group_admin.web.get_access_token_from_cache_or_refresh"
CONNECTION_PATH = "group_admin.web.GraphConnection"


@pytest.fixture
def graph():
    """Patch token lookup and the graph connection with a signed-in happy path."""
    connection = MagicMock()
    connection.get_group.return_value = Group(
        object_id="g-1", display_name="Engineering", mail_nickname="engineering", security_enabled=True
    )
    with patch(TOKEN_PATH, return_value="token-abc") as token, patch(
        CONNECTION_PATH, return_value=connection
    ) as factory:
        connection.token_lookup = token
        connection.factory = factory
        yield connection


@pytest.fixture
def no_token():
    with patch(TOKEN_PATH, return_value=None) as token, patch(CONNECTION_PATH) as factory:
        yield factory


class TestAuthorization:
    def test_home_page_is_public(self, client):
        response = client.get("/")

        assert response.status_code == 200
        assert b"Sign in" in response.data

    def test_group_pages_require_sign_in(self, client):
        response = client.get("/groups/g-1?tab=x")

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/login")
        with client.session_transaction() as sess:
            assert sess["post_login_redirect"] == "/groups/g-1?tab=x"

    def test_missing_token_renders_authorization_required(self, signed_in_client, no_token):
        response = signed_in_client.get("/groups/")

        assert response.status_code == 200
        assert b'id="authorization-required"' in response.data
        assert b"?reauth=True" in response.data
        no_token.assert_not_called()

    def test_reauth_flag_restarts_sign_in(self, signed_in_client, no_token):
        response = signed_in_client.get("/groups/g-1/members?reauth=True")

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/login")
        with signed_in_client.session_transaction() as sess:
            assert sess["post_login_redirect"] == "/groups/g-1/members"

    def test_token_lookup_uses_session_tenant(self, signed_in_client, graph):
        signed_in_client.get("/groups/")

        args = graph.token_lookup.call_args.args
        assert args[2] == "user-oid.tenant-id"
        assert args[3] == "tenant-id"
        assert graph.factory.call_args.args == ("token-abc",)

    def test_unreachable_token_endpoint_renders_authorization_required(self, signed_in_client):
        msal_client = MagicMock()
        msal_client.get_accounts.return_value = [{"home_account_id": "user-oid.tenant-id"}]
        msal_client.acquire_token_silent.side_effect = requests.ConnectionError("login endpoint unreachable")
        with patch("group_admin.token_cache.build_msal_app", return_value=msal_client), patch(
            CONNECTION_PATH
        ) as factory:
            response = signed_in_client.get("/groups/")

        assert response.status_code == 200
        assert b'id="authorization-required"' in response.data
        factory.assert_not_called()

    def test_reauth_flag_on_create_form_restarts_sign_in(self, signed_in_client, no_token):
        response = signed_in_client.get("/groups/create?reauth=True")

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/login")
        with signed_in_client.session_transaction() as sess:
            assert sess["post_login_redirect"] == "/groups/create"

    def test_reauth_flag_on_create_form_with_token_shows_form(self, signed_in_client, graph):
        response = signed_in_client.get("/groups/create?reauth=True")

        assert response.status_code == 200
        assert b'name="display_name"' in response.data

    def test_connections_share_one_http_session(self, app, signed_in_client, graph):
        graph.list_groups.return_value = PagedResults()

        signed_in_client.get("/groups/")
        signed_in_client.get("/groups/g-1")

        first, second = graph.factory.call_args_list
        assert first.kwargs["session"] is second.kwargs["session"]
        assert first.kwargs["session"] is app.config["_GRAPH_SESSION"]


class TestGroupViews:
    def test_index_lists_groups(self, signed_in_client, graph):
        graph.list_groups.return_value = PagedResults(
            results=[Group(object_id="g-1", display_name="Engineering")],
            next_link="https://graph.microsoft.com/v1.0/groups?$skiptoken=abc",
        )

        response = signed_in_client.get("/groups/")

        assert response.status_code == 200
        assert b"Engineering" in response.data
        assert b"Next page" in response.data
        graph.list_groups.assert_called_once_with(next_link=None)

    def test_details(self, signed_in_client, graph):
        response = signed_in_client.get("/groups/g-1")

        assert response.status_code == 200
        assert b"engineering" in response.data
        graph.get_group.assert_called_once_with("g-1")

    def test_graph_not_found_renders_error_page(self, signed_in_client, graph):
        graph.get_group.side_effect = GraphError(404, "Request_ResourceNotFound", "Group does not exist.")

        response = signed_in_client.get("/groups/missing")

        assert response.status_code == 404
        assert b"Group does not exist." in response.data

    def test_create_form_needs_no_token(self, signed_in_client, no_token):
        response = signed_in_client.get("/groups/create")

        assert response.status_code == 200
        assert b"authorization-required" not in response.data

    def test_create_binds_whitelisted_fields(self, signed_in_client, graph):
        graph.add_group.return_value = Group(object_id="g-new", display_name="Ops")

        response = signed_in_client.post(
            "/groups/create",
            data={
                "display_name": "Ops",
                "mail_nickname": "ops",
                "description": "Operations",
                "security_enabled": "on",
                "object_id": "forged",
            },
        )

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/groups/")
        group = graph.add_group.call_args.args[0]
        assert group.object_id == ""
        assert group.display_name == "Ops"
        assert group.security_enabled is True

    def test_create_failure_redisplays_form(self, signed_in_client, graph):
        graph.add_group.side_effect = GraphError(400, "Request_BadRequest", "Another object with the same value exists.")

        response = signed_in_client.post("/groups/create", data={"display_name": "Ops", "mail_nickname": "ops"})

        assert response.status_code == 200
        assert b"Another object with the same value exists." in response.data
        assert b'value="Ops"' in response.data

    def test_create_validation_error(self, signed_in_client, graph):
        response = signed_in_client.post("/groups/create", data={"display_name": "Ops"})

        assert response.status_code == 200
        assert b"Mail nickname is required." in response.data
        graph.add_group.assert_not_called()

    def test_create_without_token(self, signed_in_client, no_token):
        response = signed_in_client.post("/groups/create", data={"display_name": "Ops", "mail_nickname": "ops"})

        assert response.status_code == 200
        assert b'id="authorization-required"' in response.data
        no_token.assert_not_called()

    def test_edit_form_loads_group(self, signed_in_client, graph):
        response = signed_in_client.get("/groups/g-1/edit")

        assert response.status_code == 200
        assert b'value="Engineering"' in response.data

    def test_edit_updates_group(self, signed_in_client, graph):
        response = signed_in_client.post(
            "/groups/g-1/edit",
            data={"object_id": "g-1", "display_name": "Eng", "mail_nickname": "eng", "description": "Builders"},
        )

        assert response.status_code == 302
        group = graph.update_group.call_args.args[0]
        assert group.object_id == "g-1"
        assert group.display_name == "Eng"
        assert group.security_enabled is False

    def test_edit_failure_redisplays_form(self, signed_in_client, graph):
        graph.update_group.side_effect = GraphError(403, "Authorization_RequestDenied", "Insufficient privileges.")

        response = signed_in_client.post(
            "/groups/g-1/edit", data={"display_name": "Eng", "mail_nickname": "eng"}
        )

        assert response.status_code == 200
        assert b"Insufficient privileges." in response.data

    def test_delete_confirmation(self, signed_in_client, graph):
        response = signed_in_client.get("/groups/g-1/delete")

        assert response.status_code == 200
        assert b"Are you sure" in response.data

    def test_delete_confirmation_shows_lookup_error(self, signed_in_client, graph):
        graph.get_group.side_effect = GraphError(404, "Request_ResourceNotFound", "Gone.")

        response = signed_in_client.get("/groups/g-1/delete")

        assert response.status_code == 200
        assert b"Gone." in response.data
        assert b"Are you sure" not in response.data

    def test_delete_removes_group(self, signed_in_client, graph):
        response = signed_in_client.post("/groups/g-1/delete", data={"display_name": "Engineering"})

        assert response.status_code == 302
        graph.delete_group.assert_called_once_with("g-1")

    def test_delete_failure_redisplays_group(self, signed_in_client, graph):
        graph.delete_group.side_effect = GraphError(403, "Authorization_RequestDenied", "Insufficient privileges.")

        response = signed_in_client.post("/groups/g-1/delete", data={"display_name": "Engineering"})

        assert response.status_code == 200
        assert b"Insufficient privileges." in response.data
        assert b"Engineering" in response.data

    def test_member_of_lists_only_groups(self, signed_in_client, graph):
        graph.get_linked_objects.return_value = PagedResults(
            results=[
                Group(object_id="g-parent", display_name="All Staff"),
                DirectoryObject(object_id="au-1", display_name="Admin Unit"),
            ]
        )

        response = signed_in_client.get("/groups/g-1/member-of")

        assert response.status_code == 200
        assert b"All Staff" in response.data
        assert b"Admin Unit" not in response.data
        assert graph.get_linked_objects.call_args.args[1].value == "memberOf"

    def test_members_lists_only_users(self, signed_in_client, graph):
        graph.get_linked_objects.return_value = PagedResults(
            results=[
                User(object_id="u-1", display_name="Ada Lovelace", user_principal_name="ada@contoso.example"),
                Group(object_id="g-2", display_name="Nested Group"),
            ]
        )

        response = signed_in_client.get("/groups/g-1/members")

        assert response.status_code == 200
        assert b"ada@contoso.example" in response.data
        assert b"Nested Group" not in response.data
        assert graph.get_linked_objects.call_args.args[1].value == "members"


class TestSignIn:
    def test_login_redirects_to_identity_provider(self, client):
        msal_client = MagicMock()
        msal_client.get_authorization_request_url.return_value = "https://login.example/authorize"
        with patch("group_admin.web._build_msal_client", return_value=msal_client):
            response = client.get("/login?next=/groups/g-1")

        assert response.status_code == 302
        assert response.headers["Location"] == "https://login.example/authorize"
        kwargs = msal_client.get_authorization_request_url.call_args.kwargs
        assert kwargs["scopes"] == ["https://graph.microsoft.com/.default"]
        assert kwargs["redirect_uri"] == "http://localhost/auth/callback"
        with client.session_transaction() as sess:
            assert sess["auth_state"] == kwargs["state"]
            assert sess["post_login_redirect"] == "/groups/g-1"

    def test_login_ignores_external_next(self, client):
        msal_client = MagicMock()
        msal_client.get_authorization_request_url.return_value = "https://login.example/authorize"
        with patch("group_admin.web._build_msal_client", return_value=msal_client):
            client.get("/login?next=https://evil.example/")

        with client.session_transaction() as sess:
            assert sess["post_login_redirect"] == "/groups/"

    def test_callback_rejects_state_mismatch(self, client):
        with client.session_transaction() as sess:
            sess["auth_state"] = "expected"

        response = client.get("/auth/callback?state=other&code=abc")

        assert response.status_code == 302
        with client.session_transaction() as sess:
            assert "user" not in sess

    def test_callback_signs_user_in(self, client):
        msal_client = MagicMock()
        msal_client.acquire_token_by_authorization_code.return_value = {
            "access_token": "token",
            "id_token_claims": {
                "name": "Ada Admin",
                "preferred_username": "ada@contoso.example",
                "oid": "user-oid",
                "tid": "tenant-id",
            },
        }
        msal_client.get_accounts.return_value = [{"home_account_id": "user-oid.tenant-id"}]
        with client.session_transaction() as sess:
            sess["auth_state"] = "expected"
            sess["post_login_redirect"] = "/groups/g-1"

        with patch("group_admin.web._build_msal_client", return_value=msal_client):
            response = client.get("/auth/callback?state=expected&code=abc")

        assert response.status_code == 302
        assert response.headers["Location"].endswith("/groups/g-1")
        with client.session_transaction() as sess:
            assert sess["user"]["tenant_id"] == "tenant-id"
            assert sess["user"]["account_key"] == "user-oid.tenant-id"

    def test_callback_token_failure(self, client):
        msal_client = MagicMock()
        msal_client.acquire_token_by_authorization_code.return_value = {
            "error": "invalid_grant",
            "error_description": "Code expired.",
        }
        with client.session_transaction() as sess:
            sess["auth_state"] = "expected"

        with patch("group_admin.web._build_msal_client", return_value=msal_client):
            response = client.get("/auth/callback?state=expected&code=abc")

        assert response.status_code == 302
        with client.session_transaction() as sess:
            assert "user" not in sess

    def test_logout_clears_session_and_token_cache(self, signed_in_client, app):
        with patch("group_admin.web.TokenCacheStore.remove") as remove:
            response = signed_in_client.get("/logout")

        assert response.status_code == 302
        remove.assert_called_once_with("user-oid.tenant-id")
        with signed_in_client.session_transaction() as sess:
            assert "user" not in sess
