"""Flask-powered web interface for managing directory groups."""
from __future__ import annotations

import logging
import os
import secrets
from pathlib import Path
from typing import Any, Dict, Optional, Tuple
from urllib.parse import parse_qsl, urlencode, urlsplit, urlunsplit

import msal
import requests
from flask import (
    Flask,
    flash,
    g,
    redirect,
    render_template,
    request,
    session,
    url_for,
)
from flask import has_request_context

from .config import AppConfig, AuthConfig, ensure_default_config, load_config
from .graph_client import GraphClientError, GraphConnection, GraphError, LinkProperty
from .models import CREATE_BIND_FIELDS, EDIT_BIND_FIELDS, Group, User
from .token_cache import TokenCacheStore, build_msal_app, get_access_token_from_cache_or_refresh


_TEMPLATE_FOLDER = Path(__file__).resolve().parent / "templates"
_AUTH_EXEMPT_ENDPOINTS = {"index", "login", "logout", "auth_callback", "static"}
_RESERVED_AUTH_SCOPES = {"openid", "profile", "offline_access"}
AUTHORIZATION_REQUIRED = "AuthorizationRequired"


def create_app(config_path: Optional[Path | str] = None) -> Flask:
    """Create and configure the Flask application."""

    resolved_config_path = Path(config_path) if config_path else None
    ensure_default_config(resolved_config_path)

    app = Flask(__name__, template_folder=str(_TEMPLATE_FOLDER))
    app.config["SECRET_KEY"] = os.environ.get("GROUPADMIN_WEB_SECRET", "group-admin-secret")
    app.config["CONFIG_PATH"] = resolved_config_path

    config = load_config(resolved_config_path)
    app.logger.setLevel(config.web.log_level)
    logging.getLogger("group_admin").setLevel(config.web.log_level)

    register_routes(app)
    return app


def register_routes(app: Flask) -> None:
    """Attach all web routes to the provided Flask app."""

    @app.before_request
    def _enforce_authentication() -> Optional[Any]:
        current_user = session.get("user")
        g.current_user = current_user

        endpoint = request.endpoint or ""
        if endpoint.startswith("static") or endpoint in _AUTH_EXEMPT_ENDPOINTS:
            return None

        if current_user:
            return None

        session["post_login_redirect"] = request.full_path if request.query_string else request.path
        return redirect(url_for("login"))

    @app.context_processor
    def inject_globals() -> Dict[str, Any]:
        return {
            "current_user": session.get("user"),
            "authorization_required": AUTHORIZATION_REQUIRED,
        }

    @app.errorhandler(GraphError)
    def _graph_error(exc: GraphError) -> Any:
        status = exc.status_code if 400 <= exc.status_code < 600 else 502
        app.logger.warning("Graph request failed: %s", exc)
        return render_template("error.html", error=exc, status=status), status

    @app.errorhandler(GraphClientError)
    def _graph_client_error(exc: GraphClientError) -> Any:
        app.logger.error("Graph client error: %s", exc)
        return render_template("error.html", error=exc, status=502), 502

    @app.route("/login")
    def login() -> Any:
        config = _load_app_config(app)
        if not config.auth.has_credentials:
            flash("Sign-in is not configured. Provide auth.client_id and auth.client_secret.", "error")
            return redirect(url_for("index"))

        state = secrets.token_urlsafe(32)
        session["auth_state"] = state
        next_url = _safe_redirect_target(request.args.get("next")) or session.get("post_login_redirect")
        session["post_login_redirect"] = next_url or url_for("groups_index")

        client = _build_msal_client(config.auth)
        auth_url = client.get_authorization_request_url(
            scopes=_interactive_scopes(config),
            state=state,
            redirect_uri=_auth_redirect_uri(config.auth),
        )
        return redirect(auth_url)

    @app.route("/logout")
    def logout() -> Any:
        user = session.get("user") or {}
        account_key = user.get("account_key")
        if account_key:
            config = _load_app_config(app)
            try:
                _get_token_store(app, config).remove(account_key)
            except (OSError, ValueError) as exc:
                app.logger.warning("Unable to remove token cache for %s: %s", account_key, exc)
        session.clear()
        flash("You have been signed out.", "success")
        return redirect(url_for("index"))

    @app.route("/auth/callback")
    def auth_callback() -> Any:
        config = _load_app_config(app)

        expected_state = session.get("auth_state")
        if not expected_state or expected_state != request.args.get("state"):
            flash("Authentication response could not be validated. Please try again.", "error")
            return redirect(url_for("index"))
        session.pop("auth_state", None)

        if "error" in request.args:
            flash(request.args.get("error_description") or "Sign-in was cancelled.", "error")
            return redirect(url_for("index"))

        code = request.args.get("code")
        if not code:
            flash("Missing authorization code.", "error")
            return redirect(url_for("index"))

        cache = msal.SerializableTokenCache()
        client = _build_msal_client(config.auth, cache=cache)
        token_result = client.acquire_token_by_authorization_code(
            code,
            scopes=_interactive_scopes(config),
            redirect_uri=_auth_redirect_uri(config.auth),
        )
        if "access_token" not in token_result:
            app.logger.error(
                "Auth callback: token acquisition failed (error=%s, error_description=%s, correlation_id=%s)",
                token_result.get("error"),
                token_result.get("error_description"),
                token_result.get("correlation_id"),
            )
            flash(token_result.get("error_description") or "Unable to complete sign-in.", "error")
            return redirect(url_for("index"))

        claims = token_result.get("id_token_claims") or {}
        tenant_id = claims.get("tid")
        account_key = _resolve_account_key(client, claims)
        if not tenant_id or not account_key:
            app.logger.error("Auth callback: sign-in response is missing tenant or object id claims.")
            flash("Sign-in response did not identify your tenant.", "error")
            return redirect(url_for("index"))

        _get_token_store(app, config).save(account_key, cache)
        session["user"] = {
            "name": claims.get("name") or claims.get("preferred_username") or "Signed-in user",
            "upn": claims.get("preferred_username") or claims.get("email"),
            "oid": claims.get("oid"),
            "tenant_id": tenant_id,
            "account_key": account_key,
        }
        app.logger.info("Auth callback: signed in %s (tenant=%s).", session["user"]["upn"], tenant_id)
        destination = session.pop("post_login_redirect", None) or url_for("groups_index")
        flash("Signed in successfully.", "success")
        return redirect(destination)

    @app.route("/")
    def index() -> str:
        return render_template("index.html")

    @app.route("/groups/")
    def groups_index() -> Any:
        config = _load_app_config(app)
        connection, response = _graph_or_reauth(app, config, "groups/index.html", groups=[])
        if response is not None:
            return response

        paged = connection.list_groups(next_link=request.args.get("next") or None)
        return render_template("groups/index.html", groups=paged.results, next_link=paged.next_link)

    @app.route("/groups/<object_id>")
    def group_details(object_id: str) -> Any:
        config = _load_app_config(app)
        connection, response = _graph_or_reauth(app, config, "groups/details.html", group=None)
        if response is not None:
            return response

        group = connection.get_group(object_id)
        return render_template("groups/details.html", group=group)

    @app.route("/groups/create", methods=["GET", "POST"])
    def group_create() -> Any:
        config = _load_app_config(app)
        if request.method == "GET":
            if request.args.get("reauth", "").lower() == "true":
                _, response = _graph_or_reauth(app, config, "groups/create.html", group=Group(object_id=""))
                if response is not None:
                    return response
            return render_template("groups/create.html", group=Group(object_id=""))

        group = Group.from_form(request.form, include=CREATE_BIND_FIELDS)
        connection, response = _graph_or_reauth(app, config, "groups/create.html", group=group)
        if response is not None:
            return response

        try:
            group.validate()
            created = connection.add_group(group)
            flash(f"Created group '{created.display_name}'.", "success")
            return redirect(url_for("groups_index"))
        except Exception as exc:  # broad to surface validation and graph errors on the form
            app.logger.warning("Unable to create group %s: %s", group.display_name, exc)
            flash(f"Unable to create group: {exc}", "error")
            return render_template("groups/create.html", group=group, error_message=str(exc))

    @app.route("/groups/<object_id>/edit", methods=["GET", "POST"])
    def group_edit(object_id: str) -> Any:
        config = _load_app_config(app)
        if request.method == "GET":
            connection, response = _graph_or_reauth(app, config, "groups/edit.html", group=None)
            if response is not None:
                return response
            group = connection.get_group(object_id)
            return render_template("groups/edit.html", group=group)

        group = Group.from_form(request.form, include=EDIT_BIND_FIELDS)
        group.object_id = object_id
        connection, response = _graph_or_reauth(app, config, "groups/edit.html", group=group)
        if response is not None:
            return response

        try:
            group.validate()
            connection.update_group(group)
            flash(f"Updated group '{group.display_name}'.", "success")
            return redirect(url_for("groups_index"))
        except Exception as exc:  # broad to surface validation and graph errors on the form
            app.logger.warning("Unable to update group %s: %s", object_id, exc)
            flash(f"Unable to update group: {exc}", "error")
            return render_template("groups/edit.html", group=group, error_message=str(exc))

    @app.route("/groups/<object_id>/delete", methods=["GET", "POST"])
    def group_delete(object_id: str) -> Any:
        config = _load_app_config(app)
        if request.method == "GET":
            connection, response = _graph_or_reauth(app, config, "groups/delete.html", group=None)
            if response is not None:
                return response
            try:
                group = connection.get_group(object_id)
                return render_template("groups/delete.html", group=group)
            except Exception as exc:
                app.logger.warning("Unable to load group %s for deletion: %s", object_id, exc)
                return render_template("groups/delete.html", group=None, error_message=str(exc))

        group = Group(object_id=object_id, display_name=request.form.get("display_name") or None)
        connection, response = _graph_or_reauth(app, config, "groups/delete.html", group=group)
        if response is not None:
            return response

        try:
            connection.delete_group(object_id)
            flash(f"Deleted group '{group.display_name or object_id}'.", "success")
            return redirect(url_for("groups_index"))
        except Exception as exc:
            app.logger.warning("Unable to delete group %s: %s", object_id, exc)
            flash(f"Unable to delete group: {exc}", "error")
            return render_template("groups/delete.html", group=group, error_message=str(exc))

    @app.route("/groups/<object_id>/member-of")
    def group_member_of(object_id: str) -> Any:
        config = _load_app_config(app)
        connection, response = _graph_or_reauth(
            app, config, "groups/member_of.html", group=None, groups=[]
        )
        if response is not None:
            return response

        group = connection.get_group(object_id)
        linked = connection.get_linked_objects(group.object_id, LinkProperty.MEMBER_OF)
        groups = [entry for entry in linked.results if isinstance(entry, Group)]
        return render_template(
            "groups/member_of.html", group=group, groups=groups, has_more=linked.has_more
        )

    @app.route("/groups/<object_id>/members")
    def group_members(object_id: str) -> Any:
        config = _load_app_config(app)
        connection, response = _graph_or_reauth(
            app, config, "groups/members.html", group=None, users=[]
        )
        if response is not None:
            return response

        group = connection.get_group(object_id)
        linked = connection.get_linked_objects(group.object_id, LinkProperty.MEMBERS)
        users = [entry for entry in linked.results if isinstance(entry, User)]
        return render_template(
            "groups/members.html", group=group, users=users, has_more=linked.has_more
        )


def _graph_or_reauth(
    app: Flask, config: AppConfig, template: str, **context: Any
) -> Tuple[Optional[GraphConnection], Optional[Any]]:
    """Return a graph connection for the signed-in user, or the response to send instead.

    Without a usable token the user is sent back through sign-in when the request
    carries ``reauth=True``; otherwise ``template`` is rendered with the
    ``AuthorizationRequired`` error so the page can offer that link.
    """

    user = session.get("user") or {}
    access_token = get_access_token_from_cache_or_refresh(
        config.auth,
        _get_token_store(app, config),
        user.get("account_key"),
        user.get("tenant_id"),
        config.graph_scopes,
    )
    if access_token:
        return GraphConnection(access_token, settings=config.graph, session=_get_graph_session(app)), None

    if request.args.get("reauth", "").lower() == "true":
        app.logger.info("Re-authorization requested for %s.", user.get("upn"))
        session["post_login_redirect"] = _without_reauth(request.full_path)
        return None, redirect(url_for("login"))

    return None, render_template(template, error_message=AUTHORIZATION_REQUIRED, **context)


def _without_reauth(path: str) -> str:
    parts = urlsplit(path)
    query = [(key, value) for key, value in parse_qsl(parts.query) if key != "reauth"]
    return urlunsplit(("", "", parts.path, urlencode(query), ""))


def _safe_redirect_target(target: Optional[str]) -> Optional[str]:
    if not target:
        return None
    parts = urlsplit(target)
    if parts.scheme or parts.netloc or not target.startswith("/") or target.startswith("//"):
        return None
    return target


def _load_app_config(app: Flask) -> AppConfig:
    if has_request_context():
        cached = getattr(g, "_app_config", None)
        if cached is None:
            cached = load_config(app.config.get("CONFIG_PATH"))
            g._app_config = cached
        return cached
    return load_config(app.config.get("CONFIG_PATH"))


def _get_token_store(app: Flask, config: AppConfig) -> TokenCacheStore:
    directory = config.storage.token_cache_dir
    store = app.config.get("_TOKEN_CACHE_STORE")
    if store is None or store.directory != directory:
        store = TokenCacheStore(directory)
        app.config["_TOKEN_CACHE_STORE"] = store
    return store


def _get_graph_session(app: Flask) -> requests.Session:
    graph_session = app.config.get("_GRAPH_SESSION")
    if graph_session is None:
        graph_session = requests.Session()
        app.config["_GRAPH_SESSION"] = graph_session
    return graph_session


def _build_msal_client(
    auth_config: AuthConfig, cache: Optional[msal.SerializableTokenCache] = None
) -> msal.ConfidentialClientApplication:
    return build_msal_app(auth_config, cache=cache)


def _interactive_scopes(config: AppConfig) -> list[str]:
    scopes = [scope for scope in config.graph_scopes if scope.lower() not in _RESERVED_AUTH_SCOPES]
    return scopes or list(config.graph.default_scopes)


def _auth_redirect_uri(auth_config: AuthConfig) -> str:
    if auth_config.redirect_uri:
        return auth_config.redirect_uri
    base = request.url_root.rstrip("/")
    return f"{base}{url_for('auth_callback')}"


def _resolve_account_key(client: msal.ClientApplication, claims: Dict[str, Any]) -> Optional[str]:
    oid = claims.get("oid")
    tid = claims.get("tid")
    expected = f"{oid}.{tid}" if oid and tid else None
    accounts = client.get_accounts()
    for account in accounts:
        if account.get("home_account_id") == expected:
            return expected
    if accounts:
        return accounts[0].get("home_account_id")
    return expected


def main() -> None:
    """Run the development server."""

    app = create_app()
    app.run(
        host=os.environ.get("GROUPADMIN_WEB_HOST", "127.0.0.1"),
        port=int(os.environ.get("GROUPADMIN_WEB_PORT", "5000")),
        debug=os.environ.get("GROUPADMIN_WEB_DEBUG") == "1",
    )


if __name__ == "__main__":
    main()
