import pytest
import requests
from datetime import datetime, timezone
from unittest.mock import patch, MagicMock

from atlas_roles import parse_roles
from broker_errors import (
    Cancelled,
    ClusterHasNoPublicEndpoint,
    ControlPlaneError,
    UserAlreadyExists,
)
from call_context import CallContext
from conftest import PROJECT_ID
from mongodb_atlas import (
    AtlasClient,
    api_keys_configured,
    validate_cluster_name,
    validate_project_id,
)


def make_response(status_code, payload=None, text=""):
    response = MagicMock()
    response.status_code = status_code
    response.json.return_value = payload or {}
    response.content = b"{}" if payload is not None else b""
    response.text = text
    return response


def make_client(*responses):
    session = MagicMock()
    session.request.side_effect = list(responses)
    return AtlasClient(base_url="https://atlas.test/api/atlas/v2", session=session), session


# Test project ID and cluster name validation
def test_validate_project_id():
    valid, message = validate_project_id(PROJECT_ID)
    assert valid is True

    valid, message = validate_project_id("")
    assert valid is False
    assert "cannot be empty" in message

    valid, message = validate_project_id("not-an-object-id")
    assert valid is False
    assert "24-character hexadecimal" in message


def test_validate_cluster_name():
    valid, message = validate_cluster_name("Cluster0")
    assert valid is True

    valid, message = validate_cluster_name("my-cluster-1")
    assert valid is True

    valid, message = validate_cluster_name("-bad")
    assert valid is False
    assert "alphanumeric" in message

    valid, message = validate_cluster_name("a" * 65)
    assert valid is False
    assert "1-64 characters" in message


@patch('mongodb_atlas.ATLAS_PUBLIC_KEY', None)
@patch('mongodb_atlas.ATLAS_PRIVATE_KEY', None)
def test_api_keys_missing():
    assert api_keys_configured() is False


@patch('mongodb_atlas.ATLAS_PUBLIC_KEY', "test-key")
@patch('mongodb_atlas.ATLAS_PRIVATE_KEY', "test-secret")
def test_api_keys_present():
    assert api_keys_configured() is True


def test_create_database_user_payload():
    client, session = make_client(make_response(201, {"username": "matlas-tmp-1-a"}))
    roles = parse_roles("readWrite", target_database="shop")

    before = datetime.now(timezone.utc)
    client.create_database_user(CallContext(timeout=60), PROJECT_ID, "matlas-tmp-1-a", "pw",
                                roles, 900, scopes=["C1"])

    session.request.assert_called_once()
    method, url = session.request.call_args[0]
    assert method == "POST"
    assert url == f"https://atlas.test/api/atlas/v2/groups/{PROJECT_ID}/databaseUsers"

    kwargs = session.request.call_args[1]
    payload = kwargs["json"]
    assert payload["databaseName"] == "admin"
    assert payload["username"] == "matlas-tmp-1-a"
    assert payload["password"] == "pw"
    assert payload["roles"] == [{"roleName": "readWrite", "databaseName": "shop"}]
    assert payload["scopes"] == [{"name": "C1", "type": "CLUSTER"}]
    assert payload["labels"] == [{"key": "temporary", "value": "true"}]
    assert payload["deleteAfterDate"].endswith("Z")

    delete_after = datetime.fromisoformat(payload["deleteAfterDate"].replace("Z", "+00:00"))
    assert 899 <= (delete_after - before).total_seconds() <= 960
    assert 0 < kwargs["timeout"] <= 30
    assert kwargs["headers"]["Accept"].startswith("application/vnd.atlas.")


def test_create_database_user_conflict():
    client, _ = make_client(make_response(409, text="USER_ALREADY_EXISTS"))
    with pytest.raises(UserAlreadyExists) as excinfo:
        client.create_database_user(CallContext(), PROJECT_ID, "dup", "pw", parse_roles("read"), 900)
    assert excinfo.value.status_code == 409
    assert excinfo.value.username == "dup"


def test_create_database_user_failure():
    client, _ = make_client(make_response(400, text="Invalid request"))
    with pytest.raises(ControlPlaneError) as excinfo:
        client.create_database_user(CallContext(), PROJECT_ID, "u", "pw", parse_roles("read"), 900)
    assert not isinstance(excinfo.value, UserAlreadyExists)
    assert "Failed to create database user" in str(excinfo.value)


def test_request_exceptions_become_control_plane_errors():
    client, _ = make_client(requests.ConnectionError("connection refused"))
    with pytest.raises(ControlPlaneError) as excinfo:
        client.get_cluster_srv_uri(CallContext(), PROJECT_ID, "C1")
    assert isinstance(excinfo.value.__cause__, requests.ConnectionError)


def test_cancelled_context_skips_the_request():
    client, session = make_client()
    ctx = CallContext()
    ctx.cancel()
    with pytest.raises(Cancelled):
        client.delete_database_user(ctx, PROJECT_ID, "u")
    session.request.assert_not_called()


@pytest.mark.parametrize("status_code", [200, 202, 204, 404])
def test_delete_database_user_success_and_not_found(status_code):
    client, session = make_client(make_response(status_code))
    client.delete_database_user(CallContext(), PROJECT_ID, "matlas-tmp-1-a")
    method, url = session.request.call_args[0]
    assert method == "DELETE"
    assert url.endswith(f"/groups/{PROJECT_ID}/databaseUsers/admin/matlas-tmp-1-a")


def test_delete_database_user_failure():
    client, _ = make_client(make_response(500, text="oops"))
    with pytest.raises(ControlPlaneError):
        client.delete_database_user(CallContext(), PROJECT_ID, "matlas-tmp-1-a")


def test_get_cluster_srv_uri():
    client, session = make_client(make_response(200, {
        "name": "C1",
        "connectionStrings": {"standardSrv": "mongodb+srv://c1.ab1cd.mongodb.net"},
    }))
    assert client.get_cluster_srv_uri(CallContext(), PROJECT_ID, "C1") == "mongodb+srv://c1.ab1cd.mongodb.net"
    assert session.request.call_args[0][1].endswith(f"/groups/{PROJECT_ID}/clusters/C1")


def test_get_cluster_srv_uri_missing():
    client, _ = make_client(make_response(200, {"name": "C1", "connectionStrings": {}}))
    with pytest.raises(ClusterHasNoPublicEndpoint) as excinfo:
        client.get_cluster_srv_uri(CallContext(), PROJECT_ID, "C1")
    assert excinfo.value.cluster_name == "C1"
    assert excinfo.value.kind == "configuration"


def test_get_cluster_not_found():
    client, _ = make_client(make_response(404, text="CLUSTER_NOT_FOUND"))
    with pytest.raises(ControlPlaneError) as excinfo:
        client.get_cluster_srv_uri(CallContext(), PROJECT_ID, "C1")
    assert excinfo.value.status_code == 404
    assert excinfo.value.cluster_name == "C1"


def test_list_database_users_follows_pages():
    client, session = make_client(
        make_response(200, {"results": [{"username": "a"}, {"username": "b"}], "totalCount": 3}),
        make_response(200, {"results": [{"username": "c"}], "totalCount": 3}),
    )
    users = client.list_database_users(CallContext(), PROJECT_ID, items_per_page=2)
    assert [user["username"] for user in users] == ["a", "b", "c"]
    assert session.request.call_count == 2
    assert session.request.call_args_list[1][1]["params"] == {"pageNum": 2, "itemsPerPage": 2}


def test_request_timeout_is_bounded_by_context():
    client, session = make_client(make_response(204))
    client.delete_database_user(CallContext(timeout=5), PROJECT_ID, "u")
    assert session.request.call_args[1]["timeout"] <= 5


def test_default_session_uses_digest_auth_and_retries():
    client = AtlasClient(public_key="pub", private_key="priv")
    session = client._session
    assert isinstance(session.auth, requests.auth.HTTPDigestAuth)
    adapter = session.get_adapter("https://cloud.mongodb.com/api/atlas/v2")
    assert adapter.max_retries.total == 3


def test_default_single_shot_session_never_retries():
    client = AtlasClient(public_key="pub", private_key="priv")
    session = client._single_shot_session
    assert session is not client._session
    assert isinstance(session.auth, requests.auth.HTTPDigestAuth)
    adapter = session.get_adapter("https://cloud.mongodb.com/api/atlas/v2")
    assert adapter.max_retries.total == 0


def test_delete_without_retry_uses_single_shot_session():
    retrying, single_shot = MagicMock(), MagicMock()
    single_shot.request.return_value = make_response(204)
    client = AtlasClient(base_url="https://atlas.test/api/atlas/v2", session=retrying,
                         single_shot_session=single_shot)

    client.delete_database_user(CallContext(timeout=2), PROJECT_ID, "matlas-tmp-1-a", retry=False)

    retrying.request.assert_not_called()
    single_shot.request.assert_called_once()
    assert single_shot.request.call_args[1]["timeout"] <= 2


def test_routine_calls_stay_below_info(captured_logs):
    client, _ = make_client(make_response(201, {}), make_response(204))
    client.create_database_user(CallContext(), PROJECT_ID, "matlas-tmp-1-a", "pw", parse_roles("read"), 900)
    client.delete_database_user(CallContext(), PROJECT_ID, "matlas-tmp-1-a")

    assert captured_logs
    assert not [line for line in captured_logs if " - DEBUG - " not in line]
