import os
import re  # Regular expression module
import logging
from datetime import datetime, timedelta, timezone

import requests
from requests.adapters import HTTPAdapter
from requests.auth import HTTPDigestAuth
from urllib3.util.retry import Retry
from dotenv import load_dotenv

from broker_errors import (
    ClusterHasNoPublicEndpoint,
    ControlPlaneError,
    UserAlreadyExists,
)

logger = logging.getLogger("mongodb_atlas")

# Load environment variables
load_dotenv()

ATLAS_PUBLIC_KEY = os.getenv("ATLAS_PUBLIC_KEY")
ATLAS_PRIVATE_KEY = os.getenv("ATLAS_PRIVATE_KEY")
ATLAS_BASE_URL = os.getenv("ATLAS_BASE_URL", "https://cloud.mongodb.com/api/atlas/v2")
ATLAS_PROJECT_ID = os.getenv("ATLAS_PROJECT_ID")

# Headers for the API requests
HEADERS = {
    "Accept": "application/vnd.atlas.2025-02-19+json",
    "Content-Type": "application/json"
}

REQUEST_TIMEOUT = 30  # seconds, per HTTP request
AUTH_DATABASE = "admin"
TEMP_USER_LABEL = {"key": "temporary", "value": "true"}

OBJECT_ID_PATTERN = re.compile(r'^[0-9a-fA-F]{24}$')
CLUSTER_NAME_PATTERN = re.compile(r'^[a-zA-Z0-9]([a-zA-Z0-9-]*[a-zA-Z0-9])?$')


def validate_project_id(project_id):
    """
    Validate that the project ID is a 24-character hexadecimal Atlas ObjectID.
    """
    if not project_id or not project_id.strip():
        return False, "Project ID cannot be empty"

    if not OBJECT_ID_PATTERN.match(project_id):
        return False, "Project ID must be a 24-character hexadecimal string"

    return True, "Project ID is valid"


def validate_cluster_name(name):
    """
    Validate that the cluster name is 1-64 characters, made of letters, numbers and
    hyphens, starting and ending with an alphanumeric character.
    """
    if not name or not name.strip():
        return False, "Cluster name cannot be empty"

    if len(name) > 64:
        return False, "Cluster name must be 1-64 characters"

    if not CLUSTER_NAME_PATTERN.match(name):
        return False, "Cluster name must start/end with alphanumeric and contain only letters, numbers, and hyphens"

    return True, "Cluster name is valid"


def api_keys_configured():
    return bool(ATLAS_PUBLIC_KEY and ATLAS_PRIVATE_KEY)


def _new_session(auth, retries):
    session = requests.Session()
    session.mount("https://", HTTPAdapter(max_retries=retries))
    session.auth = auth
    return session


class AtlasClient:
    """
    Atlas Admin API v2 client covering the database-user and cluster calls the
    credential broker needs.

    Network-level failures and 429/5xx responses are retried a bounded number of
    times by the session's transport adapter. Calls made with ``retry=False`` go
    through a second session that sends each request once, so the caller's own
    deadline is the only bound. Every call checks the caller's context first and
    never waits longer than the context allows.

    Args:
        public_key (str, optional): Programmatic API public key. Defaults to ATLAS_PUBLIC_KEY.
        private_key (str, optional): Programmatic API private key. Defaults to ATLAS_PRIVATE_KEY.
        base_url (str, optional): API base URL. Defaults to ATLAS_BASE_URL.
        session (requests.Session, optional): Pre-built session, mostly for tests
        single_shot_session (requests.Session, optional): Session for ``retry=False`` calls.
                                                          Defaults to ``session`` when one is given.
    """

    def __init__(self, public_key=None, private_key=None, base_url=None, session=None,
                 single_shot_session=None):
        self.base_url = (base_url or ATLAS_BASE_URL).rstrip("/")
        auth = HTTPDigestAuth(public_key or ATLAS_PUBLIC_KEY, private_key or ATLAS_PRIVATE_KEY)
        if session is None:
            retries = Retry(
                total=3,
                backoff_factor=1,
                status_forcelist=(429, 500, 502, 503, 504),
                allowed_methods=frozenset({"GET", "DELETE"}),
            )
            session = _new_session(auth, retries)
            if single_shot_session is None:
                single_shot_session = _new_session(auth, Retry(total=0, read=False))
        self._session = session
        self._single_shot_session = single_shot_session or session

    def _request(self, ctx, method, path, operation, username=None, project_id=None, retry=True, **kwargs):
        ctx.check(f"Cancelled before {operation}")
        timeout = REQUEST_TIMEOUT
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)

        session = self._session if retry else self._single_shot_session
        try:
            return session.request(
                method,
                f"{self.base_url}{path}",
                headers=HEADERS,
                timeout=timeout,
                **kwargs
            )
        except requests.RequestException as e:
            error_message = f"Exception occurred during {operation}: {str(e)}"
            logger.error(error_message)
            raise ControlPlaneError(error_message, operation=operation,
                                    username=username, project_id=project_id) from e

    @staticmethod
    def _failure(response, operation, username=None, project_id=None, error_class=ControlPlaneError):
        error_message = f"Failed to {operation}. Status code: {response.status_code}, Response: {response.text}"
        logger.error(error_message)
        return error_class(error_message, operation=operation, status_code=response.status_code,
                           username=username, project_id=project_id)

    def create_database_user(self, ctx, project_id, username, password, roles, ttl, scopes=None):
        """
        Create a temporary database user authenticating against the admin database.

        Args:
            ctx (CallContext): Caller context
            project_id (str): The Atlas project that owns the user
            username (str): Username to create
            password (str): SCRAM password
            roles (RoleSet): Roles granted to the user
            ttl (float): Seconds until Atlas deletes the user on its own
            scopes (list, optional): Cluster names the user is restricted to

        Raises:
            UserAlreadyExists: The username is taken (HTTP 409)
            ControlPlaneError: Any other failure
        """
        logger.debug(f"Creating temporary database user: {username} in project: {project_id}")
        delete_after = datetime.now(timezone.utc) + timedelta(seconds=ttl)

        payload = {
            "databaseName": AUTH_DATABASE,
            "username": username,
            "password": password,
            "roles": roles.to_atlas(),
            "deleteAfterDate": delete_after.isoformat().replace("+00:00", "Z"),
            "labels": [dict(TEMP_USER_LABEL)],
        }
        if scopes:
            payload["scopes"] = [{"name": name, "type": "CLUSTER"} for name in scopes]

        response = self._request(ctx, "POST", f"/groups/{project_id}/databaseUsers",
                                 "create database user", username=username,
                                 project_id=project_id, json=payload)

        if response.status_code in (200, 201):
            logger.debug(f"Database user {username} created successfully")
            return response.json() if response.content else {}
        if response.status_code == 409:
            raise self._failure(response, "create database user", username, project_id,
                                error_class=UserAlreadyExists)
        raise self._failure(response, "create database user", username, project_id)

    def delete_database_user(self, ctx, project_id, username, retry=True):
        """
        Delete a database user. A user that no longer exists counts as deleted.

        Args:
            retry (bool): Let the transport adapter retry failures. Cleanup passes False
                          and bounds its own attempts.
        """
        logger.debug(f"Deleting database user: {username} in project: {project_id}")
        response = self._request(ctx, "DELETE",
                                 f"/groups/{project_id}/databaseUsers/{AUTH_DATABASE}/{username}",
                                 "delete database user", username=username, project_id=project_id,
                                 retry=retry)

        if response.status_code in (200, 202, 204):
            logger.debug(f"Database user {username} deleted successfully")
            return
        if response.status_code == 404:
            logger.debug(f"Database user {username} was already gone")
            return
        raise self._failure(response, "delete database user", username, project_id)

    def get_cluster_srv_uri(self, ctx, project_id, cluster_name):
        """
        Get the public standard SRV connection string Atlas advertises for a cluster.

        Returns:
            str: The mongodb+srv:// connection string

        Raises:
            ClusterHasNoPublicEndpoint: The cluster has no standard SRV string (yet)
        """
        logger.debug(f"Resolving connection string for cluster: {cluster_name} in project: {project_id}")
        response = self._request(ctx, "GET", f"/groups/{project_id}/clusters/{cluster_name}",
                                 "get cluster", project_id=project_id)

        if response.status_code != 200:
            error = self._failure(response, "get cluster", project_id=project_id)
            error.cluster_name = cluster_name
            raise error

        cluster_data = response.json()
        srv = (cluster_data.get("connectionStrings") or {}).get("standardSrv")
        if not srv:
            raise ClusterHasNoPublicEndpoint(
                f"Cluster '{cluster_name}' does not have a connection string available",
                project_id=project_id,
                cluster_name=cluster_name,
                hint="Wait for the cluster to finish provisioning, or check that it exposes a public endpoint",
            )
        return srv

    def list_database_users(self, ctx, project_id, items_per_page=100):
        """
        List every database user in a project, following pagination.
        """
        logger.debug(f"Fetching database users for project: {project_id}")
        users = []
        page = 1
        while True:
            response = self._request(ctx, "GET", f"/groups/{project_id}/databaseUsers",
                                     "list database users", project_id=project_id,
                                     params={"pageNum": page, "itemsPerPage": items_per_page})
            if response.status_code != 200:
                raise self._failure(response, "list database users", project_id=project_id)

            data = response.json()
            results = data.get("results", [])
            users.extend(results)
            total = data.get("totalCount", len(users))
            if not results or len(users) >= total:
                break
            page += 1

        logger.debug(f"Successfully fetched {len(users)} database users")
        return users
