"""
Lifecycle of temporary (ephemeral) Atlas database users.

A temporary user is created under a fresh unique name, scoped to the cluster
being operated on, and deleted exactly once through its cleanup handle.
Atlas also receives a deleteAfterDate so a crashed process cannot leak the
user forever.
"""

import base64
import functools
import itertools
import logging
import secrets
import string
import threading
from datetime import datetime, timedelta, timezone

from broker_errors import Cancelled, CleanupFailed, UserAlreadyExists, UserProvisioningFailed
from call_context import CallContext

logger = logging.getLogger("temp_user")

USERNAME_PREFIX = "matlas-tmp-"
PASSWORD_LENGTH = 32
PASSWORD_ALPHABET = string.ascii_letters + string.digits
RANDOM_SUFFIX_BYTES = 10  # 80 bits

MIN_TTL = 15 * 60.0
DEFAULT_TTL = 60 * 60.0
MAX_CREATE_ATTEMPTS = 3
CLEANUP_TIMEOUT = 30.0
CLEANUP_ATTEMPTS = 3

_counter = itertools.count(1)
_counter_lock = threading.Lock()


def generate_username():
    """matlas-tmp-<process counter>-<random base32>"""
    with _counter_lock:
        sequence = next(_counter)
    suffix = base64.b32encode(secrets.token_bytes(RANDOM_SUFFIX_BYTES)).decode("ascii")
    return f"{USERNAME_PREFIX}{sequence}-{suffix.rstrip('=').lower()}"


def generate_password(length=PASSWORD_LENGTH):
    # Alphanumerics only: valid for SCRAM and unchanged by URI encoding
    return "".join(secrets.choice(PASSWORD_ALPHABET) for _ in range(length))


def compute_ttl(operation_deadline=None):
    if operation_deadline is None:
        return DEFAULT_TTL
    return max(float(operation_deadline), MIN_TTL)


class EphemeralUser:
    """
    A live temporary database user.

    ``cleanup()`` deletes the user at project scope on a detached context, so it
    still works after the caller's context was cancelled. It runs the delete at
    most once; later calls return immediately.
    """

    LIVE = "Live"
    RELEASED = "Released"

    def __init__(self, username, password, project_id, roles, issued_at, expires_at, delete_user):
        self.username = username
        self.password = password
        self.project_id = project_id
        self.roles = roles
        self.issued_at = issued_at
        self.expires_at = expires_at
        self.state = self.LIVE
        self._delete_user = delete_user
        self._lock = threading.Lock()

    def __repr__(self):
        return (f"EphemeralUser(username={self.username!r}, project_id={self.project_id!r}, "
                f"state={self.state!r}, expires_at={self.expires_at.isoformat()!r})")

    @property
    def ttl(self):
        return (self.expires_at - self.issued_at).total_seconds()

    def cleanup(self, timeout=CLEANUP_TIMEOUT):
        with self._lock:
            if self.state == self.RELEASED:
                return
            self.state = self.RELEASED

        ctx = CallContext.detached(timeout)
        logger.debug(f"Deleting temporary user {self.username}")
        errors = []
        for attempt in range(1, CLEANUP_ATTEMPTS + 1):
            if errors and ctx.done():
                break
            try:
                self._delete_user(ctx, self.project_id, self.username)
                return
            except Exception as e:
                errors.append(e)
                logger.warning(f"Deleting temporary user {self.username} failed (attempt {attempt}/{CLEANUP_ATTEMPTS}): {e}")
            if attempt == CLEANUP_ATTEMPTS or ctx.wait(attempt):
                break

        raise CleanupFailed(
            f"Failed to delete temporary user: {errors[-1]}",
            errors=errors,
            username=self.username,
            project_id=self.project_id,
            hint="Delete the user manually in Atlas or run 'matlas cleanup-temp-users'",
        ) from errors[-1]


class TempUserManager:
    """
    Creates and sweeps temporary database users through an Atlas adapter.

    Args:
        atlas: Adapter exposing create_database_user, delete_database_user
               and list_database_users
    """

    def __init__(self, atlas):
        self.atlas = atlas

    def provision(self, ctx, project_id, roles, operation_deadline=None, scopes=None):
        """
        Create a temporary user, retrying with a new name on username collisions.

        Returns:
            EphemeralUser: The live user, with its cleanup handle armed

        Raises:
            UserProvisioningFailed: Creation failed, or every generated name collided
            Cancelled: ctx ended before the user was created
        """
        ttl = compute_ttl(operation_deadline)
        attempted = []
        for attempt in range(1, MAX_CREATE_ATTEMPTS + 1):
            username = generate_username()
            password = generate_password()
            attempted.append(username)
            issued_at = datetime.now(timezone.utc)
            expires_at = issued_at + timedelta(seconds=ttl)
            try:
                self.atlas.create_database_user(ctx, project_id, username, password, roles, ttl, scopes=scopes)
            except UserAlreadyExists:
                logger.warning(f"Username {username} already exists (attempt {attempt}/{MAX_CREATE_ATTEMPTS}), regenerating")
                continue
            except Cancelled:
                raise
            except Exception as e:
                raise UserProvisioningFailed(
                    f"Failed to create temporary user: {e}",
                    username=username,
                    project_id=project_id,
                ) from e

            logger.info(f"Temporary user {username} created (expires at {expires_at.strftime('%H:%M:%S')} UTC)")
            return EphemeralUser(
                username=username,
                password=password,
                project_id=project_id,
                roles=roles,
                issued_at=issued_at,
                expires_at=expires_at,
                delete_user=functools.partial(self.atlas.delete_database_user, retry=False),
            )

        raise UserProvisioningFailed(
            f"Username collided {MAX_CREATE_ATTEMPTS} times in a row: {', '.join(attempted)}",
            project_id=project_id,
        )

    @staticmethod
    def is_temp_user(user):
        for label in user.get("labels") or []:
            if label.get("key") == "temporary" and label.get("value") == "true":
                return True
        return user.get("username", "").startswith(USERNAME_PREFIX)

    @staticmethod
    def is_expired(user, now):
        delete_after = user.get("deleteAfterDate")
        if not delete_after:
            return False
        expires_at = datetime.fromisoformat(delete_after.replace("Z", "+00:00"))
        return expires_at < now

    def cleanup_expired_users(self, ctx, project_id, now=None):
        """
        Delete temporary users whose expiry has passed but that still exist,
        e.g. left behind by a killed process.

        Returns:
            list: Usernames that were deleted

        Raises:
            CleanupFailed: One or more deletions failed; the rest were still attempted
        """
        now = now or datetime.now(timezone.utc)
        deleted = []
        errors = []
        for user in self.atlas.list_database_users(ctx, project_id):
            if not (self.is_temp_user(user) and self.is_expired(user, now)):
                continue
            username = user.get("username")
            try:
                self.atlas.delete_database_user(ctx, project_id, username)
                deleted.append(username)
            except Cancelled:
                raise
            except Exception as e:
                logger.error(f"Failed to clean up temporary user {username}: {e}")
                errors.append(e)

        if errors:
            raise CleanupFailed(
                f"Cleanup completed with {len(errors)} errors",
                errors=errors,
                project_id=project_id,
            )
        logger.info(f"Cleaned up {len(deleted)} expired temporary users")
        return deleted
