"""
Authenticated no-op probe against a MongoDB deployment.

Used to tell when a freshly created Atlas database user is accepted by the
cluster: a ping on the admin database succeeds only once authentication does.
"""

import logging
from dataclasses import dataclass

from pymongo import MongoClient
from pymongo.errors import ConfigurationError, OperationFailure, PyMongoError

from atlas_uri import mask

logger = logging.getLogger("mongodb_probe")

SUCCEEDED = "Succeeded"
AUTHENTICATION_REJECTED = "AuthenticationRejected"
TRANSPORT_FAILED = "TransportFailed"
CANCELLED = "Cancelled"

PROBE_TIMEOUT = 5.0  # seconds, connect and server selection
AUTH_FAILED_CODES = (11, 18)  # UserNotFound, AuthenticationFailed


@dataclass(frozen=True)
class ProbeResult:
    ok: bool
    classification: str
    detail: str = ""


def _is_auth_failure(error):
    code = getattr(error, "code", None)
    if code in AUTH_FAILED_CODES:
        return True
    return "authentication failed" in str(error).lower()


class MongoProbe:
    """
    Pings the admin database with the given URI using a short-lived client.

    Args:
        timeout (float): Upper bound for connect and server selection, in seconds
        client_factory (callable, optional): Builds the client; defaults to pymongo.MongoClient
    """

    def __init__(self, timeout=PROBE_TIMEOUT, client_factory=None):
        self.timeout = timeout
        self._client_factory = client_factory or MongoClient

    def probe(self, ctx, uri):
        if ctx.done():
            return ProbeResult(False, CANCELLED)

        timeout = self.timeout
        remaining = ctx.remaining()
        if remaining is not None:
            timeout = min(timeout, remaining)
        timeout_ms = max(1, int(timeout * 1000))

        logger.debug(f"Probing {mask(uri)} (timeout {timeout_ms} ms)")
        client = None
        try:
            client = self._client_factory(
                uri,
                connectTimeoutMS=timeout_ms,
                serverSelectionTimeoutMS=timeout_ms,
                socketTimeoutMS=timeout_ms,
            )
            client.admin.command("ping")
            return ProbeResult(True, SUCCEEDED)
        except OperationFailure as e:
            if _is_auth_failure(e):
                return ProbeResult(False, AUTHENTICATION_REJECTED, str(e))
            return ProbeResult(False, TRANSPORT_FAILED, str(e))
        except ConfigurationError as e:
            # SRV lookups fail here, before any server is contacted
            return ProbeResult(False, TRANSPORT_FAILED, str(e))
        except PyMongoError as e:
            if _is_auth_failure(e):
                return ProbeResult(False, AUTHENTICATION_REJECTED, str(e))
            if ctx.done():
                return ProbeResult(False, CANCELLED, str(e))
            return ProbeResult(False, TRANSPORT_FAILED, str(e))
        finally:
            if client is not None:
                client.close()
