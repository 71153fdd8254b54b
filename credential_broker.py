"""
Temporary-credential broker.

Runs one database-side operation against an Atlas cluster under a short-lived
database user:

    validate roles -> resolve SRV URI -> create user -> arm cleanup
    -> wait for propagation -> build authenticated URI -> run operation
    -> delete user

The user is deleted on every exit path, including errors raised by the
operation, cancellation of the caller's context and KeyboardInterrupt.
"""

import logging
from dataclasses import dataclass, field

import atlas_uri
import mongodb_atlas
from atlas_roles import SCHEMA_READ, parse_roles
from broker_errors import (
    AuthenticationRejected,
    BrokerError,
    Cancelled,
    CleanupFailed,
    InvalidRequest,
    PropagationTimedOut,
    TIER_HINT,
)
from mongodb_probe import AUTHENTICATION_REJECTED
from propagation import wait_for_propagation
from temp_user import TempUserManager

# States of one broker call
START = "Start"
ROLES_VALIDATED = "RolesValidated"
URI_RESOLVED = "UriResolved"
USER_PROVISIONED = "UserProvisioned"
CLEANUP_ARMED = "CleanupArmed"
PROPAGATION_AWAITED = "PropagationAwaited"
OPERATION_RUNNING = "OperationRunning"
RELEASED = "Released"
RELEASED_AFTER_FAILURE = "ReleasedAfterFailure"


@dataclass(frozen=True)
class BrokerRequest:
    cluster_name: str
    project_id: str
    roles: object = ()
    target_database: str = None
    operation_deadline: float = None
    use_probe: bool = False
    operation_class: str = SCHEMA_READ
    extra_params: dict = field(default_factory=dict)


@dataclass(frozen=True, repr=False)
class BrokerResult:
    authenticated_uri: str
    temp_user: object

    def __repr__(self):
        return f"BrokerResult(authenticated_uri={self.masked_uri!r}, temp_user={self.temp_user!r})"

    @property
    def masked_uri(self):
        return atlas_uri.mask(self.authenticated_uri)


class _CallTrace:
    """Per-call state tracking and diagnostics."""

    def __init__(self, ctx, request, logger, verbose):
        self.ctx = ctx
        self.request = request
        self.logger = logger
        self.verbose = verbose
        self.state = START
        self.username = None
        self.masked_uri = None
        self._start = ctx.now()

    @property
    def elapsed(self):
        return self.ctx.now() - self._start

    def transition(self, state):
        self.state = state
        if self.verbose:
            self.logger.info(
                f"[{state}] cluster={self.request.cluster_name} project={self.request.project_id} "
                f"user={self.username or '-'} uri={self.masked_uri or '-'} elapsed={self.elapsed:.1f}s"
            )


class CredentialBroker:
    """
    Hands out short-lived database credentials for Atlas clusters.

    Args:
        atlas: Atlas control-plane adapter (see mongodb_atlas.AtlasClient)
        probe (MongoProbe, optional): Used when a request asks for probing
        logger (logging.Logger, optional): Receives diagnostics
        verbose (bool): Log every state transition, not only the outcome
    """

    def __init__(self, atlas, probe=None, logger=None, verbose=False):
        self.atlas = atlas
        self.probe = probe
        self.logger = logger or logging.getLogger("credential_broker")
        self.verbose = verbose
        self.users = TempUserManager(atlas)

    def _validate(self, request):
        for validator, value in ((mongodb_atlas.validate_project_id, request.project_id),
                                 (mongodb_atlas.validate_cluster_name, request.cluster_name)):
            valid, message = validator(value)
            if not valid:
                raise InvalidRequest(message, project_id=request.project_id,
                                     cluster_name=request.cluster_name)
        if request.use_probe and self.probe is None:
            raise InvalidRequest("Probing was requested but no probe is configured",
                                 project_id=request.project_id, cluster_name=request.cluster_name)
        return parse_roles(request.roles, request.target_database, request.operation_class)

    def with_ephemeral_credentials(self, ctx, request, fn):
        """
        Run ``fn(BrokerResult)`` with a temporary user and delete the user afterwards.

        Args:
            ctx (CallContext): Caller context; the broker imposes no timeout of its own
            request (BrokerRequest): What to connect to and with which roles
            fn (callable): The operation. It must not keep the URI after returning.

        Returns:
            Whatever ``fn`` returns

        Raises:
            BrokerError: Validation, control-plane, propagation or cancellation failures.
            CleanupFailed: ``fn`` succeeded but the user could not be deleted.
            Any exception raised by ``fn`` propagates unchanged; a cleanup failure is
            then attached to it as ``cleanup_error``.
        """
        trace = _CallTrace(ctx, request, self.logger, self.verbose)
        try:
            ctx.check("Cancelled before the temporary user was created")
            roles = self._validate(request)
            trace.transition(ROLES_VALIDATED)

            srv_base = self.atlas.get_cluster_srv_uri(ctx, request.project_id, request.cluster_name)
            trace.transition(URI_RESOLVED)

            temp_user = self.users.provision(ctx, request.project_id, roles,
                                             operation_deadline=request.operation_deadline,
                                             scopes=[request.cluster_name])
        except BrokerError as e:
            self._annotate(e, request)
            self.logger.error(f"Temporary credentials for cluster {request.cluster_name} not issued: {e}")
            raise

        trace.username = temp_user.username
        trace.transition(USER_PROVISIONED)

        outcome = None
        failure = None
        try:
            trace.transition(CLEANUP_ARMED)
            uri = atlas_uri.rewrite(srv_base, temp_user.username, temp_user.password,
                                    database=request.target_database,
                                    extra_query=request.extra_params)
            trace.masked_uri = atlas_uri.mask(uri)

            self._await_propagation(ctx, request, temp_user, uri)
            trace.transition(PROPAGATION_AWAITED)

            trace.transition(OPERATION_RUNNING)
            outcome = fn(BrokerResult(authenticated_uri=uri, temp_user=temp_user))
        except BaseException as e:
            failure = e
            if isinstance(e, BrokerError):
                self._annotate(e, request, temp_user.username)
            raise
        finally:
            self._release(temp_user, trace, failure)

        self.logger.info(f"Operation on cluster {request.cluster_name} completed with temporary user "
                         f"{temp_user.username} in {trace.elapsed:.1f}s")
        return outcome

    def _await_propagation(self, ctx, request, temp_user, uri):
        probe = self.probe if request.use_probe else None
        result = wait_for_propagation(ctx, probe=probe, uri=uri)
        if result.propagated or not result.probed:
            return

        cause = None
        if result.last_classification == AUTHENTICATION_REJECTED:
            cause = AuthenticationRejected(
                f"Cluster still rejected the credentials after {result.attempts} probes",
                username=temp_user.username,
                project_id=request.project_id,
                cluster_name=request.cluster_name,
            )
        error = PropagationTimedOut(
            f"Temporary user was not accepted by the cluster within {result.elapsed:.0f}s "
            f"(probing: {'yes' if result.probed else 'no'}, last probe: {result.last_classification})",
            elapsed=result.elapsed,
            probed=result.probed,
            username=temp_user.username,
            project_id=request.project_id,
            cluster_name=request.cluster_name,
            hint="Retry with a longer --timeout. " + TIER_HINT,
        )
        raise error from cause

    def _release(self, temp_user, trace, failure):
        try:
            temp_user.cleanup()
        except CleanupFailed as cleanup_error:
            self._annotate(cleanup_error, trace.request, temp_user.username)
            self.logger.warning(f"Temporary user {temp_user.username} was not deleted: {cleanup_error}")
            if failure is None:
                raise
            failure.cleanup_error = cleanup_error
        finally:
            trace.transition(RELEASED if failure is None else RELEASED_AFTER_FAILURE)
            if failure is not None:
                self.logger.error(f"Operation on cluster {trace.request.cluster_name} failed with temporary user "
                                  f"{temp_user.username} after {trace.elapsed:.1f}s: {_describe(failure)}")

    @staticmethod
    def _annotate(error, request, username=None):
        # Validation errors reach the user exactly as raised
        if error.kind == "validation":
            return
        error.project_id = error.project_id or request.project_id
        error.cluster_name = error.cluster_name or request.cluster_name
        error.username = error.username or username


def _describe(error):
    if isinstance(error, (KeyboardInterrupt, Cancelled)):
        return "cancelled"
    return str(error) or error.__class__.__name__


def with_ephemeral_credentials(ctx, request, fn, atlas, probe=None, logger=None, verbose=False):
    """Shortcut for CredentialBroker(atlas, probe, logger, verbose).with_ephemeral_credentials(...)."""
    broker = CredentialBroker(atlas, probe=probe, logger=logger, verbose=verbose)
    return broker.with_ephemeral_credentials(ctx, request, fn)
