"""
Error taxonomy for the temporary-credential broker.

Every error carries a kind, the identifiers an operator needs to correlate it
with the Atlas audit log (username, project, cluster) and, where one is known,
a remediation hint.
"""

TIER_HINT = (
    "Check the cluster tier: M0 and Flex clusters do not allow database user "
    "creation for custom-role operations"
)


class BrokerError(Exception):
    """Base class for every failure raised by the broker."""

    kind = "broker"

    def __init__(self, message, username=None, project_id=None, cluster_name=None, hint=None):
        super().__init__(message)
        self.message = message
        self.username = username
        self.project_id = project_id
        self.cluster_name = cluster_name
        self.hint = hint

    @property
    def correlation(self):
        fields = {
            "username": self.username,
            "project_id": self.project_id,
            "cluster_name": self.cluster_name,
        }
        return {key: value for key, value in fields.items() if value}

    def __str__(self):
        text = self.message
        if self.correlation:
            details = ", ".join(f"{key}={value}" for key, value in self.correlation.items())
            text = f"{text} ({details})"
        if self.hint:
            text = f"{text}. Hint: {self.hint}"
        return text


class InvalidRoleSpec(BrokerError):
    kind = "validation"


class InvalidRequest(BrokerError):
    kind = "validation"


class UriAlreadyHasCredentials(BrokerError):
    kind = "validation"


class InvalidConnectionString(BrokerError):
    kind = "configuration"


class ClusterHasNoPublicEndpoint(BrokerError):
    kind = "configuration"


class ControlPlaneError(BrokerError):
    """A non-success response (or transport failure) from the Atlas API."""

    kind = "control_plane"

    def __init__(self, message, operation=None, status_code=None, **kwargs):
        super().__init__(message, **kwargs)
        self.operation = operation
        self.status_code = status_code


class UserAlreadyExists(ControlPlaneError):
    pass


class UserProvisioningFailed(BrokerError):
    kind = "control_plane"


class AuthenticationRejected(BrokerError):
    kind = "propagation"

    def __init__(self, message, **kwargs):
        kwargs.setdefault("hint", TIER_HINT)
        super().__init__(message, **kwargs)


class PropagationTimedOut(BrokerError):
    kind = "propagation"

    def __init__(self, message, elapsed=0.0, probed=False, **kwargs):
        super().__init__(message, **kwargs)
        self.elapsed = elapsed
        self.probed = probed


class Cancelled(BrokerError):
    kind = "cancellation"


class CleanupFailed(BrokerError):
    """Deleting a temporary user failed.

    Only raised on its own when the operation itself succeeded; otherwise it is
    attached to the primary exception as ``cleanup_error``.
    """

    kind = "cleanup"

    def __init__(self, message, errors=None, **kwargs):
        super().__init__(message, **kwargs)
        self.errors = list(errors or [])
