import logging

import pytest

from broker_errors import UserAlreadyExists
from call_context import CallContext
from mongodb_probe import ProbeResult, SUCCEEDED

PROJECT_ID = "5f1a2b3c4d5e6f7a8b9c0d1e"
SRV_BASE = "mongodb+srv://host.example/"


class FakeClock:
    def __init__(self):
        self.now = 1000.0

    def __call__(self):
        return self.now


class FakeContext(CallContext):
    """CallContext whose waits advance a fake clock instead of sleeping."""

    def __init__(self, timeout=None, cancel_at=None):
        self.clock = FakeClock()
        super().__init__(timeout=timeout, clock=self.clock)
        self.cancel_at = cancel_at  # seconds after creation
        self._created = self.clock.now
        self.waits = []

    def wait(self, seconds):
        limit = max(0.0, seconds)
        remaining = self.remaining()
        if remaining is not None:
            limit = min(limit, remaining)
        self.waits.append(limit)
        if self.cancel_at is not None and not self.cancelled:
            cancel_time = self._created + self.cancel_at
            if self.clock.now + limit >= cancel_time:
                self.clock.now = cancel_time
                self.cancel()
                return True
        self.clock.now += limit
        return self.done()


class FakeAtlas:
    """In-memory Atlas adapter recording every create/delete call."""

    def __init__(self, srv=SRV_BASE, collisions=0, create_error=None, delete_error=None):
        self.srv = srv
        self.collisions = collisions
        self.create_error = create_error
        self.delete_error = delete_error
        self.created = []
        self.deleted = []
        self.delete_contexts = []
        self.delete_retries = []
        self.srv_lookups = 0
        self.users = []

    def get_cluster_srv_uri(self, ctx, project_id, cluster_name):
        self.srv_lookups += 1
        ctx.check()
        return self.srv

    def create_database_user(self, ctx, project_id, username, password, roles, ttl, scopes=None):
        ctx.check()
        self.created.append({
            "project_id": project_id,
            "username": username,
            "password": password,
            "roles": roles,
            "ttl": ttl,
            "scopes": scopes,
        })
        if self.collisions:
            self.collisions -= 1
            raise UserAlreadyExists("username taken", operation="create database user", status_code=409)
        if self.create_error is not None:
            raise self.create_error

    def delete_database_user(self, ctx, project_id, username, retry=True):
        self.deleted.append(username)
        self.delete_contexts.append(ctx)
        self.delete_retries.append(retry)
        if self.delete_error is not None:
            raise self.delete_error

    def list_database_users(self, ctx, project_id):
        return list(self.users)


class ScriptedProbe:
    """Returns the scripted classifications in order, repeating the last one."""

    def __init__(self, ctx, classifications, cost=0.0):
        self.ctx = ctx
        self.classifications = list(classifications)
        self.cost = cost
        self.calls = []

    def probe(self, ctx, uri):
        self.calls.append(uri)
        self.ctx.clock.now += self.cost
        index = min(len(self.calls) - 1, len(self.classifications) - 1)
        classification = self.classifications[index]
        return ProbeResult(classification == SUCCEEDED, classification)


class ListHandler(logging.Handler):
    def __init__(self):
        super().__init__(level=logging.DEBUG)
        self.lines = []

    def emit(self, record):
        self.lines.append(self.format(record))


@pytest.fixture
def fake_atlas():
    return FakeAtlas()


@pytest.fixture
def captured_logs():
    handler = ListHandler()
    handler.setFormatter(logging.Formatter('%(asctime)s - %(name)s - %(levelname)s - %(message)s'))
    root = logging.getLogger()
    previous_level = root.level
    root.addHandler(handler)
    root.setLevel(logging.DEBUG)
    yield handler.lines
    root.removeHandler(handler)
    root.setLevel(previous_level)
