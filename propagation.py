"""
Waiting for a new Atlas database user to reach every cluster node.

Atlas acknowledges user creation before all nodes accept the credentials.
The wait is bounded by a budget derived from the caller's deadline and, when a
probe is available, ends as soon as the cluster accepts the user.
"""

import logging
from dataclasses import dataclass

import mongodb_probe
from broker_errors import Cancelled

logger = logging.getLogger("propagation")

BUDGET_FRACTION = 0.6
MIN_BUDGET = 30.0
MAX_BUDGET = 180.0
NO_DEADLINE_BUDGET = 90.0

INITIAL_BACKOFF = 2.0
MAX_BACKOFF = 15.0


@dataclass(frozen=True)
class WaitOutcome:
    propagated: bool
    elapsed: float
    budget: float
    probed: bool
    attempts: int = 0
    last_classification: str = None


def propagation_budget(ctx):
    """
    Seconds to spend waiting for propagation.

    60% of the time left before the caller's deadline, clamped to [30 s, 180 s];
    90 s when the caller has no deadline.
    """
    remaining = ctx.remaining()
    if remaining is None:
        return NO_DEADLINE_BUDGET
    return min(MAX_BUDGET, max(MIN_BUDGET, remaining * BUDGET_FRACTION))


def wait_for_propagation(ctx, probe=None, uri=None, budget=None):
    """
    Block until the new user is usable or the budget runs out.

    Args:
        ctx (CallContext): Caller context; cancellation aborts the wait
        probe (MongoProbe, optional): Probe used to detect propagation early.
                                      Without one the whole budget is slept.
        uri (str, optional): Authenticated URI to probe with
        budget (float, optional): Overrides the budget computed from ctx

    Returns:
        WaitOutcome: propagated is False when the budget ran out

    Raises:
        Cancelled: The caller's context ended during the wait
    """
    if budget is None:
        budget = propagation_budget(ctx)
    start = ctx.now()

    if probe is None:
        logger.debug(f"Waiting {budget:.0f}s for user propagation without probing")
        if ctx.wait(budget):
            raise Cancelled(f"Cancelled while waiting for user propagation after {ctx.now() - start:.1f}s")
        return WaitOutcome(False, ctx.now() - start, budget, probed=False)

    delay = INITIAL_BACKOFF
    attempts = 0
    classification = None
    while True:
        ctx.check("Cancelled while waiting for user propagation")
        left = budget - (ctx.now() - start)
        if attempts and left <= 0:
            break

        attempts += 1
        result = probe.probe(ctx.with_timeout(max(left, 0.0)), uri)
        classification = result.classification
        logger.debug(f"Propagation probe {attempts}: {classification}")

        if result.ok:
            return WaitOutcome(True, ctx.now() - start, budget, True, attempts, classification)
        # A probe cut short by the budget slice is not a cancellation of the caller
        if classification == mongodb_probe.CANCELLED and ctx.done():
            raise Cancelled("Cancelled while probing for user propagation")

        left = budget - (ctx.now() - start)
        if left <= 0:
            break
        if ctx.wait(min(delay, left)):
            raise Cancelled("Cancelled while waiting for user propagation")
        delay = min(delay * 2, MAX_BACKOFF)

    return WaitOutcome(False, ctx.now() - start, budget, True, attempts, classification)
