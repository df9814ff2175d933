"""Drive a controller the way its work queue would."""

from __future__ import annotations

from convergence.manager import Controller
from convergence.models import ObjectKey
from convergence.runner import REQUEUE_IMMEDIATE, Result


async def settle(controller: Controller, key: ObjectKey, max_rounds: int = 10) -> Result:
    """Reconcile key until it stops asking for an immediate retry.

    Raises:
        AssertionError: If the key is still requeueing after max_rounds.
    """
    for _ in range(max_rounds):
        result = await controller.reconcile(key)
        if result != REQUEUE_IMMEDIATE:
            return result
    raise AssertionError(f"{controller.name} did not settle {key} in {max_rounds} rounds")
