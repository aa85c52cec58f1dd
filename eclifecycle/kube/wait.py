"""
Readiness waiter: bounded polling of cluster state until a condition holds.

A check is an async callable returning True when done. Exceptions it raises
are remembered and polling continues; wrap an exception in PermanentError to
stop immediately. On timeout the last remembered exception is raised, or a
WaitTimeoutError when there is none.
"""

import logging
from dataclasses import dataclass
from typing import Awaitable, Callable, List, Optional, Tuple

from tenacity import (
    AsyncRetrying,
    RetryError,
    retry_if_result,
    stop_after_attempt,
    wait_exponential,
    wait_fixed,
    wait_random,
)

from . import kinds
from .helpers import is_deployment_ready, is_node_ready
from ..errors.errors import (
    ErrorCode, StandardError, WaitTimeoutError, is_code, new_kubernetes_error, new_restore_error
)

logger = logging.getLogger(__name__)

Check = Callable[[], Awaitable[bool]]
Progress = Callable[[str], None]


@dataclass
class Backoff:
    """Polling budget: number of attempts and the delay between them."""
    steps: int = 60
    duration: float = 5.0
    factor: float = 1.0
    jitter: float = 0.1

    @classmethod
    def from_config(cls, wait_config, long: bool = False) -> 'Backoff':
        """Build the default (or long) budget from a WaitConfig section."""
        return cls(
            steps=wait_config.long_steps if long else wait_config.steps,
            duration=wait_config.duration,
            factor=wait_config.factor,
            jitter=wait_config.jitter,
        )


class PermanentError(Exception):
    """Raised by a check to end the wait with the wrapped error."""

    def __init__(self, error: Exception):
        super().__init__(str(error))
        self.error = error


def _wait_strategy(backoff: Backoff):
    if backoff.factor == 1.0:
        strategy = wait_fixed(backoff.duration)
    else:
        strategy = wait_exponential(multiplier=backoff.duration, exp_base=backoff.factor)
    if backoff.jitter > 0 and backoff.duration > 0:
        strategy = strategy + wait_random(0, backoff.duration * backoff.jitter)
    return strategy


async def wait_until(check: Check, backoff: Optional[Backoff] = None) -> None:
    """Poll check until it returns True or the backoff is exhausted."""
    backoff = backoff or Backoff()
    last_error: Optional[Exception] = None

    async def attempt() -> bool:
        nonlocal last_error
        try:
            return bool(await check())
        except PermanentError:
            raise
        except Exception as e:
            last_error = e
            logger.debug(f"Check not ready yet: {e}")
            return False

    retrying = AsyncRetrying(
        stop=stop_after_attempt(backoff.steps),
        wait=_wait_strategy(backoff),
        retry=retry_if_result(lambda done: not done),
    )

    try:
        await retrying(attempt)
    except PermanentError as e:
        raise e.error
    except RetryError:
        if last_error is not None:
            raise last_error
        raise WaitTimeoutError()


async def wait_for_deployment(kube, namespace: str, name: str, backoff: Optional[Backoff] = None) -> None:
    """Wait until the deployment has all of its replicas ready."""
    async def check() -> bool:
        return await is_deployment_ready(kube, namespace, name)

    try:
        await wait_until(check, backoff)
    except Exception as e:
        raise WaitTimeoutError(f"timed out waiting for deploy {name}: {e}") from e


async def wait_for_workloads(
    checks: List[Tuple[str, Check]],
    label: str,
    backoff: Optional[Backoff] = None,
    progress: Optional[Progress] = None,
) -> None:
    """
    Wait for several named readiness checks at once.

    Progress is reported as "Waiting for <label> to deploy: n/m ready".
    """
    progress = progress or logger.info

    async def check() -> bool:
        ready = 0
        failures = []
        for name, sub_check in checks:
            try:
                if await sub_check():
                    ready += 1
            except Exception as e:
                failures.append(f"{name}: {e}")
        progress(f"Waiting for {label} to deploy: {ready}/{len(checks)} ready")
        if failures:
            raise new_kubernetes_error("wait_for_workloads", f"unable to check {label} status: " + "; ".join(failures))
        return ready == len(checks)

    await wait_until(check, backoff)


async def wait_for_nodes(kube, backoff: Optional[Backoff] = None, progress: Optional[Progress] = None) -> None:
    """Wait until every node known to the cluster reports Ready."""
    progress = progress or logger.info

    async def check() -> bool:
        nodes = await kube.list(kinds.NODE)
        ready = sum(1 for node in nodes if is_node_ready(node))
        progress(f"Waiting for nodes to be ready: {ready}/{len(nodes)} ready")
        return bool(nodes) and ready == len(nodes)

    await wait_until(check, backoff)


async def wait_for_restore(kube, namespace: str, name: str, backoff: Optional[Backoff] = None) -> dict:
    """
    Wait for a velero restore to reach a terminal phase.

    Completed returns the restore object. Failed and PartiallyFailed stop the
    wait immediately; any other outcome is reported as a wait failure.
    """
    result = {}

    async def check() -> bool:
        restore = await kube.get(kinds.VELERO_RESTORE, name, namespace)
        status = restore.get("status") or {}
        phase = status.get("phase", "")
        if phase == "Completed":
            result.update(restore)
            return True
        if phase in ("Failed", "PartiallyFailed"):
            raise PermanentError(new_restore_error(
                "wait_for_restore",
                f"restore {name} failed with {status.get('errors', 0)} errors "
                f"and {status.get('warnings', 0)} warnings"
            ).with_context("phase", phase))
        return False

    try:
        await wait_until(check, backoff)
    except StandardError as e:
        if is_code(e, ErrorCode.RESTORE_FAILED):
            raise
        raise new_restore_error("wait_for_restore", "unable to wait for velero restore to complete", e)
    return result
