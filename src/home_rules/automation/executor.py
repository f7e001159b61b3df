"""
Action executor: turns one action into a batch of device commands.

Resolves the action's target to concrete device ids, then dispatches either
concurrently (bounded by a semaphore) or one device at a time with an
interval between dispatches. A failing device never aborts the batch; it
becomes that device's entry in DispatchResult.failed.
"""

import asyncio
import logging
import random
import time
from typing import Any, Awaitable, Callable, Dict, List, Optional, Sequence, Tuple

from .adapter import DeviceCommandSink, WorldState
from .errors import ConfigurationError, DeviceDispatchError
from .models import (
    Action,
    ActionType,
    AllDevices,
    DeviceOutcome,
    DispatchPolicy,
    DispatchResult,
    RandomDevices,
    SETTING_FIELDS,
    SpecificDevices,
)

logger = logging.getLogger(__name__)

UNKNOWN_DEVICE = "unknown device"


class ActionExecutor:
    """
    Dispatches actions to devices.

    Successful commands are written back to the world state, so the executor
    is the only writer of device state.
    """

    def __init__(
        self,
        sink: DeviceCommandSink,
        world_state: WorldState,
        command_timeout: float = 10.0,
        max_parallel: int = 8,
        rng: Optional[random.Random] = None,
        sleep: Callable[[float], Awaitable[Any]] = asyncio.sleep,
    ) -> None:
        """
        Initialize the executor.

        Args:
            sink: Sends commands to devices
            world_state: Receives the state changes of successful commands
            command_timeout: Seconds before a device command counts as failed
            max_parallel: Default bound for concurrent dispatches
            rng: Random source for random targets and random order
            sleep: Awaitable sleep (replaceable in tests)
        """
        self._sink = sink
        self._world = world_state
        self._timeout = command_timeout
        self._max_parallel = max_parallel
        self._rng = rng or random.Random()
        self._sleep = sleep

    # =========================================================================
    # Target Resolution
    # =========================================================================

    def resolve_targets(
        self,
        action: Action,
        scope: Optional[Sequence[str]],
    ) -> Tuple[List[str], List[DeviceOutcome]]:
        """
        Resolve an action's target to device ids.

        Args:
            action: Action whose target to resolve
            scope: Device ids the action may touch (None = unrestricted)

        Returns:
            (ids to dispatch, failed outcomes for ids outside the scope)

        Raises:
            ConfigurationError: all/random target without a scope, or a
                random count larger than the scope
        """
        target = action.target

        if isinstance(target, SpecificDevices):
            if scope is None:
                return list(target.device_ids), []
            members = set(scope)
            inside = [d for d in target.device_ids if d in members]
            outside = [
                DeviceOutcome(device_id=d, success=False, error=UNKNOWN_DEVICE)
                for d in target.device_ids
                if d not in members
            ]
            return inside, outside

        if scope is None:
            raise ConfigurationError(f"'{target.target_type.value}' target needs a group scope")

        if isinstance(target, AllDevices):
            return list(scope), []

        if isinstance(target, RandomDevices):
            if target.count > len(scope):
                raise ConfigurationError(
                    f"Random count {target.count} exceeds {len(scope)} devices in scope"
                )
            return self._rng.sample(list(scope), target.count), []

        raise ConfigurationError(f"Unknown target: {target!r}")

    # =========================================================================
    # Dispatch
    # =========================================================================

    async def execute(
        self,
        action: Action,
        scope: Optional[Sequence[str]],
        policy: Optional[DispatchPolicy] = None,
    ) -> DispatchResult:
        """
        Execute an action against its resolved devices.

        Args:
            action: The action to execute
            scope: Device ids the action may touch (None = unrestricted)
            policy: Overrides the action's own policy

        Returns:
            DispatchResult with per-device outcomes
        """
        targets, failed = self.resolve_targets(action, scope)
        policy = policy or action.policy or DispatchPolicy()

        if action.delay:
            logger.debug(f"Waiting {action.delay}s before {action.command.value}")
            await self._sleep(action.delay)

        started = time.monotonic()
        if policy.sequential:
            outcomes = await self._dispatch_sequential(action, targets, policy)
        else:
            outcomes = await self._dispatch_parallel(action, targets, policy)
        duration_ms = int((time.monotonic() - started) * 1000)

        result = DispatchResult(
            successful=[o for o in outcomes if o.success],
            failed=failed + [o for o in outcomes if not o.success],
            duration_ms=duration_ms,
        )
        logger.info(
            f"Dispatched {action.command.value} to {result.total} device(s): "
            f"{len(result.successful)} ok, {len(result.failed)} failed in {duration_ms}ms"
        )
        return result

    async def _dispatch_sequential(
        self, action: Action, targets: List[str], policy: DispatchPolicy
    ) -> List[DeviceOutcome]:
        order = list(targets)
        if policy.random_order:
            self._rng.shuffle(order)

        outcomes: List[DeviceOutcome] = []
        for index, device_id in enumerate(order):
            if index > 0 and policy.interval_ms:
                await self._sleep(policy.interval_ms / 1000)
            outcomes.append(await self._dispatch_one(device_id, action))
        return outcomes

    async def _dispatch_parallel(
        self, action: Action, targets: List[str], policy: DispatchPolicy
    ) -> List[DeviceOutcome]:
        semaphore = asyncio.Semaphore(policy.parallelism or self._max_parallel)

        async def bounded(device_id: str) -> DeviceOutcome:
            async with semaphore:
                return await self._dispatch_one(device_id, action)

        return list(await asyncio.gather(*(bounded(d) for d in targets)))

    async def _dispatch_one(self, device_id: str, action: Action) -> DeviceOutcome:
        """Send one command; every failure becomes a failed outcome."""
        started = time.monotonic()
        error: Optional[str] = None
        try:
            result = await asyncio.wait_for(
                self._sink.send(device_id, action.command, dict(action.settings)),
                timeout=self._timeout,
            )
            if not result.success:
                error = result.error or "rejected"
        except asyncio.TimeoutError:
            error = f"timed out after {self._timeout}s"
        except DeviceDispatchError as e:
            error = e.reason
        except Exception as e:
            logger.error(f"Command {action.command.value} to {device_id} raised: {e}", exc_info=True)
            error = str(e) or type(e).__name__

        duration_ms = int((time.monotonic() - started) * 1000)
        if error is not None:
            logger.warning(f"Device {device_id} failed {action.command.value}: {error}")
            return DeviceOutcome(device_id=device_id, success=False, duration_ms=duration_ms, error=error)

        changes = self._state_changes(device_id, action)
        if changes:
            self._world.update(device_id, changes)
        return DeviceOutcome(device_id=device_id, success=True, duration_ms=duration_ms)

    def _state_changes(self, device_id: str, action: Action) -> Dict[str, Any]:
        """World-state changes implied by a successful command."""
        command = action.command
        if command == ActionType.TURN_ON:
            changes: Dict[str, Any] = {"power_state": "on"}
        elif command == ActionType.TURN_OFF:
            changes = {"power_state": "off"}
        elif command == ActionType.TOGGLE:
            current = (self._world.get(device_id) or {}).get("power_state")
            changes = {"power_state": "off" if current == "on" else "on"}
        elif command in SETTING_FIELDS:
            changes = {}
        else:
            return {}

        if action.settings:
            changes["settings"] = dict(action.settings)
        return changes
