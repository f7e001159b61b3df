"""
Scene management: capture and replay device-state snapshots.

A scene activation is just a set of turn_on/turn_off actions over exactly the
scene's devices. Devices with an identical payload share one dispatch batch.
"""

import json
import logging
import uuid
from dataclasses import replace
from typing import Dict, List, Mapping, Optional

from .errors import ConfigurationError, UnknownEntityError
from .executor import ActionExecutor
from .adapter import WorldState
from .models import (
    Action,
    ActionType,
    DeviceState,
    DispatchPolicy,
    DispatchResult,
    Group,
    Scene,
    SpecificDevices,
)

logger = logging.getLogger(__name__)


class SceneManager:
    """
    Stores scenes and activates them through the ActionExecutor.

    Enforces no policy of its own: in-flight and conflict checks belong to
    the engine.
    """

    def __init__(
        self,
        executor: ActionExecutor,
        world_state: WorldState,
        groups: Mapping[str, Group],
    ) -> None:
        self._executor = executor
        self._world = world_state
        self._groups = groups
        self._scenes: Dict[str, Scene] = {}

    # =========================================================================
    # Registry
    # =========================================================================

    def add_scene(self, scene: Scene) -> Scene:
        """
        Add or replace a scene.

        Raises:
            UnknownEntityError: The scene's group does not exist
            ConfigurationError: A scene device is not a member of its group
        """
        if scene.group_id is not None:
            group = self._groups.get(scene.group_id)
            if group is None:
                raise UnknownEntityError("group", scene.group_id)
            for device_id in scene.device_ids:
                if not group.has_member(device_id):
                    raise ConfigurationError(f"Device not found in group: {device_id}")

        if scene.is_default:
            # One default per group
            for other in list(self._scenes.values()):
                if other.id != scene.id and other.is_default and other.group_id == scene.group_id:
                    self._scenes[other.id] = replace(other, is_default=False)

        self._scenes[scene.id] = scene
        logger.info(f"Added scene {scene.id} ({len(scene.device_states)} devices)")
        return scene

    def get(self, scene_id: str) -> Scene:
        scene = self._scenes.get(scene_id)
        if scene is None:
            raise UnknownEntityError("scene", scene_id)
        return scene

    def remove(self, scene_id: str) -> bool:
        return self._scenes.pop(scene_id, None) is not None

    def list(self, group_id: Optional[str] = None) -> List[Scene]:
        return [s for s in self._scenes.values() if group_id is None or s.group_id == group_id]

    def default_scene(self, group_id: str) -> Optional[Scene]:
        """The group's restore-point scene, if any."""
        for scene in self._scenes.values():
            if scene.group_id == group_id and scene.is_default:
                return scene
        return None

    # =========================================================================
    # Capture
    # =========================================================================

    def capture(
        self,
        group_id: str,
        name: str,
        scene_id: Optional[str] = None,
        is_default: bool = False,
    ) -> Scene:
        """
        Snapshot every member of a group into a new scene.

        Args:
            group_id: Group to capture
            name: Scene name
            scene_id: Explicit id (generated if omitted)
            is_default: Mark as the group's restore point

        Returns:
            The stored scene
        """
        group = self._groups.get(group_id)
        if group is None:
            raise UnknownEntityError("group", group_id)

        states = []
        for device_id in group.device_ids:
            state = self._world.get(device_id)
            if state is None:
                logger.warning(f"No known state for {device_id}, left out of scene {name}")
                continue
            power_state = state.get("power_state", "off")
            if power_state not in ("on", "off"):
                logger.warning(
                    f"Unusable power_state {power_state!r} for {device_id}, left out of scene {name}"
                )
                continue
            states.append(
                DeviceState(
                    device_id=device_id,
                    power_state=power_state,
                    settings=dict(state.get("settings") or {}),
                )
            )

        scene = Scene(
            id=scene_id or uuid.uuid4().hex,
            name=name,
            device_states=states,
            is_default=is_default,
            group_id=group_id,
        )
        return self.add_scene(scene)

    # =========================================================================
    # Activation
    # =========================================================================

    @staticmethod
    def scene_actions(scene: Scene) -> List[Action]:
        """Turn a scene into actions, one per distinct payload."""
        batches: Dict[str, List[DeviceState]] = {}
        for state in scene.device_states:
            key = json.dumps([state.power_state, state.settings], sort_keys=True, default=str)
            batches.setdefault(key, []).append(state)

        actions = []
        for states in batches.values():
            first = states[0]
            command = ActionType.TURN_ON if first.power_state == "on" else ActionType.TURN_OFF
            actions.append(
                Action(
                    command=command,
                    target=SpecificDevices(device_ids=tuple(s.device_id for s in states)),
                    settings=dict(first.settings),
                )
            )
        return actions

    async def activate(
        self, scene_id: str, policy: Optional[DispatchPolicy] = None
    ) -> DispatchResult:
        """
        Apply a scene to its devices.

        Args:
            scene_id: Scene to activate
            policy: Dispatch policy (parallel by default)

        Returns:
            Merged DispatchResult over every batch
        """
        scene = self.get(scene_id)
        policy = policy or DispatchPolicy.parallel()

        result = DispatchResult()
        for action in self.scene_actions(scene):
            batch = await self._executor.execute(action, scene.device_ids, policy)
            result = result.merge(batch)

        logger.info(
            f"Activated scene {scene.name}: "
            f"{len(result.successful)}/{result.total} devices updated"
        )
        return result

    async def restore_default(self, group_id: str) -> DispatchResult:
        """Replay the group's default scene."""
        scene = self.default_scene(group_id)
        if scene is None:
            raise UnknownEntityError("default scene", group_id)
        return await self.activate(scene.id)
