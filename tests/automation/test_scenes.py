"""Tests for scene capture and activation."""

import pytest

from home_rules.automation import (
    ActionExecutor,
    ActionType,
    ConfigurationError,
    DeviceState,
    Group,
    InMemoryWorldState,
    MockCommandSink,
    Scene,
    SceneManager,
    UnknownEntityError,
)


@pytest.fixture
def world():
    return InMemoryWorldState(
        {
            "lamp": {"power_state": "on", "settings": {"brightness": 40}},
            "spot": {"power_state": "on", "settings": {"brightness": 40}},
            "strip": {"power_state": "off", "settings": {"color": "blue"}},
        }
    )


@pytest.fixture
def sink():
    return MockCommandSink()


@pytest.fixture
def groups():
    return {"living": Group(id="living", name="Living", device_ids=("lamp", "spot", "strip"))}


@pytest.fixture
def manager(sink, world, groups):
    return SceneManager(ActionExecutor(sink, world), world, groups)


class TestSceneRegistry:
    """Tests for adding and looking up scenes."""

    def test_device_must_be_group_member(self, manager):
        scene = Scene(
            id="s", name="s", device_states=[DeviceState("fan")], group_id="living"
        )
        with pytest.raises(ConfigurationError, match="Device not found in group"):
            manager.add_scene(scene)

    def test_unknown_group(self, manager):
        scene = Scene(id="s", name="s", device_states=[DeviceState("lamp")], group_id="attic")
        with pytest.raises(UnknownEntityError):
            manager.add_scene(scene)

    def test_single_default_per_group(self, manager):
        manager.add_scene(Scene(id="a", name="a", device_states=[DeviceState("lamp")],
                                is_default=True, group_id="living"))
        manager.add_scene(Scene(id="b", name="b", device_states=[DeviceState("spot")],
                                is_default=True, group_id="living"))
        assert manager.default_scene("living").id == "b"
        assert not manager.get("a").is_default

    def test_get_unknown(self, manager):
        with pytest.raises(UnknownEntityError):
            manager.get("missing")

    def test_list_by_group(self, manager):
        manager.add_scene(Scene(id="a", name="a", device_states=[DeviceState("lamp")],
                                group_id="living"))
        manager.add_scene(Scene(id="b", name="b", device_states=[DeviceState("x")]))
        assert [s.id for s in manager.list("living")] == ["a"]
        assert len(manager.list()) == 2


class TestSceneActivation:
    """Tests for capture and replay."""

    def test_identical_payloads_share_a_batch(self, manager):
        scene = manager.capture("living", "Evening", scene_id="evening")
        actions = SceneManager.scene_actions(scene)
        assert len(actions) == 2
        on = next(a for a in actions if a.command == ActionType.TURN_ON)
        assert on.target.device_ids == ("lamp", "spot")

    def test_capture_skips_unusable_power_state(self, manager, world):
        world.set_state("spot", {"power_state": "unknown", "settings": {}})
        world.set_state("strip", {"power_state": None})

        scene = manager.capture("living", "Partial", scene_id="partial")

        assert scene.device_ids == ("lamp",)

    @pytest.mark.asyncio
    async def test_capture_then_activate_restores_state(self, manager, world):
        before = world.snapshot()
        manager.capture("living", "Evening", scene_id="evening")

        world.update("lamp", {"power_state": "off", "settings": {"brightness": 90}})
        world.update("strip", {"power_state": "on", "settings": {"color": "red"}})

        result = await manager.activate("evening")

        assert result.success
        assert result.total == 3
        assert world.snapshot() == before

    @pytest.mark.asyncio
    async def test_activation_touches_only_scene_devices(self, manager, sink):
        manager.add_scene(Scene(id="a", name="a", device_states=[DeviceState("lamp", "off")],
                                group_id="living"))
        await manager.activate("a")
        assert sink.called_devices() == ["lamp"]

    @pytest.mark.asyncio
    async def test_restore_default(self, manager, sink):
        manager.capture("living", "Baseline", scene_id="base", is_default=True)
        result = await manager.restore_default("living")
        assert sorted(result.affected_devices) == ["lamp", "spot", "strip"]

    @pytest.mark.asyncio
    async def test_restore_without_default(self, manager):
        with pytest.raises(UnknownEntityError):
            await manager.restore_default("living")

    @pytest.mark.asyncio
    async def test_partial_failure(self, manager, sink):
        manager.capture("living", "Evening", scene_id="evening")
        sink.reject("strip")
        result = await manager.activate("evening")
        assert result.success
        assert [o.device_id for o in result.failed] == ["strip"]
