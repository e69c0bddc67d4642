"""CommandDispatcher byte model and write path."""

import logging

import pytest

from conftest import ROVER_ID, FakeRadioDriver, PromptRecorder, connected_controller, run

from ble_commands import RADAR_SWEEP, Direction, command_value, parse_intent
from rover_controller import RoverController
from rover_errors import DriverFailure
from rover_prompts import CONNECT_FIRST


@pytest.mark.parametrize("direction, speed, expected", [
    (Direction.LEFT, 120, 216),
    (Direction.FORWARD, 255, 51),
    (Direction.RIGHT, 0, 128),
    (Direction.BACKWARD, 7, 65),
    (Direction.LEFT, 255, 243),
])
def test_command_value_adds_truncated_speed(direction, speed, expected):
    assert command_value(direction, speed) == expected


@pytest.mark.parametrize("speed", [0, 120, 255])
def test_radar_sweep_ignores_speed(speed):
    assert command_value(RADAR_SWEEP, speed) == 52


def test_parse_intent():
    assert parse_intent("left") is Direction.LEFT
    assert parse_intent(" Forward ") is Direction.FORWARD
    assert parse_intent("radar") is RADAR_SWEEP
    with pytest.raises(ValueError):
        parse_intent("jump")


def test_speed_bounds(controller):
    dispatcher = controller.dispatcher
    assert dispatcher.speed == 120
    assert dispatcher.set_speed("200") == 200
    for bad in (-5, 256):
        with pytest.raises(ValueError):
            dispatcher.set_speed(bad)
    assert dispatcher.speed == 200


def test_dispatch_without_connection_prompts_and_never_writes(controller, driver, prompts):
    sent = run(controller.dispatcher.dispatch(Direction.LEFT))

    assert sent is False
    assert "write_without_response" not in driver.names()
    assert [(p.warning, p.action) for p in prompts.prompts] == [(CONNECT_FIRST, "Scan")]
    assert "scan" not in driver.names()


def test_confirming_prompt_starts_scan():
    driver = FakeRadioDriver()
    controller = RoverController(driver, prompt_handler=PromptRecorder(answer=True), settle_seconds=0)

    assert run(controller.dispatcher.dispatch(RADAR_SWEEP)) is False
    assert driver.names().count("scan") == 1
    assert controller.session.is_scanning is True


def test_dispatch_writes_single_byte(controller, driver):
    async def scenario():
        await connected_controller(controller)
        driver.calls.clear()
        return await controller.dispatcher.dispatch(Direction.LEFT)

    assert run(scenario()) is False
    assert driver.names() == [
        "list_connected",
        "discover_services",
        "enable_notifications",
        "write_without_response",
    ]
    assert driver.args_of("enable_notifications") == [(ROVER_ID, "ffe0", "ffe1")]
    assert driver.args_of("write_without_response") == [(ROVER_ID, "ffe0", "ffe1", [216])]


def test_radar_dispatch_returns_true(controller, driver):
    async def scenario():
        await connected_controller(controller)
        controller.dispatcher.set_speed(35)
        return await controller.dispatcher.dispatch(RADAR_SWEEP)

    assert run(scenario()) is True
    assert driver.args_of("write_without_response")[-1][-1] == [52]


def test_write_failure_is_logged_not_raised(controller, driver, caplog):
    async def scenario():
        await connected_controller(controller)
        driver.failures["write_without_response"] = DriverFailure("write", ROVER_ID, "link lost")
        return await controller.dispatcher.dispatch(RADAR_SWEEP)

    with caplog.at_level(logging.ERROR):
        assert run(scenario()) is False
    assert "link lost" in caplog.text


def test_notification_failure_skips_write(controller, driver):
    async def scenario():
        await connected_controller(controller)
        driver.failures["enable_notifications"] = DriverFailure("enable_notifications", ROVER_ID)
        return await controller.dispatcher.dispatch(Direction.FORWARD)

    assert run(scenario()) is False
    assert "write_without_response" not in driver.names()


def test_dispatch_after_link_drop_prompts(controller, driver, prompts):
    async def scenario():
        await connected_controller(controller)
        driver.drop(ROVER_ID)
        return await controller.dispatcher.dispatch(Direction.FORWARD)

    assert run(scenario()) is False
    assert [p.warning for p in prompts.prompts] == [CONNECT_FIRST]


def test_request_read(controller, driver, prompts):
    assert run(controller.dispatcher.request_read()) is None
    assert [p.warning for p in prompts.prompts] == [CONNECT_FIRST]

    async def scenario():
        await connected_controller(controller)
        return await controller.dispatcher.request_read()

    assert run(scenario()) == b"\x34"
    assert driver.args_of("read") == [(ROVER_ID, "ffe0", "ffe1")]
