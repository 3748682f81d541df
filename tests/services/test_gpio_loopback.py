"""Tests for the in-memory GPIO."""

from aether.services.gpio_loopback import LoopbackGpio


class TestLoopbackGpio:
    """Tests for LoopbackGpio."""

    async def test_input_change_published_once(self, bus, recorder):
        bus.subscribe("pin_change", recorder)
        gpio = LoopbackGpio(bus)

        assert await gpio.set_input(17, 1) is True
        assert await gpio.set_input(17, True) is False
        assert await gpio.set_input(17, 0) is True

        assert [(d["pin"], d["value"]) for d in recorder.data] == [(17, 1), (17, 0)]
        assert "timestamp" in recorder.data[0]

    async def test_writes_recorded(self, bus):
        gpio = LoopbackGpio(bus).attach()
        await bus.publish("pin_write", {"pin": 5, "value": 1})

        assert gpio.writes == [{"pin": 5, "value": 1}]
        assert gpio.read(5) == 1

        gpio.detach()
        await bus.publish("pin_write", {"pin": 5, "value": 0})
        assert len(gpio.writes) == 1

    async def test_echo(self, bus, recorder):
        bus.subscribe("pin_change", recorder)
        LoopbackGpio(bus, echo=True).attach()

        await bus.publish("pin_write", {"pin": 5, "value": 1})

        assert [(d["pin"], d["value"]) for d in recorder.data] == [(5, 1)]
