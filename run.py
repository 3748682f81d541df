# run.py
import asyncio
import logging
import signal

from aether.automation.event_bus import EventBus
from aether.automation.manager import AutomationManager
from aether.core.config import settings
from aether.services.gpio_loopback import LoopbackGpio

logging.basicConfig(level=logging.INFO)
logging.getLogger("automation").setLevel(logging.DEBUG)


async def main() -> None:
    settings.load_yaml_config()
    logging.getLogger("automation").setLevel(settings.log_level)

    bus = EventBus(history_limit=settings.history_limit)
    gpio = LoopbackGpio(bus).attach()
    manager = AutomationManager.from_settings(settings, bus=bus)
    await manager.start()

    stop = asyncio.Event()
    loop = asyncio.get_running_loop()
    for sig in (signal.SIGINT, signal.SIGTERM):
        try:
            loop.add_signal_handler(sig, stop.set)
        except NotImplementedError:
            # Windows: остановка по Ctrl+C через KeyboardInterrupt
            pass

    try:
        await stop.wait()
    finally:
        await manager.shutdown()
        gpio.detach()


if __name__ == "__main__":
    try:
        asyncio.run(main())
    except KeyboardInterrupt:
        pass
