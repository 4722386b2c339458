import asyncio
import threading
from dataclasses import dataclass
from typing import Literal

from jsonargparse import CLI
from loguru import logger
from rich.console import Console
from rich.table import Table

from iotscape.core.config import IoTScapeSettings
from iotscape.core.logging import configure_from_settings
from iotscape.examples.example_service import (
    DEFAULT_DEVICE_ID,
    build_identity,
    register_example_handlers,
)
from iotscape.service import AsyncService, ThreadedService, create_service

console = Console()


@dataclass(slots=True)
class IoTScapeCLI:
    """Run and inspect the IoTScape example service."""

    server: str | None = None
    scheduling_model: Literal["thread", "cooperative"] | None = None
    log_level: str | None = None
    debug_scopes: list[str] | None = None

    def _settings(self) -> IoTScapeSettings:
        overrides: dict[str, object] = {}
        if self.server is not None:
            overrides["server_address"] = self.server
        if self.scheduling_model is not None:
            overrides["scheduling_model"] = self.scheduling_model
        if self.log_level is not None:
            overrides["log_level"] = self.log_level
        if self.debug_scopes is not None:
            overrides["log_debug_scopes"] = self.debug_scopes
        settings = IoTScapeSettings(**overrides)  # type: ignore[arg-type]
        configure_from_settings(settings)
        return settings

    def serve(self, device_id: str = DEFAULT_DEVICE_ID, duration: float | None = None) -> None:
        """Run the example service until interrupted.

        Args:
            device_id: Instance id announced for this device.
            duration: Stop after this many seconds instead of running forever.
        """
        service = create_service(build_identity(device_id), settings=self._settings())
        register_example_handlers(service)
        try:
            if isinstance(service, AsyncService):
                asyncio.run(self._serve_async(service, duration))
            else:
                self._serve_threaded(service, duration)
        except KeyboardInterrupt:
            logger.info("Interrupted")

    def _serve_threaded(self, service: ThreadedService, duration: float | None) -> None:
        with service:
            threading.Event().wait(duration)

    async def _serve_async(self, service: AsyncService, duration: float | None) -> None:
        async with service:
            if duration is None:
                await asyncio.Event().wait()
            else:
                await asyncio.sleep(duration)

    def describe(self, device_id: str = DEFAULT_DEVICE_ID) -> None:
        """Print the example service definition."""
        identity = build_identity(device_id)
        definition = identity.definition

        table = Table(title=f"{identity.service_type} ({identity.instance_id})")
        table.add_column("Method", style="cyan", no_wrap=True)
        table.add_column("Parameters", style="magenta")
        table.add_column("Returns", style="green")
        table.add_column("Documentation")
        for name, method in definition.methods.items():
            params = ", ".join(
                f"{param.name}: {param.type}{'?' if param.optional else ''}"
                for param in method.params
            )
            table.add_row(
                name, params, ", ".join(method.returns.type), method.documentation or ""
            )
        console.print(table)

        if definition.events:
            events = Table(title="Events")
            events.add_column("Event", style="cyan")
            events.add_column("Parameters", style="magenta")
            for name, event in definition.events.items():
                events.add_row(name, ", ".join(event.params))
            console.print(events)

    def announce(self, device_id: str = DEFAULT_DEVICE_ID) -> None:
        """Send a single announce and report the outcome."""
        service = create_service(build_identity(device_id), settings=self._settings())
        if isinstance(service, AsyncService):
            registered = asyncio.run(self._announce_async(service))
        else:
            service.start(announce=False)
            try:
                registered = service.announce_once()
            finally:
                service.stop()

        record = service.connection()
        if registered:
            console.print(f"[green]Announced to {record.server_address}[/green]")
        else:
            console.print(f"[red]Announce failed: {record.last_error}[/red]")

    async def _announce_async(self, service: AsyncService) -> bool:
        await service.start(announce=False)
        try:
            return await service.announce_once()
        finally:
            await service.stop()


def main() -> None:
    CLI(IoTScapeCLI, as_dict=False)  # type: ignore[no-untyped-call]


if __name__ == "__main__":
    main()
